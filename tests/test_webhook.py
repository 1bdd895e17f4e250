from __future__ import annotations
import asyncio
import json
import time

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from unicornshop import ingestion
from unicornshop.fulfillment import build_unicorns
from unicornshop.gateway import EventKind
from unicornshop.infra import timings
from unicornshop.model.store import UnicornStore

from conftest import deliver, event_for, place_order


async def snapshots(store):
    async with store.db.begin():
        rows = (await store.db.execute(text(
            "SELECT total_unicorns, total_revenue FROM stats ORDER BY id"
        ))).all()
    return [tuple(r) for r in rows]


@pytest.mark.asyncio
async def test_example_order_end_to_end(client, store):
    pi = await place_order(client)
    before = (await client.get("/stats")).json()

    r = await client.post(f"/mockpay/{pi}/emit", json={"kind": "succeeded"})
    assert r.status_code == 200
    assert r.json()["delivered_status"] == 200

    units = (await client.get("/units/s1")).json()
    assert [u["name"] for u in units] == ["Nova 1", "Nova 2"]
    assert {u["color_name"] for u in units} == {"Pink"}
    assert {u["color_hex"] for u in units} == {"#ff69b4"}
    assert {u["payment_intent_id"] for u in units} == {pi}
    assert {u["user_session"] for u in units} == {"s1"}

    after = (await client.get("/stats")).json()
    assert after["total_unicorns"] == before["total_unicorns"] + 2
    assert after["total_revenue"] == 50
    assert after["unique_customers"] == 1

    payment = (await client.get(f"/payments/{pi}")).json()
    assert payment["status"] == "succeeded"
    assert payment["completed_at"] is not None

    assert await snapshots(store) == [(2, 50)]


@pytest.mark.asyncio
async def test_ack_shape(client, store, adapter):
    pi = await place_order(client)
    body = await event_for(store, adapter, pi)
    r = await deliver(client, adapter, body)
    assert r.status_code == 200
    event = json.loads(body)
    assert r.json() == {"received": True,
                        "event_type": "payment_intent.succeeded",
                        "event_id": event["id"]}


@pytest.mark.asyncio
async def test_redelivery_fulfills_once(client, store, adapter):
    pi = await place_order(client, orders=[{"color": "Gold", "quantity": 3}])
    body = await event_for(store, adapter, pi)

    first = await deliver(client, adapter, body)
    second = await deliver(client, adapter, body)
    assert first.status_code == second.status_code == 200
    assert second.json()["received"] is True

    assert await store.count_unicorns_for(pi) == 3
    assert len(await snapshots(store)) == 1
    counters = timings.snapshot()["counters"]
    assert counters["fulfillment.ok"] == 1
    assert counters["fulfillment.duplicate"] == 1


@pytest.mark.asyncio
async def test_a_fresh_event_for_a_paid_payment_is_dropped(
        client, store, adapter):
    pi = await place_order(client)
    await deliver(client, adapter, await event_for(store, adapter, pi))
    # different event id, same payment
    await deliver(client, adapter, await event_for(store, adapter, pi))
    assert await store.count_unicorns_for(pi) == 2


@pytest.mark.asyncio
async def test_concurrent_deliveries_produce_one_batch(
        client, store, adapter):
    pi = await place_order(client, orders=[{"color": "Lime", "quantity": 4}])
    body = await event_for(store, adapter, pi)

    responses = await asyncio.gather(
        *[deliver(client, adapter, body) for _ in range(5)]
    )
    assert all(r.status_code == 200 for r in responses)
    assert await store.count_unicorns_for(pi) == 4
    assert (await client.get("/stats")).json()["total_unicorns"] == 4


@pytest.mark.asyncio
async def test_bad_signature_changes_nothing(client, store, adapter):
    pi = await place_order(client)
    body = await event_for(store, adapter, pi)

    r = await client.post("/webhook", content=body, headers={
        "x-mockpay-signature": "t=%d,v1=deadbeef" % int(time.time()),
    })
    assert r.status_code == 400
    assert "error" in r.json()

    r = await client.post("/webhook", content=body)
    assert r.status_code == 400

    # replayed outside the tolerance window
    r = await deliver(client, adapter, body, ts=int(time.time()) - 3600)
    assert r.status_code == 400

    assert (await store.get_payment(pi))["status"] == "pending"
    assert await store.count_unicorns_for(pi) == 0
    assert timings.snapshot()["counters"]["webhook.rejected"] == 3


@pytest.mark.asyncio
async def test_failed_is_terminal(client, store, adapter):
    pi = await place_order(client)
    await deliver(client, adapter,
                  await event_for(store, adapter, pi, EventKind.FAILED))
    assert (await store.get_payment(pi))["status"] == "failed"

    r = await deliver(client, adapter, await event_for(store, adapter, pi))
    assert r.status_code == 200
    assert (await store.get_payment(pi))["status"] == "failed"
    assert await store.count_unicorns_for(pi) == 0

    await deliver(client, adapter,
                  await event_for(store, adapter, pi, EventKind.CANCELED))
    assert (await store.get_payment(pi))["status"] == "failed"


@pytest.mark.asyncio
async def test_canceled_then_success_is_ignored(client, store, adapter):
    pi = await place_order(client)
    r = await client.post(f"/mockpay/{pi}/emit", json={"kind": "canceled"})
    assert r.status_code == 200
    assert (await store.get_payment(pi))["status"] == "canceled"

    await client.post(f"/mockpay/{pi}/emit", json={"kind": "succeeded"})
    assert (await store.get_payment(pi))["status"] == "canceled"
    assert (await client.get("/units")).json() == []


@pytest.mark.asyncio
async def test_success_after_fulfillment_ignores_cancel(
        client, store, adapter):
    pi = await place_order(client)
    await deliver(client, adapter, await event_for(store, adapter, pi))
    await deliver(client, adapter,
                  await event_for(store, adapter, pi, EventKind.CANCELED))
    assert (await store.get_payment(pi))["status"] == "succeeded"
    assert await store.count_unicorns_for(pi) == 2


@pytest.mark.asyncio
async def test_unhandled_and_created_events_are_acknowledged(
        client, adapter):
    for event_type in ("charge.refunded", "payment_intent.created"):
        body = json.dumps({
            "id": "evt_x", "type": event_type,
            "data": {"object": {"id": "pi_unknown"}},
        }).encode()
        r = await deliver(client, adapter, body)
        assert r.status_code == 200
        assert r.json()["event_type"] == event_type


@pytest.mark.asyncio
async def test_payment_known_only_from_metadata(client, store, adapter):
    body = json.dumps({
        "id": "evt_meta",
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": "pi_external",
            "amount": 75,
            "currency": "usd",
            "metadata": {
                "base_name": "Comet",
                "total_unicorns": "3",
                "unicorn_orders": json.dumps([
                    {"color": "Cyan", "quantity": 1},
                    {"color": "Chartreuse", "quantity": 2},
                ]),
                "user_session": "s9",
            },
        }},
    }).encode()
    assert (await deliver(client, adapter, body)).status_code == 200

    payment = await store.get_payment("pi_external")
    assert payment["status"] == "succeeded"
    assert payment["total_amount"] == 75
    units = (await client.get("/unicorns/s9")).json()
    assert [(u["name"], u["color_hex"]) for u in units] == [
        ("Comet", "#00ffff"),
        ("Comet 1", None),
        ("Comet 2", None),
    ]


@pytest.mark.asyncio
async def test_success_for_unknown_payment_without_order(client, store,
                                                         adapter):
    body = json.dumps({
        "id": "evt_bare", "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_bare", "amount": 25}},
    }).encode()
    assert (await deliver(client, adapter, body)).status_code == 200
    assert await store.get_payment("pi_bare") is None
    assert timings.snapshot()["counters"]["fulfillment.unknown_payment"] == 1


@pytest.mark.asyncio
async def test_success_matched_by_internal_id(client, store, adapter):
    # gateway id was never recorded locally
    await store.save_pending_payment({
        "id": "pay_1", "base_name": "Orbit", "total_unicorns": 1,
        "total_amount": 25, "currency": "usd",
        "unicorn_orders": '[{"color": "Gold", "quantity": 1}]',
        "user_session": "s2",
    })
    body = json.dumps({
        "id": "evt_late", "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": "pi_late", "amount": 25, "currency": "usd",
            "metadata": {"payment_id": "pay_1"},
        }},
    }).encode()
    await deliver(client, adapter, body)

    payment = await store.get_payment_by_id("pay_1")
    assert payment["payment_intent_id"] == "pi_late"
    assert payment["status"] == "succeeded"
    assert await store.count_unicorns_for("pi_late") == 1


@pytest.mark.asyncio
async def test_storage_failure_is_acknowledged_and_counted(
        client, store, adapter, monkeypatch):
    pi = await place_order(client)
    body = await event_for(store, adapter, pi)

    async def broken(self, *args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(UnicornStore, "fulfill", broken)
    r = await deliver(client, adapter, body)
    assert r.status_code == 200
    assert r.json()["received"] is True
    assert timings.snapshot()["counters"]["fulfillment.error"] == 1

    metrics = (await client.get("/api/metrics")).json()
    assert metrics["counters"]["fulfillment.error"] == 1

    monkeypatch.undo()
    assert (await store.get_payment(pi))["status"] == "pending"
    # a later redelivery still goes through
    await deliver(client, adapter, body)
    assert await store.count_unicorns_for(pi) == 2


@pytest.mark.asyncio
async def test_failure_after_status_update_rolls_back_both(
        client, store, adapter, monkeypatch):
    pi = await place_order(client)
    body = await event_for(store, adapter, pi)

    def broken(order, existing):
        raise OperationalError("INSERT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(ingestion, "build_unicorns", broken)
    r = await deliver(client, adapter, body)
    assert r.status_code == 200
    assert timings.snapshot()["counters"]["fulfillment.error"] == 1
    assert (await store.get_payment(pi))["status"] == "pending"
    assert await store.count_unicorns_for(pi) == 0

    monkeypatch.undo()
    await deliver(client, adapter, body)
    assert (await store.get_payment(pi))["status"] == "succeeded"
    assert await store.count_unicorns_for(pi) == 2


@pytest.mark.asyncio
async def test_unit_conflict_is_not_mistaken_for_a_redelivery(
        client, store, adapter, monkeypatch):
    pi = await place_order(client)
    body = await event_for(store, adapter, pi)

    def same_id(order, existing):
        rows = build_unicorns(order, existing)
        for row in rows:
            row["id"] = "dup"
        return rows

    monkeypatch.setattr(ingestion, "build_unicorns", same_id)
    r = await deliver(client, adapter, body)
    assert r.status_code == 200
    counters = timings.snapshot()["counters"]
    assert counters["fulfillment.error"] == 1
    assert "fulfillment.duplicate" not in counters
    assert (await store.get_payment(pi))["status"] == "pending"
    assert await store.count_unicorns_for(pi) == 0


@pytest.mark.asyncio
async def test_stats_snapshots_never_decrease(client, store, adapter):
    for i, qty in enumerate([1, 3, 2]):
        pi = await place_order(client, user_session=f"s{i}",
                               orders=[{"color": "Purple",
                                        "quantity": qty}])
        await deliver(client, adapter, await event_for(store, adapter, pi))

    snaps = await snapshots(store)
    assert snaps == [(1, 25), (4, 100), (6, 150)]
    assert (await client.get("/stats")).json() == {
        "total_unicorns": 6, "total_revenue": 150, "unique_customers": 3,
    }


@pytest.mark.asyncio
async def test_read_api_orders_oldest_first(client, store, adapter):
    first = await place_order(client, base_name="Alpha", user_session="a")
    second = await place_order(client, base_name="Beta", user_session="b")
    await deliver(client, adapter, await event_for(store, adapter, second))
    await deliver(client, adapter, await event_for(store, adapter, first))

    names = [u["name"] for u in (await client.get("/unicorns")).json()]
    assert names == ["Beta 1", "Beta 2", "Alpha 1", "Alpha 2"]
    assert (await client.get("/units")).json() == \
        (await client.get("/unicorns")).json()
    assert (await client.get("/units/nobody")).json() == []


@pytest.mark.asyncio
async def test_mockpay_emit_validation(client):
    r = await client.post("/mockpay/pi_nope/emit", json={"kind": "succeeded"})
    assert r.status_code == 404
    pi = await place_order(client)
    r = await client.post(f"/mockpay/{pi}/emit", json={"kind": "refunded"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_event_without_payment_id_is_acknowledged(client, adapter):
    body = json.dumps({"id": "evt_empty", "type": "payment_intent.succeeded",
                       "data": {"object": {}}}).encode()
    r = await deliver(client, adapter, body)
    assert r.status_code == 200
    assert timings.snapshot()["counters"]["webhook.malformed"] == 1
