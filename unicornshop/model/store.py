from __future__ import annotations
import enum
import logging
from dataclasses import dataclass, field
from typing import (
    Any, AsyncContextManager, Callable, Dict, List, Optional, Tuple
)

from sqlalchemy import insert, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from ..fulfillment import PaidOrder, line_items_from_json
from ..helpers import now_ts
from .orm import Base, Unicorn, PENDING, SUCCEEDED, CANCELED, TERMINAL

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]
BuildUnits = Callable[[PaidOrder, int], List[Dict[str, Any]]]

UNICORN_COLUMNS = """
    id, name, color_name, color_hex, position_x, position_y, position_z,
    initial_rotation, created_at, payment_intent_id, user_session
"""


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class FulfillOutcome(enum.Enum):
    FULFILLED = "fulfilled"
    # payment already terminal; a redelivery or a late event
    ALREADY_PROCESSED = "already_processed"
    # no payment row and no metadata to reconstruct it from
    UNKNOWN_PAYMENT = "unknown_payment"


class _LostInsertRace(Exception):
    pass


@dataclass
class FulfillResult:
    outcome: FulfillOutcome
    unicorns: List[Dict[str, Any]] = field(default_factory=list)
    prior_status: Optional[str] = None


class UnicornStore:
    """All durable state: unicorns, payments and stats snapshots.

    One instance wraps one session; every method runs its own transaction
    behind the DB gate.
    """

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    # ------------------------------------------------------------------
    # payments
    # ------------------------------------------------------------------
    async def save_pending_payment(self, row: Dict[str, Any]) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO payments(
                    id, payment_intent_id, base_name, total_unicorns,
                    total_amount, currency, status, unicorn_orders,
                    user_session, created_at
                  ) VALUES (
                    :id, :payment_intent_id, :base_name, :total_unicorns,
                    :total_amount, :currency, :status, :unicorn_orders,
                    :user_session, :created_at
                  )
                """), {
                    "id": row["id"],
                    "payment_intent_id": row.get("payment_intent_id"),
                    "base_name": row["base_name"],
                    "total_unicorns": int(row["total_unicorns"]),
                    "total_amount": int(row["total_amount"]),
                    "currency": row["currency"],
                    "status": PENDING,
                    "unicorn_orders": row["unicorn_orders"],
                    "user_session": row["user_session"],
                    "created_at": float(row.get("created_at") or now_ts()),
                })

    async def attach_payment_intent(
            self, payment_id: str, payment_intent_id: str
    ) -> bool:
        """Record the gateway id on a payment that has none yet."""
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE payments SET payment_intent_id=:pi
                  WHERE id=:id AND payment_intent_id IS NULL
                """), {"pi": payment_intent_id, "id": payment_id})
        return res.rowcount == 1

    async def get_payment(
            self, payment_intent_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM payments WHERE payment_intent_id=:pi
                """), {"pi": payment_intent_id})).mappings().first()
        return dict(row) if row else None

    async def get_payment_by_id(
            self, payment_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM payments WHERE id=:id
                """), {"id": payment_id})).mappings().first()
        return dict(row) if row else None

    async def mark_terminal(
            self, payment_intent_id: str, status: str,
            payment_id: Optional[str] = None,
    ) -> bool:
        """pending -> failed|canceled. False if the payment was not pending.

        The guard is the `status='pending'` predicate: a terminal row
        never matches, so terminal states stay put.
        """
        if status not in TERMINAL or status == SUCCEEDED:
            raise ValueError(f"not a failure status: {status}")
        async with self.gated():
            async with self.db.begin():
                res = await self._transition(
                    payment_intent_id, status, payment_id
                )
        return res.rowcount == 1

    async def _transition(self, payment_intent_id: str, status: str,
                          payment_id: Optional[str]):
        params = {"s": status, "now": now_ts(), "pi": payment_intent_id,
                  "pending": PENDING}
        res = await self.db.execute(text("""
          UPDATE payments SET status=:s, completed_at=:now
          WHERE payment_intent_id=:pi AND status=:pending
        """), params)
        if res.rowcount == 0 and payment_id:
            # the gateway id was never recorded; match our own id instead
            res = await self.db.execute(text("""
              UPDATE payments
              SET status=:s, completed_at=:now, payment_intent_id=:pi
              WHERE id=:id AND payment_intent_id IS NULL
                AND status=:pending
            """), {**params, "id": payment_id})
        return res

    async def cancel_unissued(self, payment_id: str) -> bool:
        """Cancel a pending payment the gateway never issued an id for."""
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE payments SET status=:s, completed_at=:now
                  WHERE id=:id AND payment_intent_id IS NULL
                    AND status=:pending
                """), {"s": CANCELED, "now": now_ts(), "id": payment_id,
                       "pending": PENDING})
        return res.rowcount == 1

    # ------------------------------------------------------------------
    # idempotency guard + fulfillment
    # ------------------------------------------------------------------
    async def fulfill(
        self,
        payment_intent_id: str,
        build: BuildUnits,
        *,
        payment_id: Optional[str] = None,
        fallback: Optional[Dict[str, Any]] = None,
    ) -> FulfillResult:
        """Mark the payment succeeded and write its unicorns, atomically.

        The conditional pending -> succeeded UPDATE takes the row (or, on
        sqlite, the database) write lock, so concurrent deliveries of the
        same event serialize here and only one of them sees rowcount 1.
        Status and unicorns commit in the same transaction.

        `fallback` is the payment row reconstructed from gateway metadata;
        it is inserted when no local row exists.
        """
        try:
            async with self.gated():
                async with self.db.begin():
                    res = await self._transition(
                        payment_intent_id, SUCCEEDED, payment_id
                    )
                    if res.rowcount == 0:
                        prior = (await self.db.execute(text("""
                          SELECT status FROM payments
                          WHERE payment_intent_id=:pi
                        """), {"pi": payment_intent_id})).scalar()
                        if prior is not None:
                            return FulfillResult(
                                FulfillOutcome.ALREADY_PROCESSED,
                                prior_status=prior,
                            )
                        if fallback is None:
                            return FulfillResult(
                                FulfillOutcome.UNKNOWN_PAYMENT
                            )
                        try:
                            await self._insert_succeeded(
                                payment_intent_id, fallback
                            )
                        except IntegrityError as e:
                            # raised out of begin() so the tx rolls back
                            raise _LostInsertRace() from e

                    row = (await self.db.execute(text("""
                      SELECT base_name, unicorn_orders, user_session
                      FROM payments WHERE payment_intent_id=:pi
                    """), {"pi": payment_intent_id})).mappings().one()
                    order = PaidOrder(
                        payment_intent_id=payment_intent_id,
                        base_name=row["base_name"],
                        user_session=row["user_session"],
                        line_items=line_items_from_json(
                            row["unicorn_orders"]
                        ),
                    )
                    existing = (await self.db.execute(
                        text("SELECT COUNT(*) FROM unicorns")
                    )).scalar_one()
                    unicorns = build(order, int(existing))
                    if unicorns:
                        await self.db.execute(insert(Unicorn), unicorns)
        except _LostInsertRace:
            # a concurrent delivery inserted the same payment first
            logger.info("payment %s: lost insert race, treating as "
                        "already processed", payment_intent_id)
            return FulfillResult(FulfillOutcome.ALREADY_PROCESSED,
                                 prior_status=SUCCEEDED)
        return FulfillResult(FulfillOutcome.FULFILLED, unicorns=unicorns)

    async def _insert_succeeded(self, payment_intent_id: str,
                                fallback: Dict[str, Any]) -> None:
        now = now_ts()
        await self.db.execute(text("""
          INSERT INTO payments(
            id, payment_intent_id, base_name, total_unicorns, total_amount,
            currency, status, unicorn_orders, user_session, created_at,
            completed_at
          ) VALUES (
            :id, :pi, :base_name, :total_unicorns, :total_amount,
            :currency, :status, :unicorn_orders, :user_session, :now, :now
          )
        """), {
            "id": fallback["id"],
            "pi": payment_intent_id,
            "base_name": fallback["base_name"],
            "total_unicorns": int(fallback["total_unicorns"]),
            "total_amount": int(fallback["total_amount"]),
            "currency": fallback["currency"],
            "status": SUCCEEDED,
            "unicorn_orders": fallback["unicorn_orders"],
            "user_session": fallback["user_session"],
            "now": now,
        })

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def list_unicorns(
            self, user_session: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        sql = f"SELECT {UNICORN_COLUMNS} FROM unicorns"
        params = {}
        if user_session is not None:
            sql += " WHERE user_session=:session"
            params["session"] = user_session
        sql += " ORDER BY seq ASC"
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    text(sql), params
                )).mappings().all()
        return [dict(r) for r in rows]

    async def count_unicorns_for(self, payment_intent_id: str) -> int:
        async with self.gated():
            async with self.db.begin():
                n = (await self.db.execute(text("""
                  SELECT COUNT(*) FROM unicorns WHERE payment_intent_id=:pi
                """), {"pi": payment_intent_id})).scalar_one()
        return int(n)

    async def compute_totals(self) -> Dict[str, int]:
        async with self.gated():
            async with self.db.begin():
                units = (await self.db.execute(
                    text("SELECT COUNT(*) FROM unicorns")
                )).scalar_one()
                row = (await self.db.execute(text("""
                  SELECT COALESCE(SUM(total_amount), 0) AS revenue,
                         COUNT(DISTINCT user_session) AS customers
                  FROM payments WHERE status=:s
                """), {"s": SUCCEEDED})).mappings().one()
        return {
            "total_unicorns": int(units),
            "total_revenue": int(row["revenue"]),
            "unique_customers": int(row["customers"]),
        }

    async def pending_payments(
            self, limit: int = 100
    ) -> Tuple[int, List[Dict[str, Any]]]:
        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(text(
                    "SELECT COUNT(*) FROM payments WHERE status=:s"
                ), {"s": PENDING})).scalar_one()
                rows = (await self.db.execute(text("""
                  SELECT * FROM payments WHERE status=:s
                  ORDER BY created_at DESC LIMIT :lim
                """), {"s": PENDING, "lim": int(limit)})).mappings().all()
        return int(total), [dict(r) for r in rows]

    async def stale_pending(
            self, older_than: float, limit: int = 500
    ) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                  SELECT * FROM payments
                  WHERE status=:s AND created_at < :cutoff
                  ORDER BY created_at ASC LIMIT :lim
                """), {"s": PENDING, "cutoff": older_than,
                       "lim": int(limit)})).mappings().all()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # stats snapshots (append only)
    # ------------------------------------------------------------------
    async def latest_snapshot(self) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT * FROM stats ORDER BY id DESC LIMIT 1
                """))).mappings().first()
        return dict(row) if row else None

    async def append_snapshot(self, totals: Dict[str, int],
                              radius_of: Callable[[int], float]
                              ) -> Dict[str, Any]:
        """Append a snapshot, never below the previous one.

        Totals read outside this transaction can be older than a snapshot
        another worker appended in the meantime; clamping keeps the series
        non-decreasing.
        """
        async with self.gated():
            async with self.db.begin():
                prev = (await self.db.execute(text("""
                  SELECT total_unicorns, total_revenue, unique_customers
                  FROM stats ORDER BY id DESC LIMIT 1
                """))).mappings().first()
                snap = dict(totals)
                if prev is not None:
                    for key in ("total_unicorns", "total_revenue",
                                "unique_customers"):
                        snap[key] = max(int(snap[key]), int(prev[key]))
                snap["space_radius"] = radius_of(snap["total_unicorns"])
                snap["recorded_at"] = now_ts()
                await self.db.execute(text("""
                  INSERT INTO stats(total_unicorns, total_revenue,
                                    unique_customers, space_radius,
                                    recorded_at)
                  VALUES (:total_unicorns, :total_revenue,
                          :unique_customers, :space_radius, :recorded_at)
                """), snap)
        return snap
