"""Settle payments that stayed pending.

Usage:
    python -m unicornshop.reconcile [--older-than SECONDS] [--dry-run]

Asks the gateway for the real status of every pending payment older than
the cutoff and applies it through the same guarded paths the webhook
uses, so running it twice, or alongside webhooks, is harmless.
"""
from __future__ import annotations
import argparse
import asyncio
import logging
from typing import Dict, Optional

from .config import Settings, configure_logging
from .errors import GatewayUnavailable
from .fulfillment import build_unicorns
from .gateway import PaymentAdapter, adapter_from_settings
from .helpers import now_ts
from .infra.sql import make_async_engine
from .model.orm import PENDING, SUCCEEDED, FAILED, CANCELED
from .model.store import FulfillOutcome, UnicornStore, create_schema
from .stats import record_snapshot

logger = logging.getLogger(__name__)


async def reconcile_pending(
    store: UnicornStore,
    adapter: PaymentAdapter,
    *,
    older_than: float,
    dry_run: bool = False,
    limit: int = 500,
) -> Dict[str, int]:
    counts = {"checked": 0, "fulfilled": 0, "canceled": 0, "failed": 0,
              "still_pending": 0, "errors": 0}
    cutoff = now_ts() - older_than
    fulfilled_any = False

    for row in await store.stale_pending(cutoff, limit=limit):
        counts["checked"] += 1
        pi = row["payment_intent_id"]

        if not pi:
            # the gateway call never returned an id
            logger.info("payment %s never reached the gateway; canceling",
                        row["id"])
            if not dry_run and await store.cancel_unissued(row["id"]):
                counts["canceled"] += 1
            continue

        try:
            status = await adapter.retrieve_status(pi)
        except GatewayUnavailable as e:
            counts["errors"] += 1
            logger.warning("could not fetch status of %s: %s", pi, e)
            continue

        if status == PENDING:
            counts["still_pending"] += 1
            continue
        logger.info("payment %s is %s at the gateway", pi, status)
        if dry_run:
            continue

        if status == SUCCEEDED:
            result = await store.fulfill(pi, build_unicorns)
            if result.outcome is FulfillOutcome.FULFILLED:
                counts["fulfilled"] += 1
                fulfilled_any = True
        elif status in (FAILED, CANCELED):
            if await store.mark_terminal(pi, status):
                counts[status] += 1

    if fulfilled_any:
        await record_snapshot(store)
    return counts


async def _run(settings: Settings, older_than: Optional[float],
               dry_run: bool) -> Dict[str, int]:
    adapter = adapter_from_settings(settings)
    if adapter is None:
        raise SystemExit("payment gateway not configured")

    engine, SessionAsync, gated = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )
    try:
        await create_schema(engine)
        async with SessionAsync() as session:
            store = UnicornStore(db=session, gated=gated)
            return await reconcile_pending(
                store, adapter,
                older_than=(settings.pending_ttl_seconds
                            if older_than is None else older_than),
                dry_run=dry_run,
            )
    finally:
        await engine.dispose()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        description="Reconcile pending payments with the gateway"
    )
    parser.add_argument("--older-than", type=float, default=None,
                        help="only payments pending for at least this many "
                             "seconds (default: PENDING_TTL_SECONDS)")
    parser.add_argument("--dry-run", action="store_true",
                        help="report what would change, write nothing")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    counts = asyncio.run(_run(settings, args.older_than, args.dry_run))
    print(" ".join(f"{k}={v}" for k, v in counts.items()))


if __name__ == "__main__":
    main()
