from __future__ import annotations
import logging
from typing import Any, Dict

from .fulfillment import space_radius
from .infra.timings import timeit
from .model.store import UnicornStore

logger = logging.getLogger(__name__)


async def current_totals(store: UnicornStore) -> Dict[str, int]:
    async with timeit("store.compute_totals"):
        return await store.compute_totals()


async def record_snapshot(store: UnicornStore) -> Dict[str, Any]:
    """Recompute the aggregates and append one snapshot row."""
    totals = await current_totals(store)
    async with timeit("store.append_snapshot"):
        snap = await store.append_snapshot(totals, space_radius)
    logger.info("stats: %d unicorns, revenue %d, %d customers, "
                "space radius %.1f", snap["total_unicorns"],
                snap["total_revenue"], snap["unique_customers"],
                snap["space_radius"])
    return snap
