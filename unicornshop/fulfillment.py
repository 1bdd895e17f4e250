"""Turns a paid order into concrete unicorn rows.

Each unicorn gets a fresh uuid, a palette color and a spot in the "space"
around the origin. The spot is drawn from a shell whose radius grows with
the cube root of the population, so the herd spreads out as it grows.
"""
from __future__ import annotations
import json
import logging
import math
import random
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .helpers import now_ts

logger = logging.getLogger(__name__)

# closed palette: color name -> color code
PALETTE: Dict[str, str] = {
    "Pink": "#ff69b4",
    "Cyan": "#00ffff",
    "Magenta": "#ff00ff",
    "Yellow": "#ffff00",
    "Green": "#00ff00",
    "Orange": "#ff4500",
    "Purple": "#8a2be2",
    "Deep Pink": "#ff1493",
    "Sky Blue": "#00bfff",
    "Lime": "#32cd32",
    "Gold": "#ffd700",
    "Tomato": "#ff6347",
}

BASE_RADIUS = 20
RADIUS_STEP = 15

Rand = Callable[[], float]


def color_hex(color_name: str) -> Optional[str]:
    # None for anything outside the palette; callers decide what that means
    return PALETTE.get(color_name)


def space_radius(total_unicorns: int) -> float:
    return BASE_RADIUS + total_unicorns ** (1 / 3) * RADIUS_STEP


@dataclass(frozen=True)
class LineItem:
    color: str
    quantity: int

    def to_dict(self) -> dict:
        return {"color": self.color, "quantity": self.quantity}


@dataclass(frozen=True)
class PaidOrder:
    payment_intent_id: str
    base_name: str
    user_session: str
    line_items: Tuple[LineItem, ...] = field(default_factory=tuple)

    @property
    def total_unicorns(self) -> int:
        return sum(li.quantity for li in self.line_items)


def line_items_from_json(raw: str | None) -> Tuple[LineItem, ...]:
    """Decode a stored/metadata line-item list, skipping malformed entries."""
    try:
        items = json.loads(raw or "[]")
    except json.JSONDecodeError:
        logger.warning("unreadable line items: %r", raw)
        return ()
    out = []
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        qty = item.get("quantity")
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            logger.warning("dropping line item with bad quantity: %r", item)
            continue
        out.append(LineItem(color=str(item.get("color", "")), quantity=qty))
    return tuple(out)


def line_items_to_json(items) -> str:
    return json.dumps([li.to_dict() for li in items])


def unit_names(base_name: str, quantity: int) -> List[str]:
    if quantity == 1:
        return [base_name]
    return [f"{base_name} {i + 1}" for i in range(quantity)]


def generate_position(
        count: int, rand: Rand = random.random
) -> Tuple[float, float, float]:
    """Place unicorn number `count` (0-based) in space."""
    expansion = math.pow(count + 1, 1 / 3)
    max_radius = BASE_RADIUS + expansion * RADIUS_STEP

    radius = BASE_RADIUS + rand() * max_radius
    theta = rand() * math.pi * 2
    phi = rand() * math.pi

    return (
        radius * math.sin(phi) * math.cos(theta),
        radius * math.cos(phi) + rand() * 50 - 25,
        radius * math.sin(phi) * math.sin(theta),
    )


def build_unicorns(order: PaidOrder, existing: int,
                   rand: Rand = random.random,
                   created_at: float | None = None) -> List[dict]:
    """One row per ordered item; `existing` is the population before."""
    created_at = now_ts() if created_at is None else created_at
    counter = existing
    rows: List[dict] = []
    for item in order.line_items:
        hex_code = color_hex(item.color)
        if hex_code is None:
            logger.warning("payment %s: color %r not in palette, "
                           "storing without color code",
                           order.payment_intent_id, item.color)
        for name in unit_names(order.base_name, item.quantity):
            x, y, z = generate_position(counter, rand)
            rows.append({
                "id": str(uuid.uuid4()),
                "name": name,
                "color_name": item.color,
                "color_hex": hex_code,
                "position_x": x,
                "position_y": y,
                "position_z": z,
                "initial_rotation": rand() * math.pi * 2,
                "created_at": created_at,
                "payment_intent_id": order.payment_intent_id,
                "user_session": order.user_session,
            })
            counter += 1
    return rows
