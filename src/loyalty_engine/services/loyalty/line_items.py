"""Order line-item helpers shared by intake, redemption detection and audit."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional, Set

from loyalty_engine.models import LoyaltyOffer


SKIP_NO_VARIATION = "no_variation"
SKIP_ZERO_QUANTITY = "zero_quantity"
SKIP_FREE_ITEM = "fully_discounted_to_zero"
SKIP_REWARD_REDEMPTION = "loyalty_reward_redemption"
SKIP_NOT_QUALIFYING = "variation_not_qualifying"


def money_amount(value: Any) -> Optional[int]:
    """Return the integer ``amount`` of a money object, or ``None`` when absent."""

    if not isinstance(value, Mapping):
        return None
    amount = value.get("amount")
    if amount is None:
        return None
    try:
        return int(amount)
    except (TypeError, ValueError):
        return None


def line_quantity(line_item: Mapping[str, Any]) -> int:
    raw = line_item.get("quantity")
    try:
        return int(float(raw)) if raw is not None else 0
    except (TypeError, ValueError):
        return 0


def unit_price_cents(line_item: Mapping[str, Any]) -> int:
    return money_amount(line_item.get("base_price_money")) or 0


def gross_amount(line_item: Mapping[str, Any]) -> int:
    gross = money_amount(line_item.get("gross_sales_money"))
    if gross is not None:
        return gross
    return unit_price_cents(line_item) * line_quantity(line_item)


def net_amount(line_item: Mapping[str, Any]) -> int:
    total = money_amount(line_item.get("total_money"))
    if total is not None:
        return total
    return gross_amount(line_item) - (money_amount(line_item.get("total_discount_money")) or 0)


def is_free_item(line_item: Mapping[str, Any]) -> bool:
    """A line is free when it had a price but was discounted to exactly zero.

    The rule does not care which discount produced the zero: a loyalty reward
    and a third-party coupon are both excluded from counting.
    """

    return gross_amount(line_item) > 0 and net_amount(line_item) == 0


def build_discount_map(order: Mapping[str, Any], our_discount_ids: Set[str]) -> Dict[str, bool]:
    """Map each applied order discount uid to whether it is one of our reward discounts."""

    mapping: Dict[str, bool] = {}
    for discount in order.get("discounts") or []:
        if not isinstance(discount, Mapping):
            continue
        uid = discount.get("uid")
        if not uid:
            continue
        if (money_amount(discount.get("applied_money")) or 0) <= 0:
            continue
        mapping[uid] = discount.get("catalog_object_id") in our_discount_ids
    return mapping


def uses_reward_discount(line_item: Mapping[str, Any], discount_map: Mapping[str, bool]) -> bool:
    for applied in line_item.get("applied_discounts") or []:
        if isinstance(applied, Mapping) and discount_map.get(applied.get("discount_uid")):
            return True
    return False


@dataclass
class LineItemDecision:
    uid: Optional[str]
    variation_id: Optional[str]
    quantity: int
    unit_price_cents: int
    offer: Optional[LoyaltyOffer] = None
    skip_reason: Optional[str] = None

    @property
    def eligible(self) -> bool:
        return self.skip_reason is None and self.offer is not None

    def as_skip(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "variation_id": self.variation_id,
            "quantity": self.quantity,
            "reason": self.skip_reason,
        }


def classify_line_item(
    line_item: Mapping[str, Any],
    *,
    variation_offers: Mapping[str, LoyaltyOffer],
    discount_map: Mapping[str, bool],
) -> LineItemDecision:
    """Decide whether one line item counts toward an offer."""

    variation_id = line_item.get("catalog_object_id")
    decision = LineItemDecision(
        uid=line_item.get("uid"),
        variation_id=variation_id,
        quantity=line_quantity(line_item),
        unit_price_cents=unit_price_cents(line_item),
    )
    if not variation_id:
        decision.skip_reason = SKIP_NO_VARIATION
    elif decision.quantity <= 0:
        decision.skip_reason = SKIP_ZERO_QUANTITY
    elif is_free_item(line_item):
        decision.skip_reason = SKIP_FREE_ITEM
    elif uses_reward_discount(line_item, discount_map):
        decision.skip_reason = SKIP_REWARD_REDEMPTION
    else:
        decision.offer = variation_offers.get(variation_id)
        if decision.offer is None:
            decision.skip_reason = SKIP_NOT_QUALIFYING
    return decision


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def order_timestamp(order: Mapping[str, Any]) -> Optional[datetime]:
    return parse_timestamp(order.get("closed_at")) or parse_timestamp(order.get("created_at"))


def order_variation_ids(order: Mapping[str, Any]) -> list[str]:
    return [
        item["catalog_object_id"]
        for item in order.get("line_items") or []
        if isinstance(item, Mapping) and item.get("catalog_object_id")
    ]


def has_qualifying_items(order: Mapping[str, Any], qualifying_ids: Iterable[str]) -> bool:
    wanted = set(qualifying_ids)
    return any(variation_id in wanted for variation_id in order_variation_ids(order))


__all__ = [
    "LineItemDecision",
    "SKIP_FREE_ITEM",
    "SKIP_NOT_QUALIFYING",
    "SKIP_NO_VARIATION",
    "SKIP_REWARD_REDEMPTION",
    "SKIP_ZERO_QUANTITY",
    "build_discount_map",
    "classify_line_item",
    "gross_amount",
    "has_qualifying_items",
    "is_free_item",
    "line_quantity",
    "money_amount",
    "net_amount",
    "order_timestamp",
    "order_variation_ids",
    "parse_timestamp",
    "unit_price_cents",
    "uses_reward_discount",
]
