from __future__ import annotations

from loyalty_engine.models import LoyaltyOffer
from loyalty_engine.services.loyalty.line_items import (
    SKIP_FREE_ITEM,
    SKIP_NO_VARIATION,
    SKIP_NOT_QUALIFYING,
    SKIP_REWARD_REDEMPTION,
    SKIP_ZERO_QUANTITY,
    build_discount_map,
    classify_line_item,
    has_qualifying_items,
    is_free_item,
    order_timestamp,
)

from pos_fakes import line_item, make_order


def _offer() -> LoyaltyOffer:
    return LoyaltyOffer(offer_name="Large Bag", required_quantity=10, window_months=12)


def test_qualifying_line_counts_toward_offer() -> None:
    offer = _offer()

    decision = classify_line_item(
        line_item("VAR-1", 2, 1500),
        variation_offers={"VAR-1": offer},
        discount_map={},
    )

    assert decision.eligible
    assert decision.offer is offer
    assert decision.quantity == 2
    assert decision.unit_price_cents == 1500


def test_fully_discounted_line_is_excluded_regardless_of_discount_source() -> None:
    item = line_item("VAR-1", 1, 1500, total=0, applied_discounts=["coupon-uid"])

    decision = classify_line_item(item, variation_offers={"VAR-1": _offer()}, discount_map={"coupon-uid": False})

    assert is_free_item(item)
    assert decision.skip_reason == SKIP_FREE_ITEM
    assert not decision.eligible


def test_partial_reward_discount_is_excluded() -> None:
    order = {
        "discounts": [
            {"uid": "reward-uid", "catalog_object_id": "DISC-1", "applied_money": {"amount": 500}},
            {"uid": "promo-uid", "catalog_object_id": "DISC-OTHER", "applied_money": {"amount": 100}},
        ]
    }
    discount_map = build_discount_map(order, {"DISC-1"})
    assert discount_map == {"reward-uid": True, "promo-uid": False}

    rewarded = classify_line_item(
        line_item("VAR-1", 1, 1500, total=1000, applied_discounts=["reward-uid"]),
        variation_offers={"VAR-1": _offer()},
        discount_map=discount_map,
    )
    promoted = classify_line_item(
        line_item("VAR-1", 1, 1500, total=1400, applied_discounts=["promo-uid"]),
        variation_offers={"VAR-1": _offer()},
        discount_map=discount_map,
    )

    assert rewarded.skip_reason == SKIP_REWARD_REDEMPTION
    assert promoted.eligible


def test_skip_reasons_for_unusable_lines() -> None:
    offers = {"VAR-1": _offer()}

    no_variation = classify_line_item(line_item(None, 1, 1500), variation_offers=offers, discount_map={})
    zero_quantity = classify_line_item(line_item("VAR-1", 0, 1500), variation_offers=offers, discount_map={})
    unknown = classify_line_item(line_item("VAR-9", 1, 1500), variation_offers=offers, discount_map={})

    assert no_variation.skip_reason == SKIP_NO_VARIATION
    assert zero_quantity.skip_reason == SKIP_ZERO_QUANTITY
    assert unknown.skip_reason == SKIP_NOT_QUALIFYING
    assert unknown.as_skip()["variation_id"] == "VAR-9"


def test_order_helpers() -> None:
    order = make_order("ORDER-1", [line_item("VAR-1", 1, 1500), line_item(None, 1, 200)])

    assert has_qualifying_items(order, ["VAR-1"])
    assert not has_qualifying_items(order, ["VAR-2"])
    assert order_timestamp(order).tzinfo is not None
