from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from loyalty_engine.models import LoyaltyRedemption, LoyaltyReward, RedemptionType, RewardStatus
from loyalty_engine.services.loyalty import OrderIntakeService, RedemptionService, RewardIssuanceManager
from loyalty_engine.services.loyalty.issuance import reward_note_line
from loyalty_engine.services.loyalty.redemption import (
    METHOD_DISCOUNT_AMOUNT,
    METHOD_DISCOUNT_ID,
    METHOD_FREE_ITEM,
    strip_note_line,
)

from pos_fakes import line_item, make_order


async def _reward(session_factory, program, *, issue_with=None):
    async with session_factory() as session:
        reward = LoyaltyReward(
            merchant_id=program.merchant_id,
            offer_id=program.offer_id,
            customer_id="CUST-1",
            status=RewardStatus.EARNED,
            required_quantity=10,
            earned_at=datetime.now(timezone.utc),
        )
        session.add(reward)
        await session.commit()
        reward_id = reward.id
    if issue_with is not None:
        async with session_factory() as session:
            result = await RewardIssuanceManager(session, issue_with).issue_reward(reward_id)
            assert result.success
    return reward_id


@pytest.mark.asyncio
async def test_discount_id_match_redeems_and_cleans_up(session_factory, gateway, fake_pos, program) -> None:
    fake_pos.add_customer("CUST-1", note="VIP")
    reward_id = await _reward(session_factory, program, issue_with=gateway)
    async with session_factory() as session:
        discount_id = (await session.get(LoyaltyReward, reward_id)).pos_discount_id
    assert reward_note_line("Large Bag") in fake_pos.customers["CUST-1"]["note"]

    order = make_order(
        "ORDER-9",
        [line_item("VAR-2", 1, 1800, total=0, applied_discounts=["reward-uid"])],
        customer_id="CUST-1",
        discounts=[{"uid": "reward-uid", "catalog_object_id": discount_id, "applied_money": {"amount": 1800}}],
    )

    async with session_factory() as session:
        detection = await RedemptionService(session, gateway).detect_redemption(order, program.merchant_id)

    assert detection.detected
    assert detection.reward_id == reward_id
    assert detection.detection_method == METHOD_DISCOUNT_ID
    assert detection.cleanup.success
    assert detection.cleanup.deleted_group
    assert detection.cleanup.note_updated
    assert fake_pos.groups == {}
    assert fake_pos.catalog == {}
    assert fake_pos.customers["CUST-1"]["note"] == "VIP"

    async with session_factory() as session:
        reward = await session.get(LoyaltyReward, reward_id)
        assert reward.status == RewardStatus.REDEEMED
        assert reward.redeemed_at is not None
        assert reward.pos_discount_id is None
        redemption = (await session.execute(select(LoyaltyRedemption))).scalar_one()
        assert redemption.order_id == "ORDER-9"
        assert redemption.redemption_type == RedemptionType.AUTO_DETECTED
        assert redemption.redeemed_value_cents == 1800
        assert redemption.redeemed_variation_id == "VAR-2"


@pytest.mark.asyncio
async def test_cleanup_tolerates_objects_already_gone(session_factory, gateway, fake_pos, program) -> None:
    fake_pos.add_customer("CUST-1")
    reward_id = await _reward(session_factory, program, issue_with=gateway)
    fake_pos.groups.clear()
    fake_pos.customers["CUST-1"]["group_ids"].clear()

    async with session_factory() as session:
        result = await RedemptionService(session, gateway).cleanup(reward_id)

    assert result.success
    assert result.removed_member and result.deleted_group and result.deleted_catalog_objects

    async with session_factory() as session:
        assert not (await session.get(LoyaltyReward, reward_id)).is_issued


@pytest.mark.asyncio
async def test_cleanup_keeps_ids_when_pos_fails(session_factory, gateway, fake_pos, program) -> None:
    fake_pos.add_customer("CUST-1")
    reward_id = await _reward(session_factory, program, issue_with=gateway)
    fake_pos.fail("POST", "/catalog/batch-delete", status=400)

    async with session_factory() as session:
        result = await RedemptionService(session, gateway).cleanup(reward_id)

    assert not result.success
    assert result.errors[0].startswith("delete_catalog")

    async with session_factory() as session:
        assert (await session.get(LoyaltyReward, reward_id)).pos_discount_id is not None


@pytest.mark.asyncio
async def test_free_item_fallback_without_discount_id(session_factory, gateway, fake_pos, program) -> None:
    fake_pos.add_customer("CUST-1")
    reward_id = await _reward(session_factory, program)
    order = make_order("ORDER-9", [line_item("VAR-2", 1, 1800, total=0)], customer_id="CUST-1")

    async with session_factory() as session:
        detection = await RedemptionService(session, gateway).detect_redemption(order, program.merchant_id)

    assert detection.detected
    assert detection.reward_id == reward_id
    assert detection.detection_method == METHOD_FREE_ITEM
    assert detection.details["redeemed_value_cents"] == 1800


@pytest.mark.asyncio
async def test_discount_amount_fallback(session_factory, gateway, fake_pos, program) -> None:
    fake_pos.add_customer("CUST-1")
    async with session_factory() as session:
        processed = await OrderIntakeService(session, gateway, issue_rewards=False).process_order(
            make_order("ORDER-1", [line_item("VAR-1", 10, 1500)], customer_id="CUST-1"), program.merchant_id
        )
    [reward_id] = processed.earned_reward_ids

    order = make_order("ORDER-9", [line_item("VAR-1", 2, 1500, total=1500)], customer_id="CUST-1")
    async with session_factory() as session:
        detection = await RedemptionService(session, gateway).detect_redemption(order, program.merchant_id)

    assert detection.reward_id == reward_id
    assert detection.detection_method == METHOD_DISCOUNT_AMOUNT


@pytest.mark.asyncio
async def test_dry_run_reports_without_redeeming(session_factory, gateway, program) -> None:
    reward_id = await _reward(session_factory, program)
    order = make_order("ORDER-9", [line_item("VAR-1", 1, 1500, total=0)], customer_id="CUST-1")

    async with session_factory() as session:
        detection = await RedemptionService(session, gateway).detect_redemption(
            order, program.merchant_id, dry_run=True
        )

    assert detection.detected
    assert detection.details["dry_run"]
    assert detection.redemption_id is None

    async with session_factory() as session:
        assert (await session.get(LoyaltyReward, reward_id)).status == RewardStatus.EARNED
        assert (await session.execute(select(LoyaltyRedemption))).first() is None


@pytest.mark.asyncio
async def test_orders_without_reward_usage_are_not_redemptions(session_factory, gateway, program) -> None:
    await _reward(session_factory, program)
    order = make_order("ORDER-9", [line_item("VAR-1", 1, 1500)], customer_id="CUST-1")

    async with session_factory() as session:
        detection = await RedemptionService(session, gateway).detect_redemption(order, program.merchant_id)

    assert not detection.detected
    assert detection.success


@pytest.mark.asyncio
async def test_manual_redeem_rejects_non_earned_rewards(session_factory, gateway, fake_pos, program) -> None:
    fake_pos.add_customer("CUST-1")
    reward_id = await _reward(session_factory, program)

    async with session_factory() as session:
        service = RedemptionService(session, gateway)
        first = await service.redeem_reward(reward_id)
        second = await service.redeem_reward(reward_id)

    assert first.detected
    assert first.detection_method == RedemptionType.MANUAL_ADMIN.value
    assert not second.success
    assert second.error == "reward_not_earned"


def test_strip_note_line_collapses_blank_lines() -> None:
    line = reward_note_line("Large Bag")
    assert strip_note_line(f"VIP\n\n{line}\n\n\nCall first", line) == "VIP\n\nCall first"
