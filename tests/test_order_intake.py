from __future__ import annotations

import pytest
from sqlalchemy import select

from loyalty_engine.models import (
    CustomerSource,
    LoyaltyAuditAction,
    LoyaltyAuditEvent,
    LoyaltyCustomer,
    LoyaltyProcessedOrder,
    LoyaltyPurchaseEvent,
    LoyaltyReward,
    ProcessedOrderResult,
    RewardStatus,
)
from loyalty_engine.services.loyalty import OrderIntakeService, ProgressService

from pos_fakes import line_item, make_order, seed_program


async def _events(session, merchant_id):
    stmt = (
        select(LoyaltyPurchaseEvent)
        .where(LoyaltyPurchaseEvent.merchant_id == merchant_id)
        .order_by(LoyaltyPurchaseEvent.idempotency_key)
    )
    return list((await session.execute(stmt)).scalars().all())


@pytest.mark.asyncio
async def test_threshold_crossing_splits_the_boundary_purchase(session_factory, gateway, program) -> None:
    async with session_factory() as session:
        intake = OrderIntakeService(session, gateway, issue_rewards=False)

        first = await intake.process_order(
            make_order("ORDER-1", [line_item("VAR-1", 9, 1500)], customer_id="CUST-1"), program.merchant_id
        )
        assert first.status == "processed"
        assert first.customer_source == CustomerSource.ORDER.value
        assert first.progress[0].current_quantity == 9
        assert not first.reward_earned

        second = await intake.process_order(
            make_order("ORDER-2", [line_item("VAR-1", 3, 1500)], customer_id="CUST-1"), program.merchant_id
        )

    assert len(second.earned_reward_ids) == 1
    assert second.progress[0].quantity_before == 9
    assert second.progress[0].current_quantity == 2

    async with session_factory() as session:
        rewards = list((await session.execute(select(LoyaltyReward))).scalars().all())
        assert len(rewards) == 1
        reward = rewards[0]
        assert reward.status == RewardStatus.EARNED
        assert reward.customer_id == "CUST-1"

        events = {event.idempotency_key: event for event in await _events(session, program.merchant_id)}
        assert events["ORDER-1:VAR-1:9"].reward_id == reward.id
        parent = events["ORDER-2:VAR-1:3"]
        assert parent.superseded
        assert parent.reward_id is None

        locked = events[f"ORDER-2:VAR-1:3:split_locked:{reward.id}"]
        excess = events[f"ORDER-2:VAR-1:3:split_excess:{reward.id}"]
        assert (locked.quantity, locked.reward_id, locked.original_event_id) == (1, reward.id, parent.id)
        assert (excess.quantity, excess.reward_id, excess.original_event_id) == (2, None, parent.id)

        progress = ProgressService(session)
        assert await progress.locked_quantity(reward.id) == 10
        summary = await progress.get_summary(program.merchant_id, "CUST-1", program.offer_id)
        assert summary.current_quantity == 2
        assert summary.has_earned_reward
        assert summary.earned_reward_id == reward.id
        assert summary.total_lifetime_purchases == 12

        actions = (await session.execute(select(LoyaltyAuditEvent.action))).scalars().all()
        assert actions.count(LoyaltyAuditAction.PURCHASE_RECORDED) == 2
        assert actions.count(LoyaltyAuditAction.REWARD_EARNED) == 1

        customer = (await session.execute(select(LoyaltyCustomer))).scalar_one()
        assert customer.total_orders == 2
        assert customer.has_active_rewards


@pytest.mark.asyncio
async def test_reprocessing_an_order_is_idempotent(session_factory, gateway, program) -> None:
    order = make_order("ORDER-1", [line_item("VAR-1", 2, 1500)], customer_id="CUST-1")

    async with session_factory() as session:
        intake = OrderIntakeService(session, gateway, issue_rewards=False)
        first = await intake.process_order(order, program.merchant_id)
        again = await intake.process_order(order, program.merchant_id, source="backfill")

    assert first.status == "processed"
    assert again.already_processed
    assert again.purchase_event_ids == []

    async with session_factory() as session:
        assert len(await _events(session, program.merchant_id)) == 1
        claim = (await session.execute(select(LoyaltyProcessedOrder))).scalar_one()
        assert claim.result_type == ProcessedOrderResult.QUALIFYING
        assert claim.qualifying_items == 1
        assert claim.source == "webhook"


@pytest.mark.asyncio
async def test_disabled_merchant_records_nothing(session_factory, gateway) -> None:
    async with session_factory() as session:
        disabled = await seed_program(session, loyalty_enabled="false")

    async with session_factory() as session:
        result = await OrderIntakeService(session, gateway).process_order(
            make_order("ORDER-1", [line_item("VAR-1", 2, 1500)], customer_id="CUST-1"), disabled.merchant_id
        )

    assert result.status == "skipped"
    assert result.details["reason"] == "loyalty_disabled"

    async with session_factory() as session:
        assert (await session.execute(select(LoyaltyProcessedOrder))).first() is None
        assert await _events(session, disabled.merchant_id) == []


@pytest.mark.asyncio
async def test_orders_without_customer_are_left_unclaimed(session_factory, gateway, fake_pos, program) -> None:
    order = make_order("ORDER-1", [line_item("VAR-1", 2, 1500)])

    async with session_factory() as session:
        result = await OrderIntakeService(session, gateway).process_order(order, program.merchant_id)

    assert result.status == "no_customer"
    assert [attempt["step"] for attempt in result.details["identification_attempts"]] == [
        "from_order",
        "from_tenders",
        "from_loyalty_event",
        "from_reward_discount",
        "from_fulfillment",
    ]

    async with session_factory() as session:
        assert (await session.execute(select(LoyaltyProcessedOrder))).first() is None

    # A later pass that can identify the customer still processes the order.
    fake_pos.add_customer("CUST-7", phone_number="5555550100", given_name="Riley")
    order["fulfillments"] = [{"pickup_details": {"recipient": {"phone_number": "(555) 555-0100"}}}]

    async with session_factory() as session:
        retried = await OrderIntakeService(session, gateway, issue_rewards=False).process_order(
            order, program.merchant_id
        )

    assert retried.status == "processed"
    assert retried.customer_id == "CUST-7"
    assert retried.customer_source == CustomerSource.FULFILLMENT.value


@pytest.mark.asyncio
async def test_non_qualifying_and_free_lines_are_reported(session_factory, gateway, program) -> None:
    order = make_order(
        "ORDER-1",
        [
            line_item("VAR-1", 1, 1500, total=0, uid="free"),
            line_item("OTHER", 1, 900, uid="other"),
        ],
        customer_id="CUST-1",
    )

    async with session_factory() as session:
        result = await OrderIntakeService(session, gateway).process_order(order, program.merchant_id)

    assert result.purchase_event_ids == []
    assert [item["reason"] for item in result.skipped_items] == [
        "fully_discounted_to_zero",
        "variation_not_qualifying",
    ]

    async with session_factory() as session:
        claim = (await session.execute(select(LoyaltyProcessedOrder))).scalar_one()
        assert claim.result_type == ProcessedOrderResult.NON_QUALIFYING
        assert claim.total_line_items == 2


@pytest.mark.asyncio
async def test_orders_without_line_items_are_claimed(session_factory, gateway, program) -> None:
    async with session_factory() as session:
        result = await OrderIntakeService(session, gateway).process_order(
            make_order("ORDER-1", [], customer_id="CUST-1"), program.merchant_id
        )
        tracked = await OrderIntakeService(session, gateway).is_order_tracked(program.merchant_id, "ORDER-1")

    assert result.status == "no_line_items"
    assert tracked


@pytest.mark.asyncio
async def test_failed_line_item_does_not_discard_the_rest_of_the_order(
    session_factory, gateway, program, monkeypatch
) -> None:
    original = ProgressService.record_purchase

    async def record_purchase(self, merchant_id, offer, **kwargs):
        if kwargs["variation_id"] == "VAR-2":
            self._db.add(
                LoyaltyProcessedOrder(
                    merchant_id=merchant_id,
                    order_id=kwargs["order_id"],
                    result_type=ProcessedOrderResult.PENDING,
                    source="duplicate",
                )
            )
            await self._db.flush()
        return await original(self, merchant_id, offer, **kwargs)

    monkeypatch.setattr(ProgressService, "record_purchase", record_purchase)
    order = make_order(
        "ORDER-1",
        [line_item("VAR-1", 2, 1500, uid="kept"), line_item("VAR-2", 1, 1800, uid="broken")],
        customer_id="CUST-1",
    )

    async with session_factory() as session:
        result = await OrderIntakeService(session, gateway, issue_rewards=False).process_order(order, program.merchant_id)

    assert not result.success
    assert len(result.purchase_event_ids) == 1
    assert [error["variation_id"] for error in result.errors] == ["VAR-2"]

    async with session_factory() as session:
        events = await _events(session, program.merchant_id)
        assert [event.variation_id for event in events] == ["VAR-1"]
        claims = (await session.execute(select(LoyaltyProcessedOrder))).scalars().all()
        assert [(claim.order_id, claim.result_type) for claim in claims] == [
            ("ORDER-1", ProcessedOrderResult.QUALIFYING)
        ]


@pytest.mark.asyncio
async def test_losing_the_claim_race_reports_already_processed(
    session_factory, gateway, program, monkeypatch
) -> None:
    async with session_factory() as session:
        session.add(
            LoyaltyProcessedOrder(
                merchant_id=program.merchant_id,
                order_id="ORDER-1",
                customer_id="CUST-1",
                result_type=ProcessedOrderResult.PENDING,
                source="webhook",
            )
        )
        await session.commit()

    async def not_tracked(self, merchant_id, order_id):
        return False

    monkeypatch.setattr(OrderIntakeService, "is_order_tracked", not_tracked)

    async with session_factory() as session:
        result = await OrderIntakeService(session, gateway).process_order(
            make_order("ORDER-1", [line_item("VAR-1", 3, 1500)], customer_id="CUST-1"), program.merchant_id
        )

    assert result.success
    assert result.status == "already_processed"
    assert result.purchase_event_ids == []

    async with session_factory() as session:
        assert await _events(session, program.merchant_id) == []
        claims = (await session.execute(select(LoyaltyProcessedOrder))).scalars().all()
        assert len(claims) == 1
