from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from loyalty_engine.models import (
    LoyaltyAuditAction,
    LoyaltyAuditEvent,
    LoyaltyOffer,
    LoyaltyProcessedOrder,
    LoyaltyRedemption,
    ProcessedOrderResult,
)
from loyalty_engine.services.loyalty import (
    AuditWindow,
    BackfillOptions,
    CatchupOptions,
    LoyaltyReconciliationService,
    OrderIntakeService,
    OrderProcessingResult,
)

from pos_fakes import line_item, make_order


class _FlakyIntake:
    def __init__(self, failing_order_id: str) -> None:
        self.failing_order_id = failing_order_id
        self.seen: list[str] = []

    async def process_order(self, order, merchant_id, **kwargs):
        self.seen.append(order["id"])
        if order["id"] == self.failing_order_id:
            raise RuntimeError("database unavailable")
        return OrderProcessingResult(order_id=order["id"], purchase_event_ids=[uuid4()])


class _DuplicateClaimIntake(OrderIntakeService):
    async def process_order(self, order, merchant_id, **kwargs):
        if order["id"] == "ORDER-2":
            self._db.add(
                LoyaltyProcessedOrder(
                    merchant_id=merchant_id,
                    order_id="ORDER-1",
                    result_type=ProcessedOrderResult.PENDING,
                    source="backfill",
                )
            )
            await self._db.flush()
        return await super().process_order(order, merchant_id, **kwargs)


@pytest.mark.asyncio
async def test_backfill_isolates_per_order_failures(session_factory, gateway, fake_pos, program) -> None:
    for order_id in ("ORDER-1", "ORDER-2"):
        fake_pos.orders[order_id] = make_order(order_id, [line_item("VAR-1", 1, 1500)], customer_id="CUST-1")
    intake = _FlakyIntake("ORDER-2")

    async with session_factory() as session:
        summary = await LoyaltyReconciliationService(session, gateway, intake=intake).run_backfill(
            program.merchant_id, BackfillOptions(days=7)
        )

    assert intake.seen == ["ORDER-1", "ORDER-2"]
    assert summary["orders_processed"] == 2
    assert summary["loyalty_purchases_recorded"] == 1
    assert summary["errors"] == [{"order_id": "ORDER-2", "error": "database unavailable"}]
    assert summary["diagnostics"]["qualifying_variation_ids_configured"] == 2


@pytest.mark.asyncio
async def test_backfill_identifies_customers_through_loyalty_accounts(session_factory, gateway, fake_pos, program) -> None:
    fake_pos.orders["ORDER-1"] = make_order("ORDER-1", [line_item("VAR-1", 4, 1500)])
    fake_pos.orders["ORDER-2"] = make_order("ORDER-2", [line_item("VAR-2", 1, 1800)])
    fake_pos.loyalty_events.append(
        {
            "id": "EVT-1",
            "type": "ACCUMULATE_POINTS",
            "loyalty_account_id": "ACC-1",
            "accumulate_points": {"order_id": "ORDER-1", "points": 4},
        }
    )
    fake_pos.loyalty_accounts["ACC-1"] = {"id": "ACC-1", "customer_id": "CUST-5"}

    async with session_factory() as session:
        summary = await LoyaltyReconciliationService(session, gateway).run_backfill(program.merchant_id)

    assert summary["orders_processed"] == 2
    assert summary["orders_with_customer"] == 1
    assert summary["orders_with_qualifying_items"] == 2
    assert summary["loyalty_purchases_recorded"] == 1
    assert summary["diagnostics"]["prefetched_orders"] == 1
    assert summary["diagnostics"]["prefetched_accounts"] == 1
    assert summary["diagnostics"]["sample_orders_without_customer"][0]["order_id"] == "ORDER-2"

    async with session_factory() as session:
        intake = OrderIntakeService(session, gateway)
        assert await intake.is_order_tracked(program.merchant_id, "ORDER-1")
        assert not await intake.is_order_tracked(program.merchant_id, "ORDER-2")
        actions = (await session.execute(select(LoyaltyAuditEvent.action))).scalars().all()
        assert LoyaltyAuditAction.BACKFILL_RUN in actions


@pytest.mark.asyncio
async def test_backfill_prefetch_avoids_per_order_lookups(session_factory, gateway, fake_pos, program) -> None:
    for index in range(1, 6):
        order_id = f"ORDER-{index}"
        fake_pos.orders[order_id] = make_order(order_id, [line_item("VAR-1", 1, 1500)])
        fake_pos.loyalty_events.append(
            {
                "id": f"EVT-{index}",
                "type": "ACCUMULATE_POINTS",
                "loyalty_account_id": "ACC-1",
                "accumulate_points": {"order_id": order_id, "points": 1},
            }
        )
    fake_pos.loyalty_accounts["ACC-1"] = {"id": "ACC-1", "customer_id": "CUST-5"}

    async with session_factory() as session:
        summary = await LoyaltyReconciliationService(session, gateway).run_backfill(program.merchant_id)

    assert len(fake_pos.calls_to("POST", "/loyalty/events/search")) == 1
    assert len(fake_pos.calls_to("GET", "/loyalty/accounts")) == 1
    assert fake_pos.calls_to("POST", "/customers/search") == []
    assert summary["customers_found_via_prefetch"] == 5
    assert summary["orders_with_customer"] == 5
    assert summary["loyalty_purchases_recorded"] == 5


@pytest.mark.asyncio
async def test_backfill_leaves_non_qualifying_orders_untouched(session_factory, gateway, fake_pos, program) -> None:
    fake_pos.orders["ORDER-1"] = make_order("ORDER-1", [line_item("VAR-99", 2, 900)], customer_id="CUST-1")
    fake_pos.orders["ORDER-2"] = make_order("ORDER-2", [line_item("VAR-1", 1, 1500)], customer_id="CUST-1")

    async with session_factory() as session:
        summary = await LoyaltyReconciliationService(session, gateway).run_backfill(program.merchant_id)

    assert summary["orders_processed"] == 2
    assert summary["orders_with_qualifying_items"] == 1
    assert [entry["order_id"] for entry in summary["results"]] == ["ORDER-2"]

    async with session_factory() as session:
        intake = OrderIntakeService(session, gateway)
        assert not await intake.is_order_tracked(program.merchant_id, "ORDER-1")
        assert await intake.is_order_tracked(program.merchant_id, "ORDER-2")


@pytest.mark.asyncio
async def test_backfill_recovers_session_after_database_error(session_factory, gateway, fake_pos, program) -> None:
    for order_id in ("ORDER-1", "ORDER-2", "ORDER-3"):
        fake_pos.orders[order_id] = make_order(order_id, [line_item("VAR-1", 1, 1500)], customer_id="CUST-1")

    async with session_factory() as session:
        intake = _DuplicateClaimIntake(session, gateway, issue_rewards=False)
        summary = await LoyaltyReconciliationService(session, gateway, intake=intake).run_backfill(
            program.merchant_id, BackfillOptions(days=7)
        )

    assert [error["order_id"] for error in summary["errors"]] == ["ORDER-2"]
    assert summary["loyalty_purchases_recorded"] == 2

    async with session_factory() as session:
        tracked = OrderIntakeService(session, gateway)
        assert await tracked.is_order_tracked(program.merchant_id, "ORDER-1")
        assert not await tracked.is_order_tracked(program.merchant_id, "ORDER-2")
        assert await tracked.is_order_tracked(program.merchant_id, "ORDER-3")
        actions = (await session.execute(select(LoyaltyAuditEvent.action))).scalars().all()
        assert LoyaltyAuditAction.BACKFILL_RUN in actions


@pytest.mark.asyncio
async def test_catchup_tracks_missed_orders_for_known_customers(session_factory, gateway, fake_pos, program) -> None:
    tracked = make_order("ORDER-1", [line_item("VAR-1", 2, 1500)], customer_id="CUST-1")
    async with session_factory() as session:
        await OrderIntakeService(session, gateway).process_order(tracked, program.merchant_id)

    fake_pos.orders["ORDER-1"] = tracked
    fake_pos.orders["ORDER-2"] = make_order("ORDER-2", [line_item("VAR-1", 3, 1500)], customer_id="CUST-1")
    fake_pos.orders["ORDER-3"] = make_order("ORDER-3", [line_item("VAR-1", 5, 1500)], customer_id="CUST-OTHER")

    async with session_factory() as session:
        summary = await LoyaltyReconciliationService(session, gateway).run_catchup(
            program.merchant_id, CatchupOptions(period_days=30, max_customers=10)
        )

    assert summary["customers_processed"] == 1
    assert summary["orders_found"] == 2
    assert summary["orders_already_tracked"] == 1
    assert summary["orders_newly_tracked"] == 1
    assert summary["errors"] == []


@pytest.mark.asyncio
async def test_catchup_reports_search_failures(session_factory, gateway, fake_pos, program) -> None:
    fake_pos.fail("POST", "/orders/search", status=403)

    async with session_factory() as session:
        summary = await LoyaltyReconciliationService(session, gateway).run_catchup(
            program.merchant_id, CatchupOptions(customer_ids=["CUST-1"])
        )

    assert summary["customers_processed"] == 1
    assert summary["errors"][0]["customer_id"] == "CUST-1"


def test_analyze_order_adds_redeemed_items_once() -> None:
    offer = LoyaltyOffer(id=uuid4(), offer_name="Large Bag", brand_name="Acme", size_group="large")
    reward_id = uuid4()
    order = make_order(
        "ORDER-1",
        [
            line_item("VAR-1", 2, 1500, uid="paid"),
            line_item("VAR-2", 1, 1800, total=0, uid="free"),
            line_item(None, 1, 300, uid="custom"),
        ],
        customer_id="CUST-1",
        tenders=[{"type": "CARD", "receipt_url": "https://receipts.test/1"}],
    )
    free_redemption = LoyaltyRedemption(reward_id=reward_id, redeemed_variation_id="VAR-2", redeemed_value_cents=1800)
    discount_redemption = LoyaltyRedemption(reward_id=reward_id, redeemed_variation_id="VAR-9", redeemed_value_cents=900)

    analysis = LoyaltyReconciliationService.analyze_order(
        order,
        {"VAR-1": offer, "VAR-2": offer},
        {},
        {"ORDER-1": [free_redemption, discount_redemption]},
    )

    assert analysis["total_qualifying_qty"] == 2
    assert analysis["can_be_added"]
    assert analysis["receipt_url"] == "https://receipts.test/1"
    reasons = [(item["variation_id"], item["skip_reason"]) for item in analysis["non_qualifying_items"]]
    assert reasons == [("VAR-2", "free_item"), (None, "no_variation_id"), ("VAR-9", "redeemed_reward")]
    assert analysis["non_qualifying_items"][-1]["reward_id"] == str(reward_id)


def test_analyze_order_marks_tracked_orders() -> None:
    order = make_order("ORDER-1", [line_item("VAR-1", 2, 1500)])

    analysis = LoyaltyReconciliationService.analyze_order(
        order, {"VAR-1": LoyaltyOffer(id=uuid4())}, {"ORDER-1": "order"}, {}
    )

    assert analysis["is_already_tracked"]
    assert analysis["customer_source"] == "order"
    assert not analysis["can_be_added"]


def test_audit_window_bounds() -> None:
    now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

    recent = AuditWindow(start_months_ago=0, end_months_ago=3)
    assert recent.bounds(now) == (datetime(2025, 12, 1, tzinfo=timezone.utc), now)

    older = AuditWindow(start_months_ago=3, end_months_ago=6)
    start, end = older.bounds(now)
    assert start == datetime(2025, 9, 1, tzinfo=timezone.utc)
    assert end == datetime(2025, 12, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)
    assert older.has_more_history
    assert not AuditWindow(start_months_ago=12, end_months_ago=18).has_more_history

    trailing = AuditWindow(days=30)
    assert trailing.bounds(now)[0] == datetime(2026, 2, 13, 12, 0, tzinfo=timezone.utc)
    assert not trailing.is_chunked


@pytest.mark.asyncio
async def test_order_history_and_manual_additions(session_factory, gateway, fake_pos, program) -> None:
    tracked = make_order("ORDER-1", [line_item("VAR-1", 2, 1500)], customer_id="CUST-1")
    async with session_factory() as session:
        await OrderIntakeService(session, gateway).process_order(tracked, program.merchant_id)
    fake_pos.orders["ORDER-1"] = tracked
    fake_pos.orders["ORDER-2"] = make_order("ORDER-2", [line_item("VAR-1", 3, 1500)], customer_id="CUST-1")
    fake_pos.orders["ORDER-3"] = make_order("ORDER-3", [line_item("VAR-1", 1, 1500)], customer_id="CUST-2")

    async with session_factory() as session:
        history = await LoyaltyReconciliationService(session, gateway).get_customer_order_history(
            program.merchant_id, "CUST-1", days=30
        )

    assert history["period_days"] == 30
    assert history["summary"] == {
        "total_orders": 2,
        "already_tracked": 1,
        "can_be_added": 1,
        "total_qualifying_qty_available": 3,
    }

    async with session_factory() as session:
        outcome = await LoyaltyReconciliationService(session, gateway).add_orders_to_tracking(
            program.merchant_id, "CUST-1", ["ORDER-1", "ORDER-2", "ORDER-3", "ORDER-404"]
        )

    assert outcome["processed"][0]["order_id"] == "ORDER-2"
    assert outcome["processed"][0]["purchases_recorded"] == 1
    assert outcome["skipped"] == [
        {"order_id": "ORDER-1", "reason": "already_tracked"},
        {"order_id": "ORDER-3", "reason": "different_customer"},
    ]
    assert [error["order_id"] for error in outcome["errors"]] == ["ORDER-404"]
