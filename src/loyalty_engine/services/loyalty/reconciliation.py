"""Backfill, catchup and audit: reconcile loyalty state against POS order history."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import select, union
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.settings import settings
from loyalty_engine.models import (
    CustomerSource,
    LoyaltyAuditAction,
    LoyaltyOffer,
    LoyaltyPurchaseEvent,
    LoyaltyRedemption,
    LoyaltyReward,
)
from loyalty_engine.services.loyalty.audit_log import AuditLogService
from loyalty_engine.services.loyalty.identification import CustomerIdentificationService, PrefetchedLoyaltyData
from loyalty_engine.services.loyalty.line_items import (
    has_qualifying_items,
    line_quantity,
    money_amount,
    order_variation_ids,
    unit_price_cents,
)
from loyalty_engine.services.loyalty.offers import OfferCatalog
from loyalty_engine.services.loyalty.order_intake import OrderIntakeService
from loyalty_engine.services.loyalty.progress import Clock, utcnow
from loyalty_engine.services.pos.gateway import PosApiError, PosGateway

MAX_SAMPLE_VARIATIONS = 10
MAX_SAMPLE_ORDERS_WITHOUT_CUSTOMER = 3


@dataclass
class BackfillOptions:
    days: int = field(default_factory=lambda: settings.loyalty_backfill_days)
    location_ids: Optional[List[str]] = None
    use_prefetch: bool = True


@dataclass
class CatchupOptions:
    customer_ids: Optional[List[str]] = None
    period_days: int = field(default_factory=lambda: settings.loyalty_catchup_period_days)
    max_customers: int = field(default_factory=lambda: settings.loyalty_catchup_max_customers)


@dataclass
class AuditWindow:
    """Either a trailing number of days or a chunk counted in whole months back."""

    days: Optional[int] = None
    start_months_ago: Optional[int] = None
    end_months_ago: Optional[int] = None

    @property
    def is_chunked(self) -> bool:
        return self.start_months_ago is not None and self.end_months_ago is not None

    @property
    def has_more_history(self) -> bool:
        return self.is_chunked and self.end_months_ago < settings.loyalty_audit_max_months

    def bounds(self, now: datetime) -> Tuple[datetime, datetime]:
        if not self.is_chunked:
            days = self.days or settings.loyalty_audit_default_days
            return now - timedelta(days=days), now
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        start = _shift_months(month_start, -self.end_months_ago)
        if self.start_months_ago == 0:
            end = now
        else:
            end = _shift_months(month_start, -self.start_months_ago + 1) - timedelta(microseconds=1)
        return start, end


def _shift_months(first_of_month: datetime, months: int) -> datetime:
    index = first_of_month.month - 1 + months
    return first_of_month.replace(year=first_of_month.year + index // 12, month=index % 12 + 1)


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class LoyaltyReconciliationService:
    """Batch paths that feed missed orders back through :class:`OrderIntakeService`."""

    def __init__(
        self,
        db_session: AsyncSession,
        gateway: PosGateway,
        *,
        intake: OrderIntakeService | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._db = db_session
        self._gateway = gateway
        self._clock = clock or utcnow
        self._intake = intake or OrderIntakeService(db_session, gateway, clock=self._clock)
        self._offers = OfferCatalog(db_session)
        self._audit = AuditLogService(db_session)

    async def _search_orders(
        self,
        merchant_id: UUID,
        *,
        location_ids: Sequence[str],
        start: datetime,
        end: datetime,
        customer_ids: Sequence[str] | None = None,
        context: str,
    ) -> AsyncIterator[Dict[str, Any]]:
        cursor: Optional[str] = None
        while True:
            payload = await self._gateway.search_orders(
                merchant_id,
                location_ids=location_ids,
                customer_ids=customer_ids,
                closed_at_start=_iso(start),
                closed_at_end=_iso(end),
                cursor=cursor,
                context=context,
            )
            for order in payload.get("orders") or []:
                if isinstance(order, dict):
                    yield order
            cursor = payload.get("cursor")
            if not cursor:
                break

    # Prefetch

    async def prefetch_recent_loyalty_events(self, merchant_id: UUID, days: int) -> PrefetchedLoyaltyData:
        """Collect recent point accruals so batch identification needs no per-order lookups."""

        data = PrefetchedLoyaltyData()
        start = _iso(self._clock() - timedelta(days=days))
        cursor: Optional[str] = None
        while True:
            payload = await self._gateway.search_loyalty_events(
                merchant_id,
                types=["ACCUMULATE_POINTS"],
                created_at_start=start,
                cursor=cursor,
                limit=settings.loyalty_prefetch_page_size,
                context="backfill-prefetch",
            )
            for event in payload.get("events") or []:
                if not isinstance(event, Mapping):
                    continue
                data.events_scanned += 1
                order_id = (event.get("accumulate_points") or {}).get("order_id") or event.get("order_id")
                if order_id and event.get("loyalty_account_id"):
                    data.by_order_id[order_id] = dict(event)
            cursor = payload.get("cursor")
            if not cursor:
                break

        accounts = {event["loyalty_account_id"] for event in data.by_order_id.values()}
        for account_id in sorted(accounts):
            try:
                account = await self._gateway.retrieve_loyalty_account(
                    merchant_id, account_id, context="backfill-prefetch"
                )
            except PosApiError as exc:
                logger.warning(
                    "Failed to resolve loyalty account during prefetch",
                    merchant_id=str(merchant_id),
                    account_id=account_id,
                    status=exc.status,
                )
                continue
            if account and account.get("customer_id"):
                data.account_to_customer[account_id] = account["customer_id"]

        logger.info(
            "Prefetched loyalty events",
            merchant_id=str(merchant_id),
            events=data.events_scanned,
            orders=len(data.by_order_id),
            accounts=len(data.account_to_customer),
        )
        return data

    # Backfill

    async def run_backfill(self, merchant_id: UUID, options: BackfillOptions | None = None) -> Dict[str, Any]:
        options = options or BackfillOptions()
        now = self._clock()
        start = now - timedelta(days=options.days)
        summary: Dict[str, Any] = {
            "merchant_id": str(merchant_id),
            "days": options.days,
            "orders_processed": 0,
            "orders_with_customer": 0,
            "customers_found_via_prefetch": 0,
            "orders_with_qualifying_items": 0,
            "loyalty_purchases_recorded": 0,
            "results": [],
            "errors": [],
        }

        prefetched: PrefetchedLoyaltyData | None = None
        if options.use_prefetch:
            try:
                prefetched = await self.prefetch_recent_loyalty_events(merchant_id, options.days)
            except PosApiError as exc:
                logger.warning(
                    "Loyalty prefetch failed, continuing without it",
                    merchant_id=str(merchant_id),
                    error=str(exc),
                )
        prefetch_stats = prefetched or PrefetchedLoyaltyData()

        qualifying_ids = await self._offers.qualifying_variation_ids(merchant_id)
        location_ids = options.location_ids or await self._offers.active_location_ids(merchant_id)
        sample_variations: List[str] = []
        sample_without_customer: List[Dict[str, Any]] = []
        identifier = CustomerIdentificationService(self._db, self._gateway, merchant_id)

        for location_id in location_ids:
            try:
                async for order in self._search_orders(
                    merchant_id, location_ids=[location_id], start=start, end=now, context="backfill"
                ):
                    summary["orders_processed"] += 1
                    for variation_id in order_variation_ids(order):
                        if len(sample_variations) < MAX_SAMPLE_VARIATIONS and variation_id not in sample_variations:
                            sample_variations.append(variation_id)
                    try:
                        await self._backfill_order(
                            merchant_id, order, prefetched, identifier, qualifying_ids, summary, sample_without_customer
                        )
                    except Exception as exc:
                        await self._db.rollback()
                        logger.error(
                            "Backfill failed for order",
                            merchant_id=str(merchant_id),
                            order_id=order.get("id"),
                            error=str(exc),
                        )
                        summary["errors"].append({"order_id": order.get("id"), "error": str(exc)})
            except PosApiError as exc:
                summary["errors"].append({"location_id": location_id, "error": str(exc)})

        summary["diagnostics"] = {
            "qualifying_variation_ids_configured": len(qualifying_ids),
            "sample_variation_ids_in_orders": sample_variations,
            "sample_orders_without_customer": sample_without_customer,
            "prefetched_events": prefetch_stats.events_scanned,
            "prefetched_orders": len(prefetch_stats.by_order_id),
            "prefetched_accounts": len(prefetch_stats.account_to_customer),
        }
        self._audit.record(
            merchant_id,
            LoyaltyAuditAction.BACKFILL_RUN,
            triggered_by="BACKFILL",
            details={key: value for key, value in summary.items() if key not in {"results", "errors"}}
            | {"error_count": len(summary["errors"])},
        )
        await self._db.commit()
        logger.bind(summary={key: value for key, value in summary.items() if key != "results"}).info(
            "Loyalty backfill finished"
        )
        return summary

    async def _backfill_order(
        self,
        merchant_id: UUID,
        order: Dict[str, Any],
        prefetched: PrefetchedLoyaltyData | None,
        identifier: CustomerIdentificationService,
        qualifying_ids: List[str],
        summary: Dict[str, Any],
        sample_without_customer: List[Dict[str, Any]],
    ) -> None:
        order_id = order.get("id")
        if not has_qualifying_items(order, qualifying_ids):
            return
        summary["orders_with_qualifying_items"] += 1

        identification = await identifier.identify(order, prefetched=prefetched)
        if not identification.found:
            if len(sample_without_customer) < MAX_SAMPLE_ORDERS_WITHOUT_CUSTOMER:
                sample_without_customer.append(
                    {"order_id": order_id, "closed_at": order.get("closed_at"), "location_id": order.get("location_id")}
                )
            summary["results"].append({"order_id": order_id, "status": "no_customer"})
            return
        summary["orders_with_customer"] += 1
        if identification.attempts and identification.attempts[-1].get("step") == "prefetch":
            summary["customers_found_via_prefetch"] += 1

        result = await self._intake.process_order(
            order,
            merchant_id,
            source="backfill",
            customer_id=identification.customer_id,
            customer_source=identification.method,
            prefetched=prefetched,
        )
        summary["loyalty_purchases_recorded"] += len(result.purchase_event_ids)
        summary["results"].append(
            {
                "order_id": order_id,
                "status": result.status,
                "purchases_recorded": len(result.purchase_event_ids),
                "rewards_earned": len(result.earned_reward_ids),
            }
        )

    # Catchup

    async def _known_customers(self, merchant_id: UUID, limit: int) -> List[str]:
        stmt = union(
            select(LoyaltyPurchaseEvent.customer_id).where(LoyaltyPurchaseEvent.merchant_id == merchant_id),
            select(LoyaltyReward.customer_id).where(LoyaltyReward.merchant_id == merchant_id),
        )
        customers = sorted({row[0] for row in (await self._db.execute(stmt)).all() if row[0]})
        return customers[:limit]

    async def run_catchup(self, merchant_id: UUID, options: CatchupOptions | None = None) -> Dict[str, Any]:
        """Walk known customers' order histories for orders live processing missed."""

        options = options or CatchupOptions()
        now = self._clock()
        start = now - timedelta(days=options.period_days)
        customer_ids = options.customer_ids or await self._known_customers(merchant_id, options.max_customers)
        location_ids = await self._offers.active_location_ids(merchant_id)
        summary: Dict[str, Any] = {
            "merchant_id": str(merchant_id),
            "customers_processed": 0,
            "orders_found": 0,
            "orders_already_tracked": 0,
            "orders_newly_tracked": 0,
            "errors": [],
        }

        for customer_id in customer_ids:
            summary["customers_processed"] += 1
            try:
                async for order in self._search_orders(
                    merchant_id,
                    location_ids=location_ids,
                    customer_ids=[customer_id],
                    start=start,
                    end=now,
                    context="catchup",
                ):
                    summary["orders_found"] += 1
                    order_id = order.get("id")
                    if await self._intake.is_order_tracked(merchant_id, order_id):
                        summary["orders_already_tracked"] += 1
                        continue
                    try:
                        result = await self._intake.process_order(
                            order,
                            merchant_id,
                            source="catchup",
                            customer_id=customer_id,
                            customer_source=CustomerSource.LOYALTY_LOOKUP,
                        )
                    except Exception as exc:
                        await self._db.rollback()
                        summary["errors"].append({"customer_id": customer_id, "order_id": order_id, "error": str(exc)})
                        continue
                    if result.status == "processed":
                        summary["orders_newly_tracked"] += 1
                    elif result.already_processed:
                        summary["orders_already_tracked"] += 1
            except PosApiError as exc:
                logger.warning("Catchup order search failed", merchant_id=str(merchant_id), customer_id=customer_id)
                summary["errors"].append({"customer_id": customer_id, "error": str(exc)})

        self._audit.record(
            merchant_id,
            LoyaltyAuditAction.CATCHUP_RUN,
            triggered_by="CATCHUP",
            details={key: value for key, value in summary.items() if key != "errors"}
            | {"error_count": len(summary["errors"]), "period_days": options.period_days},
        )
        await self._db.commit()
        logger.bind(summary=summary).info("Loyalty catchup finished")
        return summary

    # Audit

    async def get_customer_order_history(
        self,
        merchant_id: UUID,
        customer_id: str,
        *,
        days: int | None = None,
        start_months_ago: int | None = None,
        end_months_ago: int | None = None,
    ) -> Dict[str, Any]:
        """Read-only analysis of a customer's orders, for operator review."""

        window = AuditWindow(days=days, start_months_ago=start_months_ago, end_months_ago=end_months_ago)
        start, end = window.bounds(self._clock())
        location_ids = await self._offers.active_location_ids(merchant_id)
        if not location_ids:
            raise ValueError("No active locations found for merchant")

        variation_offers = await self._offers.variation_offer_map(merchant_id)
        tracked = await self._tracked_orders(merchant_id, customer_id)
        redemptions = await self._redemptions_by_order(merchant_id, customer_id)
        rewards = (
            await self._db.execute(
                select(LoyaltyReward)
                .where(LoyaltyReward.merchant_id == merchant_id, LoyaltyReward.customer_id == customer_id)
                .order_by(LoyaltyReward.earned_at.desc())
            )
        ).scalars().all()

        orders: List[Dict[str, Any]] = []
        async for order in self._search_orders(
            merchant_id,
            location_ids=location_ids,
            customer_ids=[customer_id],
            start=start,
            end=end,
            context="audit",
        ):
            orders.append(self.analyze_order(order, variation_offers, tracked, redemptions))

        addable = [order for order in orders if order["can_be_added"]]
        response: Dict[str, Any] = {
            "customer_id": customer_id,
            "date_range": {"start": _iso(start), "end": _iso(end)},
            "current_rewards": [
                {
                    "reward_id": str(reward.id),
                    "offer_id": str(reward.offer_id),
                    "status": reward.status.value,
                    "earned_at": reward.earned_at.isoformat() if reward.earned_at else None,
                }
                for reward in rewards
            ],
            "summary": {
                "total_orders": len(orders),
                "already_tracked": sum(1 for order in orders if order["is_already_tracked"]),
                "can_be_added": len(addable),
                "total_qualifying_qty_available": sum(order["total_qualifying_qty"] for order in addable),
            },
            "orders": orders,
        }
        if window.is_chunked:
            response["chunk"] = {"start_months_ago": start_months_ago, "end_months_ago": end_months_ago}
            response["has_more_history"] = window.has_more_history
        else:
            response["period_days"] = days or settings.loyalty_audit_default_days
        return response

    @staticmethod
    def analyze_order(
        order: Mapping[str, Any],
        variation_offers: Mapping[str, LoyaltyOffer],
        tracked: Mapping[str, Optional[str]],
        redemptions: Mapping[str, List[LoyaltyRedemption]],
    ) -> Dict[str, Any]:
        order_id = order.get("id")
        qualifying: List[Dict[str, Any]] = []
        non_qualifying: List[Dict[str, Any]] = []
        for line_item in order.get("line_items") or []:
            variation_id = line_item.get("catalog_object_id")
            base = unit_price_cents(line_item)
            total = money_amount(line_item.get("total_money"))
            total = base if total is None else total
            is_free = base > 0 and total == 0
            item = {
                "uid": line_item.get("uid"),
                "variation_id": variation_id,
                "name": line_item.get("name"),
                "quantity": line_quantity(line_item),
                "unit_price_cents": base,
                "total_money_cents": total,
                "is_free": is_free,
            }
            offer = variation_offers.get(variation_id) if variation_id else None
            if offer is not None and not is_free:
                item["offer"] = {
                    "id": str(offer.id),
                    "name": offer.offer_name,
                    "brand_name": offer.brand_name,
                    "size_group": offer.size_group,
                }
                qualifying.append(item)
            else:
                if is_free:
                    item["skip_reason"] = "free_item"
                else:
                    item["skip_reason"] = "no_matching_offer" if variation_id else "no_variation_id"
                non_qualifying.append(item)

        for redemption in redemptions.get(order_id, []):
            already_free = any(
                item["skip_reason"] == "free_item" and item["variation_id"] == redemption.redeemed_variation_id
                for item in non_qualifying
            )
            if already_free:
                continue
            non_qualifying.append(
                {
                    "uid": None,
                    "variation_id": redemption.redeemed_variation_id,
                    "name": "Redeemed Item",
                    "quantity": 1,
                    "unit_price_cents": redemption.redeemed_value_cents or 0,
                    "total_money_cents": 0,
                    "is_free": True,
                    "skip_reason": "redeemed_reward",
                    "reward_id": str(redemption.reward_id),
                }
            )

        total_qualifying = sum(item["quantity"] for item in qualifying)
        is_tracked = order_id in tracked
        receipt_url = next(
            (tender.get("receipt_url") for tender in order.get("tenders") or [] if tender.get("receipt_url")), None
        )
        return {
            "order_id": order_id,
            "order_customer_id": order.get("customer_id"),
            "customer_source": tracked.get(order_id) if is_tracked else None,
            "closed_at": order.get("closed_at"),
            "location_id": order.get("location_id"),
            "receipt_url": receipt_url,
            "is_already_tracked": is_tracked,
            "can_be_added": not is_tracked and total_qualifying > 0,
            "qualifying_items": qualifying,
            "non_qualifying_items": non_qualifying,
            "total_qualifying_qty": total_qualifying,
            "order_total": order.get("total_money"),
        }

    async def _tracked_orders(self, merchant_id: UUID, customer_id: str) -> Dict[str, Optional[str]]:
        stmt = (
            select(LoyaltyPurchaseEvent.order_id, LoyaltyPurchaseEvent.customer_source)
            .where(LoyaltyPurchaseEvent.merchant_id == merchant_id, LoyaltyPurchaseEvent.customer_id == customer_id)
            .order_by(LoyaltyPurchaseEvent.created_at.asc())
        )
        tracked: Dict[str, Optional[str]] = {}
        for order_id, source in (await self._db.execute(stmt)).all():
            tracked.setdefault(order_id, source.value if source is not None else None)
        return tracked

    async def _redemptions_by_order(self, merchant_id: UUID, customer_id: str) -> Dict[str, List[LoyaltyRedemption]]:
        stmt = select(LoyaltyRedemption).where(
            LoyaltyRedemption.merchant_id == merchant_id,
            LoyaltyRedemption.customer_id == customer_id,
            LoyaltyRedemption.order_id.is_not(None),
        )
        grouped: Dict[str, List[LoyaltyRedemption]] = {}
        for redemption in (await self._db.execute(stmt)).scalars().all():
            grouped.setdefault(redemption.order_id, []).append(redemption)
        return grouped

    # Manual additions

    async def add_orders_to_tracking(
        self, merchant_id: UUID, customer_id: str, order_ids: Sequence[str]
    ) -> Dict[str, Any]:
        outcome: Dict[str, Any] = {"processed": [], "skipped": [], "errors": []}
        for order_id in order_ids:
            try:
                if await self._intake.is_order_tracked(merchant_id, order_id):
                    outcome["skipped"].append({"order_id": order_id, "reason": "already_tracked"})
                    continue
                order = await self._gateway.retrieve_order(merchant_id, order_id, context="audit-add")
                if order is None:
                    outcome["errors"].append({"order_id": order_id, "error": "order_not_found"})
                    continue
                if order.get("customer_id") and order["customer_id"] != customer_id:
                    outcome["skipped"].append({"order_id": order_id, "reason": "different_customer"})
                    continue
                result = await self._intake.process_order(
                    order,
                    merchant_id,
                    source="audit",
                    customer_id=customer_id,
                    customer_source=CustomerSource.MANUAL,
                )
            except Exception as exc:
                await self._db.rollback()
                outcome["errors"].append({"order_id": order_id, "error": str(exc)})
                continue
            outcome["processed"].append(
                {
                    "order_id": order_id,
                    "status": result.status,
                    "purchases_recorded": len(result.purchase_event_ids),
                    "rewards_earned": [str(reward_id) for reward_id in result.earned_reward_ids],
                }
            )

        self._audit.record(
            merchant_id,
            LoyaltyAuditAction.ORDERS_ADDED_MANUALLY,
            customer_id=customer_id,
            triggered_by="ADMIN",
            details={
                "order_ids": list(order_ids),
                "processed": len(outcome["processed"]),
                "skipped": len(outcome["skipped"]),
                "errors": len(outcome["errors"]),
            },
        )
        await self._db.commit()
        logger.info(
            "Orders added to loyalty tracking",
            merchant_id=str(merchant_id),
            customer_id=customer_id,
            processed=len(outcome["processed"]),
        )
        return outcome


__all__ = [
    "AuditWindow",
    "BackfillOptions",
    "CatchupOptions",
    "LoyaltyReconciliationService",
]
