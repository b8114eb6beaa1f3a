"""Single entry point that turns a POS order into loyalty progress."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models import (
    CustomerSource,
    LoyaltyProcessedOrder,
    LoyaltyPurchaseEvent,
    ProcessedOrderResult,
)
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.loyalty.customer_cache import CustomerCacheService
from loyalty_engine.services.loyalty.identification import (
    CustomerIdentificationService,
    PrefetchedLoyaltyData,
)
from loyalty_engine.services.loyalty.issuance import RewardIssuanceManager
from loyalty_engine.services.loyalty.line_items import (
    build_discount_map,
    classify_line_item,
    line_quantity,
    money_amount,
    order_timestamp,
    parse_timestamp,
    unit_price_cents,
)
from loyalty_engine.services.loyalty.offers import OfferCatalog
from loyalty_engine.services.loyalty.progress import Clock, ProgressService, utcnow
from loyalty_engine.services.loyalty.redemption import RedemptionService, order_customer_id
from loyalty_engine.services.loyalty.results import OrderProcessingResult, ProgressUpdate, RefundResult
from loyalty_engine.services.pos.gateway import PosGateway


def _payment_type(order: Mapping[str, Any]) -> Optional[str]:
    for tender in order.get("tenders") or []:
        if isinstance(tender, Mapping) and tender.get("type"):
            return tender["type"]
    return None


def _receipt_url(order: Mapping[str, Any]) -> Optional[str]:
    for tender in order.get("tenders") or []:
        if isinstance(tender, Mapping) and tender.get("receipt_url"):
            return tender["receipt_url"]
    return None


def returned_line_items(order: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    items: List[Mapping[str, Any]] = []
    for order_return in order.get("returns") or []:
        if isinstance(order_return, Mapping):
            items.extend(item for item in order_return.get("return_line_items") or [] if isinstance(item, Mapping))
    return items


class OrderIntakeService:
    """Claim, classify and record an order exactly once.

    Live webhooks, backfill, catchup and manual audit additions all go through
    :meth:`process_order`, so every path shares the same idempotency claim.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        gateway: PosGateway,
        *,
        clock: Clock | None = None,
        issue_rewards: bool = True,
    ) -> None:
        self._db = db_session
        self._gateway = gateway
        self._clock = clock or utcnow
        self._issue_rewards = issue_rewards
        self._offers = OfferCatalog(db_session)
        self._progress = ProgressService(db_session, clock=self._clock)
        self._observability = get_loyalty_store()

    async def is_order_tracked(self, merchant_id: UUID, order_id: str) -> bool:
        claimed = (
            await self._db.execute(
                select(LoyaltyProcessedOrder.id).where(
                    LoyaltyProcessedOrder.merchant_id == merchant_id,
                    LoyaltyProcessedOrder.order_id == order_id,
                )
            )
        ).first()
        if claimed is not None:
            return True
        recorded = (
            await self._db.execute(
                select(LoyaltyPurchaseEvent.id).where(
                    LoyaltyPurchaseEvent.merchant_id == merchant_id,
                    LoyaltyPurchaseEvent.order_id == order_id,
                )
            )
        ).first()
        return recorded is not None

    async def process_order(
        self,
        order: Mapping[str, Any],
        merchant_id: UUID,
        *,
        source: str = "webhook",
        customer_id: str | None = None,
        customer_source: CustomerSource | None = None,
        prefetched: PrefetchedLoyaltyData | None = None,
    ) -> OrderProcessingResult:
        order_id = order.get("id")
        result = OrderProcessingResult(order_id=order_id)
        log = logger.bind(merchant_id=str(merchant_id), order_id=order_id, source=source)

        if not order_id:
            result.success = False
            result.status = "invalid"
            result.error = "Order payload has no id"
            return result

        if not await self._offers.is_loyalty_enabled(merchant_id):
            log.info("Loyalty disabled for merchant, skipping order")
            result.status = "skipped"
            result.details["reason"] = "loyalty_disabled"
            return result

        if await self.is_order_tracked(merchant_id, order_id):
            log.debug("Order already processed for loyalty")
            result.status = "already_processed"
            return result

        if customer_id:
            method = customer_source or CustomerSource.ORDER
        else:
            identification = await CustomerIdentificationService(self._db, self._gateway, merchant_id).identify(
                order, prefetched=prefetched
            )
            result.details["identification_attempts"] = identification.attempts
            if not identification.found:
                result.status = "no_customer"
                return result
            customer_id, method = identification.customer_id, identification.method
        result.customer_id = customer_id
        result.customer_source = method.value

        line_items = [item for item in order.get("line_items") or [] if isinstance(item, Mapping)]
        claim = LoyaltyProcessedOrder(
            merchant_id=merchant_id,
            order_id=order_id,
            customer_id=customer_id,
            result_type=ProcessedOrderResult.PENDING,
            qualifying_items=0,
            total_line_items=len(line_items),
            source=source,
        )
        self._db.add(claim)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            log.warning("Detected race when claiming order for loyalty")
            result.status = "already_processed"
            return result

        if not line_items:
            claim.result_type = ProcessedOrderResult.NO_LINE_ITEMS
            await self._db.commit()
            result.status = "no_line_items"
            return result

        variation_offers = await self._offers.variation_offer_map(merchant_id)
        discount_map = build_discount_map(order, await self._offers.our_discount_ids(merchant_id))
        purchased_at = order_timestamp(order) or self._clock()
        triggered_by = source.upper()
        progress_by_offer: Dict[UUID, ProgressUpdate] = {}
        qualifying = 0

        for line_item in line_items:
            decision = classify_line_item(line_item, variation_offers=variation_offers, discount_map=discount_map)
            self._observability.record_qualification(decision.skip_reason or "qualifying")
            logger.bind(category="loyalty.qualification").debug(
                "Line item evaluated",
                merchant_id=str(merchant_id),
                order_id=order_id,
                variation_id=decision.variation_id,
                quantity=decision.quantity,
                decision=decision.skip_reason or "qualifying",
            )
            if not decision.eligible:
                result.skipped_items.append(decision.as_skip())
                continue

            qualifying += 1
            try:
                async with self._db.begin_nested():
                    event, progress = await self._progress.record_purchase(
                        merchant_id,
                        decision.offer,
                        customer_id=customer_id,
                        order_id=order_id,
                        variation_id=decision.variation_id,
                        quantity=decision.quantity,
                        unit_price_cents=decision.unit_price_cents,
                        purchased_at=purchased_at,
                        location_id=order.get("location_id"),
                        customer_source=method,
                        receipt_url=_receipt_url(order),
                        payment_type=_payment_type(order),
                        triggered_by=triggered_by,
                    )
            except Exception as exc:
                log.error("Failed to record loyalty purchase", variation_id=decision.variation_id, error=str(exc))
                result.errors.append({"variation_id": decision.variation_id, "error": str(exc)})
                continue

            if event is not None:
                result.purchase_event_ids.append(event.id)
            result.earned_reward_ids.extend(progress.earned_reward_ids)
            previous = progress_by_offer.get(progress.offer_id)
            if previous is not None:
                progress.quantity_before = previous.quantity_before
                progress.earned_reward_ids = previous.earned_reward_ids + progress.earned_reward_ids
            progress_by_offer[progress.offer_id] = progress

        result.progress = list(progress_by_offer.values())

        claim.qualifying_items = qualifying
        claim.result_type = ProcessedOrderResult.QUALIFYING if qualifying else ProcessedOrderResult.NON_QUALIFYING
        await self._db.commit()
        if result.errors:
            result.success = False
            result.error = f"{len(result.errors)} line item(s) failed"
        log.info(
            "Processed order for loyalty",
            customer_id=customer_id,
            qualifying_items=qualifying,
            purchases_recorded=len(result.purchase_event_ids),
            rewards_earned=len(result.earned_reward_ids),
        )

        await self._after_commit(merchant_id, customer_id, result)
        return result

    async def _after_commit(self, merchant_id: UUID, customer_id: str, result: OrderProcessingResult) -> None:
        if self._issue_rewards and result.earned_reward_ids:
            issuer = RewardIssuanceManager(self._db, self._gateway)
            issued = []
            for reward_id in result.earned_reward_ids:
                issuance = await issuer.issue_reward(reward_id)
                issued.append(issuance.as_dict())
            result.details["issuance"] = issued
        try:
            await CustomerCacheService(self._db, self._gateway).update_stats(merchant_id, customer_id)
            await self._db.commit()
        except Exception as exc:
            await self._db.rollback()
            logger.warning(
                "Failed to update cached customer stats",
                merchant_id=str(merchant_id),
                customer_id=customer_id,
                error=str(exc),
            )

    # Refunds

    async def process_order_refunds(
        self,
        order: Mapping[str, Any],
        merchant_id: UUID,
        *,
        customer_id: str | None = None,
    ) -> RefundResult:
        """Apply every completed refund carried on ``order``."""

        order_id = order.get("id")
        refunds = [refund for refund in order.get("refunds") or [] if isinstance(refund, Mapping)]
        if not refunds:
            return RefundResult(order_id=order_id, details={"reason": "no_refunds"})
        fallback_items = returned_line_items(order) if len(refunds) == 1 else []
        combined = RefundResult(order_id=order_id)
        for refund in refunds:
            outcome = await self.process_refund(
                refund,
                merchant_id,
                order_id=order_id,
                customer_id=customer_id or order_customer_id(order),
                fallback_items=fallback_items,
                location_id=order.get("location_id"),
            )
            combined.refund_event_ids.extend(outcome.refund_event_ids)
            combined.revoked_reward_ids.extend(outcome.revoked_reward_ids)
            combined.skipped_items.extend(outcome.skipped_items)
            combined.errors.extend(outcome.errors)
            if not outcome.success and outcome.error:
                combined.success = False
                combined.error = outcome.error
        return combined

    async def process_refund(
        self,
        refund: Mapping[str, Any],
        merchant_id: UUID,
        *,
        order_id: str | None = None,
        customer_id: str | None = None,
        fallback_items: List[Mapping[str, Any]] | None = None,
        location_id: str | None = None,
    ) -> RefundResult:
        """Record negative purchase events for one completed refund."""

        order_id = order_id or refund.get("order_id")
        result = RefundResult(order_id=order_id)
        log = logger.bind(merchant_id=str(merchant_id), order_id=order_id, refund_id=refund.get("id"))

        if refund.get("status") != "COMPLETED":
            result.details["reason"] = "refund_not_completed"
            return result
        if not await self._offers.is_loyalty_enabled(merchant_id):
            result.details["reason"] = "loyalty_disabled"
            return result
        if not customer_id:
            customer_id = await self._customer_for_order(merchant_id, order_id)
        if not customer_id or not order_id:
            result.success = False
            result.error = "no_customer"
            return result

        items = [item for item in refund.get("return_line_items") or [] if isinstance(item, Mapping)]
        items = items or list(fallback_items or [])
        refunded_at = parse_timestamp(refund.get("created_at")) or self._clock()
        for item in items:
            variation_id = item.get("catalog_object_id")
            quantity = line_quantity(item)
            if not variation_id or quantity <= 0:
                result.skipped_items.append({"variation_id": variation_id, "reason": "no_variation"})
                continue
            offer = await self._offers.offer_for_variation(merchant_id, variation_id)
            if offer is None:
                result.skipped_items.append({"variation_id": variation_id, "reason": "variation_not_qualifying"})
                continue
            if unit_price_cents(item) > 0 and money_amount(item.get("total_money")) == 0:
                log.info("Skipping refund of free item", variation_id=variation_id)
                result.skipped_items.append(
                    {"variation_id": variation_id, "reason": "free_item_refund_no_adjustment_needed"}
                )
                continue
            try:
                async with self._db.begin_nested():
                    event, revoked, _ = await self._progress.process_refund(
                        merchant_id,
                        offer,
                        customer_id=customer_id,
                        order_id=order_id,
                        variation_id=variation_id,
                        quantity=quantity,
                        unit_price_cents=unit_price_cents(item),
                        refunded_at=refunded_at,
                        refund_id=refund.get("id"),
                        location_id=location_id or refund.get("location_id"),
                    )
            except Exception as exc:
                log.error("Failed to process refund line item", variation_id=variation_id, error=str(exc))
                result.errors.append({"variation_id": variation_id, "error": str(exc)})
                continue
            if event is not None:
                result.refund_event_ids.append(event.id)
            result.revoked_reward_ids.extend(revoked)

        await self._db.commit()
        log.info(
            "Processed refund for loyalty",
            customer_id=customer_id,
            refund_events=len(result.refund_event_ids),
            revoked_rewards=len(result.revoked_reward_ids),
        )

        if result.revoked_reward_ids:
            redemption = RedemptionService(self._db, self._gateway)
            result.details["cleanup"] = [
                (await redemption.cleanup(reward_id)).as_dict() for reward_id in result.revoked_reward_ids
            ]
        return result

    async def _customer_for_order(self, merchant_id: UUID, order_id: str | None) -> Optional[str]:
        if not order_id:
            return None
        stmt = select(LoyaltyProcessedOrder.customer_id).where(
            LoyaltyProcessedOrder.merchant_id == merchant_id,
            LoyaltyProcessedOrder.order_id == order_id,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()


__all__ = ["OrderIntakeService", "returned_line_items"]
