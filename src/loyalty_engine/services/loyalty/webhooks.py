"""Webhook entry points for order and refund notifications."""

from __future__ import annotations

from typing import Any, Mapping, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.services.loyalty.identification import CustomerIdentificationService
from loyalty_engine.services.loyalty.offers import OfferCatalog
from loyalty_engine.services.loyalty.order_intake import OrderIntakeService, returned_line_items
from loyalty_engine.services.loyalty.redemption import RedemptionService
from loyalty_engine.services.loyalty.results import OperationResult
from loyalty_engine.services.pos.gateway import PosGateway


def _source_order_id(order: Mapping[str, Any]) -> Optional[str]:
    for order_return in order.get("returns") or []:
        if isinstance(order_return, Mapping) and order_return.get("source_order_id"):
            return order_return["source_order_id"]
    return None


class LoyaltyWebhookService:
    """Route POS notifications into redemption detection, intake and refunds."""

    def __init__(self, db_session: AsyncSession, gateway: PosGateway) -> None:
        self._db = db_session
        self._gateway = gateway
        self._intake = OrderIntakeService(db_session, gateway)
        self._redemption = RedemptionService(db_session, gateway)
        self._offers = OfferCatalog(db_session)

    async def handle_order_event(self, merchant_id: UUID, order: Mapping[str, Any]) -> OperationResult:
        """Record purchases on a completed order, then detect a redemption on it.

        Intake runs first so our reward discount is still known when the
        redeemed line item is classified.
        """

        order_id = order.get("id")
        log = logger.bind(merchant_id=str(merchant_id), order_id=order_id)
        if order.get("state") != "COMPLETED":
            log.debug("Ignoring order webhook for non-completed order", state=order.get("state"))
            return OperationResult(details={"order_id": order_id, "reason": "order_not_completed"})
        if not await self._offers.is_loyalty_enabled(merchant_id):
            log.info("Loyalty disabled for merchant, ignoring order webhook")
            return OperationResult(details={"order_id": order_id, "reason": "loyalty_disabled"})

        identification = await CustomerIdentificationService(self._db, self._gateway, merchant_id).identify(order)
        intake = await self._intake.process_order(
            order,
            merchant_id,
            source="webhook",
            customer_id=identification.customer_id,
            customer_source=identification.method,
        )
        redemption = await self._redemption.detect_redemption(
            order, merchant_id, customer_id=identification.customer_id
        )

        result = OperationResult(
            success=intake.success and redemption.success,
            error=intake.error or redemption.error,
            details={
                "order_id": order_id,
                "customer_id": identification.customer_id,
                "customer_source": identification.method.value if identification.method else None,
                "redemption": redemption.as_dict(),
                "intake": intake.as_dict(),
            },
        )
        if order.get("refunds"):
            refunds = await self._intake.process_order_refunds(
                order, merchant_id, customer_id=identification.customer_id
            )
            result.details["refunds"] = refunds.as_dict()
            if not refunds.success:
                result.success = False
                result.error = result.error or refunds.error
        log.info(
            "Handled order webhook",
            status=intake.status,
            redemption_detected=redemption.detected,
            success=result.success,
        )
        return result

    async def handle_refund_event(self, merchant_id: UUID, refund: Mapping[str, Any]) -> OperationResult:
        refund_id = refund.get("id")
        if refund.get("status") != "COMPLETED":
            return OperationResult(details={"refund_id": refund_id, "reason": "refund_not_completed"})
        if not await self._offers.is_loyalty_enabled(merchant_id):
            logger.info("Loyalty disabled for merchant, ignoring refund webhook", merchant_id=str(merchant_id))
            return OperationResult(details={"refund_id": refund_id, "reason": "loyalty_disabled"})

        order_id = refund.get("order_id")
        fallback_items = []
        location_id = refund.get("location_id")
        if not refund.get("return_line_items") and order_id:
            order = await self._gateway.retrieve_order(merchant_id, order_id, context="refund-webhook")
            if order:
                fallback_items = returned_line_items(order)
                order_id = _source_order_id(order) or order_id
                location_id = location_id or order.get("location_id")

        outcome = await self._intake.process_refund(
            refund,
            merchant_id,
            order_id=order_id,
            fallback_items=fallback_items,
            location_id=location_id,
        )
        logger.info(
            "Handled refund webhook",
            merchant_id=str(merchant_id),
            refund_id=refund_id,
            order_id=order_id,
            refund_events=len(outcome.refund_event_ids),
            revoked_rewards=len(outcome.revoked_reward_ids),
        )
        return OperationResult(
            success=outcome.success,
            error=outcome.error,
            details={"refund_id": refund_id, "refund": outcome.as_dict()},
        )


__all__ = ["LoyaltyWebhookService"]
