"""Resolve the purchasing customer for a POS order."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models import CustomerSource
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.loyalty.customer_cache import CustomerCacheService
from loyalty_engine.services.loyalty.offers import OfferCatalog
from loyalty_engine.services.pos.gateway import PosGateway

_PHONE_CHARS = re.compile(r"[^\d+]")
_RECIPIENT_KEYS = ("pickup_details", "shipment_details", "delivery_details")


@dataclass
class PrefetchedLoyaltyData:
    """Bulk loyalty lookups gathered before a batch run."""

    by_order_id: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    account_to_customer: Dict[str, str] = field(default_factory=dict)
    events_scanned: int = 0

    def customer_for_order(self, order_id: str | None) -> Optional[str]:
        if not order_id:
            return None
        event = self.by_order_id.get(order_id)
        if not event:
            return None
        return self.account_to_customer.get(event.get("loyalty_account_id"))


@dataclass
class IdentificationResult:
    customer_id: Optional[str] = None
    method: Optional[CustomerSource] = None
    attempts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.customer_id is not None


def normalize_phone(value: str | None) -> Optional[str]:
    if not value:
        return None
    digits = _PHONE_CHARS.sub("", value)
    return digits or None


def _recipients(order: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    recipients: List[Mapping[str, Any]] = []
    for fulfillment in order.get("fulfillments") or []:
        if not isinstance(fulfillment, Mapping):
            continue
        for key in _RECIPIENT_KEYS:
            details = fulfillment.get(key)
            if isinstance(details, Mapping) and isinstance(details.get("recipient"), Mapping):
                recipients.append(details["recipient"])
    return recipients


class CustomerIdentificationService:
    """Tries each identification method in priority order; never raises.

    1. ``order.customer_id``
    2. the first tender carrying a ``customer_id``
    3. the loyalty event recorded for the order, through its loyalty account
    4. one of our reward discounts applied to the order
    5. the fulfillment recipient's phone, then email, via exact directory search

    Batch runs pass ``prefetched``. The prefetch map then replaces step 3 and
    step 5 is skipped, so no per-order POS call is made.
    """

    def __init__(self, db_session: AsyncSession, gateway: PosGateway, merchant_id: UUID) -> None:
        self._db = db_session
        self._gateway = gateway
        self._merchant_id = merchant_id
        self._offers = OfferCatalog(db_session)
        self._cache = CustomerCacheService(db_session, gateway)
        self._observability = get_loyalty_store()

    async def identify(
        self,
        order: Mapping[str, Any],
        *,
        prefetched: PrefetchedLoyaltyData | None = None,
    ) -> IdentificationResult:
        result = IdentificationResult()
        direct = [
            (CustomerSource.ORDER, self._from_order),
            (CustomerSource.TENDER, self._from_tenders),
        ]
        for method, step in direct:
            if await self._attempt(result, method, step.__name__.lstrip("_"), step, order):
                return result

        if prefetched is not None:
            customer_id = prefetched.customer_for_order(order.get("id"))
            result.attempts.append({"step": "prefetch", "found": bool(customer_id)})
            if customer_id:
                return self._resolved(result, customer_id, CustomerSource.LOYALTY_LOOKUP, order)
            lookups = [(CustomerSource.LOYALTY_LOOKUP, self._from_reward_discount)]
        else:
            lookups = [
                (CustomerSource.LOYALTY_LOOKUP, self._from_loyalty_event),
                (CustomerSource.LOYALTY_LOOKUP, self._from_reward_discount),
                (CustomerSource.FULFILLMENT, self._from_fulfillment),
            ]
        for method, step in lookups:
            if await self._attempt(result, method, step.__name__.lstrip("_"), step, order):
                return result

        self._observability.record_identification(None)
        logger.info(
            "No customer identified for order",
            merchant_id=str(self._merchant_id),
            order_id=order.get("id"),
            attempts=len(result.attempts),
        )
        return result

    async def _attempt(self, result, method, name, step, order) -> bool:
        try:
            customer_id = await step(order)
        except Exception as exc:
            logger.warning(
                "Customer identification step failed",
                merchant_id=str(self._merchant_id),
                order_id=order.get("id"),
                step=name,
                error=str(exc),
            )
            result.attempts.append({"step": name, "found": False, "error": str(exc)})
            return False
        result.attempts.append({"step": name, "found": bool(customer_id)})
        if not customer_id:
            return False
        self._resolved(result, customer_id, method, order)
        return True

    def _resolved(
        self,
        result: IdentificationResult,
        customer_id: str,
        method: CustomerSource,
        order: Mapping[str, Any],
    ) -> IdentificationResult:
        result.customer_id = customer_id
        result.method = method
        self._observability.record_identification(method.value)
        logger.debug(
            "Customer identified",
            merchant_id=str(self._merchant_id),
            order_id=order.get("id"),
            customer_id=customer_id,
            method=method.value,
        )
        return result

    async def _from_order(self, order: Mapping[str, Any]) -> Optional[str]:
        return order.get("customer_id") or None

    async def _from_tenders(self, order: Mapping[str, Any]) -> Optional[str]:
        for tender in order.get("tenders") or []:
            if isinstance(tender, Mapping) and tender.get("customer_id"):
                return tender["customer_id"]
        return None

    async def _from_loyalty_event(self, order: Mapping[str, Any]) -> Optional[str]:
        order_id = order.get("id")
        if not order_id:
            return None
        payload = await self._gateway.search_loyalty_events(
            self._merchant_id, order_id=order_id, limit=10, context="identify-loyalty-event"
        )
        for event in payload.get("events") or []:
            account_id = event.get("loyalty_account_id") if isinstance(event, Mapping) else None
            if not account_id:
                continue
            account = await self._gateway.retrieve_loyalty_account(
                self._merchant_id, account_id, context="identify-loyalty-account"
            )
            if account and account.get("customer_id"):
                return account["customer_id"]
        return None

    async def _from_reward_discount(self, order: Mapping[str, Any]) -> Optional[str]:
        ids = [
            discount.get("catalog_object_id")
            for discount in order.get("discounts") or []
            if isinstance(discount, Mapping)
        ]
        reward = await self._offers.earned_reward_for_discount_ids(self._merchant_id, ids)
        return reward.customer_id if reward is not None else None

    async def _from_fulfillment(self, order: Mapping[str, Any]) -> Optional[str]:
        for recipient in _recipients(order):
            phone = normalize_phone(recipient.get("phone_number"))
            if phone:
                customers = await self._gateway.search_customers(
                    self._merchant_id, phone=phone, context="identify-fulfillment-phone"
                )
                if customers:
                    return await self._remember(customers[0])
            email = (recipient.get("email_address") or "").strip().lower()
            if email:
                customers = await self._gateway.search_customers(
                    self._merchant_id, email=email, context="identify-fulfillment-email"
                )
                if customers:
                    return await self._remember(customers[0])
        return None

    async def _remember(self, customer: Mapping[str, Any]) -> Optional[str]:
        await self._cache.cache_customer(self._merchant_id, customer)
        return customer.get("id")


__all__ = [
    "CustomerIdentificationService",
    "IdentificationResult",
    "PrefetchedLoyaltyData",
    "normalize_phone",
]
