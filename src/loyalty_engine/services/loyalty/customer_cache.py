"""Local cache of POS customer profiles."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models import LoyaltyCustomer, LoyaltyProcessedOrder, LoyaltyReward, RewardStatus
from loyalty_engine.services.pos.gateway import PosApiError, PosGateway

_PROFILE_FIELDS = (
    "given_name",
    "family_name",
    "phone_number",
    "email_address",
    "company_name",
)


def display_name_for(payload: Mapping[str, Any]) -> Optional[str]:
    parts = [payload.get("given_name"), payload.get("family_name")]
    name = " ".join(part for part in parts if part)
    return name or payload.get("company_name") or payload.get("email_address") or None


class CustomerCacheService:
    """Read-through cache; empty incoming values never overwrite stored ones."""

    def __init__(self, db_session: AsyncSession, gateway: PosGateway | None = None) -> None:
        self._db = db_session
        self._gateway = gateway

    async def get_cached(self, merchant_id: UUID, customer_id: str) -> LoyaltyCustomer | None:
        stmt = select(LoyaltyCustomer).where(
            LoyaltyCustomer.merchant_id == merchant_id,
            LoyaltyCustomer.customer_id == customer_id,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def cache_customer(self, merchant_id: UUID, payload: Mapping[str, Any]) -> LoyaltyCustomer | None:
        customer_id = payload.get("id")
        if not customer_id:
            return None
        record = await self.get_cached(merchant_id, customer_id)
        if record is None:
            record = LoyaltyCustomer(merchant_id=merchant_id, customer_id=customer_id)
            self._db.add(record)
        for field in _PROFILE_FIELDS:
            value = payload.get(field)
            if value:
                setattr(record, field, value)
        display_name = display_name_for(payload)
        if display_name:
            record.display_name = display_name
        record.last_synced_at = datetime.now(timezone.utc)
        await self._db.flush()
        return record

    async def get_or_fetch(self, merchant_id: UUID, customer_id: str) -> LoyaltyCustomer | None:
        cached = await self.get_cached(merchant_id, customer_id)
        if cached is not None and cached.phone_number:
            return cached
        if self._gateway is None:
            return cached
        try:
            payload = await self._gateway.retrieve_customer(merchant_id, customer_id, context="customer-cache")
        except PosApiError as exc:
            logger.warning(
                "Customer lookup failed, using cached profile",
                merchant_id=str(merchant_id),
                customer_id=customer_id,
                status=exc.status,
            )
            return cached
        if not payload:
            return cached
        return await self.cache_customer(merchant_id, payload)

    async def update_stats(self, merchant_id: UUID, customer_id: str) -> LoyaltyCustomer:
        record = await self.get_cached(merchant_id, customer_id)
        if record is None:
            record = LoyaltyCustomer(merchant_id=merchant_id, customer_id=customer_id)
            self._db.add(record)

        record.total_orders = (
            await self._db.execute(
                select(func.count(LoyaltyProcessedOrder.id)).where(
                    LoyaltyProcessedOrder.merchant_id == merchant_id,
                    LoyaltyProcessedOrder.customer_id == customer_id,
                )
            )
        ).scalar_one()
        record.total_rewards_earned = (
            await self._db.execute(
                select(func.count(LoyaltyReward.id)).where(
                    LoyaltyReward.merchant_id == merchant_id,
                    LoyaltyReward.customer_id == customer_id,
                    LoyaltyReward.status.in_([RewardStatus.EARNED, RewardStatus.REDEEMED]),
                )
            )
        ).scalar_one()
        active = (
            await self._db.execute(
                select(func.count(LoyaltyReward.id)).where(
                    LoyaltyReward.merchant_id == merchant_id,
                    LoyaltyReward.customer_id == customer_id,
                    LoyaltyReward.status == RewardStatus.EARNED,
                )
            )
        ).scalar_one()
        record.has_active_rewards = active > 0
        await self._db.flush()
        return record


__all__ = ["CustomerCacheService", "display_name_for"]
