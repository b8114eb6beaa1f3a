"""Backfill missing customer profile data for reward holders."""

from __future__ import annotations

from typing import Any, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.settings import settings
from loyalty_engine.core.worker_pool import run_bounded
from loyalty_engine.models import LoyaltyCustomer, LoyaltyReward
from loyalty_engine.services.loyalty.customer_cache import CustomerCacheService
from loyalty_engine.services.pos.gateway import PosGateway


class CustomerRefreshService:
    def __init__(self, db_session: AsyncSession, gateway: PosGateway, *, concurrency: int | None = None) -> None:
        self._db = db_session
        self._gateway = gateway
        self._concurrency = concurrency or settings.loyalty_refresh_concurrency
        self._cache = CustomerCacheService(db_session, gateway)

    async def customers_missing_data(self, merchant_id: UUID) -> List[str]:
        stmt = (
            select(LoyaltyReward.customer_id)
            .outerjoin(
                LoyaltyCustomer,
                and_(
                    LoyaltyCustomer.merchant_id == LoyaltyReward.merchant_id,
                    LoyaltyCustomer.customer_id == LoyaltyReward.customer_id,
                ),
            )
            .where(
                LoyaltyReward.merchant_id == merchant_id,
                or_(LoyaltyCustomer.id.is_(None), LoyaltyCustomer.phone_number.is_(None)),
            )
            .distinct()
            .order_by(LoyaltyReward.customer_id)
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def refresh_customers_with_missing_data(self, merchant_id: UUID) -> Dict[str, Any]:
        """Fetch profiles with bounded concurrency; the session is only touched afterwards."""

        customer_ids = await self.customers_missing_data(merchant_id)
        summary: Dict[str, Any] = {"total": len(customer_ids), "refreshed": 0, "failed": 0, "errors": []}
        if not customer_ids:
            return summary

        async def fetch(customer_id: str):
            return await self._gateway.retrieve_customer(merchant_id, customer_id, context="customer-refresh")

        outcomes = await run_bounded(customer_ids, fetch, capacity=self._concurrency)
        for customer_id, outcome in zip(customer_ids, outcomes):
            if not outcome.ok:
                summary["failed"] += 1
                summary["errors"].append({"customer_id": customer_id, "error": str(outcome.error)})
                continue
            if not outcome.value:
                summary["failed"] += 1
                summary["errors"].append({"customer_id": customer_id, "error": "customer_not_found"})
                continue
            await self._cache.cache_customer(merchant_id, outcome.value)
            summary["refreshed"] += 1

        await self._db.commit()
        logger.info(
            "Refreshed loyalty customer profiles",
            merchant_id=str(merchant_id),
            total=summary["total"],
            refreshed=summary["refreshed"],
            failed=summary["failed"],
        )
        return summary


__all__ = ["CustomerRefreshService"]
