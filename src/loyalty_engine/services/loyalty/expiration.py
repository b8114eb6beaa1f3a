"""Rolling-window expiry for purchases and earned rewards."""

from __future__ import annotations

from typing import Any, Dict, List
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from loyalty_engine.models import (
    LoyaltyAuditAction,
    LoyaltyOffer,
    LoyaltyPurchaseEvent,
    LoyaltyReward,
    RewardStatus,
)
from loyalty_engine.services.loyalty.audit_log import AuditLogService
from loyalty_engine.services.loyalty.progress import Clock, ProgressService, add_months, as_utc, utcnow
from loyalty_engine.services.loyalty.redemption import RedemptionService
from loyalty_engine.services.pos.gateway import PosGateway

EXPIRED_REWARD_REASON = "Expired - all locked purchases outside window"


class ExpirationService:
    def __init__(self, db_session: AsyncSession, gateway: PosGateway, *, clock: Clock | None = None) -> None:
        self._db = db_session
        self._gateway = gateway
        self._clock = clock or utcnow
        self._progress = ProgressService(db_session, clock=self._clock)
        self._audit = AuditLogService(db_session)

    async def process_expired_window_entries(self, merchant_id: UUID) -> Dict[str, Any]:
        """Re-evaluate progress for every customer holding unlocked purchases that aged out."""

        today = self._clock().date()
        stmt = (
            select(LoyaltyPurchaseEvent.offer_id, LoyaltyPurchaseEvent.customer_id)
            .where(
                LoyaltyPurchaseEvent.merchant_id == merchant_id,
                LoyaltyPurchaseEvent.window_end < today,
                LoyaltyPurchaseEvent.reward_id.is_(None),
                LoyaltyPurchaseEvent.superseded.is_(False),
                LoyaltyPurchaseEvent.quantity > 0,
            )
            .distinct()
        )
        pairs = (await self._db.execute(stmt)).all()
        summary: Dict[str, Any] = {"customers": 0}
        for offer_id, customer_id in pairs:
            offer = await self._db.get(LoyaltyOffer, offer_id)
            if offer is None:
                continue
            summary_row = await self._progress.get_summary(merchant_id, customer_id, offer_id)
            previous = summary_row.current_quantity if summary_row is not None else 0
            progress = await self._progress.update_progress(merchant_id, offer, customer_id, triggered_by="EXPIRATION")
            if progress.current_quantity == previous:
                continue
            self._audit.record(
                merchant_id,
                LoyaltyAuditAction.WINDOW_EXPIRED,
                offer_id=offer_id,
                customer_id=customer_id,
                old_quantity=previous,
                new_quantity=progress.current_quantity,
                triggered_by="EXPIRATION",
            )
            summary["customers"] += 1
        await self._db.commit()
        logger.info("Processed expired loyalty window entries", merchant_id=str(merchant_id), **summary)
        return summary

    async def process_expired_earned_rewards(self, merchant_id: UUID) -> Dict[str, Any]:
        """Revoke earned rewards whose locked purchases have all left the window."""

        now = self._clock()
        today = now.date()
        stmt = (
            select(LoyaltyReward)
            .options(selectinload(LoyaltyReward.offer))
            .where(LoyaltyReward.merchant_id == merchant_id, LoyaltyReward.status == RewardStatus.EARNED)
        )
        revoked: List[LoyaltyReward] = []
        for reward in (await self._db.execute(stmt)).scalars().all():
            if add_months(as_utc(reward.earned_at), reward.offer.window_months) > now:
                continue
            live = (
                await self._db.execute(
                    select(LoyaltyPurchaseEvent.id).where(
                        LoyaltyPurchaseEvent.reward_id == reward.id,
                        LoyaltyPurchaseEvent.window_end >= today,
                    )
                )
            ).first()
            if live is not None:
                continue
            await self._progress.revoke_reward(
                reward,
                reason=EXPIRED_REWARD_REASON,
                triggered_by="EXPIRATION",
                details={"reason": "expired"},
            )
            await self._progress.refresh_summary(merchant_id, reward.offer, reward.customer_id)
            revoked.append(reward)
        await self._db.commit()

        summary: Dict[str, Any] = {"revoked": len(revoked), "cleanup_errors": []}
        redemption = RedemptionService(self._db, self._gateway)
        for reward in revoked:
            cleanup = await redemption.cleanup(reward.id)
            if not cleanup.success:
                summary["cleanup_errors"].append({"reward_id": str(reward.id), "errors": cleanup.errors})
        logger.info(
            "Processed expired loyalty rewards",
            merchant_id=str(merchant_id),
            revoked=summary["revoked"],
            cleanup_errors=len(summary["cleanup_errors"]),
        )
        return summary


__all__ = ["EXPIRED_REWARD_REASON", "ExpirationService"]
