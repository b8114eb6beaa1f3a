"""Purchase recording, threshold evaluation and customer progress summaries."""

from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models import (
    CustomerSource,
    LoyaltyAuditAction,
    LoyaltyCustomerSummary,
    LoyaltyOffer,
    LoyaltyPurchaseEvent,
    LoyaltyReward,
    RewardStatus,
)
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.loyalty.audit_log import AuditLogService
from loyalty_engine.services.loyalty.results import ProgressUpdate

Clock = Callable[[], datetime]

REFUND_REVOCATION_REASON = "Refund reduced qualifying quantity below threshold"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive timestamps; treat them as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def purchase_idempotency_key(order_id: str, variation_id: str, quantity: int) -> str:
    return f"{order_id}:{variation_id}:{quantity}"


def refund_idempotency_key(order_id: str, refund_id: str | None, variation_id: str, quantity: int) -> str:
    return f"refund:{order_id}:{refund_id or 'refund'}:{variation_id}:{quantity}"


class ProgressService:
    """Owns every mutation of purchase events, rewards and summaries.

    Callers run it inside their own transaction and commit afterwards; the
    service only flushes.
    """

    def __init__(self, db_session: AsyncSession, *, clock: Clock | None = None) -> None:
        self._db = db_session
        self._clock = clock or utcnow
        self._audit = AuditLogService(db_session)
        self._observability = get_loyalty_store()

    # Purchases

    async def record_purchase(
        self,
        merchant_id: UUID,
        offer: LoyaltyOffer,
        *,
        customer_id: str,
        order_id: str,
        variation_id: str,
        quantity: int,
        unit_price_cents: int | None,
        purchased_at: datetime,
        location_id: str | None = None,
        customer_source: CustomerSource = CustomerSource.ORDER,
        receipt_url: str | None = None,
        payment_type: str | None = None,
        triggered_by: str = "WEBHOOK",
    ) -> Tuple[Optional[LoyaltyPurchaseEvent], ProgressUpdate]:
        """Persist one qualifying line item and re-evaluate the customer's progress.

        Returns ``(None, update)`` when the idempotency key was already recorded.
        """

        key = purchase_idempotency_key(order_id, variation_id, quantity)
        if await self._event_exists(merchant_id, key):
            logger.info(
                "Purchase event already recorded",
                merchant_id=str(merchant_id),
                order_id=order_id,
                variation_id=variation_id,
            )
            return None, await self.update_progress(merchant_id, offer, customer_id, triggered_by=triggered_by)

        purchased_at = as_utc(purchased_at)
        window_end = add_months(purchased_at, offer.window_months).date()
        earliest_active = await self._earliest_active_purchase(merchant_id, offer.id, customer_id)
        window_start = as_utc(earliest_active).date() if earliest_active is not None else purchased_at.date()

        event = LoyaltyPurchaseEvent(
            merchant_id=merchant_id,
            offer_id=offer.id,
            customer_id=customer_id,
            order_id=order_id,
            location_id=location_id,
            variation_id=variation_id,
            quantity=quantity,
            unit_price_cents=unit_price_cents,
            purchased_at=purchased_at,
            window_start=window_start,
            window_end=window_end,
            is_refund=False,
            superseded=False,
            idempotency_key=key,
            receipt_url=receipt_url,
            payment_type=payment_type,
            customer_source=customer_source,
        )
        self._db.add(event)
        await self._db.flush()

        self._audit.record(
            merchant_id,
            LoyaltyAuditAction.PURCHASE_RECORDED,
            offer_id=offer.id,
            purchase_event_id=event.id,
            customer_id=customer_id,
            order_id=order_id,
            new_quantity=quantity,
            triggered_by=triggered_by,
            details={"variation_id": variation_id, "customer_source": customer_source.value},
        )
        logger.info(
            "Recorded loyalty purchase",
            merchant_id=str(merchant_id),
            offer_id=str(offer.id),
            customer_id=customer_id,
            order_id=order_id,
            quantity=quantity,
        )
        return event, await self.update_progress(merchant_id, offer, customer_id, triggered_by=triggered_by)

    # Refunds

    async def process_refund(
        self,
        merchant_id: UUID,
        offer: LoyaltyOffer,
        *,
        customer_id: str,
        order_id: str,
        variation_id: str,
        quantity: int,
        unit_price_cents: int | None,
        refunded_at: datetime | None = None,
        refund_id: str | None = None,
        location_id: str | None = None,
        triggered_by: str = "WEBHOOK",
    ) -> Tuple[Optional[LoyaltyPurchaseEvent], List[UUID], ProgressUpdate]:
        """Record a negative purchase event and revoke a reward it invalidates."""

        refund_quantity = -abs(quantity)
        key = refund_idempotency_key(order_id, refund_id, variation_id, abs(quantity))
        if await self._event_exists(merchant_id, key):
            return None, [], await self.update_progress(merchant_id, offer, customer_id, triggered_by=triggered_by)

        refunded_at = as_utc(refunded_at or self._clock())
        original = await self._original_purchase(merchant_id, customer_id, order_id, variation_id)
        locked_reward = await self._earned_reward(original.reward_id) if original and original.reward_id else None

        event = LoyaltyPurchaseEvent(
            merchant_id=merchant_id,
            offer_id=offer.id,
            customer_id=customer_id,
            order_id=order_id,
            location_id=location_id,
            variation_id=variation_id,
            quantity=refund_quantity,
            unit_price_cents=unit_price_cents,
            purchased_at=refunded_at,
            window_start=refunded_at.date(),
            window_end=add_months(refunded_at, offer.window_months).date(),
            is_refund=True,
            superseded=False,
            reward_id=locked_reward.id if locked_reward is not None else None,
            original_event_id=original.id if original is not None else None,
            idempotency_key=key,
            customer_source=original.customer_source if original is not None else CustomerSource.ORDER,
        )
        self._db.add(event)
        await self._db.flush()

        self._audit.record(
            merchant_id,
            LoyaltyAuditAction.REFUND_PROCESSED,
            offer_id=offer.id,
            purchase_event_id=event.id,
            customer_id=customer_id,
            order_id=order_id,
            new_quantity=refund_quantity,
            triggered_by=triggered_by,
            details={"variation_id": variation_id, "original_event_id": original.id if original else None},
        )

        revoked: List[UUID] = []
        if locked_reward is not None:
            remaining = await self.locked_quantity(locked_reward.id)
            if remaining < locked_reward.required_quantity:
                await self.revoke_reward(
                    locked_reward,
                    reason=REFUND_REVOCATION_REASON,
                    triggered_by=triggered_by,
                    details={
                        "reason": "refund",
                        "remaining_quantity": remaining,
                        "required_quantity": locked_reward.required_quantity,
                    },
                )
                revoked.append(locked_reward.id)
                logger.warning(
                    "Earned reward revoked due to refund",
                    merchant_id=str(merchant_id),
                    reward_id=str(locked_reward.id),
                    customer_id=customer_id,
                    remaining_quantity=remaining,
                )

        progress = await self.update_progress(merchant_id, offer, customer_id, triggered_by=triggered_by)
        return event, revoked, progress

    async def revoke_reward(
        self,
        reward: LoyaltyReward,
        *,
        reason: str,
        triggered_by: str = "SYSTEM",
        details: dict | None = None,
    ) -> None:
        """Revoke an earned reward and release its locked purchases.

        POS teardown is the caller's job once the transaction has committed.
        """

        reward.status = RewardStatus.REVOKED
        reward.revoked_at = self._clock()
        reward.revocation_reason = reason
        await self._db.execute(
            update(LoyaltyPurchaseEvent)
            .where(LoyaltyPurchaseEvent.reward_id == reward.id)
            .values(reward_id=None)
            .execution_options(synchronize_session="fetch")
        )
        await self._db.flush()
        self._audit.record(
            reward.merchant_id,
            LoyaltyAuditAction.REWARD_REVOKED,
            offer_id=reward.offer_id,
            reward_id=reward.id,
            customer_id=reward.customer_id,
            old_state=RewardStatus.EARNED.value,
            new_state=RewardStatus.REVOKED.value,
            triggered_by=triggered_by,
            details={"reason": reason, **(details or {})},
        )
        self._observability.record_reward_event("revoked")

    # Progress

    async def update_progress(
        self,
        merchant_id: UUID,
        offer: LoyaltyOffer,
        customer_id: str,
        *,
        triggered_by: str = "SYSTEM",
    ) -> ProgressUpdate:
        """Earn every reward the active window now supports, then refresh the summary."""

        summary = await self.get_summary(merchant_id, customer_id, offer.id)
        quantity_before = summary.current_quantity if summary is not None else 0

        active = await self.active_quantity(merchant_id, offer.id, customer_id)
        quantity_after = active
        earned: List[UUID] = []
        while active >= offer.required_quantity > 0:
            reward = LoyaltyReward(
                merchant_id=merchant_id,
                offer_id=offer.id,
                customer_id=customer_id,
                status=RewardStatus.EARNED,
                required_quantity=offer.required_quantity,
                earned_at=self._clock(),
            )
            self._db.add(reward)
            await self._db.flush()
            await self._lock_purchases(reward)
            self._audit.record(
                merchant_id,
                LoyaltyAuditAction.REWARD_EARNED,
                offer_id=offer.id,
                reward_id=reward.id,
                customer_id=customer_id,
                old_quantity=active,
                new_quantity=active - offer.required_quantity,
                new_state=RewardStatus.EARNED.value,
                triggered_by=triggered_by,
            )
            self._observability.record_reward_event("earned")
            logger.info(
                "Loyalty reward earned",
                merchant_id=str(merchant_id),
                offer_id=str(offer.id),
                customer_id=customer_id,
                reward_id=str(reward.id),
            )
            earned.append(reward.id)
            active = await self.active_quantity(merchant_id, offer.id, customer_id)

        summary = await self.refresh_summary(merchant_id, offer, customer_id)
        if summary.current_quantity != quantity_before or earned:
            self._audit.record(
                merchant_id,
                LoyaltyAuditAction.REWARD_PROGRESS_UPDATED,
                offer_id=offer.id,
                customer_id=customer_id,
                old_quantity=quantity_before,
                new_quantity=summary.current_quantity,
                triggered_by=triggered_by,
                details={"rewards_earned": len(earned)},
            )
        return ProgressUpdate(
            offer_id=offer.id,
            quantity_before=quantity_before,
            quantity_after=quantity_after,
            required_quantity=offer.required_quantity,
            current_quantity=summary.current_quantity,
            earned_reward_ids=earned,
        )

    async def active_quantity(self, merchant_id: UUID, offer_id: UUID, customer_id: str) -> int:
        await self._db.flush()
        stmt = select(func.coalesce(func.sum(LoyaltyPurchaseEvent.quantity), 0)).where(
            *self._active_filter(merchant_id, offer_id, customer_id)
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def locked_quantity(self, reward_id: UUID) -> int:
        await self._db.flush()
        stmt = select(func.coalesce(func.sum(LoyaltyPurchaseEvent.quantity), 0)).where(
            LoyaltyPurchaseEvent.reward_id == reward_id,
            LoyaltyPurchaseEvent.superseded.is_(False),
        )
        return int((await self._db.execute(stmt)).scalar_one())

    async def get_summary(self, merchant_id: UUID, customer_id: str, offer_id: UUID) -> LoyaltyCustomerSummary | None:
        stmt = select(LoyaltyCustomerSummary).where(
            LoyaltyCustomerSummary.merchant_id == merchant_id,
            LoyaltyCustomerSummary.customer_id == customer_id,
            LoyaltyCustomerSummary.offer_id == offer_id,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def refresh_summary(self, merchant_id: UUID, offer: LoyaltyOffer, customer_id: str) -> LoyaltyCustomerSummary:
        await self._db.flush()
        summary = await self.get_summary(merchant_id, customer_id, offer.id)
        if summary is None:
            summary = LoyaltyCustomerSummary(merchant_id=merchant_id, customer_id=customer_id, offer_id=offer.id)
            self._db.add(summary)

        active_filter = self._active_filter(merchant_id, offer.id, customer_id)
        active, window_start, window_end = (
            await self._db.execute(
                select(
                    func.coalesce(func.sum(LoyaltyPurchaseEvent.quantity), 0),
                    func.min(LoyaltyPurchaseEvent.window_start),
                    func.max(LoyaltyPurchaseEvent.window_end),
                ).where(*active_filter)
            )
        ).one()

        history_filter = (
            LoyaltyPurchaseEvent.merchant_id == merchant_id,
            LoyaltyPurchaseEvent.offer_id == offer.id,
            LoyaltyPurchaseEvent.customer_id == customer_id,
            LoyaltyPurchaseEvent.quantity > 0,
            LoyaltyPurchaseEvent.superseded.is_(False),
        )
        lifetime, last_purchase = (
            await self._db.execute(
                select(
                    func.coalesce(func.sum(LoyaltyPurchaseEvent.quantity), 0),
                    func.max(LoyaltyPurchaseEvent.purchased_at),
                ).where(*history_filter)
            )
        ).one()

        rewards = (
            await self._db.execute(
                select(LoyaltyReward.id, LoyaltyReward.status)
                .where(
                    LoyaltyReward.merchant_id == merchant_id,
                    LoyaltyReward.offer_id == offer.id,
                    LoyaltyReward.customer_id == customer_id,
                )
                .order_by(LoyaltyReward.earned_at.asc())
            )
        ).all()
        earned_ids = [reward_id for reward_id, status in rewards if status == RewardStatus.EARNED]
        redeemed = sum(1 for _, status in rewards if status == RewardStatus.REDEEMED)

        summary.current_quantity = max(int(active), 0)
        summary.required_quantity = offer.required_quantity
        summary.window_start = _forward(summary.window_start, window_start)
        summary.window_end = _forward(summary.window_end, window_end)
        summary.has_earned_reward = bool(earned_ids)
        summary.earned_reward_id = earned_ids[0] if earned_ids else None
        summary.total_lifetime_purchases = int(lifetime)
        summary.total_rewards_earned = len(earned_ids) + redeemed
        summary.total_rewards_redeemed = redeemed
        summary.last_purchase_at = last_purchase
        await self._db.flush()
        return summary

    # Internals

    def _active_filter(self, merchant_id: UUID, offer_id: UUID, customer_id: str):
        return (
            LoyaltyPurchaseEvent.merchant_id == merchant_id,
            LoyaltyPurchaseEvent.offer_id == offer_id,
            LoyaltyPurchaseEvent.customer_id == customer_id,
            LoyaltyPurchaseEvent.window_end >= self._clock().date(),
            LoyaltyPurchaseEvent.reward_id.is_(None),
            LoyaltyPurchaseEvent.superseded.is_(False),
        )

    async def _lock_purchases(self, reward: LoyaltyReward) -> None:
        """Lock the oldest active purchases into ``reward``, splitting the row that crosses the threshold."""

        stmt = (
            select(LoyaltyPurchaseEvent)
            .where(
                *self._active_filter(reward.merchant_id, reward.offer_id, reward.customer_id),
                LoyaltyPurchaseEvent.quantity > 0,
            )
            .order_by(
                LoyaltyPurchaseEvent.purchased_at.asc(),
                LoyaltyPurchaseEvent.created_at.asc(),
                LoyaltyPurchaseEvent.idempotency_key.asc(),
            )
        )
        remaining = reward.required_quantity
        for event in (await self._db.execute(stmt)).scalars().all():
            if remaining <= 0:
                break
            if event.quantity <= remaining:
                event.reward_id = reward.id
                remaining -= event.quantity
                continue
            self._split(event, reward.id, locked_quantity=remaining)
            remaining = 0
        await self._db.flush()

    def _split(self, parent: LoyaltyPurchaseEvent, reward_id: UUID, *, locked_quantity: int) -> None:
        parent.superseded = True
        for suffix, quantity, locked in (
            ("split_locked", locked_quantity, True),
            ("split_excess", parent.quantity - locked_quantity, False),
        ):
            self._db.add(
                LoyaltyPurchaseEvent(
                    merchant_id=parent.merchant_id,
                    offer_id=parent.offer_id,
                    customer_id=parent.customer_id,
                    order_id=parent.order_id,
                    location_id=parent.location_id,
                    variation_id=parent.variation_id,
                    quantity=quantity,
                    unit_price_cents=parent.unit_price_cents,
                    purchased_at=parent.purchased_at,
                    window_start=parent.window_start,
                    window_end=parent.window_end,
                    is_refund=False,
                    superseded=False,
                    reward_id=reward_id if locked else None,
                    original_event_id=parent.id,
                    idempotency_key=f"{parent.idempotency_key}:{suffix}:{reward_id}",
                    receipt_url=parent.receipt_url,
                    payment_type=parent.payment_type,
                    customer_source=parent.customer_source,
                )
            )

    async def _event_exists(self, merchant_id: UUID, idempotency_key: str) -> bool:
        stmt = select(LoyaltyPurchaseEvent.id).where(
            LoyaltyPurchaseEvent.merchant_id == merchant_id,
            LoyaltyPurchaseEvent.idempotency_key == idempotency_key,
        )
        return (await self._db.execute(stmt)).first() is not None

    async def _earliest_active_purchase(self, merchant_id: UUID, offer_id: UUID, customer_id: str) -> datetime | None:
        stmt = select(func.min(LoyaltyPurchaseEvent.purchased_at)).where(
            LoyaltyPurchaseEvent.merchant_id == merchant_id,
            LoyaltyPurchaseEvent.offer_id == offer_id,
            LoyaltyPurchaseEvent.customer_id == customer_id,
            LoyaltyPurchaseEvent.window_end >= self._clock().date(),
            LoyaltyPurchaseEvent.quantity > 0,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _original_purchase(
        self, merchant_id: UUID, customer_id: str, order_id: str, variation_id: str
    ) -> LoyaltyPurchaseEvent | None:
        """Prefer the locked portion of the refunded purchase, else any live row for it."""

        stmt = (
            select(LoyaltyPurchaseEvent)
            .where(
                LoyaltyPurchaseEvent.merchant_id == merchant_id,
                LoyaltyPurchaseEvent.customer_id == customer_id,
                LoyaltyPurchaseEvent.order_id == order_id,
                LoyaltyPurchaseEvent.variation_id == variation_id,
                LoyaltyPurchaseEvent.quantity > 0,
                LoyaltyPurchaseEvent.superseded.is_(False),
            )
            .order_by(LoyaltyPurchaseEvent.reward_id.is_(None), LoyaltyPurchaseEvent.created_at.asc())
        )
        return (await self._db.execute(stmt)).scalars().first()

    async def _earned_reward(self, reward_id: UUID) -> LoyaltyReward | None:
        reward = await self._db.get(LoyaltyReward, reward_id)
        if reward is None or reward.status != RewardStatus.EARNED:
            return None
        return reward


def _forward(current: date | None, candidate: date | None) -> date | None:
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


__all__ = [
    "ProgressService",
    "REFUND_REVOCATION_REASON",
    "add_months",
    "as_utc",
    "purchase_idempotency_key",
    "refund_idempotency_key",
    "utcnow",
]
