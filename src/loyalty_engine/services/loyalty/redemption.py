"""Detect reward redemptions on orders and tear down the POS objects afterwards."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from loyalty_engine.core.settings import settings
from loyalty_engine.models import (
    LoyaltyAuditAction,
    LoyaltyRedemption,
    LoyaltyReward,
    RedemptionType,
    RewardStatus,
)
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.loyalty.audit_log import AuditLogService
from loyalty_engine.services.loyalty.issuance import reward_note_line
from loyalty_engine.services.loyalty.line_items import money_amount, unit_price_cents
from loyalty_engine.services.loyalty.offers import OfferCatalog
from loyalty_engine.services.loyalty.progress import ProgressService
from loyalty_engine.services.loyalty.results import CleanupResult, RedemptionDetection
from loyalty_engine.services.pos.gateway import PosApiError, PosGateway

_EXTRA_BLANK_LINES = re.compile(r"\n{3,}")

METHOD_DISCOUNT_ID = "discount_id_match"
METHOD_FREE_ITEM = "free_item_fallback"
METHOD_DISCOUNT_AMOUNT = "discount_amount_fallback"

RedemptionMatch = Tuple[LoyaltyReward, str, Optional[int], Optional[str]]


def strip_note_line(note: str, line: str) -> str:
    stripped = "\n".join(part for part in note.split("\n") if part.strip() != line)
    return _EXTRA_BLANK_LINES.sub("\n\n", stripped).strip()


def order_customer_id(order: Mapping[str, Any]) -> Optional[str]:
    if order.get("customer_id"):
        return order["customer_id"]
    for tender in order.get("tenders") or []:
        if isinstance(tender, Mapping) and tender.get("customer_id"):
            return tender["customer_id"]
    return None


class RedemptionService:
    def __init__(
        self,
        db_session: AsyncSession,
        gateway: PosGateway,
        *,
        amount_ratio: float | None = None,
    ) -> None:
        self._db = db_session
        self._gateway = gateway
        self._amount_ratio = settings.loyalty_redemption_amount_ratio if amount_ratio is None else amount_ratio
        self._offers = OfferCatalog(db_session)
        self._progress = ProgressService(db_session)
        self._audit = AuditLogService(db_session)
        self._observability = get_loyalty_store()

    async def detect_redemption(
        self,
        order: Mapping[str, Any],
        merchant_id: UUID,
        *,
        customer_id: str | None = None,
        dry_run: bool = False,
    ) -> RedemptionDetection:
        """Find which earned reward, if any, this order consumed.

        Strategies run in order: our discount id on the order, a free line
        item from the reward's offer, then the total discount on the offer's
        variations compared against the expected item price.
        """

        order_id = order.get("id")
        match = await self._match_discount_id(order, merchant_id)
        if match is None:
            customer_id = customer_id or order_customer_id(order)
            if customer_id:
                rewards = await self._customer_earned_rewards(merchant_id, customer_id)
                match = await self._match_free_item(order, rewards) or await self._match_discount_amount(
                    order, merchant_id, rewards
                )
        if match is None:
            return RedemptionDetection(detected=False, details={"order_id": order_id})

        reward, method, value, variation_id = match
        logger.info(
            "Reward redemption detected",
            merchant_id=str(merchant_id),
            order_id=order_id,
            reward_id=str(reward.id),
            method=method,
            dry_run=dry_run,
        )
        if dry_run:
            return RedemptionDetection(
                detected=True,
                reward_id=reward.id,
                offer_id=reward.offer_id,
                customer_id=reward.customer_id,
                detection_method=method,
                details={"order_id": order_id, "dry_run": True, "redeemed_value_cents": value},
            )

        redeemed = await self.redeem_reward(
            reward.id,
            redemption_type=RedemptionType.AUTO_DETECTED,
            order_id=order_id,
            location_id=order.get("location_id"),
            redeemed_value_cents=value,
            redeemed_variation_id=variation_id,
            triggered_by="WEBHOOK",
            details={"detection_method": method},
        )
        redeemed.detection_method = method
        return redeemed

    async def _match_discount_id(self, order: Mapping[str, Any], merchant_id: UUID) -> Optional[RedemptionMatch]:
        discounts = [discount for discount in order.get("discounts") or [] if isinstance(discount, Mapping)]
        reward = await self._offers.earned_reward_for_discount_ids(
            merchant_id, [discount.get("catalog_object_id") for discount in discounts]
        )
        if reward is None:
            return None
        ours = {reward.pos_discount_id, reward.pos_pricing_rule_id}
        value = next(
            (
                money_amount(discount.get("applied_money"))
                for discount in discounts
                if discount.get("catalog_object_id") in ours
            ),
            None,
        )
        variation_ids = set(await self._offers.qualifying_variation_ids(merchant_id, reward.offer_id))
        variation_id = next(
            (
                item.get("catalog_object_id")
                for item in order.get("line_items") or []
                if item.get("catalog_object_id") in variation_ids
            ),
            None,
        )
        return reward, METHOD_DISCOUNT_ID, value, variation_id

    async def _match_free_item(
        self, order: Mapping[str, Any], rewards: List[LoyaltyReward]
    ) -> Optional[RedemptionMatch]:
        for reward in rewards:
            variation_ids = set(await self._offers.qualifying_variation_ids(reward.merchant_id, reward.offer_id))
            for item in order.get("line_items") or []:
                if item.get("catalog_object_id") not in variation_ids:
                    continue
                base = unit_price_cents(item)
                if base > 0 and money_amount(item.get("total_money")) == 0:
                    return reward, METHOD_FREE_ITEM, base, item.get("catalog_object_id")
        return None

    async def _match_discount_amount(
        self, order: Mapping[str, Any], merchant_id: UUID, rewards: List[LoyaltyReward]
    ) -> Optional[RedemptionMatch]:
        for reward in rewards:
            variation_ids = set(await self._offers.qualifying_variation_ids(merchant_id, reward.offer_id))
            matched = [item for item in order.get("line_items") or [] if item.get("catalog_object_id") in variation_ids]
            if not matched:
                continue
            discounted = sum(money_amount(item.get("total_discount_money")) or 0 for item in matched)
            expected = await self._offers.max_purchase_price_cents(
                merchant_id, reward.offer_id, reward_id=reward.id
            ) or await self._offers.max_purchase_price_cents(merchant_id, reward.offer_id)
            if expected and discounted > 0 and discounted >= expected * self._amount_ratio:
                return reward, METHOD_DISCOUNT_AMOUNT, discounted, matched[0].get("catalog_object_id")
        return None

    async def _customer_earned_rewards(self, merchant_id: UUID, customer_id: str) -> List[LoyaltyReward]:
        stmt = (
            select(LoyaltyReward)
            .where(
                LoyaltyReward.merchant_id == merchant_id,
                LoyaltyReward.customer_id == customer_id,
                LoyaltyReward.status == RewardStatus.EARNED,
            )
            .order_by(LoyaltyReward.earned_at.asc())
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def redeem_reward(
        self,
        reward_id: UUID,
        *,
        redemption_type: RedemptionType = RedemptionType.MANUAL_ADMIN,
        order_id: str | None = None,
        location_id: str | None = None,
        redeemed_value_cents: int | None = None,
        redeemed_variation_id: str | None = None,
        triggered_by: str = "ADMIN",
        details: Mapping[str, Any] | None = None,
    ) -> RedemptionDetection:
        stmt = select(LoyaltyReward).options(selectinload(LoyaltyReward.offer)).where(LoyaltyReward.id == reward_id)
        reward = (await self._db.execute(stmt)).scalar_one_or_none()
        if reward is None:
            return RedemptionDetection(success=False, error="reward_not_found", reward_id=reward_id)
        if reward.status != RewardStatus.EARNED:
            return RedemptionDetection(
                success=False,
                error="reward_not_earned",
                reward_id=reward_id,
                details={"status": reward.status.value},
            )

        now = datetime.now(timezone.utc)
        redemption = LoyaltyRedemption(
            merchant_id=reward.merchant_id,
            reward_id=reward.id,
            offer_id=reward.offer_id,
            customer_id=reward.customer_id,
            order_id=order_id,
            location_id=location_id,
            redemption_type=redemption_type,
            redeemed_value_cents=redeemed_value_cents,
            redeemed_variation_id=redeemed_variation_id,
            redeemed_at=now,
        )
        self._db.add(redemption)
        reward.status = RewardStatus.REDEEMED
        reward.redeemed_at = now
        await self._db.flush()
        self._audit.record(
            reward.merchant_id,
            LoyaltyAuditAction.REWARD_REDEEMED,
            offer_id=reward.offer_id,
            reward_id=reward.id,
            customer_id=reward.customer_id,
            order_id=order_id,
            old_state=RewardStatus.EARNED.value,
            new_state=RewardStatus.REDEEMED.value,
            triggered_by=triggered_by,
            details={
                "redemption_type": redemption_type.value,
                "redeemed_value_cents": redeemed_value_cents,
                **(details or {}),
            },
        )
        await self._progress.refresh_summary(reward.merchant_id, reward.offer, reward.customer_id)
        await self._db.commit()
        self._observability.record_reward_event("redeemed")
        logger.info(
            "Reward redeemed",
            merchant_id=str(reward.merchant_id),
            reward_id=str(reward.id),
            order_id=order_id,
            redemption_type=redemption_type.value,
        )

        cleanup = await self.cleanup(reward.id)
        return RedemptionDetection(
            detected=True,
            reward_id=reward.id,
            offer_id=reward.offer_id,
            customer_id=reward.customer_id,
            detection_method=redemption_type.value,
            redemption_id=redemption.id,
            cleanup=cleanup,
            details={"order_id": order_id, "redeemed_value_cents": redeemed_value_cents},
        )

    async def cleanup(self, reward_id: UUID) -> CleanupResult:
        """Remove the reward's POS objects. Objects that are already gone count as removed."""

        stmt = select(LoyaltyReward).options(selectinload(LoyaltyReward.offer)).where(LoyaltyReward.id == reward_id)
        reward = (await self._db.execute(stmt)).scalar_one_or_none()
        if reward is None:
            return CleanupResult(success=False, error="reward_not_found", reward_id=reward_id)

        merchant_id = reward.merchant_id
        customer_id = reward.customer_id
        result = CleanupResult(reward_id=reward.id)
        gateway = self._gateway

        if reward.pos_group_id:
            group_id = reward.pos_group_id
            result.removed_member = await self._tolerate_missing(
                result, "remove_member", lambda: gateway.remove_group_member(merchant_id, customer_id, group_id)
            )
            result.deleted_group = await self._tolerate_missing(
                result, "delete_group", lambda: gateway.delete_customer_group(merchant_id, group_id)
            )
        catalog_ids = [
            value for value in (reward.pos_pricing_rule_id, reward.pos_product_set_id, reward.pos_discount_id) if value
        ]
        if catalog_ids:
            result.deleted_catalog_objects = await self._tolerate_missing(
                result, "delete_catalog", lambda: gateway.batch_delete_catalog(merchant_id, catalog_ids)
            )

        try:
            result.note_updated = await self._strip_reward_note(merchant_id, customer_id, reward.offer.offer_name)
        except PosApiError as exc:
            logger.warning(
                "Failed to remove reward note from customer",
                merchant_id=str(merchant_id),
                customer_id=customer_id,
                status=exc.status,
            )

        if result.errors:
            result.success = False
            result.error = "; ".join(result.errors)
            logger.error(
                "Reward cleanup incomplete",
                merchant_id=str(merchant_id),
                reward_id=str(reward.id),
                errors=result.errors,
            )
            return result

        reward.clear_pos_objects()
        reward.discount_cap_cents = None
        await self._db.commit()
        logger.info("Reward POS objects cleaned up", merchant_id=str(merchant_id), reward_id=str(reward.id))
        return result

    async def _tolerate_missing(self, result: CleanupResult, step: str, call: Callable[[], Awaitable[Any]]) -> bool:
        try:
            await call()
        except PosApiError as exc:
            if exc.is_not_found:
                return True
            result.errors.append(f"{step}: {exc}")
            return False
        return True

    async def _strip_reward_note(self, merchant_id: UUID, customer_id: str, offer_name: str) -> bool:
        customer = await self._gateway.retrieve_customer(merchant_id, customer_id, context="reward-note")
        if customer is None:
            return False
        note = customer.get("note") or ""
        line = reward_note_line(offer_name)
        if line not in note:
            return False
        await self._gateway.update_customer_note(
            merchant_id,
            customer_id,
            note=strip_note_line(note, line),
            version=customer.get("version"),
            context="reward-note",
        )
        return True


__all__ = [
    "METHOD_DISCOUNT_AMOUNT",
    "METHOD_DISCOUNT_ID",
    "METHOD_FREE_ITEM",
    "RedemptionService",
    "order_customer_id",
    "strip_note_line",
]
