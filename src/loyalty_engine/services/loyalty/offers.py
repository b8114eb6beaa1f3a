"""Lookups over configured offers and the rewards the engine has issued."""

from __future__ import annotations

from typing import Dict, Iterable, Set
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models import (
    LOYALTY_ENABLED_SETTING,
    Location,
    LoyaltyOffer,
    LoyaltyPurchaseEvent,
    LoyaltyQualifyingVariation,
    LoyaltyReward,
    MerchantSetting,
    RewardStatus,
)


class OfferCatalog:
    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def is_loyalty_enabled(self, merchant_id: UUID) -> bool:
        """Feature flag; only an explicit ``false`` disables the program."""

        value = (
            await self._db.execute(
                select(MerchantSetting.value).where(
                    MerchantSetting.merchant_id == merchant_id,
                    MerchantSetting.key == LOYALTY_ENABLED_SETTING,
                )
            )
        ).scalar_one_or_none()
        return not (isinstance(value, str) and value.strip().lower() == "false")

    async def active_location_ids(self, merchant_id: UUID) -> list[str]:
        stmt = select(Location.location_id).where(Location.merchant_id == merchant_id, Location.is_active.is_(True))
        return list((await self._db.execute(stmt)).scalars().all())

    async def variation_offer_map(self, merchant_id: UUID) -> Dict[str, LoyaltyOffer]:
        stmt = (
            select(LoyaltyQualifyingVariation.variation_id, LoyaltyOffer)
            .join(LoyaltyOffer, LoyaltyOffer.id == LoyaltyQualifyingVariation.offer_id)
            .where(
                LoyaltyQualifyingVariation.merchant_id == merchant_id,
                LoyaltyQualifyingVariation.is_active.is_(True),
                LoyaltyOffer.is_active.is_(True),
            )
        )
        rows = (await self._db.execute(stmt)).all()
        return {variation_id: offer for variation_id, offer in rows}

    async def offer_for_variation(self, merchant_id: UUID, variation_id: str) -> LoyaltyOffer | None:
        stmt = (
            select(LoyaltyOffer)
            .join(LoyaltyQualifyingVariation, LoyaltyQualifyingVariation.offer_id == LoyaltyOffer.id)
            .where(
                LoyaltyQualifyingVariation.merchant_id == merchant_id,
                LoyaltyQualifyingVariation.variation_id == variation_id,
                LoyaltyQualifyingVariation.is_active.is_(True),
                LoyaltyOffer.is_active.is_(True),
            )
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def qualifying_variation_ids(self, merchant_id: UUID, offer_id: UUID | None = None) -> list[str]:
        stmt = select(LoyaltyQualifyingVariation.variation_id).where(
            LoyaltyQualifyingVariation.merchant_id == merchant_id,
            LoyaltyQualifyingVariation.is_active.is_(True),
        )
        if offer_id is not None:
            stmt = stmt.where(LoyaltyQualifyingVariation.offer_id == offer_id)
        stmt = stmt.order_by(LoyaltyQualifyingVariation.variation_id)
        return list((await self._db.execute(stmt)).scalars().all())

    async def max_catalog_price_cents(self, merchant_id: UUID, offer_id: UUID) -> int | None:
        stmt = select(func.max(LoyaltyQualifyingVariation.price_cents)).where(
            LoyaltyQualifyingVariation.merchant_id == merchant_id,
            LoyaltyQualifyingVariation.offer_id == offer_id,
            LoyaltyQualifyingVariation.is_active.is_(True),
            LoyaltyQualifyingVariation.price_cents > 0,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def max_purchase_price_cents(
        self,
        merchant_id: UUID,
        offer_id: UUID,
        *,
        customer_id: str | None = None,
        reward_id: UUID | None = None,
    ) -> int | None:
        stmt = select(func.max(LoyaltyPurchaseEvent.unit_price_cents)).where(
            LoyaltyPurchaseEvent.merchant_id == merchant_id,
            LoyaltyPurchaseEvent.offer_id == offer_id,
            LoyaltyPurchaseEvent.unit_price_cents > 0,
        )
        if customer_id is not None:
            stmt = stmt.where(LoyaltyPurchaseEvent.customer_id == customer_id)
        if reward_id is not None:
            stmt = stmt.where(LoyaltyPurchaseEvent.reward_id == reward_id)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def our_discount_ids(self, merchant_id: UUID) -> Set[str]:
        """Every discount and pricing-rule id this program has placed on the POS."""

        stmt = select(LoyaltyReward.pos_discount_id, LoyaltyReward.pos_pricing_rule_id).where(
            LoyaltyReward.merchant_id == merchant_id,
            or_(LoyaltyReward.pos_discount_id.is_not(None), LoyaltyReward.pos_pricing_rule_id.is_not(None)),
        )
        ids: Set[str] = set()
        for discount_id, pricing_rule_id in (await self._db.execute(stmt)).all():
            if discount_id:
                ids.add(discount_id)
            if pricing_rule_id:
                ids.add(pricing_rule_id)
        return ids

    async def earned_reward_for_discount_ids(
        self, merchant_id: UUID, catalog_object_ids: Iterable[str]
    ) -> LoyaltyReward | None:
        ids = [value for value in catalog_object_ids if value]
        if not ids:
            return None
        stmt = (
            select(LoyaltyReward)
            .where(
                LoyaltyReward.merchant_id == merchant_id,
                LoyaltyReward.status == RewardStatus.EARNED,
                or_(LoyaltyReward.pos_discount_id.in_(ids), LoyaltyReward.pos_pricing_rule_id.in_(ids)),
            )
            .order_by(LoyaltyReward.earned_at.asc())
            .limit(1)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()


__all__ = ["OfferCatalog"]
