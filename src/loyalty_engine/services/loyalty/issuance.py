"""Issue earned rewards as auto-applied POS discounts, and keep them healthy."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from loyalty_engine.core.settings import settings
from loyalty_engine.models import LoyaltyAuditAction, LoyaltyReward, RewardStatus
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.loyalty.audit_log import AuditLogService
from loyalty_engine.services.loyalty.customer_cache import CustomerCacheService
from loyalty_engine.services.loyalty.offers import OfferCatalog
from loyalty_engine.services.loyalty.results import IssuanceResult
from loyalty_engine.services.pos.gateway import PosApiError, PosGateway

REWARD_NOTE_TEMPLATE = "🎁 REWARD: Free {offer_name}"
MAX_GROUP_NAME_LENGTH = 255


class MissingPriceDataError(RuntimeError):
    """No positive price is known for the offer, so no safe cap can be set."""


class IssuanceError(RuntimeError):
    """A step of the issuance saga failed."""


def reward_note_line(offer_name: str) -> str:
    return REWARD_NOTE_TEMPLATE.format(offer_name=offer_name)


def _client_ids(reward_id: str) -> Dict[str, str]:
    return {
        "discount": f"#loyalty-discount-{reward_id}",
        "product_set": f"#loyalty-productset-{reward_id}",
        "pricing_rule": f"#loyalty-pricingrule-{reward_id}",
    }


def build_reward_catalog_objects(
    reward_id: str,
    *,
    offer_name: str,
    variation_ids: List[str],
    group_id: str,
    cap_cents: int,
    currency: str,
) -> List[Dict[str, Any]]:
    """DISCOUNT + PRODUCT_SET + PRICING_RULE that auto-apply one free item for one group."""

    client_ids = _client_ids(reward_id)
    return [
        {
            "type": "DISCOUNT",
            "id": client_ids["discount"],
            "discount_data": {
                "name": f"Loyalty: {offer_name} (Reward {reward_id})",
                "discount_type": "FIXED_PERCENTAGE",
                "percentage": "100",
                "application_method": "AUTOMATICALLY_APPLIED",
                "modify_tax_basis": "MODIFY_TAX_BASIS",
                "maximum_amount_money": {"amount": cap_cents, "currency": currency},
            },
        },
        {
            "type": "PRODUCT_SET",
            "id": client_ids["product_set"],
            "product_set_data": {
                "name": f"Loyalty Products: {offer_name}",
                "product_ids_any": list(variation_ids),
                "quantity_exact": 1,
            },
        },
        {
            "type": "PRICING_RULE",
            "id": client_ids["pricing_rule"],
            "pricing_rule_data": {
                "name": f"Loyalty Rule: {offer_name}",
                "discount_id": client_ids["discount"],
                "match_products_id": client_ids["product_set"],
                "customer_group_ids_any": [group_id],
            },
        },
    ]


def _id_mappings(payload: Mapping[str, Any]) -> Dict[str, str]:
    mappings: Dict[str, str] = {}
    for entry in payload.get("id_mappings") or []:
        if isinstance(entry, Mapping) and entry.get("client_object_id") and entry.get("object_id"):
            mappings[entry["client_object_id"]] = entry["object_id"]
    return mappings


class RewardIssuanceManager:
    """Runs the issuance saga and its compensations.

    Group, membership and catalog objects are created in order. Any failure
    tears down what was already created, so a reward ends up with either all
    four POS ids or none.
    """

    def __init__(self, db_session: AsyncSession, gateway: PosGateway, *, currency: str | None = None) -> None:
        self._db = db_session
        self._gateway = gateway
        self._currency = currency or settings.loyalty_default_currency
        self._offers = OfferCatalog(db_session)
        self._audit = AuditLogService(db_session)
        self._customers = CustomerCacheService(db_session, gateway)
        self._observability = get_loyalty_store()

    async def _load(self, reward_id: UUID) -> LoyaltyReward | None:
        stmt = select(LoyaltyReward).options(selectinload(LoyaltyReward.offer)).where(LoyaltyReward.id == reward_id)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def compute_discount_cap(self, reward: LoyaltyReward) -> int:
        """Highest price seen for the offer, from this customer's history or the catalog."""

        history = await self._offers.max_purchase_price_cents(
            reward.merchant_id, reward.offer_id, customer_id=reward.customer_id
        )
        catalog = await self._offers.max_catalog_price_cents(reward.merchant_id, reward.offer_id)
        cap = max(history or 0, catalog or 0)
        if cap <= 0:
            raise MissingPriceDataError(f"No price data for offer {reward.offer_id}")
        return cap

    async def issue_reward(self, reward_id: UUID) -> IssuanceResult:
        reward = await self._load(reward_id)
        if reward is None:
            return IssuanceResult(success=False, error="reward_not_found", reward_id=reward_id)
        if reward.status != RewardStatus.EARNED:
            return IssuanceResult(success=False, error="reward_not_earned", reward_id=reward_id)
        if reward.is_issued:
            return IssuanceResult(
                reward_id=reward.id,
                group_id=reward.pos_group_id,
                discount_id=reward.pos_discount_id,
                product_set_id=reward.pos_product_set_id,
                pricing_rule_id=reward.pos_pricing_rule_id,
                discount_cap_cents=reward.discount_cap_cents,
                already_issued=True,
            )

        merchant_id = reward.merchant_id
        customer_id = reward.customer_id
        offer_name = reward.offer.offer_name
        rid = str(reward.id)
        log = logger.bind(merchant_id=str(merchant_id), reward_id=rid, customer_id=customer_id)

        group_id: Optional[str] = None
        member_added = False
        catalog_ids: List[str] = []
        try:
            customer_name = await self._customer_name(merchant_id, customer_id)
            group = await self._gateway.create_customer_group(
                merchant_id,
                name=f"Loyalty Reward {rid} - {offer_name} - {customer_name}"[:MAX_GROUP_NAME_LENGTH],
                idempotency_key=f"loyalty-reward-group-{rid}",
                context="issue-reward",
            )
            group_id = group.get("id")
            if not group_id:
                raise IssuanceError("Customer group creation returned no id")

            await self._gateway.add_group_member(merchant_id, customer_id, group_id, context="issue-reward")
            member_added = True

            cap = await self.compute_discount_cap(reward)
            variation_ids = await self._offers.qualifying_variation_ids(merchant_id, reward.offer_id)
            if not variation_ids:
                raise IssuanceError("Offer has no active qualifying variations")

            payload = await self._gateway.batch_upsert_catalog(
                merchant_id,
                idempotency_key=f"loyalty-discount-batch-{rid}",
                objects=build_reward_catalog_objects(
                    rid,
                    offer_name=offer_name,
                    variation_ids=variation_ids,
                    group_id=group_id,
                    cap_cents=cap,
                    currency=self._currency,
                ),
                context="issue-reward",
            )
            mappings = _id_mappings(payload)
            client_ids = _client_ids(rid)
            catalog_ids = [mappings[key] for key in client_ids.values() if key in mappings]
            discount_id = mappings.get(client_ids["discount"])
            product_set_id = mappings.get(client_ids["product_set"])
            pricing_rule_id = mappings.get(client_ids["pricing_rule"])
            if not (discount_id and product_set_id and pricing_rule_id):
                raise IssuanceError("Catalog upsert did not return ids for every reward object")
        except (PosApiError, MissingPriceDataError, IssuanceError) as exc:
            log.error("Reward issuance failed", error=str(exc), error_type=type(exc).__name__)
            await self._compensate(
                merchant_id, customer_id, group_id=group_id, member_added=member_added, catalog_ids=catalog_ids
            )
            self._observability.record_reward_event("issue_failed")
            return IssuanceResult(success=False, error=str(exc), reward_id=reward.id)

        reward.pos_group_id = group_id
        reward.pos_discount_id = discount_id
        reward.pos_product_set_id = product_set_id
        reward.pos_pricing_rule_id = pricing_rule_id
        reward.discount_cap_cents = cap
        self._audit.record(
            merchant_id,
            LoyaltyAuditAction.REWARD_ISSUED,
            offer_id=reward.offer_id,
            reward_id=reward.id,
            customer_id=customer_id,
            details={
                "group_id": group_id,
                "discount_id": discount_id,
                "product_set_id": product_set_id,
                "pricing_rule_id": pricing_rule_id,
                "discount_cap_cents": cap,
            },
        )
        await self._db.commit()
        self._observability.record_reward_event("issued")
        log.info("Reward issued on POS", discount_id=discount_id, discount_cap_cents=cap)

        try:
            await self.append_reward_note(merchant_id, customer_id, offer_name)
        except PosApiError as exc:
            log.warning("Failed to add reward note to customer", status=exc.status, error=str(exc))

        return IssuanceResult(
            reward_id=reward.id,
            group_id=group_id,
            discount_id=discount_id,
            product_set_id=product_set_id,
            pricing_rule_id=pricing_rule_id,
            discount_cap_cents=cap,
        )

    async def append_reward_note(self, merchant_id: UUID, customer_id: str, offer_name: str) -> bool:
        customer = await self._gateway.retrieve_customer(merchant_id, customer_id, context="reward-note")
        if customer is None:
            return False
        line = reward_note_line(offer_name)
        note = (customer.get("note") or "").rstrip()
        if line in note:
            return False
        await self._gateway.update_customer_note(
            merchant_id,
            customer_id,
            note=f"{note}\n{line}" if note else line,
            version=customer.get("version"),
            context="reward-note",
        )
        return True

    async def _customer_name(self, merchant_id: UUID, customer_id: str) -> str:
        try:
            cached = await self._customers.get_or_fetch(merchant_id, customer_id)
        except PosApiError:
            cached = None
        if cached is not None and cached.display_name:
            return cached.display_name
        return customer_id

    async def _compensate(
        self,
        merchant_id: UUID,
        customer_id: str,
        *,
        group_id: str | None,
        member_added: bool,
        catalog_ids: List[str],
    ) -> None:
        gateway = self._gateway
        steps = []
        if catalog_ids:
            steps.append(("delete_catalog", lambda: gateway.batch_delete_catalog(merchant_id, catalog_ids)))
        if group_id and member_added:
            steps.append(("remove_member", lambda: gateway.remove_group_member(merchant_id, customer_id, group_id)))
        if group_id:
            steps.append(("delete_group", lambda: gateway.delete_customer_group(merchant_id, group_id)))
        for name, step in steps:
            try:
                await step()
            except PosApiError as exc:
                logger.warning(
                    "Issuance compensation step failed",
                    merchant_id=str(merchant_id),
                    customer_id=customer_id,
                    step=name,
                    status=exc.status,
                )

    # Maintenance

    async def _earned_rewards(self, merchant_id: UUID) -> List[LoyaltyReward]:
        stmt = (
            select(LoyaltyReward)
            .options(selectinload(LoyaltyReward.offer))
            .where(LoyaltyReward.merchant_id == merchant_id, LoyaltyReward.status == RewardStatus.EARNED)
            .order_by(LoyaltyReward.earned_at.asc())
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def refresh_discount_caps(self, merchant_id: UUID) -> Dict[str, Any]:
        """Raise stored caps when prices went up. Caps are never lowered."""

        summary: Dict[str, Any] = {"checked": 0, "raised": 0, "unchanged": 0, "skipped": 0, "errors": []}
        for reward in await self._earned_rewards(merchant_id):
            if not reward.is_issued:
                continue
            summary["checked"] += 1
            try:
                cap = await self.compute_discount_cap(reward)
            except MissingPriceDataError:
                summary["skipped"] += 1
                continue
            current = reward.discount_cap_cents or 0
            if cap <= current:
                summary["unchanged"] += 1
                continue
            try:
                discount = await self._gateway.retrieve_catalog_object(
                    merchant_id, reward.pos_discount_id, context="discount-cap"
                )
                if discount is None:
                    raise IssuanceError("Discount object missing")
                discount_data = dict(discount.get("discount_data") or {})
                discount_data["maximum_amount_money"] = {"amount": cap, "currency": self._currency}
                await self._gateway.batch_upsert_catalog(
                    merchant_id,
                    idempotency_key=f"loyalty-discount-cap-{reward.id}-{cap}",
                    objects=[
                        {
                            "type": "DISCOUNT",
                            "id": reward.pos_discount_id,
                            "version": discount.get("version"),
                            "discount_data": discount_data,
                        }
                    ],
                    context="discount-cap",
                )
            except (PosApiError, IssuanceError) as exc:
                summary["errors"].append({"reward_id": str(reward.id), "error": str(exc)})
                continue

            reward.discount_cap_cents = cap
            self._audit.record(
                merchant_id,
                LoyaltyAuditAction.DISCOUNT_CAP_RAISED,
                offer_id=reward.offer_id,
                reward_id=reward.id,
                customer_id=reward.customer_id,
                old_quantity=current,
                new_quantity=cap,
                details={"previous_cap_cents": current, "new_cap_cents": cap},
            )
            await self._db.commit()
            summary["raised"] += 1
            logger.info(
                "Raised reward discount cap",
                merchant_id=str(merchant_id),
                reward_id=str(reward.id),
                previous_cap_cents=current,
                new_cap_cents=cap,
            )
        return summary

    async def validate_earned_rewards(self, merchant_id: UUID, *, fix_issues: bool = False) -> Dict[str, Any]:
        """Check every earned reward against the POS, optionally repairing what drifted."""

        report: Dict[str, Any] = {"total": 0, "valid": 0, "issues": [], "fixed": [], "errors": []}
        for reward in await self._earned_rewards(merchant_id):
            report["total"] += 1
            rid = str(reward.id)
            try:
                issue, action = await self._validate_one(reward)
            except PosApiError as exc:
                report["errors"].append({"reward_id": rid, "error": str(exc)})
                continue
            if issue is None:
                report["valid"] += 1
                continue
            report["issues"].append({"reward_id": rid, "customer_id": reward.customer_id, "issue": issue})
            if not fix_issues:
                continue
            try:
                fixed = await self._fix(reward, issue)
            except PosApiError as exc:
                report["errors"].append({"reward_id": rid, "error": str(exc)})
                continue
            if fixed.success:
                report["fixed"].append({"reward_id": rid, "action": action})
            else:
                report["errors"].append({"reward_id": rid, "error": fixed.error})
        return report

    async def _validate_one(self, reward: LoyaltyReward) -> tuple[Optional[str], Optional[str]]:
        if not reward.pos_discount_id:
            return "MISSING_POS_IDS", "CREATED_DISCOUNT"
        try:
            discount = await self._gateway.retrieve_catalog_object(
                reward.merchant_id, reward.pos_discount_id, context="validate-reward"
            )
        except PosApiError as exc:
            if exc.is_not_found:
                return "DISCOUNT_NOT_FOUND", "RECREATED_DISCOUNT"
            raise
        if discount is None:
            return "DISCOUNT_NOT_FOUND", "RECREATED_DISCOUNT"
        if discount.get("is_deleted"):
            return "DISCOUNT_DELETED", "RECREATED_DELETED_DISCOUNT"
        if reward.pos_group_id:
            customer = await self._gateway.retrieve_customer(
                reward.merchant_id, reward.customer_id, context="validate-reward"
            )
            if customer is not None and reward.pos_group_id not in (customer.get("group_ids") or []):
                return "CUSTOMER_NOT_IN_GROUP", "READDED_TO_GROUP"
        return None, None

    async def _fix(self, reward: LoyaltyReward, issue: str) -> IssuanceResult:
        if issue == "CUSTOMER_NOT_IN_GROUP":
            await self._gateway.add_group_member(
                reward.merchant_id, reward.customer_id, reward.pos_group_id, context="validate-reward"
            )
            return IssuanceResult(reward_id=reward.id, group_id=reward.pos_group_id)
        if issue != "MISSING_POS_IDS":
            await self._compensate(
                reward.merchant_id,
                reward.customer_id,
                group_id=reward.pos_group_id,
                member_added=True,
                catalog_ids=[value for value in (reward.pos_pricing_rule_id, reward.pos_product_set_id) if value],
            )
        reward.clear_pos_objects()
        reward.discount_cap_cents = None
        await self._db.commit()
        return await self.issue_reward(reward.id)


__all__ = [
    "IssuanceError",
    "MissingPriceDataError",
    "REWARD_NOTE_TEMPLATE",
    "RewardIssuanceManager",
    "build_reward_catalog_objects",
    "reward_note_line",
]
