"""Loyalty program domain models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from loyalty_engine.db.base import Base


class CustomerSource(str, Enum):
    """How the purchasing customer was attributed to an order."""

    ORDER = "order"
    TENDER = "tender"
    LOYALTY_LOOKUP = "loyalty-lookup"
    FULFILLMENT = "fulfillment"
    MANUAL = "manual"


class ProcessedOrderResult(str, Enum):
    PENDING = "pending"
    NO_LINE_ITEMS = "no_line_items"
    QUALIFYING = "qualifying"
    NON_QUALIFYING = "non_qualifying"


class RewardStatus(str, Enum):
    """Reward lifecycle: earned -> redeemed, or earned -> revoked."""

    EARNED = "earned"
    REDEEMED = "redeemed"
    REVOKED = "revoked"


class RedemptionType(str, Enum):
    ORDER_DISCOUNT = "order_discount"
    MANUAL_ADMIN = "manual_admin"
    AUTO_DETECTED = "auto_detected"


class LoyaltyAuditAction(str, Enum):
    """Operator-traceable lifecycle actions."""

    PURCHASE_RECORDED = "PURCHASE_RECORDED"
    REFUND_PROCESSED = "REFUND_PROCESSED"
    WINDOW_EXPIRED = "WINDOW_EXPIRED"
    REWARD_PROGRESS_UPDATED = "REWARD_PROGRESS_UPDATED"
    REWARD_EARNED = "REWARD_EARNED"
    REWARD_ISSUED = "REWARD_ISSUED"
    REWARD_REDEEMED = "REWARD_REDEEMED"
    REWARD_REVOKED = "REWARD_REVOKED"
    MANUAL_ADJUSTMENT = "MANUAL_ADJUSTMENT"
    BACKFILL_RUN = "BACKFILL_RUN"
    CATCHUP_RUN = "CATCHUP_RUN"
    ORDERS_ADDED_MANUALLY = "ORDERS_ADDED_MANUALLY"
    DISCOUNT_CAP_RAISED = "DISCOUNT_CAP_RAISED"


class LoyaltyOffer(Base):
    """A buy-N-get-one-free rule for one brand/size group."""

    __tablename__ = "loyalty_offers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    offer_name = Column(String, nullable=False)
    brand_name = Column(String, nullable=False)
    size_group = Column(String, nullable=False)
    required_quantity = Column(Integer, nullable=False)
    window_months = Column(Integer, nullable=False, default=12)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="1")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    variations = relationship("LoyaltyQualifyingVariation", back_populates="offer", cascade="all, delete-orphan")


class LoyaltyQualifyingVariation(Base):
    """A POS catalog variation enrolled in an offer."""

    __tablename__ = "loyalty_qualifying_variations"
    __table_args__ = (
        UniqueConstraint("merchant_id", "variation_id", name="uq_loyalty_qualifying_variations_variation"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False, index=True)
    variation_id = Column(String, nullable=False)
    item_name = Column(String, nullable=True)
    variation_name = Column(String, nullable=True)
    price_cents = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="1")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    offer = relationship("LoyaltyOffer", back_populates="variations")


class LoyaltyPurchaseEvent(Base):
    """One qualifying line item (or refund of one) attributed to a customer."""

    __tablename__ = "loyalty_purchase_events"
    __table_args__ = (
        UniqueConstraint("merchant_id", "idempotency_key", name="uq_loyalty_purchase_events_idempotency"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=False, index=True)
    location_id = Column(String, nullable=True)
    variation_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=True)
    purchased_at = Column(DateTime(timezone=True), nullable=False)
    window_start = Column(Date, nullable=False)
    window_end = Column(Date, nullable=False)
    is_refund = Column(Boolean, nullable=False, default=False, server_default="0")
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id", ondelete="SET NULL"), nullable=True, index=True)
    original_event_id = Column(
        UUID(as_uuid=True), ForeignKey("loyalty_purchase_events.id", ondelete="SET NULL"), nullable=True
    )
    superseded = Column(Boolean, nullable=False, default=False, server_default="0")
    idempotency_key = Column(String, nullable=False)
    receipt_url = Column(String, nullable=True)
    payment_type = Column(String, nullable=True)
    customer_source = Column(SqlEnum(CustomerSource, name="loyalty_customer_source"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class LoyaltyProcessedOrder(Base):
    """Claim row: at most one per (merchant, order); the concurrency guard for intake."""

    __tablename__ = "loyalty_processed_orders"
    __table_args__ = (
        UniqueConstraint("merchant_id", "order_id", name="uq_loyalty_processed_orders_order"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(String, nullable=False)
    customer_id = Column(String, nullable=True)
    result_type = Column(SqlEnum(ProcessedOrderResult, name="loyalty_processed_order_result"), nullable=False)
    qualifying_items = Column(Integer, nullable=False, default=0)
    total_line_items = Column(Integer, nullable=False, default=0)
    source = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LoyaltyCustomerSummary(Base):
    """Denormalised progress per (merchant, customer, offer)."""

    __tablename__ = "loyalty_customer_summaries"
    __table_args__ = (
        UniqueConstraint("merchant_id", "customer_id", "offer_id", name="uq_loyalty_customer_summaries_key"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(String, nullable=False)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False)
    current_quantity = Column(Integer, nullable=False, default=0)
    required_quantity = Column(Integer, nullable=False, default=0)
    window_start = Column(Date, nullable=True)
    window_end = Column(Date, nullable=True)
    has_earned_reward = Column(Boolean, nullable=False, default=False)
    earned_reward_id = Column(UUID(as_uuid=True), nullable=True)
    total_lifetime_purchases = Column(Integer, nullable=False, default=0)
    total_rewards_earned = Column(Integer, nullable=False, default=0)
    total_rewards_redeemed = Column(Integer, nullable=False, default=0)
    last_purchase_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class LoyaltyReward(Base):
    """An earned free item and the POS objects that deliver it."""

    __tablename__ = "loyalty_rewards"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(String, nullable=False, index=True)
    status = Column(SqlEnum(RewardStatus, name="loyalty_reward_status"), nullable=False, default=RewardStatus.EARNED)
    required_quantity = Column(Integer, nullable=False)
    earned_at = Column(DateTime(timezone=True), nullable=False)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revocation_reason = Column(String, nullable=True)
    pos_group_id = Column(String, nullable=True)
    pos_discount_id = Column(String, nullable=True, index=True)
    pos_product_set_id = Column(String, nullable=True)
    pos_pricing_rule_id = Column(String, nullable=True, index=True)
    discount_cap_cents = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    offer = relationship("LoyaltyOffer")

    @property
    def is_issued(self) -> bool:
        return all(
            (self.pos_group_id, self.pos_discount_id, self.pos_product_set_id, self.pos_pricing_rule_id)
        )

    def clear_pos_objects(self) -> None:
        self.pos_group_id = None
        self.pos_discount_id = None
        self.pos_product_set_id = None
        self.pos_pricing_rule_id = None


class LoyaltyRedemption(Base):
    """Confirmed consumption of a reward, optionally tied to the consuming order."""

    __tablename__ = "loyalty_redemptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_rewards.id", ondelete="CASCADE"), nullable=False, index=True)
    offer_id = Column(UUID(as_uuid=True), ForeignKey("loyalty_offers.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column(String, nullable=False, index=True)
    order_id = Column(String, nullable=True, index=True)
    location_id = Column(String, nullable=True)
    redemption_type = Column(SqlEnum(RedemptionType, name="loyalty_redemption_type"), nullable=False)
    redeemed_value_cents = Column(Integer, nullable=True)
    redeemed_variation_id = Column(String, nullable=True)
    redeemed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    reward = relationship("LoyaltyReward")


class LoyaltyAuditEvent(Base):
    """Append-only log of lifecycle actions for operator traceability."""

    __tablename__ = "loyalty_audit_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(SqlEnum(LoyaltyAuditAction, name="loyalty_audit_action"), nullable=False)
    offer_id = Column(UUID(as_uuid=True), nullable=True)
    reward_id = Column(UUID(as_uuid=True), nullable=True)
    purchase_event_id = Column(UUID(as_uuid=True), nullable=True)
    customer_id = Column(String, nullable=True)
    order_id = Column(String, nullable=True)
    old_quantity = Column(Integer, nullable=True)
    new_quantity = Column(Integer, nullable=True)
    old_state = Column(String, nullable=True)
    new_state = Column(String, nullable=True)
    triggered_by = Column(String, nullable=False, default="SYSTEM")
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class LoyaltyCustomer(Base):
    """Read-through cache of POS customer profile fields."""

    __tablename__ = "loyalty_customers"
    __table_args__ = (
        UniqueConstraint("merchant_id", "customer_id", name="uq_loyalty_customers_customer"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(String, nullable=False)
    given_name = Column(String, nullable=True)
    family_name = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    phone_number = Column(String, nullable=True, index=True)
    email_address = Column(String, nullable=True)
    company_name = Column(String, nullable=True)
    total_orders = Column(Integer, nullable=False, default=0)
    total_rewards_earned = Column(Integer, nullable=False, default=0)
    has_active_rewards = Column(Boolean, nullable=False, default=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


__all__ = [
    "CustomerSource",
    "LoyaltyAuditAction",
    "LoyaltyAuditEvent",
    "LoyaltyCustomer",
    "LoyaltyCustomerSummary",
    "LoyaltyOffer",
    "LoyaltyProcessedOrder",
    "LoyaltyPurchaseEvent",
    "LoyaltyQualifyingVariation",
    "LoyaltyRedemption",
    "LoyaltyReward",
    "ProcessedOrderResult",
    "RedemptionType",
    "RewardStatus",
]
