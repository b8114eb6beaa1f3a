from .merchant import LOYALTY_ENABLED_SETTING, Location, Merchant, MerchantSetting
from .loyalty import (
    CustomerSource,
    LoyaltyAuditAction,
    LoyaltyAuditEvent,
    LoyaltyCustomer,
    LoyaltyCustomerSummary,
    LoyaltyOffer,
    LoyaltyProcessedOrder,
    LoyaltyPurchaseEvent,
    LoyaltyQualifyingVariation,
    LoyaltyRedemption,
    LoyaltyReward,
    ProcessedOrderResult,
    RedemptionType,
    RewardStatus,
)

__all__ = [
    "CustomerSource",
    "LOYALTY_ENABLED_SETTING",
    "Location",
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
    "Merchant",
    "MerchantSetting",
    "ProcessedOrderResult",
    "RedemptionType",
    "RewardStatus",
]
