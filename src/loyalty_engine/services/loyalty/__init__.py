"""Loyalty service exports."""

from .audit_log import AuditLogService  # noqa: F401
from .customer_cache import CustomerCacheService  # noqa: F401
from .customer_refresh import CustomerRefreshService  # noqa: F401
from .expiration import ExpirationService  # noqa: F401
from .identification import (  # noqa: F401
    CustomerIdentificationService,
    IdentificationResult,
    PrefetchedLoyaltyData,
)
from .issuance import MissingPriceDataError, RewardIssuanceManager  # noqa: F401
from .offers import OfferCatalog  # noqa: F401
from .order_intake import OrderIntakeService  # noqa: F401
from .progress import ProgressService  # noqa: F401
from .reconciliation import (  # noqa: F401
    AuditWindow,
    BackfillOptions,
    CatchupOptions,
    LoyaltyReconciliationService,
)
from .redemption import RedemptionService  # noqa: F401
from .results import (  # noqa: F401
    CleanupResult,
    IssuanceResult,
    OperationResult,
    OrderProcessingResult,
    ProgressUpdate,
    RedemptionDetection,
    RefundResult,
)
from .webhooks import LoyaltyWebhookService  # noqa: F401

__all__ = [
    "AuditLogService",
    "AuditWindow",
    "BackfillOptions",
    "CatchupOptions",
    "CleanupResult",
    "CustomerCacheService",
    "CustomerIdentificationService",
    "CustomerRefreshService",
    "ExpirationService",
    "IdentificationResult",
    "IssuanceResult",
    "LoyaltyReconciliationService",
    "LoyaltyWebhookService",
    "MissingPriceDataError",
    "OfferCatalog",
    "OperationResult",
    "OrderIntakeService",
    "OrderProcessingResult",
    "PrefetchedLoyaltyData",
    "ProgressService",
    "ProgressUpdate",
    "RedemptionDetection",
    "RedemptionService",
    "RefundResult",
    "RewardIssuanceManager",
]
