"""Structured results returned from the engine's public entry points."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID


@dataclass
class OperationResult:
    """Operator-visible outcome: failures are reported, never raised."""

    success: bool = True
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return _jsonable(asdict(self))


@dataclass
class ProgressUpdate:
    offer_id: UUID
    quantity_before: int
    quantity_after: int
    required_quantity: int
    current_quantity: int
    earned_reward_ids: List[UUID] = field(default_factory=list)


@dataclass
class OrderProcessingResult(OperationResult):
    order_id: Optional[str] = None
    status: str = "processed"
    customer_id: Optional[str] = None
    customer_source: Optional[str] = None
    purchase_event_ids: List[UUID] = field(default_factory=list)
    progress: List[ProgressUpdate] = field(default_factory=list)
    earned_reward_ids: List[UUID] = field(default_factory=list)
    skipped_items: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def already_processed(self) -> bool:
        return self.status == "already_processed"

    @property
    def reward_earned(self) -> bool:
        return bool(self.earned_reward_ids)


@dataclass
class RefundResult(OperationResult):
    order_id: Optional[str] = None
    refund_event_ids: List[UUID] = field(default_factory=list)
    revoked_reward_ids: List[UUID] = field(default_factory=list)
    skipped_items: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class IssuanceResult(OperationResult):
    reward_id: Optional[UUID] = None
    group_id: Optional[str] = None
    discount_id: Optional[str] = None
    product_set_id: Optional[str] = None
    pricing_rule_id: Optional[str] = None
    discount_cap_cents: Optional[int] = None
    already_issued: bool = False


@dataclass
class CleanupResult(OperationResult):
    reward_id: Optional[UUID] = None
    removed_member: bool = False
    deleted_group: bool = False
    deleted_catalog_objects: bool = False
    note_updated: bool = False
    errors: List[str] = field(default_factory=list)


@dataclass
class RedemptionDetection(OperationResult):
    detected: bool = False
    reward_id: Optional[UUID] = None
    offer_id: Optional[UUID] = None
    customer_id: Optional[str] = None
    detection_method: Optional[str] = None
    redemption_id: Optional[UUID] = None
    cleanup: Optional[CleanupResult] = None


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if isinstance(value, UUID):
        return str(value)
    return value


__all__ = [
    "CleanupResult",
    "IssuanceResult",
    "OperationResult",
    "OrderProcessingResult",
    "ProgressUpdate",
    "RedemptionDetection",
    "RefundResult",
]
