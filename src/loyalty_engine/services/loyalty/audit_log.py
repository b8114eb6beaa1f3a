"""Append-only loyalty audit trail."""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models import LoyaltyAuditAction, LoyaltyAuditEvent


class AuditLogService:
    """Stages audit rows in the caller's transaction; never raises."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    def record(
        self,
        merchant_id: UUID,
        action: LoyaltyAuditAction,
        *,
        offer_id: UUID | None = None,
        reward_id: UUID | None = None,
        purchase_event_id: UUID | None = None,
        customer_id: str | None = None,
        order_id: str | None = None,
        old_quantity: int | None = None,
        new_quantity: int | None = None,
        old_state: str | None = None,
        new_state: str | None = None,
        triggered_by: str = "SYSTEM",
        details: Mapping[str, Any] | None = None,
    ) -> None:
        try:
            self._db.add(
                LoyaltyAuditEvent(
                    merchant_id=merchant_id,
                    action=action,
                    offer_id=offer_id,
                    reward_id=reward_id,
                    purchase_event_id=purchase_event_id,
                    customer_id=customer_id,
                    order_id=order_id,
                    old_quantity=old_quantity,
                    new_quantity=new_quantity,
                    old_state=old_state,
                    new_state=new_state,
                    triggered_by=triggered_by,
                    details=_plain(details) if details else None,
                )
            )
        except Exception as exc:  # pragma: no cover - audit must not break the pipeline
            logger.warning("Failed to stage loyalty audit event", action=action.value, error=str(exc))
            return
        logger.bind(category="loyalty.audit").debug(
            "Loyalty audit event",
            action=action.value,
            merchant_id=str(merchant_id),
            customer_id=customer_id,
            order_id=order_id,
        )


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_plain(item) for item in value]
    if isinstance(value, UUID):
        return str(value)
    return value


__all__ = ["AuditLogService"]
