"""Scheduled backfill that catches orders the webhooks missed."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List
from uuid import UUID

from loguru import logger

from loyalty_engine.jobs.loyalty.common import SessionFactory, active_merchant_ids, gateway_scope, open_session
from loyalty_engine.services.loyalty import BackfillOptions, LoyaltyReconciliationService
from loyalty_engine.services.pos.gateway import PosGateway


# meta: job: loyalty-backfill


async def run_loyalty_backfill(
    *,
    session_factory: SessionFactory,
    gateway: PosGateway | None = None,
    merchant_ids: Iterable[str | UUID] | None = None,
    days: int | None = None,
    use_prefetch: bool = True,
) -> Dict[str, Any]:
    """Replay recent completed orders for every selected merchant."""

    merchants = await active_merchant_ids(session_factory, merchant_ids)
    options = BackfillOptions(use_prefetch=use_prefetch)
    if days is not None:
        options.days = days

    summary: Dict[str, Any] = {
        "merchants": len(merchants),
        "orders_processed": 0,
        "loyalty_purchases_recorded": 0,
        "errors": 0,
        "failures": [],
    }
    failures: List[Dict[str, str]] = summary["failures"]

    async with gateway_scope(session_factory, gateway) as pos:
        for merchant_id in merchants:
            try:
                session = await open_session(session_factory)
                async with session as managed_session:
                    service = LoyaltyReconciliationService(managed_session, pos)
                    result = await service.run_backfill(merchant_id, options)
            except Exception as exc:
                logger.exception("Loyalty backfill failed for merchant", merchant_id=str(merchant_id))
                failures.append({"merchant_id": str(merchant_id), "error": str(exc)})
                continue
            summary["orders_processed"] += result["orders_processed"]
            summary["loyalty_purchases_recorded"] += result["loyalty_purchases_recorded"]
            summary["errors"] += len(result["errors"])

    logger.bind(summary=summary).info("Loyalty backfill job completed")
    return summary


__all__ = ["run_loyalty_backfill"]
