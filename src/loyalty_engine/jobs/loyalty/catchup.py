"""Scheduled reverse lookup of known customers' recent orders."""

from __future__ import annotations

from typing import Any, Dict, Iterable
from uuid import UUID

from loguru import logger

from loyalty_engine.jobs.loyalty.common import SessionFactory, active_merchant_ids, gateway_scope, open_session
from loyalty_engine.services.loyalty import CatchupOptions, LoyaltyReconciliationService
from loyalty_engine.services.pos.gateway import PosGateway


# meta: job: loyalty-catchup


async def run_loyalty_catchup(
    *,
    session_factory: SessionFactory,
    gateway: PosGateway | None = None,
    merchant_ids: Iterable[str | UUID] | None = None,
    period_days: int | None = None,
    max_customers: int | None = None,
) -> Dict[str, Any]:
    options = CatchupOptions()
    if period_days is not None:
        options.period_days = period_days
    if max_customers is not None:
        options.max_customers = max_customers

    merchants = await active_merchant_ids(session_factory, merchant_ids)
    summary: Dict[str, Any] = {
        "merchants": len(merchants),
        "customers_processed": 0,
        "orders_newly_tracked": 0,
        "failures": [],
    }

    async with gateway_scope(session_factory, gateway) as pos:
        for merchant_id in merchants:
            try:
                session = await open_session(session_factory)
                async with session as managed_session:
                    result = await LoyaltyReconciliationService(managed_session, pos).run_catchup(merchant_id, options)
            except Exception as exc:
                logger.exception("Loyalty catchup failed for merchant", merchant_id=str(merchant_id))
                summary["failures"].append({"merchant_id": str(merchant_id), "error": str(exc)})
                continue
            summary["customers_processed"] += result["customers_processed"]
            summary["orders_newly_tracked"] += result["orders_newly_tracked"]

    logger.bind(summary=summary).info("Loyalty catchup job completed")
    return summary


__all__ = ["run_loyalty_catchup"]
