"""Refresh cached profiles for reward holders missing contact data."""

from __future__ import annotations

from typing import Any, Dict, Iterable
from uuid import UUID

from loguru import logger

from loyalty_engine.jobs.loyalty.common import SessionFactory, active_merchant_ids, gateway_scope, open_session
from loyalty_engine.services.loyalty import CustomerRefreshService
from loyalty_engine.services.pos.gateway import PosGateway


# meta: job: loyalty-customer-refresh


async def run_customer_refresh(
    *,
    session_factory: SessionFactory,
    gateway: PosGateway | None = None,
    merchant_ids: Iterable[str | UUID] | None = None,
    concurrency: int | None = None,
) -> Dict[str, Any]:
    merchants = await active_merchant_ids(session_factory, merchant_ids)
    summary: Dict[str, Any] = {"merchants": len(merchants), "total": 0, "refreshed": 0, "failed": 0, "failures": []}

    async with gateway_scope(session_factory, gateway) as pos:
        for merchant_id in merchants:
            try:
                session = await open_session(session_factory)
                async with session as managed_session:
                    service = CustomerRefreshService(managed_session, pos, concurrency=concurrency)
                    result = await service.refresh_customers_with_missing_data(merchant_id)
            except Exception as exc:
                logger.exception("Customer refresh failed for merchant", merchant_id=str(merchant_id))
                summary["failures"].append({"merchant_id": str(merchant_id), "error": str(exc)})
                continue
            for key in ("total", "refreshed", "failed"):
                summary[key] += result[key]

    logger.bind(summary=summary).info("Loyalty customer refresh completed")
    return summary


__all__ = ["run_customer_refresh"]
