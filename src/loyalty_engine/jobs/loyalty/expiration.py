"""Daily expiry sweep over rolling purchase windows."""

from __future__ import annotations

from typing import Any, Dict, Iterable
from uuid import UUID

from loguru import logger

from loyalty_engine.jobs.loyalty.common import SessionFactory, active_merchant_ids, gateway_scope, open_session
from loyalty_engine.services.loyalty import ExpirationService
from loyalty_engine.services.pos.gateway import PosGateway


# meta: job: loyalty-expiration


async def run_loyalty_expiration(
    *,
    session_factory: SessionFactory,
    gateway: PosGateway | None = None,
    merchant_ids: Iterable[str | UUID] | None = None,
) -> Dict[str, Any]:
    """Expire aged-out purchases, then revoke earned rewards whose purchases all expired."""

    merchants = await active_merchant_ids(session_factory, merchant_ids)
    summary: Dict[str, Any] = {"merchants": len(merchants), "customers_updated": 0, "rewards_revoked": 0, "failures": []}

    async with gateway_scope(session_factory, gateway) as pos:
        for merchant_id in merchants:
            try:
                session = await open_session(session_factory)
                async with session as managed_session:
                    service = ExpirationService(managed_session, pos)
                    windows = await service.process_expired_window_entries(merchant_id)
                    rewards = await service.process_expired_earned_rewards(merchant_id)
            except Exception as exc:
                logger.exception("Loyalty expiration failed for merchant", merchant_id=str(merchant_id))
                summary["failures"].append({"merchant_id": str(merchant_id), "error": str(exc)})
                continue
            summary["customers_updated"] += windows["customers"]
            summary["rewards_revoked"] += rewards["revoked"]

    logger.bind(summary=summary).info("Loyalty expiration job completed")
    return summary


__all__ = ["run_loyalty_expiration"]
