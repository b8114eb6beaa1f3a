"""Nightly maintenance of POS reward discounts."""

from __future__ import annotations

from typing import Any, Dict, Iterable
from uuid import UUID

from loguru import logger

from loyalty_engine.jobs.loyalty.common import SessionFactory, active_merchant_ids, gateway_scope, open_session
from loyalty_engine.services.loyalty import RewardIssuanceManager
from loyalty_engine.services.pos.gateway import PosGateway


# meta: job: loyalty-discount-caps


async def run_discount_cap_maintenance(
    *,
    session_factory: SessionFactory,
    gateway: PosGateway | None = None,
    merchant_ids: Iterable[str | UUID] | None = None,
    validate: bool = False,
    fix_issues: bool = False,
) -> Dict[str, Any]:
    """Raise discount caps after price increases; optionally validate earned rewards against the POS."""

    merchants = await active_merchant_ids(session_factory, merchant_ids)
    summary: Dict[str, Any] = {
        "merchants": len(merchants),
        "checked": 0,
        "raised": 0,
        "issues": 0,
        "fixed": 0,
        "failures": [],
    }

    async with gateway_scope(session_factory, gateway) as pos:
        for merchant_id in merchants:
            try:
                session = await open_session(session_factory)
                async with session as managed_session:
                    manager = RewardIssuanceManager(managed_session, pos)
                    caps = await manager.refresh_discount_caps(merchant_id)
                    report = (
                        await manager.validate_earned_rewards(merchant_id, fix_issues=fix_issues)
                        if validate
                        else None
                    )
            except Exception as exc:
                logger.exception("Discount cap maintenance failed for merchant", merchant_id=str(merchant_id))
                summary["failures"].append({"merchant_id": str(merchant_id), "error": str(exc)})
                continue
            summary["checked"] += caps["checked"]
            summary["raised"] += caps["raised"]
            if report is not None:
                summary["issues"] += len(report["issues"])
                summary["fixed"] += len(report["fixed"])

    logger.bind(summary=summary).info("Discount cap maintenance completed")
    return summary


__all__ = ["run_discount_cap_maintenance"]
