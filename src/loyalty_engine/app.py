"""Process bootstrap: logging, tracing, the POS gateway and the job scheduler."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

from loguru import logger

from loyalty_engine.core.logging import configure_logging
from loyalty_engine.core.settings import settings
from loyalty_engine.db.session import async_session, create_all
from loyalty_engine.observability.tracing import configure_tracing
from loyalty_engine.scheduling import LoyaltyJobScheduler
from loyalty_engine.services.pos.gateway import PosGateway
from loyalty_engine.services.secrets import build_default_credential_resolver


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


def schedule_path() -> Path:
    path = Path(settings.loyalty_job_schedule_path)
    if not path.is_absolute():
        path = Path(__file__).resolve().parent.parent.parent / path
    return path


async def run(stop_event: asyncio.Event | None = None) -> None:
    """Run the scheduler until ``stop_event`` is set or the process is signalled."""

    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        version=APP_VERSION,
        level=settings.log_level,
        debug_categories=settings.log_debug_categories,
    )
    configure_tracing(
        service_name=settings.service_name,
        service_version=APP_VERSION,
        environment=settings.environment,
    )
    if settings.environment == "development":
        await create_all()

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    gateway = PosGateway(build_default_credential_resolver(_session_factory))
    scheduler = LoyaltyJobScheduler(
        session_factory=_session_factory,
        config_path=schedule_path(),
        job_kwargs={"gateway": gateway},
    )
    if settings.loyalty_job_scheduler_enabled:
        try:
            scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Loyalty job scheduler failed to start", error=str(exc))
        else:
            logger.info("Loyalty job scheduler enabled", schedule_path=str(schedule_path()))
    else:
        logger.info("Loyalty job scheduler disabled", reason="loyalty_job_scheduler_enabled is false")

    try:
        await stop_event.wait()
    finally:
        if scheduler.is_running:
            await scheduler.stop()
        await gateway.aclose()
        logger.info("Loyalty engine stopped")


__all__ = ["APP_VERSION", "run", "schedule_path"]
