"""Shared plumbing for loyalty jobs: sessions, merchant selection and the POS gateway."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Iterable, List
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.settings import settings
from loyalty_engine.models import Merchant
from loyalty_engine.services.pos.gateway import PosGateway
from loyalty_engine.services.secrets import build_default_credential_resolver

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    return maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session


async def active_merchant_ids(
    session_factory: SessionFactory,
    merchant_ids: Iterable[str | UUID] | None = None,
) -> List[UUID]:
    """Explicit ids win, then the configured list, then every active merchant."""

    requested = list(merchant_ids or settings.loyalty_job_merchant_ids or [])
    session = await open_session(session_factory)
    async with session as managed_session:
        stmt = select(Merchant.id).where(Merchant.is_active.is_(True)).order_by(Merchant.created_at.asc())
        if requested:
            stmt = stmt.where(Merchant.id.in_([UUID(str(value)) for value in requested]))
        return list((await managed_session.execute(stmt)).scalars().all())


@asynccontextmanager
async def gateway_scope(session_factory: SessionFactory, gateway: PosGateway | None = None) -> AsyncIterator[PosGateway]:
    """Yield the injected gateway, or a job-owned one that is closed afterwards."""

    if gateway is not None:
        yield gateway
        return
    owned = PosGateway(build_default_credential_resolver(session_factory))
    try:
        yield owned
    finally:
        await owned.aclose()


__all__ = ["SessionFactory", "active_merchant_ids", "gateway_scope", "open_session"]
