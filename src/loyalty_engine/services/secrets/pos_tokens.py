"""Merchant-scoped POS access token resolution."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, MutableMapping, Protocol, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.core.settings import settings
from loyalty_engine.models import Merchant

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


@dataclass(slots=True)
class PosCredentials:
    access_token: str
    source: str


class PosCredentialSource(Protocol):
    async def fetch(self, merchant_id: UUID) -> PosCredentials | None:
        """Return credentials for the merchant or ``None`` when unavailable."""


@dataclass(slots=True)
class _CacheEntry:
    credentials: PosCredentials
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


class PosCredentialResolver:
    """Caches per-merchant bearer tokens; one in-flight lookup per merchant."""

    def __init__(self, source: PosCredentialSource, *, cache_ttl: timedelta | None = None) -> None:
        self._source = source
        self._cache_ttl = cache_ttl or timedelta(seconds=settings.pos_token_cache_ttl_seconds)
        self._cache: MutableMapping[UUID, _CacheEntry] = {}
        self._locks: MutableMapping[UUID, asyncio.Lock] = {}

    async def get(self, merchant_id: UUID) -> PosCredentials | None:
        cached = self._cache.get(merchant_id)
        if cached and cached.is_valid(datetime.now(timezone.utc)):
            return cached.credentials

        lock = self._locks.setdefault(merchant_id, asyncio.Lock())
        async with lock:
            cached = self._cache.get(merchant_id)
            if cached and cached.is_valid(datetime.now(timezone.utc)):
                return cached.credentials

            credentials = await self._source.fetch(merchant_id)
            if credentials is None:
                self._cache.pop(merchant_id, None)
                return None
            self._cache[merchant_id] = _CacheEntry(
                credentials=credentials,
                expires_at=datetime.now(timezone.utc) + self._cache_ttl,
            )
            return credentials

    def invalidate(self, merchant_id: UUID | None = None) -> None:
        """Drop one merchant's token, or every cached token when ``None``."""

        if merchant_id is None:
            self._cache.clear()
            return
        self._cache.pop(merchant_id, None)


class DatabasePosCredentialSource(PosCredentialSource):
    """Read the access token stored on the merchant row."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def fetch(self, merchant_id: UUID) -> PosCredentials | None:
        maybe_session = self._session_factory()
        session: AsyncSession = maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session
        async with session as managed_session:
            token = (
                await managed_session.execute(select(Merchant.access_token).where(Merchant.id == merchant_id))
            ).scalar_one_or_none()
        if not token:
            logger.debug("pos.credentials.merchant_token_missing", merchant_id=str(merchant_id))
            return None
        return PosCredentials(access_token=token, source="merchant")


class SettingsPosCredentialSource(PosCredentialSource):
    """Fallback to the globally configured token (single-merchant installs)."""

    async def fetch(self, merchant_id: UUID) -> PosCredentials | None:
        if not settings.pos_access_token:
            return None
        return PosCredentials(access_token=settings.pos_access_token, source="settings")


class StaticPosCredentialSource(PosCredentialSource):
    """Fixed token map, used by scripts and tests."""

    def __init__(self, tokens: dict[UUID, str] | None = None, *, default: str | None = None) -> None:
        self._tokens = dict(tokens or {})
        self._default = default

    async def fetch(self, merchant_id: UUID) -> PosCredentials | None:
        token = self._tokens.get(merchant_id) or self._default
        return PosCredentials(access_token=token, source="static") if token else None


class CompositePosCredentialSource(PosCredentialSource):
    def __init__(self, sources: Sequence[PosCredentialSource]) -> None:
        self._sources = list(sources)

    async def fetch(self, merchant_id: UUID) -> PosCredentials | None:
        for source in self._sources:
            credentials = await source.fetch(merchant_id)
            if credentials is not None:
                return credentials
        return None


def build_default_credential_resolver(session_factory: SessionFactory) -> PosCredentialResolver:
    """Merchant row first, then the configured fallback token."""

    return PosCredentialResolver(
        CompositePosCredentialSource(
            [DatabasePosCredentialSource(session_factory), SettingsPosCredentialSource()]
        )
    )


__all__ = [
    "CompositePosCredentialSource",
    "DatabasePosCredentialSource",
    "PosCredentialResolver",
    "PosCredentialSource",
    "PosCredentials",
    "SettingsPosCredentialSource",
    "StaticPosCredentialSource",
    "build_default_credential_resolver",
]
