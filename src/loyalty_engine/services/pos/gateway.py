"""Rate-limited gateway for every call the engine makes to the POS platform."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Sequence
from uuid import UUID

import httpx
from loguru import logger
from opentelemetry import trace

from loyalty_engine.core.settings import settings
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.secrets.pos_tokens import PosCredentialResolver

_tracer = trace.get_tracer(__name__)

Sleep = Callable[[float], Awaitable[None]]


class PosApiError(RuntimeError):
    """Raised when a POS call fails after the gateway's retries are exhausted."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        endpoint: str | None = None,
        method: str | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.endpoint = endpoint
        self.method = method
        self.body = body or {}

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


def _parse_body(response: httpx.Response) -> Dict[str, Any]:
    if not response.content:
        return {}
    try:
        parsed = response.json()
    except ValueError:
        return {"text": response.text}
    if isinstance(parsed, dict):
        return parsed
    return {"data": parsed}


def _error_message(body: Mapping[str, Any], status: int) -> str:
    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, Mapping):
            detail = first.get("detail") or first.get("code")
            if detail:
                return str(detail)
    return f"POS API responded with status {status}"


class PosGateway:
    """Single chokepoint for POS traffic.

    Adds the bearer credential and protocol-version header, retries 429s using
    the server's ``Retry-After`` hint, retries network failures and 5xx with
    exponential backoff, and logs every attempt. Any other non-2xx response
    raises :class:`PosApiError` carrying the status and endpoint.
    """

    def __init__(
        self,
        credentials: PosCredentialResolver,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout_seconds: float | None = None,
        max_rate_limit_retries: int | None = None,
        default_retry_after_seconds: float | None = None,
        max_transient_retries: int | None = None,
        transient_backoff_seconds: float | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._credentials = credentials
        self._timeout = timeout_seconds or settings.pos_request_timeout_seconds
        self._client = http_client or httpx.AsyncClient(timeout=self._timeout)
        self._owns_client = http_client is None
        self._base_url = (base_url or settings.pos_api_base_url).rstrip("/")
        self._api_version = api_version or settings.pos_api_version
        self._max_rate_limit_retries = (
            settings.pos_rate_limit_max_retries if max_rate_limit_retries is None else max_rate_limit_retries
        )
        self._default_retry_after = (
            settings.pos_rate_limit_default_retry_after_seconds
            if default_retry_after_seconds is None
            else default_retry_after_seconds
        )
        self._max_transient_retries = (
            settings.pos_transient_max_retries if max_transient_retries is None else max_transient_retries
        )
        self._transient_backoff = (
            settings.pos_transient_backoff_seconds if transient_backoff_seconds is None else transient_backoff_seconds
        )
        self._sleep = sleep
        self._observability = get_loyalty_store()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "PosGateway":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def request(
        self,
        merchant_id: UUID,
        method: str,
        endpoint: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        context: str | None = None,
    ) -> Dict[str, Any]:
        method = method.upper()
        credentials = await self._credentials.get(merchant_id)
        if credentials is None:
            raise PosApiError(
                "No POS access token available for merchant",
                endpoint=endpoint,
                method=method,
            )

        headers = {
            "Authorization": f"Bearer {credentials.access_token}",
            "Square-Version": self._api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        url = f"{self._base_url}{endpoint}"
        rate_limit_retries = 0
        transient_retries = 0

        with _tracer.start_as_current_span("pos.request") as span:
            span.set_attribute("pos.method", method)
            span.set_attribute("pos.endpoint", endpoint)
            while True:
                started = time.perf_counter()
                try:
                    response = await self._client.request(
                        method,
                        url,
                        headers=headers,
                        json=json,
                        params=params,
                        timeout=self._timeout,
                    )
                except httpx.HTTPError as exc:
                    self._log_call(merchant_id, method, endpoint, None, started, context, error=str(exc))
                    if transient_retries < self._max_transient_retries:
                        transient_retries += 1
                        await self._backoff(transient_retries, "network")
                        continue
                    raise PosApiError(str(exc) or "POS request failed", endpoint=endpoint, method=method) from exc

                status = response.status_code
                body = _parse_body(response)
                self._log_call(merchant_id, method, endpoint, status, started, context)
                span.set_attribute("pos.status", status)

                if response.is_success:
                    return body

                if status == 429 and rate_limit_retries < self._max_rate_limit_retries:
                    rate_limit_retries += 1
                    delay = self._retry_after(response)
                    self._observability.record_api_retry("rate_limited")
                    logger.warning(
                        "POS rate limit hit, retrying",
                        category="loyalty.pos_api",
                        endpoint=endpoint,
                        method=method,
                        attempt=rate_limit_retries,
                        retry_after_seconds=delay,
                        merchant_id=str(merchant_id),
                    )
                    await self._sleep(delay)
                    continue

                if (status == 429 or status >= 500) and transient_retries < self._max_transient_retries:
                    transient_retries += 1
                    await self._backoff(transient_retries, "server_error" if status >= 500 else "rate_limit_exhausted")
                    continue

                raise PosApiError(_error_message(body, status), status=status, endpoint=endpoint, method=method, body=body)

    def _retry_after(self, response: httpx.Response) -> float:
        raw = response.headers.get("retry-after")
        if raw is None:
            return self._default_retry_after
        try:
            return max(float(raw), 0.0)
        except ValueError:
            return self._default_retry_after

    async def _backoff(self, attempt: int, reason: str) -> None:
        delay = self._transient_backoff * (2 ** (attempt - 1))
        self._observability.record_api_retry(reason)
        if delay > 0:
            await self._sleep(delay)

    def _log_call(
        self,
        merchant_id: UUID,
        method: str,
        endpoint: str,
        status: int | None,
        started: float,
        context: str | None,
        *,
        error: str | None = None,
    ) -> None:
        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        success = status is not None and 200 <= status < 300
        self._observability.record_api_call(method, endpoint, status=status, success=success)
        bound = logger.bind(
            category="loyalty.pos_api",
            endpoint=endpoint,
            method=method,
            status=status,
            duration_ms=duration_ms,
            success=success,
            merchant_id=str(merchant_id),
            context=context,
        )
        if success:
            bound.info("POS API call")
        else:
            bound.warning("POS API call failed", error=error)

    # Orders

    async def search_orders(
        self,
        merchant_id: UUID,
        *,
        location_ids: Sequence[str],
        customer_ids: Sequence[str] | None = None,
        closed_at_start: str | None = None,
        closed_at_end: str | None = None,
        states: Iterable[str] = ("COMPLETED",),
        cursor: str | None = None,
        limit: int | None = None,
        context: str | None = None,
    ) -> Dict[str, Any]:
        query_filter: Dict[str, Any] = {"state_filter": {"states": list(states)}}
        if closed_at_start or closed_at_end:
            closed_at: Dict[str, str] = {}
            if closed_at_start:
                closed_at["start_at"] = closed_at_start
            if closed_at_end:
                closed_at["end_at"] = closed_at_end
            query_filter["date_time_filter"] = {"closed_at": closed_at}
        if customer_ids:
            query_filter["customer_filter"] = {"customer_ids": list(customer_ids)}
        body: Dict[str, Any] = {
            "location_ids": list(location_ids),
            "query": {
                "filter": query_filter,
                "sort": {"sort_field": "CLOSED_AT", "sort_order": "DESC"},
            },
            "limit": limit or settings.loyalty_order_page_size,
        }
        if cursor:
            body["cursor"] = cursor
        return await self.request(merchant_id, "POST", "/orders/search", json=body, context=context)

    async def retrieve_order(self, merchant_id: UUID, order_id: str, *, context: str | None = None) -> Dict[str, Any] | None:
        payload = await self.request(merchant_id, "GET", f"/orders/{order_id}", context=context)
        order = payload.get("order")
        return order if isinstance(order, dict) else None

    # Loyalty

    async def search_loyalty_events(
        self,
        merchant_id: UUID,
        *,
        order_id: str | None = None,
        types: Sequence[str] | None = None,
        created_at_start: str | None = None,
        cursor: str | None = None,
        limit: int = 30,
        context: str | None = None,
    ) -> Dict[str, Any]:
        event_filter: Dict[str, Any] = {}
        if order_id:
            event_filter["order_filter"] = {"order_id": order_id}
        if types:
            event_filter["type_filter"] = {"types": list(types)}
        if created_at_start:
            event_filter["date_time_filter"] = {"created_at": {"start_at": created_at_start}}
        body: Dict[str, Any] = {"query": {"filter": event_filter}, "limit": limit}
        if cursor:
            body["cursor"] = cursor
        return await self.request(merchant_id, "POST", "/loyalty/events/search", json=body, context=context)

    async def retrieve_loyalty_account(
        self, merchant_id: UUID, account_id: str, *, context: str | None = None
    ) -> Dict[str, Any] | None:
        payload = await self.request(merchant_id, "GET", f"/loyalty/accounts/{account_id}", context=context)
        account = payload.get("loyalty_account")
        return account if isinstance(account, dict) else None

    # Customers

    async def search_customers(
        self,
        merchant_id: UUID,
        *,
        phone: str | None = None,
        email: str | None = None,
        limit: int = 10,
        context: str | None = None,
    ) -> list[Dict[str, Any]]:
        customer_filter: Dict[str, Any] = {}
        if phone:
            customer_filter["phone_number"] = {"exact": phone}
        if email:
            customer_filter["email_address"] = {"exact": email}
        if not customer_filter:
            return []
        body = {"query": {"filter": customer_filter}, "limit": limit}
        payload = await self.request(merchant_id, "POST", "/customers/search", json=body, context=context)
        customers = payload.get("customers")
        return [item for item in customers if isinstance(item, dict)] if isinstance(customers, list) else []

    async def retrieve_customer(
        self, merchant_id: UUID, customer_id: str, *, context: str | None = None
    ) -> Dict[str, Any] | None:
        payload = await self.request(merchant_id, "GET", f"/customers/{customer_id}", context=context)
        customer = payload.get("customer")
        return customer if isinstance(customer, dict) else None

    async def update_customer_note(
        self,
        merchant_id: UUID,
        customer_id: str,
        *,
        note: str,
        version: int | None,
        context: str | None = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"note": note}
        if version is not None:
            body["version"] = version
        return await self.request(merchant_id, "PUT", f"/customers/{customer_id}", json=body, context=context)

    # Customer groups

    async def create_customer_group(
        self,
        merchant_id: UUID,
        *,
        name: str,
        idempotency_key: str,
        context: str | None = None,
    ) -> Dict[str, Any]:
        body = {"idempotency_key": idempotency_key, "group": {"name": name}}
        payload = await self.request(merchant_id, "POST", "/customers/groups", json=body, context=context)
        group = payload.get("group")
        return group if isinstance(group, dict) else {}

    async def add_group_member(
        self, merchant_id: UUID, customer_id: str, group_id: str, *, context: str | None = None
    ) -> None:
        await self.request(merchant_id, "PUT", f"/customers/{customer_id}/groups/{group_id}", context=context)

    async def remove_group_member(
        self, merchant_id: UUID, customer_id: str, group_id: str, *, context: str | None = None
    ) -> None:
        await self.request(merchant_id, "DELETE", f"/customers/{customer_id}/groups/{group_id}", context=context)

    async def delete_customer_group(self, merchant_id: UUID, group_id: str, *, context: str | None = None) -> None:
        await self.request(merchant_id, "DELETE", f"/customers/groups/{group_id}", context=context)

    # Catalog

    async def batch_upsert_catalog(
        self,
        merchant_id: UUID,
        *,
        idempotency_key: str,
        objects: Sequence[Mapping[str, Any]],
        context: str | None = None,
    ) -> Dict[str, Any]:
        body = {"idempotency_key": idempotency_key, "batches": [{"objects": [dict(obj) for obj in objects]}]}
        return await self.request(merchant_id, "POST", "/catalog/batch-upsert", json=body, context=context)

    async def retrieve_catalog_object(
        self, merchant_id: UUID, object_id: str, *, context: str | None = None
    ) -> Dict[str, Any] | None:
        payload = await self.request(merchant_id, "GET", f"/catalog/object/{object_id}", context=context)
        obj = payload.get("object")
        return obj if isinstance(obj, dict) else None

    async def batch_delete_catalog(
        self, merchant_id: UUID, object_ids: Sequence[str], *, context: str | None = None
    ) -> Dict[str, Any]:
        body = {"object_ids": list(object_ids)}
        return await self.request(merchant_id, "POST", "/catalog/batch-delete", json=body, context=context)


__all__ = ["PosApiError", "PosGateway"]
