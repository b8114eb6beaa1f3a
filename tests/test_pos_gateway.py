from __future__ import annotations

from uuid import uuid4

import httpx
import pytest

from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.services.pos.gateway import PosApiError

from pos_fakes import build_gateway


@pytest.mark.asyncio
async def test_rate_limited_calls_honour_retry_after() -> None:
    responses = [
        httpx.Response(429, headers={"Retry-After": "2"}),
        httpx.Response(429),
        httpx.Response(200, json={"customer": {"id": "CUST-1"}}),
    ]
    seen_headers = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_headers.append(dict(request.headers))
        return responses.pop(0)

    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    gateway = build_gateway(handler, sleep=record_sleep, default_retry_after_seconds=5.0)
    customer = await gateway.retrieve_customer(uuid4(), "CUST-1")

    assert customer == {"id": "CUST-1"}
    assert delays == [2.0, 5.0]
    assert seen_headers[0]["authorization"] == "Bearer test-token"
    assert seen_headers[0]["square-version"]
    snapshot = get_loyalty_store().snapshot()
    assert snapshot.api_calls["retries"]["rate_limited"] == 2


@pytest.mark.asyncio
async def test_client_errors_surface_status_and_endpoint() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"errors": [{"code": "BAD_REQUEST", "detail": "Invalid note"}]})

    gateway = build_gateway(handler)

    with pytest.raises(PosApiError) as excinfo:
        await gateway.update_customer_note(uuid4(), "CUST-1", note="hello", version=3)

    error = excinfo.value
    assert error.status == 400
    assert error.endpoint == "/customers/CUST-1"
    assert error.method == "PUT"
    assert str(error) == "Invalid note"
    assert not error.is_not_found


@pytest.mark.asyncio
async def test_server_errors_retry_with_backoff_then_fail() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503)

    delays: list[float] = []

    async def record_sleep(delay: float) -> None:
        delays.append(delay)

    gateway = build_gateway(
        handler, sleep=record_sleep, max_transient_retries=2, transient_backoff_seconds=1.0
    )

    with pytest.raises(PosApiError) as excinfo:
        await gateway.retrieve_order(uuid4(), "ORDER-1")

    assert excinfo.value.status == 503
    assert calls == 3
    assert delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_network_failures_become_pos_api_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = build_gateway(handler, max_transient_retries=1)

    with pytest.raises(PosApiError) as excinfo:
        await gateway.search_customers(uuid4(), phone="+15555550100")

    assert excinfo.value.status is None
    assert excinfo.value.endpoint == "/customers/search"


@pytest.mark.asyncio
async def test_missing_credentials_fail_without_calling_pos() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={})

    gateway = build_gateway(handler, token=None)

    with pytest.raises(PosApiError):
        await gateway.retrieve_customer(uuid4(), "CUST-1")
    assert calls == 0


@pytest.mark.asyncio
async def test_not_found_is_flagged_on_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})

    gateway = build_gateway(handler)

    with pytest.raises(PosApiError) as excinfo:
        await gateway.delete_customer_group(uuid4(), "GRP-1")

    assert excinfo.value.is_not_found
    assert str(excinfo.value) == "NOT_FOUND"
