"""In-memory POS platform served through ``httpx.MockTransport``."""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Sequence, Tuple
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from loyalty_engine.models import (
    LOYALTY_ENABLED_SETTING,
    Location,
    LoyaltyOffer,
    LoyaltyQualifyingVariation,
    Merchant,
    MerchantSetting,
)
from loyalty_engine.services.pos.gateway import PosGateway
from loyalty_engine.services.secrets import PosCredentialResolver, StaticPosCredentialSource

BASE_URL = "https://pos.test/v2"


def _error(status: int, detail: str) -> httpx.Response:
    return httpx.Response(status, json={"errors": [{"code": "ERROR", "detail": detail}]})


class FakePos:
    """Minimal stateful stand-in for the customer, group, catalog, order and loyalty endpoints."""

    def __init__(self) -> None:
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.catalog: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.loyalty_events: List[Dict[str, Any]] = []
        self.loyalty_accounts: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], int] = {}
        self._ids = itertools.count(1)

    def fail(self, method: str, path_prefix: str, status: int = 500) -> None:
        self.failures[(method, path_prefix)] = status

    def add_customer(self, customer_id: str, **fields: Any) -> Dict[str, Any]:
        customer = {"id": customer_id, "version": 1, "group_ids": [], **fields}
        self.customers[customer_id] = customer
        return customer

    def calls_to(self, method: str, path_prefix: str) -> List[str]:
        return [path for verb, path in self.calls if verb == method and path.startswith(path_prefix)]

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path.removeprefix("/v2")
        self.calls.append((method, path))
        for (fail_method, prefix), status in self.failures.items():
            if fail_method == method and path.startswith(prefix):
                return _error(status, "injected failure")

        body = json.loads(request.content) if request.content else {}
        parts = [part for part in path.split("/") if part]

        if parts[0] == "orders":
            return self._orders(method, parts, body)
        if parts[0] == "loyalty":
            return self._loyalty(method, parts, body)
        if parts[0] == "customers":
            return self._customers(method, parts, body)
        if parts[0] == "catalog":
            return self._catalog(method, parts, body)
        return _error(404, "unknown endpoint")

    def _orders(self, method: str, parts: List[str], body: Dict[str, Any]) -> httpx.Response:
        if method == "POST" and parts[1:] == ["search"]:
            query_filter = body.get("query", {}).get("filter", {})
            customer_ids = query_filter.get("customer_filter", {}).get("customer_ids")
            locations = set(body.get("location_ids") or [])
            orders = [
                order
                for order in self.orders.values()
                if (not locations or order.get("location_id") in locations)
                and (not customer_ids or order.get("customer_id") in customer_ids)
            ]
            return httpx.Response(200, json={"orders": orders})
        order = self.orders.get(parts[1]) if len(parts) == 2 else None
        if order is None:
            return _error(404, "order not found")
        return httpx.Response(200, json={"order": order})

    def _loyalty(self, method: str, parts: List[str], body: Dict[str, Any]) -> httpx.Response:
        if parts[1:] == ["events", "search"]:
            order_id = body.get("query", {}).get("filter", {}).get("order_filter", {}).get("order_id")
            events = [
                event
                for event in self.loyalty_events
                if order_id is None or event.get("accumulate_points", {}).get("order_id") == order_id
            ]
            return httpx.Response(200, json={"events": events})
        account = self.loyalty_accounts.get(parts[2]) if len(parts) == 3 else None
        if account is None:
            return _error(404, "account not found")
        return httpx.Response(200, json={"loyalty_account": account})

    def _customers(self, method: str, parts: List[str], body: Dict[str, Any]) -> httpx.Response:
        if method == "POST" and parts[1:] == ["search"]:
            query_filter = body.get("query", {}).get("filter", {})
            phone = query_filter.get("phone_number", {}).get("exact")
            email = query_filter.get("email_address", {}).get("exact")
            matches = [
                customer
                for customer in self.customers.values()
                if (phone and customer.get("phone_number") == phone)
                or (email and customer.get("email_address") == email)
            ]
            return httpx.Response(200, json={"customers": matches} if matches else {})
        if method == "POST" and parts[1:] == ["groups"]:
            group_id = self._next_id("GRP")
            self.groups[group_id] = {"id": group_id, **body.get("group", {})}
            return httpx.Response(200, json={"group": self.groups[group_id]})
        if method == "DELETE" and len(parts) == 3 and parts[1] == "groups":
            if self.groups.pop(parts[2], None) is None:
                return _error(404, "group not found")
            return httpx.Response(200, json={})
        if len(parts) == 4 and parts[2] == "groups":
            customer = self.customers.get(parts[1])
            if customer is None:
                return _error(404, "customer not found")
            if method == "PUT":
                if parts[3] not in customer["group_ids"]:
                    customer["group_ids"].append(parts[3])
                return httpx.Response(200, json={})
            if parts[3] not in customer["group_ids"]:
                return _error(404, "membership not found")
            customer["group_ids"].remove(parts[3])
            return httpx.Response(200, json={})

        customer = self.customers.get(parts[1]) if len(parts) == 2 else None
        if customer is None:
            return _error(404, "customer not found")
        if method == "PUT":
            customer["note"] = body.get("note")
            customer["version"] = customer.get("version", 1) + 1
        return httpx.Response(200, json={"customer": customer})

    def _catalog(self, method: str, parts: List[str], body: Dict[str, Any]) -> httpx.Response:
        if parts[1:] == ["batch-upsert"]:
            objects: List[Dict[str, Any]] = []
            mappings: List[Dict[str, str]] = []
            for batch in body.get("batches") or []:
                for obj in batch.get("objects") or []:
                    obj = dict(obj)
                    if obj["id"].startswith("#"):
                        object_id = self._next_id("CAT")
                        mappings.append({"client_object_id": obj["id"], "object_id": object_id})
                        obj["id"] = object_id
                    obj["version"] = (obj.get("version") or 0) + 1
                    self.catalog[obj["id"]] = obj
                    objects.append(obj)
            return httpx.Response(200, json={"objects": objects, "id_mappings": mappings})
        if parts[1:] == ["batch-delete"]:
            deleted = [object_id for object_id in body.get("object_ids") or [] if self.catalog.pop(object_id, None)]
            return httpx.Response(200, json={"deleted_object_ids": deleted})
        obj = self.catalog.get(parts[2]) if len(parts) == 3 else None
        if obj is None:
            return _error(404, "object not found")
        return httpx.Response(200, json={"object": obj})


async def _no_sleep(_: float) -> None:
    return None


def build_gateway(handler, *, token: str | None = "test-token", sleep=_no_sleep, **kwargs: Any) -> PosGateway:
    resolver = PosCredentialResolver(StaticPosCredentialSource(default=token))
    return PosGateway(
        resolver,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        base_url=BASE_URL,
        sleep=sleep,
        **kwargs,
    )


@dataclass
class LoyaltyProgram:
    merchant_id: UUID
    offer_id: UUID
    variation_ids: List[str] = field(default_factory=list)
    location_id: str = "LOC-1"


async def seed_program(
    session: AsyncSession,
    *,
    required_quantity: int = 10,
    window_months: int = 12,
    prices: Sequence[int | None] = (1500, 1800),
    loyalty_enabled: str | None = None,
    offer_name: str = "Large Bag",
) -> LoyaltyProgram:
    merchant = Merchant(name="Pet Supply Co", access_token="merchant-token")
    session.add(merchant)
    await session.flush()
    session.add(Location(merchant_id=merchant.id, location_id="LOC-1", name="Main Street"))
    offer = LoyaltyOffer(
        merchant_id=merchant.id,
        offer_name=offer_name,
        brand_name="Acme",
        size_group="large",
        required_quantity=required_quantity,
        window_months=window_months,
    )
    session.add(offer)
    await session.flush()
    variation_ids = []
    for index, price in enumerate(prices, start=1):
        variation_id = f"VAR-{index}"
        variation_ids.append(variation_id)
        session.add(
            LoyaltyQualifyingVariation(
                merchant_id=merchant.id,
                offer_id=offer.id,
                variation_id=variation_id,
                item_name="Acme Kibble",
                variation_name=f"Size {index}",
                price_cents=price,
            )
        )
    if loyalty_enabled is not None:
        session.add(MerchantSetting(merchant_id=merchant.id, key=LOYALTY_ENABLED_SETTING, value=loyalty_enabled))
    await session.commit()
    return LoyaltyProgram(merchant_id=merchant.id, offer_id=offer.id, variation_ids=variation_ids)


def line_item(
    variation_id: str | None,
    quantity: int,
    price: int,
    *,
    total: int | None = None,
    uid: str | None = None,
    applied_discounts: Sequence[str] = (),
) -> Dict[str, Any]:
    gross = price * quantity
    total = gross if total is None else total
    item: Dict[str, Any] = {
        "uid": uid or f"li-{variation_id}-{quantity}",
        "name": "Acme Kibble",
        "quantity": str(quantity),
        "base_price_money": {"amount": price, "currency": "USD"},
        "gross_sales_money": {"amount": gross, "currency": "USD"},
        "total_discount_money": {"amount": gross - total, "currency": "USD"},
        "total_money": {"amount": total, "currency": "USD"},
    }
    if variation_id:
        item["catalog_object_id"] = variation_id
    if applied_discounts:
        item["applied_discounts"] = [{"discount_uid": uid} for uid in applied_discounts]
    return item


def make_order(
    order_id: str,
    items: Sequence[Dict[str, Any]],
    *,
    customer_id: str | None = None,
    closed_at: datetime | None = None,
    location_id: str = "LOC-1",
    state: str = "COMPLETED",
    **extra: Any,
) -> Dict[str, Any]:
    closed_at = closed_at or datetime.now(timezone.utc) - timedelta(days=1)
    order: Dict[str, Any] = {
        "id": order_id,
        "location_id": location_id,
        "state": state,
        "closed_at": closed_at.isoformat().replace("+00:00", "Z"),
        "line_items": list(items),
        **extra,
    }
    if customer_id:
        order["customer_id"] = customer_id
    return order


__all__ = [
    "BASE_URL",
    "FakePos",
    "LoyaltyProgram",
    "build_gateway",
    "line_item",
    "make_order",
    "seed_program",
]
