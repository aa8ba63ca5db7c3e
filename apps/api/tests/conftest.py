from __future__ import annotations

import json
import re
import threading
from collections.abc import Callable, Generator
from typing import Any

import httpx
import pytest

from app import audit, events
from app.core.config import get_settings
from app.middleware.rate_limit import reset_rate_limiter
from app.upstream.client import BillingClient, CrmClient, UpstreamConfig


_CRITERION_RE = re.compile(r"\((\w+):equals:([^)]*)\)")

SEARCHABLE_MODULES = {"Contacts", "Sales_Orders", "Deals", "Tasks", "Notes"}


def _field_value(record: dict[str, Any], field: str) -> Any:
    value = record.get(field)
    if isinstance(value, dict):
        return value.get("id")
    return value


def _write_ok(record_id: str, status_code: int = 201) -> httpx.Response:
    return httpx.Response(
        status_code,
        json={
            "data": [
                {
                    "code": "SUCCESS",
                    "details": {"id": record_id},
                    "message": "record added",
                    "status": "success",
                }
            ]
        },
    )


class FakeCrm:
    """In-memory stand-in for the remote CRM and billing REST APIs, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.records: dict[str, dict[str, dict[str, Any]]] = {module: {} for module in SEARCHABLE_MODULES}
        self.payments: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.failures: dict[tuple[str, str], httpx.Response] = {}
        self.on_create: dict[str, Callable[[str], None]] = {}
        self._lock = threading.Lock()
        self._next_id = 5000000

    def new_id(self) -> str:
        with self._lock:
            self._next_id += 1
            return str(self._next_id)

    def add_record(self, module: str, **fields: Any) -> str:
        record_id = str(fields.pop("id", None) or self.new_id())
        self.records[module][record_id] = {"id": record_id, **fields}
        return record_id

    def add_payment(self, **fields: Any) -> str:
        payment_id = str(fields.pop("payment_id", None) or self.new_id())
        self.payments[payment_id] = {"payment_id": payment_id, **fields}
        return payment_id

    def fail(self, method: str, path: str, status_code: int = 500, body: dict[str, Any] | None = None) -> None:
        self.failures[(method.upper(), path)] = httpx.Response(status_code, json=body) if body is not None else httpx.Response(status_code)

    def count(self, method: str, path_prefix: str) -> int:
        return sum(1 for item in self.requests if item.method == method.upper() and item.url.path.startswith(path_prefix))

    @property
    def contacts(self) -> dict[str, dict[str, Any]]:
        return self.records["Contacts"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method = request.method.upper()
        path = request.url.path

        failure = self.failures.get((method, path))
        if failure is not None:
            return failure

        parts = [part for part in path.split("/") if part]
        if request.url.host == "billing.test":
            return self._billing(method, parts, request)

        module = parts[0] if parts else ""
        if module not in SEARCHABLE_MODULES:
            return httpx.Response(404, json={"code": "INVALID_URL_PATTERN", "message": "Please check if the URL trying to access is a correct one", "status": "error"})

        if len(parts) == 2 and parts[1] == "search" and method == "GET":
            return self._search(module, request.url.params.get("criteria", ""))
        if len(parts) == 1 and method == "POST":
            fields = json.loads(request.content)["data"][0]
            record_id = self.new_id()
            self.records[module][record_id] = {"id": record_id, **fields}
            hook = self.on_create.get(module)
            if hook is not None:
                hook(record_id)
            return _write_ok(record_id)
        if len(parts) == 2 and method == "PUT":
            record = self.records[module].get(parts[1])
            if record is None:
                return httpx.Response(
                    202,
                    json={"data": [{"code": "INVALID_DATA", "details": {"id": parts[1]}, "message": "the related id given seems to be invalid", "status": "error"}]},
                )
            record.update(json.loads(request.content)["data"][0])
            return _write_ok(parts[1], status_code=200)
        if len(parts) == 2 and method == "GET":
            record = self.records[module].get(parts[1])
            if record is None:
                return httpx.Response(204)
            return httpx.Response(200, json={"data": [record]})
        return httpx.Response(405, json={"code": "METHOD_NOT_ALLOWED", "message": "method not allowed", "status": "error"})

    def _search(self, module: str, criteria: str) -> httpx.Response:
        clauses = _CRITERION_RE.findall(criteria)
        if not clauses:
            return httpx.Response(400, json={"code": "INVALID_QUERY", "message": "invalid query formed", "status": "error"})
        matches = [
            record
            for record in self.records[module].values()
            if any(str(_field_value(record, field)) == value for field, value in clauses)
        ]
        if not matches:
            return httpx.Response(204)
        return httpx.Response(200, json={"data": matches, "info": {"count": len(matches), "more_records": False}})

    def _billing(self, method: str, parts: list[str], request: httpx.Request) -> httpx.Response:
        if parts[:1] != ["payments"]:
            return httpx.Response(404, json={"code": 5, "message": "Invalid URL Passed"})
        if len(parts) == 1 and method == "POST":
            body = json.loads(request.content)
            payment_id = self.add_payment(
                amount=body["amount"],
                payment_mode=body["payment_mode"],
                description=body.get("description"),
                invoice_id=body["invoices"][0]["invoice_id"],
                status="success",
                date="2026-10-17",
            )
            return httpx.Response(201, json={"code": 0, "message": "The payment has been recorded.", "payment": self.payments[payment_id]})
        payment = self.payments.get(parts[1]) if len(parts) >= 2 else None
        if payment is None:
            return httpx.Response(404, json={"code": 1002, "message": "Payment does not exist."})
        if len(parts) == 2 and method == "GET":
            return httpx.Response(200, json={"code": 0, "message": "success", "payment": payment})
        if len(parts) == 3 and parts[2] == "refunds" and method == "POST":
            body = json.loads(request.content) if request.content else {}
            refund = {
                "refund_id": self.new_id(),
                "payment_id": parts[1],
                "amount": body.get("amount", payment.get("amount")),
                "description": body.get("description"),
            }
            return httpx.Response(201, json={"code": 0, "message": "Refund recorded.", "refund": refund})
        return httpx.Response(405, json={"code": 405, "message": "method not allowed"})


@pytest.fixture(autouse=True)
def reset_in_process_state() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def fake_crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture()
def upstream_config() -> UpstreamConfig:
    return UpstreamConfig(
        crm_base_url="https://crm.test",
        access_token="test-token",
        billing_base_url="https://billing.test",
        billing_organization_id="org-42",
        timeout_seconds=5.0,
    )


@pytest.fixture()
def crm_client(fake_crm: FakeCrm, upstream_config: UpstreamConfig) -> Generator[CrmClient, None, None]:
    client = CrmClient(upstream_config, transport=httpx.MockTransport(fake_crm.handler))
    yield client
    client.close()


@pytest.fixture()
def billing_client(fake_crm: FakeCrm, upstream_config: UpstreamConfig) -> Generator[BillingClient, None, None]:
    client = BillingClient(upstream_config, transport=httpx.MockTransport(fake_crm.handler))
    yield client
    client.close()
