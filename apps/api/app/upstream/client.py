from __future__ import annotations

import logging
import time
from collections.abc import Generator
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Generic, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from app.context import get_correlation_id
from app.core.config import Settings, get_settings
from app.core.errors import ConfigurationError, InvalidResponse, UpstreamError
from app.metrics import observe_upstream_request
from app.otel import get_tracer, set_remote_ids
from app.upstream.schemas import (
    RemoteContact,
    RemoteDeal,
    RemoteErrorBody,
    RemoteNote,
    RemotePayment,
    RemoteRefund,
    RemoteSalesOrder,
    RemoteTask,
)


logger = logging.getLogger("app.upstream")
tracer = get_tracer("app.upstream.client")

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

CRM_WRITE_TRIGGERS = ["approval", "workflow"]
BILLING_ORG_HEADER = "X-com-zoho-subscriptions-organizationid"


@dataclass(frozen=True, slots=True)
class UpstreamConfig:
    crm_base_url: str
    access_token: str
    billing_base_url: str = ""
    billing_organization_id: str = ""
    timeout_seconds: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> UpstreamConfig:
        if settings.is_production:
            if not settings.crm_api_url:
                raise ConfigurationError("CRM_API_URL")
            if not settings.crm_access_token:
                raise ConfigurationError("CRM_ACCESS_TOKEN")
        return cls(
            crm_base_url=settings.crm_api_url,
            access_token=settings.crm_access_token,
            billing_base_url=settings.billing_api_url,
            billing_organization_id=settings.billing_organization_id,
            timeout_seconds=settings.upstream_timeout_seconds,
        )


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True, slots=True)
class RemoteError:
    message: str
    status: int
    code: str | None = None
    details: Any = None

    def to_exception(self) -> UpstreamError:
        return UpstreamError(
            self.message,
            remote_code=self.code,
            remote_status=self.status,
            details=self.details,
        )


RemoteResult = Ok[Any] | RemoteError


def equals_criterion(field: str, value: str) -> str:
    return f"({field}:equals:{value})"


def any_of(criteria: list[str]) -> str:
    return " or ".join(criteria)


def decode_response(response: httpx.Response) -> RemoteResult:
    """Turn an HTTP answer into a tagged result.

    Non-2xx answers become ``RemoteError`` with the remote message when the body
    is a structured error document, otherwise the transport reason phrase. A 2xx
    answer must be a JSON object (or empty on 204) or ``InvalidResponse`` is raised.
    """
    if not response.is_success:
        reason = response.reason_phrase or f"HTTP {response.status_code}"
        try:
            body = RemoteErrorBody.model_validate(response.json())
        except (ValueError, ValidationError):
            return RemoteError(message=reason, status=response.status_code)
        return RemoteError(message=body.message, status=response.status_code, code=body.code, details=body.details)

    if response.status_code == 204 or not response.content:
        return Ok(None)

    try:
        payload = response.json()
    except ValueError as exc:
        raise InvalidResponse("Invalid response format from upstream: body is not JSON") from exc
    if not isinstance(payload, dict):
        raise InvalidResponse("Invalid response format from upstream: expected an object")
    return Ok(payload)


def extract_record_id(payload: dict[str, Any] | None) -> str | None:
    if not payload:
        return None
    if payload.get("id"):
        return str(payload["id"])
    data = payload.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    first = data[0]
    if str(first.get("status", "")).lower() == "error":
        raise UpstreamError(
            str(first.get("message") or "Upstream rejected the record"),
            remote_code=str(first.get("code")) if first.get("code") is not None else None,
            details=first.get("details"),
        )
    details = first.get("details")
    if isinstance(details, dict) and details.get("id"):
        return str(details["id"])
    if first.get("id"):
        return str(first["id"])
    return None


def records(payload: dict[str, Any] | None, model: type[M]) -> list[M]:
    if not payload:
        return []
    data = payload.get("data")
    if data is None:
        return []
    if not isinstance(data, list):
        raise InvalidResponse("Invalid response format from upstream: data is not a list")
    try:
        return [model.model_validate(item) for item in data]
    except ValidationError as exc:
        raise InvalidResponse(f"Invalid {model.__name__} record from upstream") from exc


class _UpstreamHttpClient:
    def __init__(
        self,
        base_url: str,
        config: UpstreamConfig,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(config.timeout_seconds),
            headers=self._headers(),
            transport=transport,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.access_token}",
            "Accept": "application/json",
        }

    def close(self) -> None:
        self._client.close()

    def __enter__(self):  # type: ignore[no-untyped-def]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()

    def call(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        remote_id: str | None = None,
    ) -> RemoteResult:
        correlation_id = get_correlation_id()
        headers = {"X-Correlation-Id": correlation_id} if correlation_id else None
        with tracer.start_as_current_span(f"upstream.{operation}") as span:
            span.set_attribute("correlation_id", correlation_id or "")
            span.set_attribute("http.method", method)
            span.set_attribute("upstream.path", path)
            set_remote_ids(span, target_id=remote_id)
            started = time.perf_counter()
            try:
                response = self._client.request(method, path, params=params, json=json, headers=headers)
            except httpx.TimeoutException:
                result: RemoteResult = RemoteError(
                    message=f"{operation} timed out after {self.config.timeout_seconds}s; outcome unknown",
                    status=504,
                    code="TIMEOUT",
                )
            except httpx.HTTPError as exc:
                result = RemoteError(message=f"{operation} transport failure: {exc}", status=503, code="TRANSPORT_ERROR")
            else:
                span.set_attribute("http.status_code", response.status_code)
                try:
                    result = decode_response(response)
                except InvalidResponse:
                    observe_upstream_request(operation, "invalid", time.perf_counter() - started)
                    logger.warning("upstream.invalid_response", extra={"operation": operation, "outcome": "invalid"})
                    raise

            duration = time.perf_counter() - started
            if isinstance(result, RemoteError):
                observe_upstream_request(operation, "error", duration)
                span.set_attribute("upstream.error_code", result.code or "")
                logger.warning(
                    "upstream.request_failed",
                    extra={"operation": operation, "outcome": "error", "status_code": result.status, "error": result.message},
                )
            else:
                observe_upstream_request(operation, "ok", duration)
            return result

    def expect(self, operation: str, method: str, path: str, **kwargs: Any) -> dict[str, Any] | None:
        result = self.call(operation, method, path, **kwargs)
        if isinstance(result, RemoteError):
            raise result.to_exception()
        return result.value


class CrmApi(Protocol):
    def create_contact(self, fields: dict[str, Any]) -> str: ...

    def update_contact(self, contact_id: str, fields: dict[str, Any]) -> str: ...

    def get_contact(self, contact_id: str) -> RemoteContact | None: ...

    def search_contacts(self, criteria: str) -> list[RemoteContact]: ...

    def create_sales_order(self, fields: dict[str, Any]) -> str: ...

    def search_sales_orders(self, criteria: str) -> list[RemoteSalesOrder]: ...

    def search_deals(self, criteria: str) -> list[RemoteDeal]: ...

    def search_tasks(self, criteria: str) -> list[RemoteTask]: ...

    def search_notes(self, criteria: str) -> list[RemoteNote]: ...


class CrmClient(_UpstreamHttpClient):
    """REST client for the remote CRM (one resource path per module)."""

    def __init__(self, config: UpstreamConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        super().__init__(config.crm_base_url, config, transport=transport)

    def create_contact(self, fields: dict[str, Any]) -> str:
        payload = self.expect("create_contact", "POST", "/Contacts", json=self._write_body(fields))
        return self._require_id(payload, "contact create")

    def update_contact(self, contact_id: str, fields: dict[str, Any]) -> str:
        payload = self.expect(
            "update_contact",
            "PUT",
            f"/Contacts/{contact_id}",
            json=self._write_body(fields),
            remote_id=contact_id,
        )
        return self._require_id(payload, "contact update")

    def get_contact(self, contact_id: str) -> RemoteContact | None:
        payload = self.expect("get_contact", "GET", f"/Contacts/{contact_id}", remote_id=contact_id)
        found = records(payload, RemoteContact)
        return found[0] if found else None

    def search_contacts(self, criteria: str) -> list[RemoteContact]:
        return self._search("search_contacts", "/Contacts/search", criteria, RemoteContact)

    def create_sales_order(self, fields: dict[str, Any]) -> str:
        payload = self.expect("create_sales_order", "POST", "/Sales_Orders", json=self._write_body(fields))
        return self._require_id(payload, "sales order create")

    def search_sales_orders(self, criteria: str) -> list[RemoteSalesOrder]:
        return self._search("search_sales_orders", "/Sales_Orders/search", criteria, RemoteSalesOrder)

    def search_deals(self, criteria: str) -> list[RemoteDeal]:
        return self._search("search_deals", "/Deals/search", criteria, RemoteDeal)

    def search_tasks(self, criteria: str) -> list[RemoteTask]:
        return self._search("search_tasks", "/Tasks/search", criteria, RemoteTask)

    def search_notes(self, criteria: str) -> list[RemoteNote]:
        return self._search("search_notes", "/Notes/search", criteria, RemoteNote)

    def _search(self, operation: str, path: str, criteria: str, model: type[M]) -> list[M]:
        payload = self.expect(operation, "GET", path, params={"criteria": criteria})
        return records(payload, model)

    @staticmethod
    def _write_body(fields: dict[str, Any]) -> dict[str, Any]:
        return {"data": [fields], "trigger": CRM_WRITE_TRIGGERS}

    @staticmethod
    def _require_id(payload: dict[str, Any] | None, what: str) -> str:
        record_id = extract_record_id(payload)
        if not record_id:
            raise InvalidResponse(f"Upstream {what} response has no record id")
        return record_id


class BillingApi(Protocol):
    def get_payment(self, payment_id: str) -> RemotePayment: ...

    def record_payment(
        self,
        invoice_id: str,
        amount: Decimal,
        payment_mode: str,
        description: str | None = None,
    ) -> RemotePayment: ...

    def refund_payment(self, payment_id: str, amount: Decimal | None = None, reason: str | None = None) -> RemoteRefund: ...


class BillingClient(_UpstreamHttpClient):
    """REST client for the billing API that owns invoices and payments."""

    def __init__(self, config: UpstreamConfig, *, transport: httpx.BaseTransport | None = None) -> None:
        super().__init__(config.billing_base_url, config, transport=transport)

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.config.billing_organization_id:
            headers[BILLING_ORG_HEADER] = self.config.billing_organization_id
        return headers

    def get_payment(self, payment_id: str) -> RemotePayment:
        payload = self.expect("get_payment", "GET", f"/payments/{payment_id}", remote_id=payment_id)
        return self._unwrap(payload, "payment", RemotePayment)

    def record_payment(
        self,
        invoice_id: str,
        amount: Decimal,
        payment_mode: str,
        description: str | None = None,
    ) -> RemotePayment:
        body: dict[str, Any] = {
            "payment_mode": payment_mode,
            "amount": float(amount),
            "invoices": [{"invoice_id": invoice_id, "amount_applied": float(amount)}],
        }
        if description:
            body["description"] = description
        payload = self.expect("record_payment", "POST", "/payments", json=body, remote_id=invoice_id)
        return self._unwrap(payload, "payment", RemotePayment)

    def refund_payment(self, payment_id: str, amount: Decimal | None = None, reason: str | None = None) -> RemoteRefund:
        body: dict[str, Any] = {}
        if amount is not None:
            body["amount"] = float(amount)
        if reason:
            body["description"] = reason
        payload = self.expect("refund_payment", "POST", f"/payments/{payment_id}/refunds", json=body, remote_id=payment_id)
        return self._unwrap(payload, "refund", RemoteRefund)

    @staticmethod
    def _unwrap(payload: dict[str, Any] | None, key: str, model: type[M]) -> M:
        item = (payload or {}).get(key)
        if not isinstance(item, dict):
            raise InvalidResponse(f"Upstream billing response has no '{key}' object")
        try:
            return model.model_validate(item)
        except ValidationError as exc:
            raise InvalidResponse(f"Invalid {key} object from upstream billing") from exc


def get_crm_client() -> Generator[CrmApi, None, None]:
    client = CrmClient(UpstreamConfig.from_settings(get_settings()))
    try:
        yield client
    finally:
        client.close()


def get_billing_client() -> Generator[BillingApi, None, None]:
    client = BillingClient(UpstreamConfig.from_settings(get_settings()))
    try:
        yield client
    finally:
        client.close()
