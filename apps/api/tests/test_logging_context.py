from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.logging import JsonLogFormatter
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.upstream.client import CrmClient, get_crm_client


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session, crm_client: CrmClient) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["user"])

    def override_get_crm_client() -> CrmClient:
        return crm_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_crm_client] = override_get_crm_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/checkout/sessions/{uuid.uuid4()}"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/checkout/sessions/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_status_transition_logs_carry_session_and_correlation(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    checkout = client.post("/api/checkout/sessions", json={"billing_invoice_id": "INV-LOG"})
    assert checkout.status_code == 201
    webhook = client.post(
        "/webhooks/billing",
        json={"event_type": "payment_success", "data": {"invoice_id": "INV-LOG"}},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert webhook.status_code == 200

    transition_records = [record for record in caplog.records if record.name == "app.checkout"]
    assert any(
        record.getMessage() == "checkout.status_changed"
        and getattr(record, "checkout_session_id", None) == checkout.json()["id"]
        and getattr(record, "from_status", None) == "created"
        and getattr(record, "to_status", None) == "payment_completed"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in transition_records
    )


def test_upstream_failures_are_logged_with_operation(client: TestClient, fake_crm, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    checkout = client.post("/api/checkout/sessions", json={}).json()
    client.post(
        f"/api/checkout/sessions/{checkout['id']}/company-info",
        json={"company_name": "Acme", "contact_name": "Jane Doe", "email": "jane@acme.test"},
    )
    fake_crm.fail("POST", "/Contacts", 500, {"code": "INTERNAL_ERROR", "message": "Internal Server Error", "status": "error"})

    response = client.post(f"/api/checkout/sessions/{checkout['id']}/contact", json={"require_agreement_signed": False})
    assert response.status_code == 502

    upstream_records = [record for record in caplog.records if record.name == "app.upstream"]
    assert any(
        record.getMessage() == "upstream.request_failed"
        and getattr(record, "operation", None) == "create_contact"
        and getattr(record, "status_code", None) == 500
        for record in upstream_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.signup",
            "levelname": "INFO",
            "msg": "signup_link.validated",
            "remote_id": "5000001",
            "signup_link_id": "abc",
            "code": "SECRETCODE01",
            "correlation_id": "corr-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "signup_link.validated"
    assert payload["correlation_id"] == "corr-1"
    assert payload["fields"] == {"remote_id": "5000001", "signup_link_id": "abc"}
