from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user
from app.core.database import Base, get_db
from app.crm.models import IdentityLink
from app.crm.service import crm_profile_service
from app.main import app
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


@pytest.fixture()
def client(
    db_session: Session,
    crm_client: CrmClient,
) -> Generator[tuple[TestClient, Callable[[list[str]], None]], None, None]:
    current = {"user": AuthUser(sub="user-1", roles=["user"])}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return current["user"]

    def override_get_crm_client() -> CrmClient:
        return crm_client

    def set_roles(roles: list[str]) -> None:
        current["user"] = AuthUser(sub="user-1", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_crm_client] = override_get_crm_client
    with TestClient(app) as test_client:
        yield test_client, set_roles
    app.dependency_overrides.clear()


def _link(db_session: Session, fake_crm, user_id: str = "user-1", **contact_fields) -> str:
    remote_id = fake_crm.add_record("Contacts", Last_Name="Watson", First_Name="Mary Jane", Email="mj@acme.test", **contact_fields)
    db_session.add(IdentityLink(user_id=user_id, remote_contact_id=remote_id))
    db_session.commit()
    return remote_id


def _seed_related(fake_crm, remote_id: str) -> None:
    fake_crm.add_record("Sales_Orders", Subject="Analytics - 1", Grand_Total=250, Contact_Name={"id": remote_id})
    fake_crm.add_record("Sales_Orders", Subject="Someone else", Contact_Name={"id": "999"})
    fake_crm.add_record("Deals", Deal_Name="Expansion", Stage="Negotiation", Contact_Name={"id": remote_id})
    fake_crm.add_record("Tasks", Subject="Kickoff call", Status="Not Started", Who_Id={"id": remote_id})
    fake_crm.add_record("Notes", Note_Title="Welcome", Note_Content="Signed up via checkout", Parent_Id={"id": remote_id})


def test_contact_info_without_link_is_not_found(client) -> None:
    test_client, _ = client

    response = test_client.get("/api/crm/contact")

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_contact_info_returns_link_and_remote_contact(client, fake_crm, db_session: Session) -> None:
    test_client, _ = client
    remote_id = _link(db_session, fake_crm)

    response = test_client.get("/api/crm/contact")

    assert response.status_code == 200
    body = response.json()
    assert body["link"]["remote_contact_id"] == remote_id
    assert body["contact"]["Email"] == "mj@acme.test"


def test_aggregate_profile_collects_related_records(client, fake_crm, db_session: Session) -> None:
    test_client, _ = client
    remote_id = _link(db_session, fake_crm)
    _seed_related(fake_crm, remote_id)

    response = test_client.get("/api/crm/profile")

    assert response.status_code == 200
    body = response.json()
    assert body["remote_id"] == remote_id
    assert body["contact"]["Last_Name"] == "Watson"
    assert [item["Subject"] for item in body["sales_orders"]] == ["Analytics - 1"]
    assert [item["Deal_Name"] for item in body["deals"]] == ["Expansion"]
    assert [item["Subject"] for item in body["tasks"]] == ["Kickoff call"]
    assert [item["Note_Title"] for item in body["notes"]] == ["Welcome"]


def test_aggregate_profile_survives_a_failing_category(client, fake_crm, db_session: Session) -> None:
    test_client, _ = client
    remote_id = _link(db_session, fake_crm)
    _seed_related(fake_crm, remote_id)
    fake_crm.fail("GET", "/Deals/search", 500, {"code": "INTERNAL_ERROR", "message": "Internal Server Error", "status": "error"})

    response = test_client.get("/api/crm/profile")

    assert response.status_code == 200
    body = response.json()
    assert body["deals"] == []
    assert len(body["sales_orders"]) == 1
    assert len(body["notes"]) == 1


def test_aggregate_profile_distinguishes_failed_from_empty(fake_crm, crm_client: CrmClient) -> None:
    remote_id = fake_crm.add_record("Contacts", Last_Name="Watson")
    fake_crm.fail("GET", "/Deals/search", 500, {"code": "INTERNAL_ERROR", "message": "Internal Server Error", "status": "error"})

    profile = crm_profile_service.fetch_profile(crm_client, remote_id, include_deals=True, include_tasks=True)

    assert profile.deals is not None and profile.deals.failed
    assert profile.deals.error == "Internal Server Error"
    assert profile.tasks is not None and not profile.tasks.failed
    assert profile.tasks.items == []
    assert profile.sales_orders is None
    assert profile.to_read().deals == []


def test_aggregate_profile_records_unexpected_errors_per_category(
    fake_crm, crm_client: CrmClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    remote_id = fake_crm.add_record("Contacts", Last_Name="Watson")
    _seed_related(fake_crm, remote_id)

    def broken_search(self: CrmClient, criteria: str) -> list:
        raise RuntimeError("Tasks payload could not be decoded")

    monkeypatch.setattr(CrmClient, "search_tasks", broken_search)

    profile = crm_profile_service.fetch_profile(
        crm_client, remote_id, include_sales_orders=True, include_tasks=True, include_notes=True
    )

    assert profile.tasks is not None and profile.tasks.failed
    assert profile.tasks.error == "Tasks payload could not be decoded"
    assert profile.contact.items[0].id == remote_id
    assert profile.sales_orders is not None and len(profile.sales_orders.items) == 1
    assert profile.notes is not None and not profile.notes.failed
    assert profile.to_read().tasks == []


def test_aggregate_profile_skips_excluded_categories(client, fake_crm, db_session: Session) -> None:
    test_client, _ = client
    _link(db_session, fake_crm)

    response = test_client.get("/api/crm/profile", params={"include_notes": "false", "include_tasks": "false"})

    assert response.status_code == 200
    assert fake_crm.count("GET", "/Notes") == 0
    assert fake_crm.count("GET", "/Tasks") == 0
    assert fake_crm.count("GET", "/Deals/search") == 1


def test_aggregate_profile_of_foreign_contact_requires_permission(client, fake_crm, db_session: Session) -> None:
    test_client, set_roles = client
    _link(db_session, fake_crm)
    foreign_id = fake_crm.add_record("Contacts", Last_Name="Parker")

    hidden = test_client.get("/api/crm/profile", params={"remote_id": foreign_id})
    assert hidden.status_code == 404
    assert fake_crm.count("GET", f"/Contacts/{foreign_id}") == 0

    set_roles(["user", "crm.profiles.read_any"])
    visible = test_client.get("/api/crm/profile", params={"remote_id": foreign_id})
    assert visible.status_code == 200
    assert visible.json()["contact"]["Last_Name"] == "Parker"


def test_aggregate_profile_without_link_fails(client) -> None:
    test_client, _ = client

    response = test_client.get("/api/crm/profile")

    assert response.status_code == 404


def test_contact_search_requires_permission(client) -> None:
    test_client, _ = client

    response = test_client.post("/api/crm/contacts/search", json={"email": "mj@acme.test"})

    assert response.status_code == 403


def test_contact_search_requires_a_criterion(client, fake_crm) -> None:
    test_client, set_roles = client
    set_roles(["user", "crm.contacts.search"])

    response = test_client.post("/api/crm/contacts/search", json={})

    assert response.status_code == 409
    assert response.json()["code"] == "precondition_failed"
    assert fake_crm.requests == []


def test_contact_search_ors_criteria(client, fake_crm) -> None:
    test_client, set_roles = client
    set_roles(["user", "crm.contacts.search"])
    fake_crm.add_record("Contacts", Last_Name="Watson", Email="mj@acme.test", Company="Acme Corp")
    fake_crm.add_record("Contacts", Last_Name="Parker", Email="peter@bugle.test", Company="Daily Bugle")
    fake_crm.add_record("Contacts", Last_Name="Osborn", Email="norman@oscorp.test", Company="Oscorp")

    response = test_client.post("/api/crm/contacts/search", json={"email": "mj@acme.test", "company": "Daily Bugle"})

    assert response.status_code == 200
    assert sorted(item["Last_Name"] for item in response.json()["contacts"]) == ["Parker", "Watson"]
    criteria = fake_crm.requests[-1].url.params["criteria"]
    assert criteria == "(Email:equals:mj@acme.test) or (Company:equals:Daily Bugle)"


def test_contact_search_with_no_matches_is_empty(client, fake_crm) -> None:
    test_client, set_roles = client
    set_roles(["user", "crm.contacts.search"])

    response = test_client.post("/api/crm/contacts/search", json={"phone": "555-0199"})

    assert response.status_code == 200
    assert response.json() == {"contacts": []}
