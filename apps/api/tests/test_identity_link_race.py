from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import Session, sessionmaker

from app.checkout.models import Agreement, CheckoutSession, CompanyInfo
from app.checkout.schemas import AgreementStatus, CheckoutStatus
from app.checkout.service import checkout_service
from app.core.auth import AuthUser
from app.core.database import Base
from app.core.errors import UpstreamError
from app.crm.models import IdentityLink
from app.crm.service import identity_link_service
from app.upstream.client import CrmClient


@pytest.fixture()
def session_factory(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


def _link_first_from_another_request(
    session: Session,
    session_factory: sessionmaker[Session],
    crm_client: CrmClient,
    user_id: str,
) -> list[str]:
    """Let a competing request link ``user_id`` right before ``session`` flushes its own link row."""
    winner_ids: list[str] = []

    @event.listens_for(session, "before_flush")
    def competing_link(flushing: Session, flush_context, instances) -> None:  # type: ignore[no-untyped-def]
        if winner_ids or not any(isinstance(item, IdentityLink) for item in flushing.new):
            return
        with session_factory() as other:
            result = identity_link_service.link_contact(
                other, crm_client, user_id, {"Last_Name": "Winner", "Email": "winner@acme.test"}
            )
            other.commit()
        winner_ids.append(result.remote_id)

    return winner_ids


def test_losing_claim_updates_the_winning_contact_without_creating_one(
    fake_crm, crm_client: CrmClient, session_factory
) -> None:
    with session_factory() as session:
        winner_ids = _link_first_from_another_request(session, session_factory, crm_client, "user-1")
        result = identity_link_service.link_contact(session, crm_client, "user-1", {"Last_Name": "Watson", "Email": "mj@acme.test"})
        session.commit()

    [winner_id] = winner_ids
    assert result.remote_id == winner_id
    assert result.was_update is True
    assert fake_crm.count("POST", "/Contacts") == 1
    assert list(fake_crm.contacts) == [winner_id]
    assert fake_crm.contacts[winner_id]["Last_Name"] == "Watson"
    assert fake_crm.count("PUT", f"/Contacts/{winner_id}") == 1

    with session_factory() as session:
        links = session.scalars(select(IdentityLink).where(IdentityLink.user_id == "user-1")).all()
    assert [link.remote_contact_id for link in links] == [winner_id]


def test_checkout_contact_sync_survives_losing_the_link_claim(fake_crm, crm_client: CrmClient, session_factory) -> None:
    with session_factory() as setup:
        checkout = CheckoutSession(user_id="user-1", module="Analytics Suite", status=CheckoutStatus.PAYMENT_COMPLETED.value)
        setup.add(checkout)
        setup.flush()
        setup.add(CompanyInfo(checkout_session_id=checkout.id, company_name="Acme Corp", contact_name="Mary Jane Watson", email="mj@acme.test"))
        setup.add(Agreement(checkout_session_id=checkout.id, envelope_id="env-race", status=AgreementStatus.COMPLETED.value))
        setup.commit()
        checkout_id = checkout.id

    with session_factory() as session:
        winner_ids = _link_first_from_another_request(session, session_factory, crm_client, "user-1")
        result = checkout_service.create_or_update_contact(session, crm_client, AuthUser(sub="user-1", roles=["user"]), checkout_id)

    assert result.remote_contact_id == winner_ids[0]
    assert result.was_update is True
    assert fake_crm.count("POST", "/Contacts") == 1
    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(IdentityLink)) == 1
        stored = session.get(CheckoutSession, checkout_id)
        assert stored is not None
        assert stored.status == CheckoutStatus.CONTACT_CREATED.value


def test_link_claim_stays_private_until_commit_and_is_released_on_failure(
    fake_crm, crm_client: CrmClient, session_factory
) -> None:
    visible_during_create: list[int] = []

    def count_committed_links(_: str) -> None:
        with session_factory() as other:
            visible_during_create.append(other.scalar(select(func.count()).select_from(IdentityLink)) or 0)

    fake_crm.on_create["Contacts"] = count_committed_links
    fake_crm.fail("POST", "/Contacts", 500, {"code": "INTERNAL_ERROR", "message": "Internal Server Error", "status": "error"})

    with session_factory() as session:
        with pytest.raises(UpstreamError):
            identity_link_service.link_contact(session, crm_client, "user-1", {"Last_Name": "Watson"})
        session.rollback()
        assert session.scalar(select(func.count()).select_from(IdentityLink)) == 0

    fake_crm.failures.clear()
    with session_factory() as session:
        result = identity_link_service.link_contact(session, crm_client, "user-1", {"Last_Name": "Watson"})
        session.commit()

    assert result.was_update is False
    assert visible_during_create == [0]
    with session_factory() as session:
        links = session.scalars(select(IdentityLink)).all()
    assert [link.remote_contact_id for link in links] == [result.remote_id]
