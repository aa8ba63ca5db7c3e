from __future__ import annotations

import threading
from collections.abc import Generator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import Session, sessionmaker

from app.core.database import Base
from app.core.errors import LimitExceeded
from app.crm.models import utcnow
from app.signup.models import SignupLink
from app.signup.service import SignupLinkService
from app.upstream.schemas import RemoteContact


WORKERS = 8


class StaticContactCrm:
    def get_contact(self, remote_id: str) -> RemoteContact | None:
        return RemoteContact(id=remote_id, Last_Name="Watson")


@pytest.fixture()
def session_factory(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'signup.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # Take the write lock at BEGIN so concurrent writers queue instead of failing on upgrade.
    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


def _seed_link(session_factory: sessionmaker[Session], usage_limit: int) -> None:
    with session_factory() as session:
        session.add(
            SignupLink(
                remote_id="5000001",
                code="RACECODE0001",
                expires_at=utcnow() + timedelta(days=1),
                usage_limit=usage_limit,
                usage_count=0,
                is_active=True,
            )
        )
        session.commit()


def _redeem_concurrently(session_factory: sessionmaker[Session]) -> list[str]:
    service = SignupLinkService()
    crm = StaticContactCrm()
    barrier = threading.Barrier(WORKERS)
    outcomes: list[str] = []
    lock = threading.Lock()

    def redeem() -> None:
        barrier.wait()
        with session_factory() as session:
            try:
                service.validate(session, crm, "5000001", "RACECODE0001")
                outcome = "ok"
            except LimitExceeded:
                outcome = "limit_exceeded"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=redeem) for _ in range(WORKERS)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes


def test_single_use_link_is_redeemed_exactly_once(session_factory) -> None:
    _seed_link(session_factory, usage_limit=1)

    outcomes = _redeem_concurrently(session_factory)

    assert outcomes.count("ok") == 1
    assert outcomes.count("limit_exceeded") == WORKERS - 1
    with session_factory() as session:
        link = session.scalar(select(SignupLink).where(SignupLink.code == "RACECODE0001"))
        assert link is not None
        assert link.usage_count == 1


def test_concurrent_redemptions_never_exceed_limit(session_factory) -> None:
    _seed_link(session_factory, usage_limit=3)

    outcomes = _redeem_concurrently(session_factory)

    assert outcomes.count("ok") == 3
    assert outcomes.count("limit_exceeded") == WORKERS - 3
    with session_factory() as session:
        link = session.scalar(select(SignupLink).where(SignupLink.code == "RACECODE0001"))
        assert link is not None
        assert link.usage_count == 3
