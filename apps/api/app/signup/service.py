from __future__ import annotations

import logging
import secrets
import string
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.core.auth import AuthUser
from app.core.config import get_settings
from app.core.errors import CodeCollision, DomainError, Expired, Forbidden, LimitExceeded, NotFound
from app.core.rbac import has_permission
from app.crm.models import utcnow
from app.crm.service import IdentityLinkService
from app.metrics import observe_signup_link_validation
from app.signup.models import SignupLink
from app.signup.schemas import SignupLinkIssued, SignupLinkRead, SignupLinkValidated
from app.upstream.client import CrmApi


logger = logging.getLogger("app.signup")

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 12
ISSUE_ANY_REMOTE_ID = "crm.signup_links.issue"


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; they are stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_signup_url(remote_id: str, code: str) -> str:
    base = get_settings().public_app_url.rstrip("/")
    return f"{base}/magic-link/{remote_id}/{code}"


@dataclass(slots=True)
class SignupLinkService:
    """Issues and redeems time-boxed, usage-limited access codes bound to a remote contact."""

    identity_links: IdentityLinkService = field(default_factory=IdentityLinkService)
    code_factory: Callable[[], str] = generate_code
    clock: Callable[[], datetime] = utcnow

    def issue(
        self,
        session: Session,
        client: CrmApi,
        user: AuthUser,
        remote_id: str | None = None,
        *,
        expires_in_days: int | None = None,
        usage_limit: int | None = None,
    ) -> SignupLinkIssued:
        settings = get_settings()
        target = self._resolve_target(session, user, remote_id)
        if client.get_contact(target) is None:
            raise NotFound("Remote contact not found")

        days = settings.signup_link_default_expires_days if expires_in_days is None else expires_in_days
        limit = settings.signup_link_default_usage_limit if usage_limit is None else usage_limit
        expires_at = self.clock() + timedelta(days=days)

        link = self._insert_with_unique_code(session, user, target, expires_at, limit, settings.signup_code_max_attempts)

        audit.record(
            actor_user_id=user.sub,
            entity_type="crm_signup_link",
            entity_id=str(link.id),
            action="issue",
            before=None,
            after={"remote_id": target, "expires_at": expires_at.isoformat(), "usage_limit": limit},
        )
        events.publish(
            {
                "event_type": "signup_link.issued",
                "actor_user_id": user.sub,
                "version": 1,
                "payload": {"signup_link_id": str(link.id), "remote_id": target},
            }
        )
        logger.info("signup_link.issued", extra={"signup_link_id": str(link.id), "remote_id": target})
        return SignupLinkIssued(
            id=link.id,
            remote_id=target,
            code=link.code,
            expires_at=expires_at,
            usage_limit=limit,
            url=build_signup_url(target, link.code),
        )

    def validate(self, session: Session, client: CrmApi, remote_id: str, code: str) -> SignupLinkValidated:
        """Consume one use of the link and return the remote contact it grants access to.

        The usage check and increment run as a single conditional UPDATE, so concurrent
        redemptions of the last remaining use cannot both succeed.
        """
        link = session.scalar(select(SignupLink).where(SignupLink.remote_id == remote_id, SignupLink.code == code))
        if link is None:
            observe_signup_link_validation("not_found")
            raise NotFound("Signup link not found")

        now = self.clock()
        if self._is_expired(link, now):
            self._deactivate(session, link)
            observe_signup_link_validation("expired")
            raise Expired("Signup link has expired")

        result = session.execute(
            update(SignupLink)
            .where(
                SignupLink.id == link.id,
                SignupLink.is_active.is_(True),
                SignupLink.usage_count < SignupLink.usage_limit,
                SignupLink.expires_at > now,
            )
            .values(usage_count=SignupLink.usage_count + 1, last_used_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            session.refresh(link)
            if self._is_expired(link, now):
                self._deactivate(session, link)
                observe_signup_link_validation("expired")
                raise Expired("Signup link has expired")
            observe_signup_link_validation("limit_exceeded")
            raise LimitExceeded("Signup link usage limit reached")
        session.commit()
        session.refresh(link)

        try:
            contact = client.get_contact(remote_id)
            if contact is None:
                raise NotFound("Remote contact not found")
        except DomainError as exc:
            self._release(session, link.id)
            observe_signup_link_validation("upstream_error")
            logger.warning(
                "signup_link.profile_fetch_failed",
                extra={"signup_link_id": str(link.id), "remote_id": remote_id, "error": exc.message},
            )
            raise

        observe_signup_link_validation("ok")
        events.publish(
            {
                "event_type": "signup_link.validated",
                "actor_user_id": None,
                "version": 1,
                "payload": {"signup_link_id": str(link.id), "remote_id": remote_id, "usage_count": link.usage_count},
            }
        )
        logger.info("signup_link.validated", extra={"signup_link_id": str(link.id), "remote_id": remote_id})
        return SignupLinkValidated(link=SignupLinkRead.model_validate(link), contact=contact)

    def _resolve_target(self, session: Session, user: AuthUser, remote_id: str | None) -> str:
        own = self.identity_links.get_link(session, user.sub)
        if not remote_id:
            if own is None:
                raise NotFound("No CRM contact is linked to this account")
            return own.remote_contact_id
        if own is not None and own.remote_contact_id == remote_id:
            return remote_id
        if not has_permission(user, ISSUE_ANY_REMOTE_ID):
            raise Forbidden(f"Missing permission: {ISSUE_ANY_REMOTE_ID}")
        return remote_id

    def _insert_with_unique_code(
        self,
        session: Session,
        user: AuthUser,
        remote_id: str,
        expires_at: datetime,
        usage_limit: int,
        max_attempts: int,
    ) -> SignupLink:
        for attempt in range(1, max_attempts + 1):
            link = SignupLink(
                remote_id=remote_id,
                code=self.code_factory(),
                expires_at=expires_at,
                usage_limit=usage_limit,
                usage_count=0,
                is_active=True,
                issued_by=user.sub,
            )
            session.add(link)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.warning("signup_link.code_collision", extra={"remote_id": remote_id, "error": f"attempt {attempt}"})
                continue
            return link
        raise CodeCollision("Could not generate a unique signup code")

    @staticmethod
    def _is_expired(link: SignupLink, now: datetime) -> bool:
        # Expired at the instant itself, matching the consume filter `expires_at > now`.
        return not link.is_active or now >= as_utc(link.expires_at)

    @staticmethod
    def _deactivate(session: Session, link: SignupLink) -> None:
        if link.is_active:
            link.is_active = False
            session.add(link)
            session.commit()
            logger.info("signup_link.deactivated", extra={"signup_link_id": str(link.id), "remote_id": link.remote_id})

    @staticmethod
    def _release(session: Session, link_id: uuid.UUID) -> None:
        session.execute(
            update(SignupLink)
            .where(SignupLink.id == link_id, SignupLink.usage_count > 0)
            .values(usage_count=SignupLink.usage_count - 1)
            .execution_options(synchronize_session=False)
        )
        session.commit()


signup_link_service = SignupLinkService()
