from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit
from app.core.auth import AuthUser
from app.core.errors import DomainError, NotFound, PreconditionFailed
from app.core.rbac import has_permission
from app.crm.models import IdentityLink, utcnow
from app.crm.schemas import AggregateProfileRead, ContactInfoRead, ContactSearchRequest, IdentityLinkRead
from app.upstream.client import CrmApi, any_of, equals_criterion
from app.upstream.schemas import RemoteContact, RemoteDeal, RemoteNote, RemoteSalesOrder, RemoteTask


logger = logging.getLogger("app.crm")

T = TypeVar("T")

READ_ANY_PROFILE = "crm.profiles.read_any"


@dataclass(slots=True)
class LinkResult:
    remote_id: str
    was_update: bool


@dataclass(slots=True)
class FetchOutcome(Generic[T]):
    """Result of one best-effort sub-fetch; ``error`` is set when the fetch failed."""

    items: list[T] = field(default_factory=list)
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(slots=True)
class AggregateProfile:
    remote_id: str
    contact: FetchOutcome[RemoteContact]
    sales_orders: FetchOutcome[RemoteSalesOrder] | None = None
    deals: FetchOutcome[RemoteDeal] | None = None
    tasks: FetchOutcome[RemoteTask] | None = None
    notes: FetchOutcome[RemoteNote] | None = None

    def to_read(self) -> AggregateProfileRead:
        return AggregateProfileRead(
            remote_id=self.remote_id,
            contact=self.contact.items[0] if self.contact.items else None,
            sales_orders=self.sales_orders.items if self.sales_orders else [],
            deals=self.deals.items if self.deals else [],
            tasks=self.tasks.items if self.tasks else [],
            notes=self.notes.items if self.notes else [],
        )


@dataclass(slots=True)
class IdentityLinkService:
    def get_link(self, session: Session, user_id: str) -> IdentityLink | None:
        return session.scalar(
            select(IdentityLink).where(
                IdentityLink.user_id == user_id,
                IdentityLink.remote_contact_id.is_not(None),
            )
        )

    def link_contact(
        self,
        session: Session,
        client: CrmApi,
        user_id: str,
        contact_fields: dict[str, Any],
    ) -> LinkResult:
        """Create the principal's remote contact, or update the one it is already linked to.

        The link row is claimed (flushed with no remote id) before the remote create, so a
        concurrent request for the same principal waits on the unique index instead of
        creating a second contact. Nothing is committed here; the caller owns the
        transaction, and rolling it back releases the claim.
        """
        existing = self.get_link(session, user_id)
        if existing is None:
            claim = self._claim(session, user_id)
            if claim is not None:
                remote_id = client.create_contact(contact_fields)
                claim.remote_contact_id = remote_id
                session.flush()
                audit.record(
                    actor_user_id=user_id,
                    entity_type="crm_identity_link",
                    entity_id=remote_id,
                    action="create",
                    before=None,
                    after={"user_id": user_id, "remote_contact_id": remote_id},
                )
                return LinkResult(remote_id=remote_id, was_update=False)

            existing = self.get_link(session, user_id)
            if existing is None:
                raise PreconditionFailed("The CRM contact for this account is still being created")
            logger.info("identity_link.claimed_elsewhere", extra={"remote_id": existing.remote_contact_id})

        client.update_contact(existing.remote_contact_id, contact_fields)
        existing.updated_at = utcnow()
        session.add(existing)
        session.flush()
        return LinkResult(remote_id=existing.remote_contact_id, was_update=True)

    @staticmethod
    def _claim(session: Session, user_id: str) -> IdentityLink | None:
        """Insert the principal's link row; ``None`` when another request already holds it."""
        claim = IdentityLink(user_id=user_id)
        session.add(claim)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            return None
        return claim


def _best_effort(category: str, remote_id: str, fetch: Callable[[], list[T]]) -> FetchOutcome[T]:
    try:
        return FetchOutcome(items=fetch())
    except DomainError as exc:
        logger.warning(
            "crm.profile_fetch_failed",
            extra={"operation": category, "remote_id": remote_id, "error": exc.message},
        )
        return FetchOutcome(error=exc.message)
    except Exception as exc:
        logger.exception(
            "crm.profile_fetch_failed",
            extra={"operation": category, "remote_id": remote_id, "error": str(exc)},
        )
        return FetchOutcome(error=str(exc) or type(exc).__name__)


@dataclass(slots=True)
class CrmProfileService:
    identity_links: IdentityLinkService = field(default_factory=IdentityLinkService)

    def resolve_remote_id(self, session: Session, user: AuthUser, remote_id: str | None = None) -> str:
        own = self.identity_links.get_link(session, user.sub)
        if remote_id is None or remote_id == "":
            if own is None:
                raise NotFound("No CRM contact is linked to this account")
            return own.remote_contact_id
        if own is not None and own.remote_contact_id == remote_id:
            return remote_id
        if has_permission(user, READ_ANY_PROFILE):
            return remote_id
        raise NotFound("CRM contact not found")

    def get_aggregate_profile(
        self,
        session: Session,
        client: CrmApi,
        user: AuthUser,
        remote_id: str | None = None,
        *,
        include_sales_orders: bool = True,
        include_deals: bool = True,
        include_tasks: bool = True,
        include_notes: bool = True,
    ) -> AggregateProfile:
        resolved = self.resolve_remote_id(session, user, remote_id)
        return self.fetch_profile(
            client,
            resolved,
            include_sales_orders=include_sales_orders,
            include_deals=include_deals,
            include_tasks=include_tasks,
            include_notes=include_notes,
        )

    def fetch_profile(
        self,
        client: CrmApi,
        remote_id: str,
        *,
        include_sales_orders: bool = False,
        include_deals: bool = False,
        include_tasks: bool = False,
        include_notes: bool = False,
    ) -> AggregateProfile:
        def contact() -> list[RemoteContact]:
            found = client.get_contact(remote_id)
            return [found] if found is not None else []

        profile = AggregateProfile(remote_id=remote_id, contact=_best_effort("get_contact", remote_id, contact))
        if include_sales_orders:
            criteria = equals_criterion("Contact_Name", remote_id)
            profile.sales_orders = _best_effort("search_sales_orders", remote_id, lambda: client.search_sales_orders(criteria))
        if include_deals:
            criteria = equals_criterion("Contact_Name", remote_id)
            profile.deals = _best_effort("search_deals", remote_id, lambda: client.search_deals(criteria))
        if include_tasks:
            criteria = equals_criterion("Who_Id", remote_id)
            profile.tasks = _best_effort("search_tasks", remote_id, lambda: client.search_tasks(criteria))
        if include_notes:
            criteria = equals_criterion("Parent_Id", remote_id)
            profile.notes = _best_effort("search_notes", remote_id, lambda: client.search_notes(criteria))
        return profile

    def get_contact_info(self, session: Session, client: CrmApi, user: AuthUser) -> ContactInfoRead:
        link = self.identity_links.get_link(session, user.sub)
        if link is None:
            raise NotFound("No CRM contact is linked to this account")
        outcome = self.fetch_profile(client, link.remote_contact_id).contact
        return ContactInfoRead(
            link=IdentityLinkRead.model_validate(link),
            contact=outcome.items[0] if outcome.items else None,
        )

    def search_contacts(self, client: CrmApi, payload: ContactSearchRequest) -> list[RemoteContact]:
        criteria: list[str] = []
        if payload.email:
            criteria.append(equals_criterion("Email", payload.email))
        if payload.phone:
            criteria.append(equals_criterion("Phone", payload.phone))
        if payload.company:
            criteria.append(equals_criterion("Company", payload.company))
        if not criteria:
            raise PreconditionFailed("At least one search criterion (email, phone, company) is required")
        return client.search_contacts(any_of(criteria))


identity_link_service = IdentityLinkService()
crm_profile_service = CrmProfileService()
