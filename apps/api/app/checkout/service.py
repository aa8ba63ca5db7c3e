from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.checkout.models import Agreement, CheckoutSession, CompanyInfo, SalesOrder
from app.checkout.schemas import (
    AgreementCreate,
    AgreementStatus,
    CheckoutSessionCreate,
    CheckoutSessionRead,
    CheckoutStatus,
    CompanyInfoCreate,
    ContactSyncResult,
    FullSyncResult,
    OrderAmountUpdate,
    SalesOrderSyncResult,
)
from app.core.auth import AuthUser
from app.core.config import get_settings
from app.core.errors import DomainError, NotFound, PreconditionFailed, UpstreamError
from app.crm.models import utcnow
from app.crm.service import IdentityLinkService
from app.metrics import observe_checkout_transition
from app.upstream.client import CrmApi


logger = logging.getLogger("app.checkout")

DEFAULT_ORDER_LABEL = "Zoho Integration"
LEAD_SOURCE = "Website Checkout"


def split_contact_name(full_name: str) -> tuple[str, str]:
    """Last word becomes the last name; everything before it the first name."""
    parts = full_name.split()
    if not parts:
        return "", ""
    return " ".join(parts[:-1]), parts[-1]


def build_contact_fields(checkout: CheckoutSession, company: CompanyInfo) -> dict[str, Any]:
    first_name, last_name = split_contact_name(company.contact_name)
    return {
        "Last_Name": last_name or company.contact_name,
        "First_Name": first_name,
        "Email": company.email,
        "Phone": company.phone or "",
        "Company": company.company_name,
        "Mailing_Street": company.address or "",
        "Mailing_City": company.city or "",
        "Mailing_State": company.state or "",
        "Mailing_Zip": company.zip_code or "",
        "Mailing_Country": company.country or "US",
        "Industry": company.industry or "",
        "Description": f"Created via checkout session: {checkout.id}",
        "Lead_Source": LEAD_SOURCE,
    }


def build_sales_order_fields(checkout: CheckoutSession, remote_contact_id: str, amount: Decimal) -> dict[str, Any]:
    label = checkout.module or DEFAULT_ORDER_LABEL
    total = float(amount)
    return {
        "Contact_Name": {"id": remote_contact_id},
        "Subject": f"{label} - {checkout.id}",
        "Deal_Name": f"{label} Deal",
        "Grand_Total": total,
        "Sub_Total": total,
        "Tax_Amount": 0,
        "Discount": 0,
        "Adjustment": 0,
        "Status": "Draft",
        "Description": f"Sales order created from checkout session: {checkout.id}",
    }


def _snapshot(checkout: CheckoutSession) -> dict[str, Any]:
    return {
        "status": checkout.status,
        "payment_completed_at": checkout.payment_completed_at.isoformat() if checkout.payment_completed_at else None,
    }


@dataclass(slots=True)
class CheckoutService:
    identity_links: IdentityLinkService = field(default_factory=IdentityLinkService)

    def create_session(self, session: Session, user: AuthUser, payload: CheckoutSessionCreate) -> CheckoutSessionRead:
        checkout = CheckoutSession(
            user_id=user.sub,
            module=payload.module,
            billing_invoice_id=payload.billing_invoice_id,
            status=CheckoutStatus.CREATED.value,
        )
        session.add(checkout)
        session.commit()
        audit.record(
            actor_user_id=user.sub,
            entity_type="checkout_session",
            entity_id=str(checkout.id),
            action="create",
            before=None,
            after=_snapshot(checkout),
        )
        return self._to_read(session, checkout.id)

    def list_sessions(self, session: Session, user: AuthUser) -> list[CheckoutSessionRead]:
        rows = session.scalars(
            self._with_children(select(CheckoutSession))
            .where(CheckoutSession.user_id == user.sub)
            .order_by(CheckoutSession.created_at.desc())
        ).all()
        return [CheckoutSessionRead.model_validate(row) for row in rows]

    def get_session(self, session: Session, user: AuthUser, checkout_session_id: uuid.UUID) -> CheckoutSessionRead:
        self.get_owned(session, user.sub, checkout_session_id)
        return self._to_read(session, checkout_session_id)

    def get_owned(self, session: Session, user_id: str, checkout_session_id: uuid.UUID) -> CheckoutSession:
        checkout = session.scalar(
            self._with_children(select(CheckoutSession)).where(
                CheckoutSession.id == checkout_session_id,
                CheckoutSession.user_id == user_id,
            )
        )
        if checkout is None:
            raise NotFound("Checkout session not found")
        return checkout

    def add_company_info(
        self,
        session: Session,
        user: AuthUser,
        checkout_session_id: uuid.UUID,
        payload: CompanyInfoCreate,
    ) -> CheckoutSessionRead:
        checkout = self.get_owned(session, user.sub, checkout_session_id)
        if checkout.company_info is not None:
            raise PreconditionFailed("Company information was already provided for this checkout session")
        session.add(CompanyInfo(checkout_session_id=checkout.id, **payload.model_dump()))
        session.commit()
        return self._to_read(session, checkout.id)

    def register_agreement(
        self,
        session: Session,
        user: AuthUser,
        checkout_session_id: uuid.UUID,
        payload: AgreementCreate,
    ) -> CheckoutSessionRead:
        checkout = self.get_owned(session, user.sub, checkout_session_id)
        if checkout.agreement is not None:
            raise PreconditionFailed("An agreement is already registered for this checkout session")
        session.add(
            Agreement(
                checkout_session_id=checkout.id,
                envelope_id=payload.envelope_id,
                status=AgreementStatus.PENDING.value,
            )
        )
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise PreconditionFailed("Envelope is already registered to another checkout session")
        return self._to_read(session, checkout.id)

    def set_order_amount(
        self,
        session: Session,
        user: AuthUser,
        checkout_session_id: uuid.UUID,
        payload: OrderAmountUpdate,
    ) -> CheckoutSessionRead:
        checkout = self.get_owned(session, user.sub, checkout_session_id)
        currency = (payload.currency or get_settings().default_currency).upper()
        order = checkout.sales_order
        if order is None:
            session.add(SalesOrder(checkout_session_id=checkout.id, amount=payload.amount, currency=currency))
        elif order.remote_sales_order_id is not None:
            raise PreconditionFailed("Sales order was already created remotely; its amount can no longer change")
        else:
            order.amount = payload.amount
            order.currency = currency
            session.add(order)
        session.commit()
        return self._to_read(session, checkout.id)

    def create_or_update_contact(
        self,
        session: Session,
        client: CrmApi,
        user: AuthUser,
        checkout_session_id: uuid.UUID,
        *,
        require_agreement_signed: bool = True,
    ) -> ContactSyncResult:
        try:
            checkout = self.get_owned(session, user.sub, checkout_session_id)
            company = checkout.company_info
            if company is None:
                raise PreconditionFailed("Company information is required before creating the CRM contact")
            if require_agreement_signed:
                agreement = checkout.agreement
                if agreement is None or agreement.status != AgreementStatus.COMPLETED.value:
                    raise PreconditionFailed("Agreement must be signed before creating the CRM contact")

            result = self.identity_links.link_contact(session, client, user.sub, build_contact_fields(checkout, company))
            checkout = self.get_owned(session, user.sub, checkout_session_id)
            self.advance(checkout, CheckoutStatus.CONTACT_CREATED, actor_user_id=user.sub)
            session.add(checkout)
            session.commit()
        except DomainError:
            session.rollback()
            raise
        except Exception as exc:
            session.rollback()
            logger.exception(
                "checkout.contact_sync_failed",
                extra={"checkout_session_id": str(checkout_session_id), "error": str(exc)},
            )
            raise UpstreamError("Failed to create or update the CRM contact") from exc

        events.publish(
            {
                "event_type": "checkout.contact_synced",
                "actor_user_id": user.sub,
                "version": 1,
                "payload": {
                    "checkout_session_id": str(checkout_session_id),
                    "remote_contact_id": result.remote_id,
                    "was_update": result.was_update,
                },
            }
        )
        return ContactSyncResult(remote_contact_id=result.remote_id, was_update=result.was_update)

    def create_sales_order(
        self,
        session: Session,
        client: CrmApi,
        user: AuthUser,
        checkout_session_id: uuid.UUID,
        *,
        require_payment_confirmed: bool = True,
        require_contact_created: bool = True,
    ) -> SalesOrderSyncResult:
        try:
            checkout = self.get_owned(session, user.sub, checkout_session_id)
            existing = checkout.sales_order
            if existing is not None and existing.remote_sales_order_id is not None:
                return self._already_ordered(session, checkout, existing.remote_sales_order_id, user)

            # The payment webhook stamps payment_completed_at; a synced contact alone is not proof of payment.
            if require_payment_confirmed and checkout.payment_completed_at is None:
                raise PreconditionFailed("Payment must be completed before creating the sales order")
            if require_contact_created and CheckoutStatus(checkout.status) != CheckoutStatus.CONTACT_CREATED:
                raise PreconditionFailed("Contact must be created before creating the sales order")

            link = self.identity_links.get_link(session, user.sub)
            if link is None:
                raise NotFound("No CRM contact is linked to this account")
            remote_contact_id = link.remote_contact_id

            if existing is not None:
                amount = Decimal(existing.amount)
                currency = existing.currency
            elif get_settings().sales_order_require_amount:
                raise PreconditionFailed("Order amount must be recorded before creating the sales order")
            else:
                amount = Decimal("0")
                currency = get_settings().default_currency

            order = self._claim_order(session, checkout.id, amount, currency)
            if order.remote_sales_order_id is not None:
                checkout = self.get_owned(session, user.sub, checkout_session_id)
                return self._already_ordered(session, checkout, order.remote_sales_order_id, user)

            amount = Decimal(order.amount)
            currency = order.currency
            checkout = self.get_owned(session, user.sub, checkout_session_id)
            remote_order_id = client.create_sales_order(build_sales_order_fields(checkout, remote_contact_id, amount))
            order.remote_sales_order_id = remote_order_id
            order.updated_at = utcnow()
            session.add(order)
            self.advance(checkout, CheckoutStatus.SALES_ORDER_CREATED, actor_user_id=user.sub)
            session.add(checkout)
            session.commit()
        except DomainError:
            session.rollback()
            raise
        except Exception as exc:
            session.rollback()
            logger.exception(
                "checkout.sales_order_sync_failed",
                extra={"checkout_session_id": str(checkout_session_id), "error": str(exc)},
            )
            raise UpstreamError("Failed to create the CRM sales order") from exc

        events.publish(
            {
                "event_type": "checkout.sales_order_created",
                "actor_user_id": user.sub,
                "version": 1,
                "payload": {
                    "checkout_session_id": str(checkout_session_id),
                    "remote_sales_order_id": remote_order_id,
                    "remote_contact_id": remote_contact_id,
                    "amount": str(amount),
                    "currency": currency,
                },
            }
        )
        return SalesOrderSyncResult(remote_sales_order_id=remote_order_id, remote_contact_id=remote_contact_id)

    def sync(
        self,
        session: Session,
        client: CrmApi,
        user: AuthUser,
        checkout_session_id: uuid.UUID,
        *,
        require_agreement_signed: bool = True,
        require_payment_confirmed: bool = True,
        require_contact_created: bool = True,
    ) -> FullSyncResult:
        contact = self.create_or_update_contact(
            session,
            client,
            user,
            checkout_session_id,
            require_agreement_signed=require_agreement_signed,
        )
        order = self.create_sales_order(
            session,
            client,
            user,
            checkout_session_id,
            require_payment_confirmed=require_payment_confirmed,
            require_contact_created=require_contact_created,
        )
        checkout = self.get_owned(session, user.sub, checkout_session_id)
        return FullSyncResult(contact=contact, sales_order=order, status=checkout.status)

    def advance(self, checkout: CheckoutSession, target: CheckoutStatus, *, actor_user_id: str) -> bool:
        """Move the session forward to ``target``; never moves it backwards."""
        current = CheckoutStatus(checkout.status)
        if target.rank <= current.rank:
            return False
        before = _snapshot(checkout)
        checkout.status = target.value
        checkout.updated_at = utcnow()
        observe_checkout_transition(target.value)
        audit.record(
            actor_user_id=actor_user_id,
            entity_type="checkout_session",
            entity_id=str(checkout.id),
            action="status_change",
            before=before,
            after=_snapshot(checkout),
        )
        logger.info(
            "checkout.status_changed",
            extra={
                "checkout_session_id": str(checkout.id),
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return True

    def _already_ordered(
        self,
        session: Session,
        checkout: CheckoutSession,
        remote_order_id: str,
        user: AuthUser,
    ) -> SalesOrderSyncResult:
        link = self.identity_links.get_link(session, user.sub)
        if self.advance(checkout, CheckoutStatus.SALES_ORDER_CREATED, actor_user_id=user.sub):
            session.add(checkout)
        session.commit()
        return SalesOrderSyncResult(
            remote_sales_order_id=remote_order_id,
            remote_contact_id=link.remote_contact_id if link is not None else "",
        )

    def _claim_order(
        self,
        session: Session,
        checkout_session_id: uuid.UUID,
        amount: Decimal,
        currency: str,
    ) -> SalesOrder:
        """Lock the session's sales-order row, inserting it if missing.

        The lock is a conditional write held until the caller's transaction ends, so a
        concurrent request for the same session waits here and then finds the stored
        remote id instead of creating a second remote order.
        """
        by_session = SalesOrder.checkout_session_id == checkout_session_id
        current = select(SalesOrder).where(by_session).execution_options(populate_existing=True)
        for _ in range(2):
            session.execute(
                update(SalesOrder)
                .where(by_session, SalesOrder.remote_sales_order_id.is_(None))
                .values(updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            order = session.scalar(current)
            if order is not None:
                return order
            session.add(SalesOrder(checkout_session_id=checkout_session_id, amount=amount, currency=currency))
            try:
                session.flush()
            except IntegrityError:
                # Another request inserted the row first; lock that one instead.
                session.rollback()
                continue
            return session.scalar(current)
        raise PreconditionFailed("The sales order for this session is being created by another request")

    @staticmethod
    def _with_children(statement):  # type: ignore[no-untyped-def]
        return statement.options(
            selectinload(CheckoutSession.company_info),
            selectinload(CheckoutSession.agreement),
            selectinload(CheckoutSession.sales_order),
        )

    def _to_read(self, session: Session, checkout_session_id: uuid.UUID) -> CheckoutSessionRead:
        checkout = session.scalar(
            self._with_children(select(CheckoutSession)).where(CheckoutSession.id == checkout_session_id)
        )
        if checkout is None:
            raise NotFound("Checkout session not found")
        return CheckoutSessionRead.model_validate(checkout)


checkout_service = CheckoutService()
