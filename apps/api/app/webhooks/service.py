from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit, events
from app.checkout.models import Agreement, CheckoutSession
from app.checkout.schemas import AgreementStatus, CheckoutStatus
from app.checkout.service import CheckoutService
from app.crm.models import utcnow
from app.webhooks.schemas import BillingWebhookEnvelope, ESignatureWebhookEnvelope


logger = logging.getLogger("app.webhooks")

PAYMENT_EVENTS = {"payment_success", "payment_completed", "invoice_paid"}

ESIGNATURE_EVENT_STATUSES = {
    "envelope-sent": AgreementStatus.SENT,
    "envelope-delivered": AgreementStatus.SENT,
    "recipient-completed": AgreementStatus.PARTIALLY_SIGNED,
    "envelope-completed": AgreementStatus.COMPLETED,
    "envelope-declined": AgreementStatus.DECLINED,
    "envelope-voided": AgreementStatus.VOIDED,
}

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"
UNMATCHED = "unmatched"


def _parse_uuid(value: str | None) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


@dataclass(slots=True)
class WebhookIngestionService:
    """Applies provider notifications to local status. Never calls the remote CRM."""

    checkout: CheckoutService = field(default_factory=CheckoutService)

    def ingest_billing(self, session: Session, envelope: BillingWebhookEnvelope) -> str:
        if envelope.event_type not in PAYMENT_EVENTS:
            logger.info("webhook.ignored", extra={"provider": "billing", "event_type": envelope.event_type})
            return IGNORED

        checkout = self._match_checkout(session, envelope)
        if checkout is None:
            logger.warning(
                "webhook.unmatched",
                extra={"provider": "billing", "event_type": envelope.event_type, "remote_id": envelope.data.invoice_id},
            )
            return UNMATCHED

        recorded = False
        if checkout.payment_completed_at is None:
            checkout.payment_completed_at = utcnow()
            recorded = True
        advanced = False
        if checkout.status == CheckoutStatus.CREATED.value:
            advanced = self.checkout.advance(checkout, CheckoutStatus.PAYMENT_COMPLETED, actor_user_id=audit.SYSTEM_ACTOR)
        if not recorded and not advanced:
            return DUPLICATE

        session.add(checkout)
        session.commit()
        events.publish(
            {
                "event_type": "checkout.payment_completed",
                "actor_user_id": audit.SYSTEM_ACTOR,
                "version": 1,
                "payload": {
                    "checkout_session_id": str(checkout.id),
                    "invoice_id": envelope.data.invoice_id,
                    "payment_id": envelope.data.payment_id,
                    "amount": str(envelope.data.amount) if envelope.data.amount is not None else None,
                    "status": checkout.status,
                },
            }
        )
        return APPLIED

    def ingest_esignature(self, session: Session, envelope: ESignatureWebhookEnvelope) -> str:
        target = ESIGNATURE_EVENT_STATUSES.get(envelope.event)
        if target is None:
            logger.info("webhook.ignored", extra={"provider": "esignature", "event_type": envelope.event})
            return IGNORED

        envelope_id = envelope.data.envelope_id
        agreement = session.scalar(select(Agreement).where(Agreement.envelope_id == envelope_id))
        if agreement is None:
            logger.warning(
                "webhook.unmatched",
                extra={"provider": "esignature", "event_type": envelope.event, "remote_id": envelope_id},
            )
            return UNMATCHED

        current = AgreementStatus(agreement.status)
        if current.is_terminal or target.rank <= current.rank:
            return DUPLICATE

        agreement.status = target.value
        if target is AgreementStatus.COMPLETED:
            agreement.completed_at = utcnow()
        session.add(agreement)
        session.commit()

        audit.record(
            actor_user_id=audit.SYSTEM_ACTOR,
            entity_type="checkout_agreement",
            entity_id=str(agreement.id),
            action="status_change",
            before={"status": current.value},
            after={"status": target.value},
        )
        events.publish(
            {
                "event_type": "checkout.agreement_status_changed",
                "actor_user_id": audit.SYSTEM_ACTOR,
                "version": 1,
                "payload": {
                    "checkout_session_id": str(agreement.checkout_session_id),
                    "envelope_id": envelope_id,
                    "from_status": current.value,
                    "to_status": target.value,
                },
            }
        )
        logger.info(
            "checkout.agreement_status_changed",
            extra={
                "checkout_session_id": str(agreement.checkout_session_id),
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return APPLIED

    def _match_checkout(self, session: Session, envelope: BillingWebhookEnvelope) -> CheckoutSession | None:
        data = envelope.data
        checkout_session_id = _parse_uuid(data.reference_id)
        if checkout_session_id is not None:
            checkout = session.get(CheckoutSession, checkout_session_id)
            if checkout is not None:
                return checkout

        invoice_id = data.invoice_id
        if invoice_id is None and envelope.event_type == "invoice_paid":
            invoice_id = data.id
        if not invoice_id:
            return None
        return session.scalar(
            select(CheckoutSession)
            .where(CheckoutSession.billing_invoice_id == invoice_id)
            .order_by(CheckoutSession.created_at.desc())
            .limit(1)
        )


webhook_ingestion_service = WebhookIngestionService()
