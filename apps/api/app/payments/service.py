from __future__ import annotations

import logging
from dataclasses import dataclass

from app import audit
from app.core.auth import AuthUser
from app.payments.schemas import PaymentRecordRequest, PaymentRefundRequest
from app.upstream.client import BillingApi
from app.upstream.schemas import RemotePayment, RemoteRefund


logger = logging.getLogger("app.payments")


@dataclass(slots=True)
class PaymentsService:
    """Pass-through to the billing API. Reads and writes both propagate upstream failures."""

    def get_payment(self, client: BillingApi, payment_id: str) -> RemotePayment:
        return client.get_payment(payment_id)

    def record_payment(self, client: BillingApi, user: AuthUser, payload: PaymentRecordRequest) -> RemotePayment:
        payment = client.record_payment(
            payload.invoice_id,
            payload.amount,
            payload.payment_mode,
            payload.description,
        )
        audit.record(
            actor_user_id=user.sub,
            entity_type="billing_payment",
            entity_id=payment.payment_id,
            action="record",
            before=None,
            after={"invoice_id": payload.invoice_id, "amount": str(payload.amount), "payment_mode": payload.payment_mode},
        )
        logger.info("payments.recorded", extra={"remote_id": payment.payment_id})
        return payment

    def refund_payment(
        self,
        client: BillingApi,
        user: AuthUser,
        payment_id: str,
        payload: PaymentRefundRequest,
    ) -> RemoteRefund:
        refund = client.refund_payment(payment_id, payload.amount, payload.reason)
        audit.record(
            actor_user_id=user.sub,
            entity_type="billing_payment",
            entity_id=payment_id,
            action="refund",
            before=None,
            after={"refund_id": refund.refund_id, "amount": str(payload.amount) if payload.amount is not None else None},
        )
        logger.info("payments.refunded", extra={"remote_id": payment_id})
        return refund


payments_service = PaymentsService()
