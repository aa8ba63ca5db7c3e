from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.api.errors import domain_error_response
from app.core.auth import AuthUser, require_principal
from app.core.errors import DomainError
from app.core.rbac import require_permissions
from app.payments.schemas import PaymentRecordRequest, PaymentRefundRequest
from app.payments.service import payments_service
from app.upstream.client import BillingApi, get_billing_client
from app.upstream.schemas import RemotePayment, RemoteRefund

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.get("/{payment_id}", response_model=RemotePayment)
def get_payment(
    request: Request,
    payment_id: str,
    billing: BillingApi = Depends(get_billing_client),
    _: AuthUser = Depends(require_principal),
) -> RemotePayment | JSONResponse:
    try:
        return payments_service.get_payment(billing, payment_id)
    except DomainError as exc:
        return domain_error_response(request, exc)


@router.post("", response_model=RemotePayment, status_code=status.HTTP_201_CREATED)
def record_payment(
    request: Request,
    payload: PaymentRecordRequest,
    billing: BillingApi = Depends(get_billing_client),
    user: AuthUser = Depends(require_permissions("billing.payments.write")),
) -> RemotePayment | JSONResponse:
    try:
        return payments_service.record_payment(billing, user, payload)
    except DomainError as exc:
        return domain_error_response(request, exc)


@router.post("/{payment_id}/refunds", response_model=RemoteRefund, status_code=status.HTTP_201_CREATED)
def refund_payment(
    request: Request,
    payment_id: str,
    payload: PaymentRefundRequest,
    billing: BillingApi = Depends(get_billing_client),
    user: AuthUser = Depends(require_permissions("billing.payments.write")),
) -> RemoteRefund | JSONResponse:
    try:
        return payments_service.refund_payment(billing, user, payment_id, payload)
    except DomainError as exc:
        return domain_error_response(request, exc)
