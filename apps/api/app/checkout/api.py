from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import domain_error_response
from app.checkout.schemas import (
    AgreementCreate,
    CheckoutSessionCreate,
    CheckoutSessionRead,
    CompanyInfoCreate,
    ContactSyncRequest,
    ContactSyncResult,
    FullSyncRequest,
    FullSyncResult,
    OrderAmountUpdate,
    SalesOrderSyncRequest,
    SalesOrderSyncResult,
)
from app.checkout.service import checkout_service
from app.core.auth import AuthUser, require_principal
from app.core.database import get_db
from app.core.errors import DomainError
from app.upstream.client import CrmApi, get_crm_client

router = APIRouter(prefix="/api/checkout", tags=["checkout"])


@router.post("/sessions", response_model=CheckoutSessionRead, status_code=status.HTTP_201_CREATED)
def create_checkout_session(
    payload: CheckoutSessionCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_principal),
) -> CheckoutSessionRead:
    return checkout_service.create_session(db, user, payload)


@router.get("/sessions", response_model=list[CheckoutSessionRead])
def list_checkout_sessions(
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_principal),
) -> list[CheckoutSessionRead]:
    return checkout_service.list_sessions(db, user)


@router.get("/sessions/{checkout_session_id}", response_model=CheckoutSessionRead)
def get_checkout_session(
    request: Request,
    checkout_session_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_principal),
) -> CheckoutSessionRead | JSONResponse:
    try:
        return checkout_service.get_session(db, user, checkout_session_id)
    except DomainError as exc:
        return domain_error_response(request, exc)


@router.post("/sessions/{checkout_session_id}/company-info", response_model=CheckoutSessionRead, status_code=status.HTTP_201_CREATED)
def add_company_info(
    request: Request,
    checkout_session_id: uuid.UUID,
    payload: CompanyInfoCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_principal),
) -> CheckoutSessionRead | JSONResponse:
    try:
        return checkout_service.add_company_info(db, user, checkout_session_id, payload)
    except DomainError as exc:
        return domain_error_response(request, exc)


@router.post("/sessions/{checkout_session_id}/agreement", response_model=CheckoutSessionRead, status_code=status.HTTP_201_CREATED)
def register_agreement(
    request: Request,
    checkout_session_id: uuid.UUID,
    payload: AgreementCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_principal),
) -> CheckoutSessionRead | JSONResponse:
    try:
        return checkout_service.register_agreement(db, user, checkout_session_id, payload)
    except DomainError as exc:
        return domain_error_response(request, exc)


@router.put("/sessions/{checkout_session_id}/order-amount", response_model=CheckoutSessionRead)
def set_order_amount(
    request: Request,
    checkout_session_id: uuid.UUID,
    payload: OrderAmountUpdate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(require_principal),
) -> CheckoutSessionRead | JSONResponse:
    try:
        return checkout_service.set_order_amount(db, user, checkout_session_id, payload)
    except DomainError as exc:
        return domain_error_response(request, exc)


@router.post("/sessions/{checkout_session_id}/contact", response_model=ContactSyncResult)
def create_or_update_contact(
    request: Request,
    checkout_session_id: uuid.UUID,
    payload: ContactSyncRequest | None = None,
    db: Session = Depends(get_db),
    crm: CrmApi = Depends(get_crm_client),
    user: AuthUser = Depends(require_principal),
) -> ContactSyncResult | JSONResponse:
    options = payload or ContactSyncRequest()
    try:
        return checkout_service.create_or_update_contact(
            db,
            crm,
            user,
            checkout_session_id,
            require_agreement_signed=options.require_agreement_signed,
        )
    except DomainError as exc:
        return domain_error_response(request, exc)


@router.post("/sessions/{checkout_session_id}/sales-order", response_model=SalesOrderSyncResult)
def create_sales_order(
    request: Request,
    checkout_session_id: uuid.UUID,
    payload: SalesOrderSyncRequest | None = None,
    db: Session = Depends(get_db),
    crm: CrmApi = Depends(get_crm_client),
    user: AuthUser = Depends(require_principal),
) -> SalesOrderSyncResult | JSONResponse:
    options = payload or SalesOrderSyncRequest()
    try:
        return checkout_service.create_sales_order(
            db,
            crm,
            user,
            checkout_session_id,
            require_payment_confirmed=options.require_payment_confirmed,
            require_contact_created=options.require_contact_created,
        )
    except DomainError as exc:
        return domain_error_response(request, exc)


@router.post("/sessions/{checkout_session_id}/sync", response_model=FullSyncResult)
def sync_checkout_session(
    request: Request,
    checkout_session_id: uuid.UUID,
    payload: FullSyncRequest | None = None,
    db: Session = Depends(get_db),
    crm: CrmApi = Depends(get_crm_client),
    user: AuthUser = Depends(require_principal),
) -> FullSyncResult | JSONResponse:
    options = payload or FullSyncRequest()
    try:
        return checkout_service.sync(
            db,
            crm,
            user,
            checkout_session_id,
            require_agreement_signed=options.require_agreement_signed,
            require_payment_confirmed=options.require_payment_confirmed,
            require_contact_created=options.require_contact_created,
        )
    except DomainError as exc:
        return domain_error_response(request, exc)
