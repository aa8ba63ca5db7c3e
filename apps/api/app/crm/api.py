from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import domain_error_response
from app.core.auth import AuthUser, require_principal
from app.core.database import get_db
from app.core.errors import DomainError
from app.core.rbac import require_permissions
from app.crm.schemas import AggregateProfileRead, ContactInfoRead, ContactSearchRequest, ContactSearchResponse
from app.crm.service import crm_profile_service
from app.upstream.client import CrmApi, get_crm_client

router = APIRouter(prefix="/api/crm", tags=["crm"])


@router.get("/contact", response_model=ContactInfoRead)
def get_contact_info(
    request: Request,
    db: Session = Depends(get_db),
    crm: CrmApi = Depends(get_crm_client),
    user: AuthUser = Depends(require_principal),
) -> ContactInfoRead | JSONResponse:
    try:
        return crm_profile_service.get_contact_info(db, crm, user)
    except DomainError as exc:
        return domain_error_response(request, exc)


@router.get("/profile", response_model=AggregateProfileRead)
def get_aggregate_profile(
    request: Request,
    remote_id: str | None = Query(default=None),
    include_sales_orders: bool = Query(default=True),
    include_deals: bool = Query(default=True),
    include_tasks: bool = Query(default=True),
    include_notes: bool = Query(default=True),
    db: Session = Depends(get_db),
    crm: CrmApi = Depends(get_crm_client),
    user: AuthUser = Depends(require_principal),
) -> AggregateProfileRead | JSONResponse:
    try:
        profile = crm_profile_service.get_aggregate_profile(
            db,
            crm,
            user,
            remote_id,
            include_sales_orders=include_sales_orders,
            include_deals=include_deals,
            include_tasks=include_tasks,
            include_notes=include_notes,
        )
    except DomainError as exc:
        return domain_error_response(request, exc)
    return profile.to_read()


@router.post("/contacts/search", response_model=ContactSearchResponse)
def search_contacts(
    request: Request,
    payload: ContactSearchRequest,
    crm: CrmApi = Depends(get_crm_client),
    _: AuthUser = Depends(require_permissions("crm.contacts.search")),
) -> ContactSearchResponse | JSONResponse:
    try:
        return ContactSearchResponse(contacts=crm_profile_service.search_contacts(crm, payload))
    except DomainError as exc:
        return domain_error_response(request, exc)
