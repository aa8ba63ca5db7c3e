from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.api.errors import domain_error_response
from app.core.auth import AuthUser, require_principal
from app.core.database import get_db
from app.core.errors import DomainError
from app.signup.schemas import SignupLinkIssued, SignupLinkIssueRequest, SignupLinkValidated
from app.signup.service import signup_link_service
from app.upstream.client import CrmApi, get_crm_client

router = APIRouter(prefix="/api/signup-links", tags=["signup_links"])


@router.post("", response_model=SignupLinkIssued, status_code=status.HTTP_201_CREATED)
def issue_signup_link(
    request: Request,
    payload: SignupLinkIssueRequest,
    db: Session = Depends(get_db),
    crm: CrmApi = Depends(get_crm_client),
    user: AuthUser = Depends(require_principal),
) -> SignupLinkIssued | JSONResponse:
    try:
        return signup_link_service.issue(
            db,
            crm,
            user,
            payload.remote_id,
            expires_in_days=payload.expires_in_days,
            usage_limit=payload.usage_limit,
        )
    except DomainError as exc:
        return domain_error_response(request, exc)


@router.post("/{remote_id}/{code}/validate", response_model=SignupLinkValidated)
def validate_signup_link(
    request: Request,
    remote_id: str,
    code: str,
    db: Session = Depends(get_db),
    crm: CrmApi = Depends(get_crm_client),
) -> SignupLinkValidated | JSONResponse:
    try:
        return signup_link_service.validate(db, crm, remote_id, code)
    except DomainError as exc:
        return domain_error_response(request, exc)
