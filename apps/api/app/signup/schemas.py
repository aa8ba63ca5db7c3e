from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.upstream.schemas import RemoteContact


class SignupLinkIssueRequest(BaseModel):
    remote_id: str | None = Field(default=None, min_length=1, max_length=64)
    expires_in_days: int | None = Field(default=None, ge=0, le=365)
    usage_limit: int | None = Field(default=None, ge=1, le=1000)


class SignupLinkIssued(BaseModel):
    id: UUID
    remote_id: str
    code: str
    expires_at: datetime
    usage_limit: int
    url: str


class SignupLinkRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    remote_id: str
    expires_at: datetime
    usage_limit: int
    usage_count: int
    is_active: bool
    last_used_at: datetime | None
    created_at: datetime


class SignupLinkValidated(BaseModel):
    link: SignupLinkRead
    contact: RemoteContact
