from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.upstream.schemas import RemoteContact, RemoteDeal, RemoteNote, RemoteSalesOrder, RemoteTask


class IdentityLinkRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    remote_contact_id: str
    created_at: datetime
    updated_at: datetime


class ContactInfoRead(BaseModel):
    link: IdentityLinkRead
    contact: RemoteContact | None = None


class ContactSearchRequest(BaseModel):
    email: str | None = Field(default=None, min_length=1)
    phone: str | None = Field(default=None, min_length=1)
    company: str | None = Field(default=None, min_length=1)


class ContactSearchResponse(BaseModel):
    contacts: list[RemoteContact] = Field(default_factory=list)


class AggregateProfileRead(BaseModel):
    remote_id: str
    contact: RemoteContact | None = None
    sales_orders: list[RemoteSalesOrder] = Field(default_factory=list)
    deals: list[RemoteDeal] = Field(default_factory=list)
    tasks: list[RemoteTask] = Field(default_factory=list)
    notes: list[RemoteNote] = Field(default_factory=list)
