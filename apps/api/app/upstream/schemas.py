from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RemoteModel(BaseModel):
    """Remote records keep the CRM's own field names on the wire; unknown fields pass through."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @field_validator("id", "payment_id", "refund_id", mode="before", check_fields=False)
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class RemoteLookup(RemoteModel):
    id: str
    name: str | None = None


class RemoteContact(RemoteModel):
    id: str
    first_name: str | None = Field(default=None, alias="First_Name")
    last_name: str | None = Field(default=None, alias="Last_Name")
    email: str | None = Field(default=None, alias="Email")
    phone: str | None = Field(default=None, alias="Phone")
    company: str | None = Field(default=None, alias="Company")


class RemoteSalesOrder(RemoteModel):
    id: str
    subject: str | None = Field(default=None, alias="Subject")
    status: str | None = Field(default=None, alias="Status")
    grand_total: Decimal | None = Field(default=None, alias="Grand_Total")
    contact_name: RemoteLookup | None = Field(default=None, alias="Contact_Name")


class RemoteDeal(RemoteModel):
    id: str
    deal_name: str | None = Field(default=None, alias="Deal_Name")
    stage: str | None = Field(default=None, alias="Stage")
    amount: Decimal | None = Field(default=None, alias="Amount")
    contact_name: RemoteLookup | None = Field(default=None, alias="Contact_Name")


class RemoteTask(RemoteModel):
    id: str
    subject: str | None = Field(default=None, alias="Subject")
    status: str | None = Field(default=None, alias="Status")
    due_date: date | None = Field(default=None, alias="Due_Date")
    priority: str | None = Field(default=None, alias="Priority")


class RemoteNote(RemoteModel):
    id: str
    note_title: str | None = Field(default=None, alias="Note_Title")
    note_content: str | None = Field(default=None, alias="Note_Content")
    parent_id: RemoteLookup | None = Field(default=None, alias="Parent_Id")
    created_time: datetime | None = Field(default=None, alias="Created_Time")


class RemotePayment(RemoteModel):
    payment_id: str
    amount: Decimal | None = None
    payment_mode: str | None = None
    status: str | None = None
    description: str | None = None
    payment_date: str | None = Field(default=None, alias="date")


class RemoteRefund(RemoteModel):
    refund_id: str | None = None
    payment_id: str | None = None
    amount: Decimal | None = None
    description: str | None = None


class RemoteErrorBody(BaseModel):
    """Error document the CRM/billing API returns on non-2xx answers."""

    model_config = ConfigDict(extra="allow")

    message: str = Field(min_length=1)
    code: str | None = None
    status: str | None = None
    details: Any = None

    @field_validator("code", mode="before")
    @classmethod
    def _stringify_code(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value
