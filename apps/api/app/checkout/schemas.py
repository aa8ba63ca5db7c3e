from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CheckoutStatus(StrEnum):
    CREATED = "created"
    PAYMENT_COMPLETED = "payment_completed"
    CONTACT_CREATED = "contact_created"
    SALES_ORDER_CREATED = "sales_order_created"

    @property
    def rank(self) -> int:
        return _CHECKOUT_RANKS[self]


_CHECKOUT_RANKS = {
    CheckoutStatus.CREATED: 0,
    CheckoutStatus.PAYMENT_COMPLETED: 1,
    CheckoutStatus.CONTACT_CREATED: 2,
    CheckoutStatus.SALES_ORDER_CREATED: 3,
}


class AgreementStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    PARTIALLY_SIGNED = "partially_signed"
    COMPLETED = "completed"
    DECLINED = "declined"
    VOIDED = "voided"

    @property
    def rank(self) -> int:
        return _AGREEMENT_RANKS[self]

    @property
    def is_terminal(self) -> bool:
        return self in {AgreementStatus.COMPLETED, AgreementStatus.DECLINED, AgreementStatus.VOIDED}


_AGREEMENT_RANKS = {
    AgreementStatus.PENDING: 0,
    AgreementStatus.SENT: 1,
    AgreementStatus.PARTIALLY_SIGNED: 2,
    AgreementStatus.COMPLETED: 3,
    AgreementStatus.DECLINED: 3,
    AgreementStatus.VOIDED: 3,
}


class CheckoutSessionCreate(BaseModel):
    module: str | None = Field(default=None, max_length=255)
    billing_invoice_id: str | None = Field(default=None, min_length=1, max_length=64)


class CompanyInfoCreate(BaseModel):
    company_name: str = Field(min_length=1)
    contact_name: str = Field(min_length=1)
    email: str = Field(min_length=3, max_length=320)
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str = "US"
    industry: str | None = None


class CompanyInfoRead(CompanyInfoCreate):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime


class AgreementCreate(BaseModel):
    envelope_id: str = Field(min_length=1, max_length=128)


class AgreementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    envelope_id: str
    status: str
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class OrderAmountUpdate(BaseModel):
    amount: Decimal = Field(ge=Decimal("0"))
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class SalesOrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    amount: Decimal
    currency: str
    remote_sales_order_id: str | None
    created_at: datetime
    updated_at: datetime


class CheckoutSessionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    module: str | None
    status: str
    billing_invoice_id: str | None
    payment_completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    company_info: CompanyInfoRead | None = None
    agreement: AgreementRead | None = None
    sales_order: SalesOrderRead | None = None


class ContactSyncRequest(BaseModel):
    require_agreement_signed: bool = True


class SalesOrderSyncRequest(BaseModel):
    require_payment_confirmed: bool = True
    require_contact_created: bool = True


class FullSyncRequest(BaseModel):
    require_agreement_signed: bool = True
    require_payment_confirmed: bool = True
    require_contact_created: bool = True


class ContactSyncResult(BaseModel):
    remote_contact_id: str
    was_update: bool


class SalesOrderSyncResult(BaseModel):
    remote_sales_order_id: str
    remote_contact_id: str


class FullSyncResult(BaseModel):
    contact: ContactSyncResult
    sales_order: SalesOrderSyncResult
    status: str

