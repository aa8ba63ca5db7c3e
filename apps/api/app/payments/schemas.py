from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


PaymentMode = Literal["cash", "check", "creditcard", "banktransfer", "bankremittance", "autotransaction", "others"]


class PaymentRecordRequest(BaseModel):
    invoice_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=Decimal("0"))
    payment_mode: PaymentMode = "creditcard"
    description: str | None = None


class PaymentRefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))
    reason: str | None = None
