from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class BillingWebhookData(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str | None = None
    invoice_id: str | None = None
    payment_id: str | None = None
    amount: Decimal | None = None
    reference_id: str | None = None


class BillingWebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    event_type: str = Field(min_length=1)
    data: BillingWebhookData


class ESignatureWebhookData(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    envelope_id: str = Field(min_length=1, alias="envelopeId")


class ESignatureWebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str = Field(min_length=1)
    data: ESignatureWebhookData
