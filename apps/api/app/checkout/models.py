from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base
from app.crm.models import utcnow


class CheckoutSession(Base):
    __tablename__ = "checkout_session"
    __table_args__ = (
        Index("ix_checkout_session_user_id_created_at", "user_id", "created_at"),
        Index("ix_checkout_session_billing_invoice_id", "billing_invoice_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    module: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="created", server_default="created")
    billing_invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    company_info: Mapped[CompanyInfo | None] = relationship(
        "CompanyInfo",
        back_populates="checkout_session",
        uselist=False,
        cascade="all, delete-orphan",
    )
    agreement: Mapped[Agreement | None] = relationship(
        "Agreement",
        back_populates="checkout_session",
        uselist=False,
        cascade="all, delete-orphan",
    )
    sales_order: Mapped[SalesOrder | None] = relationship(
        "SalesOrder",
        back_populates="checkout_session",
        uselist=False,
        cascade="all, delete-orphan",
    )


class CompanyInfo(Base):
    __tablename__ = "checkout_company_info"
    __table_args__ = (UniqueConstraint("checkout_session_id", name="uq_checkout_company_info_session"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    checkout_session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("checkout_session.id", ondelete="CASCADE"),
        nullable=False,
    )
    company_name: Mapped[str] = mapped_column(Text, nullable=False)
    contact_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(128), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    country: Mapped[str] = mapped_column(String(64), nullable=False, default="US", server_default="US")
    industry: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    checkout_session: Mapped[CheckoutSession] = relationship("CheckoutSession", back_populates="company_info")


class Agreement(Base):
    __tablename__ = "checkout_agreement"
    __table_args__ = (
        UniqueConstraint("checkout_session_id", name="uq_checkout_agreement_session"),
        UniqueConstraint("envelope_id", name="uq_checkout_agreement_envelope_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    checkout_session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("checkout_session.id", ondelete="CASCADE"),
        nullable=False,
    )
    envelope_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    checkout_session: Mapped[CheckoutSession] = relationship("CheckoutSession", back_populates="agreement")


class SalesOrder(Base):
    __tablename__ = "checkout_sales_order"
    __table_args__ = (UniqueConstraint("checkout_session_id", name="uq_checkout_sales_order_session"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    checkout_session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("checkout_session.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD", server_default="USD")
    remote_sales_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    checkout_session: Mapped[CheckoutSession] = relationship("CheckoutSession", back_populates="sales_order")
