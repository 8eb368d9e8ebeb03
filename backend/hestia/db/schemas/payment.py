"""
Payments table
A policy is fully paid iff it has at least one payment and every payment
is COMPLETED. Gateway correlation ids are unique so duplicate webhook
deliveries land on the same row.
"""
from datetime import datetime
import uuid

from sqlalchemy import DateTime, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hestia.core.enums import PaymentStatus
from hestia.db.base import Base
from hestia.db.compat import UUID, utcnow


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("policies.id"), nullable=False, index=True
    )
    payer_type: Mapped[str] = mapped_column(String(20), nullable=False, comment="TENANT | LANDLORD | ...")
    description: Mapped[str | None] = mapped_column(String(200))

    # ── Amount breakdown ──────────────────────────────────────────
    subtotal: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    iva: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False, comment="16% VAT")
    amount: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="MXN")

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )

    # ── Gateway correlation ───────────────────────────────────────
    gateway_session_id: Mapped[str | None] = mapped_column(String(200), unique=True)
    gateway_intent_id: Mapped[str | None] = mapped_column(String(200), unique=True)
    last_event_kind: Mapped[str | None] = mapped_column(String(40))

    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failure_reason: Mapped[str | None] = mapped_column(Text)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
