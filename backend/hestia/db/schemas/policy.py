"""
Policies table
Root aggregate of the rental guarantee. Status changes only through
PolicyStateMachine; rows are never physically deleted.
"""
from datetime import datetime
import uuid

from sqlalchemy import DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hestia.core.enums import GuarantorType, PolicyStatus
from hestia.db.base import Base
from hestia.db.compat import UUID, utcnow


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    policy_number: Mapped[str] = mapped_column(
        String(40), nullable=False, unique=True, comment="POL-YYYYMMDD-XXX"
    )
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=PolicyStatus.DRAFT.value, index=True
    )
    guarantor_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=GuarantorType.NONE.value,
        comment="NONE | JOINT_OBLIGOR | AVAL | BOTH"
    )

    # ── Property and financial terms ──────────────────────────────
    property_address: Mapped[str] = mapped_column(Text, nullable=False)
    property_type: Mapped[str | None] = mapped_column(String(30), comment="house | apartment | commercial | office")
    property_description: Mapped[str | None] = mapped_column(Text)
    rent_amount: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=False)
    deposit_amount: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False))
    contract_length_months: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="MXN")
    package_name: Mapped[str | None] = mapped_column(String(50), comment="Guarantee package sold")
    total_price: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), comment="Policy price incl. IVA")

    created_by: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # ── Phase timestamps ──────────────────────────────────────────
    invitations_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    investigation_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    investigation_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[str | None] = mapped_column(String(100))
    contract_uploaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    contract_signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payments_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), comment="First moment every payment was COMPLETED"
    )
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    # ── Cancellation ──────────────────────────────────────────────
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[str | None] = mapped_column(String(100))
    cancellation_reason: Mapped[str | None] = mapped_column(String(30))
    cancellation_comment: Mapped[str | None] = mapped_column(Text)

    # Optimistic concurrency token; a stale UPDATE raises StaleDataError.
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": row_version}

    @property
    def status_enum(self) -> PolicyStatus:
        return PolicyStatus(self.status)

    @property
    def guarantor_type_enum(self) -> GuarantorType:
        return GuarantorType(self.guarantor_type)
