"""
Investigations table
One row per policy, created on entry to UNDER_INVESTIGATION, completed
once, optionally amended once by the landlord decision. Never re-opened.
"""
from datetime import datetime
import uuid

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hestia.core.enums import InvestigationState
from hestia.db.base import Base
from hestia.db.compat import UUID, utcnow


class Investigation(Base):
    __tablename__ = "investigations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("policies.id"), nullable=False, unique=True
    )
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvestigationState.IN_PROGRESS.value
    )

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_by: Mapped[str] = mapped_column(String(100), nullable=False)

    # ── Verdict ───────────────────────────────────────────────────
    verdict: Mapped[str | None] = mapped_column(String(20), comment="APPROVED | REJECTED | HIGH_RISK")
    risk_level: Mapped[str | None] = mapped_column(String(10), comment="LOW | MEDIUM | HIGH")
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    findings: Mapped[str | None] = mapped_column(Text)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_by: Mapped[str | None] = mapped_column(String(100))
    response_time_hours: Mapped[int | None] = mapped_column(Integer, comment="round((completed - started) / 1h)")

    # ── Landlord decision (after REJECTED only) ──────────────────
    landlord_decision: Mapped[str | None] = mapped_column(String(10), comment="PROCEED | REJECT")
    landlord_decision_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    landlord_decision_by: Mapped[str | None] = mapped_column(String(100))
    landlord_notes: Mapped[str | None] = mapped_column(Text)
    landlord_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
