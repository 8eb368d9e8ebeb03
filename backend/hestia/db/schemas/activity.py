"""
Policy activity log (append-only)
Every state-changing operation appends one or two rows. Rows are never
updated or deleted.
"""
from datetime import datetime
import uuid

from sqlalchemy import DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hestia.db.base import Base
from hestia.db.compat import JSONB, UUID, BigIntPK, utcnow


class PolicyActivity(Base):
    __tablename__ = "policy_activities"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("policies.id"), nullable=False, index=True
    )

    action: Mapped[str] = mapped_column(
        String(50), nullable=False, index=True,
        comment="policy_created|status_changed|invitations_sent|investigation_completed|...",
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSONB)

    # Performer
    performed_by_type: Mapped[str] = mapped_column(String(20), nullable=False, comment="user|actor|system|webhook")
    performed_by_id: Mapped[str | None] = mapped_column(String(100))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
