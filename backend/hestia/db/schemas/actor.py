"""
Actors table (single-table inheritance)
Landlord, Tenant, JointObligor and Aval share one table and one shape;
``actor_type`` is the discriminator. Variant-only columns are nullable.

Partial unique indexes:
  one active tenant per policy
  one active primary landlord per policy
"""
from datetime import datetime
import uuid

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from hestia.core.enums import ActorType, GuaranteeMethod, Nationality, VerificationStatus
from hestia.core.progress import ActorSnapshot
from hestia.db.base import Base
from hestia.db.compat import JSONB, UUID, as_utc, utcnow

_ACTIVE_TENANT = "actor_type = 'tenant' AND archived_at IS NULL"
_ACTIVE_PRIMARY = "actor_type = 'landlord' AND is_primary AND archived_at IS NULL"


class Actor(Base):
    __tablename__ = "actors"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    policy_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("policies.id"), nullable=False, index=True
    )
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_company: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # ── Identity ──────────────────────────────────────────────────
    full_name: Mapped[str | None] = mapped_column(String(200))
    company_name: Mapped[str | None] = mapped_column(String(200))
    legal_rep_name: Mapped[str | None] = mapped_column(String(200), comment="Company legal representative")
    rfc: Mapped[str | None] = mapped_column(String(13), comment="Tax id")
    curp: Mapped[str | None] = mapped_column(String(18), comment="Population registry key (individuals)")
    passport_number: Mapped[str | None] = mapped_column(String(30), comment="Foreign nationals")
    nationality: Mapped[str | None] = mapped_column(String(10), default=Nationality.MEXICAN.value)

    # ── Contact ───────────────────────────────────────────────────
    email: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30))
    address: Mapped[str | None] = mapped_column(Text)

    # ── Employment / income ───────────────────────────────────────
    occupation: Mapped[str | None] = mapped_column(String(100))
    employer_name: Mapped[str | None] = mapped_column(String(200))
    monthly_income: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False))
    relationship_to_tenant: Mapped[str | None] = mapped_column(String(50))

    # ── Guarantee property (joint obligor / aval) ────────────────
    property_address: Mapped[str | None] = mapped_column(Text)
    property_value: Mapped[float | None] = mapped_column(Numeric(14, 2, asdecimal=False))
    property_deed_number: Mapped[str | None] = mapped_column(String(50))
    property_registry: Mapped[str | None] = mapped_column(String(100))

    additional_info: Mapped[dict | None] = mapped_column(JSONB)

    # ── Completion / verification ─────────────────────────────────
    information_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    verification_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=VerificationStatus.PENDING.value
    )
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    verified_by: Mapped[str | None] = mapped_column(String(100))

    # ── Portal access ─────────────────────────────────────────────
    access_token: Mapped[str | None] = mapped_column(String(100), unique=True)
    token_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    invitation_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # ── Archive (replacement) ─────────────────────────────────────
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    archive_reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # base-class queries load every variant column; async sessions cannot lazy-load them
    __mapper_args__ = {"polymorphic_on": actor_type, "with_polymorphic": "*"}

    __table_args__ = (
        Index(
            "uq_actors_active_tenant", "policy_id", unique=True,
            postgresql_where=text(_ACTIVE_TENANT), sqlite_where=text(_ACTIVE_TENANT),
        ),
        Index(
            "uq_actors_primary_landlord", "policy_id", unique=True,
            postgresql_where=text(_ACTIVE_PRIMARY), sqlite_where=text(_ACTIVE_PRIMARY),
        ),
    )

    # Writable through submit_information, per variant.
    EDITABLE_FIELDS = frozenset({
        "is_company", "full_name", "company_name", "legal_rep_name", "rfc", "curp",
        "passport_number", "nationality", "email", "phone", "address", "occupation",
        "employer_name", "monthly_income", "additional_info",
    })
    # Must be present before the actor can mark its information complete.
    INDIVIDUAL_REQUIRED = ("full_name", "email", "phone", "address")
    COMPANY_REQUIRED = ("company_name", "legal_rep_name", "rfc", "email", "phone", "address")

    @property
    def kind(self) -> ActorType:
        return ActorType(self.actor_type)

    @property
    def display_name(self) -> str:
        return (self.company_name if self.is_company else self.full_name) or self.email

    @property
    def is_active(self) -> bool:
        return self.archived_at is None

    @property
    def guarantee_method_value(self) -> GuaranteeMethod | None:
        return None

    def snapshot(self) -> ActorSnapshot:
        return ActorSnapshot(
            actor_type=self.kind,
            is_company=bool(self.is_company),
            information_complete=bool(self.information_complete),
            nationality=Nationality(self.nationality) if self.nationality else None,
            guarantee_method=self.guarantee_method_value,
        )

    def missing_required_fields(self) -> list[str]:
        fields = self.COMPANY_REQUIRED if self.is_company else self.INDIVIDUAL_REQUIRED
        missing = [f for f in fields if getattr(self, f) in (None, "")]
        if not self.is_company and self.nationality == Nationality.FOREIGN.value and not self.passport_number:
            missing.append("passport_number")
        return missing

    def token_valid(self, now: datetime) -> bool:
        expiry = as_utc(self.token_expiry)
        return bool(self.access_token) and expiry is not None and expiry > now


class Landlord(Actor):
    is_primary: Mapped[bool | None] = mapped_column(Boolean, default=False)
    ownership_percentage: Mapped[float | None] = mapped_column(Numeric(5, 2, asdecimal=False))
    bank_name: Mapped[str | None] = mapped_column(String(100))
    clabe: Mapped[str | None] = mapped_column(String(18), comment="Interbank account number")

    EDITABLE_FIELDS = Actor.EDITABLE_FIELDS | {"ownership_percentage", "bank_name", "clabe"}

    __mapper_args__ = {"polymorphic_identity": ActorType.LANDLORD.value}


class Tenant(Actor):
    previous_landlord_name: Mapped[str | None] = mapped_column(String(200))
    previous_landlord_phone: Mapped[str | None] = mapped_column(String(30))
    previous_rent_amount: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False))
    previous_address: Mapped[str | None] = mapped_column(Text)

    EDITABLE_FIELDS = Actor.EDITABLE_FIELDS | {
        "previous_landlord_name", "previous_landlord_phone", "previous_rent_amount", "previous_address",
    }
    INDIVIDUAL_REQUIRED = Actor.INDIVIDUAL_REQUIRED + ("employer_name", "monthly_income")

    __mapper_args__ = {"polymorphic_identity": ActorType.TENANT.value}


class JointObligor(Actor):
    guarantee_method: Mapped[str | None] = mapped_column(String(20), comment="property | income")

    EDITABLE_FIELDS = Actor.EDITABLE_FIELDS | {
        "guarantee_method", "relationship_to_tenant", "property_address",
        "property_value", "property_deed_number", "property_registry",
    }
    INDIVIDUAL_REQUIRED = Actor.INDIVIDUAL_REQUIRED + ("guarantee_method", "relationship_to_tenant")
    COMPANY_REQUIRED = Actor.COMPANY_REQUIRED + ("guarantee_method",)

    __mapper_args__ = {"polymorphic_identity": ActorType.JOINT_OBLIGOR.value}

    @property
    def guarantee_method_value(self) -> GuaranteeMethod | None:
        return GuaranteeMethod(self.guarantee_method) if self.guarantee_method else None

    def missing_required_fields(self) -> list[str]:
        missing = super().missing_required_fields()
        if self.guarantee_method == GuaranteeMethod.PROPERTY.value:
            missing += [f for f in ("property_address", "property_value") if getattr(self, f) in (None, "")]
        elif self.guarantee_method == GuaranteeMethod.INCOME.value and self.monthly_income is None:
            missing.append("monthly_income")
        return missing


class Aval(Actor):
    EDITABLE_FIELDS = Actor.EDITABLE_FIELDS | {
        "relationship_to_tenant", "property_address", "property_value",
        "property_deed_number", "property_registry",
    }
    INDIVIDUAL_REQUIRED = Actor.INDIVIDUAL_REQUIRED + ("relationship_to_tenant", "property_address")
    COMPANY_REQUIRED = Actor.COMPANY_REQUIRED + ("property_address",)

    __mapper_args__ = {"polymorphic_identity": ActorType.AVAL.value}


ACTOR_CLASSES: dict[ActorType, type[Actor]] = {
    ActorType.LANDLORD: Landlord,
    ActorType.TENANT: Tenant,
    ActorType.JOINT_OBLIGOR: JointObligor,
    ActorType.AVAL: Aval,
}
