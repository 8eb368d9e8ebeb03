"""Initial schema

Hestia rental guarantee schema:
  - policies (lifecycle status, terms, optimistic row_version)
  - actors (landlord / tenant / joint obligor / aval, single table)
  - actor_documents, actor_references
  - investigations (one per policy)
  - payments (gateway correlation ids unique)
  - contracts (append-only versions, one current)
  - policy_activities (append-only activity log)

Revision ID: 001
Revises:
Create Date: 2026-10-01 00:00:00.000000
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ACTIVE_TENANT = "actor_type = 'tenant' AND archived_at IS NULL"
_ACTIVE_PRIMARY = "actor_type = 'landlord' AND is_primary AND archived_at IS NULL"


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    # ── 1. policies ────────────────────────────────────────────────────────
    op.create_table(
        "policies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("policy_number", sa.String(40), nullable=False, comment="POL-YYYYMMDD-XXX"),
        sa.Column("status", sa.String(30), nullable=False, server_default="DRAFT"),
        sa.Column("guarantor_type", sa.String(20), nullable=False, server_default="NONE",
                  comment="NONE | JOINT_OBLIGOR | AVAL | BOTH"),
        # property and terms
        sa.Column("property_address", sa.Text, nullable=False),
        sa.Column("property_type", sa.String(30), comment="house | apartment | commercial | office"),
        sa.Column("property_description", sa.Text),
        sa.Column("rent_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("deposit_amount", sa.Numeric(12, 2)),
        sa.Column("contract_length_months", sa.Integer, nullable=False, server_default="12"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="MXN"),
        sa.Column("package_name", sa.String(50), comment="Guarantee package sold"),
        sa.Column("total_price", sa.Numeric(12, 2), comment="Policy price incl. IVA"),
        sa.Column("created_by", sa.String(100), nullable=False),
        # lifecycle timestamps
        sa.Column("invitations_sent_at", sa.DateTime(timezone=True)),
        sa.Column("investigation_started_at", sa.DateTime(timezone=True)),
        sa.Column("investigation_completed_at", sa.DateTime(timezone=True)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("approved_by", sa.String(100)),
        sa.Column("contract_uploaded_at", sa.DateTime(timezone=True)),
        sa.Column("contract_signed_at", sa.DateTime(timezone=True)),
        sa.Column("payments_completed_at", sa.DateTime(timezone=True),
                  comment="First moment every payment was COMPLETED"),
        sa.Column("activated_at", sa.DateTime(timezone=True)),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        # cancellation
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_by", sa.String(100)),
        sa.Column("cancellation_reason", sa.String(30)),
        sa.Column("cancellation_comment", sa.Text),
        sa.Column("row_version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
    )
    op.create_unique_constraint("uq_policies_policy_number", "policies", ["policy_number"])
    op.create_index("ix_policies_status", "policies", ["status"])
    op.create_index("ix_policies_created_by", "policies", ["created_by"])
    op.create_index("ix_policies_expires_at", "policies", ["expires_at"])

    # ── 2. actors ──────────────────────────────────────────────────────────
    op.create_table(
        "actors",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("policy_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("policies.id", name="fk_actors_policy_id_policies"), nullable=False),
        sa.Column("actor_type", sa.String(20), nullable=False,
                  comment="landlord | tenant | joint_obligor | aval"),
        sa.Column("is_company", sa.Boolean, nullable=False, server_default="false"),
        # identity
        sa.Column("full_name", sa.String(200)),
        sa.Column("company_name", sa.String(200)),
        sa.Column("legal_rep_name", sa.String(200), comment="Company legal representative"),
        sa.Column("rfc", sa.String(13), comment="Tax id"),
        sa.Column("curp", sa.String(18), comment="Population registry key (individuals)"),
        sa.Column("passport_number", sa.String(30), comment="Foreign nationals"),
        sa.Column("nationality", sa.String(10), server_default="MEXICAN"),
        # contact
        sa.Column("email", sa.String(200), nullable=False),
        sa.Column("phone", sa.String(30)),
        sa.Column("address", sa.Text),
        # income / relationship
        sa.Column("occupation", sa.String(100)),
        sa.Column("employer_name", sa.String(200)),
        sa.Column("monthly_income", sa.Numeric(12, 2)),
        sa.Column("relationship_to_tenant", sa.String(50)),
        # guarantee property
        sa.Column("property_address", sa.Text),
        sa.Column("property_value", sa.Numeric(14, 2)),
        sa.Column("property_deed_number", sa.String(50)),
        sa.Column("property_registry", sa.String(100)),
        sa.Column("additional_info", postgresql.JSONB(astext_type=sa.Text())),
        # completion / verification
        sa.Column("information_complete", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("verification_status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("rejection_reason", sa.Text),
        sa.Column("verified_at", sa.DateTime(timezone=True)),
        sa.Column("verified_by", sa.String(100)),
        # portal access
        sa.Column("access_token", sa.String(100)),
        sa.Column("token_expiry", sa.DateTime(timezone=True)),
        sa.Column("invitation_sent_at", sa.DateTime(timezone=True)),
        # archive
        sa.Column("archived_at", sa.DateTime(timezone=True)),
        sa.Column("archive_reason", sa.Text),
        # landlord
        sa.Column("is_primary", sa.Boolean, server_default="false"),
        sa.Column("ownership_percentage", sa.Numeric(5, 2)),
        sa.Column("bank_name", sa.String(100)),
        sa.Column("clabe", sa.String(18), comment="Interbank account number"),
        # tenant
        sa.Column("previous_landlord_name", sa.String(200)),
        sa.Column("previous_landlord_phone", sa.String(30)),
        sa.Column("previous_rent_amount", sa.Numeric(12, 2)),
        sa.Column("previous_address", sa.Text),
        # joint obligor
        sa.Column("guarantee_method", sa.String(20), comment="property | income"),
        *_timestamps(),
    )
    op.create_unique_constraint("uq_actors_access_token", "actors", ["access_token"])
    op.create_index("ix_actors_policy_id", "actors", ["policy_id"])
    op.create_index("ix_actors_archived_at", "actors", ["archived_at"])
    op.create_index("uq_actors_active_tenant", "actors", ["policy_id"], unique=True,
                    postgresql_where=sa.text(_ACTIVE_TENANT))
    op.create_index("uq_actors_primary_landlord", "actors", ["policy_id"], unique=True,
                    postgresql_where=sa.text(_ACTIVE_PRIMARY))

    # ── 3. actor_documents ─────────────────────────────────────────────────
    op.create_table(
        "actor_documents",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("actors.id", name="fk_actor_documents_actor_id_actors"), nullable=False),
        sa.Column("policy_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("policies.id", name="fk_actor_documents_policy_id_policies"), nullable=False),
        sa.Column("category", sa.String(40), nullable=False, comment="DocumentCategory"),
        sa.Column("document_type", sa.String(100), nullable=False, comment="Free text, e.g. INE front"),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("content_type", sa.String(100), nullable=False),
        sa.Column("size_bytes", sa.BigInteger, nullable=False),
        sa.Column("storage_key", sa.String(500), nullable=False),
        sa.Column("uploaded_by", sa.String(100), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("now()")),
    )
    op.create_index("ix_actor_documents_actor_id", "actor_documents", ["actor_id"])
    op.create_index("ix_actor_documents_policy_id", "actor_documents", ["policy_id"])

    # ── 4. actor_references ────────────────────────────────────────────────
    op.create_table(
        "actor_references",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("actors.id", name="fk_actor_references_actor_id_actors"), nullable=False),
        sa.Column("reference_type", sa.String(20), nullable=False, server_default="personal",
                  comment="personal | commercial"),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("phone", sa.String(30), nullable=False),
        sa.Column("email", sa.String(200)),
        sa.Column("relationship", sa.String(50)),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("now()")),
    )
    op.create_index("ix_actor_references_actor_id", "actor_references", ["actor_id"])

    # ── 5. investigations ──────────────────────────────────────────────────
    op.create_table(
        "investigations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("policy_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("policies.id", name="fk_investigations_policy_id_policies"), nullable=False),
        sa.Column("state", sa.String(20), nullable=False, server_default="IN_PROGRESS"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_by", sa.String(100), nullable=False),
        # verdict
        sa.Column("verdict", sa.String(20), comment="APPROVED | REJECTED | HIGH_RISK"),
        sa.Column("risk_level", sa.String(10), comment="LOW | MEDIUM | HIGH"),
        sa.Column("rejection_reason", sa.Text),
        sa.Column("findings", sa.Text),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("completed_by", sa.String(100)),
        sa.Column("response_time_hours", sa.Integer, comment="round((completed - started) / 1h)"),
        # landlord decision
        sa.Column("landlord_decision", sa.String(10), comment="PROCEED | REJECT"),
        sa.Column("landlord_decision_at", sa.DateTime(timezone=True)),
        sa.Column("landlord_decision_by", sa.String(100)),
        sa.Column("landlord_notes", sa.Text),
        sa.Column("landlord_override", sa.Boolean, nullable=False, server_default="false"),
        *_timestamps(),
    )
    op.create_unique_constraint("uq_investigations_policy_id", "investigations", ["policy_id"])

    # ── 6. payments ────────────────────────────────────────────────────────
    op.create_table(
        "payments",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("policy_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("policies.id", name="fk_payments_policy_id_policies"), nullable=False),
        sa.Column("payer_type", sa.String(20), nullable=False, comment="TENANT | LANDLORD | ..."),
        sa.Column("description", sa.String(200)),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("iva", sa.Numeric(12, 2), nullable=False, comment="16% VAT"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="MXN"),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("gateway_session_id", sa.String(200)),
        sa.Column("gateway_intent_id", sa.String(200)),
        sa.Column("last_event_kind", sa.String(40)),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("failed_at", sa.DateTime(timezone=True)),
        sa.Column("failure_reason", sa.Text),
        sa.Column("refunded_at", sa.DateTime(timezone=True)),
        sa.Column("created_by", sa.String(100)),
        *_timestamps(),
    )
    op.create_unique_constraint("uq_payments_gateway_session_id", "payments", ["gateway_session_id"])
    op.create_unique_constraint("uq_payments_gateway_intent_id", "payments", ["gateway_intent_id"])
    op.create_index("ix_payments_policy_id", "payments", ["policy_id"])
    op.create_index("ix_payments_status", "payments", ["status"])

    # ── 7. contracts ───────────────────────────────────────────────────────
    op.create_table(
        "contracts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("policy_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("policies.id", name="fk_contracts_policy_id_policies"), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("file_name", sa.String(255), nullable=False),
        sa.Column("content_type", sa.String(100), nullable=False),
        sa.Column("size_bytes", sa.BigInteger, nullable=False),
        sa.Column("storage_key", sa.String(500), nullable=False),
        sa.Column("notes", sa.Text),
        sa.Column("is_current", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("uploaded_by", sa.String(100), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("now()")),
        sa.Column("signed_at", sa.DateTime(timezone=True)),
        sa.Column("signed_by", sa.String(100)),
    )
    op.create_unique_constraint("uq_contracts_policy_version", "contracts", ["policy_id", "version"])
    op.create_index("ix_contracts_policy_id", "contracts", ["policy_id"])
    op.create_index("uq_contracts_current", "contracts", ["policy_id"], unique=True,
                    postgresql_where=sa.text("is_current"))

    # ── 8. policy_activities ───────────────────────────────────────────────
    op.create_table(
        "policy_activities",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("policy_id", postgresql.UUID(as_uuid=True),
                  sa.ForeignKey("policies.id", name="fk_policy_activities_policy_id_policies"), nullable=False),
        sa.Column("action", sa.String(50), nullable=False,
                  comment="policy_created|status_changed|invitations_sent|investigation_completed|..."),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("performed_by_type", sa.String(20), nullable=False, comment="user|actor|system|webhook"),
        sa.Column("performed_by_id", sa.String(100)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text("now()")),
    )
    op.create_index("ix_policy_activities_policy_id", "policy_activities", ["policy_id"])
    op.create_index("ix_policy_activities_action", "policy_activities", ["action"])
    op.create_index("ix_policy_activities_created_at", "policy_activities", ["created_at"])


def downgrade() -> None:
    # reverse order (FK dependencies)
    op.drop_table("policy_activities")
    op.drop_table("contracts")
    op.drop_table("payments")
    op.drop_table("investigations")
    op.drop_table("actor_references")
    op.drop_table("actor_documents")
    op.drop_table("actors")
    op.drop_table("policies")
