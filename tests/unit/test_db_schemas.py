"""
DB schema unit tests
====================
ORM metadata, single-table actor inheritance and the partial unique
indexes, checked against a synchronous in-memory SQLite engine.
"""
import uuid

import pytest
from sqlalchemy import create_engine, inspect, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from hestia.core.enums import ActorType, GuaranteeMethod, Nationality
from hestia.db.base import Base
from hestia.db.schemas import (
    ACTOR_CLASSES,
    Actor,
    Aval,
    Contract,
    JointObligor,
    Landlord,
    Policy,
    PolicyActivity,
    Tenant,
)


# ──────────────────────────────────────────────────────────────────────────────
# SQLite in-memory DB
# ──────────────────────────────────────────────────────────────────────────────
@pytest.fixture
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as sess:
        yield sess
        sess.rollback()


# ──────────────────────────────────────────────────────────────────────────────
# Helper factories
# ──────────────────────────────────────────────────────────────────────────────
def _policy(**kwargs) -> Policy:
    defaults = dict(
        policy_number=f"POL-20250101-{uuid.uuid4().int % 1000:03d}",
        property_address="Av. Juarez 10, CDMX",
        rent_amount=12000,
        created_by="staff",
    )
    defaults.update(kwargs)
    return Policy(**defaults)


def _tenant(policy_id, **kwargs) -> Tenant:
    defaults = dict(policy_id=policy_id, email=f"t.{uuid.uuid4().hex[:6]}@example.com")
    defaults.update(kwargs)
    return Tenant(**defaults)


def _landlord(policy_id, **kwargs) -> Landlord:
    defaults = dict(policy_id=policy_id, email=f"l.{uuid.uuid4().hex[:6]}@example.com", is_primary=True)
    defaults.update(kwargs)
    return Landlord(**defaults)


# ══════════════════════════════════════════════════════════════════════════════
# 1. Table metadata
# ══════════════════════════════════════════════════════════════════════════════
class TestTableMetadata:
    def test_all_tables_registered(self):
        assert {
            "policies", "actors", "actor_documents", "actor_references",
            "investigations", "payments", "contracts", "policy_activities",
        } <= set(Base.metadata.tables)

    def test_policy_has_row_version(self):
        assert inspect(Policy).version_id_col is not None
        assert inspect(Policy).version_id_col.name == "row_version"

    def test_actor_partial_unique_indexes(self):
        indexes = {ix.name: ix for ix in Actor.__table__.indexes}
        assert indexes["uq_actors_active_tenant"].unique
        assert indexes["uq_actors_primary_landlord"].unique

    def test_contract_constraints(self):
        names = {c.name for c in Contract.__table__.constraints}
        assert "uq_contracts_policy_version" in names
        assert "uq_contracts_current" in {ix.name for ix in Contract.__table__.indexes}

    def test_activity_has_no_update_column(self):
        cols = {c.key for c in PolicyActivity.__table__.columns}
        assert "updated_at" not in cols
        assert {"action", "details", "performed_by_type", "performed_by_id"} <= cols

    def test_foreign_keys_point_to_policies(self):
        for table in ("actors", "payments", "contracts", "investigations", "policy_activities"):
            targets = {fk.column.table.name for fk in Base.metadata.tables[table].foreign_keys}
            assert "policies" in targets, table


# ══════════════════════════════════════════════════════════════════════════════
# 2. Actor inheritance
# ══════════════════════════════════════════════════════════════════════════════
class TestActorInheritance:
    def test_every_actor_type_mapped(self):
        assert set(ACTOR_CLASSES) == set(ActorType)

    def test_discriminator_loads_subclass(self, session):
        policy = _policy()
        session.add(policy)
        session.flush()
        session.add_all([
            _landlord(policy.id),
            _tenant(policy.id),
            JointObligor(policy_id=policy.id, email="jo@example.com", guarantee_method="property"),
            Aval(policy_id=policy.id, email="aval@example.com"),
        ])
        session.flush()
        session.expunge_all()

        actors = session.execute(select(Actor).where(Actor.policy_id == policy.id)).scalars().all()
        kinds = {type(a) for a in actors}
        assert kinds == {Landlord, Tenant, JointObligor, Aval}
        assert {a.kind for a in actors} == set(ActorType)

    def test_variant_required_fields(self):
        tenant = Tenant(email="t@example.com", full_name="T", phone="1", address="A")
        assert tenant.missing_required_fields() == ["employer_name", "monthly_income"]

    def test_foreign_individual_needs_passport(self):
        tenant = Tenant(
            email="t@example.com", full_name="T", phone="1", address="A",
            employer_name="E", monthly_income=1, nationality=Nationality.FOREIGN.value,
        )
        assert tenant.missing_required_fields() == ["passport_number"]

    def test_property_obligor_needs_property(self):
        jo = JointObligor(
            email="j@example.com", full_name="J", phone="1", address="A",
            guarantee_method=GuaranteeMethod.PROPERTY.value, relationship_to_tenant="brother",
        )
        assert jo.missing_required_fields() == ["property_address", "property_value"]
        assert jo.snapshot().guarantee_method == GuaranteeMethod.PROPERTY

    def test_company_fields(self):
        aval = Aval(is_company=True, email="a@example.com", phone="1", address="A")
        assert aval.missing_required_fields() == ["company_name", "legal_rep_name", "rfc", "property_address"]


# ══════════════════════════════════════════════════════════════════════════════
# 3. Constraints (SQLite in-memory)
# ══════════════════════════════════════════════════════════════════════════════
class TestConstraints:
    def test_second_active_tenant_rejected(self, session):
        policy = _policy()
        session.add(policy)
        session.flush()
        session.add(_tenant(policy.id))
        session.flush()
        session.add(_tenant(policy.id))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_archived_tenant_does_not_count(self, session):
        from hestia.db.compat import utcnow

        policy = _policy()
        session.add(policy)
        session.flush()
        session.add(_tenant(policy.id, archived_at=utcnow()))
        session.add(_tenant(policy.id))
        session.flush()

    def test_second_primary_landlord_rejected(self, session):
        policy = _policy()
        session.add(policy)
        session.flush()
        session.add(_landlord(policy.id))
        session.add(_landlord(policy.id, is_primary=False))
        session.flush()
        session.add(_landlord(policy.id))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_single_current_contract(self, session):
        policy = _policy()
        session.add(policy)
        session.flush()
        common = dict(policy_id=policy.id, content_type="application/pdf", size_bytes=1,
                      storage_key="k", uploaded_by="staff")
        session.add(Contract(version=1, file_name="a.pdf", is_current=True, **common))
        session.flush()
        session.add(Contract(version=2, file_name="b.pdf", is_current=True, **common))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_duplicate_contract_version(self, session):
        policy = _policy()
        session.add(policy)
        session.flush()
        common = dict(policy_id=policy.id, content_type="application/pdf", size_bytes=1,
                      storage_key="k", uploaded_by="staff")
        session.add(Contract(version=1, file_name="a.pdf", is_current=False, **common))
        session.flush()
        session.add(Contract(version=1, file_name="b.pdf", is_current=True, **common))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_row_version_detects_stale_update(self, session):
        policy = _policy()
        session.add(policy)
        session.flush()
        assert policy.row_version == 1

        session.execute(
            update(Policy.__table__).where(Policy.__table__.c.id == str(policy.id))
            .values(row_version=Policy.__table__.c.row_version + 1)
        )
        policy.status = "COLLECTING_INFO"
        with pytest.raises(StaleDataError):
            session.flush()
