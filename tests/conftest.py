"""
Shared fixtures
===============
Every test gets its own in-memory SQLite database, an InMemoryNotifier and
an InMemoryStorage, wired together by ``build_container``. The
``factory`` fixture drives policies through the lifecycle so each test
starts from the status it needs.
"""
import uuid

import pytest

from hestia.config import Settings
from hestia.container import ServiceContainer, build_container
from hestia.core.document_requirements import required_documents
from hestia.core.enums import ActorType, DocumentCategory, GatewayEventKind, GuarantorType
from hestia.core.lifecycle import requires_aval, requires_joint_obligor
from hestia.core.permissions import Principal, Role
from hestia.core.progress import REFERENCE_ACTORS
from hestia.db.session import create_engine
from hestia.services.notifications import InMemoryNotifier
from hestia.services.payment_service import GatewayEvent
from hestia.services.storage import InMemoryStorage

PDF_BYTES = b"%PDF-1.4\n% hestia test document\n"


# ──────────────────────────────────────────────────────────────────────────────
# Principals
# ──────────────────────────────────────────────────────────────────────────────
@pytest.fixture
def admin() -> Principal:
    return Principal(role=Role.ADMIN, subject="admin", full_name="System Administrator")


@pytest.fixture
def staff() -> Principal:
    return Principal(role=Role.STAFF, subject="staff", full_name="Operations Staff")


@pytest.fixture
def broker() -> Principal:
    return Principal(role=Role.BROKER, subject="broker", full_name="Broker One")


@pytest.fixture
def other_broker() -> Principal:
    return Principal(role=Role.BROKER, subject="broker2", full_name="Broker Two")


# ──────────────────────────────────────────────────────────────────────────────
# Container (in-memory SQLite + in-memory collaborators)
# ──────────────────────────────────────────────────────────────────────────────
@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ENVIRONMENT="test",
        STORAGE_BACKEND="memory",
        NOTIFICATION_BACKEND="memory",
    )


@pytest.fixture
async def container(settings) -> ServiceContainer:
    c = build_container(
        settings,
        engine=create_engine(settings.DATABASE_URL),
        notifier=InMemoryNotifier(),
        storage=InMemoryStorage(),
    )
    await c.create_schema()
    yield c
    await c.dispose()


@pytest.fixture
def notifier(container) -> InMemoryNotifier:
    return container.notifier


@pytest.fixture
def storage(container) -> InMemoryStorage:
    return container.storage


# ──────────────────────────────────────────────────────────────────────────────
# Actor payloads
# ──────────────────────────────────────────────────────────────────────────────
def landlord_data(**kwargs) -> dict:
    data = dict(
        full_name="Laura Landlord",
        email=f"laura.{uuid.uuid4().hex[:6]}@example.com",
        phone="5551000001",
        address="Av. Reforma 100, CDMX",
        bank_name="Banorte",
    )
    data.update(kwargs)
    return data


def tenant_data(**kwargs) -> dict:
    data = dict(
        full_name="Tomas Tenant",
        email=f"tomas.{uuid.uuid4().hex[:6]}@example.com",
        phone="5551000002",
        address="Calle Durango 25, CDMX",
        employer_name="Acme SA de CV",
        monthly_income=45000.0,
    )
    data.update(kwargs)
    return data


def joint_obligor_data(**kwargs) -> dict:
    data = dict(
        full_name="Julia Obligor",
        email=f"julia.{uuid.uuid4().hex[:6]}@example.com",
        phone="5551000003",
        address="Calle Puebla 8, CDMX",
        guarantee_method="income",
        relationship_to_tenant="sister",
        monthly_income=38000.0,
    )
    data.update(kwargs)
    return data


def aval_data(**kwargs) -> dict:
    data = dict(
        full_name="Arturo Aval",
        email=f"arturo.{uuid.uuid4().hex[:6]}@example.com",
        phone="5551000004",
        address="Calle Oaxaca 12, CDMX",
        relationship_to_tenant="father",
        property_address="Calle Oaxaca 12, CDMX",
        property_value=2500000.0,
    )
    data.update(kwargs)
    return data


# ──────────────────────────────────────────────────────────────────────────────
# Lifecycle driver
# ──────────────────────────────────────────────────────────────────────────────
class PolicyFactory:
    """Drives a policy to a given status through the public services."""

    landlord_data = staticmethod(landlord_data)
    tenant_data = staticmethod(tenant_data)
    joint_obligor_data = staticmethod(joint_obligor_data)
    aval_data = staticmethod(aval_data)

    def __init__(self, container: ServiceContainer, staff: Principal):
        self.c = container
        self.staff = staff

    async def create(self, guarantor_type=GuarantorType.NONE, principal=None, **overrides):
        guarantor_type = GuarantorType(guarantor_type)
        data = dict(
            property_address="Av. Insurgentes Sur 1234, CDMX",
            property_type="apartment",
            rent_amount=15000.0,
            guarantor_type=guarantor_type.value,
            landlord=landlord_data(),
            tenant=tenant_data(),
            joint_obligors=[joint_obligor_data()] if requires_joint_obligor(guarantor_type) else [],
            avals=[aval_data()] if requires_aval(guarantor_type) else [],
        )
        data.update(overrides)
        return await self.c.policies.create_policy(data, principal or self.staff)

    async def actors(self, policy_id, actor_type=None):
        actors = await self.c.policies.list_actors(policy_id, self.staff)
        return [a for a in actors if actor_type is None or a.kind == ActorType(actor_type)]

    async def actor(self, policy_id, actor_type):
        return (await self.actors(policy_id, actor_type))[0]

    async def refresh(self, policy_id):
        return await self.c.policies.get_policy(policy_id, self.staff)

    async def upload(self, actor_id, category, principal=None, content_type="application/pdf", data=PDF_BYTES):
        category = DocumentCategory(category)
        return await self.c.actors.upload_document(
            actor_id,
            category=category,
            document_type=category.value.replace("_", " ").title(),
            file_name=f"{category.value.lower()}.pdf",
            content_type=content_type,
            data=data,
            principal=principal or self.staff,
        )

    async def add_references(self, actor_id, count=None, principal=None):
        for i in range(count if count is not None else self.c.settings.REQUIRED_REFERENCES):
            await self.c.actors.add_reference(
                actor_id, {"name": f"Reference {i + 1}", "phone": f"55520000{i:02d}"}, principal or self.staff,
            )

    async def complete_actor(self, actor, *, documents=True, references=True):
        """Submit information, references and every required document as staff."""
        if not actor.information_complete:
            await self.c.actors.submit_information(actor.id, {}, self.staff, complete=True)
        if references and actor.kind in REFERENCE_ACTORS:
            await self.add_references(actor.id)
        if documents:
            snap = actor.snapshot()
            required = required_documents(snap.actor_type, snap.is_company, snap.nationality, snap.guarantee_method)
            for category in sorted(required, key=lambda c: c.value):
                await self.upload(actor.id, category)

    async def collecting_info(self, guarantor_type=GuarantorType.NONE, **overrides):
        policy = await self.create(guarantor_type, **overrides)
        await self.c.policies.send_invitations(policy.id, self.staff)
        return await self.refresh(policy.id)

    async def ready_for_investigation(self, guarantor_type=GuarantorType.NONE):
        policy = await self.collecting_info(guarantor_type)
        for actor in await self.actors(policy.id):
            await self.complete_actor(actor)
        return await self.refresh(policy.id)

    async def under_investigation(self, guarantor_type=GuarantorType.NONE):
        policy = await self.ready_for_investigation(guarantor_type)
        await self.c.investigations.start(policy.id, self.staff)
        return await self.refresh(policy.id)

    async def rejected(self):
        policy = await self.under_investigation()
        await self.c.investigations.complete(
            policy.id, "REJECTED", self.staff, rejection_reason="Income could not be verified",
        )
        return await self.refresh(policy.id)

    async def contract_pending(self):
        policy = await self.under_investigation()
        await self.c.investigations.complete(policy.id, "APPROVED", self.staff)
        await self.c.policies.approve(policy.id, self.staff)
        return await self.refresh(policy.id)

    async def upload_contract(self, policy_id, file_name="contract.pdf", principal=None):
        return await self.c.contracts.upload(
            policy_id,
            file_name=file_name,
            content_type="application/pdf",
            data=PDF_BYTES,
            principal=principal or self.staff,
        )

    async def contract_signed(self):
        policy = await self.contract_pending()
        await self.upload_contract(policy.id)
        await self.c.contracts.mark_signed(policy.id, self.staff)
        return await self.refresh(policy.id)

    async def add_payment(self, policy_id, subtotal=1000.0, session_id=None, payer_type="TENANT"):
        return await self.c.payments.create_payment(
            policy_id,
            payer_type=payer_type,
            subtotal=subtotal,
            principal=self.staff,
            gateway_session_id=session_id or f"cs_{uuid.uuid4().hex[:16]}",
        )

    async def gateway(self, payment, kind=GatewayEventKind.SESSION_COMPLETED, event_id=None):
        return await self.c.payments.record_gateway_event(GatewayEvent(
            kind=GatewayEventKind(kind),
            correlation_id=payment.gateway_session_id,
            event_id=event_id,
        ))

    async def active(self):
        policy = await self.contract_signed()
        payment = await self.add_payment(policy.id)
        await self.gateway(payment)
        await self.c.policies.activate(policy.id, self.staff)
        return await self.refresh(policy.id)

    async def activity_actions(self, policy_id, action=None):
        entries = await self.c.policies.activities(policy_id, self.staff, action=action, limit=500)
        return [e["action"] for e in entries]


@pytest.fixture
def factory(container, staff) -> PolicyFactory:
    return PolicyFactory(container, staff)
