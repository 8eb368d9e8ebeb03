"""
Policy lifecycle integration tests
==================================
PolicyStateMachine driven through PolicyService against in-memory SQLite:
happy path, idempotency, illegal edges, cancellation and expiry.
"""
import uuid
from datetime import timedelta

import pytest

from hestia.core.enums import GuarantorType, PolicyStatus as S
from hestia.core.errors import Forbidden, NotFound, StateConflict, ValidationError
from hestia.core.permissions import Principal, Role
from hestia.db.compat import as_utc, utcnow


# ══════════════════════════════════════════════════════════════════════════════
# 1. Creation
# ══════════════════════════════════════════════════════════════════════════════
class TestCreatePolicy:
    async def test_creates_draft_with_actors(self, factory, container, staff):
        policy = await factory.create(GuarantorType.BOTH)
        assert policy.status == S.DRAFT.value
        assert policy.policy_number.startswith("POL-")

        actors = await factory.actors(policy.id)
        assert sorted(a.actor_type for a in actors) == ["aval", "joint_obligor", "landlord", "tenant"]
        landlord = await factory.actor(policy.id, "landlord")
        assert landlord.is_primary is True
        assert landlord.ownership_percentage == 100

        assert await factory.activity_actions(policy.id) == ["policy_created"]

    async def test_guarantor_type_requires_obligor(self, factory):
        with pytest.raises(ValidationError):
            await factory.create(GuarantorType.NONE, joint_obligors=[factory.joint_obligor_data()])
        with pytest.raises(ValidationError):
            await factory.create(GuarantorType.JOINT_OBLIGOR, joint_obligors=[])

    async def test_rent_must_be_positive(self, factory):
        with pytest.raises(ValidationError):
            await factory.create(rent_amount=0)

    async def test_explicit_policy_number(self, factory):
        policy = await factory.create(policy_number="HES-20250101-0042")
        assert policy.policy_number == "HES-20250101-0042"
        with pytest.raises(StateConflict):
            await factory.create(policy_number="HES-20250101-0042")
        with pytest.raises(ValidationError):
            await factory.create(policy_number="bad number")

    async def test_actor_cannot_create(self, factory):
        with pytest.raises(Forbidden):
            await factory.create(principal=Principal(Role.ACTOR, "actor:x", actor_id=uuid.uuid4()))

    async def test_missing_policy(self, container, staff):
        with pytest.raises(NotFound):
            await container.policies.get_policy(uuid.uuid4(), staff)


# ══════════════════════════════════════════════════════════════════════════════
# 2. Invitations and COLLECTING_INFO
# ══════════════════════════════════════════════════════════════════════════════
class TestInvitations:
    async def test_send_invitations_enters_collecting_info(self, factory, container, staff, notifier):
        policy = await factory.create(GuarantorType.JOINT_OBLIGOR)
        invitations = await container.policies.send_invitations(policy.id, staff)

        assert len(invitations) == 3
        assert all(i["access_url"] for i in invitations)
        assert len(notifier.of_kind("actor_invitation")) == 3

        policy = await factory.refresh(policy.id)
        assert policy.status == S.COLLECTING_INFO.value
        assert policy.invitations_sent_at is not None

    async def test_reinvite_keeps_valid_token(self, factory, container, staff):
        policy = await factory.collecting_info()
        tenant = await factory.actor(policy.id, "tenant")
        again = await container.policies.send_invitations(policy.id, staff)
        tenant_again = await factory.actor(policy.id, "tenant")
        assert tenant_again.access_token == tenant.access_token
        assert len(again) == 2

    async def test_resend_renews_tokens(self, factory, container, staff):
        policy = await factory.collecting_info()
        tenant = await factory.actor(policy.id, "tenant")
        await container.policies.send_invitations(policy.id, staff, resend=True)
        assert (await factory.actor(policy.id, "tenant")).access_token != tenant.access_token

    async def test_generic_transition_without_invitations_blocked(self, factory, container, staff):
        policy = await factory.create()
        with pytest.raises(StateConflict) as exc_info:
            await container.policies.transition(policy.id, S.COLLECTING_INFO, staff)
        assert "invitation" in exc_info.value.message

    async def test_invitations_after_collecting_phase_rejected(self, factory, container, staff):
        policy = await factory.under_investigation()
        with pytest.raises(StateConflict):
            await container.policies.send_invitations(policy.id, staff)


# ══════════════════════════════════════════════════════════════════════════════
# 3. Happy path
# ══════════════════════════════════════════════════════════════════════════════
class TestHappyPath:
    async def test_draft_to_active(self, factory, container, staff):
        policy = await factory.active()
        assert policy.status == S.ACTIVE.value
        assert policy.activated_at is not None
        assert policy.approved_at is not None
        assert policy.contract_signed_at is not None

        delta = as_utc(policy.expires_at) - as_utc(policy.activated_at)
        assert 365 <= delta.days <= 366

        changes = [
            (e["details"]["from"], e["details"]["to"])
            for e in reversed(await container.policies.activities(policy.id, staff, action="status_changed"))
        ]
        assert changes == [
            ("DRAFT", "COLLECTING_INFO"),
            ("COLLECTING_INFO", "UNDER_INVESTIGATION"),
            ("UNDER_INVESTIGATION", "PENDING_APPROVAL"),
            ("PENDING_APPROVAL", "CONTRACT_PENDING"),
            ("CONTRACT_PENDING", "CONTRACT_UPLOADED"),
            ("CONTRACT_UPLOADED", "CONTRACT_SIGNED"),
            ("CONTRACT_SIGNED", "ACTIVE"),
        ]

    async def test_workflow_lists_allowed_targets(self, factory, container, staff, broker):
        policy = await factory.create(principal=broker)
        staff_view = await container.policies.workflow(policy.id, staff)
        assert staff_view["allowed_transitions"] == ["COLLECTING_INFO", "CANCELLED"]
        broker_view = await container.policies.workflow(policy.id, broker)
        assert broker_view["allowed_transitions"] == ["COLLECTING_INFO"]
        assert broker_view["terminal"] is False


# ══════════════════════════════════════════════════════════════════════════════
# 4. Idempotency and illegal edges
# ══════════════════════════════════════════════════════════════════════════════
class TestTransitionRules:
    async def test_same_status_is_noop(self, factory, container, staff):
        policy = await factory.contract_pending()
        before = await factory.activity_actions(policy.id, "status_changed")

        await container.policies.transition(policy.id, S.CONTRACT_PENDING, staff)
        await container.policies.approve(policy.id, staff)

        assert await factory.activity_actions(policy.id, "status_changed") == before
        assert (await factory.refresh(policy.id)).status == S.CONTRACT_PENDING.value

    async def test_illegal_edge(self, factory, container, staff):
        policy = await factory.create()
        with pytest.raises(StateConflict) as exc_info:
            await container.policies.transition(policy.id, S.ACTIVE, staff)
        assert exc_info.value.details == {"current": "DRAFT", "target": "ACTIVE"}
        assert (await factory.refresh(policy.id)).status == S.DRAFT.value

    async def test_approve_requires_pending_approval(self, factory, container, staff):
        policy = await factory.collecting_info()
        with pytest.raises(StateConflict):
            await container.policies.approve(policy.id, staff)

    async def test_broker_cannot_approve(self, factory, container, broker):
        policy = await factory.under_investigation()
        await factory.c.investigations.complete(policy.id, "APPROVED", factory.staff)
        with pytest.raises(Forbidden):
            await container.policies.approve(policy.id, broker)

    async def test_generic_contract_pending_requires_approval_record(self, factory, container, staff):
        policy = await factory.under_investigation()
        await container.investigations.complete(policy.id, "HIGH_RISK", staff)
        with pytest.raises(StateConflict):
            await container.policies.transition(policy.id, S.CONTRACT_PENDING, staff)

    async def test_activation_requires_full_payment(self, factory, container, staff):
        policy = await factory.contract_signed()
        await factory.add_payment(policy.id)
        with pytest.raises(StateConflict) as exc_info:
            await container.policies.activate(policy.id, staff)
        assert "paid" in exc_info.value.message

    async def test_activation_without_payments(self, factory, container, staff):
        policy = await factory.contract_signed()
        with pytest.raises(StateConflict):
            await container.policies.activate(policy.id, staff)


# ══════════════════════════════════════════════════════════════════════════════
# 5. Cancellation
# ══════════════════════════════════════════════════════════════════════════════
class TestCancellation:
    async def test_cancel_records_reason(self, factory, container, staff):
        policy = await factory.collecting_info()
        await container.policies.cancel(policy.id, "CLIENT_REQUEST", "Tenant found another place", staff)
        policy = await factory.refresh(policy.id)
        assert policy.status == S.CANCELLED.value
        assert policy.cancellation_reason == "CLIENT_REQUEST"
        assert policy.cancellation_comment == "Tenant found another place"
        assert policy.cancelled_by == "staff"

    async def test_cancel_requires_comment(self, factory, container, staff):
        policy = await factory.create()
        with pytest.raises(ValidationError):
            await container.policies.cancel(policy.id, "FRAUD", "  ", staff)
        assert (await factory.refresh(policy.id)).status == S.DRAFT.value

    async def test_cancel_requires_known_reason(self, factory, container, staff):
        policy = await factory.create()
        with pytest.raises(ValidationError):
            await container.policies.cancel(policy.id, "BORED", "comment", staff)

    async def test_terminal_status_cannot_cancel(self, factory, container, staff):
        policy = await factory.create()
        await container.policies.cancel(policy.id, "OTHER", "duplicate", staff)
        with pytest.raises(StateConflict):
            await container.policies.transition(policy.id, S.COLLECTING_INFO, staff)
        # cancelling again is a no-op
        await container.policies.cancel(policy.id, "OTHER", "duplicate", staff)
        assert await factory.activity_actions(policy.id, "status_changed") == ["status_changed"]

    async def test_broker_cannot_cancel(self, factory, container, broker):
        policy = await factory.create(principal=broker)
        with pytest.raises(Forbidden):
            await container.policies.cancel(policy.id, "OTHER", "comment", broker)


# ══════════════════════════════════════════════════════════════════════════════
# 6. Expiry sweep
# ══════════════════════════════════════════════════════════════════════════════
class TestExpiry:
    async def test_expires_only_due_policies(self, factory, container):
        policy = await factory.active()
        assert await container.policies.expire_due_policies() == []

        later = as_utc(policy.expires_at) + timedelta(minutes=1)
        assert await container.policies.expire_due_policies(now=later) == [policy.policy_number]
        assert (await factory.refresh(policy.id)).status == S.EXPIRED.value

        # second sweep finds nothing
        assert await container.policies.expire_due_policies(now=later) == []

    async def test_staff_cannot_run_sweep(self, container, staff):
        with pytest.raises(Forbidden):
            await container.policies.expire_due_policies(principal=staff)

    async def test_manual_early_expiry_blocked(self, factory, container, admin):
        policy = await factory.active()
        with pytest.raises(StateConflict):
            await container.policies.transition(policy.id, S.EXPIRED, admin)


# ══════════════════════════════════════════════════════════════════════════════
# 7. Queries
# ══════════════════════════════════════════════════════════════════════════════
class TestQueries:
    async def test_broker_sees_only_own_policies(self, factory, container, staff, broker, other_broker):
        mine = await factory.create(principal=broker)
        theirs = await factory.create(principal=other_broker)

        listed = {p.id for p in await container.policies.list_policies(broker)}
        assert mine.id in listed
        assert theirs.id not in listed
        assert {mine.id, theirs.id} <= {p.id for p in await container.policies.list_policies(staff)}

        with pytest.raises(Forbidden):
            await container.policies.get_policy(theirs.id, broker)

    async def test_list_by_status(self, factory, container, staff):
        draft = await factory.create()
        collecting = await factory.collecting_info()
        ids = {p.id for p in await container.policies.list_policies(staff, status="COLLECTING_INFO")}
        assert collecting.id in ids
        assert draft.id not in ids

    async def test_progress_report(self, factory, container, staff):
        policy = await factory.collecting_info()
        report = await container.policies.get_progress(policy.id, staff)
        assert report["overall_percentage"] == 0
        assert report["ready_for_investigation"] is False
        assert {b["actor_type"] for b in report["blockers"]} == {"landlord", "tenant"}

        for actor in await factory.actors(policy.id):
            await factory.complete_actor(actor)
        report = await container.policies.get_progress(policy.id, staff)
        assert report["overall_percentage"] == 100
        assert report["ready_for_investigation"] is True
        assert report["blockers"] == []

    async def test_activity_filter_and_performer(self, factory, container, staff):
        policy = await factory.collecting_info()
        entries = await container.policies.activities(policy.id, staff, action="invitations_sent")
        assert len(entries) == 1
        assert entries[0]["performed_by_type"] == "user"
        assert entries[0]["performed_by_id"] == "staff"

    async def test_sweep_performer_is_system(self, factory, container, staff):
        policy = await factory.active()
        await container.policies.expire_due_policies(now=utcnow() + timedelta(days=400))
        entries = await container.policies.activities(policy.id, staff, action="status_changed", limit=1)
        assert entries[0]["performed_by_type"] == "system"
