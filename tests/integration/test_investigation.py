"""
Investigation workflow integration tests
========================================
Start gate, verdicts, the landlord override after a rejection and the
one-investigation-per-policy rule.
"""
import pytest

from hestia.core.enums import GuarantorType, InvestigationState, PolicyStatus as S
from hestia.core.errors import Forbidden, StateConflict, ValidationError


# ══════════════════════════════════════════════════════════════════════════════
# 1. Start gate
# ══════════════════════════════════════════════════════════════════════════════
class TestStart:
    async def test_not_started_before_start(self, factory, container, staff):
        policy = await factory.ready_for_investigation()
        assert await container.investigations.state(policy.id, staff) == InvestigationState.NOT_STARTED

    async def test_start(self, factory, container, staff):
        policy = await factory.ready_for_investigation()
        investigation = await container.investigations.start(policy.id, staff)

        assert investigation.state == InvestigationState.IN_PROGRESS.value
        assert investigation.started_by == "staff"
        refreshed = await factory.refresh(policy.id)
        assert refreshed.status == S.UNDER_INVESTIGATION.value
        assert refreshed.investigation_started_at is not None

    async def test_rejected_joint_obligor_blocks_start(self, factory, container, staff):
        policy = await factory.ready_for_investigation(GuarantorType.JOINT_OBLIGOR)
        jo = await factory.actor(policy.id, "joint_obligor")
        await container.actors.verify_actor(jo.id, "REJECTED", staff, reason="Income letter unsigned")

        with pytest.raises(StateConflict) as exc_info:
            await container.investigations.start(policy.id, staff)
        assert "joint_obligor" in exc_info.value.message
        blockers = exc_info.value.details["blockers"]
        assert [b["actor_type"] for b in blockers] == ["joint_obligor"]
        assert blockers[0]["information_complete"] is False
        assert (await factory.refresh(policy.id)).status == S.COLLECTING_INFO.value

        # resubmitting clears the blocker; documents and references were kept
        await container.actors.submit_information(jo.id, {}, staff, complete=True)
        await container.investigations.start(policy.id, staff)
        assert (await factory.refresh(policy.id)).status == S.UNDER_INVESTIGATION.value

    async def test_missing_documents_block_start(self, factory, container, staff):
        policy = await factory.collecting_info()
        for actor in await factory.actors(policy.id):
            await factory.complete_actor(actor, documents=False)

        with pytest.raises(StateConflict) as exc_info:
            await container.investigations.start(policy.id, staff)
        blockers = exc_info.value.details["blockers"]
        assert {b["actor_type"] for b in blockers} == {"landlord", "tenant"}
        assert all(b["missing_documents"] for b in blockers)

    async def test_start_from_draft_not_allowed(self, factory, container, staff):
        policy = await factory.create()
        with pytest.raises(StateConflict):
            await container.investigations.start(policy.id, staff)

    async def test_start_twice(self, factory, container, staff):
        policy = await factory.under_investigation()
        with pytest.raises(StateConflict):
            await container.investigations.start(policy.id, staff)

    async def test_broker_cannot_start(self, factory, container, broker):
        policy = await factory.ready_for_investigation()
        with pytest.raises(Forbidden):
            await container.investigations.start(policy.id, broker)

    async def test_progress_report_matches_gate(self, factory, container, staff):
        policy = await factory.ready_for_investigation()
        report = await container.policies.get_progress(policy.id, staff)
        assert report["ready_for_investigation"] is True
        assert report["overall_percentage"] == 100
        assert report["blockers"] == []


# ══════════════════════════════════════════════════════════════════════════════
# 2. Verdicts
# ══════════════════════════════════════════════════════════════════════════════
class TestComplete:
    async def test_approved(self, factory, container, staff, notifier):
        policy = await factory.under_investigation()
        investigation = await container.investigations.complete(
            policy.id, "APPROVED", staff, findings="Stable income, clean references",
        )
        assert investigation.state == InvestigationState.COMPLETED.value
        assert investigation.risk_level == "LOW"
        assert investigation.response_time_hours == 0
        assert (await factory.refresh(policy.id)).status == S.PENDING_APPROVAL.value

        results = notifier.of_kind("investigation_result")
        assert len(results) == 1
        assert results[0].actor_type == "landlord"
        assert results[0].context["verdict"] == "APPROVED"

    async def test_high_risk_goes_to_approval(self, factory, container, staff):
        policy = await factory.under_investigation()
        investigation = await container.investigations.complete(policy.id, "HIGH_RISK", staff)
        assert investigation.risk_level == "HIGH"
        assert (await factory.refresh(policy.id)).status == S.PENDING_APPROVAL.value

    async def test_rejected(self, factory, container, staff):
        policy = await factory.rejected()
        assert policy.status == S.INVESTIGATION_REJECTED.value
        investigation = await container.investigations.get(policy.id, staff)
        assert investigation.rejection_reason == "Income could not be verified"

    async def test_rejected_requires_reason(self, factory, container, staff):
        policy = await factory.under_investigation()
        with pytest.raises(ValidationError):
            await container.investigations.complete(policy.id, "REJECTED", staff, rejection_reason="  ")
        assert (await factory.refresh(policy.id)).status == S.UNDER_INVESTIGATION.value

    async def test_complete_twice(self, factory, container, staff):
        policy = await factory.under_investigation()
        await container.investigations.complete(policy.id, "APPROVED", staff)
        with pytest.raises(StateConflict):
            await container.investigations.complete(policy.id, "APPROVED", staff)

    async def test_unknown_verdict(self, factory, container, staff):
        policy = await factory.under_investigation()
        with pytest.raises(ValueError):
            await container.investigations.complete(policy.id, "MAYBE", staff)


# ══════════════════════════════════════════════════════════════════════════════
# 3. Landlord override
# ══════════════════════════════════════════════════════════════════════════════
class TestLandlordOverride:
    async def test_proceed_moves_to_contract_pending(self, factory, container, staff):
        policy = await factory.rejected()
        investigation = await container.investigations.landlord_override(
            policy.id, "PROCEED", staff, notes="Known tenant, accept the risk",
        )
        assert investigation.landlord_override is True
        assert investigation.landlord_decision == "PROCEED"
        assert (await factory.refresh(policy.id)).status == S.CONTRACT_PENDING.value

        entries = await container.policies.activities(policy.id, staff, action="status_changed")
        entered = [e for e in entries if e["details"]["to"] == "CONTRACT_PENDING"]
        assert entered[0]["details"]["landlord_override"] is True

    async def test_reject_stays_rejected(self, factory, container, staff):
        policy = await factory.rejected()
        investigation = await container.investigations.landlord_override(policy.id, "REJECT", staff)
        assert investigation.landlord_override is False
        assert (await factory.refresh(policy.id)).status == S.INVESTIGATION_REJECTED.value

    async def test_override_only_once(self, factory, container, staff):
        policy = await factory.rejected()
        await container.investigations.landlord_override(policy.id, "REJECT", staff)
        with pytest.raises(StateConflict):
            await container.investigations.landlord_override(policy.id, "PROCEED", staff)

    async def test_override_requires_rejection(self, factory, container, staff):
        policy = await factory.under_investigation()
        await container.investigations.complete(policy.id, "APPROVED", staff)
        with pytest.raises(StateConflict):
            await container.investigations.landlord_override(policy.id, "PROCEED", staff)

    @pytest.mark.parametrize("actor_type", ["landlord", "tenant"])
    async def test_actor_tokens_cannot_decide(self, factory, container, staff, actor_type):
        """The decision is recorded by staff; even the primary landlord's portal token is refused."""
        policy = await factory.rejected()
        actor = await factory.actor(policy.id, actor_type)
        principal = await container.actors.resolve_token(actor.access_token)
        with pytest.raises(Forbidden):
            await container.investigations.landlord_override(policy.id, "PROCEED", principal)

        investigation = await container.investigations.get(policy.id, staff)
        assert investigation.landlord_decision is None
        assert (await factory.refresh(policy.id)).status == S.INVESTIGATION_REJECTED.value

    async def test_broker_cannot_decide(self, factory, container, broker):
        policy = await factory.rejected()
        with pytest.raises(Forbidden):
            await container.investigations.landlord_override(policy.id, "PROCEED", broker)

    async def test_decision_recorded_by_staff(self, factory, container, staff):
        policy = await factory.rejected()
        investigation = await container.investigations.landlord_override(policy.id, "PROCEED", staff)
        assert investigation.landlord_decision_by == "staff"

    async def test_no_reinvestigation_after_override(self, factory, container, staff):
        policy = await factory.rejected()
        await container.investigations.landlord_override(policy.id, "PROCEED", staff)
        with pytest.raises(StateConflict):
            await container.investigations.start(policy.id, staff)

    async def test_override_path_continues_to_contract(self, factory, container, staff):
        policy = await factory.rejected()
        await container.investigations.landlord_override(policy.id, "PROCEED", staff)
        await factory.upload_contract(policy.id)
        assert (await factory.refresh(policy.id)).status == S.CONTRACT_UPLOADED.value
