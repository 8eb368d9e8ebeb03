"""
Investigation workflow
======================
NOT_STARTED -> IN_PROGRESS -> COMPLETED, at most one investigation per
policy, never re-opened.

  start             COLLECTING_INFO -> UNDER_INVESTIGATION, creates the row
  complete          records the verdict once; APPROVED/HIGH_RISK -> PENDING_APPROVAL,
                    REJECTED -> INVESTIGATION_REJECTED
  landlord_override only after REJECTED, at most once;
                    PROCEED -> CONTRACT_PENDING, REJECT stays rejected
"""
from __future__ import annotations

import logging
import math
import uuid
from typing import Any

from hestia.core.enums import (
    InvestigationState,
    InvestigationVerdict,
    LandlordDecision,
    PolicyStatus,
    RiskLevel,
)
from hestia.core.errors import NotFound, StateConflict, ValidationError
from hestia.core.permissions import Capability, Principal, authorize
from hestia.db.compat import as_utc, utcnow
from hestia.db.schemas import Investigation
from hestia.db.unit_of_work import UnitOfWork
from hestia.services import activity
from hestia.services.notifications import Notification, NotificationDispatcher
from hestia.services.state_machine import PolicyStateMachine

logger = logging.getLogger(__name__)

S = PolicyStatus


def response_time_hours(started_at, completed_at) -> int:
    seconds = (as_utc(completed_at) - as_utc(started_at)).total_seconds()
    return math.floor(seconds / 3600 + 0.5)


def serialize_investigation(inv: Investigation) -> dict[str, Any]:
    def _iso(value):
        return value.isoformat() if value else None

    return {
        "id": str(inv.id),
        "policy_id": str(inv.policy_id),
        "state": inv.state,
        "started_at": _iso(inv.started_at),
        "started_by": inv.started_by,
        "verdict": inv.verdict,
        "risk_level": inv.risk_level,
        "rejection_reason": inv.rejection_reason,
        "findings": inv.findings,
        "completed_at": _iso(inv.completed_at),
        "completed_by": inv.completed_by,
        "response_time_hours": inv.response_time_hours,
        "landlord_decision": inv.landlord_decision,
        "landlord_decision_at": _iso(inv.landlord_decision_at),
        "landlord_notes": inv.landlord_notes,
        "landlord_override": inv.landlord_override,
    }


class InvestigationService:
    def __init__(
        self,
        uow: UnitOfWork,
        state_machine: PolicyStateMachine,
        notifications: NotificationDispatcher,
    ) -> None:
        self._uow = uow
        self._sm = state_machine
        self._notifications = notifications

    async def get(self, policy_id: uuid.UUID, principal: Principal) -> Investigation:
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id)
            authorize(principal, Capability.POLICY_VIEW, policy_created_by=policy.created_by)
            investigation = await tx.repo.get_investigation(policy_id)
        if investigation is None:
            raise NotFound(f"No investigation for policy {policy_id}", policy_id=str(policy_id))
        return investigation

    async def state(self, policy_id: uuid.UUID, principal: Principal) -> InvestigationState:
        try:
            investigation = await self.get(policy_id, principal)
        except NotFound:
            return InvestigationState.NOT_STARTED
        return InvestigationState(investigation.state)

    async def start(self, policy_id: uuid.UUID, principal: Principal) -> Investigation:
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id, lock=True)
            authorize(principal, Capability.INVESTIGATION_MANAGE)
            if await tx.repo.get_investigation(policy_id) is not None:
                raise StateConflict("An investigation already exists for this policy", policy_id=str(policy_id))
            await self._sm.transition(tx, policy, S.UNDER_INVESTIGATION, principal)
            await tx.session.flush()
            investigation = await tx.repo.get_investigation(policy_id)
        logger.info(f"Investigation started for {policy.policy_number} by {principal.subject}")
        return investigation

    async def complete(
        self,
        policy_id: uuid.UUID,
        verdict: InvestigationVerdict | str,
        principal: Principal,
        *,
        risk_level: RiskLevel | str | None = None,
        rejection_reason: str | None = None,
        findings: str | None = None,
    ) -> Investigation:
        verdict = InvestigationVerdict(verdict)
        if verdict == InvestigationVerdict.REJECTED and not (rejection_reason and rejection_reason.strip()):
            raise ValidationError("A rejection reason is required for a REJECTED verdict")
        if risk_level is None:
            risk_level = RiskLevel.HIGH if verdict == InvestigationVerdict.HIGH_RISK else RiskLevel.LOW
        risk_level = RiskLevel(risk_level)

        now = utcnow()
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id, lock=True)
            authorize(principal, Capability.INVESTIGATION_MANAGE)
            if policy.status != S.UNDER_INVESTIGATION.value:
                raise StateConflict(
                    f"Policy is {policy.status}, not {S.UNDER_INVESTIGATION.value}",
                    current=policy.status,
                )
            investigation = await tx.repo.get_investigation(policy_id)
            if investigation is None:
                raise NotFound(f"No investigation for policy {policy_id}", policy_id=str(policy_id))
            if investigation.verdict is not None:
                raise StateConflict("Investigation has already been completed", verdict=investigation.verdict)

            investigation.verdict = verdict.value
            investigation.risk_level = risk_level.value
            investigation.rejection_reason = rejection_reason.strip() if rejection_reason else None
            investigation.findings = findings
            investigation.completed_at = now
            investigation.completed_by = principal.subject
            investigation.response_time_hours = response_time_hours(investigation.started_at, now)
            investigation.state = InvestigationState.COMPLETED.value
            policy.investigation_completed_at = now

            activity.record(
                tx, policy.id, "investigation_completed", f"Investigation completed: {verdict.value}", principal,
                {"verdict": verdict.value, "risk_level": risk_level.value,
                 "response_time_hours": investigation.response_time_hours,
                 "rejection_reason": investigation.rejection_reason},
            )
            target = S.INVESTIGATION_REJECTED if verdict == InvestigationVerdict.REJECTED else S.PENDING_APPROVAL
            await self._sm.transition(tx, policy, target, principal, now=now)

            for landlord in await tx.repo.primary_landlords(policy.id):
                self._notifications.schedule(tx, policy.id, Notification(
                    kind="investigation_result",
                    recipient_email=landlord.email,
                    recipient_name=landlord.display_name,
                    policy_number=policy.policy_number,
                    actor_type=landlord.actor_type,
                    initiated_by=principal.full_name or principal.subject,
                    context={"verdict": verdict.value, "risk_level": risk_level.value},
                ))
        logger.info(f"Investigation for {policy.policy_number} completed: {verdict.value}")
        return investigation

    async def landlord_override(
        self,
        policy_id: uuid.UUID,
        decision: LandlordDecision | str,
        principal: Principal,
        *,
        notes: str | None = None,
    ) -> Investigation:
        """Record the landlord's decision after a REJECTED verdict (once). Staff enter it on the landlord's behalf."""
        decision = LandlordDecision(decision)
        now = utcnow()
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id, lock=True)
            authorize(principal, Capability.INVESTIGATION_OVERRIDE)

            investigation = await tx.repo.get_investigation(policy_id)
            if investigation is None:
                raise NotFound(f"No investigation for policy {policy_id}", policy_id=str(policy_id))
            if investigation.verdict != InvestigationVerdict.REJECTED.value:
                raise StateConflict(
                    "Landlord decision is only possible after a REJECTED verdict",
                    verdict=investigation.verdict,
                )
            if investigation.landlord_decision is not None:
                raise StateConflict(
                    "Landlord decision has already been recorded",
                    landlord_decision=investigation.landlord_decision,
                )
            if policy.status != S.INVESTIGATION_REJECTED.value:
                raise StateConflict(
                    f"Policy is {policy.status}, not {S.INVESTIGATION_REJECTED.value}",
                    current=policy.status,
                )

            investigation.landlord_decision = decision.value
            investigation.landlord_decision_at = now
            investigation.landlord_decision_by = principal.performer_id
            investigation.landlord_notes = notes
            investigation.landlord_override = decision == LandlordDecision.PROCEED

            activity.record(
                tx, policy.id, "landlord_override", f"Landlord decided to {decision.value.lower()}", principal,
                {"decision": decision.value, "notes": notes},
            )
            if decision == LandlordDecision.PROCEED:
                await self._sm.transition(tx, policy, S.CONTRACT_PENDING, principal, now=now)
        logger.info(f"Landlord decision on {policy.policy_number}: {decision.value}")
        return investigation
