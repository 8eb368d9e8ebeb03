"""
Policy state machine
====================
Single owner of ``Policy.status``. Every transition:
  1. reads the current status of a row the caller has locked
  2. returns False without writing when the policy is already at the target
  3. rejects edges missing from ``hestia.core.lifecycle.TRANSITIONS``
  4. checks the edge precondition against actors, investigation,
     contracts and payments, raising StateConflict naming what is missing
  5. applies the status write plus edge side effects in the caller's transaction
  6. appends one ``status_changed`` activity

Callers own the transaction; nothing here commits.
"""
from __future__ import annotations

import calendar
import logging
from datetime import datetime
from typing import Any

from hestia.core.enums import (
    ActorType,
    CancellationReason,
    InvestigationState,
    InvestigationVerdict,
    LandlordDecision,
    PolicyStatus,
)
from hestia.core.errors import StateConflict, ValidationError
from hestia.core.lifecycle import is_valid_transition, requires_aval, requires_joint_obligor
from hestia.core.permissions import Principal
from hestia.core.progress import ActorProgress, compute_progress
from hestia.db.compat import as_utc, utcnow
from hestia.db.schemas import Actor, Investigation, Landlord, Policy
from hestia.db.unit_of_work import Transaction
from hestia.services import activity

logger = logging.getLogger(__name__)

S = PolicyStatus


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 month -> Feb 28/29)."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


async def actor_progress(tx: Transaction, actor: Actor, required_references: int) -> ActorProgress:
    categories = await tx.repo.document_categories(actor.id)
    references = await tx.repo.reference_count(actor.id)
    return compute_progress(actor.snapshot(), categories, references, required_references)


class PolicyStateMachine:
    def __init__(self, *, required_references: int = 2, default_contract_months: int = 12) -> None:
        self._required_references = required_references
        self._default_contract_months = default_contract_months

    async def transition(
        self,
        tx: Transaction,
        policy: Policy,
        target: PolicyStatus | str,
        principal: Principal,
        *,
        reason: str | None = None,
        comment: str | None = None,
        now: datetime | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Move ``policy`` to ``target``. Returns False when already there."""
        current = PolicyStatus(policy.status)
        target = PolicyStatus(target)
        if current == target:
            return False

        if not is_valid_transition(current, target):
            logger.warning(f"Rejected transition {current.value} -> {target.value} for {policy.policy_number}")
            raise StateConflict(
                f"Transition {current.value} -> {target.value} is not allowed",
                current=current.value,
                target=target.value,
            )

        now = now or utcnow()
        check = getattr(self, f"_enter_{target.value.lower()}")
        extra = await check(tx, policy, current, principal, reason=reason, comment=comment, now=now) or {}

        policy.status = target.value
        activity.record(
            tx,
            policy.id,
            "status_changed",
            f"Status changed from {current.value} to {target.value}",
            principal,
            {"from": current.value, "to": target.value, **extra, **(details or {})},
        )
        logger.info(
            f"Policy {policy.policy_number}: {current.value} -> {target.value}",
            extra={"policy_id": str(policy.id), "performed_by": principal.performer_id},
        )
        return True

    # ── Edge preconditions and side effects ───────────────────────

    async def _enter_collecting_info(self, tx, policy, current, principal, **_) -> dict:
        landlords = await tx.repo.primary_landlords(policy.id)
        tenants = await tx.repo.list_actors(policy.id, actor_type=ActorType.TENANT)
        missing = []
        if not any(landlord.invitation_sent_at for landlord in landlords):
            missing.append("primary landlord invitation")
        if not any(tenant.invitation_sent_at for tenant in tenants):
            missing.append("tenant invitation")
        if missing:
            self._blocked(policy, S.COLLECTING_INFO, f"Invitations not generated: {', '.join(missing)}", missing=missing)
        return {}

    async def _enter_under_investigation(self, tx, policy, current, principal, now, **_) -> dict:
        blockers = await self.investigation_blockers(tx, policy)
        if blockers:
            names = ", ".join(f"{b['actor_type']} {b['name']}" if b.get("name") else b["actor_type"] for b in blockers)
            self._blocked(policy, S.UNDER_INVESTIGATION, f"Actors not ready: {names}", blockers=blockers)

        if await tx.repo.get_investigation(policy.id) is not None:
            raise StateConflict(
                "An investigation already exists for this policy",
                policy_id=str(policy.id),
            )
        tx.session.add(Investigation(
            policy_id=policy.id,
            state=InvestigationState.IN_PROGRESS.value,
            started_at=now,
            started_by=principal.performer_id,
        ))
        policy.investigation_started_at = now
        return {}

    async def _enter_pending_approval(self, tx, policy, current, principal, **_) -> dict:
        investigation = await self._completed_investigation(tx, policy, S.PENDING_APPROVAL)
        if investigation.verdict not in (InvestigationVerdict.APPROVED.value, InvestigationVerdict.HIGH_RISK.value):
            self._blocked(policy, S.PENDING_APPROVAL, f"Investigation verdict is {investigation.verdict}")
        return {"verdict": investigation.verdict}

    async def _enter_investigation_rejected(self, tx, policy, current, principal, **_) -> dict:
        investigation = await self._completed_investigation(tx, policy, S.INVESTIGATION_REJECTED)
        if investigation.verdict != InvestigationVerdict.REJECTED.value:
            self._blocked(policy, S.INVESTIGATION_REJECTED, f"Investigation verdict is {investigation.verdict}")
        return {"verdict": investigation.verdict}

    async def _enter_contract_pending(self, tx, policy, current, principal, **_) -> dict:
        if current == S.INVESTIGATION_REJECTED:
            investigation = await tx.repo.get_investigation(policy.id)
            if investigation is None or investigation.landlord_decision != LandlordDecision.PROCEED.value:
                self._blocked(policy, S.CONTRACT_PENDING, "Landlord has not decided to proceed after rejection")
            return {"landlord_override": True}
        if policy.approved_at is None:
            self._blocked(policy, S.CONTRACT_PENDING, "Staff approval has not been recorded")
        return {}

    async def _enter_contract_uploaded(self, tx, policy, current, principal, now, **_) -> dict:
        contract = await tx.repo.current_contract(policy.id)
        if contract is None:
            self._blocked(policy, S.CONTRACT_UPLOADED, "No current contract has been uploaded")
        policy.contract_uploaded_at = now
        return {"contract_version": contract.version}

    async def _enter_contract_signed(self, tx, policy, current, principal, now, **_) -> dict:
        contract = await tx.repo.current_contract(policy.id)
        if contract is None or contract.signed_at is None:
            self._blocked(policy, S.CONTRACT_SIGNED, "Current contract has not been marked signed")
        policy.contract_signed_at = as_utc(contract.signed_at)
        return {"contract_version": contract.version}

    async def _enter_active(self, tx, policy, current, principal, now, **_) -> dict:
        if not await tx.repo.is_fully_paid(policy.id):
            self._blocked(policy, S.ACTIVE, "Policy is not fully paid")
        policy.activated_at = now
        policy.expires_at = add_months(now, policy.contract_length_months or self._default_contract_months)
        return {"expires_at": policy.expires_at.isoformat()}

    async def _enter_expired(self, tx, policy, current, principal, now, **_) -> dict:
        expires_at = as_utc(policy.expires_at)
        if expires_at is None or expires_at > now:
            self._blocked(policy, S.EXPIRED, "Policy term has not ended yet")
        return {}

    async def _enter_cancelled(self, tx, policy, current, principal, reason, comment, now, **_) -> dict:
        if not reason:
            raise ValidationError("Cancellation reason code is required")
        try:
            code = CancellationReason(reason)
        except ValueError as e:
            raise ValidationError(f"Unknown cancellation reason {reason!r}", reason=reason) from e
        if not comment or not comment.strip():
            raise ValidationError("Cancellation comment is required")
        policy.cancelled_at = now
        policy.cancelled_by = principal.performer_id
        policy.cancellation_reason = code.value
        policy.cancellation_comment = comment.strip()
        return {"reason": code.value, "comment": comment.strip()}

    # ── Helpers ───────────────────────────────────────────────────

    async def investigation_blockers(self, tx: Transaction, policy: Policy) -> list[dict[str, Any]]:
        """Actors that keep the policy out of UNDER_INVESTIGATION (empty when none)."""
        actors = await tx.repo.list_actors(policy.id)
        by_type: dict[ActorType, list[Actor]] = {t: [] for t in ActorType}
        for actor in actors:
            by_type[actor.kind].append(actor)

        required_types = [ActorType.LANDLORD, ActorType.TENANT]
        if requires_joint_obligor(policy.guarantor_type):
            required_types.append(ActorType.JOINT_OBLIGOR)
        if requires_aval(policy.guarantor_type):
            required_types.append(ActorType.AVAL)

        blockers: list[dict[str, Any]] = []
        for actor_type in required_types:
            group = by_type[actor_type]
            if not group:
                blockers.append({"actor_type": actor_type.value, "reason": "missing"})
                continue
            if actor_type == ActorType.LANDLORD and not any(isinstance(a, Landlord) and a.is_primary for a in group):
                blockers.append({"actor_type": actor_type.value, "reason": "no primary landlord"})
            for actor in group:
                progress = await actor_progress(tx, actor, self._required_references)
                if not progress.ready:
                    blockers.append({
                        "actor_type": actor_type.value,
                        "actor_id": str(actor.id),
                        "name": actor.display_name,
                        "information_complete": bool(actor.information_complete),
                        "missing_documents": [c.value for c in progress.missing_documents],
                    })
        return blockers

    async def _completed_investigation(self, tx, policy, target) -> Investigation:
        investigation = await tx.repo.get_investigation(policy.id)
        if investigation is None or investigation.verdict is None:
            self._blocked(policy, target, "Investigation verdict has not been recorded")
        return investigation

    def _blocked(self, policy: Policy, target: PolicyStatus, message: str, **details: Any) -> None:
        logger.warning(f"Policy {policy.policy_number} blocked from {target.value}: {message}")
        raise StateConflict(message, current=policy.status, target=target.value, **details)
