"""
Policy service
==============
Staff and broker operations on the policy aggregate:

  create_policy           DRAFT policy with landlord, tenant, guarantors
  send_invitations        issue actor tokens, notify, DRAFT -> COLLECTING_INFO
  transition              generic status change (capability chosen by target)
  approve / activate / cancel
  expire_due_policies     ACTIVE -> EXPIRED sweep
  replace_tenant          archive tenant (and guarantors), create new tenant
  change_guarantor_type   archive guarantors that are no longer required
  get_progress / workflow / activities
"""
from __future__ import annotations

import logging
import random
import re
import uuid
from datetime import datetime
from typing import Any

from hestia.config import Settings
from hestia.core.auth import actor_portal_url, actor_token_expiry, generate_actor_token
from hestia.core.enums import ActorType, GuarantorType, PolicyStatus
from hestia.core.errors import InvariantViolation, StateConflict, ValidationError
from hestia.core.lifecycle import (
    EDITABLE_STATUSES,
    allowed_transitions,
    is_terminal,
    requires_aval,
    requires_joint_obligor,
)
from hestia.core.permissions import SYSTEM, Capability, Principal, authorize, can
from hestia.core.progress import overall_percentage
from hestia.db.compat import as_utc, utcnow
from hestia.db.schemas import ACTOR_CLASSES, Actor, Landlord, Policy
from hestia.db.unit_of_work import Transaction, UnitOfWork
from hestia.services import activity
from hestia.services.notifications import Notification, NotificationDispatcher
from hestia.services.state_machine import PolicyStateMachine, actor_progress

logger = logging.getLogger(__name__)

S = PolicyStatus

_POLICY_NUMBER_RE = re.compile(r"^[A-Z]{2,5}-\d{8}-\d{3,6}$")

# Capability needed to request each target through the generic transition.
_TARGET_CAPABILITY: dict[PolicyStatus, Capability] = {
    S.COLLECTING_INFO: Capability.POLICY_MANAGE,
    S.UNDER_INVESTIGATION: Capability.INVESTIGATION_MANAGE,
    S.PENDING_APPROVAL: Capability.INVESTIGATION_MANAGE,
    S.INVESTIGATION_REJECTED: Capability.INVESTIGATION_MANAGE,
    S.CONTRACT_PENDING: Capability.POLICY_APPROVE,
    S.CONTRACT_UPLOADED: Capability.CONTRACT_MANAGE,
    S.CONTRACT_SIGNED: Capability.CONTRACT_MANAGE,
    S.ACTIVE: Capability.POLICY_ACTIVATE,
    S.EXPIRED: Capability.POLICY_EXPIRE,
    S.CANCELLED: Capability.POLICY_CANCEL,
}


def new_actor(policy_id: uuid.UUID, actor_type: ActorType, data: dict[str, Any]) -> Actor:
    """Build an unsaved actor of the right variant from validated fields."""
    cls = ACTOR_CLASSES[ActorType(actor_type)]
    fields = {k: v for k, v in data.items() if k in cls.EDITABLE_FIELDS and v is not None}
    if not fields.get("email"):
        raise ValidationError(f"{ActorType(actor_type).value} email is required")
    return cls(policy_id=policy_id, **fields)


def serialize_policy(policy: Policy) -> dict[str, Any]:
    def _iso(value: datetime | None) -> str | None:
        return value.isoformat() if value else None

    return {
        "id": str(policy.id),
        "policy_number": policy.policy_number,
        "status": policy.status,
        "guarantor_type": policy.guarantor_type,
        "property_address": policy.property_address,
        "property_type": policy.property_type,
        "rent_amount": policy.rent_amount,
        "deposit_amount": policy.deposit_amount,
        "contract_length_months": policy.contract_length_months,
        "currency": policy.currency,
        "package_name": policy.package_name,
        "total_price": policy.total_price,
        "created_by": policy.created_by,
        "invitations_sent_at": _iso(policy.invitations_sent_at),
        "investigation_started_at": _iso(policy.investigation_started_at),
        "investigation_completed_at": _iso(policy.investigation_completed_at),
        "approved_at": _iso(policy.approved_at),
        "contract_uploaded_at": _iso(policy.contract_uploaded_at),
        "contract_signed_at": _iso(policy.contract_signed_at),
        "payments_completed_at": _iso(policy.payments_completed_at),
        "activated_at": _iso(policy.activated_at),
        "expires_at": _iso(policy.expires_at),
        "cancelled_at": _iso(policy.cancelled_at),
        "cancellation_reason": policy.cancellation_reason,
        "cancellation_comment": policy.cancellation_comment,
        "created_at": _iso(policy.created_at),
    }


class PolicyService:
    def __init__(
        self,
        uow: UnitOfWork,
        state_machine: PolicyStateMachine,
        notifications: NotificationDispatcher,
        settings: Settings,
    ) -> None:
        self._uow = uow
        self._sm = state_machine
        self._notifications = notifications
        self._settings = settings

    # ── Creation ──────────────────────────────────────────────────

    async def create_policy(self, data: dict[str, Any], principal: Principal) -> Policy:
        """
        Create a DRAFT policy and its actors.

        ``data`` keys: property_address, rent_amount, guarantor_type, landlord,
        tenant, joint_obligors, avals, plus optional terms and policy_number.
        """
        authorize(principal, Capability.POLICY_CREATE)
        guarantor_type = GuarantorType(data.get("guarantor_type") or GuarantorType.NONE)
        joint_obligors = data.get("joint_obligors") or []
        avals = data.get("avals") or []
        self._validate_guarantors(guarantor_type, joint_obligors, avals)

        if not data.get("landlord"):
            raise ValidationError("Landlord data is required")
        if not data.get("tenant"):
            raise ValidationError("Tenant data is required")
        if not data.get("property_address"):
            raise ValidationError("Property address is required")
        rent = data.get("rent_amount")
        if rent is None or rent <= 0:
            raise ValidationError("Rent amount must be positive")

        async with self._uow.transaction() as tx:
            policy_number = await self._resolve_policy_number(tx, data.get("policy_number"))
            policy = Policy(
                policy_number=policy_number,
                status=S.DRAFT.value,
                guarantor_type=guarantor_type.value,
                property_address=data["property_address"],
                property_type=data.get("property_type"),
                property_description=data.get("property_description"),
                rent_amount=rent,
                deposit_amount=data.get("deposit_amount"),
                contract_length_months=data.get("contract_length_months") or self._settings.DEFAULT_CONTRACT_LENGTH_MONTHS,
                currency=data.get("currency") or self._settings.DEFAULT_CURRENCY,
                package_name=data.get("package_name"),
                total_price=data.get("total_price"),
                created_by=principal.subject,
            )
            tx.session.add(policy)
            await tx.session.flush()

            landlord = new_actor(policy.id, ActorType.LANDLORD, data["landlord"])
            landlord.is_primary = True
            if landlord.ownership_percentage is None:
                landlord.ownership_percentage = 100
            tx.session.add(landlord)
            tx.session.add(new_actor(policy.id, ActorType.TENANT, data["tenant"]))
            for jo in joint_obligors:
                tx.session.add(new_actor(policy.id, ActorType.JOINT_OBLIGOR, jo))
            for aval in avals:
                tx.session.add(new_actor(policy.id, ActorType.AVAL, aval))
            await tx.session.flush()
            await self.assert_single_primary(tx, policy.id)

            activity.record(
                tx, policy.id, "policy_created", f"Policy {policy_number} created", principal,
                {
                    "guarantor_type": guarantor_type.value,
                    "joint_obligors": len(joint_obligors),
                    "avals": len(avals),
                },
            )
        logger.info(f"Policy created: {policy_number} by {principal.subject}")
        return policy

    async def _resolve_policy_number(self, tx: Transaction, requested: str | None) -> str:
        if requested:
            if not _POLICY_NUMBER_RE.match(requested):
                raise ValidationError(f"Invalid policy number format: {requested}")
            if await tx.repo.policy_number_exists(requested):
                raise StateConflict(f"Policy number {requested} already exists", policy_number=requested)
            return requested
        date_part = utcnow().strftime("%Y%m%d")
        for _ in range(20):
            candidate = f"{self._settings.POLICY_NUMBER_PREFIX}-{date_part}-{random.randint(0, 999):03d}"
            if not await tx.repo.policy_number_exists(candidate):
                return candidate
        raise StateConflict("Could not allocate a unique policy number; retry")

    @staticmethod
    def _validate_guarantors(guarantor_type: GuarantorType, joint_obligors: list, avals: list) -> None:
        if requires_joint_obligor(guarantor_type) and not joint_obligors:
            raise ValidationError(f"Guarantor type {guarantor_type.value} requires at least one joint obligor")
        if not requires_joint_obligor(guarantor_type) and joint_obligors:
            raise ValidationError(f"Guarantor type {guarantor_type.value} does not allow joint obligors")
        if requires_aval(guarantor_type) and not avals:
            raise ValidationError(f"Guarantor type {guarantor_type.value} requires at least one aval")
        if not requires_aval(guarantor_type) and avals:
            raise ValidationError(f"Guarantor type {guarantor_type.value} does not allow avals")

    # ── Queries ───────────────────────────────────────────────────

    async def get_policy(self, policy_id: uuid.UUID, principal: Principal) -> Policy:
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id)
            authorize(principal, Capability.POLICY_VIEW, policy_created_by=policy.created_by)
        return policy

    async def list_policies(
        self, principal: Principal, *, status: str | None = None, limit: int = 50, offset: int = 0,
    ) -> list[Policy]:
        authorize(principal, Capability.POLICY_VIEW)
        created_by = None if principal.is_staff else principal.subject
        async with self._uow.transaction() as tx:
            return list(await tx.repo.list_policies(created_by=created_by, status=status, limit=limit, offset=offset))

    async def list_actors(
        self, policy_id: uuid.UUID, principal: Principal, *, include_archived: bool = False,
    ) -> list[Actor]:
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id)
            authorize(principal, Capability.ACTOR_VIEW, policy_created_by=policy.created_by)
            return list(await tx.repo.list_actors(policy_id, include_archived=include_archived))

    async def get_progress(self, policy_id: uuid.UUID, principal: Principal) -> dict[str, Any]:
        """Per-actor completion plus the overall percentage and investigation gate state."""
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id)
            authorize(principal, Capability.POLICY_VIEW, policy_created_by=policy.created_by)
            actors = await tx.repo.list_actors(policy_id)
            rows = []
            progresses = []
            for actor in actors:
                progress = await actor_progress(tx, actor, self._settings.REQUIRED_REFERENCES)
                progresses.append(progress)
                rows.append({
                    "actor_id": str(actor.id),
                    "actor_type": actor.actor_type,
                    "name": actor.display_name,
                    "is_primary": bool(getattr(actor, "is_primary", False)),
                    **progress.to_dict(),
                })
            blockers = await self._sm.investigation_blockers(tx, policy)
        return {
            "policy_id": str(policy.id),
            "status": policy.status,
            "overall_percentage": overall_percentage(progresses),
            "ready_for_investigation": not blockers,
            "blockers": blockers,
            "actors": rows,
        }

    async def workflow(self, policy_id: uuid.UUID, principal: Principal) -> dict[str, Any]:
        policy = await self.get_policy(policy_id, principal)
        current = PolicyStatus(policy.status)
        next_statuses = [
            s.value for s in allowed_transitions(current) if can(principal, _TARGET_CAPABILITY[s])
        ]
        return {
            "status": current.value,
            "terminal": is_terminal(current),
            "allowed_transitions": next_statuses,
        }

    async def activities(
        self, policy_id: uuid.UUID, principal: Principal, *, action: str | None = None, limit: int = 100,
    ) -> list[dict[str, Any]]:
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id)
            authorize(principal, Capability.ACTIVITY_VIEW, policy_created_by=policy.created_by)
            entries = await tx.repo.activities(policy_id, action=action, limit=limit)
            return [activity.serialize(e) for e in entries]

    # ── Invitations ───────────────────────────────────────────────

    async def send_invitations(
        self, policy_id: uuid.UUID, principal: Principal, *, resend: bool = False,
    ) -> list[dict[str, Any]]:
        """Issue (or reuse) actor tokens, notify every active actor, enter COLLECTING_INFO."""
        now = utcnow()
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id, lock=True)
            authorize(principal, Capability.POLICY_MANAGE, policy_created_by=policy.created_by)
            if policy.status not in (S.DRAFT.value, S.COLLECTING_INFO.value):
                raise StateConflict(
                    f"Invitations cannot be sent while the policy is {policy.status}",
                    current=policy.status,
                )

            invitations = []
            for actor in await tx.repo.list_actors(policy_id):
                if actor.information_complete and not resend:
                    continue
                invitations.append(self._invite(tx, policy, actor, principal, now, renew=resend))
            if not invitations:
                raise StateConflict("No actors pending invitation")

            policy.invitations_sent_at = now
            activity.record(
                tx, policy.id, "invitations_sent", f"Invitations sent to {len(invitations)} actors", principal,
                {"actors": [{"actor_id": i["actor_id"], "actor_type": i["actor_type"], "email": i["email"]}
                            for i in invitations],
                 "resend": resend},
            )
            await self._sm.transition(tx, policy, S.COLLECTING_INFO, principal, now=now)
        logger.info(f"Invitations sent for {policy.policy_number}: {len(invitations)}")
        return invitations

    def _invite(
        self, tx: Transaction, policy: Policy, actor: Actor, principal: Principal, now: datetime, *, renew: bool,
    ) -> dict[str, Any]:
        if renew or not actor.token_valid(now):
            actor.access_token = generate_actor_token()
            actor.token_expiry = actor_token_expiry(now)
        actor.invitation_sent_at = now
        url = actor_portal_url(actor.actor_type, actor.access_token)
        self._notifications.schedule(tx, policy.id, Notification(
            kind="actor_invitation",
            recipient_email=actor.email,
            recipient_name=actor.display_name,
            policy_number=policy.policy_number,
            actor_type=actor.actor_type,
            access_url=url,
            token_expiry=as_utc(actor.token_expiry).isoformat(),
            initiated_by=principal.full_name or principal.subject,
        ))
        return {
            "actor_id": str(actor.id),
            "actor_type": actor.actor_type,
            "email": actor.email,
            "access_url": url,
            "token_expiry": as_utc(actor.token_expiry).isoformat(),
        }

    # ── Status transitions ────────────────────────────────────────

    async def transition(
        self,
        policy_id: uuid.UUID,
        target: PolicyStatus | str,
        principal: Principal,
        *,
        reason: str | None = None,
        comment: str | None = None,
    ) -> Policy:
        target = PolicyStatus(target)
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id, lock=True)
            authorize(principal, _TARGET_CAPABILITY.get(target, Capability.POLICY_MANAGE),
                      policy_created_by=policy.created_by)
            await self._sm.transition(tx, policy, target, principal, reason=reason, comment=comment)
        return policy

    async def approve(self, policy_id: uuid.UUID, principal: Principal, *, notes: str | None = None) -> Policy:
        """Record staff approval and move PENDING_APPROVAL -> CONTRACT_PENDING."""
        now = utcnow()
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id, lock=True)
            authorize(principal, Capability.POLICY_APPROVE)
            if policy.status == S.CONTRACT_PENDING.value and policy.approved_at is not None:
                return policy
            if policy.status != S.PENDING_APPROVAL.value:
                raise StateConflict(
                    f"Policy must be {S.PENDING_APPROVAL.value} to approve (is {policy.status})",
                    current=policy.status,
                )
            policy.approved_at = now
            policy.approved_by = principal.subject
            await self._sm.transition(tx, policy, S.CONTRACT_PENDING, principal, now=now,
                                      details={"approved_by": principal.subject, "notes": notes})
        return policy

    async def activate(self, policy_id: uuid.UUID, principal: Principal) -> Policy:
        return await self.transition(policy_id, S.ACTIVE, principal)

    async def cancel(self, policy_id: uuid.UUID, reason: str, comment: str, principal: Principal) -> Policy:
        return await self.transition(policy_id, S.CANCELLED, principal, reason=reason, comment=comment)

    async def expire_due_policies(self, now: datetime | None = None, principal: Principal = SYSTEM) -> list[str]:
        """Move every ACTIVE policy past ``expires_at`` into EXPIRED, one transaction each."""
        authorize(principal, Capability.POLICY_EXPIRE)
        now = now or utcnow()
        async with self._uow.transaction() as tx:
            due = list(await tx.repo.policies_due_for_expiry(now))
        expired = []
        for policy_id in due:
            try:
                async with self._uow.transaction() as tx:
                    policy = await tx.repo.get_policy(policy_id, lock=True)
                    if await self._sm.transition(tx, policy, S.EXPIRED, principal, now=now):
                        expired.append(policy.policy_number)
            except StateConflict as e:
                logger.warning(f"Skipping expiry of {policy_id}: {e.message}")
        if expired:
            logger.info(f"Expired {len(expired)} policies")
        return expired

    # ── Roster changes (DRAFT / COLLECTING_INFO only) ────────────

    async def replace_tenant(
        self,
        policy_id: uuid.UUID,
        tenant: dict[str, Any],
        principal: Principal,
        *,
        reason: str,
        replace_guarantors: bool = False,
        joint_obligors: list[dict[str, Any]] | None = None,
        avals: list[dict[str, Any]] | None = None,
    ) -> Actor:
        """Archive the current tenant (optionally its guarantors) and create a new one."""
        if not reason or not reason.strip():
            raise ValidationError("Replacement reason is required")
        now = utcnow()
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id, lock=True)
            authorize(principal, Capability.POLICY_MANAGE, policy_created_by=policy.created_by)
            self._ensure_editable(policy, "replace the tenant")

            archived = []
            for old in await tx.repo.list_actors(policy_id, actor_type=ActorType.TENANT):
                self._archive(old, f"Tenant replaced: {reason}", now)
                archived.append(str(old.id))
            if replace_guarantors:
                self._validate_guarantors(policy.guarantor_type_enum, joint_obligors or [], avals or [])
                for actor_type in (ActorType.JOINT_OBLIGOR, ActorType.AVAL):
                    for old in await tx.repo.list_actors(policy_id, actor_type=actor_type):
                        self._archive(old, f"Guarantor replaced with tenant: {reason}", now)
                        archived.append(str(old.id))
            # archive before insert so the single-active-tenant index holds
            await tx.session.flush()

            new_tenant = new_actor(policy_id, ActorType.TENANT, tenant)
            tx.session.add(new_tenant)
            if replace_guarantors:
                for jo in joint_obligors or []:
                    tx.session.add(new_actor(policy_id, ActorType.JOINT_OBLIGOR, jo))
                for aval in avals or []:
                    tx.session.add(new_actor(policy_id, ActorType.AVAL, aval))
            await tx.session.flush()

            if policy.status == S.COLLECTING_INFO.value:
                for actor in await tx.repo.list_actors(policy_id):
                    if actor.invitation_sent_at is None:
                        self._invite(tx, policy, actor, principal, now, renew=False)

            activity.record(
                tx, policy.id, "tenant_replaced", f"Tenant replaced: {reason}", principal,
                {"archived": archived, "new_tenant_id": str(new_tenant.id),
                 "replace_guarantors": replace_guarantors},
            )
        logger.info(f"Tenant replaced on {policy.policy_number}")
        return new_tenant

    async def change_guarantor_type(
        self,
        policy_id: uuid.UUID,
        guarantor_type: GuarantorType | str,
        principal: Principal,
        *,
        joint_obligors: list[dict[str, Any]] | None = None,
        avals: list[dict[str, Any]] | None = None,
    ) -> Policy:
        """Switch guarantor type; archive guarantors no longer required, add newly required ones."""
        new_type = GuarantorType(guarantor_type)
        now = utcnow()
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id, lock=True)
            authorize(principal, Capability.POLICY_MANAGE, policy_created_by=policy.created_by)
            self._ensure_editable(policy, "change the guarantor type")
            old_type = policy.guarantor_type_enum
            if old_type == new_type:
                return policy

            existing_jo = await tx.repo.list_actors(policy_id, actor_type=ActorType.JOINT_OBLIGOR)
            existing_aval = await tx.repo.list_actors(policy_id, actor_type=ActorType.AVAL)
            archived = []
            if not requires_joint_obligor(new_type):
                for old in existing_jo:
                    self._archive(old, f"Guarantor type changed to {new_type.value}", now)
                    archived.append(str(old.id))
            if not requires_aval(new_type):
                for old in existing_aval:
                    self._archive(old, f"Guarantor type changed to {new_type.value}", now)
                    archived.append(str(old.id))

            added = []
            if requires_joint_obligor(new_type) and not existing_jo:
                if not joint_obligors:
                    raise ValidationError(f"Guarantor type {new_type.value} requires at least one joint obligor")
                for jo in joint_obligors:
                    actor = new_actor(policy_id, ActorType.JOINT_OBLIGOR, jo)
                    tx.session.add(actor)
                    added.append(actor)
            if requires_aval(new_type) and not existing_aval:
                if not avals:
                    raise ValidationError(f"Guarantor type {new_type.value} requires at least one aval")
                for aval in avals:
                    actor = new_actor(policy_id, ActorType.AVAL, aval)
                    tx.session.add(actor)
                    added.append(actor)
            await tx.session.flush()

            if policy.status == S.COLLECTING_INFO.value:
                for actor in added:
                    self._invite(tx, policy, actor, principal, now, renew=False)

            policy.guarantor_type = new_type.value
            activity.record(
                tx, policy.id, "guarantor_type_changed",
                f"Guarantor type changed from {old_type.value} to {new_type.value}", principal,
                {"from": old_type.value, "to": new_type.value, "archived": archived,
                 "added": [str(a.id) for a in added]},
            )
        return policy

    # ── Shared helpers ────────────────────────────────────────────

    @staticmethod
    def _ensure_editable(policy: Policy, what: str) -> None:
        if policy.status not in {s.value for s in EDITABLE_STATUSES}:
            raise StateConflict(
                f"Cannot {what} while the policy is {policy.status}",
                current=policy.status,
            )

    @staticmethod
    def _archive(actor: Actor, reason: str, now: datetime) -> None:
        actor.archived_at = now
        actor.archive_reason = reason
        actor.access_token = None
        actor.token_expiry = None
        if isinstance(actor, Landlord):
            actor.is_primary = False

    @staticmethod
    async def assert_single_primary(tx: Transaction, policy_id: uuid.UUID) -> Landlord:
        primaries = await tx.repo.primary_landlords(policy_id)
        if len(primaries) != 1:
            raise InvariantViolation(
                f"Policy must have exactly one primary landlord (found {len(primaries)})",
                policy_id=str(policy_id),
                primary_count=len(primaries),
            )
        return primaries[0]
