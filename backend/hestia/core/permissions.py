"""
Capability-based authorization
==============================
One closed role enum, one role -> capability table, one ``authorize`` call
at the top of every service operation.

Scope rules on top of the capability check:
  BROKER  only on policies it created
  ACTOR   only on its own actor record, and only while that actor is not ready
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum

from hestia.core.errors import Forbidden


class Role(str, Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    BROKER = "BROKER"
    ACTOR = "ACTOR"


class Capability(str, Enum):
    POLICY_CREATE = "policy:create"
    POLICY_VIEW = "policy:view"
    POLICY_MANAGE = "policy:manage"          # invitations, roster changes
    POLICY_APPROVE = "policy:approve"
    POLICY_ACTIVATE = "policy:activate"
    POLICY_CANCEL = "policy:cancel"
    POLICY_EXPIRE = "policy:expire"
    ACTOR_VIEW = "actor:view"
    ACTOR_EDIT = "actor:edit"
    ACTOR_VERIFY = "actor:verify"
    DOCUMENT_UPLOAD = "document:upload"
    DOCUMENT_DELETE = "document:delete"
    INVESTIGATION_MANAGE = "investigation:manage"
    INVESTIGATION_OVERRIDE = "investigation:override"
    CONTRACT_MANAGE = "contract:manage"
    PAYMENT_MANAGE = "payment:manage"
    PAYMENT_VIEW = "payment:view"
    ACTIVITY_VIEW = "activity:view"


_ALL = frozenset(Capability)

ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: _ALL,
    Role.STAFF: _ALL - {Capability.POLICY_EXPIRE},
    Role.BROKER: frozenset({
        Capability.POLICY_CREATE,
        Capability.POLICY_VIEW,
        Capability.POLICY_MANAGE,
        Capability.ACTOR_VIEW,
        Capability.ACTOR_EDIT,
        Capability.DOCUMENT_UPLOAD,
        Capability.DOCUMENT_DELETE,
        Capability.PAYMENT_VIEW,
        Capability.ACTIVITY_VIEW,
    }),
    Role.ACTOR: frozenset({
        Capability.ACTOR_VIEW,
        Capability.ACTOR_EDIT,
        Capability.DOCUMENT_UPLOAD,
        Capability.DOCUMENT_DELETE,
    }),
}


@dataclass(frozen=True)
class Principal:
    """Resolved caller. ``actor_id`` is set only for actor-token callers."""
    role: Role
    subject: str
    actor_id: uuid.UUID | None = None
    full_name: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in (Role.ADMIN, Role.STAFF)

    @property
    def is_actor(self) -> bool:
        return self.role == Role.ACTOR

    @property
    def performer_id(self) -> str:
        return str(self.actor_id) if self.actor_id else self.subject


SYSTEM = Principal(role=Role.ADMIN, subject="system", full_name="System")
WEBHOOK = Principal(role=Role.ADMIN, subject="webhook", full_name="Payment gateway")


def can(principal: Principal, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(principal.role, frozenset())


def authorize(
    principal: Principal,
    capability: Capability,
    *,
    policy_created_by: str | None = None,
    actor_id: uuid.UUID | None = None,
) -> None:
    """Raise ``Forbidden`` unless the caller holds ``capability`` within its scope.

    ``policy_created_by`` scopes brokers; ``actor_id`` scopes actor tokens.
    An actor-token caller is never allowed on policy-wide operations, so it
    must always pass the actor it is acting on.
    """
    if not can(principal, capability):
        raise Forbidden(
            f"Role {principal.role.value} lacks capability {capability.value}",
            capability=capability.value,
        )
    if principal.role == Role.BROKER and policy_created_by is not None:
        if policy_created_by != principal.subject:
            raise Forbidden("Brokers may only act on policies they created")
    if principal.role == Role.ACTOR:
        if actor_id is None or actor_id != principal.actor_id:
            raise Forbidden("Actor access is limited to the actor's own record")


def ensure_actor_editable(principal: Principal, ready: bool) -> None:
    """Actor tokens lose write access once the actor is ready."""
    if principal.is_actor and ready:
        raise Forbidden("Actor record is complete and can no longer be edited by the actor")
