"""
Policy status graph
===================
The only legal edges between policy statuses. Preconditions for each edge
are checked by ``hestia.services.state_machine.PolicyStateMachine``; this
module answers the structural question "is this edge in the graph at all".

  DRAFT -> COLLECTING_INFO -> UNDER_INVESTIGATION
        -> {INVESTIGATION_REJECTED | PENDING_APPROVAL} -> CONTRACT_PENDING
        -> CONTRACT_UPLOADED -> CONTRACT_SIGNED -> ACTIVE -> {EXPIRED | CANCELLED}

INVESTIGATION_REJECTED re-enters CONTRACT_PENDING only through a landlord
PROCEED decision. Every non-terminal status may be cancelled by staff.
"""
from __future__ import annotations

from hestia.core.enums import GuarantorType, PolicyStatus

S = PolicyStatus

TERMINAL_STATUSES = frozenset({S.EXPIRED, S.CANCELLED})

_FORWARD_EDGES: dict[PolicyStatus, frozenset[PolicyStatus]] = {
    S.DRAFT: frozenset({S.COLLECTING_INFO}),
    S.COLLECTING_INFO: frozenset({S.UNDER_INVESTIGATION}),
    S.UNDER_INVESTIGATION: frozenset({S.PENDING_APPROVAL, S.INVESTIGATION_REJECTED}),
    S.INVESTIGATION_REJECTED: frozenset({S.CONTRACT_PENDING}),
    S.PENDING_APPROVAL: frozenset({S.CONTRACT_PENDING}),
    S.CONTRACT_PENDING: frozenset({S.CONTRACT_UPLOADED}),
    S.CONTRACT_UPLOADED: frozenset({S.CONTRACT_SIGNED}),
    S.CONTRACT_SIGNED: frozenset({S.ACTIVE}),
    S.ACTIVE: frozenset({S.EXPIRED}),
    S.EXPIRED: frozenset(),
    S.CANCELLED: frozenset(),
}

TRANSITIONS: dict[PolicyStatus, frozenset[PolicyStatus]] = {
    status: targets | ({S.CANCELLED} if status not in TERMINAL_STATUSES else frozenset())
    for status, targets in _FORWARD_EDGES.items()
}

# Statuses in which actor data and the actor roster may still change.
EDITABLE_STATUSES = frozenset({S.DRAFT, S.COLLECTING_INFO})

# Contract uploads are accepted only before signature.
CONTRACT_UPLOAD_STATUSES = frozenset({S.CONTRACT_PENDING, S.CONTRACT_UPLOADED})


def is_terminal(status: PolicyStatus) -> bool:
    return PolicyStatus(status) in TERMINAL_STATUSES


def allowed_transitions(status: PolicyStatus) -> list[PolicyStatus]:
    """Next statuses reachable in one step, in declaration order."""
    targets = TRANSITIONS[PolicyStatus(status)]
    return [s for s in PolicyStatus if s in targets]


def is_valid_transition(current: PolicyStatus, target: PolicyStatus) -> bool:
    return PolicyStatus(target) in TRANSITIONS[PolicyStatus(current)]


def requires_joint_obligor(guarantor_type: GuarantorType) -> bool:
    return GuarantorType(guarantor_type) in (GuarantorType.JOINT_OBLIGOR, GuarantorType.BOTH)


def requires_aval(guarantor_type: GuarantorType) -> bool:
    return GuarantorType(guarantor_type) in (GuarantorType.AVAL, GuarantorType.BOTH)
