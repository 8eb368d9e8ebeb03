"""
Activity log helpers
"""
from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from hestia.core.enums import PerformerType
from hestia.core.permissions import Principal, Role

if TYPE_CHECKING:
    from hestia.db.schemas import PolicyActivity
    from hestia.db.unit_of_work import Transaction


def performer_type(principal: Principal) -> PerformerType:
    if principal.role == Role.ACTOR:
        return PerformerType.ACTOR
    if principal.subject == "system":
        return PerformerType.SYSTEM
    if principal.subject == "webhook":
        return PerformerType.WEBHOOK
    return PerformerType.USER


def record(
    tx: Transaction,
    policy_id: uuid.UUID,
    action: str,
    description: str,
    principal: Principal,
    details: dict[str, Any] | None = None,
) -> PolicyActivity:
    return tx.repo.add_activity(
        policy_id,
        action,
        description,
        performed_by_type=performer_type(principal),
        performed_by_id=principal.performer_id,
        details=details,
    )


def serialize(entry: PolicyActivity) -> dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "description": entry.description,
        "details": entry.details or {},
        "performed_by_type": entry.performed_by_type,
        "performed_by_id": entry.performed_by_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
