"""
Policy aggregate repository
===========================
Query helpers over one session. Relationships are never lazy-loaded in
async code; every association is fetched through an explicit select here.
"""
from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update

from hestia.core.enums import ActorType, PaymentStatus, PerformerType
from hestia.core.errors import NotFound
from hestia.db.schemas import (
    Actor,
    ActorDocument,
    ActorReference,
    Contract,
    Investigation,
    Landlord,
    Payment,
    Policy,
    PolicyActivity,
)


class PolicyRepository:
    def __init__(self, session) -> None:
        self.session = session

    # ── Policies ──────────────────────────────────────────────────

    async def get_policy(self, policy_id: uuid.UUID, *, lock: bool = False) -> Policy:
        stmt = select(Policy).where(Policy.id == policy_id)
        if lock:
            stmt = stmt.with_for_update()
        policy = (await self.session.execute(stmt)).scalar_one_or_none()
        if policy is None:
            raise NotFound(f"Policy {policy_id} not found", policy_id=str(policy_id))
        return policy

    async def policy_number_exists(self, policy_number: str) -> bool:
        stmt = select(func.count()).select_from(Policy).where(Policy.policy_number == policy_number)
        return (await self.session.execute(stmt)).scalar_one() > 0

    async def list_policies(
        self,
        *,
        created_by: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[Policy]:
        stmt = select(Policy).order_by(Policy.created_at.desc()).limit(limit).offset(offset)
        if created_by is not None:
            stmt = stmt.where(Policy.created_by == created_by)
        if status is not None:
            stmt = stmt.where(Policy.status == status)
        return (await self.session.execute(stmt)).scalars().all()

    async def policies_due_for_expiry(self, now: datetime) -> Sequence[uuid.UUID]:
        stmt = select(Policy.id).where(Policy.status == "ACTIVE", Policy.expires_at <= now)
        return (await self.session.execute(stmt)).scalars().all()

    # ── Actors ────────────────────────────────────────────────────

    async def get_actor(self, actor_id: uuid.UUID) -> Actor:
        actor = (await self.session.execute(select(Actor).where(Actor.id == actor_id))).scalar_one_or_none()
        if actor is None:
            raise NotFound(f"Actor {actor_id} not found", actor_id=str(actor_id))
        return actor

    async def get_actor_by_token(self, token: str) -> Actor | None:
        stmt = select(Actor).where(Actor.access_token == token, Actor.archived_at.is_(None))
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def list_actors(
        self,
        policy_id: uuid.UUID,
        *,
        actor_type: ActorType | None = None,
        include_archived: bool = False,
    ) -> Sequence[Actor]:
        stmt = select(Actor).where(Actor.policy_id == policy_id).order_by(Actor.created_at, Actor.id)
        if actor_type is not None:
            stmt = stmt.where(Actor.actor_type == ActorType(actor_type).value)
        if not include_archived:
            stmt = stmt.where(Actor.archived_at.is_(None))
        return (await self.session.execute(stmt)).scalars().all()

    async def primary_landlords(self, policy_id: uuid.UUID) -> Sequence[Landlord]:
        stmt = select(Landlord).where(
            Landlord.policy_id == policy_id,
            Landlord.is_primary.is_(True),
            Landlord.archived_at.is_(None),
        )
        return (await self.session.execute(stmt)).scalars().all()

    async def clear_primary_landlord(self, policy_id: uuid.UUID) -> None:
        await self.session.execute(
            update(Landlord)
            .where(Landlord.policy_id == policy_id, Landlord.is_primary.is_(True))
            .values(is_primary=False)
            .execution_options(synchronize_session="fetch")
        )

    # ── Documents / references ────────────────────────────────────

    async def get_document(self, document_id: uuid.UUID) -> ActorDocument:
        doc = (
            await self.session.execute(select(ActorDocument).where(ActorDocument.id == document_id))
        ).scalar_one_or_none()
        if doc is None:
            raise NotFound(f"Document {document_id} not found", document_id=str(document_id))
        return doc

    async def documents_for(self, actor_id: uuid.UUID) -> Sequence[ActorDocument]:
        stmt = select(ActorDocument).where(ActorDocument.actor_id == actor_id).order_by(ActorDocument.created_at)
        return (await self.session.execute(stmt)).scalars().all()

    async def document_categories(self, actor_id: uuid.UUID) -> set[str]:
        stmt = select(ActorDocument.category).where(ActorDocument.actor_id == actor_id).distinct()
        return set((await self.session.execute(stmt)).scalars().all())

    async def get_reference(self, reference_id: uuid.UUID) -> ActorReference:
        ref = (
            await self.session.execute(select(ActorReference).where(ActorReference.id == reference_id))
        ).scalar_one_or_none()
        if ref is None:
            raise NotFound(f"Reference {reference_id} not found", reference_id=str(reference_id))
        return ref

    async def references_for(self, actor_id: uuid.UUID) -> Sequence[ActorReference]:
        stmt = select(ActorReference).where(ActorReference.actor_id == actor_id).order_by(ActorReference.created_at)
        return (await self.session.execute(stmt)).scalars().all()

    async def reference_count(self, actor_id: uuid.UUID) -> int:
        stmt = select(func.count()).select_from(ActorReference).where(ActorReference.actor_id == actor_id)
        return (await self.session.execute(stmt)).scalar_one()

    # ── Investigation ─────────────────────────────────────────────

    async def get_investigation(self, policy_id: uuid.UUID) -> Investigation | None:
        stmt = select(Investigation).where(Investigation.policy_id == policy_id)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    # ── Payments ──────────────────────────────────────────────────

    async def get_payment(self, payment_id: uuid.UUID) -> Payment:
        payment = (await self.session.execute(select(Payment).where(Payment.id == payment_id))).scalar_one_or_none()
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found", payment_id=str(payment_id))
        return payment

    async def payments_for(self, policy_id: uuid.UUID) -> Sequence[Payment]:
        stmt = select(Payment).where(Payment.policy_id == policy_id).order_by(Payment.created_at, Payment.id)
        return (await self.session.execute(stmt)).scalars().all()

    async def payment_by_correlation(self, correlation_id: str, *, lock: bool = False) -> Payment | None:
        stmt = select(Payment).where(
            or_(Payment.gateway_session_id == correlation_id, Payment.gateway_intent_id == correlation_id)
        )
        if lock:
            stmt = stmt.with_for_update()
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def is_fully_paid(self, policy_id: uuid.UUID) -> bool:
        stmt = select(Payment.status).where(Payment.policy_id == policy_id)
        statuses = (await self.session.execute(stmt)).scalars().all()
        return bool(statuses) and all(s == PaymentStatus.COMPLETED.value for s in statuses)

    # ── Contracts ─────────────────────────────────────────────────

    async def contracts_for(self, policy_id: uuid.UUID) -> Sequence[Contract]:
        stmt = select(Contract).where(Contract.policy_id == policy_id).order_by(Contract.version)
        return (await self.session.execute(stmt)).scalars().all()

    async def current_contract(self, policy_id: uuid.UUID) -> Contract | None:
        stmt = select(Contract).where(Contract.policy_id == policy_id, Contract.is_current.is_(True))
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def max_contract_version(self, policy_id: uuid.UUID) -> int:
        stmt = select(func.max(Contract.version)).where(Contract.policy_id == policy_id)
        return (await self.session.execute(stmt)).scalar_one() or 0

    async def clear_current_contract(self, policy_id: uuid.UUID) -> None:
        await self.session.execute(
            update(Contract)
            .where(Contract.policy_id == policy_id, Contract.is_current.is_(True))
            .values(is_current=False)
            .execution_options(synchronize_session="fetch")
        )

    # ── Activity log ──────────────────────────────────────────────

    def add_activity(
        self,
        policy_id: uuid.UUID,
        action: str,
        description: str,
        *,
        performed_by_type: PerformerType | str,
        performed_by_id: str | None,
        details: dict[str, Any] | None = None,
    ) -> PolicyActivity:
        entry = PolicyActivity(
            policy_id=policy_id,
            action=action,
            description=description,
            details=details or {},
            performed_by_type=PerformerType(performed_by_type).value,
            performed_by_id=performed_by_id,
        )
        self.session.add(entry)
        return entry

    async def activities(
        self,
        policy_id: uuid.UUID,
        *,
        action: str | None = None,
        limit: int = 100,
    ) -> Sequence[PolicyActivity]:
        stmt = (
            select(PolicyActivity)
            .where(PolicyActivity.policy_id == policy_id)
            .order_by(PolicyActivity.created_at.desc(), PolicyActivity.id.desc())
            .limit(limit)
        )
        if action is not None:
            stmt = stmt.where(PolicyActivity.action == action)
        return (await self.session.execute(stmt)).scalars().all()
