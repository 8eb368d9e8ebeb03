"""
Payment reconciliation
======================
A policy carries one or more payment obligations. Gateway webhooks are
delivered at least once and in any order, so ``record_gateway_event`` is
idempotent per correlation id:

  session.completed / payment.succeeded  -> COMPLETED
  session.expired   / payment.failed     -> FAILED

COMPLETED and REFUNDED are never regressed; a late success on a FAILED
payment is applied. The first time every payment of a policy is COMPLETED
the policy is stamped ``payments_completed_at`` and a single
"all payments completed" notification is sent.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from hestia.config import Settings
from hestia.core.enums import ActorType, GatewayEventKind, PayerType, PaymentStatus
from hestia.core.errors import NotFound, StateConflict, ValidationError
from hestia.core.lifecycle import is_terminal
from hestia.core.permissions import WEBHOOK, Capability, Principal, authorize
from hestia.db.compat import utcnow
from hestia.db.schemas import Payment
from hestia.db.unit_of_work import UnitOfWork
from hestia.services import activity
from hestia.services.notifications import Notification, NotificationDispatcher

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")

_EVENT_OUTCOME: dict[GatewayEventKind, PaymentStatus] = {
    GatewayEventKind.SESSION_COMPLETED: PaymentStatus.COMPLETED,
    GatewayEventKind.PAYMENT_SUCCEEDED: PaymentStatus.COMPLETED,
    GatewayEventKind.SESSION_EXPIRED: PaymentStatus.FAILED,
    GatewayEventKind.PAYMENT_FAILED: PaymentStatus.FAILED,
}

# Statuses a payment may move out of, per outcome.
_REPLACEABLE: dict[PaymentStatus, frozenset[str]] = {
    PaymentStatus.COMPLETED: frozenset({
        PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value, PaymentStatus.FAILED.value,
    }),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value}),
}


@dataclass(frozen=True)
class GatewayEvent:
    """A verified webhook event. ``correlation_id`` is a session or intent id."""
    kind: GatewayEventKind
    correlation_id: str
    event_id: str | None = None
    failure_reason: str | None = None


@dataclass
class EventResult:
    payment: Payment
    applied: bool
    all_paid: bool


def iva_breakdown(subtotal: float, rate: float) -> tuple[float, float, float]:
    """(subtotal, iva, total) rounded half-up to cents."""
    base = Decimal(str(subtotal)).quantize(_CENT, ROUND_HALF_UP)
    iva = (base * Decimal(str(rate))).quantize(_CENT, ROUND_HALF_UP)
    return float(base), float(iva), float(base + iva)


def serialize_payment(payment: Payment) -> dict[str, Any]:
    return {
        "id": str(payment.id),
        "policy_id": str(payment.policy_id),
        "payer_type": payment.payer_type,
        "description": payment.description,
        "subtotal": payment.subtotal,
        "iva": payment.iva,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
        "gateway_session_id": payment.gateway_session_id,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
        "failed_at": payment.failed_at.isoformat() if payment.failed_at else None,
        "failure_reason": payment.failure_reason,
    }


class PaymentService:
    def __init__(self, uow: UnitOfWork, notifications: NotificationDispatcher, settings: Settings) -> None:
        self._uow = uow
        self._notifications = notifications
        self._settings = settings

    async def create_payment(
        self,
        policy_id: uuid.UUID,
        *,
        payer_type: PayerType | str,
        subtotal: float,
        principal: Principal,
        description: str | None = None,
        gateway_session_id: str | None = None,
        gateway_intent_id: str | None = None,
    ) -> Payment:
        try:
            payer_type = PayerType(payer_type)
        except ValueError as e:
            raise ValidationError(f"Unknown payer type {payer_type!r}") from e
        if subtotal is None or subtotal <= 0:
            raise ValidationError("Payment subtotal must be positive")
        base, iva, total = iva_breakdown(subtotal, self._settings.IVA_RATE)

        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id, lock=True)
            authorize(principal, Capability.PAYMENT_MANAGE)
            if is_terminal(policy.status):
                raise StateConflict(f"Cannot add payments to a {policy.status} policy", current=policy.status)
            payment = Payment(
                policy_id=policy.id,
                payer_type=payer_type.value,
                description=description,
                subtotal=base,
                iva=iva,
                amount=total,
                currency=policy.currency,
                status=PaymentStatus.PENDING.value,
                gateway_session_id=gateway_session_id,
                gateway_intent_id=gateway_intent_id,
                created_by=principal.subject,
            )
            tx.session.add(payment)
            await tx.session.flush()
            activity.record(
                tx, policy.id, "payment_created", f"Payment of {total:.2f} {policy.currency} created", principal,
                {"payment_id": str(payment.id), "payer_type": payer_type.value,
                 "subtotal": base, "iva": iva, "amount": total},
            )
        return payment

    async def list_payments(self, policy_id: uuid.UUID, principal: Principal) -> list[Payment]:
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id)
            authorize(principal, Capability.PAYMENT_VIEW, policy_created_by=policy.created_by)
            return list(await tx.repo.payments_for(policy_id))

    async def is_fully_paid(self, policy_id: uuid.UUID) -> bool:
        async with self._uow.transaction() as tx:
            await tx.repo.get_policy(policy_id)
            return await tx.repo.is_fully_paid(policy_id)

    async def summary(self, policy_id: uuid.UUID, principal: Principal) -> dict[str, Any]:
        payments = await self.list_payments(policy_id, principal)
        total = sum(Decimal(str(p.amount)) for p in payments)
        paid = sum(Decimal(str(p.amount)) for p in payments if p.status == PaymentStatus.COMPLETED.value)
        if payments and paid == total:
            overall = "completed"
        elif paid > 0:
            overall = "partial"
        else:
            overall = "pending"
        return {
            "policy_id": str(policy_id),
            "payments": len(payments),
            "total": float(total),
            "paid": float(paid),
            "remaining": float(total - paid),
            "status": overall,
            "fully_paid": bool(payments) and all(p.status == PaymentStatus.COMPLETED.value for p in payments),
        }

    async def record_gateway_event(self, event: GatewayEvent, principal: Principal = WEBHOOK) -> EventResult:
        """Apply one webhook event. Duplicate and stale events return ``applied=False``."""
        kind = GatewayEventKind(event.kind)
        outcome = _EVENT_OUTCOME[kind]
        now = utcnow()

        async with self._uow.transaction() as tx:
            found = await tx.repo.payment_by_correlation(event.correlation_id)
            if found is None:
                raise NotFound(f"No payment for gateway id {event.correlation_id}", correlation_id=event.correlation_id)
            # lock order: policy first, then payment
            policy = await tx.repo.get_policy(found.policy_id, lock=True)
            payment = await tx.repo.payment_by_correlation(event.correlation_id, lock=True)
            await tx.session.refresh(payment)

            if payment.status not in _REPLACEABLE[outcome]:
                logger.info(
                    f"Ignoring {kind.value} for payment {payment.id}: already {payment.status}",
                    extra={"event_id": event.event_id},
                )
                return EventResult(payment=payment, applied=False, all_paid=await tx.repo.is_fully_paid(policy.id))

            payment.last_event_kind = kind.value
            if outcome == PaymentStatus.COMPLETED:
                payment.status = PaymentStatus.COMPLETED.value
                payment.paid_at = now
                payment.failure_reason = None
                activity.record(
                    tx, policy.id, "payment_completed", f"Payment of {payment.amount:.2f} completed", principal,
                    {"payment_id": str(payment.id), "event": kind.value, "event_id": event.event_id},
                )
            else:
                payment.status = PaymentStatus.FAILED.value
                payment.failed_at = now
                payment.failure_reason = event.failure_reason or kind.value
                activity.record(
                    tx, policy.id, "payment_failed", f"Payment of {payment.amount:.2f} failed", principal,
                    {"payment_id": str(payment.id), "event": kind.value, "reason": payment.failure_reason},
                )
            await tx.session.flush()

            all_paid = await tx.repo.is_fully_paid(policy.id)
            if all_paid and policy.payments_completed_at is None:
                policy.payments_completed_at = now
                activity.record(
                    tx, policy.id, "all_payments_completed", "All payments completed", principal,
                    {"policy_number": policy.policy_number},
                )
                await self._notify_all_paid(tx, policy)
        logger.info(f"Payment {payment.id} -> {payment.status} ({kind.value})")
        return EventResult(payment=payment, applied=True, all_paid=all_paid)

    async def mark_refunded(
        self,
        payment_id: uuid.UUID,
        principal: Principal,
        *,
        policy_id: uuid.UUID | None = None,
        reason: str | None = None,
    ) -> Payment:
        now = utcnow()
        async with self._uow.transaction() as tx:
            found = await tx.repo.get_payment(payment_id)
            if policy_id is not None and found.policy_id != policy_id:
                raise NotFound(f"Payment {payment_id} not found", payment_id=str(payment_id))
            policy = await tx.repo.get_policy(found.policy_id, lock=True)
            authorize(principal, Capability.PAYMENT_MANAGE)
            await tx.session.refresh(found)
            if found.status == PaymentStatus.REFUNDED.value:
                return found
            if found.status != PaymentStatus.COMPLETED.value:
                raise StateConflict("Only completed payments can be refunded", status=found.status)
            found.status = PaymentStatus.REFUNDED.value
            found.refunded_at = now
            activity.record(
                tx, policy.id, "payment_refunded", f"Payment of {found.amount:.2f} refunded", principal,
                {"payment_id": str(found.id), "reason": reason},
            )
        return found

    async def _notify_all_paid(self, tx, policy) -> None:
        tenants = await tx.repo.list_actors(policy.id, actor_type=ActorType.TENANT)
        landlords = await tx.repo.primary_landlords(policy.id)
        recipients = [*tenants, *landlords]
        if not recipients:
            return
        primary, cc = recipients[0], recipients[1:]
        self._notifications.schedule(tx, policy.id, Notification(
            kind="all_payments_completed",
            recipient_email=primary.email,
            recipient_name=primary.display_name,
            policy_number=policy.policy_number,
            actor_type=primary.actor_type,
            context={
                "cc": [r.email for r in cc],
                "payments_completed_at": policy.payments_completed_at.isoformat(),
            },
        ))
