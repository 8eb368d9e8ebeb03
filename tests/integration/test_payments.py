"""
Payment reconciliation integration tests
========================================
Gateway events are idempotent, never regress a settled payment and fire
the "all payments completed" notification exactly once.
"""
import uuid

import pytest

from hestia.core.enums import GatewayEventKind as E, PaymentStatus, PolicyStatus as S
from hestia.core.errors import Forbidden, NotFound, StateConflict, ValidationError
from hestia.services.payment_service import GatewayEvent


# ══════════════════════════════════════════════════════════════════════════════
# 1. Creation
# ══════════════════════════════════════════════════════════════════════════════
class TestCreatePayment:
    async def test_iva_applied(self, factory):
        policy = await factory.create()
        payment = await factory.add_payment(policy.id, subtotal=12500.0)
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.subtotal == 12500.0
        assert payment.iva == 2000.0
        assert payment.amount == 14500.0
        assert payment.currency == "MXN"
        assert "payment_created" in await factory.activity_actions(policy.id)

    async def test_validation(self, factory, container, staff):
        policy = await factory.create()
        with pytest.raises(ValidationError):
            await container.payments.create_payment(policy.id, payer_type="TENANT", subtotal=0, principal=staff)
        with pytest.raises(ValidationError):
            await container.payments.create_payment(policy.id, payer_type="NEIGHBOUR", subtotal=100, principal=staff)

    async def test_broker_cannot_create(self, factory, container, broker):
        policy = await factory.create(principal=broker)
        with pytest.raises(Forbidden):
            await container.payments.create_payment(policy.id, payer_type="TENANT", subtotal=100, principal=broker)

    async def test_broker_sees_own_payments(self, factory, container, broker, other_broker):
        policy = await factory.create(principal=broker)
        await factory.add_payment(policy.id)
        assert len(await container.payments.list_payments(policy.id, broker)) == 1
        with pytest.raises(Forbidden):
            await container.payments.list_payments(policy.id, other_broker)

    async def test_terminal_policy_rejects_payments(self, factory, container, staff):
        policy = await factory.create()
        await container.policies.cancel(policy.id, "CLIENT_REQUEST", "Client withdrew", staff)
        with pytest.raises(StateConflict):
            await factory.add_payment(policy.id)


# ══════════════════════════════════════════════════════════════════════════════
# 2. Gateway events
# ══════════════════════════════════════════════════════════════════════════════
class TestGatewayEvents:
    async def test_all_paid_fires_once(self, factory, container, staff, notifier):
        policy = await factory.create()
        first = await factory.add_payment(policy.id, subtotal=1000.0)
        second = await factory.add_payment(policy.id, subtotal=2500.0, payer_type="LANDLORD")

        result = await factory.gateway(first)
        assert result.applied is True
        assert result.all_paid is False
        assert await container.payments.is_fully_paid(policy.id) is False
        assert notifier.of_kind("all_payments_completed") == []

        result = await factory.gateway(second, kind=E.PAYMENT_SUCCEEDED)
        assert result.applied is True
        assert result.all_paid is True
        assert await container.payments.is_fully_paid(policy.id) is True

        sent = notifier.of_kind("all_payments_completed")
        assert len(sent) == 1
        assert sent[0].actor_type == "tenant"
        assert len(sent[0].context["cc"]) == 1
        assert (await factory.refresh(policy.id)).payments_completed_at is not None

        # a late duplicate neither re-applies nor re-notifies
        result = await factory.gateway(second)
        assert result.applied is False
        assert result.all_paid is True
        assert len(notifier.of_kind("all_payments_completed")) == 1
        assert await factory.activity_actions(policy.id, "all_payments_completed") == ["all_payments_completed"]

    async def test_duplicate_event(self, factory):
        policy = await factory.create()
        payment = await factory.add_payment(policy.id)
        assert (await factory.gateway(payment, event_id="evt_1")).applied is True
        again = await factory.gateway(payment, event_id="evt_1")
        assert again.applied is False
        assert again.payment.status == PaymentStatus.COMPLETED.value
        assert len(await factory.activity_actions(policy.id, "payment_completed")) == 1

    async def test_expired_after_completed_does_not_regress(self, factory):
        policy = await factory.create()
        payment = await factory.add_payment(policy.id)
        await factory.gateway(payment)
        result = await factory.gateway(payment, kind=E.SESSION_EXPIRED)
        assert result.applied is False
        assert result.payment.status == PaymentStatus.COMPLETED.value

    async def test_failed_then_completed(self, factory, container):
        policy = await factory.create()
        payment = await factory.add_payment(policy.id)

        failed = await container.payments.record_gateway_event(GatewayEvent(
            kind=E.PAYMENT_FAILED, correlation_id=payment.gateway_session_id, failure_reason="card_declined",
        ))
        assert failed.applied is True
        assert failed.payment.status == PaymentStatus.FAILED.value
        assert failed.payment.failure_reason == "card_declined"

        # a second failure report is stale
        assert (await factory.gateway(payment, kind=E.SESSION_EXPIRED)).applied is False

        retried = await factory.gateway(payment)
        assert retried.applied is True
        assert retried.payment.status == PaymentStatus.COMPLETED.value
        assert retried.payment.failure_reason is None

    async def test_intent_id_correlates(self, factory, container, staff):
        policy = await factory.create()
        payment = await container.payments.create_payment(
            policy.id, payer_type="TENANT", subtotal=500.0, principal=staff, gateway_intent_id="pi_abc123",
        )
        result = await container.payments.record_gateway_event(
            GatewayEvent(kind=E.PAYMENT_SUCCEEDED, correlation_id="pi_abc123"),
        )
        assert result.payment.id == payment.id
        assert result.applied is True

    async def test_unknown_correlation(self, container):
        with pytest.raises(NotFound):
            await container.payments.record_gateway_event(
                GatewayEvent(kind=E.SESSION_COMPLETED, correlation_id="cs_unknown"),
            )

    async def test_webhook_performer(self, factory, container, staff):
        policy = await factory.create()
        payment = await factory.add_payment(policy.id)
        await factory.gateway(payment)
        entries = await container.policies.activities(policy.id, staff, action="payment_completed")
        assert entries[0]["performed_by_type"] == "webhook"

    async def test_paid_policy_activates(self, factory, container, staff):
        policy = await factory.contract_signed()
        payment = await factory.add_payment(policy.id)
        with pytest.raises(StateConflict):
            await container.policies.activate(policy.id, staff)

        await factory.gateway(payment)
        # reconciliation alone never activates
        assert (await factory.refresh(policy.id)).status == S.CONTRACT_SIGNED.value
        await container.policies.activate(policy.id, staff)
        assert (await factory.refresh(policy.id)).status == S.ACTIVE.value


# ══════════════════════════════════════════════════════════════════════════════
# 3. Refunds and summary
# ══════════════════════════════════════════════════════════════════════════════
class TestRefundAndSummary:
    async def test_refund(self, factory, container, staff):
        policy = await factory.create()
        payment = await factory.add_payment(policy.id)
        await factory.gateway(payment)

        refunded = await container.payments.mark_refunded(payment.id, staff, policy_id=policy.id, reason="Duplicate")
        assert refunded.status == PaymentStatus.REFUNDED.value
        assert refunded.refunded_at is not None
        # idempotent
        again = await container.payments.mark_refunded(payment.id, staff)
        assert again.status == PaymentStatus.REFUNDED.value
        assert len(await factory.activity_actions(policy.id, "payment_refunded")) == 1

        # a refunded payment never goes back to completed
        assert (await factory.gateway(payment)).applied is False

    async def test_refund_requires_completed(self, factory, container, staff):
        policy = await factory.create()
        payment = await factory.add_payment(policy.id)
        with pytest.raises(StateConflict):
            await container.payments.mark_refunded(payment.id, staff)

    async def test_refund_wrong_policy(self, factory, container, staff):
        policy = await factory.create()
        other = await factory.create()
        payment = await factory.add_payment(policy.id)
        await factory.gateway(payment)
        with pytest.raises(NotFound):
            await container.payments.mark_refunded(payment.id, staff, policy_id=other.id)
        with pytest.raises(NotFound):
            await container.payments.mark_refunded(uuid.uuid4(), staff)

    async def test_summary(self, factory, container, staff):
        policy = await factory.create()
        assert (await container.payments.summary(policy.id, staff))["status"] == "pending"

        first = await factory.add_payment(policy.id, subtotal=1000.0)
        await factory.add_payment(policy.id, subtotal=1000.0)
        await factory.gateway(first)

        summary = await container.payments.summary(policy.id, staff)
        assert summary["status"] == "partial"
        assert summary["total"] == 2320.0
        assert summary["paid"] == 1160.0
        assert summary["remaining"] == 1160.0
        assert summary["fully_paid"] is False
