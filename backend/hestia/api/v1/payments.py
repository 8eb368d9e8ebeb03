"""
Payment API
===========
  POST  /policies/{policy_id}/payments                     create (subtotal + IVA)
  GET   /policies/{policy_id}/payments
  GET   /policies/{policy_id}/payments/summary             pending | partial | completed
  POST  /policies/{policy_id}/payments/{payment_id}/refund

  POST  /webhooks/payments    gateway events; signatures are verified by the ingress
                              proxy, so this route carries no user token
"""
import logging
import uuid

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from hestia.api.deps import get_container, get_current_principal
from hestia.container import ServiceContainer
from hestia.core.enums import GatewayEventKind, PayerType
from hestia.core.permissions import Principal
from hestia.services.payment_service import GatewayEvent, serialize_payment

logger = logging.getLogger(__name__)

router = APIRouter()           # /api/v1/policies/{policy_id}/payments
webhook_router = APIRouter()   # /api/v1/webhooks


class PaymentCreateRequest(BaseModel):
    payer_type: PayerType
    subtotal: float = Field(..., gt=0, description="Amount before IVA")
    description: str | None = None
    gateway_session_id: str | None = None
    gateway_intent_id: str | None = None


class RefundRequest(BaseModel):
    reason: str | None = None


class GatewayEventRequest(BaseModel):
    kind: GatewayEventKind
    correlation_id: str = Field(..., min_length=1, description="Checkout session id or payment intent id")
    event_id: str | None = None
    failure_reason: str | None = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_payment(
    policy_id: uuid.UUID,
    request: PaymentCreateRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    payment = await container.payments.create_payment(
        policy_id,
        payer_type=request.payer_type,
        subtotal=request.subtotal,
        principal=principal,
        description=request.description,
        gateway_session_id=request.gateway_session_id,
        gateway_intent_id=request.gateway_intent_id,
    )
    return serialize_payment(payment)


@router.get("")
async def list_payments(
    policy_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return [serialize_payment(p) for p in await container.payments.list_payments(policy_id, principal)]


@router.get("/summary")
async def payment_summary(
    policy_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await container.payments.summary(policy_id, principal)


@router.post("/{payment_id}/refund")
async def refund_payment(
    policy_id: uuid.UUID,
    payment_id: uuid.UUID,
    request: RefundRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    payment = await container.payments.mark_refunded(
        payment_id, principal, policy_id=policy_id, reason=request.reason if request else None,
    )
    return serialize_payment(payment)


@webhook_router.post("/payments")
async def payment_webhook(
    request: GatewayEventRequest,
    container: ServiceContainer = Depends(get_container),
):
    result = await container.payments.record_gateway_event(GatewayEvent(
        kind=request.kind,
        correlation_id=request.correlation_id,
        event_id=request.event_id,
        failure_reason=request.failure_reason,
    ))
    return {
        "applied": result.applied,
        "payment_id": str(result.payment.id),
        "payment_status": result.payment.status,
        "all_paid": result.all_paid,
    }
