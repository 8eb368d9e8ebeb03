"""
Policy API (/api/v1/policies)
=============================
  POST   /                                  create DRAFT policy with its actors
  GET    /                                  list (brokers see their own)
  GET    /{id}                              policy
  GET    /{id}/actors                       active actors (?include_archived)
  GET    /{id}/progress                     per-actor completion and investigation gate
  GET    /{id}/workflow                     next statuses available to the caller
  GET    /{id}/activities                   activity log, newest first
  POST   /{id}/send-invitations             tokens + notifications, DRAFT -> COLLECTING_INFO
  POST   /{id}/transition                   generic status change
  POST   /{id}/approve                      PENDING_APPROVAL -> CONTRACT_PENDING
  POST   /{id}/activate                     CONTRACT_SIGNED -> ACTIVE (fully paid)
  POST   /{id}/cancel                       reason code + comment
  POST   /{id}/replace-tenant
  PUT    /{id}/guarantor-type
  POST   /{id}/landlords                    add co-owner
  POST   /{id}/landlords/{actor_id}/primary
  DELETE /{id}/landlords/{actor_id}
  POST   /expire                            ACTIVE -> EXPIRED sweep (admin)
"""
import logging
import uuid

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response
from pydantic import BaseModel, Field

from hestia.api.deps import get_container, get_current_principal
from hestia.api.v1.actors import ActorFields
from hestia.container import ServiceContainer
from hestia.core.enums import CancellationReason, GuarantorType, PolicyStatus
from hestia.core.permissions import Principal
from hestia.services.actor_service import serialize_actor
from hestia.services.policy_service import serialize_policy

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request models ──────────────────────────────────────────────

class ActorInput(ActorFields):
    email: str = Field(..., max_length=200)


class PolicyCreateRequest(BaseModel):
    property_address: str = Field(..., min_length=1, description="Leased property address")
    property_type: str | None = Field(None, description="house | apartment | commercial | office")
    property_description: str | None = None
    rent_amount: float = Field(..., gt=0, description="Monthly rent")
    deposit_amount: float | None = Field(None, ge=0)
    contract_length_months: int = Field(12, ge=1, le=120)
    currency: str | None = Field(None, min_length=3, max_length=3)
    package_name: str | None = None
    total_price: float | None = Field(None, ge=0)
    policy_number: str | None = Field(None, description="Optional; generated as POL-YYYYMMDD-XXX")
    guarantor_type: GuarantorType = GuarantorType.NONE
    landlord: ActorInput
    tenant: ActorInput
    joint_obligors: list[ActorInput] = Field(default_factory=list)
    avals: list[ActorInput] = Field(default_factory=list)


class InvitationRequest(BaseModel):
    resend: bool = Field(False, description="Renew tokens and re-notify actors that already completed")


class TransitionRequest(BaseModel):
    target: PolicyStatus
    reason: str | None = None
    comment: str | None = None


class ApproveRequest(BaseModel):
    notes: str | None = None


class CancelRequest(BaseModel):
    reason: CancellationReason
    comment: str = Field(..., min_length=1)


class ReplaceTenantRequest(BaseModel):
    tenant: ActorInput
    reason: str = Field(..., min_length=1)
    replace_guarantors: bool = False
    joint_obligors: list[ActorInput] = Field(default_factory=list)
    avals: list[ActorInput] = Field(default_factory=list)


class GuarantorTypeRequest(BaseModel):
    guarantor_type: GuarantorType
    joint_obligors: list[ActorInput] = Field(default_factory=list)
    avals: list[ActorInput] = Field(default_factory=list)



# ── Handlers ─────────────────────────────────────────────────────

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_policy(
    request: PolicyCreateRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    data = request.model_dump(mode="json", exclude={"landlord", "tenant", "joint_obligors", "avals"})
    data["landlord"] = request.landlord.to_fields()
    data["tenant"] = request.tenant.to_fields()
    data["joint_obligors"] = [a.to_fields() for a in request.joint_obligors]
    data["avals"] = [a.to_fields() for a in request.avals]
    policy = await container.policies.create_policy(data, principal)
    return serialize_policy(policy)


@router.get("")
async def list_policies(
    status_filter: PolicyStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    policies = await container.policies.list_policies(
        principal, status=status_filter.value if status_filter else None, limit=limit, offset=offset,
    )
    return [serialize_policy(p) for p in policies]


@router.post("/expire")
async def expire_due_policies(
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    expired = await container.policies.expire_due_policies(principal=principal)
    return {"expired": expired, "count": len(expired)}


@router.get("/{policy_id}")
async def get_policy(
    policy_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return serialize_policy(await container.policies.get_policy(policy_id, principal))


@router.get("/{policy_id}/actors")
async def list_actors(
    policy_id: uuid.UUID,
    include_archived: bool = False,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    actors = await container.policies.list_actors(policy_id, principal, include_archived=include_archived)
    return [serialize_actor(a) for a in actors]


@router.get("/{policy_id}/progress")
async def get_progress(
    policy_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await container.policies.get_progress(policy_id, principal)


@router.get("/{policy_id}/workflow")
async def get_workflow(
    policy_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await container.policies.workflow(policy_id, principal)


@router.get("/{policy_id}/activities")
async def list_activities(
    policy_id: uuid.UUID,
    action: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await container.policies.activities(policy_id, principal, action=action, limit=limit)


@router.post("/{policy_id}/send-invitations")
async def send_invitations(
    policy_id: uuid.UUID,
    request: InvitationRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    resend = request.resend if request else False
    invitations = await container.policies.send_invitations(policy_id, principal, resend=resend)
    return {"invitations": invitations, "count": len(invitations)}


@router.post("/{policy_id}/transition")
async def transition(
    policy_id: uuid.UUID,
    request: TransitionRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    policy = await container.policies.transition(
        policy_id, request.target, principal, reason=request.reason, comment=request.comment,
    )
    return serialize_policy(policy)


@router.post("/{policy_id}/approve")
async def approve(
    policy_id: uuid.UUID,
    request: ApproveRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    policy = await container.policies.approve(policy_id, principal, notes=request.notes if request else None)
    return serialize_policy(policy)


@router.post("/{policy_id}/activate")
async def activate(
    policy_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return serialize_policy(await container.policies.activate(policy_id, principal))


@router.post("/{policy_id}/cancel")
async def cancel(
    policy_id: uuid.UUID,
    request: CancelRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    policy = await container.policies.cancel(policy_id, request.reason.value, request.comment, principal)
    return serialize_policy(policy)


@router.post("/{policy_id}/replace-tenant", status_code=status.HTTP_201_CREATED)
async def replace_tenant(
    policy_id: uuid.UUID,
    request: ReplaceTenantRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    tenant = await container.policies.replace_tenant(
        policy_id,
        request.tenant.to_fields(),
        principal,
        reason=request.reason,
        replace_guarantors=request.replace_guarantors,
        joint_obligors=[a.to_fields() for a in request.joint_obligors],
        avals=[a.to_fields() for a in request.avals],
    )
    return serialize_actor(tenant)


@router.put("/{policy_id}/guarantor-type")
async def change_guarantor_type(
    policy_id: uuid.UUID,
    request: GuarantorTypeRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    policy = await container.policies.change_guarantor_type(
        policy_id,
        request.guarantor_type,
        principal,
        joint_obligors=[a.to_fields() for a in request.joint_obligors],
        avals=[a.to_fields() for a in request.avals],
    )
    return serialize_policy(policy)


@router.post("/{policy_id}/landlords", status_code=status.HTTP_201_CREATED)
async def add_landlord(
    policy_id: uuid.UUID,
    request: ActorInput,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    landlord = await container.actors.add_landlord(policy_id, request.to_fields(), principal)
    return serialize_actor(landlord)


@router.post("/{policy_id}/landlords/{actor_id}/primary")
async def set_primary_landlord(
    policy_id: uuid.UUID,
    actor_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    landlord = await container.actors.set_primary_landlord(policy_id, actor_id, principal)
    return serialize_actor(landlord)


@router.delete("/{policy_id}/landlords/{actor_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_landlord(
    policy_id: uuid.UUID,
    actor_id: uuid.UUID,
    reason: str | None = None,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    await container.actors.remove_landlord(policy_id, actor_id, principal, reason=reason)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
