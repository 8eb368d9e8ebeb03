"""
Investigation API (/api/v1/policies/{policy_id}/investigation)
==============================================================
  GET   ""                    investigation record and derived state
  POST  /start                COLLECTING_INFO -> UNDER_INVESTIGATION
  POST  /complete             verdict (APPROVED | REJECTED | HIGH_RISK)
  POST  /landlord-override    PROCEED | REJECT after a REJECTED verdict (staff on behalf of landlord)
"""
import uuid

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from hestia.api.deps import get_container, get_current_principal
from hestia.container import ServiceContainer
from hestia.core.enums import InvestigationVerdict, LandlordDecision, RiskLevel
from hestia.core.permissions import Principal
from hestia.services.investigation_service import serialize_investigation

router = APIRouter()


class CompleteRequest(BaseModel):
    verdict: InvestigationVerdict
    risk_level: RiskLevel | None = Field(None, description="Defaults to HIGH for HIGH_RISK, LOW otherwise")
    rejection_reason: str | None = Field(None, description="Required when REJECTED")
    findings: str | None = None


class OverrideRequest(BaseModel):
    decision: LandlordDecision
    notes: str | None = None


@router.get("")
async def get_investigation(
    policy_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    investigation = await container.investigations.get(policy_id, principal)
    state = await container.investigations.state(policy_id, principal)
    return {**serialize_investigation(investigation), "state": state.value}


@router.post("/start")
async def start_investigation(
    policy_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return serialize_investigation(await container.investigations.start(policy_id, principal))


@router.post("/complete")
async def complete_investigation(
    policy_id: uuid.UUID,
    request: CompleteRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    investigation = await container.investigations.complete(
        policy_id,
        request.verdict,
        principal,
        risk_level=request.risk_level,
        rejection_reason=request.rejection_reason,
        findings=request.findings,
    )
    return serialize_investigation(investigation)


@router.post("/landlord-override")
async def landlord_override(
    policy_id: uuid.UUID,
    request: OverrideRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    investigation = await container.investigations.landlord_override(
        policy_id, request.decision, principal, notes=request.notes,
    )
    return serialize_investigation(investigation)
