"""
Actor API
=========
Two entry points onto the same ActorService operations:

  /api/v1/actors/{actor_id}/...   staff and brokers (JWT)
  /api/v1/actor/{token}/...       the actor itself (portal access token)

Portal routes:
  GET    /actor/{token}                         own record, documents, requirements, progress
  PUT    /actor/{token}                         save information (complete=true submits)
  POST   /actor/{token}/references              add reference (tenant / joint obligor)
  DELETE /actor/{token}/references/{id}
  POST   /actor/{token}/documents               upload (multipart)
  DELETE /actor/{token}/documents/{id}          only while information is incomplete
  GET    /actor/{token}/progress
"""
import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field

from hestia.api.deps import get_actor_principal, get_container, get_current_principal
from hestia.container import ServiceContainer
from hestia.core.enums import (
    DocumentCategory,
    GuaranteeMethod,
    Nationality,
    VerificationStatus,
)
from hestia.core.permissions import Principal
from hestia.services.actor_service import serialize_actor, serialize_document, serialize_reference

logger = logging.getLogger(__name__)

router = APIRouter()          # /api/v1/actors
portal_router = APIRouter()   # /api/v1/actor/{token}


# ── Request models ──────────────────────────────────────────────

class ActorFields(BaseModel):
    """Writable actor fields; which ones apply depends on the actor variant."""
    model_config = ConfigDict(extra="forbid")

    is_company: bool | None = None
    full_name: str | None = Field(None, max_length=200)
    company_name: str | None = Field(None, max_length=200)
    legal_rep_name: str | None = Field(None, max_length=200, description="Company legal representative")
    rfc: str | None = Field(None, min_length=12, max_length=13, description="Tax id")
    curp: str | None = Field(None, min_length=18, max_length=18)
    passport_number: str | None = Field(None, max_length=30)
    nationality: Nationality | None = None
    email: str | None = Field(None, max_length=200)
    phone: str | None = Field(None, max_length=30)
    address: str | None = None
    occupation: str | None = None
    employer_name: str | None = None
    monthly_income: float | None = Field(None, ge=0)
    relationship_to_tenant: str | None = None
    property_address: str | None = None
    property_value: float | None = Field(None, ge=0)
    property_deed_number: str | None = None
    property_registry: str | None = None
    additional_info: dict[str, Any] | None = None
    # landlord
    ownership_percentage: float | None = Field(None, gt=0, le=100)
    bank_name: str | None = None
    clabe: str | None = Field(None, min_length=18, max_length=18)
    # tenant
    previous_landlord_name: str | None = None
    previous_landlord_phone: str | None = None
    previous_rent_amount: float | None = Field(None, ge=0)
    previous_address: str | None = None
    # joint obligor
    guarantee_method: GuaranteeMethod | None = None

    def to_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True, mode="json")


class ActorUpdateRequest(ActorFields):
    complete: bool = Field(False, description="Submit the information as complete")

    def to_fields(self) -> dict[str, Any]:
        data = super().to_fields()
        data.pop("complete", None)
        return data


class ReferenceRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    phone: str = Field(..., min_length=1, max_length=30)
    email: str | None = None
    relationship: str | None = None
    reference_type: str = Field("personal", description="personal | commercial")


class VerifyRequest(BaseModel):
    decision: VerificationStatus = Field(..., description="APPROVED | REJECTED")
    reason: str | None = Field(None, description="Required when REJECTED")


# ── Shared handlers ─────────────────────────────────────────────

async def _update(container: ServiceContainer, actor_id: uuid.UUID, request: ActorUpdateRequest, principal: Principal):
    actor, progress = await container.actors.submit_information(
        actor_id, request.to_fields(), principal, complete=request.complete,
    )
    return {"actor": serialize_actor(actor), "progress": progress.to_dict()}


async def _upload(
    container: ServiceContainer,
    actor_id: uuid.UUID,
    principal: Principal,
    category: DocumentCategory,
    document_type: str,
    file: UploadFile,
):
    data = await file.read()
    doc = await container.actors.upload_document(
        actor_id,
        category=category,
        document_type=document_type,
        file_name=file.filename or "document",
        content_type=file.content_type or "application/octet-stream",
        data=data,
        principal=principal,
    )
    return serialize_document(doc)


# ── Staff / broker routes ───────────────────────────────────────

@router.get("/{actor_id}")
async def get_actor(
    actor_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await container.actors.get_actor_view(actor_id, principal)


@router.put("/{actor_id}")
async def update_actor(
    actor_id: uuid.UUID,
    request: ActorUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await _update(container, actor_id, request, principal)


@router.post("/{actor_id}/verify")
async def verify_actor(
    actor_id: uuid.UUID,
    request: VerifyRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    """Staff verification. REJECTED reopens the record and notifies the actor."""
    actor = await container.actors.verify_actor(actor_id, request.decision, principal, reason=request.reason)
    return serialize_actor(actor)


@router.post("/{actor_id}/references", status_code=status.HTTP_201_CREATED)
async def add_reference(
    actor_id: uuid.UUID,
    request: ReferenceRequest,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    ref = await container.actors.add_reference(actor_id, request.model_dump(), principal)
    return serialize_reference(ref)


@router.post("/{actor_id}/documents", status_code=status.HTTP_201_CREATED)
async def upload_document(
    actor_id: uuid.UUID,
    category: DocumentCategory = Form(...),
    document_type: str = Form(...),
    file: UploadFile = File(...),
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await _upload(container, actor_id, principal, category, document_type, file)


@router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    await container.actors.delete_document(document_id, principal)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/documents/{document_id}/download")
async def download_document(
    document_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    doc, data = await container.actors.read_document(document_id, principal)
    return Response(
        content=data,
        media_type=doc.content_type,
        headers={"Content-Disposition": f'attachment; filename="{doc.file_name}"'},
    )


# ── Actor portal routes ─────────────────────────────────────────

@portal_router.get("")
async def portal_view(
    principal: Principal = Depends(get_actor_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await container.actors.get_actor_view(principal.actor_id, principal)


@portal_router.put("")
async def portal_update(
    request: ActorUpdateRequest,
    principal: Principal = Depends(get_actor_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await _update(container, principal.actor_id, request, principal)


@portal_router.get("/progress")
async def portal_progress(
    principal: Principal = Depends(get_actor_principal),
    container: ServiceContainer = Depends(get_container),
):
    progress = await container.actors.get_progress(principal.actor_id, principal)
    return progress.to_dict()


@portal_router.post("/references", status_code=status.HTTP_201_CREATED)
async def portal_add_reference(
    request: ReferenceRequest,
    principal: Principal = Depends(get_actor_principal),
    container: ServiceContainer = Depends(get_container),
):
    ref = await container.actors.add_reference(principal.actor_id, request.model_dump(), principal)
    return serialize_reference(ref)


@portal_router.delete("/references/{reference_id}", status_code=status.HTTP_204_NO_CONTENT)
async def portal_remove_reference(
    reference_id: uuid.UUID,
    principal: Principal = Depends(get_actor_principal),
    container: ServiceContainer = Depends(get_container),
):
    await container.actors.remove_reference(reference_id, principal)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@portal_router.post("/documents", status_code=status.HTTP_201_CREATED)
async def portal_upload_document(
    category: DocumentCategory = Form(...),
    document_type: str = Form(...),
    file: UploadFile = File(...),
    principal: Principal = Depends(get_actor_principal),
    container: ServiceContainer = Depends(get_container),
):
    return await _upload(container, principal.actor_id, principal, category, document_type, file)


@portal_router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def portal_delete_document(
    document_id: uuid.UUID,
    principal: Principal = Depends(get_actor_principal),
    container: ServiceContainer = Depends(get_container),
):
    await container.actors.delete_document(document_id, principal)
    return Response(status_code=status.HTTP_204_NO_CONTENT)

