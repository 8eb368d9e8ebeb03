"""
Contract API (/api/v1/policies/{policy_id}/contracts)
=====================================================
  POST  ""                         upload a new version (multipart; pdf, doc, docx)
  GET   ""                         all versions, newest first
  POST  /mark-signed               CONTRACT_UPLOADED -> CONTRACT_SIGNED
  GET   /{contract_id}/download
"""
import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import Response
from pydantic import BaseModel

from hestia.api.deps import get_container, get_current_principal
from hestia.container import ServiceContainer
from hestia.core.permissions import Principal
from hestia.services.contract_service import serialize_contract

router = APIRouter()


class MarkSignedRequest(BaseModel):
    signed_at: datetime | None = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def upload_contract(
    policy_id: uuid.UUID,
    file: UploadFile = File(...),
    notes: str | None = Form(None),
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    data = await file.read()
    contract = await container.contracts.upload(
        policy_id,
        file_name=file.filename or "contract.pdf",
        content_type=file.content_type,
        data=data,
        principal=principal,
        notes=notes,
    )
    return serialize_contract(contract)


@router.get("")
async def list_contracts(
    policy_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    return [serialize_contract(c) for c in await container.contracts.list_contracts(policy_id, principal)]


@router.post("/mark-signed")
async def mark_signed(
    policy_id: uuid.UUID,
    request: MarkSignedRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    contract = await container.contracts.mark_signed(
        policy_id, principal, signed_at=request.signed_at if request else None,
    )
    return serialize_contract(contract)


@router.get("/{contract_id}/download")
async def download_contract(
    policy_id: uuid.UUID,
    contract_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    container: ServiceContainer = Depends(get_container),
):
    contract, data = await container.contracts.download(policy_id, contract_id, principal)
    return Response(
        content=data,
        media_type=contract.content_type,
        headers={"Content-Disposition": f'attachment; filename="{contract.file_name}"'},
    )
