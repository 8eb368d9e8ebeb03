"""
Contract versioning
===================
Append-only contract history with a single current version per policy.

upload:      version = max + 1; prior current flag cleared and new row
             inserted in one transaction under the policy row lock;
             CONTRACT_PENDING -> CONTRACT_UPLOADED (re-upload keeps
             CONTRACT_UPLOADED). Rejected from CONTRACT_SIGNED onward.
mark_signed: stamps the current version, CONTRACT_UPLOADED -> CONTRACT_SIGNED.
"""
from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime
from typing import Any

from hestia.config import Settings
from hestia.core.enums import PolicyStatus
from hestia.core.errors import ExternalServiceFailure, NotFound, StateConflict, ValidationError
from hestia.core.lifecycle import CONTRACT_UPLOAD_STATUSES
from hestia.core.permissions import Capability, Principal, authorize
from hestia.db.compat import utcnow
from hestia.db.schemas import Contract, Policy
from hestia.db.unit_of_work import Transaction, UnitOfWork
from hestia.services import activity
from hestia.services.state_machine import PolicyStateMachine
from hestia.services.storage import DocumentStorage

logger = logging.getLogger(__name__)

S = PolicyStatus

ALLOWED_CONTRACT_TYPES: dict[str, str] = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def serialize_contract(contract: Contract) -> dict[str, Any]:
    return {
        "id": str(contract.id),
        "policy_id": str(contract.policy_id),
        "version": contract.version,
        "file_name": contract.file_name,
        "content_type": contract.content_type,
        "size_bytes": contract.size_bytes,
        "is_current": contract.is_current,
        "uploaded_by": contract.uploaded_by,
        "uploaded_at": contract.uploaded_at.isoformat() if contract.uploaded_at else None,
        "signed_at": contract.signed_at.isoformat() if contract.signed_at else None,
        "signed_by": contract.signed_by,
        "notes": contract.notes,
    }


class ContractService:
    def __init__(
        self,
        uow: UnitOfWork,
        storage: DocumentStorage,
        state_machine: PolicyStateMachine,
        settings: Settings,
    ) -> None:
        self._uow = uow
        self._storage = storage
        self._sm = state_machine
        self._settings = settings

    def validate_file(self, file_name: str, content_type: str | None, data: bytes) -> str:
        """Return the canonical content type or raise ValidationError."""
        ext = os.path.splitext(file_name or "")[1].lower()
        if ext not in ALLOWED_CONTRACT_TYPES:
            raise ValidationError(
                f"Contract must be one of {', '.join(sorted(ALLOWED_CONTRACT_TYPES))}", file_name=file_name,
            )
        expected = ALLOWED_CONTRACT_TYPES[ext]
        if content_type and content_type not in (expected, "application/octet-stream"):
            raise ValidationError(f"Content type {content_type} does not match {ext}", content_type=content_type)
        if not data:
            raise ValidationError("File is empty")
        if len(data) > self._settings.MAX_CONTRACT_SIZE_MB * 1024 * 1024:
            raise ValidationError(f"Contract exceeds {self._settings.MAX_CONTRACT_SIZE_MB} MB", size_bytes=len(data))
        return expected

    async def upload(
        self,
        policy_id: uuid.UUID,
        *,
        file_name: str,
        content_type: str | None,
        data: bytes,
        principal: Principal,
        notes: str | None = None,
    ) -> Contract:
        content_type = self.validate_file(file_name, content_type, data)

        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id)
            authorize(principal, Capability.CONTRACT_MANAGE)
            self._ensure_uploadable(policy)

        try:
            key = await self._storage.save(data, f"policies/{policy_id}/contracts/{file_name}", content_type)
        except ExternalServiceFailure as e:
            logger.error(f"Contract upload for {policy.policy_number} failed in storage: {e.message}", exc_info=True)
            async with self._uow.transaction() as tx:
                activity.record(tx, policy.id, "storage_failed", f"Contract storage failed: {e.message}",
                                principal, {"file_name": file_name, "error": e.message})
            raise

        try:
            async with self._uow.transaction() as tx:
                policy = await tx.repo.get_policy(policy_id, lock=True)
                self._ensure_uploadable(policy)
                contract = await self._insert_version(tx, policy, key, file_name, content_type, len(data),
                                                      principal, notes)
                activity.record(
                    tx, policy.id, "contract_uploaded", f"Contract version {contract.version} uploaded", principal,
                    {"contract_id": str(contract.id), "version": contract.version, "file_name": file_name},
                )
                await self._sm.transition(tx, policy, S.CONTRACT_UPLOADED, principal,
                                          details={"contract_version": contract.version})
        except Exception:
            try:
                await self._storage.delete(key)
            except ExternalServiceFailure as cleanup_err:
                logger.error(f"Orphaned contract object {key}: {cleanup_err.message}")
            raise
        logger.info(f"Contract v{contract.version} uploaded for {policy.policy_number}")
        return contract

    async def _insert_version(
        self,
        tx: Transaction,
        policy: Policy,
        key: str,
        file_name: str,
        content_type: str,
        size: int,
        principal: Principal,
        notes: str | None,
    ) -> Contract:
        version = await tx.repo.max_contract_version(policy.id) + 1
        await tx.repo.clear_current_contract(policy.id)
        contract = Contract(
            policy_id=policy.id,
            version=version,
            file_name=file_name,
            content_type=content_type,
            size_bytes=size,
            storage_key=key,
            notes=notes,
            is_current=True,
            uploaded_by=principal.subject,
        )
        tx.session.add(contract)
        await tx.session.flush()
        policy.contract_uploaded_at = contract.uploaded_at
        return contract

    async def mark_signed(
        self, policy_id: uuid.UUID, principal: Principal, *, signed_at: datetime | None = None,
    ) -> Contract:
        now = utcnow()
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id, lock=True)
            authorize(principal, Capability.CONTRACT_MANAGE)
            contract = await tx.repo.current_contract(policy.id)
            if policy.status == S.CONTRACT_SIGNED.value and contract is not None and contract.signed_at:
                return contract
            if policy.status != S.CONTRACT_UPLOADED.value:
                raise StateConflict(
                    f"Contract can only be signed in {S.CONTRACT_UPLOADED.value} (is {policy.status})",
                    current=policy.status,
                )
            if contract is None:
                raise NotFound("No current contract for this policy", policy_id=str(policy_id))
            contract.signed_at = signed_at or now
            contract.signed_by = principal.subject
            activity.record(
                tx, policy.id, "contract_signed", f"Contract version {contract.version} signed", principal,
                {"contract_id": str(contract.id), "version": contract.version},
            )
            await self._sm.transition(tx, policy, S.CONTRACT_SIGNED, principal, now=now)
        return contract

    async def list_contracts(self, policy_id: uuid.UUID, principal: Principal) -> list[Contract]:
        async with self._uow.transaction() as tx:
            policy = await tx.repo.get_policy(policy_id)
            authorize(principal, Capability.POLICY_VIEW, policy_created_by=policy.created_by)
            return list(await tx.repo.contracts_for(policy_id))

    async def download(self, policy_id: uuid.UUID, contract_id: uuid.UUID, principal: Principal) -> tuple[Contract, bytes]:
        contracts = await self.list_contracts(policy_id, principal)
        for contract in contracts:
            if contract.id == contract_id:
                return contract, await self._storage.read(contract.storage_key)
        raise NotFound(f"Contract {contract_id} not found", contract_id=str(contract_id))

    @staticmethod
    def _ensure_uploadable(policy: Policy) -> None:
        if policy.status not in {s.value for s in CONTRACT_UPLOAD_STATUSES}:
            raise StateConflict(
                f"Contracts can only be uploaded in CONTRACT_PENDING or CONTRACT_UPLOADED (is {policy.status})",
                current=policy.status,
            )
