"""
Actor service
=============
Operations on a single actor record, reachable by staff, by the broker who
owns the policy, or by the actor itself through its portal token.

Actor-token callers may only touch their own record, only while the
policy is DRAFT or COLLECTING_INFO, and only while the actor is not yet
ready. Every mutation touches the policy row so concurrent writers on the
same policy collide on its row version instead of overwriting each other.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from hestia.config import Settings
from hestia.core.auth import actor_portal_url, actor_token_expiry, generate_actor_token
from hestia.core.document_requirements import document_requirements
from hestia.core.enums import (
    ActorType,
    DocumentCategory,
    GuaranteeMethod,
    Nationality,
    PolicyStatus,
    VerificationStatus,
)
from hestia.core.errors import ExternalServiceFailure, Forbidden, StateConflict, ValidationError
from hestia.core.lifecycle import EDITABLE_STATUSES
from hestia.core.permissions import Capability, Principal, Role, authorize, ensure_actor_editable
from hestia.core.progress import REFERENCE_ACTORS, ActorProgress
from hestia.db.compat import as_utc, utcnow
from hestia.db.schemas import Actor, ActorDocument, ActorReference, Landlord, Policy
from hestia.db.unit_of_work import Transaction, UnitOfWork
from hestia.services import activity
from hestia.services.notifications import Notification, NotificationDispatcher
from hestia.services.policy_service import PolicyService, new_actor
from hestia.services.state_machine import actor_progress
from hestia.services.storage import DocumentStorage

logger = logging.getLogger(__name__)

ALLOWED_DOCUMENT_TYPES = frozenset({
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/heic",
})

_PUBLIC_FIELDS = (
    "is_company", "full_name", "company_name", "legal_rep_name", "rfc", "curp", "passport_number",
    "nationality", "email", "phone", "address", "occupation", "employer_name", "monthly_income",
    "relationship_to_tenant", "property_address", "property_value", "property_deed_number",
    "property_registry", "additional_info", "is_primary", "ownership_percentage", "bank_name", "clabe",
    "previous_landlord_name", "previous_landlord_phone", "previous_rent_amount", "previous_address",
    "guarantee_method",
)

# Editable columns declared NOT NULL on the actors table.
_NON_NULLABLE_FIELDS = ("email", "is_company")


def serialize_actor(actor: Actor) -> dict[str, Any]:
    data = {field: getattr(actor, field) for field in _PUBLIC_FIELDS if hasattr(actor, field)}
    data.update({
        "id": str(actor.id),
        "policy_id": str(actor.policy_id),
        "actor_type": actor.actor_type,
        "information_complete": bool(actor.information_complete),
        "completed_at": actor.completed_at.isoformat() if actor.completed_at else None,
        "verification_status": actor.verification_status,
        "rejection_reason": actor.rejection_reason,
        "invitation_sent_at": actor.invitation_sent_at.isoformat() if actor.invitation_sent_at else None,
        "archived_at": actor.archived_at.isoformat() if actor.archived_at else None,
    })
    return data


def serialize_document(doc: ActorDocument) -> dict[str, Any]:
    return {
        "id": str(doc.id),
        "actor_id": str(doc.actor_id),
        "category": doc.category,
        "document_type": doc.document_type,
        "file_name": doc.file_name,
        "content_type": doc.content_type,
        "size_bytes": doc.size_bytes,
        "uploaded_by": doc.uploaded_by,
        "created_at": doc.created_at.isoformat() if doc.created_at else None,
    }


def serialize_reference(ref: ActorReference) -> dict[str, Any]:
    return {
        "id": str(ref.id),
        "reference_type": ref.reference_type,
        "name": ref.name,
        "phone": ref.phone,
        "email": ref.email,
        "relationship": ref.relationship,
    }


class ActorService:
    def __init__(
        self,
        uow: UnitOfWork,
        storage: DocumentStorage,
        notifications: NotificationDispatcher,
        settings: Settings,
    ) -> None:
        self._uow = uow
        self._storage = storage
        self._notifications = notifications
        self._settings = settings

    # ── Token resolution ──────────────────────────────────────────

    async def resolve_token(self, token: str) -> Principal:
        async with self._uow.transaction() as tx:
            actor = await tx.repo.get_actor_by_token(token)
        if actor is None:
            raise Forbidden("Invalid access token")
        if not actor.token_valid(utcnow()):
            raise Forbidden("Access token has expired", actor_id=str(actor.id))
        return Principal(
            role=Role.ACTOR,
            subject=f"actor:{actor.id}",
            actor_id=actor.id,
            full_name=actor.display_name,
        )

    # ── Reads ─────────────────────────────────────────────────────

    async def get_actor_view(self, actor_id: uuid.UUID, principal: Principal) -> dict[str, Any]:
        """Actor data with documents, references, requirements and progress."""
        async with self._uow.transaction() as tx:
            actor = await tx.repo.get_actor(actor_id)
            policy = await tx.repo.get_policy(actor.policy_id)
            authorize(principal, Capability.ACTOR_VIEW, policy_created_by=policy.created_by, actor_id=actor.id)
            documents = await tx.repo.documents_for(actor.id)
            references = await tx.repo.references_for(actor.id)
            progress = await actor_progress(tx, actor, self._settings.REQUIRED_REFERENCES)
        snap = actor.snapshot()
        requirements = document_requirements(snap.actor_type, snap.is_company, snap.nationality, snap.guarantee_method)
        return {
            "actor": serialize_actor(actor),
            "policy": {"id": str(policy.id), "policy_number": policy.policy_number, "status": policy.status,
                       "property_address": policy.property_address},
            "documents": [serialize_document(d) for d in documents],
            "references": [serialize_reference(r) for r in references],
            "requirements": [
                {"category": r.category.value, "required": r.required, "condition": r.condition.value}
                for r in requirements
            ],
            "progress": progress.to_dict(),
        }

    async def get_progress(self, actor_id: uuid.UUID, principal: Principal) -> ActorProgress:
        async with self._uow.transaction() as tx:
            actor = await tx.repo.get_actor(actor_id)
            policy = await tx.repo.get_policy(actor.policy_id)
            authorize(principal, Capability.ACTOR_VIEW, policy_created_by=policy.created_by, actor_id=actor.id)
            return await actor_progress(tx, actor, self._settings.REQUIRED_REFERENCES)

    # ── Information ───────────────────────────────────────────────

    async def submit_information(
        self,
        actor_id: uuid.UUID,
        data: dict[str, Any],
        principal: Principal,
        *,
        complete: bool = False,
    ) -> tuple[Actor, ActorProgress]:
        """Save actor fields; with ``complete`` also validate and mark information complete."""
        now = utcnow()
        async with self._uow.transaction() as tx:
            actor, policy = await self._load_for_edit(tx, actor_id, principal, Capability.ACTOR_EDIT)

            unknown = sorted(set(data) - actor.EDITABLE_FIELDS)
            if unknown:
                raise ValidationError(f"Fields not editable for {actor.actor_type}: {', '.join(unknown)}",
                                      fields=unknown)
            if complete and actor.information_complete:
                raise StateConflict("Information has already been submitted", actor_id=str(actor.id))
            await self._ensure_actor_can_write(tx, actor, principal)

            self._validate_fields(data)
            for field, value in data.items():
                setattr(actor, field, value)
            if isinstance(actor, Landlord) and "ownership_percentage" in data:
                await self._check_ownership(tx, policy.id)

            if complete:
                missing = actor.missing_required_fields()
                if missing:
                    raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)
                actor.information_complete = True
                actor.completed_at = now
                if actor.verification_status == VerificationStatus.REJECTED.value:
                    actor.verification_status = VerificationStatus.PENDING.value

            self._touch(policy, now)
            activity.record(
                tx, policy.id,
                "actor_information_completed" if complete else "actor_information_updated",
                f"{actor.actor_type} {actor.display_name} "
                + ("completed their information" if complete else "updated their information"),
                principal,
                {"actor_id": str(actor.id), "actor_type": actor.actor_type, "fields": sorted(data)},
            )
            await tx.session.flush()
            progress = await actor_progress(tx, actor, self._settings.REQUIRED_REFERENCES)
        logger.info(f"Actor {actor.id} information saved (complete={complete}, ready={progress.ready})")
        return actor, progress

    # ── References ────────────────────────────────────────────────

    async def add_reference(self, actor_id: uuid.UUID, data: dict[str, Any], principal: Principal) -> ActorReference:
        if not data.get("name") or not data.get("phone"):
            raise ValidationError("Reference name and phone are required")
        if data.get("reference_type", "personal") not in ("personal", "commercial"):
            raise ValidationError("Reference type must be personal or commercial")
        async with self._uow.transaction() as tx:
            actor, policy = await self._load_for_edit(tx, actor_id, principal, Capability.ACTOR_EDIT)
            if actor.kind not in REFERENCE_ACTORS:
                raise ValidationError(f"{actor.actor_type} does not take references")
            await self._ensure_actor_can_write(tx, actor, principal)
            ref = ActorReference(
                actor_id=actor.id,
                reference_type=data.get("reference_type", "personal"),
                name=data["name"],
                phone=data["phone"],
                email=data.get("email"),
                relationship=data.get("relationship"),
                notes=data.get("notes"),
            )
            tx.session.add(ref)
            self._touch(policy, utcnow())
            activity.record(
                tx, policy.id, "reference_added", f"Reference added for {actor.display_name}", principal,
                {"actor_id": str(actor.id), "reference_type": ref.reference_type},
            )
        return ref

    async def remove_reference(self, reference_id: uuid.UUID, principal: Principal) -> None:
        async with self._uow.transaction() as tx:
            ref = await tx.repo.get_reference(reference_id)
            actor, policy = await self._load_for_edit(tx, ref.actor_id, principal, Capability.ACTOR_EDIT)
            await self._ensure_actor_can_write(tx, actor, principal)
            await tx.session.delete(ref)
            self._touch(policy, utcnow())
            activity.record(
                tx, policy.id, "reference_removed", f"Reference removed for {actor.display_name}", principal,
                {"actor_id": str(actor.id), "reference_id": str(reference_id)},
            )

    # ── Documents ─────────────────────────────────────────────────

    async def upload_document(
        self,
        actor_id: uuid.UUID,
        *,
        category: DocumentCategory | str,
        document_type: str,
        file_name: str,
        content_type: str,
        data: bytes,
        principal: Principal,
    ) -> ActorDocument:
        """
        Store the file, then record the document.

        A storage failure is logged as a ``storage_failed`` activity and
        surfaced as ExternalServiceFailure; nothing else is written.
        """
        try:
            category = DocumentCategory(category)
        except ValueError as e:
            raise ValidationError(f"Unknown document category {category!r}") from e
        if not document_type or not document_type.strip():
            raise ValidationError("Document type is required")
        if not data:
            raise ValidationError("File is empty")
        max_bytes = self._settings.MAX_DOCUMENT_SIZE_MB * 1024 * 1024
        if len(data) > max_bytes:
            raise ValidationError(
                f"File exceeds {self._settings.MAX_DOCUMENT_SIZE_MB} MB", size_bytes=len(data),
            )
        if content_type not in ALLOWED_DOCUMENT_TYPES:
            raise ValidationError(f"Unsupported file type {content_type}", content_type=content_type)

        # authorization and state check before touching storage
        async with self._uow.transaction() as tx:
            actor, policy = await self._load_for_edit(tx, actor_id, principal, Capability.DOCUMENT_UPLOAD)
            await self._ensure_actor_can_write(tx, actor, principal)

        path_hint = f"policies/{policy.id}/actors/{actor.id}/{category.value.lower()}/{file_name}"
        try:
            key = await self._storage.save(data, path_hint, content_type)
        except ExternalServiceFailure as e:
            logger.error(f"Document upload for actor {actor.id} failed in storage: {e.message}", exc_info=True)
            await self._record_storage_failure(policy.id, "storage_failed", e, principal, actor_id=str(actor.id))
            raise

        try:
            async with self._uow.transaction() as tx:
                actor, policy = await self._load_for_edit(tx, actor_id, principal, Capability.DOCUMENT_UPLOAD)
                await self._ensure_actor_can_write(tx, actor, principal)
                doc = ActorDocument(
                    actor_id=actor.id,
                    policy_id=policy.id,
                    category=category.value,
                    document_type=document_type.strip(),
                    file_name=file_name,
                    content_type=content_type,
                    size_bytes=len(data),
                    storage_key=key,
                    uploaded_by=principal.performer_id,
                )
                tx.session.add(doc)
                self._touch(policy, utcnow())
                activity.record(
                    tx, policy.id, "document_uploaded",
                    f"{category.value} uploaded for {actor.display_name}", principal,
                    {"actor_id": str(actor.id), "category": category.value, "file_name": file_name},
                )
        except Exception:
            await self._discard_blob(key)
            raise
        return doc

    async def delete_document(self, document_id: uuid.UUID, principal: Principal) -> None:
        """Staff may delete any time; others only while the actor's information is incomplete."""
        async with self._uow.transaction() as tx:
            doc = await tx.repo.get_document(document_id)
            actor, policy = await self._load_for_edit(
                tx, doc.actor_id, principal, Capability.DOCUMENT_DELETE, check_status=False,
            )
            if not principal.is_staff and actor.information_complete:
                raise StateConflict(
                    "Documents cannot be deleted after the information was submitted",
                    actor_id=str(actor.id),
                )
            key = doc.storage_key
            await tx.session.delete(doc)
            self._touch(policy, utcnow())
            activity.record(
                tx, policy.id, "document_deleted",
                f"{doc.category} deleted for {actor.display_name}", principal,
                {"actor_id": str(actor.id), "document_id": str(document_id), "category": doc.category},
            )
            policy_id = policy.id

            async def _remove_blob() -> None:
                try:
                    await self._storage.delete(key)
                except ExternalServiceFailure as e:
                    logger.error(f"Stored object {key} could not be removed: {e.message}", exc_info=True)
                    await self._record_storage_failure(policy_id, "storage_delete_failed", e, principal,
                                                       document_id=str(document_id))

            tx.after_commit(_remove_blob)

    async def read_document(self, document_id: uuid.UUID, principal: Principal) -> tuple[ActorDocument, bytes]:
        async with self._uow.transaction() as tx:
            doc = await tx.repo.get_document(document_id)
            actor = await tx.repo.get_actor(doc.actor_id)
            policy = await tx.repo.get_policy(actor.policy_id)
            authorize(principal, Capability.ACTOR_VIEW, policy_created_by=policy.created_by, actor_id=actor.id)
        return doc, await self._storage.read(doc.storage_key)

    # ── Verification (staff) ──────────────────────────────────────

    async def verify_actor(
        self,
        actor_id: uuid.UUID,
        decision: VerificationStatus | str,
        principal: Principal,
        *,
        reason: str | None = None,
    ) -> Actor:
        decision = VerificationStatus(decision)
        if decision == VerificationStatus.PENDING:
            raise ValidationError("Verification decision must be APPROVED or REJECTED")
        if decision == VerificationStatus.REJECTED and not (reason and reason.strip()):
            raise ValidationError("A rejection reason is required")
        now = utcnow()
        async with self._uow.transaction() as tx:
            actor, policy = await self._load_for_edit(tx, actor_id, principal, Capability.ACTOR_VERIFY)
            if not actor.information_complete:
                raise StateConflict("Actor has not submitted their information yet", actor_id=str(actor.id))

            actor.verification_status = decision.value
            actor.verified_at = now
            actor.verified_by = principal.subject
            if decision == VerificationStatus.REJECTED:
                # reopen the record so the actor can correct it
                actor.rejection_reason = reason.strip()
                actor.information_complete = False
                actor.completed_at = None
                if not actor.token_valid(now):
                    actor.access_token = generate_actor_token()
                    actor.token_expiry = actor_token_expiry(now)
                self._notifications.schedule(tx, policy.id, Notification(
                    kind="actor_rejected",
                    recipient_email=actor.email,
                    recipient_name=actor.display_name,
                    policy_number=policy.policy_number,
                    actor_type=actor.actor_type,
                    access_url=actor_portal_url(actor.actor_type, actor.access_token),
                    token_expiry=as_utc(actor.token_expiry).isoformat(),
                    initiated_by=principal.full_name or principal.subject,
                    context={"reason": actor.rejection_reason},
                ))
            else:
                actor.rejection_reason = None

            self._touch(policy, now)
            activity.record(
                tx, policy.id,
                "actor_rejected" if decision == VerificationStatus.REJECTED else "actor_verified",
                f"{actor.actor_type} {actor.display_name} {decision.value.lower()}", principal,
                {"actor_id": str(actor.id), "decision": decision.value, "reason": actor.rejection_reason},
            )
        return actor

    # ── Landlord co-owners ────────────────────────────────────────

    async def add_landlord(self, policy_id: uuid.UUID, data: dict[str, Any], principal: Principal) -> Landlord:
        now = utcnow()
        async with self._uow.transaction() as tx:
            policy = await self._load_policy_for_roster(tx, policy_id, principal)
            landlord = new_actor(policy.id, ActorType.LANDLORD, data)
            landlord.is_primary = False
            tx.session.add(landlord)
            await tx.session.flush()
            await self._check_ownership(tx, policy.id)
            if policy.status == PolicyStatus.COLLECTING_INFO.value:
                landlord.access_token = generate_actor_token()
                landlord.token_expiry = actor_token_expiry(now)
                landlord.invitation_sent_at = now
                self._notifications.schedule(tx, policy.id, Notification(
                    kind="actor_invitation",
                    recipient_email=landlord.email,
                    recipient_name=landlord.display_name,
                    policy_number=policy.policy_number,
                    actor_type=landlord.actor_type,
                    access_url=actor_portal_url(landlord.actor_type, landlord.access_token),
                    token_expiry=landlord.token_expiry.isoformat(),
                    initiated_by=principal.full_name or principal.subject,
                ))
            self._touch(policy, now)
            activity.record(
                tx, policy.id, "landlord_added", f"Co-owner {landlord.display_name} added", principal,
                {"actor_id": str(landlord.id), "ownership_percentage": landlord.ownership_percentage},
            )
        return landlord

    async def set_primary_landlord(self, policy_id: uuid.UUID, landlord_id: uuid.UUID, principal: Principal) -> Landlord:
        async with self._uow.transaction() as tx:
            policy = await self._load_policy_for_roster(tx, policy_id, principal)
            landlord = await self._active_landlord(tx, policy, landlord_id)
            if landlord.is_primary:
                return landlord
            await tx.repo.clear_primary_landlord(policy.id)
            await tx.session.refresh(landlord)
            landlord.is_primary = True
            await tx.session.flush()
            await PolicyService.assert_single_primary(tx, policy.id)
            self._touch(policy, utcnow())
            activity.record(
                tx, policy.id, "primary_landlord_changed", f"{landlord.display_name} is now the primary landlord",
                principal, {"actor_id": str(landlord.id)},
            )
        return landlord

    async def remove_landlord(
        self, policy_id: uuid.UUID, landlord_id: uuid.UUID, principal: Principal, *, reason: str | None = None,
    ) -> None:
        now = utcnow()
        async with self._uow.transaction() as tx:
            policy = await self._load_policy_for_roster(tx, policy_id, principal)
            landlord = await self._active_landlord(tx, policy, landlord_id)
            if landlord.is_primary:
                raise StateConflict("The primary landlord cannot be removed; assign another primary first")
            landlord.archived_at = now
            landlord.archive_reason = reason or "Co-owner removed"
            landlord.access_token = None
            landlord.token_expiry = None
            await tx.session.flush()
            await PolicyService.assert_single_primary(tx, policy.id)
            self._touch(policy, now)
            activity.record(
                tx, policy.id, "landlord_removed", f"Co-owner {landlord.display_name} removed", principal,
                {"actor_id": str(landlord.id), "reason": landlord.archive_reason},
            )

    # ── Helpers ───────────────────────────────────────────────────

    async def _load_for_edit(
        self,
        tx: Transaction,
        actor_id: uuid.UUID,
        principal: Principal,
        capability: Capability,
        *,
        check_status: bool = True,
    ) -> tuple[Actor, Policy]:
        actor = await tx.repo.get_actor(actor_id)
        policy = await tx.repo.get_policy(actor.policy_id, lock=True)
        # re-read under the policy lock
        await tx.session.refresh(actor)
        authorize(principal, capability, policy_created_by=policy.created_by, actor_id=actor.id)
        if not actor.is_active:
            raise StateConflict("Actor record has been archived", actor_id=str(actor.id))
        if check_status and policy.status not in {s.value for s in EDITABLE_STATUSES}:
            raise StateConflict(
                f"Actor data cannot change while the policy is {policy.status}",
                current=policy.status,
            )
        return actor, policy

    async def _load_policy_for_roster(self, tx: Transaction, policy_id: uuid.UUID, principal: Principal) -> Policy:
        policy = await tx.repo.get_policy(policy_id, lock=True)
        authorize(principal, Capability.POLICY_MANAGE, policy_created_by=policy.created_by)
        if policy.status not in {s.value for s in EDITABLE_STATUSES}:
            raise StateConflict(f"Landlords cannot change while the policy is {policy.status}", current=policy.status)
        return policy

    @staticmethod
    async def _active_landlord(tx: Transaction, policy: Policy, landlord_id: uuid.UUID) -> Landlord:
        landlord = await tx.repo.get_actor(landlord_id)
        if not isinstance(landlord, Landlord) or landlord.policy_id != policy.id or not landlord.is_active:
            raise ValidationError("Actor is not an active landlord of this policy", actor_id=str(landlord_id))
        return landlord

    async def _ensure_actor_can_write(self, tx: Transaction, actor: Actor, principal: Principal) -> None:
        if principal.is_actor:
            progress = await actor_progress(tx, actor, self._settings.REQUIRED_REFERENCES)
            ensure_actor_editable(principal, progress.ready)

    @staticmethod
    async def _check_ownership(tx: Transaction, policy_id: uuid.UUID) -> None:
        landlords = await tx.repo.list_actors(policy_id, actor_type=ActorType.LANDLORD)
        total = sum(float(getattr(landlord, "ownership_percentage", None) or 0) for landlord in landlords)
        if total > 100:
            raise ValidationError(f"Landlord ownership adds up to {total:g}%, above 100%", total=total)

    @staticmethod
    def _validate_fields(data: dict[str, Any]) -> None:
        nulls = [f for f in _NON_NULLABLE_FIELDS if f in data and data[f] is None]
        if nulls:
            raise ValidationError(f"Fields cannot be cleared: {', '.join(nulls)}", fields=nulls)
        if data.get("nationality") is not None:
            try:
                data["nationality"] = Nationality(data["nationality"]).value
            except ValueError as e:
                raise ValidationError(f"Unknown nationality {data['nationality']!r}") from e
        if data.get("guarantee_method") is not None:
            try:
                data["guarantee_method"] = GuaranteeMethod(data["guarantee_method"]).value
            except ValueError as e:
                raise ValidationError(f"Unknown guarantee method {data['guarantee_method']!r}") from e
        pct = data.get("ownership_percentage")
        if pct is not None and not (0 < pct <= 100):
            raise ValidationError("Ownership percentage must be between 0 and 100")

    @staticmethod
    def _touch(policy: Policy, now: datetime) -> None:
        policy.updated_at = now

    async def _record_storage_failure(
        self, policy_id: uuid.UUID, action: str, error: ExternalServiceFailure, principal: Principal, **details: Any,
    ) -> None:
        async with self._uow.transaction() as tx:
            activity.record(tx, policy_id, action, f"Storage failure: {error.message}", principal,
                            {"error": error.message, **details})

    async def _discard_blob(self, key: str) -> None:
        try:
            await self._storage.delete(key)
        except ExternalServiceFailure as e:
            logger.error(f"Orphaned stored object {key}: {e.message}")
