"""
Actor completion tracker
========================
Weighting:
  information complete   50%
  required documents     30%  (50% when the actor has no reference requirement)
  references             20%  (tenant / joint obligor only)

``ready`` gates COLLECTING_INFO -> UNDER_INVESTIGATION: information
complete AND every required document category present.
"""
from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field

from hestia.core.document_requirements import required_documents
from hestia.core.enums import ActorType, DocumentCategory, GuaranteeMethod, Nationality

INFO_WEIGHT = 50
DOCUMENT_WEIGHT = 30
REFERENCE_WEIGHT = 20

# Actor kinds that must provide personal/commercial references.
REFERENCE_ACTORS = frozenset({ActorType.TENANT, ActorType.JOINT_OBLIGOR})


@dataclass(frozen=True)
class ActorSnapshot:
    """Plain view of an actor row; keeps this module free of ORM imports."""
    actor_type: ActorType
    is_company: bool
    information_complete: bool
    nationality: Nationality | None = None
    guarantee_method: GuaranteeMethod | None = None


@dataclass
class ActorProgress:
    percentage: int
    ready: bool
    documents_uploaded: int
    documents_required: int
    missing_documents: list[DocumentCategory] = field(default_factory=list)
    references_provided: int = 0
    references_required: int = 0

    def to_dict(self) -> dict:
        return {
            "percentage": self.percentage,
            "ready": self.ready,
            "documents_uploaded": self.documents_uploaded,
            "documents_required": self.documents_required,
            "missing_documents": [c.value for c in self.missing_documents],
            "references_provided": self.references_provided,
            "references_required": self.references_required,
        }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_progress(
    actor: ActorSnapshot,
    document_categories: Iterable[DocumentCategory | str],
    reference_count: int = 0,
    required_references: int = 2,
) -> ActorProgress:
    required = required_documents(
        actor.actor_type, actor.is_company, actor.nationality, actor.guarantee_method,
    )
    uploaded = {DocumentCategory(c) for c in document_categories}
    present = required & uploaded
    missing = sorted(required - uploaded, key=lambda c: c.value)

    doc_ratio = len(present) / len(required) if required else 1.0

    needs_refs = ActorType(actor.actor_type) in REFERENCE_ACTORS and required_references > 0
    if needs_refs:
        ref_ratio = min(reference_count, required_references) / required_references
        raw = (
            (INFO_WEIGHT if actor.information_complete else 0)
            + DOCUMENT_WEIGHT * doc_ratio
            + REFERENCE_WEIGHT * ref_ratio
        )
    else:
        raw = (
            (INFO_WEIGHT if actor.information_complete else 0)
            + (DOCUMENT_WEIGHT + REFERENCE_WEIGHT) * doc_ratio
        )

    return ActorProgress(
        percentage=min(100, _round_half_up(raw)),
        ready=bool(actor.information_complete) and not missing,
        documents_uploaded=len(present),
        documents_required=len(required),
        missing_documents=missing,
        references_provided=reference_count if needs_refs else 0,
        references_required=required_references if needs_refs else 0,
    )


def overall_percentage(progresses: Iterable[ActorProgress]) -> int:
    items = list(progresses)
    if not items:
        return 0
    return _round_half_up(sum(p.percentage for p in items) / len(items))
