"""
Document requirement resolver
=============================
Static table keyed by (actor type, entity kind). Each entry is included
unconditionally, only for foreign nationals, or only for a given
guarantee method. Pure and deterministic: the same table drives portal
prompting and the server-side investigation gate.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from hestia.core.enums import ActorType, DocumentCategory, GuaranteeMethod, Nationality

C = DocumentCategory


class Condition(str, Enum):
    ALWAYS = "always"
    FOREIGN = "foreign"
    PROPERTY_GUARANTEE = "property_guarantee"
    INCOME_GUARANTEE = "income_guarantee"


@dataclass(frozen=True)
class DocumentRequirement:
    category: DocumentCategory
    required: bool = True
    condition: Condition = Condition.ALWAYS

    def applies(self, nationality: Nationality | None, guarantee_method: GuaranteeMethod | None) -> bool:
        if self.condition is Condition.FOREIGN:
            return nationality == Nationality.FOREIGN
        if self.condition is Condition.PROPERTY_GUARANTEE:
            return guarantee_method == GuaranteeMethod.PROPERTY
        if self.condition is Condition.INCOME_GUARANTEE:
            return guarantee_method == GuaranteeMethod.INCOME
        return True


def _req(category: DocumentCategory, condition: Condition = Condition.ALWAYS) -> DocumentRequirement:
    return DocumentRequirement(category, True, condition)


def _opt(category: DocumentCategory, condition: Condition = Condition.ALWAYS) -> DocumentRequirement:
    return DocumentRequirement(category, False, condition)


# ── Requirement table ─────────────────────────────────────────
_COMPANY_CORE = (
    _req(C.COMPANY_CONSTITUTION),
    _req(C.LEGAL_POWERS),
    _req(C.IDENTIFICATION),
    _req(C.TAX_STATUS_CERTIFICATE),
    _req(C.BANK_STATEMENT),
)

_REQUIREMENTS: dict[tuple[ActorType, bool], tuple[DocumentRequirement, ...]] = {
    (ActorType.TENANT, False): (
        _req(C.IDENTIFICATION),
        _req(C.INCOME_PROOF),
        _req(C.ADDRESS_PROOF),
        _req(C.BANK_STATEMENT),
        _req(C.IMMIGRATION_DOCUMENT, Condition.FOREIGN),
    ),
    (ActorType.TENANT, True): _COMPANY_CORE + (
        _opt(C.ADDRESS_PROOF),
    ),
    (ActorType.LANDLORD, False): (
        _req(C.IDENTIFICATION),
        _req(C.PROPERTY_DEED),
        _req(C.PROPERTY_TAX_STATEMENT),
        _opt(C.TAX_STATUS_CERTIFICATE),
        _opt(C.BANK_STATEMENT),
    ),
    (ActorType.LANDLORD, True): (
        _req(C.COMPANY_CONSTITUTION),
        _req(C.LEGAL_POWERS),
        _req(C.TAX_STATUS_CERTIFICATE),
        _req(C.PROPERTY_DEED),
        _req(C.PROPERTY_TAX_STATEMENT),
        _opt(C.BANK_STATEMENT),
    ),
    (ActorType.AVAL, False): (
        _req(C.IDENTIFICATION),
        _req(C.INCOME_PROOF),
        _req(C.ADDRESS_PROOF),
        _req(C.BANK_STATEMENT),
        _req(C.IMMIGRATION_DOCUMENT, Condition.FOREIGN),
        _opt(C.PROPERTY_REGISTRY),
    ),
    (ActorType.AVAL, True): _COMPANY_CORE + (
        _opt(C.PROPERTY_REGISTRY),
    ),
    (ActorType.JOINT_OBLIGOR, False): (
        _req(C.IDENTIFICATION),
        _req(C.ADDRESS_PROOF),
        _req(C.BANK_STATEMENT),
        _req(C.IMMIGRATION_DOCUMENT, Condition.FOREIGN),
        _req(C.INCOME_PROOF, Condition.INCOME_GUARANTEE),
        _req(C.PROPERTY_DEED, Condition.PROPERTY_GUARANTEE),
        _req(C.PROPERTY_TAX_STATEMENT, Condition.PROPERTY_GUARANTEE),
        _opt(C.PROPERTY_REGISTRY, Condition.PROPERTY_GUARANTEE),
    ),
    (ActorType.JOINT_OBLIGOR, True): _COMPANY_CORE + (
        _req(C.INCOME_PROOF, Condition.INCOME_GUARANTEE),
        _req(C.PROPERTY_DEED, Condition.PROPERTY_GUARANTEE),
        _req(C.PROPERTY_TAX_STATEMENT, Condition.PROPERTY_GUARANTEE),
        _opt(C.PROPERTY_REGISTRY, Condition.PROPERTY_GUARANTEE),
    ),
}


def document_requirements(
    actor_type: ActorType,
    is_company: bool,
    nationality: Nationality | None = None,
    guarantee_method: GuaranteeMethod | None = None,
) -> list[DocumentRequirement]:
    """Applicable requirement entries (required and optional) in table order."""
    entries = _REQUIREMENTS[(ActorType(actor_type), bool(is_company))]
    return [e for e in entries if e.applies(nationality, guarantee_method)]


def required_documents(
    actor_type: ActorType,
    is_company: bool,
    nationality: Nationality | None = None,
    guarantee_method: GuaranteeMethod | None = None,
) -> frozenset[DocumentCategory]:
    """Categories that must be uploaded before the actor can be ready."""
    return frozenset(
        e.category
        for e in document_requirements(actor_type, is_company, nationality, guarantee_method)
        if e.required
    )


def optional_documents(
    actor_type: ActorType,
    is_company: bool,
    nationality: Nationality | None = None,
    guarantee_method: GuaranteeMethod | None = None,
) -> frozenset[DocumentCategory]:
    return frozenset(
        e.category
        for e in document_requirements(actor_type, is_company, nationality, guarantee_method)
        if not e.required
    )
