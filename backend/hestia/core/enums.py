"""
Closed vocabularies for the policy aggregate
============================================
All enums subclass ``str`` so values round-trip through JSON, SQL
``String`` columns and pydantic models unchanged.
"""
from enum import Enum


class PolicyStatus(str, Enum):
    DRAFT = "DRAFT"
    COLLECTING_INFO = "COLLECTING_INFO"
    UNDER_INVESTIGATION = "UNDER_INVESTIGATION"
    INVESTIGATION_REJECTED = "INVESTIGATION_REJECTED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    CONTRACT_PENDING = "CONTRACT_PENDING"
    CONTRACT_UPLOADED = "CONTRACT_UPLOADED"
    CONTRACT_SIGNED = "CONTRACT_SIGNED"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class GuarantorType(str, Enum):
    NONE = "NONE"
    JOINT_OBLIGOR = "JOINT_OBLIGOR"
    AVAL = "AVAL"
    BOTH = "BOTH"


class ActorType(str, Enum):
    LANDLORD = "landlord"
    TENANT = "tenant"
    JOINT_OBLIGOR = "joint_obligor"
    AVAL = "aval"


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Nationality(str, Enum):
    MEXICAN = "MEXICAN"
    FOREIGN = "FOREIGN"


class GuaranteeMethod(str, Enum):
    PROPERTY = "property"
    INCOME = "income"


class InvestigationVerdict(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    HIGH_RISK = "HIGH_RISK"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class LandlordDecision(str, Enum):
    PROCEED = "PROCEED"
    REJECT = "REJECT"


class InvestigationState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PayerType(str, Enum):
    TENANT = "TENANT"
    LANDLORD = "LANDLORD"
    JOINT_OBLIGOR = "JOINT_OBLIGOR"
    AVAL = "AVAL"
    COMPANY = "COMPANY"


class GatewayEventKind(str, Enum):
    SESSION_COMPLETED = "session.completed"
    SESSION_EXPIRED = "session.expired"
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"


class DocumentCategory(str, Enum):
    IDENTIFICATION = "IDENTIFICATION"
    INCOME_PROOF = "INCOME_PROOF"
    ADDRESS_PROOF = "ADDRESS_PROOF"
    BANK_STATEMENT = "BANK_STATEMENT"
    PROPERTY_DEED = "PROPERTY_DEED"
    TAX_RETURN = "TAX_RETURN"
    EMPLOYMENT_LETTER = "EMPLOYMENT_LETTER"
    PROPERTY_TAX_STATEMENT = "PROPERTY_TAX_STATEMENT"
    MARRIAGE_CERTIFICATE = "MARRIAGE_CERTIFICATE"
    COMPANY_CONSTITUTION = "COMPANY_CONSTITUTION"
    LEGAL_POWERS = "LEGAL_POWERS"
    TAX_STATUS_CERTIFICATE = "TAX_STATUS_CERTIFICATE"
    CREDIT_REPORT = "CREDIT_REPORT"
    PROPERTY_REGISTRY = "PROPERTY_REGISTRY"
    PROPERTY_APPRAISAL = "PROPERTY_APPRAISAL"
    PASSPORT = "PASSPORT"
    IMMIGRATION_DOCUMENT = "IMMIGRATION_DOCUMENT"
    UTILITY_BILL = "UTILITY_BILL"
    PAYROLL_RECEIPT = "PAYROLL_RECEIPT"
    OTHER = "OTHER"


class CancellationReason(str, Enum):
    CLIENT_REQUEST = "CLIENT_REQUEST"
    NON_PAYMENT = "NON_PAYMENT"
    FRAUD = "FRAUD"
    DOCUMENTATION_ISSUES = "DOCUMENTATION_ISSUES"
    LANDLORD_REQUEST = "LANDLORD_REQUEST"
    TENANT_REQUEST = "TENANT_REQUEST"
    OTHER = "OTHER"


class PerformerType(str, Enum):
    USER = "user"
    ACTOR = "actor"
    SYSTEM = "system"
    WEBHOOK = "webhook"
