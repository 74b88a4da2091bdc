"""Domain enumerations for the tax engagement pipeline.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class AgreementStatus(str, Enum):
    """Top-level status of an engagement agreement."""

    DRAFT = "DRAFT"
    CANCELLED = "CANCELLED"
    PENDING_SIGNATURE = "PENDING_SIGNATURE"
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_TODOS_COMPLETION = "PENDING_TODOS_COMPLETION"
    PENDING_STRATEGY = "PENDING_STRATEGY"
    PENDING_STRATEGY_REVIEW = "PENDING_STRATEGY_REVIEW"
    COMPLETED = "COMPLETED"


class AgreementActor(str, Enum):
    """Party requesting an agreement status transition."""

    STRATEGIST = "strategist"
    CLIENT = "client"
    COMPLIANCE = "compliance"
    SYSTEM = "system"
    ADMIN = "admin"


class AcceptanceStatus(str, Enum):
    """Review state of a single document."""

    PENDING = "PENDING"
    ACCEPTED_BY_STRATEGIST = "ACCEPTED_BY_STRATEGIST"
    REJECTED_BY_STRATEGIST = "REJECTED_BY_STRATEGIST"
    REQUEST_COMPLIANCE_ACCEPTANCE = "REQUEST_COMPLIANCE_ACCEPTANCE"
    ACCEPTED_BY_COMPLIANCE = "ACCEPTED_BY_COMPLIANCE"
    REJECTED_BY_COMPLIANCE = "REJECTED_BY_COMPLIANCE"
    REQUEST_CLIENT_ACCEPTANCE = "REQUEST_CLIENT_ACCEPTANCE"
    ACCEPTED_BY_CLIENT = "ACCEPTED_BY_CLIENT"
    REJECTED_BY_CLIENT = "REJECTED_BY_CLIENT"


class UploadStatus(str, Enum):
    """Upload state of the file attached to a todo."""

    PENDING = "PENDING"
    FILE_UPLOADED = "FILE_UPLOADED"


class TodoStatus(str, Enum):
    """Completion state of a todo."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TodoCategory(str, Enum):
    """What a todo asks the client to do."""

    SIGN_AGREEMENT = "sign_agreement"
    PAYMENT = "payment"
    DOCUMENT = "document"


class ChargeStatus(str, Enum):
    """Status of a payment charge at the payment provider."""

    PENDING = "pending"
    PAID = "paid"


class EnvelopeStatus(str, Enum):
    """Status of an e-signature envelope at the signing provider."""

    PROCESSING = "processing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DECLINED = "declined"
    VOIDED = "voided"


class StrategyPhase(str, Enum):
    """Fine-grained approval phase inside PENDING_STRATEGY_REVIEW."""

    NOT_CREATED = "not_created"
    COMPLIANCE_REVIEW = "compliance_review"
    COMPLIANCE_REJECTED = "compliance_rejected"
    CLIENT_REVIEW = "client_review"
    CLIENT_DECLINED = "client_declined"
    COMPLETE = "complete"


class ClientStatusKey(str, Enum):
    """Canonical progress status of a client engagement."""

    AWAITING_AGREEMENT = "awaiting_agreement"
    AWAITING_PAYMENT = "awaiting_payment"
    AWAITING_DOCUMENTS = "awaiting_documents"
    READY_FOR_STRATEGY = "ready_for_strategy"
    AWAITING_COMPLIANCE = "awaiting_compliance"
    AWAITING_APPROVAL = "awaiting_approval"
    ACTIVE = "active"


class WorkflowGroup(str, Enum):
    """Whose turn it is to act next on an engagement."""

    ACTION_REQUIRED = "action_required"
    WAITING_ON_CLIENT = "waiting_on_client"
    WAITING_ON_COMPLIANCE = "waiting_on_compliance"
    ACTIVE_CLIENTS = "active_clients"
    ARCHIVED = "archived"


class SessionSection(str, Enum):
    """Independently loaded section of an engagement session."""

    CLIENT = "client"
    AGREEMENTS = "agreements"
    DOCUMENTS = "documents"
    CHARGES = "charges"
    SIGNING = "signing"
    COMPLIANCE_USERS = "compliance_users"
    STRATEGY_DOCUMENT = "strategy_document"
    PAYMENT = "payment"
    AGREEMENT_ACTION = "agreement_action"
