"""Enumeration types used throughout the voucher portal.

Enumerations constrain the values that can be stored in the database or
passed through the API.  They also improve readability when dealing with
domain concepts like application statuses, proof types or invoice states.

When modifying these enums you should update the corresponding database
columns (see the Alembic migration) so that new values are accepted.
"""

from enum import Enum


class UserType(str, Enum):
    """Role of a user account; stored in the ``users.type`` discriminator."""

    ADMINISTRATOR = "administrator"
    CONSTITUENT = "constituent"
    VENDOR = "vendor"
    EVALUATOR = "evaluator"
    TRAINER = "trainer"
    MEDICAL_PROVIDER = "medical_provider"


class UserStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class CommunicationPreference(str, Enum):
    """How a constituent wants to receive notifications."""

    EMAIL = "email"
    LETTER = "letter"


class EmailStatus(str, Enum):
    """Deliverability of a user's address, updated by email event webhooks."""

    ACTIVE = "active"
    BOUNCED = "bounced"
    COMPLAINED = "complained"


class DisabilityType(str, Enum):
    HEARING = "hearing"
    VISION = "vision"
    SPEECH = "speech"
    MOBILITY = "mobility"
    COGNITION = "cognition"


class W9Status(str, Enum):
    NOT_SUBMITTED = "not_submitted"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class VendorStatus(str, Enum):
    """Whether a vendor may process vouchers."""

    PENDING = "pending"
    APPROVED = "approved"
    SUSPENDED = "suspended"


class W9RejectionReason(str, Enum):
    ADDRESS_MISMATCH = "address_mismatch"
    TAX_ID_MISMATCH = "tax_id_mismatch"
    OTHER = "other"


class ApplicationStatus(str, Enum):
    """Lifecycle states of a constituent application."""

    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    NEEDS_INFORMATION = "needs_information"
    REMINDER_SENT = "reminder_sent"
    AWAITING_DOCUMENTS = "awaiting_documents"
    ARCHIVED = "archived"


ACTIVE_APPLICATION_STATUSES = (
    ApplicationStatus.IN_PROGRESS,
    ApplicationStatus.NEEDS_INFORMATION,
    ApplicationStatus.REMINDER_SENT,
    ApplicationStatus.AWAITING_DOCUMENTS,
)


class ApplicationType(str, Enum):
    NEW = "new"
    RENEWAL = "renewal"


class ApplicationSubmissionMethod(str, Enum):
    ONLINE = "online"
    PAPER = "paper"
    PHONE = "phone"
    EMAIL = "email"


class ProofType(str, Enum):
    """Kinds of eligibility proof reviewed by administrators."""

    INCOME = "income"
    RESIDENCY = "residency"


class ProofStatus(str, Enum):
    NOT_REVIEWED = "not_reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"


class ProofSubmissionMethod(str, Enum):
    """Channel through which a proof document arrived."""

    WEB = "web"
    EMAIL = "email"
    SCANNED = "scanned"
    PAPER = "paper"


class ReviewStatus(str, Enum):
    """Outcome of an administrator review (proofs, W9s, certifications)."""

    APPROVED = "approved"
    REJECTED = "rejected"


class MedicalCertificationStatus(str, Enum):
    NOT_REQUESTED = "not_requested"
    REQUESTED = "requested"
    RECEIVED = "received"
    APPROVED = "approved"
    REJECTED = "rejected"


# A certification document is only accepted while one is outstanding.
AWAITING_CERTIFICATION_STATUSES = (
    MedicalCertificationStatus.REQUESTED,
    MedicalCertificationStatus.REJECTED,
)


class VoucherStatus(str, Enum):
    ACTIVE = "active"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TransactionType(str, Enum):
    REDEMPTION = "redemption"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    """Vendor invoice states; ``paid`` requires a GAD invoice reference."""

    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    CANCELLED = "cancelled"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    FAX = "fax"
    LETTER = "letter"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    ERROR = "error"


class PrintQueueStatus(str, Enum):
    PENDING = "pending"
    PRINTED = "printed"


class EvaluationStatus(str, Enum):
    """Status of an in-person assistive technology evaluation."""

    REQUESTED = "requested"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class EvaluationType(str, Enum):
    INITIAL = "initial"
    RENEWAL = "renewal"
    SPECIAL = "special"


class InboundEmailStatus(str, Enum):
    """Processing state of a stored inbound email."""

    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    FAILED = "failed"
