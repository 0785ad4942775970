"""SQLAlchemy ORM models for the voucher portal.

These models define the relational database schema used by the
application.  Enumerated fields are stored as their string values.
JSON columns hold free-form metadata (audit details, notification
context).  Polymorphic references (the object an event or notification is
about) are stored as a ``(type, id)`` pair.

If you extend or modify these models remember to add an Alembic migration
or call the ``init_db`` helper during development to recreate the tables.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Boolean,
    Enum,
    ForeignKey,
    Numeric,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from voucher_portal.core.database import Base
from voucher_portal.utils.helpers import utcnow
from .enums import (
    UserType,
    UserStatus,
    CommunicationPreference,
    EmailStatus,
    DisabilityType,
    W9Status,
    VendorStatus,
    W9RejectionReason,
    ApplicationStatus,
    ApplicationType,
    ApplicationSubmissionMethod,
    ProofType,
    ProofStatus,
    ProofSubmissionMethod,
    ReviewStatus,
    MedicalCertificationStatus,
    VoucherStatus,
    TransactionType,
    TransactionStatus,
    InvoiceStatus,
    NotificationChannel,
    DeliveryStatus,
    PrintQueueStatus,
    EvaluationStatus,
    EvaluationType,
    InboundEmailStatus,
)


def _enum(enum_cls):
    """Store enum *values* (lowercase strings) rather than member names."""
    return Enum(
        enum_cls,
        values_callable=lambda e: [m.value for m in e],
        native_enum=False,
        length=32,
        validate_strings=True,
    )


class User(Base):
    """Account for every role; ``type`` decides which portal a user sees."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(_enum(UserType), nullable=False, index=True)
    email = Column(String, unique=True, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    fax = Column(String, nullable=True)
    password_digest = Column(String, nullable=True)
    status = Column(_enum(UserStatus), nullable=False, default=UserStatus.ACTIVE)
    email_status = Column(_enum(EmailStatus), nullable=False, default=EmailStatus.ACTIVE)
    communication_preference = Column(
        _enum(CommunicationPreference), nullable=False, default=CommunicationPreference.EMAIL
    )

    # Mailing address (required for letter preference)
    physical_address_1 = Column(String, nullable=True)
    physical_address_2 = Column(String, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    zip_code = Column(String, nullable=True)

    # Constituent
    date_of_birth = Column(Date, nullable=True)
    hearing_disability = Column(Boolean, nullable=False, default=False)
    vision_disability = Column(Boolean, nullable=False, default=False)
    speech_disability = Column(Boolean, nullable=False, default=False)
    mobility_disability = Column(Boolean, nullable=False, default=False)
    cognition_disability = Column(Boolean, nullable=False, default=False)

    # Dependent contact details kept apart from the guardian's
    dependent_email = Column(String, nullable=True)
    dependent_phone = Column(String, nullable=True)

    # Vendor
    business_name = Column(String, nullable=True)
    business_tax_id = Column(String, nullable=True)
    w9_status = Column(_enum(W9Status), nullable=False, default=W9Status.NOT_SUBMITTED)
    w9_rejections = Column(Integer, nullable=False, default=0)
    w9_key = Column(String, nullable=True)
    vendor_status = Column(_enum(VendorStatus), nullable=False, default=VendorStatus.PENDING)

    # Sign-in lockout
    failed_attempts = Column(Integer, nullable=False, default=0)
    locked_at = Column(DateTime, nullable=True)
    last_sign_in_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    applications = relationship("Application", back_populates="user", foreign_keys="Application.user_id")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)

    @property
    def role(self) -> str:
        return self.type.value if isinstance(self.type, UserType) else str(self.type)

    @property
    def is_admin(self) -> bool:
        return self.type == UserType.ADMINISTRATOR

    @property
    def is_vendor(self) -> bool:
        return self.type == UserType.VENDOR

    @property
    def vendor_approved(self) -> bool:
        return self.is_vendor and self.vendor_status == VendorStatus.APPROVED

    @property
    def disabilities(self) -> list[DisabilityType]:
        return [d for d in DisabilityType if getattr(self, f"{d.value}_disability", False)]

    @property
    def has_address(self) -> bool:
        return all((self.physical_address_1, self.city, self.state, self.zip_code))


class Policy(Base):
    """Runtime-tunable program rule (integer valued)."""

    __tablename__ = "policies"

    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, nullable=False)
    value = Column(Integer, nullable=False)
    updated_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Application(Base):
    """A constituent's request for a voucher, with its eligibility proofs."""

    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    managing_guardian_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    status = Column(_enum(ApplicationStatus), nullable=False, default=ApplicationStatus.DRAFT, index=True)
    application_type = Column(_enum(ApplicationType), nullable=False, default=ApplicationType.NEW)
    submission_method = Column(
        _enum(ApplicationSubmissionMethod), nullable=False, default=ApplicationSubmissionMethod.ONLINE
    )
    application_date = Column(DateTime, nullable=True)
    household_size = Column(Integer, nullable=True)
    annual_income = Column(Numeric(12, 2), nullable=True)
    maryland_resident = Column(Boolean, nullable=False, default=False)
    self_certify_disability = Column(Boolean, nullable=False, default=False)

    medical_provider_name = Column(String, nullable=True)
    medical_provider_phone = Column(String, nullable=True)
    medical_provider_fax = Column(String, nullable=True)
    medical_provider_email = Column(String, nullable=True, index=True)
    medical_provider_email_status = Column(_enum(EmailStatus), nullable=False, default=EmailStatus.ACTIVE)

    income_proof_status = Column(_enum(ProofStatus), nullable=False, default=ProofStatus.NOT_REVIEWED)
    residency_proof_status = Column(_enum(ProofStatus), nullable=False, default=ProofStatus.NOT_REVIEWED)
    income_proof_key = Column(String, nullable=True)
    residency_proof_key = Column(String, nullable=True)
    last_proof_submitted_at = Column(DateTime, nullable=True)
    total_rejections = Column(Integer, nullable=False, default=0)

    medical_certification_status = Column(
        _enum(MedicalCertificationStatus), nullable=False, default=MedicalCertificationStatus.NOT_REQUESTED
    )
    medical_certification_key = Column(String, nullable=True)
    medical_certification_requested_at = Column(DateTime, nullable=True)
    medical_certification_request_count = Column(Integer, nullable=False, default=0)
    medical_certification_rejection_reason = Column(Text, nullable=True)

    needs_review_since = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="applications", foreign_keys=[user_id])
    status_changes = relationship(
        "ApplicationStatusChange", back_populates="application", cascade="all, delete-orphan"
    )
    proof_reviews = relationship("ProofReview", back_populates="application", cascade="all, delete-orphan")
    vouchers = relationship("Voucher", back_populates="application")

    def proof_status(self, proof_type: ProofType) -> ProofStatus:
        return getattr(self, f"{ProofType(proof_type).value}_proof_status")

    def set_proof_status(self, proof_type: ProofType, status: ProofStatus) -> None:
        setattr(self, f"{ProofType(proof_type).value}_proof_status", status)

    def proof_key(self, proof_type: ProofType) -> Optional[str]:
        return getattr(self, f"{ProofType(proof_type).value}_proof_key")

    def set_proof_key(self, proof_type: ProofType, key: Optional[str]) -> None:
        setattr(self, f"{ProofType(proof_type).value}_proof_key", key)


class ApplicationStatusChange(Base):
    """History row for application and medical certification transitions."""

    __tablename__ = "application_status_changes"

    id = Column(Integer, primary_key=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    change_type = Column(String, nullable=False, default="status")
    from_status = Column(String, nullable=True)
    to_status = Column(String, nullable=False)
    notes = Column(Text, nullable=True)
    details = Column("metadata", JSON, nullable=False, default=dict)
    changed_at = Column(DateTime, default=utcnow, nullable=False)

    application = relationship("Application", back_populates="status_changes")
    user = relationship("User")


class ProofReview(Base):
    """An administrator's decision on one income or residency proof."""

    __tablename__ = "proof_reviews"

    id = Column(Integer, primary_key=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False, index=True)
    admin_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    proof_type = Column(_enum(ProofType), nullable=False)
    status = Column(_enum(ReviewStatus), nullable=False)
    rejection_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    submission_method = Column(_enum(ProofSubmissionMethod), nullable=True)
    reviewed_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    application = relationship("Application", back_populates="proof_reviews")
    admin = relationship("User")


class Event(Base):
    """Audit trail entry."""

    __tablename__ = "events"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    action = Column(String, nullable=False, index=True)
    auditable_type = Column(String, nullable=True)
    auditable_id = Column(Integer, nullable=True)
    details = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    user = relationship("User")


class Notification(Base):
    """A message to a user, delivered by email, fax or letter."""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    notifiable_type = Column(String, nullable=True)
    notifiable_id = Column(Integer, nullable=True)
    channel = Column(_enum(NotificationChannel), nullable=False, default=NotificationChannel.EMAIL)
    delivery_status = Column(_enum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING)
    message_id = Column(String, nullable=True, index=True)
    details = Column("metadata", JSON, nullable=False, default=dict)
    read_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    recipient = relationship("User", foreign_keys=[recipient_id])
    actor = relationship("User", foreign_keys=[actor_id])


class PrintQueueItem(Base):
    """A generated letter waiting to be printed and mailed."""

    __tablename__ = "print_queue_items"

    id = Column(Integer, primary_key=True)
    constituent_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=True)
    admin_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    letter_type = Column(String, nullable=False)
    status = Column(_enum(PrintQueueStatus), nullable=False, default=PrintQueueStatus.PENDING, index=True)
    pdf_key = Column(String, nullable=True)
    printed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    constituent = relationship("User", foreign_keys=[constituent_id])
    admin = relationship("User", foreign_keys=[admin_id])


class Product(Base):
    """Assistive technology device that vendors can sell against a voucher."""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    manufacturer = Column(String, nullable=True)
    model_number = Column(String, nullable=True)
    price = Column(Numeric(10, 2), nullable=True)
    device_types = Column(JSON, nullable=False, default=list)
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Voucher(Base):
    __tablename__ = "vouchers"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(12), unique=True, nullable=False, index=True)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(_enum(VoucherStatus), nullable=False, default=VoucherStatus.ACTIVE, index=True)
    initial_value = Column(Numeric(10, 2), nullable=False)
    remaining_value = Column(Numeric(10, 2), nullable=False)
    issued_at = Column(DateTime, default=utcnow, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    application = relationship("Application", back_populates="vouchers")
    vendor = relationship("User")
    transactions = relationship("VoucherTransaction", back_populates="voucher")


class VoucherTransaction(Base):
    __tablename__ = "voucher_transactions"

    id = Column(Integer, primary_key=True, index=True)
    voucher_id = Column(Integer, ForeignKey("vouchers.id"), nullable=False, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    transaction_type = Column(_enum(TransactionType), nullable=False, default=TransactionType.REDEMPTION)
    status = Column(_enum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING)
    reference_number = Column(String, unique=True, nullable=False)
    notes = Column(Text, nullable=True)
    processed_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    voucher = relationship("Voucher", back_populates="transactions")
    vendor = relationship("User")
    invoice = relationship("Invoice", back_populates="transactions")
    products = relationship(
        "VoucherTransactionProduct", back_populates="transaction", cascade="all, delete-orphan"
    )


class VoucherTransactionProduct(Base):
    __tablename__ = "voucher_transaction_products"

    id = Column(Integer, primary_key=True)
    voucher_transaction_id = Column(Integer, ForeignKey("voucher_transactions.id"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    transaction = relationship("VoucherTransaction", back_populates="products")
    product = relationship("Product")


class Invoice(Base):
    """Vendor invoice covering a period of completed redemptions."""

    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    invoice_number = Column(String, unique=True, nullable=False)
    status = Column(_enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    approved_at = Column(DateTime, nullable=True)
    payment_recorded_at = Column(DateTime, nullable=True)
    gad_invoice_reference = Column(String, nullable=True)
    check_number = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    vendor = relationship("User")
    transactions = relationship("VoucherTransaction", back_populates="invoice")


class Evaluation(Base):
    """Needs assessment performed by an evaluator for an application."""

    __tablename__ = "evaluations"

    id = Column(Integer, primary_key=True)
    evaluator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    constituent_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    application_id = Column(Integer, ForeignKey("applications.id"), nullable=False)
    status = Column(_enum(EvaluationStatus), nullable=False, default=EvaluationStatus.REQUESTED)
    evaluation_type = Column(_enum(EvaluationType), nullable=False, default=EvaluationType.INITIAL)
    evaluation_date = Column(DateTime, nullable=True)
    location = Column(String, nullable=True)
    needs = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    attendees = Column(JSON, nullable=False, default=list)
    products_tried = Column(JSON, nullable=False, default=list)
    recommended_product_ids = Column(JSON, nullable=False, default=list)
    reschedule_reason = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    evaluator = relationship("User", foreign_keys=[evaluator_id])
    constituent = relationship("User", foreign_keys=[constituent_id])
    application = relationship("Application")


class W9Review(Base):
    __tablename__ = "w9_reviews"

    id = Column(Integer, primary_key=True)
    vendor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    admin_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    status = Column(_enum(ReviewStatus), nullable=False)
    rejection_reason_code = Column(_enum(W9RejectionReason), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    reviewed_at = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    vendor = relationship("User", foreign_keys=[vendor_id])
    admin = relationship("User", foreign_keys=[admin_id])


class InboundEmail(Base):
    """Raw inbound message received through the Postmark ingress."""

    __tablename__ = "inbound_emails"
    __table_args__ = (UniqueConstraint("message_id", name="uq_inbound_emails_message_id"),)

    id = Column(Integer, primary_key=True)
    message_id = Column(String, nullable=False)
    status = Column(_enum(InboundEmailStatus), nullable=False, default=InboundEmailStatus.PENDING)
    mailbox = Column(String, nullable=True)
    sender = Column(String, nullable=True)
    recipient = Column(String, nullable=True)
    subject = Column(String, nullable=True)
    raw_email = Column(Text, nullable=False)
    bounce_reason = Column(String, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class GuardianRelationship(Base):
    """Links a guardian account to a dependent constituent they apply for."""

    __tablename__ = "guardian_relationships"
    __table_args__ = (UniqueConstraint("guardian_id", "dependent_id", name="uq_guardian_relationships_pair"),)

    id = Column(Integer, primary_key=True)
    guardian_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    dependent_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    relationship_type = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    guardian = relationship("User", foreign_keys=[guardian_id])
    dependent = relationship("User", foreign_keys=[dependent_id])


class EmailTemplate(Base):
    """Administrator override of a built-in notification template."""

    __tablename__ = "email_templates"

    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    subject = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    previous_subject = Column(String, nullable=True)
    previous_body = Column(Text, nullable=True)
    updated_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
