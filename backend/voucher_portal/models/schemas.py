"""Pydantic schemas for request and response models.

Pydantic models validate and serialise data that crosses the boundary of
the API.  They are intentionally separate from the ORM models so the API can
expose a different shape than what is stored (for example, password digests
and storage keys are never returned).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, ConfigDict

from voucher_portal.utils.sanitization import sanitize_string, normalize_phone
from .enums import (
    UserType,
    UserStatus,
    CommunicationPreference,
    EmailStatus,
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
)


# ---------------------------------------------------------------------------
# Users & auth


class UserRead(BaseModel):
    id: int
    type: UserType
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    status: UserStatus
    email_status: EmailStatus
    communication_preference: CommunicationPreference
    physical_address_1: Optional[str] = None
    physical_address_2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    date_of_birth: Optional[date] = None
    hearing_disability: bool = False
    vision_disability: bool = False
    speech_disability: bool = False
    mobility_disability: bool = False
    cognition_disability: bool = False
    business_name: Optional[str] = None
    w9_status: Optional[W9Status] = None
    vendor_status: Optional[VendorStatus] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserBase(BaseModel):
    email: str
    first_name: str
    last_name: str
    phone: Optional[str] = None
    fax: Optional[str] = None
    communication_preference: CommunicationPreference = CommunicationPreference.EMAIL
    physical_address_1: Optional[str] = None
    physical_address_2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    date_of_birth: Optional[date] = None
    hearing_disability: bool = False
    vision_disability: bool = False
    speech_disability: bool = False
    mobility_disability: bool = False
    cognition_disability: bool = False

    @field_validator("email", mode="before")
    def normalize_email(cls, v):
        return sanitize_string(v).lower() if v is not None else v

    @field_validator("first_name", "last_name", "physical_address_1", "physical_address_2", "city", "state", mode="before")
    def sanitize_fields(cls, v):
        return sanitize_string(v) if v is not None else v

    @field_validator("phone", "fax", mode="before")
    def format_phone(cls, v):
        return normalize_phone(v)


class ConstituentRegistration(UserBase):
    password: str = Field(min_length=8)


class UserCreate(UserBase):
    """Admin-created account for any role."""

    type: UserType
    password: Optional[str] = Field(default=None, min_length=8)
    business_name: Optional[str] = None
    business_tax_id: Optional[str] = None


class DependentCreate(UserBase):
    """A dependent added by their guardian.

    Without ``email`` the dependent's mail goes to the guardian; blank
    address fields are copied from the guardian.
    """

    email: Optional[str] = None
    date_of_birth: date
    relationship_type: str = Field(min_length=1)


class DependentRead(UserRead):
    dependent_email: Optional[str] = None
    dependent_phone: Optional[str] = None
    relationship_type: Optional[str] = None


class GuardianRelationshipCreate(BaseModel):
    guardian_id: int
    dependent_id: int
    relationship_type: str = Field(min_length=1)


class GuardianRelationshipRead(BaseModel):
    id: int
    guardian_id: int
    dependent_id: int
    relationship_type: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    communication_preference: Optional[CommunicationPreference] = None
    physical_address_1: Optional[str] = None
    physical_address_2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    status: Optional[UserStatus] = None

    @field_validator("first_name", "last_name", "physical_address_1", "physical_address_2", "city", "state", mode="before")
    def sanitize_fields(cls, v):
        return sanitize_string(v) if v is not None else v

    @field_validator("phone", mode="before")
    def format_phone(cls, v):
        return normalize_phone(v)


class SignInRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserRead


class PasswordResetRequest(BaseModel):
    email: str


class PasswordResetConfirm(BaseModel):
    token: str
    password: str = Field(min_length=8)
    password_confirmation: str


class PasswordChange(BaseModel):
    password_challenge: str
    password: str = Field(min_length=8)
    password_confirmation: str


# ---------------------------------------------------------------------------
# Policies


class PolicyRead(BaseModel):
    key: str
    value: int
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PolicyUpdate(BaseModel):
    value: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Applications


class ApplicationBase(BaseModel):
    household_size: Optional[int] = Field(default=None, ge=1)
    annual_income: Optional[Decimal] = Field(default=None, ge=0)
    maryland_resident: bool = False
    self_certify_disability: bool = False
    medical_provider_name: Optional[str] = None
    medical_provider_phone: Optional[str] = None
    medical_provider_fax: Optional[str] = None
    medical_provider_email: Optional[str] = None

    @field_validator("medical_provider_name", mode="before")
    def sanitize_provider(cls, v):
        return sanitize_string(v) if v is not None else v

    @field_validator("medical_provider_email", mode="before")
    def normalize_provider_email(cls, v):
        return sanitize_string(v).lower() if v else v

    @field_validator("medical_provider_phone", "medical_provider_fax", mode="before")
    def format_phone(cls, v):
        return normalize_phone(v)


class ApplicationCreate(ApplicationBase):
    application_type: ApplicationType = ApplicationType.NEW
    submit: bool = False


class PaperApplicationCreate(ApplicationBase):
    """Application keyed in by an administrator on behalf of a constituent."""

    constituent_id: int
    submission_method: ApplicationSubmissionMethod = ApplicationSubmissionMethod.PAPER
    application_type: ApplicationType = ApplicationType.NEW


class ApplicationUpdate(ApplicationBase):
    pass


class ApplicationRead(BaseModel):
    id: int
    user_id: int
    managing_guardian_id: Optional[int] = None
    status: ApplicationStatus
    application_type: ApplicationType
    submission_method: ApplicationSubmissionMethod
    application_date: Optional[datetime] = None
    household_size: Optional[int] = None
    annual_income: Optional[Decimal] = None
    maryland_resident: bool
    medical_provider_name: Optional[str] = None
    medical_provider_phone: Optional[str] = None
    medical_provider_fax: Optional[str] = None
    medical_provider_email: Optional[str] = None
    income_proof_status: ProofStatus
    residency_proof_status: ProofStatus
    medical_certification_status: MedicalCertificationStatus
    total_rejections: int
    last_proof_submitted_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StatusChangeRequest(BaseModel):
    status: ApplicationStatus
    notes: Optional[str] = None


class ApplicationStatusChangeRead(BaseModel):
    id: int
    change_type: str
    from_status: Optional[str] = None
    to_status: str
    notes: Optional[str] = None
    user_id: Optional[int] = None
    changed_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Proofs


class ProofReviewRequest(BaseModel):
    proof_type: Optional[str] = None
    status: Optional[str] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None


class ProofReviewRead(BaseModel):
    id: int
    application_id: int
    admin_id: int
    proof_type: ProofType
    status: ReviewStatus
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None
    submission_method: Optional[ProofSubmissionMethod] = None
    reviewed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProofReviewResult(BaseModel):
    success: bool
    message: str
    review: Optional[ProofReviewRead] = None


class MedicalCertificationReview(BaseModel):
    status: ReviewStatus
    rejection_reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Vouchers


class VoucherRead(BaseModel):
    id: int
    code: str
    application_id: int
    vendor_id: Optional[int] = None
    status: VoucherStatus
    initial_value: Decimal
    remaining_value: Decimal
    issued_at: datetime
    last_used_at: Optional[datetime] = None
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class VoucherCancelRequest(BaseModel):
    reason: Optional[str] = None


class DobVerificationRequest(BaseModel):
    date_of_birth: str


class VerificationResultRead(BaseModel):
    success: bool
    message_key: str
    attempts_left: Optional[int] = None


class RedemptionRequest(BaseModel):
    amount: Decimal
    product_ids: List[int] = Field(default_factory=list)
    product_quantities: Dict[int, int] = Field(default_factory=dict)
    notes: Optional[str] = None

    @field_validator("notes", mode="before")
    def sanitize_notes(cls, v):
        return sanitize_string(v) if v is not None else v


class TransactionProductRead(BaseModel):
    product_id: int
    quantity: int

    model_config = ConfigDict(from_attributes=True)


class TransactionRead(BaseModel):
    id: int
    voucher_id: int
    vendor_id: int
    invoice_id: Optional[int] = None
    amount: Decimal
    transaction_type: TransactionType
    status: TransactionStatus
    reference_number: str
    notes: Optional[str] = None
    processed_at: datetime
    products: List[TransactionProductRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Invoices


class InvoiceRead(BaseModel):
    id: int
    vendor_id: int
    invoice_number: str
    status: InvoiceStatus
    start_date: datetime
    end_date: datetime
    total_amount: Decimal
    approved_at: Optional[datetime] = None
    payment_recorded_at: Optional[datetime] = None
    gad_invoice_reference: Optional[str] = None
    check_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoicePaymentRequest(BaseModel):
    gad_invoice_reference: str
    check_number: Optional[str] = None
    notes: Optional[str] = None


class InvoiceGenerationResult(BaseModel):
    generated: int
    invoice_ids: List[int]


# ---------------------------------------------------------------------------
# Notifications & letters


class NotificationRead(BaseModel):
    id: int
    action: str
    channel: NotificationChannel
    delivery_status: DeliveryStatus
    notifiable_type: Optional[str] = None
    notifiable_id: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    read_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PrintQueueItemRead(BaseModel):
    id: int
    constituent_id: int
    application_id: Optional[int] = None
    letter_type: str
    status: PrintQueueStatus
    printed_at: Optional[datetime] = None
    admin_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BatchPrintRequest(BaseModel):
    letter_ids: List[int]


# ---------------------------------------------------------------------------
# Products


class ProductCreate(BaseModel):
    name: str
    manufacturer: Optional[str] = None
    model_number: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    device_types: List[str] = Field(default_factory=list)

    @field_validator("name", "manufacturer", "model_number", mode="before")
    def sanitize_fields(cls, v):
        return sanitize_string(v) if v is not None else v


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    manufacturer: Optional[str] = None
    model_number: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    device_types: Optional[List[str]] = None


class ProductRead(ProductCreate):
    id: int
    archived_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Evaluations


class EvaluationCreate(BaseModel):
    evaluator_id: int
    application_id: int
    evaluation_type: EvaluationType = EvaluationType.INITIAL


class EvaluationSchedule(BaseModel):
    evaluation_date: datetime
    location: str
    reschedule_reason: Optional[str] = None


class Attendee(BaseModel):
    name: str
    relationship: str


class ProductTried(BaseModel):
    product_id: int
    reaction: str


class EvaluationComplete(BaseModel):
    location: str
    needs: str
    notes: str
    attendees: List[Attendee] = Field(min_length=1)
    products_tried: List[ProductTried] = Field(min_length=1)
    recommended_product_ids: List[int] = Field(min_length=1)
    evaluation_date: Optional[datetime] = None


class EvaluationRead(BaseModel):
    id: int
    evaluator_id: int
    constituent_id: int
    application_id: int
    status: EvaluationStatus
    evaluation_type: EvaluationType
    evaluation_date: Optional[datetime] = None
    location: Optional[str] = None
    needs: Optional[str] = None
    notes: Optional[str] = None
    attendees: List[Dict[str, Any]] = Field(default_factory=list)
    products_tried: List[Dict[str, Any]] = Field(default_factory=list)
    recommended_product_ids: List[int] = Field(default_factory=list)
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# W9 reviews


class W9ReviewRequest(BaseModel):
    status: ReviewStatus
    rejection_reason_code: Optional[W9RejectionReason] = None
    rejection_reason: Optional[str] = None


class W9ReviewRead(BaseModel):
    id: int
    vendor_id: int
    admin_id: int
    status: ReviewStatus
    rejection_reason_code: Optional[W9RejectionReason] = None
    rejection_reason: Optional[str] = None
    reviewed_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Audit


class EventRead(BaseModel):
    id: int
    user_id: Optional[int] = None
    action: str
    auditable_type: Optional[str] = None
    auditable_id: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TimelineEntry(BaseModel):
    kind: str
    action: str
    actor_id: Optional[int] = None
    occurred_at: datetime
    details: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Email templates


class EmailTemplateRead(BaseModel):
    name: str
    subject: str
    body: str
    description: Optional[str] = None
    version: int
    customized: bool
    required_variables: List[str] = Field(default_factory=list)
    previous_subject: Optional[str] = None
    previous_body: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class EmailTemplateUpdate(BaseModel):
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)
    description: Optional[str] = None


class EmailTemplateTestRequest(BaseModel):
    email: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)


class EmailTemplateTestResult(BaseModel):
    subject: str
    body: str
    message_id: Optional[str] = None
