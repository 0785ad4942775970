"""Administrator portal.

Application review (status changes, proofs, medical certifications),
vouchers, vendor invoices and W9s, products, policies, the letter print
queue, user accounts, guardian relationships, email templates and
evaluator assignment.
"""

from __future__ import annotations

import io
import logging
import zipfile
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.api.dependencies import get_db_session, get_or_404, require_admin
from voucher_portal.core.config import settings
from voucher_portal.core.observability import sentry_set_tags
from voucher_portal.core.security import signed_document_url
from voucher_portal.models.enums import (
    ApplicationStatus,
    InvoiceStatus,
    PrintQueueStatus,
    ProofStatus,
    ProofSubmissionMethod,
    ProofType,
    UserType,
)
from voucher_portal.models.schemas import (
    ApplicationRead,
    ApplicationStatusChangeRead,
    BatchPrintRequest,
    EmailTemplateRead,
    EmailTemplateTestRequest,
    EmailTemplateTestResult,
    EmailTemplateUpdate,
    EvaluationCreate,
    EvaluationRead,
    GuardianRelationshipCreate,
    GuardianRelationshipRead,
    InvoiceGenerationResult,
    InvoicePaymentRequest,
    InvoiceRead,
    MedicalCertificationReview,
    PaperApplicationCreate,
    PolicyRead,
    PolicyUpdate,
    PrintQueueItemRead,
    ProductCreate,
    ProductRead,
    ProductUpdate,
    ProofReviewRequest,
    ProofReviewResult,
    StatusChangeRequest,
    TimelineEntry,
    UserCreate,
    UserRead,
    UserUpdate,
    VoucherCancelRequest,
    VoucherRead,
    W9ReviewRead,
    W9ReviewRequest,
)
from voucher_portal.models.tables import (
    Application,
    ApplicationStatusChange,
    GuardianRelationship,
    Invoice,
    Policy,
    PrintQueueItem,
    Product,
    User,
    Voucher,
)
from voucher_portal.services import evaluation_service, w9_service
from voucher_portal.services.application_service import ApplicationError, application_service
from voucher_portal.services.email_template_service import EmailTemplateError, email_template_service
from voucher_portal.services.event_deduplication import EventDeduplicationService
from voucher_portal.services.evaluation_service import EvaluationError
from voucher_portal.services.guardian_service import GuardianError, guardian_service
from voucher_portal.services.invoice_service import InvoiceError, invoice_service
from voucher_portal.services.letter_service import print_queue_service
from voucher_portal.services.policy_service import DEFAULT_POLICIES, policy_service
from voucher_portal.services.proof_attachment_service import ProofFile, ProofValidationError, proof_attachment_service
from voucher_portal.services.proof_review_service import ProofReviewService
from voucher_portal.services.storage_service import get_storage
from voucher_portal.services.user_service import UserError, create_user, validate_profile
from voucher_portal.services.voucher_service import VoucherError, voucher_service
from voucher_portal.services.w9_service import W9Error
from voucher_portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

timeline_service = EventDeduplicationService()


def _unprocessable(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


# ---------------------------------------------------------------------------
# Applications


@router.get("/applications", response_model=List[ApplicationRead])
async def list_applications(
    status_filter: Optional[ApplicationStatus] = None,
    limit: int = 100,
    offset: int = 0,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    return await application_service.list(db, status=status_filter, limit=min(limit, 500), offset=offset)


@router.post("/applications", response_model=ApplicationRead, status_code=status.HTTP_201_CREATED)
async def create_paper_application(
    payload: PaperApplicationCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Key in a paper or phone application on a constituent's behalf."""
    constituent = await get_or_404(db, User, payload.constituent_id, "Constituent")
    try:
        application = await application_service.create(
            db, constituent, payload, submit=True, actor=admin, submission_method=payload.submission_method
        )
    except ApplicationError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return application


@router.get("/applications/{application_id}", response_model=ApplicationRead)
async def get_application(
    application_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    return await get_or_404(db, Application, application_id, "Application")


@router.patch("/applications/{application_id}/status", response_model=ApplicationRead)
async def change_application_status(
    application_id: int,
    payload: StatusChangeRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    application = await get_or_404(db, Application, application_id, "Application")
    await application_service.change_status(db, application, payload.status, admin, notes=payload.notes)
    await db.commit()
    return application


@router.get("/applications/{application_id}/status_changes", response_model=List[ApplicationStatusChangeRead])
async def list_status_changes(
    application_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await get_or_404(db, Application, application_id, "Application")
    result = await db.execute(
        select(ApplicationStatusChange)
        .where(ApplicationStatusChange.application_id == application_id)
        .order_by(ApplicationStatusChange.changed_at.desc())
    )
    return list(result.scalars().all())


@router.get("/applications/{application_id}/timeline", response_model=List[TimelineEntry])
async def application_timeline(
    application_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    application = await get_or_404(db, Application, application_id, "Application")
    return await timeline_service.timeline(db, application)


@router.post("/applications/{application_id}/proofs", response_model=ApplicationRead)
async def attach_scanned_proof(
    application_id: int,
    proof_type: ProofType = Form(...),
    approve: bool = Form(False),
    file: UploadFile = File(...),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    """Attach a scanned paper document; ``approve`` records it already reviewed."""
    application = await get_or_404(db, Application, application_id, "Application")
    data = await file.read(settings.MAX_UPLOAD_SIZE + 1)
    proof = ProofFile(filename=file.filename or "scan", content_type=file.content_type or "", data=data)
    try:
        await proof_attachment_service.attach_proof(
            db,
            application,
            proof_type,
            proof,
            ProofSubmissionMethod.SCANNED,
            actor=admin,
            status=ProofStatus.APPROVED if approve else ProofStatus.NOT_REVIEWED,
        )
    except ProofValidationError as e:
        await db.rollback()
        raise HTTPException(status_code=422, detail={"error_type": e.error_type, "message": str(e)})
    if approve:
        await application_service.maybe_request_medical_certification(db, application, admin)
        await application_service.check_auto_approval(db, application, admin, trigger=f"proof_{proof_type.value}_scanned")
    await db.commit()
    return application


@router.post("/applications/{application_id}/proof_reviews", response_model=ProofReviewResult)
async def review_proof(
    application_id: int,
    payload: ProofReviewRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    application = await get_or_404(db, Application, application_id, "Application")
    sentry_set_tags({"application_id": application.id, "proof_type": payload.proof_type})
    result = await ProofReviewService(db, application, admin, payload.model_dump()).call()
    if not result.success:
        await db.rollback()
        raise HTTPException(status_code=422, detail=result.message)
    await db.commit()
    return ProofReviewResult(success=True, message=result.message, review=result.review)


@router.post("/applications/{application_id}/medical_certification/request", response_model=ApplicationRead)
async def request_medical_certification(
    application_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    application = await get_or_404(db, Application, application_id, "Application")
    try:
        await application_service.request_medical_certification(db, application, admin)
    except ApplicationError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return application


@router.post("/applications/{application_id}/medical_certification/review", response_model=ApplicationRead)
async def review_medical_certification(
    application_id: int,
    payload: MedicalCertificationReview,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    application = await get_or_404(db, Application, application_id, "Application")
    try:
        await application_service.review_medical_certification(
            db, application, admin, payload.status, payload.rejection_reason
        )
    except ApplicationError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return application


@router.get("/documents")
async def document_link(key: str, admin: User = Depends(require_admin)):
    """Short-lived signed download link for a stored document."""
    return {"url": signed_document_url(key, expires_in=600)}


# ---------------------------------------------------------------------------
# Vouchers


@router.post("/applications/{application_id}/voucher", response_model=VoucherRead, status_code=status.HTTP_201_CREATED)
async def issue_voucher(
    application_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    application = await get_or_404(db, Application, application_id, "Application")
    try:
        voucher = await voucher_service.issue(db, application, admin)
    except VoucherError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return voucher


@router.get("/vouchers", response_model=List[VoucherRead])
async def list_vouchers(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db_session)):
    result = await db.execute(select(Voucher).order_by(Voucher.issued_at.desc()).limit(500))
    return list(result.scalars().all())


@router.post("/vouchers/{voucher_id}/cancel", response_model=VoucherRead)
async def cancel_voucher(
    voucher_id: int,
    payload: VoucherCancelRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    voucher = await get_or_404(db, Voucher, voucher_id, "Voucher")
    try:
        await voucher_service.cancel(db, voucher, admin, payload.reason)
    except VoucherError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return voucher


# ---------------------------------------------------------------------------
# Invoices


@router.get("/invoices", response_model=List[InvoiceRead])
async def list_invoices(
    vendor_id: Optional[int] = None,
    status_filter: Optional[InvoiceStatus] = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    return await invoice_service.list(db, vendor_id=vendor_id, status=status_filter)


@router.post("/invoices/generate", response_model=InvoiceGenerationResult)
async def generate_invoices(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db_session)):
    invoices = await invoice_service.generate_all(db, actor=admin)
    await db.commit()
    return InvoiceGenerationResult(generated=len(invoices), invoice_ids=[i.id for i in invoices])


@router.post("/invoices/{invoice_id}/approve", response_model=InvoiceRead)
async def approve_invoice(
    invoice_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    invoice = await get_or_404(db, Invoice, invoice_id, "Invoice")
    try:
        await invoice_service.approve(db, invoice, admin)
    except InvoiceError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return invoice


@router.post("/invoices/{invoice_id}/pay", response_model=InvoiceRead)
async def record_invoice_payment(
    invoice_id: int,
    payload: InvoicePaymentRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    invoice = await get_or_404(db, Invoice, invoice_id, "Invoice")
    try:
        await invoice_service.mark_paid(db, invoice, admin, payload.gad_invoice_reference, payload.check_number, payload.notes)
    except InvoiceError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return invoice


@router.post("/invoices/{invoice_id}/cancel", response_model=InvoiceRead)
async def cancel_invoice(
    invoice_id: int,
    payload: VoucherCancelRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    invoice = await get_or_404(db, Invoice, invoice_id, "Invoice")
    try:
        await invoice_service.cancel(db, invoice, admin, payload.reason)
    except InvoiceError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return invoice


# ---------------------------------------------------------------------------
# Vendors and W9s


@router.get("/vendors", response_model=List[UserRead])
async def list_vendors(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db_session)):
    result = await db.execute(select(User).where(User.type == UserType.VENDOR).order_by(User.business_name))
    return list(result.scalars().all())


@router.post("/vendors/{vendor_id}/w9_reviews", response_model=W9ReviewRead)
async def review_w9(
    vendor_id: int,
    payload: W9ReviewRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    vendor = await get_or_404(db, User, vendor_id, "Vendor")
    try:
        review = await w9_service.review_w9(
            db, vendor, admin, payload.status, payload.rejection_reason_code, payload.rejection_reason
        )
    except W9Error as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return review


# ---------------------------------------------------------------------------
# Products


@router.get("/products", response_model=List[ProductRead])
async def list_products(
    include_archived: bool = False,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(Product).order_by(Product.name)
    if not include_archived:
        stmt = stmt.where(Product.archived_at.is_(None))
    return list((await db.execute(stmt)).scalars().all())


@router.post("/products", response_model=ProductRead, status_code=status.HTTP_201_CREATED)
async def create_product(
    payload: ProductCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    product = Product(**payload.model_dump())
    db.add(product)
    await db.commit()
    return product


@router.patch("/products/{product_id}", response_model=ProductRead)
async def update_product(
    product_id: int,
    payload: ProductUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    product = await get_or_404(db, Product, product_id, "Product")
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(product, field, value)
    await db.commit()
    return product


@router.post("/products/{product_id}/archive", response_model=ProductRead)
async def archive_product(
    product_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    product = await get_or_404(db, Product, product_id, "Product")
    product.archived_at = product.archived_at or utcnow()
    await db.commit()
    return product


# ---------------------------------------------------------------------------
# Policies


@router.get("/policies", response_model=List[PolicyRead])
async def list_policies(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db_session)):
    values = await policy_service.all(db)
    rows = {p.key: p for p in (await db.execute(select(Policy))).scalars().all()}
    return [
        PolicyRead(key=key, value=value, updated_at=rows[key].updated_at if key in rows else None)
        for key, value in sorted(values.items())
    ]


@router.put("/policies/{key}", response_model=PolicyRead)
async def update_policy(
    key: str,
    payload: PolicyUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    if key not in DEFAULT_POLICIES and await policy_service.get(db, key) is None:
        raise HTTPException(status_code=404, detail="Unknown policy")
    policy = await policy_service.set(db, key, payload.value, actor=admin)
    await db.commit()
    return policy


# ---------------------------------------------------------------------------
# Print queue


@router.get("/print_queue", response_model=List[PrintQueueItemRead])
async def list_print_queue(
    status_filter: Optional[PrintQueueStatus] = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    return await print_queue_service.list(db, status=status_filter)


@router.get("/print_queue/{item_id}/pdf")
async def download_letter(
    item_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    item = await get_or_404(db, PrintQueueItem, item_id, "Letter")
    if not item.pdf_key:
        raise HTTPException(status_code=404, detail="Letter has no PDF")
    return Response(
        content=get_storage().load(item.pdf_key),
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="letter_{item.id}.pdf"'},
    )


@router.post("/print_queue/{item_id}/printed", response_model=PrintQueueItemRead)
async def mark_letter_printed(
    item_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    item = await get_or_404(db, PrintQueueItem, item_id, "Letter")
    await print_queue_service.mark_printed(db, [item.id], admin)
    await db.commit()
    return item


@router.post("/print_queue/batch", response_model=List[PrintQueueItemRead])
async def mark_batch_printed(
    payload: BatchPrintRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    items = await print_queue_service.mark_printed(db, payload.letter_ids, admin)
    await db.commit()
    return items


@router.post("/print_queue/batch_download")
async def download_letter_batch(
    payload: BatchPrintRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    result = await db.execute(select(PrintQueueItem).where(PrintQueueItem.id.in_(payload.letter_ids)))
    items = [i for i in result.scalars().all() if i.pdf_key]
    if not items:
        raise HTTPException(status_code=404, detail="No letters found")
    storage = get_storage()
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for item in items:
            archive.writestr(f"letter_{item.id}_{item.letter_type}.pdf", storage.load(item.pdf_key))
    return Response(
        content=buffer.getvalue(),
        media_type="application/zip",
        headers={"Content-Disposition": 'attachment; filename="letters.zip"'},
    )


# ---------------------------------------------------------------------------
# Users


@router.get("/users", response_model=List[UserRead])
async def list_users(
    user_type: Optional[UserType] = None,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    stmt = select(User).order_by(User.last_name, User.first_name)
    if user_type is not None:
        stmt = stmt.where(User.type == user_type)
    return list((await db.execute(stmt)).scalars().all())


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def create_account(
    payload: UserCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    try:
        user = await create_user(db, payload, payload.type, password=payload.password, actor=admin)
    except UserError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return user


@router.patch("/users/{user_id}", response_model=UserRead)
async def update_account(
    user_id: int,
    payload: UserUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    user = await get_or_404(db, User, user_id, "User")
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(user, field, value)
    try:
        validate_profile(user)
    except UserError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return user


# ---------------------------------------------------------------------------
# Evaluations


@router.post("/evaluations", response_model=EvaluationRead, status_code=status.HTTP_201_CREATED)
async def assign_evaluation(
    payload: EvaluationCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    evaluator = await get_or_404(db, User, payload.evaluator_id, "Evaluator")
    application = await get_or_404(db, Application, payload.application_id, "Application")
    try:
        evaluation = await evaluation_service.assign(db, application, evaluator, admin, payload.evaluation_type)
    except EvaluationError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return evaluation


# ---------------------------------------------------------------------------
# Guardian relationships


@router.post(
    "/guardian_relationships", response_model=GuardianRelationshipRead, status_code=status.HTTP_201_CREATED
)
async def create_guardian_relationship(
    payload: GuardianRelationshipCreate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    guardian = await get_or_404(db, User, payload.guardian_id, "Guardian")
    dependent = await get_or_404(db, User, payload.dependent_id, "Dependent")
    try:
        link = await guardian_service.add_relationship(db, guardian, dependent, payload.relationship_type, actor=admin)
    except GuardianError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return link


@router.delete("/guardian_relationships/{relationship_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_guardian_relationship(
    relationship_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    link = await get_or_404(db, GuardianRelationship, relationship_id, "Guardian relationship")
    await guardian_service.remove_relationship(db, link, actor=admin)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Email templates


async def _template_or_404(db: AsyncSession, name: str):
    try:
        return await email_template_service.view(db, name)
    except KeyError:
        raise HTTPException(status_code=404, detail="Email template not found")


@router.get("/email_templates", response_model=List[EmailTemplateRead])
async def list_email_templates(admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db_session)):
    return await email_template_service.list(db)


@router.get("/email_templates/{name}", response_model=EmailTemplateRead)
async def get_email_template(name: str, admin: User = Depends(require_admin), db: AsyncSession = Depends(get_db_session)):
    return await _template_or_404(db, name)


@router.put("/email_templates/{name}", response_model=EmailTemplateRead)
async def update_email_template(
    name: str,
    payload: EmailTemplateUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await _template_or_404(db, name)
    try:
        await email_template_service.update(db, name, payload.subject, payload.body, admin, payload.description)
    except EmailTemplateError as e:
        await db.rollback()
        raise _unprocessable(e)
    await db.commit()
    return await email_template_service.view(db, name)


@router.post("/email_templates/{name}/test", response_model=EmailTemplateTestResult)
async def send_test_email(
    name: str,
    payload: EmailTemplateTestRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
):
    await _template_or_404(db, name)
    try:
        subject, body, message_id = await email_template_service.send_test(
            db, name, admin, to=payload.email, variables=payload.variables
        )
    except ValueError as e:
        raise _unprocessable(e)
    await db.commit()
    return EmailTemplateTestResult(subject=subject, body=body, message_id=message_id)
