"""Default message templates for notifications.

Each notification action maps to a subject and a plain text body.  The
same text is used for every channel: it is emailed as-is, rendered into a
PDF for faxes and printed letters.  Placeholders use ``str.format`` syntax;
unknown placeholders render as empty strings so a missing metadata key never
blocks a delivery.

Administrators may replace any subject and body with an edited copy
(``EmailTemplate`` rows); an edited body must keep the placeholders listed
in ``REQUIRED_VARIABLES``.
"""

from __future__ import annotations

from string import Formatter
from textwrap import dedent
from typing import Any, Dict, List, Optional, Set, Tuple


class _Blank(dict):
    def __missing__(self, key: str) -> str:
        return ""


_FOOTER = dedent(
    """

    Questions? Contact us at {support_email}.

    {organization_name}
    """
)

TEMPLATES: Dict[str, Tuple[str, str]] = {
    "account_created": (
        "Your {organization_name} account",
        "Hello {first_name},\n\nAn account has been created for you. Sign in at {portal_url} to get started.",
    ),
    "password_reset": (
        "Reset your password",
        "Hello {first_name},\n\nUse the link below to choose a new password. It expires in {expires_minutes} minutes.\n\n{reset_url}\n\nIf you did not ask for this, you can ignore this message.",
    ),
    "application_submitted": (
        "We received your application #{application_id}",
        "Hello {first_name},\n\nThank you for applying. We will review your application and supporting documents and contact you with next steps.",
    ),
    "application_status_changed": (
        "Application #{application_id} update",
        "Hello {first_name},\n\nThe status of your application changed from {from_status} to {to_status}.\n\n{notes}",
    ),
    "application_approved": (
        "Your application #{application_id} is approved",
        "Hello {first_name},\n\nCongratulations, your application has been approved. You will receive your voucher details separately.",
    ),
    "income_threshold_exceeded": (
        "Application #{application_id}: income above program limit",
        "Hello {first_name},\n\nThe annual income you reported ({annual_income}) is above the program limit of {threshold} for a household of {household_size}. Your application cannot be approved.",
    ),
    "proof_received": (
        "We received your {proof_type} document",
        "Hello {first_name},\n\nWe received your {proof_type} proof for application #{application_id}. It will be reviewed shortly.",
    ),
    "proof_approved": (
        "Your {proof_type} proof was approved",
        "Hello {first_name},\n\nYour {proof_type} proof for application #{application_id} has been approved.",
    ),
    "proof_rejected": (
        "Your {proof_type} proof needs attention",
        "Hello {first_name},\n\nYour {proof_type} proof for application #{application_id} could not be accepted.\n\nReason: {rejection_reason}\n\nPlease submit a new document. You have {remaining_attempts} submissions remaining.",
    ),
    "proof_submission_error": (
        "We could not process your emailed documents",
        "Hello,\n\nWe could not process the documents you emailed.\n\n{error_message}",
    ),
    "max_rejections_warning": (
        "Application #{application_id}: final document submission",
        "Application #{application_id} has had its documents rejected {total_rejections} times. One more rejection will archive it.",
    ),
    "max_rejections_reached": (
        "Application #{application_id} archived",
        "Hello {first_name},\n\nYour application has been archived because the maximum number of document rejections was reached. You may reapply after {reapply_date}.",
    ),
    "medical_certification_requested": (
        "Disability certification request for {constituent_name}",
        "Hello {provider_name},\n\n{constituent_name} has applied to our program and listed you as their medical provider. Please complete the disability certification form and reply to {certification_email} with the signed document attached. Include 'Application #{application_id}' in the subject.",
    ),
    "medical_certification_received": (
        "We received your disability certification",
        "Hello {first_name},\n\nWe received the disability certification from your medical provider for application #{application_id}.",
    ),
    "medical_certification_approved": (
        "Disability certification approved",
        "Hello {first_name},\n\nThe disability certification for application #{application_id} has been approved.",
    ),
    "medical_certification_rejected": (
        "Disability certification needs attention",
        "Hello {first_name},\n\nThe disability certification for application #{application_id} could not be accepted.\n\nReason: {rejection_reason}",
    ),
    "voucher_assigned": (
        "Your voucher {voucher_code}",
        "Hello {first_name},\n\nYour voucher {voucher_code} worth {voucher_value} has been issued. It expires on {expiration_date}. Bring it to an approved vendor to purchase equipment.",
    ),
    "voucher_redeemed": (
        "Voucher {voucher_code} used",
        "Hello {first_name},\n\n{amount} was redeemed from voucher {voucher_code} by {vendor_name}. Remaining balance: {remaining_value}.",
    ),
    "voucher_expiring_soon": (
        "Voucher {voucher_code} expires in {days_remaining} days",
        "Hello {first_name},\n\nYour voucher {voucher_code} expires on {expiration_date}. Remaining balance: {remaining_value}.",
    ),
    "voucher_expiring_today": (
        "Voucher {voucher_code} expires today",
        "Hello {first_name},\n\nYour voucher {voucher_code} expires today. Remaining balance: {remaining_value}.",
    ),
    "voucher_expired": (
        "Voucher {voucher_code} has expired",
        "Hello {first_name},\n\nYour voucher {voucher_code} expired on {expiration_date}. The unused balance of {remaining_value} is no longer available.",
    ),
    "vouchers_expired_report": (
        "Vouchers expired with unused balance",
        "{count} vouchers expired yesterday with a combined unused balance of {total_remaining}.\n\n{voucher_lines}",
    ),
    "invoice_generated": (
        "Invoice {invoice_number} generated",
        "Hello {first_name},\n\nInvoice {invoice_number} for {total_amount} covering {start_date} to {end_date} ({transaction_count} transactions) has been generated and is pending review.",
    ),
    "invoice_ready_for_review": (
        "Invoice {invoice_number} ready for review",
        "Invoice {invoice_number} for {vendor_name} totalling {total_amount} is ready for review.",
    ),
    "payment_issued": (
        "Payment issued for invoice {invoice_number}",
        "Hello {first_name},\n\nPayment for invoice {invoice_number} ({total_amount}) has been issued. Reference: {gad_invoice_reference}. Check number: {check_number}.",
    ),
    "w9_approved": (
        "Your W9 has been approved",
        "Hello {first_name},\n\nYour W9 for {business_name} has been approved. You can now process vouchers.",
    ),
    "w9_rejected": (
        "Your W9 needs attention",
        "Hello {first_name},\n\nYour W9 for {business_name} could not be accepted.\n\nReason: {rejection_reason}\n\nPlease upload a corrected form.",
    ),
    "evaluator_assigned": (
        "New evaluation assigned",
        "Hello {first_name},\n\nYou have been assigned to evaluate {constituent_name} (application #{application_id}).",
    ),
    "evaluation_scheduled": (
        "Your evaluation is scheduled",
        "Hello {first_name},\n\nYour assistive technology evaluation is scheduled for {evaluation_date} at {location}.",
    ),
    "evaluation_completed": (
        "Your evaluation is complete",
        "Hello {first_name},\n\nYour evaluation has been completed. Recommended products: {recommended_products}.",
    ),
    "requested_additional_info": (
        "More information needed for your evaluation",
        "Hello {first_name},\n\nYour evaluator needs more information before your evaluation can be completed. Please contact {support_email}.",
    ),
    "certification_submission_error": (
        "We could not process your certification for application #{application_id}",
        "Hello,\n\nWe could not process the medical certification you emailed.\n\n{error_message}",
    ),
}

# Placeholders an edited template must keep.
REQUIRED_VARIABLES: Dict[str, Tuple[str, ...]] = {
    "account_created": ("portal_url",),
    "password_reset": ("reset_url",),
    "income_threshold_exceeded": ("annual_income", "threshold", "household_size"),
    "proof_rejected": ("proof_type", "rejection_reason"),
    "proof_submission_error": ("error_message",),
    "max_rejections_reached": ("reapply_date",),
    "medical_certification_requested": ("constituent_name", "application_id", "certification_email"),
    "medical_certification_rejected": ("application_id", "rejection_reason"),
    "voucher_assigned": ("voucher_code", "voucher_value", "expiration_date"),
    "invoice_generated": ("invoice_number", "total_amount"),
    "payment_issued": ("invoice_number", "gad_invoice_reference"),
    "w9_rejected": ("business_name", "rejection_reason"),
    "certification_submission_error": ("error_message",),
}

GENERIC_TEMPLATE = ("{organization_name} notification", "Hello {first_name},\n\nThere is an update on your account: {action}.")


def placeholders(text: str) -> Set[str]:
    """Field names used in ``text``.

    Raises ``ValueError`` for malformed braces and for anything but a plain
    name (``{}``, ``{0}``, ``{user.email}``).
    """
    names = set()
    for _, field, _, _ in Formatter().parse(text):
        if field is None:
            continue
        if not field.isidentifier():
            raise ValueError(f"Invalid placeholder {{{field}}}")
        names.add(field)
    return names


def missing_required(action: str, body: str) -> List[str]:
    found = placeholders(body)
    return [name for name in REQUIRED_VARIABLES.get(action, ()) if name not in found]


def render(action: str, context: Dict[str, Any], template: Optional[Tuple[str, str]] = None) -> Tuple[str, str]:
    """Return ``(subject, body)`` for ``action`` rendered with ``context``.

    ``template`` replaces the built-in subject and body with an
    administrator's edited copy.
    """
    subject_tpl, body_tpl = template or TEMPLATES.get(action, GENERIC_TEMPLATE)
    values = _Blank({k: "" if v is None else v for k, v in context.items()})
    values.setdefault("action", action.replace("_", " "))
    fmt = Formatter()
    subject = fmt.vformat(subject_tpl, (), values)
    body = fmt.vformat(body_tpl + _FOOTER, (), values).strip()
    return subject, body


__all__ = ["REQUIRED_VARIABLES", "TEMPLATES", "missing_required", "placeholders", "render"]
