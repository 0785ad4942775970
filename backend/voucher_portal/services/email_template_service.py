"""Administrator-editable notification templates.

Every notification action has a built-in subject and body in
``utils.templates``.  Saving an edit stores an ``EmailTemplate`` row that
replaces the built-in text for that action; each later change bumps
``version`` and keeps the text it replaced in ``previous_subject`` /
``previous_body``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_portal.core.config import settings
from voucher_portal.models.tables import EmailTemplate, User
from voucher_portal.services.audit_service import audit_service
from voucher_portal.services.mail_service import MailService
from voucher_portal.utils.templates import REQUIRED_VARIABLES, TEMPLATES, missing_required, placeholders, render

logger = logging.getLogger(__name__)


class EmailTemplateError(Exception):
    pass


@dataclass
class TemplateView:
    name: str
    subject: str
    body: str
    description: Optional[str]
    version: int
    customized: bool
    required_variables: List[str]
    previous_subject: Optional[str] = None
    previous_body: Optional[str] = None


def _base_context() -> Dict[str, str]:
    return {
        "organization_name": settings.ORGANIZATION_NAME,
        "support_email": settings.SUPPORT_EMAIL,
        "portal_url": settings.FRONTEND_BASE_URL,
    }


def validate_template(name: str, subject: str, body: str) -> None:
    if not subject or not subject.strip():
        raise EmailTemplateError("Subject can't be blank")
    if not body or not body.strip():
        raise EmailTemplateError("Body can't be blank")
    try:
        placeholders(subject)
        missing = missing_required(name, body)
    except ValueError as e:
        raise EmailTemplateError(str(e)) from e
    if missing:
        raise EmailTemplateError("Body must include " + ", ".join("{%s}" % v for v in missing))


def render_template(name: str, subject: str, body: str, variables: Dict[str, object]) -> Tuple[str, str]:
    """Render strictly: every required variable must be supplied."""
    missing = [v for v in REQUIRED_VARIABLES.get(name, ()) if v not in variables]
    if missing:
        raise ValueError(f"Missing required variables for template '{name}': {', '.join(missing)}")
    return render(name, {**_base_context(), **variables}, (subject, body))


def sample_variables(subject: str, body: str) -> Dict[str, str]:
    return {name: f"[{name}]" for name in sorted(placeholders(subject) | placeholders(body))}


class EmailTemplateService:
    def __init__(self, mailer: Optional[MailService] = None) -> None:
        self._mailer = mailer

    @property
    def mailer(self) -> MailService:
        return self._mailer or MailService()

    async def get(self, db: AsyncSession, name: str) -> Optional[EmailTemplate]:
        result = await db.execute(select(EmailTemplate).where(EmailTemplate.name == name))
        return result.scalar_one_or_none()

    async def override_for(self, db: AsyncSession, name: str) -> Optional[Tuple[str, str]]:
        template = await self.get(db, name)
        return (template.subject, template.body) if template is not None else None

    async def view(self, db: AsyncSession, name: str) -> TemplateView:
        if name not in TEMPLATES:
            raise KeyError(name)
        return self._view(name, await self.get(db, name))

    async def list(self, db: AsyncSession) -> List[TemplateView]:
        stored = {t.name: t for t in (await db.execute(select(EmailTemplate))).scalars().all()}
        return [self._view(name, stored.get(name)) for name in sorted(TEMPLATES)]

    def _view(self, name: str, template: Optional[EmailTemplate]) -> TemplateView:
        required = list(REQUIRED_VARIABLES.get(name, ()))
        if template is None:
            subject, body = TEMPLATES[name]
            return TemplateView(name, subject, body, None, 1, False, required)
        return TemplateView(
            name,
            template.subject,
            template.body,
            template.description,
            template.version,
            True,
            required,
            template.previous_subject,
            template.previous_body,
        )

    async def update(
        self,
        db: AsyncSession,
        name: str,
        subject: str,
        body: str,
        actor: User,
        description: Optional[str] = None,
    ) -> EmailTemplate:
        """Save an edited subject and body for ``name``.

        The first edit starts at version 1 with the built-in text as the
        previous content.
        """
        if name not in TEMPLATES:
            raise EmailTemplateError(f"Unknown template {name}")
        validate_template(name, subject, body)

        template = await self.get(db, name)
        if template is None:
            default_subject, default_body = TEMPLATES[name]
            template = EmailTemplate(
                name=name,
                subject=subject,
                body=body,
                description=description,
                version=1,
                previous_subject=default_subject,
                previous_body=default_body,
                updated_by_id=actor.id,
            )
            db.add(template)
            changed = ["subject", "body"]
        else:
            changed = [f for f, v in (("subject", subject), ("body", body)) if getattr(template, f) != v]
            if changed:
                template.previous_subject = template.subject
                template.previous_body = template.body
                template.subject = subject
                template.body = body
                template.version += 1
            if description is not None:
                template.description = description
            template.updated_by_id = actor.id
        await db.flush()

        await audit_service.log_safely(
            db,
            action="email_template_updated",
            actor=actor,
            auditable=template,
            metadata={"name": name, "version": template.version, "changed": changed},
        )
        logger.info("[templates] %s saved at version %s by user %s", name, template.version, actor.id)
        return template

    async def preview(
        self, db: AsyncSession, name: str, variables: Optional[Dict[str, object]] = None
    ) -> Tuple[str, str]:
        """Render ``name`` with sample values for anything not in ``variables``."""
        view = await self.view(db, name)
        values = {**sample_variables(view.subject, view.body), **_base_context(), **(variables or {})}
        return render_template(name, view.subject, view.body, values)

    async def send_test(
        self,
        db: AsyncSession,
        name: str,
        actor: User,
        to: Optional[str] = None,
        variables: Optional[Dict[str, object]] = None,
    ) -> Tuple[str, str, str]:
        """Email a rendered preview; returns ``(subject, body, message_id)``."""
        subject, body = await self.preview(db, name, variables)
        address = to or actor.email
        message_id = await self.mailer.send(address, f"[TEST] {subject}", body, tag="email_template_test")
        await audit_service.log_safely(
            db,
            action="email_template_test_sent",
            actor=actor,
            metadata={"name": name, "to": address},
        )
        return subject, body, message_id


email_template_service = EmailTemplateService()

__all__ = [
    "EmailTemplateError",
    "EmailTemplateService",
    "TemplateView",
    "email_template_service",
    "render_template",
    "sample_variables",
    "validate_template",
]
