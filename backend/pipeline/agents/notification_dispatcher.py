"""
Notification Dispatcher
=======================
Builds the outbound email for a paid submission and sends it through an
injected mail transport:
- Recipient from the submission fields, or a fixed operator address
- Subject/body templated from fields
- Every staged attachment, in order, plus a generated submission summary
- DeliveryResult returned to the caller; failures raise DeliveryError

pip install sendgrid reportlab structlog
"""

import asyncio
import base64
import uuid
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Dict, List, Optional
from urllib.error import URLError

import structlog
from python_http_client.exceptions import HTTPError
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import (
    Attachment as MailAttachment,
    Disposition,
    FileContent,
    FileName,
    FileType,
    Mail,
    ReplyTo,
)

from pipeline.errors import DeliveryError
from schemas.submission import Attachment, DeliveryResult, OutboundMessage, Submission


# Stripe's zero-decimal currencies; amounts are already whole units
ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}

SUMMARY_FILENAME = "submission.pdf"


def format_amount(amount: int, currency: str) -> str:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return f"{amount} {currency.upper()}"
    return f"{amount / 100:.2f} {currency.upper()}"


class _Fields(dict):
    """Template mapping; unknown placeholders render empty."""

    def __missing__(self, key):
        return ""


# =============================================================================
# MAIL TRANSPORTS
# =============================================================================

class MailTransport(ABC):
    """Single capability: send one message with attachments, return its id."""

    @abstractmethod
    async def send(self, message: OutboundMessage) -> str:
        pass


class InMemoryMailTransport(MailTransport):
    """Records messages instead of sending them (tests, unconfigured dev)."""

    def __init__(self):
        self.outbox: List[OutboundMessage] = []

    async def send(self, message: OutboundMessage) -> str:
        self.outbox.append(message)
        return f"mem-{uuid.uuid4().hex[:16]}"


class SendGridMailTransport(MailTransport):
    """SendGrid v3 Mail Send; the blocking client call runs in a worker thread."""

    def __init__(self, api_key: str, client: Optional[SendGridAPIClient] = None):
        self._client = client or SendGridAPIClient(api_key)
        self._logger = structlog.get_logger().bind(component="sendgrid_transport")

    @staticmethod
    def to_mail(message: OutboundMessage) -> Mail:
        mail = Mail(
            from_email=message.from_email,
            to_emails=message.to,
            subject=message.subject,
            plain_text_content=message.body,
        )
        if message.reply_to:
            mail.reply_to = ReplyTo(message.reply_to)
        for attachment in message.attachments:
            mail.add_attachment(MailAttachment(
                FileContent(base64.b64encode(attachment.content).decode("ascii")),
                FileName(attachment.filename),
                FileType(attachment.content_type),
                Disposition("attachment"),
            ))

        # Never send a message missing any staged attachment
        if len(mail.attachments or []) != len(message.attachments):
            raise DeliveryError("Outbound message is missing attachments", retryable=False)
        return mail

    async def send(self, message: OutboundMessage) -> str:
        mail = self.to_mail(message)
        try:
            response = await asyncio.to_thread(self._client.send, mail)
        except HTTPError as e:
            raise DeliveryError(f"SendGrid rejected message: {e}") from e
        except (URLError, OSError) as e:
            raise DeliveryError(f"SendGrid unreachable: {e}") from e

        if response.status_code >= 400:
            raise DeliveryError(f"SendGrid returned HTTP {response.status_code}")

        message_id = response.headers.get("X-Message-Id") if response.headers else None
        return message_id or f"sg-{uuid.uuid4().hex[:16]}"


# =============================================================================
# TEMPLATES
# =============================================================================

class MessageTemplate:
    """Subject/body templates filled from submission fields."""

    SUBJECT = "Form Submission Received"
    GREETING = "Thank you for your submission, {firstName} {lastName}!"

    def __init__(self, subject: str = SUBJECT, greeting: str = GREETING):
        self.subject = subject
        self.greeting = greeting

    def render_subject(self, submission: Submission) -> str:
        return self.subject.format_map(_Fields(submission.fields)).strip()

    def render_body(self, submission: Submission) -> str:
        fields = _Fields(submission.fields)
        lines = [
            " ".join(self.greeting.format_map(fields).split()),
            "",
            f"Reference: {submission.id}",
            f"Amount paid: {format_amount(submission.amount, submission.currency)}",
            "",
        ]
        lines.extend(f"{key}: {value}" for key, value in submission.fields.items())
        if submission.attachments:
            lines.append("")
            lines.append("Attached files:")
            lines.extend(f"- {a.filename}" for a in submission.attachments)
        return "\n".join(lines) + "\n"

    def render_summary(self, submission: Submission) -> Attachment:
        """Synthesized confirmation PDF built from the fields."""
        lines = [
            f"Reference: {submission.id}",
            f"Submitted: {submission.created_at.isoformat()}",
            f"Paid: {submission.paid_at.isoformat() if submission.paid_at else '-'}",
            f"Amount: {format_amount(submission.amount, submission.currency)}",
            "",
        ]
        lines.extend(f"{key}: {value}" for key, value in submission.fields.items())

        buffer = BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4)
        pdf.setTitle(f"Submission {submission.id}")
        width, height = A4
        y = height - 60
        pdf.setFont("Helvetica-Bold", 14)
        pdf.drawString(50, y, "Submission Summary")
        y -= 28
        pdf.setFont("Helvetica", 10)
        for line in lines:
            # long field values wrap onto continuation lines
            chunks = [line[i:i + 100] for i in range(0, len(line), 100)] or [""]
            for chunk in chunks:
                if y < 60:
                    pdf.showPage()
                    pdf.setFont("Helvetica", 10)
                    y = height - 60
                pdf.drawString(50, y, chunk)
                y -= 14
        pdf.save()

        return Attachment(
            name="summary",
            filename=SUMMARY_FILENAME,
            content_type="application/pdf",
            content=buffer.getvalue(),
        )


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """
    Sends one message per submission and reports the outcome synchronously.

    The transport refuses a message missing any staged attachment.
    """

    def __init__(
        self,
        transport: MailTransport,
        from_email: str,
        operator_email: Optional[str] = None,
        recipient_field: str = "email",
        template: Optional[MessageTemplate] = None,
        include_summary: bool = True,
    ):
        self.transport = transport
        self.from_email = from_email
        self.operator_email = operator_email or None
        self.recipient_field = recipient_field
        self.template = template or MessageTemplate()
        self.include_summary = include_summary
        self._logger = structlog.get_logger().bind(component="notification_dispatcher")

    def resolve_recipient(self, fields: Dict[str, str]) -> Optional[str]:
        if self.operator_email:
            return self.operator_email
        recipient = (fields.get(self.recipient_field) or "").strip()
        return recipient if "@" in recipient else None

    def build_message(self, submission: Submission) -> OutboundMessage:
        recipient = self.resolve_recipient(submission.fields)
        if not recipient:
            raise DeliveryError(
                f"No recipient: field '{self.recipient_field}' missing or invalid",
                submission_id=submission.id,
                retryable=False,
            )

        attachments = list(submission.attachments)
        if self.include_summary:
            attachments.append(self.template.render_summary(submission))

        reply_to = None
        if self.operator_email:
            applicant = (submission.fields.get(self.recipient_field) or "").strip()
            reply_to = applicant if "@" in applicant else None

        return OutboundMessage(
            to=recipient,
            from_email=self.from_email,
            subject=self.template.render_subject(submission),
            body=self.template.render_body(submission),
            attachments=attachments,
            reply_to=reply_to,
        )

    async def send(self, submission: Submission) -> DeliveryResult:
        log = self._logger.bind(submission_id=submission.id)
        message = self.build_message(submission)

        try:
            message_id = await self.transport.send(message)
        except DeliveryError as e:
            e.submission_id = submission.id
            log.error("notification_failed", error=e.message, retryable=e.retryable)
            raise
        except Exception as e:
            log.error("notification_failed", error=str(e), error_type=type(e).__name__)
            raise DeliveryError(f"Mail transport error: {e}", submission_id=submission.id) from e

        log.info(
            "notification_sent",
            message_id=message_id,
            attachment_count=len(message.attachments),
        )
        return DeliveryResult(
            submission_id=submission.id,
            message_id=message_id,
            recipient=message.to,
            attachment_count=len(message.attachments),
        )
