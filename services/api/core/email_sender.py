# services/api/core/email_sender.py
from __future__ import annotations
import asyncio
import aiosmtplib
from dataclasses import dataclass, field
from email.mime.image import MIMEImage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid, parseaddr
from typing import List, Optional
import logging

from core.errors import NotificationError

logger = logging.getLogger(__name__)


@dataclass
class InlineImage:
    content_id: str   # referenced from the HTML as cid:<content_id>
    filename: str
    data: bytes


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    text: str
    html: str
    images: List[InlineImage] = field(default_factory=list)


def classify_smtp_error(err: BaseException) -> NotificationError:
    """Map a transport failure onto a NotificationError with a distinct message per kind."""
    if isinstance(err, (aiosmtplib.SMTPTimeoutError, asyncio.TimeoutError)):
        return NotificationError(
            "Email server took too long to respond. Please try again later.",
            kind=NotificationError.TIMEOUT,
        )
    if isinstance(err, (aiosmtplib.SMTPConnectError, ConnectionRefusedError)):
        return NotificationError(
            "Could not connect to the email server. Please check the SMTP configuration.",
            kind=NotificationError.CONNECTION_REFUSED,
        )
    if isinstance(err, aiosmtplib.SMTPAuthenticationError):
        return NotificationError(
            "Email server rejected the login credentials.",
            kind=NotificationError.AUTH_FAILED,
        )
    if isinstance(err, (aiosmtplib.SMTPServerDisconnected, OSError)):
        return NotificationError(
            f"Connection to the email server was interrupted: {err}",
            kind=NotificationError.SOCKET,
        )
    return NotificationError(f"Failed to send email: {err}", kind=NotificationError.GENERIC)


class SmtpMailer:
    """
    Sends multipart (text + HTML, optional inline images) mail via aiosmtplib.
    SMTP_SECURE=true means implicit TLS, otherwise STARTTLS.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str,
        password: str,
        sender: str,
        secure: bool = False,
        timeout: float = 25.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.secure = secure
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "SmtpMailer":
        return cls(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_pass,
            sender=settings.sender_address(),
            secure=settings.smtp_secure,
            timeout=settings.smtp_timeout,
        )

    def build_message(self, email: OutgoingEmail) -> MIMEMultipart:
        _, sender_addr = parseaddr(self.sender)
        domain = sender_addr.split("@")[-1] if "@" in sender_addr else None

        msg = MIMEMultipart("related")
        msg["From"] = self.sender
        msg["To"] = email.to
        msg["Subject"] = email.subject
        msg["Date"] = formatdate(localtime=False)
        msg["Message-ID"] = make_msgid(domain=domain)

        body = MIMEMultipart("alternative")
        body.attach(MIMEText(email.text, "plain", "utf-8"))
        body.attach(MIMEText(email.html, "html", "utf-8"))
        msg.attach(body)

        for image in email.images:
            part = MIMEImage(image.data, _subtype="png")
            part.add_header("Content-ID", f"<{image.content_id}>")
            part.add_header("Content-Disposition", f'inline; filename="{image.filename}"')
            msg.attach(part)
        return msg

    async def send(self, email: OutgoingEmail) -> str:
        """
        Send the message and return its Message-ID.

        Raises:
            NotificationError: with a kind describing the transport failure
        """
        msg = self.build_message(email)
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                use_tls=self.secure,
                start_tls=not self.secure,
                timeout=self.timeout,
            )
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            error = classify_smtp_error(e)
            logger.error(f"✗ Email send failed to {email.to} ({error.kind}): {e}")
            raise error from e

        logger.info(f"✓ Email sent to {email.to} with {len(email.images)} inline images")
        return msg["Message-ID"]
