"""
SMTP Mail Gateway

Sends plain-text mail through smtplib. Only metadata (recipient, subject) is
logged, never the body, which carries account links.
"""

import logging
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Optional

from coffeeshop.core.config import settings
from coffeeshop.core.errors import TransientExternalError

logger = logging.getLogger(__name__)


class Mailer(ABC):
    @abstractmethod
    def send(self, recipient: str, subject: str, body: str) -> None:
        """Deliver one message."""


class SMTPMailer(Mailer):
    """SMTP implementation of Mailer. Opens one connection per message."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        use_tls: Optional[bool] = None,
        timeout: Optional[int] = None,
    ):
        self.host = host or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.username = username if username is not None else settings.SMTP_USERNAME
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.sender = sender or settings.SMTP_SENDER
        self.use_tls = settings.SMTP_USE_TLS if use_tls is None else use_tls
        self.timeout = timeout or settings.SMTP_TIMEOUT

    def build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient
        msg["Subject"] = subject
        msg.set_content(body)
        return msg

    def send(self, recipient: str, subject: str, body: str) -> None:
        msg = self.build_message(recipient, subject, body)

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.ehlo()
                if self.use_tls:
                    smtp.starttls()
                    smtp.ehlo()

                if self.username and self.password:
                    smtp.login(self.username, self.password)

                smtp.send_message(msg)

        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                f"Mail delivery failed: {e}",
                extra={"recipient": recipient, "subject": subject},
            )
            raise TransientExternalError(
                f"Failed to send mail to {recipient}",
                service="smtp",
                operation="send",
                original_error=e,
            )

        logger.info(
            "Mail sent",
            extra={"recipient": recipient, "subject": subject},
        )
