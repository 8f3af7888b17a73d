"""
alerts/notifier.py -- Outbound delivery of rendered digests.

The dispatcher only knows the Notifier protocol. SmtpNotifier is the real
transport; LogNotifier records the message in the log and is the default
when SMTP_HOST is not configured (local development, tests).

A transport failure is raised as DeliveryError, never swallowed, so the
dispatcher can leave the affected alerts unsent.
"""

import logging
import smtplib
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from core.config import Settings
from core.errors import DeliveryError

logger = logging.getLogger("posturewatch.digest")


@dataclass
class DigestMessage:
    to: str
    subject: str
    text_body: str
    html_body: str
    alert_ids: list[int] = field(default_factory=list)


class Notifier(Protocol):
    def send(self, message: DigestMessage) -> None: ...


class LogNotifier:
    """Write the digest to the log instead of sending it. Keeps a copy in .sent."""

    def __init__(self) -> None:
        self.sent: list[DigestMessage] = []

    def send(self, message: DigestMessage) -> None:
        logger.info("Digest for %s: %s (%d alerts)", message.to, message.subject, len(message.alert_ids))
        self.sent.append(message)


class SmtpNotifier:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        from_addr: str = "",
        use_tls: bool = True,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_addr = from_addr
        self.use_tls = use_tls
        self.timeout = timeout

    def _build(self, message: DigestMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.from_addr
        msg["To"] = message.to
        # Plain text first: clients render the last part they understand.
        msg.attach(MIMEText(message.text_body, "plain", "utf-8"))
        msg.attach(MIMEText(message.html_body, "html", "utf-8"))
        return msg

    def send(self, message: DigestMessage) -> None:
        msg = self._build(message)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(msg, to_addrs=[message.to])
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP delivery failed: {type(e).__name__}") from e


def notifier_from_settings(settings: Settings) -> Notifier:
    """SmtpNotifier when SMTP_HOST is set, otherwise LogNotifier."""
    if settings.smtp_host:
        return SmtpNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            from_addr=settings.mail_from,
            use_tls=settings.smtp_use_tls,
        )
    logger.warning("SMTP_HOST not set; digests will be written to the log only.")
    return LogNotifier()
