"""SMTP delivery channel.

Sends one message per connection and translates every failure into a
:class:`~notiflow.core.errors.NotifyError` whose kind tells the worker
whether the attempt may be retried:

- 5xx rejection of the recipient or of the message data -> ``CLIENT``
  (permanent, dead-lettered)
- everything else (connection refused, timeouts, 4xx, authentication)
  -> ``TRANSIENT`` (retried)
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING

from notiflow.core.errors import NotifyError

if TYPE_CHECKING:
    from notiflow.config.settings import SmtpSettings

log = logging.getLogger(__name__)


def _decode(reply: bytes | str) -> str:
    if isinstance(reply, bytes):
        return reply.decode("utf-8", "replace")
    return str(reply)


def _is_permanent(code: int | None) -> bool:
    return code is not None and 500 <= code < 600


def classify_smtp_error(exc: Exception, recipient: str) -> NotifyError:
    """Map an smtplib/socket failure onto a retriable or permanent error."""
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        code, reply = exc.recipients.get(recipient, (None, b""))
        text = _decode(reply)
        if _is_permanent(code):
            return NotifyError.client(
                f"Recipient {recipient} rejected: {code} {text}",
                smtp_code=code,
            )
        return NotifyError.transient(
            f"Recipient {recipient} temporarily refused: {code} {text}",
            smtp_code=code,
        )

    if isinstance(exc, smtplib.SMTPDataError):
        text = _decode(exc.smtp_error)
        if _is_permanent(exc.smtp_code):
            return NotifyError.client(
                f"Message rejected: {exc.smtp_code} {text}",
                smtp_code=exc.smtp_code,
            )
        return NotifyError.transient(
            f"Message deferred: {exc.smtp_code} {text}",
            smtp_code=exc.smtp_code,
        )

    if isinstance(exc, smtplib.SMTPResponseException):
        return NotifyError.transient(
            f"SMTP error {exc.smtp_code}: {exc}",
            smtp_code=exc.smtp_code,
        )

    return NotifyError.transient(f"SMTP delivery failed: {exc}")


class SmtpChannel:
    """Outbound email via ``smtplib`` with per-message connections."""

    def __init__(self, settings: SmtpSettings) -> None:
        self._smtp = settings

    @property
    def enabled(self) -> bool:
        return self._smtp.enabled

    def _build_message(self, to: str, subject: str, html: str, text: str | None) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = self._smtp.from_address
        msg["To"] = to
        msg["Subject"] = subject
        # Plain part first: clients render the last alternative they support.
        if text is not None:
            msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        return msg

    def send(self, to: str, subject: str, html: str, text: str | None = None) -> None:
        """Send one message.

        Raises
        ------
        NotifyError
            ``VALIDATION`` for a missing recipient, ``CLIENT`` for a
            permanent rejection, ``TRANSIENT`` for anything retryable.

        """
        if not to:
            msg = "Email recipient is required"
            raise NotifyError.validation(msg, field="to")

        if not self._smtp.enabled:
            log.info("SMTP disabled, skipping send to %s (%s)", to, subject)
            return

        message = self._build_message(to, subject, html, text)
        try:
            with smtplib.SMTP(
                self._smtp.host, self._smtp.port, timeout=self._smtp.timeout_seconds
            ) as server:
                server.ehlo()
                if self._smtp.use_tls:
                    server.starttls()
                    server.ehlo()
                if self._smtp.username:
                    server.login(self._smtp.username, self._smtp.password)
                server.sendmail(
                    self._smtp.from_address,
                    [to],
                    message.as_string(),
                )
        except (smtplib.SMTPException, OSError) as exc:
            error = classify_smtp_error(exc, to)
            log.warning(
                "Failed to send email to %s: %s",
                to,
                error.message,
                extra={"error_kind": error.kind.value},
            )
            raise error from exc

        log.info("Email sent to %s", to, extra={"subject": subject})
