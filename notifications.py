import logging
import smtplib
from concurrent.futures import Future, ThreadPoolExecutor
from decimal import Decimal
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from schemas import from_cents

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates" / "email"


def format_money(cents: int) -> str:
    amount: Decimal = from_cents(int(cents))
    return f"${amount:,.2f}"


_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)
_env.filters["money"] = format_money


def render_email(template: str, **context: object) -> str:
    return _env.get_template(f"{template}.txt").render(**context)


class Notifier:
    def send(self, recipient: str, subject: str, body: str) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    def send(self, recipient: str, subject: str, body: str) -> None:
        logger.info(f"email_logged: to={recipient} subject={subject!r}")


class SmtpNotifier(Notifier):
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.timeout = timeout

    def send(self, recipient: str, subject: str, body: str) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)


class BackgroundNotifier(Notifier):
    """Hands messages to a worker thread; failures are logged, never raised."""

    def __init__(self, inner: Notifier, max_workers: int = 2) -> None:
        self.inner = inner
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notifier"
        )

    def send(self, recipient: str, subject: str, body: str) -> None:
        future = self.executor.submit(self.inner.send, recipient, subject, body)
        future.add_done_callback(
            lambda f: _log_failure(f, recipient=recipient, subject=subject)
        )

    def shutdown(self) -> None:
        self.executor.shutdown(wait=True)


def _log_failure(future: Future, *, recipient: str, subject: str) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error(
            f"email_failed: to={recipient} subject={subject!r} error={exc!r}"
        )


def deliver(notifier: Notifier, recipient: Optional[str], subject: str, body: str) -> bool:
    """Send without letting a delivery failure escape to the caller."""
    if not recipient:
        logger.warning(f"email_skipped: reason=no_recipient subject={subject!r}")
        return False
    try:
        notifier.send(recipient, subject, body)
    except Exception:
        logger.exception(f"email_failed: to={recipient} subject={subject!r}")
        return False
    return True


def build_notifier(settings) -> Notifier:
    if settings.smtp_host:
        inner: Notifier = SmtpNotifier(
            settings.smtp_host,
            settings.smtp_port,
            settings.mail_from,
            settings.smtp_username,
            settings.smtp_password,
        )
    else:
        inner = LogNotifier()
    return BackgroundNotifier(inner)
