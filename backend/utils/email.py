"""
Transactional email delivery.

Two providers are supported: a Resend-compatible HTTP API (preferred) and
SMTP. The provider is chosen on every send from a freshly read
``EmailSettings``, so keys added to the environment take effect without a
restart. When the HTTP provider fails and SMTP credentials are also present,
the message falls back to SMTP. Every failure surfaces as ``DeliveryError``.
"""
import asyncio
import base64
import logging
import smtplib
import socket
import ssl
import threading
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid, parseaddr
from typing import Callable, List, Optional, Tuple, Union

import aiohttp

from core.config import EmailSettings
from core.exceptions import DeliveryError

logger = logging.getLogger(__name__)

TRANSPORT_HTTP = "http"
TRANSPORT_SMTP = "smtp"

SUBJECT_LOG_LENGTH = 60


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


@dataclass
class OutgoingEmail:
    sender: str
    to: Union[str, List[str]]
    subject: str
    html: str
    text: Optional[str] = None
    attachments: List[EmailAttachment] = field(default_factory=list)

    @property
    def recipients(self) -> List[str]:
        if isinstance(self.to, str):
            return [self.to]
        return list(self.to)


@dataclass
class DeliveryResult:
    provider: str
    message_id: Optional[str] = None


def select_transport(email_settings: EmailSettings) -> str:
    """HTTP provider whenever an API key is configured, SMTP otherwise."""
    if (email_settings.RESEND_API_KEY or "").strip():
        return TRANSPORT_HTTP
    return TRANSPORT_SMTP


def smtp_configured(email_settings: EmailSettings) -> bool:
    return bool(email_settings.SMTP_USER and email_settings.SMTP_PASS)


def email_configured(email_settings: EmailSettings) -> bool:
    return select_transport(email_settings) == TRANSPORT_HTTP or smtp_configured(email_settings)


def parse_sender(sender: str) -> Tuple[Optional[str], str]:
    """Split ``"Name" <addr>``, ``Name <addr>`` or a bare ``addr``."""
    name, address = parseaddr(sender or "")
    if not address:
        address = (sender or "").strip()
    return (name.strip() or None), address


def http_sender(sender: str, email_settings: EmailSettings) -> str:
    """Sender address accepted by the HTTP provider.

    A verified domain sender is used when configured; otherwise the provider's
    sandbox address. The caller's display name wins over one configured with
    the verified sender.
    """
    name, _ = parse_sender(sender)
    configured_name, address = parse_sender(email_settings.RESEND_FROM_EMAIL or email_settings.RESEND_SANDBOX_FROM)
    name = name or configured_name
    if name:
        return formataddr((name, address))
    return address


def _payload_sizes(message: OutgoingEmail) -> Tuple[int, int, int]:
    html_bytes = len((message.html or "").encode("utf-8"))
    text_bytes = len((message.text or "").encode("utf-8"))
    attachment_bytes = sum(len(a.content) for a in message.attachments)
    return html_bytes, text_bytes, attachment_bytes


def _log_attempt(provider: str, attempt: int, message: OutgoingEmail) -> None:
    html_bytes, text_bytes, attachment_bytes = _payload_sizes(message)
    logger.info(
        "Email attempt %d via %s to=%s subject=%r html=%dB text=%dB attachments=%d (%dB)",
        attempt,
        provider,
        ",".join(message.recipients),
        (message.subject or "")[:SUBJECT_LOG_LENGTH],
        html_bytes,
        text_bytes,
        len(message.attachments),
        attachment_bytes,
    )


def build_mime_message(message: OutgoingEmail) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = message.subject
    msg["From"] = message.sender
    msg["To"] = ", ".join(message.recipients)
    msg["Message-ID"] = make_msgid()
    if message.text:
        msg.set_content(message.text)
        msg.add_alternative(message.html, subtype="html")
    else:
        msg.set_content(message.html, subtype="html")
    for attachment in message.attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        msg.add_attachment(
            attachment.content,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=attachment.filename,
        )
    return msg


def _close_quietly(connection: smtplib.SMTP) -> None:
    try:
        connection.close()
    except OSError as exc:
        logger.debug(f"Ignoring SMTP close error: {exc}")


def _abort(connection: smtplib.SMTP) -> None:
    """Shut the socket down before closing so a thread blocked on it returns at once."""
    sock = getattr(connection, "sock", None)
    if sock is not None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            logger.debug(f"Ignoring SMTP socket shutdown error: {exc}")
    _close_quietly(connection)


def _quit_quietly(connection: smtplib.SMTP) -> None:
    try:
        connection.quit()
    except (smtplib.SMTPException, OSError) as exc:
        logger.debug(f"Ignoring SMTP QUIT error: {exc}")
        _close_quietly(connection)


class SmtpConnectionFactory:
    """Owns the single SMTP connection used by the process.

    The connection is opened lazily and kept until ``invalidate()`` closes and
    drops it. A connection that finishes opening after an invalidation is
    discarded so a timed-out attempt can never hand its socket to a retry.
    """

    def __init__(self, smtp_class=smtplib.SMTP, smtp_ssl_class=smtplib.SMTP_SSL):
        self.smtp_class = smtp_class
        self.smtp_ssl_class = smtp_ssl_class
        self._connection: Optional[smtplib.SMTP] = None
        self._generation = 0
        self._lock = threading.Lock()
        # serialises SMTP conversations on the shared connection
        self.send_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def open(self, email_settings: EmailSettings, timeout: Optional[float] = None) -> smtplib.SMTP:
        """Open and authenticate a connection that the factory does not keep."""
        host = email_settings.SMTP_HOST
        port = email_settings.SMTP_PORT
        timeout = timeout or email_settings.SMTP_CONNECT_TIMEOUT
        use_ssl = email_settings.SMTP_SECURE or port == 465
        logger.info(f"Opening SMTP connection to {host}:{port} (ssl={use_ssl})")
        if use_ssl:
            connection = self.smtp_ssl_class(host, port, timeout=timeout, context=ssl.create_default_context())
        else:
            connection = self.smtp_class(host, port, timeout=timeout)
        try:
            if not use_ssl:
                connection.ehlo()
                if email_settings.SMTP_USE_TLS and connection.has_extn("starttls"):
                    connection.starttls(context=ssl.create_default_context())
                    connection.ehlo()
                elif email_settings.SMTP_USE_TLS:
                    logger.warning(f"SMTP server {host}:{port} does not offer STARTTLS; sending unencrypted")
            if email_settings.SMTP_USER and email_settings.SMTP_PASS:
                connection.login(email_settings.SMTP_USER, email_settings.SMTP_PASS)
        except Exception:
            _close_quietly(connection)
            raise
        return connection

    def get(self, email_settings: EmailSettings) -> smtplib.SMTP:
        with self._lock:
            if self._connection is not None:
                return self._connection
            generation = self._generation
        connection = self.open(email_settings)
        with self._lock:
            if generation != self._generation:
                _close_quietly(connection)
                raise ConnectionAbortedError("SMTP connection invalidated while connecting")
            if self._connection is not None:
                _close_quietly(connection)
                return self._connection
            self._connection = connection
            return connection

    def invalidate(self) -> None:
        with self._lock:
            connection = self._connection
            self._connection = None
            self._generation += 1
        if connection is not None:
            logger.info("Discarding SMTP connection")
            _abort(connection)


class EmailDeliveryEngine:

    def __init__(
        self,
        connection_factory: Optional[SmtpConnectionFactory] = None,
        settings_factory: Callable[[], EmailSettings] = EmailSettings,
        http_session_factory: Callable[..., aiohttp.ClientSession] = aiohttp.ClientSession,
        sleep: Callable = asyncio.sleep,
    ):
        self.connection_factory = connection_factory or SmtpConnectionFactory()
        self.settings_factory = settings_factory
        self.http_session_factory = http_session_factory
        self._sleep = sleep

    async def send(self, message: OutgoingEmail) -> DeliveryResult:
        email_settings = self.settings_factory()
        transport = select_transport(email_settings)

        if transport == TRANSPORT_HTTP:
            try:
                return await self._send_http(message, email_settings)
            except DeliveryError as http_error:
                if not smtp_configured(email_settings):
                    raise
                logger.warning(f"HTTP email provider failed ({http_error.message}); falling back to SMTP")
                try:
                    return await self._send_smtp(message, email_settings)
                except DeliveryError as smtp_error:
                    raise DeliveryError(
                        f"All email providers failed. http: {http_error.message}; smtp: {smtp_error.message}"
                    ) from smtp_error

        if not smtp_configured(email_settings):
            logger.error("No email provider configured; cannot send email")
            raise DeliveryError("Email service not configured")
        return await self._send_smtp(message, email_settings)

    async def _send_http(self, message: OutgoingEmail, email_settings: EmailSettings) -> DeliveryResult:
        payload = {
            "from": http_sender(message.sender, email_settings),
            "to": message.recipients,
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            payload["text"] = message.text
        if message.attachments:
            payload["attachments"] = [
                {
                    "filename": a.filename,
                    "content": base64.b64encode(a.content).decode("ascii"),
                }
                for a in message.attachments
            ]
        headers = {
            "Authorization": f"Bearer {email_settings.RESEND_API_KEY}",
            "Content-Type": "application/json",
        }
        _log_attempt(TRANSPORT_HTTP, 1, message)
        try:
            async with self.http_session_factory() as session:
                async with session.post(email_settings.RESEND_API_URL, json=payload, headers=headers) as resp:
                    if not 200 <= resp.status < 300:
                        body = await resp.text()
                        logger.error(f"HTTP email provider error {resp.status}: {body[:300]}")
                        raise DeliveryError(f"Email API responded with status {resp.status}")
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError:
                        data = None
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error(f"HTTP email request failed: {exc}")
            raise DeliveryError(f"Email API request failed: {exc}") from exc
        message_id = data.get("id") if isinstance(data, dict) else None
        logger.info(f"Email sent via HTTP provider to {','.join(message.recipients)} id={message_id}")
        return DeliveryResult(provider=TRANSPORT_HTTP, message_id=message_id)

    def _smtp_send_blocking(self, mime: EmailMessage, email_settings: EmailSettings) -> None:
        connection = self.connection_factory.get(email_settings)
        with self.connection_factory.send_lock:
            refused = connection.send_message(mime)
        if refused:
            logger.warning(f"SMTP server refused some recipients: {list(refused)}")

    async def _send_smtp(self, message: OutgoingEmail, email_settings: EmailSettings) -> DeliveryResult:
        mime = build_mime_message(message)
        max_attempts = max(int(email_settings.SMTP_MAX_ATTEMPTS), 1)
        timeout = email_settings.SMTP_SEND_TIMEOUT
        last_error = "unknown error"

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = (attempt - 1) * email_settings.SMTP_RETRY_DELAY_SECONDS
                logger.info(f"[SMTP attempt {attempt}] retrying on a fresh connection in {delay:.0f}s")
                await self._sleep(delay)
            _log_attempt(TRANSPORT_SMTP, attempt, message)
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(self._smtp_send_blocking, mime, email_settings),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                last_error = f"SMTP send timed out after {timeout}s"
            except (smtplib.SMTPException, OSError) as exc:
                last_error = str(exc) or exc.__class__.__name__
            else:
                logger.info(f"[SMTP attempt {attempt}] sent, message id {mime['Message-ID']}")
                return DeliveryResult(provider=TRANSPORT_SMTP, message_id=mime["Message-ID"])
            logger.warning(f"[SMTP attempt {attempt}] failed: {last_error}")
            # closing can wait on the worker thread that still owns the socket
            await asyncio.to_thread(self.connection_factory.invalidate)

        raise DeliveryError(f"SMTP delivery failed after {max_attempts} attempts: {last_error}")

    async def verify_connection(self) -> bool:
        """Open a throwaway SMTP session, NOOP, QUIT. Nothing is sent.

        Bounded by ``SMTP_VERIFY_TIMEOUT``; the shared send connection is
        left alone.
        """
        email_settings = self.settings_factory()
        if not smtp_configured(email_settings):
            logger.warning("SMTP credentials not set; connection check skipped")
            return False
        timeout = email_settings.SMTP_VERIFY_TIMEOUT

        def _check() -> None:
            connection = self.connection_factory.open(email_settings, timeout=timeout)
            try:
                status, _ = connection.noop()
            finally:
                _quit_quietly(connection)
            if status != 250:
                raise smtplib.SMTPResponseException(status, b"NOOP rejected")

        try:
            await asyncio.wait_for(asyncio.to_thread(_check), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"SMTP connection check timed out after {timeout}s")
            return False
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(f"SMTP connection check failed: {exc}")
            return False
        logger.info("Email service connected successfully")
        return True
