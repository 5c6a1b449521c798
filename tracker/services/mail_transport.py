from __future__ import annotations

import logging
import smtplib
import threading
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any
from uuid import uuid4

import httpx

from tracker.settings import Settings, get_settings

logger = logging.getLogger("tracker.mail_transport")

GRAPH_TOKEN_URL = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
GRAPH_SEND_MAIL_URL = "https://graph.microsoft.com/v1.0/users/{sender}/sendMail"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
# Refresh the cached Graph token this long before Microsoft says it expires.
GRAPH_TOKEN_EXPIRY_MARGIN_SECONDS = 300


class EmailDeliveryError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class OutgoingEmail:
    recipients: tuple[str, ...]
    subject: str
    html_body: str
    cc: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class DeliveryReceipt:
    delivery_id: str
    transport: str
    recipient_count: int


def _clean_addresses(values: tuple[str, ...] | list[str]) -> list[str]:
    cleaned: list[str] = []
    for item in values:
        value = (item or "").strip()
        if value and value.lower() not in {existing.lower() for existing in cleaned}:
            cleaned.append(value)
    return cleaned


class EmailTransport:
    name = "base"
    configured: bool = False

    def send(self, message: OutgoingEmail) -> DeliveryReceipt:
        raise NotImplementedError

    def config_status(self) -> dict[str, Any]:
        return {"transport": self.name, "configured": self.configured}


class LoggingEmailTransport(EmailTransport):
    """Stand-in used when no transport is configured; every send counts as a failure."""

    name = "not_configured"

    def send(self, message: OutgoingEmail) -> DeliveryReceipt:
        logger.warning(
            "email_transport_not_configured",
            extra={
                "subject": message.subject,
                "recipients": list(message.recipients),
                "cc_count": len(message.cc),
            },
        )
        raise EmailDeliveryError("EMAIL_TRANSPORT_NOT_CONFIGURED")


class SmtpEmailTransport(EmailTransport):
    name = "smtp"

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self.smtp_host = (settings.smtp_host or "").strip()
        self.smtp_port = int(settings.smtp_port)
        self.smtp_user = (settings.smtp_user or "").strip()
        self.smtp_pass = settings.smtp_pass or ""
        self.smtp_from = (settings.smtp_from or "").strip()
        self.smtp_use_tls = bool(settings.smtp_use_tls)
        self.configured = bool(self.smtp_host and self.smtp_from)

    def send(self, message: OutgoingEmail) -> DeliveryReceipt:
        recipients = _clean_addresses(message.recipients)
        cc = [item for item in _clean_addresses(message.cc) if item.lower() not in {r.lower() for r in recipients}]
        if not recipients:
            raise EmailDeliveryError("EMAIL_NO_RECIPIENTS")
        if not self.configured:
            raise EmailDeliveryError("SMTP_NOT_CONFIGURED")

        message_id = make_msgid()
        email_message = EmailMessage()
        email_message["From"] = self.smtp_from
        email_message["To"] = ", ".join(recipients)
        if cc:
            email_message["Cc"] = ", ".join(cc)
        email_message["Subject"] = message.subject
        email_message["Message-ID"] = message_id
        email_message.set_content("This report is best viewed in an HTML capable mail client.")
        email_message.add_alternative(message.html_body, subtype="html")

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as smtp_client:
                if self.smtp_use_tls:
                    smtp_client.starttls()
                if self.smtp_user:
                    smtp_client.login(self.smtp_user, self.smtp_pass)
                smtp_client.send_message(email_message)
        except (smtplib.SMTPException, OSError) as exc:
            raise EmailDeliveryError(f"SMTP delivery failed: {exc}") from exc

        return DeliveryReceipt(
            delivery_id=message_id,
            transport=self.name,
            recipient_count=len(recipients) + len(cc),
        )

    def config_status(self) -> dict[str, Any]:
        missing_fields: list[str] = []
        if not self.smtp_host:
            missing_fields.append("SMTP_HOST")
        if not self.smtp_from:
            missing_fields.append("SMTP_FROM")
        return {
            "transport": self.name,
            "configured": self.configured,
            "smtp_host_set": bool(self.smtp_host),
            "smtp_user_set": bool(self.smtp_user),
            "smtp_use_tls": self.smtp_use_tls,
            "missing_fields": missing_fields,
        }


class GraphEmailTransport(EmailTransport):
    """Microsoft Graph ``sendMail`` using the client-credentials flow."""

    name = "graph"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_transport: httpx.BaseTransport | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.tenant_id = (settings.graph_tenant_id or "").strip()
        self.client_id = (settings.graph_client_id or "").strip()
        self.client_secret = settings.graph_client_secret or ""
        self.sender_email = (settings.graph_sender_email or "").strip()
        self.timeout_seconds = float(settings.graph_timeout_seconds)
        self.configured = bool(self.tenant_id and self.client_id and self.client_secret and self.sender_email)
        self._http_transport = http_transport
        self._token_lock = threading.Lock()
        self._access_token: str | None = None
        self._token_expires_at = 0.0

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_seconds, transport=self._http_transport)

    def _get_access_token(self, client: httpx.Client) -> str:
        with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            try:
                response = client.post(
                    GRAPH_TOKEN_URL.format(tenant_id=self.tenant_id),
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "scope": GRAPH_SCOPE,
                        "grant_type": "client_credentials",
                    },
                )
                response.raise_for_status()
                payload = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise EmailDeliveryError("Failed to get access token from Microsoft") from exc

            token = payload.get("access_token")
            if not isinstance(token, str) or not token:
                raise EmailDeliveryError("Failed to get access token from Microsoft")
            expires_in = int(payload.get("expires_in") or 0)
            self._access_token = token
            self._token_expires_at = time.monotonic() + max(0, expires_in - GRAPH_TOKEN_EXPIRY_MARGIN_SECONDS)
            return token

    def send(self, message: OutgoingEmail) -> DeliveryReceipt:
        recipients = _clean_addresses(message.recipients)
        cc = [item for item in _clean_addresses(message.cc) if item.lower() not in {r.lower() for r in recipients}]
        if not recipients:
            raise EmailDeliveryError("EMAIL_NO_RECIPIENTS")
        if not self.configured:
            raise EmailDeliveryError("GRAPH_NOT_CONFIGURED")

        graph_message: dict[str, Any] = {
            "subject": message.subject,
            "body": {"contentType": "HTML", "content": message.html_body},
            "toRecipients": [{"emailAddress": {"address": item}} for item in recipients],
        }
        if cc:
            graph_message["ccRecipients"] = [{"emailAddress": {"address": item}} for item in cc]

        with self._client() as client:
            token = self._get_access_token(client)
            try:
                response = client.post(
                    GRAPH_SEND_MAIL_URL.format(sender=self.sender_email),
                    json={"message": graph_message, "saveToSentItems": True},
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as exc:
                raise EmailDeliveryError(f"Failed to send email: {exc}") from exc

        if response.status_code >= 400:
            raise EmailDeliveryError(f"Failed to send email: {_graph_error_message(response)}")

        return DeliveryReceipt(
            delivery_id=response.headers.get("request-id") or str(uuid4()),
            transport=self.name,
            recipient_count=len(recipients) + len(cc),
        )

    def config_status(self) -> dict[str, Any]:
        missing_fields = [
            name
            for name, value in (
                ("GRAPH_TENANT_ID", self.tenant_id),
                ("GRAPH_CLIENT_ID", self.client_id),
                ("GRAPH_CLIENT_SECRET", self.client_secret),
                ("GRAPH_SENDER_EMAIL", self.sender_email),
            )
            if not value
        ]
        return {
            "transport": self.name,
            "configured": self.configured,
            "sender_email_set": bool(self.sender_email),
            "missing_fields": missing_fields,
        }


def _graph_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])[:500]
    return f"HTTP {response.status_code}"


def build_email_transport(settings: Settings | None = None) -> EmailTransport:
    settings = settings or get_settings()
    mode = (settings.email_transport or "auto").strip().lower()
    if mode == "graph":
        return GraphEmailTransport(settings)
    if mode == "smtp":
        return SmtpEmailTransport(settings)
    graph_transport = GraphEmailTransport(settings)
    if graph_transport.configured:
        return graph_transport
    smtp_transport = SmtpEmailTransport(settings)
    if smtp_transport.configured:
        return smtp_transport
    return LoggingEmailTransport()
