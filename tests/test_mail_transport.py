from __future__ import annotations

import json
import smtplib
import unittest
from unittest.mock import MagicMock, patch

import httpx

from tracker.services.mail_transport import (
    EmailDeliveryError,
    GraphEmailTransport,
    LoggingEmailTransport,
    OutgoingEmail,
    SmtpEmailTransport,
    build_email_transport,
)
from tracker.settings import Settings

MESSAGE = OutgoingEmail(
    recipients=("ops@example.com",),
    cc=("asha@example.com", "OPS@example.com"),
    subject="Design In-Progress & Recurring Tasks Report - 1 Employee, 1 Task",
    html_body="<p>report</p>",
)


def _graph_settings(**overrides) -> Settings:  # type: ignore[no-untyped-def]
    values = {
        "graph_tenant_id": "tenant-1",
        "graph_client_id": "client-1",
        "graph_client_secret": "secret-1",
        "graph_sender_email": "reports@example.com",
        "smtp_host": None,
        "smtp_from": None,
    }
    values.update(overrides)
    return Settings(**values)


class _GraphStub:
    def __init__(self, *, send_status: int = 202, send_payload: dict | None = None, token_status: int = 200):
        self.send_status = send_status
        self.send_payload = send_payload
        self.token_status = token_status
        self.token_calls = 0
        self.send_requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "login.microsoftonline.com":
            self.token_calls += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": "token-abc", "expires_in": 3600})
        self.send_requests.append(request)
        return httpx.Response(
            self.send_status,
            json=self.send_payload,
            headers={"request-id": "graph-request-1"},
        )


class GraphEmailTransportTests(unittest.TestCase):
    def test_send_posts_message_and_returns_request_id(self) -> None:
        stub = _GraphStub()
        transport = GraphEmailTransport(_graph_settings(), http_transport=httpx.MockTransport(stub))

        receipt = transport.send(MESSAGE)

        self.assertEqual(receipt.delivery_id, "graph-request-1")
        self.assertEqual(receipt.transport, "graph")
        self.assertEqual(receipt.recipient_count, 2)
        request = stub.send_requests[0]
        self.assertEqual(request.url.path, "/v1.0/users/reports@example.com/sendMail")
        self.assertEqual(request.headers["Authorization"], "Bearer token-abc")
        body = json.loads(request.content)
        self.assertEqual(body["message"]["body"]["contentType"], "HTML")
        self.assertEqual(
            body["message"]["toRecipients"],
            [{"emailAddress": {"address": "ops@example.com"}}],
        )
        self.assertEqual(
            body["message"]["ccRecipients"],
            [{"emailAddress": {"address": "asha@example.com"}}],
        )

    def test_token_is_reused_until_it_expires(self) -> None:
        stub = _GraphStub()
        transport = GraphEmailTransport(_graph_settings(), http_transport=httpx.MockTransport(stub))
        transport.send(MESSAGE)
        transport.send(MESSAGE)
        self.assertEqual(stub.token_calls, 1)
        self.assertEqual(len(stub.send_requests), 2)

    def test_graph_error_message_is_surfaced(self) -> None:
        stub = _GraphStub(send_status=403, send_payload={"error": {"message": "Access is denied."}})
        transport = GraphEmailTransport(_graph_settings(), http_transport=httpx.MockTransport(stub))
        with self.assertRaisesRegex(EmailDeliveryError, "Access is denied."):
            transport.send(MESSAGE)

    def test_token_failure_raises(self) -> None:
        stub = _GraphStub(token_status=401)
        transport = GraphEmailTransport(_graph_settings(), http_transport=httpx.MockTransport(stub))
        with self.assertRaisesRegex(EmailDeliveryError, "access token"):
            transport.send(MESSAGE)
        self.assertEqual(stub.send_requests, [])

    def test_unconfigured_graph_refuses_to_send(self) -> None:
        transport = GraphEmailTransport(_graph_settings(graph_client_secret=None))
        self.assertFalse(transport.configured)
        self.assertIn("GRAPH_CLIENT_SECRET", transport.config_status()["missing_fields"])
        with self.assertRaisesRegex(EmailDeliveryError, "GRAPH_NOT_CONFIGURED"):
            transport.send(MESSAGE)


class SmtpEmailTransportTests(unittest.TestCase):
    def _settings(self) -> Settings:
        return Settings(
            smtp_host="smtp.example.com",
            smtp_port=587,
            smtp_user="mailer",
            smtp_pass="pw",
            smtp_from="reports@example.com",
            smtp_use_tls=True,
        )

    def test_send_uses_starttls_and_login(self) -> None:
        smtp_client = MagicMock()
        with patch("tracker.services.mail_transport.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value = smtp_client
            receipt = SmtpEmailTransport(self._settings()).send(MESSAGE)

        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=15)
        smtp_client.starttls.assert_called_once()
        smtp_client.login.assert_called_once_with("mailer", "pw")
        sent = smtp_client.send_message.call_args.args[0]
        self.assertEqual(sent["To"], "ops@example.com")
        self.assertEqual(sent["Cc"], "asha@example.com")
        self.assertEqual(receipt.transport, "smtp")
        self.assertEqual(receipt.delivery_id, sent["Message-ID"])

    def test_smtp_errors_become_delivery_errors(self) -> None:
        with patch("tracker.services.mail_transport.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.side_effect = smtplib.SMTPConnectError(421, b"busy")
            with self.assertRaises(EmailDeliveryError):
                SmtpEmailTransport(self._settings()).send(MESSAGE)


class BuildEmailTransportTests(unittest.TestCase):
    def test_auto_prefers_graph(self) -> None:
        self.assertIsInstance(build_email_transport(_graph_settings(smtp_host="smtp", smtp_from="a@b.co")), GraphEmailTransport)

    def test_auto_falls_back_to_smtp(self) -> None:
        settings = _graph_settings(graph_tenant_id=None, smtp_host="smtp.example.com", smtp_from="reports@example.com")
        self.assertIsInstance(build_email_transport(settings), SmtpEmailTransport)

    def test_auto_without_configuration_counts_as_failure(self) -> None:
        settings = _graph_settings(graph_tenant_id=None)
        transport = build_email_transport(settings)
        self.assertIsInstance(transport, LoggingEmailTransport)
        with self.assertLogs("tracker.mail_transport", level="WARNING"):
            with self.assertRaisesRegex(EmailDeliveryError, "EMAIL_TRANSPORT_NOT_CONFIGURED"):
                transport.send(MESSAGE)

    def test_explicit_mode_wins(self) -> None:
        self.assertIsInstance(build_email_transport(_graph_settings(email_transport="smtp")), SmtpEmailTransport)


if __name__ == "__main__":
    unittest.main()
