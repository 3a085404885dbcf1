import json
import threading
from http.server import ThreadingHTTPServer
from urllib.parse import urlencode

import pytest
import requests

import formrelay.server as server
from formrelay.config import Settings
from formrelay.crypto import encrypt
from formrelay.errors import ChallengeFailed

KEY = "server-test-key"
CONTEXT = {"identity": {"sourceIp": "203.0.113.9"}}
SETTINGS = Settings(
    encryption_key=KEY,
    sender_arn="arn:aws:ses:us-east-1:1:identity/forms@example.com",
    sender="Contact Form",
    subject="Website contact",
)


class DummySender:
    def __init__(self, error=None):
        self.messages = []
        self.send_flags = []
        self.error = error

    def __call__(self, message, send=True):
        if self.error:
            raise self.error
        self.messages.append(message)
        self.send_flags.append(send)


def submit(fields, query=None, context=CONTEXT, settings=SETTINGS, sender=None):
    sender = sender or DummySender()
    response = server.handle_submission(
        urlencode(fields), query, context, settings, sender=sender
    )
    return response, sender


def test_handle_submission_sends_message_to_encrypted_recipient():
    response, sender = submit(
        {"_to": encrypt("owner@example.com", KEY), "name": "Jo", "message": "Hi"}
    )

    assert response.status == 200
    assert b"Your message has been sent." in response.body
    message = sender.messages[0]
    assert message.sender == "Contact Form <forms@example.com>"
    assert message.subject == "Website contact"
    assert message.destination.to == ("owner@example.com",)
    assert message.body == "NAME: Jo\r\nMESSAGE: Hi\r\n"
    assert sender.send_flags == [True]


def test_handle_submission_json_success():
    response, _ = submit({"_to": "owner@example.com", "name": "Jo"}, query={"format": ["json"]})
    assert response.status == 200
    assert response.headers["Content-Type"] == "application/json"
    assert json.loads(response.body) == {"ok": True}


def test_handle_submission_redirects():
    response, _ = submit(
        {"_to": "owner@example.com", "name": "Jo", "_redirect": "https://example.com/thanks"}
    )
    assert response.status == 303
    assert response.headers["Location"] == "https://example.com/thanks"


def test_handle_submission_uses_email_field_as_reply_to():
    response, sender = submit(
        {"_to": "owner@example.com", "_replyTo": "team@example.com", "email": "jo@example.com"}
    )
    assert response.status == 200
    assert sender.messages[0].reply_to == ("jo@example.com",)


def test_handle_submission_invalid_email_field_falls_back_to_reply_to():
    response, sender = submit(
        {"_to": "owner@example.com", "_replyTo": "team@example.com", "email": "nope"}
    )
    assert response.status == 200
    assert sender.messages[0].reply_to == ("team@example.com",)


@pytest.mark.parametrize(
    "fields, context, status, text",
    [
        ({"_honeypot": "x", "_to": "owner@example.com", "name": "Jo"}, CONTEXT, 403, "Forbidden"),
        ({"name": "Jo"}, CONTEXT, 422, "Invalid '_to' recipient"),
        ({"_to": "owner@example.com"}, CONTEXT, 422, "Expected at least one custom field"),
        ({"_to": "owner@example.com", "name": "Jo"}, {}, 400, "Expected request to include source ip"),
    ],
)
def test_handle_submission_json_errors(fields, context, status, text):
    response, sender = submit(fields, query={"format": "json"}, context=context)
    assert response.status == status
    assert json.loads(response.body) == {"error": text}
    assert sender.messages == []


def test_handle_submission_html_error_is_escaped():
    response, sender = submit({"_to": "owner@example.com", "name": "Jo", "_redirect": "<script>"})
    assert response.status == 422
    assert b"Invalid website URL in &#x27;_redirect&#x27;" in response.body
    assert b"<script>" not in response.body
    assert sender.messages == []


def test_handle_submission_enforces_whitelist():
    settings = Settings(
        encryption_key=KEY,
        sender_arn=SETTINGS.sender_arn,
        whitelist=frozenset({"owner@example.com"}),
    )
    response, sender = submit(
        {"_to": "other@example.com", "name": "Jo"}, query={"format": "json"}, settings=settings
    )
    assert response.status == 422
    assert json.loads(response.body) == {"error": "Non-whitelisted email in '_to' field"}
    assert sender.messages == []


def test_handle_submission_verifies_recaptcha_when_configured(monkeypatch):
    settings = Settings(
        encryption_key=KEY,
        sender_arn=SETTINGS.sender_arn,
        recaptcha_secret="shh",
    )
    calls = []

    def fake_verify(token, secret, remote_ip=None):
        calls.append((token, secret, remote_ip))
        return None if token == "good" else ChallengeFailed()

    monkeypatch.setattr(server, "verify_recaptcha", fake_verify)

    response, sender = submit(
        {"_to": "owner@example.com", "name": "Jo", "g-recaptcha-response": "bad"},
        query={"format": "json"},
        settings=settings,
    )
    assert response.status == 422
    assert json.loads(response.body) == {"error": "Failed reCAPTCHA verification"}
    assert sender.messages == []

    response, sender = submit(
        {"_to": "owner@example.com", "name": "Jo", "_recaptcha": "good"},
        settings=settings,
    )
    assert response.status == 200
    assert len(sender.messages) == 1
    assert calls[-1] == ("good", "shh", "203.0.113.9")


def test_handle_submission_reports_invalid_envelope():
    settings = Settings(encryption_key=KEY, sender_arn="arn:aws:ses:us-east-1:1:identity/")
    response, sender = submit(
        {"_to": "owner@example.com", "name": "Jo"}, query={"format": "json"}, settings=settings
    )
    assert response.status == 500
    assert json.loads(response.body) == {"error": "Source should contain a valid email address"}
    assert sender.messages == []


def test_handle_submission_reports_delivery_failure():
    response, _ = submit(
        {"_to": "owner@example.com", "name": "Jo"},
        query={"format": "json"},
        sender=DummySender(error=OSError("smtp down")),
    )
    assert response.status == 500
    assert json.loads(response.body) == {"error": "Failed to send message"}


def test_handle_submission_defaults_to_smtp_transport(monkeypatch):
    sent = []
    monkeypatch.setattr(server, "send_message", lambda message, send=True: sent.append(send))
    response = server.handle_submission(
        "_to=owner@example.com&name=Jo", None, CONTEXT, SETTINGS, send=False
    )
    assert response.status == 200
    assert sent == [False]


@pytest.fixture
def live_server(monkeypatch):
    sender = DummySender()
    monkeypatch.setattr(server, "send_message", sender)
    monkeypatch.setattr(server.FormHandler, "settings", SETTINGS)
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), server.FormHandler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{httpd.server_address[1]}", sender
    finally:
        httpd.shutdown()
        httpd.server_close()


def test_form_handler_accepts_form_post(live_server):
    base_url, sender = live_server
    r = requests.post(
        f"{base_url}/?format=json",
        data={"_to": "owner@example.com", "name": "Jo"},
        headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1"},
        timeout=5,
    )
    assert r.status_code == 200
    assert r.json() == {"ok": True}
    assert sender.messages[0].destination.to == ("owner@example.com",)


def test_form_handler_redirect_and_health(live_server):
    base_url, _ = live_server
    r = requests.post(
        f"{base_url}/submit",
        data={"_to": "owner@example.com", "name": "Jo", "_redirect": "https://example.com/ok"},
        allow_redirects=False,
        timeout=5,
    )
    assert r.status_code == 303
    assert r.headers["Location"] == "https://example.com/ok"

    health = requests.get(f"{base_url}/health", timeout=5)
    assert health.json() == {"ok": True}


def test_form_handler_unknown_path(live_server):
    base_url, _ = live_server
    assert requests.post(f"{base_url}/nope", data={"a": "b"}, timeout=5).status_code == 404
    assert requests.get(f"{base_url}/nope", timeout=5).status_code == 404


def test_handle_submission_accepts_non_utf8_body():
    sender = DummySender()
    response = server.handle_submission(
        b"_to=owner@example.com&name=\xff\xfe", {"format": "json"}, CONTEXT, SETTINGS, sender=sender
    )
    assert response.status == 200
    assert sender.messages[0].body == "NAME: ��\r\n"


def test_form_handler_rejects_blank_format(live_server):
    base_url, sender = live_server
    r = requests.post(
        f"{base_url}/?format=",
        data={"_to": "owner@example.com", "name": "Jo"},
        timeout=5,
    )
    assert r.status_code == 422
    assert b"Invalid response format in the query string" in r.content
    assert sender.messages == []
