"""HTTP front end for the form relay.

Accepts URL-encoded form posts, runs them through request validation,
message construction and envelope validation, and only then hands the
message to the transport.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from dataclasses import dataclass, field
from html import escape
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qs, urlparse

from dotenv import load_dotenv

from .config import DEFAULT_FIELD_RULES, FieldRules, Settings, load_settings
from .email_utils import is_valid_email
from .errors import DeliveryFailed, FormError
from .message import build_message, validate_message
from .models import FormRequest, Message
from .recaptcha import verify_recaptcha
from .request import normalize_request, validate_request
from .transport import send_message

logger = logging.getLogger(__name__)

SUBMIT_PATHS = ("/", "/submit")
MAX_BODY_BYTES = 64 * 1024
NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
}


@dataclass(frozen=True)
class Response:
    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


def _json_response(status: int, payload: dict) -> Response:
    return Response(
        status=status,
        body=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **NO_CACHE_HEADERS},
    )


def render_page(title: str, message: str) -> bytes:
    """Render a minimal standalone HTML page."""
    return f"""<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{escape(title)}</title>
  </head>
  <body style="font-family:Arial,Helvetica,sans-serif;max-width:640px;margin:40px auto;padding:10px;">
    <h2 style="margin:8px 0;">{escape(title)}</h2>
    <p style="color:#333;line-height:1.4;">{escape(message)}</p>
  </body>
</html>
""".encode("utf-8")


def _html_response(status: int, title: str, message: str) -> Response:
    return Response(
        status=status,
        body=render_page(title, message),
        headers={"Content-Type": "text/html; charset=utf-8", **NO_CACHE_HEADERS},
    )


def error_response(error: FormError, json_response: bool) -> Response:
    """Render a pipeline failure in the caller's requested format."""
    if json_response:
        return _json_response(error.status, {"error": error.message})
    return _html_response(error.status, "Submission failed", error.message)


def success_response(request: FormRequest) -> Response:
    """Render a successful submission as a redirect, JSON or HTML page."""
    if request.is_redirect_response:
        return Response(status=303, headers={"Location": request.redirect_url})
    if request.is_json_response:
        return _json_response(200, {"ok": True})
    return _html_response(200, "Thank you", "Your message has been sent.")


def reply_to_override(
    request: FormRequest, rules: FieldRules = DEFAULT_FIELD_RULES
) -> Optional[str]:
    """Return the submitter's own address when the form collected a usable one.

    An unusable ``email`` value yields None, so the form's ``_replyTo`` list
    is kept instead.
    """
    candidate = request.fields.get(rules.reply_to_override_field) or ""
    return candidate if is_valid_email(candidate) else None


def handle_submission(
    body: str | bytes | None,
    query: Mapping[str, Any] | None,
    context: Mapping[str, Any] | None,
    settings: Settings,
    send: bool = True,
    rules: FieldRules = DEFAULT_FIELD_RULES,
    sender: Optional[Callable[..., None]] = None,
) -> Response:
    """Run one form submission through the full pipeline.

    Args:
        body: URL-encoded form body.
        query: Query-string parameters.
        context: Transport request context carrying the caller address.
        settings: Relay settings.
        send: When False, the transport previews instead of sending.
        rules: Field classification rules.
        sender: Transport callable accepting ``(message, send=...)``;
            defaults to :func:`send_message`.

    Returns:
        The HTTP response to return to the caller.
    """
    request = normalize_request(body, query, context, settings.encryption_key, rules)

    error = validate_request(request, settings.whitelist, rules)
    if error:
        logger.info(f"Rejected submission from {request.source_ip or '-'}: {error}")
        return error_response(error, request.is_json_response)

    if settings.recaptcha_secret:
        error = verify_recaptcha(
            request.recaptcha, settings.recaptcha_secret, request.source_ip
        )
        if error:
            logger.info(f"Rejected submission from {request.source_ip}: {error}")
            return error_response(error, request.is_json_response)

    message: Message = build_message(
        request,
        sender=settings.sender,
        sender_arn=settings.sender_arn,
        subject=settings.subject,
        reply_to_override=reply_to_override(request, rules),
        rules=rules,
    )
    error = validate_message(message)
    if error:
        logger.error(f"Built an invalid message envelope: {error}")
        return error_response(error, request.is_json_response)

    try:
        (sender or send_message)(message, send=send)
    except Exception as exc:
        logger.warning(f"Failed to send form message: {exc}")
        return error_response(DeliveryFailed(), request.is_json_response)

    return success_response(request)


class FormHandler(BaseHTTPRequestHandler):
    """HTTP handler accepting form posts and a health probe."""

    settings: Optional[Settings] = None
    send_messages: bool = True

    def _write(self, response: Response) -> None:
        self.send_response(response.status)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        if response.body:
            self.wfile.write(response.body)

    def _first_header(self, *names: str) -> str | None:
        """Return the first non-empty header value from a list of names."""
        for name in names:
            value = self.headers.get(name)
            if value:
                return value.strip()
        return None

    def _client_ip(self) -> str | None:
        """Resolve the most likely client IP."""
        forwarded = self._first_header(
            "X-Forwarded-For", "X-Real-IP", "CF-Connecting-IP"
        )
        if forwarded:
            return forwarded.split(",")[0].strip()
        if self.client_address:
            return self.client_address[0]
        return None

    def do_GET(self):
        parsed = urlparse(self.path)
        if parsed.path == "/health":
            return self._write(_json_response(200, {"ok": True}))
        self.send_error(404, "Not Found")

    def do_POST(self):
        parsed = urlparse(self.path)
        if parsed.path not in SUBMIT_PATHS:
            self.send_error(404, "Not Found")
            return

        length = int(self.headers.get("Content-Length", 0) or 0)
        if length > MAX_BODY_BYTES:
            self.send_error(413, "Payload Too Large")
            return
        body = self.rfile.read(length) if length else b""

        settings = self.settings or load_settings()
        response = handle_submission(
            body,
            parse_qs(parsed.query, keep_blank_values=True),
            {"identity": {"sourceIp": self._client_ip()}},
            settings,
            send=self.send_messages,
        )
        self._write(response)

    def log_message(self, fmt, *args):
        logger.debug(f"{self.address_string()} {fmt % args}")


def main() -> None:
    """Run the form relay HTTP server from CLI arguments."""
    load_dotenv()
    log_level = (os.environ.get("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    parser = argparse.ArgumentParser(description="Serve the form relay")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--no-send",
        action="store_true",
        help="Log messages instead of sending them",
    )
    args = parser.parse_args()

    FormHandler.settings = load_settings()
    FormHandler.send_messages = not args.no_send
    server = ThreadingHTTPServer((args.host, args.port), FormHandler)
    logger.info(f"Form relay running at http://{args.host}:{args.port}")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
