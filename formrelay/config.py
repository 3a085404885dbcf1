"""Field classification rules and environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .email_utils import normalize_emails, parse_email_list

DEFAULT_SENDER = "Form"
DEFAULT_SUBJECT = "New form submission"
RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"
RECAPTCHA_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class FieldRules:
    """Names and patterns that classify inbound form fields."""

    single_recipient_fields: tuple[str, ...] = ("_to",)
    delimited_recipient_fields: tuple[str, ...] = ("_cc", "_bcc", "_replyTo")
    recipient_delimiter: str = ";"
    reserved_prefix: str = "_"
    anti_automation_marker: str = "recaptcha"
    anti_automation_fields: tuple[str, ...] = ("g-recaptcha-response", "_recaptcha")
    honeypot_field: str = "_honeypot"
    redirect_field: str = "_redirect"
    reply_to_override_field: str = "email"
    format_param: str = "format"
    response_formats: tuple[str, ...] = ("html", "json")
    default_response_format: str = "html"

    def is_reserved(self, name: str) -> bool:
        return name.startswith(self.reserved_prefix)

    def is_anti_automation_field(self, name: str) -> bool:
        return self.anti_automation_marker in name.lower()

    def is_custom_field(self, name: str) -> bool:
        """Return True for fields whose values belong in the message body."""
        return not self.is_reserved(name) and not self.is_anti_automation_field(name)

    def recipient_key(self, name: str) -> str:
        """Map a recipient field name onto its ``Recipients`` attribute."""
        stripped = name[len(self.reserved_prefix):] if self.is_reserved(name) else name
        return "reply_to" if stripped == "replyTo" else stripped


DEFAULT_FIELD_RULES = FieldRules()


@dataclass(frozen=True)
class Settings:
    encryption_key: str
    sender_arn: str
    sender: str = DEFAULT_SENDER
    subject: str = DEFAULT_SUBJECT
    whitelist: Optional[frozenset[str]] = None
    recaptcha_secret: Optional[str] = None


def _env(name: str) -> str:
    return (os.environ.get(name) or "").strip()


def get_whitelist() -> Optional[frozenset[str]]:
    """Return the configured recipient whitelist, or None when not enforced."""
    raw = _env("FORM_WHITELIST")
    if not raw:
        return None
    return normalize_emails(parse_email_list(raw))


def load_settings() -> Settings:
    """Build settings from the environment.

    Raises:
        ValueError: If the encryption key or sender identity is missing.
    """
    encryption_key = _env("FORM_ENCRYPTION_KEY")
    if not encryption_key:
        raise ValueError("FORM_ENCRYPTION_KEY must be set in environment variables")
    sender_arn = _env("FORM_SENDER_ARN")
    if not sender_arn:
        raise ValueError("FORM_SENDER_ARN must be set in environment variables")

    return Settings(
        encryption_key=encryption_key,
        sender_arn=sender_arn,
        sender=_env("FORM_SENDER") or DEFAULT_SENDER,
        subject=_env("FORM_SUBJECT") or DEFAULT_SUBJECT,
        whitelist=get_whitelist(),
        recaptcha_secret=_env("RECAPTCHA_SECRET") or None,
    )
