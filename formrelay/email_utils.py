from __future__ import annotations

import re
from collections.abc import Iterable
from email.utils import parseaddr
from urllib.parse import urlparse

EMAIL_PATTERN = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)+$"
)
HOSTNAME_PATTERN = re.compile(
    r"^(?:[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$"
)
MAX_EMAIL_LENGTH = 320
MAX_URL_LENGTH = 2048


def normalize_email(email: str | None) -> str:
    """Return a normalized email string for comparisons."""
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    """Return True when an email has a pragmatic valid format."""
    if not email or len(email) > MAX_EMAIL_LENGTH:
        return False
    if "\r" in email or "\n" in email:
        return False
    _, parsed = parseaddr(email)
    if parsed != email:
        return False
    return bool(EMAIL_PATTERN.fullmatch(email))


def is_valid_website(url: str | None) -> bool:
    """Return True for an absolute http(s) URL with a real hostname."""
    candidate = url or ""
    if not candidate or len(candidate) > MAX_URL_LENGTH:
        return False
    if any(ch.isspace() for ch in candidate):
        return False
    try:
        parsed = urlparse(candidate)
        hostname = parsed.hostname or ""
        parsed.port  # raises ValueError for a malformed port
    except ValueError:
        return False
    if parsed.scheme.lower() not in ("http", "https"):
        return False
    if hostname == "localhost":
        return True
    return bool(HOSTNAME_PATTERN.fullmatch(hostname))


def parse_email_list(raw: str | None) -> list[str]:
    """Split a raw configured address list into candidate values."""
    if not raw:
        return []
    return [item.strip() for item in re.split(r"[,\n;]+", raw) if item.strip()]


def normalize_emails(emails: Iterable[str | None]) -> frozenset[str]:
    """Normalize a collection of addresses into a lookup set."""
    return frozenset(
        normalized for normalized in (normalize_email(e) for e in emails) if normalized
    )
