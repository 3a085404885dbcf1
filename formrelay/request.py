"""Parse and validate inbound form submissions.

A submission is a URL-encoded body plus the query string and whatever the
transport knows about the caller. Recipient fields may hold a plaintext
address or an encrypted token; both resolve to a plaintext address here and
are rejected later by :func:`validate_request` if the result is not an email.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Callable, Optional
from urllib.parse import parse_qs

from .config import DEFAULT_FIELD_RULES, FieldRules
from .crypto import decrypt
from .email_utils import is_valid_email, is_valid_website, normalize_email
from .errors import Forbidden, FormError, MalformedOrigin, UnprocessableInput
from .models import Address, EncryptedAddress, FormRequest, PlainAddress, Recipients

logger = logging.getLogger(__name__)

Decryptor = Callable[[str, str], str]


def classify_address(raw: str) -> Address:
    """Tag a raw recipient value as plaintext or encrypted."""
    if is_valid_email(raw):
        return PlainAddress(raw)
    return EncryptedAddress(raw)


def resolve_address(raw: str, key: str, decryptor: Decryptor = decrypt) -> str:
    """Return the plaintext address behind a raw recipient value.

    Plaintext addresses pass through untouched. Anything else is decrypted;
    a token that cannot be decrypted is returned as-is, which the syntax
    check in :func:`validate_request` then rejects.
    """
    address = classify_address(raw)
    if isinstance(address, PlainAddress):
        return address.value
    try:
        return decryptor(address.token, key)
    except ValueError as exc:
        logger.warning(f"Could not decrypt recipient token: {exc}")
        return address.token


def resolve_address_list(
    raw: str,
    key: str,
    delimiter: str = ";",
    decryptor: Decryptor = decrypt,
) -> tuple[str, ...]:
    """Resolve every piece of a delimited recipient field, preserving order."""
    return tuple(resolve_address(piece, key, decryptor) for piece in raw.split(delimiter))


def parse_form(body: str | bytes | None) -> dict[str, str]:
    """Parse a URL-encoded body into a flat field map.

    Blank values are kept so an empty field is still "present". When a name
    repeats, the first value wins. Undecodable bytes become U+FFFD.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    parsed = parse_qs(body or "", keep_blank_values=True)
    return {name: values[0] for name, values in parsed.items()}


def _first_value(params: Mapping[str, Any] | None, name: str) -> Optional[str]:
    if not params or name not in params:
        return None
    value = params[name]
    if isinstance(value, (list, tuple)):
        return str(value[0]) if value else None
    return None if value is None else str(value)


def _source_ip(context: Mapping[str, Any] | None) -> Optional[str]:
    """Pull the caller address out of the transport request context."""
    if not context:
        return None
    identity = context.get("identity")
    if isinstance(identity, Mapping) and identity.get("sourceIp"):
        return str(identity["sourceIp"])
    if context.get("source_ip"):
        return str(context["source_ip"])
    return None


def _build_recipients(
    fields: Mapping[str, str],
    key: str,
    rules: FieldRules,
    decryptor: Decryptor,
) -> Recipients:
    resolved: dict[str, Any] = {}
    for name in rules.single_recipient_fields:
        if name in fields:
            resolved[rules.recipient_key(name)] = resolve_address(
                fields[name], key, decryptor
            )
    for name in rules.delimited_recipient_fields:
        if name in fields:
            resolved[rules.recipient_key(name)] = resolve_address_list(
                fields[name], key, rules.recipient_delimiter, decryptor
            )
    return Recipients(**resolved)


def _build_recaptcha(fields: Mapping[str, str], rules: FieldRules) -> Optional[str]:
    for name in rules.anti_automation_fields:
        if fields.get(name):
            return fields[name]
    return None


def normalize_request(
    body: str | bytes | None,
    query: Mapping[str, Any] | None,
    context: Mapping[str, Any] | None,
    key: str,
    rules: FieldRules = DEFAULT_FIELD_RULES,
    decryptor: Decryptor = decrypt,
) -> FormRequest:
    """Assemble a :class:`FormRequest` from a raw submission without validating it.

    Args:
        body: URL-encoded form body.
        query: Query-string parameters, either flat or ``parse_qs`` style.
        context: Transport request context carrying the caller address.
        key: Key material for encrypted recipient tokens.
        rules: Field classification rules.
        decryptor: Token decryption function.

    Returns:
        The normalized request.
    """
    fields = parse_form(body)
    response_format = _first_value(query, rules.format_param)
    return FormRequest(
        fields=fields,
        recipients=_build_recipients(fields, key, rules, decryptor),
        response_format=(
            rules.default_response_format if response_format is None else response_format
        ),
        redirect_url=fields.get(rules.redirect_field),
        recaptcha=_build_recaptcha(fields, rules),
        source_ip=_source_ip(context),
    )


def _recipient_error(
    field_name: str,
    emails: Iterable[str],
    whitelist: Optional[frozenset[str]],
) -> Optional[FormError]:
    normalized = [email.lower() for email in emails]
    if any(not is_valid_email(email) for email in normalized):
        return UnprocessableInput(f"Invalid email in '{field_name}' field")
    if whitelist is not None and any(email not in whitelist for email in normalized):
        return UnprocessableInput(f"Non-whitelisted email in '{field_name}' field")
    return None


def validate_request(
    request: FormRequest,
    whitelist: Optional[Iterable[str]] = None,
    rules: FieldRules = DEFAULT_FIELD_RULES,
) -> Optional[FormError]:
    """Return the first rule a request violates, or None when it is valid.

    Args:
        request: Normalized request.
        whitelist: Optional addresses recipients must be confined to.
        rules: Field classification rules.

    Returns:
        A :class:`FormError` describing the failure, or ``None``.
    """
    fields = request.fields
    if fields.get(rules.honeypot_field):
        return Forbidden()

    if request.response_format not in rules.response_formats:
        return UnprocessableInput("Invalid response format in the query string")

    recipients = request.recipients
    if recipients.to == "":
        return UnprocessableInput("Invalid '_to' recipient")

    allowed = (
        frozenset(normalize_email(email) for email in whitelist)
        if whitelist is not None
        else None
    )
    for name in rules.single_recipient_fields:
        if name in fields:
            error = _recipient_error(
                name, [getattr(recipients, rules.recipient_key(name))], allowed
            )
            if error:
                return error

    for name in rules.delimited_recipient_fields:
        if name in fields:
            error = _recipient_error(
                name, getattr(recipients, rules.recipient_key(name)), allowed
            )
            if error:
                return error

    if request.redirect_url and not is_valid_website(request.redirect_url):
        return UnprocessableInput(f"Invalid website URL in '{rules.redirect_field}'")

    if not any(rules.is_custom_field(name) for name in fields):
        return UnprocessableInput("Expected at least one custom field")

    if not request.source_ip:
        return MalformedOrigin("Expected request to include source ip")

    return None
