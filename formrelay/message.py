from __future__ import annotations

import re
from typing import Mapping, Optional

from .config import DEFAULT_FIELD_RULES, FieldRules
from .email_utils import is_valid_email
from .errors import FormError, InvalidEnvelope
from .models import Destination, FormRequest, Message

SENDER_ADDRESS_PATTERN = re.compile(r"<.+>")


def compose_sender(sender: str, sender_arn: Optional[str]) -> str:
    """Return ``"<sender> <address>"`` using the last path segment of an identity ARN."""
    address = (sender_arn or "").split("/")[-1]
    return f"{sender} <{address}>"


def render_body(
    fields: Mapping[str, str],
    rules: FieldRules = DEFAULT_FIELD_RULES,
) -> str:
    """Render custom form fields as ``NAME: value`` lines in submission order."""
    return "".join(
        f"{name.upper()}: {value}\r\n"
        for name, value in fields.items()
        if rules.is_custom_field(name)
    )


def build_message(
    request: FormRequest,
    sender: str,
    sender_arn: Optional[str],
    subject: str,
    reply_to_override: Optional[str] = None,
    rules: FieldRules = DEFAULT_FIELD_RULES,
) -> Message:
    """Build the outbound envelope for a request that already passed validation.

    Args:
        request: Validated form request.
        sender: Display name for the From header.
        sender_arn: Identity locator whose last segment is the sender address.
        subject: Message subject.
        reply_to_override: Explicit reply-to address; replaces the form's
            ``_replyTo`` list when given.
        rules: Field classification rules.

    Returns:
        The message envelope.
    """
    recipients = request.recipients
    if reply_to_override:
        reply_to: tuple[str, ...] = (reply_to_override,)
    else:
        reply_to = tuple(recipients.reply_to)

    return Message(
        sender=compose_sender(sender, sender_arn),
        subject=subject,
        body=render_body(request.fields, rules),
        reply_to=reply_to,
        destination=Destination(
            to=(recipients.to,),
            cc=tuple(recipients.cc),
            bcc=tuple(recipients.bcc),
        ),
    )


def _first_invalid(addresses: tuple[str, ...]) -> Optional[str]:
    return next((address for address in addresses if not is_valid_email(address)), None)


def validate_message(message: Message) -> Optional[FormError]:
    """Return the first envelope problem, or None when the message can be sent."""
    if not SENDER_ADDRESS_PATTERN.search(message.sender or ""):
        return InvalidEnvelope("Source should contain a valid email address")

    if not message.subject:
        return InvalidEnvelope("Subject is invalid")

    if not message.body:
        return InvalidEnvelope("Body is invalid")

    checks = (
        ("reply to", message.reply_to),
        ("to", message.destination.to),
        ("cc", message.destination.cc),
        ("bcc", message.destination.bcc),
    )
    for label, addresses in checks:
        invalid = _first_invalid(addresses)
        if invalid is not None:
            return InvalidEnvelope(f"Invalid {label} recipient: {invalid}")

    return None
