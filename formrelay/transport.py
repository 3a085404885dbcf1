from __future__ import annotations

import logging
import os
import smtplib
from email.message import EmailMessage

from .models import Message

logger = logging.getLogger(__name__)


def to_email_message(message: Message) -> EmailMessage:
    """Convert an envelope into a MIME message.

    Bcc recipients never appear in the headers; :func:`send_message` passes
    them to the SMTP envelope only.
    """
    msg = EmailMessage()
    msg["From"] = message.sender
    msg["To"] = ", ".join(message.destination.to)
    if message.destination.cc:
        msg["Cc"] = ", ".join(message.destination.cc)
    if message.reply_to:
        msg["Reply-To"] = ", ".join(message.reply_to)
    msg["Subject"] = message.subject
    msg.set_content(message.body)
    return msg


def envelope_recipients(message: Message) -> list[str]:
    """Return every SMTP recipient, deduplicated while preserving order."""
    destination = message.destination
    return list(dict.fromkeys([*destination.to, *destination.cc, *destination.bcc]))


def send_message(message: Message, send: bool = True) -> None:
    """Deliver an envelope over SMTP using ``EMAIL_*`` credentials.

    Args:
        message: A message that already passed ``validate_message``.
        send: When True, send via SMTP; otherwise log the rendered message.
    """
    msg = to_email_message(message)
    if not send:
        logger.info(f"Message preview (not sent):\n{message}")
        return

    with smtplib.SMTP_SSL(
        os.environ["EMAIL_HOST"], int(os.environ["EMAIL_PORT"])
    ) as smtp:
        smtp.login(os.environ["EMAIL_USER"], os.environ["EMAIL_PASS"])
        smtp.send_message(msg, to_addrs=envelope_recipients(message))
    logger.info(
        f"Sent form message to {len(envelope_recipients(message))} recipient(s)."
    )
