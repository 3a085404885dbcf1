from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Union


@dataclass(frozen=True)
class PlainAddress:
    """A recipient given in the clear by the form owner."""

    value: str


@dataclass(frozen=True)
class EncryptedAddress:
    """A recipient carried through the client as an opaque token."""

    token: str


Address = Union[PlainAddress, EncryptedAddress]


@dataclass(frozen=True)
class Recipients:
    to: str = ""
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    reply_to: tuple[str, ...] = ()


@dataclass(frozen=True)
class FormRequest:
    """A normalized, not yet validated, form submission."""

    fields: Mapping[str, str] = field(default_factory=dict)
    recipients: Recipients = field(default_factory=Recipients)
    response_format: str = "html"
    redirect_url: Optional[str] = None
    recaptcha: Optional[str] = None
    source_ip: Optional[str] = None

    def __post_init__(self) -> None:
        """Freeze the field mapping so the request cannot change after parsing."""
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    @property
    def is_json_response(self) -> bool:
        return self.response_format == "json"

    @property
    def is_redirect_response(self) -> bool:
        return bool(self.redirect_url)


@dataclass(frozen=True)
class Destination:
    to: tuple[str, ...] = ()
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()


@dataclass(frozen=True)
class Message:
    """An outbound message envelope ready for the transport."""

    sender: str
    subject: str
    body: str
    reply_to: tuple[str, ...] = ()
    destination: Destination = field(default_factory=Destination)

    def __str__(self) -> str:
        """Return a readable rendering of the envelope for logs and previews."""

        def fmt(values: tuple[str, ...]) -> str:
            return ", ".join(values) if values else "--"

        return (
            f"From     : {self.sender}\n"
            f"Reply-To : {fmt(self.reply_to)}\n"
            f"To       : {fmt(self.destination.to)}\n"
            f"Cc       : {fmt(self.destination.cc)}\n"
            f"Bcc      : {fmt(self.destination.bcc)}\n"
            f"Subject  : {self.subject}\n"
            f"{'-' * 60}\n"
            f"{self.body}"
        )
