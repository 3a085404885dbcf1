"""Typed validation failures returned by the form pipeline.

Validation functions return one of these (or ``None``) rather than raising,
so the first violated rule can be mapped straight onto an HTTP response.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FormError:
    message: str
    status: int = 500

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class Forbidden(FormError):
    message: str = "Forbidden"
    status: int = 403


@dataclass(frozen=True)
class UnprocessableInput(FormError):
    status: int = 422


@dataclass(frozen=True)
class MalformedOrigin(FormError):
    status: int = 400


@dataclass(frozen=True)
class InvalidEnvelope(FormError):
    status: int = 500


@dataclass(frozen=True)
class ChallengeFailed(FormError):
    message: str = "Failed reCAPTCHA verification"
    status: int = 422


@dataclass(frozen=True)
class DeliveryFailed(FormError):
    message: str = "Failed to send message"
    status: int = 500
