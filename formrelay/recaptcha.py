from __future__ import annotations

import logging
from typing import Optional

import requests

from .config import RECAPTCHA_TIMEOUT_SECONDS, RECAPTCHA_VERIFY_URL
from .errors import ChallengeFailed, FormError

logger = logging.getLogger(__name__)


def verify_recaptcha(
    token: Optional[str],
    secret: str,
    remote_ip: Optional[str] = None,
) -> Optional[FormError]:
    """Check an anti-automation token with the siteverify endpoint.

    Args:
        token: Challenge response submitted with the form.
        secret: Server-side reCAPTCHA secret.
        remote_ip: Caller address forwarded to the verifier.

    Returns:
        ``ChallengeFailed`` when the token is missing or rejected, else ``None``.
    """
    if not token:
        return ChallengeFailed()

    data = {"secret": secret, "response": token}
    if remote_ip:
        data["remoteip"] = remote_ip
    headers = {"User-Agent": "formrelay/1.0"}
    try:
        r = requests.post(
            RECAPTCHA_VERIFY_URL,
            data=data,
            headers=headers,
            timeout=RECAPTCHA_TIMEOUT_SECONDS,
        )
        r.raise_for_status()
        payload = r.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning(f"reCAPTCHA verification request failed: {exc}")
        return ChallengeFailed()

    if not payload.get("success"):
        logger.info(f"reCAPTCHA rejected token: {payload.get('error-codes') or []}")
        return ChallengeFailed()
    return None
