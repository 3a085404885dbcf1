"""Recipient address encryption for public forms.

Form owners embed encrypted tokens instead of plaintext addresses so the
recipient never appears in page source. Tokens use AES-256-GCM with a key
derived from the configured key material via HKDF-SHA256, and are encoded
as url-safe base64 of ``nonce || ciphertext``.
"""

from __future__ import annotations

import argparse
import base64
import binascii
import os
import sys

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from dotenv import load_dotenv

HKDF_INFO = b"formrelay-address-token-v1"
NONCE_SIZE = 12


def derive_key(key: str) -> bytes:
    """Derive a 256-bit AES key from configured key material."""
    if not key:
        raise ValueError("Encryption key must not be empty")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=HKDF_INFO,
    )
    return hkdf.derive(key.encode("utf-8"))


def encrypt(address: str, key: str) -> str:
    """Encrypt an address into a url-safe token."""
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(derive_key(key)).encrypt(nonce, address.encode("utf-8"), None)
    return base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii").rstrip("=")


def decrypt(token: str, key: str) -> str:
    """Decrypt a token produced by :func:`encrypt`.

    Raises:
        ValueError: If the token is malformed, was tampered with, or was
            encrypted under a different key.
    """
    padded = (token or "").strip() + "=" * (-len((token or "").strip()) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError(f"Malformed address token: {exc}") from exc
    if len(raw) <= NONCE_SIZE:
        raise ValueError("Malformed address token: too short")

    nonce, ciphertext = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
    try:
        plaintext = AESGCM(derive_key(key)).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise ValueError("Decryption failed - invalid key or tampered token") from exc
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError("Decrypted token is not valid text") from exc


def main(argv: list[str] | None = None) -> int:
    """Encrypt or decrypt recipient addresses from the command line."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Encrypt form recipient addresses")
    parser.add_argument("action", choices=("encrypt", "decrypt"))
    parser.add_argument("value", help="Address to encrypt or token to decrypt")
    parser.add_argument(
        "--key",
        default=None,
        help="Key material (defaults to FORM_ENCRYPTION_KEY)",
    )
    args = parser.parse_args(argv)

    key = args.key or os.environ.get("FORM_ENCRYPTION_KEY", "")
    if not key:
        parser.error("no key given and FORM_ENCRYPTION_KEY is not set")

    if args.action == "encrypt":
        print(encrypt(args.value, key))
        return 0
    try:
        print(decrypt(args.value, key))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
