"""HMAC-SHA256 signing and verification of webhook payloads.

The signed material is ``"{timestamp}.{payload}"`` so a captured signature is
only good for the timestamp it was issued with. Receivers recompute the
signature over the raw request body and reject timestamps outside the
tolerance window.
"""
from __future__ import annotations

import hmac
import re
import secrets
import time
from hashlib import sha256

SECRET_PREFIX = "whsec_"
SIGNATURE_PREFIX = "sha256="
DEFAULT_TOLERANCE_SECONDS = 300

_SECRET_RE = re.compile(rf"^{SECRET_PREFIX}[0-9a-fA-F]{{48}}$")
_SIGNATURE_RE = re.compile(rf"^{SIGNATURE_PREFIX}([0-9a-fA-F]+)$")


def generate_secret() -> str:
    return SECRET_PREFIX + secrets.token_hex(24)


def _signing_key(secret: str) -> bytes:
    if secret.startswith(SECRET_PREFIX):
        secret = secret[len(SECRET_PREFIX):]
    return secret.encode("utf-8")


def sign(payload: str, secret: str, timestamp: int) -> str:
    """Return ``sha256=<hex>`` for *payload* bound to *timestamp*.

    Both ``whsec_``-prefixed and raw secrets produce the same signature.
    """
    message = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(_signing_key(secret), message, sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(
    payload: str,
    signature: str,
    secret: str,
    timestamp: int,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> bool:
    if abs(int(time.time()) - timestamp) > tolerance_seconds:
        return False
    expected = sign(payload, secret, timestamp)
    # bytes, not str: compare_digest rejects non-ASCII str; unequal lengths just compare False
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def extract_signature_hash(signature: str) -> str | None:
    match = _SIGNATURE_RE.match(signature or "")
    return match.group(1) if match else None


def is_valid_secret_format(secret: str) -> bool:
    return bool(_SECRET_RE.match(secret or ""))
