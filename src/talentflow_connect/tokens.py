"""Parsing helpers for signed (JWT-style) backend credentials."""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
from dataclasses import dataclass

_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(frozen=True)
class TokenClaims:
    """Claims decoded from a signed credential payload.

    Attributes:
        expires_at: ``exp`` claim as epoch seconds, or ``None`` when absent
            or unusable.
        role: ``role`` claim when present.
        expiry_unparseable: Whether an ``exp`` claim was present but not a
            finite number of seconds.
    """

    expires_at: float | None
    role: str | None = None
    expiry_unparseable: bool = False


def looks_like_signed_token(value: str) -> bool:
    """Return true when ``value`` has three base64url segments."""
    parts = value.split(".")
    return len(parts) == 3 and all(_SEGMENT.match(part) for part in parts)


def _decode_segment(segment: str) -> bytes | None:
    padded = segment + "=" * (-len(segment) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return None


def parse_token_claims(token: str) -> TokenClaims | None:
    """Decode the payload of a signed credential.

    Returns ``None`` for anything that is not a well-formed three-part token
    with a JSON object payload. The signature is not verified.
    """
    if not looks_like_signed_token(token):
        return None
    raw = _decode_segment(token.split(".")[1])
    if raw is None:
        return None
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None

    exp = payload.get("exp")
    expires_at = _expiry_seconds(exp)
    role = payload.get("role")
    return TokenClaims(
        expires_at=expires_at,
        role=role if isinstance(role, str) else None,
        expiry_unparseable=exp is not None and expires_at is None,
    )


def _expiry_seconds(exp: object) -> float | None:
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    try:
        seconds = float(exp)
    except OverflowError:
        return None
    return seconds if math.isfinite(seconds) else None


def is_credential_expired(
    credential: str,
    *,
    now: float,
    buffer_seconds: float,
    missing_expiry_is_expired: bool = False,
) -> bool:
    """Return true when the credential expires within ``buffer_seconds``.

    Opaque (non-token) credentials are never considered expired. Tokens
    without a usable ``exp`` claim (absent, non-numeric, out of float range
    or non-finite) follow ``missing_expiry_is_expired``.
    """
    claims = parse_token_claims(credential)
    if claims is None:
        return False
    if claims.expires_at is None:
        return missing_expiry_is_expired
    return claims.expires_at < now + buffer_seconds
