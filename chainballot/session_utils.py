"""Signed bearer tokens: ``<payload>.<hmac-sha256>``, both base64url without padding."""
import base64
import hashlib
import hmac
import json
import os
import time
from typing import Any

REQUIRED_CLAIMS = ("sub", "role", "exp")


def _encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _decode(part: str) -> bytes:
    return base64.urlsafe_b64decode(part + "=" * (-len(part) % 4))


def _session_secret(secret: str | None = None) -> bytes:
    secret = secret or os.getenv("SESSION_SECRET")
    if not secret:
        raise RuntimeError("SESSION_SECRET is required")
    return secret.encode("utf-8")


def _sign(payload_part: str, secret: str | None) -> bytes:
    return hmac.new(_session_secret(secret), payload_part.encode("ascii"), hashlib.sha256).digest()


def create_session_token(user_id: str, role: str, ttl_seconds: int = 3600, secret: str | None = None) -> str:
    now = int(time.time())
    claims = {"sub": str(user_id), "role": role, "iat": now, "exp": now + int(ttl_seconds)}
    payload_part = _encode(json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8"))
    return f"{payload_part}.{_encode(_sign(payload_part, secret))}"


def verify_session_token(token: str, secret: str | None = None) -> dict[str, Any]:
    """Return the claims of a valid token; raise ValueError otherwise."""
    payload_part, _, signature_part = (token or "").partition(".")
    if not payload_part or not signature_part:
        raise ValueError("Invalid session token format")

    expected = _sign(payload_part, secret)
    try:
        provided = _decode(signature_part)
        claims = json.loads(_decode(payload_part))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError("Invalid session token format") from exc
    if not hmac.compare_digest(expected, provided):
        raise ValueError("Invalid session token signature")

    if not isinstance(claims, dict) or any(name not in claims for name in REQUIRED_CLAIMS):
        raise ValueError("Invalid session token claims")
    if int(claims["exp"]) < int(time.time()):
        raise ValueError("Session token expired")
    return claims
