"""Shared-secret token authentication for the relay websocket."""

from __future__ import annotations

import hashlib
import re
import secrets
import time

from fastapi import WebSocket

UNAUTHORIZED_CLOSE_CODE = 4001
UNAUTHORIZED_REASON = "Unauthorized"

_TOKEN_FORMAT_RE = re.compile(r"^[a-zA-Z0-9]+$")
_BEARER_RE = re.compile(r"^bearer\s+(\S+)$", re.IGNORECASE)


def constant_time_compare(a: str, b: str) -> bool:
    """Timing-safe string equality; unequal lengths are simply unequal."""
    return secrets.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def validate_token(token: str, expected: str) -> bool:
    return constant_time_compare(token, expected)


def is_valid_token_format(token: str) -> bool:
    """At least 16 characters, letters and digits only."""
    return bool(token) and len(token) >= 16 and bool(_TOKEN_FORMAT_RE.match(token))


def mask_token(token: str, visible_chars: int = 4) -> str:
    if not token:
        return ""
    return token[:visible_chars] + "***"


def generate_token(nbytes: int = 32) -> str:
    """Random hex token (two characters per byte)."""
    if nbytes <= 0:
        return ""
    return secrets.token_hex(nbytes)


def extract_token_from_header(header: str | list[str] | None) -> str | None:
    """Pull a token out of a Sec-WebSocket-Protocol style header value."""
    if header is None:
        return None
    if isinstance(header, list):
        if not header or not header[0].strip():
            return None
        return header[0].strip()
    # browsers send the offered sub-protocols comma separated
    first = header.split(",")[0].strip()
    return first or None


def extract_bearer_token(header: str | None) -> str | None:
    if not header:
        return None
    match = _BEARER_RE.match(header.strip())
    return match.group(1) if match else None


def is_expired_token(max_age_ms: float, issued_at_ms: float) -> bool:
    if max_age_ms <= 0:
        return True
    return time.time() * 1000 - issued_at_ms >= max_age_ms


def hash_token(token: str) -> str:
    """SHA-256 hex digest, safe to store or log."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def sanitize_for_log(token: str) -> str:
    if not token:
        return "[empty]"
    return f"{token[:4]}...({len(token)} chars)"


def authorize_websocket(websocket: WebSocket, expected: str | None) -> tuple[bool, str | None]:
    """
    Check a websocket handshake against the configured token.

    The token may arrive as the client-selected sub-protocol or as an
    ``Authorization: Bearer`` header. Returns ``(authorized, subprotocol)``
    where ``subprotocol`` must be echoed on accept when the token came in
    that way. No configured token means open mode.
    """
    offered = extract_token_from_header(websocket.headers.get("sec-websocket-protocol"))
    if not expected:
        return True, offered

    if offered is not None and constant_time_compare(offered, expected):
        return True, offered

    bearer = extract_bearer_token(websocket.headers.get("authorization"))
    if bearer is not None and constant_time_compare(bearer, expected):
        return True, None

    return False, None
