"""
HMAC-SHA256 signature verification for inbound webhook payloads.

The signature is always computed over the exact raw request bytes. Parsing
and re-serializing JSON can change the byte layout, so verification must run
before (and independently of) payload parsing.

Accepted header forms:
    <hex digest>
    sha256=<hex digest>          (also hmac-sha256=, case-insensitive)
    sha256=<old>, sha256=<new>   (any candidate may match, for secret rotation)
"""

import hashlib
import hmac
import re
from typing import Optional

from app.core.errors import ConfigurationError

SIGNATURE_PREFIXES = ("sha256=", "hmac-sha256=")
DEFAULT_PREFIX = "sha256="

_HEX_PATTERN = re.compile(r"[0-9a-fA-F]+")


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(secret: str | bytes, body: bytes) -> str:
    """Compute the hex HMAC-SHA256 digest of ``body`` keyed by ``secret``."""
    return hmac.new(_as_bytes(secret), msg=body, digestmod=hashlib.sha256).hexdigest()


def _strip_prefix(candidate: str) -> str:
    lowered = candidate.lower()
    for prefix in SIGNATURE_PREFIXES:
        if lowered.startswith(prefix):
            return candidate[len(prefix):]
    return candidate


def _decode_hex(value: str) -> Optional[bytes]:
    # bytes.fromhex tolerates inner whitespace, so require a strict hex string first
    if len(value) % 2 or not _HEX_PATTERN.fullmatch(value):
        return None
    return bytes.fromhex(value)


def verify(secret: str | bytes, body: Optional[bytes], presented: Optional[str]) -> bool:
    """
    Check a single presented signature against ``body``.

    Returns False (never raises) for a missing body or signature, a value that
    is not valid hex, or an unknown scheme prefix.
    """
    if not secret or not body or not presented:
        return False

    presented_digest = _decode_hex(_strip_prefix(presented.strip()))
    if presented_digest is None:
        return False

    expected = hmac.new(_as_bytes(secret), msg=body, digestmod=hashlib.sha256).digest()
    return hmac.compare_digest(presented_digest, expected)


def verify_header(secret: str | bytes, body: Optional[bytes], header_value: Optional[str]) -> bool:
    """Check a header value holding one or more comma-separated signatures."""
    if not header_value:
        return False

    candidates = [c.strip() for c in header_value.split(",")]
    # Evaluate every candidate so timing does not reveal which one matched
    results = [verify(secret, body, c) for c in candidates if c]
    return any(results)


class SignatureVerifier:
    """
    Authenticates webhook payloads with a shared secret.

    Constructed once at startup and handed to the ingestion pipeline; a
    missing secret is a fatal configuration error, never a per-request one.
    """

    def __init__(self, secret: Optional[str]):
        if not secret:
            raise ConfigurationError("WEBHOOK_SECRET is required to verify webhook signatures")
        self._secret = secret.encode("utf-8")

    def sign(self, body: bytes) -> str:
        return sign(self._secret, body)

    def signature_header(self, body: bytes, prefix: str = DEFAULT_PREFIX) -> str:
        """Build a prefixed header value, e.g. ``sha256=<hex>``."""
        return f"{prefix}{self.sign(body)}"

    def verify(self, body: Optional[bytes], header_value: Optional[str]) -> bool:
        return verify_header(self._secret, body, header_value)

    def __repr__(self) -> str:
        return "<SignatureVerifier algorithm=hmac-sha256>"
