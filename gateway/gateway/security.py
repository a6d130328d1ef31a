"""Shared-secret HMAC-SHA256 signature verification.

Used for both the OAuth callback (signature over the canonical query
string) and webhook ingestion (signature over the raw request body).
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable, Mapping

# Query parameters that carry the signature itself and are never signed.
_SIGNATURE_PARAMS: frozenset[str] = frozenset({"hmac", "signature"})


def sign(secret: str, message: bytes) -> str:
    """Return the lowercase hex HMAC-SHA256 of *message* under *secret*."""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, message: bytes, provided_signature_hex: str | None) -> bool:
    """Compare *provided_signature_hex* with the HMAC of *message* in constant time.

    Never raises for malformed input: an empty secret, a missing
    signature, or a value that is not valid hex all return ``False``.

    Parameters
    ----------
    secret:
        Shared secret.  An empty secret never verifies anything.
    message:
        The exact bytes the sender signed.
    provided_signature_hex:
        Hex digest supplied by the sender (case-insensitive).

    Returns
    -------
    bool
        ``True`` only if the signature matches.
    """
    if not secret or not provided_signature_hex:
        return False
    try:
        provided = bytes.fromhex(provided_signature_hex.strip())
    except (ValueError, TypeError):
        return False
    expected = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return hmac.compare_digest(expected, provided)


def canonical_query_message(params: Mapping[str, str] | Iterable[tuple[str, str]]) -> bytes:
    """Build the signed message for an OAuth callback query string.

    Drops ``hmac`` and ``signature``, sorts the remaining parameters by key
    and joins them as ``key=value`` pairs separated by ``&``.  Values are
    used as decoded by the framework, mirroring how the platform signs.
    """
    items = params.items() if isinstance(params, Mapping) else params
    pairs = sorted((k, v) for k, v in items if k not in _SIGNATURE_PARAMS)
    return "&".join(f"{k}={v}" for k, v in pairs).encode("utf-8")
