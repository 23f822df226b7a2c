"""
HMAC-SHA256 webhook signatures.

Both the sender and the receiver sign the canonical JSON form of the payload
(sorted keys, no whitespace), so the signature depends on the field set and
values only, never on dict ordering.

Usage:
    signature = sign(secret, payload)          # "sha256=<hex>"
    verify(signature, secret, payload)         # True
"""

import hashlib
import hmac
import json
from typing import Any, Mapping

SIGNATURE_PREFIX = "sha256="


def canonical_json(payload: Mapping[str, Any]) -> str:
    """Serialize a payload to the exact string that gets signed and sent."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign(secret: str, payload: Mapping[str, Any]) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        canonical_json(payload).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(signature: Any, secret: Any, payload: Any) -> bool:
    """
    Check a received signature against the payload.

    Fails closed: any malformed input (missing signature, wrong prefix, empty
    secret, payload that is not a JSON object) returns False instead of raising.
    """
    if not isinstance(signature, str) or not signature.startswith(SIGNATURE_PREFIX):
        return False
    if not isinstance(secret, str) or not secret:
        return False
    if not isinstance(payload, Mapping):
        return False

    try:
        expected = sign(secret, payload)
    except (TypeError, ValueError):
        return False

    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))
