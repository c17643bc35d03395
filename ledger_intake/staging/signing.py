"""
Payload signing for staged-action delivery.

The transport that delivers extracted actions (webhook, queue, chat bot)
and the staging boundary share one secret. The sender signs the canonical
JSON body; the receiver recomputes the signature and refuses to stage
anything that does not match.

Wire format:
    body:   canonical JSON of the ActionEnvelope
    header: X-AI-Signature: <hex HMAC-SHA256(secret, body)>
"""

import hashlib
import hmac
import json
from typing import Any, Union

SIGNATURE_HEADER = "X-AI-Signature"


class SignatureMismatch(Exception):
    """The signature does not match the body. Nothing may be staged."""
    pass


def canonical_json(payload: dict[str, Any]) -> bytes:
    """
    Serialize a payload deterministically.

    Sorted keys and compact separators make the bytes independent of dict
    insertion order, so sender and receiver sign the same thing.
    """
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def _secret_bytes(secret: Union[str, bytes]) -> bytes:
    return secret.encode("utf-8") if isinstance(secret, str) else secret


def compute_signature(secret: Union[str, bytes], body: bytes) -> str:
    """Hex HMAC-SHA256 of the body."""
    return hmac.new(_secret_bytes(secret), body, hashlib.sha256).hexdigest()


def verify_signature(secret: Union[str, bytes], body: bytes, signature: str) -> None:
    """
    Check a delivered signature in constant time.

    Raises:
        SignatureMismatch: missing or wrong signature.
    """
    if not signature:
        raise SignatureMismatch("Missing signature")
    expected = compute_signature(secret, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SignatureMismatch("Signature does not match payload")
