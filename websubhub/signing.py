"""Challenge tokens and payload signatures for the hub protocol."""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets

CHALLENGE_BYTES = 64
SIGNATURE_HEADER = "X-Hub-Signature"
SIGNATURE_ALGORITHM = "sha256"


def generate_challenge(nbytes: int = CHALLENGE_BYTES) -> str:
    """Return a fresh hex-encoded challenge (``2 * nbytes`` characters)."""

    return secrets.token_hex(nbytes)


def serialize_content(topic: str, content: str) -> bytes:
    """Encode a push body; the exact bytes returned are what gets signed."""

    return json.dumps(
        {"topic": topic, "content": content},
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def compute_hmac(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def sign(secret: str, payload: bytes) -> str:
    """Value for the signature header, e.g. ``sha256=ab12...``."""

    return f"{SIGNATURE_ALGORITHM}={compute_hmac(secret, payload)}"
