"""Instagram webhook signature verification."""

import hashlib
import hmac
from typing import Optional

SIGNATURE_PREFIX = "sha256="


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def validate_signature(raw_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """Check X-Hub-Signature-256 against an HMAC of the exact bytes received.

    The body must not be re-serialized before calling this: key order and
    whitespace are part of what the platform signed.
    """
    if not signature_header or not secret:
        return False

    header = signature_header.strip()
    if not header.lower().startswith(SIGNATURE_PREFIX):
        return False
    provided = header[len(SIGNATURE_PREFIX) :].strip().lower()
    if not provided:
        return False

    expected = compute_signature(raw_body or b"", secret)
    return hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8"))
