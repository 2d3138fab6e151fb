"""X-Hub-Signature-256 verification for Meta webhooks.

The digest is computed over the raw request bytes exactly as received;
re-serializing parsed JSON is not byte-identical and would not verify.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable

SIGNATURE_HEADER = "x-hub-signature-256"
SIGNATURE_PREFIX = "sha256="


def sign_body(raw_body: bytes, secret: str) -> str:
    """Return the header value Meta would send for ``raw_body``."""
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(
    raw_body: bytes,
    signature: str | None,
    secrets: Iterable[str],
) -> bool:
    """Return True if any secret produces ``signature`` for ``raw_body``.

    Fails closed on a missing header, a header without the ``sha256=``
    prefix, or an empty secret list. Comparison uses hmac.compare_digest.
    """
    if not signature or not isinstance(signature, str):
        return False
    if not signature.startswith(SIGNATURE_PREFIX):
        return False
    if not isinstance(raw_body, (bytes, bytearray)):
        return False

    try:
        provided = signature.encode("ascii")
    except UnicodeEncodeError:
        return False

    matched = False
    for secret in secrets:
        if not secret:
            continue
        expected = sign_body(bytes(raw_body), secret).encode("ascii")
        if hmac.compare_digest(provided, expected):
            matched = True
            break
    return matched
