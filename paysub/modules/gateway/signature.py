"""HMAC-SHA256 verification of gateway notifications.

Two canonicalizations exist across gateway API versions. ``sorted_params``
signs every form parameter except ``signature``, sorted by key and
concatenated as key followed by value with no separators. ``raw_body`` signs
the exact request bytes. Which one applies is a per-deployment setting.
"""

import hashlib
import hmac
import logging
from enum import Enum
from typing import Mapping, Optional

from paysub.core.exceptions import SignatureError

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "signature"


class SignatureMode(str, Enum):
    SORTED_PARAMS = "sorted_params"
    RAW_BODY = "raw_body"


def canonical_payload(params: Mapping[str, str]) -> str:
    """Sorted key+value concatenation of all parameters except the signature."""
    return "".join(
        f"{key}{params[key]}" for key in sorted(params) if key != SIGNATURE_FIELD
    )


class SignatureVerifier:
    """Computes and checks notification signatures. Pure, no I/O."""

    def __init__(self, secret: str, mode: SignatureMode = SignatureMode.SORTED_PARAMS):
        self.secret = secret
        self.mode = SignatureMode(mode)

    def compute(
        self,
        params: Optional[Mapping[str, str]] = None,
        raw_body: bytes = b"",
    ) -> str:
        """Return the lowercase hex HMAC-SHA256 for the configured canonicalization."""
        if self.mode == SignatureMode.RAW_BODY:
            message = raw_body
        else:
            message = canonical_payload(params or {}).encode("utf-8")
        return hmac.new(self.secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def verify(
        self,
        claimed: Optional[str],
        params: Optional[Mapping[str, str]] = None,
        raw_body: bytes = b"",
    ) -> bool:
        if not self.secret:
            logger.error("Webhook secret is not configured; rejecting notification")
            return False
        if not claimed:
            return False

        expected = self.compute(params, raw_body)
        valid = hmac.compare_digest(expected, claimed.strip().lower())
        if not valid:
            # Computed value goes to debug logs only, never to the caller
            logger.debug(f"Signature mismatch: expected {expected}")
        return valid

    def require(
        self,
        claimed: Optional[str],
        params: Optional[Mapping[str, str]] = None,
        raw_body: bytes = b"",
    ) -> None:
        """Raise SignatureError unless the claimed signature verifies."""
        if not claimed:
            raise SignatureError("Missing signature")
        if not self.verify(claimed, params, raw_body):
            raise SignatureError("Invalid signature")

