from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Callable, Optional

from benefitsai.logging import get_logger

logger = get_logger(__name__)


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def unverified_payload(token: str) -> Optional[dict[str, Any]]:
    """Read a JWT payload without checking the signature.

    Only for metadata (such as ``exp``) on tokens a provider has already
    verified.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        payload = json.loads(decode_segment(parts[1]))
    except (ValueError, TypeError):
        return None
    return payload if isinstance(payload, dict) else None


class HS256Signer:
    """HMAC-SHA256 compact JWT signer bound to one issuer and audience."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock: Callable[[], float] = time.time,
        leeway: timedelta = timedelta(seconds=120),
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._clock = clock
        self._leeway = leeway

    def _sign(self, signing_input: str) -> str:
        return encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        body = {"iss": self.issuer, "aud": self.audience, **payload}
        header_enc = encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = encode_segment(json.dumps(body, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload if signature, issuer, audience and expiry check out."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self._leeway.total_seconds():
            return None
        return payload
