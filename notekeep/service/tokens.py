from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from datetime import timedelta
from typing import Any, Optional

from notekeep.config import Settings
from notekeep.logging import get_logger

logger = get_logger(__name__)

CLOCK_SKEW_LEEWAY = timedelta(seconds=120)


def hash_token(token: str) -> str:
    """SHA-256 hex digest; the only form in which bearer secrets are stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def random_hex(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 JWT signing and verification with issuer/audience pinning."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def encode(self, claims: dict[str, Any]) -> str:
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            **claims,
        }
        header_enc = _encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, token_type: Optional[str] = None) -> Optional[dict[str, Any]]:
        """Return the claims, or None for any signature, claim or expiry failure."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if token_type is not None and payload.get("token_type") != token_type:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - CLOCK_SKEW_LEEWAY.total_seconds():
            return None
        if not payload.get("sub"):
            return None
        return payload
