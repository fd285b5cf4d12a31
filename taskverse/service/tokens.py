from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from taskverse.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token verification failures."""


class InvalidTokenError(TokenError):
    """Token is malformed, tampered, or issued for someone else."""


class TokenExpiredError(TokenError):
    """Token signature is valid but ``exp`` has passed."""


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    purpose: str
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None
    jti: Optional[str] = None


class TokenCodec:
    """Stateless HS256 signer/verifier for access and refresh tokens.

    Callers pass the secret per call so access and refresh tokens are signed
    with different keys. Instances hold no mutable state and are safe to share.
    """

    def __init__(
        self,
        issuer: str,
        audience: str,
        *,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    @classmethod
    def _sign(cls, secret: str, signing_input: str) -> str:
        return cls._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(
        self,
        subject: str,
        purpose: str,
        secret: str,
        ttl: timedelta,
        *,
        token_id: Optional[str] = None,
    ) -> str:
        now = self._clock()
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "token_type": purpose,
            "iat": int(now),
            "exp": int(now + ttl.total_seconds()),
            "jti": str(uuid.uuid4()),
        }
        if token_id:
            payload["tid"] = token_id
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(secret, signing_input)}"

    def verify(self, token: str, secret: str) -> TokenClaims:
        """Check structure, algorithm, signature, issuer, audience and expiry.

        Raises:
            InvalidTokenError: anything other than plain expiry.
            TokenExpiredError: ``now > exp + leeway``.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("malformed header") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("unsupported algorithm")

        expected_sig = self._sign(secret, f"{header_b64}.{payload_b64}")
        try:
            signature_ok = hmac.compare_digest(expected_sig.encode(), sig_b64.encode())
        except (TypeError, UnicodeError):
            signature_ok = False
        if not signature_ok:
            raise InvalidTokenError("bad signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed payload") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed payload")

        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidTokenError("audience mismatch")

        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            raise InvalidTokenError("missing subject")
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts))
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("missing expiry") from None
        if self._clock() > exp_ts + self.leeway_seconds:
            raise TokenExpiredError("token expired")

        return TokenClaims(
            subject=subject,
            purpose=str(payload.get("token_type", "")),
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            token_id=payload.get("tid"),
            jti=payload.get("jti"),
        )


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
