from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from taskverse.config import Settings
from taskverse.logging import get_logger
from taskverse.service.errors import AuthenticationError, ForbiddenError
from taskverse.service.tokens import (
    ACCESS,
    TokenCodec,
    TokenExpiredError,
    TokenError,
    extract_bearer,
)
from taskverse.storage.models import User

logger = get_logger(__name__)

ACCESS_DENIED = "Access Denied"


class PrincipalStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    username: str


class AuthGate:
    """Resolves a bearer access token to an active principal.

    The user record is re-read on every call, so deactivation takes effect
    on the next request even while the access token is still unexpired.
    """

    def __init__(self, users: PrincipalStore, codec: TokenCodec, settings: Settings) -> None:
        self.users = users
        self.codec = codec
        self.settings = settings
        self.logger = logger

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Authenticate an ``Authorization`` header value.

        Raises:
            AuthenticationError: no bearer token (401)
            ForbiddenError: invalid, expired, or wrong-purpose token, or the
                principal no longer exists (403)
        """
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("No token provided", title=ACCESS_DENIED)
        return self.authenticate_token(token)

    def authenticate_token(self, token: Optional[str]) -> AuthContext:
        if not token:
            raise AuthenticationError("No token provided", title=ACCESS_DENIED)
        try:
            claims = self.codec.verify(token, self.settings.jwt_secret)
        except TokenExpiredError as exc:
            raise ForbiddenError("Token expired", title=ACCESS_DENIED) from exc
        except TokenError as exc:
            self.logger.warning("access_token_rejected", reason=str(exc))
            raise ForbiddenError("Invalid token", title=ACCESS_DENIED) from exc
        if claims.purpose != ACCESS:
            self.logger.warning("access_token_rejected", reason="wrong_purpose")
            raise ForbiddenError("Invalid token", title=ACCESS_DENIED)

        user = self.users.get_user(claims.subject)
        if not user or not user.is_active:
            raise ForbiddenError("User not found", title=ACCESS_DENIED)
        return AuthContext(user_id=user.id, email=user.email, username=user.username)

    def authenticate_optional(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Like ``authenticate`` but returns None instead of raising."""
        try:
            return self.authenticate(authorization)
        except (AuthenticationError, ForbiddenError):
            return None
