from __future__ import annotations

import asyncio
import random
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from taskverse.config import Settings
from taskverse.logging import get_logger
from taskverse.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServerError,
)
from taskverse.service.tokens import ACCESS, REFRESH, TokenCodec, TokenError
from taskverse.storage.errors import ConstraintViolation
from taskverse.storage.models import RefreshSession, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_identity(self, email: str, username: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...


class SessionStore(Protocol):
    def create_session(self, session: RefreshSession) -> RefreshSession: ...

    def revoke_session_if_active(
        self, token: str, now: datetime
    ) -> Optional[RefreshSession]: ...

    def revoke_session_by_token(self, token: str, now: datetime) -> bool: ...

    def revoke_session_for_user(
        self, user_id: str, session_id: str, now: datetime
    ) -> bool: ...

    def revoke_user_sessions(self, user_id: str, now: datetime) -> int: ...

    def list_active_sessions(
        self, user_id: str, now: datetime
    ) -> List[RefreshSession]: ...

    def delete_stale_sessions(self, now: datetime) -> int: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int

    def to_dict(self) -> dict:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


class SessionManager:
    """Owns the refresh-session lifecycle: issue, rotate, revoke, sweep.

    Argon2 work is pushed to a worker thread so hashing never blocks the
    event loop. Refresh rotation relies on the store's atomic
    ``revoke_session_if_active``; at most one concurrent redeemer of a token
    obtains a new pair.
    """

    def __init__(
        self,
        users: CredentialStore,
        sessions: SessionStore,
        codec: TokenCodec,
        settings: Settings,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.codec = codec
        self.settings = settings
        self._rng = rng or random.Random()
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # password hashing
    # ------------------------------------------------------------------

    async def _hash_password(self, password: str) -> Tuple[str, str]:
        try:
            digest = await asyncio.to_thread(self._pwd_hasher.hash, password)
        except HashingError as exc:
            self.logger.error("password_hash_failed", error=str(exc))
            raise ServerError("Failed to process password") from exc
        return digest, PASSWORD_ALGO

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.users.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return await asyncio.to_thread(self._verify_hash, stored_hash, password)

    async def _burn_verify(self, password: str) -> None:
        """Spend one verification on a throwaway hash to equalize login timing."""
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                self._pwd_hasher.hash, secrets.token_urlsafe(16)
            )
        await asyncio.to_thread(self._verify_hash, self._dummy_hash, password)

    # ------------------------------------------------------------------
    # token pairs
    # ------------------------------------------------------------------

    def _issue_pair(
        self,
        user_id: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        access_ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        token_id = secrets.token_hex(32)
        access_token = self.codec.issue(
            user_id, ACCESS, self.settings.jwt_secret, access_ttl
        )
        refresh_token = self.codec.issue(
            user_id,
            REFRESH,
            self.settings.jwt_refresh_secret,
            refresh_ttl,
            token_id=token_id,
        )
        now = self._now()
        self.sessions.create_session(
            RefreshSession.new(
                user_id,
                refresh_token,
                token_id,
                now + refresh_ttl,
                device_info=device_info,
                ip_address=ip_address,
                created_at=now,
            )
        )
        self._maybe_sweep()
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(access_ttl.total_seconds()),
        )

    def _maybe_sweep(self) -> None:
        probability = self.settings.session_sweep_probability
        if probability > 0 and self._rng.random() < probability:
            self.sweep_sessions()

    def sweep_sessions(self) -> int:
        """Delete refresh sessions that are expired or revoked."""
        removed = self.sessions.delete_stale_sessions(self._now())
        if removed:
            self.logger.info("stale_sessions_swept", removed=removed)
        return removed

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        """Create a user and sign them in.

        Raises:
            ConflictError: email or username already taken (case-insensitive)
        """
        if self.users.find_user_by_identity(email, username):
            raise ConflictError("User already exists with this email or username")
        pwd_hash, algo = await self._hash_password(password)
        try:
            user = self.users.create_user(
                username, email, first_name=first_name, last_name=last_name
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "User already exists with this email or username", detail=exc.detail
            ) from exc
        self.users.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_registered", user_id=user.id)
        tokens = self._issue_pair(user.id, device_info=device_info, ip_address=ip_address)
        return user, tokens

    async def login(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Tuple[User, TokenPair]:
        """Authenticate by email and password.

        Raises:
            AuthenticationError: unknown email, inactive account or wrong password
        """
        user = self.users.get_user_by_email(email)
        if not user or not user.is_active:
            await self._burn_verify(password)
            self.logger.warning("login_rejected", reason="unknown_or_inactive")
            raise AuthenticationError("Invalid credentials")
        if not await self.verify_password(user.id, password):
            self.logger.warning("login_rejected", reason="bad_password", user_id=user.id)
            raise AuthenticationError("Invalid credentials")
        user = self.users.update_user(user.id, last_login_at=self._now()) or user
        tokens = self._issue_pair(user.id, device_info=device_info, ip_address=ip_address)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, tokens

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token into a fresh pair.

        The presented token is revoked before the new pair is minted, so a
        replayed or concurrently redeemed token fails.

        Raises:
            ForbiddenError: invalid/expired/reused token, or owner gone
        """
        try:
            claims = self.codec.verify(refresh_token, self.settings.jwt_refresh_secret)
        except TokenError as exc:
            self.logger.warning("refresh_rejected", reason=type(exc).__name__)
            raise ForbiddenError("Invalid refresh token") from exc
        if claims.purpose != REFRESH:
            self.logger.warning("refresh_rejected", reason="wrong_purpose")
            raise ForbiddenError("Invalid refresh token")

        record = self.sessions.revoke_session_if_active(refresh_token, self._now())
        if record is None:
            self.logger.warning(
                "refresh_rejected", reason="inactive_session", user_id=claims.subject
            )
            raise ForbiddenError("Invalid refresh token")
        if record.user_id != claims.subject:
            self.logger.warning("refresh_rejected", reason="subject_mismatch")
            raise ForbiddenError("Invalid refresh token")

        user = self.users.get_user(claims.subject)
        if not user or not user.is_active:
            raise ForbiddenError("User not found")
        return self._issue_pair(
            user.id, device_info=record.device_info, ip_address=record.ip_address
        )

    async def logout(self, refresh_token: str) -> None:
        """Revoke the session for ``refresh_token``; unknown tokens are ignored."""
        if self.sessions.revoke_session_by_token(refresh_token, self._now()):
            self.logger.info("logout")

    async def logout_all_devices(self, user_id: str) -> int:
        revoked = self.sessions.revoke_user_sessions(user_id, self._now())
        self.logger.info("logout_all_devices", user_id=user_id, revoked=revoked)
        return revoked

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        """Replace the password and sign out every device.

        Raises:
            NotFoundError: user does not exist
            BadRequestError: current password is wrong; nothing is changed
        """
        user = self.users.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        if not await self.verify_password(user_id, current_password):
            raise BadRequestError("Current password is incorrect")
        pwd_hash, algo = await self._hash_password(new_password)
        self.users.save_password(user_id, pwd_hash, algo)
        self.logger.info("password_changed", user_id=user_id)
        await self.logout_all_devices(user_id)

    def list_sessions(self, user_id: str) -> List[RefreshSession]:
        return self.sessions.list_active_sessions(user_id, self._now())

    async def revoke_session(self, user_id: str, session_id: str) -> None:
        if not self.sessions.revoke_session_for_user(user_id, session_id, self._now()):
            raise NotFoundError("Session not found")
        self.logger.info("session_revoked", user_id=user_id, session_id=session_id)
