from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.credentials import CredentialStore
from authcore.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    SessionInvalidError,
    StoreUnavailableError,
    UserInactiveError,
)
from authcore.service.sessions import SessionStore
from authcore.service.tokens import ACCESS, REFRESH, IssuedToken, TokenIssuer, TokenPair
from authcore.storage.models import ClientMeta, Session, User, as_utc

logger = get_logger(__name__)


class InvalidationCache(Protocol):
    async def remember_valid(
        self, user_id: str, session_id: str, expires_at: Optional[datetime]
    ) -> None: ...

    async def mark_invalid(
        self, user_id: str, session_id: str, expires_at: Optional[datetime] = None
    ) -> None: ...

    async def is_known_invalid(self, user_id: str, session_id: str) -> bool: ...

    async def clear_for_user(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    session_id: str
    role: str


@dataclass
class AuthResult:
    user: User
    session: Session
    tokens: TokenPair

    def to_public(self) -> Dict[str, Any]:
        return {
            "user": self.user.to_public(),
            "session_id": self.session.id,
            "session_expires_at": self.session.expires_at,
            "access_token": self.tokens.access.token,
            "access_token_expires_at": self.tokens.access.expires_at,
            "refresh_token": self.tokens.refresh.token,
            "refresh_token_expires_at": self.tokens.refresh.expires_at,
            "token_type": self.tokens.token_type,
        }


class SessionCoordinator:
    """Login, logout, refresh and account lifecycle across the auth components.

    The session store is the source of truth. The invalidation cache is a
    best-effort side channel: its failures are logged and ignored, and only
    a "known invalid" answer from it is ever acted on.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionStore,
        tokens: TokenIssuer,
        cache: Optional[InvalidationCache],
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.credentials = credentials
        self.sessions = sessions
        self.tokens = tokens
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._touch_interval = timedelta(seconds=settings.session_touch_interval_seconds)

    def _now(self) -> datetime:
        return self._clock()

    async def _cache_call(
        self, operation: str, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        if not self.cache:
            return None
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            # Cache outages slow requests down but never change outcomes
            self.logger.warning(
                "invalidation_cache_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def _known_invalid(self, user_id: str, session_id: str) -> bool:
        if not self.cache:
            return False
        return bool(
            await self._cache_call(
                "is_known_invalid", self.cache.is_known_invalid, user_id, session_id
            )
        )

    async def _mirror_invalid(
        self,
        user_id: str,
        session_ids: List[str],
        *,
        clear: bool = False,
        clear_except: Optional[str] = None,
    ) -> None:
        """Drop the user's cached entries (optionally) and mark ``session_ids`` invalid."""
        if not self.cache:
            return
        if clear:
            await self._cache_call(
                "clear_for_user", self.cache.clear_for_user, user_id, clear_except
            )
        for session_id in session_ids:
            await self._cache_call(
                "mark_invalid", self.cache.mark_invalid, user_id, session_id
            )

    async def _open_session(
        self, user: User, client_meta: Optional[ClientMeta]
    ) -> tuple[Session, TokenPair]:
        session = await self.sessions.create(user.id, client_meta)
        if self.settings.single_active_session:
            # Only sessions created up to this one; a newer concurrent login survives.
            evicted = await self.sessions.invalidate_all_except(
                user.id, session.id, created_before=session.created_at
            )
            if evicted:
                self.logger.info(
                    "prior_sessions_evicted",
                    user_id=user.id,
                    session_id=session.id,
                    count=len(evicted),
                )
            await self._mirror_invalid(user.id, evicted)
        tokens = self.tokens.issue_pair(user, session)
        if self.cache:
            await self._cache_call(
                "remember_valid",
                self.cache.remember_valid,
                user.id,
                session.id,
                session.expires_at,
            )
        return session, tokens

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        client_meta: Optional[ClientMeta] = None,
    ) -> AuthResult:
        # User first: a duplicate email fails before any session exists.
        user = await self.credentials.create(email, password, name)
        session, tokens = await self._open_session(user, client_meta)
        user = await self.credentials.record_login(user.id, session) or user
        self.logger.info("user_registered", user_id=user.id, session_id=session.id)
        return AuthResult(user=user, session=session, tokens=tokens)

    async def login(
        self,
        email: str,
        password: str,
        client_meta: Optional[ClientMeta] = None,
    ) -> AuthResult:
        user = await self.credentials.verify(email, password)
        if user.status != "active":
            self.logger.info("login_rejected_inactive", user_id=user.id, status=user.status)
            raise UserInactiveError()
        session, tokens = await self._open_session(user, client_meta)
        user = await self.credentials.record_login(user.id, session) or user
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return AuthResult(user=user, session=session, tokens=tokens)

    async def logout(self, user_id: str, session_id: str) -> None:
        """Invalidate one session. Repeating it, or naming a dead session, is fine."""
        flipped = await self.sessions.invalidate(session_id, user_id)
        await self._mirror_invalid(user_id, [session_id])
        self.logger.info(
            "logout", user_id=user_id, session_id=session_id, already_invalid=not flipped
        )

    async def refresh_token(
        self, refresh_token: str, session_id: Optional[str] = None
    ) -> IssuedToken:
        """Exchange a refresh token for a new access token.

        The refresh token itself is not rotated; it stays usable until it
        expires or its session is invalidated.
        """
        claims = self.tokens.verify(refresh_token, expected_type=REFRESH)
        if session_id and session_id != claims.session_id:
            self.logger.warning(
                "refresh_session_mismatch",
                user_id=claims.user_id,
                session_id=session_id,
            )
            raise SessionInvalidError()
        if await self._known_invalid(claims.user_id, claims.session_id):
            raise SessionInvalidError()
        session = await self.sessions.find_active(claims.session_id, claims.user_id)
        if not session:
            await self._mirror_invalid(claims.user_id, [claims.session_id])
            raise SessionInvalidError()
        user = await self.credentials.get(claims.user_id)
        if not user or user.status != "active":
            raise UserInactiveError()
        access = self.tokens.issue_access(user, session)
        self.logger.info("access_token_refreshed", user_id=user.id, session_id=session.id)
        return access

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        """Resolve a bearer access token into the caller's identity.

        The token must verify and its session must be active in the store;
        a cache answer can only reject, never admit.
        """
        if not access_token:
            raise AuthenticationError()
        claims = self.tokens.verify(access_token, expected_type=ACCESS)
        if await self._known_invalid(claims.user_id, claims.session_id):
            raise SessionInvalidError()
        session = await self.sessions.find_active(claims.session_id, claims.user_id)
        if not session:
            # Store wins over any cached "valid"; repair the mirror.
            await self._mirror_invalid(claims.user_id, [claims.session_id])
            raise SessionInvalidError()
        await self._maybe_touch(session)
        return AuthContext(
            user_id=claims.user_id,
            session_id=session.id,
            role=claims.role or "user",
        )

    async def _maybe_touch(self, session: Session) -> None:
        now = self._now()
        if now - as_utc(session.last_activity_at) < self._touch_interval:
            return
        try:
            await self.sessions.touch(session.id)
        except StoreUnavailableError as exc:
            self.logger.warning("session_touch_failed", session_id=session.id, error=str(exc))

    async def require_role(self, ctx: AuthContext, role: str) -> AuthContext:
        """Check ``role`` against the stored user, not the token claim.

        A demotion therefore takes effect before outstanding access tokens
        expire.
        """
        user = await self.credentials.get(ctx.user_id)
        if not user or user.status != "active":
            raise UserInactiveError()
        if user.role != role:
            self.logger.warning(
                "role_check_failed",
                user_id=ctx.user_id,
                required_role=role,
                role=user.role,
            )
            raise ForbiddenError(f"{role} access required", detail={"required_role": role})
        return AuthContext(user_id=ctx.user_id, session_id=ctx.session_id, role=user.role)

    async def logout_other_sessions(self, user_id: str, keep_session_id: str) -> int:
        flipped = await self.sessions.invalidate_all_except(user_id, keep_session_id)
        await self._mirror_invalid(
            user_id, flipped, clear=True, clear_except=keep_session_id
        )
        return len(flipped)

    async def _invalidate_everywhere(self, user_id: str) -> List[str]:
        flipped = await self.sessions.invalidate_all_except(user_id)
        await self._mirror_invalid(user_id, flipped, clear=True)
        return flipped

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        """Replace the password and invalidate every session of the user.

        Returns the number of sessions invalidated.
        """
        if not await self.credentials.check_password(user_id, current_password):
            raise InvalidCredentialsError()
        self.credentials.validate_password(new_password)
        # Sessions go first: if the hash write then fails, the old password
        # still works and the change can simply be retried.
        flipped = await self._invalidate_everywhere(user_id)
        await self.credentials.update_password(user_id, new_password)
        self.logger.info(
            "password_changed", user_id=user_id, sessions_invalidated=len(flipped)
        )
        return len(flipped)

    async def delete_account(self, user_id: str, password: str) -> None:
        if not await self.credentials.check_password(user_id, password):
            raise InvalidCredentialsError()
        # Invalidate first so requests racing the delete are already rejected.
        flipped = await self._invalidate_everywhere(user_id)
        if not await self.credentials.delete(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        await self.sessions.delete_all(user_id)
        self.logger.info("account_deleted", user_id=user_id, sessions=len(flipped))

    async def get_profile(self, user_id: str) -> User:
        user = await self.credentials.get(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_image: Optional[str] = None,
    ) -> User:
        return await self.credentials.update_profile(
            user_id, name=name, profile_image=profile_image
        )

    async def list_active_sessions(self, user_id: str) -> List[Session]:
        return await self.sessions.list_active(user_id)

    async def set_user_status(self, user_id: str, status: str) -> User:
        user = await self.credentials.set_status(user_id, status)
        if status != "active":
            await self._invalidate_everywhere(user_id)
        return user

    async def set_user_role(self, user_id: str, role: str) -> User:
        return await self.credentials.set_role(user_id, role)

    async def purge_expired_sessions(self) -> int:
        return await self.sessions.purge_expired()
