from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import ConflictError
from authcore.service.retry import retry_read, store_errors
from authcore.storage.common import AuthStore
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import ClientMeta, Session

logger = get_logger(__name__)


class SessionStore:
    """Durable session lifecycle on top of the storage backend.

    Expiry is enforced on every read, independent of the background reaper.
    Invalidation goes through conditional updates so repeated or racing
    calls are no-ops rather than errors, and nothing ever sets a session
    valid again.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    async def _read(self, operation: str, func):
        return await retry_read(
            operation,
            func,
            attempts=self.settings.read_retry_attempts,
            backoff_ms=self.settings.read_retry_backoff_ms,
        )

    async def create(
        self,
        user_id: str,
        client_meta: Optional[ClientMeta] = None,
        ttl_minutes: Optional[int] = None,
    ) -> Session:
        # Never retried: a timed-out insert may still have committed.
        session = Session.new(
            user_id,
            ttl_minutes=ttl_minutes or self.settings.session_ttl_minutes,
            client_meta=client_meta,
            now=self._now(),
        )
        try:
            with store_errors("create_session"):
                created = self.store.create_session(session)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=created.id,
            expires_at=created.expires_at.isoformat(),
        )
        return created

    async def get(self, session_id: str) -> Optional[Session]:
        return await self._read("get_session", lambda: self.store.get_session(session_id))

    async def find_active(self, session_id: str, user_id: str) -> Optional[Session]:
        """Return the session only if it belongs to ``user_id``, is valid and unexpired."""
        if not session_id or not user_id:
            return None
        session = await self.get(session_id)
        if not session or session.user_id != user_id:
            return None
        if not session.is_active(self._now()):
            return None
        return session

    async def touch(self, session_id: str) -> bool:
        with store_errors("touch_session"):
            return self.store.touch_session(session_id, now=self._now())

    async def invalidate(self, session_id: str, user_id: str) -> bool:
        with store_errors("invalidate_session"):
            flipped = self.store.invalidate_session(session_id, user_id, now=self._now())
        if flipped:
            logger.info("session_invalidated", user_id=user_id, session_id=session_id)
        return flipped

    async def invalidate_all_except(
        self,
        user_id: str,
        keep_session_id: Optional[str] = None,
        *,
        created_before: Optional[datetime] = None,
    ) -> List[str]:
        """Invalidate every other valid session of ``user_id`` in one update.

        ``created_before`` narrows the update to sessions created at or before
        that instant so a session created concurrently is left alone.
        """
        with store_errors("invalidate_user_sessions"):
            flipped = self.store.invalidate_user_sessions(
                user_id,
                now=self._now(),
                except_session_id=keep_session_id,
                created_before=created_before,
            )
        if flipped:
            logger.info(
                "sessions_invalidated",
                user_id=user_id,
                kept_session_id=keep_session_id,
                count=len(flipped),
            )
        return flipped

    async def delete_all(self, user_id: str) -> int:
        with store_errors("delete_user_sessions"):
            return self.store.delete_user_sessions(user_id)

    async def list_active(self, user_id: str) -> List[Session]:
        now = self._now()
        return await self._read(
            "list_active_sessions",
            lambda: self.store.list_user_sessions(user_id, active_at=now),
        )

    async def purge_expired(self) -> int:
        with store_errors("purge_expired_sessions"):
            return self.store.purge_expired_sessions(now=self._now())
