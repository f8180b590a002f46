from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.common import append_device, next_failure_state, normalize_email
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Session, User, as_utc


class MemoryStore:
    """In-process backing store for tests and single-node development.

    One re-entrant lock stands in for the statement-level atomicity a
    database provides; records handed out are copies so callers never
    observe later mutations.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self._email_index: Dict[str, str] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy_user(user: Optional[User]) -> Optional[User]:
        return copy.deepcopy(user) if user else None

    @staticmethod
    def _copy_session(session: Optional[Session]) -> Optional[Session]:
        return copy.copy(session) if session else None

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        role: str = "user",
        status: str = "active",
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                name=name,
                role=role,
                status=status,
            )
            self.users[user.id] = user
            self._email_index[normalized] = user.id
            return self._copy_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy_user(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(normalize_email(email))
            return self._copy_user(self.users.get(user_id)) if user_id else None

    def set_password_hash(
        self, user_id: str, password_hash: str, *, now: datetime, password_changed: bool = True
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            if password_changed:
                user.password_changed_at = now
            user.updated_at = now
            return True

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        window: timedelta,
        max_attempts: int,
        lock_duration: timedelta,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.is_locked(now):
                # failures while locked do not extend or re-arm the lock
                return self._copy_user(user)
            attempts, lock_until = next_failure_state(
                user,
                now=now,
                window=window,
                max_attempts=max_attempts,
                lock_duration=lock_duration,
            )
            user.failed_login_count = attempts
            user.lock_until = lock_until
            user.last_failed_login_at = now
            user.updated_at = now
            return self._copy_user(user)

    def record_login_success(
        self, user_id: str, *, now: datetime, device: Optional[Dict[str, Any]] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_count = 0
            user.lock_until = None
            user.last_failed_login_at = None
            user.last_login_at = now
            user.last_activity_at = now
            user.devices = append_device(user.devices, device)
            user.updated_at = now
            return self._copy_user(user)

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_image: Optional[str] = None,
        now: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if name is not None:
                user.name = name
            if profile_image is not None:
                user.profile_image = profile_image
            user.updated_at = now
            return self._copy_user(user)

    def set_user_status(self, user_id: str, status: str, *, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            user.updated_at = now
            return self._copy_user(user)

    def set_user_role(self, user_id: str, role: str, *, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = now
            return self._copy_user(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if not user:
                return False
            self._email_index.pop(user.email, None)
            # sessions cascade with their owner
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            return True

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = copy.copy(session)
            return self._copy_session(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self._copy_session(self.sessions.get(session_id))

    def touch_session(self, session_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active(now):
                return False
            sess.last_activity_at = now
            return True

    def invalidate_session(self, session_id: str, user_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id or not sess.is_valid:
                return False
            self._flip_invalid(sess, now)
            return True

    def invalidate_user_sessions(
        self,
        user_id: str,
        *,
        now: datetime,
        except_session_id: Optional[str] = None,
        created_before: Optional[datetime] = None,
    ) -> List[str]:
        flipped: List[str] = []
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_valid:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                if created_before is not None and as_utc(sess.created_at) > created_before:
                    continue
                self._flip_invalid(sess, now)
                flipped.append(sess.id)
        return flipped

    @staticmethod
    def _flip_invalid(sess: Session, now: datetime) -> None:
        sess.is_valid = False
        sess.invalidated_at = now
        sess.version += 1

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def list_user_sessions(
        self, user_id: str, *, active_at: Optional[datetime] = None
    ) -> List[Session]:
        with self._data_lock:
            results = [
                self._copy_session(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id
                and (active_at is None or sess.is_active(active_at))
            ]
        return sorted(results, key=lambda s: s.created_at, reverse=True)

    def purge_expired_sessions(self, *, now: datetime) -> int:
        with self._data_lock:
            expired = [
                sid
                for sid, sess in self.sessions.items()
                if as_utc(sess.expires_at) <= now
            ]
            for sid in expired:
                self.sessions.pop(sid, None)
        if expired:
            self.logger.info("expired_sessions_purged", count=len(expired))
        return len(expired)
