"""Common storage utilities shared between memory and postgres implementations.

Both backends implement :class:`AuthStore`; the helpers here keep record
shaping and the failed-login arithmetic identical across them.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from authcore.storage.models import Session, User, as_utc

# Number of login device records retained per user
MAX_DEVICE_RECORDS = 10


class AuthStore(Protocol):
    """Backend contract for user and session persistence.

    Every mutating method is a single atomic operation against the backend;
    conditional updates report whether they changed anything.
    """

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        role: str = "user",
        status: str = "active",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_password_hash(
        self, user_id: str, password_hash: str, *, now: datetime, password_changed: bool = True
    ) -> bool: ...

    def record_login_failure(
        self,
        user_id: str,
        *,
        now: datetime,
        window: timedelta,
        max_attempts: int,
        lock_duration: timedelta,
    ) -> Optional[User]: ...

    def record_login_success(
        self, user_id: str, *, now: datetime, device: Optional[Dict[str, Any]] = None
    ) -> Optional[User]: ...

    def update_user_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_image: Optional[str] = None,
        now: datetime,
    ) -> Optional[User]: ...

    def set_user_status(self, user_id: str, status: str, *, now: datetime) -> Optional[User]: ...

    def set_user_role(self, user_id: str, role: str, *, now: datetime) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, *, now: datetime) -> bool: ...

    def invalidate_session(self, session_id: str, user_id: str, *, now: datetime) -> bool: ...

    def invalidate_user_sessions(
        self,
        user_id: str,
        *,
        now: datetime,
        except_session_id: Optional[str] = None,
        created_before: Optional[datetime] = None,
    ) -> List[str]: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def list_user_sessions(self, user_id: str, *, active_at: Optional[datetime] = None) -> List[Session]: ...

    def purge_expired_sessions(self, *, now: datetime) -> int: ...


def normalize_email(email: str) -> str:
    """Canonical storage form of an address: trimmed and lowercased."""
    return (email or "").strip().lower()


def build_device_record(session: Session, now: datetime) -> Dict[str, Any]:
    return {
        "session_id": session.id,
        "user_agent": session.user_agent,
        "ip_addr": session.ip_addr,
        "device_fingerprint": session.device_fingerprint,
        "last_login": now.isoformat(),
    }


def append_device(
    devices: Sequence[Dict[str, Any]], device: Optional[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Return the device list with ``device`` appended, newest last, capped."""
    updated = list(devices or [])
    if device:
        updated.append(device)
    return updated[-MAX_DEVICE_RECORDS:]


def next_failure_state(
    user: User,
    *,
    now: datetime,
    window: timedelta,
    max_attempts: int,
    lock_duration: timedelta,
) -> Tuple[int, Optional[datetime]]:
    """Compute ``(failed_login_count, lock_until)`` after one more failure.

    A failure more than ``window`` after the previous one restarts the count.
    Reaching ``max_attempts`` sets the lock and resets the counter.
    """
    last = user.last_failed_login_at
    if last is None or as_utc(last) < now - window:
        attempts = 1
    else:
        attempts = user.failed_login_count + 1
    if attempts >= max_attempts:
        return 0, now + lock_duration
    return attempts, user.lock_until


def parse_json_list(raw: Any) -> List[Dict[str, Any]]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return []
    if isinstance(raw, list):
        return [item for item in raw if isinstance(item, dict)]
    return []


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
