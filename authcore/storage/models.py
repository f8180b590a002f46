from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

USER_ROLES = ("user", "admin")
USER_STATUSES = ("active", "inactive", "suspended")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a timestamp to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: str
    role: str = "user"
    status: str = "active"
    failed_login_count: int = 0
    lock_until: Optional[datetime] = None
    last_failed_login_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    profile_image: Optional[str] = None
    email_verified: bool = False
    devices: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and as_utc(self.lock_until) > now

    def to_public(self) -> Dict[str, Any]:
        """User-safe projection; never includes the hash or lockout counters."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "status": self.status,
            "profile_image": self.profile_image,
            "email_verified": self.email_verified,
            "last_login_at": self.last_login_at,
            "created_at": self.created_at,
        }


@dataclass
class ClientMeta:
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    device_fingerprint: Optional[str] = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    is_valid: bool = True
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    device_fingerprint: Optional[str] = None
    invalidated_at: Optional[datetime] = None
    version: int = 1

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 7 * 24 * 60,
        client_meta: ClientMeta | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        created = now or utcnow()
        meta = client_meta or ClientMeta()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl_minutes),
            last_activity_at=created,
            user_agent=meta.user_agent,
            ip_addr=meta.ip_addr,
            device_fingerprint=meta.device_fingerprint,
        )

    def is_active(self, now: datetime) -> bool:
        return self.is_valid and as_utc(self.expires_at) > now

    def to_public(self, *, current_session_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
            "expires_at": self.expires_at,
            "user_agent": self.user_agent,
            "ip_addr": self.ip_addr,
            "current": self.id == current_session_id,
        }
