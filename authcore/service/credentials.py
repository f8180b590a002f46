from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from authcore.service.passwords import PasswordService
from authcore.service.retry import retry_read, store_errors
from authcore.storage.common import AuthStore, build_device_record, normalize_email
from authcore.storage.errors import ConstraintViolation, StorageUnavailable
from authcore.storage.models import USER_ROLES, USER_STATUSES, Session, User

logger = get_logger(__name__)

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MAX_NAME_LENGTH = 100


class CredentialStore:
    """Owns user identity records, password hashes and lockout state.

    Raw passwords enter only through :meth:`create`, :meth:`update_password`
    and the verification methods; hashing happens here, on the way to the
    backend, so a stored record is always hashed.
    """

    def __init__(
        self,
        store: AuthStore,
        passwords: PasswordService,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        return self._clock()

    def _validate_email(self, email: str) -> str:
        normalized = normalize_email(email)
        if len(normalized) > 254 or not _EMAIL_PATTERN.match(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        return normalized

    def validate_password(self, password: str) -> None:
        if not isinstance(password, str) or len(password) < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )

    @staticmethod
    def _validate_name(name: str) -> str:
        cleaned = (name or "").strip()
        if not cleaned or len(cleaned) > _MAX_NAME_LENGTH:
            raise ValidationError(
                f"name must be 1-{_MAX_NAME_LENGTH} characters", detail={"field": "name"}
            )
        return cleaned

    async def create(
        self, email: str, raw_password: str, name: str, *, role: str = "user"
    ) -> User:
        normalized = self._validate_email(email)
        self.validate_password(raw_password)
        cleaned_name = self._validate_name(name)
        if role not in USER_ROLES:
            raise ValidationError("unknown role", detail={"field": "role"})
        password_hash = self.passwords.hash(raw_password)
        try:
            with store_errors("create_user"):
                user = self.store.create_user(
                    normalized, password_hash, cleaned_name, role=role
                )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        logger.info("user_created", user_id=user.id, role=user.role)
        return user

    async def verify(self, email: str, raw_password: str) -> User:
        """Check a login attempt and apply the lockout policy.

        Raises:
            AccountLockedError: while ``lock_until`` is in the future,
                whatever the password
            InvalidCredentialsError: unknown email or wrong password
        """
        now = self._now()
        with store_errors("verify_credentials"):
            user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            self.passwords.burn(raw_password or "")
            raise InvalidCredentialsError()
        if user.is_locked(now):
            logger.info("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(user.lock_until)
        if not self.passwords.verify(user.password_hash, raw_password or ""):
            with store_errors("record_login_failure"):
                updated = self.store.record_login_failure(
                    user.id,
                    now=now,
                    window=timedelta(minutes=self.settings.login_failure_window_minutes),
                    max_attempts=self.settings.max_failed_logins,
                    lock_duration=timedelta(minutes=self.settings.lockout_minutes),
                )
            if updated and updated.is_locked(now):
                logger.warning(
                    "account_locked",
                    user_id=user.id,
                    locked_until=updated.lock_until.isoformat(),
                )
            else:
                logger.info(
                    "login_failed",
                    user_id=user.id,
                    failed_login_count=updated.failed_login_count if updated else None,
                )
            raise InvalidCredentialsError()
        if user.failed_login_count or user.lock_until or user.last_failed_login_at:
            with store_errors("reset_login_failures"):
                user = self.store.record_login_success(user.id, now=now) or user
        if self.passwords.needs_rehash(user.password_hash):
            self._rehash(user, raw_password, now)
        return user

    def _rehash(self, user: User, raw_password: str, now: datetime) -> None:
        """Upgrade a hash made with older argon2 parameters; never fails the login."""
        new_hash = self.passwords.hash(raw_password)
        try:
            self.store.set_password_hash(
                user.id, new_hash, now=now, password_changed=False
            )
        except StorageUnavailable as exc:
            logger.warning("password_rehash_failed", user_id=user.id, error=str(exc))
            return
        user.password_hash = new_hash
        logger.info("password_rehashed", user_id=user.id)

    async def record_login(self, user_id: str, session: Session) -> Optional[User]:
        """Stamp last-login/activity and append the device record."""
        now = self._now()
        with store_errors("record_login"):
            return self.store.record_login_success(
                user_id, now=now, device=build_device_record(session, now)
            )

    async def check_password(self, user_id: str, raw_password: str) -> bool:
        with store_errors("check_password"):
            user = self.store.get_user(user_id)
        if not user:
            self.passwords.burn(raw_password or "")
            return False
        return self.passwords.verify(user.password_hash, raw_password or "")

    async def update_password(self, user_id: str, new_raw_password: str) -> None:
        self.validate_password(new_raw_password)
        password_hash = self.passwords.hash(new_raw_password)
        with store_errors("update_password"):
            updated = self.store.set_password_hash(user_id, password_hash, now=self._now())
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("password_updated", user_id=user_id)

    async def get(self, user_id: str) -> Optional[User]:
        return await retry_read(
            "get_user",
            lambda: self.store.get_user(user_id),
            attempts=self.settings.read_retry_attempts,
            backoff_ms=self.settings.read_retry_backoff_ms,
        )

    async def get_by_email(self, email: str) -> Optional[User]:
        return await retry_read(
            "get_user_by_email",
            lambda: self.store.get_user_by_email(normalize_email(email)),
            attempts=self.settings.read_retry_attempts,
            backoff_ms=self.settings.read_retry_backoff_ms,
        )

    async def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        profile_image: Optional[str] = None,
    ) -> User:
        cleaned_name = self._validate_name(name) if name is not None else None
        with store_errors("update_profile"):
            user = self.store.update_user_profile(
                user_id, name=cleaned_name, profile_image=profile_image, now=self._now()
            )
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def set_status(self, user_id: str, status: str) -> User:
        if status not in USER_STATUSES:
            raise ValidationError("unknown status", detail={"field": "status"})
        with store_errors("set_user_status"):
            user = self.store.set_user_status(user_id, status, now=self._now())
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("user_status_changed", user_id=user_id, status=status)
        return user

    async def set_role(self, user_id: str, role: str) -> User:
        if role not in USER_ROLES:
            raise ValidationError("unknown role", detail={"field": "role"})
        with store_errors("set_user_role"):
            user = self.store.set_user_role(user_id, role, now=self._now())
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def delete(self, user_id: str) -> bool:
        with store_errors("delete_user"):
            deleted = self.store.delete_user(user_id)
        if deleted:
            logger.info("user_deleted", user_id=user_id)
        return deleted
