from __future__ import annotations

from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Request, Response

from authcore.api.schemas import (
    AuthResponse,
    DeleteAccountRequest,
    Envelope,
    LoginRequest,
    LogoutOthersResponse,
    LogoutRequest,
    MeResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    RegisterRequest,
    SessionInfo,
    SessionListResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
    UpdateProfileImageRequest,
    UpdateProfileRequest,
    UpdateUserRoleRequest,
    UpdateUserStatusRequest,
    UserProfileResponse,
)
from authcore.logging import get_logger
from authcore.service.coordinator import AuthContext, AuthResult
from authcore.service.runtime import get_runtime
from authcore.storage.models import ClientMeta

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_MAX_USER_AGENT_LENGTH = 512


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client_meta(request: Request, device_fingerprint: Optional[str] = None) -> ClientMeta:
    user_agent = request.headers.get("user-agent")
    return ClientMeta(
        user_agent=user_agent[:_MAX_USER_AGENT_LENGTH] if user_agent else None,
        ip_addr=request.client.host if request.client else None,
        device_fingerprint=device_fingerprint,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = _bearer_token(authorization)
    if not token:
        raise _http_error(
            "unauthorized", "missing bearer token", status_code=401
        )
    runtime = get_runtime()
    return await runtime.auth.authenticate(token)


def require_role(role: str):
    """Dependency factory: the caller must hold ``role`` right now.

    Raises:
        401: Missing or invalid bearer token
        403: Authenticated but without the role
    """

    async def _dependency(principal: AuthContext = Depends(get_user)) -> AuthContext:
        runtime = get_runtime()
        return await runtime.auth.require_role(principal, role)

    return _dependency


get_admin_user = require_role("admin")


def _apply_session_cookies(
    response: Response, result: AuthResult, *, secure: bool
) -> None:
    session_expires = result.session.expires_at
    if session_expires.tzinfo is None:
        session_expires = session_expires.replace(tzinfo=timezone.utc)
    response.set_cookie(
        "session_id",
        result.session.id,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=session_expires,
        path="/",
    )
    refresh_expires = result.tokens.refresh.expires_at
    response.set_cookie(
        "refresh_token",
        result.tokens.refresh.token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=refresh_expires,
        path="/",
    )


def _clear_session_cookies(response: Response, *, secure: bool) -> None:
    response.delete_cookie("session_id", path="/", secure=secure, samesite="lax")
    response.delete_cookie("refresh_token", path="/", secure=secure, samesite="lax")


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(status="ok", data=AuthResponse(**result.to_public()))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and open its first session.

    Raises:
        400: If the email, password or name is invalid
        409: If the email is already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        body.name,
        _client_meta(request, body.device_fingerprint),
    )
    _apply_session_cookies(response, result, secure=runtime.settings.cookie_secure)
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: Invalid credentials, locked account or inactive account; the
            ``details.reason`` field tells them apart
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        _client_meta(request, body.device_fingerprint),
    )
    _apply_session_cookies(response, result, secure=runtime.settings.cookie_secure)
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    session_id: Optional[str] = Header(None, convert_underscores=False),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    target_session = (body.session_id if body else None) or session_id or principal.session_id
    # Invalidation is scoped to the caller's user id, so a foreign id is a no-op.
    await runtime.auth.logout(principal.user_id, target_session)
    if target_session == principal.session_id:
        _clear_session_cookies(response, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data={"session_id": target_session, "logged_out": True})


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    body: Optional[TokenRefreshRequest] = None,
    session_id_header: Optional[str] = Header(
        None, alias="session_id", convert_underscores=False
    ),
    refresh_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    session_cookie: Optional[str] = Cookie(None, alias="session_id"),
):
    """Mint a new access token from a refresh token.

    The refresh token and session id may come from the body, the
    ``session_id`` header or the cookies set at login.
    """
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise _http_error("unauthorized", "missing refresh token", status_code=401)
    session_id = (body.session_id if body else None) or session_id_header or session_cookie
    runtime = get_runtime()
    access = await runtime.auth.refresh_token(token, session_id)
    return Envelope(
        status="ok",
        data=TokenRefreshResponse(
            access_token=access.token,
            access_token_expires_at=access.expires_at,
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(principal.user_id)
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=principal.user_id,
            session_id=principal.session_id,
            role=user.role,
            user=UserProfileResponse(**user.to_public()),
        ),
    )


@router.get("/users/profile", response_model=Envelope, tags=["users"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(principal.user_id)
    return Envelope(status="ok", data=UserProfileResponse(**user.to_public()))


@router.put("/users/profile", response_model=Envelope, tags=["users"])
async def update_profile(
    body: UpdateProfileRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        principal.user_id, name=body.name, profile_image=body.profile_image
    )
    return Envelope(status="ok", data=UserProfileResponse(**user.to_public()))


@router.put("/users/profile/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Change the password; every session, the current one included, ends.

    Raises:
        401: If the current password is wrong
    """
    runtime = get_runtime()
    invalidated = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    _clear_session_cookies(response, secure=runtime.settings.cookie_secure)
    return Envelope(
        status="ok", data=PasswordChangeResponse(sessions_invalidated=invalidated)
    )


@router.put("/users/profile/image", response_model=Envelope, tags=["users"])
async def update_profile_image(
    body: UpdateProfileImageRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        principal.user_id, profile_image=body.profile_image
    )
    return Envelope(status="ok", data=UserProfileResponse(**user.to_public()))


@router.delete("/users", response_model=Envelope, tags=["users"])
async def delete_account(
    body: DeleteAccountRequest,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.delete_account(principal.user_id, body.password)
    _clear_session_cookies(response, secure=runtime.settings.cookie_secure)
    logger.info("account_delete_requested", user_id=principal.user_id)
    return Envelope(status="ok", data={"deleted": True})


@router.get("/users/sessions", response_model=Envelope, tags=["users"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_active_sessions(principal.user_id)
    items = [
        SessionInfo(**session.to_public(current_session_id=principal.session_id))
        for session in sessions
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.post("/users/sessions/logout-others", response_model=Envelope, tags=["users"])
async def logout_other_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = await runtime.auth.logout_other_sessions(
        principal.user_id, principal.session_id
    )
    return Envelope(status="ok", data=LogoutOthersResponse(sessions_invalidated=count))


@router.put("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    user_id: str,
    body: UpdateUserRoleRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    user = await runtime.auth.set_user_role(user_id, body.role)
    logger.info(
        "admin_role_changed", admin_id=principal.user_id, user_id=user_id, role=body.role
    )
    return Envelope(status="ok", data=UserProfileResponse(**user.to_public()))


@router.put("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_status(
    user_id: str,
    body: UpdateUserStatusRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    """Change an account's status; anything but ``active`` ends its sessions."""
    runtime = get_runtime()
    user = await runtime.auth.set_user_status(user_id, body.status)
    logger.info(
        "admin_status_changed",
        admin_id=principal.user_id,
        user_id=user_id,
        status=body.status,
    )
    return Envelope(status="ok", data=UserProfileResponse(**user.to_public()))
