from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from csaccess.api.dependencies import get_admin_identity, get_identity, get_optional_identity
from csaccess.api.schemas import (
    AdminUserResponse,
    AuthResponse,
    AuthStatusResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    ProfileUpdateRequest,
    ProfileUpdateResponse,
    RegisterRequest,
    RoleUpdateRequest,
    SessionListResponse,
    SessionResponse,
    TokenUserResponse,
    UserListResponse,
    UserResponse,
    VerifyResponse,
)
from csaccess.logging import get_logger
from csaccess.service.guard import extract_bearer_token
from csaccess.service.runtime import check_rate_limit, get_runtime
from csaccess.service.tokens import IdentityClaims

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


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


def _client_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Reject the request with 429 once ``key`` exhausts its bucket.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, retry_after=reset_seconds)
        raise _http_error(
            "rate_limited",
            "Too many authentication attempts, please try again later",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )


async def _enforce_auth_rate_limit(runtime, request: Request) -> None:
    await _enforce_rate_limit(
        runtime,
        f"auth:{_client_address(request) or 'unknown'}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_limit_window_seconds,
    )


def _identity_to_response(identity: IdentityClaims) -> TokenUserResponse:
    return TokenUserResponse(id=identity.user_id, email=identity.email, role=identity.role)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    """Create an account and start a session for it.

    Raises:
        400: If the input is malformed or the email is already registered
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request)
    result = await runtime.auth.register(
        body.email,
        body.name,
        body.password,
        ip_address=_client_address(request),
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            message="User registered successfully",
            user=UserResponse(**result.user),
            token=result.token,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account is deactivated
        429: If rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request)
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=_client_address(request),
        user_agent=user_agent,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            message="Login successful",
            user=UserResponse(**result.user),
            token=result.token,
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(identity: IdentityClaims = Depends(get_identity)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(identity.user_id)
    return Envelope(status="ok", data={"user": UserResponse(**user)})


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify(identity: IdentityClaims = Depends(get_identity)):
    """Report whether the presented token is usable, echoing its identity."""
    return Envelope(
        status="ok", data=VerifyResponse(valid=True, user=_identity_to_response(identity))
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    authorization: Optional[str] = Header(None),
    identity: IdentityClaims = Depends(get_identity),
):
    """Revoke the session behind the presented token.

    After this call the same token is rejected with ``token_revoked``.
    """
    runtime = get_runtime()
    revoked = await runtime.auth.logout(extract_bearer_token(authorization))
    logger.info("logout_completed", user_id=identity.user_id, revoked=revoked)
    return Envelope(
        status="ok", data=LogoutResponse(message="Logout successful", revoked=revoked)
    )


@router.get("/auth/status", response_model=Envelope, tags=["auth"])
async def auth_status(identity: Optional[IdentityClaims] = Depends(get_optional_identity)):
    return Envelope(
        status="ok",
        data=AuthStatusResponse(
            authenticated=identity is not None,
            user=_identity_to_response(identity) if identity else None,
        ),
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(identity: IdentityClaims = Depends(get_identity)):
    runtime = get_runtime()
    records = await runtime.auth.list_sessions(identity.user_id)
    items = [
        SessionResponse(
            id=record.id,
            created_at=record.created_at,
            expires_at=record.expires_at,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            revoked_at=record.revoked_at,
        )
        for record in records
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.get("/users/profile", response_model=Envelope, tags=["users"])
async def get_profile(identity: IdentityClaims = Depends(get_identity)):
    runtime = get_runtime()
    user = await runtime.auth.get_profile(identity.user_id)
    return Envelope(status="ok", data={"user": UserResponse(**user)})


@router.put("/users/profile", response_model=Envelope, tags=["users"])
async def update_profile(
    body: ProfileUpdateRequest, identity: IdentityClaims = Depends(get_identity)
):
    """Update display name and/or profile image URL.

    Raises:
        400: If no updatable field is given or a value is invalid
    """
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        identity.user_id, name=body.name, profile_image_url=body.profile_image_url
    )
    return Envelope(
        status="ok",
        data=ProfileUpdateResponse(
            message="Profile updated successfully", user=UserResponse(**user)
        ),
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    _: IdentityClaims = Depends(get_admin_identity),
):
    runtime = get_runtime()
    users = await runtime.auth.list_users(limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[AdminUserResponse(**u) for u in users])
    )


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: RoleUpdateRequest,
    user_id: str = Path(..., max_length=64),
    admin: IdentityClaims = Depends(get_admin_identity),
):
    """Change a user's role.

    Role changes apply to tokens issued afterwards; existing tokens keep the
    role they were issued with until they expire or are revoked.
    """
    runtime = get_runtime()
    user = await runtime.auth.set_role(user_id, body.role)
    logger.info("admin_role_change", admin_id=admin.user_id, user_id=user_id, role=body.role)
    return Envelope(status="ok", data={"user": UserResponse(**user)})


@router.post("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(
    user_id: str = Path(..., max_length=64),
    admin: IdentityClaims = Depends(get_admin_identity),
):
    runtime = get_runtime()
    user = await runtime.auth.deactivate_user(user_id)
    logger.info("admin_user_deactivated", admin_id=admin.user_id, user_id=user_id)
    return Envelope(status="ok", data={"user": AdminUserResponse(**user)})
