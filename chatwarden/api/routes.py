from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Header, Request, Response

from chatwarden.api.schemas import (
    BanIPRequest,
    BanUserRequest,
    CheckIPBanRequest,
    CheckIPLimitRequest,
    CheckUserBanRequest,
    CreateLicenseRequest,
    DeleteUserRequest,
    RecordUserIPRequest,
    RegisterSubjectRequest,
    SetAdminRequest,
    TokenRequest,
    VerifyAdminRequest,
)
from chatwarden.logging import get_logger
from chatwarden.service.errors import RateLimitedError, TokenInvalid
from chatwarden.service.privilege import AdminIdentity
from chatwarden.service.runtime import Runtime, check_rate_limit, get_runtime
from chatwarden.service.validation import validate_payload

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _ok(**data: Any) -> Dict[str, Any]:
    return {"success": True, **data}


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one token from ``key`` or raise :class:`RateLimitedError`."""
    window_seconds = runtime.settings.rate_limit_window_seconds
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", key=key, limit=limit, window_seconds=window_seconds)
        raise RateLimitedError(
            "Too many requests", detail={"retryAfterSeconds": reset_seconds}
        )
    return info


async def _admin_rate_limit(runtime: Runtime, request: Request, response: Response) -> None:
    await _enforce_rate_limit(
        runtime,
        f"admin:{_client_ip(request)}",
        runtime.settings.admin_rate_limit_per_minute,
        response=response,
    )


async def _guard_rate_limit(runtime: Runtime, request: Request, response: Response) -> None:
    await _enforce_rate_limit(
        runtime,
        f"guard:{_client_ip(request)}",
        runtime.settings.guard_rate_limit_per_minute,
        response=response,
    )


async def _require_admin(runtime: Runtime, id_token: str) -> AdminIdentity:
    # Re-established on every request; a revoked flag applies immediately
    identity = await runtime.identity.verify(id_token)
    return runtime.gate.require_admin(identity)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise TokenInvalid("missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenInvalid("malformed authorization header")
    return token.strip()


# ---------------------------------------------------------------- admin ----


@router.post("/admin/verify")
async def verify_admin(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _admin_rate_limit(runtime, request, response)
    body = validate_payload(VerifyAdminRequest, payload)
    admin = await _require_admin(runtime, body.id_token)
    return _ok(adminUid=admin.admin_id)


@router.post("/admin/ban-user")
async def ban_user(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _admin_rate_limit(runtime, request, response)
    body = validate_payload(BanUserRequest, payload)
    admin = await _require_admin(runtime, body.id_token)
    ban_id = runtime.moderation.ban_user(admin, body.user_id, body.reason, body.duration)
    return _ok(banId=ban_id)


@router.post("/admin/ban-ip")
async def ban_ip(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _admin_rate_limit(runtime, request, response)
    body = validate_payload(BanIPRequest, payload)
    admin = await _require_admin(runtime, body.id_token)
    ban_id = runtime.moderation.ban_ip(admin, body.ip_address, body.reason, body.duration)
    return _ok(banId=ban_id)


@router.post("/admin/delete-user")
async def delete_user(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _admin_rate_limit(runtime, request, response)
    body = validate_payload(DeleteUserRequest, payload)
    admin = await _require_admin(runtime, body.id_token)
    await runtime.moderation.delete_user(admin, body.user_id)
    return _ok()


@router.post("/admin/create-license")
async def create_license(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _admin_rate_limit(runtime, request, response)
    body = validate_payload(CreateLicenseRequest, payload)
    admin = await _require_admin(runtime, body.id_token)
    key = runtime.moderation.create_license(admin, body.plan, body.validity_days)
    return _ok(licenseKey=key)


@router.post("/admin/set-admin")
async def set_admin(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _admin_rate_limit(runtime, request, response)
    body = validate_payload(SetAdminRequest, payload)
    admin = await _require_admin(runtime, body.id_token)
    subject = runtime.moderation.set_admin(admin, body.user_id, body.is_admin)
    return _ok(user=subject.to_public())


@router.get("/admin/users")
async def list_users(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await _admin_rate_limit(runtime, request, response)
    token = _bearer_token(authorization)
    body = validate_payload(TokenRequest, {"idToken": token})
    admin = await _require_admin(runtime, body.id_token)
    subjects = runtime.moderation.list_subjects(admin, limit=runtime.settings.admin_list_limit)
    return _ok(users=[subject.to_public() for subject in subjects])


# ---------------------------------------------------------------- guard ----


@router.post("/ip/check-ban")
async def check_ip_ban(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _guard_rate_limit(runtime, request, response)
    body = validate_payload(CheckIPBanRequest, payload)
    status = runtime.guard.check_ban(body.ip_address)
    return _ok(**status.to_response())


@router.post("/ip/check-limit")
async def check_ip_limit(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _guard_rate_limit(runtime, request, response)
    body = validate_payload(CheckIPLimitRequest, payload)
    max_accounts = body.max_accounts
    if max_accounts is None:
        max_accounts = runtime.settings.default_max_accounts_per_address
    limit = runtime.guard.check_address_limit(body.ip_address, max_accounts)
    return _ok(**limit.to_response())


@router.post("/ip/record")
async def record_user_ip(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _guard_rate_limit(runtime, request, response)
    body = validate_payload(RecordUserIPRequest, payload)
    usage_id = runtime.guard.record_address_usage(body.user_id, body.ip_address, body.email)
    return _ok(ipId=usage_id)


@router.post("/users/check-ban")
async def check_user_ban(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _guard_rate_limit(runtime, request, response)
    body = validate_payload(CheckUserBanRequest, payload)
    status = runtime.guard.check_user_ban(body.user_id)
    return _ok(**status.to_response())


@router.post("/users/register")
async def register_subject(request: Request, response: Response, payload: Any = Body(None)):
    runtime = get_runtime()
    await _guard_rate_limit(runtime, request, response)
    body = validate_payload(RegisterSubjectRequest, payload)
    identity = await runtime.identity.verify(body.id_token)
    subject = runtime.subjects.ensure_subject(identity, body.display_name)
    return _ok(user=subject.to_public())
