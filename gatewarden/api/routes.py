from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, Response

from gatewarden.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    RegisterFingerprintRequest,
    RegisterFingerprintResponse,
    StatusResponse,
)
from gatewarden.logging import get_correlation_id, get_logger
from gatewarden.service.fingerprint import FingerprintAttributes, compute_fingerprint
from gatewarden.service.runtime import get_runtime
from gatewarden.service.sessions import Identity

logger = get_logger(__name__)


def client_ip(request: Request) -> str:
    """Resolve the caller's IP; every gateway step uses this same value."""

    runtime = get_runtime()
    if runtime.settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        real_ip = (request.headers.get("X-Real-IP") or "").strip()
        if real_ip:
            return real_ip
    return request.client.host if request.client else "unknown"


def request_fingerprint(request: Request) -> str:
    return compute_fingerprint(FingerprintAttributes.from_headers(request.headers))


def enforce_rate_limit(request: Request) -> None:
    get_runtime().pipeline.check_rate(client_ip(request)).raise_for_deny()


def enforce_trusted_origin(request: Request) -> None:
    runtime = get_runtime()
    verdict = runtime.pipeline.check_origin(
        client_ip(request), request_fingerprint(request)
    )
    verdict.raise_for_deny()


def get_identity(request: Request) -> Identity:
    runtime = get_runtime()
    token = request.cookies.get(runtime.settings.cookie_name)
    verdict = runtime.pipeline.authenticate(token, client_ip(request))
    verdict.raise_for_deny()
    return verdict.identity


def _ok(data: Any) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _set_session_cookie(response: Response, token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.cookie_name,
        token,
        max_age=settings.session_ttl_seconds,
        path="/",
        secure=settings.cookie_secure,
        httponly=settings.cookie_http_only,
        samesite=settings.cookie_same_site.value,
    )


def _clear_session_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=settings.cookie_http_only,
        samesite=settings.cookie_same_site.value,
    )


# Every route passes the limiter first, then the origin gate
router = APIRouter(
    dependencies=[Depends(enforce_rate_limit), Depends(enforce_trusted_origin)]
)


@router.post("/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    ip = client_ip(request)
    fingerprint: Optional[str] = body.fingerprint or request_fingerprint(request)
    verdict = runtime.pipeline.login(body.login, body.totp_code, fingerprint, ip)
    verdict.raise_for_deny()
    session = verdict.session
    _set_session_cookie(response, session.token)
    return _ok(
        LoginResponse(
            account_id=session.account_id,
            session_expires_at=session.expires_at,
        ).model_dump(mode="json")
    )


@router.get("/status", response_model=Envelope, tags=["auth"])
def status(identity: Identity = Depends(get_identity)):
    return _ok(
        StatusResponse(
            account_id=identity.account_id,
            ip=identity.ip,
            expires_at=identity.expires_at,
        ).model_dump(mode="json")
    )


@router.post("/register-fingerprint", response_model=Envelope, tags=["auth"])
def register_fingerprint(
    body: RegisterFingerprintRequest, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    verdict = runtime.pipeline.register_fingerprint(identity, body.fingerprint)
    verdict.raise_for_deny()
    return _ok(
        RegisterFingerprintResponse(fingerprint=body.fingerprint).model_dump(mode="json")
    )


@router.api_route(
    "/logout", methods=["GET", "POST"], response_model=Envelope, tags=["auth"]
)
def logout(
    request: Request, response: Response, identity: Identity = Depends(get_identity)
):
    runtime = get_runtime()
    verdict = runtime.pipeline.logout(identity, client_ip(request))
    verdict.raise_for_deny()
    _clear_session_cookie(response)
    return _ok(LogoutResponse().model_dump(mode="json"))
