from __future__ import annotations

from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Body, Cookie, Depends, Request, Response
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from clubauth.api.deps import ACCESS_COOKIE, REFRESH_COOKIE, require_auth, require_coach
from clubauth.api.schemas import (
    ChangePasswordRequest,
    ChangePinRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    PinResetConfirmRequest,
    PinResetRequest,
    PinResetValidateRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SignupRequest,
    TwoFactorDisableRequest,
    TwoFactorVerifyRequest,
    UpdateProfileRequest,
    VerifyEmailRequest,
)
from clubauth.service.auth import REGISTER_MESSAGE, AuthContext, TokenPair
from clubauth.service.errors import ValidationError
from clubauth.service.rate_limit import client_ip
from clubauth.service.runtime import get_runtime
from clubauth.storage.models import Principal

router = APIRouter(prefix="/auth")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse(model: Type[ModelT], payload: Dict[str, Any]) -> ModelT:
    """Validate a body whose schema depends on a query parameter."""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc


def _request_ip(request: Request) -> str:
    return client_ip(request.headers.get("x-forwarded-for"))


def _login_club(principal: Principal) -> Dict[str, Any]:
    return {
        "id": principal.id,
        "email": principal.email,
        "username": principal.username,
        "role": principal.role.value,
        "tenantId": principal.tenant_id,
        "emailVerified": principal.email_verified,
        "twoFactorEnabled": principal.two_factor_enabled,
    }


def _token_body(pair: TokenPair, response: Response) -> Dict[str, Any]:
    """Tokens go in the body, or only in HttpOnly cookies when that mode is on."""

    settings = get_runtime().settings
    if not settings.use_httponly_cookies:
        return {"accessToken": pair.access_token, "refreshToken": pair.refresh_token}
    secure = settings.is_production
    response.set_cookie(
        ACCESS_COOKIE,
        pair.access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        httponly=True,
        secure=secure,
        samesite="strict",
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        httponly=True,
        secure=secure,
        samesite="strict",
        path="/",
    )
    return {}


@router.post("/signup", status_code=201)
async def signup(body: SignupRequest):
    runtime = get_runtime()
    principal, tenant = await runtime.auth.signup(
        email=body.email,
        password=body.password,
        club_name=body.club_name,
        plan_id=body.plan_id,
    )
    return {
        "success": True,
        "message": "Registrering gennemført! Tjek din email for at verificere din konto.",
        "club": {
            "id": principal.id,
            "email": principal.email,
            "tenantId": principal.tenant_id,
            "emailVerified": principal.email_verified,
        },
        "tenant": {"id": tenant.id, "name": tenant.name, "subdomain": tenant.subdomain},
    }


@router.post("/register", status_code=201)
async def register(body: RegisterRequest):
    runtime = get_runtime()
    await runtime.auth.register(email=body.email, password=body.password, tenant_id=body.tenant_id)
    return {"success": True, "message": REGISTER_MESSAGE}


@router.post("/login")
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.login(
        tenant_id=body.tenant_id,
        ip=_request_ip(request),
        email=body.email,
        password=body.password,
        username=body.username,
        pin=body.pin,
        totp_code=body.totp_code,
    )
    if result.requires_2fa:
        return {"requires2FA": True, "message": "Two-factor authentication required"}
    pair = result.tokens
    return {
        "success": True,
        **_token_body(pair, response),
        "club": _login_club(pair.principal),
    }


@router.post("/refresh")
async def refresh(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = body.refresh_token if body else None
    if not token and runtime.settings.use_httponly_cookies:
        token = refresh_cookie
    pair = runtime.auth.refresh(token)
    return {"success": True, **_token_body(pair, response)}


@router.post("/logout")
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = body.refresh_token if body else None
    if not token and runtime.settings.use_httponly_cookies:
        token = refresh_cookie
    runtime.auth.logout(token)
    if runtime.settings.use_httponly_cookies:
        response.delete_cookie(ACCESS_COOKIE, path="/")
        response.delete_cookie(REFRESH_COOKIE, path="/")
    return {"success": True, "message": "Logged out successfully"}


@router.post("/verify-email")
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    principal = runtime.auth.verify_email(body.token)
    return {
        "success": True,
        "message": "Email verified successfully",
        "club": {"id": principal.id, "email": principal.email, "emailVerified": True},
    }


@router.post("/forgot-password")
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.forgot_password(email=body.email, tenant_id=body.tenant_id)
    return {
        "success": True,
        "message": "If an account with that email exists, a password reset link has been sent.",
    }


@router.post("/reset-password")
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(token=body.token, password=body.password)
    return {"success": True, "message": "Password has been reset successfully"}


@router.post("/change-password")
async def change_password(body: ChangePasswordRequest, ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    await runtime.auth.change_password(
        ctx, current_password=body.current_password, new_password=body.new_password
    )
    return {"success": True, "message": "Password changed successfully. Please log in again."}


@router.post("/change-pin")
async def change_pin(body: ChangePinRequest, ctx: AuthContext = Depends(require_coach)):
    runtime = get_runtime()
    await runtime.auth.change_pin(ctx, current_pin=body.current_pin, new_pin=body.new_pin)
    return {"success": True, "message": "PIN changed successfully. Please log in again."}


@router.post("/reset-pin")
async def reset_pin(action: Optional[str] = None, payload: Optional[Dict[str, Any]] = Body(None)):
    runtime = get_runtime()
    if action == "request":
        body = _parse(PinResetRequest, payload or {})
        await runtime.auth.request_pin_reset(
            email=body.email, username=body.username, tenant_id=body.tenant_id
        )
        return {
            "success": True,
            "message": "If a matching account exists, a PIN reset email has been sent.",
        }
    if action == "validate":
        body = _parse(PinResetValidateRequest, payload or {})
        username = runtime.auth.validate_pin_reset(token=body.token, tenant_id=body.tenant_id)
        return {"success": True, "username": username}
    if action == "reset":
        body = _parse(PinResetConfirmRequest, payload or {})
        username = await runtime.auth.reset_pin(
            token=body.token, pin=body.pin, tenant_id=body.tenant_id
        )
        return {"success": True, "message": "PIN has been reset successfully", "username": username}
    raise ValidationError("Invalid action. Use ?action=request, ?action=validate, or ?action=reset")


@router.post("/setup-2fa")
async def setup_two_factor(ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    setup = runtime.auth.setup_two_factor(ctx)
    return {
        "success": True,
        "secret": setup.secret,
        "qrCode": setup.qr_code,
        "otpauthUrl": setup.otpauth_url,
    }


@router.post("/verify-2fa")
async def verify_two_factor(body: TwoFactorVerifyRequest, ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    codes = await runtime.auth.verify_two_factor(ctx, code=body.code)
    return {
        "success": True,
        "message": "Two-factor authentication enabled",
        "backupCodes": codes,
    }


@router.post("/disable-2fa")
async def disable_two_factor(body: TwoFactorDisableRequest, ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(ctx, password=body.password)
    return {"success": True, "message": "Two-factor authentication disabled"}


@router.api_route("/update-profile", methods=["PUT", "POST"])
async def update_profile(body: UpdateProfileRequest, ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    principal, message = await runtime.auth.update_profile(ctx, email=body.email)
    return {"success": True, "message": message, "club": principal.snapshot()}


@router.get("/club")
async def whoami(ctx: AuthContext = Depends(require_auth)):
    runtime = get_runtime()
    return runtime.auth.whoami(ctx).snapshot()
