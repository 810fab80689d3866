from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from gatehouse.api.error_handling import error_response
from gatehouse.api.schemas import (
    AuthResponse,
    BalanceResponse,
    ChangePasswordRequest,
    CheckoutResponse,
    CreateUserRequest,
    CreateUserResponse,
    HealthResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    SubscriptionResponse,
    TransactionsResponse,
    UsersListResponse,
)
from gatehouse.config import Settings
from gatehouse.logging import get_logger, sanitize_error_message
from gatehouse.service.billing import BillingService, WebhookError
from gatehouse.service.errors import (
    AuthenticationError,
    BadRequestError,
    BillingUnavailableError,
    ServerError,
    ValidationError,
)
from gatehouse.service.rate_limiter import RATE_LIMITS, RateLimitGuard
from gatehouse.service.runtime import Runtime, get_runtime
from gatehouse.service.session import SESSION_TTL_SECONDS

logger = get_logger(__name__)

SESSION_COOKIE = "sid"
CSRF_COOKIE = "csrf_token"

register_guard = RateLimitGuard(
    max_requests=5, window="1h", key_strategy="ip", key_prefix="auth:register"
)
login_ip_guard = RateLimitGuard(
    max_requests=RATE_LIMITS["AUTH"].max_requests,
    window="5m",
    key_strategy="ip",
    key_prefix="auth:login:ip",
)
login_account_guard = RateLimitGuard(
    max_requests=30, window="1h", key_strategy="account", key_prefix="auth:login:account"
)
api_guard = RateLimitGuard(
    max_requests=RATE_LIMITS["API"].max_requests, window="1h", key_strategy="endpoint"
)

router = APIRouter()
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
api_router = APIRouter(prefix="/api", dependencies=[Depends(api_guard)])


# Cookies and sessions


def _cookie_domain(settings: Settings) -> Optional[str]:
    # Browsers and cookie jars refuse Domain=localhost; use a host-only cookie instead
    domain = settings.cookie_domain
    if not domain or domain == "localhost":
        return None
    return domain


def _set_session_cookie(response: Response, settings: Settings, session_id: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        max_age=SESSION_TTL_SECONDS,
        path="/",
        domain=_cookie_domain(settings),
        secure=settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (SESSION_COOKIE, CSRF_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            domain=_cookie_domain(settings),
            secure=settings.cookie_secure,
            httponly=True,
            samesite="lax",
        )


def _forwarded_ip(request: Request) -> str:
    return request.headers.get("x-forwarded-for") or request.headers.get("x-real-ip") or "unknown"


def _session_claims(request: Request, **extra: Any) -> Dict[str, Any]:
    claims = dict(extra)
    claims["ip"] = _forwarded_ip(request)
    claims["userAgent"] = request.headers.get("user-agent") or "unknown"
    return claims


async def current_session(
    request: Request, runtime: Runtime = Depends(get_runtime)
) -> Optional[Dict[str, Any]]:
    return await runtime.sessions.get(request.cookies.get(SESSION_COOKIE))


async def require_session(
    session: Optional[Dict[str, Any]] = Depends(current_session),
) -> Dict[str, Any]:
    if not session or not session.get("userId"):
        raise AuthenticationError("Unauthorized")
    return session


def _require_billing(runtime: Runtime) -> BillingService:
    if runtime.billing is None:
        raise BillingUnavailableError("Stripe service not available")
    return runtime.billing


# Health


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health(request: Request, runtime: Runtime = Depends(get_runtime)):
    status = await runtime.rate_limiter.is_allowed(_forwarded_ip(request))
    return HealthResponse(
        status="healthy",
        rateLimit=status.to_dict(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


# Password authentication


@auth_router.post(
    "/register",
    response_model=AuthResponse,
    status_code=201,
    dependencies=[Depends(register_guard)],
)
async def register(
    body: RegisterRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.users.register(body.username, body.email, body.password)
    session_id = await runtime.sessions.create(user.id, {"username": user.username})
    _set_session_cookie(response, runtime.settings, session_id)
    return AuthResponse(
        message="Registration successful",
        user={"username": user.username, "email": user.email},
    )


@auth_router.post(
    "/login",
    response_model=AuthResponse,
    dependencies=[Depends(login_ip_guard), Depends(login_account_guard)],
)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    if not body.username or not body.password:
        raise ValidationError(
            "Missing credentials",
            detail={
                "username": None if body.username else "Username is required",
                "password": None if body.password else "Password is required",
            },
        )
    user = await runtime.users.authenticate(body.username, body.password)

    await login_ip_guard.reset(request)
    await login_account_guard.reset(request)

    session_id = await runtime.sessions.create(
        user.id, _session_claims(request, username=user.username)
    )
    _set_session_cookie(response, runtime.settings, session_id)
    logger.info("login_succeeded", user_id=user.id)
    return AuthResponse(
        message="Login successful",
        user={"username": user.username, "email": user.email},
    )


@auth_router.get("/me", response_model=MeResponse, response_model_exclude_none=True)
async def me(
    session: Optional[Dict[str, Any]] = Depends(current_session),
    runtime: Runtime = Depends(get_runtime),
):
    if not session:
        return MeResponse(success=False, authenticated=False)
    user = runtime.users.find(session.get("userId"))
    if not user:
        return MeResponse(success=False, authenticated=False)
    return MeResponse(
        success=True,
        authenticated=True,
        user={
            "username": user.username,
            "email": user.email,
            "created_at": user.created_at.isoformat() if user.created_at else None,
            "provider": user.provider,
        },
    )


@auth_router.post("/logout", response_model=MessageResponse)
async def logout(request: Request, response: Response, runtime: Runtime = Depends(get_runtime)):
    sid = request.cookies.get(SESSION_COOKIE)
    if sid:
        await runtime.sessions.destroy(sid)
    _clear_auth_cookies(response, runtime.settings)
    return MessageResponse(message="Logged out successfully")


@auth_router.post("/change-password", response_model=MessageResponse)
async def change_password(
    body: ChangePasswordRequest,
    session: Dict[str, Any] = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    if not body.current_password or not body.new_password:
        raise ValidationError("Missing password fields")
    await runtime.users.change_password(
        session["userId"], body.current_password, body.new_password
    )
    return MessageResponse(message="Password updated successfully")


# OAuth


async def _start_oauth(provider: str, runtime: Runtime) -> RedirectResponse:
    url = runtime.oauth.authorization_url(provider, await runtime.sessions.generate_state())
    logger.info("oauth_redirect", provider=provider)
    return RedirectResponse(url, status_code=302)


async def _finish_oauth(
    provider: str,
    request: Request,
    runtime: Runtime,
    code: Optional[str],
    state: Optional[str],
) -> RedirectResponse:
    if not code or not state or not await runtime.sessions.verify_state(state):
        raise BadRequestError("Invalid OAuth state")
    try:
        identity = await runtime.oauth.exchange_code(provider, code)
        user = await runtime.users.find_or_create_oauth_user(
            provider=provider,
            provider_id=identity["provider_id"],
            email=identity.get("email"),
            login=identity.get("login"),
        )
        session_id = await runtime.sessions.create(
            user.id, _session_claims(request, username=user.username, provider=provider)
        )
    except Exception as exc:
        logger.error("oauth_callback_failed", provider=provider, error=str(exc))
        return RedirectResponse("/?error=oauth_failed", status_code=302)
    response = RedirectResponse("/?auth=success", status_code=302)
    _set_session_cookie(response, runtime.settings, session_id)
    return response


@auth_router.get("/github")
async def github_login(runtime: Runtime = Depends(get_runtime)):
    return await _start_oauth("github", runtime)


@auth_router.get("/github/callback")
async def github_callback(
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    runtime: Runtime = Depends(get_runtime),
):
    return await _finish_oauth("github", request, runtime, code, state)


@auth_router.get("/google")
async def google_login(runtime: Runtime = Depends(get_runtime)):
    return await _start_oauth("google", runtime)


@auth_router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    runtime: Runtime = Depends(get_runtime),
):
    return await _finish_oauth("google", request, runtime, code, state)


# Billing


@router.post("/webhook", tags=["billing"])
async def stripe_webhook(request: Request, runtime: Runtime = Depends(get_runtime)):
    billing = _require_billing(runtime)
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise BadRequestError("Missing stripe-signature")
    payload = await request.body()
    try:
        await billing.handle_webhook(payload, signature)
    except WebhookError as exc:
        logger.warning("stripe_webhook_rejected", error=str(exc))
        return error_response(400, "Webhook error", sanitize_error_message(str(exc)))
    return {"received": True}


@api_router.post("/create-checkout", response_model=CheckoutResponse, tags=["billing"])
async def create_checkout(
    session: Dict[str, Any] = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    user = runtime.users.find(session["userId"])
    try:
        billing = _require_billing(runtime)
        url = await billing.create_checkout_session(
            session["userId"], user.email if user else None
        )
    except Exception as exc:
        logger.error("checkout_failed", user_id=session["userId"], error=str(exc))
        raise ServerError("Checkout failed") from exc
    return CheckoutResponse(url=url)


@api_router.get("/billing/subscription", tags=["billing"])
async def billing_subscription(
    session: Dict[str, Any] = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    billing = _require_billing(runtime)
    return {"subscription": await billing.get_customer_subscription(session["userId"])}


# Users


@api_router.get("/users/list", response_model=UsersListResponse, tags=["users"])
async def list_users(runtime: Runtime = Depends(get_runtime)):
    return UsersListResponse(users=await runtime.users.list_recent())


@api_router.post("/users", response_model=CreateUserResponse, status_code=201, tags=["users"])
async def create_user(body: CreateUserRequest, runtime: Runtime = Depends(get_runtime)):
    user_id = await runtime.users.create(body.username, body.email)
    return CreateUserResponse(id=user_id)


@api_router.get("/users/me/balance", response_model=BalanceResponse, tags=["users"])
async def my_balance(
    session: Dict[str, Any] = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    return BalanceResponse(balance=float(runtime.subscriptions.get_balance(session["userId"])))


@api_router.get("/users/me/transactions", response_model=TransactionsResponse, tags=["users"])
async def my_transactions(
    limit: int = Query(default=10, ge=1, le=100),
    session: Dict[str, Any] = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    history = runtime.subscriptions.get_transaction_history(session["userId"], limit)
    return TransactionsResponse(transactions=history)


@api_router.get("/users/me/subscription", response_model=SubscriptionResponse, tags=["users"])
async def my_subscription(
    session: Dict[str, Any] = Depends(require_session),
    runtime: Runtime = Depends(get_runtime),
):
    user_id = session["userId"]
    return SubscriptionResponse(
        tier=runtime.subscriptions.get_current_tier(user_id),
        subscription=runtime.users.get_with_subscription(user_id),
    )


router.include_router(auth_router)
router.include_router(api_router)
