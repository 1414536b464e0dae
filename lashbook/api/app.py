"""FastAPI facade for the booking engine.

Every response uses the ``{ok, data, error}`` envelope.  Each router carries a
rate-limit tier dependency that runs before authentication.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from lashbook.api.schemas import (
    CreateBookingRequest,
    CreateServiceRequest,
    CreateSlotsRequest,
    OpenDayRequest,
    SessionRequest,
    SessionResponse,
    UpdateServiceRequest,
    fail,
    ok,
)
from lashbook.api.security import issue_jwt, principal_from_authorization, validate_init_data
from lashbook.app.core import constants as c
from lashbook.app.core.context import AppContext, build_context
from lashbook.app.core.db import dispose_engine, get_engine, init_db, ping
from lashbook.app.domain.errors import BookingError, Forbidden, RateLimited
from lashbook.app.domain.webhook import parse_webhook
from lashbook.app.services import admin_services, availability, booking_services
from lashbook.app.services.booking_services import Principal
from lashbook.app.services.rate_limiter import (
    TIER_ADMIN,
    TIER_AUTH,
    TIER_BOOKING,
    TIER_PUBLIC,
    extract_client_ip,
)
from lashbook.app.services.reconciliation import handle_webhook
from lashbook.app.workers.cleanup import start_cleanup_worker
from lashbook.app.workers.expiration import start_expiration_worker
from lashbook.app.workers.reminders import start_reminders_worker

logger = logging.getLogger(__name__)

ALLOWED_ORIGINS = [
    o
    for o in (
        "https://web.telegram.org",
        "https://telegram.org",
        "https://t.me",
        c.TWA_ORIGIN,
    )
    if o
]


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_ctx(request: Request) -> AppContext:
    ctx = getattr(request.app.state, "ctx", None)
    if ctx is None:
        raise StarletteHTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="not_ready")
    return ctx


def rate_limit(tier: str):
    """Dependency admitting a request through the limiter tier ``tier``."""

    async def _check(request: Request) -> None:
        ctx = get_ctx(request)
        client_ip = extract_client_ip(
            request.headers.get("x-forwarded-for"),
            request.client.host if request.client else None,
        )
        retry_after = ctx.limiter.check(tier, client_ip)
        if retry_after is not None:
            logger.info("rate limited: tier=%s ip=%s retry_after=%s", tier, client_ip, retry_after)
            raise RateLimited(retry_after)

    return Depends(_check)


async def get_current_principal(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Principal:
    return principal_from_authorization(get_ctx(request).settings, authorization)


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise Forbidden()
    return principal


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

async def _booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    if exc.public:
        message = exc.message
    else:
        logger.error("%s %s failed: %s: %s", request.method, request.url.path, type(exc).__name__, exc.message)
        message = exc.default_message
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimited) else None
    return JSONResponse(status_code=exc.status_code, content=fail(message), headers=headers)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=fail(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.debug("request validation failed: %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=fail("Некорректный запрос"))


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=fail("Внутренняя ошибка"))


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------

public_router = APIRouter(dependencies=[rate_limit(TIER_PUBLIC)])


@public_router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    ctx = get_ctx(request)
    db_ok = await ping(ctx.session_factory)
    return ok({
        "status": "ok" if db_ok else "degraded",
        "version": c.APP_VERSION,
        "uptime_secs": int(time.monotonic() - request.app.state.started_at),
        "db_ok": db_ok,
    })


@public_router.get("/services")
async def list_services(request: Request) -> dict[str, Any]:
    return ok(await admin_services.list_public_services(get_ctx(request)))


@public_router.get("/addon-info")
async def addon_info(request: Request) -> dict[str, Any]:
    return ok(await admin_services.get_addon_info(get_ctx(request)))


@public_router.get("/available-dates")
async def available_dates(request: Request, service_id: Optional[int] = Query(default=None)) -> dict[str, Any]:
    dates = await availability.get_available_dates(get_ctx(request), service_id)
    return ok([d.isoformat() for d in dates])


@public_router.get("/available-times")
async def available_times(
    request: Request,
    date: str = Query(...),
    service_id: int = Query(...),
) -> dict[str, Any]:
    result = await availability.get_available_times(get_ctx(request), date, service_id)
    return ok(result.as_dict())


@public_router.get("/calendar")
async def calendar(
    request: Request,
    year: int = Query(...),
    month: int = Query(...),
    service_id: Optional[int] = Query(default=None),
) -> dict[str, Any]:
    days = await availability.get_calendar(get_ctx(request), year, month, service_id)
    return ok([
        {"date": d.date.isoformat(), "total": d.total, "free": d.free, "bookable": d.bookable}
        for d in days
    ])


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

client_router = APIRouter(dependencies=[rate_limit(TIER_AUTH)])


@client_router.post("/session")
async def create_session(request: Request, payload: SessionRequest) -> dict[str, Any]:
    settings = get_ctx(request).settings
    tg_user = validate_init_data(payload.init_data, settings.bot_token, settings.init_data_max_age_seconds)
    token = issue_jwt(settings, tg_user)
    response = SessionResponse(
        token=token,
        user=tg_user,
        is_admin=settings.is_admin(tg_user.id),
        currency=settings.currency,
    )
    return ok(response.model_dump())


@client_router.get("/bookings/my")
async def my_bookings(request: Request, principal: Principal = Depends(get_current_principal)) -> dict[str, Any]:
    return ok(await booking_services.my_bookings(get_ctx(request), principal))


@client_router.get("/bookings/{booking_id}/status")
async def booking_status(
    request: Request, booking_id: int, principal: Principal = Depends(get_current_principal)
) -> dict[str, Any]:
    return ok(await booking_services.booking_status(get_ctx(request), booking_id, principal))


@client_router.delete("/bookings/{booking_id}")
async def cancel_booking(
    request: Request, booking_id: int, principal: Principal = Depends(get_current_principal)
) -> dict[str, Any]:
    result = await booking_services.cancel_booking(get_ctx(request), booking_id, principal)
    return ok(result.as_dict())


booking_router = APIRouter(dependencies=[rate_limit(TIER_BOOKING)])


@booking_router.post("/bookings")
async def create_booking(
    request: Request,
    payload: CreateBookingRequest,
    principal: Principal = Depends(get_current_principal),
) -> dict[str, Any]:
    created = await booking_services.create_booking(
        get_ctx(request),
        principal,
        payload.service_id,
        payload.date,
        payload.start_time,
        payload.with_addon,
    )
    return ok({"booking": created.booking, "payment_url": created.payment_url})


# ---------------------------------------------------------------------------
# Payment gateway callback (no auth, no rate limit)
# ---------------------------------------------------------------------------

webhook_router = APIRouter()


@webhook_router.post("/payments/webhook")
async def payment_webhook(request: Request) -> dict[str, Any]:
    ctx = get_ctx(request)
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("webhook: body is not JSON")
        return ok()
    if not isinstance(payload, dict):
        logger.warning("webhook: unexpected body type %s", type(payload).__name__)
        return ok()
    event = parse_webhook(payload)
    logger.info("YooKassa webhook: event=%s payment_id=%s status=%s", type(event).__name__, event.payment_id, event.status)
    try:
        await handle_webhook(ctx, event)
    except Exception as exc:  # noqa: BLE001 - the gateway must always get 200
        logger.exception("webhook processing failed: %s", exc)
    return ok()


# ---------------------------------------------------------------------------
# Operator
# ---------------------------------------------------------------------------

admin_router = APIRouter(prefix="/admin", dependencies=[rate_limit(TIER_ADMIN)])


@admin_router.get("/services")
async def admin_list_services(request: Request, admin: Principal = Depends(require_admin)) -> dict[str, Any]:
    return ok(await admin_services.list_all_services(get_ctx(request)))


@admin_router.post("/services")
async def admin_create_service(
    request: Request, payload: CreateServiceRequest, admin: Principal = Depends(require_admin)
) -> dict[str, Any]:
    return ok(await admin_services.create_service(get_ctx(request), **payload.model_dump(exclude_none=True)))


@admin_router.put("/services/{service_id}")
async def admin_update_service(
    request: Request,
    service_id: int,
    payload: UpdateServiceRequest,
    admin: Principal = Depends(require_admin),
) -> dict[str, Any]:
    values = payload.model_dump(exclude_none=True)
    return ok(await admin_services.update_service(get_ctx(request), service_id, **values))


@admin_router.get("/slots")
async def admin_list_slots(
    request: Request, date: str = Query(...), admin: Principal = Depends(require_admin)
) -> dict[str, Any]:
    return ok(await admin_services.list_slots(get_ctx(request), date))


@admin_router.post("/slots")
async def admin_create_slots(
    request: Request, payload: CreateSlotsRequest, admin: Principal = Depends(require_admin)
) -> dict[str, Any]:
    slots = [s.model_dump() for s in payload.slots]
    return ok(await admin_services.create_slots(get_ctx(request), payload.date, slots))


@admin_router.delete("/slots/{slot_id}")
async def admin_delete_slot(
    request: Request, slot_id: int, admin: Principal = Depends(require_admin)
) -> dict[str, Any]:
    await admin_services.delete_slot(get_ctx(request), slot_id)
    return ok()


@admin_router.post("/openday")
async def admin_open_day(
    request: Request, payload: OpenDayRequest, admin: Principal = Depends(require_admin)
) -> dict[str, Any]:
    return ok(await admin_services.open_day(get_ctx(request), payload.date))


@admin_router.get("/bookings")
async def admin_list_bookings(
    request: Request,
    date: Optional[str] = Query(default=None),
    date_from: Optional[str] = Query(default=None, alias="from"),
    date_to: Optional[str] = Query(default=None, alias="to"),
    admin: Principal = Depends(require_admin),
) -> dict[str, Any]:
    bookings = await admin_services.list_bookings(
        get_ctx(request), day=date, date_from=date_from, date_to=date_to
    )
    return ok(bookings)


@admin_router.post("/bookings/{booking_id}/cancel")
async def admin_cancel_booking(
    request: Request, booking_id: int, admin: Principal = Depends(require_admin)
) -> dict[str, Any]:
    result = await admin_services.admin_cancel_booking(get_ctx(request), booking_id, admin)
    return ok(result.as_dict())


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    owned = getattr(app.state, "ctx", None) is None
    if owned:
        from lashbook.app.core.bootstrap import init_services
        from lashbook.config import load_settings

        settings = load_settings()
        ctx = build_context(settings)
        await init_db(get_engine(settings.database_url))
        if c.RUN_BOOTSTRAP_ENABLED:
            added = await init_services(ctx.session_factory)
            logger.info("[bootstrap] %d services added", added)
        app.state.ctx = ctx
    ctx = app.state.ctx

    stops = []
    if ctx.settings.workers_enabled:
        for start in (start_expiration_worker, start_cleanup_worker, start_reminders_worker):
            stops.append(await start(ctx))
    try:
        yield
    finally:
        for stop in stops:
            await stop()
        if owned:
            await ctx.gateway.close()
            await ctx.notifier.close()
            await dispose_engine()
            app.state.ctx = None


def create_app(ctx: AppContext | None = None) -> FastAPI:
    """Build the API; pass ``ctx`` to run against prepared collaborators."""
    app = FastAPI(title="Lashbook API", version=c.APP_VERSION, lifespan=lifespan)
    app.state.ctx = ctx
    app.state.started_at = time.monotonic()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if c.ALLOW_ALL_ORIGINS else ALLOWED_ORIGINS,
        allow_credentials=not c.ALLOW_ALL_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BookingError, _booking_error_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    for router in (public_router, client_router, booking_router, webhook_router, admin_router):
        app.include_router(router, prefix="/api")
    return app


app = create_app()


def main() -> None:
    import uvicorn

    from lashbook.app.core.logger import setup_logging

    setup_logging(c.LOG_LEVEL_NAME, c.LOG_FILE)
    uvicorn.run(app, host=c.API_HOST, port=c.API_PORT)


if __name__ == "__main__":
    main()
