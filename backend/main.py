"""
FastAPI Application Entry Point

Restaurant Ordering Backend - order lifecycle over stock, wallet and coupons.

Endpoints:
    - POST /api/orders: Open an order
    - GET /api/orders: List orders
    - GET /api/orders/stats: Order counts per status
    - GET/DELETE /api/orders/{order_id}: Read or delete (unconfirmed) order
    - POST/PUT/DELETE /api/orders/{order_id}/items[/{detail_id}]: Edit line items
    - PUT /api/orders/{order_id}/confirm|complete|cancel|refund: Lifecycle
    - POST /api/users/recharge, GET /api/users/me: Wallet
    - POST /api/coupons[/batch], GET /api/coupons/active|code/{code}|{coupon_id}
    - PUT/DELETE /api/coupons/{coupon_id}, PUT /api/coupons/{coupon_id}/deactivate
    - POST /api/user-coupons/assign, GET /api/user-coupons
    - GET /health: System health check

The caller is identified by the X-User-Id / X-User-Roles headers, which an
upstream identity service sets after authenticating the request.

Author: Khalil Bannouri
Version: 4.0.0
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

import redis
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from backend.core.config import get_settings, setup_logging
from backend.core.errors import NotFound, OrderingError
from backend.database import get_db, get_engine, get_session_maker, init_db, transaction
from backend.models import Order, OrderStatus, User
from backend.schemas import (
    CouponAssign,
    CouponBatchCreate,
    CouponCreate,
    CouponResponse,
    CouponUpdate,
    ErrorResponse,
    HealthResponse,
    LineItemCreate,
    LineItemUpdate,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    RechargeRequest,
    UserCouponResponse,
    UserResponse,
)
from backend.services import get_coupon_service, get_lifecycle
from backend.services.coupons import CouponService
from backend.services.identity import Principal
from backend.services.lifecycle import OrderLifecycleStateMachine
from backend.services.wallet import WalletLedger
from backend.tasks import export_order_event, order_snapshot

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("✅ Database initialized")
    logger.info(f"✅ Audit export: {'enabled' if settings.export_enabled else 'disabled'}")

    yield  # Application runs

    logger.info("Shutting down...")
    await get_engine().dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order lifecycle backend keeping menu stock, wallet balances and "
        "coupon redemptions consistent under concurrent requests."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES & HELPERS
# =============================================================================

async def get_principal(
    x_user_id: Optional[int] = Header(None, alias="x-user-id"),
    x_user_roles: str = Header("USER", alias="x-user-roles"),
) -> Principal:
    """Build the caller's principal from identity headers."""
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Unauthenticated request")
    roles = frozenset(r.strip().upper() for r in x_user_roles.split(",") if r.strip())
    return Principal(user_id=x_user_id, roles=roles or frozenset({"USER"}))


def queue_export(order: Order, event: str) -> None:
    """Hand a committed transition to the audit worker; never fails the request."""
    if not settings.export_enabled:
        return
    try:
        export_order_event.delay(order_snapshot(order, event))
    except Exception as e:
        logger.error(f"Could not queue export for Order #{order.order_id}: {e}")


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍜 Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify the database and Redis are reachable."""

    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    overall = "operational" if db_status == redis_status == "healthy" else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Open Order",
)
async def create_order(
    order_data: OrderCreate,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderResponse:
    """Open an empty order for the caller."""
    order = await lifecycle.create_order(
        principal,
        store_id=order_data.store_id,
        notes=order_data.notes,
        dine_option=order_data.dine_option,
    )
    queue_export(order, "create")
    return OrderResponse.model_validate(order)


@app.get(
    "/api/orders",
    response_model=OrderListResponse,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None),
    user_id: Optional[int] = Query(None),
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderListResponse:
    """Retrieve a page of orders. Admins may filter by user."""
    status_enum = None
    if status:
        try:
            status_enum = OrderStatus(status.lower())
        except ValueError:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid status. Options: {[s.value for s in OrderStatus]}"
            )

    total, orders = await lifecycle.list_orders(
        principal, user_id=user_id, status=status_enum, skip=skip, limit=limit
    )
    return OrderListResponse(
        total=total,
        orders=[OrderResponse.model_validate(order) for order in orders],
    )


# Declared before /api/orders/{order_id} so "stats" is not parsed as an id
@app.get(
    "/api/orders/stats",
    response_model=OrderStatsResponse,
    tags=["Orders"],
    summary="Order Statistics",
)
async def order_stats(
    user_id: Optional[int] = Query(None),
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderStatsResponse:
    """Order counts per status. Admins see every order, or one user's."""
    return OrderStatsResponse(**await lifecycle.order_stats(principal, user_id=user_id))


@app.get(
    "/api/orders/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def get_order(
    order_id: int,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderResponse:
    """Get a specific order by ID."""
    return OrderResponse.model_validate(await lifecycle.get_order(principal, order_id))


@app.delete(
    "/api/orders/{order_id}",
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def delete_order(
    order_id: int,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> dict[str, Any]:
    """Delete an order that has not been confirmed yet."""
    await lifecycle.delete_order(principal, order_id)
    return {"success": True, "message": f"Order #{order_id} deleted"}


# =============================================================================
# LINE ITEM ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders/{order_id}/items",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Line Items"],
)
async def add_line_item(
    order_id: int,
    item: LineItemCreate,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderResponse:
    order = await lifecycle.add_line_item(
        principal,
        order_id,
        item_id=item.item_id,
        quantity=item.quantity,
        size=item.size,
        special_requests=item.special_requests,
    )
    return OrderResponse.model_validate(order)


@app.put(
    "/api/orders/{order_id}/items/{detail_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Line Items"],
)
async def update_line_item(
    order_id: int,
    detail_id: int,
    item: LineItemUpdate,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderResponse:
    order = await lifecycle.update_line_item(
        principal,
        order_id,
        detail_id,
        quantity=item.quantity,
        size=item.size,
        item_id=item.item_id,
        special_requests=item.special_requests,
    )
    return OrderResponse.model_validate(order)


@app.delete(
    "/api/orders/{order_id}/items/{detail_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Line Items"],
)
async def remove_line_item(
    order_id: int,
    detail_id: int,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderResponse:
    order = await lifecycle.remove_line_item(principal, order_id, detail_id)
    return OrderResponse.model_validate(order)


# =============================================================================
# LIFECYCLE ENDPOINTS
# =============================================================================

@app.put(
    "/api/orders/{order_id}/confirm",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Lifecycle"],
    summary="Confirm and Pay",
)
async def confirm_order(
    order_id: int,
    user_coupon_id: Optional[int] = Query(None, ge=1),
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderResponse:
    """
    Reserve stock, debit the wallet and redeem the coupon in one step.

    A 409 with ``retryable: true`` means another request won a race;
    re-read the order and resubmit.
    """
    order = await lifecycle.confirm_order(principal, order_id, user_coupon_id)
    queue_export(order, "confirm")
    return OrderResponse.model_validate(order)


@app.put(
    "/api/orders/{order_id}/complete",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Lifecycle"],
)
async def complete_order(
    order_id: int,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderResponse:
    order = await lifecycle.complete_order(principal, order_id)
    queue_export(order, "complete")
    return OrderResponse.model_validate(order)


@app.put(
    "/api/orders/{order_id}/cancel",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Lifecycle"],
)
async def cancel_order(
    order_id: int,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderResponse:
    order = await lifecycle.cancel_order(principal, order_id)
    queue_export(order, "cancel")
    return OrderResponse.model_validate(order)


@app.put(
    "/api/orders/{order_id}/refund",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Lifecycle"],
)
async def refund_order(
    order_id: int,
    principal: Principal = Depends(get_principal),
    lifecycle: OrderLifecycleStateMachine = Depends(get_lifecycle),
) -> OrderResponse:
    order = await lifecycle.refund_order(principal, order_id)
    queue_export(order, "refund")
    return OrderResponse.model_validate(order)


# =============================================================================
# WALLET ENDPOINTS
# =============================================================================

@app.get(
    "/api/users/me",
    response_model=UserResponse,
    responses=ERROR_RESPONSES,
    tags=["Wallet"],
)
async def get_me(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    user = await db.get(User, principal.user_id)
    if user is None:
        raise NotFound("User", principal.user_id)
    return UserResponse.model_validate(user)


@app.post(
    "/api/users/recharge",
    response_model=UserResponse,
    responses=ERROR_RESPONSES,
    tags=["Wallet"],
)
async def recharge(
    request_data: RechargeRequest,
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
) -> UserResponse:
    """Top up the caller's wallet."""
    async with transaction(session_maker) as session:
        user = await WalletLedger().recharge(session, principal.user_id, request_data.amount)
    return UserResponse.model_validate(user)


# =============================================================================
# COUPON ENDPOINTS
# =============================================================================

@app.post(
    "/api/coupons",
    response_model=CouponResponse,
    status_code=201,
    responses={**ERROR_RESPONSES, 503: {"model": ErrorResponse}},
    tags=["Coupons"],
)
async def create_coupon(
    coupon_data: CouponCreate,
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    coupons: CouponService = Depends(get_coupon_service),
) -> CouponResponse:
    """Issue a coupon with a generated code. Admin only."""
    principal.ensure_admin()
    async with transaction(session_maker) as session:
        coupon = await coupons.create_coupon(
            session,
            discount=coupon_data.discount,
            min_purchase=coupon_data.min_purchase,
            expiration_date=coupon_data.expiration_date,
            is_active=coupon_data.is_active,
        )
    return CouponResponse.model_validate(coupon)


@app.post(
    "/api/coupons/batch",
    response_model=list[CouponResponse],
    status_code=201,
    responses={**ERROR_RESPONSES, 503: {"model": ErrorResponse}},
    tags=["Coupons"],
)
async def create_coupon_batch(
    batch: CouponBatchCreate,
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    coupons: CouponService = Depends(get_coupon_service),
) -> list[CouponResponse]:
    """Issue several coupons at once; all or none are created. Admin only."""
    principal.ensure_admin()
    async with transaction(session_maker) as session:
        issued = await coupons.create_batch(session, [c.model_dump() for c in batch.coupons])
    return [CouponResponse.model_validate(c) for c in issued]


@app.get("/api/coupons/active", response_model=list[CouponResponse], tags=["Coupons"])
async def list_active_coupons(
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    coupons: CouponService = Depends(get_coupon_service),
) -> list[CouponResponse]:
    """Coupons that are active and not expired."""
    async with transaction(session_maker) as session:
        active = await coupons.list_active_coupons(session)
    return [CouponResponse.model_validate(c) for c in active]


@app.get(
    "/api/coupons/code/{code}",
    response_model=CouponResponse,
    responses=ERROR_RESPONSES,
    tags=["Coupons"],
)
async def get_coupon_by_code(
    code: str,
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    coupons: CouponService = Depends(get_coupon_service),
) -> CouponResponse:
    async with transaction(session_maker) as session:
        coupon = await coupons.get_coupon_by_code(session, code)
    return CouponResponse.model_validate(coupon)


@app.get(
    "/api/coupons/{coupon_id}",
    response_model=CouponResponse,
    responses=ERROR_RESPONSES,
    tags=["Coupons"],
)
async def get_coupon(
    coupon_id: int,
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    coupons: CouponService = Depends(get_coupon_service),
) -> CouponResponse:
    async with transaction(session_maker) as session:
        coupon = await coupons.get_coupon(session, coupon_id)
    return CouponResponse.model_validate(coupon)


@app.put(
    "/api/coupons/{coupon_id}",
    response_model=CouponResponse,
    responses=ERROR_RESPONSES,
    tags=["Coupons"],
)
async def update_coupon(
    coupon_id: int,
    coupon_data: CouponUpdate,
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    coupons: CouponService = Depends(get_coupon_service),
) -> CouponResponse:
    """Replace a coupon's terms. Admin only."""
    principal.ensure_admin()
    async with transaction(session_maker) as session:
        coupon = await coupons.update_coupon(
            session,
            coupon_id,
            discount=coupon_data.discount,
            min_purchase=coupon_data.min_purchase,
            expiration_date=coupon_data.expiration_date,
            is_active=coupon_data.is_active,
        )
    return CouponResponse.model_validate(coupon)


@app.put(
    "/api/coupons/{coupon_id}/deactivate",
    response_model=CouponResponse,
    responses=ERROR_RESPONSES,
    tags=["Coupons"],
)
async def deactivate_coupon(
    coupon_id: int,
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    coupons: CouponService = Depends(get_coupon_service),
) -> CouponResponse:
    """Withdraw a coupon, including copies already handed out. Admin only."""
    principal.ensure_admin()
    async with transaction(session_maker) as session:
        coupon = await coupons.deactivate_coupon(session, coupon_id)
    return CouponResponse.model_validate(coupon)


@app.delete(
    "/api/coupons/{coupon_id}",
    responses=ERROR_RESPONSES,
    tags=["Coupons"],
)
async def delete_coupon(
    coupon_id: int,
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    coupons: CouponService = Depends(get_coupon_service),
) -> dict[str, Any]:
    """Delete a coupon nobody holds yet. Admin only."""
    principal.ensure_admin()
    async with transaction(session_maker) as session:
        await coupons.delete_coupon(session, coupon_id)
    return {"success": True, "message": f"Coupon #{coupon_id} deleted"}


@app.post(
    "/api/user-coupons/assign",
    response_model=UserCouponResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Coupons"],
)
async def assign_coupon(
    assignment: CouponAssign,
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    coupons: CouponService = Depends(get_coupon_service),
) -> UserCouponResponse:
    principal.ensure_owns(assignment.user_id, "coupon wallet")
    async with transaction(session_maker) as session:
        redemption = await coupons.assign_coupon(session, assignment.user_id, assignment.coupon_id)
    return UserCouponResponse.model_validate(redemption)


@app.get(
    "/api/user-coupons",
    response_model=list[UserCouponResponse],
    tags=["Coupons"],
)
async def list_user_coupons(
    used: Optional[bool] = Query(None),
    principal: Principal = Depends(get_principal),
    session_maker: async_sessionmaker = Depends(get_session_maker),
    coupons: CouponService = Depends(get_coupon_service),
) -> list[UserCouponResponse]:
    """The caller's coupons, optionally only used or unused ones."""
    async with transaction(session_maker) as session:
        redemptions = await coupons.list_user_coupons(session, principal.user_id, used)
    return [UserCouponResponse.model_validate(r) for r in redemptions]


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderingError)
async def ordering_exception_handler(request: Request, exc: OrderingError) -> JSONResponse:
    """Map domain failures to their HTTP status and a structured body."""
    logger.info(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    uvicorn.run("backend.main:app", host=settings.api_host, port=settings.api_port)
