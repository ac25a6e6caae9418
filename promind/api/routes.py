"""
API Routes - health, metrics and order redemption.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from promind.api.dependencies import require_admin_key
from promind.config import settings
from promind.db.session import get_main_db, get_write_db
from promind.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    OrderRedemptionError,
    WriteVerificationError,
)
from promind.models.api import HealthResponse, RedeemOrderRequest, RedeemOrderResponse
from promind.services.order_reconciliation import (
    ALREADY_REDEEMED,
    NOT_FOUND,
    OrderReconciliationService,
)

router = APIRouter()


@router.post(
    "/v1/orders/redeem",
    response_model=RedeemOrderResponse,
    dependencies=[Depends(require_admin_key)],
)
async def redeem_order(
    request: RedeemOrderRequest,
    db: AsyncSession = Depends(get_write_db),
    main_db: AsyncSession = Depends(get_main_db),
) -> RedeemOrderResponse:
    """
    Credit a user for a paid shop order (subscription or top-up).

    Idempotent per order: a second redemption returns 409.
    Requires: X-API-Key equal to ADMIN_API_KEY.
    """
    service = OrderReconciliationService(db, main_db)

    try:
        result = await service.redeem(request.user_id, request.order_id)
    except AccountNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        ) from exc
    except OrderRedemptionError as exc:
        if exc.reason == NOT_FOUND:
            code = status.HTTP_404_NOT_FOUND
        elif exc.reason == ALREADY_REDEEMED:
            code = status.HTTP_409_CONFLICT
        else:
            code = status.HTTP_422_UNPROCESSABLE_ENTITY
        raise HTTPException(status_code=code, detail=exc.reason) from exc
    except (DataIntegrityError, WriteVerificationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return RedeemOrderResponse(
        user_id=result.user_id,
        order_id=result.order_id,
        action=result.action,
        tokens_credited=result.tokens_credited,
        plan=result.plan,
        plan_expires_at=result.plan_expires_at,
        balance=result.balance,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_write_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            version=settings.service_version,
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc


@router.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())
