"""HTTP entry points for PayPal subscription reconciliation and status reads."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from billsync.clients.paypal import PayPalError
from billsync.config import settings
from billsync.services.subscriptions.errors import SubscriptionSyncError
from billsync.services.subscriptions.grace import build_payment_notice, cancellation_message
from billsync.services.subscriptions.repositories import (
    SubscriptionStore,
    get_subscription_store,
)
from billsync.services.subscriptions.status import derive_status
from billsync.services.subscriptions.sync import SubscriptionSyncService, get_sync_service

router = APIRouter()
logger = logging.getLogger(__name__)

SYNC_PATH = "/functions/sync-paypal-subscription"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


@router.options(SYNC_PATH, include_in_schema=False)
async def sync_preflight() -> Response:
    return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)


@router.api_route(
    SYNC_PATH,
    methods=["GET", "HEAD", "PUT", "PATCH", "DELETE", "TRACE", "CONNECT"],
    include_in_schema=False,
)
async def sync_method_not_allowed() -> Response:
    return method_not_allowed_response()


def method_not_allowed_response() -> Response:
    return PlainTextResponse(
        "Method not allowed", status_code=status.HTTP_405_METHOD_NOT_ALLOWED, headers=CORS_HEADERS
    )


@router.post(SYNC_PATH)
async def sync_paypal_subscription(
    request: Request,
    service: SubscriptionSyncService = Depends(get_sync_service),
) -> JSONResponse:
    """Fetch the subscription from PayPal and overwrite the local records."""
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return _error_response("Request body must be a JSON object", status.HTTP_400_BAD_REQUEST)

    subscription_id = body.get("subscription_id")
    user_id = body.get("user_id")
    if not subscription_id or not user_id:
        return _error_response(
            "Missing subscription_id or user_id", status.HTTP_400_BAD_REQUEST
        )

    try:
        result = await service.sync_subscription(str(subscription_id), str(user_id))
    except (PayPalError, SubscriptionSyncError) as exc:
        logger.error(
            "subscription.sync.api_error",
            extra={"subscription_id": subscription_id, "user_id": user_id, "code": exc.code},
        )
        return sync_error_response(exc)

    if result.discarded:
        return JSONResponse(
            {"success": False, "error": result.message},
            status_code=status.HTTP_409_CONFLICT,
            headers=CORS_HEADERS,
        )
    return JSONResponse(jsonable_encoder(result.as_response()), headers=CORS_HEADERS)


@router.get("/billing/subscriptions/{user_id}/status")
async def subscription_status(
    user_id: str,
    store: SubscriptionStore = Depends(get_subscription_store),
) -> dict:
    """Current subscription with derived indicators, payment notice and recent payments."""
    record = store.get_current_for_user(user_id)
    if record is None:
        raise HTTPException(status_code=404, detail="No subscription found for user.")

    now = datetime.now(UTC)
    derived = derive_status(record, now)
    notice = build_payment_notice(
        record.failed_payment_count,
        record.current_period_end,
        now,
        plan_type=record.plan_type,
        max_failures=settings.max_failed_payments,
        schedule=settings.retry_schedule_days,
    )
    transactions = store.list_recent_transactions(
        user_id, limit=settings.recent_transactions_limit
    )
    payload = {
        "subscription": record.model_dump(),
        "derived": derived.as_dict(),
        "payment_notice": notice.as_dict(),
        "cancellation_message": (
            cancellation_message(record.current_period_end, now)
            if derived.is_cancelled
            else None
        ),
        "recent_transactions": [txn.model_dump() for txn in transactions],
    }
    return jsonable_encoder(payload)


def sync_error_response(exc: PayPalError | SubscriptionSyncError) -> JSONResponse:
    """Render a sync failure as ``{success: false, error}`` with CORS headers."""
    return _error_response(str(exc), _map_error_code(exc.code))


def _error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": message}, status_code=status_code, headers=CORS_HEADERS
    )


def _map_error_code(code: str) -> int:
    if code == "PAYPAL_TIMEOUT":
        return status.HTTP_504_GATEWAY_TIMEOUT
    if code in ("PAYPAL_AUTH_FAILED", "PAYPAL_RESOURCE_FAILED", "PAYPAL_ERROR"):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR
