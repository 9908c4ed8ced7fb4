"""
Wholesaler Routes - Trigger and inspect wholesaler order notifications.
Called by admin tooling and by cron callers; no auth on these endpoints.
"""
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
from services.order_store import OrderStore
from services.wholesaler_notification_service import (
    WholesalerNotificationService,
    wholesaler_notification_service,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/wholesalers", tags=["wholesalers"])


def get_notification_service() -> WholesalerNotificationService:
    return wholesaler_notification_service


def get_order_store() -> OrderStore:
    return wholesaler_notification_service.order_store


def _error(status_code: int, error) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@router.get("/test")
async def test_wholesaler_system():
    """Liveness probe listing the wholesaler endpoints."""
    return {
        "success": True,
        "message": "Wholesaler notification system is active",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoints": [
            "POST /api/wholesalers/process-notifications - Process all pending notifications",
            "POST /api/wholesalers/notify/{order_id} - Process notifications for specific order",
            "GET /api/wholesalers/pending - Get orders with pending notifications",
            "GET /api/wholesalers/status/{order_id} - Get notification status for order",
        ],
    }


# ============================================
# TRIGGERS
# ============================================

@router.post("/process-notifications")
async def process_notifications(
    service: WholesalerNotificationService = Depends(get_notification_service),
):
    """Run a notification sweep over every eligible order."""
    try:
        result = await service.process_pending_notifications()
    except Exception as e:
        logger.error(f"Wholesaler notification sweep failed: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))

    if not result.get("success"):
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, result.get("error"))

    return {
        "success": True,
        "message": "Notification processing completed",
        "data": {
            "processed": result.get("processed", 0),
            "successCount": result.get("successCount", 0),
            "errorCount": result.get("errorCount", 0),
            "results": result.get("results", []),
        },
    }


@router.post("/notify/{order_id}")
async def notify_order(
    order_id: str,
    service: WholesalerNotificationService = Depends(get_notification_service),
):
    """Send outstanding wholesaler notifications for one order."""
    try:
        result = await service.process_order_notifications(order_id)
    except Exception as e:
        logger.error(f"Wholesaler notification for order {order_id} failed: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))

    if not result.get("success"):
        return _error(status.HTTP_400_BAD_REQUEST, result.get("error"))

    return {
        "success": True,
        "message": result.get("message") or "Order notifications processed",
        "data": {
            "orderNumber": result.get("orderNumber"),
            "results": result.get("results", []),
        },
    }


# ============================================
# READ-ONLY STATUS
# ============================================

@router.get("/pending")
async def list_pending_notifications(
    store: OrderStore = Depends(get_order_store),
):
    """Orders with at least one wholesaler still to be notified."""
    try:
        orders = await store.find_pending_summaries()
    except Exception as e:
        logger.error(f"Failed to list pending wholesaler notifications: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))

    return {
        "success": True,
        "data": {
            "count": len(orders),
            "orders": orders,
        },
    }


@router.get("/status/{order_id}")
async def get_notification_status(
    order_id: str,
    store: OrderStore = Depends(get_order_store),
):
    """Per-item wholesaler notification status of one order."""
    try:
        order_status = await store.find_order_status(order_id)
    except Exception as e:
        logger.error(f"Failed to load wholesaler status for order {order_id}: {e}")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))

    if order_status is None:
        return _error(status.HTTP_404_NOT_FOUND, "Order not found")

    return {"success": True, "data": order_status}
