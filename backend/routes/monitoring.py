"""
Monitoring Routes - Health probe and admin system status.
"""
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
from typing import Any, Dict
from database import database
from middleware import admin_route_guard
from services.error_recovery import error_recovery
import os
import time
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["monitoring"])

_STARTED_AT = time.monotonic()


def _uptime() -> float:
    return round(time.monotonic() - _STARTED_AT, 3)


def _environment() -> str:
    return os.getenv("ENVIRONMENT", "development")


async def get_database_status() -> Dict[str, Any]:
    db = database.get_db()
    if db is None:
        return {"state": "disconnected"}
    try:
        await db.command("ping")
        return {"state": "connected", "name": db.name, "ping": "success"}
    except Exception as e:
        return {"state": "error", "error": str(e)}


@router.get("/health")
async def health_check():
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": _uptime(),
        "environment": _environment(),
    }


@router.get("/monitoring/status")
async def system_status(current_user: dict = Depends(admin_route_guard)):
    """Database reachability and circuit breaker snapshots."""
    try:
        data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": _environment(),
            "uptime": _uptime(),
            "database": await get_database_status(),
            "circuitBreakers": error_recovery.get_circuit_breaker_status(),
        }
        logger.info(f"System status requested by {current_user.get('email') or current_user.get('user_id')}")
        return {"success": True, "data": data}
    except Exception as e:
        logger.error(f"Error getting system status: {e}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": {"code": "STATUS_ERROR", "message": "Unable to retrieve system status"},
            },
        )
