"""
Health Routes - System Health Check

Provides health check endpoint for monitoring server status.
Reports whether the adb executable can be found and how many devices are attached.
"""

from fastapi import APIRouter
import logging
from routes import get_deps

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.api_route("/health", methods=["GET", "HEAD"])
async def health_check():
    """
    Health check endpoint

    Returns server status, version, adb availability and a device summary.
    Supports both GET and HEAD methods for Docker health checks.
    """
    deps = get_deps()

    adb_available = await deps.adb_bridge.is_adb_available()
    adb_version = None
    if adb_available:
        try:
            adb_version = await deps.adb_bridge.get_version()
        except Exception as e:
            logger.warning(f"[API] adb version query failed: {e}")

    return {
        "status": "ok",
        "version": deps.version,
        "message": "ADB Hub is running",
        "adb_available": adb_available,
        "adb_version": adb_version,
        "monitor_running": deps.device_manager.is_running,
        "last_error": deps.device_manager.last_error,
        "devices": deps.device_manager.connection_summary(),
        "discovery_scanning": deps.discovery.is_scanning,
    }
