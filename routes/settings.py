"""
Settings Routes - Persisted Application Settings

Refresh interval, custom adb path, default TCP/IP port and auto-connect.
Changes apply immediately: the device monitor re-reads its interval and the
adb locator picks up a new custom path on the next command.
"""

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel
import logging
from routes import get_deps
from utils.error_handler import create_success_response, handle_api_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["settings"])


class SettingsUpdateRequest(BaseModel):
    refresh_interval: Optional[float] = None
    use_custom_adb_path: Optional[bool] = None
    custom_adb_path: Optional[str] = None
    default_tcpip_port: Optional[int] = None
    auto_connect_last_devices: Optional[bool] = None
    removal_grace_polls: Optional[int] = None
    pair_connect_delay: Optional[float] = None


@router.get("")
async def get_settings():
    deps = get_deps()
    settings = deps.settings_store.settings
    return {
        "settings": settings.model_dump(),
        "effective_adb_path": settings.effective_adb_path,
        "detected_adb_path": deps.adb_bridge.locator.cached_path,
    }


@router.put("")
async def update_settings(request: SettingsUpdateRequest):
    deps = get_deps()
    try:
        changes = request.model_dump(exclude_none=True)
        settings = deps.settings_store.update(**changes)
        if "use_custom_adb_path" in changes or "custom_adb_path" in changes:
            deps.adb_bridge.locator.invalidate()
        return create_success_response(data=settings.model_dump(), message="Settings saved")
    except Exception as e:
        logger.error(f"[API] Settings update failed: {e}")
        return handle_api_error(e)
