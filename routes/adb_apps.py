"""
ADB App Management Routes - App Installation and Control

Provides endpoints for managing apps on Android devices:
- List installed apps (filter, search, sort, optional details)
- Get one app's details
- Launch / stop / uninstall / enable / disable / open settings
- Install APKs as background jobs with progress and cancel
"""

from fastapi import APIRouter
from pydantic import BaseModel
import logging
import time
from device_models import AppAction, AppFilter, AppSortOrder
from routes import get_deps
from services.app_catalog import app_count_text
from utils.error_handler import (
    AppNotFoundError,
    create_error_response,
    create_success_response,
    handle_api_error,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/adb", tags=["adb_apps"])


# Request models
class InstallRequest(BaseModel):
    device_id: str
    apk_path: str


# =============================================================================
# APP INFO ENDPOINTS
# =============================================================================

@router.get("/apps/{device_id}")
async def get_installed_apps(
    device_id: str,
    filter: AppFilter = AppFilter.ALL,
    search: str = "",
    sort: AppSortOrder = AppSortOrder.NAME,
    details: bool = False,
    reload: bool = False,
):
    """Get list of installed apps on device"""
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        catalog = deps.catalog_for(adb_id)
        if reload or not catalog.apps:
            logger.info(f"[API] Loading installed apps for {adb_id}")
            await catalog.load_apps()
        if details:
            await catalog.load_all_details()

        apps = catalog.filtered(filter, search, sort)
        return {
            "success": True,
            "device_id": adb_id,
            "apps": [app.model_dump(mode="json") for app in apps],
            "count": len(apps),
            "count_text": app_count_text(len(apps), len(catalog.apps)),
            "timestamp": time.time()
        }
    except Exception as e:
        logger.error(f"[API] Get apps failed: {e}")
        return handle_api_error(e)


@router.get("/apps/{device_id}/{package_name}")
async def get_app(device_id: str, package_name: str):
    """Single app with version and install/update dates loaded"""
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        catalog = deps.catalog_for(adb_id)
        if not catalog.apps:
            await catalog.load_apps()
        if catalog.get(package_name) is None:
            raise AppNotFoundError(package_name)
        app = await catalog.load_details(package_name)
        if app is None:
            raise AppNotFoundError(package_name)
        return create_success_response(data=app.model_dump(mode="json"))
    except Exception as e:
        logger.error(f"[API] Get app failed: {e}")
        return handle_api_error(e)


# =============================================================================
# APP CONTROL ENDPOINTS
# =============================================================================

@router.post("/apps/{device_id}/{package_name}/{action}")
async def app_action(device_id: str, package_name: str, action: AppAction):
    """Run launch / force_stop / uninstall / uninstall_keep_data / disable / enable / open_settings"""
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        logger.info(f"[API] {action.display_name} {package_name} on {adb_id}")
        message = await deps.catalog_for(adb_id).perform_action(action, package_name)
        return create_success_response(
            data={"action": action.value, "destructive": action.is_destructive},
            message=message,
        )
    except Exception as e:
        logger.error(f"[API] App action {action.value} failed: {e}")
        return handle_api_error(e)


# =============================================================================
# APK INSTALL ENDPOINTS
# =============================================================================

@router.post("/install")
async def install_apk(request: InstallRequest):
    """Start an install in the background; poll the returned job for progress"""
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(request.device_id)
        job = await deps.install_jobs.start(request.apk_path, adb_id)
        return create_success_response(data=job.model_dump(mode="json"))
    except Exception as e:
        logger.error(f"[API] Install failed: {e}")
        return handle_api_error(e)


@router.get("/install")
async def list_install_jobs():
    deps = get_deps()
    return {"jobs": [job.model_dump(mode="json") for job in deps.install_jobs.all_jobs()]}


@router.get("/install/{job_id}")
async def get_install_job(job_id: str):
    deps = get_deps()
    job = deps.install_jobs.get(job_id)
    if job is None:
        return create_error_response(LookupError(f"Unknown install job: {job_id}"), 404)
    return create_success_response(data=job.model_dump(mode="json"))


@router.post("/install/{job_id}/cancel")
async def cancel_install_job(job_id: str):
    deps = get_deps()
    if deps.install_jobs.get(job_id) is None:
        return create_error_response(LookupError(f"Unknown install job: {job_id}"), 404)
    cancelled = deps.install_jobs.cancel(job_id)
    return create_success_response(
        data={"cancelled": cancelled},
        message="Install cancelled" if cancelled else "Install already finished",
    )
