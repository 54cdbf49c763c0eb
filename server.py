"""
ADB Hub - FastAPI Server
Version: 1.0.0

Device connection manager for Android Debug Bridge: USB and network devices,
wireless pairing, mDNS discovery, installed apps and APK installs.
"""

import logging
import os
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from core.adb import ADBBridge, get_adb_locator
from core.discovery import DeviceDiscovery
from device_manager import DeviceManager
from services import DeviceIdentifier, HistoryStore, InstallJobManager, SettingsStore
from routes import RouteDependencies, get_deps, set_deps
from routes import adb_apps, adb_connection, devices, health, settings

VERSION = "1.0.0"

# Configuration (environment)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8420))
DATA_DIR = os.getenv("ADB_HUB_DATA_DIR", "data")
ADB_PATH = os.getenv("ADB_PATH", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Configure logging
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='[%(asctime)s] %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="ADB Hub API",
    version=VERSION,
    description="Android device connection manager (USB, Wi-Fi, wireless debugging)"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Add validation error handler to log detailed errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log and return detailed validation errors"""
    logger.error(f"[VALIDATION ERROR] {request.method} {request.url}: {exc.errors()}")

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "detail": exc.errors(),
        }
    )


app.include_router(health.router)
app.include_router(devices.router)
app.include_router(adb_connection.router)
app.include_router(adb_connection.discovery_router)
app.include_router(adb_apps.router)
app.include_router(settings.router)


def build_dependencies(data_dir: str = DATA_DIR, adb_path: str = ADB_PATH) -> RouteDependencies:
    """Wire the long-lived services together"""
    settings_store = SettingsStore(storage_dir=data_dir)
    history = HistoryStore(storage_dir=data_dir)

    locator = get_adb_locator()
    locator.set_override_provider(lambda: settings_store.settings.effective_adb_path)
    if adb_path:
        locator.set_override(adb_path)

    bridge = ADBBridge(locator=locator)
    discovery = DeviceDiscovery(paired_lookup=history.has_address)
    manager = DeviceManager(
        bridge,
        identifier=DeviceIdentifier(bridge),
        history=history,
        settings_store=settings_store,
        discovery=discovery,
    )

    return RouteDependencies(
        adb_bridge=bridge,
        device_manager=manager,
        discovery=discovery,
        history=history,
        settings_store=settings_store,
        install_jobs=InstallJobManager(bridge),
        version=VERSION,
    )


@app.on_event("startup")
async def startup_event():
    """Build services and start the device monitor"""
    logger.info(f"[Server] Starting ADB Hub v{VERSION}")
    logger.info(f"[Server] Data directory: {DATA_DIR}")

    deps = build_dependencies()
    set_deps(deps)

    if await deps.adb_bridge.is_adb_available():
        logger.info(f"[Server] ✅ {await deps.adb_bridge.get_version()}")
    else:
        logger.warning("[Server] ⚠️ adb not found; set ADB_PATH or a custom path in settings")

    await deps.device_manager.start()
    logger.info("[Server] ✅ Device monitor started")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown"""
    logger.info("[Server] Shutting down ADB Hub...")

    deps = get_deps()
    await deps.install_jobs.shutdown()
    await deps.discovery.stop()
    await deps.device_manager.stop()
    set_deps(None)

    logger.info("[Server] Shutdown complete")


if __name__ == "__main__":
    logger.info(f"Starting ADB Hub v{VERSION}")
    logger.info(f"Server: http://localhost:{PORT}")
    logger.info(f"API: http://localhost:{PORT}/api")

    uvicorn.run(
        app,
        host=HOST,
        port=PORT,
        log_level="info"
    )
