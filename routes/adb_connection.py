"""
ADB Connection Routes - Device Connection Management

Provides endpoints for connecting, pairing, and disconnecting Android devices
via TCP/IP and wireless debugging (Android 11+), plus mDNS discovery of
devices advertising wireless debugging on the local network.
"""

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel
import logging
from routes import get_deps
from utils.error_handler import create_success_response, handle_api_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/adb", tags=["adb_connection"])
discovery_router = APIRouter(prefix="/api/discovery", tags=["discovery"])


# Request models
class ConnectDeviceRequest(BaseModel):
    host: Optional[str] = None
    port: int = 5555
    address: Optional[str] = None  # "host:port", takes precedence over host/port

    def target(self) -> str:
        if self.address:
            return self.address
        if not self.host:
            raise ValueError("host or address is required")
        return f"{self.host}:{self.port}"


class DisconnectDeviceRequest(BaseModel):
    address: str


class PairingRequest(BaseModel):
    pairing_host: str
    pairing_port: int
    pairing_code: str
    # The ADB port to connect to after pairing; omitted = pair only
    connection_port: Optional[int] = None


class DiscoveredPairRequest(BaseModel):
    pairing_code: str


def _device_payload(device) -> Optional[dict]:
    return device.model_dump(mode="json") if device is not None else None


# =============================================================================
# CONNECTION MANAGEMENT ENDPOINTS
# =============================================================================

@router.post("/connect")
async def connect_device(request: ConnectDeviceRequest):
    """Connect to Android device via TCP/IP"""
    deps = get_deps()
    try:
        address = request.target()
        logger.info(f"[API] Connecting to {address}")
        device = await deps.device_manager.connect(address)
        return create_success_response(
            data={"address": address, "device": _device_payload(device)},
            message=f"Connected to {address}",
        )
    except Exception as e:
        logger.error(f"[API] Connection failed: {e}")
        return handle_api_error(e)


@router.post("/pair")
async def pair_device(request: PairingRequest):
    """Pair with Android 11+ device using wireless pairing

    Android 11+ wireless debugging uses TWO ports:
    - Pairing port (e.g., 37899) - for initial pairing with code
    - Connection port (e.g., 45441) - for actual ADB connection after pairing
    """
    deps = get_deps()
    pairing_address = f"{request.pairing_host}:{request.pairing_port}"
    try:
        logger.info(f"[API] Pairing with {pairing_address}")
        if request.connection_port is None:
            await deps.device_manager.pair(pairing_address, request.pairing_code)
            return create_success_response(message=f"Paired with {pairing_address}")

        connect_address = f"{request.pairing_host}:{request.connection_port}"
        device = await deps.device_manager.pair_and_connect(
            request.pairing_host,
            request.pairing_code,
            pairing_address=pairing_address,
            connect_address=connect_address,
        )
        return create_success_response(
            data={"address": connect_address, "device": _device_payload(device)},
            message=f"Paired and connected to {connect_address}",
        )
    except Exception as e:
        logger.error(f"[API] Pairing failed: {e}")
        return handle_api_error(e)


@router.post("/disconnect")
async def disconnect_device(request: DisconnectDeviceRequest):
    """Disconnect one network transport by address"""
    deps = get_deps()
    try:
        logger.info(f"[API] Disconnecting from {request.address}")
        await deps.device_manager.disconnect(request.address)
        return create_success_response(message=f"Disconnected from {request.address}")
    except Exception as e:
        logger.error(f"[API] Disconnection failed: {e}")
        return handle_api_error(e)


@router.post("/connect-last")
async def connect_last_devices():
    """Reconnect to every remembered Wi-Fi address"""
    deps = get_deps()
    try:
        connected = await deps.device_manager.connect_last_devices()
        return create_success_response(data={"connected": connected})
    except Exception as e:
        logger.error(f"[API] Auto-connect failed: {e}")
        return handle_api_error(e)


# =============================================================================
# DISCOVERY ENDPOINTS
# =============================================================================

@discovery_router.post("/start")
async def start_discovery():
    deps = get_deps()
    try:
        await deps.discovery.start()
        return create_success_response(data={"scanning": deps.discovery.is_scanning})
    except Exception as e:
        logger.error(f"[API] Discovery start failed: {e}")
        return handle_api_error(e)


@discovery_router.post("/stop")
async def stop_discovery():
    deps = get_deps()
    await deps.discovery.stop()
    return create_success_response(data={"scanning": False})


@discovery_router.get("/devices")
async def discovered_devices():
    """Hosts currently advertising adb services, sorted by address"""
    deps = get_deps()
    discovery = deps.discovery
    return {
        "scanning": discovery.is_scanning,
        "error": discovery.scan_error,
        "devices": [d.model_dump(mode="json") for d in discovery.devices],
    }


@discovery_router.post("/{host}/connect")
async def connect_discovered(host: str):
    deps = get_deps()
    try:
        logger.info(f"[API] Connecting to discovered host {host}")
        device = await deps.device_manager.connect_discovered(host)
        return create_success_response(
            data={"device": _device_payload(device)},
            message=f"Connected to {host}",
        )
    except Exception as e:
        logger.error(f"[API] Connect to discovered host failed: {e}")
        return handle_api_error(e)


@discovery_router.post("/{host}/pair")
async def pair_discovered(host: str, request: DiscoveredPairRequest):
    """Pair using the advertised pairing port, then connect"""
    deps = get_deps()
    try:
        logger.info(f"[API] Pairing with discovered host {host}")
        device = await deps.device_manager.pair_and_connect(host, request.pairing_code)
        return create_success_response(
            data={"device": _device_payload(device)},
            message=f"Paired and connected to {host}",
        )
    except Exception as e:
        logger.error(f"[API] Pair with discovered host failed: {e}")
        return handle_api_error(e)
