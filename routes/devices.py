"""
Device Routes - Device List, Naming and Per-Device Commands

Provides endpoints for the reconciled device list, custom names, properties,
shell, screenshots, input, reverse port forwards and TCP/IP mode.

Any {device_id} may be a persistent id or a current adb address.
"""

from typing import List, Optional

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel
import logging
from device_models import AndroidKeyCode
from routes import get_deps
from utils.error_handler import create_success_response, handle_api_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/devices", tags=["devices"])


# Request models
class RenameRequest(BaseModel):
    name: Optional[str] = None


class ShellRequest(BaseModel):
    command: str
    timeout: float = 30.0


class TextRequest(BaseModel):
    text: str


class KeyRequest(BaseModel):
    key: Optional[str] = None  # AndroidKeyCode name, e.g. "HOME"
    key_code: Optional[int] = None


class ReverseRequest(BaseModel):
    local_port: int
    remote_port: int


class TcpipRequest(BaseModel):
    port: Optional[int] = None


# =============================================================================
# DEVICE LIST
# =============================================================================

@router.get("")
async def list_devices():
    """Current devices, one entry per physical device"""
    deps = get_deps()
    manager = deps.device_manager
    return {
        "devices": [d.model_dump(mode="json") for d in manager.devices],
        "summary": manager.connection_summary(),
        "last_error": manager.last_error,
    }


@router.post("/refresh")
async def refresh_devices():
    """Re-query adb immediately"""
    deps = get_deps()
    try:
        devices = await deps.device_manager.refresh()
        return create_success_response(data={"devices": [d.model_dump(mode="json") for d in devices]})
    except Exception as e:
        logger.error(f"[API] Refresh failed: {e}")
        return handle_api_error(e)


@router.get("/history")
async def device_history():
    deps = get_deps()
    return {"history": [entry.model_dump(mode="json") for entry in deps.history.all_history()]}


@router.put("/{device_id}/name")
async def rename_device(device_id: str, request: RenameRequest):
    """Set or clear (empty name) the local label of a device"""
    deps = get_deps()
    try:
        device = deps.device_manager.set_custom_name(device_id, request.name)
        return create_success_response(data=device.model_dump(mode="json"))
    except Exception as e:
        logger.error(f"[API] Rename failed: {e}")
        return handle_api_error(e)


# =============================================================================
# DEVICE COMMANDS
# =============================================================================

@router.get("/{device_id}/properties")
async def get_properties(device_id: str, names: Optional[List[str]] = Query(None)):
    """getprop values; all common detail properties when no names are given"""
    deps = get_deps()
    props = names or [
        "ro.product.model",
        "ro.product.manufacturer",
        "ro.product.brand",
        "ro.build.version.release",
        "ro.build.version.sdk",
        "ro.serialno",
    ]
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        values = await deps.adb_bridge.get_properties(props, adb_id)
        return {"device_id": adb_id, "properties": values}
    except Exception as e:
        logger.error(f"[API] Get properties failed: {e}")
        return handle_api_error(e)


@router.post("/{device_id}/shell")
async def run_shell(device_id: str, request: ShellRequest):
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        logger.info(f"[API] Shell on {adb_id}: {request.command}")
        output = await deps.adb_bridge.shell(request.command, adb_id, timeout=request.timeout)
        return create_success_response(data={"output": output})
    except Exception as e:
        logger.error(f"[API] Shell command failed: {e}")
        return handle_api_error(e)


@router.get("/{device_id}/screenshot")
async def screenshot(device_id: str):
    """Raw PNG from `screencap -p`"""
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        data = await deps.adb_bridge.take_screenshot(adb_id)
        return Response(content=data, media_type="image/png")
    except Exception as e:
        logger.error(f"[API] Screenshot failed: {e}")
        return handle_api_error(e)


@router.post("/{device_id}/text")
async def input_text(device_id: str, request: TextRequest):
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        await deps.adb_bridge.input_text(request.text, adb_id)
        return create_success_response(message="Text sent")
    except Exception as e:
        logger.error(f"[API] Text input failed: {e}")
        return handle_api_error(e)


@router.post("/{device_id}/key")
async def input_key(device_id: str, request: KeyRequest):
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        if request.key is not None:
            try:
                key = AndroidKeyCode[request.key.upper()]
            except KeyError:
                raise ValueError(f"Unknown key: {request.key}") from None
            await deps.adb_bridge.press_key(key, adb_id)
        elif request.key_code is not None:
            await deps.adb_bridge.input_key_event(request.key_code, adb_id)
        else:
            raise ValueError("Either key or key_code is required")
        return create_success_response(message="Key event sent")
    except Exception as e:
        logger.error(f"[API] Key event failed: {e}")
        return handle_api_error(e)


# =============================================================================
# PORT FORWARDS
# =============================================================================

@router.get("/{device_id}/reverse")
async def list_reverse(device_id: str):
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        forwards = await deps.adb_bridge.list_reverse_forwards(adb_id)
        return {"device_id": adb_id, "reverse": [f.model_dump() for f in forwards]}
    except Exception as e:
        logger.error(f"[API] List reverse forwards failed: {e}")
        return handle_api_error(e)


@router.post("/{device_id}/reverse")
async def create_reverse(device_id: str, request: ReverseRequest):
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        await deps.adb_bridge.create_reverse_forward(request.local_port, request.remote_port, adb_id)
        return create_success_response(
            message=f"Reverse tcp:{request.local_port} -> tcp:{request.remote_port}"
        )
    except Exception as e:
        logger.error(f"[API] Create reverse forward failed: {e}")
        return handle_api_error(e)


@router.delete("/{device_id}/reverse")
async def remove_reverse(device_id: str, local_port: Optional[int] = None):
    """Remove one reverse forward, or all of them when local_port is omitted"""
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        if local_port is None:
            await deps.adb_bridge.remove_all_reverse_forwards(adb_id)
            return create_success_response(message="All reverse forwards removed")
        await deps.adb_bridge.remove_reverse_forward(local_port, adb_id)
        return create_success_response(message=f"Reverse tcp:{local_port} removed")
    except Exception as e:
        logger.error(f"[API] Remove reverse forward failed: {e}")
        return handle_api_error(e)


@router.get("/{device_id}/forward")
async def list_forward(device_id: str):
    deps = get_deps()
    try:
        adb_id = deps.device_manager.resolve_adb_id(device_id)
        forwards = await deps.adb_bridge.list_forwards(adb_id)
        return {"device_id": adb_id, "forward": [f.model_dump() for f in forwards]}
    except Exception as e:
        logger.error(f"[API] List forwards failed: {e}")
        return handle_api_error(e)


# =============================================================================
# TCP/IP
# =============================================================================

@router.post("/{device_id}/tcpip")
async def enable_tcpip(device_id: str, request: TcpipRequest):
    """Switch the device to TCP mode (reconnects network sessions on the new port)"""
    deps = get_deps()
    try:
        result = await deps.device_manager.enable_tcpip(device_id, request.port)
        return create_success_response(data={"result": result.value})
    except Exception as e:
        logger.error(f"[API] Enable TCP/IP failed: {e}")
        return handle_api_error(e)


@router.post("/{device_id}/disconnect")
async def disconnect_device(device_id: str):
    """Drop every network transport of a device"""
    deps = get_deps()
    try:
        await deps.device_manager.disconnect_device(device_id)
        return create_success_response(message=f"Disconnected {device_id}")
    except Exception as e:
        logger.error(f"[API] Disconnect failed: {e}")
        return handle_api_error(e)
