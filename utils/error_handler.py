"""
Centralized Error Handling Module for ADB Hub

Typed error taxonomy for everything that can go wrong while driving the adb
executable, plus consistent API error/success envelopes.

Only the ADB bridge classifies raw adb output into these errors. Lower layers
(shell executor, output parser) report mechanical outcomes only.
"""

import logging
import traceback
from typing import Dict, Any, Optional
from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR HINTS - User-friendly troubleshooting suggestions
# =============================================================================

ERROR_HINTS = {
    "TOOL_NOT_FOUND": {
        "message": "ADB executable not found",
        "hint": "Install Android SDK platform-tools, or set a custom ADB path in settings.",
    },
    "DEVICE_NOT_FOUND": {
        "message": "Device not connected",
        "hint": "Check the USB cable or that the device is on the same network, then refresh the device list.",
    },
    "UNAUTHORIZED": {
        "message": "Device has not authorized this computer",
        "hint": "Unlock the device and accept the 'Allow USB debugging' prompt.",
    },
    "OFFLINE": {
        "message": "Device is offline",
        "hint": "Reconnect the cable or toggle Wireless debugging off and on.",
    },
    "CONNECTION_FAILED": {
        "message": "Could not connect to device",
        "hint": "Make sure Wireless debugging is enabled and the address and port are correct.",
    },
    "PAIRING_FAILED": {
        "message": "Pairing failed",
        "hint": "Open 'Pair device with pairing code' on the device and use the fresh code and port it shows.",
    },
    "TIMEOUT": {
        "message": "ADB did not respond in time",
        "hint": "The device may be busy or unreachable. Try again, or restart the ADB server.",
    },
    "INSTALL_FAILED": {
        "message": "APK installation failed",
        "hint": "Check free storage on the device and that the APK matches the device architecture.",
    },
    "UNINSTALL_FAILED": {
        "message": "Uninstall failed",
        "hint": "System apps cannot be uninstalled; disable them instead.",
    },
    "APP_NOT_FOUND": {
        "message": "App not installed or package name invalid",
        "hint": "Verify the package name, e.g. com.example.app.",
    },
}


class ADBError(Exception):
    """Base exception for all ADB Hub errors"""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ADBNotFoundError(ADBError):
    """Raised when the adb executable cannot be resolved"""

    def __init__(self):
        super().__init__(
            "ADB executable not found. Please ensure Android SDK platform-tools is installed and in PATH.",
            code="TOOL_NOT_FOUND",
        )


class DeviceNotFoundError(ADBError):
    """Raised when the adb server does not know the device"""

    def __init__(self, device_id: str):
        super().__init__(
            f"Device '{device_id}' not found. Please check the connection.",
            code="DEVICE_NOT_FOUND",
            details={"device_id": device_id},
        )


class DeviceUnauthorizedError(ADBError):
    """Raised when the device has not accepted the debugging prompt"""

    def __init__(self, device_id: str):
        super().__init__(
            f"Device '{device_id}' is unauthorized. Please accept the debugging prompt on the device.",
            code="UNAUTHORIZED",
            details={"device_id": device_id},
        )


class DeviceOfflineError(ADBError):
    """Raised when the device is known but offline"""

    def __init__(self, device_id: str):
        super().__init__(
            f"Device '{device_id}' is offline. Please reconnect the device.",
            code="OFFLINE",
            details={"device_id": device_id},
        )


class ConnectionFailedError(ADBError):
    """Raised when `adb connect` does not establish a connection"""

    def __init__(self, reason: str, address: Optional[str] = None):
        self.reason = reason
        super().__init__(
            f"Connection failed: {reason}",
            code="CONNECTION_FAILED",
            details={"address": address},
        )


class PairingFailedError(ADBError):
    """Raised when `adb pair` does not report success"""

    def __init__(self, reason: str, address: Optional[str] = None):
        self.reason = reason
        super().__init__(
            f"Pairing failed: {reason}",
            code="PAIRING_FAILED",
            details={"address": address},
        )


class CommandFailedError(ADBError):
    """Raised for a nonzero exit with no more specific classification"""

    def __init__(self, command: str, exit_code: int):
        self.command = command
        self.exit_code = exit_code
        super().__init__(
            f"Command '{command}' failed with exit code {exit_code}",
            code="COMMAND_FAILED",
            details={"command": command, "exit_code": exit_code},
        )


class ADBTimeoutError(ADBError):
    """Raised when a subprocess exceeds its allotted time and was terminated"""

    def __init__(self, command: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(
            "Operation timed out",
            code="TIMEOUT",
            details={"command": command, "timeout": timeout},
        )


class ParseError(ADBError):
    """Raised when output matches none of the shapes a command is known to print"""

    def __init__(self, command: str, output: str):
        super().__init__(
            f"Unexpected output from '{command}'",
            code="PARSE_ERROR",
            details={"command": command, "output": output[:200]},
        )


class InstallFailedError(ADBError):
    """Raised when an APK install fails"""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Installation failed: {reason}", code="INSTALL_FAILED")


class UninstallFailedError(ADBError):
    """Raised when an uninstall fails"""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Uninstall failed: {reason}", code="UNINSTALL_FAILED")


class AppActionFailedError(ADBError):
    """Raised when launch/stop/enable/disable/settings fails"""

    def __init__(self, action: str, reason: str):
        self.action = action
        self.reason = reason
        super().__init__(
            f"{action} failed: {reason}",
            code="APP_ACTION_FAILED",
            details={"action": action},
        )


class AppNotFoundError(ADBError):
    """Raised when a package is unknown or its name is not a valid package name"""

    def __init__(self, package_name: str):
        super().__init__(
            f"App '{package_name}' not found",
            code="APP_NOT_FOUND",
            details={"package": package_name},
        )


def create_error_response(
    error: Exception,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    include_traceback: bool = False,
) -> JSONResponse:
    """
    Create a standardized error response

    Args:
        error: The exception that occurred
        status_code: HTTP status code
        include_traceback: Include full traceback in response (debug only)

    Returns:
        JSONResponse with error details
    """
    error_response = {
        "success": False,
        "error": {"message": str(error), "type": error.__class__.__name__},
    }

    if isinstance(error, ADBError):
        error_response["error"]["code"] = error.code
        error_response["error"]["details"] = error.details
        error_response["error"]["hint"] = ERROR_HINTS.get(error.code, {}).get("hint", "")

    if include_traceback:
        error_response["error"]["traceback"] = traceback.format_exc()

    if status_code >= 500:
        logger.error(f"{error.__class__.__name__}: {error}")
    else:
        logger.warning(f"{error.__class__.__name__}: {error}")

    return JSONResponse(status_code=status_code, content=error_response)


def handle_api_error(error: Exception) -> JSONResponse:
    """
    Handle API errors with appropriate status codes

    Args:
        error: The exception to handle

    Returns:
        JSONResponse with appropriate status code
    """
    if isinstance(error, (DeviceNotFoundError, AppNotFoundError)):
        return create_error_response(error, status.HTTP_404_NOT_FOUND)

    elif isinstance(error, DeviceUnauthorizedError):
        return create_error_response(error, status.HTTP_403_FORBIDDEN)

    elif isinstance(error, (ValueError, InstallFailedError, UninstallFailedError, AppActionFailedError)):
        return create_error_response(error, status.HTTP_400_BAD_REQUEST)

    elif isinstance(error, (ADBNotFoundError, DeviceOfflineError, ConnectionFailedError, PairingFailedError)):
        return create_error_response(error, status.HTTP_503_SERVICE_UNAVAILABLE)

    elif isinstance(error, ADBTimeoutError):
        return create_error_response(error, status.HTTP_504_GATEWAY_TIMEOUT)

    else:
        return create_error_response(error, status.HTTP_500_INTERNAL_SERVER_ERROR)


def create_success_response(
    data: Any = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a standardized success response

    Args:
        data: The response data payload
        message: Optional success message

    Returns:
        Dict with success response format: {success: True, data: ..., message: ...}

    Usage:
        return create_success_response(data={"devices": devices})
        return create_success_response(message="Connected to 192.168.1.5:5555")
    """
    response = {"success": True}

    if data is not None:
        response["data"] = data

    if message is not None:
        response["message"] = message

    return response
