"""
ADB Hub - ADB Bridge

Typed operations on top of the adb executable: device listing, connect,
pair, shell commands, input, reverse port forwards, package management and
APK installation.

This is the only layer that reads adb output for meaning. adb's exit code is
not a reliable success signal for connect/pair/uninstall/enable/disable, so
those operations match adb's own success and failure wording first and fall
back to the exit code last.
"""

import asyncio
import logging
import os
import re
from typing import Callable, Dict, List, Optional, Sequence

from device_models import AndroidKeyCode, AppListFilter, Device, InstallOutcome, InstalledApp, PortForward
from utils.error_handler import (
    ADBError,
    ADBNotFoundError,
    AppActionFailedError,
    AppNotFoundError,
    CommandFailedError,
    ConnectionFailedError,
    DeviceNotFoundError,
    DeviceOfflineError,
    DeviceUnauthorizedError,
    InstallFailedError,
    PairingFailedError,
    ParseError,
    UninstallFailedError,
)

from . import adb_output_parser as parser
from .adb_locator import AdbLocator, get_adb_locator
from .shell_executor import ShellExecutor, ShellResult, StreamingProcess

logger = logging.getLogger(__name__)

# Per-operation timeouts (seconds)
SHORT_TIMEOUT = 10.0
PAIR_TIMEOUT = 30.0
DEFAULT_TIMEOUT = 30.0
UNINSTALL_TIMEOUT = 60.0
INSTALL_TIMEOUT = 300.0

# Letters/digits/underscore, starts with a letter, at least two dot-separated segments
PACKAGE_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*(\.[a-zA-Z][a-zA-Z0-9_]*)+$")
MAX_PACKAGE_NAME_LENGTH = 255

INSTALL_ERROR_MESSAGES = [
    ("INSTALL_FAILED_ALREADY_EXISTS", "App already installed with different signature"),
    ("INSTALL_FAILED_INVALID_APK", "Invalid APK file"),
    ("INSTALL_FAILED_INSUFFICIENT_STORAGE", "Insufficient storage on device"),
    ("INSTALL_FAILED_VERSION_DOWNGRADE", "Cannot downgrade app version"),
    ("INSTALL_PARSE_FAILED_NO_CERTIFICATES", "APK is not signed"),
    ("INSTALL_FAILED_UPDATE_INCOMPATIBLE", "Update incompatible with existing app"),
    ("INSTALL_FAILED_NO_MATCHING_ABIS", "APK not compatible with device architecture"),
]
_INSTALL_FAILURE_RE = re.compile(r"Failure \[([^\]]+)\]")


def validate_package_name(package_name: str) -> None:
    """
    Reject anything that is not a plain Android package name.

    Package names end up as literal adb arguments and inside device-side
    shell commands, so this runs before any command line is built.

    Raises:
        AppNotFoundError: name is malformed or too long
    """
    if len(package_name) > MAX_PACKAGE_NAME_LENGTH or not PACKAGE_NAME_RE.match(package_name):
        raise AppNotFoundError(package_name)


def validate_port(port: int) -> None:
    if not 1 <= port <= 65535:
        raise ValueError(f"Invalid port {port}: must be between 1 and 65535")


def parse_install_error(output: str, error_output: str) -> str:
    """Best available message for a failed `adb install`"""
    combined = output + error_output

    for code, message in INSTALL_ERROR_MESSAGES:
        if code in combined:
            return message

    match = _INSTALL_FAILURE_RE.search(combined)
    if match:
        return match.group(0)

    if error_output:
        return error_output
    if output:
        return output
    return "Unknown installation error"


class ApkInstallHandle:
    """
    A running `adb install`.

    cancel() kills the install; result() waits for the outcome. If the install
    has already finished, cancel() is a no-op and the finished outcome stands.
    """

    def __init__(self, stream: StreamingProcess, device_id: str, apk_path: str):
        self._stream = stream
        self.device_id = device_id
        self.apk_path = apk_path

    @property
    def done(self) -> bool:
        return self._stream.done

    def cancel(self) -> bool:
        cancelled = self._stream.cancel()
        if cancelled:
            logger.info(f"[ADBBridge] Install of {self.apk_path} on {self.device_id} cancelled")
        return cancelled

    async def result(self) -> InstallOutcome:
        """
        Returns:
            InstallOutcome.SUCCESS or InstallOutcome.CANCELLED

        Raises:
            InstallFailedError: adb reported a failure
            ADBTimeoutError: install exceeded its timeout and was killed
        """
        outcome = await self._stream.wait()
        if outcome.cancelled:
            return InstallOutcome.CANCELLED

        if outcome.exit_code != 0 or "Failure" in outcome.output or "Failure" in outcome.error_output:
            message = parse_install_error(outcome.output, outcome.error_output)
            logger.error(f"[ADBBridge] Install of {self.apk_path} on {self.device_id} failed: {message}")
            raise InstallFailedError(message)

        logger.info(f"[ADBBridge] Installed {self.apk_path} on {self.device_id}")
        return InstallOutcome.SUCCESS


class ADBBridge:
    """
    adb client.

    Every call resolves the adb path through the locator, so a changed
    custom path or a freshly installed adb is picked up without a restart.
    """

    def __init__(self, executor: Optional[ShellExecutor] = None, locator: Optional[AdbLocator] = None):
        self.executor = executor or ShellExecutor(default_timeout=DEFAULT_TIMEOUT)
        self.locator = locator or get_adb_locator()

    # =========================================================================
    # Invocation helpers
    # =========================================================================

    async def _adb(self, args: Sequence[str], timeout: float = DEFAULT_TIMEOUT) -> ShellResult:
        path = self.locator.resolve()
        try:
            return await self.executor.execute(path, list(args), timeout=timeout)
        except (FileNotFoundError, PermissionError) as e:
            logger.warning(f"[ADBBridge] Could not start adb at {path}: {e}")
            self.locator.invalidate()
            raise ADBNotFoundError() from e

    async def _adb_device(self, device_id: str, args: Sequence[str], timeout: float = DEFAULT_TIMEOUT) -> ShellResult:
        return await self._adb(["-s", device_id, *args], timeout=timeout)

    @staticmethod
    def _device_error(device_id: str, text: str) -> Optional[ADBError]:
        """Device-state error for adb's per-device failure wording, if any"""
        lowered = text.lower()
        if "unauthorized" in lowered:
            return DeviceUnauthorizedError(device_id)
        if "offline" in lowered:
            return DeviceOfflineError(device_id)
        if "not found" in lowered and "device" in lowered:
            return DeviceNotFoundError(device_id)
        return None

    def _command_error(self, device_id: Optional[str], command: str, result: ShellResult) -> ADBError:
        if device_id is not None:
            error = self._device_error(device_id, result.error_output)
            if error is not None:
                return error
        return CommandFailedError(command, result.exit_code)

    # =========================================================================
    # ADB itself
    # =========================================================================

    async def is_adb_available(self) -> bool:
        """True if adb resolves and `adb version` runs cleanly"""
        try:
            result = await self._adb(["version"], timeout=SHORT_TIMEOUT)
        except ADBError as e:
            logger.debug(f"[ADBBridge] adb not available: {e}")
            return False
        return result.is_success

    async def get_version(self) -> str:
        """First line of `adb version`, e.g. 'Android Debug Bridge version 1.0.41'"""
        result = await self._adb(["version"], timeout=SHORT_TIMEOUT)
        if not result.is_success:
            raise CommandFailedError("version", result.exit_code)
        first_line = result.output.strip().split("\n", 1)[0].strip()
        if not first_line.startswith("Android Debug Bridge"):
            raise ParseError("version", result.output)
        return first_line

    # =========================================================================
    # Devices and transports
    # =========================================================================

    async def list_devices(self) -> List[Device]:
        result = await self._adb(["devices", "-l"], timeout=SHORT_TIMEOUT)
        if not result.is_success:
            raise CommandFailedError("devices -l", result.exit_code)
        return parser.parse_device_list(result.output)

    async def connect(self, address: str) -> None:
        """
        `adb connect <address>`.

        Raises:
            ConnectionFailedError: adb reported failure
        """
        logger.info(f"[ADBBridge] Connecting to {address}")
        result = await self._adb(["connect", address], timeout=SHORT_TIMEOUT)

        if "connected to" in result.output or "already connected" in result.output:
            logger.info(f"[ADBBridge] Connected to {address}")
            return

        if "failed" in result.output or "unable" in result.output:
            logger.warning(f"[ADBBridge] Connect to {address} failed: {result.output.strip()}")
            raise ConnectionFailedError(result.output.strip(), address=address)

        if not result.is_success:
            logger.warning(f"[ADBBridge] Connect to {address} failed with exit code {result.exit_code}")
            raise ConnectionFailedError(result.combined_output.strip(), address=address)

    async def disconnect(self, address: str) -> None:
        result = await self._adb(["disconnect", address])
        if not result.is_success and "disconnected" not in result.output:
            raise CommandFailedError("disconnect", result.exit_code)
        logger.info(f"[ADBBridge] Disconnected {address}")

    async def pair(self, address: str, code: str) -> None:
        """
        `adb pair <address> <code>` (Android 11+ wireless debugging).

        Known adb failure wording maps to an actionable message.

        Raises:
            PairingFailedError
        """
        logger.info(f"[ADBBridge] Pairing with {address}")
        result = await self._adb(["pair", address, code], timeout=PAIR_TIMEOUT)
        output = result.combined_output

        if "Successfully paired" in output:
            logger.info(f"[ADBBridge] Paired with {address}")
            return

        reason = None
        if "protocol fault" in output or "couldn't read status" in output:
            # Code expired or the pairing dialog was closed
            reason = ("Pairing code expired or connection interrupted. "
                      "Please generate a new code on your device and try again.")
        elif "wrong password" in output or "incorrect" in output:
            reason = "Incorrect pairing code. Please check the code and try again."
        elif "Connection refused" in output:
            reason = ("Connection refused. Ensure Wireless Debugging is enabled "
                      "and the device is in pairing mode.")
        elif "No route to host" in output or "Network is unreachable" in output:
            reason = "Cannot reach device. Ensure both devices are on the same network."
        elif "Failed" in output or "failed" in output or "error" in output:
            reason = output.strip()
        elif not result.is_success:
            reason = output.strip()

        if reason is not None:
            logger.warning(f"[ADBBridge] Pairing with {address} failed: {reason}")
            raise PairingFailedError(reason, address=address)

    async def enable_tcpip(self, port: int, device_id: str) -> None:
        """`adb tcpip <port>`: restart adbd on the device listening on TCP"""
        validate_port(port)
        result = await self._adb_device(device_id, ["tcpip", str(port)])
        if not result.is_success:
            raise self._command_error(device_id, f"tcpip {port}", result)
        logger.info(f"[ADBBridge] {device_id} now listening on tcp:{port}")

    # =========================================================================
    # Device queries and input
    # =========================================================================

    async def get_property(self, prop: str, device_id: str) -> str:
        result = await self._adb_device(device_id, ["shell", "getprop", prop], timeout=SHORT_TIMEOUT)
        if not result.is_success:
            raise self._command_error(device_id, f"getprop {prop}", result)
        return result.output.strip()

    async def get_properties(self, props: Sequence[str], device_id: str) -> Dict[str, str]:
        """Fetch several properties concurrently; any failure fails the whole call"""
        values = await asyncio.gather(*(self.get_property(prop, device_id) for prop in props))
        return dict(zip(props, values))

    async def shell(self, command: str, device_id: str, timeout: float = DEFAULT_TIMEOUT) -> str:
        result = await self._adb_device(device_id, ["shell", command], timeout=timeout)
        if not result.is_success:
            raise self._command_error(device_id, f"shell {command}", result)
        return result.output

    async def take_screenshot(self, device_id: str) -> bytes:
        """PNG bytes from `exec-out screencap -p`"""
        path = self.locator.resolve()
        try:
            result = await self.executor.execute_raw(
                path, ["-s", device_id, "exec-out", "screencap", "-p"], timeout=DEFAULT_TIMEOUT
            )
        except (FileNotFoundError, PermissionError) as e:
            self.locator.invalidate()
            raise ADBNotFoundError() from e

        if not result.data:
            error = self._device_error(device_id, result.error_output)
            raise error or CommandFailedError("screencap", result.exit_code if result.exit_code else -1)
        return result.data

    async def input_text(self, text: str, device_id: str) -> None:
        escaped = parser.escape_input_text(text)
        result = await self._adb_device(device_id, ["shell", "input", "text", escaped])
        if not result.is_success:
            raise self._command_error(device_id, "input text", result)

    async def input_key_event(self, key_code: int, device_id: str) -> None:
        code = int(key_code)
        result = await self._adb_device(device_id, ["shell", "input", "keyevent", str(code)])
        if not result.is_success:
            raise self._command_error(device_id, f"input keyevent {code}", result)

    async def press_key(self, key: AndroidKeyCode, device_id: str) -> None:
        await self.input_key_event(key.value, device_id)

    # =========================================================================
    # Port forwards
    # =========================================================================

    async def list_reverse_forwards(self, device_id: str) -> List[PortForward]:
        result = await self._adb_device(device_id, ["reverse", "--list"])
        # Some adb versions exit nonzero with empty output when there are no rules
        if not result.is_success and result.output:
            raise self._command_error(device_id, "reverse --list", result)
        return parser.parse_reverse_list(result.output, device_id)

    async def create_reverse_forward(self, local_port: int, remote_port: int, device_id: str) -> None:
        validate_port(local_port)
        validate_port(remote_port)
        local, remote = f"tcp:{local_port}", f"tcp:{remote_port}"
        result = await self._adb_device(device_id, ["reverse", local, remote])
        if not result.is_success:
            raise self._command_error(device_id, f"reverse {local} {remote}", result)
        logger.info(f"[ADBBridge] Reverse {local} -> {remote} on {device_id}")

    async def remove_reverse_forward(self, local_port: int, device_id: str) -> None:
        validate_port(local_port)
        local = f"tcp:{local_port}"
        result = await self._adb_device(device_id, ["reverse", "--remove", local])
        if not result.is_success:
            raise self._command_error(device_id, f"reverse --remove {local}", result)

    async def remove_all_reverse_forwards(self, device_id: str) -> None:
        result = await self._adb_device(device_id, ["reverse", "--remove-all"])
        if not result.is_success:
            raise self._command_error(device_id, "reverse --remove-all", result)

    async def list_forwards(self, device_id: str) -> List[PortForward]:
        result = await self._adb_device(device_id, ["forward", "--list"])
        if not result.is_success and result.output:
            raise self._command_error(device_id, "forward --list", result)
        return parser.parse_forward_list(result.output, device_id)

    # =========================================================================
    # APK install
    # =========================================================================

    async def install_apk(
        self,
        apk_path: str,
        device_id: str,
        on_progress: Optional[Callable[[str], None]] = None,
    ) -> ApkInstallHandle:
        """
        Start `adb install -r <apk>` and return a cancellable handle.

        Raises:
            InstallFailedError: file is not a readable .apk (nothing is started)
        """
        if not apk_path.lower().endswith(".apk"):
            raise InstallFailedError(f"Not an APK file: {os.path.basename(apk_path)}")
        if not os.path.isfile(apk_path) or not os.access(apk_path, os.R_OK):
            raise InstallFailedError(f"Cannot read APK file: {apk_path}")

        def _progress(line: str):
            if line.strip() and on_progress is not None:
                on_progress(line)

        path = self.locator.resolve()
        logger.info(f"[ADBBridge] Installing {apk_path} on {device_id}")
        try:
            stream = await self.executor.run_streaming(
                path,
                ["-s", device_id, "install", "-r", apk_path],
                on_line=_progress,
                timeout=INSTALL_TIMEOUT,
            )
        except (FileNotFoundError, PermissionError) as e:
            self.locator.invalidate()
            raise ADBNotFoundError() from e
        return ApkInstallHandle(stream, device_id, apk_path)

    # =========================================================================
    # Packages
    # =========================================================================

    async def list_packages(self, device_id: str, app_filter: AppListFilter = AppListFilter.ALL) -> List[str]:
        args = ["shell", "pm", "list", "packages"]
        if app_filter.flag:
            args.append(app_filter.flag)
        result = await self._adb_device(device_id, args)
        if not result.is_success:
            raise self._command_error(device_id, "pm list packages", result)
        return parser.parse_package_list(result.output)

    async def get_package_info(self, package_name: str, device_id: str) -> InstalledApp:
        validate_package_name(package_name)
        result = await self._adb_device(device_id, ["shell", "dumpsys", "package", package_name], timeout=SHORT_TIMEOUT)
        if not result.is_success:
            raise self._command_error(device_id, f"dumpsys package {package_name}", result)
        if "Unable to find package:" in result.output:
            raise AppNotFoundError(package_name)
        return parser.parse_package_info(package_name, result.output)

    async def launch_app(self, package_name: str, device_id: str) -> None:
        validate_package_name(package_name)
        result = await self._adb_device(device_id, [
            "shell", "monkey", "-p", package_name, "-c", "android.intent.category.LAUNCHER", "1",
        ])
        if not result.is_success or "No activities found" in result.output:
            raise AppActionFailedError("Launch", f"No launchable activity found for {package_name}")
        logger.info(f"[ADBBridge] Launched {package_name} on {device_id}")

    async def force_stop_app(self, package_name: str, device_id: str) -> None:
        validate_package_name(package_name)
        result = await self._adb_device(device_id, ["shell", "am", "force-stop", package_name])
        if not result.is_success:
            raise AppActionFailedError("Force Stop", result.combined_output)

    async def uninstall_app(self, package_name: str, device_id: str, keep_data: bool = False) -> None:
        validate_package_name(package_name)
        args = ["uninstall"]
        if keep_data:
            args.append("-k")
        args.append(package_name)

        result = await self._adb_device(device_id, args, timeout=UNINSTALL_TIMEOUT)

        if "Success" in result.output:
            logger.info(f"[ADBBridge] Uninstalled {package_name} from {device_id}")
            return

        if "Failure" in result.output or "Failure" in result.error_output:
            combined = result.combined_output
            if "[DELETE_FAILED_INTERNAL_ERROR]" in combined:
                raise UninstallFailedError("Cannot uninstall system app")
            raise UninstallFailedError(combined)

        if not result.is_success:
            raise UninstallFailedError(result.combined_output)

    async def disable_app(self, package_name: str, device_id: str) -> None:
        validate_package_name(package_name)
        result = await self._adb_device(device_id, ["shell", "pm", "disable-user", "--user", "0", package_name])
        self._check_toggle(result, "disabled", "Disable")

    async def enable_app(self, package_name: str, device_id: str) -> None:
        validate_package_name(package_name)
        result = await self._adb_device(device_id, ["shell", "pm", "enable", package_name])
        self._check_toggle(result, "enabled", "Enable")

    @staticmethod
    def _check_toggle(result: ShellResult, success_word: str, action: str) -> None:
        # pm prints "... new state: disabled-user" / "... new state: enabled"
        if success_word in result.output:
            return
        if "Error" in result.output or "Exception" in result.output:
            raise AppActionFailedError(action, result.output)
        if not result.is_success:
            raise AppActionFailedError(action, result.combined_output)

    async def open_app_settings(self, package_name: str, device_id: str) -> None:
        validate_package_name(package_name)
        result = await self._adb_device(device_id, [
            "shell", "am", "start",
            "-a", "android.settings.APPLICATION_DETAILS_SETTINGS",
            "-d", f"package:{package_name}",
        ])
        if not result.is_success:
            raise AppActionFailedError("Open Settings", result.combined_output)
