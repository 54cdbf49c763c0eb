"""
ADB Hub - ADB Output Parser

Pure functions turning adb's text output into models. No I/O.
Blank lines, headers and lines of the wrong shape are skipped, never fatal.
"""

import logging
import re
from datetime import datetime
from typing import Dict, List, Optional

from device_models import (
    ConnectionType,
    Device,
    DeviceConnection,
    DeviceState,
    InstalledApp,
    PortForward,
)

logger = logging.getLogger(__name__)

WIRELESS_DEBUG_SUFFIX = "._adb-tls-connect._tcp"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_VERSION_NAME_LENGTH = 100

_PORT_RE = re.compile(r"^\d+$")
_FORWARD_PORT_RE = re.compile(r"^tcp:(\d+)$")


# =============================================================================
# DEVICE LIST (`adb devices -l`)
# =============================================================================

def is_ipv4(host: str) -> bool:
    """Four dot-separated decimal octets, each 0-255"""
    parts = host.split(".")
    if len(parts) != 4:
        return False
    for part in parts:
        if not part.isdigit() or int(part) > 255:
            return False
    return True


def split_host_port(address: str) -> Optional[tuple]:
    """'192.168.1.5:5555' -> ('192.168.1.5', 5555); None unless ipv4:numeric-port"""
    host, sep, port = address.rpartition(":")
    if not sep or not _PORT_RE.match(port) or not is_ipv4(host):
        return None
    return host, int(port)


def classify_transport(address: str) -> ConnectionType:
    """Transport kind from the address adb uses for a device"""
    if WIRELESS_DEBUG_SUFFIX in address:
        return ConnectionType.WIRELESS_DEBUG
    if address.startswith("adb-") and "._tcp" in address:
        return ConnectionType.WIRELESS_DEBUG
    if split_host_port(address) is not None:
        return ConnectionType.WIFI
    return ConnectionType.USB


def parse_device_line(line: str) -> Optional[Device]:
    """
    Parse one `adb devices -l` line.

    Format: "<address> <state> [product:X] [model:Y] [device:Z] [transport_id:N]"
    """
    line = line.strip()
    if not line or line.startswith("List of devices") or line.startswith("*"):
        return None

    parts = line.split()
    if len(parts) < 2:
        return None

    address = parts[0]
    state = DeviceState.from_adb(parts[1])

    attrs: Dict[str, str] = {}
    for token in parts[2:]:
        key, sep, value = token.partition(":")
        if sep and key in ("model", "product", "transport_id"):
            attrs[key] = value

    model = attrs.get("model")
    if model is not None:
        model = model.replace("_", " ")

    kind = classify_transport(address)
    ip_address = None
    port = None
    if kind == ConnectionType.WIFI:
        ip_address, port = split_host_port(address)

    connection = DeviceConnection(
        type=kind,
        adb_id=address,
        state=state,
        ip_address=ip_address,
        port=port,
        transport_id=attrs.get("transport_id"),
    )
    return Device.from_adb_line(
        adb_id=address,
        state=state,
        connection=connection,
        model=model,
        product=attrs.get("product"),
    )


def parse_device_list(output: str) -> List[Device]:
    """Parse the full `adb devices -l` output, skipping anything unparseable"""
    devices = []
    for line in output.splitlines():
        device = parse_device_line(line)
        if device is not None:
            devices.append(device)
    return devices


# =============================================================================
# PORT FORWARDS (`adb reverse --list`, `adb forward --list`)
# =============================================================================

def _forward_port(spec: str) -> Optional[int]:
    match = _FORWARD_PORT_RE.match(spec)
    return int(match.group(1)) if match else None


def parse_forward_list(output: str, device_id: str, direction: str = "forward") -> List[PortForward]:
    """
    Parse forward/reverse list output for one device.

    Lines look like "<serial> tcp:8081 tcp:8081"; reverse lists from some adb
    versions prefix the line with "(reverse)" or omit the serial entirely.
    """
    forwards = []
    for line in output.splitlines():
        parts = line.split()
        if parts and parts[0] == "(reverse)":
            parts = parts[1:]
        if len(parts) == 3:
            parts = parts[1:]
        if len(parts) != 2:
            continue

        local, remote = parts
        if ":" not in local or ":" not in remote:
            continue

        forwards.append(PortForward(
            device_id=device_id,
            direction=direction,
            local=local,
            remote=remote,
            local_port=_forward_port(local),
            remote_port=_forward_port(remote),
        ))
    return forwards


def parse_reverse_list(output: str, device_id: str) -> List[PortForward]:
    return parse_forward_list(output, device_id, direction="reverse")


# =============================================================================
# PACKAGES (`pm list packages`, `dumpsys package`)
# =============================================================================

def parse_package_list(output: str) -> List[str]:
    """`package:com.example.app` lines -> package names"""
    packages = []
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("package:"):
            name = line[len("package:"):].strip()
            if name:
                packages.append(name)
    return packages


def parse_date(value: str) -> Optional[datetime]:
    """Parse 'YYYY-MM-DD HH:MM:SS'; anything else yields None"""
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT)
    except ValueError:
        return None


def parse_package_info(package_name: str, output: str) -> InstalledApp:
    """
    Build an InstalledApp from `dumpsys package <name>` output.

    The version and date fields keep their FIRST occurrence, not the last:
    the dump lists the active install first, and later blocks describe other
    users or a hidden system copy that an update replaced.

    Enabled defaults to True; any disabled marker anywhere in the dump wins.
    """
    version_name = None
    version_code = None
    install_time = None
    update_time = None
    is_system_app = False
    is_enabled = True

    for raw_line in output.splitlines():
        line = raw_line.strip()

        if line.startswith("versionName=") and version_name is None:
            version_name = line[len("versionName="):][:MAX_VERSION_NAME_LENGTH]

        elif line.startswith("versionCode=") and version_code is None:
            code = line[len("versionCode="):].split(" ", 1)[0]
            if code.isdigit():
                version_code = int(code)

        elif line.startswith("firstInstallTime=") and install_time is None:
            install_time = parse_date(line[len("firstInstallTime="):])

        elif line.startswith("lastUpdateTime=") and update_time is None:
            update_time = parse_date(line[len("lastUpdateTime="):])

        elif "pkgFlags=" in line and "SYSTEM" in line:
            is_system_app = True

        elif line.startswith("enabled="):
            # 0 = disabled; 1 and 2 both mean enabled
            state = line[len("enabled="):].strip()
            if state == "0" or state.lower() == "false":
                is_enabled = False

    if (
        "packageFlags=[ HIDDEN ]" in output
        or "DISABLED" in output
        or "enabledState=COMPONENT_ENABLED_STATE_DISABLED" in output
    ):
        is_enabled = False

    return InstalledApp(
        package_name=package_name,
        version_name=version_name,
        version_code=version_code,
        install_time=install_time,
        update_time=update_time,
        is_system_app=is_system_app,
        is_enabled=is_enabled,
    )


# =============================================================================
# TEXT INPUT
# =============================================================================

_INPUT_SPECIAL_CHARS = "'\"&<>;()"


def escape_input_text(text: str) -> str:
    """Escape text for the device's `input text` command (space -> %s)"""
    escaped = []
    for char in text:
        if char == " ":
            escaped.append("%s")
        elif char in _INPUT_SPECIAL_CHARS:
            escaped.append("\\" + char)
        else:
            escaped.append(char)
    return "".join(escaped)
