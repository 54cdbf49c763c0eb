"""
ADB Hub - Device Identity

Maps the volatile adb address of a device (USB serial, ip:port, mDNS service
name) to a persistent id that survives reconnects and transport changes.

Resolution order for a device in state `device`:
1. ro.serialno (hardware serial, same over USB and Wi-Fi)
2. brand_model_family composite, family being "net" or "usb"

Devices that are not ready (unauthorized/offline) cannot be queried; they get
a provisional id derived from their address which is never cached.
"""

import logging
import re
from typing import Dict, Iterable, Optional

from device_models import Device, DeviceState
from utils.error_handler import ADBError

logger = logging.getLogger(__name__)

_WIRELESS_NAME_RE = re.compile(r"^adb-(.+)-[^-.]+\._adb-tls-connect\._tcp")
_IP_PORT_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+:\d+$")
_INVALID_SERIALS = ("", "unknown", "null")


def sanitize_identifier(identifier: str) -> str:
    """Replace anything but letters and digits with underscores"""
    return re.sub(r"[^a-zA-Z0-9]", "_", identifier)


def provisional_identity(adb_id: str) -> str:
    """
    Best guess without querying the device.

    Wireless-debug names embed the serial: adb-<SERIAL>-<rand>._adb-tls-connect._tcp
    """
    match = _WIRELESS_NAME_RE.match(adb_id)
    if match:
        return match.group(1)
    return adb_id


def is_valid_serial(value: Optional[str]) -> bool:
    if value is None:
        return False
    value = value.strip()
    return value not in _INVALID_SERIALS and not _IP_PORT_RE.match(value)


class DeviceIdentifier:
    """Resolves and caches persistent ids, keyed by adb address"""

    def __init__(self, bridge):
        self.bridge = bridge
        self._cache: Dict[str, str] = {}

    def get_cached(self, adb_id: str) -> Optional[str]:
        return self._cache.get(adb_id)

    def forget(self, adb_id: str):
        self._cache.pop(adb_id, None)

    def retain(self, adb_ids: Iterable[str]):
        """Drop cache entries for addresses that are gone"""
        present = set(adb_ids)
        for adb_id in list(self._cache):
            if adb_id not in present:
                logger.debug(f"[DeviceIdentity] Dropping cached id for {adb_id}")
                del self._cache[adb_id]

    async def resolve(self, device: Device) -> str:
        """Persistent id for a device from `adb devices`"""
        adb_id = device.adb_id

        if device.state != DeviceState.DEVICE:
            return provisional_identity(adb_id)

        cached = self._cache.get(adb_id)
        if cached:
            return cached

        identity = await self._query_serial(adb_id)
        if identity is None:
            identity = await self._query_composite(device)
        if identity is None:
            # Device stopped answering mid-poll; try again next time
            logger.warning(f"[DeviceIdentity] Could not identify {adb_id}, using address for now")
            return provisional_identity(adb_id)

        self._cache[adb_id] = identity
        logger.info(f"[DeviceIdentity] {adb_id} -> {identity}")
        return identity

    async def _query_serial(self, adb_id: str) -> Optional[str]:
        try:
            serial = await self.bridge.get_property("ro.serialno", adb_id)
        except ADBError as e:
            logger.debug(f"[DeviceIdentity] ro.serialno failed for {adb_id}: {e}")
            return None

        if is_valid_serial(serial):
            return serial.strip()
        logger.debug(f"[DeviceIdentity] No usable serial for {adb_id}: {serial!r}")
        return None

    async def _query_composite(self, device: Device) -> Optional[str]:
        try:
            props = await self.bridge.get_properties(["ro.product.brand", "ro.product.model"], device.adb_id)
        except ADBError as e:
            logger.debug(f"[DeviceIdentity] brand/model query failed for {device.adb_id}: {e}")
            return None

        brand = props.get("ro.product.brand") or "unknown"
        model = props.get("ro.product.model") or device.model or "unknown"
        family = "net" if device.connection.is_wifi_based else "usb"
        return sanitize_identifier(f"{brand}_{model}_{family}")
