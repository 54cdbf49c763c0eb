"""
ADB Hub - Device Manager

Polls `adb devices`, reconciles the result against the devices already known
and keeps one Device per persistent id, however many transports it is
currently reachable over. Also orchestrates connect, pair-then-connect,
TCP mode switching and custom names.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from core.adb.adb_bridge import ADBBridge, validate_port
from core.discovery.device_discovery import DeviceDiscovery
from device_models import ConnectionType, Device, DeviceState, TcpipResult
from services.device_identity import DeviceIdentifier
from services.history_store import HistoryStore
from services.settings_store import AppSettings, SettingsStore
from utils.error_handler import ADBError, DeviceNotFoundError

logger = logging.getLogger(__name__)

# Wait between dropping the old network session and reconnecting on the new port
TCPIP_RECONNECT_DELAY = 0.5

DETAIL_PROPERTIES = {
    "brand": "ro.product.brand",
    "android_version": "ro.build.version.release",
    "sdk_version": "ro.build.version.sdk",
}

_TRANSPORT_RANK = {
    ConnectionType.USB: 0,
    ConnectionType.WIFI: 1,
    ConnectionType.WIRELESS_DEBUG: 2,
}

DevicesCallback = Callable[[List[Device]], None]


def _primary_rank(device: Device):
    """Ready transports first, then USB > Wi-Fi > wireless debug"""
    return (device.state != DeviceState.DEVICE, _TRANSPORT_RANK[device.connection.type], device.adb_id)


class DeviceManager:
    """
    Owns the current device set.

    Reconciliation runs are serialized; a scheduled poll that finds one still
    running is skipped rather than queued.
    """

    def __init__(
        self,
        bridge: ADBBridge,
        identifier: Optional[DeviceIdentifier] = None,
        history: Optional[HistoryStore] = None,
        settings_store: Optional[SettingsStore] = None,
        discovery: Optional[DeviceDiscovery] = None,
    ):
        self.bridge = bridge
        self.identifier = identifier or DeviceIdentifier(bridge)
        self.history = history
        self.settings_store = settings_store
        self.discovery = discovery

        self._devices: Dict[str, Device] = {}
        self._missed_polls: Dict[str, int] = {}
        self._details: Dict[str, Dict[str, Optional[str]]] = {}
        self._recorded_addresses: Dict[str, Optional[str]] = {}

        self._refresh_lock = asyncio.Lock()
        self._running = False
        self._monitor_task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._callbacks: List[DevicesCallback] = []

        self.last_error: Optional[str] = None

        if self.settings_store is not None:
            self.settings_store.subscribe(self._on_settings_changed)

        logger.info("[DeviceManager] Initialized")

    @property
    def settings(self) -> AppSettings:
        if self.settings_store is not None:
            return self.settings_store.settings
        return AppSettings()

    # =========================================================================
    # Observable state
    # =========================================================================

    @property
    def devices(self) -> List[Device]:
        return list(self._devices.values())

    @property
    def is_running(self) -> bool:
        return self._running

    def get_device(self, device_id: str) -> Optional[Device]:
        """Look up by persistent id or by any current adb address"""
        device = self._devices.get(device_id)
        if device is not None:
            return device
        for device in self._devices.values():
            if any(conn.adb_id == device_id for conn in device.all_connections):
                return device
        return None

    def require_device(self, device_id: str) -> Device:
        device = self.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def resolve_adb_id(self, device_id: str) -> str:
        """adb address to use for a device id; unknown ids are passed through as addresses"""
        device = self.get_device(device_id)
        return device.best_adb_id if device else device_id

    def subscribe(self, callback: DevicesCallback):
        self._callbacks.append(callback)

    def unsubscribe(self, callback: DevicesCallback):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify(self):
        devices = self.devices
        for callback in list(self._callbacks):
            try:
                callback(devices)
            except Exception as e:
                logger.error(f"[DeviceManager] Devices callback failed: {e}")

    # =========================================================================
    # Monitor loop
    # =========================================================================

    async def start(self):
        """Optional auto-connect to remembered devices, then poll in the background"""
        if self._running:
            logger.warning("[DeviceManager] Already running")
            return

        self._running = True
        logger.info(f"[DeviceManager] Starting monitor (interval={self.settings.refresh_interval}s)")

        if self.settings.auto_connect_last_devices:
            await self.connect_last_devices()

        self._monitor_task = asyncio.create_task(self._monitor_loop())

    async def stop(self):
        if not self._running:
            return

        self._running = False
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        logger.info("[DeviceManager] Monitor stopped")

    async def _monitor_loop(self):
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except ADBError as e:
                self.last_error = e.message
                logger.warning(f"[DeviceManager] Poll failed: {e.message}")
            except Exception as e:
                self.last_error = str(e)
                logger.error(f"[DeviceManager] Poll error: {e}", exc_info=True)

            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.settings.refresh_interval)
            except asyncio.TimeoutError:
                pass

    def _on_settings_changed(self, settings: AppSettings):
        # Wake the loop so a new interval applies immediately
        self._wake.set()

    async def poll_once(self) -> bool:
        """Scheduled tick: refresh unless a refresh is already in progress"""
        if self._refresh_lock.locked():
            logger.debug("[DeviceManager] Refresh in progress, skipping tick")
            return False
        await self.refresh()
        return True

    async def refresh(self) -> List[Device]:
        """Re-query adb and reconcile. Waits for an in-progress refresh first."""
        async with self._refresh_lock:
            await self._reconcile()
            self.last_error = None
        return self.devices

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def _reconcile(self):
        entries = await self.bridge.list_devices()

        grouped: Dict[str, List[Device]] = {}
        for entry in entries:
            persistent_id = await self.identifier.resolve(entry)
            grouped.setdefault(persistent_id, []).append(entry)
        self.identifier.retain(entry.adb_id for entry in entries)

        previous = self._devices
        current: Dict[str, Device] = {}

        for persistent_id, group in grouped.items():
            device = self._merge(persistent_id, group, previous.get(persistent_id))
            current[persistent_id] = device
            self._missed_polls.pop(persistent_id, None)

        grace = self.settings.removal_grace_polls
        for persistent_id, old in previous.items():
            if persistent_id in current:
                continue
            missed = self._missed_polls.get(persistent_id, 0) + 1
            if missed < grace:
                self._missed_polls[persistent_id] = missed
                current[persistent_id] = old
                logger.debug(f"[DeviceManager] {persistent_id} missing ({missed}/{grace})")
            else:
                self._missed_polls.pop(persistent_id, None)
                self._recorded_addresses.pop(persistent_id, None)
                logger.info(f"[DeviceManager] Device removed: {old.display_name} ({persistent_id})")

        for persistent_id in current.keys() - previous.keys():
            device = current[persistent_id]
            logger.info(f"[DeviceManager] Device appeared: {device.display_name} "
                        f"({persistent_id} via {device.connection.type.value})")

        self._devices = current

        for persistent_id, device in current.items():
            if device.state == DeviceState.DEVICE:
                await self._ensure_details(device)
                self._record_history(device)

        logger.debug(f"[DeviceManager] Reconciled {len(entries)} adb entries into {len(current)} devices")
        self._notify()

    def _merge(self, persistent_id: str, group: List[Device], old: Optional[Device]) -> Device:
        """One Device from every adb entry sharing a persistent id"""
        ordered = sorted(group, key=_primary_rank)
        primary = ordered[0]
        details = self._details.get(persistent_id, {})

        model = primary.model or next((e.model for e in ordered if e.model), None)
        if model is None and old is not None:
            model = old.model

        sdk = details.get("sdk_version")
        return Device(
            persistent_id=persistent_id,
            adb_id=primary.adb_id,
            state=primary.state,
            connection=primary.connection,
            additional_connections=[e.connection for e in ordered[1:]],
            model=model,
            product=primary.product or (old.product if old else None),
            brand=details.get("brand"),
            android_version=details.get("android_version"),
            sdk_version=int(sdk) if sdk and sdk.isdigit() else None,
            custom_name=self.history.get_custom_name(persistent_id) if self.history else None,
        )

    async def _ensure_details(self, device: Device):
        """Fetch brand / Android version once per device"""
        if device.persistent_id in self._details:
            return
        try:
            values = await self.bridge.get_properties(list(DETAIL_PROPERTIES.values()), device.best_adb_id)
        except ADBError as e:
            logger.debug(f"[DeviceManager] Details unavailable for {device.best_adb_id}: {e}")
            return

        details = {key: values.get(prop) or None for key, prop in DETAIL_PROPERTIES.items()}
        self._details[device.persistent_id] = details
        device.brand = details["brand"]
        device.android_version = details["android_version"]
        sdk = details["sdk_version"]
        device.sdk_version = int(sdk) if sdk and sdk.isdigit() else None

    def _record_history(self, device: Device):
        """Remember the device and its Wi-Fi address, writing only on change"""
        if self.history is None:
            return

        address = None
        ip, port = None, None
        for conn in device.all_connections:
            if conn.type == ConnectionType.WIFI and conn.ip_address:
                ip, port = conn.ip_address, conn.port
                address = f"{ip}:{port}"
                break

        key = device.persistent_id
        if key in self._recorded_addresses and self._recorded_addresses[key] == address:
            return
        self._recorded_addresses[key] = address
        self.history.record_connection(key, model=device.model, ip_address=ip, port=port)

    # =========================================================================
    # Connection orchestration
    # =========================================================================

    async def connect(self, address: str) -> Optional[Device]:
        """`adb connect`, then refresh so the device shows up immediately"""
        await self.bridge.connect(address)
        await self.refresh()
        return self.get_device(address)

    async def disconnect(self, address: str):
        await self.bridge.disconnect(address)
        await self.refresh()

    async def disconnect_device(self, device_id: str):
        """
        Drop every network transport of a device.

        Raises:
            ValueError: device is only attached over USB
        """
        device = self.require_device(device_id)
        network = [conn for conn in device.all_connections if conn.is_wifi_based]
        if not network:
            raise ValueError("USB connections cannot be disconnected")

        for conn in network:
            await self.bridge.disconnect(conn.adb_id)
        await self.refresh()

    async def pair(self, address: str, code: str):
        await self.bridge.pair(address, code)
        host = address.rsplit(":", 1)[0]
        if self.discovery is not None:
            self.discovery.mark_paired(host)
        await self.refresh()

    def _connect_address_for(self, host: str) -> str:
        if self.discovery is not None:
            discovered = self.discovery.get_device(host)
            if discovered is not None and discovered.connect_address:
                return discovered.connect_address
        return f"{host}:{self.settings.default_tcpip_port}"

    async def connect_discovered(self, host: str) -> Optional[Device]:
        """Connect to a host found by discovery, flagging it as connecting meanwhile"""
        if self.discovery is None:
            raise ValueError("Discovery is not available")
        discovered = self.discovery.get_device(host)
        if discovered is None:
            raise DeviceNotFoundError(host)
        if not discovered.connect_address:
            raise ValueError("No connection address available")

        self.discovery.mark_connecting(host, True)
        try:
            return await self.connect(discovered.connect_address)
        finally:
            self.discovery.mark_connecting(host, False)

    async def pair_and_connect(
        self,
        host: str,
        code: str,
        pairing_address: Optional[str] = None,
        connect_address: Optional[str] = None,
    ) -> Optional[Device]:
        """
        Pair, then connect once the device has had time to open its connect port.

        Without an explicit `connect_address` the address is looked up after the
        wait: prefer the advertised connect service, else the default port.
        A failed connect is final.
        """
        if pairing_address is None:
            discovered = self.discovery.get_device(host) if self.discovery else None
            pairing_address = discovered.pairing_address if discovered and discovered.pairing_address else None
        if pairing_address is None:
            raise ValueError(f"No pairing address known for {host}")

        await self.bridge.pair(pairing_address, code)
        if self.discovery is not None:
            self.discovery.mark_paired(host)

        if self.discovery is not None:
            self.discovery.mark_connecting(host, True)
        try:
            await self.refresh()
            await asyncio.sleep(self.settings.pair_connect_delay)
            address = connect_address or self._connect_address_for(host)
            logger.info(f"[DeviceManager] Paired with {host}, connecting to {address}")
            return await self.connect(address)
        finally:
            if self.discovery is not None:
                self.discovery.mark_connecting(host, False)

    async def connect_last_devices(self) -> List[str]:
        """Reconnect to every remembered Wi-Fi address. Returns the ones that worked."""
        if self.history is None:
            return []

        connected = []
        for entry in self.history.all_history():
            address = entry.last_known_address
            if not address:
                continue
            try:
                await self.bridge.connect(address)
                connected.append(address)
            except ADBError as e:
                logger.info(f"[DeviceManager] Auto-connect to {address} failed: {e}")

        if connected:
            logger.info(f"[DeviceManager] Auto-connected to {', '.join(connected)}")
            await self.refresh()
        return connected

    async def enable_tcpip(self, device_id: str, port: Optional[int] = None) -> TcpipResult:
        """
        Switch adbd on the device to TCP mode.

        A USB-only device just starts listening. A device already reached over
        the network loses that session when adbd restarts, so it is
        disconnected and reconnected on the new port.
        """
        device = self.require_device(device_id)
        port = self.settings.default_tcpip_port if port is None else port
        validate_port(port)

        ip_address = device.wifi_ip_address

        await self.bridge.enable_tcpip(port, device.best_adb_id)

        if device.connection.type == ConnectionType.USB and not device.has_multiple_connections:
            logger.info(f"[DeviceManager] TCP/IP enabled on port {port} for {device.display_name}")
            return TcpipResult.ENABLED

        if ip_address:
            for conn in device.all_connections:
                if conn.is_wifi_based:
                    try:
                        await self.bridge.disconnect(conn.adb_id)
                    except ADBError as e:
                        logger.warning(f"[DeviceManager] Disconnect of stale session {conn.adb_id} failed: {e}")
            await asyncio.sleep(TCPIP_RECONNECT_DELAY)
            await self.connect(f"{ip_address}:{port}")
            logger.info(f"[DeviceManager] Reconnected {device.display_name} on port {port}")
            return TcpipResult.RECONNECTED

        return TcpipResult.PORT_CHANGED

    # =========================================================================
    # Naming
    # =========================================================================

    def set_custom_name(self, device_id: str, name: Optional[str]) -> Device:
        """Local label only; the device itself is never touched"""
        device = self.require_device(device_id)
        cleaned = (name or "").strip() or None
        if self.history is not None:
            self.history.set_custom_name(device.persistent_id, cleaned)
        device.custom_name = cleaned
        self._notify()
        return device

    def connection_summary(self) -> Dict[str, int]:
        summary = {"total": len(self._devices)}
        for state in DeviceState:
            summary[state.value] = sum(1 for d in self._devices.values() if d.state == state)
        return summary
