"""
ADB Hub - Device Discovery

Finds Android devices advertising adb over mDNS:
- _adb-tls-connect._tcp  (Android 11+ wireless debugging, connect port)
- _adb-tls-pairing._tcp  (pairing dialog open, pairing port)
- _adb._tcp              (legacy `adb tcpip`)

Browser callbacks and resolve results are turned into events on one asyncio
queue, consumed by a single task. That task owns the raw per-advertisement
map and rebuilds the per-host DiscoveredDevice list from it after every
change. Each scan session has an id; events from an older session are dropped.

Usage:
    discovery = DeviceDiscovery(paired_lookup=history.has_address)
    await discovery.start()
    ...
    await discovery.stop()
"""

import asyncio
import ipaddress
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from core.adb.adb_output_parser import is_ipv4
from device_models import DiscoveredDevice, ServiceInfo, ServiceType

logger = logging.getLogger(__name__)

RESOLVE_TIMEOUT = 10.0

SERVICE_TYPES = [ServiceType.ADB_TLS_CONNECT, ServiceType.ADB_TLS_PAIRING, ServiceType.ADB_LEGACY]
_BROWSE_TYPES = {service_type.browse_type: service_type for service_type in SERVICE_TYPES}


@dataclass(frozen=True)
class ResolvedService:
    """One advertisement after address resolution"""
    name: str
    host: str
    port: int
    type: ServiceType


@dataclass(frozen=True)
class _DiscoveryEvent:
    kind: str  # "added" | "removed" | "resolved"
    session: int
    service_type: ServiceType
    name: str
    resolved: Optional[ResolvedService] = None
    origin: Optional[asyncio.Task] = None  # resolve task that produced a "resolved" event


ResolveFunc = Callable[[ServiceType, str, float], Awaitable[Optional[ResolvedService]]]
DevicesCallback = Callable[[List[DiscoveredDevice]], None]


def instance_name(full_name: str, service_type: ServiceType) -> str:
    """'adb-1234._adb-tls-connect._tcp.local.' -> 'adb-1234'"""
    suffix = "." + service_type.browse_type
    if full_name.endswith(suffix):
        return full_name[: -len(suffix)]
    return full_name


def _host_sort_key(host: str):
    try:
        return (0, int(ipaddress.IPv4Address(host)), host)
    except ValueError:
        return (1, 0, host)


def build_discovered_devices(
    services: Dict[str, ResolvedService],
    is_paired: Callable[[str], bool],
    connecting: Set[str],
) -> List[DiscoveredDevice]:
    """
    Aggregate per-advertisement entries into one record per host.

    Deterministic for a given map regardless of insertion order: duplicate
    advertisements of a type at one host keep the lowest (name, port), the
    shortest name labels the host, services sort by type priority and hosts
    by numeric address.
    """
    by_host: Dict[str, Dict[ServiceType, ResolvedService]] = {}
    names: Dict[str, List[str]] = {}

    for service in services.values():
        per_type = by_host.setdefault(service.host, {})
        current = per_type.get(service.type)
        if current is None or (service.name, service.port) < (current.name, current.port):
            per_type[service.type] = service
        names.setdefault(service.host, []).append(service.name)

    devices = []
    for host, per_type in by_host.items():
        best_name = min(names[host], key=lambda n: (len(n), n))
        service_infos = sorted(
            (ServiceInfo(type=s.type, port=s.port) for s in per_type.values()),
            key=lambda info: info.type.priority,
        )
        devices.append(DiscoveredDevice(
            id=host,
            name=best_name,
            host=host,
            services=service_infos,
            is_paired=is_paired(host),
            is_connecting=host in connecting,
        ))

    devices.sort(key=lambda d: _host_sort_key(d.host))
    return devices


class DeviceDiscovery:
    """mDNS discovery of adb-capable hosts on the local network"""

    def __init__(
        self,
        paired_lookup: Optional[Callable[[str], bool]] = None,
        zeroconf_factory: Callable[[], AsyncZeroconf] = AsyncZeroconf,
        browser_factory: Callable[..., AsyncServiceBrowser] = AsyncServiceBrowser,
        resolver: Optional[ResolveFunc] = None,
        resolve_timeout: float = RESOLVE_TIMEOUT,
    ):
        self._paired_lookup = paired_lookup
        self._zeroconf_factory = zeroconf_factory
        self._browser_factory = browser_factory
        self._resolver = resolver or self._resolve_with_zeroconf
        self._resolve_timeout = resolve_timeout

        self._zeroconf: Optional[AsyncZeroconf] = None
        self._browsers: List[AsyncServiceBrowser] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._resolving: Dict[str, asyncio.Task] = {}

        self._session = 0
        self._scanning = False
        self._scan_error: Optional[str] = None

        # Source of truth: "<name>-<type>" -> resolved advertisement
        self._services: Dict[str, ResolvedService] = {}
        self._devices: List[DiscoveredDevice] = []

        # Overlays applied on rebuild
        self._connecting: Set[str] = set()
        self._paired: Set[str] = set()

        self._callbacks: List[DevicesCallback] = []

    # =========================================================================
    # Observable state
    # =========================================================================

    @property
    def devices(self) -> List[DiscoveredDevice]:
        return list(self._devices)

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def scan_error(self) -> Optional[str]:
        return self._scan_error

    def get_device(self, host: str) -> Optional[DiscoveredDevice]:
        return next((d for d in self._devices if d.host == host), None)

    def subscribe(self, callback: DevicesCallback):
        """Register a callback receiving the device list after every rebuild"""
        self._callbacks.append(callback)

    def unsubscribe(self, callback: DevicesCallback):
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    # =========================================================================
    # Scan lifecycle
    # =========================================================================

    async def start(self):
        """Start browsing all three service types. No-op while already scanning."""
        if self._scanning:
            return

        await self._teardown()

        self._session += 1
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._services = {}
        self._connecting = set()
        self._scan_error = None
        self._scanning = True
        self._rebuild()

        self._consumer = asyncio.create_task(self._consume(self._queue))
        try:
            self._zeroconf = self._zeroconf_factory()
            for service_type in SERVICE_TYPES:
                browser = self._browser_factory(
                    self._zeroconf.zeroconf,
                    service_type.browse_type,
                    handlers=[self._on_service_state_change],
                )
                self._browsers.append(browser)
        except Exception as e:
            logger.error(f"[DeviceDiscovery] Failed to start mDNS browsing: {e}")
            self._scan_error = f"Discovery failed: {e}"
            self._session += 1
            self._scanning = False
            await self._teardown()
            raise

        logger.info("[DeviceDiscovery] Scanning for adb services")

    async def stop(self):
        """Stop browsing; in-flight resolves are cancelled and late events ignored"""
        was_scanning = self._scanning
        self._session += 1
        self._scanning = False
        await self._teardown()
        if was_scanning:
            logger.info("[DeviceDiscovery] Scanning stopped")

    async def _teardown(self):
        browsers, self._browsers = self._browsers, []
        for browser in browsers:
            await browser.async_cancel()

        tasks = list(self._resolving.values())
        self._resolving = {}
        if self._consumer is not None:
            tasks.append(self._consumer)
            self._consumer = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._zeroconf is not None:
            zc, self._zeroconf = self._zeroconf, None
            await zc.async_close()

    async def wait_until_idle(self):
        """Wait until queued events and in-flight resolves are processed"""
        while self._queue is not None:
            # Let call_soon_threadsafe() deliveries land in the queue
            await asyncio.sleep(0)
            pending = [t for t in self._resolving.values() if not t.done()]
            if pending:
                await asyncio.wait(pending)
                continue
            if self._consumer is None or self._consumer.done():
                return
            await self._queue.join()
            if self._queue.empty() and not self._resolving:
                return

    # =========================================================================
    # Overlays set by the device manager
    # =========================================================================

    def mark_connecting(self, host: str, connecting: bool):
        if connecting:
            self._connecting.add(host)
        else:
            self._connecting.discard(host)
        self._rebuild()

    def mark_paired(self, host: str):
        self._paired.add(host)
        self._rebuild()

    # =========================================================================
    # Event pipeline
    # =========================================================================

    def _on_service_state_change(self, **kwargs) -> None:
        """
        zeroconf browser handler.

        May be called from zeroconf's own thread, so the event is handed to the
        loop via call_soon_threadsafe. zeroconf passes keyword-only arguments.
        """
        if self._loop is None or self._queue is None:
            return

        service_type = _BROWSE_TYPES.get(kwargs.get("service_type", ""))
        name = kwargs.get("name", "")
        state_change = kwargs.get("state_change")
        if service_type is None or not name:
            return

        if state_change == ServiceStateChange.Added:
            kind = "added"
        elif state_change == ServiceStateChange.Removed:
            kind = "removed"
        else:
            return

        event = _DiscoveryEvent(kind=kind, session=self._session, service_type=service_type, name=name)
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def _consume(self, queue: asyncio.Queue):
        while True:
            event = await queue.get()
            try:
                if event.session == self._session:
                    self._handle_event(event)
            finally:
                queue.task_done()

    def _handle_event(self, event: _DiscoveryEvent):
        key = f"{instance_name(event.name, event.service_type)}-{event.service_type.value}"

        if event.kind == "added":
            previous = self._resolving.pop(key, None)
            if previous is not None:
                previous.cancel()
            self._resolving[key] = asyncio.create_task(self._resolve(key, event))

        elif event.kind == "removed":
            task = self._resolving.pop(key, None)
            if task is not None:
                task.cancel()
            if self._services.pop(key, None) is not None:
                logger.info(f"[DeviceDiscovery] Service removed: {key}")
                self._rebuild()

        elif event.kind == "resolved":
            if self._resolving.get(key) is not event.origin:
                # Superseded by a newer add, or withdrawn while resolving
                return
            del self._resolving[key]
            service = event.resolved
            if service is None or not is_ipv4(service.host) or service.port <= 0:
                logger.debug(f"[DeviceDiscovery] Ignoring unresolvable service {key}")
                return
            self._services[key] = service
            logger.info(f"[DeviceDiscovery] {service.type.display_name} at {service.host}:{service.port} ({service.name})")
            self._rebuild()

    async def _resolve(self, key: str, event: _DiscoveryEvent):
        try:
            resolved = await self._resolver(event.service_type, event.name, self._resolve_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"[DeviceDiscovery] Resolve failed for {key}: {e}")
            resolved = None

        if event.session != self._session or self._queue is None:
            return
        self._queue.put_nowait(_DiscoveryEvent(
            kind="resolved",
            session=event.session,
            service_type=event.service_type,
            name=event.name,
            resolved=resolved,
            origin=asyncio.current_task(),
        ))

    async def _resolve_with_zeroconf(
        self, service_type: ServiceType, name: str, timeout: float
    ) -> Optional[ResolvedService]:
        if self._zeroconf is None:
            return None
        info = AsyncServiceInfo(service_type.browse_type, name)
        if not await info.async_request(self._zeroconf.zeroconf, int(timeout * 1000)):
            return None

        addresses = info.parsed_addresses(IPVersion.V4Only)
        if not addresses:
            return None
        return ResolvedService(
            name=instance_name(name, service_type),
            host=addresses[0],
            port=info.port or 0,
            type=service_type,
        )

    # =========================================================================
    # Derived view
    # =========================================================================

    def _is_paired(self, host: str) -> bool:
        if host in self._paired:
            return True
        return bool(self._paired_lookup and self._paired_lookup(host))

    def _rebuild(self):
        self._devices = build_discovered_devices(self._services, self._is_paired, self._connecting)
        for callback in list(self._callbacks):
            try:
                callback(self.devices)
            except Exception as e:
                logger.error(f"[DeviceDiscovery] Devices callback failed: {e}")
