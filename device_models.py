"""
ADB Hub - Device Models

Pydantic models for devices known to adb, network-discovered hosts,
installed apps and port forwards.
"""

from datetime import datetime
from enum import Enum, IntEnum
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field


class DeviceState(str, Enum):
    """Device state keyword as reported by `adb devices`"""
    DEVICE = "device"
    UNAUTHORIZED = "unauthorized"
    OFFLINE = "offline"
    UNKNOWN = "unknown"

    @classmethod
    def from_adb(cls, keyword: str) -> "DeviceState":
        try:
            return cls(keyword)
        except ValueError:
            return cls.UNKNOWN


class ConnectionType(str, Enum):
    """Transport a device is reached over"""
    USB = "usb"
    WIFI = "wifi"  # ip:port after `adb connect` / `adb tcpip`
    WIRELESS_DEBUG = "wireless_debug"  # Android 11+ mDNS service name


class DeviceConnection(BaseModel):
    """One transport to a device, addressed by its current adb id"""
    type: ConnectionType
    adb_id: str
    state: DeviceState = DeviceState.UNKNOWN
    ip_address: Optional[str] = None
    port: Optional[int] = None
    transport_id: Optional[str] = None

    @property
    def is_wifi_based(self) -> bool:
        return self.type in (ConnectionType.WIFI, ConnectionType.WIRELESS_DEBUG)


class Device(BaseModel):
    """
    A physical or virtual device known to adb.

    `adb_id` is volatile (changes across reconnects); `persistent_id` is assigned
    by the device manager on first sight and never changes afterwards. A device
    reachable over several transports at once is a single Device whose extra
    transports live in `additional_connections`.
    """
    persistent_id: Optional[str] = None
    adb_id: str
    state: DeviceState = DeviceState.UNKNOWN
    connection: DeviceConnection
    additional_connections: List[DeviceConnection] = Field(default_factory=list)

    model: Optional[str] = None
    product: Optional[str] = None
    brand: Optional[str] = None
    android_version: Optional[str] = None
    sdk_version: Optional[int] = None
    custom_name: Optional[str] = None

    @classmethod
    def from_adb_line(
        cls,
        adb_id: str,
        state: DeviceState,
        connection: DeviceConnection,
        model: Optional[str] = None,
        product: Optional[str] = None,
    ) -> "Device":
        return cls(adb_id=adb_id, state=state, connection=connection, model=model, product=product)

    @computed_field
    @property
    def transport_kind(self) -> ConnectionType:
        return self.connection.type

    @computed_field
    @property
    def display_name(self) -> str:
        return self.custom_name or self.model or self.adb_id

    @property
    def best_adb_id(self) -> str:
        """Address to use for per-device commands (the primary transport)"""
        return self.connection.adb_id

    @property
    def all_connections(self) -> List[DeviceConnection]:
        return [self.connection] + list(self.additional_connections)

    @property
    def has_multiple_connections(self) -> bool:
        return len(self.additional_connections) > 0

    @property
    def ip_address(self) -> Optional[str]:
        return self.connection.ip_address

    @property
    def port(self) -> Optional[int]:
        return self.connection.port

    @property
    def wifi_ip_address(self) -> Optional[str]:
        """First known IP over any network transport"""
        for conn in self.all_connections:
            if conn.is_wifi_based and conn.ip_address:
                return conn.ip_address
        return None


class ServiceType(str, Enum):
    """mDNS service types advertised by adbd"""
    ADB_TLS_CONNECT = "_adb-tls-connect._tcp."
    ADB_TLS_PAIRING = "_adb-tls-pairing._tcp."
    ADB_LEGACY = "_adb._tcp."

    @property
    def browse_type(self) -> str:
        """Fully qualified type as zeroconf expects it"""
        return f"{self.value}local."

    @property
    def display_name(self) -> str:
        return {
            ServiceType.ADB_TLS_CONNECT: "Wireless Debug",
            ServiceType.ADB_TLS_PAIRING: "Pairing Mode",
            ServiceType.ADB_LEGACY: "Legacy ADB",
        }[self]

    @property
    def priority(self) -> int:
        return {
            ServiceType.ADB_TLS_CONNECT: 0,
            ServiceType.ADB_TLS_PAIRING: 1,
            ServiceType.ADB_LEGACY: 2,
        }[self]


class ServiceInfo(BaseModel):
    """One advertised (service type, port) pair at a host"""
    type: ServiceType
    port: int


class DiscoveredDevice(BaseModel):
    """
    Network host advertising adb services, aggregated from its mDNS records.

    Rebuilt from the discovery service's raw advertisement map on every change;
    only `is_connecting` is set from outside.
    """
    id: str
    name: str
    host: str
    services: List[ServiceInfo] = Field(default_factory=list)
    is_paired: bool = False
    is_connecting: bool = False

    @property
    def connect_service(self) -> Optional[ServiceInfo]:
        for wanted in (ServiceType.ADB_TLS_CONNECT, ServiceType.ADB_LEGACY):
            for service in self.services:
                if service.type == wanted:
                    return service
        return None

    @property
    def pairing_service(self) -> Optional[ServiceInfo]:
        return next((s for s in self.services if s.type == ServiceType.ADB_TLS_PAIRING), None)

    @computed_field
    @property
    def connect_address(self) -> Optional[str]:
        service = self.connect_service
        return f"{self.host}:{service.port}" if service else None

    @computed_field
    @property
    def pairing_address(self) -> Optional[str]:
        service = self.pairing_service
        return f"{self.host}:{service.port}" if service else None

    @computed_field
    @property
    def display_address(self) -> str:
        service = self.connect_service or self.pairing_service
        return f"{self.host}:{service.port}" if service else self.host

    @computed_field
    @property
    def status_text(self) -> str:
        if self.pairing_service and not self.connect_service:
            return "Ready to pair"
        if self.connect_service:
            return "Ready to connect"
        return "Available"

    @computed_field
    @property
    def can_connect(self) -> bool:
        return self.connect_service is not None

    @computed_field
    @property
    def can_pair(self) -> bool:
        return self.pairing_service is not None

    @property
    def service_types_display(self) -> str:
        ordered = sorted(self.services, key=lambda s: s.type.priority)
        return " • ".join(s.type.display_name for s in ordered)


class InstalledApp(BaseModel):
    """Package installed on a device"""
    package_name: str
    display_name: Optional[str] = None
    version_name: Optional[str] = None
    version_code: Optional[int] = None
    install_time: Optional[datetime] = None
    update_time: Optional[datetime] = None
    is_system_app: bool = False
    is_enabled: bool = True

    @computed_field
    @property
    def effective_display_name(self) -> str:
        return self.display_name or self.package_name.split(".")[-1] or self.package_name


class PortForward(BaseModel):
    """Reverse (device -> host) or forward (host -> device) port rule"""
    device_id: str
    direction: str = "reverse"  # "reverse" | "forward"
    local: str  # e.g. "tcp:8081"
    remote: str
    local_port: Optional[int] = None
    remote_port: Optional[int] = None


class AppListFilter(str, Enum):
    """Filters understood by `pm list packages`"""
    ALL = "all"
    THIRD_PARTY = "third_party"
    SYSTEM = "system"
    DISABLED = "disabled"

    @property
    def flag(self) -> Optional[str]:
        return {
            AppListFilter.ALL: None,
            AppListFilter.THIRD_PARTY: "-3",
            AppListFilter.SYSTEM: "-s",
            AppListFilter.DISABLED: "-d",
        }[self]


class AppFilter(str, Enum):
    """Filter applied to an already loaded app list"""
    ALL = "all"
    USER = "user"
    SYSTEM = "system"
    DISABLED = "disabled"


class AppSortOrder(str, Enum):
    NAME = "name"
    PACKAGE_NAME = "package"
    UPDATE_TIME = "updated"
    INSTALL_TIME = "installed"


class AppAction(str, Enum):
    """Actions available on an installed app"""
    LAUNCH = "launch"
    FORCE_STOP = "force_stop"
    UNINSTALL = "uninstall"
    UNINSTALL_KEEP_DATA = "uninstall_keep_data"
    DISABLE = "disable"
    ENABLE = "enable"
    OPEN_SETTINGS = "open_settings"

    @property
    def display_name(self) -> str:
        return {
            AppAction.LAUNCH: "Launch",
            AppAction.FORCE_STOP: "Force Stop",
            AppAction.UNINSTALL: "Uninstall",
            AppAction.UNINSTALL_KEEP_DATA: "Uninstall (Keep Data)",
            AppAction.DISABLE: "Disable",
            AppAction.ENABLE: "Enable",
            AppAction.OPEN_SETTINGS: "App Settings",
        }[self]

    @property
    def is_destructive(self) -> bool:
        return self in (AppAction.UNINSTALL, AppAction.UNINSTALL_KEEP_DATA, AppAction.DISABLE)


class AndroidKeyCode(IntEnum):
    """Key codes accepted by `input keyevent`"""
    HOME = 3
    BACK = 4
    VOLUME_UP = 24
    VOLUME_DOWN = 25
    POWER = 26
    TAB = 61
    ENTER = 66
    DELETE = 67
    MENU = 82


class InstallOutcome(str, Enum):
    """Terminal result of an APK install that did not fail"""
    SUCCESS = "success"
    CANCELLED = "cancelled"


class TcpipResult(str, Enum):
    """What enabling TCP mode ended up doing"""
    ENABLED = "enabled"  # USB-only device, now listening; reconnect manually over Wi-Fi
    RECONNECTED = "reconnected"  # dropped stale network session and reconnected on the new port
    PORT_CHANGED = "port_changed"
