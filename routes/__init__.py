"""
Routes Package

API routers share the server's long-lived services through RouteDependencies,
set once at startup with set_deps() and read per request with get_deps().
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from core.adb.adb_bridge import ADBBridge
from core.discovery.device_discovery import DeviceDiscovery
from device_manager import DeviceManager
from services.app_catalog import AppCatalog
from services.history_store import HistoryStore
from services.install_jobs import InstallJobManager
from services.settings_store import SettingsStore


@dataclass
class RouteDependencies:
    adb_bridge: ADBBridge
    device_manager: DeviceManager
    discovery: DeviceDiscovery
    history: HistoryStore
    settings_store: SettingsStore
    install_jobs: InstallJobManager
    app_catalogs: Dict[str, AppCatalog] = field(default_factory=dict)
    version: str = "1.0.0"

    def catalog_for(self, adb_id: str) -> AppCatalog:
        catalog = self.app_catalogs.get(adb_id)
        if catalog is None:
            catalog = AppCatalog(self.adb_bridge, adb_id)
            self.app_catalogs[adb_id] = catalog
        return catalog


_deps: Optional[RouteDependencies] = None


def set_deps(deps: Optional[RouteDependencies]):
    global _deps
    _deps = deps


def get_deps() -> RouteDependencies:
    if _deps is None:
        raise RuntimeError("Route dependencies not initialized")
    return _deps
