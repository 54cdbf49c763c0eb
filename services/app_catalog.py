"""
ADB Hub - App Catalog

Installed-app browsing for one device: a fast package listing, lazily loaded
per-app details, filter/search/sort over the loaded list, and app actions
that keep the local list in sync.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from device_models import AppAction, AppFilter, AppListFilter, AppSortOrder, InstalledApp
from utils.error_handler import ADBError

logger = logging.getLogger(__name__)

# Cap on concurrent `dumpsys package` calls when loading details in bulk
DETAIL_CONCURRENCY = 4


def filter_apps(
    apps: Iterable[InstalledApp],
    app_filter: AppFilter = AppFilter.ALL,
    search: str = "",
    sort_order: AppSortOrder = AppSortOrder.NAME,
) -> List[InstalledApp]:
    """Filter, case-insensitively search and sort an app list"""
    result = list(apps)

    if app_filter == AppFilter.USER:
        result = [a for a in result if not a.is_system_app]
    elif app_filter == AppFilter.SYSTEM:
        result = [a for a in result if a.is_system_app]
    elif app_filter == AppFilter.DISABLED:
        result = [a for a in result if not a.is_enabled]

    query = search.strip().lower()
    if query:
        result = [
            a for a in result
            if query in a.package_name.lower() or (a.display_name and query in a.display_name.lower())
        ]

    if sort_order == AppSortOrder.NAME:
        result.sort(key=lambda a: a.effective_display_name.lower())
    elif sort_order == AppSortOrder.PACKAGE_NAME:
        result.sort(key=lambda a: a.package_name.lower())
    elif sort_order == AppSortOrder.UPDATE_TIME:
        result.sort(key=lambda a: a.update_time or datetime.min, reverse=True)
    elif sort_order == AppSortOrder.INSTALL_TIME:
        result.sort(key=lambda a: a.install_time or datetime.min, reverse=True)

    return result


def app_count_text(shown: int, total: int) -> str:
    if shown == total:
        return f"{total} apps"
    return f"{shown} of {total} apps"


class AppCatalog:
    """Loaded app list of a single device"""

    def __init__(self, bridge, device_id: str):
        self.bridge = bridge
        self.device_id = device_id
        self._apps: Dict[str, InstalledApp] = {}
        self._loaded_details: Set[str] = set()
        self._loading_details: Set[str] = set()
        self._load_lock = asyncio.Lock()

    @property
    def apps(self) -> List[InstalledApp]:
        return list(self._apps.values())

    def get(self, package_name: str) -> Optional[InstalledApp]:
        return self._apps.get(package_name)

    async def load_apps(self) -> List[InstalledApp]:
        """
        List every package with system/enabled flags, without details.

        Three `pm list packages` calls (all, third-party, disabled); a package
        not in the third-party list is a system app.
        """
        async with self._load_lock:
            all_packages = await self.bridge.list_packages(self.device_id, AppListFilter.ALL)
            third_party = set(await self.bridge.list_packages(self.device_id, AppListFilter.THIRD_PARTY))
            disabled = set(await self.bridge.list_packages(self.device_id, AppListFilter.DISABLED))

            self._loaded_details.clear()
            self._loading_details.clear()
            self._apps = {
                name: InstalledApp(
                    package_name=name,
                    is_system_app=name not in third_party,
                    is_enabled=name not in disabled,
                )
                for name in all_packages
            }

        logger.info(f"[AppCatalog] {len(self._apps)} packages on {self.device_id} "
                    f"({len(third_party)} user, {len(disabled)} disabled)")
        return self.apps

    async def load_details(self, package_name: str) -> Optional[InstalledApp]:
        """
        Fill in version/dates/enabled state for one app.

        Failures are logged and ignored; the app simply keeps its sparse entry.
        """
        if package_name in self._loaded_details or package_name in self._loading_details:
            return self._apps.get(package_name)

        self._loading_details.add(package_name)
        try:
            details = await self.bridge.get_package_info(package_name, self.device_id)
        except ADBError as e:
            logger.debug(f"[AppCatalog] Details for {package_name} unavailable: {e}")
            return self._apps.get(package_name)
        finally:
            self._loading_details.discard(package_name)

        app = self._apps.get(package_name)
        if app is None:
            # Uninstalled while loading
            return None

        app.version_name = details.version_name
        app.version_code = details.version_code
        app.install_time = details.install_time
        app.update_time = details.update_time
        app.is_enabled = details.is_enabled
        self._loaded_details.add(package_name)
        return app

    async def load_all_details(self, package_names: Optional[Iterable[str]] = None):
        names = list(package_names) if package_names is not None else list(self._apps)
        semaphore = asyncio.Semaphore(DETAIL_CONCURRENCY)

        async def _one(name: str):
            async with semaphore:
                await self.load_details(name)

        await asyncio.gather(*(_one(name) for name in names))

    def filtered(
        self,
        app_filter: AppFilter = AppFilter.ALL,
        search: str = "",
        sort_order: AppSortOrder = AppSortOrder.NAME,
    ) -> List[InstalledApp]:
        return filter_apps(self._apps.values(), app_filter, search, sort_order)

    async def perform_action(self, action: AppAction, package_name: str) -> str:
        """
        Run an app action and update the local list on success.

        Returns:
            Human-readable success message
        """
        app = self._apps.get(package_name) or InstalledApp(package_name=package_name)
        label = app.effective_display_name

        if action == AppAction.LAUNCH:
            await self.bridge.launch_app(package_name, self.device_id)
            message = f"Launched {label}"

        elif action == AppAction.FORCE_STOP:
            await self.bridge.force_stop_app(package_name, self.device_id)
            message = f"Stopped {label}"

        elif action in (AppAction.UNINSTALL, AppAction.UNINSTALL_KEEP_DATA):
            keep_data = action == AppAction.UNINSTALL_KEEP_DATA
            await self.bridge.uninstall_app(package_name, self.device_id, keep_data=keep_data)
            self._apps.pop(package_name, None)
            self._loaded_details.discard(package_name)
            message = f"Uninstalled {label}" + (" (data kept)" if keep_data else "")

        elif action == AppAction.DISABLE:
            await self.bridge.disable_app(package_name, self.device_id)
            if package_name in self._apps:
                self._apps[package_name].is_enabled = False
            message = f"Disabled {label}"

        elif action == AppAction.ENABLE:
            await self.bridge.enable_app(package_name, self.device_id)
            if package_name in self._apps:
                self._apps[package_name].is_enabled = True
            message = f"Enabled {label}"

        else:
            await self.bridge.open_app_settings(package_name, self.device_id)
            message = f"Opened settings for {label}"

        logger.info(f"[AppCatalog] {message} on {self.device_id}")
        return message
