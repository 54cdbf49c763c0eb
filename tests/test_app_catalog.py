"""App catalog: listing, details, filter/search/sort and actions."""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from device_models import AppAction, AppFilter, AppListFilter, AppSortOrder, InstalledApp
from services.app_catalog import AppCatalog, app_count_text, filter_apps
from utils.error_handler import ADBError

SERIAL = "R58M123ABC"

PACKAGES = {
    AppListFilter.ALL: ["com.android.settings", "com.example.notes", "com.example.game", "com.android.chrome"],
    AppListFilter.THIRD_PARTY: ["com.example.notes", "com.example.game"],
    AppListFilter.DISABLED: ["com.android.chrome"],
}


@pytest.fixture()
def bridge():
    bridge = MagicMock()

    async def list_packages(device_id, list_filter=AppListFilter.ALL):
        return list(PACKAGES[list_filter])

    bridge.list_packages = AsyncMock(side_effect=list_packages)
    for name in ("get_package_info", "launch_app", "force_stop_app", "uninstall_app",
                 "disable_app", "enable_app", "open_app_settings"):
        setattr(bridge, name, AsyncMock(return_value=None))
    return bridge


@pytest_asyncio.fixture()
async def catalog(bridge):
    catalog = AppCatalog(bridge, SERIAL)
    await catalog.load_apps()
    return catalog


def _app(name, **kwargs):
    return InstalledApp(package_name=name, **kwargs)


@pytest.mark.asyncio
async def test_load_apps_sets_system_and_enabled_flags(bridge):
    catalog = AppCatalog(bridge, SERIAL)
    apps = {a.package_name: a for a in await catalog.load_apps()}

    assert len(apps) == 4
    assert not apps["com.example.notes"].is_system_app
    assert apps["com.android.settings"].is_system_app
    assert not apps["com.android.chrome"].is_enabled
    assert apps["com.example.game"].is_enabled
    assert apps["com.example.game"].version_name is None


def test_filter_by_kind():
    apps = [
        _app("com.a.user"),
        _app("com.a.system", is_system_app=True),
        _app("com.a.off", is_system_app=True, is_enabled=False),
    ]
    assert [a.package_name for a in filter_apps(apps, AppFilter.USER)] == ["com.a.user"]
    assert {a.package_name for a in filter_apps(apps, AppFilter.SYSTEM)} == {"com.a.system", "com.a.off"}
    assert [a.package_name for a in filter_apps(apps, AppFilter.DISABLED)] == ["com.a.off"]
    assert len(filter_apps(apps, AppFilter.ALL)) == 3


def test_search_is_case_insensitive_on_package_and_label():
    apps = [_app("com.example.notes"), _app("org.other", display_name="My Notes"), _app("com.x.game")]
    found = filter_apps(apps, search="  NOTES ")
    assert {a.package_name for a in found} == {"com.example.notes", "org.other"}


def test_sort_orders():
    apps = [
        _app("com.b.zeta", install_time=datetime(2024, 1, 1), update_time=datetime(2024, 5, 1)),
        _app("com.a.alpha", install_time=datetime(2024, 3, 1)),
        _app("com.c.beta"),
    ]
    assert [a.effective_display_name for a in filter_apps(apps, sort_order=AppSortOrder.NAME)] == [
        "alpha", "beta", "zeta",
    ]
    assert [a.package_name for a in filter_apps(apps, sort_order=AppSortOrder.PACKAGE_NAME)] == [
        "com.a.alpha", "com.b.zeta", "com.c.beta",
    ]
    # Newest first, unknown dates last
    assert [a.package_name for a in filter_apps(apps, sort_order=AppSortOrder.INSTALL_TIME)] == [
        "com.a.alpha", "com.b.zeta", "com.c.beta",
    ]
    assert filter_apps(apps, sort_order=AppSortOrder.UPDATE_TIME)[0].package_name == "com.b.zeta"


def test_app_count_text():
    assert app_count_text(4, 4) == "4 apps"
    assert app_count_text(2, 4) == "2 of 4 apps"


@pytest.mark.asyncio
async def test_load_details_fills_entry_once(bridge, catalog):
    bridge.get_package_info.return_value = _app(
        "com.example.notes", version_name="2.1", version_code=21, is_enabled=False,
        install_time=datetime(2024, 2, 2),
    )
    app = await catalog.load_details("com.example.notes")
    assert app.version_name == "2.1"
    assert app.version_code == 21
    assert not app.is_enabled
    # System flag comes from the listing, not the details
    assert not app.is_system_app

    await catalog.load_details("com.example.notes")
    bridge.get_package_info.assert_awaited_once_with("com.example.notes", SERIAL)


@pytest.mark.asyncio
async def test_load_details_failure_keeps_sparse_entry(bridge, catalog):
    bridge.get_package_info.side_effect = ADBError("dumpsys failed")
    app = await catalog.load_details("com.example.game")
    assert app is not None
    assert app.version_name is None

    # Not marked loaded, so a later attempt retries
    bridge.get_package_info.side_effect = None
    bridge.get_package_info.return_value = _app("com.example.game", version_name="1.0")
    assert (await catalog.load_details("com.example.game")).version_name == "1.0"


@pytest.mark.asyncio
async def test_load_all_details(bridge, catalog):
    async def info(package_name, device_id):
        return _app(package_name, version_name="9")

    bridge.get_package_info.side_effect = info
    await catalog.load_all_details()
    assert all(a.version_name == "9" for a in catalog.apps)


@pytest.mark.asyncio
async def test_uninstall_removes_from_list(bridge, catalog):
    message = await catalog.perform_action(AppAction.UNINSTALL_KEEP_DATA, "com.example.game")
    assert message == "Uninstalled game (data kept)"
    bridge.uninstall_app.assert_awaited_once_with("com.example.game", SERIAL, keep_data=True)
    assert catalog.get("com.example.game") is None


@pytest.mark.asyncio
async def test_disable_and_enable_update_flag(bridge, catalog):
    assert await catalog.perform_action(AppAction.DISABLE, "com.example.notes") == "Disabled notes"
    assert not catalog.get("com.example.notes").is_enabled
    assert {a.package_name for a in catalog.filtered(AppFilter.DISABLED)} == {"com.android.chrome", "com.example.notes"}

    await catalog.perform_action(AppAction.ENABLE, "com.example.notes")
    assert catalog.get("com.example.notes").is_enabled


@pytest.mark.asyncio
@pytest.mark.parametrize("action,method,message", [
    (AppAction.LAUNCH, "launch_app", "Launched notes"),
    (AppAction.FORCE_STOP, "force_stop_app", "Stopped notes"),
    (AppAction.OPEN_SETTINGS, "open_app_settings", "Opened settings for notes"),
])
async def test_simple_actions(bridge, catalog, action, method, message):
    assert await catalog.perform_action(action, "com.example.notes") == message
    getattr(bridge, method).assert_awaited_once_with("com.example.notes", SERIAL)


@pytest.mark.asyncio
async def test_failed_action_leaves_list_untouched(bridge, catalog):
    bridge.uninstall_app.side_effect = ADBError("Cannot uninstall system app")
    with pytest.raises(ADBError):
        await catalog.perform_action(AppAction.UNINSTALL, "com.android.settings")
    assert catalog.get("com.android.settings") is not None
