"""
Services Package

Collaborators of the device manager: identity, history, settings, the
installed-apps catalog and APK install jobs.
"""
from .app_catalog import AppCatalog
from .device_identity import DeviceIdentifier
from .history_store import HistoryStore, DeviceHistoryEntry
from .install_jobs import InstallJobManager, InstallJob, InstallStatus
from .settings_store import SettingsStore, AppSettings

__all__ = [
    'AppCatalog',
    'DeviceIdentifier',
    'HistoryStore',
    'DeviceHistoryEntry',
    'InstallJobManager',
    'InstallJob',
    'InstallStatus',
    'SettingsStore',
    'AppSettings',
]
