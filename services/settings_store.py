"""
ADB Hub - Settings Store

User settings persisted as JSON, with change notification.
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable, List, Optional

from pydantic import BaseModel, ValidationError, field_validator

logger = logging.getLogger(__name__)

MIN_REFRESH_INTERVAL = 0.5
MAX_REFRESH_INTERVAL = 60.0


class AppSettings(BaseModel):
    """User-tunable settings"""
    refresh_interval: float = 3.0  # seconds between device polls
    use_custom_adb_path: bool = False
    custom_adb_path: str = ""
    default_tcpip_port: int = 5555
    auto_connect_last_devices: bool = False
    removal_grace_polls: int = 1  # consecutive missed polls before a device is dropped
    pair_connect_delay: float = 0.5  # seconds to wait after pairing before connecting

    @field_validator("refresh_interval")
    @classmethod
    def clamp_refresh_interval(cls, value: float) -> float:
        return min(max(value, MIN_REFRESH_INTERVAL), MAX_REFRESH_INTERVAL)

    @field_validator("default_tcpip_port")
    @classmethod
    def check_port(cls, value: int) -> int:
        if not 1 <= value <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return value

    @field_validator("removal_grace_polls")
    @classmethod
    def check_grace(cls, value: int) -> int:
        return max(value, 1)

    @field_validator("pair_connect_delay")
    @classmethod
    def check_delay(cls, value: float) -> float:
        return max(value, 0.0)

    @property
    def effective_adb_path(self) -> Optional[str]:
        """Custom adb path, only when enabled and non-empty"""
        if self.use_custom_adb_path and self.custom_adb_path.strip():
            return self.custom_adb_path.strip()
        return None


SettingsCallback = Callable[[AppSettings], None]


class SettingsStore:
    """Loads, updates and saves AppSettings"""

    def __init__(self, storage_dir: str = "data"):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.settings_file = self.storage_dir / "settings.json"

        self._settings = self._load()
        self._callbacks: List[SettingsCallback] = []
        logger.info(f"[SettingsStore] Initialized with storage: {self.settings_file}")

    @property
    def settings(self) -> AppSettings:
        return self._settings

    def _load(self) -> AppSettings:
        if not self.settings_file.exists():
            return AppSettings()

        try:
            with open(self.settings_file, 'r') as f:
                return AppSettings(**json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"[SettingsStore] Failed to load settings, using defaults: {e}")
            return AppSettings()

    def _save(self):
        try:
            with open(self.settings_file, 'w') as f:
                json.dump(self._settings.model_dump(), f, indent=2)
        except OSError as e:
            logger.error(f"[SettingsStore] Failed to save settings: {e}")

    def update(self, **changes: Any) -> AppSettings:
        """
        Apply field changes, persist and notify subscribers.

        Raises:
            ValueError: unknown field or invalid value
        """
        unknown = set(changes) - set(AppSettings.model_fields)
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        merged = {**self._settings.model_dump(), **changes}
        try:
            new_settings = AppSettings(**merged)
        except ValidationError as e:
            raise ValueError(str(e)) from e

        self._settings = new_settings
        self._save()
        logger.info(f"[SettingsStore] Updated: {', '.join(sorted(changes))}")

        for callback in list(self._callbacks):
            try:
                callback(new_settings)
            except Exception as e:
                logger.error(f"[SettingsStore] Settings callback failed: {e}")
        return new_settings

    def subscribe(self, callback: SettingsCallback):
        self._callbacks.append(callback)

    def unsubscribe(self, callback: SettingsCallback):
        if callback in self._callbacks:
            self._callbacks.remove(callback)
