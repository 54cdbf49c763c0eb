"""
ADB Hub - ADB Executable Locator

Resolves the path of the adb executable:
user override > cached auto-detected path > probe of known install
locations > PATH lookup.

The cached path is process-wide state with explicit invalidation; a user
override always takes precedence and never touches the cache.
"""

import logging
import os
import shutil
from typing import Callable, List, Optional

from utils.error_handler import ADBNotFoundError

logger = logging.getLogger(__name__)

ADB_EXECUTABLE = "adb"

KNOWN_ADB_LOCATIONS = [
    "/usr/local/bin/adb",
    "/opt/homebrew/bin/adb",
    "~/Library/Android/sdk/platform-tools/adb",
    "~/Android/Sdk/platform-tools/adb",
]


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


class AdbLocator:
    """Finds and caches the adb executable path"""

    def __init__(
        self,
        override_provider: Optional[Callable[[], Optional[str]]] = None,
        known_locations: Optional[List[str]] = None,
    ):
        self._override_provider = override_provider
        self._override: Optional[str] = None
        self._cached_path: Optional[str] = None
        self._known_locations = known_locations if known_locations is not None else KNOWN_ADB_LOCATIONS

    @property
    def cached_path(self) -> Optional[str]:
        return self._cached_path

    def set_override_provider(self, provider: Optional[Callable[[], Optional[str]]]):
        """Read the override lazily (e.g. from settings) on every resolve"""
        self._override_provider = provider

    def set_override(self, path: Optional[str]):
        """Explicit override; empty/None clears it"""
        self._override = path or None
        logger.info(f"[AdbLocator] Override set to {self._override!r}")

    def invalidate(self):
        """Forget the auto-detected path; the next resolve() probes again"""
        if self._cached_path:
            logger.info(f"[AdbLocator] Invalidating cached adb path {self._cached_path}")
        self._cached_path = None

    def _current_override(self) -> Optional[str]:
        if self._override:
            return self._override
        if self._override_provider is not None:
            return self._override_provider() or None
        return None

    def probe(self) -> Optional[str]:
        """Search known install locations, then PATH. Does not touch the cache."""
        for location in self._known_locations:
            candidate = os.path.expanduser(location)
            if _is_executable(candidate):
                return candidate
        return shutil.which(ADB_EXECUTABLE)

    def resolve(self) -> str:
        """
        Path to use for the next adb invocation.

        Raises:
            ADBNotFoundError: no override and nothing found on disk
        """
        override = self._current_override()
        if override:
            return override

        if self._cached_path:
            return self._cached_path

        path = self.probe()
        if path is None:
            raise ADBNotFoundError()

        logger.info(f"[AdbLocator] Found adb at {path}")
        self._cached_path = path
        return path


# Process-wide locator instance
_locator: Optional[AdbLocator] = None


def get_adb_locator() -> AdbLocator:
    """Get the process-wide locator instance"""
    global _locator
    if _locator is None:
        _locator = AdbLocator()
    return _locator
