"""
ADB Hub - Device History Store

Remembers devices across sessions, keyed by persistent id:
custom name, model and the last network address a device was reached at.
Persisted as a single JSON file.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class DeviceHistoryEntry(BaseModel):
    """What we remember about one device"""
    persistent_id: str
    custom_name: Optional[str] = None
    model: Optional[str] = None
    last_known_ip: Optional[str] = None
    last_known_port: Optional[int] = None
    last_connected: Optional[datetime] = None

    @property
    def last_known_address(self) -> Optional[str]:
        if self.last_known_ip and self.last_known_port:
            return f"{self.last_known_ip}:{self.last_known_port}"
        return None


class HistoryStore:
    """
    JSON-backed device history.

    All reads come from the in-memory copy; every mutation rewrites the file.
    """

    def __init__(self, storage_dir: str = "data"):
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.history_file = self.storage_dir / "device_history.json"

        self._entries: Dict[str, DeviceHistoryEntry] = self._load()
        logger.info(f"[HistoryStore] Loaded {len(self._entries)} devices from {self.history_file}")

    def _load(self) -> Dict[str, DeviceHistoryEntry]:
        if not self.history_file.exists():
            return {}

        try:
            with open(self.history_file, 'r') as f:
                data = json.load(f)
            entries = [DeviceHistoryEntry(**item) for item in data.get("devices", [])]
            return {entry.persistent_id: entry for entry in entries}
        except Exception as e:
            logger.error(f"[HistoryStore] Failed to load history, starting empty: {e}")
            return {}

    def _save(self):
        try:
            data = {"devices": [entry.model_dump(mode="json") for entry in self._entries.values()]}
            with open(self.history_file, 'w') as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.error(f"[HistoryStore] Failed to save history: {e}")

    # =========================================================================
    # Queries
    # =========================================================================

    def all_history(self) -> List[DeviceHistoryEntry]:
        return sorted(
            self._entries.values(),
            key=lambda e: e.last_connected or datetime.min,
            reverse=True,
        )

    def get(self, persistent_id: str) -> Optional[DeviceHistoryEntry]:
        return self._entries.get(persistent_id)

    def get_custom_name(self, persistent_id: str) -> Optional[str]:
        entry = self._entries.get(persistent_id)
        return entry.custom_name if entry else None

    def has_address(self, ip_address: str) -> bool:
        """True if any remembered device was last reached at this IP"""
        return any(entry.last_known_ip == ip_address for entry in self._entries.values())

    # =========================================================================
    # Mutations
    # =========================================================================

    def set_custom_name(self, persistent_id: str, name: Optional[str]):
        """Set (or with an empty name, clear) the label for a device"""
        entry = self._entries.get(persistent_id) or DeviceHistoryEntry(persistent_id=persistent_id)
        name = (name or "").strip()
        entry.custom_name = name or None
        self._entries[persistent_id] = entry
        self._save()
        logger.info(f"[HistoryStore] Custom name for {persistent_id}: {entry.custom_name!r}")

    def record_connection(
        self,
        persistent_id: str,
        model: Optional[str] = None,
        ip_address: Optional[str] = None,
        port: Optional[int] = None,
    ):
        """Remember that a device was seen; network address only when known"""
        entry = self._entries.get(persistent_id) or DeviceHistoryEntry(persistent_id=persistent_id)
        if model:
            entry.model = model
        if ip_address:
            entry.last_known_ip = ip_address
            entry.last_known_port = port
        entry.last_connected = datetime.now()
        self._entries[persistent_id] = entry
        self._save()

    def remove(self, persistent_id: str) -> bool:
        if self._entries.pop(persistent_id, None) is None:
            return False
        self._save()
        logger.info(f"[HistoryStore] Forgot device {persistent_id}")
        return True
