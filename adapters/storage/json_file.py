"""
JSON file notification store.

The whole queue is small (a handful of contacts per emergency), so every
write rewrites one JSON document. Writes go to a temporary file that is
atomically renamed over the old one, so a crash mid-write leaves the
previous state intact.
"""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from pulseguard.domain.errors import StoreError
from pulseguard.domain.models import QueuedNotification

logger = structlog.get_logger(__name__)


class JsonFileNotificationStore:
    """Durable store keyed by notification id, backed by a single JSON file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.logger = logger.bind(component="json_notification_store", path=str(self.path))
        self._records: dict[str, dict[str, Any]] | None = None
        self._lock = asyncio.Lock()

    async def save(self, notification: QueuedNotification) -> None:
        async with self._lock:
            records = dict(await self._load_records())
            records[notification.id] = notification.model_dump(mode="json")
            await self._write(records)
            self._records = records

    async def load_all(self) -> list[QueuedNotification]:
        async with self._lock:
            records = await self._load_records()
            notifications = []
            for notification_id, raw in list(records.items()):
                try:
                    notifications.append(QueuedNotification.model_validate(raw))
                except ValidationError as e:
                    # Unreadable records would otherwise block every restart
                    self.logger.error(
                        "corrupt_notification_skipped",
                        notification_id=notification_id,
                        error=str(e),
                    )
            return notifications

    async def delete(self, notification_id: str) -> None:
        async with self._lock:
            records = dict(await self._load_records())
            if records.pop(notification_id, None) is not None:
                await self._write(records)
                self._records = records

    async def _load_records(self) -> dict[str, dict[str, Any]]:
        if self._records is None:
            self._records = await asyncio.to_thread(self._read_file)
            self.logger.info("notification_store_loaded", count=len(self._records))
        return self._records

    def _read_file(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Cannot read notification store {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Notification store {self.path} must contain a JSON object")
        return data

    async def _write(self, records: dict[str, dict[str, Any]]) -> None:
        try:
            await asyncio.to_thread(self._write_file, json.dumps(records, indent=2))
        except OSError as e:
            raise StoreError(f"Cannot write notification store {self.path}: {e}") from e

    def _write_file(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".queue-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
