"""In-memory notification store for development and tests."""

from pulseguard.domain.models import QueuedNotification


class InMemoryNotificationStore:
    """
    Keeps serialized snapshots, not live objects.

    Callers get fresh copies from load_all(), the same way they would after
    a restart against a real store.
    """

    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def save(self, notification: QueuedNotification) -> None:
        self._records[notification.id] = notification.model_dump_json()

    async def load_all(self) -> list[QueuedNotification]:
        return [QueuedNotification.model_validate_json(raw) for raw in self._records.values()]

    async def delete(self, notification_id: str) -> None:
        self._records.pop(notification_id, None)
