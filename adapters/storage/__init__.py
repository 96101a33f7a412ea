from .json_file import JsonFileNotificationStore
from .memory import InMemoryNotificationStore

__all__ = ["InMemoryNotificationStore", "JsonFileNotificationStore"]
