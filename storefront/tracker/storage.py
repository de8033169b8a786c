# storefront/tracker/storage.py
from typing import Dict, Optional, Protocol


class KeyValueStorage(Protocol):
    """The part of the Web Storage API the tracker uses."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...


class MemoryStorage:
    """In-memory storage. One instance per tab for session storage, one per browser for local storage."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value
