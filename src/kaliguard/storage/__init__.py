"""KaliGuard storage: debounced JSON files and execution history."""

from kaliguard.storage.history import HistoryStore
from kaliguard.storage.persistence import DebouncedJsonFile

__all__ = ["DebouncedJsonFile", "HistoryStore"]
