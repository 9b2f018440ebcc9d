import json
import os
import threading
from pathlib import Path

import structlog

from limitwatch.models import UsageData

logger = structlog.get_logger()

CACHE_FILE_NAME = "usage_cache.json"


class CacheManager:
    """
    CacheManager keeps the last known UsageData per provider so
    the UI has something to show offline and across restarts.

    The whole snapshot is rewritten on every save, through a temp
    file renamed into place. One lock guards both the in-memory
    map and the serialization.
    """

    def __init__(self, storage_dir: "Path | str") -> "None":
        self._path: "Path" = Path(storage_dir) / CACHE_FILE_NAME
        self._lock: "threading.Lock" = threading.Lock()
        self._providers: "dict[str, UsageData]" = self._load(self._path)

    @property
    def path(self) -> "Path":
        return self._path

    @staticmethod
    def _load(path: "Path") -> "dict[str, UsageData]":
        """
        reads a previous snapshot. Anything missing or unreadable
        starts an empty cache.
        """
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return {
                str(provider_id): UsageData.from_dict(data)
                for provider_id, data in raw["providers"].items()
            }
        except FileNotFoundError:
            return {}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("usage_cache_unreadable", path=str(path), error=str(e))
            return {}

    def get(self, provider_id: "str") -> "UsageData | None":
        with self._lock:
            return self._providers.get(provider_id)

    def set(self, provider_id: "str", usage: "UsageData") -> "None":
        with self._lock:
            self._providers[provider_id] = usage

    def get_all(self) -> "dict[str, UsageData]":
        with self._lock:
            return dict(self._providers)

    def clear(self, provider_id: "str") -> "None":
        with self._lock:
            self._providers.pop(provider_id, None)

    def clear_all(self) -> "None":
        with self._lock:
            self._providers.clear()

    def _dump(self) -> "str":
        # caller holds the lock
        payload = {
            "providers": {
                provider_id: usage.to_dict()
                for provider_id, usage in self._providers.items()
            }
        }
        return json.dumps(payload, indent=2)

    def to_json(self) -> "str":
        with self._lock:
            return self._dump()

    def save(self) -> "None":
        """
        writes the snapshot to disk. Raises OSError; callers log it.
        """
        with self._lock:
            body = self._dump()
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_name(self._path.name + ".tmp")
            tmp_path.write_text(body, encoding="utf-8")
            os.replace(tmp_path, self._path)
