"""
Key/value persistence for keywords, products and the in-flight scrape.
"""
import copy
import json
import logging
import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

KEYWORDS = "keywords"
PRODUCTS = "products"
SCRAPING_STATE = "scrapingState"


class KeyValueStore(Protocol):
    def get(self, keys: str | Iterable[str]) -> dict[str, Any]:
        """Returns the stored values for ``keys``; missing keys are omitted."""
        ...

    def set(self, items: Mapping[str, Any]) -> None:
        ...

    def remove(self, keys: str | Iterable[str]) -> None:
        ...


def _key_list(keys: str | Iterable[str]) -> list[str]:
    return [keys] if isinstance(keys, str) else list(keys)


class MemoryStore:
    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._data: dict[str, Any] = copy.deepcopy(dict(initial or {}))

    def get(self, keys: str | Iterable[str]) -> dict[str, Any]:
        return {k: copy.deepcopy(self._data[k]) for k in _key_list(keys) if k in self._data}

    def set(self, items: Mapping[str, Any]) -> None:
        self._data.update(copy.deepcopy(dict(items)))

    def remove(self, keys: str | Iterable[str]) -> None:
        for key in _key_list(keys):
            self._data.pop(key, None)


class JsonFileStore(MemoryStore):
    """
    MemoryStore persisted to a single JSON document.

    Every write replaces the file atomically. A missing file starts empty; a
    corrupt one is logged and also starts empty.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read store {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Store {self.path} does not hold a JSON object; ignoring it")
            return {}
        return data

    def set(self, items: Mapping[str, Any]) -> None:
        super().set(items)
        self._flush()

    def remove(self, keys: str | Iterable[str]) -> None:
        super().remove(keys)
        self._flush()

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._data, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)
