"""Key-value persistence for per-tab session records."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from .types import Session

logger = logging.getLogger(__name__)

_TAB_KEY_PREFIX = "tab_"


class StorageError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


class KeyValueStore(Protocol):
    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        ...

    def set(self, record: Mapping[str, Any]) -> None:
        ...

    def remove(self, keys: Iterable[str]) -> None:
        ...

    def keys(self) -> List[str]:
        ...


class MemoryStore:
    """Process-local store, handy for tests and throwaway sessions."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = json.loads(json.dumps(dict(initial or {})))

    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {key: json.loads(json.dumps(self._data[key])) for key in keys if key in self._data}

    def set(self, record: Mapping[str, Any]) -> None:
        for key, value in record.items():
            self._data[key] = json.loads(json.dumps(value))

    def remove(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileStore:
    """A single JSON document on disk, rewritten atomically on each change."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def get(self, keys: Iterable[str]) -> Dict[str, Any]:
        with self._lock:
            data = self._read()
        return {key: data[key] for key in keys if key in data}

    def set(self, record: Mapping[str, Any]) -> None:
        with self._lock:
            data = self._read()
            data.update(record)
            self._write(data)

    def remove(self, keys: Iterable[str]) -> None:
        with self._lock:
            data = self._read()
            removed = [key for key in keys if data.pop(key, None) is not None]
            if removed:
                self._write(data)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._read().keys())

    def _read(self) -> Dict[str, Any]:
        if not self.path.is_file():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise StorageError(f"Could not read {self.path}: {exc}") from exc
        except ValueError as exc:
            raise StorageError(f"{self.path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise StorageError(f"{self.path} does not contain a JSON object")
        return payload

    def _write(self, data: Mapping[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(data, handle, ensure_ascii=False, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageError(f"Could not write {self.path}: {exc}") from exc


def storage_key(tab_id: int) -> str:
    return f"{_TAB_KEY_PREFIX}{tab_id}"


class SessionStore:
    """Loads and saves whole session records under ``tab_{id}`` keys."""

    def __init__(self, store: KeyValueStore, default_model: str) -> None:
        self._store = store
        self.default_model = default_model

    def load(self, tab_id: int) -> Optional[Session]:
        key = storage_key(tab_id)
        record = self._store.get([key]).get(key)
        if record is None:
            return None
        if not isinstance(record, Mapping):
            raise StorageError(f"Record {key} is not an object")
        return Session.from_record(tab_id, dict(record), self.default_model)

    def save(self, tab_id: int, session: Session) -> None:
        self._store.set({storage_key(tab_id): session.to_record()})

    def delete(self, tab_id: int) -> None:
        self._store.remove([storage_key(tab_id)])

    def tab_ids(self) -> List[int]:
        ids = []
        for key in self._store.keys():
            if key.startswith(_TAB_KEY_PREFIX) and key[len(_TAB_KEY_PREFIX):].isdigit():
                ids.append(int(key[len(_TAB_KEY_PREFIX):]))
        return sorted(ids)

    def prune(self, live_tab_ids: Iterable[int]) -> List[int]:
        """Drop records whose tab is no longer open; return the evicted ids."""
        live = set(live_tab_ids)
        stale = [tab_id for tab_id in self.tab_ids() if tab_id not in live]
        if stale:
            self._store.remove([storage_key(tab_id) for tab_id in stale])
            logger.info("Pruned %d stale session record(s)", len(stale))
        return stale
