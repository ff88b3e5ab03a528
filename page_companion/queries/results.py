"""Append-only log of search results kept inside a session."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class SearchResult:
    id: str
    content: str
    timestamp: int

    def to_record(self) -> dict:
        return {"id": self.id, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Optional["SearchResult"]:
        content = record.get("content")
        if not isinstance(content, str):
            return None
        try:
            timestamp = int(record.get("timestamp", 0))
        except (TypeError, ValueError):
            timestamp = 0
        return cls(id=str(record.get("id", timestamp)), content=content, timestamp=timestamp)


class SearchResultLog:
    """Immutable, insertion-ordered collection of :class:`SearchResult`."""

    __slots__ = ("_items",)

    def __init__(self, items: Iterable[SearchResult] = ()) -> None:
        self._items: Tuple[SearchResult, ...] = tuple(items)

    def append(self, result: SearchResult) -> "SearchResultLog":
        return SearchResultLog(self._items + (result,))

    def __iter__(self) -> Iterator[SearchResult]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> SearchResult:
        return self._items[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SearchResultLog):
            return NotImplemented
        return self._items == other._items

    def __hash__(self) -> int:
        return hash(self._items)

    def __repr__(self) -> str:
        return f"SearchResultLog({list(self._items)!r})"

    @property
    def last(self) -> Optional[SearchResult]:
        return self._items[-1] if self._items else None

    def to_records(self) -> List[dict]:
        return [item.to_record() for item in self._items]

    @classmethod
    def from_records(cls, records: Iterable[Any]) -> "SearchResultLog":
        items = []
        for record in records:
            if isinstance(record, Mapping):
                item = SearchResult.from_record(record)
                if item is not None:
                    items.append(item)
        return cls(items)


class ResultIdGenerator:
    """Hands out millisecond ids that never repeat.

    When two ids are requested within the same millisecond the second one is
    bumped past the first, so ids stay strictly increasing.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None) -> None:
        self._clock = clock or (lambda: time.time_ns() // 1_000_000)
        self._last = 0
        self._lock = threading.Lock()

    def observe(self, log: SearchResultLog) -> None:
        """Seed the generator so it never reissues ids already in ``log``."""
        for item in log:
            try:
                value = int(item.id)
            except ValueError:
                continue
            with self._lock:
                self._last = max(self._last, value)

    def next(self) -> Tuple[str, int]:
        """Return ``(id, timestamp_ms)`` for a new result."""
        now = int(self._clock())
        with self._lock:
            value = max(now, self._last + 1)
            self._last = value
        return str(value), now

    def new_result(self, content: str) -> SearchResult:
        result_id, timestamp = self.next()
        return SearchResult(id=result_id, content=content, timestamp=timestamp)
