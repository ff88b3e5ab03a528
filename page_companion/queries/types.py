"""Dataclasses shared across the scoped query feature."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urlsplit

from .results import SearchResultLog

_SCOPE_TAG = re.compile(r"^\[(ALL|DOMAIN|PAGE)\]\s*(.+)\Z", re.IGNORECASE)
_BRACKET_PREFIX = re.compile(r"^\[([^\]\s]*)\]")
_TAG_NAMES = {"ALL", "DOMAIN", "PAGE"}

# Second-level labels under which registrations happen one level deeper.
_SECOND_LEVEL_SUFFIXES = {"co", "com", "net", "org", "gov", "edu", "ac", "ne", "or"}


class Scope(str, Enum):
    PAGE = "page"
    DOMAIN = "domain"
    ALL = "all"


class SessionState(str, Enum):
    IDLE = "idle"
    SUMMARIZING = "summarizing"
    ASKING = "asking"
    SEARCHING = "searching"


class ScopeParseError(ValueError):
    """Raised when a bracketed scope tag cannot be decoded."""


@dataclass(frozen=True)
class ScopeRequest:
    """A query together with the scope it should be grounded in."""

    scope: Scope
    raw_query: str

    @classmethod
    def decode_tag(cls, text: str) -> "ScopeRequest":
        match = _SCOPE_TAG.match(text)
        if match:
            return cls(scope=Scope(match.group(1).lower()), raw_query=match.group(2).strip())
        bracket = _BRACKET_PREFIX.match(text)
        if bracket and bracket.group(1).upper() in _TAG_NAMES:
            raise ScopeParseError(f"Scope tag '[{bracket.group(1)}]' needs a single-line query after it")
        if bracket:
            raise ScopeParseError(f"Unrecognised scope tag '[{bracket.group(1)}]'")
        raise ScopeParseError("Query does not start with a scope tag")


@dataclass(frozen=True)
class ProviderConfig:
    """Static connection settings for one AI backend."""

    id: str
    api_key: Optional[str]
    endpoint: str
    model_name: str
    kind: str = "chat"
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    system_prompt: Optional[str] = None

    def sampling(self) -> dict:
        params = {}
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.top_p is not None:
            params["top_p"] = self.top_p
        if self.max_tokens is not None:
            params["max_tokens"] = self.max_tokens
        return params


@dataclass(frozen=True)
class TabSnapshot:
    id: int
    url: str

    @property
    def domain(self) -> str:
        return registrable_domain(self.url)


@dataclass(frozen=True)
class ContextBlock:
    """Bounded grounding text assembled for a single query."""

    scope: Scope
    text: str
    truncated: bool = False
    sources: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Session:
    """Tab-isolated state; replaced wholesale on every mutation."""

    tab_id: int
    current_model_id: str
    summary: Optional[str] = None
    answer: Optional[str] = None
    search_results: SearchResultLog = field(default_factory=SearchResultLog)
    dark_mode: bool = False
    is_summarized: bool = False

    def to_record(self) -> dict:
        record: dict = {
            "searchResults": self.search_results.to_records(),
            "darkMode": self.dark_mode,
            "currentModel": self.current_model_id,
        }
        if self.summary is not None:
            record["summary"] = self.summary
        if self.answer is not None:
            record["answer"] = self.answer
        return record

    @classmethod
    def from_record(cls, tab_id: int, record: dict, default_model: str) -> "Session":
        summary = record.get("summary")
        answer = record.get("answer")
        model = record.get("currentModel")
        return cls(
            tab_id=tab_id,
            current_model_id=model if isinstance(model, str) and model else default_model,
            summary=summary if isinstance(summary, str) and summary else None,
            answer=answer if isinstance(answer, str) and answer else None,
            search_results=SearchResultLog.from_records(record.get("searchResults") or []),
            dark_mode=bool(record.get("darkMode", False)),
        )


def registrable_domain(url: str) -> str:
    """Approximate the registrable domain (``news.bbc.co.uk`` -> ``bbc.co.uk``)."""
    host = (urlsplit(url).hostname or "").lower().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    labels = [label for label in host.split(".") if label]
    if len(labels) <= 2 or all(label.isdigit() for label in labels):
        return ".".join(labels)
    if labels[-2] in _SECOND_LEVEL_SUFFIXES and len(labels[-1]) == 2:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])
