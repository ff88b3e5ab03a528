"""Shared exports for the scoped query feature."""
from __future__ import annotations

from .context import DEFAULT_CONTEXT_BUDGET, ContextError, ContextResolver
from .prompts import PromptDocument, PromptLoader, PromptValidationError
from .providers import (
    AuthenticationError,
    MalformedResponseError,
    ProviderClient,
    ProviderError,
    ProviderLookup,
    ProviderRegistry,
    RateLimitError,
    TransientError,
    UnknownProvider,
)
from .results import ResultIdGenerator, SearchResult, SearchResultLog
from .service import (
    OrchestratorError,
    QueryOrchestrator,
    SessionBusyError,
    SessionClosedError,
    ValidationError,
    SUGGESTED_SEARCHES,
    parse_scope_tag,
)
from .storage import JsonFileStore, MemoryStore, SessionStore, StorageError
from .types import (
    ContextBlock,
    ProviderConfig,
    Scope,
    ScopeParseError,
    ScopeRequest,
    Session,
    SessionState,
    TabSnapshot,
)


__all__ = [
    "Scope",
    "ScopeRequest",
    "ScopeParseError",
    "Session",
    "SessionState",
    "TabSnapshot",
    "ContextBlock",
    "ProviderConfig",
    "SearchResult",
    "SearchResultLog",
    "ResultIdGenerator",
    "ContextResolver",
    "ContextError",
    "DEFAULT_CONTEXT_BUDGET",
    "PromptLoader",
    "PromptDocument",
    "PromptValidationError",
    "ProviderRegistry",
    "ProviderClient",
    "ProviderLookup",
    "ProviderError",
    "AuthenticationError",
    "RateLimitError",
    "TransientError",
    "MalformedResponseError",
    "UnknownProvider",
    "SessionStore",
    "JsonFileStore",
    "MemoryStore",
    "StorageError",
    "QueryOrchestrator",
    "OrchestratorError",
    "ValidationError",
    "SessionBusyError",
    "SessionClosedError",
    "parse_scope_tag",
    "SUGGESTED_SEARCHES",
]
