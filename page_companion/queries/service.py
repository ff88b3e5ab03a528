"""Scoped query orchestration over per-tab sessions."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import AsyncIterator, Callable, Dict, Mapping, Optional, Protocol, Tuple, Union

from .context import ContextError, ContextResolver
from .prompts import PromptLoader
from .providers import ProviderClient, ProviderError, ProviderRegistry
from .results import ResultIdGenerator, SearchResult
from .storage import SessionStore, StorageError
from .types import Scope, ScopeParseError, ScopeRequest, Session, SessionState, TabSnapshot

_module_logger = logging.getLogger(__name__)

SUMMARY_PROMPT = "summarize"
ASK_PROMPT = "ask"
EXPLAIN_PROMPT = "explain"

# Offered once a page has been summarized; each runs as a page-scoped search.
SUGGESTED_SEARCHES = (
    "Explain the main concepts",
    "Find key takeaways",
    "Summarize in bullet points",
)


class OrchestratorError(RuntimeError):
    """Base error for operations rejected by the orchestrator."""


class ValidationError(OrchestratorError):
    """Raised for queries that are empty after trimming."""


class SessionBusyError(OrchestratorError):
    """Raised when a session already has an AI call in flight."""


class SessionClosedError(OrchestratorError):
    """Raised when a session was discarded while its call was in flight."""


class TabLookup(Protocol):
    def get_tab(self, tab_id: int) -> TabSnapshot:
        ...


def parse_scope_tag(text: str, default: Union[Scope, str] = Scope.PAGE) -> ScopeRequest:
    """Split ``[SCOPE] query`` into its parts.

    Text without a well-formed tag keeps ``default`` and is returned unmodified.
    """
    try:
        return ScopeRequest.decode_tag(text)
    except ScopeParseError as exc:
        _module_logger.debug("Scope tag not applied: %s", exc)
        return ScopeRequest(scope=Scope(default), raw_query=text)


@dataclass
class _SessionSlot:
    session: Session
    state: SessionState = SessionState.IDLE


class QueryOrchestrator:
    """Public facade used by the CLI and the interactive shell.

    Every AI operation runs under a per-session busy gate, so a session never
    has more than one call in flight. Results are committed only after the
    provider answers; any failure leaves the session exactly as it was.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        resolver: ContextResolver,
        store: SessionStore,
        tabs: TabLookup,
        *,
        prompt_loader: Optional[PromptLoader] = None,
        id_generator: Optional[ResultIdGenerator] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._store = store
        self._tabs = tabs
        self._prompts = prompt_loader or PromptLoader()
        self._ids = id_generator or ResultIdGenerator()
        self._logger = logger or _module_logger
        self._slots: Dict[int, _SessionSlot] = {}

    # ------------------------------
    # Session access
    # ------------------------------
    def session(self, tab_id: int) -> Session:
        return self._slot(tab_id).session

    def state(self, tab_id: int) -> SessionState:
        slot = self._slots.get(tab_id)
        return slot.state if slot else SessionState.IDLE

    def discard_session(self, tab_id: int) -> None:
        """Forget the in-memory session; late responses for it are dropped."""
        if self._slots.pop(tab_id, None) is not None:
            self._logger.info("Discarded session for tab %s", tab_id)

    @property
    def default_model_id(self) -> str:
        if self._store.default_model in self._registry:
            return self._store.default_model
        ids = self._registry.ids()
        if not ids:
            raise RuntimeError("QueryOrchestrator requires at least one registered provider")
        return ids[0]

    # ------------------------------
    # AI operations
    # ------------------------------
    async def summarize_page(self, tab_id: int) -> str:
        """Summarize the tab's visible text with the session's current model."""
        async with self._operation(tab_id, SessionState.SUMMARIZING) as slot:
            client = self._registry.resolve(slot.session.current_model_id)
            tab = self._tabs.get_tab(tab_id)
            context = await self._resolve_context(Scope.PAGE, tab, None)
            prompt = self._prompts.load(SUMMARY_PROMPT).render(url=tab.url, context=context.text)
            summary = await self._dispatch(tab_id, slot, client, prompt, "summarize")
            self._commit(tab_id, slot, lambda session: replace(session, summary=summary, is_summarized=True))
            return summary

    async def ask(
        self,
        tab_id: int,
        question: str,
        scope: Union[Scope, str] = Scope.PAGE,
        model_id: Optional[str] = None,
    ) -> str:
        """Answer ``question`` and overwrite the session's single answer slot."""
        question = (question or "").strip()
        if not question:
            raise ValidationError("Question must not be empty")

        async with self._operation(tab_id, SessionState.ASKING) as slot:
            client = self._registry.resolve(model_id or slot.session.current_model_id)
            answer = await self._grounded_answer(tab_id, slot, client, question, Scope(scope), "ask")
            self._commit(tab_id, slot, lambda session: replace(session, answer=answer))
            return answer

    async def search(
        self,
        tab_id: int,
        query: str,
        scope: Union[Scope, str] = Scope.PAGE,
        model_id: Optional[str] = None,
    ) -> SearchResult:
        """Answer ``query`` and append the reply to the session's search log.

        A leading ``[ALL]``, ``[DOMAIN]`` or ``[PAGE]`` tag overrides ``scope``.
        """
        request = parse_scope_tag(query or "", default=scope)
        text = request.raw_query
        if not text.strip():
            raise ValidationError("Search query must not be empty")

        async with self._operation(tab_id, SessionState.SEARCHING) as slot:
            client = self._registry.resolve(model_id or slot.session.current_model_id)
            content = await self._grounded_answer(tab_id, slot, client, text, request.scope, "search")
            return self._append_result(tab_id, slot, content)

    def suggestions(self, tab_id: int) -> Tuple[str, ...]:
        """Follow-up searches on offer; empty until the page has been summarized."""
        return SUGGESTED_SEARCHES if self.session(tab_id).is_summarized else ()

    async def run_suggestion(self, tab_id: int, number: int, model_id: Optional[str] = None) -> SearchResult:
        """Run suggestion ``number`` (counting from 1) as a ``[PAGE]`` search."""
        offered = self.suggestions(tab_id)
        if not offered:
            raise ValidationError("Suggestions are available once the page is summarized")
        if not 1 <= number <= len(offered):
            raise ValidationError(f"Suggestion must be between 1 and {len(offered)}")
        return await self.search(tab_id, f"[PAGE] {offered[number - 1]}", model_id=model_id)

    async def explain_selection(
        self,
        tab_id: int,
        selection: str,
        model_id: Optional[str] = None,
    ) -> SearchResult:
        """Ask for a detailed write-up of ``selection`` and append it to the search log.

        The selected text is sent on its own, without page context.
        """
        text = (selection or "").strip()
        if not text:
            raise ValidationError("Selected text must not be empty")

        async with self._operation(tab_id, SessionState.SEARCHING) as slot:
            client = self._registry.resolve(model_id or slot.session.current_model_id)
            prompt = self._prompts.load(EXPLAIN_PROMPT).render(selection=text)
            content = await self._dispatch(tab_id, slot, client, prompt, "explain")
            return self._append_result(tab_id, slot, content)

    # ------------------------------
    # Preferences
    # ------------------------------
    def select_model(self, tab_id: int, model_id: str) -> Session:
        lookup = self._registry.lookup(model_id)
        if not lookup.ok:
            raise lookup.error
        slot = self._slot(tab_id)
        return self._commit(tab_id, slot, lambda session: replace(session, current_model_id=model_id))

    def set_dark_mode(self, tab_id: int, enabled: bool) -> Session:
        slot = self._slot(tab_id)
        return self._commit(tab_id, slot, lambda session: replace(session, dark_mode=bool(enabled)))

    def toggle_dark_mode(self, tab_id: int) -> Session:
        return self.set_dark_mode(tab_id, not self.session(tab_id).dark_mode)

    # ------------------------------
    # Internals
    # ------------------------------
    def _slot(self, tab_id: int) -> _SessionSlot:
        slot = self._slots.get(tab_id)
        if slot is None:
            slot = _SessionSlot(session=self._load(tab_id))
            self._slots[tab_id] = slot
        return slot

    def _load(self, tab_id: int) -> Session:
        try:
            loaded = self._store.load(tab_id)
        except StorageError as exc:
            self._logger.warning("Could not load session for tab %s, starting fresh: %s", tab_id, exc)
            loaded = None

        if loaded is None:
            return Session(tab_id=tab_id, current_model_id=self.default_model_id)

        if loaded.current_model_id not in self._registry:
            self._logger.warning(
                "Tab %s stored unknown model '%s'; using '%s'",
                tab_id,
                loaded.current_model_id,
                self.default_model_id,
            )
            loaded = replace(loaded, current_model_id=self.default_model_id)
        self._ids.observe(loaded.search_results)
        return loaded

    @asynccontextmanager
    async def _operation(self, tab_id: int, state: SessionState) -> AsyncIterator[_SessionSlot]:
        slot = self._slot(tab_id)
        if slot.state is not SessionState.IDLE:
            raise SessionBusyError(f"Tab {tab_id} is busy ({slot.state.value})")
        slot.state = state
        try:
            yield slot
        finally:
            slot.state = SessionState.IDLE

    async def _grounded_answer(
        self,
        tab_id: int,
        slot: _SessionSlot,
        client: ProviderClient,
        question: str,
        scope: Scope,
        event: str,
    ) -> str:
        tab = self._tabs.get_tab(tab_id)
        context = await self._resolve_context(scope, tab, question)
        prompt = self._prompts.load(ASK_PROMPT).render(
            scope=scope.value,
            context=context.text or "(no context available)",
            question=question,
        )
        return await self._dispatch(tab_id, slot, client, prompt, event, {"scope": scope.value})

    async def _resolve_context(self, scope: Scope, tab: TabSnapshot, query: Optional[str]):
        try:
            return await self._resolver.resolve(scope, tab, query)
        except ContextError as exc:
            self._logger.warning("Context for tab %s (%s) unavailable: %s", tab.id, scope.value, exc)
            raise

    async def _dispatch(
        self,
        tab_id: int,
        slot: _SessionSlot,
        client: ProviderClient,
        prompt: str,
        event: str,
        extra: Optional[Mapping[str, object]] = None,
    ) -> str:
        self._log_debug(f"{event}-dispatch", tab_id, client.provider_id, extra or {})
        try:
            text = await client.send(prompt)
        except ProviderError as exc:
            self._logger.warning("%s failed for tab %s: %s", event, tab_id, exc)
            raise
        if self._slots.get(tab_id) is not slot:
            self._log_debug(f"{event}-discarded", tab_id, client.provider_id, {})
            raise SessionClosedError(f"Tab {tab_id} was closed before the response arrived")
        self._log_debug(f"{event}-done", tab_id, client.provider_id, {"chars": len(text)})
        return text

    def _commit(self, tab_id: int, slot: _SessionSlot, update: Callable[[Session], Session]) -> Session:
        if self._slots.get(tab_id) is not slot:
            raise SessionClosedError(f"Tab {tab_id} is no longer open")
        session = update(slot.session)
        slot.session = session
        try:
            self._store.save(tab_id, session)
        except StorageError as exc:
            self._logger.warning("Session for tab %s kept in memory only: %s", tab_id, exc)
        return session

    def _append_result(self, tab_id: int, slot: _SessionSlot, content: str) -> SearchResult:
        result = self._ids.new_result(content)
        self._commit(
            tab_id,
            slot,
            lambda session: replace(session, search_results=session.search_results.append(result)),
        )
        return result

    def _log_debug(self, event: str, tab_id: int, provider: str, extra: Mapping[str, object]) -> None:
        payload = {"event": event, "tab_id": tab_id, "provider": provider}
        payload.update(dict(extra))
        self._logger.debug("query-orchestrator", extra={"query": payload})
