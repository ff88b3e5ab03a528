"""Assemble bounded grounding text for a scope."""
from __future__ import annotations

import logging
import re
from typing import List, Optional, Protocol, Tuple

from .types import ContextBlock, Scope, TabSnapshot

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_BUDGET = 12000

_SEGMENT_SPLIT = re.compile(r"\n\s*\n")


class ContextError(RuntimeError):
    """Raised when grounding text could not be collected."""


class PageContentExtractor(Protocol):
    async def get_visible_text(self, tab_id: int) -> str:
        ...


class DomainIndex(Protocol):
    async def query(self, domain: str, text: str) -> str:
        ...


class GlobalIndex(Protocol):
    async def query(self, text: str) -> str:
        ...


class ContextResolver:
    """Collects page, domain or global text and trims it to ``budget`` characters.

    Source text is treated as blank-line separated segments that arrive most
    relevant (or, for a page, earliest) first. Segments are kept in order while
    they fit and the remainder is dropped, so identical input always yields the
    same block.
    """

    def __init__(
        self,
        pages: PageContentExtractor,
        domain_index: DomainIndex,
        global_index: GlobalIndex,
        *,
        budget: int = DEFAULT_CONTEXT_BUDGET,
    ) -> None:
        if budget <= 0:
            raise ValueError("Context budget must be positive")
        self._pages = pages
        self._domain_index = domain_index
        self._global_index = global_index
        self.budget = budget

    async def resolve(self, scope: Scope, tab: TabSnapshot, query: Optional[str] = None) -> ContextBlock:
        scope = Scope(scope)
        if scope is Scope.PAGE:
            source = await self._pages.get_visible_text(tab.id)
            sources: Tuple[str, ...] = (tab.url,)
        elif scope is Scope.DOMAIN:
            source = await self._domain_index.query(tab.domain, query or "")
            sources = (tab.domain,)
        else:
            source = await self._global_index.query(query or "")
            sources = ()

        text, truncated = fit_to_budget(source or "", self.budget)
        if truncated:
            logger.debug(
                "context-truncated",
                extra={"context": {"scope": scope.value, "tab_id": tab.id, "chars": len(source), "budget": self.budget}},
            )
        return ContextBlock(scope=scope, text=text, truncated=truncated, sources=sources)


def split_segments(text: str) -> List[str]:
    return [segment.strip() for segment in _SEGMENT_SPLIT.split(text) if segment.strip()]


def fit_to_budget(text: str, budget: int) -> Tuple[str, bool]:
    """Return ``(text, truncated)`` with ``len(text) <= budget``."""
    segments = split_segments(text)
    kept: List[str] = []
    used = 0
    for segment in segments:
        extra = len(segment) + (2 if kept else 0)
        if used + extra > budget:
            break
        kept.append(segment)
        used += extra

    if not kept and segments:
        return segments[0][:budget].rstrip(), True
    return "\n\n".join(kept), len(kept) < len(segments)
