"""Prompt templates for page summaries and scoped questions."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, List, Mapping, Optional

_PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")

# Values the orchestrator supplies for each bundled template.
TEMPLATE_FIELDS: Mapping[str, FrozenSet[str]] = {
    "summarize": frozenset({"url", "context"}),
    "ask": frozenset({"scope", "context", "question"}),
    "explain": frozenset({"selection"}),
}


class PromptValidationError(ValueError):
    """Raised when a prompt template cannot be used."""


@dataclass(frozen=True)
class PromptDocument:
    name: str
    content: str
    path: Path

    @property
    def placeholders(self) -> FrozenSet[str]:
        return frozenset(_PLACEHOLDER.findall(self.content))

    def render(self, **values: object) -> str:
        missing = self.placeholders - set(values)
        if missing:
            raise PromptValidationError(f"Prompt '{self.name}' needs values for: {', '.join(sorted(missing))}")
        return _PLACEHOLDER.sub(lambda match: str(values[match.group(1)]), self.content).strip()


class PromptLoader:
    """Finds ``<name>.md`` templates, preferring ``override_dir`` over the bundled copies.

    Templates are checked once when first loaded: every ``{{`` must be closed,
    and a bundled template name must use exactly the fields the orchestrator fills.
    """

    def __init__(self, override_dir: Optional[Path] = None) -> None:
        self._search_dirs: List[Path] = [Path(__file__).resolve().parent / "prompts"]
        if override_dir:
            self._search_dirs.insert(0, Path(override_dir).expanduser())
        self._cache: Dict[str, PromptDocument] = {}

    @property
    def search_dirs(self) -> List[Path]:
        return list(self._search_dirs)

    def resolve(self, name: str) -> Path:
        filename = name if name.endswith(".md") else f"{name}.md"
        for directory in self._search_dirs:
            path = directory / filename
            if path.is_file():
                return path
        roots = ", ".join(str(d) for d in self._search_dirs)
        raise FileNotFoundError(f"Prompt '{name}' was not found in: {roots}")

    def load(self, name: str) -> PromptDocument:
        document = self._cache.get(name)
        if document is None:
            path = self.resolve(name)
            document = PromptDocument(name=name, content=path.read_text(encoding="utf-8"), path=path)
            self._check(document)
            self._cache[name] = document
        return document

    def _check(self, document: PromptDocument) -> None:
        if document.content.count("{{") != document.content.count("}}"):
            raise PromptValidationError(f"Prompt '{document.path}' has unbalanced '{{{{' and '}}}}' markers")

        expected = TEMPLATE_FIELDS.get(document.name)
        if expected is None:
            return
        found = document.placeholders
        if found != expected:
            problems = []
            if expected - found:
                problems.append(f"missing {', '.join(sorted(expected - found))}")
            if found - expected:
                problems.append(f"unknown {', '.join(sorted(found - expected))}")
            raise PromptValidationError(f"Prompt '{document.path}': {'; '.join(problems)}")
