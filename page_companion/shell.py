from __future__ import annotations

from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.patch_stdout import patch_stdout
from prompt_toolkit.shortcuts import print_formatted_text
from prompt_toolkit.styles import DynamicStyle, Style

from .cli import COMMAND_ERRORS, Companion, format_timestamp, render_session
from .pages import TabNotFoundError
from .queries import Scope, SearchResult

_LIGHT_STYLE = Style.from_dict(
    {
        "prompt": "bold",
        "scope": "fg:#0057b7",
        "bottom-toolbar": "fg:#000000 bg:#e5e5e5",
        "error": "fg:#b00020",
    }
)
_DARK_STYLE = Style.from_dict(
    {
        "prompt": "bold fg:#e0e0e0",
        "scope": "fg:#7fb4ff",
        "bottom-toolbar": "fg:#e0e0e0 bg:#303030",
        "error": "fg:#ff6b6b",
    }
)

HELP_TEXT = """\
Type a query to search the current scope; a leading [ALL], [DOMAIN] or [PAGE] tag overrides it.
  /ask QUESTION     answer a question (replaces the previous answer)
  /scope SCOPE      scope for searches and /ask: page, domain or all
  /summarize        summarize the page
  /suggest [N]      list suggested searches, or run number N (after /summarize)
  /explain TEXT     detailed write-up of TEXT, added to the search results
  /model [ID]       show or select the model
  /dark             toggle dark mode (also Ctrl-T)
  /show             print the session
  /help             this help
  /quit             leave the shell"""


class CompanionShell:
    """Interactive prompt backed by prompt_toolkit."""

    def __init__(self, companion: Companion, tab_id: int) -> None:
        self.companion = companion
        self.tab_id = tab_id
        self.scope = Scope.PAGE
        self.running = True
        self.status = ""

    @property
    def orchestrator(self):
        return self.companion.orchestrator

    async def execute(self, line: str) -> Optional[str]:
        """Run one input line and return text to print, if any."""
        text = line.strip()
        if not text:
            return None
        if not text.startswith("/"):
            return await self._guarded(self._search(text))

        command, _, rest = text[1:].partition(" ")
        rest = rest.strip()
        command = command.lower()

        if command in {"quit", "exit", "q"}:
            self.running = False
            return None
        if command == "help":
            return HELP_TEXT
        if command == "show":
            return await self._guarded(self._show())
        if command == "dark":
            session = self.orchestrator.toggle_dark_mode(self.tab_id)
            return f"Dark mode {'on' if session.dark_mode else 'off'}"
        if command == "scope":
            try:
                self.scope = Scope(rest.lower())
            except ValueError:
                return "Scope must be one of: page, domain, all"
            return f"Scope set to {self.scope.value}"
        if command == "model":
            if not rest:
                current = self.orchestrator.session(self.tab_id).current_model_id
                return "\n".join(
                    f"{'*' if provider_id == current else ' '} {provider_id}"
                    for provider_id in self.companion.registry.ids()
                )
            return await self._guarded(self._select_model(rest))
        if command == "summarize":
            return await self._guarded(self._summarize())
        if command == "ask":
            return await self._guarded(self._ask(rest))
        if command == "suggest":
            if not rest:
                return self._list_suggestions()
            if not rest.isdigit():
                return "Usage: /suggest [N]"
            return await self._guarded(self._run_suggestion(int(rest)))
        if command == "explain":
            return await self._guarded(self._explain(rest))
        return f"Unknown command '/{command}'. Type /help for a list."

    async def _guarded(self, operation) -> str:
        try:
            return await operation
        except COMMAND_ERRORS as exc:
            self.status = f"Failed: {exc}"
            return f"Error: {exc}"

    async def _search(self, text: str) -> str:
        self.status = "Searching..."
        result = await self.orchestrator.search(self.tab_id, text, self.scope)
        return self._show_result(result)

    async def _run_suggestion(self, number: int) -> str:
        self.status = "Searching..."
        result = await self.orchestrator.run_suggestion(self.tab_id, number)
        return self._show_result(result)

    async def _explain(self, selection: str) -> str:
        self.status = "Explaining..."
        result = await self.orchestrator.explain_selection(self.tab_id, selection)
        return self._show_result(result)

    def _show_result(self, result: SearchResult) -> str:
        self.status = f"Search result {result.id} added"
        return f"Search Result ({format_timestamp(result.timestamp)})\n{result.content.rstrip()}"

    def _list_suggestions(self) -> str:
        offered = self.orchestrator.suggestions(self.tab_id)
        if not offered:
            return "Suggestions appear once the page is summarized (/summarize)."
        return "\n".join(f"{number}. {text}" for number, text in enumerate(offered, start=1))

    async def _show(self) -> str:
        return render_session(self.orchestrator.session(self.tab_id), self.companion.tabs.get_tab(self.tab_id))

    async def _ask(self, question: str) -> str:
        self.status = "Asking..."
        answer = await self.orchestrator.ask(self.tab_id, question, self.scope)
        self.status = "Answer updated"
        return answer.rstrip()

    async def _summarize(self) -> str:
        self.status = "Summarizing..."
        summary = await self.orchestrator.summarize_page(self.tab_id)
        self.status = "Page summarized"
        return summary.rstrip()

    async def _select_model(self, model_id: str) -> str:
        session = self.orchestrator.select_model(self.tab_id, model_id)
        return f"Model set to {session.current_model_id}"

    # ---- prompt_toolkit plumbing -----------------------------------------
    def _style(self) -> Style:
        return _DARK_STYLE if self.orchestrator.session(self.tab_id).dark_mode else _LIGHT_STYLE

    def _prompt_fragment(self) -> FormattedText:
        return FormattedText([("class:scope", f"[{self.scope.value.upper()}]"), ("class:prompt", " > ")])

    def _toolbar(self) -> FormattedText:
        try:
            where = self.companion.tabs.get_tab(self.tab_id).domain
        except TabNotFoundError:
            where = "(closed)"
        session = self.orchestrator.session(self.tab_id)
        state = self.orchestrator.state(self.tab_id).value
        text = f" Tab {self.tab_id} {where} | {session.current_model_id} | {state}"
        if self.status:
            text += f" | {self.status}"
        return FormattedText([("class:bottom-toolbar", text)])

    def _build_key_bindings(self) -> KeyBindings:
        kb = KeyBindings()

        @kb.add("c-t")
        def _(event) -> None:  # pragma: no cover - interactive behaviour
            self.orchestrator.toggle_dark_mode(self.tab_id)
            event.app.invalidate()

        return kb

    async def run(self) -> int:  # pragma: no cover - interactive
        prompt_session: PromptSession = PromptSession(
            history=InMemoryHistory(),
            key_bindings=self._build_key_bindings(),
            bottom_toolbar=self._toolbar,
            style=DynamicStyle(self._style),
        )
        print_formatted_text(f"Tab {self.tab_id}: type /help for commands.")
        with patch_stdout():
            while self.running:
                try:
                    line = await prompt_session.prompt_async(self._prompt_fragment)
                except KeyboardInterrupt:
                    continue
                except EOFError:
                    break
                output = await self.execute(line)
                if output:
                    print_formatted_text(output)
        return 0
