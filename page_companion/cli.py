from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import httpx

from .config import AppConfig, ConfigError, load_config
from .pages import (
    DomainPageIndex,
    GlobalPageIndex,
    HttpPageExtractor,
    PageIndex,
    TabNotFoundError,
    TabRegistry,
)
from .queries import (
    ContextError,
    ContextResolver,
    JsonFileStore,
    OrchestratorError,
    PromptLoader,
    PromptValidationError,
    ProviderError,
    ProviderRegistry,
    QueryOrchestrator,
    Scope,
    Session,
    SessionStore,
    StorageError,
    TabSnapshot,
    UnknownProvider,
)

COMMAND_ERRORS = (
    OrchestratorError,
    ProviderError,
    ContextError,
    UnknownProvider,
    TabNotFoundError,
    StorageError,
    PromptValidationError,
)


@dataclass
class Companion:
    """Everything a front end needs, wired against one storage file."""

    config: AppConfig
    tabs: TabRegistry
    sessions: SessionStore
    index: PageIndex
    registry: ProviderRegistry
    orchestrator: QueryOrchestrator
    http_client: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.registry.aclose()
        await self.http_client.aclose()


def create_companion(config: AppConfig, http_client: Optional[httpx.AsyncClient] = None) -> Companion:
    store = JsonFileStore(config.storage_path)
    tabs = TabRegistry(store)
    index = PageIndex(store)
    sessions = SessionStore(store, default_model=config.default_model)
    http = http_client or httpx.AsyncClient(
        timeout=30.0,
        headers={"User-Agent": "page-companion/0.1"},
    )
    registry = config.build_registry(http_client=http)
    resolver = ContextResolver(
        HttpPageExtractor(tabs, http, index),
        DomainPageIndex(index),
        GlobalPageIndex(index),
        budget=config.context_budget,
    )
    orchestrator = QueryOrchestrator(
        registry,
        resolver,
        sessions,
        tabs,
        prompt_loader=PromptLoader(config.prompts_dir),
    )
    return Companion(
        config=config,
        tabs=tabs,
        sessions=sessions,
        index=index,
        registry=registry,
        orchestrator=orchestrator,
        http_client=http,
    )


def configure_logging(verbosity: int) -> None:
    if verbosity <= 0:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def format_timestamp(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%H:%M:%S")


def format_tab_table(tabs: Sequence[TabSnapshot], active_id: Optional[int]) -> tuple[str, list[str]]:
    if not tabs:
        return "   Id  Domain  URL", []

    id_width = max(len("Id"), max(len(str(tab.id)) for tab in tabs))
    domain_width = max(len("Domain"), max(len(tab.domain) for tab in tabs))
    header = f"   {'Id'.rjust(id_width)}  {'Domain'.ljust(domain_width)}  URL"
    lines = []
    for tab in tabs:
        marker = " * " if tab.id == active_id else "   "
        lines.append(f"{marker}{str(tab.id).rjust(id_width)}  {tab.domain.ljust(domain_width)}  {tab.url}")
    return header, lines


def render_session(session: Session, tab: Optional[TabSnapshot] = None) -> str:
    lines = []
    if tab is not None:
        lines.append(f"Tab {tab.id}: {tab.url}")
    lines.append(f"Model: {session.current_model_id} | Dark mode: {'on' if session.dark_mode else 'off'}")
    if session.summary:
        lines += ["", "## Page Summary", session.summary.rstrip()]
    if session.answer:
        lines += ["", "## Answer", session.answer.rstrip()]
    for result in session.search_results:
        lines += ["", f"## Search Result ({format_timestamp(result.timestamp)})", result.content.rstrip()]
    return "\n".join(lines)


def resolve_tab(companion: Companion, tab_id: Optional[int], parser: argparse.ArgumentParser) -> TabSnapshot:
    if tab_id is not None:
        try:
            return companion.tabs.get_tab(tab_id)
        except TabNotFoundError as exc:
            parser.error(str(exc))
    active = companion.tabs.get_active_tab()
    if active is None:
        parser.error("No active tab. Open one with `page-companion open URL`.")
    return active


async def run_command(args: argparse.Namespace, parser: argparse.ArgumentParser, companion: Companion) -> int:
    orchestrator = companion.orchestrator

    if args.cmd == "open":
        tab = companion.tabs.open(args.url, activate=not args.no_activate)
        print(f"Opened tab {tab.id}: {tab.url}")
        return 0

    if args.cmd == "tabs":
        active = companion.tabs.get_active_tab()
        header, lines = format_tab_table(companion.tabs.list_tabs(), active.id if active else None)
        if not lines:
            print("No open tabs.")
            return 0
        print(header)
        for line in lines:
            print(line)
        return 0

    if args.cmd == "switch":
        tab = companion.tabs.activate(args.tab_id)
        print(f"Active tab {tab.id}: {tab.url}")
        return 0

    if args.cmd == "close":
        tab = companion.tabs.close(args.tab_id)
        orchestrator.discard_session(tab.id)
        companion.sessions.delete(tab.id)
        print(f"Closed tab {tab.id}: {tab.url}")
        return 0

    if args.cmd == "prune":
        removed = companion.sessions.prune(tab.id for tab in companion.tabs.list_tabs())
        print(f"Removed {len(removed)} stale session record(s)")
        return 0

    tab = resolve_tab(companion, getattr(args, "tab", None), parser)

    if args.cmd == "summarize":
        summary = await orchestrator.summarize_page(tab.id)
        print(summary.rstrip())
        return 0

    if args.cmd == "ask":
        answer = await orchestrator.ask(tab.id, " ".join(args.question), args.scope, args.model)
        print(answer.rstrip())
        return 0

    if args.cmd == "search":
        result = await orchestrator.search(tab.id, " ".join(args.query), args.scope, args.model)
        print(f"[{result.id}] {result.content.rstrip()}")
        return 0

    if args.cmd == "explain":
        result = await orchestrator.explain_selection(tab.id, " ".join(args.text), args.model)
        print(f"[{result.id}] {result.content.rstrip()}")
        return 0

    if args.cmd == "show":
        session = orchestrator.session(tab.id)
        if args.json:
            print(json.dumps(session.to_record(), ensure_ascii=False, indent=2))
        else:
            print(render_session(session, tab))
        return 0

    if args.cmd == "model":
        if args.model_id is None:
            current = orchestrator.session(tab.id).current_model_id
            for provider_id in companion.registry.ids():
                marker = "*" if provider_id == current else " "
                print(f"{marker} {provider_id} ({companion.registry.config(provider_id).model_name})")
            return 0
        session = orchestrator.select_model(tab.id, args.model_id)
        print(f"Tab {tab.id} now uses {session.current_model_id}")
        return 0

    if args.cmd == "dark-mode":
        if args.mode == "toggle":
            session = orchestrator.toggle_dark_mode(tab.id)
        else:
            session = orchestrator.set_dark_mode(tab.id, args.mode == "on")
        print(f"Dark mode {'on' if session.dark_mode else 'off'} for tab {tab.id}")
        return 0

    if args.cmd == "shell":
        try:
            from .shell import CompanionShell
        except ModuleNotFoundError as exc:
            if exc.name and exc.name.startswith("prompt_toolkit"):
                parser.error(
                    "The interactive shell requires optional dependency 'prompt_toolkit'. "
                    "Install it with `python -m pip install .[shell]`."
                )
            raise
        return await CompanionShell(companion, tab.id).run()

    parser.error("Unknown command")
    return 2


async def run_async(args: argparse.Namespace, parser: argparse.ArgumentParser, config: AppConfig) -> int:
    companion = create_companion(config)
    try:
        return await run_command(args, parser, companion)
    except COMMAND_ERRORS as exc:
        parser.error(str(exc))
        return 2
    finally:
        await companion.aclose()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="page-companion",
        description="Summarize pages and ask scoped questions about them, with per-tab history.",
    )
    p.add_argument("--config", type=Path, help="YAML config file (default: ~/.config/page-companion/config.yaml)")
    p.add_argument("--storage", type=Path, help="Session storage file (default: ~/.page-companion/storage.json)")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity (-v, -vv)")

    sub = p.add_subparsers(dest="cmd", required=True)

    p_open = sub.add_parser("open", help="Open a tab for a URL")
    p_open.add_argument("url", help="http(s) or file:// URL")
    p_open.add_argument("--no-activate", action="store_true", help="Keep the current active tab")

    sub.add_parser("tabs", help="List open tabs")

    p_switch = sub.add_parser("switch", help="Make a tab the active one")
    p_switch.add_argument("tab_id", type=int)

    p_close = sub.add_parser("close", help="Close a tab and delete its session")
    p_close.add_argument("tab_id", type=int)

    sub.add_parser("prune", help="Delete session records of tabs that are no longer open")

    def add_tab_option(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--tab", type=int, help="Tab id (default: the active tab)")

    def add_query_options(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            "--scope",
            choices=[scope.value for scope in Scope],
            default=Scope.PAGE.value,
            help="Context scope (default: page)",
        )
        parser.add_argument("--model", help="Model id to use instead of the tab's current model")
        add_tab_option(parser)

    p_summarize = sub.add_parser("summarize", help="Summarize the tab's page")
    add_tab_option(p_summarize)

    p_ask = sub.add_parser("ask", help="Ask a question; replaces the tab's answer")
    p_ask.add_argument("question", nargs="+")
    add_query_options(p_ask)

    p_search = sub.add_parser("search", help="Search; appends to the tab's search results. Accepts [ALL]/[DOMAIN]/[PAGE] tags")
    p_search.add_argument("query", nargs="+")
    add_query_options(p_search)

    p_explain = sub.add_parser("explain", help="Detailed write-up of some text; appends to the tab's search results")
    p_explain.add_argument("text", nargs="+")
    p_explain.add_argument("--model", help="Model id to use instead of the tab's current model")
    add_tab_option(p_explain)

    p_show = sub.add_parser("show", help="Print the tab's session")
    p_show.add_argument("--json", action="store_true", help="Print the stored record as JSON")
    add_tab_option(p_show)

    p_model = sub.add_parser("model", help="Show or select the tab's model")
    p_model.add_argument("model_id", nargs="?")
    add_tab_option(p_model)

    p_dark = sub.add_parser("dark-mode", help="Set the tab's dark mode preference")
    p_dark.add_argument("mode", choices=["on", "off", "toggle"])
    add_tab_option(p_dark)

    p_shell = sub.add_parser("shell", help="Interactive shell for the tab")
    add_tab_option(p_shell)

    return p


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        parser.error(str(exc))
        return 2
    if args.storage:
        config.storage_path = args.storage.expanduser()

    return asyncio.run(run_async(args, parser, config))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
