"""Shared fixtures: a scripted HTTP backend and static collaborators."""

import asyncio
import json
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from page_companion.queries import (
    ContextResolver,
    MemoryStore,
    ProviderRegistry,
    QueryOrchestrator,
    SessionStore,
    TabSnapshot,
)
from page_companion.queries.providers import gemini_config, perplexity_config

GEMINI_HOST = "generativelanguage.googleapis.com"
PERPLEXITY_HOST = "api.perplexity.ai"


def default_reply(provider: str, prompt: str) -> str:
    return f"{provider} says: {prompt.splitlines()[-1]}"


class FakeBackend:
    """Answers provider calls and page fetches from memory."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.prompts: List[str] = []
        self.status: Optional[int] = None
        self.reply: Callable[[str, str], str] = default_reply
        self.pages: Dict[str, str] = {}
        self.gate: Optional[asyncio.Event] = None
        self.started: Optional[asyncio.Event] = None

    def hold(self) -> None:
        """Block provider replies until ``release`` is called (inside a loop)."""
        self.gate = asyncio.Event()
        self.started = asyncio.Event()

    def release(self) -> None:
        if self.gate is not None:
            self.gate.set()

    @property
    def provider_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host in (GEMINI_HOST, PERPLEXITY_HOST)]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host not in (GEMINI_HOST, PERPLEXITY_HOST):
            body = self.pages.get(str(request.url))
            if body is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, text=body, headers={"content-type": "text/html; charset=utf-8"})

        if self.gate is not None:
            self.started.set()
            await self.gate.wait()

        if self.status is not None:
            return httpx.Response(self.status, json={"error": {"message": "backend unavailable"}})

        payload = json.loads(request.content)
        if host == GEMINI_HOST:
            prompt = payload["contents"][0]["parts"][0]["text"]
            self.prompts.append(prompt)
            text = self.reply("gemini", prompt)
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})

        prompt = payload["messages"][-1]["content"]
        self.prompts.append(prompt)
        text = self.reply("perplexity", prompt)
        return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


class StaticTabs:
    def __init__(self, urls: Dict[int, str]) -> None:
        self.urls = dict(urls)

    def get_tab(self, tab_id: int) -> TabSnapshot:
        return TabSnapshot(id=tab_id, url=self.urls[tab_id])


class StaticPages:
    def __init__(self, texts: Dict[int, str]) -> None:
        self.texts = dict(texts)
        self.calls: List[int] = []

    async def get_visible_text(self, tab_id: int) -> str:
        self.calls.append(tab_id)
        return self.texts[tab_id]


class RecordingIndex:
    def __init__(self, text: str = "") -> None:
        self.text = text
        self.calls: List[tuple] = []

    async def query(self, *args: str) -> str:
        self.calls.append(args)
        return self.text


@dataclass
class Harness:
    orchestrator: QueryOrchestrator
    backend: FakeBackend
    kv: MemoryStore
    sessions: SessionStore
    pages: StaticPages
    domain_index: RecordingIndex
    global_index: RecordingIndex
    registry: ProviderRegistry
    tabs: StaticTabs


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def http_client(backend: FakeBackend) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))


@pytest.fixture
def registry(http_client: httpx.AsyncClient) -> ProviderRegistry:
    registry = ProviderRegistry(http_client=http_client)
    registry.register("gemini", gemini_config("g-key"))
    registry.register("perplexity", perplexity_config("p-key"))
    return registry


@pytest.fixture
def harness(backend: FakeBackend, registry: ProviderRegistry) -> Harness:
    kv = MemoryStore()
    sessions = SessionStore(kv, default_model="gemini")
    tabs = StaticTabs(
        {
            1: "https://news.example.com/reefs",
            2: "https://shop.example.com/pricing",
        }
    )
    pages = StaticPages(
        {
            1: "The article discusses coral reef bleaching.",
            2: "Pricing\n\nBasic tier costs $5.\n\nPro tier costs $15.",
        }
    )
    domain_index = RecordingIndex("[https://shop.example.com/plans]\nEnterprise tier is custom.")
    global_index = RecordingIndex("[https://other.org/]\nPricing tiers vary across vendors.")
    resolver = ContextResolver(pages, domain_index, global_index, budget=500)
    orchestrator = QueryOrchestrator(registry, resolver, sessions, tabs)
    return Harness(
        orchestrator=orchestrator,
        backend=backend,
        kv=kv,
        sessions=sessions,
        pages=pages,
        domain_index=domain_index,
        global_index=global_index,
        registry=registry,
        tabs=tabs,
    )
