"""
Tests for provider clients and the registry
"""

import asyncio
import json

import httpx
import pytest

from page_companion.queries import (
    AuthenticationError,
    MalformedResponseError,
    ProviderError,
    ProviderRegistry,
    RateLimitError,
    TransientError,
    UnknownProvider,
)
from page_companion.queries.providers import PERPLEXITY_SYSTEM_PROMPT, gemini_config, perplexity_config
from page_companion.queries.types import ProviderConfig


def make_registry(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    registry = ProviderRegistry(http_client=client)
    registry.register("gemini", gemini_config("g-key"))
    registry.register("perplexity", perplexity_config("p-key"))
    return registry


class Recorder:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


class TestPerplexity:
    """Chat-style provider"""

    def test_payload_and_reply(self):
        recorder = Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "hello"}}]}))
        registry = make_registry(recorder)

        text = asyncio.run(registry.resolve("perplexity").send("What is new?"))

        assert text == "hello"
        request = recorder.requests[0]
        assert str(request.url) == "https://api.perplexity.ai/chat/completions"
        assert request.headers["Authorization"] == "Bearer p-key"
        body = json.loads(request.content)
        assert body["messages"] == [
            {"role": "system", "content": PERPLEXITY_SYSTEM_PROMPT},
            {"role": "user", "content": "What is new?"},
        ]
        assert body["temperature"] == 0.7
        assert body["top_p"] == 0.9
        assert body["max_tokens"] == 4096
        assert body["stream"] is False
        assert body["model"] == "sonar"

    def test_params_override_sampling(self):
        recorder = Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "x"}}]}))
        registry = make_registry(recorder)
        asyncio.run(registry.resolve("perplexity").send("p", {"temperature": 0.1}))
        assert json.loads(recorder.requests[0].content)["temperature"] == 0.1

    def test_missing_content_is_malformed(self):
        registry = make_registry(Recorder(httpx.Response(200, json={"choices": []})))
        with pytest.raises(MalformedResponseError) as excinfo:
            asyncio.run(registry.resolve("perplexity").send("p"))
        assert excinfo.value.provider == "perplexity"


class TestGemini:
    """Single-prompt provider"""

    def test_payload_and_reply(self):
        recorder = Recorder(
            httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "summary"}]}}]})
        )
        registry = make_registry(recorder)

        text = asyncio.run(registry.resolve("gemini").send("Summarize this"))

        assert text == "summary"
        request = recorder.requests[0]
        assert request.url.path.endswith(":generateContent")
        assert request.headers["x-goog-api-key"] == "g-key"
        assert json.loads(request.content) == {"contents": [{"parts": [{"text": "Summarize this"}]}]}

    def test_non_json_body_is_malformed(self):
        registry = make_registry(Recorder(httpx.Response(200, text="<html>oops</html>")))
        with pytest.raises(MalformedResponseError):
            asyncio.run(registry.resolve("gemini").send("p"))


class TestFailures:
    """HTTP failures map onto the ProviderError hierarchy"""

    @pytest.mark.parametrize(
        "status, error",
        [
            (401, AuthenticationError),
            (403, AuthenticationError),
            (429, RateLimitError),
            (500, TransientError),
            (502, TransientError),
            (400, ProviderError),
        ],
    )
    def test_status_codes(self, status, error):
        registry = make_registry(Recorder(httpx.Response(status, json={"error": {"message": "nope"}})))
        with pytest.raises(error) as excinfo:
            asyncio.run(registry.resolve("perplexity").send("p"))
        assert excinfo.value.provider == "perplexity"

    def test_error_message_is_kept(self):
        registry = make_registry(Recorder(httpx.Response(429, json={"error": {"message": "quota exhausted"}})))
        with pytest.raises(RateLimitError, match="quota exhausted"):
            asyncio.run(registry.resolve("gemini").send("p"))

    def test_network_error_is_transient(self):
        registry = make_registry(Recorder(httpx.ConnectError("connection refused")))
        with pytest.raises(TransientError):
            asyncio.run(registry.resolve("gemini").send("p"))

    def test_missing_key_fails_before_request(self):
        recorder = Recorder(httpx.Response(200, json={}))
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        registry = ProviderRegistry(http_client=client)
        registry.register("gemini", gemini_config(None))
        with pytest.raises(AuthenticationError):
            asyncio.run(registry.resolve("gemini").send("p"))
        assert recorder.requests == []


class TestRegistry:
    """Tests for ProviderRegistry"""

    def test_unknown_id_raises(self):
        registry = make_registry(Recorder(httpx.Response(200)))
        with pytest.raises(UnknownProvider) as excinfo:
            registry.resolve("xai")
        assert excinfo.value.provider_id == "xai"

    def test_lookup_reports_without_raising(self):
        registry = make_registry(Recorder(httpx.Response(200)))
        assert registry.lookup("gemini").ok
        missing = registry.lookup("xai")
        assert not missing.ok
        assert isinstance(missing.error, UnknownProvider)

    def test_ids_and_membership(self):
        registry = make_registry(Recorder(httpx.Response(200)))
        assert registry.ids() == ["gemini", "perplexity"]
        assert "gemini" in registry
        assert "xai" not in registry
        assert registry.config("perplexity").max_tokens == 4096

    def test_unsupported_kind(self):
        registry = make_registry(Recorder(httpx.Response(200)))
        config = ProviderConfig(id="odd", api_key="k", endpoint="https://x", model_name="m", kind="stream")
        with pytest.raises(ValueError):
            registry.register("odd", config)
