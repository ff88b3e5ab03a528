"""AI backends and the registry that maps model ids to them."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from .types import ProviderConfig

logger = logging.getLogger(__name__)

PERPLEXITY_SYSTEM_PROMPT = (
    "You are a helpful AI assistant that provides accurate and detailed information."
)


class ProviderError(RuntimeError):
    """Base error raised when an AI backend call fails."""

    def __init__(self, provider: str, cause: str) -> None:
        super().__init__(f"{provider}: {cause}")
        self.provider = provider
        self.cause = cause


class AuthenticationError(ProviderError):
    """Raised when the API key is missing or rejected."""


class RateLimitError(ProviderError):
    """Raised when the backend returns HTTP 429."""


class TransientError(ProviderError):
    """Raised for network failures, timeouts and HTTP 5xx."""


class MalformedResponseError(ProviderError):
    """Raised when the backend answers with an unexpected payload."""


class UnknownProvider(LookupError):
    """Raised when a model id has no registered backend."""

    def __init__(self, provider_id: str, known: Optional[List[str]] = None) -> None:
        known_text = ", ".join(known) if known else "none"
        super().__init__(f"Unknown model '{provider_id}' (registered: {known_text})")
        self.provider_id = provider_id


class ProviderClient:
    """Shared HTTP plumbing; subclasses build payloads and read replies."""

    def __init__(self, config: ProviderConfig, http_client: httpx.AsyncClient) -> None:
        self.config = config
        self._http = http_client

    @property
    def provider_id(self) -> str:
        return self.config.id

    async def send(self, prompt: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Submit ``prompt`` and return the first completion's text."""
        if not self.config.api_key:
            raise AuthenticationError(self.provider_id, "API key is not configured")

        sampling = self.config.sampling()
        if params:
            sampling.update(params)
        payload = self.build_payload(prompt, sampling)
        logger.debug(
            "provider-request",
            extra={"provider": {"id": self.provider_id, "model": self.config.model_name, "chars": len(prompt)}},
        )
        data = await self._post(payload)
        return self.extract_text(data)

    def build_payload(self, prompt: str, sampling: Mapping[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def extract_text(self, data: Mapping[str, Any]) -> str:
        raise NotImplementedError

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    async def _post(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        headers = {"Content-Type": "application/json"}
        headers.update(self.auth_headers())
        try:
            response = await self._http.post(self.config.endpoint, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientError(self.provider_id, "request timed out") from exc
        except httpx.HTTPError as exc:  # network issues
            raise TransientError(self.provider_id, f"request failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise AuthenticationError(self.provider_id, f"credentials rejected ({response.status_code})")
        if response.status_code >= 400:
            message = self._error_message(response)
            if response.status_code == 429:
                raise RateLimitError(self.provider_id, message or "rate limit exceeded (429)")
            if response.status_code >= 500:
                raise TransientError(self.provider_id, message or f"server error ({response.status_code})")
            raise ProviderError(self.provider_id, message or f"request failed ({response.status_code})")

        return self._safe_json(response)

    def _safe_json(self, response: httpx.Response) -> Mapping[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedResponseError(self.provider_id, "non-JSON response") from exc
        if not isinstance(data, Mapping):
            raise MalformedResponseError(self.provider_id, "response was not a JSON object")
        return data

    def _error_message(self, response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return response.text or None
        if isinstance(body, Mapping):
            error = body.get("error")
            if isinstance(error, Mapping) and isinstance(error.get("message"), str):
                return error["message"]
            if isinstance(error, str):
                return error
        return None


class GeminiClient(ProviderClient):
    """Google Gemini ``generateContent``: one free-text prompt per call."""

    def auth_headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": str(self.config.api_key)}

    def build_payload(self, prompt: str, sampling: Mapping[str, Any]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
        generation: Dict[str, Any] = {}
        if "temperature" in sampling:
            generation["temperature"] = sampling["temperature"]
        if "top_p" in sampling:
            generation["topP"] = sampling["top_p"]
        if "max_tokens" in sampling:
            generation["maxOutputTokens"] = sampling["max_tokens"]
        if generation:
            payload["generationConfig"] = generation
        return payload

    def extract_text(self, data: Mapping[str, Any]) -> str:
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], Mapping):
            raise MalformedResponseError(self.provider_id, "response missing candidates")
        content = candidates[0].get("content")
        parts = content.get("parts") if isinstance(content, Mapping) else None
        if not isinstance(parts, list) or not parts or not isinstance(parts[0], Mapping):
            raise MalformedResponseError(self.provider_id, "response missing content parts")
        text = parts[0].get("text")
        if not isinstance(text, str):
            raise MalformedResponseError(self.provider_id, "response missing text content")
        return text


class ChatCompletionClient(ProviderClient):
    """OpenAI-style ``/chat/completions`` with a fixed system preamble."""

    def build_payload(self, prompt: str, sampling: Mapping[str, Any]) -> Dict[str, Any]:
        messages = []
        if self.config.system_prompt:
            messages.append({"role": "system", "content": self.config.system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {
            "model": self.config.model_name,
            "messages": messages,
            "stream": False,
        }
        payload.update(sampling)
        return payload

    def extract_text(self, data: Mapping[str, Any]) -> str:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], Mapping):
            raise MalformedResponseError(self.provider_id, "response missing choices")
        message = choices[0].get("message")
        if not isinstance(message, Mapping):
            raise MalformedResponseError(self.provider_id, "response missing message")
        content = message.get("content")
        if not isinstance(content, str):
            raise MalformedResponseError(self.provider_id, "response missing text content")
        return content


_CLIENT_KINDS: Dict[str, Callable[[ProviderConfig, httpx.AsyncClient], ProviderClient]] = {
    "prompt": GeminiClient,
    "chat": ChatCompletionClient,
}


@dataclass(frozen=True)
class ProviderLookup:
    """Outcome of resolving a model id: a client, or the reason there is none."""

    provider_id: str
    client: Optional[ProviderClient] = None
    error: Optional[UnknownProvider] = None

    @property
    def ok(self) -> bool:
        return self.client is not None

    def unwrap(self) -> ProviderClient:
        if self.client is None:
            raise self.error or UnknownProvider(self.provider_id)
        return self.client


class ProviderRegistry:
    """Maps model ids to clients sharing one ``httpx.AsyncClient``."""

    _DEFAULT_TIMEOUT = 60.0

    def __init__(
        self,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._clients: Dict[str, ProviderClient] = {}
        self._configs: Dict[str, ProviderConfig] = {}

    def register(self, provider_id: str, config: ProviderConfig) -> ProviderClient:
        factory = _CLIENT_KINDS.get(config.kind)
        if factory is None:
            raise ValueError(f"Unsupported provider kind '{config.kind}' for '{provider_id}'")
        client = factory(config, self._http)
        self._clients[provider_id] = client
        self._configs[provider_id] = config
        return client

    def lookup(self, provider_id: str) -> ProviderLookup:
        client = self._clients.get(provider_id)
        if client is None:
            return ProviderLookup(provider_id, error=UnknownProvider(provider_id, self.ids()))
        return ProviderLookup(provider_id, client=client)

    def resolve(self, provider_id: str) -> ProviderClient:
        return self.lookup(provider_id).unwrap()

    def config(self, provider_id: str) -> ProviderConfig:
        try:
            return self._configs[provider_id]
        except KeyError:
            raise UnknownProvider(provider_id, self.ids()) from None

    def ids(self) -> List[str]:
        return list(self._clients.keys())

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._clients

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


def gemini_config(api_key: Optional[str], model: str = "gemini-2.0-flash", endpoint: Optional[str] = None) -> ProviderConfig:
    return ProviderConfig(
        id="gemini",
        api_key=api_key,
        endpoint=endpoint
        or f"https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent",
        model_name=model,
        kind="prompt",
    )


def perplexity_config(
    api_key: Optional[str],
    model: str = "sonar",
    endpoint: str = "https://api.perplexity.ai/chat/completions",
) -> ProviderConfig:
    return ProviderConfig(
        id="perplexity",
        api_key=api_key,
        endpoint=endpoint,
        model_name=model,
        kind="chat",
        temperature=0.7,
        top_p=0.9,
        max_tokens=4096,
        system_prompt=PERPLEXITY_SYSTEM_PROMPT,
    )
