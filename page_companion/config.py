"""Configuration loading: optional YAML file plus environment overrides."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .queries.context import DEFAULT_CONTEXT_BUDGET
from .queries.providers import ProviderRegistry, gemini_config, perplexity_config
from .queries.types import ProviderConfig

_API_KEY_ENV = {
    "gemini": "GEMINI_API_KEY",
    "perplexity": "PERPLEXITY_API_KEY",
}
_OVERRIDABLE = ("temperature", "top_p", "max_tokens", "system_prompt")


class ConfigError(ValueError):
    """Raised when the configuration file cannot be used."""


def get_default_config_path() -> Path:
    return Path("~/.config/page-companion/config.yaml").expanduser()


def get_default_storage_path() -> Path:
    return Path("~/.page-companion/storage.json").expanduser()


@dataclass
class AppConfig:
    storage_path: Path = field(default_factory=get_default_storage_path)
    default_model: str = "gemini"
    context_budget: int = DEFAULT_CONTEXT_BUDGET
    prompts_dir: Optional[Path] = None
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)

    def build_registry(self, **kwargs: Any) -> ProviderRegistry:
        registry = ProviderRegistry(**kwargs)
        for provider_id, provider_config in self.providers.items():
            registry.register(provider_id, provider_config)
        return registry


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Read ``path`` (or the default location) and apply environment overrides.

    A missing file is not an error; the built-in providers are always present.
    """
    env = os.environ if environ is None else environ
    explicit = path or (Path(env["PAGE_COMPANION_CONFIG"]) if env.get("PAGE_COMPANION_CONFIG") else None)
    config_path = Path(explicit).expanduser() if explicit else get_default_config_path()

    raw: Mapping[str, Any] = {}
    if config_path.is_file():
        try:
            loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Could not read config {config_path}: {exc}") from exc
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, Mapping):
            raise ConfigError(f"Config {config_path} must contain a mapping")
        raw = loaded
    elif explicit:
        raise ConfigError(f"Config file not found: {config_path}")

    providers_raw = raw.get("providers") or {}
    if not isinstance(providers_raw, Mapping):
        raise ConfigError("'providers' must be a mapping of provider ids to settings")

    providers: Dict[str, ProviderConfig] = {}
    for provider_id in ("gemini", "perplexity"):
        settings = providers_raw.get(provider_id) or {}
        providers[provider_id] = _build_provider(provider_id, settings, env)

    config = AppConfig(providers=providers)
    storage = env.get("PAGE_COMPANION_STORAGE") or raw.get("storage_path")
    if storage:
        config.storage_path = Path(str(storage)).expanduser()
    if raw.get("prompts_dir"):
        config.prompts_dir = Path(str(raw["prompts_dir"])).expanduser()
    if raw.get("default_model"):
        config.default_model = str(raw["default_model"])
    if raw.get("context_budget") is not None:
        try:
            config.context_budget = int(raw["context_budget"])
        except (TypeError, ValueError) as exc:
            raise ConfigError("'context_budget' must be an integer") from exc
        if config.context_budget <= 0:
            raise ConfigError("'context_budget' must be positive")

    if config.default_model not in config.providers:
        raise ConfigError(
            f"default_model '{config.default_model}' is not one of: {', '.join(config.providers)}"
        )
    return config


def _build_provider(provider_id: str, settings: Any, env: Mapping[str, str]) -> ProviderConfig:
    if not isinstance(settings, Mapping):
        raise ConfigError(f"Settings for provider '{provider_id}' must be a mapping")

    api_key = _clean(env.get(_API_KEY_ENV[provider_id])) or _clean(settings.get("api_key"))
    model = _clean(settings.get("model"))
    endpoint = _clean(settings.get("endpoint"))

    kwargs: Dict[str, str] = {}
    if model:
        kwargs["model"] = model
    if endpoint:
        kwargs["endpoint"] = endpoint
    factory = gemini_config if provider_id == "gemini" else perplexity_config
    base = factory(api_key, **kwargs)

    overrides = {key: settings[key] for key in _OVERRIDABLE if settings.get(key) is not None}
    return replace(base, **overrides) if overrides else base


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
