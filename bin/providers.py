"""Sitesmith provider registry: static catalog of AI backends and selection policy.

Two families of backends:
  - hosted-inference providers (fireworks-ai, nebius, sambanova, novita) are
    reached through the Hugging Face router with a user/shared token and
    always run DEFAULT_MODEL_ID;
  - API-key backends (openai, gemini) carry their own model lists and are
    dispatched whole-document first.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

DEFAULT_MODEL_ID = "deepseek-ai/DeepSeek-V3-0324"
FALLBACK_PROVIDER_ID = "novita"  # Fixed default backend when a token is available.
API_KEY_PROVIDERS = ("gemini", "openai")  # Preference order when no token exists.


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of one AI backend."""

    id: str
    name: str
    max_tokens: int  # Combined input+output context budget.
    models: Tuple[str, ...] = ()
    default_model: str = ""
    api_key_env: Optional[str] = None  # Env var holding the key (API-key backends only).
    whole_document: bool = False  # Buffered completion first, streaming as fallback.

    @property
    def needs_api_key(self) -> bool:
        return self.api_key_env is not None


PROVIDERS: Dict[str, ProviderDescriptor] = {
    "fireworks-ai": ProviderDescriptor(
        id="fireworks-ai", name="Fireworks AI", max_tokens=131_000,
    ),
    "openai": ProviderDescriptor(
        id="openai", name="OpenAI", max_tokens=128_000,
        models=(
            "gpt-4.1",
            "gpt-4o",
            "gpt-4o-audio-preview",
            "chatgpt-4o-latest",
            "o4-mini",
            "gpt-4.1-mini",
            "gpt-4.1-nano",
            "o3-mini",
            "gpt-4o-mini",
            "gpt-4o-mini-audio-preview",
        ),
        default_model="o3-mini",
        api_key_env="OPENAI_API_KEY",
        whole_document=True,
    ),
    "gemini": ProviderDescriptor(
        id="gemini", name="Google Gemini", max_tokens=100_000,
        models=(
            "gemini-2.5-flash-preview-04-17",
            "gemini-2.5-pro-exp-03-25",
            "gemini-2.0-flash",
            "gemini-2.0-pro-exp-02-05",
            "gemini-2.0-flash-thinking-exp-01-21",
            "gemini-2.0-flash-lite",
            "gemini-1.5-flash",
            "gemini-1.5-flash-8b",
            "gemini-1.5-pro",
            "gemini-embedding-exp",
            "gemini-2.0-flash-live-001",
            "gemma-3-27b-it",
        ),
        default_model="gemini-2.0-flash",
        api_key_env="GEMINI_API_KEY",
        whole_document=True,
    ),
    "nebius": ProviderDescriptor(
        id="nebius", name="Nebius AI Studio", max_tokens=131_000,
    ),
    "sambanova": ProviderDescriptor(
        id="sambanova", name="SambaNova", max_tokens=8_000,
    ),
    "novita": ProviderDescriptor(
        id="novita", name="NovitaAI", max_tokens=16_000,
    ),
}

# Last model picked per provider; consulted when a request names none.
_SELECTED_MODELS: Dict[str, str] = {}


def get_provider(key: str | None) -> Optional[ProviderDescriptor]:
    """Return the descriptor for *key*, or None when unknown."""
    if not key:
        return None
    return PROVIDERS.get(key)


def supports_models(desc: ProviderDescriptor) -> bool:
    return bool(desc.models)


def default_model(desc: ProviderDescriptor) -> str:
    """Model used when nothing else is selected."""
    if supports_models(desc):
        return desc.default_model or desc.models[0]
    return DEFAULT_MODEL_ID


def select_default_provider(token: str, api_keys: Dict[str, str]) -> ProviderDescriptor:
    """Pick the provider for "auto" / unknown keys.

    A hosted-inference token wins and selects the fixed default backend;
    without one, the first API-key backend with a configured key is used.
    """
    if token:
        return PROVIDERS[FALLBACK_PROVIDER_ID]
    for pid in API_KEY_PROVIDERS:
        if api_keys.get(pid):
            return PROVIDERS[pid]
    return PROVIDERS[FALLBACK_PROVIDER_ID]


def fallback_api_key_provider(api_keys: Dict[str, str]) -> Optional[ProviderDescriptor]:
    """First API-key backend with a configured key, or None."""
    for pid in API_KEY_PROVIDERS:
        if api_keys.get(pid):
            return PROVIDERS[pid]
    return None


def resolve_model(desc: ProviderDescriptor, requested: str | None = None) -> str:
    """Resolve the model for *desc* and remember it for later requests."""
    if not supports_models(desc):
        return DEFAULT_MODEL_ID
    requested = (requested or "").strip()
    if requested and requested in desc.models:
        model = requested
    else:
        model = _SELECTED_MODELS.get(desc.id) or default_model(desc)
    _SELECTED_MODELS[desc.id] = model
    return model


def describe_providers(api_keys: Dict[str, str], token_available: bool) -> Dict[str, Dict[str, Any]]:
    """Non-secret provider metadata for UI selectors."""
    result = {}
    for key, desc in PROVIDERS.items():
        result[key] = {
            "name": desc.name,
            "max_tokens": desc.max_tokens,
            "models": list(desc.models),
            "defaultModel": default_model(desc),
            "needs_key": desc.needs_api_key,
            "has_key": bool(api_keys.get(key)) if desc.needs_api_key else token_available,
        }
    return result
