from __future__ import annotations
"""
Streaming LLM transport over the OpenAI SDK.

Every provider family is reached through the OpenAI-compatible wire format: OpenAI
directly, Anthropic and Google through their compatibility endpoints (base_url), and
Azure through AsyncAzureOpenAI. The rest of the code only sees text chunks.

- AGENT_PROFILES: selectable agent ids -> (family, model, label)
- CredentialStore: one key per family (plus Azure endpoint/deployment)
- InferenceClient.stream_completion(): async generator of UTF-8 text chunks
"""
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional
import logging

from openai import APIError, AsyncAzureOpenAI, AsyncOpenAI

from .config import SETTINGS, Settings
from .errors import AgentConfigMissing, ProviderDecodeError, ProviderTransportError

log = logging.getLogger("llm_client")

FAMILY_BASE_URLS: Dict[str, Optional[str]] = {
    "openai": None,
    "anthropic": "https://api.anthropic.com/v1/",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai/",
}
FAMILIES = ("openai", "anthropic", "google", "azure")
AZURE_EXTRA_KEYS = ("azure_endpoint", "azure_deployment")


@dataclass(frozen=True)
class AgentProfile:
    provider_id: str
    family: str
    model: str
    label: str


AGENT_PROFILES: Dict[str, AgentProfile] = {p.provider_id: p for p in (
    AgentProfile("openai-gpt4", "openai", "gpt-4-turbo-preview", "GPT-4 Turbo"),
    AgentProfile("openai-gpt35", "openai", "gpt-3.5-turbo", "GPT-3.5 Turbo"),
    AgentProfile("claude-sonnet", "anthropic", "claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet"),
    AgentProfile("claude-haiku", "anthropic", "claude-3-haiku-20240307", "Claude 3 Haiku"),
    AgentProfile("gemini-pro", "google", "gemini-pro", "Gemini Pro"),
    AgentProfile("gemini-flash", "google", "gemini-1.5-flash", "Gemini 1.5 Flash"),
    AgentProfile("azure-gpt4", "azure", "", "Azure GPT-4"),
    AgentProfile("azure-gpt35", "azure", "", "Azure GPT-3.5"),
)}


def get_profile(provider_id: str) -> AgentProfile:
    try:
        return AGENT_PROFILES[provider_id]
    except KeyError:
        raise ValueError(f"Unknown agent provider '{provider_id}'. Choose one of: {', '.join(AGENT_PROFILES)}") from None


class CredentialStore:
    """In-memory credentials keyed by provider family (never persisted)."""

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = {k: v for k, v in (values or {}).items() if v}

    @classmethod
    def from_settings(cls, settings: Settings = SETTINGS) -> "CredentialStore":
        return cls({
            "openai": settings.openai_api_key,
            "anthropic": settings.anthropic_api_key,
            "google": settings.google_api_key,
            "azure": settings.azure_api_key,
            "azure_endpoint": settings.azure_endpoint,
            "azure_deployment": settings.azure_deployment,
        })

    def set(self, key: str, value: str) -> None:
        if key not in FAMILIES and key not in AZURE_EXTRA_KEYS:
            raise ValueError(f"Unknown credential key '{key}'")
        value = (value or "").strip()
        if value:
            self._values[key] = value
        else:
            self._values.pop(key, None)

    def get(self, key: str) -> str:
        return self._values.get(key, "")

    def configured(self) -> Dict[str, bool]:
        return {k: bool(self._values.get(k)) for k in FAMILIES + AZURE_EXTRA_KEYS}

    def require(self, profile: AgentProfile) -> str:
        key = self.get(profile.family)
        if not key:
            raise AgentConfigMissing(profile.family)
        if profile.family == "azure":
            missing = [k for k in AZURE_EXTRA_KEYS if not self.get(k)]
            if missing:
                raise AgentConfigMissing("azure", f"missing {', '.join(missing)}")
        return key


class InferenceClient:
    """Streams chat completions for an agent profile using the stored credentials."""

    def __init__(self, credentials: CredentialStore, settings: Settings = SETTINGS):
        self.credentials = credentials
        self.settings = settings
        self._clients: Dict[tuple, object] = {}

    def _client_for(self, profile: AgentProfile):
        key = self.credentials.require(profile)
        if profile.family == "azure":
            endpoint = self.credentials.get("azure_endpoint")
            deployment = self.credentials.get("azure_deployment")
            cache_key = ("azure", key, endpoint, deployment)
            if cache_key not in self._clients:
                self._clients[cache_key] = AsyncAzureOpenAI(
                    api_key=key,
                    azure_endpoint=endpoint,
                    azure_deployment=deployment,
                    api_version=self.settings.azure_api_version,
                )
            return self._clients[cache_key], deployment
        cache_key = (profile.family, key)
        if cache_key not in self._clients:
            self._clients[cache_key] = AsyncOpenAI(api_key=key, base_url=FAMILY_BASE_URLS[profile.family])
        return self._clients[cache_key], profile.model

    async def stream_completion(self, provider_id: str, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        """Yield text chunks; raises AgentConfigMissing, ProviderTransportError, ProviderDecodeError."""
        profile = get_profile(provider_id)
        client, model = self._client_for(profile)
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            stream = await client.chat.completions.create(
                model=model,
                messages=messages,
                stream=True,
                temperature=self.settings.temperature,
                max_tokens=self.settings.max_tokens,
                timeout=self.settings.request_timeout_s,
            )
            async for chunk in stream:
                text = _delta_text(chunk)
                if text:
                    yield text
        except APIError as e:
            log.error("Streaming request to %s (%s) failed: %s", profile.provider_id, model, e)
            raise ProviderTransportError(f"{profile.label}: {e}") from e


def _delta_text(chunk) -> str:
    choices = getattr(chunk, "choices", None)
    if choices is None:
        raise ProviderDecodeError(f"Stream chunk without choices: {chunk!r}"[:200])
    if not choices:
        # usage/filter-only chunks carry no text
        return ""
    delta = getattr(choices[0], "delta", None)
    if delta is None:
        return ""
    content = getattr(delta, "content", None)
    if content is None:
        return ""
    if not isinstance(content, str):
        raise ProviderDecodeError(f"Unexpected delta content type {type(content).__name__}")
    return content
