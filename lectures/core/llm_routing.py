"""
Routes chat requests to a provider by model-name prefix.

``ollama:llama3`` goes to the provider registered as ``ollama`` with model
``llama3``; a model without a recognised prefix (``gpt-4``,
``llama3.2:3b``) goes to the default provider unchanged.
"""

import dataclasses
import logging

from lectures.core.constants import (
    KNOWN_PROVIDER_PREFIXES, ProviderName, ErrorCode, TranscriptionBackend,
)
from lectures.core.error_codes import ProviderError
from lectures.core.llm_provider import Provider, ChatRequest, ChatStream, ReadWriteLock
from lectures.core.llm_ollama import OllamaProvider
from lectures.core.llm_openai import OpenAICompatibleProvider, OpenRouterProvider

logger = logging.getLogger(__name__)

_API_KEY_SETTINGS = {
    'openrouter_api_key': ProviderName.OPENROUTER,
    'openai_api_key': ProviderName.OPENAI,
}

# Keys the speech-to-text backends read, by backend name
_TRANSCRIPTION_KEY_SETTINGS = {
    'deepgram_api_key': TranscriptionBackend.DEEPGRAM,
    'openai_api_key': TranscriptionBackend.OPENAI,
}


class RoutingProvider(Provider):
    name = "routing"

    def __init__(self, default: Provider | None = None):
        self._lock = ReadWriteLock()
        self._providers: dict[str, Provider] = {}
        self._default = default

    def register(self, name: str, provider: Provider):
        with self._lock.write():
            self._providers[name] = provider

    def set_default(self, provider: Provider):
        with self._lock.write():
            self._default = provider

    def get_provider(self, name: str) -> Provider | None:
        with self._lock.read():
            return self._providers.get(name)

    @property
    def default(self) -> Provider | None:
        with self._lock.read():
            return self._default

    def resolve(self, model: str) -> tuple[Provider, str]:
        """Return (provider, model name to send) for a possibly prefixed model."""
        with self._lock.read():
            providers = dict(self._providers)
            default = self._default

        if ":" in model:
            prefix, rest = model.split(":", 1)
            if prefix in providers:
                return providers[prefix], rest
            if prefix in KNOWN_PROVIDER_PREFIXES:
                if default is not None and default.name == prefix:
                    return default, rest
                raise ProviderError(f"LLM provider {prefix!r} is not configured",
                                    code=ErrorCode.INVALID_REQUEST)

        if default is None:
            raise ProviderError(f"No LLM provider found for: {model}",
                                code=ErrorCode.INVALID_REQUEST)
        return default, model

    def chat(self, ctx, request: ChatRequest) -> ChatStream:
        provider, model = self.resolve(request.model)
        if model != request.model:
            logger.debug("Routing %s to %s as %s", request.model, provider.name, model)
        return provider.chat(ctx, dataclasses.replace(request, model=model))

    def set_provider_api_key(self, provider_name: str, api_key: str):
        provider = self.get_provider(provider_name)
        if provider is None:
            logger.warning("Cannot set API key: provider %s not registered", provider_name)
            return
        provider.set_api_key(api_key)


def build_routing_provider(config) -> RoutingProvider:
    """Create every configured backend and pick the default by ``llm_provider``."""
    routing = RoutingProvider()
    routing.register(ProviderName.OLLAMA, OllamaProvider(config.get('ollama_base_url')))
    routing.register(ProviderName.OPENROUTER, OpenRouterProvider(
        config.get('openrouter_api_key', ''), config.get('openrouter_base_url')))
    routing.register(ProviderName.OPENAI, OpenAICompatibleProvider(
        config.get('openai_api_key', ''), config.get('openai_base_url')))

    default_name = config.get('llm_provider', ProviderName.OPENROUTER)
    routing.set_default(routing.get_provider(default_name))
    logger.info("LLM providers ready (default: %s)", default_name)
    return routing


def bind_config(config, routing: RoutingProvider, transcriber=None):
    """
    Hot-swap credentials and the default provider when settings change.
    ``transcriber`` is the active speech-to-text backend, if any.
    """

    def on_change(key: str, value):
        if key in _API_KEY_SETTINGS:
            routing.set_provider_api_key(_API_KEY_SETTINGS[key], value)
        if transcriber is not None and _TRANSCRIPTION_KEY_SETTINGS.get(key) == transcriber.name:
            transcriber.set_api_key(value)
            logger.info("%s transcription credentials updated", transcriber.name)
        if key == 'llm_provider':
            provider = routing.get_provider(value)
            if provider is not None:
                routing.set_default(provider)

    config.subscribe(on_change)
