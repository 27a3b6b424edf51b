"""xAI Grok provider over the OpenAI-compatible API."""

from openai import AsyncOpenAI

from bounce.providers.base import ProviderError
from bounce.providers.openai_provider import OpenAIProvider


class XAIProvider(OpenAIProvider):
    """Same wire format as OpenAI; base_url is mandatory."""

    label = "xAI"

    def _make_client(self, api_key: str) -> AsyncOpenAI:
        if not self._config.base_url:
            raise ProviderError(self._config.name, "base_url is required for xAI provider")
        return AsyncOpenAI(api_key=api_key, base_url=self._config.base_url)
