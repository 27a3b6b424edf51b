"""Adapts configured providers to the orchestrator's send_message callable."""

import asyncio
import logging

from bounce.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)


class ProviderTransport:
    """Routes send_message(model_id, ...) to the provider registered under model_id.

    Instances are callable, so one can be handed straight to
    BounceOrchestrator.
    """

    def __init__(self, providers: dict[str, AIProvider]) -> None:
        self._providers = dict(providers)

    @property
    def model_ids(self) -> list[str]:
        return list(self._providers)

    async def send_message(
        self,
        model_id: str,
        system_prompt: str,
        user_message: str,
        abort: asyncio.Event | None = None,
    ) -> str:
        provider = self._providers.get(model_id)
        if provider is None:
            raise ProviderError(model_id, "No provider configured for this model id")
        if abort is not None and abort.is_set():
            raise ProviderError(model_id, "Request aborted before sending")

        response = await provider.generate(system_prompt, user_message)
        logger.debug("%s answered in %.2fs (%d chars)", model_id, response.latency_sec, len(response.content))
        return response.content

    __call__ = send_message
