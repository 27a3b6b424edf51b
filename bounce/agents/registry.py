"""Lookup and availability discovery for agent adapters."""

from __future__ import annotations

import asyncio
import logging

from bounce.agents.base import AgentAdapter

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Adapters by name, in registration order. Re-registering a name replaces the adapter."""

    def __init__(self) -> None:
        self._adapters: dict[str, AgentAdapter] = {}

    def register(self, adapter: AgentAdapter) -> None:
        if not adapter.name or not adapter.name.strip():
            raise ValueError("Adapter name must not be empty")
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> AgentAdapter | None:
        return self._adapters.get(name)

    def list(self) -> list[AgentAdapter]:
        return list(self._adapters.values())

    async def discover_available(self) -> list[AgentAdapter]:
        """Adapters whose tool is installed, probed concurrently. A probe that raises counts as unavailable."""
        adapters = self.list()
        results = await asyncio.gather(*(a.is_available() for a in adapters), return_exceptions=True)

        available = []
        for adapter, result in zip(adapters, results):
            if isinstance(result, BaseException):
                logger.warning("Availability check failed for %s: %s", adapter.name, result)
            elif result:
                available.append(adapter)
        return available
