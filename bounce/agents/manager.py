"""Supervises CLI agent processes: spawn limits, health checks, restarts and shutdown."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from bounce.agents.base import (
    HEALTHY,
    UNHEALTHY,
    AgentAdapter,
    AgentConfig,
    AgentProcess,
    CircuitBreakerState,
)
from bounce.agents.circuit_breaker import CircuitBreaker
from bounce.events import Emitter
from config.config_loader import AgentsConfig

logger = logging.getLogger(__name__)

AGENT_SPAWNED = "agent-spawned"
AGENT_STOPPED = "agent-stopped"
AGENT_CRASHED = "agent-crashed"
AGENT_RESTARTED = "agent-restarted"
AGENT_HEALTH_CHANGED = "agent-health-changed"
AGENT_OUTPUT = "agent-output"

_SHUTDOWN_POLL_SEC = 0.05


class AgentManagerError(Exception):
    """Base class for agent manager failures."""


class AdapterNotFoundError(AgentManagerError):
    def __init__(self, adapter_name: str) -> None:
        self.adapter_name = adapter_name
        super().__init__(f"Adapter not registered: {adapter_name}")


class AdapterAlreadyRegisteredError(AgentManagerError):
    def __init__(self, adapter_name: str) -> None:
        self.adapter_name = adapter_name
        super().__init__(f"Adapter already registered: {adapter_name}")


class AgentNotFoundError(AgentManagerError):
    def __init__(self, process_id: str) -> None:
        self.process_id = process_id
        super().__init__(f"Agent not found: {process_id}")


class AgentNotRunningError(AgentManagerError):
    def __init__(self, process_id: str) -> None:
        self.process_id = process_id
        super().__init__(f"Agent not running: {process_id}")


class ConcurrencyLimitError(AgentManagerError):
    def __init__(self, running: int, limit: int) -> None:
        self.running = running
        self.limit = limit
        super().__init__(f"Concurrency limit reached ({running}/{limit} agents running)")


class CircuitOpenError(AgentManagerError):
    def __init__(self, adapter_name: str, remaining_sec: float) -> None:
        self.adapter_name = adapter_name
        self.remaining_sec = remaining_sec
        super().__init__(f"Circuit open for {adapter_name}, retry in {remaining_sec:.1f}s")


class ManagerShuttingDownError(AgentManagerError):
    def __init__(self) -> None:
        super().__init__("Agent manager is shutting down")


@dataclass
class _ManagedAgent:
    process: AgentProcess
    adapter: AgentAdapter
    config: AgentConfig
    restart_count: int = 0
    restart_task: asyncio.Task | None = None
    respawning: bool = False
    crashed: bool = False
    unsubscribe_output: Callable[[], None] | None = None


class AgentManager(Emitter):
    """Owns every spawned agent and the per-adapter circuit breakers.

    Events (single dict payload):
        agent-spawned: process_id, adapter_name
        agent-restarted: process_id, adapter_name, attempt
        agent-stopped: process_id, reason
        agent-crashed: process_id, error
        agent-health-changed: process_id, health
        agent-output: process_id, data
    """

    def __init__(self, options: AgentsConfig | None = None) -> None:
        super().__init__()
        self.options = options or AgentsConfig()
        self._adapters: dict[str, AgentAdapter] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self._agents: dict[str, _ManagedAgent] = {}
        self._health_task: asyncio.Task | None = None
        self._shutting_down = False

    # ------------------------------------------------------------------
    # Adapters
    # ------------------------------------------------------------------

    def register_adapter(self, adapter: AgentAdapter) -> None:
        if adapter.name in self._adapters:
            raise AdapterAlreadyRegisteredError(adapter.name)
        self._adapters[adapter.name] = adapter
        self._breakers[adapter.name] = CircuitBreaker(
            adapter.name,
            max_failures=self.options.circuit_breaker_max_failures,
            cooldown_sec=self.options.circuit_breaker_cooldown_sec,
        )

    def get_circuit_breaker_state(self, adapter_name: str) -> CircuitBreakerState | None:
        breaker = self._breakers.get(adapter_name)
        return breaker.snapshot() if breaker else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def spawn_agent(self, adapter_name: str, config: AgentConfig) -> AgentProcess:
        """Start an agent.

        Checks run in order: shutdown, adapter lookup, concurrency limit,
        circuit breaker. A spawn failure counts against the adapter's
        breaker and is re-raised.
        """
        if self._shutting_down:
            raise ManagerShuttingDownError()

        adapter = self._adapters.get(adapter_name)
        if adapter is None:
            raise AdapterNotFoundError(adapter_name)

        running = self._running_count()
        if running >= self.options.max_concurrent:
            raise ConcurrencyLimitError(running, self.options.max_concurrent)

        breaker = self._breakers[adapter_name]
        if not breaker.allow_request():
            raise CircuitOpenError(adapter_name, breaker.remaining_sec())

        try:
            process = await adapter.spawn(config)
        except Exception as exc:
            breaker.record_failure()
            logger.warning("Spawn failed for %s: %s", adapter_name, exc)
            raise
        breaker.record_success()

        managed = _ManagedAgent(process=process, adapter=adapter, config=config)
        self._agents[process.id] = managed
        self._wire_output(managed)
        logger.info("Agent spawned: %s", process.id)
        self.emit(AGENT_SPAWNED, {"process_id": process.id, "adapter_name": adapter_name})
        return process

    async def kill_agent(self, process_id: str) -> None:
        managed = self._agents.pop(process_id, None)
        if managed is None:
            raise AgentNotFoundError(process_id)
        self._cancel_restart(managed)
        self._unwire_output(managed)
        await self._kill_quietly(managed)
        self.emit(AGENT_STOPPED, {"process_id": process_id, "reason": "killed"})

    async def kill_all(self) -> None:
        ids = list(self._agents)
        results = await asyncio.gather(*(self.kill_agent(i) for i in ids), return_exceptions=True)
        for process_id, result in zip(ids, results):
            if isinstance(result, Exception):
                logger.warning("Failed to kill %s: %s", process_id, result)

    async def send_prompt(self, process_id: str, prompt: str) -> None:
        managed = self._agents.get(process_id)
        if managed is None:
            raise AgentNotFoundError(process_id)
        if not managed.process.running:
            raise AgentNotRunningError(process_id)
        await managed.adapter.send_prompt(managed.process, prompt)

    def list_agents(self) -> list[AgentProcess]:
        return [m.process for m in self._agents.values()]

    def get_agent(self, process_id: str) -> AgentProcess | None:
        managed = self._agents.get(process_id)
        return managed.process if managed else None

    # ------------------------------------------------------------------
    # Health checks and restarts
    # ------------------------------------------------------------------

    def start_health_checks(self) -> None:
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop())

    def stop_health_checks(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.options.health_check_interval_sec)
            self.run_health_checks()

    def run_health_checks(self) -> None:
        """One pass over every agent. Crashed agents get a restart scheduled."""
        for process_id, managed in list(self._agents.items()):
            process = managed.process
            if managed.adapter.is_alive(process):
                if process.health != HEALTHY:
                    process.health = HEALTHY
                    self.emit(AGENT_HEALTH_CHANGED, {"process_id": process_id, "health": HEALTHY})
                continue

            if not managed.crashed:
                managed.crashed = True
                process.health = UNHEALTHY
                process.running = False
                error = process.last_error or "process exited"
                logger.warning("Agent crashed: %s (%s)", process_id, error)
                self.emit(AGENT_HEALTH_CHANGED, {"process_id": process_id, "health": UNHEALTHY})
                self.emit(AGENT_CRASHED, {"process_id": process_id, "error": error})

            if managed.restart_task is None:
                self._schedule_restart(process_id)

    def _schedule_restart(self, process_id: str) -> None:
        managed = self._agents.get(process_id)
        if managed is None or self._shutting_down:
            return

        limit = self.options.max_restart_attempts
        if managed.restart_count >= limit:
            logger.error("Agent %s exceeded %d restart attempts, giving up", process_id, limit)
            self._unwire_output(managed)
            del self._agents[process_id]
            self.emit(
                AGENT_STOPPED,
                {"process_id": process_id, "reason": f"Max restart attempts ({limit}) exceeded"},
            )
            return

        delay = self.options.restart_backoff_base_sec * 2 ** managed.restart_count
        logger.info("Restarting %s in %.2fs (attempt %d)", process_id, delay, managed.restart_count + 1)
        managed.restart_task = asyncio.create_task(self._restart_after(process_id, delay))

    async def _restart_after(self, process_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        managed = self._agents.get(process_id)
        if managed is None or self._shutting_down:
            return

        # restart_task stays set until this attempt finishes so health passes skip the agent.
        try:
            await self._respawn(process_id, managed)
        finally:
            if managed.restart_task is asyncio.current_task():
                managed.restart_task = None

    async def _respawn(self, process_id: str, managed: _ManagedAgent) -> None:
        managed.restart_count += 1

        running = self._running_count()
        if running >= self.options.max_concurrent:
            logger.warning(
                "Restart of %s deferred: concurrency limit reached (%d/%d)",
                process_id, running, self.options.max_concurrent,
            )
            self._schedule_restart(process_id)
            return

        managed.respawning = True
        try:
            self._unwire_output(managed)
            await self._kill_quietly(managed)
            try:
                process = await managed.adapter.spawn(managed.config)
            except Exception as exc:
                logger.warning("Restart of %s failed: %s", process_id, exc)
                managed.process.last_error = str(exc)
                self._schedule_restart(process_id)
                return
        finally:
            managed.respawning = False

        if self._agents.get(process_id) is not managed or self._shutting_down:
            # Killed or shut down while the new process was starting.
            try:
                await managed.adapter.kill(process)
            except Exception as exc:
                logger.warning("Adapter kill failed for %s: %s", process.id, exc)
            return

        managed.process = process
        managed.crashed = False
        if process.id != process_id:
            self._agents.pop(process_id, None)
            self._agents[process.id] = managed
        self._wire_output(managed)
        logger.info("Agent restarted: %s -> %s (attempt %d)", process_id, process.id, managed.restart_count)
        self.emit(
            AGENT_RESTARTED,
            {"process_id": process.id, "adapter_name": process.adapter_name, "attempt": managed.restart_count},
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop everything. Processes still running after the grace period are killed again."""
        self._shutting_down = True
        self.stop_health_checks()

        agents = list(self._agents.items())
        for _, managed in agents:
            self._cancel_restart(managed)
            self._unwire_output(managed)

        await asyncio.gather(*(self._kill_quietly(m) for _, m in agents))

        deadline = asyncio.get_running_loop().time() + self.options.shutdown_grace_sec
        while any(m.process.running for _, m in agents):
            if asyncio.get_running_loop().time() >= deadline:
                stragglers = [m for _, m in agents if m.process.running]
                logger.warning("Force-killing %d agent(s) after grace period", len(stragglers))
                await asyncio.gather(*(self._kill_quietly(m) for m in stragglers))
                for m in stragglers:
                    m.process.running = False
                break
            await asyncio.sleep(_SHUTDOWN_POLL_SEC)

        for process_id, _ in agents:
            self.emit(AGENT_STOPPED, {"process_id": process_id, "reason": "shutdown"})
        self._agents.clear()
        self._breakers.clear()
        self._adapters.clear()
        self.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _running_count(self) -> int:
        """Running agents plus crashed ones holding a slot while they respawn."""
        return sum(1 for m in self._agents.values() if m.process.running or m.respawning)

    def _wire_output(self, managed: _ManagedAgent) -> None:
        process_id = managed.process.id

        def forward(data: Any) -> None:
            self.emit(AGENT_OUTPUT, {"process_id": process_id, "data": data})

        managed.unsubscribe_output = managed.adapter.on_output(managed.process, forward)

    def _unwire_output(self, managed: _ManagedAgent) -> None:
        if managed.unsubscribe_output is not None:
            managed.unsubscribe_output()
            managed.unsubscribe_output = None

    def _cancel_restart(self, managed: _ManagedAgent) -> None:
        if managed.restart_task is not None:
            managed.restart_task.cancel()
            managed.restart_task = None

    async def _kill_quietly(self, managed: _ManagedAgent) -> None:
        try:
            await managed.adapter.kill(managed.process)
        except Exception as exc:
            logger.warning("Adapter kill failed for %s: %s", managed.process.id, exc)
