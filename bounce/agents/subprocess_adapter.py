"""Adapters that run an agent as a local CLI subprocess."""

import asyncio
import logging
import os
import shutil
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from bounce.agents.base import (
    UNHEALTHY,
    AgentAdapter,
    AgentCapabilities,
    AgentConfig,
    AgentProcess,
    OutputCallback,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096


@dataclass
class _Managed:
    process: AgentProcess
    proc: asyncio.subprocess.Process
    listeners: list[OutputCallback] = field(default_factory=list)
    tasks: list[asyncio.Task] = field(default_factory=list)
    killed: bool = False


class SubprocessAdapter(AgentAdapter):
    """Spawns `command` with config.args appended, pipes stdin and streams stdout/stderr."""

    def __init__(
        self,
        name: str,
        command: str,
        base_args: list[str] | None = None,
        capabilities: AgentCapabilities | None = None,
        kill_grace_sec: float = 5.0,
    ) -> None:
        self.name = name
        self.command = command
        self.base_args = list(base_args or [])
        self.capabilities = capabilities or AgentCapabilities()
        self.kill_grace_sec = kill_grace_sec
        self._managed: dict[str, _Managed] = {}

    async def is_available(self) -> bool:
        return shutil.which(self.command) is not None

    async def spawn(self, config: AgentConfig) -> AgentProcess:
        env = {**os.environ, **config.env}
        proc = await asyncio.create_subprocess_exec(
            self.command,
            *self.base_args,
            *config.args,
            cwd=config.cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        process = AgentProcess(
            id=f"{self.name}-{uuid.uuid4().hex[:8]}",
            adapter_name=self.name,
            pid=proc.pid,
        )
        managed = _Managed(process=process, proc=proc)
        self._managed[process.id] = managed
        managed.tasks = [
            asyncio.create_task(self._pump(managed, proc.stdout)),
            asyncio.create_task(self._pump(managed, proc.stderr)),
            asyncio.create_task(self._watch_exit(managed)),
        ]
        logger.info("Spawned %s (pid %s)", process.id, proc.pid)
        return process

    async def _pump(self, managed: _Managed, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            text = chunk.decode("utf-8", errors="replace")
            for callback in list(managed.listeners):
                try:
                    callback(text)
                except Exception:
                    logger.exception("Output listener for %s failed", managed.process.id)

    async def _watch_exit(self, managed: _Managed) -> None:
        code = await managed.proc.wait()
        process = managed.process
        process.running = False
        if not managed.killed and code != 0:
            process.health = UNHEALTHY
            process.failure_count += 1
            process.last_error = f"exited with code {code}"
            logger.warning("%s exited unexpectedly with code %s", process.id, code)
        else:
            logger.debug("%s exited with code %s", process.id, code)

    async def send_prompt(self, process: AgentProcess, prompt: str) -> None:
        managed = self._managed.get(process.id)
        if managed is None or not process.running or managed.proc.stdin is None:
            raise RuntimeError(f"Agent {process.id} is not running")
        try:
            managed.proc.stdin.write(prompt.encode("utf-8") + b"\n")
            await managed.proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            process.health = UNHEALTHY
            process.last_error = str(exc)
            raise RuntimeError(f"Agent {process.id} closed its input: {exc}") from exc

    def on_output(self, process: AgentProcess, callback: OutputCallback) -> Callable[[], None]:
        managed = self._managed.get(process.id)
        if managed is None:
            return lambda: None
        managed.listeners.append(callback)

        def unsubscribe() -> None:
            if callback in managed.listeners:
                managed.listeners.remove(callback)

        return unsubscribe

    def is_alive(self, process: AgentProcess) -> bool:
        managed = self._managed.get(process.id)
        return managed is not None and process.running and managed.proc.returncode is None

    async def kill(self, process: AgentProcess) -> None:
        managed = self._managed.pop(process.id, None)
        if managed is None:
            return
        managed.killed = True
        proc = managed.proc

        if proc.returncode is None:
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_sec)
            except ProcessLookupError:
                pass  # exited between the check and terminate()
            except TimeoutError:
                logger.warning("%s ignored SIGTERM for %.1fs, killing", process.id, self.kill_grace_sec)
                proc.kill()
                await proc.wait()

        process.running = False
        managed.listeners.clear()
        for task in managed.tasks:
            task.cancel()
        await asyncio.gather(*managed.tasks, return_exceptions=True)
        logger.info("Killed %s", process.id)


class ClaudeCodeAdapter(SubprocessAdapter):
    """Claude Code CLI in print mode."""

    def __init__(self, command: str = "claude", kill_grace_sec: float = 5.0) -> None:
        super().__init__(
            name="claude-code",
            command=command,
            base_args=["--print", "--output-format", "text"],
            capabilities=AgentCapabilities(
                can_read_files=True,
                can_write_files=True,
                can_execute_commands=True,
                supports_streaming=True,
                supports_conversation=True,
                max_context_tokens=200_000,
            ),
            kill_grace_sec=kill_grace_sec,
        )
