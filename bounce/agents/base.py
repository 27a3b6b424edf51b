"""Contract between the agent manager and the CLI tools that back agents."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
PROBING = "probing"

OutputCallback = Callable[[str], None]


@dataclass
class AgentCapabilities:
    can_read_files: bool = False
    can_write_files: bool = False
    can_execute_commands: bool = False
    supports_streaming: bool = False
    supports_conversation: bool = False
    max_context_tokens: int | None = None


@dataclass
class AgentConfig:
    cwd: str
    env: dict[str, str] = field(default_factory=dict)
    args: list[str] = field(default_factory=list)
    session_path: str | None = None   # protocol log the agent works against


@dataclass
class AgentProcess:
    """Handle for one spawned agent. Mutated by its adapter and the manager only."""

    id: str
    adapter_name: str
    health: str = HEALTHY
    pid: int | None = None
    running: bool = True
    failure_count: int = 0
    last_error: str | None = None


@dataclass
class CircuitBreakerState:
    health: str
    failure_count: int
    last_failure_time: float | None
    cooldown_sec: float
    max_failures: int


class AgentAdapter(ABC):
    """Lifecycle operations for one kind of CLI agent."""

    name: str
    capabilities: AgentCapabilities

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the underlying tool is installed."""
        ...

    @abstractmethod
    async def spawn(self, config: AgentConfig) -> AgentProcess:
        ...

    @abstractmethod
    async def send_prompt(self, process: AgentProcess, prompt: str) -> None:
        """Deliver prompt to a running process; raises if it is not running."""
        ...

    @abstractmethod
    def on_output(self, process: AgentProcess, callback: OutputCallback) -> Callable[[], None]:
        """Call callback with every chunk of output. Returns an unsubscribe function."""
        ...

    @abstractmethod
    def is_alive(self, process: AgentProcess) -> bool:
        ...

    @abstractmethod
    async def kill(self, process: AgentProcess) -> None:
        """Terminate the process, escalating to a forced kill after a grace period. Idempotent."""
        ...
