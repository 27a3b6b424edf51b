"""Abstract base for model providers backing debate participants and the judge."""

from abc import ABC, abstractmethod

from bounce.models import ModelResponse


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


class AIProvider(ABC):
    """One configured model behind a vendor SDK."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def generate(self, system_prompt: str, prompt: str) -> ModelResponse:
        """Send one system + user prompt pair and return the model's answer.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...
