"""Provider health checks: ping each API before starting a debate."""

import asyncio
import logging

from bounce.providers.base import AIProvider

logger = logging.getLogger(__name__)

_PING_SYSTEM = "You are a connectivity check."
_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


async def _check_one(name: str, provider: AIProvider, timeout_sec: float) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(provider.generate(_PING_SYSTEM, _PING_PROMPT), timeout=timeout_sec)
    except TimeoutError:
        logger.warning("Health check timed out: %s", name)
        return name, False, f"timed out after {timeout_sec}s"
    except Exception as exc:
        logger.warning("Health check failed: %s: %s", name, exc)
        return name, False, str(exc)
    logger.debug("Health check passed: %s", name)
    return name, True, ""


async def run_health_checks(
    providers: dict[str, AIProvider],
    timeout_sec: float = _TIMEOUT_SEC,
) -> dict[str, tuple[bool, str]]:
    """Ping all providers in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p, timeout_sec) for n, p in providers.items()))
    return {name: (ok, err) for name, ok, err in results}
