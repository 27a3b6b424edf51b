"""Advisory cross-process file lock with stale-lock recovery."""

import asyncio
import contextlib
import logging
import os
import time
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY_SEC = 0.2
DEFAULT_STALE_TIMEOUT_SEC = 10.0
DEFAULT_LOCK_TIMEOUT_SEC = 5.0


class LockError(Exception):
    """Raised when a file lock cannot be acquired."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(message)


class LockTimeoutError(LockError):
    """Raised when acquisition exceeds the hard lock timeout."""

    code = "LOCK_TIMEOUT"

    def __init__(self, path: str, timeout_sec: float) -> None:
        self.timeout_sec = timeout_sec
        super().__init__(path, f"Lock acquisition timed out after {timeout_sec}s for file: {path}")


class LockHeldError(LockError):
    """Raised when every retry found the lock held by someone else."""

    code = "LOCK_HELD"

    def __init__(self, path: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(path, f"Lock still held after {attempts} attempts for file: {path}")


def lock_path_for(path: str | Path) -> Path:
    return Path(f"{path}.lock")


def _is_stale(marker: Path, stale_timeout_sec: float) -> bool:
    try:
        age = time.time() - marker.stat().st_mtime
    except FileNotFoundError:
        return False
    return age > stale_timeout_sec


def _reclaim(marker: Path, stale_timeout_sec: float) -> None:
    """Remove a stale marker without deleting a lock another process just took.

    The marker is first renamed to a tombstone only this process knows. Only
    one contender can win that rename. The tombstone is then checked again,
    and if it turns out to be fresh it is handed back.
    """
    tombstone = marker.with_name(f"{marker.name}.stale-{os.getpid()}-{uuid.uuid4().hex}")
    try:
        os.rename(marker, tombstone)
    except FileNotFoundError:
        return

    if _is_stale(tombstone, stale_timeout_sec):
        logger.warning("Reclaiming stale lock: %s", marker)
        os.rmdir(tombstone)
        return

    logger.debug("Lock was refreshed during reclaim, restoring: %s", marker)
    try:
        os.rename(tombstone, marker)
    except OSError:
        logger.warning("Could not restore lock %s, removing tombstone", marker)
        os.rmdir(tombstone)


async def _acquire(
    marker: Path,
    retries: int,
    retry_delay_sec: float,
    stale_timeout_sec: float,
) -> None:
    # mkdir is atomic on every platform we care about, which makes the
    # directory itself the ownership token.
    attempt = 0
    while True:
        try:
            os.mkdir(marker)
            return
        except FileExistsError:
            pass

        if _is_stale(marker, stale_timeout_sec):
            _reclaim(marker, stale_timeout_sec)
            continue

        if attempt >= retries:
            raise LockHeldError(str(marker)[: -len(".lock")], attempt + 1)

        delay = min(retry_delay_sec * (2 ** attempt), retry_delay_sec * 4)
        attempt += 1
        logger.debug("Lock busy: %s, retry %d in %.2fs", marker, attempt, delay)
        await asyncio.sleep(delay)


async def _keep_fresh(marker: Path, interval_sec: float) -> None:
    """Touch the marker while it is held so other processes never see it as stale."""
    while True:
        await asyncio.sleep(interval_sec)
        try:
            os.utime(marker)
        except FileNotFoundError:
            logger.warning("Lock marker disappeared while held: %s", marker)
            return


async def with_file_lock(
    path: str | Path,
    operation: Callable[[], Awaitable[T]],
    retries: int = DEFAULT_RETRIES,
    retry_delay_sec: float = DEFAULT_RETRY_DELAY_SEC,
    stale_timeout_sec: float = DEFAULT_STALE_TIMEOUT_SEC,
    lock_timeout_sec: float = DEFAULT_LOCK_TIMEOUT_SEC,
) -> T:
    """Run operation while holding an exclusive lock on path.

    The lock is a ``<path>.lock`` directory next to the target. A marker
    older than stale_timeout_sec is presumed abandoned and reclaimed.

    Args:
        path: File to lock. It does not need to exist.
        operation: Zero-argument coroutine function run under the lock.
        retries: Extra acquisition attempts when the lock is busy.
        retry_delay_sec: First backoff delay; doubles per attempt, capped at 4x.
        stale_timeout_sec: Age after which an existing marker is reclaimed.
        lock_timeout_sec: Hard ceiling on the whole acquisition.

    Returns:
        Whatever operation returns.

    Raises:
        LockTimeoutError: Acquisition took longer than lock_timeout_sec.
        LockHeldError: The lock stayed busy through every retry.
    """
    marker = lock_path_for(path)
    try:
        await asyncio.wait_for(
            _acquire(marker, retries, retry_delay_sec, stale_timeout_sec),
            timeout=lock_timeout_sec,
        )
    except TimeoutError as exc:
        raise LockTimeoutError(str(path), lock_timeout_sec) from exc

    refresher = asyncio.create_task(_keep_fresh(marker, max(stale_timeout_sec / 2, 0.01)))
    try:
        return await operation()
    finally:
        refresher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await refresher
        try:
            os.rmdir(marker)
        except FileNotFoundError:
            logger.warning("Lock already released: %s", marker)
