"""Readiness polling primitive used by every phase."""

import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from homecluster import console

logger = logging.getLogger(__name__)


class PollStatus(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed-out"


@dataclass
class PollResult:
    """Outcome of a wait_until call."""

    status: PollStatus
    attempts: int
    elapsed: float

    @property
    def ready(self) -> bool:
        return self.status is PollStatus.READY


def max_attempts_for(interval: float, timeout: float) -> int:
    """Upper bound on predicate invocations for the given interval and timeout."""
    if interval <= 0:
        raise ValueError("interval must be positive")
    if timeout < 0:
        raise ValueError("timeout must not be negative")
    return int(timeout // interval) + 1


def wait_until(
    predicate: Callable[[], bool],
    *,
    interval: float,
    timeout: float,
    description: str = "condition",
    progress_every: int = 6,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """Poll predicate until it returns True or timeout elapses.

    The predicate is invoked at most ``timeout // interval + 1`` times. A progress
    line is printed every ``progress_every`` unsuccessful attempts so a watching
    operator can tell the process has not hung.

    Args:
        predicate: Probe returning True once the target is ready
        interval: Seconds between attempts
        timeout: Maximum seconds to wait
        description: What is being waited for, used in progress output
        progress_every: Attempts between progress lines (0 disables them)
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)

    Returns:
        PollResult with READY on the first True, TIMED_OUT otherwise
    """
    limit = max_attempts_for(interval, timeout)
    start = clock()
    deadline = start + timeout
    attempts = 0

    logger.debug(f"Waiting for {description} (interval={interval}s, timeout={timeout}s)")

    while attempts < limit:
        attempts += 1
        if predicate():
            elapsed = clock() - start
            logger.debug(f"{description} ready after {attempts} attempt(s), {elapsed:.1f}s")
            return PollResult(PollStatus.READY, attempts, elapsed)

        if attempts >= limit or clock() >= deadline:
            break

        if progress_every and attempts % progress_every == 0:
            console.info(f"… still waiting for {description} ({clock() - start:.0f}s elapsed)")

        sleep(interval)

    elapsed = clock() - start
    logger.warning(f"Timed out waiting for {description} after {attempts} attempt(s), {elapsed:.1f}s")
    return PollResult(PollStatus.TIMED_OUT, attempts, elapsed)


def tcp_port_open(host: str, port: int, timeout: float = 3.0) -> bool:
    """Return True if a TCP connection to host:port succeeds."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError as e:
        logger.debug(f"TCP probe {host}:{port} failed: {e}")
        return False
