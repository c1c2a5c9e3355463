"""
Circuit breaker guarding the persistence collaborator.

Persistence calls run as background tasks, one per viewer join, chat line or
like. If storage goes down, each of those tasks would otherwise sit on its own
socket timeout. After enough consecutive failures the breaker rejects calls
outright. Then, once the recovery window has passed, it lets a single trial
call through to check on the backend.
"""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, TypeVar

from blogcast.components.core.constants import RealtimeConstants
from blogcast.components.core.exceptions import CircuitOpenError
from blogcast.config.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerCounters:
    """Lifetime call accounting, exported through get_stats()."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    times_opened: int = 0


class CircuitBreaker:
    """
    Consecutive-failure breaker for async calls.

    CLOSED counts consecutive failures and opens at the threshold. OPEN
    rejects with CircuitOpenError until `recovery_timeout` has elapsed since
    the last failure, then admits trial calls as HALF_OPEN. A trial success
    closes the circuit. A trial failure opens it again.

    State is only touched between awaits on the event loop, so it is not
    locked.

    Usage:
        breaker = CircuitBreaker("persistence")

        async with breaker:
            await store.append_message(chat_id, sender_id, message)

        @breaker.protect
        async def load_followers(identity_id: str) -> list[str]: ...
    """

    _LOG_LEVELS = {
        CircuitState.OPEN: logging.ERROR,
        CircuitState.HALF_OPEN: logging.WARNING,
        CircuitState.CLOSED: logging.INFO,
    }

    def __init__(
        self,
        name: str,
        failure_threshold: int = RealtimeConstants.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout: float = RealtimeConstants.CIRCUIT_RECOVERY_TIMEOUT,
        half_open_max_calls: int = RealtimeConstants.CIRCUIT_HALF_OPEN_MAX_CALLS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._trial_budget = half_open_max_calls
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._failed_at: float | None = None
        self._trials_in_flight = 0
        self._counters = BreakerCounters()

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def retry_after(self) -> float:
        """Seconds until an open circuit admits a trial call (0 when not open)."""
        if self._state is not CircuitState.OPEN or self._failed_at is None:
            return 0.0
        return max(0.0, self._recovery_timeout - (self._clock() - self._failed_at))

    async def __aenter__(self) -> "CircuitBreaker":
        self.before_call()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None:
            self.record_success()
        else:
            self.record_failure(exc_val)
        return False

    def before_call(self) -> None:
        """
        Admit the next call or reject it.

        Raises:
            CircuitOpenError: while OPEN, or in HALF_OPEN once the trial
                budget is spent.
        """
        self._counters.total_calls += 1

        if self._state is CircuitState.OPEN:
            wait = self.retry_after()
            if wait > 0:
                self._reject(f"Circuit '{self._name}' is open, retry in {wait:.1f}s")
            self._set_state(CircuitState.HALF_OPEN)

        if self._state is CircuitState.HALF_OPEN:
            if self._trials_in_flight >= self._trial_budget:
                self._reject(f"Circuit '{self._name}' is waiting on a trial call")
            self._trials_in_flight += 1

    def record_failure(self, error: BaseException | None = None) -> None:
        self._counters.failed_calls += 1
        self._consecutive_failures += 1
        self._failed_at = self._clock()

        tripped = (
            self._state is CircuitState.HALF_OPEN
            or self._consecutive_failures >= self._failure_threshold
        )
        if tripped and self._state is not CircuitState.OPEN:
            self._set_state(CircuitState.OPEN, error=error)

    def record_success(self) -> None:
        self._counters.successful_calls += 1
        self._consecutive_failures = 0
        if self._state is CircuitState.HALF_OPEN:
            self._set_state(CircuitState.CLOSED)

    def _reject(self, message: str) -> None:
        self._counters.rejected_calls += 1
        raise CircuitOpenError(message)

    def _set_state(self, new_state: CircuitState, error: BaseException | None = None) -> None:
        old_state = self._state
        if old_state is new_state:
            return

        self._state = new_state
        self._trials_in_flight = 0
        if new_state is CircuitState.OPEN:
            self._counters.times_opened += 1
        elif new_state is CircuitState.CLOSED:
            self._consecutive_failures = 0

        logger.log(
            self._LOG_LEVELS[new_state],
            "Circuit state changed",
            circuit=self._name,
            old_state=old_state.value,
            new_state=new_state.value,
            consecutive_failures=self._consecutive_failures,
            last_error=type(error).__name__ if error is not None else None,
        )

    def protect(
        self,
        func: Callable[..., Coroutine[Any, Any, T]],
    ) -> Callable[..., Coroutine[Any, Any, T]]:
        """Decorator form of `async with breaker`."""
        @functools.wraps(func)
        async def guarded(*args: Any, **kwargs: Any) -> T:
            async with self:
                return await func(*args, **kwargs)

        return guarded

    def reset(self) -> None:
        """Force the circuit closed, for operators recovering storage by hand."""
        self._set_state(CircuitState.CLOSED)
        self._consecutive_failures = 0
        self._failed_at = None
        logger.info("Circuit reset", circuit=self._name)

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self._name,
            "state": self._state.value,
            "failure_count": self._consecutive_failures,
            "failure_threshold": self._failure_threshold,
            "recovery_timeout": self._recovery_timeout,
            "retry_after": round(self.retry_after(), 3),
            **asdict(self._counters),
        }
