"""Three-state failure gate guarding calls to the remote system.

CLOSED passes calls through and counts failures inside the monitoring
period. OPEN rejects calls until the reset timeout has elapsed since the last
failure. HALF_OPEN admits a bounded number of probes: a failed probe reopens
the gate, and a success once the probe budget is used closes it.

The gate never retries and never swallows the wrapped operation's error.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, TypeVar

from ticket_mirror.config import GateSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GateState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_TRANSITIONS: dict[GateState, frozenset[GateState]] = {
    GateState.CLOSED: frozenset({GateState.OPEN}),
    GateState.OPEN: frozenset({GateState.HALF_OPEN}),
    GateState.HALF_OPEN: frozenset({GateState.CLOSED, GateState.OPEN}),
}


class GateRejectedError(RuntimeError):
    """The gate refused to attempt the call."""


class CircuitOpenError(GateRejectedError):
    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(
            f"Failure gate '{name}' is OPEN. Next attempt in {retry_after:.1f}s"
        )
        self.retry_after = retry_after


class CircuitHalfOpenExhaustedError(GateRejectedError):
    def __init__(self, name: str, max_calls: int) -> None:
        super().__init__(
            f"Failure gate '{name}' is HALF_OPEN and all {max_calls} probe calls are in use"
        )
        self.max_calls = max_calls


class IllegalTransitionError(RuntimeError):
    pass


@dataclass(frozen=True)
class GateConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    monitoring_period: float = 60.0
    half_open_max_calls: int = 3
    minimum_calls: int = 5

    @classmethod
    def from_settings(cls, settings: GateSettings) -> "GateConfig":
        return cls(
            failure_threshold=settings.failure_threshold,
            reset_timeout=settings.reset_timeout_seconds,
            monitoring_period=settings.monitoring_period_seconds,
            half_open_max_calls=settings.half_open_max_calls,
            minimum_calls=settings.minimum_calls,
        )


@dataclass(frozen=True)
class GateMetrics:
    state: GateState
    failure_count: int
    success_count: int
    total_calls: int
    last_failure_time: float | None
    last_success_time: float | None
    state_changed_at: float
    half_open_probes_in_flight: int


class FailureGate:
    def __init__(
        self,
        config: GateConfig | None = None,
        *,
        name: str = "remote",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or GateConfig()
        self._clock = clock
        self._state = GateState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._total_calls = 0
        self._failure_times: deque[float] = deque()
        self._last_failure_time: float | None = None
        self._last_success_time: float | None = None
        self._state_changed_at = clock()
        self._half_open_probes = 0

        logger.info(
            "Failure gate '%s' initialized: threshold=%d reset_timeout=%.1fs "
            "monitoring_period=%.1fs half_open_max_calls=%d minimum_calls=%d",
            name,
            self.config.failure_threshold,
            self.config.reset_timeout,
            self.config.monitoring_period,
            self.config.half_open_max_calls,
            self.config.minimum_calls,
        )

    @property
    def state(self) -> GateState:
        return self._state

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._admit()
        self._total_calls += 1
        try:
            result = await operation()
        except Exception as exc:
            self._on_failure(exc)
            raise
        self._on_success()
        return result

    def _admit(self) -> None:
        if self._state is GateState.OPEN:
            if self._time_until_reset() > 0:
                raise CircuitOpenError(self.name, self._time_until_reset())
            self._transition(GateState.HALF_OPEN)

        if self._state is GateState.HALF_OPEN:
            if self._half_open_probes >= self.config.half_open_max_calls:
                raise CircuitHalfOpenExhaustedError(self.name, self.config.half_open_max_calls)
            self._half_open_probes += 1

    def _on_success(self) -> None:
        self._success_count += 1
        self._last_success_time = self._clock()

        if self._state is GateState.HALF_OPEN:
            if self._half_open_probes >= self.config.half_open_max_calls:
                self._transition(GateState.CLOSED)
        elif self._state is GateState.CLOSED:
            self._reset_failures()

    def _on_failure(self, exc: Exception) -> None:
        now = self._clock()
        self._failure_count += 1
        self._failure_times.append(now)
        self._last_failure_time = now
        logger.debug("Failure gate '%s' recorded failure: %s", self.name, exc)

        if self._state is GateState.HALF_OPEN:
            self._transition(GateState.OPEN)
        elif self._state is GateState.CLOSED and self._should_open():
            self._transition(GateState.OPEN)

    def _should_open(self) -> bool:
        if self._total_calls < self.config.minimum_calls:
            return False
        return self._recent_failures() >= self.config.failure_threshold

    def _recent_failures(self) -> int:
        window_start = self._clock() - self.config.monitoring_period
        while self._failure_times and self._failure_times[0] <= window_start:
            self._failure_times.popleft()
        return len(self._failure_times)

    def _time_until_reset(self) -> float:
        reference = self._state_changed_at
        if self._last_failure_time is not None:
            reference = max(reference, self._last_failure_time)
        elapsed = self._clock() - reference
        return max(0.0, self.config.reset_timeout - elapsed)

    def _reset_failures(self) -> None:
        self._failure_count = 0
        self._failure_times.clear()

    def _transition(self, target: GateState, *, force: bool = False) -> None:
        if not force and target not in _TRANSITIONS[self._state]:
            raise IllegalTransitionError(f"{self._state.value} -> {target.value}")

        previous = self._state
        self._state = target
        self._state_changed_at = self._clock()
        self._half_open_probes = 0

        if target is GateState.CLOSED:
            self._reset_failures()
            self._success_count = 0
            self._total_calls = 0
            logger.info("Failure gate '%s' CLOSED (was %s)", self.name, previous.value)
        elif target is GateState.OPEN:
            logger.warning(
                "Failure gate '%s' OPEN (was %s, %d failures in monitoring period)",
                self.name,
                previous.value,
                len(self._failure_times),
            )
        else:
            logger.info("Failure gate '%s' HALF_OPEN (probing recovery)", self.name)

    def force_open(self) -> None:
        self._transition(GateState.OPEN, force=True)
        logger.warning("Failure gate '%s' manually forced OPEN", self.name)

    def force_closed(self) -> None:
        self._transition(GateState.CLOSED, force=True)
        logger.info("Failure gate '%s' manually forced CLOSED", self.name)

    def reset(self) -> None:
        self._transition(GateState.CLOSED, force=True)
        self._last_failure_time = None
        self._last_success_time = None
        logger.info("Failure gate '%s' manually reset", self.name)

    def get_metrics(self) -> GateMetrics:
        return GateMetrics(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            total_calls=self._total_calls,
            last_failure_time=self._last_failure_time,
            last_success_time=self._last_success_time,
            state_changed_at=self._state_changed_at,
            half_open_probes_in_flight=self._half_open_probes,
        )

    def get_health_status(self) -> dict[str, Any]:
        metrics = self.get_metrics()
        failure_rate = (
            self._failure_count / self._total_calls if self._total_calls > 0 else 0.0
        )
        details = {
            **asdict(metrics),
            "state": metrics.state.value,
            "recent_failures": self._recent_failures(),
            "failure_rate": round(failure_rate, 2),
            "time_until_reset": (
                self._time_until_reset() if self._state is GateState.OPEN else 0.0
            ),
            "config": asdict(self.config),
        }
        return {
            "healthy": self._state is GateState.CLOSED and failure_rate < 0.5,
            "state": self._state.value,
            "details": details,
        }
