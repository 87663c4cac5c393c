"""Per-dependency circuit breaker.

A breaker guards every call to one external dependency (the extraction worker,
the object store). After ``failure_threshold`` consecutive failures it opens and
rejects calls without attempting them; once ``cooldown`` seconds have passed it
lets exactly one trial call through (half-open). A successful call in any state
resets the breaker to closed.

The state machine is pybreaker's. pybreaker only runs synchronous callables, so
the coroutine is awaited here and its outcome replayed through the pybreaker
breaker, which then counts it. Opening, cooldown and the single half-open trial
are gated here before the coroutine starts.

Breakers are never shared across dependencies, so a flaky worker cannot make
storage calls fail fast.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar, Union

import pybreaker
import structlog

from kapture.clients.exceptions import TransientDependencyError
from kapture.core.metrics import MetricsCollector

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """State of a circuit breaker, using pybreaker's state names."""

    CLOSED = pybreaker.STATE_CLOSED
    OPEN = pybreaker.STATE_OPEN
    HALF_OPEN = pybreaker.STATE_HALF_OPEN


class CircuitOpenError(TransientDependencyError):
    """Raised instead of calling a dependency whose breaker is open."""

    def __init__(self, dependency: str, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(
            f"Circuit for '{dependency}' is open, retry in {retry_after:.1f}s",
            dependency=dependency,
        )


@dataclass(frozen=True)
class CircuitSnapshot:
    """Read-only view of a breaker for health reporting."""

    name: str
    state: CircuitState
    failure_count: int
    last_failure_at: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_at": self.last_failure_at,
        }


class BreakerEventListener(pybreaker.CircuitBreakerListener):
    """Feeds pybreaker transitions and failures into logs, metrics and the adapter."""

    def __init__(self, breaker: "CircuitBreaker") -> None:
        self._breaker = breaker

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        self._breaker._last_failure_at = self._breaker._clock()
        MetricsCollector.record_circuit_failure(self._breaker.name)

    def state_change(
        self,
        cb: pybreaker.CircuitBreaker,
        old_state: Optional[pybreaker.CircuitBreakerState],
        new_state: pybreaker.CircuitBreakerState,
    ) -> None:
        old_name = getattr(old_state, "name", None)
        new_name = new_state.name
        if new_name == pybreaker.STATE_OPEN:
            self._breaker._opened_at = self._breaker._clock()
        elif new_name == pybreaker.STATE_CLOSED:
            self._breaker._opened_at = None
        if old_name == new_name:
            return

        MetricsCollector.update_circuit_state(self._breaker.name, new_name)
        log = logger.warning if new_name == pybreaker.STATE_OPEN else logger.info
        log(
            "circuit_state_changed",
            dependency=self._breaker.name,
            old_state=old_name,
            new_state=new_name,
            failure_count=cb.fail_counter,
        )


def _replay(outcome: Union[T, BaseException]) -> T:
    if isinstance(outcome, BaseException):
        raise outcome
    return outcome


class CircuitBreaker:
    """Fail-fast guard for a single external dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        excluded_exceptions: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the breaker.

        Args:
            name: Dependency name, used in logs, metrics and errors.
            failure_threshold: Consecutive failures that open the circuit.
            cooldown: Seconds to stay open before allowing a trial call.
            excluded_exceptions: Exceptions that mean the dependency answered
                normally (for example "not found") and count as success.
            clock: Monotonic time source, injectable for tests.
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock

        self._opened_at: Optional[float] = None
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False

        self._cb = pybreaker.CircuitBreaker(
            fail_max=failure_threshold,
            reset_timeout=cooldown,
            exclude=list(excluded_exceptions),
            listeners=[BreakerEventListener(self)],
            name=name,
        )

        MetricsCollector.update_circuit_state(name, CircuitState.CLOSED.value)

    @property
    def state(self) -> CircuitState:
        return CircuitState(self._cb.current_state)

    @property
    def failure_count(self) -> int:
        return self._cb.fail_counter

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            name=self.name,
            state=self.state,
            failure_count=self.failure_count,
            last_failure_at=self._last_failure_at,
        )

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open, or half-open with the
                trial call already in flight.
        """
        self._acquire_permission()

        try:
            outcome: Union[T, BaseException] = await func(*args, **kwargs)
        except Exception as e:
            outcome = e
        except BaseException:
            # Cancelled mid-trial: free the slot without judging the dependency
            self._trial_in_flight = False
            raise

        self._trial_in_flight = False
        try:
            return self._cb.call(_replay, outcome)
        except pybreaker.CircuitBreakerError:
            # Raised when this outcome tripped the breaker, or when it opened
            # while the call was in flight; the caller sees the real outcome
            return _replay(outcome)

    def reset(self) -> None:
        """Force the breaker closed (admin/test use)."""
        self._trial_in_flight = False
        self._cb.close()

    def force_open(self) -> None:
        """Force the breaker open for a full cooldown (admin/test use)."""
        self._trial_in_flight = False
        self._cb.open()

    def _acquire_permission(self) -> None:
        if self.state is CircuitState.OPEN:
            elapsed = self._clock() - (self._opened_at or 0.0)
            if elapsed < self.cooldown:
                raise CircuitOpenError(self.name, retry_after=self.cooldown - elapsed)
            self._cb.half_open()

        if self.state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, retry_after=0.0)
            self._trial_in_flight = True


class CircuitBreakerRegistry:
    """Hands out one breaker per dependency name."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(
        self,
        name: str,
        excluded_exceptions: Tuple[Type[BaseException], ...] = (),
    ) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self.failure_threshold,
                cooldown=self.cooldown,
                excluded_exceptions=excluded_exceptions,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def snapshots(self) -> Dict[str, CircuitSnapshot]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}
