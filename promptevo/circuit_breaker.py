"""
Circuit breaker guarding the LLM-backed evolution operations.

Each operation type (crossover, mutation, evaluation, variant_generation) has
its own independent state machine:

- CLOSED -> OPEN: after failure_threshold consecutive failures
- OPEN -> HALF_OPEN: once reset_timeout has elapsed since the last failure
- HALF_OPEN -> CLOSED: after success_threshold consecutive successes
- HALF_OPEN -> OPEN: on any failure

Transitions out of OPEN are checked lazily whenever the state is read; there
is no background timer. State lives on the instance only and is not shared
between processes or replicas.
"""

import asyncio
import inspect
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar, Union

from promptevo.config import (
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_HALF_OPEN_MAX_CALLS,
    DEFAULT_RESET_TIMEOUT_MS,
    DEFAULT_SUCCESS_THRESHOLD,
    DEFAULT_TIMEOUT_MS,
    OPERATION_TYPES,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class OperationTimeoutError(TimeoutError):
    """Raised when a guarded operation does not settle within the timeout."""

    def __init__(self, timeout_ms: float):
        super().__init__(f"Operation timed out after {timeout_ms:g}ms")
        self.timeout_ms = timeout_ms


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using default {default}")
        return default


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    success_threshold: int = DEFAULT_SUCCESS_THRESHOLD
    timeout_ms: float = DEFAULT_TIMEOUT_MS
    reset_timeout_ms: float = DEFAULT_RESET_TIMEOUT_MS
    half_open_max_calls: int = DEFAULT_HALF_OPEN_MAX_CALLS

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        """Load configuration from CIRCUIT_BREAKER_* environment variables."""
        return cls(
            failure_threshold=_env_int("CIRCUIT_BREAKER_FAILURE_THRESHOLD", DEFAULT_FAILURE_THRESHOLD),
            success_threshold=_env_int("CIRCUIT_BREAKER_SUCCESS_THRESHOLD", DEFAULT_SUCCESS_THRESHOLD),
            timeout_ms=_env_int("CIRCUIT_BREAKER_TIMEOUT_MS", DEFAULT_TIMEOUT_MS),
            reset_timeout_ms=_env_int("CIRCUIT_BREAKER_RESET_TIMEOUT_MS", DEFAULT_RESET_TIMEOUT_MS),
            half_open_max_calls=_env_int("CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS", DEFAULT_HALF_OPEN_MAX_CALLS),
        )


@dataclass
class CircuitStateDetails:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: Optional[float] = None  # clock seconds
    last_state_change: datetime = field(default_factory=datetime.now)
    total_failures: int = 0
    total_successes: int = 0
    trip_count: int = 0


@dataclass
class CircuitStateTransition:
    operation_type: str
    from_state: CircuitState
    to_state: CircuitState
    reason: str
    timestamp: datetime
    failure_count: int
    success_count: int


@dataclass
class CircuitBreakerResult(Generic[T]):
    success: bool
    used_fallback: bool
    circuit_state: CircuitState
    execution_time_ms: float
    data: Optional[T] = None
    error: Optional[BaseException] = None


@dataclass
class _ExecutionMetrics:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    fallback_requests: int = 0
    rejected_requests: int = 0
    total_execution_time_ms: float = 0.0


@dataclass
class CircuitBreakerMetrics:
    operation_type: str
    total_requests: int
    successful_requests: int
    failed_requests: int
    fallback_requests: int
    rejected_requests: int
    average_execution_time_ms: float
    current_state: CircuitState

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["current_state"] = self.current_state.value
        return data


@dataclass
class CircuitBreakerHealth:
    healthy: bool
    operations: Dict[str, Dict[str, Any]]
    config: CircuitBreakerConfig

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "operations": {
                op: {
                    **details,
                    "state": details["state"].value,
                    "last_state_change": details["last_state_change"].isoformat(),
                }
                for op, details in self.operations.items()
            },
            "config": asdict(self.config),
        }


def _discard_abandoned_result(task: "asyncio.Future[Any]") -> None:
    """Consume the outcome of an operation that already lost its timeout race."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(f"Abandoned operation finished with error after timeout: {exc}")
    else:
        logger.debug("Abandoned operation finished after timeout; result discarded")


class CircuitBreaker:
    """Per-operation-type circuit breaker with timeout and fallback."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._states: Dict[str, CircuitStateDetails] = {}
        self._metrics: Dict[str, _ExecutionMetrics] = {}
        # Guards the maps above; never held across an await.
        self._lock = threading.RLock()

        for operation_type in OPERATION_TYPES:
            self._initialize_state(operation_type)

        logger.info(
            "CircuitBreaker initialized with config: "
            f"failure_threshold={self.config.failure_threshold}, "
            f"success_threshold={self.config.success_threshold}, "
            f"timeout={self.config.timeout_ms}ms, "
            f"reset_timeout={self.config.reset_timeout_ms}ms"
        )

    async def execute(
        self,
        operation_type: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Union[T, Awaitable[T]]],
    ) -> CircuitBreakerResult[T]:
        """
        Run ``operation`` under circuit breaker protection.

        Args:
            operation_type: Which circuit to use
            operation: Zero-argument callable returning an awaitable
            fallback: Zero-argument callable returning a value or awaitable,
                used when the circuit is open or the operation fails

        Returns:
            CircuitBreakerResult with the operation's or fallback's data
        """
        start = self._clock()
        with self._lock:
            metrics = self._get_or_create_metrics(operation_type)
            metrics.total_requests += 1
            self._check_reset_timeout(operation_type)
            current_state = self._get_or_create_state(operation_type).state

            if current_state == CircuitState.OPEN:
                metrics.rejected_requests += 1
                metrics.fallback_requests += 1

        if current_state == CircuitState.OPEN:
            logger.debug(f"Circuit OPEN for {operation_type}, using fallback")
            try:
                data = await self._execute_fallback(fallback)
            except Exception as fallback_error:
                elapsed = self._record_time(operation_type, start)
                return CircuitBreakerResult(
                    success=False,
                    used_fallback=True,
                    circuit_state=current_state,
                    execution_time_ms=elapsed,
                    error=fallback_error,
                )
            elapsed = self._record_time(operation_type, start)
            return CircuitBreakerResult(
                success=True,
                data=data,
                used_fallback=True,
                circuit_state=current_state,
                execution_time_ms=elapsed,
            )

        try:
            data = await self._execute_with_timeout(operation, self.config.timeout_ms)
        except Exception as error:
            elapsed = self._record_time(operation_type, start)
            with self._lock:
                self._record_failure(operation_type, error)
                metrics.failed_requests += 1
                metrics.fallback_requests += 1

            logger.warning(f"Operation {operation_type} failed: {error}, using fallback")

            try:
                fallback_data = await self._execute_fallback(fallback)
            except Exception as fallback_error:
                logger.warning(f"Fallback for {operation_type} also failed: {fallback_error}")
                return CircuitBreakerResult(
                    success=False,
                    used_fallback=True,
                    circuit_state=self._current_state(operation_type),
                    execution_time_ms=elapsed,
                    error=error,
                )
            return CircuitBreakerResult(
                success=True,
                data=fallback_data,
                used_fallback=True,
                # may have changed after recording the failure
                circuit_state=self._current_state(operation_type),
                execution_time_ms=elapsed,
                error=error,
            )

        elapsed = self._record_time(operation_type, start)
        with self._lock:
            self._record_success(operation_type)
            metrics.successful_requests += 1
            state_after = self._current_state(operation_type)

        return CircuitBreakerResult(
            success=True,
            data=data,
            used_fallback=False,
            circuit_state=state_after,
            execution_time_ms=elapsed,
        )

    def get_state(self, operation_type: str) -> CircuitState:
        with self._lock:
            self._check_reset_timeout(operation_type)
            return self._get_or_create_state(operation_type).state

    def get_state_details(self, operation_type: str) -> CircuitStateDetails:
        """Return a copy of the full state for an operation type."""
        with self._lock:
            self._check_reset_timeout(operation_type)
            details = self._get_or_create_state(operation_type)
            return CircuitStateDetails(**vars(details))

    def is_allowing_requests(self, operation_type: str) -> bool:
        return self.get_state(operation_type) != CircuitState.OPEN

    def get_health(self) -> CircuitBreakerHealth:
        operations: Dict[str, Dict[str, Any]] = {}
        with self._lock:
            for operation_type in list(self._states):
                self._check_reset_timeout(operation_type)
                state = self._states[operation_type]
                operations[operation_type] = {
                    "state": state.state,
                    "failure_count": state.failure_count,
                    "success_count": state.success_count,
                    "total_failures": state.total_failures,
                    "total_successes": state.total_successes,
                    "trip_count": state.trip_count,
                    "last_state_change": state.last_state_change,
                }

        healthy = not any(op["state"] == CircuitState.OPEN for op in operations.values())
        return CircuitBreakerHealth(
            healthy=healthy,
            operations=operations,
            config=CircuitBreakerConfig(**asdict(self.config)),
        )

    def get_metrics(self, operation_type: str) -> CircuitBreakerMetrics:
        with self._lock:
            metrics = self._get_or_create_metrics(operation_type)
            state = self._get_or_create_state(operation_type)
            average = (
                metrics.total_execution_time_ms / metrics.total_requests
                if metrics.total_requests > 0
                else 0.0
            )
            return CircuitBreakerMetrics(
                operation_type=operation_type,
                total_requests=metrics.total_requests,
                successful_requests=metrics.successful_requests,
                failed_requests=metrics.failed_requests,
                fallback_requests=metrics.fallback_requests,
                rejected_requests=metrics.rejected_requests,
                average_execution_time_ms=average,
                current_state=state.state,
            )

    def get_all_metrics(self) -> List[CircuitBreakerMetrics]:
        with self._lock:
            operation_types = list(self._states)
        return [self.get_metrics(op) for op in operation_types]

    def reset(self, operation_type: str) -> None:
        with self._lock:
            self._initialize_state(operation_type)
        logger.info(f"Circuit breaker reset for operation: {operation_type}")

    def reset_all(self) -> None:
        with self._lock:
            for operation_type in list(self._states):
                self._initialize_state(operation_type)
        logger.info("All circuit breakers reset")

    def force_open(self, operation_type: str) -> None:
        with self._lock:
            state = self._get_or_create_state(operation_type)
            previous = state.state
            state.state = CircuitState.OPEN
            state.last_failure_time = self._clock()
            state.last_state_change = datetime.now()
            self._log_transition(CircuitStateTransition(
                operation_type=operation_type,
                from_state=previous,
                to_state=CircuitState.OPEN,
                reason="Forced open by admin",
                timestamp=datetime.now(),
                failure_count=state.failure_count,
                success_count=state.success_count,
            ))

    def force_close(self, operation_type: str) -> None:
        with self._lock:
            state = self._get_or_create_state(operation_type)
            previous = state.state
            state.state = CircuitState.CLOSED
            state.failure_count = 0
            state.success_count = 0
            state.last_state_change = datetime.now()
            self._log_transition(CircuitStateTransition(
                operation_type=operation_type,
                from_state=previous,
                to_state=CircuitState.CLOSED,
                reason="Forced closed by admin",
                timestamp=datetime.now(),
                failure_count=state.failure_count,
                success_count=state.success_count,
            ))

    # ------------------------------------------------------------------
    # Internal helpers (callers hold self._lock)
    # ------------------------------------------------------------------

    def _initialize_state(self, operation_type: str) -> None:
        self._states[operation_type] = CircuitStateDetails()
        self._metrics[operation_type] = _ExecutionMetrics()

    def _get_or_create_state(self, operation_type: str) -> CircuitStateDetails:
        if operation_type not in self._states:
            self._initialize_state(operation_type)
        return self._states[operation_type]

    def _get_or_create_metrics(self, operation_type: str) -> _ExecutionMetrics:
        if operation_type not in self._metrics:
            self._metrics[operation_type] = _ExecutionMetrics()
        return self._metrics[operation_type]

    def _current_state(self, operation_type: str) -> CircuitState:
        with self._lock:
            return self._get_or_create_state(operation_type).state

    def _record_time(self, operation_type: str, start: float) -> float:
        elapsed_ms = (self._clock() - start) * 1000
        with self._lock:
            self._get_or_create_metrics(operation_type).total_execution_time_ms += elapsed_ms
        return elapsed_ms

    def _record_success(self, operation_type: str) -> None:
        state = self._get_or_create_state(operation_type)
        state.total_successes += 1

        if state.state == CircuitState.HALF_OPEN:
            state.success_count += 1
            if state.success_count >= self.config.success_threshold:
                self._transition_to(
                    operation_type, CircuitState.CLOSED, "Success threshold reached in HALF_OPEN"
                )
        elif state.state == CircuitState.CLOSED:
            state.failure_count = 0

    def _record_failure(self, operation_type: str, error: BaseException) -> None:
        state = self._get_or_create_state(operation_type)
        state.total_failures += 1
        state.failure_count += 1
        state.last_failure_time = self._clock()

        if state.state == CircuitState.HALF_OPEN:
            self._transition_to(operation_type, CircuitState.OPEN, f"Failure in HALF_OPEN: {error}")
        elif state.state == CircuitState.CLOSED and state.failure_count >= self.config.failure_threshold:
            self._transition_to(
                operation_type,
                CircuitState.OPEN,
                f"Failure threshold reached ({state.failure_count}/{self.config.failure_threshold}): {error}",
            )

    def _check_reset_timeout(self, operation_type: str) -> None:
        state = self._get_or_create_state(operation_type)
        if state.state != CircuitState.OPEN or state.last_failure_time is None:
            return

        elapsed_ms = (self._clock() - state.last_failure_time) * 1000
        if elapsed_ms >= self.config.reset_timeout_ms:
            self._transition_to(
                operation_type,
                CircuitState.HALF_OPEN,
                f"Reset timeout elapsed ({elapsed_ms:.0f}ms >= {self.config.reset_timeout_ms}ms)",
            )

    def _transition_to(self, operation_type: str, new_state: CircuitState, reason: str) -> None:
        state = self._get_or_create_state(operation_type)
        previous = state.state

        state.state = new_state
        state.last_state_change = datetime.now()

        if new_state == CircuitState.CLOSED:
            state.failure_count = 0
            state.success_count = 0
        elif new_state == CircuitState.HALF_OPEN:
            state.success_count = 0
        elif new_state == CircuitState.OPEN:
            state.trip_count += 1
            state.success_count = 0

        self._log_transition(CircuitStateTransition(
            operation_type=operation_type,
            from_state=previous,
            to_state=new_state,
            reason=reason,
            timestamp=datetime.now(),
            failure_count=state.failure_count,
            success_count=state.success_count,
        ))

    @staticmethod
    def _log_transition(transition: CircuitStateTransition) -> None:
        message = (
            f"Circuit breaker state transition [{transition.operation_type}]: "
            f"{transition.from_state.value} -> {transition.to_state.value} | "
            f"Reason: {transition.reason} | "
            f"Failures: {transition.failure_count}, Successes: {transition.success_count}"
        )
        if transition.to_state == CircuitState.OPEN:
            logger.warning(message)
        else:
            logger.info(message)

    @staticmethod
    async def _execute_with_timeout(operation: Callable[[], Awaitable[T]], timeout_ms: float) -> T:
        # The loser of the race keeps running; only its result is discarded.
        task = asyncio.ensure_future(operation())
        done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        if task in done:
            return task.result()
        task.add_done_callback(_discard_abandoned_result)
        raise OperationTimeoutError(timeout_ms)

    @staticmethod
    async def _execute_fallback(fallback: Callable[[], Union[T, Awaitable[T]]]) -> T:
        result = fallback()
        if inspect.isawaitable(result):
            return await result
        return result
