"""
Circuit breaker around outbound WhatsApp Cloud API calls.

When Meta is down every alert dispatch would otherwise burn its full retry
budget; once the breaker opens, sends fail fast with CircuitBreakerOpenError
and the batch is marked failed with reason "circuit_open" instead.

closed -> open after ``failure_threshold`` consecutive failures
open -> half_open once ``timeout_seconds`` have passed since opening
half_open -> closed after ``success_threshold`` successes, back to open on any failure
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ParamSpec, TypeVar

from app.core.exceptions import CircuitBreakerOpenError, ValidationException
from app.core.logging import get_logger

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3
    # Errors caused by the request itself (bad phone number etc.); they say
    # nothing about the provider's health and are re-raised without counting.
    ignored_exceptions: tuple[type[BaseException], ...] = ()


class CircuitBreaker:
    """One breaker per external service, shared by the web app and a worker process."""

    _registry: dict[str, "CircuitBreaker"] = {}
    _registry_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        # threading.Lock: Celery tasks each run on a fresh event loop
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._trial_successes = 0
        self._trial_calls = 0
        self._opened_at = 0.0
        self._times_opened = 0
        self._last_error: str | None = None

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        with cls._registry_lock:
            breaker = cls._registry.get(service_name)
            if breaker is None:
                breaker = cls._registry[service_name] = cls(service_name, config)
            return breaker

    @classmethod
    def all_instances(cls) -> list["CircuitBreaker"]:
        with cls._registry_lock:
            return list(cls._registry.values())

    @classmethod
    def reset_all(cls) -> None:
        """Forget every registered breaker (tests)."""
        with cls._registry_lock:
            cls._registry.clear()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def _set_state(self, new_state: CircuitState) -> None:
        """Caller holds self._lock."""
        old_state, self._state = self._state, new_state

        if new_state is CircuitState.OPEN:
            self._opened_at = time.time()
            self._times_opened += 1
        elif new_state is CircuitState.HALF_OPEN:
            self._trial_calls = 0
            self._trial_successes = 0
        else:
            self._consecutive_failures = 0
            self._trial_successes = 0

        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.service_name}': {old_state.value} -> {new_state.value}",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "last_error": self._last_error,
            },
        )

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_successes += 1
                if self._trial_successes >= self.config.success_threshold:
                    self._set_state(CircuitState.CLOSED)
            else:
                self._consecutive_failures = 0

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if error is not None:
                self._last_error = f"{type(error).__name__}: {error}"

            logger.debug(
                f"Circuit breaker '{self.service_name}' failure {self._consecutive_failures}"
                f"/{self.config.failure_threshold}",
                extra_data={"service": self.service_name, "error": self._last_error},
            )

            if self._state is CircuitState.HALF_OPEN or (
                self._state is CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                self._set_state(CircuitState.OPEN)

    def can_execute(self) -> bool:
        """Whether a call may go out now; claims a trial slot when half-open."""
        with self._lock:
            if self._state is CircuitState.OPEN:
                if self._seconds_open() < self.config.timeout_seconds:
                    return False
                self._set_state(CircuitState.HALF_OPEN)

            if self._state is CircuitState.HALF_OPEN:
                if self._trial_calls >= self.config.half_open_max_calls:
                    return False
                self._trial_calls += 1
            return True

    def _seconds_open(self) -> float:
        return time.time() - self._opened_at

    def get_retry_after(self) -> float:
        """Seconds until an open breaker lets a trial call through."""
        if self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - self._seconds_open())

    def snapshot(self) -> dict[str, Any]:
        opened_at = None
        if self._times_opened:
            opened_at = datetime.fromtimestamp(self._opened_at, tz=timezone.utc).isoformat()
        return {
            "service": self.service_name,
            "state": self._state.value,
            "failure_count": self._consecutive_failures,
            "retry_after_seconds": round(self.get_retry_after(), 1),
            "times_opened": self._times_opened,
            "last_opened_at": opened_at,
            "last_error": self._last_error,
        }

    async def execute(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """
        Run ``func`` (sync or async) through the breaker.

        Raises:
            CircuitBreakerOpenError: the breaker is open or out of trial slots
        """
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except self.config.ignored_exceptions:
            raise
        except Exception as exc:
            self.record_failure(exc)
            raise

        self.record_success()
        return result


def get_whatsapp_cloud_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker.get_instance(
        "whatsapp_cloud",
        CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=30.0,
            ignored_exceptions=(ValidationException,),
        ),
    )
