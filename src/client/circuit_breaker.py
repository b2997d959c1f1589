"""Circuit breaker implementation with explicit state management."""

import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Union

from src.models.data_models import CircuitState, HalfOpenToken


class Clock(Protocol):
    """Clock interface for testable time management."""

    def now(self) -> float:
        """Return current time in seconds."""
        ...


class MonotonicClock:
    """Default clock implementation using time.monotonic."""

    def now(self) -> float:
        """Return current monotonic time in seconds."""
        return time.monotonic()


@dataclass
class CircuitBreakerState:
    """Internal state for one endpoint group."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at: float = 0.0
    half_open_token: Optional[HalfOpenToken] = None


class CircuitBreaker:
    """
    Circuit breaker with CLOSED/OPEN/HALF_OPEN states per endpoint group.

    - Opens after `failure_threshold` consecutive retryable failures
    - Rejects calls until `cooldown_seconds` have passed since opening
    - Then admits exactly one half-open trial call
    - Closes on a successful trial, reopens (restarting the cooldown) on failure
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Optional[Clock] = None
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            cooldown_seconds: Time to wait before attempting half-open trial
            clock: Clock interface for time management (defaults to MonotonicClock)
        """
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock or MonotonicClock()
        self._circuits: Dict[str, CircuitBreakerState] = {}

    def _get_circuit(self, group: str) -> CircuitBreakerState:
        if group not in self._circuits:
            self._circuits[group] = CircuitBreakerState()
        return self._circuits[group]

    def should_allow(self, group: str) -> Union[bool, HalfOpenToken]:
        """
        Check if a call should be allowed for the endpoint group.

        Returns:
            - True if circuit is CLOSED
            - False if circuit is OPEN, or HALF_OPEN with a trial in flight
            - HalfOpenToken if this caller is granted the trial call
        """
        circuit = self._get_circuit(group)
        current_time = self.clock.now()

        if circuit.state == CircuitState.CLOSED:
            return True

        if circuit.state == CircuitState.OPEN:
            if current_time - circuit.opened_at < self.cooldown_seconds:
                return False
            circuit.state = CircuitState.HALF_OPEN

        # HALF_OPEN: one trial at a time
        if circuit.half_open_token is not None:
            return False
        token = HalfOpenToken(endpoint=group, timestamp=current_time)
        circuit.half_open_token = token
        return token

    def retry_after(self, group: str) -> float:
        """Seconds left in the cooldown of an open circuit."""
        circuit = self._get_circuit(group)
        if circuit.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self.clock.now() - circuit.opened_at))

    def record_success(self, group: str, token: Optional[HalfOpenToken] = None) -> None:
        """Record a successful call; closes a half-open circuit."""
        circuit = self._get_circuit(group)
        circuit.state = CircuitState.CLOSED
        circuit.failure_count = 0
        circuit.half_open_token = None

    def record_failure(self, group: str, retryable: bool) -> None:
        """
        Record a failed call.

        Args:
            group: Endpoint group
            retryable: Only retryable failures count toward the threshold
        """
        circuit = self._get_circuit(group)
        current_time = self.clock.now()

        if not retryable:
            return

        if circuit.state == CircuitState.CLOSED:
            circuit.failure_count += 1
            if circuit.failure_count >= self.failure_threshold:
                circuit.state = CircuitState.OPEN
                circuit.opened_at = current_time

        elif circuit.state == CircuitState.HALF_OPEN:
            # Failed trial - reopen and restart cooldown
            circuit.state = CircuitState.OPEN
            circuit.failure_count = self.failure_threshold
            circuit.opened_at = current_time
            circuit.half_open_token = None

    def release(self, group: str, token: Optional[HalfOpenToken]) -> None:
        """Give back a half-open trial that ended without a verdict."""
        if token is None:
            return
        circuit = self._get_circuit(group)
        if circuit.half_open_token is token:
            circuit.half_open_token = None

    def state(self, group: str) -> CircuitState:
        return self._get_circuit(group).state

    def failure_count(self, group: str) -> int:
        return self._get_circuit(group).failure_count

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        return {
            group: {"state": c.state.value, "failure_count": c.failure_count}
            for group, c in self._circuits.items()
        }

    def reset(self, group: str) -> None:
        """Reset circuit breaker for an endpoint group."""
        if group in self._circuits:
            self._circuits[group] = CircuitBreakerState()
