"""
Retry and circuit breaking for calls that leave the process.

Source fetches go through `with_retry`; the query layer keys a
`CircuitBreaker` on the hosted search backend; the scheduler borrows
`RetryPolicy.compute_backoff` to space out checks after failures.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 32.0
    jitter: bool = True
    multiplier: float = 2.0
    retry_on_exceptions: Tuple[Type[BaseException], ...] = (Exception,)

    def compute_backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt + 1`, capped at `max_delay_seconds`."""
        raw = self.base_delay_seconds * self.multiplier ** attempt
        capped = min(raw, self.max_delay_seconds)
        if not self.jitter:
            return capped
        return random.uniform(0.5 * capped, 1.5 * capped)


@dataclass
class _Circuit:
    consecutive_failures: int = 0
    reopen_at: Optional[float] = None  # monotonic deadline while tripped


@dataclass
class CircuitBreaker:
    """
    Per-key breaker. After `failure_threshold` consecutive failures the key is
    tripped for `reset_timeout_seconds`; the first call after that is let
    through as a probe and its outcome decides whether the key closes again.
    """
    failure_threshold: int = 3
    reset_timeout_seconds: float = 60.0
    _circuits: Dict[str, _Circuit] = field(default_factory=dict)

    def is_open(self, key: str) -> bool:
        circuit = self._circuits.get(key)
        if circuit is None or circuit.reopen_at is None:
            return False
        if time.monotonic() < circuit.reopen_at:
            return True
        circuit.reopen_at = None
        return False

    def record_success(self, key: str) -> None:
        self._circuits.pop(key, None)

    def record_failure(self, key: str) -> None:
        circuit = self._circuits.setdefault(key, _Circuit())
        circuit.consecutive_failures += 1
        if circuit.consecutive_failures >= self.failure_threshold:
            circuit.reopen_at = time.monotonic() + self.reset_timeout_seconds

    def get_state_snapshot(self) -> Dict[str, Dict[str, object]]:
        now_mono = time.monotonic()
        now_wall = datetime.now(timezone.utc)
        snapshot: Dict[str, Dict[str, object]] = {}
        for key, circuit in self._circuits.items():
            reopen = None
            if circuit.reopen_at is not None:
                remaining = max(circuit.reopen_at - now_mono, 0.0)
                reopen = (now_wall + timedelta(seconds=remaining)).isoformat()
            snapshot[key] = {"failures": circuit.consecutive_failures, "open_until": reopen}
        return snapshot


async def with_retry(fn: Callable[[], Awaitable[T]], *, policy: RetryPolicy,
                     circuit_breaker: Optional[CircuitBreaker] = None,
                     circuit_key: Optional[str] = None,
                     no_retry_on: Tuple[Type[BaseException], ...] = ()) -> T:
    """
    Await `fn()` up to `policy.max_attempts` times.

    Raises RuntimeError without calling `fn` when the circuit for `circuit_key`
    is open. Errors in `no_retry_on`, or outside `policy.retry_on_exceptions`,
    propagate immediately. The breaker sees one outcome per call, not per attempt.
    """
    breaker = circuit_breaker if circuit_key else None
    if breaker is not None and breaker.is_open(circuit_key):
        raise RuntimeError(f"Circuit open for {circuit_key}")

    attempt = 0
    while True:
        try:
            result = await fn()
        except no_retry_on:
            if breaker is not None:
                breaker.record_failure(circuit_key)
            raise
        except policy.retry_on_exceptions:
            attempt += 1
            if attempt >= max(policy.max_attempts, 1):
                if breaker is not None:
                    breaker.record_failure(circuit_key)
                raise
            await asyncio.sleep(policy.compute_backoff(attempt - 1))
        else:
            if breaker is not None:
                breaker.record_success(circuit_key)
            return result
