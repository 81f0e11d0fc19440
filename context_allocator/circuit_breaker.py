"""
Circuit breaker for the persistent search backend.

When the index is down, indexed recall fails fast with CircuitOpenError
and the retriever moves on to in-memory search, instead of paying a
backend timeout for every oversized item of the request.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import settings
from .exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"  # Trial calls only


@dataclass
class CircuitBreaker:
    """
    Breaker around one backend.

    CLOSED passes calls through. After failure_threshold consecutive
    failures it goes OPEN and rejects calls for reset_timeout seconds,
    then HALF_OPEN lets half_open_max_calls trial calls through; that
    many successes close it again, one failure reopens it.

    Usage:
        breaker = get_breaker("search")
        hits = await breaker.call(backend.search, query, entities, domains)
    """

    name: str = "default"
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    half_open_max_calls: int = 2

    state: CircuitState = field(default=CircuitState.CLOSED)
    failures: int = field(default=0)
    trial_calls: int = field(default=0)
    trial_successes: int = field(default=0)
    opened_at: Optional[float] = field(default=None)

    def _allows_call(self) -> bool:
        if self.state == CircuitState.OPEN:
            if time.monotonic() - self.opened_at < self.reset_timeout:
                return False
            logger.info(f"Circuit '{self.name}' half-open, allowing trial calls")
            self.state = CircuitState.HALF_OPEN
            self.trial_calls = 0
            self.trial_successes = 0

        if self.state == CircuitState.HALF_OPEN:
            return self.trial_calls < self.half_open_max_calls
        return True

    def _open(self):
        logger.warning(f"Circuit '{self.name}' open after {self.failures} failures")
        self.state = CircuitState.OPEN
        self.opened_at = time.monotonic()

    def _on_success(self):
        self.failures = 0
        if self.state == CircuitState.HALF_OPEN:
            self.trial_successes += 1
            if self.trial_successes >= self.half_open_max_calls:
                logger.info(f"Circuit '{self.name}' closed, backend recovered")
                self.state = CircuitState.CLOSED

    def _on_failure(self):
        self.failures += 1
        if self.state == CircuitState.HALF_OPEN or self.failures >= self.failure_threshold:
            self._open()

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await fn unless the circuit is open.

        Raises:
            CircuitOpenError: If the circuit rejects the call
            Exception: Whatever fn raised
        """
        if not self._allows_call():
            raise CircuitOpenError(f"Circuit '{self.name}' is {self.state.value}")

        if self.state == CircuitState.HALF_OPEN:
            self.trial_calls += 1

        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result


_breakers: Dict[str, CircuitBreaker] = {}


def get_breaker(name: str) -> CircuitBreaker:
    """Get or create a named circuit breaker."""
    if name not in _breakers:
        cfg = settings.circuit_breaker
        _breakers[name] = CircuitBreaker(
            name=name,
            failure_threshold=cfg.failure_threshold,
            reset_timeout=cfg.reset_timeout,
            half_open_max_calls=cfg.half_open_max_calls,
        )
    return _breakers[name]
