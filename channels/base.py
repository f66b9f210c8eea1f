"""
Outbound channel infrastructure shared by every transport.

Provides:
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- SendMetrics: send/fail/latency tracking per transport
- Transport: abstract outbound message sender
- TemplateRegistry: abstract remote (platform-side) template registry
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any

from models.schemas import MessageArtifact, RemoteTemplate, SendResult

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(1.0 / max(self.rate, 0.001), remaining))

    def _refill(self):
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._last_refill) * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, name: str = "", failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open" and time.monotonic() - self._opened_at >= self.recovery_timeout:
            return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        self._state = "closed"
        self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", breaker=self.name, failures=self._failure_count)

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  SEND METRICS
# ══════════════════════════════════════════════════════════════

class SendMetrics:
    """Tracks send, failure and latency figures for one transport."""

    def __init__(self):
        self.sent: int = 0
        self.failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.sent + self.failed
        return self.failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  INTERFACES
# ══════════════════════════════════════════════════════════════

class Transport(abc.ABC):
    """Delivers a produced message to a lead. Never raises for delivery failures."""

    name: str = "transport"

    @abc.abstractmethod
    async def send(self, recipient: str, artifact: MessageArtifact) -> SendResult:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"transport": self.name}

    async def close(self) -> None:
        pass


class TemplateRegistry(abc.ABC):
    """
    Platform-side template registry (e.g. WhatsApp Business message templates).

    Both operations raise core.errors.ExternalServiceError on failure.
    """

    @abc.abstractmethod
    async def create_remote_template(self, account_id: str, name: str, content: str,
                                     language_code: str = "en") -> RemoteTemplate:
        ...

    @abc.abstractmethod
    async def delete_remote_template(self, account_id: str, remote_id: str, name: str = "") -> None:
        ...

    async def close(self) -> None:
        pass
