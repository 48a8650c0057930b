"""Retry decisions for failed jobs: classification, backoff and deadlettering."""

from __future__ import annotations

import logging
import random
import re
import time
from datetime import timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from pydantic import BaseModel

from .config import RetryConfig
from .contracts import Job, JobStatus, utcnow

logger = logging.getLogger(__name__)


def compute_backoff(
    attempt: int, base: float = 1.0, cap: float = 300.0, jitter: float = 0.0
) -> float:
    """Compute exponential backoff ``base * 2**attempt`` with jitter, capped."""
    delay = base * (2 ** attempt)
    if jitter:
        delay += random.uniform(0, jitter * delay)
    return min(delay, cap)


class FailureCategory(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    DATABASE = "database"
    UNKNOWN = "unknown"


# First match wins.
_PATTERNS = [
    (FailureCategory.RATE_LIMIT, [r"rate.*limit", r"too.*many.*requests", r"quota.*exceeded", r"\b429\b"]),
    (FailureCategory.TIMEOUT, [r"timed? ?out", r"timeout", r"deadline"]),
    (FailureCategory.AUTHENTICATION, [r"unauthori[sz]ed", r"authentication.*failed", r"invalid.*token", r"permission.*denied", r"forbidden"]),
    (FailureCategory.VALIDATION, [r"validation", r"malformed", r"invalid", r"schema", r"syntax.*error", r"configuration.*error"]),
    (FailureCategory.NETWORK, [r"network", r"connection.*(refused|reset|error)", r"service.*unavailable", r"\b50[234]\b"]),
    (FailureCategory.DATABASE, [r"database", r"\bsql\b"]),
]
_COMPILED = [(cat, [re.compile(p, re.IGNORECASE) for p in pats]) for cat, pats in _PATTERNS]

FATAL_CATEGORIES = frozenset({FailureCategory.AUTHENTICATION, FailureCategory.VALIDATION})


class FailureClassification(BaseModel):
    category: FailureCategory
    transient: bool


def classify_failure(
    reason: Optional[str], transient: Optional[bool] = None
) -> FailureClassification:
    """Classify a failure reason as transient (retry) or fatal (deadletter).

    An explicit ``transient`` from a typed :class:`ExecutionFailure` decides
    the outcome; the message then only picks the category, which still
    drives the backoff base. Untyped failures are judged by their message.
    """
    category = FailureCategory.UNKNOWN
    text = reason or ""
    for candidate, patterns in _COMPILED:
        if any(p.search(text) for p in patterns):
            category = candidate
            break
    if transient is None:
        transient = category not in FATAL_CATEGORIES
    return FailureClassification(category=category, transient=transient)


class CircuitBreaker:
    """Per-key breaker: opens after ``threshold`` consecutive failures.

    While open, :meth:`remaining` reports how long until a half-open trial call
    is allowed; a success closes the breaker again.
    """

    def __init__(
        self,
        threshold: int = 5,
        reset_after: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.reset_after = reset_after
        self._clock = clock
        self._failures: Dict[str, int] = {}
        self._open_until: Dict[str, float] = {}

    def state(self, key: str) -> str:
        until = self._open_until.get(key)
        if until is None:
            return "closed"
        return "open" if self._clock() < until else "half_open"

    def record_failure(self, key: str) -> None:
        count = self._failures.get(key, 0) + 1
        self._failures[key] = count
        if self.state(key) == "half_open" or count >= self.threshold:
            self._open_until[key] = self._clock() + self.reset_after
            logger.warning(f"Circuit breaker opened for '{key}' after {count} failures")

    def record_success(self, key: str) -> None:
        self._failures.pop(key, None)
        if self._open_until.pop(key, None) is not None:
            logger.info(f"Circuit breaker closed for '{key}'")

    def remaining(self, key: str) -> float:
        until = self._open_until.get(key)
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())


class RetryAction(str, Enum):
    RETRY = "retry"
    DEADLETTER = "deadletter"


class RetryDecision(BaseModel):
    action: RetryAction
    delay: float = 0.0
    job: Job
    classification: FailureClassification
    reason: Optional[str] = None


class RetryManager:
    """Decides whether a failed job is retried with backoff or deadlettered."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        rate_limit_base_delay: float = 60.0,
        max_delay: float = 300.0,
        jitter: float = 0.1,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.rate_limit_base_delay = rate_limit_base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.breaker = breaker or CircuitBreaker()

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryManager":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            rate_limit_base_delay=config.rate_limit_base_delay,
            max_delay=config.max_delay,
            jitter=config.jitter,
            breaker=CircuitBreaker(config.breaker_threshold, config.breaker_reset),
        )

    def delay_for(self, attempt: int, category: FailureCategory) -> float:
        base = (
            self.rate_limit_base_delay
            if category == FailureCategory.RATE_LIMIT
            else self.base_delay
        )
        return compute_backoff(attempt, base=base, cap=self.max_delay, jitter=self.jitter)

    def on_failure(
        self, job: Job, reason: Optional[str], transient: Optional[bool] = None
    ) -> RetryDecision:
        """Return the retry or deadletter decision for a failed ``job``."""
        classification = classify_failure(reason, transient=transient)
        self.breaker.record_failure(job.kind)

        if not classification.transient or job.attempt + 1 >= self.max_attempts:
            why = (
                f"fatal {classification.category.value} failure"
                if not classification.transient
                else f"exhausted {self.max_attempts} attempts"
            )
            logger.warning(f"Deadlettering job {job.id} ({why}): {reason}")
            deadlettered = job.model_copy(
                update={
                    "status": JobStatus.DEADLETTERED,
                    "last_error": reason,
                    "worker_id": None,
                }
            )
            return RetryDecision(
                action=RetryAction.DEADLETTER,
                job=deadlettered,
                classification=classification,
                reason=reason,
            )

        delay = self.delay_for(job.attempt, classification.category)
        delay = max(delay, self.breaker.remaining(job.kind))
        retried = job.model_copy(
            update={
                "attempt": job.attempt + 1,
                "status": JobStatus.QUEUED,
                "not_before": utcnow() + timedelta(seconds=delay),
                "last_error": reason,
                "worker_id": None,
            }
        )
        logger.info(
            f"Retrying job {job.id} (attempt {retried.attempt}/{self.max_attempts - 1}) "
            f"in {delay:.2f}s: {reason}"
        )
        return RetryDecision(
            action=RetryAction.RETRY,
            delay=delay,
            job=retried,
            classification=classification,
            reason=reason,
        )

    def on_success(self, job: Job) -> None:
        self.breaker.record_success(job.kind)
