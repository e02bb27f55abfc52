"""
Retry policy for transient model-call failures.

Retries run as an explicit loop over the attempt index. Backoff waits are
awaited (non-blocking), so one process can serve concurrent turns.

Policy:
- Retryable kinds: RATE_LIMIT, SERVER, TIMEOUT, NETWORK
- Delay: min(base * 2^attempt + jitter(<= 10%), max_delay)
- Per-attempt deadline shrinks by one second per earlier attempt (floor
  3 seconds, never above the global timeout); the final attempt gets the
  full global timeout
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from voice_chat_guard.config.loader import AppConfig

from .errors import (
    ErrorKind,
    FatalFailure,
    LLMServiceError,
    RequestOutcome,
    Success,
    classify_exception,
    failure_for,
)

logger = logging.getLogger(__name__)

# attempt index, per-attempt timeout in seconds -> outcome
AttemptFn = Callable[[int, float], Awaitable[RequestOutcome]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryResult:
    """Final outcome of a retried operation."""
    outcome: Union[Success, FatalFailure]
    attempts: int
    total_delay_ms: float

    @property
    def succeeded(self) -> bool:
        return isinstance(self.outcome, Success)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with jitter."""
    max_retries: int = 2
    base_delay_ms: int = 500
    max_delay_ms: int = 2000
    jitter_ratio: float = 0.1
    timeout_step_ms: int = 1000
    min_attempt_timeout_ms: int = 3000

    def __post_init__(self):
        """Validate policy values."""
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays cannot be negative")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be between 0 and 1")

    @classmethod
    def from_config(cls, config: AppConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def is_last_attempt(self, attempt: int) -> bool:
        return attempt >= self.max_retries

    def delay_ms(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Backoff before the attempt following ``attempt`` (0-indexed)."""
        exponential = self.base_delay_ms * (2 ** attempt)
        jitter = rand() * self.jitter_ratio * exponential
        return min(exponential + jitter, self.max_delay_ms)

    def attempt_timeout_ms(self, attempt: int, global_timeout_ms: int) -> int:
        """Deadline for a single attempt."""
        if self.is_last_attempt(attempt):
            return global_timeout_ms
        shrunk = max(global_timeout_ms - attempt * self.timeout_step_ms, self.min_attempt_timeout_ms)
        return min(global_timeout_ms, shrunk)

    async def run(
        self,
        attempt_fn: AttemptFn,
        global_timeout_ms: int,
        sleep: SleepFn = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> RetryResult:
        """Run ``attempt_fn`` until success, a fatal kind, or exhaustion.

        ``attempt_fn`` should return a :data:`RequestOutcome`; an
        :class:`LLMServiceError` it raises is treated as the equivalent
        outcome and any other exception is classified before deciding.

        Returns:
            RetryResult whose outcome is Success or FatalFailure. Exhaustion
            yields FatalFailure carrying the last observed kind.
        """
        total_delay = 0.0
        last_kind = ErrorKind.UNKNOWN
        last_error = None

        for attempt in range(self.max_attempts):
            timeout_ms = self.attempt_timeout_ms(attempt, global_timeout_ms)
            outcome = await self._attempt(attempt_fn, attempt, timeout_ms)

            if isinstance(outcome, (Success, FatalFailure)):
                return RetryResult(outcome=outcome, attempts=attempt + 1, total_delay_ms=total_delay)

            last_kind = outcome.kind
            last_error = outcome.error
            if self.is_last_attempt(attempt):
                break

            delay = self.delay_ms(attempt, rand)
            logger.warning(
                "Retrying after %s on attempt %d/%d in %.0fms",
                outcome.kind.name, attempt + 1, self.max_attempts, delay,
                extra={"error_kind": outcome.kind.value, "attempt": attempt, "delay_ms": delay},
            )
            total_delay += delay
            await sleep(delay / 1000.0)

        detail = f"Retries exhausted after {self.max_attempts} attempts ({last_kind.name})"
        if last_error is not None:
            detail = f"{detail}: {last_error}"
        return RetryResult(
            outcome=FatalFailure(kind=last_kind, detail=detail, error=last_error),
            attempts=self.max_attempts,
            total_delay_ms=total_delay,
        )

    async def _attempt(self, attempt_fn: AttemptFn, attempt: int, timeout_ms: int) -> RequestOutcome:
        try:
            return await attempt_fn(attempt, timeout_ms / 1000.0)
        except LLMServiceError as e:
            return failure_for(e)
        except Exception as e:
            kind = classify_exception(e)
            return failure_for(LLMServiceError(f"Model call failed: {e}", kind, cause=e))

