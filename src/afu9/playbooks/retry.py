"""
Retry policy applied by the engines around step actions.

Actions never retry themselves. The engine hands each action to a
``RetryPolicy`` that re-invokes it on a failed result until the step's
``retries`` are used up, backing off exponentially in between.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from afu9.config import Settings
from afu9.playbooks.models import StepResult, StepStatus

NON_RETRYABLE_CODES = frozenset(
    {"EVIDENCE_MISSING", "INVALID_EVIDENCE", "LAWBOOK_DENIED", "PUBLISHING_DISABLED"}
)


@dataclass(frozen=True)
class RetryPolicy:
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    non_retryable_codes: frozenset[str] = NON_RETRYABLE_CODES

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            backoff_seconds=settings.playbook_retry_backoff_seconds,
            max_backoff_seconds=settings.playbook_retry_backoff_max_seconds,
        )

    @classmethod
    def immediate(cls) -> RetryPolicy:
        return cls(backoff_seconds=0.0)

    def should_retry(self, result: StepResult) -> bool:
        if result.status is not StepStatus.FAILED:
            return False
        return result.error is None or result.error.code not in self.non_retryable_codes

    async def run(
        self, action: Callable[[int], Awaitable[StepResult]], retries: int
    ) -> tuple[StepResult, int]:
        """Run ``action`` up to ``retries + 1`` times. Returns the last result and attempt count."""
        attempts = 0

        async def attempt() -> StepResult:
            nonlocal attempts
            attempts += 1
            return await action(attempts)

        wait = (
            wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds)
            if self.backoff_seconds > 0
            else wait_none()
        )
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(retries, 0) + 1),
            wait=wait,
            retry=retry_if_result(self.should_retry),
            retry_error_callback=lambda state: state.outcome.result(),
            reraise=True,
        )
        result = await retrying(attempt)
        return result, attempts
