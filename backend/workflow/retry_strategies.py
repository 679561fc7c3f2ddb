"""Fixed-delay retry for workflow steps.

Every step of a run goes through execute_step_with_retry(). Attempts run
against a fork of the execution context; only the successful attempt's
writes are merged back, so a failed attempt leaves nothing behind.

A result flagged non-retryable (configuration or safety-boundary errors)
stops the loop early: another attempt would fail the same way.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from app.config import get_settings
from tasks.base_task import StepResult
from workflow.context import ExecutionContext

logger = logging.getLogger(__name__)

StepCallable = Callable[[dict, ExecutionContext], Awaitable[StepResult]]


@dataclass
class RetryPolicy:
    """Bounded attempts with a fixed delay; no backoff and no jitter."""
    max_retries: int = 3
    retry_delay_seconds: float = 60.0

    @classmethod
    def from_dict(cls, config: Optional[dict]) -> 'RetryPolicy':
        """Create a policy from a workflow's retry_config.

        Accepts ``max_retries``/``retry_delay_seconds`` and the legacy
        ``maxRetries``/``retryDelay`` keys; missing values fall back to
        DEFAULT_MAX_RETRIES / DEFAULT_RETRY_DELAY_SECONDS.
        """
        settings = get_settings()
        config = config or {}
        max_retries = config.get('max_retries', config.get('maxRetries'))
        delay = config.get('retry_delay_seconds', config.get('retryDelay'))
        return cls(
            max_retries=settings.DEFAULT_MAX_RETRIES if max_retries is None else int(max_retries),
            retry_delay_seconds=settings.DEFAULT_RETRY_DELAY_SECONDS if delay is None else float(delay),
        )

    @property
    def attempts(self) -> int:
        """Total attempts; a policy of 0 retries still runs the step once."""
        return max(1, self.max_retries)


async def execute_step_with_retry(
    execute: StepCallable,
    step: dict,
    context: ExecutionContext,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> StepResult:
    """Run one step with bounded retries.

    Args:
        execute: Callable that runs the step once and returns a StepResult
        step: Step definition
        context: Run context; updated only if an attempt succeeds
        policy: Attempt count and inter-attempt delay
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The first successful StepResult, or the last failed one. ``attempts``
        on the result records how many attempts were made.
    """
    step_name = step.get('name') or step.get('type', 'step')
    result: Optional[StepResult] = None

    for attempt in range(1, policy.attempts + 1):
        attempt_context = context.fork()
        result = await execute(step, attempt_context)
        result.attempts = attempt

        if result.success:
            context.merge(attempt_context)
            return result

        if not result.retryable:
            logger.warning(
                f"Step '{step_name}' failed with a non-retryable error, not retrying: {result.error}"
            )
            return result

        if attempt < policy.attempts:
            logger.info(
                f"Step '{step_name}' attempt {attempt}/{policy.attempts} failed: {result.error}; "
                f"retrying in {policy.retry_delay_seconds}s"
            )
            await sleep(policy.retry_delay_seconds)

    logger.error(f"Step '{step_name}' failed after {policy.attempts} attempts: {result.error}")
    return result
