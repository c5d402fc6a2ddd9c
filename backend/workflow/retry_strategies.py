"""Workflow retry policies.

Pure backoff calculator plus a generic "retry this call" helper that
individual operations can use internally. The per-node retry wrapper in
``workflow.nodes`` is separate and only honours a node's attempt count and
fixed inter-attempt delay.

All delays are in milliseconds.

Usage:
    policy = RETRY_PRESETS["fast"]
    data = await execute_with_retry(fetch_page, policy, on_retry=report)
"""

import asyncio
import random
from dataclasses import asdict, dataclass, replace
from typing import Any, Awaitable, Callable, Optional

JITTER_RATIO = 0.25

RETRYABLE_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "enotfound",
    "http 5",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for a retried call."""
    max_attempts: int = 3
    initial_delay: float = 1000.0
    max_delay: float = 30000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_dict(cls, config: dict) -> "RetryPolicy":
        """Create a policy from a camelCase or snake_case config dict."""
        defaults = cls()
        return cls(
            max_attempts=config.get("max_attempts", config.get("maxAttempts", defaults.max_attempts)),
            initial_delay=config.get("initial_delay", config.get("initialDelay", defaults.initial_delay)),
            max_delay=config.get("max_delay", config.get("maxDelay", defaults.max_delay)),
            backoff_multiplier=config.get(
                "backoff_multiplier", config.get("backoffMultiplier", defaults.backoff_multiplier)
            ),
            jitter=config.get("jitter", defaults.jitter),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay after a failed attempt (1-based)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier ** (attempt - 1)),
            self.max_delay,
        )
        if self.jitter:
            jitter_amount = delay * JITTER_RATIO
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
        return delay


@dataclass
class RetryContext:
    """Passed to ``on_retry`` before each sleep."""
    attempt: int
    last_error: Optional[str]
    total_delay: float


DEFAULT_RETRY_POLICY = RetryPolicy()


def create_retry_policy(**overrides: Any) -> RetryPolicy:
    """Build a policy from the default with selected fields replaced."""
    return replace(DEFAULT_RETRY_POLICY, **overrides)


def calculate_delay(policy: RetryPolicy, attempt: int) -> float:
    return policy.compute_delay(attempt)


# ─── Preset policies ───

RETRY_PRESETS: dict[str, RetryPolicy] = {
    "none": create_retry_policy(max_attempts=1),
    "fast": create_retry_policy(max_attempts=3, initial_delay=1000, max_delay=5000, backoff_multiplier=2),
    "standard": DEFAULT_RETRY_POLICY,
    "aggressive": create_retry_policy(max_attempts=5, initial_delay=2000, max_delay=60000, backoff_multiplier=2),
    "patient": create_retry_policy(max_attempts=10, initial_delay=5000, max_delay=120000, backoff_multiplier=1.5),
}


def is_retryable_error(error: Any) -> bool:
    """Advisory check for transient failures (network, timeout, 5xx).

    Accepts an exception or a plain message. The retry helper never calls
    this itself; callers decide whether to retry.
    """
    if isinstance(error, BaseException):
        message = str(error)
    elif isinstance(error, str):
        message = error
    else:
        return False
    message = message.lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


async def execute_with_retry(
    func: Callable[[], Awaitable[Any]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    on_retry: Optional[Callable[[RetryContext], Any]] = None,
) -> Any:
    """Call ``func`` up to ``policy.max_attempts`` times.

    Args:
        func: Zero-argument async callable.
        policy: Backoff parameters.
        on_retry: Optional callback (sync or async) receiving a RetryContext
            before each sleep.

    Returns:
        The first successful result.

    Raises:
        The last exception once every attempt has failed.
    """
    total_delay = 0.0
    attempts = max(1, policy.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await func()
        except Exception as e:
            if attempt >= attempts:
                raise

            delay = policy.compute_delay(attempt)
            total_delay += delay

            if on_retry:
                outcome = on_retry(RetryContext(attempt=attempt, last_error=str(e), total_delay=total_delay))
                if asyncio.iscoroutine(outcome):
                    await outcome

            await asyncio.sleep(delay / 1000)
