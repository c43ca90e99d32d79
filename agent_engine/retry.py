"""
Agent Engine — Retry with Backoff

Transient failures (timeouts, rate limits, 5xx, network) are retried with
exponential backoff. Everything else propagates on the first failure.

Budget awareness: callers pass a budget_check callback that runs before
every attempt, so retries can never push an execution past its ceiling.
BudgetExceeded raised by the callback propagates untouched.

Usage:
    from agent_engine.retry import call_with_retry, policy_from_config

    policy = policy_from_config(cfg)
    outcome = call_with_retry(
        lambda attempt: llm.invoke(messages),
        policy,
        budget_check=lambda attempt: budget.check_budget(est_cost, est_tokens),
        label="decision",
    )
    response = outcome.value
"""

from __future__ import annotations

import concurrent.futures
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from agent_engine.errors import BudgetExceeded, LLMProtocolError, ToolExecutionError

logger = logging.getLogger("agent_engine.retry")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_retries: int = 1             # retries after the first attempt
    backoff_base: float = 0.5        # seconds; delay = base * 2^attempt ± jitter
    backoff_max: float = 8.0
    jitter: float = 0.25             # ±25% randomization

    retryable_exceptions: tuple = (
        TimeoutError,
        concurrent.futures.TimeoutError,
        ConnectionError,
    )
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    @property
    def max_attempts(self) -> int:
        return 1 + max(0, self.max_retries)


DEFAULT_POLICY = RetryPolicy()


def policy_from_config(config: dict[str, Any] | None) -> RetryPolicy:
    """
    Build a policy from the `retry` section of agent_config.yaml.

        retry:
          max_retries: 1
          base_delay: 0.5
          max_delay: 8.0
          jitter: 0.25
    """
    section = (config or {}).get("retry") or {}
    if not section:
        return DEFAULT_POLICY
    return RetryPolicy(
        max_retries=int(section.get("max_retries", DEFAULT_POLICY.max_retries)),
        backoff_base=float(section.get("base_delay", DEFAULT_POLICY.backoff_base)),
        backoff_max=float(section.get("max_delay", DEFAULT_POLICY.backoff_max)),
        jitter=float(section.get("jitter", DEFAULT_POLICY.jitter)),
    )


# ═══════════════════════════════════════════════════════════════════
# Classification & Backoff
# ═══════════════════════════════════════════════════════════════════

def is_retryable(error: BaseException, policy: RetryPolicy = DEFAULT_POLICY) -> bool:
    """Determine if an exception is transient."""
    # Terminal by definition
    if isinstance(error, (BudgetExceeded, LLMProtocolError)):
        return False
    if isinstance(error, ToolExecutionError):
        return error.transient

    if isinstance(error, policy.retryable_exceptions):
        return True

    err_str = str(error).lower()

    # Auth errors are NOT retryable
    if "401" in err_str or "403" in err_str or "unauthorized" in err_str or "forbidden" in err_str:
        return False

    if "429" in err_str or "rate limit" in err_str or "too many requests" in err_str:
        return True

    for code in policy.retryable_status_codes:
        if str(code) in err_str:
            return True

    if any(term in err_str for term in ("timeout", "timed out", "connection", "unavailable")):
        return True

    return False


def calculate_backoff(attempt: int, policy: RetryPolicy = DEFAULT_POLICY) -> float:
    """Backoff delay before retry number `attempt` (0-based), with jitter."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    actual = capped + random.uniform(-jitter_range, jitter_range)
    return max(0.0, actual)


# ═══════════════════════════════════════════════════════════════════
# Retry Loop
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryOutcome:
    """Successful result plus the failed attempts that preceded it."""
    value: Any
    attempts: int
    attempt_log: list[dict[str, Any]] = field(default_factory=list)


def call_with_retry(
    fn: Callable[[int], Any],
    policy: RetryPolicy | None = None,
    budget_check: Callable[[int], None] | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    label: str = "",
) -> RetryOutcome:
    """
    Call fn(attempt) until it succeeds or a non-transient error occurs.

    Args:
        fn:           Callable receiving the 1-based attempt number
        policy:       RetryPolicy (or default)
        budget_check: Called with the attempt number before every attempt;
                      raises BudgetExceeded to stop
        sleep_fn:     Sleep function (injectable for testing)
        label:        For logging

    Raises:
        The last exception once retries are exhausted, the first
        non-transient exception, or BudgetExceeded from budget_check.
    """
    if policy is None:
        policy = DEFAULT_POLICY

    attempt_log: list[dict[str, Any]] = []
    for attempt in range(1, policy.max_attempts + 1):
        if budget_check is not None:
            budget_check(attempt)

        t0 = time.monotonic()
        try:
            value = fn(attempt)
        except Exception as e:
            entry = {
                "attempt": attempt,
                "error": str(e)[:200],
                "error_type": type(e).__name__,
                "latency_ms": round((time.monotonic() - t0) * 1000, 1),
            }
            if not is_retryable(e, policy) or attempt >= policy.max_attempts:
                attempt_log.append(entry)
                logger.warning(
                    "%s failed (attempt %d/%d, retryable=%s): %s",
                    label or "call", attempt, policy.max_attempts,
                    is_retryable(e, policy), str(e)[:100],
                )
                raise

            delay = calculate_backoff(attempt - 1, policy)
            entry["backoff_s"] = round(delay, 3)
            attempt_log.append(entry)
            logger.info(
                "%s transient failure (attempt %d/%d), retrying in %.2fs: %s",
                label or "call", attempt, policy.max_attempts, delay, str(e)[:100],
            )
            sleep_fn(delay)
            continue

        if attempt > 1:
            logger.debug("%s succeeded on attempt %d", label or "call", attempt)
        return RetryOutcome(value=value, attempts=attempt, attempt_log=attempt_log)

    # range() always runs at least once; loop exits via return or raise
    raise RuntimeError("unreachable")
