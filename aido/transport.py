"""Model endpoint calls with pacing and rate-limit-aware retry.

The retry driver (call_with_retry) knows nothing about HTTP: it calls a
zero-argument ``send`` and retries only when ``send`` raises RateLimited.
call_llm wires LiteLLM into that driver.
"""

import logging
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from . import fmt
from .errors import AgentError, RateLimitExhaustedError, TransportError

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUS = 429
MIN_WAIT_MS = 250

_TRY_AGAIN_RE = re.compile(
    r"try again in\s+(\d+(?:\.\d+)?)\s*(ms|milliseconds?|s|sec|seconds?)\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    base_ms: int = 1000
    max_wait_ms: int = 30_000
    pacing_ms: int = 0


@dataclass
class RetryState:
    """Per-call retry bookkeeping, discarded when the call returns."""

    attempt: int = 0
    last_error: str | None = None
    wait_ms: int = 0


@dataclass(frozen=True)
class TransportSettings:
    api_key: str
    api_base: str | None = None
    request_timeout: float = 120.0
    retry: RetryPolicy = RetryPolicy()


class RateLimited(Exception):
    """Raised by a send function when the endpoint signals rate limiting."""

    def __init__(self, message: str, headers: dict | None = None):
        super().__init__(message)
        self.message = message
        self.headers = headers or {}


# --- Backoff computation ---


def _clamp(wait_ms: float, max_wait_ms: int) -> int:
    upper = max(MIN_WAIT_MS, max_wait_ms)
    return int(min(max(wait_ms, MIN_WAIT_MS), upper))


def retry_after_from_headers(headers, *, now: datetime | None = None) -> float | None:
    """Return the server-requested wait in milliseconds, if any."""
    if not headers:
        return None
    lowered = {str(k).lower(): str(v).strip() for k, v in dict(headers).items()}

    value = lowered.get("retry-after-ms")
    if value:
        try:
            return max(0.0, float(value))
        except ValueError:
            pass

    value = lowered.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value) * 1000)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds() * 1000)


def retry_after_from_message(message: str) -> float | None:
    """Parse "try again in N s" / "try again in N ms" out of an error message."""
    m = _TRY_AGAIN_RE.search(message or "")
    if not m:
        return None
    amount = float(m.group(1))
    if m.group(2).lower().startswith("m"):
        return amount
    return amount * 1000


def compute_wait_ms(
    policy: RetryPolicy,
    attempt: int,
    headers=None,
    message: str = "",
    rng=random.random,
) -> int:
    """Wait before retry number *attempt* (1-based), always in [250ms, max_wait_ms].

    Priority: retry-after headers, then the error message, then exponential
    backoff with jitter in [0, base].
    """
    wait = retry_after_from_headers(headers)
    if wait is None:
        wait = retry_after_from_message(message)
    if wait is None:
        exponent = max(0, attempt - 1)
        wait = policy.base_ms * (2**exponent) + rng() * policy.base_ms
    return _clamp(wait, policy.max_wait_ms)


def call_with_retry(send, policy: RetryPolicy, *, sleep=time.sleep, rng=random.random, on_retry=None):
    """Call *send* until it succeeds or the rate-limit retry budget is spent.

    Any exception other than RateLimited propagates immediately.
    """
    state = RetryState()
    while True:
        state.attempt += 1
        if policy.pacing_ms > 0:
            sleep(policy.pacing_ms / 1000)
        try:
            return send()
        except RateLimited as e:
            state.last_error = e.message
            if state.attempt > policy.max_retries:
                raise RateLimitExhaustedError(
                    f"rate limited after {state.attempt} attempts: {e.message}"
                ) from e
            state.wait_ms = compute_wait_ms(
                policy, state.attempt, e.headers, e.message, rng=rng
            )
            logger.debug(
                "rate limited (attempt %d/%d), waiting %dms: %s",
                state.attempt,
                policy.max_retries + 1,
                state.wait_ms,
                e.message,
            )
            if on_retry is not None:
                on_retry(state)
            sleep(state.wait_ms / 1000)


# --- LiteLLM wiring ---


def _exception_headers(exc) -> dict:
    headers = getattr(exc, "litellm_response_headers", None)
    if not headers:
        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None)
    try:
        return dict(headers) if headers else {}
    except (TypeError, ValueError):
        return {}


def call_llm(
    messages: list,
    model_id: str,
    max_output_tokens: int,
    tools: list,
    settings: TransportSettings,
    verbose: bool,
    *,
    sleep=time.sleep,
):
    """Call LiteLLM with retry on rate limiting. Returns (message, finish_reason)."""
    import litellm

    litellm.suppress_debug_info = True

    completion_kwargs = dict(
        model=model_id,
        messages=messages,
        max_tokens=max_output_tokens,
        tools=tools,
        tool_choice="auto",
        api_key=settings.api_key,
        timeout=settings.request_timeout,
        max_retries=0,
    )
    if settings.api_base:
        completion_kwargs["api_base"] = settings.api_base

    if verbose:
        fmt.model_info(f"Calling model {model_id} with max_tokens={max_output_tokens}")

    def _send():
        try:
            return litellm.completion(**completion_kwargs)
        except litellm.RateLimitError as e:
            raise RateLimited(str(e), _exception_headers(e)) from e
        except (litellm.Timeout, litellm.APIConnectionError) as e:
            raise TransportError(f"could not reach model endpoint: {e}") from e
        except Exception as e:
            if getattr(e, "status_code", None) == RATE_LIMIT_STATUS:
                raise RateLimited(str(e), _exception_headers(e)) from e
            raise AgentError(f"LLM call failed: {e}") from e

    def _on_retry(state: RetryState):
        if verbose:
            fmt.rate_limited(state.attempt, settings.retry.max_retries, state.wait_ms)

    response = call_with_retry(_send, settings.retry, sleep=sleep, on_retry=_on_retry)

    choices = getattr(response, "choices", None)
    if not choices:
        raise TransportError(f"invalid API response: {response!r}")
    choice = choices[0]
    message = getattr(choice, "message", None)
    if message is None:
        raise TransportError("invalid API response: choice carries no message")
    return message, getattr(choice, "finish_reason", None)
