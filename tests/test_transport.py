"""Tests for aido.transport: backoff computation, retry driver, and LiteLLM wiring."""

import types
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import patch

import pytest

from aido.errors import AgentError, RateLimitExhaustedError, TransportError
from aido.transport import (
    MIN_WAIT_MS,
    RateLimited,
    RetryPolicy,
    TransportSettings,
    call_llm,
    call_with_retry,
    compute_wait_ms,
    retry_after_from_headers,
    retry_after_from_message,
)


# ---------------------------------------------------------------------------
# Wait computation
# ---------------------------------------------------------------------------


class TestRetryAfterHeaders:
    def test_none_or_empty(self):
        assert retry_after_from_headers(None) is None
        assert retry_after_from_headers({}) is None

    def test_seconds(self):
        assert retry_after_from_headers({"Retry-After": "3"}) == 3000

    def test_fractional_seconds(self):
        assert retry_after_from_headers({"retry-after": "0.5"}) == 500

    def test_milliseconds_header_preferred(self):
        headers = {"retry-after-ms": "1200", "retry-after": "9"}
        assert retry_after_from_headers(headers) == 1200

    def test_http_date(self):
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        when = format_datetime(now + timedelta(seconds=4), usegmt=True)
        assert retry_after_from_headers({"Retry-After": when}, now=now) == 4000

    def test_garbage(self):
        assert retry_after_from_headers({"retry-after": "soon"}) is None


class TestRetryAfterMessage:
    @pytest.mark.parametrize(
        "message, expected",
        [
            ("Rate limit reached. Please try again in 20s.", 20_000),
            ("Please try again in 1.5s. Visit ...", 1500),
            ("Please try again in 345ms.", 345),
            ("try again in 2 seconds", 2000),
            ("Please TRY AGAIN IN 3s", 3000),
        ],
    )
    def test_parsed(self, message, expected):
        assert retry_after_from_message(message) == pytest.approx(expected)

    @pytest.mark.parametrize("message", ["", "Rate limit reached", "try again later"])
    def test_absent(self, message):
        assert retry_after_from_message(message) is None


class TestComputeWait:
    policy = RetryPolicy(max_retries=5, base_ms=1000, max_wait_ms=10_000)

    def test_header_wins_over_message(self):
        wait = compute_wait_ms(
            self.policy, 1, {"retry-after": "2"}, "try again in 7s", rng=lambda: 0.0
        )
        assert wait == 2000

    def test_message_used_without_header(self):
        wait = compute_wait_ms(self.policy, 1, {}, "try again in 7s", rng=lambda: 0.0)
        assert wait == 7000

    def test_exponential_fallback(self):
        waits = [
            compute_wait_ms(self.policy, attempt, rng=lambda: 0.0) for attempt in (1, 2, 3)
        ]
        assert waits == [1000, 2000, 4000]

    def test_jitter_bounded_by_base(self):
        assert compute_wait_ms(self.policy, 1, rng=lambda: 0.999) == 1999

    def test_header_clamped_to_max(self):
        assert compute_wait_ms(self.policy, 1, {"retry-after": "3600"}) == 10_000

    def test_message_clamped_to_min(self):
        assert compute_wait_ms(self.policy, 1, {}, "try again in 5ms") == MIN_WAIT_MS

    def test_exponential_clamped_to_min(self):
        policy = RetryPolicy(base_ms=10, max_wait_ms=10_000)
        assert compute_wait_ms(policy, 1, rng=lambda: 0.0) == MIN_WAIT_MS

    @pytest.mark.parametrize("attempt", [1, 2, 5, 10, 40])
    @pytest.mark.parametrize(
        "headers, message",
        [
            ({"retry-after": "0"}, ""),
            ({"retry-after": "99999"}, ""),
            ({"retry-after-ms": "1"}, ""),
            ({}, "try again in 0s"),
            ({}, "try again in 9999s"),
            ({}, ""),
        ],
    )
    @pytest.mark.parametrize("jitter", [0.0, 0.5, 0.999])
    def test_always_within_bounds(self, attempt, headers, message, jitter):
        wait = compute_wait_ms(self.policy, attempt, headers, message, rng=lambda: jitter)
        assert MIN_WAIT_MS <= wait <= self.policy.max_wait_ms


# ---------------------------------------------------------------------------
# Retry driver
# ---------------------------------------------------------------------------


class _Script:
    """A send() that raises the queued exceptions, then returns a value."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class TestCallWithRetry:
    def test_success_first_try(self):
        sleeps = []
        send = _Script("ok")
        assert call_with_retry(send, RetryPolicy(), sleep=sleeps.append) == "ok"
        assert send.calls == 1
        assert sleeps == []

    def test_retries_rate_limit_then_succeeds(self):
        sleeps = []
        send = _Script(
            RateLimited("slow down", {"retry-after": "2"}),
            RateLimited("Please try again in 3s"),
            "ok",
        )
        result = call_with_retry(send, RetryPolicy(), sleep=sleeps.append)
        assert result == "ok"
        assert send.calls == 3
        assert sleeps == [2.0, 3.0]

    def test_budget_exhausted_surfaces_last_message(self):
        sleeps = []
        send = _Script(*[RateLimited(f"limit {i}") for i in range(3)])
        with pytest.raises(RateLimitExhaustedError, match="limit 2"):
            call_with_retry(
                send, RetryPolicy(max_retries=2), sleep=sleeps.append, rng=lambda: 0.0
            )
        assert send.calls == 3
        assert len(sleeps) == 2

    def test_zero_retries(self):
        send = _Script(RateLimited("nope"))
        with pytest.raises(RateLimitExhaustedError):
            call_with_retry(send, RetryPolicy(max_retries=0), sleep=lambda s: None)
        assert send.calls == 1

    def test_other_errors_not_retried(self):
        send = _Script(TransportError("connection refused"), "unused")
        with pytest.raises(TransportError):
            call_with_retry(send, RetryPolicy(), sleep=lambda s: None)
        assert send.calls == 1

    def test_pacing_before_every_attempt(self):
        sleeps = []
        send = _Script(RateLimited("x", {"retry-after": "1"}), "ok")
        call_with_retry(send, RetryPolicy(pacing_ms=500), sleep=sleeps.append)
        assert sleeps == [0.5, 1.0, 0.5]

    def test_on_retry_sees_state(self):
        seen = []
        send = _Script(RateLimited("a", {"retry-after": "1"}), "ok")
        call_with_retry(
            send,
            RetryPolicy(),
            sleep=lambda s: None,
            on_retry=lambda state: seen.append((state.attempt, state.wait_ms, state.last_error)),
        )
        assert seen == [(1, 1000, "a")]


# ---------------------------------------------------------------------------
# LiteLLM wiring
# ---------------------------------------------------------------------------


def _mock_response(content="ok", tool_calls=None, finish_reason="stop"):
    choice = types.SimpleNamespace(
        message=types.SimpleNamespace(content=content, tool_calls=tool_calls),
        finish_reason=finish_reason,
    )
    return types.SimpleNamespace(choices=[choice])


class _StatusError(Exception):
    def __init__(self, message, status_code, headers=None):
        super().__init__(message)
        self.status_code = status_code
        self.response = types.SimpleNamespace(headers=headers or {})


SETTINGS = TransportSettings(api_key="sk-test", retry=RetryPolicy(max_retries=2))


class TestCallLlm:
    def test_passes_model_tokens_and_key(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            msg, finish = call_llm([], "gpt-4o-mini", 321, [], SETTINGS, False)
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["max_tokens"] == 321
        assert kwargs["api_key"] == "sk-test"
        assert "api_base" not in kwargs
        assert msg.content == "ok"
        assert finish == "stop"

    def test_api_base_forwarded(self):
        settings = TransportSettings(api_key="k", api_base="http://localhost:8000/v1")
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _mock_response()
            call_llm([], "m", 10, [], settings, False)
        assert mock_comp.call_args[1]["api_base"] == "http://localhost:8000/v1"

    def test_rate_limit_status_retried_with_header_wait(self):
        sleeps = []
        error = _StatusError("rate limited", 429, {"Retry-After": "2"})
        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = [error, _mock_response("done")]
            msg, _ = call_llm([], "m", 10, [], SETTINGS, False, sleep=sleeps.append)
        assert msg.content == "done"
        assert mock_comp.call_count == 2
        assert sleeps == [2.0]

    def test_litellm_rate_limit_error_retried(self):
        import litellm

        sleeps = []
        error = litellm.RateLimitError(
            message="Rate limit reached. Please try again in 2s.",
            llm_provider="openai",
            model="gpt-4o-mini",
        )
        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = [error, _mock_response("done")]
            msg, _ = call_llm([], "m", 10, [], SETTINGS, False, sleep=sleeps.append)
        assert msg.content == "done"
        assert len(sleeps) == 1
        assert MIN_WAIT_MS / 1000 <= sleeps[0] <= SETTINGS.retry.max_wait_ms / 1000

    def test_rate_limit_budget_exhausted(self):
        error = _StatusError("Please try again in 1s", 429)
        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = [error, error, error]
            with pytest.raises(RateLimitExhaustedError, match="try again in 1s"):
                call_llm([], "m", 10, [], SETTINGS, False, sleep=lambda s: None)
        assert mock_comp.call_count == 3

    def test_other_status_not_retried(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = _StatusError("bad key", 401)
            with pytest.raises(AgentError, match="bad key"):
                call_llm([], "m", 10, [], SETTINGS, False, sleep=lambda s: None)
        assert mock_comp.call_count == 1

    def test_connection_error_not_retried(self):
        import litellm

        error = litellm.APIConnectionError(
            message="connection refused", llm_provider="openai", model="m"
        )
        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = error
            with pytest.raises(TransportError, match="could not reach"):
                call_llm([], "m", 10, [], SETTINGS, False, sleep=lambda s: None)
        assert mock_comp.call_count == 1

    @pytest.mark.parametrize(
        "response",
        [
            types.SimpleNamespace(choices=[]),
            types.SimpleNamespace(choices=None),
            types.SimpleNamespace(choices=[types.SimpleNamespace(message=None)]),
            "not a response",
        ],
    )
    def test_invalid_response(self, response):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = response
            with pytest.raises(TransportError, match="invalid API response"):
                call_llm([], "m", 10, [], SETTINGS, False)
