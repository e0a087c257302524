"""Tests for error classification, timeout detection and the retry policy."""

import httpx
import pytest

from chatbridge.api.retry import RetryPolicy
from chatbridge.errors import (
    BackendError,
    BudgetError,
    ChatBridgeError,
    TransportError,
    classify_backend_error,
    extract_target_address,
    is_budget_error,
    is_timeout_error,
)


class TestClassifyBackendError:
    @pytest.mark.parametrize(
        "body",
        [
            "This model's maximum context length is 8192 tokens",
            '{"error": {"code": "context_length_exceeded"}}',
            "Too many tokens: limit is 4096",
            "input exceeds the context window",
            "Input is too long for requested model.",
            "Request exceeds the maximum allowed length",
            "prompt length exceeded",
            "Prompt is exceeding the model limits",
        ],
    )
    def test_budget_errors(self, body):
        error = classify_backend_error(400, body)
        assert isinstance(error, BudgetError)
        assert error.status_code == 400
        assert error.body == body

    def test_marker_counts_at_any_status(self):
        assert isinstance(classify_backend_error(413, "context_length_exceeded"), BudgetError)

    @pytest.mark.parametrize(
        "status,body",
        [
            (400, "Invalid parameter: temperature"),
            (401, "Invalid token"),
            (500, "Internal server error: token limit"),
            (429, "Rate limit reached"),
        ],
    )
    def test_plain_backend_errors(self, status, body):
        error = classify_backend_error(status, body)
        assert type(error) is BackendError
        assert str(status) in str(error)

    def test_is_budget_error(self):
        assert is_budget_error(BudgetError(400, "too long"))
        assert not is_budget_error(BackendError(400, "bad request"))
        assert is_budget_error(TransportError("context length exceeded"))
        assert not is_budget_error(TransportError("connection refused"))


class TestTimeoutDetection:
    def test_httpx_timeout(self):
        assert is_timeout_error(httpx.ReadTimeout("read timed out"))

    def test_wrapped_timeout(self):
        error = TransportError("Chat completion failed")
        error.__cause__ = httpx.ConnectTimeout("x")
        assert is_timeout_error(error)

    def test_message_patterns(self):
        assert is_timeout_error(RuntimeError("Connect Timeout Error"))
        assert not is_timeout_error(RuntimeError("connection refused"))

    def test_target_from_httpx_request(self):
        request = httpx.Request("POST", "http://10.0.0.5:11434/v1/chat/completions")
        error = httpx.ConnectTimeout("timed out", request=request)
        assert extract_target_address(error) == "http://10.0.0.5:11434/v1/chat/completions"

    def test_httpx_error_without_request(self):
        assert extract_target_address(httpx.ConnectTimeout("timed out")) is None

    def test_target_from_message(self):
        assert extract_target_address(RuntimeError("failed, connect to 192.168.1.10:8080")) == "192.168.1.10:8080"
        assert extract_target_address(RuntimeError("request to https://api.example.com/v1 failed")) == "https://api.example.com/v1"
        assert extract_target_address(RuntimeError("connecting to llm.internal.net:443")) == "llm.internal.net:443"
        assert extract_target_address(RuntimeError("no address here")) is None


class TestRetryPolicy:
    def test_output_allowance_shrinks(self):
        policy = RetryPolicy()
        assert policy.output_allowance(4096, 0) == 4096
        assert policy.output_allowance(4096, 1) == int(4096 * 0.7)
        assert policy.output_allowance(1, 3) == 1

    def test_should_retry_once_for_budget_errors(self):
        policy = RetryPolicy()
        error = BudgetError(400, "too many tokens, limit exceeded")
        assert policy.should_retry(error, 0)
        assert not policy.should_retry(error, 1)
        assert not policy.should_retry(BackendError(500, "boom"), 0)

    @pytest.mark.asyncio
    async def test_execute_retries_with_next_attempt(self):
        policy = RetryPolicy()
        attempts: list[int] = []

        async def call(attempt: int) -> str:
            attempts.append(attempt)
            if attempt == 0:
                raise BudgetError(400, "maximum context length exceeded")
            return "ok"

        assert await policy.execute(call) == "ok"
        assert attempts == [0, 1]

    @pytest.mark.asyncio
    async def test_execute_gives_up_after_max_attempts(self):
        policy = RetryPolicy()
        attempts: list[int] = []

        async def call(attempt: int) -> str:
            attempts.append(attempt)
            raise BudgetError(400, "maximum context length exceeded")

        with pytest.raises(BudgetError):
            await policy.execute(call)
        assert attempts == [0, 1]

    @pytest.mark.asyncio
    async def test_execute_does_not_retry_other_errors(self):
        policy = RetryPolicy()
        attempts: list[int] = []

        async def call(attempt: int) -> str:
            attempts.append(attempt)
            raise BackendError(503, "unavailable")

        with pytest.raises(BackendError):
            await policy.execute(call)
        assert attempts == [0]

    @pytest.mark.asyncio
    async def test_custom_predicate_and_backoff(self):
        waits: list[int] = []

        def backoff(attempt: int) -> float:
            waits.append(attempt)
            return 0.0

        policy = RetryPolicy(
            max_attempts=3,
            backoff=backoff,
            is_retryable=lambda e: isinstance(e, ChatBridgeError),
        )

        async def call(attempt: int) -> int:
            if attempt < 2:
                raise TransportError("flaky")
            return attempt

        assert await policy.execute(call) == 2
        assert waits == [0, 1]
