"""
Tests for failure classification and the retry controller.
"""
import pytest
import requests

from dealscout.errors import (
    FetchError,
    NormalizationError,
    RateLimitedError,
    SelectorMissError,
    StructuralMismatchError,
    UnitAbandoned,
)
from dealscout.models.report import AttemptState, FailureClass
from dealscout.pipeline.healing import RetryController, classify


class TestClassification:
    """Tests for the classification rule table."""

    @pytest.mark.parametrize("error,expected", [
        (RateLimitedError("slow down"), FailureClass.RATE_LIMIT),
        (FetchError("busy", status_code=429), FailureClass.RATE_LIMIT),
        (FetchError("bad gateway", status_code=502), FailureClass.NETWORK),
        (FetchError("timeout", status_code=408), FailureClass.NETWORK),
        (FetchError("reset", transient=True), FailureClass.NETWORK),
        (FetchError("gone", status_code=404, transient=False), FailureClass.CLIENT_ERROR),
        (FetchError("bad request", transient=False), FailureClass.CLIENT_ERROR),
        (requests.Timeout("read timed out"), FailureClass.NETWORK),
        (requests.ConnectionError("refused"), FailureClass.NETWORK),
        (TimeoutError(), FailureClass.NETWORK),
        (SelectorMissError("still loading"), FailureClass.SELECTOR_MISS),
        (StructuralMismatchError("no fields"), FailureClass.STRUCTURAL_CHANGE),
        (NormalizationError("no id"), FailureClass.NORMALIZATION),
        (ValueError("bug"), FailureClass.UNKNOWN),
    ])
    def test_classify(self, error, expected):
        assert classify(error) == expected

    def test_transient_classes(self):
        assert FailureClass.NETWORK.is_transient
        assert FailureClass.RATE_LIMIT.is_transient
        assert FailureClass.SELECTOR_MISS.is_transient
        assert not FailureClass.STRUCTURAL_CHANGE.is_transient
        assert not FailureClass.CLIENT_ERROR.is_transient


class FlakyAttempt:
    """Raises the queued errors in order, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls: list[bool] = []

    def __call__(self, use_fallback: bool) -> str:
        self.calls.append(use_fallback)
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestRetryController:
    """Tests for RetryController."""

    @pytest.fixture
    def sleeps(self) -> list[float]:
        return []

    @pytest.fixture
    def controller(self, sleeps) -> RetryController:
        return RetryController(retry_budget=3, backoff_base=1.0, backoff_max=30.0, sleep=sleeps.append)

    def test_success_first_time(self, controller, sleeps):
        attempt = FlakyAttempt()

        assert controller.run(attempt, sequence=1) == "ok"
        assert attempt.calls == [False]
        assert sleeps == []

    def test_transient_failures_retried_with_backoff(self, controller, sleeps):
        """Test exponential backoff between transient failures."""
        attempt = FlakyAttempt(FetchError("503", status_code=503), FetchError("503", status_code=503))

        assert controller.run(attempt, sequence=1) == "ok"
        assert len(attempt.calls) == 3
        assert sleeps == [1.0, 2.0]

    def test_budget_exhausted(self, controller):
        """Test a unit failing every attempt is abandoned with its class."""
        attempt = FlakyAttempt(*[FetchError("503", status_code=503) for _ in range(5)])

        with pytest.raises(UnitAbandoned) as exc_info:
            controller.run(attempt, sequence=4, url="https://flippa.com/v3/listings")

        failure = exc_info.value.failure
        assert failure.classification == FailureClass.NETWORK
        assert failure.attempts == 3
        assert failure.sequence == 4
        assert failure.url == "https://flippa.com/v3/listings"
        assert failure.flagged is False

    def test_permanent_failure_not_retried(self, controller, sleeps):
        attempt = FlakyAttempt(FetchError("404", status_code=404, transient=False))

        with pytest.raises(UnitAbandoned) as exc_info:
            controller.run(attempt, sequence=1)

        assert exc_info.value.failure.classification == FailureClass.CLIENT_ERROR
        assert exc_info.value.failure.attempts == 1
        assert sleeps == []

    def test_structural_mismatch_retried_once_with_fallback(self, controller):
        """Test a zero-field unit gets one fallback attempt, then is flagged."""
        attempt = FlakyAttempt(*[StructuralMismatchError("no fields") for _ in range(3)])

        with pytest.raises(UnitAbandoned) as exc_info:
            controller.run(attempt, sequence=2)

        assert attempt.calls == [False, True]
        failure = exc_info.value.failure
        assert failure.classification == FailureClass.STRUCTURAL_CHANGE
        assert failure.flagged is True
        assert failure.attempts == 2

    def test_structural_fallback_after_budget_spent(self, controller, sleeps):
        """Test the fallback attempt still runs when network retries used the budget."""
        calls = []

        def attempt(use_fallback):
            calls.append(use_fallback)
            if len(calls) <= 2:
                raise FetchError("503", status_code=503)
            if not use_fallback:
                raise StructuralMismatchError("no fields")
            return "ok"

        assert controller.run(attempt, sequence=5) == "ok"
        assert calls == [False, False, False, True]
        assert sleeps == [1.0, 2.0, 0.0]

    def test_structural_fallback_with_single_attempt_budget(self):
        controller = RetryController(retry_budget=1, sleep=lambda seconds: None)
        attempt = FlakyAttempt(StructuralMismatchError("no fields"))

        assert controller.run(attempt, sequence=1) == "ok"
        assert attempt.calls == [False, True]

    def test_abandoned_failure_records_states(self, controller):
        attempt = FlakyAttempt(*[StructuralMismatchError("no fields") for _ in range(3)])

        with pytest.raises(UnitAbandoned) as exc_info:
            controller.run(attempt, sequence=2)

        assert exc_info.value.failure.states == [
            AttemptState.PENDING,
            AttemptState.ATTEMPTING,
            AttemptState.FAILED,
            AttemptState.PENDING,
            AttemptState.ATTEMPTING,
            AttemptState.FAILED,
            AttemptState.ABANDONED,
        ]

    def test_permanent_failure_states(self, controller):
        attempt = FlakyAttempt(FetchError("404", status_code=404, transient=False))

        with pytest.raises(UnitAbandoned) as exc_info:
            controller.run(attempt, sequence=1)

        assert exc_info.value.failure.states == [
            AttemptState.PENDING,
            AttemptState.ATTEMPTING,
            AttemptState.FAILED,
            AttemptState.ABANDONED,
        ]

    def test_fallback_recovers(self, controller):
        attempt = FlakyAttempt(StructuralMismatchError("no fields"))

        assert controller.run(attempt, sequence=2) == "ok"
        assert attempt.calls == [False, True]

    def test_retry_after_honoured(self, controller, sleeps):
        attempt = FlakyAttempt(RateLimitedError("429", retry_after=7))

        assert controller.run(attempt, sequence=1) == "ok"
        assert sleeps == [7.0]

    def test_unknown_errors_abandoned(self, controller):
        attempt = FlakyAttempt(KeyError("price"))

        with pytest.raises(UnitAbandoned) as exc_info:
            controller.run(attempt, sequence=1)

        assert exc_info.value.failure.classification == FailureClass.UNKNOWN

    def test_invalid_budget(self):
        with pytest.raises(ValueError):
            RetryController(retry_budget=0)
