"""
Retry/healing controller - classifies unit failures and decides what to retry.

State per unit: pending -> attempting -> succeeded | failed, and
failed -> pending again while the failure is transient and the retry
budget lasts. A structural mismatch gets exactly one more attempt with
the fallback strategy set. Everything else is abandoned; the states a
unit passed through are kept on its UnitFailure.
"""
import concurrent.futures
import logging
import time
from typing import Callable, Optional, TypeVar

import requests
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import (
    FetchError,
    NormalizationError,
    RateLimitedError,
    SelectorMissError,
    StructuralMismatchError,
    UnitAbandoned,
)
from ..models.report import AttemptState, FailureClass, UnitFailure


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _status(exc: BaseException) -> Optional[int]:
    return getattr(exc, "status_code", None)


# (predicate, classification), first match wins
CLASSIFICATION_RULES: list[tuple[Callable[[BaseException], bool], FailureClass]] = [
    (lambda e: isinstance(e, RateLimitedError) or _status(e) == 429, FailureClass.RATE_LIMIT),
    (lambda e: isinstance(e, StructuralMismatchError), FailureClass.STRUCTURAL_CHANGE),
    (lambda e: isinstance(e, SelectorMissError), FailureClass.SELECTOR_MISS),
    (lambda e: isinstance(e, FetchError) and _status(e) is not None and 400 <= _status(e) < 500
        and _status(e) != 408, FailureClass.CLIENT_ERROR),
    (lambda e: isinstance(e, FetchError) and e.transient, FailureClass.NETWORK),
    (lambda e: isinstance(e, FetchError), FailureClass.CLIENT_ERROR),
    (lambda e: isinstance(e, (requests.Timeout, requests.ConnectionError)), FailureClass.NETWORK),
    (lambda e: isinstance(e, (TimeoutError, concurrent.futures.TimeoutError, ConnectionError)),
        FailureClass.NETWORK),
    (lambda e: isinstance(e, NormalizationError), FailureClass.NORMALIZATION),
]


def classify(exc: BaseException) -> FailureClass:
    """Map an attempt's error onto a failure class."""
    for predicate, classification in CLASSIFICATION_RULES:
        if predicate(exc):
            return classification
    return FailureClass.UNKNOWN


class RetryController:
    """
    Runs unit attempts under the retry state machine, on top of tenacity.

    ``attempt`` is called with ``use_fallback``; it is False until a
    structural mismatch has been seen for the unit.
    """

    def __init__(
        self,
        retry_budget: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if retry_budget < 1:
            raise ValueError("retry_budget must be at least 1")
        self.retry_budget = retry_budget
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.sleep = sleep
        self._backoff = wait_exponential(multiplier=backoff_base, min=backoff_base, max=backoff_max)

    def run(self, attempt: Callable[[bool], T], sequence: int, url: Optional[str] = None) -> T:
        """
        Run ``attempt`` until it succeeds or the unit is abandoned.

        The structural fallback attempt is not counted against the retry
        budget: a unit whose last budgeted attempt hits a structural mismatch
        still gets its one fallback attempt.

        Raises:
            UnitAbandoned: carrying the UnitFailure to report
        """
        state = {"use_fallback": False, "structural_retries": 0}
        states = [AttemptState.PENDING]

        def transition(new_state: AttemptState) -> None:
            logger.debug(f"Unit {sequence}: {states[-1].value} -> {new_state.value}")
            states.append(new_state)

        def is_first_structural(exc: Optional[BaseException]) -> bool:
            return (
                exc is not None
                and classify(exc) == FailureClass.STRUCTURAL_CHANGE
                and state["structural_retries"] == 0
            )

        def should_retry(exc: BaseException) -> bool:
            if classify(exc) == FailureClass.STRUCTURAL_CHANGE:
                return is_first_structural(exc)
            return classify(exc).is_transient

        budget = stop_after_attempt(self.retry_budget)

        def stop(retry_state: RetryCallState) -> bool:
            if is_first_structural(retry_state.outcome.exception()):
                return False
            return budget(retry_state)

        def wait(retry_state: RetryCallState) -> float:
            delay = self._backoff(retry_state)
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            if classify(exc) == FailureClass.STRUCTURAL_CHANGE:
                # Re-extraction, not a re-fetch against a struggling server
                return 0.0
            retry_after = getattr(exc, "retry_after", None)
            if retry_after:
                delay = max(delay, min(float(retry_after), self.backoff_max))
            return delay

        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            classification = classify(exc)
            transition(AttemptState.FAILED)
            if classification == FailureClass.STRUCTURAL_CHANGE:
                state["use_fallback"] = True
                state["structural_retries"] += 1
            logger.warning(
                f"Unit {sequence} attempt {retry_state.attempt_number} failed "
                f"({classification.value}: {exc}); retrying"
                + (" with fallback strategies" if state["use_fallback"] else "")
            )
            transition(AttemptState.PENDING)

        retrying = Retrying(
            stop=stop,
            wait=wait,
            retry=retry_if_exception(should_retry),
            sleep=self.sleep,
            before_sleep=before_sleep,
            reraise=True,
        )

        attempts = 0
        try:
            for attempt_ctx in retrying:
                with attempt_ctx:
                    attempts += 1
                    transition(AttemptState.ATTEMPTING)
                    result = attempt(state["use_fallback"])
            transition(AttemptState.SUCCEEDED)
            return result
        except Exception as e:
            transition(AttemptState.FAILED)
            transition(AttemptState.ABANDONED)
            classification = classify(e)
            failure = UnitFailure(
                sequence=sequence,
                url=url,
                classification=classification,
                message=str(e) or type(e).__name__,
                attempts=attempts,
                flagged=classification == FailureClass.STRUCTURAL_CHANGE,
                states=list(states),
            )
            log = logger.error if failure.flagged or not classification.is_transient else logger.warning
            log(
                f"Abandoned unit {sequence} after {attempts} attempt(s): "
                f"{classification.value}: {failure.message}"
            )
            raise UnitAbandoned(failure) from e
