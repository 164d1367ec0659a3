from dataclasses import dataclass

from formbatch.schemas import AttemptOutcome, RecoverableFailure


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    reset_session: bool
    backoff_seconds: float = 0.0


STOP = RetryDecision(retry=False, reset_session=False)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    backoff_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def decide(self, attempt: int, outcome: AttemptOutcome) -> RetryDecision:
        # Only recoverable failures are retried; a half-filled form is never reused.
        if not isinstance(outcome, RecoverableFailure):
            return STOP
        if attempt > self.max_retries:
            return STOP
        return RetryDecision(retry=True, reset_session=True, backoff_seconds=self.backoff_seconds * attempt)
