from collections.abc import Callable, Sequence
import logging
import threading
import time
from typing import TYPE_CHECKING

from formbatch.config import Settings
from formbatch.detection import SuccessDetector
from formbatch.driver import FormDriver, NavigationFailure
from formbatch.forms import FormLayout
from formbatch.pacing import DelayScheduler
from formbatch.retry import RetryPolicy
from formbatch.schemas import (
    AttemptOutcome,
    FailedRecord,
    FatalFailure,
    Record,
    RecoverableFailure,
    RunResult,
    RunState,
    StatusSnapshot,
    Success,
    SucceededRecord,
)

if TYPE_CHECKING:
    from formbatch.run_store import RunLedger


logger = logging.getLogger(__name__)

STOPPED_REASON = "run stopped before the record finished"


class AlreadyRunningError(RuntimeError):
    pass


class NoActiveRunError(RuntimeError):
    pass


class SubmissionController:
    def __init__(
        self,
        driver: FormDriver,
        layout: FormLayout,
        *,
        retry_policy: RetryPolicy,
        delay_scheduler: DelayScheduler,
        detector: SuccessDetector | None = None,
        ledger: "RunLedger | None" = None,
    ) -> None:
        self.driver = driver
        self.layout = layout
        self.retry_policy = retry_policy
        self.delay_scheduler = delay_scheduler
        self.detector = detector or SuccessDetector()
        self.ledger = ledger

        self._lock = threading.RLock()
        self._wake = threading.Event()
        self._state = RunState.IDLE
        self._records: list[Record] = []
        self._current_index = 0
        self._result = RunResult()
        self._loop_active = False
        self._needs_reset = False
        self._trigger = "start"

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        driver: FormDriver,
        layout: FormLayout,
        *,
        ledger: "RunLedger | None" = None,
    ) -> "SubmissionController":
        return cls(
            driver,
            layout,
            retry_policy=RetryPolicy(settings.max_retries, settings.retry_backoff_seconds),
            delay_scheduler=DelayScheduler(settings.submission_delay_seconds, settings.random_delay_variation),
            detector=SuccessDetector(assume_success_when_ambiguous=settings.assume_success_when_ambiguous),
            ledger=ledger,
        )

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    @property
    def active(self) -> bool:
        with self._lock:
            return self._loop_active

    @property
    def current_index(self) -> int:
        with self._lock:
            return self._current_index

    @property
    def result(self) -> RunResult:
        with self._lock:
            return RunResult(list(self._result.successful), list(self._result.failed), self._result.retries)

    def start(self, records: Sequence[Record], start_index: int = 0) -> RunResult:
        self.begin(records, start_index)
        return self.run()

    def begin(self, records: Sequence[Record], start_index: int = 0) -> None:
        with self._lock:
            if self._state in (RunState.RUNNING, RunState.STOPPING) or self._loop_active:
                raise AlreadyRunningError("a submission run is already active")
            if not 0 <= start_index <= len(records):
                raise ValueError(f"start index {start_index} is outside 0..{len(records)}")

            self._records = list(records)
            self._current_index = start_index
            self._result = RunResult()
            self._state = RunState.RUNNING
            self._loop_active = True
            self._trigger = "start"
            self._wake.clear()

        logger.info("starting submission run", extra={"total": len(records), "start_index": start_index})

    def resume(self) -> RunResult | None:
        if not self.begin_resume():
            return None
        return self.run()

    def begin_resume(self) -> bool:
        with self._lock:
            if not self._records or self._current_index >= len(self._records):
                return False
            if self._state in (RunState.PAUSED, RunState.COMPLETED) and self._loop_active:
                # The worker has not wound down yet; it picks the run back up itself.
                self._state = RunState.RUNNING
                self._trigger = "resume"
                logger.info("resuming submission run", extra={"current_index": self._current_index})
                return False
            if self._state in (RunState.RUNNING, RunState.STOPPING) or self._loop_active:
                return False

            self._state = RunState.RUNNING
            self._loop_active = True
            self._trigger = "resume"
            self._wake.clear()

        logger.info("resuming submission run", extra={"current_index": self.current_index})
        return True

    def pause(self) -> None:
        with self._lock:
            if self._state is not RunState.RUNNING:
                return
            self._state = RunState.PAUSED
            self._wake.set()
        logger.info("pause requested", extra={"current_index": self.current_index})

    def stop(self) -> None:
        with self._lock:
            if self._state is RunState.RUNNING or (self._state is RunState.PAUSED and self._loop_active):
                self._state = RunState.STOPPING
            elif self._state is RunState.PAUSED:
                self._state = RunState.COMPLETED
            else:
                return
            self._wake.set()
        logger.info("stop requested", extra={"current_index": self.current_index})

    def status(self) -> StatusSnapshot:
        with self._lock:
            total = len(self._records)
            progress = round(self._current_index / total * 100) if total else 0
            return StatusSnapshot(
                state=self._state,
                current_index=self._current_index,
                total=total,
                success_count=len(self._result.successful),
                failed_count=len(self._result.failed),
                retries=self._result.retries,
                progress_percent=progress,
            )

    def run(self) -> RunResult:
        with self._lock:
            if self._state is not RunState.RUNNING or not self._loop_active:
                raise NoActiveRunError("begin() or begin_resume() must claim the run first")
            if self._current_index >= len(self._records):
                # Nothing left to submit, so no form session is opened.
                self._state = RunState.COMPLETED
                self._loop_active = False
                logger.info("no records to submit", extra={"current_index": self._current_index})
                return self.result

        while True:
            try:
                self._session()
            except Exception:
                with self._lock:
                    if self._state is not RunState.IDLE:
                        self._state = RunState.COMPLETED
                    self._loop_active = False
                raise

            with self._lock:
                # pause(), resume() and stop() may land while the session closes.
                if self._state is RunState.RUNNING and self._current_index < len(self._records):
                    logger.info("run resumed while winding down", extra={"current_index": self._current_index})
                    continue
                if self._state in (RunState.RUNNING, RunState.STOPPING):
                    self._state = RunState.COMPLETED
                self._loop_active = False
                break

        return self.result

    def _session(self) -> None:
        with self._lock:
            start_index = self._current_index
            total = len(self._records)
            trigger = self._trigger

        run_id = self.ledger.run_started(trigger=trigger, start_index=start_index, total=total) if self.ledger else None

        try:
            self.driver.open()
        except Exception as exc:
            with self._lock:
                self._state = RunState.IDLE
            logger.error("could not open the form", extra={"error": str(exc)})
            if self.ledger and run_id is not None:
                self.ledger.run_finished(run_id, status="failed", result=self.result, error=str(exc))
            if isinstance(exc, NavigationFailure):
                raise
            raise NavigationFailure(f"navigation failed: {exc}") from exc

        self._needs_reset = False
        error: str | None = None
        settled = RunState.COMPLETED
        try:
            while True:
                self._loop(run_id)
                with self._lock:
                    if self._state is RunState.RUNNING and self._current_index < len(self._records):
                        continue
                    settled = self._settle_state()
                    break
        except Exception as exc:
            error = str(exc)
            with self._lock:
                self._state = RunState.COMPLETED
            logger.exception("submission run aborted")
            raise
        finally:
            try:
                self.driver.close()
            except Exception:
                logger.warning("failed to close the form driver", exc_info=True)
            self._log_summary()
            if self.ledger and run_id is not None:
                self.ledger.run_finished(
                    run_id,
                    status="failed" if error else settled.value,
                    result=self.result,
                    error=error,
                )

    def _settle_state(self) -> RunState:
        if not (self._state is RunState.PAUSED and self._current_index < len(self._records)):
            self._state = RunState.COMPLETED
        return self._state

    def _loop(self, run_id: int | None) -> None:
        while True:
            with self._lock:
                if self._state is not RunState.RUNNING or self._current_index >= len(self._records):
                    return
                index = self._current_index
                record = self._records[index]

            logger.info(
                "processing record %s/%s: %s",
                index + 1,
                len(self._records),
                self.layout.describe(record),
                extra={"record_index": index},
            )
            outcome, attempts = self._submit_with_retries(run_id, index, record)

            if isinstance(outcome, FatalFailure):
                logger.warning("record abandoned: %s", outcome.reason, extra={"record_index": index})
                return

            with self._lock:
                failed: FailedRecord | None = None
                if isinstance(outcome, Success):
                    self._result.successful.append(SucceededRecord(index, record, attempts))
                else:
                    failed = FailedRecord(index, record, _reason(outcome), attempts)
                    self._result.failed.append(failed)
                self._current_index = index + 1
                more = self._current_index < len(self._records) and self._state is RunState.RUNNING

            if failed is not None and self.ledger and run_id is not None:
                self.ledger.record_failed(run_id, failed)

            if more:
                delay = self.delay_scheduler.next()
                logger.info("waiting %.1fs before next submission", delay, extra={"delay_seconds": delay})
                self._wait(delay, interrupt=lambda: self._state is not RunState.RUNNING)

    def _submit_with_retries(self, run_id: int | None, index: int, record: Record) -> tuple[AttemptOutcome, int]:
        label = self.layout.describe(record)
        max_attempts = self.retry_policy.max_attempts
        reset = self._needs_reset
        attempt = 0

        while True:
            attempt += 1
            started = time.monotonic()
            outcome = self._attempt(record, reset=reset)
            duration_ms = (time.monotonic() - started) * 1000
            if self.ledger and run_id is not None:
                self.ledger.attempt_finished(run_id, record_index=index, attempt=attempt, outcome=outcome, duration_ms=duration_ms)

            if isinstance(outcome, Success):
                logger.info("submitted %s", label, extra={"record_index": index, "attempt": attempt})
                self._refresh_session()
                return outcome, attempt

            logger.warning(
                "attempt %s/%s failed for %s: %s",
                attempt,
                max_attempts,
                label,
                _reason(outcome),
                extra={"record_index": index, "attempt": attempt},
            )
            decision = self.retry_policy.decide(attempt, outcome)
            if not decision.retry:
                logger.error("max retries exceeded for %s", label, extra={"record_index": index, "attempts": attempt})
                self._needs_reset = True
                return outcome, attempt

            if self._stop_requested():
                return FatalFailure(STOPPED_REASON), attempt
            if decision.backoff_seconds > 0:
                self._wait(decision.backoff_seconds, interrupt=self._stop_requested)
                if self._stop_requested():
                    return FatalFailure(STOPPED_REASON), attempt

            with self._lock:
                self._result.retries += 1
            reset = decision.reset_session

    def _attempt(self, record: Record, *, reset: bool) -> AttemptOutcome:
        filled: list[str] = []
        try:
            if reset:
                self.driver.reset()
            for name, value in self.layout.values_for(record):
                self.driver.fill(name, value)
                filled.append(name)
            self.driver.submit()
            evidence = self.driver.collect_evidence(filled)
        except Exception as exc:
            logger.debug("attempt raised", exc_info=True)
            return RecoverableFailure(str(exc) or exc.__class__.__name__)
        return self.detector.evaluate(evidence)

    def _refresh_session(self) -> None:
        try:
            self.driver.reset()
            self._needs_reset = False
        except Exception as exc:
            # The next record's first attempt retries the reset.
            logger.warning("failed to load a fresh form: %s", exc)
            self._needs_reset = True

    def _stop_requested(self) -> bool:
        with self._lock:
            return self._state is RunState.STOPPING

    def _wait(self, seconds: float, *, interrupt: Callable[[], bool]) -> None:
        deadline = time.monotonic() + seconds
        while True:
            with self._lock:
                if interrupt():
                    return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._wake.wait(remaining)
            self._wake.clear()

    def _log_summary(self) -> None:
        status = self.status()
        logger.info(
            "run summary: total=%s successful=%s failed=%s retries=%s progress=%s%% state=%s",
            status.total,
            status.success_count,
            status.failed_count,
            status.retries,
            status.progress_percent,
            status.state.value,
        )


def _reason(outcome: AttemptOutcome) -> str:
    return getattr(outcome, "reason", "")
