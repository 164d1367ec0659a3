import json

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from formbatch.database import session_scope
from formbatch.db_models import FailedSubmission, RecordAttempt, SubmissionRun, utc_now
from formbatch.schemas import AttemptOutcome, FailedRecord, FatalFailure, RecoverableFailure, RunResult


def create_run(
    db: Session,
    *,
    trigger: str,
    start_index: int,
    total_records: int,
    form_url: str | None = None,
) -> SubmissionRun:
    run = SubmissionRun(
        trigger=trigger,
        status="running",
        form_url=form_url,
        start_index=start_index,
        total_records=total_records,
        started_at=utc_now(),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def get_run(db: Session, run_id: int) -> SubmissionRun | None:
    return db.get(SubmissionRun, run_id)


def list_runs(db: Session, *, limit: int = 20) -> list[SubmissionRun]:
    stmt = select(SubmissionRun).order_by(SubmissionRun.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def store_attempt(
    db: Session,
    *,
    run_id: int,
    record_index: int,
    attempt: int,
    outcome: AttemptOutcome,
    duration_ms: float | None = None,
) -> RecordAttempt:
    if isinstance(outcome, RecoverableFailure):
        label, error = "recoverable_failure", outcome.reason
    elif isinstance(outcome, FatalFailure):
        label, error = "fatal_failure", outcome.reason
    else:
        label, error = "success", None

    row = RecordAttempt(
        run_id=run_id,
        record_index=record_index,
        attempt=attempt,
        outcome=label,
        finished_at=utc_now(),
        duration_ms=duration_ms,
        error=error,
    )
    db.add(row)
    db.commit()
    return row


def store_failed_record(db: Session, *, run_id: int, failed: FailedRecord) -> None:
    db.add(
        FailedSubmission(
            run_id=run_id,
            record_index=failed.index,
            raw_record=json.dumps(dict(failed.record), sort_keys=True),
            last_error=failed.last_error,
            attempts=failed.attempt_count,
        )
    )
    db.commit()


def finish_run(db: Session, run: SubmissionRun, *, status: str, result: RunResult, error: str | None = None) -> None:
    run.status = status
    run.successful = len(result.successful)
    run.failed = len(result.failed)
    run.retries = result.retries
    run.completed_at = utc_now()
    run.error = error
    db.commit()


class RunLedger:
    def __init__(self, session_factory: sessionmaker[Session], *, form_url: str | None = None) -> None:
        self.session_factory = session_factory
        self.form_url = form_url

    def run_started(self, *, trigger: str, start_index: int, total: int) -> int:
        with session_scope(self.session_factory) as db:
            run = create_run(db, trigger=trigger, start_index=start_index, total_records=total, form_url=self.form_url)
            return run.id

    def attempt_finished(
        self,
        run_id: int,
        *,
        record_index: int,
        attempt: int,
        outcome: AttemptOutcome,
        duration_ms: float | None = None,
    ) -> None:
        with session_scope(self.session_factory) as db:
            store_attempt(
                db,
                run_id=run_id,
                record_index=record_index,
                attempt=attempt,
                outcome=outcome,
                duration_ms=duration_ms,
            )

    def record_failed(self, run_id: int, failed: FailedRecord) -> None:
        with session_scope(self.session_factory) as db:
            store_failed_record(db, run_id=run_id, failed=failed)

    def run_finished(self, run_id: int, *, status: str, result: RunResult, error: str | None = None) -> None:
        with session_scope(self.session_factory) as db:
            run = get_run(db, run_id)
            if run is None:
                raise LookupError(f"submission run {run_id} not found")
            finish_run(db, run, status=status, result=result, error=error)
