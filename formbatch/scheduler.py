import logging

from apscheduler.events import EVENT_JOB_ERROR, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler

from formbatch.controller import SubmissionController


logger = logging.getLogger(__name__)

RUN_JOB_ID = "submission_run"


def _log_job_error(event: JobExecutionEvent) -> None:
    logger.error(
        "submission run failed",
        extra={"job_id": event.job_id, "error": str(event.exception)},
    )


class RunExecutor:
    def __init__(self) -> None:
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.scheduler.add_listener(_log_job_error, EVENT_JOB_ERROR)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("run executor started")

    def shutdown(self, *, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("run executor stopped")

    def submit(self, controller: SubmissionController) -> None:
        # The caller has already claimed the controller, so the job only drives the loop.
        self.scheduler.add_job(
            controller.run,
            id=RUN_JOB_ID,
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=None,
        )
        logger.info("submission run queued", extra={"current_index": controller.current_index})
