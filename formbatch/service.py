from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
import logging
from pathlib import Path
import threading
import uuid

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session, sessionmaker

from formbatch.config import Settings
from formbatch.controller import AlreadyRunningError, NoActiveRunError, SubmissionController
from formbatch.database import build_session_factory, get_db
from formbatch.driver import FormDriver
from formbatch.forms import FormLayout, resolve_layout
from formbatch.ingest import ingest_csv_text, render_sample_csv
from formbatch.run_store import RunLedger, list_runs
from formbatch.schemas import IngestResult, StatusSnapshot
from formbatch.scheduler import RunExecutor


logger = logging.getLogger(__name__)

VERSION = "0.1.0"
MAX_REPORTED_ERRORS = 10

DriverFactory = Callable[[Settings, FormLayout], FormDriver]


class RequestRejected(ValueError):
    def __init__(self, message: str, details: list[dict[str, object]] | None = None) -> None:
        super().__init__(message)
        self.details = details


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRequest(CamelModel):
    start_index: int = Field(default=0, ge=0)
    delay: int | None = Field(default=None, ge=0, description="base delay between submissions in milliseconds")


class StatusResponse(CamelModel):
    state: str
    current_index: int
    total: int
    success_count: int
    failed_count: int
    retries: int
    progress_percent: int

    @classmethod
    def from_snapshot(cls, snapshot: StatusSnapshot) -> "StatusResponse":
        return cls(
            state=snapshot.state.value,
            current_index=snapshot.current_index,
            total=snapshot.total,
            success_count=snapshot.success_count,
            failed_count=snapshot.failed_count,
            retries=snapshot.retries,
            progress_percent=snapshot.progress_percent,
        )


class RunSummary(CamelModel):
    id: int
    trigger: str
    status: str
    start_index: int
    total_records: int
    successful: int
    failed: int
    retries: int
    started_at: datetime
    completed_at: datetime | None
    error: str | None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


@dataclass
class UploadedData:
    file_path: Path
    result: IngestResult
    timestamp: str


def _invalid_rows(result: IngestResult) -> list[dict[str, object]]:
    return [{"row": invalid.row, "error": invalid.error, "data": invalid.data} for invalid in result.errors]


class ControlPlane:
    def __init__(
        self,
        settings: Settings,
        driver_factory: DriverFactory,
        *,
        layout: FormLayout,
        ledger: RunLedger | None = None,
        executor: RunExecutor | None = None,
    ) -> None:
        self.settings = settings
        self.driver_factory = driver_factory
        self.layout = layout
        self.ledger = ledger
        self.executor = executor or RunExecutor()
        self.uploaded: UploadedData | None = None
        self.controller: SubmissionController | None = None
        self._draining: SubmissionController | None = None
        self._lock = threading.Lock()

    def upload(self, *, filename: str, content_type: str | None, payload: bytes) -> IngestResult:
        if not filename.lower().endswith(".csv") and content_type != "text/csv":
            raise RequestRejected("Only CSV files are allowed")
        if len(payload) > self.settings.max_upload_bytes:
            raise RequestRejected(f"File too large. Max: {self.settings.max_upload_bytes} bytes")
        try:
            text = payload.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise RequestRejected(f"CSV must be UTF-8 encoded: {exc}") from exc

        result = ingest_csv_text(text)
        if not result.records:
            raise RequestRejected("No valid records found in CSV", details=_invalid_rows(result))

        upload_dir = Path(self.settings.upload_dir)
        upload_dir.mkdir(parents=True, exist_ok=True)
        file_path = upload_dir / f"data-{datetime.now(UTC):%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}.csv"
        file_path.write_bytes(payload)

        with self._lock:
            previous = self.uploaded
            self.uploaded = UploadedData(
                file_path=file_path,
                result=result,
                timestamp=datetime.now(UTC).isoformat(),
            )
        if previous is not None:
            previous.file_path.unlink(missing_ok=True)

        logger.info("csv processed", extra={"valid_records": len(result.records), "file": str(file_path)})
        return result

    def start(self, *, start_index: int = 0, delay_ms: int | None = None) -> int:
        with self._lock:
            if self.uploaded is None:
                raise NoActiveRunError("No data uploaded. Please upload a CSV first.")
            if any(live is not None and live.active for live in (self.controller, self._draining)):
                raise AlreadyRunningError("Automation is already running")

            records = self.uploaded.result.records
            if start_index > len(records):
                raise RequestRejected(f"startIndex must be between 0 and {len(records)}")

            settings = self.settings
            if delay_ms is not None:
                settings = replace(settings, submission_delay_seconds=delay_ms / 1000)

            driver = self.driver_factory(settings, self.layout)
            controller = SubmissionController.from_settings(settings, driver, self.layout, ledger=self.ledger)
            controller.begin(records, start_index)
            self.controller = controller

        self.executor.submit(controller)
        return len(records)

    def pause(self) -> None:
        self._require_controller("No automation running").pause()

    def stop(self) -> None:
        self._require_controller("No automation running").stop()

    def resume(self) -> None:
        controller = self._require_controller("No automation to resume")
        if controller.begin_resume():
            self.executor.submit(controller)

    def status(self) -> StatusSnapshot:
        with self._lock:
            controller = self.controller
            total = len(self.uploaded.result.records) if self.uploaded else 0
        if controller is None:
            return StatusSnapshot.idle(total)
        return controller.status()

    def clear(self) -> None:
        with self._lock:
            uploaded, self.uploaded = self.uploaded, None
            controller, self.controller = self.controller, None
            if controller is not None:
                self._draining = controller
        if uploaded is not None:
            uploaded.file_path.unlink(missing_ok=True)
        if controller is not None:
            controller.stop()
        logger.info("uploaded data cleared")

    def _require_controller(self, message: str) -> SubmissionController:
        with self._lock:
            if self.controller is None:
                raise NoActiveRunError(message)
            return self.controller


def _default_driver_factory(settings: Settings, layout: FormLayout) -> FormDriver:
    from formbatch.browser import PlaywrightFormDriver

    return PlaywrightFormDriver(settings, layout)


def create_app(
    settings: Settings,
    *,
    driver_factory: DriverFactory | None = None,
    session_factory: sessionmaker[Session] | None = None,
    executor: RunExecutor | None = None,
) -> FastAPI:
    session_factory = session_factory or build_session_factory(settings.database_url)
    layout = resolve_layout(settings)
    plane = ControlPlane(
        settings,
        driver_factory or _default_driver_factory,
        layout=layout,
        ledger=RunLedger(session_factory, form_url=settings.form_url),
        executor=executor,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        plane.executor.start()
        yield
        if plane.controller is not None:
            plane.controller.stop()
        plane.executor.shutdown(wait=False)

    app = FastAPI(title="formbatch", version=VERSION, lifespan=lifespan)
    app.state.control_plane = plane

    def db_session() -> Generator[Session, None, None]:
        yield from get_db(session_factory)

    @app.exception_handler(AlreadyRunningError)
    @app.exception_handler(NoActiveRunError)
    async def control_error(request: Request, exc: RuntimeError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RequestRejected)
    async def upload_error(request: Request, exc: RequestRejected) -> JSONResponse:
        content: dict[str, object] = {"detail": str(exc)}
        if exc.details is not None:
            content["details"] = exc.details
        return JSONResponse(status_code=400, content=content)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy", "timestamp": datetime.now(UTC).isoformat(), "version": VERSION}

    @app.post("/upload")
    async def upload(csv_file: UploadFile = File(..., alias="csvFile")) -> dict[str, object]:
        limit = settings.max_upload_bytes
        if csv_file.size is not None and csv_file.size > limit:
            raise RequestRejected(f"File too large. Max: {limit} bytes")
        # One byte past the limit is enough for upload() to reject it.
        payload = await csv_file.read(limit + 1)
        result = plane.upload(filename=csv_file.filename or "", content_type=csv_file.content_type, payload=payload)
        return {
            "success": True,
            "data": {
                "recordsCount": len(result.records),
                "summary": result.summary,
                "errors": _invalid_rows(result)[:MAX_REPORTED_ERRORS],
            },
        }

    @app.post("/start")
    def start(body: StartRequest | None = None) -> dict[str, object]:
        body = body or StartRequest()
        total = plane.start(start_index=body.start_index, delay_ms=body.delay)
        return {
            "success": True,
            "message": "Automation started",
            "totalRecords": total,
            "startIndex": body.start_index,
        }

    @app.post("/stop")
    def stop() -> dict[str, object]:
        plane.stop()
        return {"success": True, "message": "Automation stopped"}

    @app.post("/pause")
    def pause() -> dict[str, object]:
        plane.pause()
        return {"success": True, "message": "Automation paused"}

    @app.post("/resume")
    def resume() -> dict[str, object]:
        plane.resume()
        return {"success": True, "message": "Automation resumed"}

    @app.get("/status", response_model=StatusResponse)
    def status() -> StatusResponse:
        return StatusResponse.from_snapshot(plane.status())

    @app.post("/clear")
    def clear() -> dict[str, object]:
        plane.clear()
        return {"success": True, "message": "Data cleared"}

    @app.get("/data-info")
    def data_info() -> dict[str, object]:
        uploaded = plane.uploaded
        if uploaded is None:
            return {"hasData": False}
        return {"hasData": True, "summary": uploaded.result.summary, "timestamp": uploaded.timestamp}

    @app.get("/sample-csv")
    def sample_csv() -> Response:
        return Response(
            content=render_sample_csv(),
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="formbatch-sample.csv"'},
        )

    @app.get("/runs", response_model=list[RunSummary])
    def runs(limit: int = 20, db: Session = Depends(db_session)) -> list[RunSummary]:
        return [RunSummary.model_validate(run) for run in list_runs(db, limit=limit)]

    return app
