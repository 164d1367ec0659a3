from collections.abc import Callable, Sequence
from pathlib import Path
import random

import pytest
from sqlalchemy.orm import Session, sessionmaker

from formbatch.config import Settings
from formbatch.controller import SubmissionController
from formbatch.database import build_session_factory
from formbatch.detection import SubmissionEvidence, SuccessDetector
from formbatch.driver import FieldWriteError, NavigationFailure, SessionError
from formbatch.forms import FieldKind, FieldSpec, FormLayout
from formbatch.pacing import DelayScheduler
from formbatch.retry import RetryPolicy
from formbatch.run_store import RunLedger


def make_records(count: int) -> list[dict[str, str]]:
    return [
        {"First Name": f"Person{index}", "Last Name": "Tester", "Email": f"person{index}@example.com"}
        for index in range(count)
    ]


class ScriptedDriver:
    """Fake form driver whose per-record behaviour is scripted by first name.

    Steps: "ok", "ambiguous", "reject" (validation error on the page),
    "crash" (session torn down on submit), "write" (field write failure).
    The last step repeats once a script runs out.
    """

    def __init__(
        self,
        script: dict[str, Sequence[str]] | None = None,
        *,
        fail_open: bool = False,
        on_submit: Callable[[str, int], None] | None = None,
    ) -> None:
        self.script = dict(script or {})
        self.fail_open = fail_open
        self.on_submit = on_submit
        self.opened = 0
        self.closed = 0
        self.resets = 0
        self.fills: list[tuple[str, str]] = []
        self.attempts: dict[str, int] = {}
        self._values: dict[str, str] = {}
        self._evidence = SubmissionEvidence()

    def open(self) -> None:
        self.opened += 1
        if self.fail_open:
            raise NavigationFailure("navigation failed: form unreachable")

    def reset(self) -> None:
        self.resets += 1
        self._values = {}

    def fill(self, field: str, value: str) -> None:
        name = self._values.get("First Name", "")
        if field != "First Name" and self._step(name, peek=True) == "write":
            self.attempts[name] = self.attempts.get(name, 0) + 1
            raise FieldWriteError(field, "element detached")
        self.fills.append((field, value))
        self._values[field] = value

    def submit(self) -> None:
        name = self._values.get("First Name", "")
        attempt = self.attempts.get(name, 0) + 1
        self.attempts[name] = attempt
        step = self._step(name)
        if self.on_submit is not None:
            self.on_submit(name, attempt)
        if step == "crash":
            raise SessionError("target page crashed")
        if step == "reject":
            self._evidence = SubmissionEvidence(error_texts=("Email is required",))
        elif step == "ambiguous":
            self._evidence = SubmissionEvidence()
        else:
            self._evidence = SubmissionEvidence(success_markers=1)

    def collect_evidence(self, filled_fields: Sequence[str]) -> SubmissionEvidence:
        return self._evidence

    def close(self) -> None:
        self.closed += 1

    def _step(self, name: str, *, peek: bool = False) -> str:
        steps = self.script.get(name) or ["ok"]
        attempt = self.attempts.get(name, 0) + (1 if peek else 0)
        return steps[min(attempt, len(steps)) - 1]


@pytest.fixture()
def layout() -> FormLayout:
    return FormLayout(
        fields=(
            FieldSpec("First Name", '[name="answer-1"]'),
            FieldSpec("Last Name", '[name="answer-2"]'),
            FieldSpec("Email", '[name="answer-5"]'),
            FieldSpec("Group", '[name="answer-10"]', FieldKind.SELECT),
        ),
        defaults={"Group": "CE LIMITLESS GROUP"},
        label_fields=("First Name", "Last Name"),
    )


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        app_name="formbatch",
        form_url="https://forms.example.test/registration",
        form_timeout_ms=1000,
        submission_delay_seconds=0,
        random_delay_variation=0,
        max_retries=1,
        retry_backoff_seconds=0,
        settle_seconds=0,
        assume_success_when_ambiguous=True,
        headless=True,
        browser_width=1366,
        browser_height=768,
        user_agent="formbatch-tests",
        form_layout_path=None,
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        upload_dir=str(tmp_path / "uploads"),
        max_upload_bytes=1024 * 1024,
        host="127.0.0.1",
        port=3000,
        log_level="INFO",
        log_file=None,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def build_controller(layout: FormLayout) -> Callable[..., SubmissionController]:
    def build(
        driver: ScriptedDriver,
        *,
        max_retries: int = 1,
        delay_seconds: float = 0,
        assume_success_when_ambiguous: bool = True,
        ledger: RunLedger | None = None,
    ) -> SubmissionController:
        return SubmissionController(
            driver,
            layout,
            retry_policy=RetryPolicy(max_retries),
            delay_scheduler=DelayScheduler(delay_seconds, 0.2, rng=random.Random(7)),
            detector=SuccessDetector(assume_success_when_ambiguous=assume_success_when_ambiguous),
            ledger=ledger,
        )

    return build
