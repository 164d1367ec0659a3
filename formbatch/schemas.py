from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Union


Record = Mapping[str, str]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPING = "stopping"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Success:
    pass


@dataclass(frozen=True)
class RecoverableFailure:
    reason: str


@dataclass(frozen=True)
class FatalFailure:
    reason: str


AttemptOutcome = Union[Success, RecoverableFailure, FatalFailure]


@dataclass(frozen=True)
class SucceededRecord:
    index: int
    record: Record
    attempt_count: int


@dataclass(frozen=True)
class FailedRecord:
    index: int
    record: Record
    last_error: str
    attempt_count: int


@dataclass
class RunResult:
    successful: list[SucceededRecord] = field(default_factory=list)
    failed: list[FailedRecord] = field(default_factory=list)
    retries: int = 0

    @property
    def processed(self) -> int:
        return len(self.successful) + len(self.failed)


@dataclass(frozen=True)
class StatusSnapshot:
    state: RunState
    current_index: int
    total: int
    success_count: int
    failed_count: int
    retries: int
    progress_percent: int

    @classmethod
    def idle(cls, total: int = 0) -> "StatusSnapshot":
        return cls(
            state=RunState.IDLE,
            current_index=0,
            total=total,
            success_count=0,
            failed_count=0,
            retries=0,
            progress_percent=0,
        )


@dataclass(frozen=True)
class InvalidRow:
    row: int
    error: str
    data: dict[str, str]


@dataclass(frozen=True)
class IngestResult:
    records: list[dict[str, str]]
    errors: list[InvalidRow]
    total_rows: int

    @property
    def summary(self) -> dict[str, int]:
        return {
            "total_rows": self.total_rows,
            "valid_records": len(self.records),
            "invalid_records": len(self.errors),
        }
