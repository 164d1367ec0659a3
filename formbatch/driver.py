from collections.abc import Sequence
from typing import Protocol

from formbatch.detection import SubmissionEvidence


class FormDriverError(RuntimeError):
    pass


class NavigationFailure(FormDriverError):
    pass


class FieldNotFoundError(FormDriverError):
    def __init__(self, field: str, locator: str) -> None:
        super().__init__(f"field {field!r} not found ({locator})")
        self.field = field
        self.locator = locator


class FieldWriteError(FormDriverError):
    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"could not write field {field!r}: {reason}")
        self.field = field


class SubmitControlMissing(FormDriverError):
    pass


class SessionError(FormDriverError):
    pass


class FormDriver(Protocol):
    """One browser session against the remote form.

    ``open`` reaches the form and raises ``NavigationFailure`` when it cannot.
    ``reset`` replaces the current page with a fresh, empty form. Every other
    failure is raised as a ``FormDriverError`` subclass (or whatever the
    underlying library raises) and is retried by the controller.
    """

    def open(self) -> None: ...

    def reset(self) -> None: ...

    def fill(self, field: str, value: str) -> None: ...

    def submit(self) -> None: ...

    def collect_evidence(self, filled_fields: Sequence[str]) -> SubmissionEvidence: ...

    def close(self) -> None: ...
