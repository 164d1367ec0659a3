"""Success detection for forms that give no machine-readable acknowledgment.

Each policy looks at one weak signal in the evidence gathered after submit and
either returns a verdict or passes. The first verdict wins, so order matters:
explicit error markers always beat any positive signal.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
import logging

from formbatch.schemas import AttemptOutcome, RecoverableFailure, Success


logger = logging.getLogger(__name__)


class SubmitControlState(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    MISSING = "missing"


@dataclass(frozen=True)
class SubmissionEvidence:
    error_texts: tuple[str, ...] = ()
    success_markers: int = 0
    url_changed: bool = False
    filled_fields_empty: bool = False
    submit_control: SubmitControlState = SubmitControlState.ENABLED


Policy = Callable[[SubmissionEvidence], AttemptOutcome | None]


def error_markers(evidence: SubmissionEvidence) -> AttemptOutcome | None:
    texts = [text.strip() for text in evidence.error_texts if text.strip()]
    if texts:
        return RecoverableFailure(f"form validation error: {' '.join(texts)}")
    return None


def success_markers(evidence: SubmissionEvidence) -> AttemptOutcome | None:
    return Success() if evidence.success_markers > 0 else None


def navigated_away(evidence: SubmissionEvidence) -> AttemptOutcome | None:
    return Success() if evidence.url_changed else None


def fields_cleared(evidence: SubmissionEvidence) -> AttemptOutcome | None:
    return Success() if evidence.filled_fields_empty else None


def submit_disabled(evidence: SubmissionEvidence) -> AttemptOutcome | None:
    return Success() if evidence.submit_control is SubmitControlState.DISABLED else None


def submit_missing(evidence: SubmissionEvidence) -> AttemptOutcome | None:
    return Success() if evidence.submit_control is SubmitControlState.MISSING else None


DEFAULT_POLICIES: tuple[Policy, ...] = (
    error_markers,
    success_markers,
    navigated_away,
    fields_cleared,
    submit_disabled,
    submit_missing,
)

AMBIGUOUS_REASON = "no submission acknowledgment"


class SuccessDetector:
    def __init__(
        self,
        policies: Sequence[Policy] = DEFAULT_POLICIES,
        *,
        assume_success_when_ambiguous: bool = True,
    ) -> None:
        self.policies = tuple(policies)
        self.assume_success_when_ambiguous = assume_success_when_ambiguous

    def evaluate(self, evidence: SubmissionEvidence) -> AttemptOutcome:
        for policy in self.policies:
            verdict = policy(evidence)
            if verdict is not None:
                logger.debug("submission verdict", extra={"policy": getattr(policy, "__name__", repr(policy)), "verdict": repr(verdict)})
                return verdict

        if self.assume_success_when_ambiguous:
            logger.warning("no clear success indicator found, assuming success")
            return Success()
        logger.warning("no clear success indicator found, treating as failure")
        return RecoverableFailure(AMBIGUOUS_REASON)
