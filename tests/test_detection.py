from formbatch.detection import (
    AMBIGUOUS_REASON,
    SubmissionEvidence,
    SubmitControlState,
    SuccessDetector,
    navigated_away,
)
from formbatch.schemas import RecoverableFailure, Success


def test_error_markers_win_over_positive_signals() -> None:
    evidence = SubmissionEvidence(
        error_texts=("  ", "Phone number is invalid"),
        success_markers=2,
        url_changed=True,
    )

    verdict = SuccessDetector().evaluate(evidence)

    assert verdict == RecoverableFailure("form validation error: Phone number is invalid")


def test_blank_error_markers_are_ignored() -> None:
    verdict = SuccessDetector().evaluate(SubmissionEvidence(error_texts=("", "   "), success_markers=1))

    assert verdict == Success()


def test_each_positive_signal_is_enough() -> None:
    detector = SuccessDetector(assume_success_when_ambiguous=False)

    for evidence in (
        SubmissionEvidence(success_markers=1),
        SubmissionEvidence(url_changed=True),
        SubmissionEvidence(filled_fields_empty=True),
        SubmissionEvidence(submit_control=SubmitControlState.DISABLED),
        SubmissionEvidence(submit_control=SubmitControlState.MISSING),
    ):
        assert detector.evaluate(evidence) == Success()


def test_ambiguous_evidence_defaults_to_success() -> None:
    assert SuccessDetector().evaluate(SubmissionEvidence()) == Success()


def test_ambiguous_evidence_can_be_a_failure() -> None:
    detector = SuccessDetector(assume_success_when_ambiguous=False)

    assert detector.evaluate(SubmissionEvidence()) == RecoverableFailure(AMBIGUOUS_REASON)


def test_custom_policy_chain_is_respected() -> None:
    detector = SuccessDetector([navigated_away], assume_success_when_ambiguous=False)

    # Success markers are not part of this chain.
    assert detector.evaluate(SubmissionEvidence(success_markers=3)) == RecoverableFailure(AMBIGUOUS_REASON)
    assert detector.evaluate(SubmissionEvidence(url_changed=True)) == Success()
