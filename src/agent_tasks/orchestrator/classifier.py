"""Deterministic verdict on agent output: explicit markers first, heuristics second."""

from __future__ import annotations

import re
from dataclasses import dataclass

RESULT_CLASSIFIER_VERSION = 1

COMPLETION_MARKER = "<promise>COMPLETE</promise>"
FAILURE_MARKER = "<promise>FAILED</promise>"

# Only the conclusion of a long transcript is inspected by the heuristics.
HEURISTIC_TAIL_CHARS = 2000
FAILURE_REASON_MAX_CHARS = 200

UNKNOWN_ERROR_REASON = "unknown error"
NO_SIGNAL_REASON = "No completion signal in agent output"

_MARKER_REASON_PATTERN = re.compile(
    re.escape(FAILURE_MARKER)
    + r"\s*(?:failure reason:|reason:|실패 이유:)?\s*(.{1,"
    + str(FAILURE_REASON_MAX_CHARS)
    + r"})",
    re.IGNORECASE,
)

_FALLBACK_REASON_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"error:\s*(.{1,150})", re.IGNORECASE),
    re.compile(r"failed:\s*(.{1,150})", re.IGNORECASE),
    re.compile(r"실패:\s*(.{1,150})"),
    re.compile(r"오류:\s*(.{1,150})"),
)

# Evaluated in this order; the first rule that matches is the failure candidate.
_CRITICAL_FAILURE_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("error", re.compile(r"error:\s*(.{0,100})", re.IGNORECASE)),
    ("fatal", re.compile(r"fatal:\s*(.{0,100})", re.IGNORECASE)),
    ("exception", re.compile(r"exception:\s*(.{0,100})", re.IGNORECASE)),
    ("panic", re.compile(r"panic:\s*(.{0,100})", re.IGNORECASE)),
    ("failed_to", re.compile(r"failed to\s+(.{0,50})", re.IGNORECASE)),
    ("could_not", re.compile(r"could not\s+(.{0,50})", re.IGNORECASE)),
    ("unable_to", re.compile(r"unable to\s+(.{0,50})", re.IGNORECASE)),
)

_SUCCESS_INDICATORS: tuple[str, ...] = (
    "completed successfully",
    "successfully",
    "all tests passed",
    "build succeeded",
    "완료했",
    "완료됐",
    "작업을 완료",
    "모든 테스트 통과",
    "빌드 성공",
)
_SUCCESS_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = tuple(
    (indicator, re.compile(re.escape(indicator), re.IGNORECASE))
    for indicator in _SUCCESS_INDICATORS
)


@dataclass(slots=True, frozen=True)
class ClassificationResult:
    """Verdict on one attempt's output."""

    success: bool
    reason: str | None
    matched_rule: str
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for notifications and logs."""

        return {
            "classifier_version": RESULT_CLASSIFIER_VERSION,
            "success": self.success,
            "reason": self.reason,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_output(output: str, *, strict_mode: bool) -> ClassificationResult:
    """Decide success or failure of an attempt that exited with code 0.

    ``strict_mode`` is enabled for tasks with more than one allowed attempt:
    without any signal such a task fails, so it gets retried instead of being
    completed on a silent transcript.
    """

    has_completion = COMPLETION_MARKER in output
    has_failure = FAILURE_MARKER in output

    if has_completion and not has_failure:
        return ClassificationResult(
            success=True,
            reason=None,
            matched_rule="completion_marker",
            matched_pattern=COMPLETION_MARKER,
        )
    if has_failure:
        return ClassificationResult(
            success=False,
            reason=extract_failure_reason(output),
            matched_rule="failure_marker",
            matched_pattern=FAILURE_MARKER,
        )

    return _classify_tail(output[-HEURISTIC_TAIL_CHARS:], strict_mode=strict_mode)


def extract_failure_reason(output: str) -> str:
    """Pull a human-readable reason for an explicit failure marker."""

    match = _MARKER_REASON_PATTERN.search(output)
    if match is not None and match.group(1).strip():
        return match.group(1).strip()

    for pattern in _FALLBACK_REASON_PATTERNS:
        match = pattern.search(output)
        if match is not None:
            return match.group(1).strip()

    return UNKNOWN_ERROR_REASON


def late_success_overrides_failure(tail: str, failure_position: int) -> bool:
    """Tie-break policy: a success phrase after the first failure match wins."""

    last_success = _last_success_position(tail)
    return last_success > failure_position


def _classify_tail(tail: str, *, strict_mode: bool) -> ClassificationResult:
    success_indicator = _first_success_indicator(tail)

    for rule_name, pattern in _CRITICAL_FAILURE_RULES:
        match = pattern.search(tail)
        if match is None:
            continue
        if success_indicator is not None and late_success_overrides_failure(
            tail,
            match.start(),
        ):
            return ClassificationResult(
                success=True,
                reason=None,
                matched_rule="late_success_overrides_failure",
                matched_pattern=success_indicator,
            )
        return ClassificationResult(
            success=False,
            reason=match.group(1).strip() or "error detected",
            matched_rule=rule_name,
            matched_pattern=pattern.pattern,
        )

    if success_indicator is not None:
        return ClassificationResult(
            success=True,
            reason=None,
            matched_rule="success_indicator",
            matched_pattern=success_indicator,
        )

    if strict_mode:
        return ClassificationResult(
            success=False,
            reason=NO_SIGNAL_REASON,
            matched_rule="no_signal_strict",
        )
    return ClassificationResult(success=True, reason=None, matched_rule="no_signal_permissive")


def _first_success_indicator(text: str) -> str | None:
    for indicator, pattern in _SUCCESS_PATTERNS:
        if pattern.search(text) is not None:
            return indicator
    return None


def _last_success_position(text: str) -> int:
    last = -1
    for _, pattern in _SUCCESS_PATTERNS:
        for match in pattern.finditer(text):
            last = max(last, match.start())
    return last
