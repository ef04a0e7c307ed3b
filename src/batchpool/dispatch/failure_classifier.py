"""Deterministic classification of remote transport failures."""

from __future__ import annotations

from dataclasses import dataclass

from batchpool.dispatch.models import FailureClass

TRANSPORT_FAILURE_CLASSIFIER_VERSION = 1
SSH_CONNECTION_ERROR_EXIT_CODE = 255

_UNREACHABLE_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "no route to host",
    "could not resolve hostname",
    "name or service not known",
    "connection timed out",
    "operation timed out",
    "network is unreachable",
    "host is down",
    "connection closed by",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "permission denied (publickey",
    "host key verification failed",
    "authentication failed",
    "too many authentication failures",
)
_AGENT_MISSING_PATTERNS: tuple[str, ...] = (
    "no module named",
    "command not found",
    "no such file or directory",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "connection reset",
    "broken pipe",
    "resource temporarily unavailable",
    "temporarily unavailable",
    "temporary failure",
)


@dataclass(slots=True)
class TransportFailureClassification:
    """Normalized transport failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def unreachable(self) -> bool:
        return self.failure_class is FailureClass.WORKER_UNREACHABLE

    def to_log_details(self, *, host: str) -> dict[str, object]:
        """Serialize classifier diagnostics for log records."""

        return {
            "classifier_version": TRANSPORT_FAILURE_CLASSIFIER_VERSION,
            "host": host,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_transport_failure(
    *,
    exit_code: int,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> TransportFailureClassification:
    """Classify a remote run that produced no result payload.

    Unreachable and auth failures mean the host cannot run any job, so the
    dispatcher drops that worker; the remaining classes fail only the job.
    """

    haystack = stderr.lower()

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return TransportFailureClassification(
            failure_class=FailureClass.WORKER_UNREACHABLE,
            reason_code="remote_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _UNREACHABLE_PATTERNS)
    if pattern is not None:
        return TransportFailureClassification(
            failure_class=FailureClass.WORKER_UNREACHABLE,
            reason_code="remote_unreachable",
            matched_rule="unreachable",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _AGENT_MISSING_PATTERNS)
    if pattern is not None:
        return TransportFailureClassification(
            failure_class=FailureClass.WORKER_UNREACHABLE,
            reason_code="remote_agent_missing",
            matched_rule="agent_missing",
            matched_pattern=pattern,
        )

    if exit_code == SSH_CONNECTION_ERROR_EXIT_CODE:
        return TransportFailureClassification(
            failure_class=FailureClass.WORKER_UNREACHABLE,
            reason_code="remote_unreachable",
            matched_rule="ssh_exit_code",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return TransportFailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="remote_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return TransportFailureClassification(
        failure_class=FailureClass.WORKER_ERROR,
        reason_code="remote_agent_error",
        matched_rule="fallback_worker_error",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
