"""Deterministic classification of backend failures for lastError and diagnoses."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

FAILURE_CLASSIFIER_VERSION = 1


class FailureClass(str, Enum):
    """Coarse cause of a failed backend call."""

    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"

    @property
    def transient(self) -> bool:
        return self == FailureClass.BACKEND_TRANSIENT


_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
    "exceeded",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "restricted token",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
)

# Checked in order; the first rule with a matching pattern wins.
_RULES: tuple[tuple[FailureClass, str, tuple[str, ...]], ...] = (
    (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
    (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
    (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
    (FailureClass.BACKEND_TRANSIENT, "rate_limit_transient", _RATE_LIMIT_TRANSIENT_PATTERNS),
    (FailureClass.BACKEND_TRANSIENT, "generic_transient", _GENERIC_TRANSIENT_PATTERNS),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def summary(self, *, exit_code: int | None) -> str:
        matched = f", matched {self.matched_pattern!r}" if self.matched_pattern else ""
        return f"{self.reason_code} (exit={exit_code}{matched})"

    def to_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_backend_failure(
    *,
    backend: str,
    exit_code: int | None,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = (75,),
) -> FailureClassification:
    """Classify a non-timeout failure by its output text, first rule wins."""

    haystack = f"{stderr}\n{stdout}".lower()
    for failure_class, rule, patterns in _RULES:
        pattern = next((item for item in patterns if item in haystack), None)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure_class,
                reason_code=f"{backend}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if exit_code in transient_exit_codes:
        return FailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=f"{backend}_backend_transient",
            matched_rule="transient_exit_code",
            matched_pattern=None,
        )
    return FailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code=f"{backend}_backend_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )
