"""
Provider Status Normalization - raw provider vocabularies to CanonicalStatus.

Downstream code only ever branches on CanonicalStatus; raw strings stop here.
"""

from structlog import get_logger

from promind.models.api import CanonicalStatus, FailureReason, ProviderName

logger = get_logger(__name__)


# OpenAI Assistants run statuses
ASSISTANT_STATUS_TABLE: dict[str, CanonicalStatus] = {
    "queued": CanonicalStatus.QUEUED,
    "in_progress": CanonicalStatus.PROCESSING,
    "requires_action": CanonicalStatus.PROCESSING,
    "cancelling": CanonicalStatus.PROCESSING,
    "completed": CanonicalStatus.COMPLETED,
    "failed": CanonicalStatus.FAILED,
    "cancelled": CanonicalStatus.FAILED,
    "expired": CanonicalStatus.FAILED,
    "incomplete": CanonicalStatus.FAILED,
}

# Kling task statuses
KLING_STATUS_TABLE: dict[str, CanonicalStatus] = {
    "submitted": CanonicalStatus.QUEUED,
    "processing": CanonicalStatus.PROCESSING,
    "succeed": CanonicalStatus.COMPLETED,
    "failed": CanonicalStatus.FAILED,
}

# OpenAI-compatible /v1/videos statuses
VIDEO_B_STATUS_TABLE: dict[str, CanonicalStatus] = {
    "queued": CanonicalStatus.QUEUED,
    "submitted": CanonicalStatus.QUEUED,
    "in_progress": CanonicalStatus.PROCESSING,
    "processing": CanonicalStatus.PROCESSING,
    "completed": CanonicalStatus.COMPLETED,
    "succeeded": CanonicalStatus.COMPLETED,
    "failed": CanonicalStatus.FAILED,
    "expired": CanonicalStatus.FAILED,
    "cancelled": CanonicalStatus.FAILED,
}

STATUS_TABLES: dict[ProviderName, dict[str, CanonicalStatus]] = {
    ProviderName.ASSISTANT: ASSISTANT_STATUS_TABLE,
    ProviderName.VIDEO_A: KLING_STATUS_TABLE,
    ProviderName.VIDEO_B: VIDEO_B_STATUS_TABLE,
}

_PHASE_TEXT = {
    CanonicalStatus.SUBMITTED: "submitted",
    CanonicalStatus.QUEUED: "queued",
    CanonicalStatus.PROCESSING: "processing",
    CanonicalStatus.COMPLETED: "completed",
    CanonicalStatus.FAILED: "failed",
}

# Provider error codes/messages with a user-facing explanation
_FAILURE_MESSAGES: dict[str, str] = {
    "moderation_blocked": (
        "The request was rejected by the provider's content filter. "
        "Try rephrasing the description."
    ),
    "content_policy_violation": (
        "The request was rejected by the provider's content filter. "
        "Try rephrasing the description."
    ),
    "rate_limit_exceeded": "The provider is overloaded right now. Please try again later.",
    "insufficient_quota": "The provider is temporarily unavailable. Please try again later.",
}

_REASON_MESSAGES: dict[FailureReason, str] = {
    FailureReason.TIMEOUT: "Generation took too long and was abandoned.",
    FailureReason.SUBMIT_FAILED: "The provider did not accept the request. Please try again later.",
    FailureReason.NOT_CONFIGURED: "This generation mode is not available right now.",
    FailureReason.PROVIDER_FAILED: "Generation failed on the provider side.",
}


def normalize_status(provider: ProviderName, raw_status: str | None) -> CanonicalStatus:
    """
    Map a provider status string to the canonical model.

    Unknown or missing statuses are treated as processing and logged.
    """
    key = (raw_status or "").strip().lower()
    canonical = STATUS_TABLES[provider].get(key)
    if canonical is None:
        logger.warning(
            "provider_status_unmapped",
            provider=provider.value,
            raw_status=raw_status,
        )
        return CanonicalStatus.PROCESSING
    return canonical


def progress_text(status: CanonicalStatus, progress_percent: int | None = None) -> str:
    """Uniform progress label: 'processing (N%)' when a percentage is known."""
    if status == CanonicalStatus.PROCESSING and progress_percent is not None:
        percent = max(0, min(100, int(progress_percent)))
        return f"processing ({percent}%)"
    return _PHASE_TEXT[status]


def describe_failure(reason: FailureReason, detail: str | None = None) -> str:
    """Human-readable explanation of a failed job for the end user."""
    if detail:
        key = detail.strip().lower()
        for code, message in _FAILURE_MESSAGES.items():
            if code in key:
                return message
    base = _REASON_MESSAGES[reason]
    if reason == FailureReason.PROVIDER_FAILED and detail:
        return f"{base} Reason: {detail}"
    return base
