"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed dataclasses.
Immutable values are frozen; the two stateful records (jobs and pending
requests) are plain dataclasses mutated only by their owning service.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from promind.models.api import (
    CanonicalStatus,
    FailureReason,
    JobKind,
    OrderAction,
    PaymentType,
    PlanType,
    ProviderName,
    RequestState,
    TransactionDirection,
    VideoQuality,
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Ledger Models
# ============================================================================


@dataclass(frozen=True)
class TokenAccountData:
    """Immutable token account snapshot."""

    user_id: int
    balance: int
    plan: PlanType | None
    plan_expires_at: datetime | None
    pending_payment: PaymentType | None

    def __post_init__(self) -> None:
        """Validate balance constraint."""
        if self.balance < 0:
            raise ValueError(f"Balance cannot be negative: {self.balance}")

    @property
    def has_active_plan(self) -> bool:
        return self.plan is not None


@dataclass(frozen=True)
class TransactionData:
    """Immutable ledger entry after persistence."""

    transaction_id: int
    user_id: int
    amount: int
    direction: TransactionDirection
    comment: str | None
    order_income_id: int | None
    created_at: datetime


@dataclass(frozen=True)
class RedemptionResult:
    """Outcome of redeeming an external shop order."""

    user_id: int
    order_id: int
    action: OrderAction
    tokens_credited: int
    plan: PlanType | None
    plan_expires_at: datetime | None
    balance: int


# ============================================================================
# Generation Models
# ============================================================================


@dataclass(frozen=True)
class PollPolicy:
    """Fixed-interval polling with an attempt budget."""

    interval_seconds: float
    max_attempts: int

    def __post_init__(self) -> None:
        if self.interval_seconds < 0:
            raise ValueError(f"Poll interval cannot be negative: {self.interval_seconds}")
        if self.max_attempts <= 0:
            raise ValueError(f"Poll budget must be positive: {self.max_attempts}")


@dataclass(frozen=True)
class GenerationRequest:
    """Provider-agnostic generation payload."""

    prompt: str
    duration: int | None = None
    quality: VideoQuality | None = None
    image_url: str | None = None
    attachments: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.prompt or not self.prompt.strip():
            raise ValueError("Prompt cannot be empty")


@dataclass(frozen=True)
class ResultPart:
    """
    One piece of a generation result.

    Exactly one of text, url or data is set. ref_id identifies the part
    for deduplication (provider file id, URL or message id).
    """

    ref_id: str
    text: str | None = None
    url: str | None = None
    data: bytes | None = None
    filename: str | None = None

    @property
    def is_text(self) -> bool:
        return self.text is not None

    @property
    def is_file(self) -> bool:
        return self.data is not None


@dataclass(frozen=True)
class ProviderSnapshot:
    """Raw provider view of a job at one instant."""

    job_id: str
    raw_status: str
    progress_percent: int | None = None
    result_url: str | None = None
    error: str | None = None
    session_id: str | None = None
    parts: tuple[ResultPart, ...] = ()


@dataclass
class GenerationJob:
    """In-memory record of one submitted job."""

    job_id: str
    user_id: int
    kind: JobKind
    provider: ProviderName
    request: GenerationRequest
    status: CanonicalStatus = CanonicalStatus.SUBMITTED
    progress_percent: int | None = None
    result_ref: str | None = None
    error: str | None = None
    session_id: str | None = None
    parts: tuple[ResultPart, ...] = ()
    created_at: datetime = field(default_factory=_utc_now)

    def advance(self, status: CanonicalStatus) -> bool:
        """
        Move to a new canonical status.

        Returns False (and keeps the current status) when the move would
        leave a terminal state or go backwards.
        """
        if self.status.is_terminal:
            return False
        if status.rank < self.status.rank:
            return False
        self.status = status
        return True


@dataclass(frozen=True)
class JobHandle:
    """Reference handed to callers of JobOrchestrator.submit."""

    job_id: str
    user_id: int
    kind: JobKind
    provider: ProviderName


@dataclass(frozen=True)
class ProgressEvent:
    """One poll observation surfaced to the caller."""

    job_id: str
    status: CanonicalStatus
    text: str
    attempt: int
    max_attempts: int


@dataclass(frozen=True)
class GenerationResult:
    """Successful job outcome."""

    job_id: str
    provider: ProviderName
    kind: JobKind
    parts: tuple[ResultPart, ...]

    @property
    def text(self) -> str | None:
        texts = [part.text for part in self.parts if part.text is not None]
        return "\n\n".join(texts) if texts else None

    @property
    def files(self) -> tuple[ResultPart, ...]:
        return tuple(part for part in self.parts if part.is_file)

    @property
    def result_ref(self) -> str | None:
        for part in self.parts:
            if part.url is not None:
                return part.url
        return None


@dataclass(frozen=True)
class GenerationFailure:
    """Unsuccessful job outcome (terminal failure, timeout or submission error)."""

    provider: ProviderName
    reason: FailureReason
    message: str | None = None
    job_id: str | None = None


# ============================================================================
# Dispatcher-facing Models
# ============================================================================


@dataclass(frozen=True)
class ChatFile:
    """File produced by the assistant."""

    filename: str
    data: bytes


@dataclass(frozen=True)
class ImageReply:
    """Generated image (bytes or URL), or why there is none."""

    charged: bool
    cost: int
    image: bytes | str | None = None
    has_active_plan: bool | None = None
    failure: GenerationFailure | None = None

    @property
    def ok(self) -> bool:
        return self.image is not None


@dataclass(frozen=True)
class ChatReply:
    """
    Assistant answer: text plus attached files (or the failure explanation).

    charged is False when the debit was refused and nothing was asked;
    has_active_plan then decides between a top-up and a subscription
    offer. image is set when the assistant answered with an image request.
    """

    text: str
    files: tuple[ChatFile, ...] = ()
    failure: GenerationFailure | None = None
    charged: bool = True
    has_active_plan: bool | None = None
    image: ImageReply | None = None

    @property
    def ok(self) -> bool:
        return self.charged and self.failure is None


@dataclass(frozen=True)
class VideoOptions:
    """Parameters for a direct video generation."""

    duration: int
    quality: VideoQuality
    image_url: str | None = None
    skip_optimization: bool = False


@dataclass(frozen=True)
class VideoGenerationResponse:
    """Outcome of a video generation as seen by the Dispatcher."""

    success: bool
    video_url: str | None = None
    error: str | None = None
    provider: ProviderName | None = None


@dataclass
class PendingVideoRequest:
    """Per-user parameter collection for an interactive video request."""

    user_id: int
    prompt: str
    image_url: str | None = None
    duration: int | None = None
    quality: VideoQuality | None = None
    skip_optimization: bool = False
    confirmation_message_ref: str | None = None
    state: RequestState = RequestState.COLLECTING
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def is_complete(self) -> bool:
        return self.duration is not None and self.quality is not None


@dataclass(frozen=True)
class VideoQuote:
    """Cost shown to the user before confirmation."""

    duration: int
    quality: VideoQuality
    cost: int


@dataclass(frozen=True)
class ConfirmOutcome:
    """Result of a paid video generation (a confirmed request or a direct call)."""

    charged: bool
    cost: int
    has_active_plan: bool | None = None
    response: VideoGenerationResponse | None = None
