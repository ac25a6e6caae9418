"""
Interactive Request Builder - per-user video parameter collection.

State machine per user:
    COLLECTING -> AWAITING_CONFIRMATION -> {CONFIRMED, CANCELLED}

A new request from the same user replaces the previous one. Nothing here
touches the ledger or providers; confirm() only hands the finished request
and its quote to the caller.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from structlog import get_logger

from promind.config import settings
from promind.exceptions import NoPendingRequestError, ValidationFailure, VideoParameterError
from promind.models.api import RequestState, VideoQuality
from promind.models.domain import PendingVideoRequest, VideoQuote
from promind.observability.metrics import metrics
from promind.services.state_store import InMemoryUserStateStore, UserStateStore

logger = get_logger(__name__)

DURATIONS: tuple[int, ...] = (5, 10, 15)

# Lite clips are rendered by Kling, which stops at 10 seconds
QUALITY_DURATIONS: dict[VideoQuality, tuple[int, ...]] = {
    VideoQuality.LITE: (5, 10),
    VideoQuality.PRO: DURATIONS,
}

_COMMAND_RE = re.compile(r"^/(?:vid|video)(?:@\w+)?(?:\s+|$)", re.IGNORECASE)
_DURATION_RE = re.compile(r"^(\d+)s?$", re.IGNORECASE)
_RAW_FLAG = "--raw"


def parse_duration(value: int | str) -> int:
    """Parse '10', '10s' or 10 into an allowed duration."""
    if isinstance(value, int):
        duration = value
    else:
        match = _DURATION_RE.match(value.strip())
        if match is None:
            raise VideoParameterError("duration", value, f"Invalid duration: {value!r}")
        duration = int(match.group(1))

    if duration not in DURATIONS:
        allowed = ", ".join(str(d) for d in DURATIONS)
        raise VideoParameterError(
            "duration", value, f"Duration must be one of {allowed} seconds, got {value!r}"
        )
    return duration


def parse_quality(value: VideoQuality | str) -> VideoQuality:
    """Parse 'lite' / 'pro' (case-insensitive)."""
    if isinstance(value, VideoQuality):
        return value
    try:
        return VideoQuality(value.strip().lower())
    except ValueError:
        allowed = ", ".join(q.value for q in VideoQuality)
        raise VideoParameterError(
            "quality", value, f"Quality must be one of {allowed}, got {value!r}"
        ) from None


def check_quality_duration(quality: VideoQuality | None, duration: int | None) -> None:
    """Reject a duration the chosen quality cannot render."""
    if quality is None or duration is None:
        return
    allowed = QUALITY_DURATIONS[quality]
    if duration not in allowed:
        seconds = ", ".join(str(d) for d in allowed)
        raise VideoParameterError(
            "duration",
            duration,
            f"{quality.value} videos can be {seconds} seconds long, got {duration}",
        )


def compute_video_cost(base_cost: int, duration: int, base_duration: int) -> int:
    """baseCost * duration / baseDuration, rounded up to whole tokens."""
    if base_duration <= 0:
        raise ValueError(f"Base duration must be positive: {base_duration}")
    return -(-base_cost * duration // base_duration)


@dataclass(frozen=True)
class VideoCommand:
    """Parsed one-shot /vid command."""

    prompt: str
    duration: int | None = None
    quality: VideoQuality | None = None
    skip_optimization: bool = False


def parse_video_command(text: str) -> VideoCommand | None:
    """
    Parse '/vid [duration] [quality] [--raw] <description>'.

    Returns None when text is not a video command. Options may come in any
    order; the first token that is not an unused option starts the
    description.

    Raises:
        VideoParameterError: Unsupported duration or empty description
    """
    match = _COMMAND_RE.match(text.strip())
    if match is None:
        return None

    tokens = text.strip()[match.end():].split()
    duration: int | None = None
    quality: VideoQuality | None = None
    skip_optimization = False

    index = 0
    while index < len(tokens):
        token = tokens[index]
        lowered = token.lower()
        if duration is None and _DURATION_RE.match(token):
            duration = parse_duration(token)
        elif quality is None and lowered in {q.value for q in VideoQuality}:
            quality = VideoQuality(lowered)
        elif not skip_optimization and lowered == _RAW_FLAG:
            skip_optimization = True
        else:
            break
        index += 1

    prompt = " ".join(tokens[index:])
    if not prompt:
        raise VideoParameterError("prompt", prompt, "Video description cannot be empty")

    return VideoCommand(
        prompt=prompt,
        duration=duration,
        quality=quality,
        skip_optimization=skip_optimization,
    )


class InteractiveRequestBuilder:
    """Holds at most one pending video request per user."""

    def __init__(
        self,
        base_costs: Mapping[VideoQuality, int],
        base_duration: int,
        ttl_seconds: int,
        store: UserStateStore[PendingVideoRequest] | None = None,
    ) -> None:
        self.base_costs = dict(base_costs)
        self.base_duration = base_duration
        self.ttl = timedelta(seconds=ttl_seconds)
        self._store: UserStateStore[PendingVideoRequest] = store or InMemoryUserStateStore()

    @classmethod
    def from_settings(cls) -> "InteractiveRequestBuilder":
        return cls(
            base_costs={
                VideoQuality.LITE: settings.video_base_cost_lite,
                VideoQuality.PRO: settings.video_base_cost_pro,
            },
            base_duration=settings.video_base_duration,
            ttl_seconds=settings.pending_request_ttl_seconds,
        )

    def begin(
        self,
        user_id: int,
        prompt: str,
        image_url: str | None = None,
        duration: int | str | None = None,
        quality: VideoQuality | str | None = None,
        skip_optimization: bool = False,
    ) -> PendingVideoRequest:
        """
        Start a request, discarding any previous one for the user.

        Supplying both duration and quality moves straight to
        AWAITING_CONFIRMATION.
        """
        if not prompt or not prompt.strip():
            raise VideoParameterError("prompt", prompt, "Video description cannot be empty")

        request = PendingVideoRequest(
            user_id=user_id,
            prompt=prompt.strip(),
            image_url=image_url,
            duration=parse_duration(duration) if duration is not None else None,
            quality=parse_quality(quality) if quality is not None else None,
            skip_optimization=skip_optimization,
        )
        check_quality_duration(request.quality, request.duration)
        if request.is_complete:
            request.state = RequestState.AWAITING_CONFIRMATION

        previous = self._store.set(user_id, request)
        if previous is not None:
            previous.state = RequestState.CANCELLED
            metrics.record_request_state(RequestState.CANCELLED.value)
            logger.info(
                "pending_request_replaced",
                user_id=user_id,
                previous_state=RequestState.CANCELLED.value,
            )

        metrics.record_request_state(request.state.value)
        logger.info(
            "pending_request_started",
            user_id=user_id,
            state=request.state.value,
            duration=request.duration,
            quality=request.quality.value if request.quality else None,
            has_image=image_url is not None,
        )
        return request

    def begin_from_command(
        self,
        user_id: int,
        text: str,
        image_url: str | None = None,
    ) -> PendingVideoRequest:
        """Start a request from a '/vid ...' command."""
        command = parse_video_command(text)
        if command is None:
            raise ValidationFailure("Not a video command")
        return self.begin(
            user_id,
            command.prompt,
            image_url=image_url,
            duration=command.duration,
            quality=command.quality,
            skip_optimization=command.skip_optimization,
        )

    def get(self, user_id: int) -> PendingVideoRequest | None:
        """Live pending request; expired ones are dropped as cancelled."""
        request = self._store.get(user_id)
        if request is None:
            return None

        if datetime.now(UTC) - request.created_at > self.ttl:
            self._store.delete(user_id)
            request.state = RequestState.CANCELLED
            metrics.record_request_state(RequestState.CANCELLED.value)
            logger.info("pending_request_expired", user_id=user_id)
            return None
        return request

    def select_parameters(
        self,
        user_id: int,
        quality: VideoQuality | str | None = None,
        duration: int | str | None = None,
    ) -> PendingVideoRequest:
        """
        Fill in quality and/or duration.

        Raises:
            NoPendingRequestError: No live request for the user
            VideoParameterError: Value outside the allowed set
        """
        request = self._require(user_id)

        parsed_quality = parse_quality(quality) if quality is not None else None
        parsed_duration = parse_duration(duration) if duration is not None else None
        check_quality_duration(
            parsed_quality or request.quality,
            parsed_duration if parsed_duration is not None else request.duration,
        )

        if parsed_quality is not None:
            request.quality = parsed_quality
        if parsed_duration is not None:
            request.duration = parsed_duration

        if request.is_complete and request.state == RequestState.COLLECTING:
            request.state = RequestState.AWAITING_CONFIRMATION
            metrics.record_request_state(request.state.value)

        logger.info(
            "pending_request_updated",
            user_id=user_id,
            state=request.state.value,
            duration=request.duration,
            quality=request.quality.value if request.quality else None,
        )
        return request

    def attach_confirmation_message(self, user_id: int, message_ref: str) -> None:
        """Remember the platform message showing the quote."""
        self._require(user_id).confirmation_message_ref = message_ref

    def quote_for(self, quality: VideoQuality, duration: int) -> VideoQuote:
        cost = compute_video_cost(self.base_costs[quality], duration, self.base_duration)
        return VideoQuote(duration=duration, quality=quality, cost=cost)

    def quote(self, user_id: int) -> VideoQuote:
        """Cost of the user's request once both parameters are known."""
        request = self._require(user_id)
        if request.duration is None or request.quality is None:
            raise ValidationFailure("Choose duration and quality first")
        return self.quote_for(request.quality, request.duration)

    def confirm(self, user_id: int) -> tuple[PendingVideoRequest, VideoQuote]:
        """
        Accept the quote and remove the request.

        The caller is responsible for the debit and the generation.
        """
        request = self._require(user_id)
        if request.state != RequestState.AWAITING_CONFIRMATION:
            raise ValidationFailure("Choose duration and quality first")

        quote = self.quote(user_id)
        self._store.delete(user_id)
        request.state = RequestState.CONFIRMED
        metrics.record_request_state(request.state.value)
        logger.info(
            "pending_request_confirmed",
            user_id=user_id,
            duration=quote.duration,
            quality=quote.quality.value,
            cost=quote.cost,
        )
        return request, quote

    def reinstate(self, request: PendingVideoRequest) -> bool:
        """
        Put a confirmed request back after its debit was refused.

        Returns False when the user has started another request meanwhile;
        the newer one wins.
        """
        if self.get(request.user_id) is not None:
            return False
        request.state = RequestState.AWAITING_CONFIRMATION
        self._store.set(request.user_id, request)
        metrics.record_request_state(request.state.value)
        logger.info("pending_request_reinstated", user_id=request.user_id)
        return True

    def cancel(self, user_id: int) -> bool:
        """Drop the user's request; returns False when there was none."""
        request = self._store.delete(user_id)
        if request is None:
            return False
        request.state = RequestState.CANCELLED
        metrics.record_request_state(request.state.value)
        logger.info("pending_request_cancelled", user_id=user_id)
        return True

    def _require(self, user_id: int) -> PendingVideoRequest:
        request = self.get(user_id)
        if request is None:
            raise NoPendingRequestError(user_id)
        return request
