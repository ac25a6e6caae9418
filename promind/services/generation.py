"""
Generation Service - the API the chat platform dispatcher talks to.

Wires the token ledger, the job orchestrator and the interactive request
builder together. Every paid operation debits its cost before anything is
submitted; a refused debit submits nothing. Tokens debited for a job that
later fails or times out are not refunded here; refunds go through credit().
"""

from collections.abc import Mapping
from typing import Protocol

from structlog import get_logger

from promind.config import settings
from promind.db.session import get_write_session_factory
from promind.exceptions import ProviderError, ValidationFailure, VideoParameterError
from promind.models.api import JobKind, ProviderName, VideoQuality
from promind.models.domain import (
    ChatFile,
    ChatReply,
    ConfirmOutcome,
    GenerationFailure,
    GenerationRequest,
    GenerationResult,
    ImageReply,
    PendingVideoRequest,
    TokenAccountData,
    VideoGenerationResponse,
    VideoOptions,
    VideoQuote,
)
from promind.services.assistant_provider import AssistantProvider
from promind.services.kling_provider import KlingVideoProvider
from promind.services.ledger import LedgerService
from promind.services.openai_video_provider import OpenAIVideoProvider
from promind.services.orchestrator import JobOrchestrator, ProgressCallback
from promind.services.request_builder import InteractiveRequestBuilder, check_quality_duration
from promind.services.session_registry import ConversationSessionRegistry, SessionFactory

logger = get_logger(__name__)

IMAGE_DIRECTIVE = "/imagine"

VIDEO_PROVIDERS: dict[VideoQuality, ProviderName] = {
    VideoQuality.LITE: ProviderName.VIDEO_A,
    VideoQuality.PRO: ProviderName.VIDEO_B,
}


class VideoDownloader(Protocol):
    async def download(self, result_url: str) -> bytes:
        ...


def extract_image_directive(answer: str | None) -> str | None:
    """
    Image prompt from an assistant reply of the form '/imagine <prompt>'.

    Returns None for ordinary replies.
    """
    if not answer:
        return None
    text = answer.strip()
    if not text.lower().startswith(IMAGE_DIRECTIVE):
        return None
    prompt = text[len(IMAGE_DIRECTIVE):].strip()
    return prompt or None


def _require_prompt(text: str | None) -> str:
    if not text or not text.strip():
        raise ValidationFailure("Message cannot be empty")
    return text.strip()


def _video_comment(quote: VideoQuote) -> str:
    return f"video {quote.quality.value} {quote.duration}s"


class GenerationService:
    """Dispatcher-facing operations: chat, images, videos and tokens."""

    def __init__(
        self,
        session_factory: SessionFactory,
        orchestrator: JobOrchestrator,
        builder: InteractiveRequestBuilder,
        assistant: AssistantProvider,
        downloaders: Mapping[ProviderName, VideoDownloader],
        optimize_video_prompts: bool = True,
        text_cost: int = 1,
        image_cost: int = 60,
    ) -> None:
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.builder = builder
        self.assistant = assistant
        self.downloaders = dict(downloaders)
        self.optimize_video_prompts = optimize_video_prompts
        self.text_cost = text_cost
        self.image_cost = image_cost

    # ========================================================================
    # Ledger
    # ========================================================================

    async def ensure_account(
        self,
        user_id: int,
        first_name: str | None = None,
        username: str | None = None,
    ) -> TokenAccountData:
        async with self.session_factory() as session:
            return await LedgerService(session).ensure_account(user_id, first_name, username)

    async def get_account(self, user_id: int) -> TokenAccountData:
        async with self.session_factory() as session:
            return await LedgerService(session).get_account(user_id)

    async def debit(self, user_id: int, amount: int, comment: str) -> bool:
        """Returns False when the balance is insufficient; nothing is written then."""
        async with self.session_factory() as session:
            return await LedgerService(session).debit(user_id, amount, comment)

    async def credit(self, user_id: int, amount: int, comment: str) -> None:
        async with self.session_factory() as session:
            await LedgerService(session).credit(user_id, amount, comment)

    async def has_active_plan(self, user_id: int) -> bool:
        async with self.session_factory() as session:
            return await LedgerService(session).has_active_plan(user_id)

    # ========================================================================
    # Generation
    # ========================================================================

    async def chat(
        self,
        user_id: int,
        text: str,
        attachments: tuple[str, ...] = (),
        on_progress: ProgressCallback | None = None,
    ) -> ChatReply:
        """
        Ask the assistant on the user's conversation session.

        Debits text_cost first; a refused debit asks nothing. A reply of the
        form '/imagine <prompt>' is turned into an image generation, paid
        separately. The user must have an account (ensure_account).

        Raises:
            ValidationFailure: Empty message
            AccountNotFoundError: No account for the user
        """
        prompt = _require_prompt(text)
        if not await self.debit(user_id, self.text_cost, "chat"):
            return ChatReply(
                text="",
                charged=False,
                has_active_plan=await self.has_active_plan(user_id),
            )

        request = GenerationRequest(prompt=prompt, attachments=attachments)
        outcome = await self.orchestrator.run(
            user_id,
            JobKind.TEXT,
            request,
            ProviderName.ASSISTANT,
            on_progress,
        )

        if isinstance(outcome, GenerationFailure):
            return ChatReply(text=outcome.message or "", failure=outcome)

        files = tuple(
            ChatFile(filename=part.filename or part.ref_id, data=part.data)
            for part in outcome.files
            if part.data is not None
        )

        image_prompt = extract_image_directive(outcome.text)
        if image_prompt is not None:
            logger.info("chat_image_directive", user_id=user_id)
            image = await self.generate_image(user_id, image_prompt)
            return ChatReply(text="", files=files, image=image)

        return ChatReply(text=outcome.text or "", files=files)

    async def generate_image(self, user_id: int, prompt: str) -> ImageReply:
        """
        Debit image_cost, then generate.

        ImageReply.image holds the bytes or URL; it is None when the debit
        was refused or generation failed.
        """
        prompt = _require_prompt(prompt)
        if not await self.debit(user_id, self.image_cost, "image"):
            return ImageReply(
                charged=False,
                cost=self.image_cost,
                has_active_plan=await self.has_active_plan(user_id),
            )

        outcome = await self.orchestrator.run(
            user_id,
            JobKind.IMAGE,
            GenerationRequest(prompt=prompt),
            ProviderName.ASSISTANT,
        )
        if isinstance(outcome, GenerationFailure):
            logger.warning(
                "image_failed_after_debit",
                user_id=user_id,
                cost=self.image_cost,
                reason=outcome.reason.value,
            )
            return ImageReply(charged=True, cost=self.image_cost, failure=outcome)

        for part in outcome.parts:
            if part.data is not None:
                return ImageReply(charged=True, cost=self.image_cost, image=part.data)
            if part.url is not None:
                return ImageReply(charged=True, cost=self.image_cost, image=part.url)
        return ImageReply(charged=True, cost=self.image_cost)

    async def generate_video(
        self,
        user_id: int,
        prompt: str,
        options: VideoOptions,
        on_progress: ProgressCallback | None = None,
    ) -> ConfirmOutcome:
        """
        Quote, debit and generate a video without the interactive flow.

        Raises:
            VideoParameterError: Empty description or a duration the
                quality cannot render
        """
        if not prompt or not prompt.strip():
            raise VideoParameterError("prompt", prompt, "Video description cannot be empty")
        check_quality_duration(options.quality, options.duration)

        quote = self.builder.quote_for(options.quality, options.duration)
        if not await self.debit(user_id, quote.cost, _video_comment(quote)):
            return ConfirmOutcome(
                charged=False,
                cost=quote.cost,
                has_active_plan=await self.has_active_plan(user_id),
            )

        response = await self._run_video(user_id, prompt.strip(), options, on_progress)
        return self._charged_outcome(user_id, quote, response)

    async def download_video(self, provider: ProviderName, video_url: str) -> bytes:
        """Fetch finished video bytes from the provider that made them."""
        downloader = self.downloaders.get(provider)
        if downloader is None:
            raise ProviderError(provider, "Provider does not serve downloads")
        return await downloader.download(video_url)

    # ========================================================================
    # Interactive video requests
    # ========================================================================

    def begin_interactive_video_request(
        self,
        user_id: int,
        prompt: str,
        image_url: str | None = None,
    ) -> PendingVideoRequest:
        """Start a /vid request; a '/vid 10 pro ...' command fills parameters directly."""
        if prompt.lstrip().startswith("/"):
            return self.builder.begin_from_command(user_id, prompt, image_url)
        return self.builder.begin(user_id, prompt, image_url)

    def select_parameters(
        self,
        user_id: int,
        quality: VideoQuality | str | None = None,
        duration: int | str | None = None,
    ) -> PendingVideoRequest:
        return self.builder.select_parameters(user_id, quality=quality, duration=duration)

    def attach_confirmation_message(self, user_id: int, message_ref: str) -> None:
        self.builder.attach_confirmation_message(user_id, message_ref)

    def quote(self, user_id: int) -> VideoQuote:
        return self.builder.quote(user_id)

    async def confirm(
        self,
        user_id: int,
        on_progress: ProgressCallback | None = None,
    ) -> ConfirmOutcome:
        """
        Accept the pending request: debit its cost, then generate.

        When the debit is refused nothing is submitted and the request stays
        pending, so the user can confirm again after topping up;
        has_active_plan tells the dispatcher whether to offer a top-up or a
        subscription.
        """
        request, quote = self.builder.confirm(user_id)

        if not await self.debit(user_id, quote.cost, _video_comment(quote)):
            self.builder.reinstate(request)
            return ConfirmOutcome(
                charged=False,
                cost=quote.cost,
                has_active_plan=await self.has_active_plan(user_id),
            )

        response = await self._run_video(
            user_id,
            request.prompt,
            VideoOptions(
                duration=quote.duration,
                quality=quote.quality,
                image_url=request.image_url,
                skip_optimization=request.skip_optimization,
            ),
            on_progress,
        )
        return self._charged_outcome(user_id, quote, response)

    def cancel(self, user_id: int) -> bool:
        return self.builder.cancel(user_id)

    async def _run_video(
        self,
        user_id: int,
        prompt: str,
        options: VideoOptions,
        on_progress: ProgressCallback | None,
    ) -> VideoGenerationResponse:
        provider = VIDEO_PROVIDERS[options.quality]
        if self.optimize_video_prompts and not options.skip_optimization:
            prompt = await self._optimize_prompt(user_id, prompt)

        request = GenerationRequest(
            prompt=prompt,
            duration=options.duration,
            quality=options.quality,
            image_url=options.image_url,
        )
        outcome = await self.orchestrator.run(
            user_id,
            JobKind.VIDEO,
            request,
            provider,
            on_progress,
        )

        if isinstance(outcome, GenerationResult) and outcome.result_ref:
            return VideoGenerationResponse(
                success=True,
                video_url=outcome.result_ref,
                provider=provider,
            )

        error = outcome.message if isinstance(outcome, GenerationFailure) else None
        return VideoGenerationResponse(
            success=False,
            error=error or "Video generation returned no result",
            provider=provider,
        )

    def _charged_outcome(
        self,
        user_id: int,
        quote: VideoQuote,
        response: VideoGenerationResponse,
    ) -> ConfirmOutcome:
        if not response.success:
            logger.warning(
                "video_failed_after_debit",
                user_id=user_id,
                cost=quote.cost,
                error=response.error,
            )
        return ConfirmOutcome(charged=True, cost=quote.cost, response=response)

    async def _optimize_prompt(self, user_id: int, prompt: str) -> str:
        try:
            optimized = await self.assistant.optimize_prompt(prompt)
        except ProviderError as exc:
            logger.warning("video_prompt_optimization_failed", user_id=user_id, error=exc.message)
            return prompt
        logger.info("video_prompt_optimized", user_id=user_id, original_length=len(prompt))
        return optimized


def create_generation_service() -> GenerationService:
    """Build the service with providers configured from settings."""
    session_factory = get_write_session_factory()
    sessions = ConversationSessionRegistry(session_factory, settings.openai_assistant_id)
    assistant = AssistantProvider.from_settings(sessions)
    kling = KlingVideoProvider.from_settings()
    video_b = OpenAIVideoProvider.from_settings()

    orchestrator = JobOrchestrator(
        {
            ProviderName.ASSISTANT: assistant,
            ProviderName.VIDEO_A: kling,
            ProviderName.VIDEO_B: video_b,
        }
    )
    return GenerationService(
        session_factory=session_factory,
        orchestrator=orchestrator,
        builder=InteractiveRequestBuilder.from_settings(),
        assistant=assistant,
        downloaders={ProviderName.VIDEO_A: kling, ProviderName.VIDEO_B: video_b},
        optimize_video_prompts=settings.video_prompt_optimization,
        text_cost=settings.text_cost,
        image_cost=settings.image_cost,
    )
