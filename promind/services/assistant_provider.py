"""
Chat Assistant Provider - OpenAI Assistants API (threads/runs), images and
prompt rewriting.

NO DICTIONARIES - All data uses strongly typed models.
"""

import asyncio
import base64
import os
from collections.abc import Awaitable
from typing import Any, TypeVar
from uuid import uuid4

import httpx
import openai
from openai import AsyncOpenAI
from structlog import get_logger

from promind.config import settings
from promind.exceptions import ProviderError
from promind.models.api import JobKind, ProviderName
from promind.models.domain import (
    GenerationJob,
    GenerationRequest,
    PollPolicy,
    ProviderSnapshot,
    ResultPart,
)
from promind.services.session_registry import ConversationSessionRegistry

logger = get_logger(__name__)

T = TypeVar("T")

ACTIVE_RUN_STATUSES = frozenset({"queued", "in_progress"})

PROMPT_OPTIMIZER_INSTRUCTIONS = (
    "Rewrite the user's idea as a single detailed prompt for a text-to-video model. "
    "Describe the subject, action, setting, camera movement and lighting. "
    "Answer with the prompt only, in English, under 80 words."
)


def normalize_filename(filename: str | None) -> str | None:
    """Lowercase the extension of a filename ('report.DOCX' -> 'report.docx')."""
    if not filename:
        return filename
    stem, dot, extension = filename.rpartition(".")
    if not dot or not stem:
        return filename
    return f"{stem}.{extension.lower()}"


class AssistantProvider:
    """
    OpenAI assistant provider.

    Text jobs run on a per-user thread (the conversation session); image jobs
    are one-shot and complete at submission.
    """

    name = ProviderName.ASSISTANT

    def __init__(
        self,
        client: AsyncOpenAI,
        assistant_id: str,
        sessions: ConversationSessionRegistry,
        poll_policy: PollPolicy,
        image_model: str = "gpt-image-1",
        image_size: str = "1024x1024",
        image_quality: str = "low",
        optimizer_model: str = "gpt-4o-mini",
    ) -> None:
        """
        Initialize assistant provider.

        Args:
            client: Configured OpenAI async client
            assistant_id: Assistant that answers every run
            sessions: Durable user -> thread mapping
            poll_policy: Run polling interval and budget
        """
        self.client = client
        self.assistant_id = assistant_id
        self.sessions = sessions
        self.poll_policy = poll_policy
        self.image_model = image_model
        self.image_size = image_size
        self.image_quality = image_quality
        self.optimizer_model = optimizer_model

    @classmethod
    def from_settings(cls, sessions: ConversationSessionRegistry) -> "AssistantProvider":
        """Build the provider from application settings."""
        client = AsyncOpenAI(
            api_key=settings.sanitized_openai_api_key,
            base_url=settings.openai_base_url.strip(),
            timeout=httpx.Timeout(60.0),
        )
        logger.info(
            "assistant_provider_initialized",
            base_url=settings.openai_base_url,
            assistant_id=settings.openai_assistant_id,
        )
        return cls(
            client=client,
            assistant_id=settings.openai_assistant_id,
            sessions=sessions,
            poll_policy=PollPolicy(
                interval_seconds=settings.assistant_poll_interval_seconds,
                max_attempts=settings.assistant_poll_max_attempts,
            ),
            image_model=settings.openai_image_model,
            image_size=settings.openai_image_size,
            image_quality=settings.openai_image_quality,
            optimizer_model=settings.prompt_optimizer_model,
        )

    async def submit(
        self,
        user_id: int,
        kind: JobKind,
        request: GenerationRequest,
    ) -> ProviderSnapshot:
        """Append the user's message to their thread and start a run."""
        if kind == JobKind.IMAGE:
            return await self._generate_image(request)

        thread_id = await self.sessions.get_or_create(user_id, self._create_thread)
        await self._wait_for_active_run(thread_id)

        message_kwargs: dict[str, Any] = {}
        if request.attachments:
            message_kwargs["attachments"] = [
                {"file_id": file_id, "tools": [{"type": "file_search"}]}
                for file_id in request.attachments
            ]
        await self._call(
            self.client.beta.threads.messages.create(
                thread_id,
                role="user",
                content=request.prompt,
                **message_kwargs,
            )
        )

        run = await self._call(
            self.client.beta.threads.runs.create(thread_id, assistant_id=self.assistant_id)
        )
        logger.info("assistant_run_created", user_id=user_id, thread_id=thread_id, run_id=run.id)
        return self._run_snapshot(run, thread_id)

    async def poll(self, job: GenerationJob) -> ProviderSnapshot:
        """Retrieve the run status."""
        if job.kind == JobKind.IMAGE:
            return ProviderSnapshot(
                job_id=job.job_id,
                raw_status="completed" if job.parts else "failed",
                parts=job.parts,
            )

        run = await self._call(
            self.client.beta.threads.runs.retrieve(job.job_id, thread_id=job.session_id)
        )
        return self._run_snapshot(run, job.session_id)

    async def fetch_result(
        self,
        job: GenerationJob,
        snapshot: ProviderSnapshot,
    ) -> tuple[ResultPart, ...]:
        """
        Collect the run's assistant messages: text blocks plus every file
        referenced by an annotation or image block.
        """
        if snapshot.parts:
            return snapshot.parts

        messages = await self._call(
            self.client.beta.threads.messages.list(
                job.session_id,
                run_id=job.job_id,
                order="asc",
            )
        )

        parts: list[ResultPart] = []
        file_ids: list[str] = []
        for message in messages.data:
            if message.role != "assistant":
                continue
            for index, block in enumerate(message.content):
                if block.type == "text":
                    parts.append(ResultPart(ref_id=f"{message.id}:{index}", text=block.text.value))
                    for annotation in block.text.annotations:
                        file_id = _annotation_file_id(annotation)
                        if file_id and file_id not in file_ids:
                            file_ids.append(file_id)
                elif block.type == "image_file":
                    file_id = block.image_file.file_id
                    if file_id not in file_ids:
                        file_ids.append(file_id)

        for file_id in file_ids:
            data, filename = await self.retrieve_file(file_id)
            parts.append(ResultPart(ref_id=file_id, data=data, filename=filename))

        return tuple(parts)

    async def retrieve_file(self, file_id: str) -> tuple[bytes, str]:
        """Download a provider file; returns (bytes, normalized filename)."""
        meta = await self._call(self.client.files.retrieve(file_id))
        content = await self._call(self.client.files.content(file_id))
        filename = normalize_filename(os.path.basename(meta.filename or "")) or file_id
        return content.content, filename

    async def optimize_prompt(self, prompt: str) -> str:
        """Rewrite a short idea into a detailed video prompt."""
        response = await self._call(
            self.client.chat.completions.create(
                model=self.optimizer_model,
                messages=[
                    {"role": "system", "content": PROMPT_OPTIMIZER_INSTRUCTIONS},
                    {"role": "user", "content": prompt},
                ],
            )
        )
        content = response.choices[0].message.content if response.choices else None
        return content.strip() if content and content.strip() else prompt

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _create_thread(self) -> str:
        thread = await self._call(self.client.beta.threads.create())
        return thread.id

    async def _wait_for_active_run(self, thread_id: str) -> None:
        """
        Wait out a run left active on the thread (e.g. by a previous process);
        the API rejects new messages while one is in flight.
        """
        runs = await self._call(self.client.beta.threads.runs.list(thread_id, limit=5))
        active = next((run for run in runs.data if run.status in ACTIVE_RUN_STATUSES), None)
        if active is None:
            return

        logger.info("assistant_active_run_wait", thread_id=thread_id, run_id=active.id)
        for _ in range(self.poll_policy.max_attempts):
            await asyncio.sleep(self.poll_policy.interval_seconds)
            run = await self._call(
                self.client.beta.threads.runs.retrieve(active.id, thread_id=thread_id)
            )
            if run.status not in ACTIVE_RUN_STATUSES:
                logger.info(
                    "assistant_active_run_finished",
                    thread_id=thread_id,
                    run_id=active.id,
                    status=run.status,
                )
                return

        logger.warning("assistant_active_run_still_running", thread_id=thread_id, run_id=active.id)

    async def _generate_image(self, request: GenerationRequest) -> ProviderSnapshot:
        job_id = f"img_{uuid4().hex}"
        response = await self._call(
            self.client.images.generate(
                model=self.image_model,
                prompt=request.prompt,
                quality=self.image_quality,
                n=1,
                size=self.image_size,
            )
        )

        if not response.data:
            logger.error("assistant_image_empty_response", job_id=job_id)
            return ProviderSnapshot(
                job_id=job_id, raw_status="failed", error="empty image response"
            )

        image = response.data[0]
        if image.b64_json:
            part = ResultPart(
                ref_id=job_id,
                data=base64.b64decode(image.b64_json),
                filename="image.png",
            )
        elif image.url:
            part = ResultPart(ref_id=image.url, url=image.url)
        else:
            logger.error("assistant_image_missing_payload", job_id=job_id)
            return ProviderSnapshot(
                job_id=job_id, raw_status="failed", error="image without payload"
            )

        return ProviderSnapshot(job_id=job_id, raw_status="completed", parts=(part,))

    def _run_snapshot(self, run: Any, thread_id: str | None) -> ProviderSnapshot:
        error = None
        if run.last_error is not None:
            error = run.last_error.code or run.last_error.message
        return ProviderSnapshot(
            job_id=run.id,
            raw_status=run.status,
            error=error,
            session_id=thread_id,
        )

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Await an SDK call, converting SDK errors to ProviderError."""
        try:
            return await awaitable
        except openai.APIStatusError as exc:
            logger.error(
                "assistant_api_error",
                status=exc.status_code,
                error=str(exc),
            )
            raise ProviderError(self.name, str(exc), status_code=exc.status_code) from exc
        except openai.APIError as exc:
            logger.error("assistant_api_unreachable", error=str(exc))
            raise ProviderError(self.name, str(exc)) from exc


def _annotation_file_id(annotation: Any) -> str | None:
    """File id carried by a file_path or file_citation annotation."""
    if annotation.type == "file_path":
        return annotation.file_path.file_id
    if annotation.type == "file_citation":
        return annotation.file_citation.file_id
    return None
