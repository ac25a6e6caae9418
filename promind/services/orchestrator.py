"""
Job Orchestrator - submit, poll and resolve generation jobs.

Responsibilities:
- Single-flight per user: a new submission waits until the user's previous
  job reaches a terminal state
- Fixed-interval polling within a per-provider attempt budget
- Canonical, monotonic status tracking
- Result extraction with deduplication of result parts
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field

from structlog import get_logger

from promind.exceptions import ProviderConfigurationError, ProviderError, UnknownJobError
from promind.models.api import CanonicalStatus, FailureReason, JobKind, ProviderName
from promind.models.domain import (
    GenerationFailure,
    GenerationJob,
    GenerationRequest,
    GenerationResult,
    JobHandle,
    ProgressEvent,
    ProviderSnapshot,
    ResultPart,
)
from promind.observability.logging import log_context
from promind.observability.metrics import metrics
from promind.services.generation_provider import GenerationProvider
from promind.services.provider_status import describe_failure, normalize_status, progress_text
from promind.services.state_store import InMemoryUserStateStore, UserStateStore

logger = get_logger(__name__)

ProgressCallback = Callable[[ProgressEvent], Awaitable[None]]
JobOutcome = GenerationResult | GenerationFailure

DEFAULT_PROVIDERS: dict[JobKind, ProviderName] = {
    JobKind.TEXT: ProviderName.ASSISTANT,
    JobKind.IMAGE: ProviderName.ASSISTANT,
    JobKind.VIDEO: ProviderName.VIDEO_A,
}


@dataclass
class _ActiveJob:
    job: GenerationJob
    started_at: float
    snapshot: ProviderSnapshot | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)


class JobOrchestrator:
    """
    Drives generation jobs against registered providers.

    Callers that use submit() directly must follow it with
    await_completion(); the user's next submission waits for it.
    """

    def __init__(
        self,
        providers: Mapping[ProviderName, GenerationProvider],
        state: UserStateStore[_ActiveJob] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._providers = dict(providers)
        self._active: UserStateStore[_ActiveJob] = state or InMemoryUserStateStore()
        self._jobs: dict[str, _ActiveJob] = {}
        self._sleep = sleep

    def provider(self, name: ProviderName) -> GenerationProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderConfigurationError(name, "Provider is not registered") from None

    def active_job(self, user_id: int) -> GenerationJob | None:
        """The user's current non-terminal job, if any."""
        active = self._active.get(user_id)
        if active is None or active.job.status.is_terminal:
            return None
        return active.job

    async def submit(
        self,
        user_id: int,
        kind: JobKind,
        request: GenerationRequest,
        provider: ProviderName | None = None,
    ) -> JobHandle:
        """
        Submit a job, waiting first for the user's in-flight job to finish.

        Raises:
            ProviderConfigurationError: Provider not registered or missing credentials
            ProviderError: Provider rejected the submission
        """
        name = provider or DEFAULT_PROVIDERS[kind]
        client = self.provider(name)

        async with self._active.with_lock(user_id):
            previous = self._active.get(user_id)
            if previous is not None and not previous.job.status.is_terminal:
                logger.info(
                    "job_waiting_for_previous",
                    user_id=user_id,
                    previous_job_id=previous.job.job_id,
                )
                await previous.done.wait()

            snapshot = await client.submit(user_id, kind, request)

            job = GenerationJob(
                job_id=snapshot.job_id,
                user_id=user_id,
                kind=kind,
                provider=name,
                request=request,
            )
            active = _ActiveJob(job=job, started_at=time.monotonic())
            self._apply_snapshot(active, snapshot)
            self._active.set(user_id, active)
            self._jobs[job.job_id] = active

        metrics.record_job_submitted(name.value, kind.value)
        logger.info(
            "job_submitted",
            user_id=user_id,
            job_id=job.job_id,
            provider=name.value,
            kind=kind.value,
            status=job.status.value,
        )
        return JobHandle(job_id=job.job_id, user_id=user_id, kind=kind, provider=name)

    async def poll_events(self, handle: JobHandle) -> AsyncIterator[ProgressEvent]:
        """
        Poll the job until it is terminal or the attempt budget runs out,
        yielding one event per successful poll.

        Provider errors while polling are logged and count against the budget.
        """
        active = self._require(handle)
        job = active.job
        client = self.provider(job.provider)
        policy = client.poll_policy

        for attempt in range(1, policy.max_attempts + 1):
            if job.status.is_terminal:
                return

            await self._sleep(policy.interval_seconds)

            try:
                snapshot = await client.poll(job)
            except ProviderError as exc:
                metrics.record_poll(job.provider.value, failed=True)
                logger.warning(
                    "job_poll_failed",
                    user_id=job.user_id,
                    job_id=job.job_id,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    status_code=exc.status_code,
                    error=exc.message,
                )
                continue

            metrics.record_poll(job.provider.value)
            self._apply_snapshot(active, snapshot)

            yield ProgressEvent(
                job_id=job.job_id,
                status=job.status,
                text=progress_text(job.status, job.progress_percent),
                attempt=attempt,
                max_attempts=policy.max_attempts,
            )

    async def await_completion(
        self,
        handle: JobHandle,
        on_progress: ProgressCallback | None = None,
    ) -> JobOutcome:
        """Poll to an outcome, forwarding progress events to on_progress."""
        active = self._require(handle)
        outcome: JobOutcome | None = None

        context = log_context(
            user_id=handle.user_id,
            job_id=handle.job_id,
            provider=handle.provider.value,
        )
        with context:
            try:
                async for event in self.poll_events(handle):
                    await self._notify(on_progress, event)
                outcome = await self._resolve(active)
                return outcome
            finally:
                self._finish(active, outcome)

    async def run(
        self,
        user_id: int,
        kind: JobKind,
        request: GenerationRequest,
        provider: ProviderName | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> JobOutcome:
        """Submit and await a job; submission errors become failures."""
        name = provider or DEFAULT_PROVIDERS[kind]
        try:
            handle = await self.submit(user_id, kind, request, name)
        except ProviderConfigurationError as exc:
            logger.error(
                "job_provider_not_configured",
                user_id=user_id,
                provider=name.value,
                error=exc.message,
            )
            return GenerationFailure(
                provider=name,
                reason=FailureReason.NOT_CONFIGURED,
                message=describe_failure(FailureReason.NOT_CONFIGURED),
            )
        except ProviderError as exc:
            logger.error(
                "job_submit_failed",
                user_id=user_id,
                provider=name.value,
                status_code=exc.status_code,
                error=exc.message,
            )
            metrics.record_job_finished(name.value, FailureReason.SUBMIT_FAILED.value, 0.0)
            return GenerationFailure(
                provider=name,
                reason=FailureReason.SUBMIT_FAILED,
                message=describe_failure(FailureReason.SUBMIT_FAILED, exc.message),
            )

        return await self.await_completion(handle, on_progress)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _require(self, handle: JobHandle) -> _ActiveJob:
        active = self._jobs.get(handle.job_id)
        if active is None:
            raise UnknownJobError(handle.job_id)
        return active

    def _apply_snapshot(self, active: _ActiveJob, snapshot: ProviderSnapshot) -> None:
        job = active.job
        status = normalize_status(job.provider, snapshot.raw_status)

        if not job.advance(status):
            if status != job.status:
                logger.debug(
                    "job_status_regression_ignored",
                    job_id=job.job_id,
                    current=job.status.value,
                    observed=status.value,
                )
            return

        active.snapshot = snapshot
        if snapshot.progress_percent is not None:
            job.progress_percent = snapshot.progress_percent
        if snapshot.session_id:
            job.session_id = snapshot.session_id
        if snapshot.result_url:
            job.result_ref = snapshot.result_url
        if snapshot.error:
            job.error = snapshot.error
        if snapshot.parts:
            job.parts = snapshot.parts

    async def _resolve(self, active: _ActiveJob) -> JobOutcome:
        job = active.job

        if job.status == CanonicalStatus.COMPLETED:
            client = self.provider(job.provider)
            snapshot = active.snapshot or ProviderSnapshot(job_id=job.job_id, raw_status="")
            try:
                parts = await client.fetch_result(job, snapshot)
            except ProviderError as exc:
                logger.error("job_result_fetch_failed", error=exc.message)
                return GenerationFailure(
                    provider=job.provider,
                    reason=FailureReason.PROVIDER_FAILED,
                    message=describe_failure(FailureReason.PROVIDER_FAILED, exc.message),
                    job_id=job.job_id,
                )
            job.parts = _dedupe(parts)
            return GenerationResult(
                job_id=job.job_id,
                provider=job.provider,
                kind=job.kind,
                parts=job.parts,
            )

        if job.status == CanonicalStatus.FAILED:
            logger.warning("job_failed", error=job.error)
            return GenerationFailure(
                provider=job.provider,
                reason=FailureReason.PROVIDER_FAILED,
                message=describe_failure(FailureReason.PROVIDER_FAILED, job.error),
                job_id=job.job_id,
            )

        logger.warning("job_poll_budget_exhausted", last_status=job.status.value)
        return GenerationFailure(
            provider=job.provider,
            reason=FailureReason.TIMEOUT,
            message=describe_failure(FailureReason.TIMEOUT),
            job_id=job.job_id,
        )

    async def _notify(self, on_progress: ProgressCallback | None, event: ProgressEvent) -> None:
        if on_progress is None:
            return
        try:
            await on_progress(event)
        except Exception as e:
            logger.warning("progress_callback_failed", attempt=event.attempt, error=str(e))

    def _finish(self, active: _ActiveJob, outcome: JobOutcome | None) -> None:
        job = active.job
        active.done.set()
        self._jobs.pop(job.job_id, None)
        if self._active.get(job.user_id) is active:
            self._active.delete(job.user_id)

        if isinstance(outcome, GenerationResult):
            label = "completed"
        elif isinstance(outcome, GenerationFailure):
            label = outcome.reason.value
        else:
            label = "abandoned"

        duration = time.monotonic() - active.started_at
        metrics.record_job_finished(job.provider.value, label, duration)
        logger.info(
            "job_finished",
            outcome=label,
            status=job.status.value,
            duration_seconds=round(duration, 3),
        )


def _dedupe(parts: tuple[ResultPart, ...]) -> tuple[ResultPart, ...]:
    """Drop repeated parts, keeping first occurrence order."""
    seen: set[str] = set()
    unique: list[ResultPart] = []
    for part in parts:
        if part.ref_id in seen:
            continue
        seen.add(part.ref_id)
        unique.append(part)
    return tuple(unique)
