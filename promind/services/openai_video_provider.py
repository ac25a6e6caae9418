"""
OpenAI-compatible Video Provider ("pro" quality).

Talks to a /v1/videos style API: multipart job creation, status polling
with a numeric progress, and a content endpoint for the finished file.
"""

import httpx
from structlog import get_logger

from promind.config import settings
from promind.exceptions import ProviderConfigurationError, ProviderError
from promind.models.api import JobKind, ProviderName
from promind.models.domain import (
    GenerationJob,
    GenerationRequest,
    PollPolicy,
    ProviderSnapshot,
    ResultPart,
)

logger = get_logger(__name__)


class OpenAIVideoProvider:
    """Video generation provider for the OpenAI-compatible videos API."""

    name = ProviderName.VIDEO_B

    def __init__(
        self,
        api_key: str,
        base_url: str,
        poll_policy: PollPolicy,
        model: str = "sora-2-pro",
        size: str = "1280x720",
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.poll_policy = poll_policy
        self.model = model
        self.size = size

        logger.info("video_b_provider_initialized", base_url=self.base_url, model=model)

    @classmethod
    def from_settings(cls) -> "OpenAIVideoProvider":
        return cls(
            api_key=settings.video_b_key,
            base_url=settings.video_b_base_url,
            poll_policy=PollPolicy(
                interval_seconds=settings.video_b_poll_interval_seconds,
                max_attempts=settings.video_b_poll_max_attempts,
            ),
            model=settings.video_b_model,
            size=settings.video_b_size,
        )

    def content_url(self, video_id: str) -> str:
        """Locator of the finished video file."""
        return f"{self.base_url}/videos/{video_id}/content"

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        **kwargs: object,
    ) -> dict[str, object]:
        """Make authenticated request to the videos API."""
        url = f"{self.base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method,
                    url,
                    headers=headers,
                    timeout=60.0,
                    **kwargs,  # type: ignore[arg-type]
                )
        except httpx.HTTPError as e:
            logger.error("video_b_api_unreachable", endpoint=endpoint, error=str(e))
            raise ProviderError(self.name, f"Request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "video_b_api_error",
                status=response.status_code,
                error=response.text,
            )
            raise ProviderError(
                self.name,
                f"API error: {response.status_code}",
                status_code=response.status_code,
            )

        result: dict[str, object] = response.json()
        return result

    async def submit(
        self,
        user_id: int,
        kind: JobKind,
        request: GenerationRequest,
    ) -> ProviderSnapshot:
        """Create a video job (multipart form)."""
        if not self.api_key:
            raise ProviderConfigurationError(self.name, "Video API key is not configured")

        seconds = str(request.duration or 5)
        # (None, value) entries are plain fields inside the multipart body
        fields: dict[str, tuple[str | None, str | bytes] | tuple[str, bytes, str]] = {
            "model": (None, self.model),
            "prompt": (None, request.prompt),
            "seconds": (None, seconds),
            "size": (None, self.size),
        }
        if request.image_url:
            reference = await self._fetch_reference(request.image_url)
            fields["input_reference"] = ("reference.png", reference, "image/png")

        data = await self._make_request("POST", "/videos", files=fields)
        snapshot = self._video_snapshot(data)

        logger.info(
            "video_b_job_created",
            user_id=user_id,
            video_id=snapshot.job_id,
            seconds=seconds,
            with_reference=request.image_url is not None,
        )
        return snapshot

    async def poll(self, job: GenerationJob) -> ProviderSnapshot:
        data = await self._make_request("GET", f"/videos/{job.job_id}")
        return self._video_snapshot(data)

    async def fetch_result(
        self,
        job: GenerationJob,
        snapshot: ProviderSnapshot,
    ) -> tuple[ResultPart, ...]:
        url = self.content_url(job.job_id)
        return (ResultPart(ref_id=url, url=url),)

    async def download(self, result_url: str) -> bytes:
        """Download a finished video (the content endpoint requires auth)."""
        try:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                response = await client.get(
                    result_url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    timeout=120.0,
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("video_b_download_failed", url=result_url, error=str(e))
            raise ProviderError(self.name, f"Download failed: {e}") from e

        logger.info("video_b_video_downloaded", size_bytes=len(response.content))
        return response.content

    async def _fetch_reference(self, image_url: str) -> bytes:
        try:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                response = await client.get(image_url, timeout=30.0)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("video_b_reference_fetch_failed", error=str(e))
            raise ProviderError(self.name, f"Reference image unavailable: {e}") from e
        return response.content

    def _video_snapshot(self, data: dict[str, object]) -> ProviderSnapshot:
        video_id = data.get("id")
        if not video_id:
            raise ProviderError(self.name, "Malformed response: missing id")

        progress = data.get("progress")
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("code") or error.get("message")

        return ProviderSnapshot(
            job_id=str(video_id),
            raw_status=str(data.get("status") or ""),
            progress_percent=int(progress) if isinstance(progress, int | float) else None,
            error=str(error) if error else None,
        )
