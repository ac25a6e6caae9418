"""
Kling Video Provider Implementation ("lite" quality).

NO DICTIONARIES - All data uses strongly typed models.

Uses the Kling task API: text2video / image2video submission plus task
polling on the same path.
"""

import time

import httpx
import jwt
from structlog import get_logger

from promind.config import settings
from promind.exceptions import ProviderConfigurationError, ProviderError
from promind.models.api import JobKind, ProviderName, VideoQuality
from promind.models.domain import (
    GenerationJob,
    GenerationRequest,
    PollPolicy,
    ProviderSnapshot,
    ResultPart,
)

logger = get_logger(__name__)

TEXT2VIDEO_PATH = "/v1/videos/text2video"
IMAGE2VIDEO_PATH = "/v1/videos/image2video"

# Token lifetime and clock-skew allowance (seconds)
_JWT_TTL = 1800
_JWT_NOT_BEFORE_SKEW = 5

# Clip lengths the task API renders
SUPPORTED_DURATIONS: tuple[int, ...] = (5, 10)


class KlingVideoProvider:
    """Kling text/image-to-video provider."""

    name = ProviderName.VIDEO_A

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        api_url: str,
        poll_policy: PollPolicy,
        model: str = "kling-v1",
    ) -> None:
        """
        Initialize Kling provider.

        Args:
            access_key: Kling access key (JWT issuer)
            secret_key: Kling secret key (JWT signing key)
            api_url: API base URL
            poll_policy: Task polling interval and budget
        """
        self.access_key = access_key
        self.secret_key = secret_key
        self.api_url = api_url.rstrip("/")
        self.poll_policy = poll_policy
        self.model = model

        if not self.is_configured:
            logger.error("kling_provider_not_configured")
        else:
            logger.info("kling_provider_initialized", api_url=self.api_url, model=model)

    @classmethod
    def from_settings(cls) -> "KlingVideoProvider":
        return cls(
            access_key=settings.kling_access_key,
            secret_key=settings.kling_secret_key,
            api_url=settings.kling_api_url,
            poll_policy=PollPolicy(
                interval_seconds=settings.kling_poll_interval_seconds,
                max_attempts=settings.kling_poll_max_attempts,
            ),
            model=settings.kling_model,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.access_key and self.secret_key)

    def _generate_jwt(self) -> str:
        """
        Generate a short-lived JWT for Kling API authentication.

        A fresh token is signed for every request.
        """
        now = int(time.time())
        payload = {
            "iss": self.access_key,
            "exp": now + _JWT_TTL,
            "nbf": now - _JWT_NOT_BEFORE_SKEW,
        }
        return jwt.encode(
            payload,
            self.secret_key,
            algorithm="HS256",
            headers={"alg": "HS256", "typ": "JWT"},
        )

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        **kwargs: object,
    ) -> dict[str, object]:
        """Make authenticated request to the Kling API and unwrap the envelope."""
        url = f"{self.api_url}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self._generate_jwt()}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.request(
                    method,
                    url,
                    headers=headers,
                    timeout=30.0,
                    **kwargs,  # type: ignore[arg-type]
                )
        except httpx.HTTPError as e:
            logger.error("kling_api_unreachable", endpoint=endpoint, error=str(e))
            raise ProviderError(self.name, f"Request failed: {e}") from e

        if response.status_code == 401:
            raise ProviderError(self.name, "Invalid API credentials", status_code=401)
        elif response.status_code >= 400:
            logger.error(
                "kling_api_error",
                status=response.status_code,
                error=response.text,
            )
            raise ProviderError(
                self.name,
                f"API error: {response.status_code}",
                status_code=response.status_code,
            )

        body: dict[str, object] = response.json()
        code = body.get("code", 0)
        if code != 0:
            message = str(body.get("message") or "unknown error")
            logger.error("kling_api_rejected", code=code, message=message)
            raise ProviderError(self.name, f"API rejected request ({code}): {message}")

        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderError(self.name, "Malformed response: missing data")
        return data

    async def submit(
        self,
        user_id: int,
        kind: JobKind,
        request: GenerationRequest,
    ) -> ProviderSnapshot:
        """Create a video task."""
        if not self.is_configured:
            raise ProviderConfigurationError(self.name, "Kling access keys are not configured")
        duration = request.duration or 5
        if duration not in SUPPORTED_DURATIONS:
            raise ProviderError(self.name, f"Unsupported duration: {duration}s")

        payload: dict[str, object] = {
            "model_name": self.model,
            "prompt": request.prompt,
            "duration": str(duration),
            "aspect_ratio": "1:1",
            "mode": "pro" if request.quality == VideoQuality.PRO else "std",
        }
        endpoint = TEXT2VIDEO_PATH
        if request.image_url:
            endpoint = IMAGE2VIDEO_PATH
            payload["image"] = request.image_url

        data = await self._make_request("POST", endpoint, json=payload)
        snapshot = self._task_snapshot(data)

        logger.info(
            "kling_task_created",
            user_id=user_id,
            task_id=snapshot.job_id,
            endpoint=endpoint,
            duration=payload["duration"],
        )
        return snapshot

    async def poll(self, job: GenerationJob) -> ProviderSnapshot:
        """Query a task by id."""
        endpoint = IMAGE2VIDEO_PATH if job.request.image_url else TEXT2VIDEO_PATH
        data = await self._make_request("GET", f"{endpoint}/{job.job_id}")
        return self._task_snapshot(data)

    async def fetch_result(
        self,
        job: GenerationJob,
        snapshot: ProviderSnapshot,
    ) -> tuple[ResultPart, ...]:
        if not snapshot.result_url:
            raise ProviderError(self.name, f"Task {job.job_id} succeeded without a video URL")
        return (ResultPart(ref_id=snapshot.result_url, url=snapshot.result_url),)

    async def download(self, result_url: str) -> bytes:
        """Download a finished video."""
        try:
            async with httpx.AsyncClient(follow_redirects=True) as client:
                response = await client.get(result_url, timeout=120.0)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("kling_download_failed", url=result_url, error=str(e))
            raise ProviderError(self.name, f"Download failed: {e}") from e

        logger.info("kling_video_downloaded", size_bytes=len(response.content))
        return response.content

    def _task_snapshot(self, data: dict[str, object]) -> ProviderSnapshot:
        task_id = data.get("task_id")
        if not task_id:
            raise ProviderError(self.name, "Malformed response: missing task_id")

        result_url = None
        task_result = data.get("task_result")
        if isinstance(task_result, dict):
            videos = task_result.get("videos") or []
            if videos and isinstance(videos[0], dict):
                result_url = videos[0].get("url")

        return ProviderSnapshot(
            job_id=str(task_id),
            raw_status=str(data.get("task_status") or ""),
            result_url=result_url,
            error=data.get("task_status_msg") or None,
        )
