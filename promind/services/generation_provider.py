"""
Generation Provider Protocol - Provider-agnostic job interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from typing import Protocol

from promind.models.api import JobKind, ProviderName
from promind.models.domain import (
    GenerationJob,
    GenerationRequest,
    PollPolicy,
    ProviderSnapshot,
    ResultPart,
)


class GenerationProvider(Protocol):
    """
    Generation provider protocol.

    Every backend (chat assistant, video providers) implements submit, poll
    and fetch_result; the orchestrator drives them and owns status
    normalization.
    """

    name: ProviderName
    poll_policy: PollPolicy

    async def submit(
        self,
        user_id: int,
        kind: JobKind,
        request: GenerationRequest,
    ) -> ProviderSnapshot:
        """
        Submit a job.

        Returns:
            Snapshot carrying the provider-assigned job id and initial status

        Raises:
            ProviderError: If the provider rejects or cannot receive the job
        """
        ...

    async def poll(self, job: GenerationJob) -> ProviderSnapshot:
        """
        Read the current provider status of a job.

        Raises:
            ProviderError: Transient failure; the caller retries within budget
        """
        ...

    async def fetch_result(
        self,
        job: GenerationJob,
        snapshot: ProviderSnapshot,
    ) -> tuple[ResultPart, ...]:
        """
        Resolve the result parts of a completed job.

        Raises:
            ProviderError: If the result cannot be retrieved
        """
        ...
