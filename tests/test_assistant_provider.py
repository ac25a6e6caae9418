"""
Tests for AssistantProvider against a mocked AsyncOpenAI client.
"""

import base64
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from conftest import session_factory_for
from promind.exceptions import ProviderError
from promind.models.api import JobKind, ProviderName
from promind.models.domain import GenerationJob, GenerationRequest, PollPolicy, ProviderSnapshot
from promind.services.assistant_provider import AssistantProvider, normalize_filename
from promind.services.session_registry import ConversationSessionRegistry


def make_run(run_id: str = "run_1", status: str = "queued", error_code: str | None = None):
    last_error = SimpleNamespace(code=error_code, message="failed") if error_code else None
    return SimpleNamespace(id=run_id, status=status, last_error=last_error)


def text_block(value: str, annotations: list | None = None):
    return SimpleNamespace(
        type="text",
        text=SimpleNamespace(value=value, annotations=annotations or []),
    )


def file_path_annotation(file_id: str):
    return SimpleNamespace(type="file_path", file_path=SimpleNamespace(file_id=file_id))


def image_block(file_id: str):
    return SimpleNamespace(type="image_file", image_file=SimpleNamespace(file_id=file_id))


@pytest.fixture
def openai_client() -> MagicMock:
    client = MagicMock()
    threads = client.beta.threads
    threads.create = AsyncMock(return_value=SimpleNamespace(id="thread_1"))
    threads.runs.list = AsyncMock(return_value=SimpleNamespace(data=[]))
    threads.runs.create = AsyncMock(return_value=make_run())
    threads.runs.retrieve = AsyncMock(return_value=make_run(status="in_progress"))
    threads.messages.create = AsyncMock()
    threads.messages.list = AsyncMock(return_value=SimpleNamespace(data=[]))
    client.files.retrieve = AsyncMock(return_value=SimpleNamespace(filename="/mnt/data/Report.CSV"))
    client.files.content = AsyncMock(return_value=SimpleNamespace(content=b"a,b\n1,2\n"))
    client.images.generate = AsyncMock()
    client.chat.completions.create = AsyncMock()
    return client


@pytest.fixture
def provider(openai_client, db_session) -> AssistantProvider:
    sessions = ConversationSessionRegistry(session_factory_for(db_session), "asst_test")
    return AssistantProvider(
        client=openai_client,
        assistant_id="asst_test",
        sessions=sessions,
        poll_policy=PollPolicy(interval_seconds=0, max_attempts=3),
    )


def text_job(**overrides) -> GenerationJob:
    values = {
        "job_id": "run_1",
        "user_id": 1,
        "kind": JobKind.TEXT,
        "provider": ProviderName.ASSISTANT,
        "request": GenerationRequest(prompt="hi"),
        "session_id": "thread_1",
    }
    values.update(overrides)
    return GenerationJob(**values)


class TestNormalizeFilename:
    """Tests for extension normalization."""

    @pytest.mark.parametrize(
        ("filename", "expected"),
        [
            ("report.DOCX", "report.docx"),
            ("Data.Final.CSV", "Data.Final.csv"),
            ("README", "README"),
            (".env", ".env"),
            (None, None),
            ("", ""),
        ],
    )
    def test_normalize(self, filename, expected):
        assert normalize_filename(filename) == expected


class TestSubmitText:
    """Tests for text submission on the user's thread."""

    async def test_creates_thread_once(self, provider, openai_client, db_session):
        snapshot = await provider.submit(1, JobKind.TEXT, GenerationRequest(prompt="hi"))
        await provider.submit(1, JobKind.TEXT, GenerationRequest(prompt="again"))

        assert snapshot.job_id == "run_1"
        assert snapshot.raw_status == "queued"
        assert snapshot.session_id == "thread_1"
        openai_client.beta.threads.create.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    async def test_attachments_use_file_search(self, provider, openai_client):
        await provider.submit(
            1, JobKind.TEXT, GenerationRequest(prompt="summarize", attachments=("file_a",))
        )

        kwargs = openai_client.beta.threads.messages.create.await_args.kwargs
        assert kwargs["content"] == "summarize"
        assert kwargs["attachments"] == [
            {"file_id": "file_a", "tools": [{"type": "file_search"}]}
        ]

    async def test_waits_for_active_run(self, provider, openai_client):
        threads = openai_client.beta.threads
        threads.runs.list.return_value = SimpleNamespace(data=[make_run("run_0", "in_progress")])
        threads.runs.retrieve.side_effect = [
            make_run("run_0", "in_progress"),
            make_run("run_0", "completed"),
        ]

        await provider.submit(1, JobKind.TEXT, GenerationRequest(prompt="hi"))

        assert threads.runs.retrieve.await_count == 2
        threads.runs.create.assert_awaited_once()

    async def test_api_error_becomes_provider_error(self, provider, openai_client):
        response = httpx.Response(
            429, request=httpx.Request("POST", "https://api.openai.com/v1/threads/runs")
        )
        openai_client.beta.threads.runs.create.side_effect = openai.APIStatusError(
            "rate limited", response=response, body=None
        )

        with pytest.raises(ProviderError) as exc_info:
            await provider.submit(1, JobKind.TEXT, GenerationRequest(prompt="hi"))

        assert exc_info.value.status_code == 429

    async def test_connection_error(self, provider, openai_client):
        openai_client.beta.threads.messages.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/threads")
        )

        with pytest.raises(ProviderError):
            await provider.submit(1, JobKind.TEXT, GenerationRequest(prompt="hi"))


class TestPollAndResult:
    """Tests for run polling and message extraction."""

    async def test_poll_reports_run_error(self, provider, openai_client):
        openai_client.beta.threads.runs.retrieve.return_value = make_run(
            status="failed", error_code="server_error"
        )

        snapshot = await provider.poll(text_job())

        assert snapshot.raw_status == "failed"
        assert snapshot.error == "server_error"
        openai_client.beta.threads.runs.retrieve.assert_awaited_once_with(
            "run_1", thread_id="thread_1"
        )

    async def test_fetch_text_and_files(self, provider, openai_client):
        openai_client.beta.threads.messages.list.return_value = SimpleNamespace(
            data=[
                SimpleNamespace(id="msg_u", role="user", content=[text_block("question")]),
                SimpleNamespace(
                    id="msg_a",
                    role="assistant",
                    content=[
                        text_block("Here it is", [file_path_annotation("file_1")]),
                        image_block("file_1"),
                        image_block("file_2"),
                    ],
                ),
            ]
        )

        parts = await provider.fetch_result(
            text_job(), ProviderSnapshot(job_id="run_1", raw_status="completed")
        )

        assert parts[0].text == "Here it is"
        assert parts[0].ref_id == "msg_a:0"
        assert [p.ref_id for p in parts[1:]] == ["file_1", "file_2"]
        assert parts[1].filename == "Report.csv"
        assert parts[1].data == b"a,b\n1,2\n"
        assert openai_client.files.content.await_count == 2


class TestImages:
    """Tests for one-shot image generation."""

    async def test_base64_image(self, provider, openai_client):
        openai_client.images.generate.return_value = SimpleNamespace(
            data=[SimpleNamespace(b64_json=base64.b64encode(b"png").decode(), url=None)]
        )

        snapshot = await provider.submit(1, JobKind.IMAGE, GenerationRequest(prompt="a fox"))

        assert snapshot.raw_status == "completed"
        assert snapshot.parts[0].data == b"png"
        assert snapshot.job_id.startswith("img_")

    async def test_url_image(self, provider, openai_client):
        openai_client.images.generate.return_value = SimpleNamespace(
            data=[SimpleNamespace(b64_json=None, url="https://img.example/fox.png")]
        )

        snapshot = await provider.submit(1, JobKind.IMAGE, GenerationRequest(prompt="a fox"))

        assert snapshot.parts[0].url == "https://img.example/fox.png"

    async def test_empty_response(self, provider, openai_client):
        openai_client.images.generate.return_value = SimpleNamespace(data=[])

        snapshot = await provider.submit(1, JobKind.IMAGE, GenerationRequest(prompt="a fox"))

        assert snapshot.raw_status == "failed"

    async def test_poll_image_job_is_local(self, provider, openai_client):
        job = text_job(kind=JobKind.IMAGE, job_id="img_1", session_id=None)

        snapshot = await provider.poll(job)

        assert snapshot.raw_status == "failed"
        openai_client.beta.threads.runs.retrieve.assert_not_awaited()


class TestOptimizePrompt:
    """Tests for video prompt rewriting."""

    async def test_rewrites(self, provider, openai_client):
        openai_client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="  A cat at dusk.  "))]
        )

        assert await provider.optimize_prompt("cat") == "A cat at dusk."

    async def test_empty_answer_keeps_prompt(self, provider, openai_client):
        openai_client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=None))]
        )

        assert await provider.optimize_prompt("cat") == "cat"
