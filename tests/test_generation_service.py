"""
Tests for GenerationService - the dispatcher-facing flows end to end.

Providers are scripted fakes; the ledger runs against a mocked session.
"""

from unittest.mock import AsyncMock

import pytest

from conftest import configure_account_lookup, create_mock_account, session_factory_for
from promind.db.models import TokenTransaction
from promind.exceptions import (
    NoPendingRequestError,
    ProviderError,
    ValidationFailure,
    VideoParameterError,
)
from promind.models.api import (
    JobKind,
    ProviderName,
    RequestState,
    TransactionDirection,
    VideoQuality,
)
from promind.models.domain import ResultPart, VideoOptions
from promind.services.generation import GenerationService, extract_image_directive
from promind.services.orchestrator import JobOrchestrator
from promind.services.request_builder import InteractiveRequestBuilder

USER_ID = 123456789


@pytest.fixture
def assistant_client() -> AsyncMock:
    client = AsyncMock()
    client.optimize_prompt = AsyncMock(return_value="a cinematic cat, golden hour")
    return client


@pytest.fixture
def downloader() -> AsyncMock:
    video = AsyncMock()
    video.download = AsyncMock(return_value=b"mp4-bytes")
    return video


@pytest.fixture
def service(
    db_session,
    funded_account,
    assistant_provider,
    lite_video_provider,
    pro_video_provider,
    video_base_costs,
    assistant_client,
    downloader,
) -> GenerationService:
    """Service over a funded account (500 tokens); tests may swap the account."""
    configure_account_lookup(db_session, funded_account)
    orchestrator = JobOrchestrator(
        {
            ProviderName.ASSISTANT: assistant_provider,
            ProviderName.VIDEO_A: lite_video_provider,
            ProviderName.VIDEO_B: pro_video_provider,
        }
    )
    builder = InteractiveRequestBuilder(video_base_costs, base_duration=5, ttl_seconds=600)
    return GenerationService(
        session_factory=session_factory_for(db_session),
        orchestrator=orchestrator,
        builder=builder,
        assistant=assistant_client,
        downloaders={ProviderName.VIDEO_B: downloader},
        optimize_video_prompts=True,
        text_cost=1,
        image_cost=60,
    )


def added_transactions(db_session) -> list[TokenTransaction]:
    return [
        call.args[0]
        for call in db_session.add.call_args_list
        if isinstance(call.args[0], TokenTransaction)
    ]


class TestImageDirective:
    """Tests for '/imagine <prompt>' extraction from assistant replies."""

    def test_directive(self):
        assert extract_image_directive("/imagine a red fox") == "a red fox"

    def test_case_insensitive(self):
        assert extract_image_directive("  /Imagine  sunset ") == "sunset"

    @pytest.mark.parametrize("answer", [None, "", "hello", "/imagine", "try /imagine later"])
    def test_no_directive(self, answer):
        assert extract_image_directive(answer) is None


class TestChat:
    """Text questions answered on the user's conversation session."""

    async def test_reply_is_charged_once(
        self, service, db_session, funded_account, assistant_provider
    ):
        reply = await service.chat(USER_ID, "What is 2+2?")

        assert reply.ok
        assert reply.charged
        assert reply.text == "hello there"
        assert reply.files == ()
        _, _, request = assistant_provider.submitted[0]
        assert request.prompt == "What is 2+2?"
        assert funded_account.balance == 499
        [tx] = added_transactions(db_session)
        assert tx.amount == 1
        assert tx.direction == TransactionDirection.DEBIT.value
        assert tx.comment == "chat"

    async def test_balance_five_goes_to_four(self, service, db_session, assistant_provider):
        account = create_mock_account(balance=5)
        configure_account_lookup(db_session, account)

        reply = await service.chat(USER_ID, "hello")

        assert reply.text == "hello there"
        assert account.balance == 4
        assert len(assistant_provider.submitted) == 1

    async def test_insufficient_funds_asks_nothing(
        self, service, db_session, empty_account, assistant_provider
    ):
        configure_account_lookup(db_session, empty_account)

        reply = await service.chat(USER_ID, "hello")

        assert not reply.ok
        assert not reply.charged
        assert reply.has_active_plan is False
        assert assistant_provider.submitted == []
        assert added_transactions(db_session) == []
        assert empty_account.balance == 0

    @pytest.mark.parametrize("text", ["", "   "])
    async def test_empty_message_rejected(self, service, db_session, assistant_provider, text):
        with pytest.raises(ValidationFailure):
            await service.chat(USER_ID, text)

        assert assistant_provider.submitted == []
        assert added_transactions(db_session) == []

    async def test_reply_with_files(self, service, assistant_provider):
        assistant_provider.parts = (
            ResultPart(ref_id="msg_1:0", text="Here is your chart"),
            ResultPart(ref_id="file_1", data=b"png", filename="chart.png"),
        )

        reply = await service.chat(USER_ID, "plot it", attachments=("file_in",))

        assert reply.text == "Here is your chart"
        assert reply.files[0].filename == "chart.png"
        assert reply.files[0].data == b"png"
        _, _, request = assistant_provider.submitted[0]
        assert request.attachments == ("file_in",)

    async def test_failure_is_explained(self, service, assistant_provider):
        assistant_provider.statuses = ["failed"]
        assistant_provider.error = "server_error"

        reply = await service.chat(USER_ID, "hi")

        assert not reply.ok
        assert "server_error" in reply.text


class TestChatImageDirective:
    """An '/imagine ...' answer becomes a separately paid image."""

    async def test_directive_generates_image(
        self, service, db_session, funded_account, assistant_provider
    ):
        answers = iter(
            [
                (ResultPart(ref_id="msg_1:0", text="/imagine a red fox in snow"),),
                (ResultPart(ref_id="img", data=b"png", filename="image.png"),),
            ]
        )
        original_fetch = assistant_provider.fetch_result

        async def scripted_fetch(job, snapshot):
            assistant_provider.parts = next(answers)
            return await original_fetch(job, snapshot)

        assistant_provider.fetch_result = scripted_fetch
        assistant_provider.statuses = ["completed"]

        reply = await service.chat(USER_ID, "draw me a fox")

        assert reply.ok
        assert reply.text == ""
        assert reply.image.image == b"png"
        kinds = [kind for _, kind, _ in assistant_provider.submitted]
        assert kinds == [JobKind.TEXT, JobKind.IMAGE]
        _, _, image_request = assistant_provider.submitted[1]
        assert image_request.prompt == "a red fox in snow"
        assert [tx.amount for tx in added_transactions(db_session)] == [1, 60]
        assert funded_account.balance == 439

    async def test_directive_without_tokens_for_image(
        self, service, db_session, assistant_provider
    ):
        account = create_mock_account(balance=1)
        configure_account_lookup(db_session, account)
        assistant_provider.parts = (ResultPart(ref_id="msg_1:0", text="/imagine a fox"),)

        reply = await service.chat(USER_ID, "draw me a fox")

        assert reply.charged
        assert not reply.image.charged
        assert reply.image.has_active_plan is False
        assert len(assistant_provider.submitted) == 1
        assert account.balance == 0


class TestImages:
    """Image generation through the assistant provider."""

    async def test_bytes(self, service, db_session, funded_account, assistant_provider):
        assistant_provider.parts = (ResultPart(ref_id="img", data=b"png", filename="image.png"),)

        reply = await service.generate_image(USER_ID, "a fox")

        assert reply.ok
        assert reply.image == b"png"
        assert reply.cost == 60
        [tx] = added_transactions(db_session)
        assert tx.amount == 60
        assert tx.comment == "image"
        assert funded_account.balance == 440

    async def test_url(self, service, assistant_provider):
        url = "https://img.example/fox.png"
        assistant_provider.parts = (ResultPart(ref_id=url, url=url),)

        assert (await service.generate_image(USER_ID, "a fox")).image == url

    async def test_failure_keeps_charge(self, service, funded_account, assistant_provider):
        assistant_provider.statuses = ["failed"]

        reply = await service.generate_image(USER_ID, "a fox")

        assert not reply.ok
        assert reply.charged
        assert reply.failure is not None
        assert funded_account.balance == 440

    async def test_insufficient_funds_submits_nothing(
        self, service, db_session, empty_account, assistant_provider
    ):
        configure_account_lookup(db_session, empty_account)

        reply = await service.generate_image(USER_ID, "a fox")

        assert not reply.charged
        assert reply.image is None
        assert reply.has_active_plan is False
        assert assistant_provider.submitted == []
        assert empty_account.balance == 0
        assert added_transactions(db_session) == []

    async def test_refusal_reports_active_plan(
        self, service, db_session, subscribed_account, assistant_provider
    ):
        subscribed_account.balance = 10
        configure_account_lookup(db_session, subscribed_account)

        reply = await service.generate_image(USER_ID, "a fox")

        assert reply.has_active_plan is True
        assert assistant_provider.submitted == []

    async def test_empty_prompt_rejected(self, service, db_session, assistant_provider):
        with pytest.raises(ValidationFailure):
            await service.generate_image(USER_ID, " ")

        assert assistant_provider.submitted == []
        assert added_transactions(db_session) == []


class TestDirectVideo:
    """Direct generate_video calls."""

    async def test_lite_goes_to_provider_a(
        self, service, db_session, funded_account, lite_video_provider, assistant_client
    ):
        outcome = await service.generate_video(
            USER_ID, "a cat", VideoOptions(duration=5, quality=VideoQuality.LITE)
        )

        assert outcome.charged
        assert outcome.cost == 100
        assert outcome.response.success
        assert outcome.response.provider == ProviderName.VIDEO_A
        assert outcome.response.video_url == "https://cdn.example/v.mp4"
        _, _, request = lite_video_provider.submitted[0]
        assert request.prompt == "a cinematic cat, golden hour"
        assert request.duration == 5
        assistant_client.optimize_prompt.assert_awaited_once_with("a cat")
        assert funded_account.balance == 400

    async def test_skip_optimization(self, service, pro_video_provider, assistant_client):
        await service.generate_video(
            USER_ID,
            "a cat",
            VideoOptions(duration=10, quality=VideoQuality.PRO, skip_optimization=True),
        )

        _, _, request = pro_video_provider.submitted[0]
        assert request.prompt == "a cat"
        assistant_client.optimize_prompt.assert_not_awaited()

    async def test_optimizer_error_keeps_prompt(
        self, service, lite_video_provider, assistant_client
    ):
        assistant_client.optimize_prompt.side_effect = ProviderError(
            ProviderName.ASSISTANT, "API error: 500"
        )

        outcome = await service.generate_video(
            USER_ID, "a cat", VideoOptions(duration=5, quality=VideoQuality.LITE)
        )

        assert outcome.response.success
        _, _, request = lite_video_provider.submitted[0]
        assert request.prompt == "a cat"

    async def test_insufficient_funds(
        self, service, db_session, empty_account, pro_video_provider, assistant_client
    ):
        configure_account_lookup(db_session, empty_account)

        outcome = await service.generate_video(
            USER_ID, "a cat", VideoOptions(duration=10, quality=VideoQuality.PRO)
        )

        assert not outcome.charged
        assert outcome.cost == 500
        assert outcome.response is None
        assert pro_video_provider.submitted == []
        assistant_client.optimize_prompt.assert_not_awaited()

    @pytest.mark.parametrize(
        ("prompt", "options"),
        [
            ("  ", VideoOptions(duration=5, quality=VideoQuality.PRO)),
            ("a cat", VideoOptions(duration=15, quality=VideoQuality.LITE)),
        ],
    )
    async def test_invalid_request_not_charged(
        self, service, db_session, lite_video_provider, pro_video_provider, prompt, options
    ):
        with pytest.raises(VideoParameterError):
            await service.generate_video(USER_ID, prompt, options)

        assert added_transactions(db_session) == []
        assert lite_video_provider.submitted == []
        assert pro_video_provider.submitted == []

    async def test_download(self, service, downloader):
        data = await service.download_video(ProviderName.VIDEO_B, "https://api.example/v")

        assert data == b"mp4-bytes"
        downloader.download.assert_awaited_once_with("https://api.example/v")

    async def test_download_unknown_provider(self, service):
        with pytest.raises(ProviderError):
            await service.download_video(ProviderName.ASSISTANT, "https://x")


class TestInteractiveVideo:
    """The /vid request -> quote -> confirm flow."""

    async def test_vid_ten_pro_costs_five_hundred(
        self, service, db_session, funded_account, pro_video_provider
    ):
        configure_account_lookup(db_session, funded_account)

        request = service.begin_interactive_video_request(USER_ID, "/vid 10 pro a cat")
        assert request.state == RequestState.AWAITING_CONFIRMATION
        assert service.quote(USER_ID).cost == 500

        outcome = await service.confirm(USER_ID)

        assert outcome.charged
        assert outcome.cost == 500
        assert outcome.response.success
        assert outcome.response.provider == ProviderName.VIDEO_B
        assert funded_account.balance == 0
        [tx] = added_transactions(db_session)
        assert tx.amount == 500
        assert tx.direction == TransactionDirection.DEBIT.value
        assert len(pro_video_provider.submitted) == 1

    async def test_parameters_selected_step_by_step(
        self, service, db_session, funded_account, lite_video_provider
    ):
        configure_account_lookup(db_session, funded_account)

        service.begin_interactive_video_request(USER_ID, "a cat", image_url="https://x/cat.png")
        service.select_parameters(USER_ID, quality="lite")
        service.select_parameters(USER_ID, duration=10)
        service.attach_confirmation_message(USER_ID, "msg:1")

        outcome = await service.confirm(USER_ID)

        assert outcome.cost == 200
        assert funded_account.balance == 300
        _, _, request = lite_video_provider.submitted[0]
        assert request.image_url == "https://x/cat.png"

    async def test_confirm_without_parameters(self, service):
        service.begin_interactive_video_request(USER_ID, "a cat")

        with pytest.raises(ValidationFailure):
            await service.confirm(USER_ID)

    async def test_insufficient_balance(
        self, service, db_session, subscribed_account, pro_video_provider
    ):
        configure_account_lookup(db_session, subscribed_account)
        service.begin_interactive_video_request(USER_ID, "/vid 10 pro a cat")

        outcome = await service.confirm(USER_ID)

        assert not outcome.charged
        assert outcome.has_active_plan is True
        assert outcome.response is None
        assert subscribed_account.balance == 50
        assert pro_video_provider.submitted == []

    async def test_refused_request_can_be_confirmed_after_top_up(
        self, service, db_session, empty_account, pro_video_provider
    ):
        configure_account_lookup(db_session, empty_account)
        service.begin_interactive_video_request(USER_ID, "/vid 10 pro a cat")

        refused = await service.confirm(USER_ID)
        assert not refused.charged
        assert service.quote(USER_ID).cost == 500

        await service.credit(USER_ID, 500, "top-up")
        outcome = await service.confirm(USER_ID)

        assert outcome.charged
        assert outcome.response.success
        assert empty_account.balance == 0
        assert len(pro_video_provider.submitted) == 1

    async def test_moderation_failure_after_debit_is_not_refunded(
        self, service, db_session, funded_account, pro_video_provider
    ):
        configure_account_lookup(db_session, funded_account)
        pro_video_provider.statuses = ["in_progress", "failed"]
        pro_video_provider.error = "moderation_blocked"
        service.begin_interactive_video_request(USER_ID, "/vid --raw 10 pro a cat")

        outcome = await service.confirm(USER_ID)

        assert outcome.charged
        assert not outcome.response.success
        assert "content filter" in outcome.response.error
        assert funded_account.balance == 0
        directions = [tx.direction for tx in added_transactions(db_session)]
        assert directions == [TransactionDirection.DEBIT.value]

    async def test_replaced_request_is_charged_once(
        self, service, db_session, funded_account, lite_video_provider
    ):
        configure_account_lookup(db_session, funded_account)

        service.begin_interactive_video_request(USER_ID, "/vid 15 pro first idea")
        service.begin_interactive_video_request(USER_ID, "/vid 5 lite second idea")
        outcome = await service.confirm(USER_ID)

        assert outcome.cost == 100
        assert funded_account.balance == 400
        assert len(added_transactions(db_session)) == 1
        with pytest.raises(NoPendingRequestError):
            await service.confirm(USER_ID)

    async def test_cancel(self, service):
        service.begin_interactive_video_request(USER_ID, "a cat")

        assert service.cancel(USER_ID) is True
        assert service.cancel(USER_ID) is False
