"""
Tests for exception classes.

Covers all exception types and their string representations.
"""

import pytest

from promind.exceptions import (
    AccountNotFoundError,
    AuthenticationError,
    DataIntegrityError,
    NoPendingRequestError,
    OrderRedemptionError,
    PromindError,
    ProviderConfigurationError,
    ProviderError,
    UnknownJobError,
    ValidationFailure,
    VideoParameterError,
    WriteVerificationError,
)
from promind.models.api import ProviderName


class TestPromindError:
    """Tests for base PromindError."""

    def test_is_exception(self):
        """PromindError is a subclass of Exception."""
        assert issubclass(PromindError, Exception)

    @pytest.mark.parametrize(
        "exc",
        [
            ValidationFailure("bad"),
            VideoParameterError("duration", 7, "bad duration"),
            NoPendingRequestError(1),
            ProviderError(ProviderName.VIDEO_A, "boom"),
            ProviderConfigurationError(ProviderName.VIDEO_B, "no key"),
            UnknownJobError("job_1"),
            AccountNotFoundError(1),
            WriteVerificationError("gone"),
            DataIntegrityError("mismatch"),
            OrderRedemptionError(5, "not_paid"),
            AuthenticationError("missing"),
        ],
    )
    def test_all_are_promind_errors(self, exc):
        """Every exception can be caught as PromindError."""
        assert isinstance(exc, PromindError)


class TestValidationFailures:
    """Tests for user input validation errors."""

    def test_video_parameter_error_attributes(self):
        exc = VideoParameterError("duration", 7, "Duration must be one of 5, 10, 15")
        assert exc.field == "duration"
        assert exc.value == 7
        assert exc.message == "Duration must be one of 5, 10, 15"
        assert isinstance(exc, ValidationFailure)

    def test_no_pending_request_message(self):
        exc = NoPendingRequestError(42)
        assert exc.user_id == 42
        assert "42" in str(exc)


class TestProviderError:
    """Tests for provider errors."""

    def test_attributes(self):
        exc = ProviderError(ProviderName.VIDEO_A, "API error: 502", status_code=502)
        assert exc.provider == ProviderName.VIDEO_A
        assert exc.status_code == 502
        assert str(exc) == "video-provider-a error: API error: 502"

    def test_configuration_error_is_provider_error(self):
        exc = ProviderConfigurationError(ProviderName.VIDEO_B, "no key")
        assert isinstance(exc, ProviderError)
        assert exc.status_code is None


class TestLedgerErrors:
    """Tests for ledger errors."""

    def test_account_not_found(self):
        exc = AccountNotFoundError(123)
        assert exc.user_id == 123
        assert "123" in str(exc)

    def test_write_verification_prefix(self):
        assert str(WriteVerificationError("row missing")).startswith("Write verification failed")

    def test_data_integrity_prefix(self):
        assert str(DataIntegrityError("mismatch")).startswith("Data integrity error")

    def test_order_redemption(self):
        exc = OrderRedemptionError(9001, "already_redeemed")
        assert exc.order_id == 9001
        assert exc.reason == "already_redeemed"
        assert "9001" in str(exc)
