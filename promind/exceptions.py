"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Insufficient balance, terminal provider failures and poll timeouts are
ordinary return values, not exceptions.
"""

from promind.models.api import ProviderName


class PromindError(Exception):
    """Base exception for all bot core errors."""

    pass


# ============================================================================
# User Input Validation
# ============================================================================


class ValidationFailure(PromindError):
    """Raised when user-supplied parameters are malformed. Never charged."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class VideoParameterError(ValidationFailure):
    """Raised when a video duration, quality or prompt is invalid."""

    def __init__(self, field: str, value: object, message: str) -> None:
        self.field = field
        self.value = value
        super().__init__(message)


class NoPendingRequestError(PromindError):
    """Raised when a user has no live interactive request."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__(f"No pending video request for user {user_id}")


# ============================================================================
# Providers
# ============================================================================


class ProviderError(PromindError):
    """Raised when a provider call fails (HTTP error, malformed payload)."""

    def __init__(
        self,
        provider: ProviderName,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.provider = provider
        self.message = message
        self.status_code = status_code
        super().__init__(f"{provider.value} error: {message}")


class ProviderConfigurationError(ProviderError):
    """Raised when a provider is missing its credentials."""

    def __init__(self, provider: ProviderName, message: str) -> None:
        super().__init__(provider, message)


class UnknownJobError(PromindError):
    """Raised when a job handle does not refer to an in-flight job."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"No in-flight job {job_id}")


# ============================================================================
# Ledger
# ============================================================================


class AccountNotFoundError(PromindError):
    """Raised when a token account doesn't exist."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__(f"Token account not found for user {user_id}")


class WriteVerificationError(PromindError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(PromindError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class OrderRedemptionError(PromindError):
    """Raised when an external shop order cannot be turned into tokens."""

    def __init__(self, order_id: int, reason: str) -> None:
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Order {order_id} cannot be redeemed: {reason}")


class AuthenticationError(PromindError):
    """Raised when an operational API call is not authenticated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
