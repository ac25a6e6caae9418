"""
API Models - Enumerations and Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class CanonicalStatus(str, Enum):
    """Provider-independent job status."""

    SUBMITTED = "submitted"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Position in the monotonic order submitted < queued|processing < terminal."""
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (CanonicalStatus.COMPLETED, CanonicalStatus.FAILED)


_STATUS_RANK = {
    CanonicalStatus.SUBMITTED: 0,
    CanonicalStatus.QUEUED: 1,
    CanonicalStatus.PROCESSING: 1,
    CanonicalStatus.COMPLETED: 2,
    CanonicalStatus.FAILED: 2,
}


class JobKind(str, Enum):
    """What a generation job produces."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


class ProviderName(str, Enum):
    """Hard-wired generation backends."""

    ASSISTANT = "assistant"
    VIDEO_A = "video-provider-a"
    VIDEO_B = "video-provider-b"


class VideoQuality(str, Enum):
    """Closed quality enumeration for video requests."""

    LITE = "lite"
    PRO = "pro"


class PlanType(str, Enum):
    """Subscription plans."""

    PLUS = "PLUS"
    PRO = "PRO"


class PaymentType(str, Enum):
    """What the user is currently paying for in the external shop."""

    PLUS = "PLUS"
    PRO = "PRO"
    TOPUP = "TOPUP"


class TransactionDirection(str, Enum):
    """Direction of a ledger entry."""

    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


class FailureReason(str, Enum):
    """Why a generation job did not produce a result."""

    TIMEOUT = "timeout"
    PROVIDER_FAILED = "provider_failed"
    SUBMIT_FAILED = "submit_failed"
    NOT_CONFIGURED = "not_configured"


class RequestState(str, Enum):
    """Interactive request builder states."""

    COLLECTING = "collecting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class OrderAction(str, Enum):
    """Action encoded on an external shop order."""

    PLUS = "plus"
    PRO = "pro"
    TOKENS = "tokens"


# ============================================================================
# Order Redemption Models
# ============================================================================


class RedeemOrderRequest(BaseModel):
    """POST /v1/orders/redeem request body."""

    user_id: int = Field(..., gt=0, description="Platform user id")
    order_id: int = Field(..., gt=0, description="External shop order id")


class RedeemOrderResponse(BaseModel):
    """POST /v1/orders/redeem response body."""

    user_id: int
    order_id: int
    action: OrderAction
    tokens_credited: int
    plan: PlanType | None
    plan_expires_at: datetime | None
    balance: int


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response body."""

    status: str
    database: str
    version: str
    timestamp: str = Field(..., description="ISO 8601 timestamp")
