"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.

Two metadata trees: `Base` for the bot's own database and `MainBase` for
the external shop database, which is read-only from this service.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for the bot database models."""

    pass


class MainBase(DeclarativeBase):
    """Base class for the external shop database models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UserProfile(Base):
    """
    ORM model for user_profiles table.

    Keyed by the chat platform user id, which exceeds 2^31.
    """

    __tablename__ = "user_profiles"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_visit_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        return f"<UserProfile(id={self.id}, username={self.username})>"


class TokenAccount(Base):
    """
    ORM model for token_accounts table.

    Balance is only ever mutated by the ledger service.
    """

    __tablename__ = "token_accounts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False
    )

    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Subscription
    plan: Mapped[str | None] = mapped_column(String(10), nullable=True)
    plan_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    pending_payment: Mapped[str | None] = mapped_column(String(10), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_token_balance_non_negative"),
        UniqueConstraint("user_id", name="uq_token_account_user"),
        Index(
            "idx_token_accounts_plan_expires",
            "plan_expires_at",
            postgresql_where=text("plan_expires_at IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return f"<TokenAccount(user_id={self.user_id}, balance={self.balance}, plan={self.plan})>"


class OrderIncome(Base):
    """
    ORM model for orders_income table.

    One row per external shop order that produced tokens.
    """

    __tablename__ = "orders_income"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False
    )
    tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("order_id", name="uq_orders_income_order"),
        CheckConstraint("tokens >= 0", name="ck_orders_income_tokens_non_negative"),
    )


class TokenTransaction(Base):
    """
    ORM model for token_transactions table.

    Append-only ledger; replaying it reconstructs the account balance.
    """

    __tablename__ = "token_transactions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    direction: Mapped[str] = mapped_column(String(6), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    order_income_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("orders_income.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_token_transaction_amount_positive"),
        CheckConstraint("direction IN ('DEBIT', 'CREDIT')", name="ck_token_transaction_direction"),
        Index("idx_token_transactions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<TokenTransaction(id={self.id}, user_id={self.user_id}, "
            f"direction={self.direction}, amount={self.amount})>"
        )


class ConversationSession(Base):
    """
    ORM model for conversation_sessions table.

    Durable (user, assistant) -> provider thread mapping.
    """

    __tablename__ = "conversation_sessions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False
    )
    assistant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    session_id: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("user_id", "assistant_id", name="uq_conversation_session_user"),
    )


# ============================================================================
# External shop database (read-only)
# ============================================================================


class MainOrder(MainBase):
    """Order record from the external shop."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    total_points: Mapped[int] = mapped_column(Integer, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    promind: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    promind_action: Mapped[str | None] = mapped_column(String(20), nullable=True)


class MainOrderItem(MainBase):
    """Order line from the external shop."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    order_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    promind_action: Mapped[str | None] = mapped_column(String(20), nullable=True)
