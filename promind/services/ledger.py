"""
Token Ledger Service - balances, debits, credits and the transaction log.

NO DICTIONARIES - All operations use strongly typed domain models.

The ledger is the only write path to a token balance. Every mutation
appends an immutable TokenTransaction, so replaying the log reconstructs
the live balance.
"""

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from promind.config import settings
from promind.db.models import TokenAccount, TokenTransaction, UserProfile
from promind.exceptions import (
    AccountNotFoundError,
    DataIntegrityError,
    WriteVerificationError,
)
from promind.models.api import PaymentType, PlanType, TransactionDirection
from promind.models.domain import TokenAccountData, TransactionData
from promind.observability.metrics import metrics
from promind.services.state_store import InMemoryUserStateStore

logger = get_logger(__name__)

# Shared by every LedgerService instance in the process: one per-user region
# around each read-check-write sequence.
_account_locks: InMemoryUserStateStore[None] = InMemoryUserStateStore()


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    """Treat naive timestamps coming back from the database as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def is_plan_expired(expires_at: datetime | None, now: datetime) -> bool:
    """Check whether a subscription expiry time has been reached."""
    if expires_at is None:
        return False
    return _as_utc(expires_at) <= now


def plan_debit(balance: int, amount: int) -> int | None:
    """
    Decide a debit.

    Returns the balance after the debit, or None when the balance does not
    cover the amount (in which case nothing may be written).
    """
    if amount <= 0:
        raise ValueError(f"Debit amount must be positive: {amount}")
    if balance < amount:
        return None
    return balance - amount


def replay_balance(transactions: Iterable[TransactionData]) -> int:
    """Reconstruct a balance from its transaction log."""
    balance = 0
    for tx in transactions:
        if tx.direction == TransactionDirection.CREDIT:
            balance += tx.amount
        else:
            balance -= tx.amount
    return balance


class LedgerService:
    """
    Token ledger with write verification.

    All balance mutations follow the pattern:
    1. Enter the user's in-process lock region
    2. Lock the account row (SELECT FOR UPDATE)
    3. Apply lazy subscription expiry
    4. Write balance + transaction, flush, read back and verify
    5. Commit
    """

    def __init__(
        self,
        session: AsyncSession,
        locks: InMemoryUserStateStore[None] | None = None,
    ) -> None:
        """Initialize ledger service with database session."""
        self.session = session
        self._locks = locks if locks is not None else _account_locks

    async def ensure_account(
        self,
        user_id: int,
        first_name: str | None = None,
        username: str | None = None,
    ) -> TokenAccountData:
        """
        Get or create the user's profile and token account.

        New users receive the initial token grant as a credit transaction.
        Refreshes last_message_at on every call.
        """
        profile = await self.session.get(UserProfile, user_id)
        if profile is not None:
            profile.last_message_at = _utc_now()
            if first_name is not None:
                profile.first_name = first_name
            if username is not None:
                profile.username = username

            account = await self._find_account(user_id)
            if account is None:
                account = self._new_account(user_id)
            self._expire_plan_if_due(account)
            await self.session.flush()
            await self.session.commit()
            return self._account_to_domain(account)

        now = _utc_now()
        self.session.add(
            UserProfile(
                id=user_id,
                first_name=first_name,
                username=username,
                first_visit_at=now,
                last_message_at=now,
            )
        )
        account = self._new_account(user_id)

        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - profile created by another request
            await self.session.rollback()
            logger.warning("ledger_account_creation_race", user_id=user_id)
            existing = await self._find_account(user_id)
            if existing is None:
                raise WriteVerificationError("Account creation failed due to race condition")
            return self._account_to_domain(existing)

        verified = await self.session.get(TokenAccount, account.id)
        if verified is None:
            raise WriteVerificationError(f"Token account for user {user_id} not found after insert")

        await self.session.commit()

        if settings.initial_token_grant > 0:
            metrics.record_credit(settings.initial_token_grant)
        logger.info(
            "ledger_account_created",
            user_id=user_id,
            initial_grant=settings.initial_token_grant,
        )
        return self._account_to_domain(verified)

    async def get_account(self, user_id: int) -> TokenAccountData:
        """
        Get a token account snapshot (after lazy subscription expiry).

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        return await self.refresh_plan(user_id)

    async def refresh_plan(self, user_id: int) -> TokenAccountData:
        """
        Clear an expired subscription. Balance is never touched.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        if self._expire_plan_if_due(account):
            await self.session.flush()
            await self.session.commit()

        return self._account_to_domain(account)

    async def has_active_plan(self, user_id: int) -> bool:
        """Whether the user currently holds an unexpired subscription."""
        account = await self.refresh_plan(user_id)
        return account.has_active_plan

    async def debit(self, user_id: int, amount: int, comment: str) -> bool:
        """
        Deduct tokens before a paid operation.

        Returns False, writing nothing, when the balance does not cover the
        amount. The caller must not perform the paid operation in that case.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive: {amount}")

        async with self._locks.with_lock(user_id):
            account = await self._lock_account_for_update(user_id)
            if account is None:
                raise AccountNotFoundError(user_id)

            self._expire_plan_if_due(account)

            balance_before = account.balance
            balance_after = plan_debit(balance_before, amount)
            if balance_after is None:
                # Persist a lazy expiry (if any) and release the row lock
                await self.session.commit()
                metrics.record_debit(amount, applied=False)
                logger.info(
                    "ledger_debit_rejected",
                    user_id=user_id,
                    amount=amount,
                    balance=balance_before,
                    comment=comment,
                )
                return False

            account.balance = balance_after
            self.session.add(
                TokenTransaction(
                    user_id=user_id,
                    amount=amount,
                    direction=TransactionDirection.DEBIT.value,
                    comment=comment,
                )
            )
            await self._verify_balance_write(account, balance_after)
            await self.session.commit()

        metrics.record_debit(amount, applied=True)
        logger.info(
            "ledger_debit_applied",
            user_id=user_id,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            comment=comment,
        )
        return True

    async def credit(
        self,
        user_id: int,
        amount: int,
        comment: str,
        source_order_id: int | None = None,
    ) -> None:
        """
        Add tokens (initial grants, top-ups, order reconciliation, manual refunds).

        source_order_id references the OrderIncome row that produced the tokens.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive: {amount}")

        async with self._locks.with_lock(user_id):
            account = await self._lock_account_for_update(user_id)
            if account is None:
                raise AccountNotFoundError(user_id)

            self._expire_plan_if_due(account)
            balance_before = account.balance
            self._apply_credit(account, amount, comment, source_order_id)
            await self._verify_balance_write(account, balance_before + amount)
            await self.session.commit()

        metrics.record_credit(amount)
        logger.info(
            "ledger_credit_applied",
            user_id=user_id,
            amount=amount,
            balance_after=balance_before + amount,
            comment=comment,
            source_order_id=source_order_id,
        )

    async def activate_subscription(
        self,
        user_id: int,
        plan: PlanType,
        tokens: int,
        comment: str,
        source_order_id: int | None = None,
    ) -> TokenAccountData:
        """
        Start (or renew) a subscription and credit its tokens.

        The plan runs for `subscription_days` from now and the pending
        payment marker is cleared.

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        if tokens < 0:
            raise ValueError(f"Subscription tokens cannot be negative: {tokens}")

        async with self._locks.with_lock(user_id):
            account = await self._lock_account_for_update(user_id)
            if account is None:
                raise AccountNotFoundError(user_id)

            expires_at = _utc_now() + timedelta(days=settings.subscription_days)
            account.plan = plan.value
            account.plan_expires_at = expires_at
            account.pending_payment = None

            expected_balance = account.balance
            if tokens > 0:
                self._apply_credit(account, tokens, comment, source_order_id)
                expected_balance += tokens
            await self._verify_balance_write(account, expected_balance)
            await self.session.commit()

        if tokens > 0:
            metrics.record_credit(tokens)
        logger.info(
            "ledger_subscription_activated",
            user_id=user_id,
            plan=plan.value,
            tokens=tokens,
            plan_expires_at=expires_at.isoformat(),
        )
        return self._account_to_domain(account)

    async def set_pending_payment(self, user_id: int, payment_type: PaymentType | None) -> None:
        """
        Remember what the user is about to pay for (None clears it).

        Raises:
            AccountNotFoundError: Account doesn't exist
        """
        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)
        account.pending_payment = payment_type.value if payment_type else None
        await self.session.flush()
        await self.session.commit()

    async def get_transactions(self, user_id: int) -> list[TransactionData]:
        """Get the user's transaction log in insertion order."""
        stmt = (
            select(TokenTransaction)
            .where(TokenTransaction.user_id == user_id)
            .order_by(TokenTransaction.id)
        )
        result = await self.session.execute(stmt)
        return [self._transaction_to_domain(tx) for tx in result.scalars().all()]

    async def verify_balance(self, user_id: int) -> int:
        """
        Replay the transaction log and compare it with the live balance.

        Raises:
            AccountNotFoundError: Account doesn't exist
            DataIntegrityError: Log and balance disagree
        """
        account = await self._find_account(user_id)
        if account is None:
            raise AccountNotFoundError(user_id)

        replayed = replay_balance(await self.get_transactions(user_id))
        if replayed != account.balance:
            logger.error(
                "ledger_balance_mismatch",
                user_id=user_id,
                balance=account.balance,
                replayed=replayed,
            )
            raise DataIntegrityError(
                f"Balance mismatch for user {user_id}: live={account.balance}, replayed={replayed}"
            )
        return replayed

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _new_account(self, user_id: int) -> TokenAccount:
        """Stage a new account holding the initial grant."""
        grant = settings.initial_token_grant
        account = TokenAccount(user_id=user_id, balance=grant)
        self.session.add(account)
        if grant > 0:
            self.session.add(
                TokenTransaction(
                    user_id=user_id,
                    amount=grant,
                    direction=TransactionDirection.CREDIT.value,
                    comment="initial grant",
                )
            )
        return account

    def _apply_credit(
        self,
        account: TokenAccount,
        amount: int,
        comment: str,
        source_order_id: int | None,
    ) -> None:
        account.balance = account.balance + amount
        self.session.add(
            TokenTransaction(
                user_id=account.user_id,
                amount=amount,
                direction=TransactionDirection.CREDIT.value,
                comment=comment,
                order_income_id=source_order_id,
            )
        )

    def _expire_plan_if_due(self, account: TokenAccount) -> bool:
        """Clear the plan when its expiry has passed. Returns True if cleared."""
        if account.plan is None or not is_plan_expired(account.plan_expires_at, _utc_now()):
            return False
        logger.info(
            "ledger_subscription_expired",
            user_id=account.user_id,
            plan=account.plan,
        )
        account.plan = None
        account.plan_expires_at = None
        return True

    async def _verify_balance_write(self, account: TokenAccount, expected: int) -> None:
        """Flush and read the account back."""
        await self.session.flush()

        verified = await self.session.get(TokenAccount, account.id)
        if verified is None:
            raise WriteVerificationError(f"Token account {account.id} disappeared after update")
        if verified.balance != expected:
            raise DataIntegrityError(
                f"Balance mismatch: expected {expected}, got {verified.balance}"
            )
        if verified.balance < 0:
            raise DataIntegrityError(f"Negative balance for user {account.user_id}")

    async def _find_account(self, user_id: int) -> TokenAccount | None:
        """Find the user's token account."""
        stmt = select(TokenAccount).where(TokenAccount.user_id == user_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_account_for_update(self, user_id: int) -> TokenAccount | None:
        """Lock the user's token account row (SELECT FOR UPDATE)."""
        stmt = select(TokenAccount).where(TokenAccount.user_id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _account_to_domain(self, account: TokenAccount) -> TokenAccountData:
        """Convert ORM account to domain model."""
        return TokenAccountData(
            user_id=account.user_id,
            balance=account.balance,
            plan=PlanType(account.plan) if account.plan else None,
            plan_expires_at=account.plan_expires_at,
            pending_payment=PaymentType(account.pending_payment)
            if account.pending_payment
            else None,
        )

    def _transaction_to_domain(self, tx: TokenTransaction) -> TransactionData:
        """Convert ORM transaction to domain model."""
        return TransactionData(
            transaction_id=tx.id,
            user_id=tx.user_id,
            amount=tx.amount,
            direction=TransactionDirection(tx.direction),
            comment=tx.comment,
            order_income_id=tx.order_income_id,
            created_at=tx.created_at,
        )
