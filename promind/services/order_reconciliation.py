"""
Order Reconciliation Service - turns paid external shop orders into tokens.

Each shop order is redeemed at most once: the orders_income row is the
idempotency key, and every credit it produces references it.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from promind.config import settings
from promind.db.models import MainOrder, MainOrderItem, OrderIncome
from promind.exceptions import OrderRedemptionError
from promind.models.api import OrderAction, PlanType
from promind.models.domain import RedemptionResult
from promind.services.ledger import LedgerService

logger = get_logger(__name__)

# Redemption rejection reasons
ALREADY_REDEEMED = "already_redeemed"
NOT_FOUND = "not_found"
NOT_PROMIND = "not_promind"
NOT_PAID = "not_paid"
NO_ACTION = "no_action"


def tokens_for_action(action: OrderAction) -> int:
    """Tokens granted by a shop action."""
    if action == OrderAction.PLUS:
        return settings.plus_plan_tokens
    if action == OrderAction.PRO:
        return settings.pro_plan_tokens
    return settings.topup_tokens


def plan_for_action(action: OrderAction) -> PlanType | None:
    """Subscription started by a shop action (None for a plain top-up)."""
    if action == OrderAction.PLUS:
        return PlanType.PLUS
    if action == OrderAction.PRO:
        return PlanType.PRO
    return None


class OrderReconciliationService:
    """Redeems external shop orders against the token ledger."""

    def __init__(self, session: AsyncSession, main_session: AsyncSession) -> None:
        """
        Args:
            session: Bot database session (ledger, orders_income)
            main_session: Read-only session on the external shop database
        """
        self.session = session
        self.main_session = main_session
        self.ledger = LedgerService(session)

    async def redeem(self, user_id: int, order_id: int) -> RedemptionResult:
        """
        Credit the user for a paid shop order.

        Raises:
            OrderRedemptionError: Order unknown, unpaid, not for this bot or
                already redeemed
            AccountNotFoundError: User has no token account
        """
        if await self._find_income(order_id) is not None:
            raise OrderRedemptionError(order_id, ALREADY_REDEEMED)

        order = await self.main_session.get(MainOrder, order_id)
        if order is None:
            raise OrderRedemptionError(order_id, NOT_FOUND)
        if not order.promind:
            raise OrderRedemptionError(order_id, NOT_PROMIND)
        if order.status != settings.paid_order_status:
            raise OrderRedemptionError(order_id, NOT_PAID)

        action = await self._resolve_action(order)
        if action is None:
            raise OrderRedemptionError(order_id, NO_ACTION)

        # Make sure the account exists before recording the income row
        await self.ledger.get_account(user_id)

        tokens = tokens_for_action(action)
        income = OrderIncome(order_id=order_id, user_id=user_id, tokens=tokens)
        self.session.add(income)
        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - order redeemed by a concurrent request
            await self.session.rollback()
            logger.warning("order_redemption_race", order_id=order_id, user_id=user_id)
            raise OrderRedemptionError(order_id, ALREADY_REDEEMED) from None

        comment = f"order {order_id} ({action.value})"
        plan = plan_for_action(action)
        if plan is not None:
            account = await self.ledger.activate_subscription(
                user_id, plan, tokens, comment, source_order_id=income.id
            )
        else:
            await self.ledger.credit(user_id, tokens, comment, source_order_id=income.id)
            await self.ledger.set_pending_payment(user_id, None)
            account = await self.ledger.get_account(user_id)

        logger.info(
            "order_redeemed",
            user_id=user_id,
            order_id=order_id,
            action=action.value,
            tokens=tokens,
        )
        return RedemptionResult(
            user_id=user_id,
            order_id=order_id,
            action=action,
            tokens_credited=tokens,
            plan=account.plan,
            plan_expires_at=account.plan_expires_at,
            balance=account.balance,
        )

    async def _find_income(self, order_id: int) -> OrderIncome | None:
        stmt = select(OrderIncome).where(OrderIncome.order_id == order_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _resolve_action(self, order: MainOrder) -> OrderAction | None:
        """Action on the order itself, else on its first item carrying one."""
        if order.promind_action:
            return _parse_action(order.promind_action)

        stmt = (
            select(MainOrderItem)
            .where(MainOrderItem.order_id == order.id)
            .where(MainOrderItem.promind_action.is_not(None))
            .order_by(MainOrderItem.id)
            .limit(1)
        )
        result = await self.main_session.execute(stmt)
        item = result.scalar_one_or_none()
        if item is None or not item.promind_action:
            return None
        return _parse_action(item.promind_action)


def _parse_action(value: str) -> OrderAction | None:
    try:
        return OrderAction(value.strip().lower())
    except ValueError:
        logger.warning("order_action_unknown", value=value)
        return None
