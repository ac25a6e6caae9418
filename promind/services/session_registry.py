"""
Conversation Session Registry - durable user -> assistant thread mapping.

Creation is idempotent per user: a per-user lock closes the in-process
race, and the (user_id, assistant_id) unique constraint closes the
cross-process one, in which case the first persisted session is adopted.
"""

from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from promind.db.models import ConversationSession
from promind.exceptions import AccountNotFoundError, WriteVerificationError
from promind.services.state_store import InMemoryUserStateStore

logger = get_logger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

UNIQUE_SESSION_CONSTRAINT = "uq_conversation_session_user"


class ConversationSessionRegistry:
    """Lookup-or-create of provider conversation sessions, cached in memory."""

    def __init__(self, session_factory: SessionFactory, assistant_id: str) -> None:
        self._session_factory = session_factory
        self.assistant_id = assistant_id
        self._cache: InMemoryUserStateStore[str] = InMemoryUserStateStore()

    async def get(self, user_id: int) -> str | None:
        """Get the user's session id, if one was ever persisted."""
        cached = self._cache.get(user_id)
        if cached is not None:
            return cached

        session_id = await self._load(user_id)
        if session_id is not None:
            self._cache.set(user_id, session_id)
        return session_id

    async def get_or_create(
        self,
        user_id: int,
        create: Callable[[], Awaitable[str]],
    ) -> str:
        """
        Get the user's session id, creating and persisting one if absent.

        Args:
            user_id: Platform user id
            create: Creates a new provider-side session and returns its id

        Raises:
            AccountNotFoundError: The user has no profile row yet
        """
        cached = self._cache.get(user_id)
        if cached is not None:
            return cached

        async with self._cache.with_lock(user_id):
            existing = await self.get(user_id)
            if existing is not None:
                return existing

            new_session_id = await create()
            session_id = await self._persist(user_id, new_session_id)
            self._cache.set(user_id, session_id)
            return session_id

    async def _load(self, user_id: int) -> str | None:
        async with self._session_factory() as db:
            stmt = select(ConversationSession.session_id).where(
                ConversationSession.user_id == user_id,
                ConversationSession.assistant_id == self.assistant_id,
            )
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def _persist(self, user_id: int, session_id: str) -> str:
        """Persist a new mapping; on conflict adopt the one already stored."""
        async with self._session_factory() as db:
            db.add(
                ConversationSession(
                    user_id=user_id,
                    assistant_id=self.assistant_id,
                    session_id=session_id,
                )
            )
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                if UNIQUE_SESSION_CONSTRAINT not in str(exc.orig):
                    # Only other constraint is the user_profiles foreign key
                    logger.error("conversation_session_without_profile", user_id=user_id)
                    raise AccountNotFoundError(user_id) from exc
                logger.warning(
                    "conversation_session_conflict",
                    user_id=user_id,
                    discarded_session_id=session_id,
                )
            else:
                logger.info(
                    "conversation_session_created",
                    user_id=user_id,
                    session_id=session_id,
                )
                return session_id

        adopted = await self._load(user_id)
        if adopted is None:
            raise WriteVerificationError(f"Conversation session for user {user_id} not found")
        return adopted
