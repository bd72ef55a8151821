import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class UnitOfWork:
    """
    One business operation, one session. Subscription rows locked inside the
    block stay locked until the commit or rollback on exit, so a plan change
    and a reconciliation of the same subscription are serialized.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                logger.debug("Rolling back unit of work after %s", type(exc).__name__)
                await session.rollback()
                raise
