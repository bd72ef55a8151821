from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.uow import UnitOfWork


class DatabaseManager:
    """
    Engine and session factory for one process. The API builds one in its
    lifespan; every Celery task builds its own because engines are bound to
    the event loop that created them.
    """

    def __init__(self, settings: Settings):
        self.engine = create_async_engine(
            settings.DATABASE_URL,
            echo=settings.DB_ECHO,
            pool_pre_ping=True,
        )
        self.async_session_maker = async_sessionmaker(
            self.engine, expire_on_commit=False, class_=AsyncSession
        )

    def unit_of_work(self) -> UnitOfWork:
        return UnitOfWork(self.async_session_maker)

    async def close(self):
        await self.engine.dispose()
