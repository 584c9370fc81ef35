"""Database engine and session configuration."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from paysub.core.config import settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""


def create_session_factory(
    url: str = settings.DATABASE_URL,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Engine plus session maker; Celery tasks build one per asyncio.run."""
    engine = create_async_engine(url, echo=settings.DEBUG, pool_pre_ping=True)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, session_maker


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables registered on Base.metadata."""
    # Import table modules so their classes register on Base.metadata
    from paysub.modules.notification import tables as _notification_tables  # noqa: F401
    from paysub.modules.payment import tables as _payment_tables  # noqa: F401
    from paysub.modules.subscription import tables as _subscription_tables  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
