from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from agentflow.core.config import settings
from agentflow.db.base import Base

engine = create_async_engine(
    settings.postgres_url,
    pool_size=10,
    max_overflow=10,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(bind: AsyncEngine | None = None) -> None:
    """Create all tables that do not exist yet."""
    import agentflow.models  # noqa: F401  register mappers

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
