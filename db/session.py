from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings

# PostgreSQL driver for async operations is asyncpg
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False, # Disable echo in prod for performance
    pool_pre_ping=True,
    pool_recycle=3600,
    future=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

async def init_models():
    """Create the documents table if it does not exist."""
    from models.base import Base
    import models.document  # noqa: F401  (registers the table)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def create_redis():
    """Client for the autosave store. The caller owns it and must `aclose()` it."""
    from redis.asyncio import Redis
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)
