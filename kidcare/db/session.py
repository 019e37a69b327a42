
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from kidcare.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    future=True,
    pool_pre_ping=True,
    pool_size=settings.DATABASE_POOL_SIZE,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
)

# Each reader opens its own short-lived session from this factory, so
# concurrent lookups never share one connection.
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)
