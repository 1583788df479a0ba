from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from pathlib import Path
from opsportal.core.config import DATABASE_URL
from opsportal.models import Base
from opsportal.utils.logging import get_logger

logger = get_logger(__name__)

SQLALCHEMY_DATABASE_URL = DATABASE_URL

engine = create_async_engine(
    SQLALCHEMY_DATABASE_URL, echo=False, future=True, pool_pre_ping=True
)

AsyncSessionLocal = sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False, autocommit=False
)


async def init_db() -> None:
    """Create tables that do not exist yet"""
    if SQLALCHEMY_DATABASE_URL.startswith("sqlite") and ":///./" in SQLALCHEMY_DATABASE_URL:
        # Relative SQLite path, make sure its directory exists
        db_path = SQLALCHEMY_DATABASE_URL.split(":///", 1)[1]
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")


# Dependency to get async DB session
async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        else:
            await session.commit()
