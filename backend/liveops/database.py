"""
Database configuration and session management.
Uses PostgreSQL via asyncpg with SQLAlchemy 2 async engine. Only the
activity log and the account map live here; campaign data never does.
"""

import logging
import ssl
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from liveops.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def _ssl_context(verify: bool) -> ssl.SSLContext:
    ctx = ssl.create_default_context()
    if not verify:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    return ctx


def connect_args_for(url: str) -> dict:
    """
    asyncpg connect args: connect timeout plus TLS per DATABASE_SSL.
    "auto" turns on unverified TLS for Railway's rlwy.net proxy, which
    presents a self-signed certificate.
    """
    if not url.startswith("postgresql+asyncpg"):
        return {}
    args = {"timeout": settings.database_connect_timeout}
    mode = settings.database_ssl.lower()
    if mode == "auto":
        mode = "insecure" if "rlwy.net" in url else "disable"
    if mode == "require":
        args["ssl"] = _ssl_context(verify=True)
    elif mode == "insecure":
        args["ssl"] = _ssl_context(verify=False)
    return args


def _engine_options() -> dict:
    if settings.database_url.startswith("sqlite"):
        return {}
    return {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}


engine = create_async_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args_for(settings.database_url),
    **_engine_options(),
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    """Dependency that provides a database session with auto-commit/rollback."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """
    Create all tables defined in models.
    Uses create_all, which only creates tables that don't exist yet.
    """
    # Import models to ensure they are registered with Base.metadata
    import liveops.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized with {len(Base.metadata.tables)} tables: "
                    f"{', '.join(Base.metadata.tables.keys())}")


async def check_db_connection() -> bool:
    """Test database connectivity."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
