import ssl
from urllib.parse import urlparse

import structlog
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from premium_api.core import config

logger = structlog.get_logger(__name__)


def normalize_database_url(database_url: str) -> str:
    """
    Rewrite a Postgres URL so it can be used with the asyncpg driver.

    asyncpg fails if it sees "sslmode" in the URL, and hosted providers hand
    out plain postgres:// URLs. Other schemes (e.g. sqlite+aiosqlite) are
    returned untouched.
    """
    if "?sslmode=" in database_url:
        database_url = database_url.split("?sslmode=")[0]

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return database_url


def build_connect_args(database_url: str) -> dict:
    """
    Driver arguments: SSL for remote Postgres hosts plus a per-statement
    timeout so a stuck query cannot hold a request forever.
    """
    connect_args = {}
    if not database_url.startswith("postgresql+asyncpg://"):
        return connect_args

    connect_args["command_timeout"] = config.DB_COMMAND_TIMEOUT_SECONDS

    host = urlparse(database_url).hostname or ""
    if host not in ("db", "localhost", "127.0.0.1"):
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl"] = ssl_context

    return connect_args


if not config.DATABASE_URL:
    logger.error("database_url_missing")
    raise ValueError("DATABASE_URL is missing")

database_url = normalize_database_url(config.DATABASE_URL)

engine = create_async_engine(
    database_url,
    echo=False,
    connect_args=build_connect_args(database_url),
    poolclass=NullPool,  # Disable pooling for serverless deployments
)

logger.info("database_configured", driver=engine.url.drivername, host=engine.url.host)

# Create the session factory (Session Local)
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


# Base class for models (Tables)
class Base(DeclarativeBase):
    pass


# Dependency to get DB session in FastAPI endpoints
async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
