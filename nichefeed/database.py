from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from nichefeed.config import settings

# Engine + session factory shared by the CLI jobs
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    future=True
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    expire_on_commit=False,
    autoflush=False
)
