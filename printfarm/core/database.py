from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel.ext.asyncio.session import AsyncSession


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Creates the async engine. In-memory SQLite needs a single shared
    connection, otherwise every session would see an empty database.
    """
    if url.startswith("sqlite") and (":memory:" in url or url.endswith("://")):
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(url, echo=echo, future=True)


def build_session_maker(bind: AsyncEngine) -> sessionmaker:
    """Async session factory. Objects stay usable after commit."""
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)
