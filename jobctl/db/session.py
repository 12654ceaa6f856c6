from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import DeclarativeBase

from jobctl.settings import settings


def build_engine(uri: str) -> AsyncEngine:
    return create_async_engine(
        uri,
        echo=False,
        pool_pre_ping=True,
    )


def build_session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)

AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    pass


async def init_models(db_engine: AsyncEngine) -> None:
    # Imported for its side effect of registering tables on Base.metadata
    from jobctl.db import models  # noqa: F401

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
