from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from jobctl.engine.adapter import EngineAdapter


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_engine(request: Request) -> EngineAdapter:
    return request.app.state.engine


# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Engine = Annotated[EngineAdapter, Depends(get_engine)]
