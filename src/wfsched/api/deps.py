from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from wfsched.config import Settings
from wfsched.core.engine import WorkflowEngine
from wfsched.db.repository import RunRepository


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_repository(session: AsyncSession = Depends(get_session)) -> RunRepository:
    return RunRepository(session)


async def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.workflow_engine
