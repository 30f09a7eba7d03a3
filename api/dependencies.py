"""
FastAPI dependencies
"""

from typing import AsyncGenerator
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session from the factory created at application startup"""
    async with request.app.state.session_factory() as session:
        yield session
