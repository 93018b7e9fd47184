from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlmodel.ext.asyncio.session import AsyncSession

from printfarm.core.context import FleetContext


def get_fleet(request: Request) -> FleetContext:
    return request.app.state.fleet


async def get_session(fleet: FleetContext = Depends(get_fleet)) -> AsyncGenerator[AsyncSession, None]:
    async with fleet.session_maker() as session:
        yield session
