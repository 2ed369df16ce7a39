from __future__ import annotations

import os

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from .models import Base
from .settings import DATABASE_URL

engine = create_async_engine(DATABASE_URL, pool_pre_ping=True, echo=os.environ.get("DATABASE_ECHO") == "1")
SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

async def init_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
