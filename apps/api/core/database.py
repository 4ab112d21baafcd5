"""
Motor SQLAlchemy async y fábrica de sesiones.

No hay engine a nivel de módulo: la aplicación construye un Database en su
lifespan (main.py), lo guarda en app.state y lo cierra al apagarse.
Los servicios reciben la AsyncSession por constructor.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import models  # noqa: F401 - registra todas las tablas en Base.metadata
from models.base import Base


class Database:
    def __init__(self, url: str, echo: bool = False) -> None:
        kwargs: dict = {"echo": echo, "pool_pre_ping": True}   # detecta conexiones muertas
        if not url.startswith("sqlite"):
            kwargs.update(pool_size=5, max_overflow=10)
        self.engine: AsyncEngine = create_async_engine(url, **kwargs)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Crea el esquema desde los modelos. Solo tests/desarrollo: producción usa Alembic."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
