"""
Marketplace Service — ストレージハンドル

グローバルな接続状態を持たず、明示的に生成して各コンポーネントへ渡す。
  connect() … エンジン生成 → テーブル作成 → SELECT 1 で疎通確認
  close()   … エンジンを破棄（グレースフルクローズ）
"""

import logging
from collections.abc import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .schema import metadata

logger = logging.getLogger(__name__)


class Database:
    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.echo = echo
        self.engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def connect(self) -> None:
        if self.engine is not None:
            return
        engine = create_async_engine(self.url, echo=self.echo)
        async with engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
            await conn.execute(text("SELECT 1"))
        self.engine = engine
        self._session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        logger.info("Database connected: %s", engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        if self.engine is None:
            return
        await self.engine.dispose()
        self.engine = None
        self._session_factory = None
        logger.info("Database connection closed")

    def session(self) -> AsyncSession:
        if self._session_factory is None:
            raise RuntimeError("Database is not connected")
        return self._session_factory()


async def session_scope(database: Database) -> AsyncIterator[AsyncSession]:
    """リクエスト単位でセッションを払い出す（FastAPI 依存関数から使う）。"""
    async with database.session() as session:
        yield session
