"""
Source store repository over SQLAlchemy async sessions.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..config import SourceDatabaseConfig
from .models import Base, Post

logger = logging.getLogger(__name__)


class SourceStore:
    """CRUD access to the `posts` table."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_config(cls, config: SourceDatabaseConfig) -> "SourceStore":
        engine = create_async_engine(
            config.connection_string,
            pool_size=config.pool_size,
            pool_pre_ping=True,
        )
        return cls(engine)

    @asynccontextmanager
    async def session(self):
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def create(self, title: str, content: str, author: str) -> Dict[str, Any]:
        async with self.session() as session:
            post = Post(title=title, content=content, author=author)
            session.add(post)
            await session.flush()
            await session.refresh(post)
            logger.info(f"Created post {post.id} by {author}")
            return post.to_dict()

    async def get(self, post_id: int) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            post = await session.get(Post, post_id)
            return post.to_dict() if post else None

    async def update(
        self,
        post_id: int,
        title: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Update the given fields; omitted fields keep their value."""
        async with self.session() as session:
            post = await session.get(Post, post_id)
            if post is None:
                return None
            if title is not None:
                post.title = title
            if content is not None:
                post.content = content
            post.updated_at = datetime.utcnow()
            await session.flush()
            return post.to_dict()

    async def delete(self, post_id: int) -> bool:
        async with self.session() as session:
            post = await session.get(Post, post_id)
            if post is None:
                return False
            await session.delete(post)
            return True

    async def list_by_author(self, author: str) -> List[Dict[str, Any]]:
        """Posts by one author, newest first."""
        async with self.session() as session:
            result = await session.execute(
                select(Post).where(Post.author == author).order_by(Post.created_at.desc(), Post.id.desc())
            )
            return [post.to_dict() for post in result.scalars()]

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Source store ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.engine.dispose()
