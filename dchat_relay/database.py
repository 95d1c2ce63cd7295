"""
Graph storage for a relay peer.

Uses SQLAlchemy with SQLite. Each node is addressed by its full path and
remembers its parent so a path's children can be listed. Writes are last
write wins; values are opaque JSON (ciphertext for chat traffic).
"""

import json
from datetime import datetime
from typing import Any, List, Optional, Tuple
from sqlalchemy import Column, DateTime, String, Text, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Node(Base):
    """A single path in the graph"""
    __tablename__ = "nodes"

    path = Column(String(512), primary_key=True)
    parent = Column(String(512), index=True, nullable=False)
    key = Column(String(255), nullable=False)
    value = Column(Text, nullable=False)  # JSON
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


def split_path(path: str) -> Tuple[str, str]:
    parent, _, key = path.strip("/").rpartition("/")
    return parent, key


class GraphStore:
    """Graph store for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./relay.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def put(self, path: str, value: Any) -> Tuple[str, str]:
        """
        Store a value at a path, replacing any previous value.

        Args:
            path: Slash-separated path with at least two segments
            value: JSON-serializable value

        Returns:
            Tuple of (parent, key) for subscriber fan-out
        """
        path = path.strip("/")
        parent, key = split_path(path)
        if not parent or not key:
            raise ValueError("Path needs a parent and a key")

        async with self.async_session() as session:
            node = await session.get(Node, path)
            if node:
                node.value = json.dumps(value)
                node.updated_at = datetime.utcnow()
            else:
                session.add(Node(path=path, parent=parent, key=key, value=json.dumps(value)))
            await session.commit()
        return parent, key

    async def get(self, path: str) -> Optional[Any]:
        """
        Read a path.

        Returns:
            The leaf value, a {key: value} map of children, or None
        """
        path = path.strip("/")
        async with self.async_session() as session:
            node = await session.get(Node, path)
            if node:
                return json.loads(node.value)

        children = await self.children(path)
        if children:
            return {key: value for key, value in children}
        return None

    async def children(self, parent: str) -> List[Tuple[str, Any]]:
        """List (key, value) pairs under a path, least recently updated first"""
        async with self.async_session() as session:
            result = await session.execute(
                select(Node.key, Node.value)
                .where(Node.parent == parent.strip("/"))
                .order_by(Node.updated_at, Node.key)
            )
            return [(key, json.loads(value)) for key, value in result.all()]
