"""
Memory service - persistence for durable user memories.

Upsert-by-content relies on an existence check before insert. Two racing
observations of the same content can still produce a duplicate row; that
is tolerated.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Memory, MemoryKind
from app.services.memory_extractor import MemoryCandidate

logger = logging.getLogger(__name__)


class MemoryService:
    """Service for managing user memories"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(
        self,
        user_id: str,
        content: str,
        kind: Optional[MemoryKind] = None,
        source: Optional[str] = None,
    ) -> Memory:
        """
        Insert a memory, or refresh the existing one with identical content.

        A repeat observation updates kind/source/updated_at to the latest
        call's values instead of creating a second row.
        """
        result = await self.db.execute(
            select(Memory)
            .where(Memory.user_id == user_id, Memory.content == content)
            .limit(1)
        )
        existing = result.scalar_one_or_none()

        if existing:
            if kind is not None:
                existing.kind = MemoryKind(kind).value
            existing.source = source
            existing.updated_at = datetime.utcnow()
            await self.db.commit()
            return existing

        memory = Memory(
            user_id=user_id,
            content=content,
            kind=MemoryKind(kind).value if kind is not None else MemoryKind.NOTE.value,
            source=source,
        )
        self.db.add(memory)
        await self.db.commit()
        return memory

    async def save_candidates(self, user_id: str, candidates: List[MemoryCandidate]) -> int:
        for candidate in candidates:
            await self.save(user_id, candidate.content, candidate.kind, candidate.source)
        if candidates:
            logger.info(f"Saved {len(candidates)} memories for user {user_id}")
        return len(candidates)

    async def recent(self, user_id: str, limit: int = 10) -> List[Memory]:
        """Most recently refreshed memories first."""
        result = await self.db.execute(
            select(Memory)
            .where(Memory.user_id == user_id)
            .order_by(Memory.updated_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def delete(self, memory_id: str, user_id: str) -> bool:
        result = await self.db.execute(
            delete(Memory).where(Memory.id == memory_id, Memory.user_id == user_id)
        )
        await self.db.commit()
        return result.rowcount > 0
