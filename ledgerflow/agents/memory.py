"""Memory retrieval and lesson distillation for agent executions."""

from __future__ import annotations

import logging
import uuid
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from sqlalchemy import select
from sqlmodel import col

from ..db import AgentMemoryRow, Database, ExecutionMetricsRow
from ..utils.clock import ensure_utc, utcnow
from .models import (
    AgentRecommendation,
    ExecutionMetrics,
    LearningLesson,
    Memory,
    MemoryScope,
)

logger = logging.getLogger(__name__)

MAX_EVIDENCE = 10
MAX_LEARNED_CONFIDENCE = 0.95


class MemoryStore(Protocol):
    async def retrieve(
        self,
        organization_id: str,
        agent_definition_id: str,
        entity_keys: Sequence[str],
        max_memories: int,
        confidence_floor: float,
    ) -> List[Memory]:
        """Return the most relevant memories above ``confidence_floor``."""

    async def find_memory(
        self,
        organization_id: str,
        agent_definition_id: str,
        scope: MemoryScope,
        category: Optional[str] = None,
        entity_key: Optional[str] = None,
    ) -> Optional[Memory]:
        """Return the memory stored under a scope/category/entity key."""

    async def save_memory(self, memory: Memory) -> None:
        """Insert or replace a memory."""

    async def save_metrics(self, metrics: ExecutionMetrics) -> None:
        """Persist aggregate metrics of a finished execution."""


def score_memories(
    memories: Iterable[Memory],
    entity_keys: Sequence[str],
    max_memories: int,
    confidence_floor: float,
) -> List[Memory]:
    """Rank memories for an execution.

    Entity memories only count when their key is among ``entity_keys``;
    pattern and config memories always qualify. Relevance is the confidence,
    boosted for entity hits and slightly for frequently used memories.
    """
    wanted = {key.lower() for key in entity_keys}
    ranked: List[Memory] = []
    for memory in memories:
        if memory.confidence < confidence_floor:
            continue
        entity_hit = bool(memory.entity_key) and memory.entity_key.lower() in wanted
        if memory.scope == MemoryScope.ENTITY and not entity_hit:
            continue
        score = memory.confidence + (0.5 if entity_hit else 0.0)
        score += min(memory.usage_count, 10) * 0.01
        ranked.append(memory.model_copy(update={"relevance_score": round(score, 4)}))
    ranked.sort(key=lambda m: (-m.relevance_score, m.id))
    return ranked[:max_memories]


class InMemoryMemoryStore:
    def __init__(self) -> None:
        self.memories: Dict[str, Memory] = {}
        self.metrics: Dict[str, ExecutionMetrics] = {}

    async def retrieve(
        self,
        organization_id: str,
        agent_definition_id: str,
        entity_keys: Sequence[str],
        max_memories: int,
        confidence_floor: float,
    ) -> List[Memory]:
        candidates = [
            m
            for m in self.memories.values()
            if m.organization_id == organization_id
            and m.agent_definition_id == agent_definition_id
        ]
        return score_memories(candidates, entity_keys, max_memories, confidence_floor)

    async def find_memory(
        self,
        organization_id: str,
        agent_definition_id: str,
        scope: MemoryScope,
        category: Optional[str] = None,
        entity_key: Optional[str] = None,
    ) -> Optional[Memory]:
        for memory in self.memories.values():
            if (
                memory.organization_id == organization_id
                and memory.agent_definition_id == agent_definition_id
                and memory.scope == scope
                and memory.category == category
                and memory.entity_key == entity_key
            ):
                return memory.model_copy(deep=True)
        return None

    async def save_memory(self, memory: Memory) -> None:
        self.memories[memory.id] = memory.model_copy(deep=True)

    async def save_metrics(self, metrics: ExecutionMetrics) -> None:
        self.metrics[metrics.execution_id] = metrics


def _memory_from_row(row: AgentMemoryRow) -> Memory:
    return Memory(
        id=row.id,
        organization_id=row.organization_id,
        agent_definition_id=row.agent_definition_id,
        scope=MemoryScope(row.scope),
        entity_key=row.entity_key,
        category=row.category,
        content=row.content or {},
        confidence=row.confidence,
        usage_count=row.usage_count,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
    )


class SQLMemoryStore:
    """Memories and metrics stored in the ``agent_memories`` and
    ``agent_execution_metrics`` tables."""

    def __init__(self, database: Database | str) -> None:
        self._db = database if isinstance(database, Database) else Database(database)

    async def retrieve(
        self,
        organization_id: str,
        agent_definition_id: str,
        entity_keys: Sequence[str],
        max_memories: int,
        confidence_floor: float,
    ) -> List[Memory]:
        statement = select(AgentMemoryRow).where(
            col(AgentMemoryRow.organization_id) == organization_id,
            col(AgentMemoryRow.agent_definition_id) == agent_definition_id,
            col(AgentMemoryRow.confidence) >= confidence_floor,
        )
        async with self._db.session() as session:
            rows = (await session.execute(statement)).scalars().all()
        return score_memories(
            [_memory_from_row(row) for row in rows],
            entity_keys,
            max_memories,
            confidence_floor,
        )

    async def find_memory(
        self,
        organization_id: str,
        agent_definition_id: str,
        scope: MemoryScope,
        category: Optional[str] = None,
        entity_key: Optional[str] = None,
    ) -> Optional[Memory]:
        statement = select(AgentMemoryRow).where(
            col(AgentMemoryRow.organization_id) == organization_id,
            col(AgentMemoryRow.agent_definition_id) == agent_definition_id,
            col(AgentMemoryRow.scope) == scope.value,
            col(AgentMemoryRow.category) == category
            if category is not None
            else col(AgentMemoryRow.category).is_(None),
            col(AgentMemoryRow.entity_key) == entity_key
            if entity_key is not None
            else col(AgentMemoryRow.entity_key).is_(None),
        )
        async with self._db.session() as session:
            row = (await session.execute(statement)).scalars().first()
        return _memory_from_row(row) if row else None

    async def save_memory(self, memory: Memory) -> None:
        row = AgentMemoryRow(
            id=memory.id,
            organization_id=memory.organization_id,
            agent_definition_id=memory.agent_definition_id,
            scope=memory.scope.value,
            entity_key=memory.entity_key,
            category=memory.category,
            content=memory.content,
            confidence=memory.confidence,
            usage_count=memory.usage_count,
            created_at=memory.created_at,
            updated_at=memory.updated_at,
        )
        async with self._db.session() as session:
            await session.merge(row)
            await session.commit()

    async def save_metrics(self, metrics: ExecutionMetrics) -> None:
        row = ExecutionMetricsRow(**metrics.model_dump(mode="json"))
        async with self._db.session() as session:
            await session.merge(row)
            await session.commit()


class LearningService:
    """Turns an execution's recommendations into pattern memories."""

    def __init__(self, store: MemoryStore) -> None:
        self._store = store

    def lessons_from(
        self, recommendations: Sequence[AgentRecommendation]
    ) -> List[LearningLesson]:
        lessons: Dict[str, LearningLesson] = {}
        for rec in recommendations:
            lesson = lessons.get(rec.category)
            if lesson is None:
                lessons[rec.category] = LearningLesson(
                    scope=MemoryScope.PATTERN,
                    category=rec.category,
                    content={
                        "description": f"Exceptions of this kind resolve as {rec.category}",
                        "evidence": [rec.reason],
                    },
                    confidence=rec.confidence,
                )
            else:
                lesson.content["evidence"].append(rec.reason)
                lesson.confidence = max(lesson.confidence, rec.confidence)
        return list(lessons.values())

    async def distill(
        self,
        organization_id: str,
        agent_definition_id: str,
        recommendations: Sequence[AgentRecommendation],
    ) -> Tuple[int, int]:
        """Create or reinforce memories; returns ``(created, updated)``."""
        created = updated = 0
        for lesson in self.lessons_from(recommendations):
            existing = await self._store.find_memory(
                organization_id,
                agent_definition_id,
                lesson.scope,
                category=lesson.category,
                entity_key=lesson.entity_key,
            )
            if existing is None:
                await self._store.save_memory(
                    Memory(
                        id=str(uuid.uuid4()),
                        organization_id=organization_id,
                        agent_definition_id=agent_definition_id,
                        scope=lesson.scope,
                        entity_key=lesson.entity_key,
                        category=lesson.category,
                        content=lesson.content,
                        confidence=min(lesson.confidence, MAX_LEARNED_CONFIDENCE),
                    )
                )
                created += 1
                continue

            evidence = list(existing.content.get("evidence", []))
            evidence.extend(lesson.content.get("evidence", []))
            existing.content = {**existing.content, "evidence": evidence[-MAX_EVIDENCE:]}
            existing.confidence = min(
                MAX_LEARNED_CONFIDENCE,
                max(existing.confidence, lesson.confidence) + 0.05,
            )
            existing.usage_count += 1
            existing.updated_at = utcnow()
            await self._store.save_memory(existing)
            updated += 1

        logger.info(
            f"Distilled {created} new and {updated} updated memories for agent {agent_definition_id}"
        )
        return created, updated
