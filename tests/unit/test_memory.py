import pytest

from ledgerflow.agents.memory import (
    MAX_EVIDENCE,
    MAX_LEARNED_CONFIDENCE,
    InMemoryMemoryStore,
    LearningService,
    score_memories,
)
from ledgerflow.agents.models import AgentRecommendation, Memory, MemoryScope


def memory(memory_id, scope, confidence, entity_key=None, usage_count=0, **extra):
    return Memory(
        id=memory_id,
        organization_id=extra.pop("organization_id", "org-1"),
        agent_definition_id="agent-1",
        scope=scope,
        entity_key=entity_key,
        confidence=confidence,
        usage_count=usage_count,
        **extra,
    )


def recommendation(category, reason, confidence=0.7, index=0):
    return AgentRecommendation(
        exception_index=index, category=category, reason=reason, confidence=confidence
    )


def test_score_memories_ranks_entity_hits_first():
    memories = [
        memory("p1", MemoryScope.PATTERN, 0.9),
        memory("e1", MemoryScope.ENTITY, 0.6, entity_key="ACME Corp"),
        memory("e2", MemoryScope.ENTITY, 0.99, entity_key="Other Inc"),
        memory("low", MemoryScope.PATTERN, 0.3),
    ]

    ranked = score_memories(memories, ["acme corp"], max_memories=10, confidence_floor=0.5)

    assert [m.id for m in ranked] == ["e1", "p1"]
    assert ranked[0].relevance_score == pytest.approx(1.1)


def test_score_memories_caps_and_breaks_ties_by_id():
    memories = [memory(f"m{i}", MemoryScope.CONFIG, 0.8) for i in (3, 1, 2)]

    ranked = score_memories(memories, [], max_memories=2, confidence_floor=0.5)

    assert [m.id for m in ranked] == ["m1", "m2"]


@pytest.mark.asyncio
async def test_store_retrieve_is_scoped_to_org_and_agent():
    store = InMemoryMemoryStore()
    await store.save_memory(memory("mine", MemoryScope.PATTERN, 0.8))
    await store.save_memory(memory("theirs", MemoryScope.PATTERN, 0.8, organization_id="org-2"))

    found = await store.retrieve("org-1", "agent-1", [], 10, 0.5)

    assert [m.id for m in found] == ["mine"]


@pytest.mark.asyncio
async def test_distill_creates_one_memory_per_category():
    store = InMemoryMemoryStore()
    learning = LearningService(store)

    created, updated = await learning.distill(
        "org-1",
        "agent-1",
        [
            recommendation("bank_fee", "Monthly fee", 0.7),
            recommendation("bank_fee", "Wire fee", 0.99, index=1),
            recommendation("timing_difference", "Posted next day", 0.6, index=2),
        ],
    )

    assert (created, updated) == (2, 0)
    fee = await store.find_memory("org-1", "agent-1", MemoryScope.PATTERN, category="bank_fee")
    assert fee.content["evidence"] == ["Monthly fee", "Wire fee"]
    assert fee.confidence == MAX_LEARNED_CONFIDENCE


@pytest.mark.asyncio
async def test_distill_reinforces_existing_memory():
    store = InMemoryMemoryStore()
    learning = LearningService(store)
    await learning.distill("org-1", "agent-1", [recommendation("bank_fee", "first", 0.6)])

    for i in range(MAX_EVIDENCE + 2):
        created, updated = await learning.distill(
            "org-1", "agent-1", [recommendation("bank_fee", f"again {i}", 0.6)]
        )

    assert (created, updated) == (0, 1)
    [stored] = store.memories.values()
    assert len(stored.content["evidence"]) == MAX_EVIDENCE
    assert stored.content["evidence"][-1] == f"again {MAX_EVIDENCE + 1}"
    assert stored.usage_count == MAX_EVIDENCE + 2
    assert stored.confidence == MAX_LEARNED_CONFIDENCE


@pytest.mark.asyncio
async def test_distill_without_recommendations_is_a_no_op():
    store = InMemoryMemoryStore()

    assert await LearningService(store).distill("org-1", "agent-1", []) == (0, 0)
    assert store.memories == {}
