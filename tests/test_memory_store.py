"""
Tests for the Memory Store
==========================
Storing with validation, retrieval ordering and filters, deletion,
pruning, and the content embedder behind it.
"""

import math
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from hypermnemo.core.config import EmbeddingConfig
from hypermnemo.core.embedding import ContentEmbedder, tokenize
from hypermnemo.core.exceptions import (
    DuplicateIdError,
    MemoryNotFoundError,
    MetadataValidationError,
    ValidationError,
)
from hypermnemo.core.memory_model import EntryState, MemoryTier
from hypermnemo.core.memory_store import MemoryDraft, MemoryQuery

T0 = datetime(2020, 1, 1, tzinfo=timezone.utc)


def memory(content="The build pipeline failed on Tuesday", tier="episodic", **extra):
    entry = {"tier": tier, "content": content}
    entry.update(extra)
    return entry


class TestContentEmbedder:

    @pytest.fixture
    def embedder(self):
        return ContentEmbedder(EmbeddingConfig(), dimension=16)

    def test_tokenize(self):
        assert tokenize("Hello, World! hello_there 42") == ["hello", "world", "hello_there", "42"]

    def test_identical_inputs_identical_points(self, embedder):
        a = embedder.embed("same words here", {"project": "x"})
        b = embedder.embed("same words here", {"project": "x"})
        assert np.array_equal(a, b)

    def test_context_moves_the_point(self, embedder):
        a = embedder.embed("same words here", {"project": "x"})
        b = embedder.embed("same words here", {"project": "y"})
        assert not np.array_equal(a, b)

    def test_radius_grows_with_vocabulary_up_to_cap(self, embedder):
        short = np.linalg.norm(embedder.embed("one"))
        longer = np.linalg.norm(embedder.embed("one two three four five"))
        huge = np.linalg.norm(embedder.embed(" ".join(f"w{i}" for i in range(500))))
        assert short == pytest.approx(0.45 + 0.15 * math.log1p(1))
        assert longer > short
        assert huge == pytest.approx(0.95)

    def test_punctuation_only_payload(self, embedder):
        point = embedder.embed("?!...")
        assert np.all(np.isfinite(point))
        assert 0 < np.linalg.norm(point) < 1

    def test_json_payload_is_key_order_independent(self, embedder):
        a = embedder.embed({"b": 1, "a": [1, 2]})
        b = embedder.embed({"a": [1, 2], "b": 1})
        assert np.array_equal(a, b)


class TestStoreMemory:

    @pytest.mark.asyncio
    async def test_store_and_get(self, engine):
        memory_id = await engine.store_memory(memory(metadata={"importance": 0.7, "tags": ["ci"]}))
        entry = await engine.get_memory(memory_id)
        assert entry.tier is MemoryTier.EPISODIC
        assert entry.state is EntryState.ACTIVE
        assert entry.metadata.importance == 0.7
        assert entry.metadata.tags == ["ci"]
        assert np.linalg.norm(entry.embedding) < 1.0
        assert entry.read_content() == "The build pipeline failed on Tuesday"

    @pytest.mark.asyncio
    async def test_type_is_an_alias_for_tier(self, engine):
        memory_id = await engine.store_memory({"type": "procedural", "content": "git rebase -i"})
        assert (await engine.get_memory(memory_id)).tier is MemoryTier.PROCEDURAL

    @pytest.mark.asyncio
    async def test_store_draft_object(self, engine):
        memory_id = await engine.store_memory(
            MemoryDraft(tier=MemoryTier.META, content={"rule": "be brief"}, id="meta-1")
        )
        assert memory_id == "meta-1"
        assert (await engine.get_memory("meta-1")).read_content() == {"rule": "be brief"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [
        {"tier": "dreams", "content": "x"},
        {"tier": "episodic", "content": None},
        {"tier": "episodic", "content": ""},
        {"tier": "episodic", "content": {}},
        {"content": "no tier"},
        {"tier": "episodic"},
        {"tier": "episodic", "content": {"obj": object()}},
    ])
    async def test_invalid_entries(self, engine, bad):
        with pytest.raises(ValidationError):
            await engine.store_memory(bad)
        assert (await engine.stats())["index_size"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,value", [
        ("importance", 1.5),
        ("confidence", -0.1),
        ("quality", float("nan")),
        ("importance", True),
        ("confidence", "high"),
    ])
    async def test_invalid_scores(self, engine, field, value):
        with pytest.raises(MetadataValidationError):
            await engine.store_memory(memory(metadata={field: value}))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("metadata", [
        {"extensions": {"scores": {1: 0.5}}},
        {"extensions": {"v": float("nan")}},
        {"context": {"k": {1: "a"}}},
        {"context": {"seen": {"a", "b"}}},
        {"context": "kitchen"},
    ])
    async def test_context_and_extensions_must_be_plain_json(self, engine, metadata):
        with pytest.raises(MetadataValidationError):
            await engine.store_memory(memory(metadata=metadata))
        assert (await engine.stats())["index_size"] == 0

    @pytest.mark.asyncio
    async def test_nested_context_accepted(self, engine):
        context = {"room": "lab", "people": ["ana", "li"], "scores": {"1": 0.5}}
        memory_id = await engine.store_memory(memory(metadata={"context": context}))
        assert (await engine.get_memory(memory_id)).metadata.context == context

    @pytest.mark.asyncio
    async def test_boundary_scores_accepted(self, engine):
        memory_id = await engine.store_memory(
            memory(metadata={"importance": 0, "confidence": 1, "quality": 1.0})
        )
        entry = await engine.get_memory(memory_id)
        assert entry.metadata.importance == 0.0
        assert entry.metadata.confidence == 1.0

    @pytest.mark.asyncio
    async def test_duplicate_explicit_id(self, engine):
        await engine.store_memory(memory(id="m1"))
        with pytest.raises(DuplicateIdError):
            await engine.store_memory(memory(id="m1", content="other"))
        assert (await engine.stats())["memories"]["episodic"] == 1

    @pytest.mark.asyncio
    async def test_naive_timestamp_rejected(self, engine):
        with pytest.raises(ValidationError):
            await engine.store_memory(memory(created_at=datetime(2026, 1, 1)))


class TestRetrieveMemory:

    @pytest.mark.asyncio
    async def test_reverse_chronological_by_default(self, engine):
        for i in range(3):
            await engine.store_memory(memory(content=f"event {i}", id=f"e{i}",
                                             created_at=T0 + timedelta(minutes=i)))
        results = await engine.retrieve_memory()
        assert [e.id for e in results] == ["e2", "e1", "e0"]

    @pytest.mark.asyncio
    async def test_tier_filter_and_alias(self, engine):
        await engine.store_memory(memory(id="ep"))
        await engine.store_memory(memory(id="sem", tier="semantic", content="Water boils at 100C"))
        assert [e.id for e in await engine.retrieve_memory({"tier": "semantic"})] == ["sem"]
        assert [e.id for e in await engine.retrieve_memory({"type": "episodic"})] == ["ep"]

    @pytest.mark.asyncio
    async def test_query_text_ranks_by_proximity(self, engine):
        await engine.store_memory(memory(id="cats", content="cats purr and chase mice"))
        await engine.store_memory(memory(id="rust", content="the borrow checker rejects aliasing"))
        await engine.store_memory(memory(id="tea", content="green tea steeps for two minutes"))
        results = await engine.retrieve_memory(
            MemoryQuery(query_text="the borrow checker rejects aliasing")
        )
        assert results[0].id == "rust"
        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_query_point_ranks_by_proximity(self, engine):
        target = await engine.store_memory(memory(id="target", content="alpha beta gamma"))
        await engine.store_memory(memory(id="other", content="completely unrelated words"))
        point = (await engine.get_memory(target)).embedding
        results = await engine.retrieve_memory({"query_point": list(point), "limit": 1})
        assert [e.id for e in results] == ["target"]

    @pytest.mark.asyncio
    async def test_bad_query_point(self, engine):
        with pytest.raises(ValidationError):
            await engine.retrieve_memory({"query_point": [0.1, 0.2]})

    @pytest.mark.asyncio
    async def test_substring_and_tags(self, engine):
        await engine.store_memory(memory(id="a", content="Deploy FAILED at noon",
                                         metadata={"tags": ["ops", "prod"]}))
        await engine.store_memory(memory(id="b", content="deploy succeeded",
                                         metadata={"tags": ["ops"]}))
        await engine.store_memory(memory(id="c", content="lunch at noon"))

        found = await engine.retrieve_memory({"content_substring": "deploy"})
        assert sorted(e.id for e in found) == ["a", "b"]
        tagged = await engine.retrieve_memory({"tags": ["ops", "prod"]})
        assert [e.id for e in tagged] == ["a"]

    @pytest.mark.asyncio
    async def test_limit(self, engine):
        for i in range(5):
            await engine.store_memory(memory(content=f"note {i}"))
        assert len(await engine.retrieve_memory({"limit": 2})) == 2
        assert await engine.retrieve_memory({"limit": 0}) == []
        with pytest.raises(ValidationError):
            await engine.retrieve_memory({"limit": -1})

    @pytest.mark.asyncio
    async def test_unknown_query_field(self, engine):
        with pytest.raises(ValidationError):
            await engine.retrieve_memory({"sort": "asc"})

    @pytest.mark.asyncio
    async def test_retrieval_refreshes_last_accessed(self, engine):
        memory_id = await engine.store_memory(memory(created_at=T0))
        [entry] = await engine.retrieve_memory()
        assert entry.last_accessed > T0
        state = await engine.get_state()
        assert state.find_memory(memory_id).last_accessed == entry.last_accessed

    @pytest.mark.asyncio
    async def test_results_are_copies(self, engine):
        memory_id = await engine.store_memory(memory())
        [entry] = await engine.retrieve_memory()
        entry.metadata.tags.append("mutated")
        assert (await engine.get_memory(memory_id)).metadata.tags == []


class TestDeleteAndPrune:

    @pytest.mark.asyncio
    async def test_delete_retires(self, engine):
        memory_id = await engine.store_memory(memory())
        await engine.delete_memory(memory_id)

        assert await engine.retrieve_memory() == []
        with pytest.raises(MemoryNotFoundError):
            await engine.get_memory(memory_id)
        with pytest.raises(MemoryNotFoundError):
            await engine.delete_memory(memory_id)
        state = await engine.get_state()
        assert state.find_memory(memory_id).state is EntryState.RETIRED
        assert (await engine.stats())["index_size"] == 0

    @pytest.mark.asyncio
    async def test_retired_id_cannot_be_reused(self, engine):
        await engine.store_memory(memory(id="once"))
        await engine.delete_memory("once")
        with pytest.raises(DuplicateIdError):
            await engine.store_memory(memory(id="once"))

    @pytest.mark.asyncio
    async def test_prune_by_importance(self, engine):
        await engine.store_memory(memory(id="low", metadata={"importance": 0.1}))
        await engine.store_memory(memory(id="high", content="keep me", metadata={"importance": 0.9}))
        retired = await engine.prune_memory(min_importance=0.5)
        assert retired == ["low"]
        assert [e.id for e in await engine.retrieve_memory()] == ["high"]

    @pytest.mark.asyncio
    async def test_prune_by_age_within_tier(self, engine):
        old = datetime.now(timezone.utc) - timedelta(days=10)
        await engine.store_memory(memory(id="old-ep", created_at=old))
        await engine.store_memory(memory(id="old-sem", tier="semantic", created_at=old))
        await engine.store_memory(memory(id="new-ep", content="fresh"))
        retired = await engine.prune_memory(tier="episodic", max_age_seconds=86400)
        assert retired == ["old-ep"]
        assert (await engine.get_memory("old-sem")).id == "old-sem"

    @pytest.mark.asyncio
    async def test_prune_needs_a_criterion(self, engine):
        with pytest.raises(ValidationError):
            await engine.prune_memory()
