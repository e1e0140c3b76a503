"""
Tests for Memory Compression
============================
Eligibility per tier policy, payload round trips per codec, lossy levels,
no-op on incompressible payloads, and non-fatal rejection of bad settings.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from hypermnemo.core.compression import (
    collapse_whitespace,
    decompress_payload,
    encode_content,
)
from hypermnemo.core.config import (
    TIER_NAMES,
    CompressionConfig,
    HyperMnemoConfig,
    IndexConfig,
    TierPolicy,
)
from hypermnemo.core.engine import HyperMnemoEngine
from hypermnemo.core.exceptions import DataCorruptionError
from hypermnemo.core.memory_model import CompressionInfo, EntryState

LONG_TEXT = "Incident log: the cache node restarted and replayed its journal. " * 40
OLD = datetime.now(timezone.utc) - timedelta(days=90)


@pytest.fixture
def compress_config():
    tiers = {name: TierPolicy() for name in TIER_NAMES}
    tiers["episodic"] = TierPolicy(compression_age_seconds=30 * 86400)
    tiers["working"] = TierPolicy(compression_threshold=2)
    return HyperMnemoConfig(index=IndexConfig(dimension=16), tiers=tiers)


@pytest.fixture
def compress_engine(compress_config):
    return HyperMnemoEngine(config=compress_config)


class TestCodecs:

    @pytest.mark.parametrize("algorithm", ["zlib", "gzip", "lzma"])
    def test_text_round_trip(self, algorithm):
        payload, info = encode_content(LONG_TEXT, algorithm, 6, lossy_level=7)
        assert info.compressed_size == len(payload) < info.original_size
        assert info.content_kind == "text"
        assert not info.lossy
        assert decompress_payload(payload, info) == LONG_TEXT

    def test_json_round_trip(self):
        content = {"steps": ["checkout", "build", "test"] * 20, "owner": "ci"}
        payload, info = encode_content(content, "zlib", 9, lossy_level=7)
        assert info.content_kind == "json"
        assert not info.lossy
        assert decompress_payload(payload, info) == content

    def test_lossy_level_collapses_whitespace(self):
        text = "line one\n\n\n    line    two\t\tend   " * 10
        payload, info = encode_content(text, "zlib", 8, lossy_level=7)
        assert info.lossy
        assert decompress_payload(payload, info) == collapse_whitespace(text)

    def test_gzip_output_is_reproducible(self):
        first, _ = encode_content(LONG_TEXT, "gzip", 6, lossy_level=7)
        second, _ = encode_content(LONG_TEXT, "gzip", 6, lossy_level=7)
        assert first == second

    def test_corrupt_payload(self):
        info = CompressionInfo(algorithm="zlib", level=6, original_size=10, compressed_size=4)
        with pytest.raises(DataCorruptionError):
            decompress_payload(b"nope", info)

    def test_ratio(self):
        info = CompressionInfo(algorithm="zlib", level=6, original_size=100, compressed_size=25)
        assert info.ratio == 4.0


class TestCompressMemory:

    @pytest.mark.asyncio
    async def test_old_entries_compress(self, compress_engine):
        memory_id = await compress_engine.store_memory(
            {"tier": "episodic", "content": LONG_TEXT, "created_at": OLD}
        )
        fresh_id = await compress_engine.store_memory({"tier": "episodic", "content": LONG_TEXT + "!"})
        before = (await compress_engine.get_memory(memory_id)).embedding

        report = await compress_engine.compress_memory()
        assert report.compressed == 1
        assert report.entry_ids == [memory_id]
        assert report.ratio > 1.0
        assert report.error is None

        entry = await compress_engine.get_memory(memory_id)
        assert entry.state is EntryState.COMPRESSED
        assert entry.content is None
        assert entry.read_content() == LONG_TEXT
        assert entry.compression.algorithm == "zlib"
        assert np.array_equal(entry.embedding, before)
        assert (await compress_engine.get_memory(fresh_id)).state is EntryState.ACTIVE

    @pytest.mark.asyncio
    async def test_crossing_threshold_compresses_automatically(self, compress_engine):
        for i in range(2):
            await compress_engine.store_memory({"tier": "working", "content": f"{i} {LONG_TEXT}"})
        assert (await compress_engine.stats())["memories_by_state"] == {"active": 2}

        await compress_engine.store_memory({"tier": "working", "content": f"2 {LONG_TEXT}"})
        stats = await compress_engine.stats()
        assert stats["memories_by_state"] == {"compressed": 3}
        assert stats["memories"]["working"] == 3

        # Later stores into the crowded tier are compressed as they arrive
        await compress_engine.store_memory({"tier": "working", "content": f"3 {LONG_TEXT}"})
        assert (await compress_engine.stats())["memories_by_state"] == {"compressed": 4}
        assert (await compress_engine.compress_memory("working")).compressed == 0

    @pytest.mark.asyncio
    async def test_disabled_compression_skips_trigger(self, compress_config):
        engine = HyperMnemoEngine(
            config=replace(compress_config, compression=CompressionConfig(enabled=False))
        )
        for i in range(3):
            await engine.store_memory({"tier": "working", "content": f"{i} {LONG_TEXT}"})
        assert (await engine.stats())["memories_by_state"] == {"active": 3}

        report = await engine.compress_memory("working")
        assert report.compressed == 3
        assert report.tiers == ["working"]

    @pytest.mark.asyncio
    async def test_automatic_pass_ignores_other_tiers(self, compress_engine):
        old_id = await compress_engine.store_memory(
            {"tier": "episodic", "content": LONG_TEXT, "created_at": OLD}
        )
        for i in range(3):
            await compress_engine.store_memory({"tier": "working", "content": f"{i} {LONG_TEXT}"})
        assert (await compress_engine.get_memory(old_id)).state is EntryState.ACTIVE

    @pytest.mark.asyncio
    async def test_tier_at_threshold_is_not_crowded(self, compress_engine):
        for i in range(2):
            await compress_engine.store_memory({"tier": "working", "content": f"{i} {LONG_TEXT}"})
        report = await compress_engine.compress_memory("working")
        assert report.compressed == 0
        assert report.ratio == 1.0

    @pytest.mark.asyncio
    async def test_incompressible_payload_is_untouched(self, compress_engine):
        memory_id = await compress_engine.store_memory(
            {"tier": "episodic", "content": "a", "created_at": OLD}
        )
        report = await compress_engine.compress_memory("episodic")
        assert report.compressed == 0
        assert report.skipped == 1
        assert report.ratio == 1.0
        entry = await compress_engine.get_memory(memory_id)
        assert entry.state is EntryState.ACTIVE
        assert entry.content == "a"

    @pytest.mark.asyncio
    async def test_second_pass_skips_compressed_entries(self, compress_engine):
        await compress_engine.store_memory({"tier": "episodic", "content": LONG_TEXT, "created_at": OLD})
        assert (await compress_engine.compress_memory()).compressed == 1
        assert (await compress_engine.compress_memory()).compressed == 0

    @pytest.mark.asyncio
    async def test_algorithm_and_level_override(self, compress_engine):
        memory_id = await compress_engine.store_memory(
            {"tier": "episodic", "content": {"log": [LONG_TEXT]}, "created_at": OLD}
        )
        report = await compress_engine.compress_memory(algorithm="lzma", level=9)
        assert report.algorithm == "lzma"
        entry = await compress_engine.get_memory(memory_id)
        assert entry.compression.algorithm == "lzma"
        assert entry.compression.level == 9
        assert entry.read_content() == {"log": [LONG_TEXT]}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"algorithm": "brotli"},
        {"level": 10},
        {"level": -1},
    ])
    async def test_bad_settings_are_reported(self, compress_engine, kwargs):
        memory_id = await compress_engine.store_memory(
            {"tier": "episodic", "content": LONG_TEXT, "created_at": OLD}
        )
        report = await compress_engine.compress_memory(**kwargs)
        assert report.compressed == 0
        assert report.ratio == 1.0
        assert report.error["code"] == "COMPRESSION_ERROR"
        assert (await compress_engine.get_memory(memory_id)).state is EntryState.ACTIVE

    @pytest.mark.asyncio
    async def test_compressed_entries_stay_searchable(self, compress_engine):
        memory_id = await compress_engine.store_memory(
            {"tier": "episodic", "content": LONG_TEXT, "created_at": OLD}
        )
        await compress_engine.compress_memory()
        found = await compress_engine.retrieve_memory({"content_substring": "replayed its journal"})
        assert [e.id for e in found] == [memory_id]
        ranked = await compress_engine.retrieve_memory({"query_text": LONG_TEXT, "limit": 1})
        assert [e.id for e in ranked] == [memory_id]

    @pytest.mark.asyncio
    async def test_consolidated_entries_are_eligible(self, compress_config):
        engine = HyperMnemoEngine(
            config=replace(compress_config, compression=CompressionConfig(enabled=False, level=9))
        )
        for _ in range(2):
            await engine.store_memory({"tier": "working", "content": LONG_TEXT})
        await engine.consolidate_memory("working")
        await engine.store_memory({"tier": "working", "content": "x " + LONG_TEXT})
        await engine.store_memory({"tier": "working", "content": "y " + LONG_TEXT})

        report = await engine.compress_memory("working")
        assert report.compressed == 3
        states = {e.state for e in await engine.retrieve_memory({"tier": "working"})}
        assert states == {EntryState.COMPRESSED}
