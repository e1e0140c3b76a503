"""
Memory Store
============
Tiered memory entries over one SystemState, with their embeddings kept in
the shared hyperbolic index.

Every mutation checks its inputs, updates the index, then commits to the
state in straight-line synchronous code. A failure at any step before the
commit leaves both the index and the state untouched.
"""

from __future__ import annotations

import copy
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
from loguru import logger

from .config import HyperMnemoConfig
from .embedding import ContentEmbedder
from .exceptions import (
    DuplicateIdError,
    InvariantViolationError,
    MemoryNotFoundError,
    MetadataValidationError,
    ValidationError,
)
from .hyperbolic_index import HyperbolicIndex, validate_point
from .memory_model import (
    CompressionInfo,
    EntryState,
    MemoryEntry,
    MemoryMetadata,
    MemoryTier,
    SystemState,
    content_text,
    utcnow,
)
from .metrics import RETRIEVE_LATENCY, STORE_LATENCY, track_latency
from hypermnemo.utils import json_compat


def memory_key(memory_id: str) -> str:
    """Index key for a memory embedding."""
    return f"memory:{memory_id}"


def parse_tier(value: Any) -> MemoryTier:
    if isinstance(value, MemoryTier):
        return value
    try:
        return MemoryTier(value)
    except ValueError:
        raise ValidationError("tier", f"must be one of {[t.value for t in MemoryTier]}", value)


def _check_score(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MetadataValidationError(name, "must be a number", value)
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise MetadataValidationError(name, "must lie within [0, 1]", value)
    return float(value)


def build_metadata(raw: Union[MemoryMetadata, Mapping[str, Any], None]) -> MemoryMetadata:
    """Validate metadata given as a mapping or a MemoryMetadata."""
    if raw is None:
        return MemoryMetadata()
    if isinstance(raw, MemoryMetadata):
        raw = raw.to_dict()
    if not isinstance(raw, Mapping):
        raise MetadataValidationError("metadata", "must be a mapping", raw)
    for name in ("context", "extensions"):
        section = raw.get(name)
        if section is None:
            continue
        if not isinstance(section, Mapping):
            raise MetadataValidationError(name, "must be a mapping", section)
        # Must survive save_state unchanged
        if not json_compat.round_trips(dict(section)):
            raise MetadataValidationError(
                name, "must be plain JSON (string keys, finite numbers, lists)", section
            )

    metadata = MemoryMetadata.from_dict(raw)
    for name in MemoryMetadata.SCORE_FIELDS:
        setattr(metadata, name, _check_score(name, getattr(metadata, name)))
    if not isinstance(metadata.source, str):
        raise MetadataValidationError("source", "must be a string", metadata.source)
    if not all(isinstance(tag, str) for tag in metadata.tags):
        raise MetadataValidationError("tags", "must be a list of strings", metadata.tags)
    metadata.tags = list(dict.fromkeys(metadata.tags))
    return metadata


@dataclass
class MemoryDraft:
    """A memory to be stored. ``id`` and ``created_at`` are optional."""
    tier: Union[MemoryTier, str]
    content: Any
    metadata: Union[MemoryMetadata, Mapping[str, Any], None] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MemoryDraft":
        if not isinstance(data, Mapping):
            raise ValidationError("entry", "must be a mapping", data)
        tier = data.get("tier", data.get("type"))
        if tier is None:
            raise ValidationError("tier", "is required")
        if "content" not in data:
            raise ValidationError("content", "is required")
        return cls(
            tier=tier,
            content=data["content"],
            metadata=data.get("metadata"),
            id=data.get("id"),
            created_at=data.get("created_at"),
        )


@dataclass
class MemoryQuery:
    """
    Retrieval filter. ``query_point`` (or the embedding of ``query_text``)
    orders results by hyperbolic proximity; without either, newest first.
    """
    tier: Optional[Union[MemoryTier, str]] = None
    content_substring: Optional[str] = None
    limit: Optional[int] = None
    query_point: Optional[Sequence[float]] = None
    query_text: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MemoryQuery":
        data = dict(data)
        # "type" is accepted as an alias of "tier"
        if "type" in data:
            data.setdefault("tier", data.pop("type"))
        unknown = set(data) - {"tier", "content_substring", "limit", "query_point", "query_text", "tags"}
        if unknown:
            raise ValidationError("query", f"unknown fields {sorted(unknown)}")
        data["tags"] = list(data.get("tags") or [])
        return cls(**data)


class MemoryStore:
    """Memory operations over one SystemState."""

    def __init__(
        self,
        state: SystemState,
        index: HyperbolicIndex,
        embedder: ContentEmbedder,
        config: HyperMnemoConfig,
    ):
        self.state = state
        self.index = index
        self.embedder = embedder
        self.config = config

    # ---- Writes -------------------------------------------------- #

    @track_latency(STORE_LATENCY)
    def store(self, draft: Union[MemoryDraft, Mapping[str, Any]]) -> str:
        """
        Validate and store a memory; returns its id.

        Raises:
            ValidationError: unknown tier, missing payload, bad metadata.
            DuplicateIdError: explicit id already present.
        """
        if not isinstance(draft, MemoryDraft):
            draft = MemoryDraft.from_mapping(draft)

        tier = parse_tier(draft.tier)
        content = draft.content
        if content is None or (isinstance(content, (str, list, dict)) and not content):
            raise ValidationError("content", "payload must be present")
        if not isinstance(content, str):
            try:
                content_text(content)
            except (TypeError, ValueError) as exc:
                raise ValidationError("content", f"not JSON-compatible: {exc}")
        metadata = build_metadata(draft.metadata)

        memory_id = draft.id or str(uuid.uuid4())
        if not isinstance(memory_id, str):
            raise ValidationError("id", "must be a string", memory_id)
        if self.state.find_memory(memory_id) is not None:
            raise DuplicateIdError("MemoryEntry", memory_id)

        created_at = draft.created_at or utcnow()
        if not isinstance(created_at, datetime):
            raise ValidationError("created_at", "must be a datetime", created_at)
        if created_at.tzinfo is None:
            raise ValidationError("created_at", "must be timezone-aware", created_at)

        embedding = self.embedder.embed(content, metadata.context)
        entry = MemoryEntry(
            id=memory_id,
            tier=tier,
            content=copy.deepcopy(content),
            metadata=metadata,
            embedding=embedding,
            created_at=created_at,
            last_accessed=created_at,
        )
        self.index.insert(memory_key(memory_id), embedding)
        self.state.memories[tier][memory_id] = entry
        logger.debug(f"Stored memory {memory_id} in tier '{tier.value}'")
        return memory_id

    def delete(self, memory_id: str) -> None:
        """Retire a live memory and drop it from the index."""
        entry = self._require_live(memory_id)
        self.index.remove(memory_key(memory_id))
        entry.state = EntryState.RETIRED
        logger.debug(f"Retired memory {memory_id}")

    def prune(
        self,
        tier: Optional[Union[MemoryTier, str]] = None,
        max_age_seconds: Optional[float] = None,
        min_importance: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Retire live entries older than ``max_age_seconds`` or with importance
        below ``min_importance``. Returns the retired ids.
        """
        if max_age_seconds is None and min_importance is None:
            raise ValidationError("prune", "max_age_seconds or min_importance is required")
        if max_age_seconds is not None and max_age_seconds < 0:
            raise ValidationError("max_age_seconds", "must be non-negative", max_age_seconds)
        if min_importance is not None:
            _check_score("min_importance", min_importance)

        now = now or utcnow()
        selected = [
            entry
            for entry in self.live_entries(parse_tier(tier) if tier is not None else None)
            if (max_age_seconds is not None and entry.age_seconds(now) > max_age_seconds)
            or (min_importance is not None and entry.metadata.importance < min_importance)
        ]
        self.index.replace([], [memory_key(entry.id) for entry in selected])
        for entry in selected:
            entry.state = EntryState.RETIRED
        if selected:
            logger.info(f"Pruned {len(selected)} memories")
        return [entry.id for entry in selected]

    def commit_merge(self, merged: MemoryEntry, original_ids: Sequence[str]) -> None:
        """Add a consolidated entry and retire its originals in one step."""
        originals = [self._require_live(memory_id) for memory_id in original_ids]
        if self.state.find_memory(merged.id) is not None:
            raise DuplicateIdError("MemoryEntry", merged.id)
        self.index.replace(
            [(memory_key(merged.id), merged.embedding)],
            [memory_key(entry.id) for entry in originals],
        )
        self.state.memories[merged.tier][merged.id] = merged
        for entry in originals:
            entry.state = EntryState.RETIRED

    def commit_compression(self, memory_id: str, payload: bytes, info: CompressionInfo) -> None:
        """Swap an entry's payload for its compressed form; embedding unchanged."""
        entry = self._require_live(memory_id)
        if entry.state not in (EntryState.ACTIVE, EntryState.CONSOLIDATED):
            raise InvariantViolationError(
                "compressible_state", f"entry {memory_id} is {entry.state.value}"
            )
        entry.compressed_payload = payload
        entry.compression = info
        entry.content = None
        entry.state = EntryState.COMPRESSED

    # ---- Reads --------------------------------------------------- #

    @track_latency(RETRIEVE_LATENCY)
    def retrieve(self, query: Union[MemoryQuery, Mapping[str, Any], None] = None) -> List[MemoryEntry]:
        """
        Live entries matching ``query``, most relevant first.

        Returned entries are copies; the stored entries get ``last_accessed``
        refreshed.
        """
        if query is None:
            query = MemoryQuery()
        elif not isinstance(query, MemoryQuery):
            query = MemoryQuery.from_mapping(query)

        if query.limit is not None and (
            isinstance(query.limit, bool) or not isinstance(query.limit, int) or query.limit < 0
        ):
            raise ValidationError("limit", "must be a non-negative integer", query.limit)
        tier = parse_tier(query.tier) if query.tier is not None else None
        point = self._query_point(query)

        candidates = self.live_entries(tier)
        if query.content_substring:
            needle = query.content_substring.lower()
            candidates = [e for e in candidates if needle in e.text().lower()]
        if query.tags:
            wanted = set(query.tags)
            candidates = [e for e in candidates if wanted.issubset(e.metadata.tags)]

        if point is not None:
            rank = {key: i for i, (key, _) in enumerate(self.index.nearest(point))}
            candidates.sort(key=lambda e: rank[memory_key(e.id)])
        else:
            # Later insertions first among equal timestamps
            candidates = sorted(
                reversed(candidates), key=lambda e: e.created_at, reverse=True
            )

        if query.limit is not None:
            candidates = candidates[: query.limit]
        now = utcnow()
        for entry in candidates:
            entry.last_accessed = now
        return [copy.deepcopy(entry) for entry in candidates]

    def get(self, memory_id: str) -> MemoryEntry:
        return copy.deepcopy(self._require_live(memory_id))

    def live_entries(self, tier: Optional[MemoryTier] = None) -> List[MemoryEntry]:
        """Non-retired entries, in insertion order."""
        return self.state.live_entries(tier)

    def count(self, tier: Optional[MemoryTier] = None) -> int:
        return len(self.live_entries(tier))

    def _query_point(self, query: MemoryQuery) -> Optional[np.ndarray]:
        if query.query_point is not None:
            try:
                return validate_point(query.query_point, self.index.dimension, "query_point")
            except InvariantViolationError as exc:
                raise ValidationError("query_point", str(exc))
        if query.query_text:
            return self.embedder.embed(query.query_text)
        return None

    def _require_live(self, memory_id: str) -> MemoryEntry:
        entry = self.state.find_memory(memory_id)
        if entry is None or not entry.is_live:
            raise MemoryNotFoundError(memory_id)
        return entry
