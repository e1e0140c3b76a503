"""
Memory Consolidation
====================
Merges groups of near-duplicate memories inside one tier into a single
consolidated entry.

Two grouping strategies over the active entries of a tier:
  - temporal: pairs created within ``time_window_seconds`` of each other
    whose hyperbolic distance is below epsilon
  - semantic: mutual k-nearest-neighbour pairs whose distance is below
    epsilon

Groups are the connected components (union-find) of qualifying pairs. Each
group becomes one new entry placed at the weighted Einstein midpoint of its
members; the members are retired. A pass repeats until no group forms, so a
second run without new stores merges nothing.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from loguru import logger

from .config import CONSOLIDATION_STRATEGIES, ConsolidationConfig
from .exceptions import ConsolidationError
from .hyperbolic_index import einstein_midpoint, pairwise_distances
from .memory_model import EntryState, MemoryEntry, MemoryMetadata, MemoryTier, utcnow
from .metrics import CONSOLIDATION_MERGES

# Floor for merge weights so zero-importance members still contribute
_MIN_WEIGHT = 1e-6


@dataclass
class ConsolidationReport:
    merged: int = 0
    strategy: Optional[str] = None
    tiers: List[str] = field(default_factory=list)
    new_ids: List[str] = field(default_factory=list)
    retired_ids: List[str] = field(default_factory=list)
    passes: int = 0
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "merged": self.merged,
            "strategy": self.strategy,
            "tiers": list(self.tiers),
            "new_ids": list(self.new_ids),
            "retired_ids": list(self.retired_ids),
            "passes": self.passes,
            "error": self.error,
        }


class ConsolidationEngine:
    """Finds and merges groups of near-duplicate active memories."""

    def __init__(self, config: ConsolidationConfig, max_norm: float = 1.0 - 1e-5):
        self.config = config
        self.max_norm = max_norm

    def find_groups(
        self, entries: Sequence[MemoryEntry], strategy: Optional[str] = None
    ) -> List[List[MemoryEntry]]:
        """
        Connected components of qualifying pairs, each listed in insertion
        order, groups ordered by their first member.
        """
        strategy = strategy or self.config.strategy
        if strategy not in CONSOLIDATION_STRATEGIES:
            raise ConsolidationError(
                None, f"unknown strategy '{strategy}'",
                {"supported": list(CONSOLIDATION_STRATEGIES)},
            )
        n = len(entries)
        if n < 2:
            return []

        dist = pairwise_distances(np.stack([e.embedding for e in entries]))
        eps = self.config.epsilon

        parent = list(range(n))

        def find(x: int) -> int:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        def union(x: int, y: int) -> None:
            px, py = find(x), find(y)
            if px != py:
                # Lower index becomes the root so roots follow insertion order
                parent[max(px, py)] = min(px, py)

        if strategy == "temporal":
            window = self.config.time_window_seconds
            for i in range(n):
                for j in range(i + 1, n):
                    gap = abs((entries[i].created_at - entries[j].created_at).total_seconds())
                    if gap <= window and dist[i, j] < eps:
                        union(i, j)
        else:
            k = min(self.config.k_neighbors, n - 1)
            neighbours = []
            for i in range(n):
                order = [j for j in np.argsort(dist[i], kind="stable") if j != i]
                neighbours.append(set(order[:k]))
            for i in range(n):
                for j in neighbours[i]:
                    if j > i and i in neighbours[j] and dist[i, j] < eps:
                        union(i, j)

        components: Dict[int, List[MemoryEntry]] = {}
        for i, entry in enumerate(entries):
            components.setdefault(find(i), []).append(entry)
        groups = [
            components[root] for root in sorted(components)
            if len(components[root]) >= self.config.min_group_size
        ]
        logger.debug(
            f"find_groups: {n} entries -> {len(groups)} groups (strategy={strategy}, eps={eps})"
        )
        return groups

    def merge_group(self, group: Sequence[MemoryEntry], now: Optional[datetime] = None) -> MemoryEntry:
        """
        Build the consolidated entry for ``group`` (members in insertion order).

        The representative is the member with the highest importance ×
        confidence, earliest first on ties.
        """
        representative = group[0]
        for entry in group[1:]:
            if entry.metadata.weight > representative.metadata.weight:
                representative = entry
        others = [e for e in group if e is not representative]

        metadata: MemoryMetadata = copy.deepcopy(representative.metadata)
        tags = list(metadata.tags)
        for entry in others:
            tags.extend(t for t in entry.metadata.tags if t not in tags)
        metadata.tags = tags
        metadata.importance = max(e.metadata.importance for e in group)

        weights = [max(e.metadata.weight, _MIN_WEIGHT) for e in group]
        embedding = einstein_midpoint(
            np.stack([e.embedding for e in group]), weights, self.max_norm
        )
        now = now or utcnow()
        return MemoryEntry(
            id=str(uuid.uuid4()),
            tier=representative.tier,
            content=copy.deepcopy(representative.read_content()),
            metadata=metadata,
            embedding=embedding,
            state=EntryState.CONSOLIDATED,
            consolidated_from=[representative.id] + [e.id for e in others],
            created_at=now,
            last_accessed=now,
        )

    async def consolidate(
        self,
        store,
        tier: Optional[MemoryTier] = None,
        strategy: Optional[str] = None,
    ) -> ConsolidationReport:
        """
        Run passes over ``tier`` (or every tier) until no group forms.

        Raises:
            ConsolidationError: unknown strategy, or fewer than two active
                candidates (in the requested tier, or in every tier).
        """
        strategy = strategy or self.config.strategy
        if strategy not in CONSOLIDATION_STRATEGIES:
            raise ConsolidationError(
                tier.value if tier else None, f"unknown strategy '{strategy}'",
                {"supported": list(CONSOLIDATION_STRATEGIES)},
            )
        tiers = [tier] if tier is not None else list(MemoryTier)
        report = ConsolidationReport(strategy=strategy)

        for current in tiers:
            candidates = _active(store, current)
            if len(candidates) < 2:
                continue
            report.tiers.append(current.value)
            while True:
                groups = self.find_groups(candidates, strategy)
                report.passes += 1
                if not groups:
                    break
                for group in groups:
                    merged = self.merge_group(group)
                    originals = [e.id for e in group]
                    store.commit_merge(merged, originals)
                    report.merged += 1
                    report.new_ids.append(merged.id)
                    report.retired_ids.extend(originals)
                    CONSOLIDATION_MERGES.labels(tier=current.value, strategy=strategy).inc()
                    await asyncio.sleep(0)
                candidates = _active(store, current)
                if len(candidates) < 2:
                    break

        if not report.tiers:
            raise ConsolidationError(
                tier.value if tier else None, "fewer than two active candidates"
            )
        logger.info(
            f"Consolidation ({strategy}) merged {report.merged} groups "
            f"across tiers {report.tiers} in {report.passes} passes"
        )
        return report


def _active(store, tier: MemoryTier) -> List[MemoryEntry]:
    return [e for e in store.live_entries(tier) if e.state is EntryState.ACTIVE]
