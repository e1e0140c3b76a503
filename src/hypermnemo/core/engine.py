"""
HyperMnemo Engine
=================
Facade over one SystemState: identities, tiered memories, maintenance
passes, checkpoints and encrypted persistence.

Concurrency model:
  - every mutating operation holds ``_write_lock`` (one asyncio.Lock)
  - reads never take the lock; each commit is synchronous with no await
    inside it, so a reader sees the state either before or after it
  - restore builds the replacement state, index and address registry
    aside and swaps the references in one synchronous step
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from loguru import logger

from .collaborators import SecurityGate, StorageBackend
from .compression import CompressionEngine, CompressionReport
from .config import HyperMnemoConfig, get_config
from .consolidation import ConsolidationEngine, ConsolidationReport
from .embedding import ContentEmbedder
from .exceptions import (
    CompressionError,
    ConfigurationError,
    ConsolidationError,
    DataCorruptionError,
    DuplicateIdError,
    HyperMnemoError,
    InvariantViolationError,
    SecurityError,
    ValidationError,
)
from .hd_addressing import HDIdentityAddressor
from .hyperbolic_index import HyperbolicIndex
from .identity_registry import IdentityRegistry, identity_key
from .memory_model import (
    Checkpoint,
    Identity,
    LearningRecord,
    MemoryEntry,
    MemoryTier,
    SystemState,
    utcnow,
)
from .memory_store import MemoryDraft, MemoryQuery, MemoryStore, build_metadata, memory_key, parse_tier
from .metrics import IDENTITY_TOTAL, record_skip, update_live_counts
from .state_manager import SaveResult, StateManager


class HyperMnemoEngine:
    """
    Hyperbolic memory and identity addressing engine.

    Args:
        config: Configuration. If None, uses global get_config().
        storage: Byte storage used by save_state/restore_state.
        security_gate: Encryption and auth collaborator.
    """

    def __init__(
        self,
        config: Optional[HyperMnemoConfig] = None,
        storage: Optional[StorageBackend] = None,
        security_gate: Optional[SecurityGate] = None,
    ):
        self.config = config or get_config()
        self.storage = storage
        self.security_gate = security_gate
        self._write_lock: asyncio.Lock = asyncio.Lock()

        self.embedder = ContentEmbedder(self.config.embedding, self.config.dimension)
        self.consolidator = ConsolidationEngine(self.config.consolidation, self.config.index.max_norm)
        self.compressor = CompressionEngine(self.config)
        self.state_manager = StateManager(self.config.state, storage, security_gate)

        state = SystemState(schema_version=self.config.state.schema_version)
        self._bind(state, self._new_index(), self._new_addressor())
        logger.info(
            f"HyperMnemoEngine initialized (dimension={self.config.dimension}, "
            f"schema v{self.config.state.schema_version})"
        )

    # ------------------------------------------------------------------ #
    #  Wiring                                                              #
    # ------------------------------------------------------------------ #

    def _new_index(self) -> HyperbolicIndex:
        return HyperbolicIndex(self.config.dimension, self.config.index.max_entries)

    def _new_addressor(self) -> HDIdentityAddressor:
        return HDIdentityAddressor(self.config.addressing, self.config.dimension)

    def _bind(self, state: SystemState, index: HyperbolicIndex, addressor: HDIdentityAddressor) -> None:
        # Synchronous: readers never observe a half-swapped engine
        self._state = state
        self._index = index
        self._addressor = addressor
        self._identities = IdentityRegistry(state, index, addressor)
        self._memories = MemoryStore(state, index, self.embedder, self.config)

    def _materialize(self, state: SystemState) -> Tuple[HyperbolicIndex, HDIdentityAddressor]:
        """Index and address registry for a state that is not yet live."""
        index = self._new_index()
        additions = [
            (identity_key(identity.id), identity.address.as_array())
            for identity in state.identities.values()
        ]
        additions.extend(
            (memory_key(entry.id), entry.embedding) for entry in state.live_entries()
        )
        try:
            index.replace(additions, [])
        except (InvariantViolationError, DuplicateIdError, ValidationError) as exc:
            raise DataCorruptionError("state", f"cannot rebuild index: {exc}")

        addressor = self._new_addressor()
        addressor.rebuild(
            [(identity.id, identity.address) for identity in state.identities.values()]
            + list(state.tombstones.items())
        )
        return index, addressor

    def _swap(self, state: SystemState) -> None:
        index, addressor = self._materialize(state)
        self._bind(state, index, addressor)
        self._publish_metrics()

    def _publish_metrics(self) -> None:
        update_live_counts(self._state.live_counts())
        IDENTITY_TOTAL.set(len(self._state.identities))

    def _require_gate(self) -> SecurityGate:
        if self.security_gate is None:
            raise ConfigurationError("security_gate", "no security gate configured")
        return self.security_gate

    def _require_storage(self) -> None:
        if self.storage is None:
            raise ConfigurationError("storage", "no storage backend configured")
        self._require_gate()

    # ------------------------------------------------------------------ #
    #  Identities                                                          #
    # ------------------------------------------------------------------ #

    async def create_identity(self, config: Mapping[str, Any]) -> Identity:
        async with self._write_lock:
            identity = self._identities.create(config)
            self._publish_metrics()
            return identity

    async def get_identity(self, identity_id: str) -> Identity:
        return self._identities.get(identity_id)

    async def update_identity(self, identity_id: str, partial: Mapping[str, Any]) -> Identity:
        async with self._write_lock:
            return self._identities.update(identity_id, partial)

    async def delete_identity(self, identity_id: str) -> None:
        async with self._write_lock:
            self._identities.delete(identity_id)
            self._publish_metrics()

    async def list_identities(self) -> List[Identity]:
        return self._identities.list()

    # ------------------------------------------------------------------ #
    #  Memories                                                            #
    # ------------------------------------------------------------------ #

    async def store_memory(self, entry: Union[MemoryDraft, Mapping[str, Any]]) -> str:
        """
        Store a memory and return its id.

        If the tier's live population then exceeds its consolidation or
        compression threshold, that pass runs for the tier before returning.
        """
        async with self._write_lock:
            memory_id = self._memories.store(entry)
            tier = self._state.find_memory(memory_id).tier
            await self._maybe_consolidate(tier)
            await self._maybe_compress(tier)
            self._publish_metrics()
            return memory_id

    async def _maybe_consolidate(self, tier: MemoryTier) -> None:
        threshold = self.config.tier_policy(tier.value).consolidation_threshold
        if not self.config.consolidation.enabled or threshold is None:
            return
        if self._memories.count(tier) <= threshold:
            return
        logger.info(f"Tier '{tier.value}' above consolidation threshold ({threshold})")
        try:
            await self.consolidator.consolidate(self._memories, tier)
        except ConsolidationError as exc:
            record_skip("consolidation", "auto")
            logger.warning(f"Automatic consolidation skipped: {exc}")

    async def _maybe_compress(self, tier: MemoryTier) -> None:
        threshold = self.config.tier_policy(tier.value).compression_threshold
        if not self.config.compression.enabled or threshold is None:
            return
        if self._memories.count(tier) <= threshold:
            return
        logger.info(f"Tier '{tier.value}' above compression threshold ({threshold})")
        try:
            await self.compressor.compress(self._memories, tier)
        except CompressionError as exc:
            record_skip("compression", "auto")
            logger.warning(f"Automatic compression skipped: {exc}")

    async def retrieve_memory(
        self, query: Union[MemoryQuery, Mapping[str, Any], None] = None
    ) -> List[MemoryEntry]:
        return self._memories.retrieve(query)

    async def get_memory(self, memory_id: str) -> MemoryEntry:
        return self._memories.get(memory_id)

    async def delete_memory(self, memory_id: str) -> None:
        async with self._write_lock:
            self._memories.delete(memory_id)
            self._publish_metrics()

    async def prune_memory(
        self,
        tier: Optional[Union[MemoryTier, str]] = None,
        max_age_seconds: Optional[float] = None,
        min_importance: Optional[float] = None,
    ) -> List[str]:
        async with self._write_lock:
            retired = self._memories.prune(tier, max_age_seconds, min_importance)
            self._publish_metrics()
            return retired

    # ------------------------------------------------------------------ #
    #  Maintenance passes                                                  #
    # ------------------------------------------------------------------ #

    async def consolidate_memory(
        self, tier: Optional[Union[MemoryTier, str]] = None, strategy: Optional[str] = None
    ) -> ConsolidationReport:
        """
        Merge near-duplicate active memories. A pass that cannot run is
        reported with ``merged=0`` and the error, never raised.
        """
        parsed = parse_tier(tier) if tier is not None else None
        async with self._write_lock:
            try:
                report = await self.consolidator.consolidate(self._memories, parsed, strategy)
            except ConsolidationError as exc:
                record_skip("consolidation", "rejected")
                logger.warning(f"Consolidation skipped: {exc}")
                report = ConsolidationReport(
                    strategy=strategy or self.config.consolidation.strategy,
                    error=exc.to_dict(),
                )
            finally:
                self._publish_metrics()
            return report

    async def compress_memory(
        self,
        tier: Optional[Union[MemoryTier, str]] = None,
        algorithm: Optional[str] = None,
        level: Optional[int] = None,
    ) -> CompressionReport:
        """
        Compress eligible memories. A pass that cannot run is reported with
        ``compressed=0`` and ``ratio=1.0``, never raised.
        """
        parsed = parse_tier(tier) if tier is not None else None
        async with self._write_lock:
            try:
                return await self.compressor.compress(self._memories, parsed, algorithm, level)
            except CompressionError as exc:
                record_skip("compression", "rejected")
                logger.warning(f"Compression skipped: {exc}")
                return CompressionReport(algorithm=algorithm, level=level, error=exc.to_dict())

    # ------------------------------------------------------------------ #
    #  Learning progress                                                   #
    # ------------------------------------------------------------------ #

    async def learn_concept(
        self, concept: str, performance: float, context: Optional[Dict[str, Any]] = None
    ) -> LearningRecord:
        """Record progress on a concept, backed by a semantic memory."""
        if not isinstance(concept, str) or not concept.strip():
            raise ValidationError("concept", "must be a non-empty string", concept)
        metadata = build_metadata({
            "source": "learning",
            "confidence": performance,
            "importance": performance,
            "tags": ["learning"],
            "context": dict(context or {}),
        })
        async with self._write_lock:
            memory_id = self._memories.store(MemoryDraft(
                tier=MemoryTier.SEMANTIC,
                content={"concept": concept, "performance": metadata.confidence},
                metadata=metadata,
            ))
            record = LearningRecord(
                concept=concept,
                performance=metadata.confidence,
                memory_id=memory_id,
                timestamp=utcnow(),
            )
            self._state.learning_progress.append(record)
            self._publish_metrics()
            logger.info(f"Learned concept '{concept}' (performance={record.performance:.2f})")
            return record

    async def get_learning_progress(self, concept: Optional[str] = None) -> List[LearningRecord]:
        return [
            record for record in self._state.learning_progress
            if concept is None or record.concept == concept
        ]

    # ------------------------------------------------------------------ #
    #  Checkpoints & state                                                 #
    # ------------------------------------------------------------------ #

    async def create_checkpoint(
        self,
        name: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        async with self._write_lock:
            return self.state_manager.create_checkpoint(self._state, name, description, metadata)

    async def list_checkpoints(self) -> List[Checkpoint]:
        return self.state_manager.list_checkpoints(self._state)

    async def get_last_checkpoint(self) -> Optional[Checkpoint]:
        return self.state_manager.get_last_checkpoint(self._state)

    async def restore_checkpoint(self, checkpoint_id: str) -> None:
        """Replace identities, memories and learning progress from a checkpoint."""
        async with self._write_lock:
            restored = self.state_manager.state_from_checkpoint(self._state, checkpoint_id)
            self._swap(restored)
            logger.info(f"Restored checkpoint {checkpoint_id}")

    async def get_state(self) -> SystemState:
        """Deep copy of the current state."""
        return self.state_manager.snapshot(self._state)

    async def save_state(self) -> SaveResult:
        self._require_storage()
        async with self._write_lock:
            return await self.state_manager.save(self._state)

    async def restore_state(self) -> None:
        """
        Replace the whole in-memory state with the persisted one. On any
        failure the current state is left untouched.
        """
        self._require_storage()
        async with self._write_lock:
            restored = await self.state_manager.load()
            self._swap(restored)
            logger.info(
                f"State restored: {len(restored.identities)} identities, "
                f"{sum(restored.live_counts().values())} live memories"
            )

    # ------------------------------------------------------------------ #
    #  Security pass-throughs                                              #
    # ------------------------------------------------------------------ #

    async def authenticate(self, credentials: Any) -> Any:
        gate = self._require_gate()
        try:
            return await gate.authenticate(credentials)
        except HyperMnemoError:
            raise
        except Exception as exc:
            raise SecurityError("authenticate", str(exc))

    async def authorize(self, identity_id: str, resource: str, action: str) -> bool:
        gate = self._require_gate()
        try:
            return bool(await gate.authorize(identity_id, resource, action))
        except HyperMnemoError:
            raise
        except Exception as exc:
            raise SecurityError("authorize", str(exc))

    # ------------------------------------------------------------------ #
    #  Stats                                                               #
    # ------------------------------------------------------------------ #

    async def stats(self) -> Dict[str, Any]:
        state = self._state
        by_state: Dict[str, int] = {}
        for entries in state.memories.values():
            for entry in entries.values():
                by_state[entry.state.value] = by_state.get(entry.state.value, 0) + 1
        return {
            "engine_version": "hypermnemo-1.0",
            "dimension": self.config.dimension,
            "schema_version": state.schema_version,
            "identities": len(state.identities),
            "tombstones": len(state.tombstones),
            "memories": state.live_counts(),
            "memories_by_state": by_state,
            "index_size": len(self._index),
            "learning_records": len(state.learning_progress),
            "checkpoints": len(state.checkpoints),
        }
