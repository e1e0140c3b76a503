"""
HyperMnemo Core Module
======================
The engine and the components it coordinates.

Geometry:
    - HyperbolicIndex: exact nearest-neighbour search in the Poincaré ball
    - HDIdentityAddressor: deterministic hierarchical identity addresses
    - ContentEmbedder: payload + context -> point

Memory:
    - MemoryStore: tiered entries, retrieval by proximity or recency
    - ConsolidationEngine: temporal / semantic merging of near-duplicates
    - CompressionEngine: zlib / gzip / lzma payload compression

State:
    - StateManager: checkpoints, encrypted save and restore
    - HyperMnemoEngine: facade exposing every operation

Configuration:
    Settings come from config.yaml (key ``hypermnemo``) with HYPERMNEMO_*
    environment overrides; see hypermnemo.core.config.

Example:
    from hypermnemo.core import HyperMnemoEngine, MemoryQuery

    engine = HyperMnemoEngine()
    memory_id = await engine.store_memory({"tier": "semantic", "content": "Paris is in France"})
    results = await engine.retrieve_memory(MemoryQuery(query_text="France", limit=3))
"""

from .collaborators import SecurityGate, StorageBackend
from .compression import CompressionEngine, CompressionReport
from .config import HyperMnemoConfig, get_config, load_config, reset_config
from .consolidation import ConsolidationEngine, ConsolidationReport
from .embedding import ContentEmbedder
from .engine import HyperMnemoEngine
from .hd_addressing import HDIdentityAddressor, derive_address
from .hyperbolic_index import HyperbolicIndex, einstein_midpoint, poincare_distance, project_to_ball
from .identity_registry import IdentityRegistry
from .memory_model import (
    Checkpoint,
    CompressionInfo,
    EntryState,
    HyperbolicAddress,
    Identity,
    IdentityPreferences,
    IdentitySecurity,
    IdentityType,
    LearningRecord,
    MemoryEntry,
    MemoryMetadata,
    MemoryTier,
    SystemState,
)
from .memory_store import MemoryDraft, MemoryQuery, MemoryStore
from .state_manager import SaveResult, StateManager

__all__ = [
    "Checkpoint",
    "CompressionEngine",
    "CompressionInfo",
    "CompressionReport",
    "ConsolidationEngine",
    "ConsolidationReport",
    "ContentEmbedder",
    "EntryState",
    "HDIdentityAddressor",
    "HyperMnemoConfig",
    "HyperMnemoEngine",
    "HyperbolicAddress",
    "HyperbolicIndex",
    "Identity",
    "IdentityPreferences",
    "IdentityRegistry",
    "IdentitySecurity",
    "IdentityType",
    "LearningRecord",
    "MemoryDraft",
    "MemoryEntry",
    "MemoryMetadata",
    "MemoryQuery",
    "MemoryStore",
    "MemoryTier",
    "SaveResult",
    "SecurityGate",
    "StateManager",
    "StorageBackend",
    "SystemState",
    "derive_address",
    "einstein_midpoint",
    "get_config",
    "load_config",
    "poincare_distance",
    "project_to_ball",
    "reset_config",
]
