"""
Memory Models
=============
Data classes for the entities held in one engine's SystemState:
identities, memory entries across the five tiers, learning records and
checkpoints, plus the mapping to and from the persisted state document

    {identities, tombstones, memories: {byTier}, learningProgress,
     checkpoints, schemaVersion}
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    return value.isoformat()


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


# --- Enumerations ---

class IdentityType(str, Enum):
    HUMAN = "human"
    AI = "ai"
    SYSTEM = "system"
    HYBRID = "hybrid"


class MemoryTier(str, Enum):
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"
    WORKING = "working"
    META = "meta"


class EntryState(str, Enum):
    ACTIVE = "active"
    CONSOLIDATED = "consolidated"
    COMPRESSED = "compressed"
    RETIRED = "retired"


# --- Hyperbolic address ---

@dataclass(frozen=True)
class HyperbolicAddress:
    """A point in the Poincaré ball plus the HD path that produced it."""
    point: Tuple[float, ...]
    path: Tuple[int, ...]

    def as_array(self) -> np.ndarray:
        return np.asarray(self.point, dtype=np.float64)

    @property
    def depth(self) -> int:
        return len(self.path)

    def to_dict(self) -> Dict[str, Any]:
        return {"point": list(self.point), "path": list(self.path)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HyperbolicAddress":
        return cls(
            point=tuple(float(x) for x in data["point"]),
            path=tuple(int(x) for x in data["path"]),
        )


# --- Identity ---

@dataclass
class IdentityPreferences:
    language: Optional[str] = None
    communication_style: Optional[str] = None
    verbosity: Optional[str] = None
    timezone: Optional[str] = None
    extensions: Dict[str, Any] = field(default_factory=dict)

    FIELDS = ("language", "communication_style", "verbosity", "timezone")

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in self.FIELDS}
        data["extensions"] = copy.deepcopy(self.extensions)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "IdentityPreferences":
        data = dict(data or {})
        extensions = dict(data.pop("extensions", None) or {})
        known = {name: data.pop(name) for name in cls.FIELDS if name in data}
        # Unrecognised keys land in the open extension bag
        extensions.update(data)
        return cls(**known, extensions=extensions)


@dataclass
class IdentitySecurity:
    access_level: str = "standard"
    encryption_required: bool = True
    allowed_actions: List[str] = field(default_factory=lambda: ["read", "write"])
    extensions: Dict[str, Any] = field(default_factory=dict)

    FIELDS = ("access_level", "encryption_required", "allowed_actions")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_level": self.access_level,
            "encryption_required": self.encryption_required,
            "allowed_actions": list(self.allowed_actions),
            "extensions": copy.deepcopy(self.extensions),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "IdentitySecurity":
        data = dict(data or {})
        extensions = dict(data.pop("extensions", None) or {})
        known = {name: data.pop(name) for name in cls.FIELDS if name in data}
        if "allowed_actions" in known:
            known["allowed_actions"] = list(known["allowed_actions"])
        extensions.update(data)
        return cls(**known, extensions=extensions)


@dataclass
class Identity:
    id: str
    name: str
    type: IdentityType
    address: HyperbolicAddress
    capabilities: List[str] = field(default_factory=list)
    preferences: IdentityPreferences = field(default_factory=IdentityPreferences)
    security: IdentitySecurity = field(default_factory=IdentitySecurity)
    parent_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "address": self.address.to_dict(),
            "capabilities": list(self.capabilities),
            "preferences": self.preferences.to_dict(),
            "security": self.security.to_dict(),
            "parent_id": self.parent_id,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Identity":
        return cls(
            id=data["id"],
            name=data["name"],
            type=IdentityType(data["type"]),
            address=HyperbolicAddress.from_dict(data["address"]),
            capabilities=list(data.get("capabilities", [])),
            preferences=IdentityPreferences.from_dict(data.get("preferences")),
            security=IdentitySecurity.from_dict(data.get("security")),
            parent_id=data.get("parent_id"),
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data["updated_at"]),
        )


# --- Memory entries ---

@dataclass
class MemoryMetadata:
    source: str = "unknown"
    quality: float = 0.5
    confidence: float = 0.5
    importance: float = 0.5
    tags: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    extensions: Dict[str, Any] = field(default_factory=dict)

    SCORE_FIELDS = ("quality", "confidence", "importance")

    @property
    def weight(self) -> float:
        """Merge weight: importance × confidence."""
        return self.importance * self.confidence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "quality": self.quality,
            "confidence": self.confidence,
            "importance": self.importance,
            "tags": list(self.tags),
            "context": copy.deepcopy(self.context),
            "extensions": copy.deepcopy(self.extensions),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MemoryMetadata":
        data = dict(data or {})
        return cls(
            source=data.get("source", "unknown"),
            quality=data.get("quality", 0.5),
            confidence=data.get("confidence", 0.5),
            importance=data.get("importance", 0.5),
            tags=list(data.get("tags", [])),
            context=dict(data.get("context", {})),
            extensions=dict(data.get("extensions", {})),
        )


@dataclass
class CompressionInfo:
    algorithm: str
    level: int
    original_size: int
    compressed_size: int
    content_kind: str = "text"  # "text" or "json"
    lossy: bool = False

    @property
    def ratio(self) -> float:
        if self.compressed_size == 0:
            return 1.0
        return self.original_size / self.compressed_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "level": self.level,
            "original_size": self.original_size,
            "compressed_size": self.compressed_size,
            "content_kind": self.content_kind,
            "lossy": self.lossy,
            "ratio": self.ratio,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompressionInfo":
        return cls(
            algorithm=data["algorithm"],
            level=int(data["level"]),
            original_size=int(data["original_size"]),
            compressed_size=int(data["compressed_size"]),
            content_kind=data.get("content_kind", "text"),
            lossy=bool(data.get("lossy", False)),
        )


@dataclass
class MemoryEntry:
    """
    One memory in one tier.

    ``content`` holds the payload while uncompressed; once compressed it is
    None and ``compressed_payload`` + ``compression`` carry it. Use
    :meth:`read_content` to get the payload in either state.
    """

    id: str
    tier: MemoryTier
    content: Any
    metadata: MemoryMetadata
    embedding: np.ndarray
    state: EntryState = EntryState.ACTIVE
    consolidated_from: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    last_accessed: datetime = field(default_factory=utcnow)
    compression: Optional[CompressionInfo] = None
    compressed_payload: Optional[bytes] = field(default=None, repr=False)

    @property
    def is_live(self) -> bool:
        return self.state is not EntryState.RETIRED

    def read_content(self) -> Any:
        if self.compressed_payload is None:
            return self.content
        from .compression import decompress_payload
        return decompress_payload(self.compressed_payload, self.compression)

    def text(self) -> str:
        """Payload as searchable text."""
        return content_text(self.read_content())

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.created_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        import base64

        return {
            "id": self.id,
            "tier": self.tier.value,
            "content": copy.deepcopy(self.content),
            "metadata": self.metadata.to_dict(),
            "embedding": [float(x) for x in self.embedding],
            "state": self.state.value,
            "consolidated_from": list(self.consolidated_from),
            "created_at": _ts(self.created_at),
            "last_accessed": _ts(self.last_accessed),
            "compression": self.compression.to_dict() if self.compression else None,
            "compressed_payload": (
                base64.b64encode(self.compressed_payload).decode("ascii")
                if self.compressed_payload is not None else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryEntry":
        import base64

        payload = data.get("compressed_payload")
        compression = data.get("compression")
        return cls(
            id=data["id"],
            tier=MemoryTier(data["tier"]),
            content=data.get("content"),
            metadata=MemoryMetadata.from_dict(data.get("metadata")),
            embedding=np.asarray(data["embedding"], dtype=np.float64),
            state=EntryState(data["state"]),
            consolidated_from=list(data.get("consolidated_from", [])),
            created_at=_parse_ts(data["created_at"]),
            last_accessed=_parse_ts(data["last_accessed"]),
            compression=CompressionInfo.from_dict(compression) if compression else None,
            compressed_payload=base64.b64decode(payload) if payload is not None else None,
        )


def content_text(content: Any) -> str:
    """Canonical text form of a payload (JSON payloads use sorted keys)."""
    if isinstance(content, str):
        return content
    from hypermnemo.utils.json_compat import dumps
    return dumps(content)


# --- Learning progress ---

@dataclass(frozen=True)
class LearningRecord:
    concept: str
    performance: float
    memory_id: str
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concept": self.concept,
            "performance": self.performance,
            "memory_id": self.memory_id,
            "timestamp": _ts(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningRecord":
        return cls(
            concept=data["concept"],
            performance=float(data["performance"]),
            memory_id=data["memory_id"],
            timestamp=_parse_ts(data["timestamp"]),
        )


# --- Checkpoints ---

@dataclass(frozen=True)
class Checkpoint:
    """
    Named snapshot of the state at one instant.

    ``snapshot`` is the serialized state document (identities, memories,
    learning progress, schema version) and ``metadata`` its JSON metadata,
    both kept as bytes so neither can change.
    """
    id: str
    name: str
    description: Optional[str]
    timestamp: datetime
    metadata: bytes = field(repr=False)
    snapshot: bytes = field(repr=False)

    def metadata_dict(self) -> Dict[str, Any]:
        from hypermnemo.utils.json_compat import loads
        return loads(self.metadata)

    def snapshot_document(self) -> Dict[str, Any]:
        from hypermnemo.utils.json_compat import loads
        return loads(self.snapshot)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "timestamp": _ts(self.timestamp),
            "metadata": self.metadata_dict(),
            "snapshot": self.snapshot_document(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        from hypermnemo.utils.json_compat import dumps_bytes
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            timestamp=_parse_ts(data["timestamp"]),
            metadata=freeze_metadata(data.get("metadata")),
            snapshot=dumps_bytes(data["snapshot"]),
        )


def freeze_metadata(metadata: Optional[Dict[str, Any]]) -> bytes:
    """Serialized checkpoint metadata; raises TypeError if not JSON-compatible."""
    from hypermnemo.utils.json_compat import dumps_bytes
    return dumps_bytes(dict(metadata or {}))


# --- System state ---

@dataclass
class SystemState:
    """The aggregate owned by one engine instance."""
    schema_version: int
    identities: Dict[str, Identity] = field(default_factory=dict)
    tombstones: Dict[str, HyperbolicAddress] = field(default_factory=dict)
    memories: Dict[MemoryTier, Dict[str, MemoryEntry]] = field(
        default_factory=lambda: {tier: {} for tier in MemoryTier}
    )
    learning_progress: List[LearningRecord] = field(default_factory=list)
    checkpoints: List[Checkpoint] = field(default_factory=list)

    def find_memory(self, memory_id: str) -> Optional[MemoryEntry]:
        for entries in self.memories.values():
            entry = entries.get(memory_id)
            if entry is not None:
                return entry
        return None

    def live_entries(self, tier: Optional[MemoryTier] = None) -> List[MemoryEntry]:
        tiers = [tier] if tier is not None else list(MemoryTier)
        return [
            entry
            for t in tiers
            for entry in self.memories[t].values()
            if entry.is_live
        ]

    def live_counts(self) -> Dict[str, int]:
        return {
            tier.value: sum(1 for e in entries.values() if e.is_live)
            for tier, entries in self.memories.items()
        }

    def to_document(self, include_checkpoints: bool = True) -> Dict[str, Any]:
        document = {
            "schemaVersion": self.schema_version,
            "identities": [identity.to_dict() for identity in self.identities.values()],
            "tombstones": {tid: addr.to_dict() for tid, addr in self.tombstones.items()},
            "memories": {
                tier.value: [entry.to_dict() for entry in entries.values()]
                for tier, entries in self.memories.items()
            },
            "learningProgress": [record.to_dict() for record in self.learning_progress],
        }
        if include_checkpoints:
            document["checkpoints"] = [cp.to_dict() for cp in self.checkpoints]
        return document

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "SystemState":
        memories: Dict[MemoryTier, Dict[str, MemoryEntry]] = {tier: {} for tier in MemoryTier}
        for tier_name, entries in (document.get("memories") or {}).items():
            tier = MemoryTier(tier_name)
            for raw in entries:
                entry = MemoryEntry.from_dict(raw)
                memories[tier][entry.id] = entry
        return cls(
            schema_version=int(document["schemaVersion"]),
            identities={
                raw["id"]: Identity.from_dict(raw) for raw in document.get("identities", [])
            },
            tombstones={
                tid: HyperbolicAddress.from_dict(raw)
                for tid, raw in (document.get("tombstones") or {}).items()
            },
            memories=memories,
            learning_progress=[
                LearningRecord.from_dict(raw) for raw in document.get("learningProgress", [])
            ],
            checkpoints=[Checkpoint.from_dict(raw) for raw in document.get("checkpoints", [])],
        )

    def copy(self) -> "SystemState":
        return copy.deepcopy(self)
