"""
Checkpoint & State Manager
==========================
Named in-memory checkpoints plus encrypted persistence of the whole
SystemState through the storage and security collaborators.

Persisted form: the state document (see SystemState.to_document) as sorted
JSON, encrypted by the SecurityGate and written under one storage key.

Restoring never touches the live state: the document is read, decrypted,
parsed and version-checked, and a complete replacement SystemState is
returned for the caller to swap in.
"""

from __future__ import annotations

import copy
import hashlib
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from .collaborators import SecurityGate, StorageBackend
from .config import StateConfig
from .exceptions import (
    CheckpointNotFoundError,
    DataCorruptionError,
    HyperMnemoError,
    IncompatibleStateVersionError,
    NotFoundError,
    SecurityError,
    ValidationError,
    wrap_storage_exception,
)
from .memory_model import Checkpoint, SystemState, freeze_metadata, utcnow
from .metrics import STATE_LATENCY, STATE_OPERATION_COUNT
from hypermnemo.utils import json_compat


@dataclass(frozen=True)
class SaveResult:
    key: str
    size_bytes: int
    checksum: str
    saved_at: datetime
    schema_version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "saved_at": self.saved_at.isoformat(),
            "schema_version": self.schema_version,
        }


class StateManager:
    """Checkpoints and save/restore for one engine's SystemState."""

    def __init__(self, config: StateConfig, storage: StorageBackend, gate: SecurityGate):
        self.config = config
        self.storage = storage
        self.gate = gate

    # ---- Checkpoints --------------------------------------------- #

    def create_checkpoint(
        self,
        state: SystemState,
        name: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        """Append an immutable snapshot of ``state`` (checkpoints excluded)."""
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name", "must be a non-empty string", name)
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata", "must be a mapping", metadata)
        if metadata is not None and not json_compat.round_trips(metadata):
            raise ValidationError(
                "metadata", "must be plain JSON (string keys, finite numbers, lists)", metadata
            )
        frozen = freeze_metadata(metadata)
        snapshot = json_compat.dumps_bytes(state.to_document(include_checkpoints=False))

        checkpoint = Checkpoint(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            timestamp=utcnow(),
            metadata=frozen,
            snapshot=snapshot,
        )
        state.checkpoints.append(checkpoint)
        if self.config.max_checkpoints and len(state.checkpoints) > self.config.max_checkpoints:
            dropped = len(state.checkpoints) - self.config.max_checkpoints
            del state.checkpoints[:dropped]
            logger.debug(f"Dropped {dropped} oldest checkpoints")
        logger.info(f"Checkpoint created: {checkpoint.id} '{name}' ({len(snapshot)} bytes)")
        return checkpoint

    def list_checkpoints(self, state: SystemState) -> List[Checkpoint]:
        return list(state.checkpoints)

    def get_last_checkpoint(self, state: SystemState) -> Optional[Checkpoint]:
        return state.checkpoints[-1] if state.checkpoints else None

    def find_checkpoint(self, state: SystemState, checkpoint_id: str) -> Checkpoint:
        for checkpoint in state.checkpoints:
            if checkpoint.id == checkpoint_id:
                return checkpoint
        raise CheckpointNotFoundError(checkpoint_id)

    def state_from_checkpoint(self, state: SystemState, checkpoint_id: str) -> SystemState:
        """Replacement state built from a snapshot; keeps the checkpoint list."""
        checkpoint = self.find_checkpoint(state, checkpoint_id)
        restored = self.build_state(checkpoint.snapshot_document(), resource_id=checkpoint_id)
        restored.checkpoints = list(state.checkpoints)
        return restored

    # ---- Document handling --------------------------------------- #

    def build_state(self, document: Any, resource_id: str) -> SystemState:
        """Version-check ``document`` and build a SystemState from it."""
        if not isinstance(document, dict) or "schemaVersion" not in document:
            raise DataCorruptionError(resource_id, "not a state document")
        version = document["schemaVersion"]
        if version != self.config.schema_version:
            raise IncompatibleStateVersionError(self.config.schema_version, version)
        try:
            return SystemState.from_document(document)
        except (KeyError, TypeError, ValueError) as exc:
            raise DataCorruptionError(resource_id, f"malformed state document: {exc}")

    # ---- Persistence --------------------------------------------- #

    async def save(self, state: SystemState) -> SaveResult:
        """Serialize, encrypt and write the whole state."""
        key = self.config.storage_key
        start = time.perf_counter()
        status = "error"
        try:
            plaintext = json_compat.dumps_bytes(state.to_document())
            try:
                ciphertext = await self.gate.encrypt(plaintext)
            except HyperMnemoError:
                raise
            except Exception as exc:
                raise SecurityError("encrypt", str(exc))
            try:
                await self.storage.put(key, ciphertext)
            except HyperMnemoError:
                raise
            except Exception as exc:
                raise wrap_storage_exception(type(self.storage).__name__, "put", exc)
            status = "success"
        finally:
            STATE_OPERATION_COUNT.labels(operation="save", status=status).inc()
            STATE_LATENCY.labels(operation="save").observe(time.perf_counter() - start)

        result = SaveResult(
            key=key,
            size_bytes=len(ciphertext),
            checksum=hashlib.sha256(ciphertext).hexdigest(),
            saved_at=utcnow(),
            schema_version=state.schema_version,
        )
        logger.info(f"State saved to '{key}' ({result.size_bytes} bytes)")
        return result

    async def load(self) -> SystemState:
        """
        Read, decrypt, parse and version-check the persisted state.

        Raises:
            NotFoundError: nothing stored under the key.
            SecurityError: decryption failed.
            DataCorruptionError: undecodable or malformed document.
            IncompatibleStateVersionError: schemaVersion differs.
        """
        key = self.config.storage_key
        start = time.perf_counter()
        status = "error"
        try:
            try:
                ciphertext = await self.storage.get(key)
            except (KeyError, NotFoundError):
                ciphertext = None
            except HyperMnemoError:
                raise
            except Exception as exc:
                raise wrap_storage_exception(type(self.storage).__name__, "get", exc)
            if ciphertext is None:
                raise NotFoundError("StateDocument", key)

            try:
                plaintext = await self.gate.decrypt(ciphertext)
            except HyperMnemoError:
                raise
            except Exception as exc:
                raise SecurityError("decrypt", str(exc))

            try:
                document = json_compat.loads(plaintext)
            except (ValueError, TypeError) as exc:
                raise DataCorruptionError(key, f"undecodable state document: {exc}")

            state = self.build_state(document, resource_id=key)
            status = "success"
        finally:
            STATE_OPERATION_COUNT.labels(operation="restore", status=status).inc()
            STATE_LATENCY.labels(operation="restore").observe(time.perf_counter() - start)

        logger.info(f"State loaded from '{key}' (schema v{state.schema_version})")
        return state

    def snapshot(self, state: SystemState) -> SystemState:
        """Deep copy for read-only callers."""
        return copy.deepcopy(state)
