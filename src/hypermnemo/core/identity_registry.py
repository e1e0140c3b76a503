"""
Identity Registry
=================
Lifecycle of identities inside one SystemState: create, read, partial
update and tombstoning delete. Each identity's address comes from the
HD addressor and its point is kept in the shared hyperbolic index.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger

from .exceptions import DuplicateIdError, IdentityNotFoundError, ValidationError
from .hd_addressing import HDIdentityAddressor
from .hyperbolic_index import HyperbolicIndex
from .memory_model import (
    Identity,
    IdentityPreferences,
    IdentitySecurity,
    IdentityType,
    SystemState,
    utcnow,
)
from hypermnemo.utils import json_compat

IMMUTABLE_FIELDS = frozenset({"id", "address", "created_at", "updated_at", "parent_id"})
MUTABLE_FIELDS = frozenset({"name", "type", "capabilities", "preferences", "security"})


def identity_key(identity_id: str) -> str:
    """Index key for an identity point."""
    return f"identity:{identity_id}"


def _parse_type(value: Any) -> IdentityType:
    try:
        return IdentityType(value.value if isinstance(value, IdentityType) else value)
    except ValueError:
        raise ValidationError(
            "type", f"must be one of {[t.value for t in IdentityType]}", value
        )


def _parse_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("name", "must be a non-empty string", value)
    return value


def _parse_capabilities(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str) or not all(isinstance(c, str) for c in value):
        raise ValidationError("capabilities", "must be a list of strings", value)
    # Ordered set: first occurrence wins
    return list(dict.fromkeys(value))


def _merge_section(current, updates: Any, cls, field_name: str):
    if isinstance(updates, cls):
        section = copy.deepcopy(updates)
    elif isinstance(updates, Mapping):
        merged = current.to_dict()
        extensions = merged.pop("extensions")
        updates = dict(updates)
        extensions.update(updates.pop("extensions", None) or {})
        merged.update(updates)
        merged["extensions"] = extensions
        try:
            section = cls.from_dict(merged)
        except TypeError as exc:
            raise ValidationError(field_name, str(exc), updates)
    else:
        raise ValidationError(field_name, "must be a mapping", updates)
    if not json_compat.round_trips(section.to_dict()):
        raise ValidationError(
            field_name, "must be plain JSON (string keys, finite numbers, lists)", updates
        )
    return section


class IdentityRegistry:
    """Identity operations over one SystemState."""

    def __init__(self, state: SystemState, index: HyperbolicIndex, addressor: HDIdentityAddressor):
        self.state = state
        self.index = index
        self.addressor = addressor

    def create(self, config: Mapping[str, Any]) -> Identity:
        """
        Create an identity from a mapping with ``name``, ``type`` and
        optional ``id``, ``capabilities``, ``preferences``, ``security``,
        ``parent_id``.

        Raises:
            ValidationError: malformed fields.
            DuplicateIdError: explicit id already used (tombstoned ids included).
            IdentityNotFoundError: unknown parent.
            AddressCollisionError: derived coordinate already taken.
        """
        if not isinstance(config, Mapping):
            raise ValidationError("identity", "must be a mapping", config)
        unknown = set(config) - MUTABLE_FIELDS - {"id", "parent_id"}
        if unknown:
            raise ValidationError("identity", f"unknown fields {sorted(unknown)}")

        identity_id = config.get("id") or str(uuid.uuid4())
        if not isinstance(identity_id, str):
            raise ValidationError("id", "must be a string", identity_id)
        if identity_id in self.state.identities or identity_id in self.state.tombstones:
            raise DuplicateIdError("Identity", identity_id)

        name = _parse_name(config.get("name"))
        identity_type = _parse_type(config.get("type"))
        capabilities = _parse_capabilities(config.get("capabilities"))
        preferences = _merge_section(
            IdentityPreferences(), config.get("preferences") or {}, IdentityPreferences, "preferences"
        )
        security = _merge_section(
            IdentitySecurity(), config.get("security") or {}, IdentitySecurity, "security"
        )

        parent_id = config.get("parent_id")
        parent_path = ()
        if parent_id is not None:
            parent_path = self._require(parent_id).address.path

        address = self.addressor.get_or_assign_address(identity_id, parent_path)
        try:
            self.index.insert(identity_key(identity_id), address.as_array())
        except Exception:
            self.addressor.release(identity_id)
            raise

        now = utcnow()
        identity = Identity(
            id=identity_id,
            name=name,
            type=identity_type,
            address=address,
            capabilities=capabilities,
            preferences=preferences,
            security=security,
            parent_id=parent_id,
            created_at=now,
            updated_at=now,
        )
        self.state.identities[identity_id] = identity
        logger.info(f"Identity created: {identity_id} ({identity_type.value})")
        return copy.deepcopy(identity)

    def get(self, identity_id: str) -> Identity:
        return copy.deepcopy(self._require(identity_id))

    def update(self, identity_id: str, partial: Mapping[str, Any]) -> Identity:
        """
        Apply a partial update. ``id``, ``address``, ``created_at`` and
        ``parent_id`` are fixed at creation.
        """
        current = self._require(identity_id)
        if not isinstance(partial, Mapping):
            raise ValidationError("update", "must be a mapping", partial)
        immutable = sorted(set(partial) & IMMUTABLE_FIELDS)
        if immutable:
            raise ValidationError(immutable[0], "field is immutable")
        unknown = sorted(set(partial) - MUTABLE_FIELDS)
        if unknown:
            raise ValidationError("update", f"unknown fields {unknown}")

        changes: Dict[str, Any] = {}
        if "name" in partial:
            changes["name"] = _parse_name(partial["name"])
        if "type" in partial:
            changes["type"] = _parse_type(partial["type"])
        if "capabilities" in partial:
            changes["capabilities"] = _parse_capabilities(partial["capabilities"])
        if "preferences" in partial:
            changes["preferences"] = _merge_section(
                current.preferences, partial["preferences"], IdentityPreferences, "preferences"
            )
        if "security" in partial:
            changes["security"] = _merge_section(
                current.security, partial["security"], IdentitySecurity, "security"
            )

        updated = replace(copy.deepcopy(current), updated_at=utcnow(), **changes)
        self.state.identities[identity_id] = updated
        logger.debug(f"Identity updated: {identity_id} fields={sorted(changes)}")
        return copy.deepcopy(updated)

    def delete(self, identity_id: str) -> None:
        """Tombstone an identity; its id and coordinate are never reused."""
        identity = self._require(identity_id)
        self.index.remove(identity_key(identity_id))
        del self.state.identities[identity_id]
        self.state.tombstones[identity_id] = identity.address
        logger.info(f"Identity tombstoned: {identity_id}")

    def list(self) -> List[Identity]:
        return [copy.deepcopy(identity) for identity in self.state.identities.values()]

    def count(self) -> int:
        return len(self.state.identities)

    def _require(self, identity_id: str) -> Identity:
        identity: Optional[Identity] = self.state.identities.get(identity_id)
        if identity is None:
            raise IdentityNotFoundError(identity_id)
        return identity
