"""
HD Identity Addressing
======================
Deterministic, hierarchical placement of identities in the Poincaré ball.

An address is derived from a root seed and a path of non-negative segments,
in the manner of hierarchical-deterministic wallets:

    I_0     = HMAC-SHA512(key=b"hypermnemo seed", root_seed)
    I_d     = HMAC-SHA512(key=chain_{d-1}, k_{d-1} || segment_d [|| entity_id])
    k_d     = I_d[:32]      -> seeds the direction noise of level d
    chain_d = I_d[32:]      -> keys the next level

Each level perturbs its parent's direction by a spread that shrinks with
depth, so children stay angularly close to their parent. The radius grows
with depth as ``max_radius * tanh(radius_step * depth)``: deeper paths sit
nearer the boundary, which is where hyperbolic space has room for the
exponential fan-out of a hierarchy.

Identical (root_seed, path, dimension, entity_id) always yield bit-identical
coordinates.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from .config import AddressingConfig
from .exceptions import AddressCollisionError, ValidationError
from .memory_model import HyperbolicAddress

MAX_SEGMENT = 2 ** 31
_ROOT_KEY = b"hypermnemo seed"


def validate_path(path: Sequence[int], max_depth: int) -> Tuple[int, ...]:
    """Check a derivation path and return it as a tuple."""
    path = tuple(path)
    if not 1 <= len(path) <= max_depth:
        raise ValidationError(
            "path", f"depth must be between 1 and {max_depth}, got {len(path)}", path
        )
    for segment in path:
        # bool is an int subclass but never a meaningful segment
        if isinstance(segment, bool) or not isinstance(segment, (int, np.integer)):
            raise ValidationError("path", "segments must be integers", path)
        if not 0 <= segment < MAX_SEGMENT:
            raise ValidationError("path", f"segment {segment} outside [0, 2^31)", path)
    return tuple(int(s) for s in path)


def entity_segment(entity_id: str) -> int:
    """Final path segment for an entity, taken from a hash of its id."""
    digest = hashlib.sha256(f"hypermnemo_entity_v1:{entity_id}".encode()).digest()
    return int.from_bytes(digest[:4], byteorder="big") & (MAX_SEGMENT - 1)


def derive_address(
    root_seed: str,
    path: Sequence[int],
    dimension: int,
    entity_id: Optional[str] = None,
    config: Optional[AddressingConfig] = None,
) -> HyperbolicAddress:
    """
    Derive the point for ``path`` under ``root_seed``.

    Args:
        root_seed: Root secret of the hierarchy.
        path: 1..max_depth segments, each in [0, 2^31).
        dimension: Dimension of the Poincaré ball.
        entity_id: Mixed into the final HMAC step when given.
        config: Radius/spread parameters. Defaults to AddressingConfig().

    Returns:
        HyperbolicAddress with the point and the validated path.

    Raises:
        ValidationError: invalid path or dimension.
    """
    config = config or AddressingConfig()
    if dimension < 2:
        raise ValidationError("dimension", "must be at least 2", dimension)
    path = validate_path(path, config.max_depth)

    digest = hmac.new(_ROOT_KEY, root_seed.encode(), hashlib.sha512).digest()
    key, chain = digest[:32], digest[32:]

    direction: Optional[np.ndarray] = None
    for depth, segment in enumerate(path, start=1):
        data = key + segment.to_bytes(4, byteorder="big")
        if entity_id is not None and depth == len(path):
            data += entity_id.encode()
        digest = hmac.new(chain, data, hashlib.sha512).digest()
        key, chain = digest[:32], digest[32:]

        rng = np.random.default_rng(int.from_bytes(key, byteorder="big"))
        noise = rng.standard_normal(dimension)
        noise /= np.linalg.norm(noise)
        if direction is None:
            direction = noise
        else:
            direction = direction + (config.branch_spread / depth) * noise
            direction /= np.linalg.norm(direction)

    radius = config.max_radius * np.tanh(config.radius_step * len(path))
    point = direction * radius
    return HyperbolicAddress(point=tuple(float(x) for x in point), path=path)


class HDIdentityAddressor:
    """
    Assigns identity addresses and keeps the registry of used coordinates.

    Addresses of tombstoned identities stay registered, so a deleted
    identity's coordinate is never handed to another entity.
    """

    def __init__(self, config: AddressingConfig, dimension: int):
        self.config = config
        self.dimension = dimension
        self._by_entity: Dict[str, HyperbolicAddress] = {}
        self._by_point: Dict[Tuple[float, ...], str] = {}

    def __len__(self) -> int:
        return len(self._by_entity)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._by_entity

    def address_of(self, entity_id: str) -> Optional[HyperbolicAddress]:
        return self._by_entity.get(entity_id)

    def path_for(self, entity_id: str, parent_path: Sequence[int] = ()) -> Tuple[int, ...]:
        base = tuple(parent_path) if parent_path else tuple(self.config.identity_root_path)
        return base + (entity_segment(entity_id),)

    def derive(self, entity_id: str, parent_path: Sequence[int] = ()) -> HyperbolicAddress:
        """Compute the address for ``entity_id`` without registering it."""
        return derive_address(
            self.config.root_seed,
            self.path_for(entity_id, parent_path),
            self.dimension,
            entity_id=entity_id,
            config=self.config,
        )

    def get_or_assign_address(
        self, entity_id: str, parent_path: Sequence[int] = ()
    ) -> HyperbolicAddress:
        """Return the entity's address, deriving and registering it on first use."""
        existing = self._by_entity.get(entity_id)
        if existing is not None:
            return existing
        address = self.derive(entity_id, parent_path)
        self._register(entity_id, address)
        logger.debug(f"Assigned address to '{entity_id}' at depth {address.depth}")
        return address

    def release(self, entity_id: str) -> None:
        """Forget an assignment that was never committed."""
        address = self._by_entity.pop(entity_id, None)
        if address is not None:
            self._by_point.pop(address.point, None)

    def rebuild(self, addresses: Iterable[Tuple[str, HyperbolicAddress]]) -> None:
        """
        Replace the registry with ``(entity_id, address)`` pairs, e.g. the
        live identities plus tombstones of a restored state.
        """
        by_entity: Dict[str, HyperbolicAddress] = {}
        by_point: Dict[Tuple[float, ...], str] = {}
        for entity_id, address in addresses:
            owner = by_point.get(address.point)
            if owner is not None and owner != entity_id:
                raise AddressCollisionError(entity_id, owner, address.path)
            by_entity[entity_id] = address
            by_point[address.point] = entity_id
        self._by_entity = by_entity
        self._by_point = by_point
        logger.debug(f"Address registry rebuilt with {len(by_entity)} entries")

    def _register(self, entity_id: str, address: HyperbolicAddress) -> None:
        owner = self._by_point.get(address.point)
        if owner is not None and owner != entity_id:
            raise AddressCollisionError(entity_id, owner, address.path)
        self._by_entity[entity_id] = address
        self._by_point[address.point] = entity_id
