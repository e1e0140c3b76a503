"""
Collaborator contracts consumed by the engine.

The core never implements storage media or cryptography itself: it talks to
whatever objects satisfy these protocols.
"""

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class StorageBackend(Protocol):
    """Opaque byte storage keyed by string."""

    async def get(self, key: str) -> Optional[bytes]:
        """Bytes stored under ``key``; None (or KeyError) when absent."""
        ...

    async def put(self, key: str, data: bytes) -> None:
        ...


@runtime_checkable
class SecurityGate(Protocol):
    """Authentication, authorization and at-rest encryption."""

    async def authenticate(self, credentials: Any) -> Any:
        ...

    async def authorize(self, identity_id: str, resource: str, action: str) -> bool:
        ...

    async def encrypt(self, data: bytes) -> bytes:
        ...

    async def decrypt(self, data: bytes) -> bytes:
        ...
