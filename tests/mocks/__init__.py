"""
Mock Infrastructure for HyperMnemo Tests
========================================
In-memory implementations of the storage and security collaborators for
offline testing.

Usage:
    from tests.mocks import MockStorage, MockSecurityGate
"""

from .mock_security import MockSecurityGate
from .mock_storage import MockStorage

__all__ = ["MockStorage", "MockSecurityGate"]
