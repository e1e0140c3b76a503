"""
HyperMnemo - Hyperbolic Memory & Identity Addressing
====================================================

Stores memories across five semantic tiers and places every identity and
memory at a point of a Poincaré ball, so hierarchy becomes geometry:
sub-identities cluster around their parent and related memories sit close
together.

Main Packages:
    - core: Engine, hyperbolic index, HD addressing, consolidation,
      compression, checkpoints and persistence
    - utils: JSON serialization helpers

Quick Start:
    from hypermnemo.core import HyperMnemoEngine

    engine = HyperMnemoEngine(storage=storage, security_gate=gate)
    agent = await engine.create_identity({"name": "scout", "type": "ai"})
    memory_id = await engine.store_memory({"tier": "episodic", "content": "Met the team"})
    results = await engine.retrieve_memory({"query_text": "team", "limit": 5})

Version: 1.0.0
"""

__version__ = "1.0.0"
