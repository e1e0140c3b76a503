"""
HyperMnemo Utilities Package
============================
Serialization helpers shared by the core.

Example:
    from hypermnemo.utils.json_compat import dumps_bytes, loads
"""
