"""
KV Cache Module

Typed key/value cache entries addressed by (layer, role).
"""

from .kv_types import KVCache, KVRole, KVSlot, validate_kv_compatibility

__all__ = ["KVCache", "KVRole", "KVSlot", "validate_kv_compatibility"]
