"""
Durable key-value storage for SellerCloud.
"""

from .storage import KeyValueStorage, MemoryStorage, FileStorage, RedisStorage, create_storage

__all__ = ["KeyValueStorage", "MemoryStorage", "FileStorage", "RedisStorage", "create_storage"]
