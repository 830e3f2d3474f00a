"""
Durable key-value storage backing the snapshot mirror and credential store.

Values are strings (callers serialize to JSON). All backends are best-effort:
read errors are logged and reported as a miss, write errors are logged and
reported as False, so that a broken mirror never breaks a refresh.
"""

import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import redis
from redis.connection import ConnectionPool

from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)


class KeyValueStorage(ABC):
    """Minimal string key-value store interface."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None if missing."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> bool:
        """Store a value. Returns True if successful."""
        pass

    @abstractmethod
    def remove(self, key: str) -> bool:
        """Remove a key. Returns True if something was removed."""
        pass


class MemoryStorage(KeyValueStorage):
    """Process-local storage, used in tests and when persistence is disabled."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> bool:
        self._data[key] = value
        return True

    def remove(self, key: str) -> bool:
        return self._data.pop(key, None) is not None


class FileStorage(KeyValueStorage):
    """
    One file per key under a directory.

    Writes go to a temporary file that is then renamed over the target, so a
    crash mid-write leaves the previous value intact.
    """

    _UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        logger.debug(f"File storage initialized at {self.directory}")

    def _path(self, key: str) -> Path:
        return self.directory / f"{self._UNSAFE.sub('_', key)}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Storage read error for {key}: {e}")
            return None

    def set(self, key: str, value: str) -> bool:
        path = self._path(key)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".tmp-")
        except OSError as e:
            logger.error(f"Storage write error for {key}: {e}")
            return False

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(value)
            os.replace(tmp_name, path)
            return True
        except OSError as e:
            logger.error(f"Storage write error for {key}: {e}")
            return False
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def remove(self, key: str) -> bool:
        try:
            self._path(key).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Storage remove error for {key}: {e}")
            return False


class RedisStorage(KeyValueStorage):
    """
    Redis-backed storage with connection pooling.
    """

    def __init__(self, redis_url: Optional[str] = None, namespace: str = "sellercloud",
                 max_connections: int = 20, client: Optional[redis.Redis] = None):
        """
        Initialize Redis storage.

        Args:
            redis_url: Redis connection URL (default from env REDIS_URL)
            namespace: Prefix for every stored key
            max_connections: Maximum pool connections
            client: Pre-built client (tests)
        """
        self.namespace = namespace

        if client is not None:
            self.client = client
        else:
            self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
            self.pool = ConnectionPool.from_url(
                self.redis_url,
                max_connections=max_connections,
                decode_responses=True
            )
            self.client = redis.Redis(connection_pool=self.pool)
            logger.info(f"Redis storage initialized (url={self.redis_url}, pool={max_connections})")

    def _make_key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[str]:
        redis_key = self._make_key(key)
        try:
            value = self.client.get(redis_key)
        except redis.RedisError as e:
            logger.error(f"Storage get error for {redis_key}: {e}")
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def set(self, key: str, value: str) -> bool:
        redis_key = self._make_key(key)
        try:
            self.client.set(redis_key, value)
            return True
        except redis.RedisError as e:
            logger.error(f"Storage set error for {redis_key}: {e}")
            return False

    def remove(self, key: str) -> bool:
        redis_key = self._make_key(key)
        try:
            return self.client.delete(redis_key) > 0
        except redis.RedisError as e:
            logger.error(f"Storage delete error for {redis_key}: {e}")
            return False


def create_storage(cache_config) -> KeyValueStorage:
    """Build the storage backend selected in the cache configuration."""
    backend = cache_config.storage_backend
    if backend == "redis":
        return RedisStorage(cache_config.redis_url)
    if backend == "file":
        return FileStorage(cache_config.snapshot_dir)
    return MemoryStorage()
