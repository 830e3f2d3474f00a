"""
Marketplace connection and credential storage.

Credentials are stored Fernet-encrypted: one storage key per user holds every
marketplace connection of that user, with the secret part encrypted and the
sync bookkeeping (last sync time, record counts) in clear.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sellercloud.cache.storage import KeyValueStorage
from sellercloud.marketplaces.base import MarketplaceCredentials
from sellercloud.marketplaces.factory import credentials_from_dict, ensure_supported
from sellercloud.security.encryption import CredentialEncryptor
from sellercloud.utils.exceptions import CredentialError
from sellercloud.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass
class MarketplaceConnection:
    """A user's connection to one marketplace."""

    user_id: str
    marketplace: str
    credentials: MarketplaceCredentials
    is_active: bool = True
    connected_at: Optional[str] = None
    last_sync_at: Optional[str] = None
    products_count: Optional[int] = None
    orders_count: Optional[int] = None

    def to_public_dict(self) -> Dict[str, Any]:
        """Connection summary without secrets."""
        return {
            "marketplace": self.marketplace,
            "is_active": self.is_active,
            "connected_at": self.connected_at,
            "last_sync_at": self.last_sync_at,
            "products_count": self.products_count,
            "orders_count": self.orders_count,
        }


class CredentialStore(ABC):
    """Lookup of marketplace connections, as used by the fetch gateway."""

    @abstractmethod
    async def get_connection(self, user_id: str, marketplace: str) -> Optional[MarketplaceConnection]:
        """Return the user's connection to ``marketplace`` or None."""
        pass

    @abstractmethod
    async def update_last_sync(self, user_id: str, marketplace: str, synced_at: datetime,
                               records: int, data_type: Optional[str] = None) -> None:
        """Record a successful sync."""
        pass

    @abstractmethod
    async def list_connected(self, user_id: str) -> List[MarketplaceConnection]:
        """All active connections of the user."""
        pass


class EncryptedCredentialStore(CredentialStore):
    """
    Credential store over a ``KeyValueStorage`` with Fernet-encrypted secrets.
    """

    KEY_PREFIX = "sellercloud:credentials"

    def __init__(self, storage: KeyValueStorage, encryptor: CredentialEncryptor):
        self.storage = storage
        self.encryptor = encryptor

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}:{user_id}"

    def _load(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        raw = self.storage.get(self._key(user_id))
        if raw is None:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse stored connections for user {user_id}: {e}")
            raise CredentialError("Invalid credentials format", {"user_id": user_id})
        if not isinstance(data, dict):
            raise CredentialError("Invalid credentials format", {"user_id": user_id})
        return data

    def _save(self, user_id: str, data: Dict[str, Dict[str, Any]]) -> None:
        if not self.storage.set(self._key(user_id), json.dumps(data)):
            raise CredentialError("Failed to persist credentials", {"user_id": user_id})

    def _to_connection(self, user_id: str, marketplace: str, entry: Dict[str, Any]) -> MarketplaceConnection:
        try:
            secret = json.loads(self.encryptor.decrypt(entry["token"]))
        except (KeyError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {marketplace} credentials for user {user_id}: {e}")
            raise CredentialError("Invalid credentials format", {"user_id": user_id, "marketplace": marketplace})

        return MarketplaceConnection(
            user_id=user_id,
            marketplace=marketplace,
            credentials=credentials_from_dict(marketplace, secret),
            is_active=entry.get("is_active", True),
            connected_at=entry.get("connected_at"),
            last_sync_at=entry.get("last_sync_at"),
            products_count=entry.get("products_count"),
            orders_count=entry.get("orders_count"),
        )

    def connect(self, user_id: str, marketplace: str, credentials: MarketplaceCredentials) -> MarketplaceConnection:
        """
        Store (or replace) credentials for a marketplace.

        Args:
            user_id: Owner of the connection
            marketplace: Marketplace name
            credentials: Credentials matching the marketplace

        Returns:
            The stored connection
        """
        ensure_supported(marketplace)
        data = self._load(user_id)
        data[marketplace] = {
            "token": self.encryptor.encrypt(json.dumps(asdict(credentials))),
            "is_active": True,
            "connected_at": datetime.now(timezone.utc).isoformat(),
            "last_sync_at": None,
        }
        self._save(user_id, data)
        logger.info(f"Connected {marketplace} for user {user_id}")
        return self._to_connection(user_id, marketplace, data[marketplace])

    def disconnect(self, user_id: str, marketplace: str) -> bool:
        """Remove a marketplace connection. Returns True if one existed."""
        data = self._load(user_id)
        if data.pop(marketplace, None) is None:
            return False
        self._save(user_id, data)
        logger.info(f"Disconnected {marketplace} for user {user_id}")
        return True

    def rotate(self, user_id: str) -> int:
        """Re-encrypt all of a user's credentials under the primary key."""
        data = self._load(user_id)
        for entry in data.values():
            entry["token"] = self.encryptor.reencrypt(entry["token"])
        if data:
            self._save(user_id, data)
        return len(data)

    async def get_connection(self, user_id: str, marketplace: str) -> Optional[MarketplaceConnection]:
        entry = self._load(user_id).get(marketplace)
        if entry is None:
            return None
        return self._to_connection(user_id, marketplace, entry)

    async def list_connected(self, user_id: str) -> List[MarketplaceConnection]:
        return [
            self._to_connection(user_id, marketplace, entry)
            for marketplace, entry in self._load(user_id).items()
            if entry.get("is_active", True)
        ]

    async def update_last_sync(self, user_id: str, marketplace: str, synced_at: datetime,
                               records: int, data_type: Optional[str] = None) -> None:
        data = self._load(user_id)
        entry = data.get(marketplace)
        if entry is None:
            logger.debug(f"No {marketplace} connection for user {user_id}, skipping last-sync update")
            return

        entry["last_sync_at"] = synced_at.isoformat()
        if data_type in ("products", "orders"):
            entry[f"{data_type}_count"] = records
        self._save(user_id, data)
