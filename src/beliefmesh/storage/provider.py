"""
Abstract Storage Provider Interface.

Defines the contract that all storage backends must implement. The
BeliefMesh stores in :mod:`beliefmesh.storage.stores` are written against
this interface only.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    """Configuration for storage provider."""

    backend: str = Field(default="memory", description="Storage backend type: memory or redis")
    key_prefix: str = Field(default="beliefmesh", min_length=1, description="Namespace for all keys")
    pool_size: int = Field(default=10, ge=1, le=100, description="Connection pool size")
    timeout_seconds: int = Field(default=30, ge=1, le=300, description="Operation timeout")

    # Redis-specific
    redis_host: Optional[str] = Field(default="localhost")
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_db: int = Field(default=0, ge=0)
    redis_password: Optional[str] = None
    redis_ssl: bool = False


class AbstractStorageProvider(ABC):
    """
    Abstract storage provider.

    Supports:
    - Key-value operations, including set-if-absent for claims
    - Hash operations (submissions, locks, history)
    - Atomic increments (stake balances)
    """

    def __init__(self, config: StorageConfig):
        """Initialize storage provider with configuration."""
        self.config = config

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to storage backend."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to storage backend."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage backend is healthy."""

    # Key-Value Operations

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Get value by key."""

    @abstractmethod
    async def set(self, key: str, value: str) -> bool:
        """Set value."""

    @abstractmethod
    async def set_if_absent(self, key: str, value: str) -> bool:
        """Set value only if *key* does not exist. Returns whether it was set."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if key exists."""

    # Hash Operations

    @abstractmethod
    async def hget(self, key: str, field: str) -> Optional[str]:
        """Get hash field value."""

    @abstractmethod
    async def hset(self, key: str, field: str, value: str) -> bool:
        """Set hash field value."""

    @abstractmethod
    async def hgetall(self, key: str) -> dict[str, str]:
        """Get all hash fields."""

    @abstractmethod
    async def hdel(self, key: str, field: str) -> bool:
        """Delete hash field."""

    # Atomic Operations

    @abstractmethod
    async def incrby(self, key: str, amount: int) -> int:
        """Increment value by amount. Returns new value."""

    # Batch Operations

    @abstractmethod
    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        """Get multiple values."""
