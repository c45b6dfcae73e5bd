"""
Storage providers for BeliefMesh.

Provides abstract interfaces and implementations for storage backends,
and the BeliefMesh stores built on top of them.
"""

from .provider import AbstractStorageProvider, StorageConfig
from .memory_provider import MemoryStorageProvider
from .redis_provider import RedisStorageProvider
from .stores import (
    ProviderBeliefStore,
    ProviderHistorySink,
    ProviderLockSource,
    ProviderStakeStore,
    ProviderStores,
    ProviderSubmissionStore,
)
from beliefmesh.exceptions import ValidationError


def create_provider(config: StorageConfig) -> AbstractStorageProvider:
    """Instantiate the provider named by ``config.backend``."""
    if config.backend == "memory":
        return MemoryStorageProvider(config)
    if config.backend == "redis":
        return RedisStorageProvider(config)
    raise ValidationError(f"Unknown storage backend: {config.backend}")


__all__ = [
    "AbstractStorageProvider",
    "StorageConfig",
    "MemoryStorageProvider",
    "RedisStorageProvider",
    "ProviderBeliefStore",
    "ProviderHistorySink",
    "ProviderLockSource",
    "ProviderStakeStore",
    "ProviderStores",
    "ProviderSubmissionStore",
    "create_provider",
]
