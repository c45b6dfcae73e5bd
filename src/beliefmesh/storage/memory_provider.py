"""
In-memory storage provider.

Backs the CLI scenarios and the test suite. Plain values and hashes share
one keyspace, as they do in Redis, so deleting a key removes it whatever
it holds.
"""

from typing import Optional, Union

from beliefmesh.exceptions import StorageError

from .provider import AbstractStorageProvider, StorageConfig

_Entry = Union[str, dict[str, str]]


class MemoryStorageProvider(AbstractStorageProvider):
    """
    Dictionary-backed provider. Contents live as long as the instance.

    No method awaits between its read and its write, so claims and stake
    increments are atomic with respect to other coroutines on the loop.
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        super().__init__(config or StorageConfig(backend="memory"))
        self._keys: dict[str, _Entry] = {}
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    async def health_check(self) -> bool:
        return self._connected

    def _value(self, key: str) -> Optional[str]:
        entry = self._keys.get(key)
        if isinstance(entry, dict):
            raise StorageError(f"Key {key} holds a hash, not a value")
        return entry

    def _hash(self, key: str, create: bool = False) -> dict[str, str]:
        entry = self._keys.get(key)
        if entry is None:
            if not create:
                return {}
            entry = self._keys[key] = {}
        if not isinstance(entry, dict):
            raise StorageError(f"Key {key} holds a value, not a hash")
        return entry

    # Plain values: beliefs, stakes, claims

    async def get(self, key: str) -> Optional[str]:
        return self._value(key)

    async def set(self, key: str, value: str) -> bool:
        self._value(key)
        self._keys[key] = value
        return True

    async def set_if_absent(self, key: str, value: str) -> bool:
        if key in self._keys:
            return False
        self._keys[key] = value
        return True

    async def delete(self, key: str) -> bool:
        return self._keys.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return key in self._keys

    async def incrby(self, key: str, amount: int) -> int:
        balance = int(self._value(key) or "0") + amount
        self._keys[key] = str(balance)
        return balance

    async def mget(self, keys: list[str]) -> list[Optional[str]]:
        return [self._value(key) for key in keys]

    # Hashes: submissions, locks, history, events

    async def hget(self, key: str, field: str) -> Optional[str]:
        return self._hash(key).get(field)

    async def hset(self, key: str, field: str, value: str) -> bool:
        self._hash(key, create=True)[field] = value
        return True

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hash(key))

    async def hdel(self, key: str, field: str) -> bool:
        fields = self._hash(key)
        if field not in fields:
            return False
        del fields[field]
        if not fields:
            del self._keys[key]
        return True
