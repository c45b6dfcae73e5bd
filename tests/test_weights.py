"""Tests for the locked-stake weight provider."""

import pytest

from beliefmesh.exceptions import ValidationError
from beliefmesh.ledger.weights import LockedStakeWeightProvider, allocate
from beliefmesh.storage import MemoryStorageProvider, ProviderLockSource


class TestAllocate:
    def test_proportional_to_lock(self):
        allocation = allocate({"a": 300, "b": 100}, ["a", "b"])
        assert allocation.weights == {"a": 0.75, "b": 0.25}
        assert allocation.total_lock == 400

    def test_all_zero_gives_equal_weights(self):
        allocation = allocate({}, ["a", "b", "c", "d"])
        assert allocation.weights == {"a": 0.25, "b": 0.25, "c": 0.25, "d": 0.25}
        assert allocation.locks == {"a": 1, "b": 1, "c": 1, "d": 1}

    def test_positive_locks_floored(self):
        allocation = allocate({"a": 0, "b": 5}, ["a", "b"], min_lock=10)
        assert allocation.locks == {"a": 0, "b": 10}
        assert allocation.weights == {"a": 0.0, "b": 1.0}

    def test_negative_lock_rejected(self):
        with pytest.raises(ValidationError):
            allocate({"a": -1}, ["a"])

    def test_no_agents(self):
        with pytest.raises(ValidationError):
            allocate({}, [])


class TestLockedStakeWeightProvider:
    @pytest.mark.asyncio
    async def test_reads_locks_from_source(self):
        provider = MemoryStorageProvider()
        await provider.connect()
        locks = ProviderLockSource(provider)
        await locks.set_lock("b1", "a", 600)
        await locks.set_lock("b1", "b", 400)

        allocation = await LockedStakeWeightProvider(locks).compute_weights("b1", ["a", "b", "a"])

        assert allocation.weights == pytest.approx({"a": 0.6, "b": 0.4})
        assert allocation.locks == {"a": 600, "b": 400}

    @pytest.mark.asyncio
    async def test_unknown_agents_unlocked(self):
        provider = MemoryStorageProvider()
        locks = ProviderLockSource(provider)
        await locks.set_lock("b1", "a", 600)

        allocation = await LockedStakeWeightProvider(locks).compute_weights("b1", ["a", "z"])

        assert allocation.weights["z"] == 0.0
