"""
Tests for the training reservoir.

The reservoir must never hold more than ``per_channel_cap`` spikes for a
channel or ``capacity`` spikes in total, however the spikes arrive.
"""
from __future__ import annotations

import pickle
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from gmsort.reservoir import TrainingReservoir, by_channel
from gmsort.types import SpikeWaveform


def spikes_on(channels, n_samples=8):
    return [SpikeWaveform(ch, i, np.full(n_samples, float(i))) for i, ch in enumerate(channels)]


class TestHoarding:

    def test_admits_until_cap(self):
        reservoir = TrainingReservoir(2, per_channel_cap=3, capacity=100)
        admitted = reservoir.hoard(spikes_on([0] * 5 + [1] * 2))
        assert admitted == 5
        assert reservoir.counts() == {0: 3, 1: 2}
        assert reservoir.is_full(0)
        assert not reservoir.is_full(1)

    def test_first_spikes_are_kept(self):
        reservoir = TrainingReservoir(1, per_channel_cap=2, capacity=100)
        spikes = spikes_on([0, 0, 0])
        reservoir.hoard(spikes)
        assert reservoir.snapshot() == tuple(spikes[:2])

    def test_total_capacity(self):
        reservoir = TrainingReservoir(3, per_channel_cap=10, capacity=4)
        assert reservoir.hoard(spikes_on([0, 1, 2] * 3)) == 4
        assert len(reservoir) == 4

    def test_unknown_channel_dropped(self):
        reservoir = TrainingReservoir(2, per_channel_cap=5, capacity=10)
        assert reservoir.hoard(spikes_on([0, 7, -1, 1])) == 2
        assert reservoir.counts() == {0: 1, 1: 1}

    def test_snapshot_unaffected_by_later_hoarding(self):
        reservoir = TrainingReservoir(1, per_channel_cap=10, capacity=10)
        reservoir.hoard(spikes_on([0, 0]))
        snapshot = reservoir.snapshot()
        reservoir.hoard(spikes_on([0]))
        assert len(snapshot) == 2
        assert len(reservoir) == 3

    def test_clear(self):
        reservoir = TrainingReservoir(2, per_channel_cap=5, capacity=10)
        reservoir.hoard(spikes_on([0, 1, 1]))
        reservoir.clear()
        assert len(reservoir) == 0
        assert reservoir.counts() == {0: 0, 1: 0}

    @pytest.mark.parametrize("kwargs", [
        dict(n_channels=0),
        dict(n_channels=2, per_channel_cap=0),
        dict(n_channels=2, capacity=0),
    ])
    def test_invalid_construction(self, kwargs):
        with pytest.raises(ValueError):
            TrainingReservoir(**kwargs)

    @settings(max_examples=50, deadline=None)
    @given(
        batches=st.lists(st.lists(st.integers(min_value=0, max_value=3), max_size=40), max_size=8),
        cap=st.integers(min_value=1, max_value=15),
    )
    def test_cap_invariant(self, batches, cap):
        reservoir = TrainingReservoir(4, per_channel_cap=cap, capacity=10_000)
        offered = np.zeros(4, dtype=int)
        for batch in batches:
            reservoir.hoard(spikes_on(batch))
            for ch in batch:
                offered[ch] += 1
        for ch in range(4):
            assert reservoir.count(ch) == min(cap, offered[ch])
        assert len(reservoir) == sum(reservoir.counts().values())

    def test_concurrent_hoarding(self):
        reservoir = TrainingReservoir(4, per_channel_cap=50, capacity=10_000)
        batches = [spikes_on([i % 4] * 20) for i in range(40)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            admitted = sum(pool.map(reservoir.hoard, batches))
        assert admitted == 200
        assert reservoir.counts() == {ch: 50 for ch in range(4)}


class TestPersistence:

    def test_pickle_round_trip(self):
        reservoir = TrainingReservoir(2, per_channel_cap=5, capacity=10)
        reservoir.hoard(spikes_on([0, 1, 1]))
        restored = pickle.loads(pickle.dumps(reservoir))
        assert restored.counts() == {0: 1, 1: 2}
        assert restored.hoard(spikes_on([0])) == 1


def test_by_channel_keeps_arrival_order():
    spikes = spikes_on([1, 0, 1, 1, 0])
    grouped = by_channel(spikes)
    assert sorted(grouped) == [0, 1]
    assert [s.timestamp for s in grouped[1]] == [0, 2, 3]
    assert [s.timestamp for s in grouped[0]] == [1, 4]
