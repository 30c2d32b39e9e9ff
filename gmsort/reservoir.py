from __future__ import annotations

import logging
from collections import defaultdict
from threading import RLock
from typing import Dict, Iterable, List, Sequence, Tuple

from gmsort.types import SpikeWaveform

logger = logging.getLogger("gmsort")


class TrainingReservoir:
    """
    Thread-safe, append-only store of training spikes.

    Spikes are admitted until their channel reaches ``per_channel_cap`` or the
    reservoir holds ``capacity`` spikes in total. There is no eviction: the
    first spikes seen on a channel are the ones that train it, which keeps
    fast-firing channels from crowding out slow ones.
    """

    def __init__(self, n_channels: int, per_channel_cap: int = 500, capacity: int = 25000) -> None:
        if n_channels <= 0:
            raise ValueError("n_channels must be positive")
        if per_channel_cap <= 0 or capacity <= 0:
            raise ValueError("per_channel_cap and capacity must be positive")
        self._n_channels = int(n_channels)
        self._per_channel_cap = int(per_channel_cap)
        self._capacity = int(capacity)
        self._spikes: List[SpikeWaveform] = []
        self._counts: List[int] = [0] * self._n_channels
        self._lock = RLock()

    @property
    def n_channels(self) -> int:
        return self._n_channels

    @property
    def per_channel_cap(self) -> int:
        return self._per_channel_cap

    @property
    def capacity(self) -> int:
        return self._capacity

    def hoard(self, spikes: Iterable[SpikeWaveform]) -> int:
        """Admit spikes while their channel is under its cap. Returns how many were kept."""
        admitted = 0
        with self._lock:
            for spike in spikes:
                channel = spike.channel
                if not 0 <= channel < self._n_channels:
                    logger.debug(f"Dropping training spike on unknown channel {channel}")
                    continue
                if len(self._spikes) >= self._capacity:
                    break
                if self._counts[channel] >= self._per_channel_cap:
                    continue
                self._spikes.append(spike)
                self._counts[channel] += 1
                admitted += 1
        return admitted

    def count(self, channel: int) -> int:
        with self._lock:
            return self._counts[channel]

    def counts(self) -> Dict[int, int]:
        """Spikes collected so far on every channel."""
        with self._lock:
            return {ch: n for ch, n in enumerate(self._counts)}

    def is_full(self, channel: int) -> bool:
        return self.count(channel) >= self._per_channel_cap

    def snapshot(self) -> Tuple[SpikeWaveform, ...]:
        """Immutable copy of the current contents, safe to iterate while hoarding continues."""
        with self._lock:
            return tuple(self._spikes)

    def clear(self) -> None:
        with self._lock:
            self._spikes.clear()
            self._counts = [0] * self._n_channels

    def __len__(self) -> int:
        with self._lock:
            return len(self._spikes)

    # Locks cannot be pickled; recreate on load.
    def __getstate__(self):
        state = self.__dict__.copy()
        del state['_lock']
        with self._lock:
            state['_spikes'] = list(self._spikes)
            state['_counts'] = list(self._counts)
        return state

    def __setstate__(self, state) -> None:
        self.__dict__.update(state)
        self._lock = RLock()


def by_channel(spikes: Sequence[SpikeWaveform]) -> Dict[int, List[SpikeWaveform]]:
    """Group spikes by channel, keeping arrival order within each channel."""
    grouped: Dict[int, List[SpikeWaveform]] = defaultdict(list)
    for spike in spikes:
        grouped[spike.channel].append(spike)
    return dict(grouped)


__all__ = ["TrainingReservoir", "by_channel"]
