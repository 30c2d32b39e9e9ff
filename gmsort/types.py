"""Data containers: SpikeWaveform, UnitDictionary and TrainingReport."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger("gmsort")


def _freeze_samples(samples) -> np.ndarray:
    """Return a read-only, C-contiguous float64 copy of a 1-D snippet."""
    arr = np.array(samples, dtype=np.float64, copy=True, order="C")
    if arr.ndim != 1:
        raise ValueError(f"samples must be 1D, got {arr.ndim}D")
    if arr.size == 0:
        raise ValueError("samples must not be empty")
    arr.setflags(write=False)
    return arr


@dataclass(eq=False)
class SpikeWaveform:
    """A detected spike snippet handed over by spike detection.

    Everything but ``unit`` is read-only once constructed. ``unit`` is 0 until
    the sorter assigns an absolute unit id.
    """
    channel: int
    timestamp: int                      # Sample index of the threshold crossing
    samples: np.ndarray                 # numPre + numPost + 1 samples
    threshold: float = 0.0
    unit: int = 0

    def __post_init__(self) -> None:
        self.samples = _freeze_samples(self.samples)
        self.channel = int(self.channel)
        self.timestamp = int(self.timestamp)
        self.threshold = float(self.threshold)
        self.unit = int(self.unit)

    @property
    def n_samples(self) -> int:
        return self.samples.shape[0]


@dataclass(frozen=True)
class UnitAddress:
    """Position of a unit on the array: channel and 1-based unit on that channel."""
    channel: int
    local_unit: int


class UnitDictionary:
    """Bidirectional map between absolute unit ids and (channel, local unit).

    Absolute ids are contiguous, start at 1 and are handed out in the order
    channels are added. Id 0 means "no unit" on every channel and is never
    stored.
    """

    NOISE = 0

    def __init__(self) -> None:
        self._addresses: List[UnitAddress] = []
        self._ids: Dict[UnitAddress, int] = {}
        self._starts: Dict[int, int] = {}

    def add_channel(self, channel: int, n_units: int) -> int:
        """Allocate ``n_units`` ids for ``channel``. Returns the channel's start offset."""
        if channel in self._starts:
            raise ValueError(f"Channel {channel} already has units allocated")
        if n_units < 1:
            raise ValueError("n_units must be positive")
        start = len(self._addresses)
        self._starts[channel] = start
        for local in range(1, n_units + 1):
            address = UnitAddress(channel, local)
            self._addresses.append(address)
            self._ids[address] = start + local
        return start

    def address(self, unit_id: int) -> UnitAddress:
        """Channel and local unit for an absolute id."""
        if not 1 <= unit_id <= len(self._addresses):
            raise KeyError(unit_id)
        return self._addresses[unit_id - 1]

    def unit_id(self, channel: int, local_unit: int) -> int:
        """Absolute id for a (channel, local unit) pair; local unit 0 maps to noise."""
        if local_unit == 0:
            return self.NOISE
        return self._ids[UnitAddress(channel, local_unit)]

    def channel_of(self, unit_id: int) -> int:
        return self.address(unit_id).channel

    def start_index(self, channel: int) -> int:
        return self._starts[channel]

    def units_on_channel(self, channel: int) -> List[int]:
        if channel not in self._starts:
            return []
        return [uid for uid, addr in self.items() if addr.channel == channel]

    def items(self) -> Iterator[Tuple[int, UnitAddress]]:
        for i, address in enumerate(self._addresses):
            yield i + 1, address

    @property
    def channels(self) -> List[int]:
        return list(self._starts)

    def __len__(self) -> int:
        return len(self._addresses)

    def __iter__(self) -> Iterator[int]:
        return iter(range(1, len(self._addresses) + 1))

    def __contains__(self, unit_id: object) -> bool:
        return isinstance(unit_id, (int, np.integer)) and 1 <= unit_id <= len(self._addresses)

    def to_dataframe(self) -> pd.DataFrame:
        """Unit table with one row per absolute unit id."""
        rows = [
            {'unit_id': uid, 'channel': addr.channel, 'local_unit': addr.local_unit}
            for uid, addr in self.items()
        ]
        return pd.DataFrame(rows, columns=['unit_id', 'channel', 'local_unit'])


@dataclass
class TrainingReport:
    """Outcome of one training pass."""
    channels_sorted: List[int] = field(default_factory=list)
    channels_insufficient: List[int] = field(default_factory=list)   # Fewer than min_spikes
    channels_failed: List[int] = field(default_factory=list)         # No valid mixture fit
    units_per_channel: Dict[int, int] = field(default_factory=dict)
    total_units: int = 0
    execution_time: float = 0.0
    errors: Dict[int, str] = field(default_factory=dict)

    @property
    def sortable(self) -> bool:
        """False when the pass left nothing to sort."""
        return len(self.channels_sorted) > 0

    def summary(self) -> Dict[str, Any]:
        return {
            'sortable': self.sortable,
            'channels_sorted': len(self.channels_sorted),
            'channels_insufficient': len(self.channels_insufficient),
            'channels_failed': len(self.channels_failed),
            'total_units': self.total_units,
            'execution_time': self.execution_time,
        }

    def failure_reason(self, channel: int) -> Optional[str]:
        return self.errors.get(channel)
