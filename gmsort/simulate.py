"""
Synthetic spike snippets with known unit membership.

Used by the test-suite and the command-line demo. Every generator takes a
seeded ``numpy.random.Generator`` so the output is reproducible.
"""
from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np

from gmsort.types import SpikeWaveform

N_PRE = 19
N_POST = 30
SNIPPET_LENGTH = N_PRE + N_POST + 1


def make_spike_template(
    trough: float,
    ahp: float,
    *,
    n_samples: int = SNIPPET_LENGTH,
    peak_sample: int = N_PRE,
    ahp_delay: int = 10,
    trough_width: float = 2.0,
    ahp_width: float = 4.0,
) -> np.ndarray:
    """Biphasic extracellular spike: a sharp trough at ``peak_sample`` and a slower after-hyperpolarization.

    Args:
        trough: Signed voltage at the peak sample (negative for a downward spike).
        ahp: Voltage at the centre of the after-hyperpolarization.
        n_samples: Snippet length.
        peak_sample: Index of the trough.
        ahp_delay: Samples from the trough to the AHP centre.
        trough_width: Gaussian width of the trough, in samples.
        ahp_width: Gaussian width of the AHP, in samples.

    Returns:
        1D float64 array of length ``n_samples``.
    """
    t = np.arange(n_samples, dtype=np.float64)
    trough_shape = np.exp(-0.5 * ((t - peak_sample) / trough_width) ** 2)
    ahp_shape = np.exp(-0.5 * ((t - peak_sample - ahp_delay) / ahp_width) ** 2)
    return trough * trough_shape + ahp * ahp_shape


def two_unit_templates(n_samples: int = SNIPPET_LENGTH, peak_sample: int = N_PRE) -> List[np.ndarray]:
    """A large and a small unit that separate well on peak and AHP amplitude."""
    return [
        make_spike_template(-80.0, 30.0, n_samples=n_samples, peak_sample=peak_sample),
        make_spike_template(-40.0, 10.0, n_samples=n_samples, peak_sample=peak_sample),
    ]


def simulate_spikes(
    channel: int,
    n_spikes: int,
    templates: Sequence[np.ndarray],
    rng: np.random.Generator,
    *,
    noise_std: float = 4.0,
    jitter: float = 0.03,
    weights: Optional[Sequence[float]] = None,
    start_timestamp: int = 0,
    mean_interval: int = 250,
    threshold: float = -20.0,
) -> Tuple[List[SpikeWaveform], np.ndarray]:
    """Draw spikes from ``templates`` with white noise and small amplitude jitter.

    Returns:
        (spikes, labels) where ``labels[i]`` is the index of the template
        spike ``i`` was drawn from.
    """
    templates = [np.asarray(t, dtype=np.float64) for t in templates]
    if weights is None:
        weights = np.full(len(templates), 1.0 / len(templates))
    labels = rng.choice(len(templates), size=n_spikes, p=np.asarray(weights, dtype=np.float64))
    gains = 1.0 + jitter * rng.standard_normal(n_spikes)
    noise = noise_std * rng.standard_normal((n_spikes, len(templates[0])))
    intervals = rng.integers(mean_interval // 2, mean_interval * 3 // 2 + 1, size=n_spikes)
    timestamps = start_timestamp + np.cumsum(intervals)

    spikes = [
        SpikeWaveform(
            channel=channel,
            timestamp=int(timestamps[i]),
            samples=gains[i] * templates[labels[i]] + noise[i],
            threshold=threshold,
        )
        for i in range(n_spikes)
    ]
    return spikes, labels


def simulate_array(
    spikes_per_channel: Sequence[int],
    rng: np.random.Generator,
    **kwargs,
) -> Tuple[List[SpikeWaveform], np.ndarray]:
    """Two-unit spikes on every channel, ``spikes_per_channel[c]`` of them on channel ``c``."""
    templates = two_unit_templates()
    all_spikes: List[SpikeWaveform] = []
    all_labels = []
    for channel, n_spikes in enumerate(spikes_per_channel):
        if n_spikes == 0:
            continue
        spikes, labels = simulate_spikes(channel, n_spikes, templates, rng, **kwargs)
        all_spikes.extend(spikes)
        all_labels.append(labels)
    labels = np.concatenate(all_labels) if all_labels else np.empty(0, dtype=np.int64)
    return all_spikes, labels
