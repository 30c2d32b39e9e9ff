from __future__ import annotations

import logging

import numpy as np
import pytest

from gmsort import SortingConfiguration, SpikeSorter, TrainingParameters
from gmsort.simulate import simulate_array, simulate_spikes, two_unit_templates

logging.getLogger("gmsort").setLevel(logging.DEBUG)

# Three well-populated channels and one that never reaches min_spikes.
TRAINING_COUNTS = [600, 600, 600, 10]


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def templates():
    return two_unit_templates()


@pytest.fixture
def dual_config() -> SortingConfiguration:
    return SortingConfiguration(
        n_channels=4,
        max_k=4,
        min_spikes=500,
        p_value=0.01,
        projection_mode='dual_inflection',
        max_training_spikes_per_channel=600,
    )


@pytest.fixture
def params() -> TrainingParameters:
    return TrainingParameters(peak_sample=19, second_sample_delay_ms=0.4, sample_rate_hz=25000.0, random_seed=7)


@pytest.fixture
def training_spikes():
    spikes, labels = simulate_array(TRAINING_COUNTS, np.random.default_rng(1))
    return spikes, labels


@pytest.fixture
def fresh_batch():
    """Held-out spikes from the same two units on the three sortable channels."""
    return simulate_array([300, 300, 300], np.random.default_rng(2), start_timestamp=10**7)


@pytest.fixture
def trained_sorter(dual_config, params, training_spikes) -> SpikeSorter:
    sorter = SpikeSorter(dual_config)
    sorter.hoard_spikes(training_spikes[0])
    sorter.train(params)
    yield sorter
    sorter.shutdown()


@pytest.fixture
def channel_spikes(rng, templates):
    """A single channel's worth of two-unit spikes."""
    return simulate_spikes(0, 400, templates, rng)
