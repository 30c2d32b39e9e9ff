"""Feature projection: inflection sampling, PCA and Haar wavelet features."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np
import pywt

from gmsort.config import (
    AnalysisMethod,
    ProjectionMode,
    SortingConfiguration,
    TrainingParameters,
)
from gmsort.errors import ChannelFitError, ConfigurationError, PreconditionError
from gmsort.linalg import PrincipalComponentAnalysis
from gmsort.types import SpikeWaveform

logger = logging.getLogger("gmsort")


# ---------------------------------------------------------------------------
# Snippet stacking
# ---------------------------------------------------------------------------

def stack_snippets(spikes: Sequence[SpikeWaveform]) -> np.ndarray:
    """Stack same-length waveform snippets into an (n_spikes, n_samples) matrix."""
    if len(spikes) == 0:
        raise ValueError("cannot project an empty list of spikes")
    lengths = {spike.n_samples for spike in spikes}
    if len(lengths) != 1:
        raise ValueError(f"snippets have differing lengths: {sorted(lengths)}")
    return np.vstack([spike.samples for spike in spikes])


def second_sample_index(peak_sample: int, sample_rate_hz: float, delay_ms: float) -> int:
    """Index of the dual-inflection sample, ``delay_ms`` after the peak."""
    return peak_sample + int(round(sample_rate_hz * delay_ms / 1000.0))


# ---------------------------------------------------------------------------
# Projectors
# ---------------------------------------------------------------------------

class Projector:
    """Maps snippet matrices to feature matrices.

    ``fit`` freezes whatever the projection needs from the training snippets
    and ``project`` reuses it unchanged, so that training and classification
    features live in the same space.
    """

    mode: ProjectionMode

    def __init__(self) -> None:
        self._n_samples: Optional[int] = None

    @property
    def dimension(self) -> int:
        raise NotImplementedError

    @property
    def fitted(self) -> bool:
        return self._n_samples is not None

    def fit(self, spikes: Sequence[SpikeWaveform]) -> np.ndarray:
        snippets = stack_snippets(spikes)
        self._validate(snippets.shape[1])
        self._fit(snippets)
        self._n_samples = snippets.shape[1]
        return self._project(snippets)

    def project(self, spikes: Sequence[SpikeWaveform]) -> np.ndarray:
        if not self.fitted:
            raise PreconditionError(f"{type(self).__name__} has not been fitted")
        snippets = stack_snippets(spikes)
        if snippets.shape[1] != self._n_samples:
            raise ValueError(
                f"snippets have {snippets.shape[1]} samples, projector was fitted on {self._n_samples}"
            )
        return self._project(snippets)

    def _validate(self, n_samples: int) -> None:
        pass

    def _fit(self, snippets: np.ndarray) -> None:
        pass

    def _project(self, snippets: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class SingleInflectionProjector(Projector):
    """Voltage at the aligned peak sample."""

    mode = ProjectionMode.SINGLE_INFLECTION

    def __init__(self, peak_sample: int):
        super().__init__()
        self.peak_sample = peak_sample

    @property
    def dimension(self) -> int:
        return 1

    def _validate(self, n_samples: int) -> None:
        if self.peak_sample >= n_samples:
            raise ConfigurationError(
                f"peak_sample {self.peak_sample} is outside snippets of {n_samples} samples"
            )

    def _project(self, snippets: np.ndarray) -> np.ndarray:
        return snippets[:, [self.peak_sample]]


class DualInflectionProjector(Projector):
    """Voltage at the peak and at a fixed delay after it (ideally mid-AHP)."""

    mode = ProjectionMode.DUAL_INFLECTION

    def __init__(self, peak_sample: int, second_sample: int):
        super().__init__()
        self.peak_sample = peak_sample
        self.second_sample = second_sample

    @property
    def dimension(self) -> int:
        return 2

    def _validate(self, n_samples: int) -> None:
        for name, index in (('peak_sample', self.peak_sample), ('second_sample', self.second_sample)):
            if index >= n_samples:
                raise ConfigurationError(
                    f"{name} {index} is outside snippets of {n_samples} samples"
                )

    def _project(self, snippets: np.ndarray) -> np.ndarray:
        return snippets[:, [self.peak_sample, self.second_sample]]


class PCAProjector(Projector):
    """Scores on the leading principal axes of the channel's training snippets."""

    mode = ProjectionMode.PCA

    def __init__(self, n_components: int, method: AnalysisMethod = AnalysisMethod.CENTER):
        super().__init__()
        self.n_components = n_components
        self.method = method
        self.analysis: Optional[PrincipalComponentAnalysis] = None

    @property
    def dimension(self) -> int:
        return self.n_components

    @property
    def basis(self) -> Optional[np.ndarray]:
        """Principal axes used for projection, one per column."""
        if self.analysis is None:
            return None
        return self.analysis.component_matrix[:, :self.n_components]

    @property
    def means(self) -> Optional[np.ndarray]:
        return None if self.analysis is None else self.analysis.means

    def _validate(self, n_samples: int) -> None:
        if self.n_components > n_samples:
            raise ConfigurationError(
                f"cannot keep {self.n_components} principal components of {n_samples}-sample snippets"
            )

    def _fit(self, snippets: np.ndarray) -> None:
        analysis = PrincipalComponentAnalysis(snippets, self.method).compute()
        if analysis.n_components < self.n_components:
            raise ChannelFitError(
                f"only {analysis.n_components} components available from "
                f"{snippets.shape[0]} snippets, {self.n_components} requested"
            )
        self.analysis = analysis
        logger.debug(
            f"PCA captured {analysis.cumulative_proportions[self.n_components - 1]:.2f} "
            f"of variance with {self.n_components} components"
        )

    def _project(self, snippets: np.ndarray) -> np.ndarray:
        return self.analysis.transform(snippets, self.n_components)


class HaarProjector(Projector):
    """Leading coefficients of a Haar wavelet decomposition of each snippet.

    Coefficients are concatenated coarsest first (final approximation, then
    details from coarse to fine) as returned by ``pywt.wavedec``.
    """

    mode = ProjectionMode.HAAR
    wavelet = 'haar'

    def __init__(self, n_coefficients: int, level: Optional[int] = None):
        super().__init__()
        self.n_coefficients = n_coefficients
        self.level = level

    @property
    def dimension(self) -> int:
        return self.n_coefficients

    def _validate(self, n_samples: int) -> None:
        max_level = pywt.dwt_max_level(n_samples, self.wavelet)
        if max_level < 1:
            raise ConfigurationError(f"snippets of {n_samples} samples are too short for a Haar decomposition")
        if self.level is None:
            self.level = max_level
        elif self.level > max_level:
            raise ConfigurationError(
                f"Haar level {self.level} exceeds the maximum {max_level} for {n_samples}-sample snippets"
            )
        n_available = sum(len(c) for c in pywt.wavedec(np.zeros(n_samples), self.wavelet, level=self.level))
        if self.n_coefficients > n_available:
            raise ConfigurationError(
                f"cannot keep {self.n_coefficients} Haar coefficients, only {n_available} exist"
            )

    def _project(self, snippets: np.ndarray) -> np.ndarray:
        coeffs = pywt.wavedec(snippets, self.wavelet, level=self.level, axis=-1)
        return np.hstack(coeffs)[:, :self.n_coefficients]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def make_projector(config: SortingConfiguration, parameters: TrainingParameters) -> Projector:
    """Build an unfitted projector for one channel from the sorter configuration."""
    mode = config.projection_mode
    if mode == ProjectionMode.SINGLE_INFLECTION:
        return SingleInflectionProjector(parameters.peak_sample)
    if mode == ProjectionMode.DUAL_INFLECTION:
        second = second_sample_index(
            parameters.peak_sample, parameters.sample_rate_hz, parameters.second_sample_delay_ms
        )
        return DualInflectionProjector(parameters.peak_sample, second)
    if mode == ProjectionMode.PCA:
        return PCAProjector(config.projection_dimension, config.pca_method)
    if mode == ProjectionMode.HAAR:
        return HaarProjector(config.projection_dimension, config.haar_level)
    raise ConfigurationError(f"Unsupported projection mode: {mode}")
