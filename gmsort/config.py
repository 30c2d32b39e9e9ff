"""Enums and configuration dataclasses for the channel sorter."""

from __future__ import annotations

import logging
import numbers
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from gmsort.errors import ConfigurationError

logger = logging.getLogger("gmsort")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ProjectionMode(str, Enum):
    """How waveform snippets are reduced to feature vectors."""
    SINGLE_INFLECTION = 'single_inflection'
    DUAL_INFLECTION = 'dual_inflection'
    PCA = 'pca'
    HAAR = 'haar'

    @classmethod
    def parse(cls, value: Union[str, "ProjectionMode"]) -> "ProjectionMode":
        """Resolve an enum value, its string value, or a legacy display label."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip()
            if key in _PROJECTION_LABELS:
                return _PROJECTION_LABELS[key]
            try:
                return cls(key.lower())
            except ValueError:
                pass
        raise ConfigurationError(f"Unknown projection mode: {value!r}")

    @property
    def fixed_dimension(self) -> Optional[int]:
        """Feature dimension imposed by the mode, None if configurable."""
        if self is ProjectionMode.SINGLE_INFLECTION:
            return 1
        if self is ProjectionMode.DUAL_INFLECTION:
            return 2
        return None


_PROJECTION_LABELS = {
    'Maximum Voltage Inflection': ProjectionMode.SINGLE_INFLECTION,
    'Double Voltage Inflection': ProjectionMode.DUAL_INFLECTION,
    'PCA': ProjectionMode.PCA,
    'Haar Wavelet': ProjectionMode.HAAR,
}


class ModelSelection(str, Enum):
    """Criterion used to decide whether adding a mixture component is justified."""
    BIC = 'bic'
    AIC = 'aic'
    LIKELIHOOD_RATIO = 'likelihood_ratio'


class AnalysisMethod(str, Enum):
    """Data adjustment applied before the SVD in principal component analysis."""
    CENTER = 'center'
    STANDARDIZE = 'standardize'


# ---------------------------------------------------------------------------
# Configuration dataclasses
# ---------------------------------------------------------------------------

DEFAULT_PROJECTION_DIMENSION = 2


@dataclass
class SortingConfiguration:
    """Sorter-wide options. Validated when constructed."""
    # Array settings
    n_channels: int = 64

    # Mixture model settings
    max_k: int = 5                              # Maximum units per channel
    min_spikes: int = 50                        # Training spikes needed to sort a channel
    p_value: float = 0.01                       # Minimum membership probability; rejects about this fraction of true members
    model_selection: ModelSelection = ModelSelection.BIC
    significance: float = 0.01                  # Likelihood-ratio test level

    # Projection settings
    projection_mode: ProjectionMode = ProjectionMode.PCA
    projection_dimension: Optional[int] = None  # Forced to 1/2 for inflection modes
    pca_method: AnalysisMethod = AnalysisMethod.CENTER
    haar_level: Optional[int] = None            # None = deepest level the snippet allows

    # Training reservoir
    max_training_spikes_per_channel: int = 500
    reservoir_capacity: int = 25000

    # EM settings
    em_max_iter: int = 200
    em_tol: float = 1e-3
    em_n_init: int = 1
    em_reg_covar: float = 1e-6

    # Runtime settings
    n_jobs: int = 1                             # Worker threads used by classify()
    require_sortable_channels: bool = False     # Raise if a pass sorts no channel

    def __post_init__(self) -> None:
        self.projection_mode = ProjectionMode.parse(self.projection_mode)
        self.model_selection = _parse_enum(ModelSelection, self.model_selection, 'model_selection')
        self.pca_method = _parse_enum(AnalysisMethod, self.pca_method, 'pca_method')

        _require_positive_int(self.n_channels, 'n_channels')
        _require_positive_int(self.max_k, 'max_k')
        _require_positive_int(self.min_spikes, 'min_spikes')
        _require_positive_int(self.max_training_spikes_per_channel, 'max_training_spikes_per_channel')
        _require_positive_int(self.reservoir_capacity, 'reservoir_capacity')
        _require_positive_int(self.em_max_iter, 'em_max_iter')
        _require_positive_int(self.em_n_init, 'em_n_init')
        _require_positive_int(self.n_jobs, 'n_jobs')

        if not 0.0 <= self.p_value <= 1.0:
            raise ConfigurationError(f"p_value must lie in [0, 1], got {self.p_value}")
        if not 0.0 < self.significance < 1.0:
            raise ConfigurationError(f"significance must lie in (0, 1), got {self.significance}")
        if self.em_tol <= 0:
            raise ConfigurationError("em_tol must be positive")
        if self.em_reg_covar < 0:
            raise ConfigurationError("em_reg_covar must be non-negative")
        if self.haar_level is not None:
            _require_positive_int(self.haar_level, 'haar_level')

        if self.min_spikes > self.max_training_spikes_per_channel:
            raise ConfigurationError(
                f"min_spikes ({self.min_spikes}) exceeds max_training_spikes_per_channel "
                f"({self.max_training_spikes_per_channel}); no channel could ever be trained"
            )
        if self.max_training_spikes_per_channel > self.reservoir_capacity:
            logger.warning(
                f"Per-channel cap {self.max_training_spikes_per_channel} exceeds the total "
                f"reservoir capacity {self.reservoir_capacity}"
            )

        fixed = self.projection_mode.fixed_dimension
        if fixed is not None:
            if self.projection_dimension is not None and self.projection_dimension != fixed:
                raise ConfigurationError(
                    f"{self.projection_mode.value} projection is {fixed}-dimensional, "
                    f"got projection_dimension={self.projection_dimension}"
                )
            self.projection_dimension = fixed
        elif self.projection_dimension is None:
            self.projection_dimension = DEFAULT_PROJECTION_DIMENSION
        else:
            _require_positive_int(self.projection_dimension, 'projection_dimension')


@dataclass
class TrainingParameters:
    """Per-pass training options."""
    peak_sample: int = 19                   # Sample index of the aligned spike peak
    second_sample_delay_ms: float = 0.4     # Dual-inflection delay after the peak
    sample_rate_hz: float = 25000.0
    random_seed: int = 0                    # Seeds EM initialisation

    def __post_init__(self) -> None:
        if not isinstance(self.peak_sample, numbers.Integral) or self.peak_sample < 0:
            raise ConfigurationError(f"peak_sample must be a non-negative int, got {self.peak_sample!r}")
        if self.second_sample_delay_ms < 0:
            raise ConfigurationError("second_sample_delay_ms must be non-negative")
        if self.sample_rate_hz <= 0:
            raise ConfigurationError("sample_rate_hz must be positive")
        if not isinstance(self.random_seed, numbers.Integral) or self.random_seed < 0:
            raise ConfigurationError("random_seed must be a non-negative int")


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _require_positive_int(value, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral) or value < 1:
        raise ConfigurationError(f"{name} must be a positive int, got {value!r}")


def _parse_enum(enum_cls, value, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ConfigurationError(f"Unknown {name}: {value!r}") from None
