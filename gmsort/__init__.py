"""
gmsort: unsupervised per-channel spike sorting with Gaussian mixture models.

Public API:
    SpikeSorter              trains per-channel models and classifies live spikes
    SortingConfiguration     sorter-wide options
    TrainingParameters       per-pass training options
    SpikeWaveform            one detected spike snippet
    ChannelModel             Gaussian mixture classifier for one channel
    UnitDictionary           absolute unit id <-> (channel, local unit)
"""

from gmsort.config import (
    AnalysisMethod,
    ModelSelection,
    ProjectionMode,
    SortingConfiguration,
    TrainingParameters,
)
from gmsort.errors import (
    ArithmeticFailure,
    ChannelFitError,
    ConfigurationError,
    EmptyTrainingSetError,
    GmsortError,
    NoSortableChannelsError,
    NotTrainedError,
    PreconditionError,
    TrainingCancelled,
)
from gmsort.types import SpikeWaveform, TrainingReport, UnitAddress, UnitDictionary
from gmsort.linalg import PrincipalComponentAnalysis
from gmsort.features import (
    DualInflectionProjector,
    HaarProjector,
    PCAProjector,
    Projector,
    SingleInflectionProjector,
    make_projector,
)
from gmsort.clustering import ChannelModel
from gmsort.reservoir import TrainingReservoir
from gmsort.core import SpikeSorter

__all__ = [
    "SpikeSorter",
    "SortingConfiguration",
    "TrainingParameters",
    "ProjectionMode",
    "ModelSelection",
    "AnalysisMethod",
    "SpikeWaveform",
    "TrainingReport",
    "UnitAddress",
    "UnitDictionary",
    "PrincipalComponentAnalysis",
    "Projector",
    "SingleInflectionProjector",
    "DualInflectionProjector",
    "PCAProjector",
    "HaarProjector",
    "make_projector",
    "ChannelModel",
    "TrainingReservoir",
    "GmsortError",
    "ConfigurationError",
    "PreconditionError",
    "EmptyTrainingSetError",
    "NotTrainedError",
    "NoSortableChannelsError",
    "ArithmeticFailure",
    "ChannelFitError",
    "TrainingCancelled",
]
