"""SpikeSorter: owns the training reservoir and the per-channel models, drives train/classify."""

from __future__ import annotations

import logging
import pickle
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from gmsort.clustering import NOISE_CLASS, ChannelModel
from gmsort.config import SortingConfiguration, TrainingParameters
from gmsort.errors import (
    ArithmeticFailure,
    ChannelFitError,
    ConfigurationError,
    EmptyTrainingSetError,
    NoSortableChannelsError,
    NotTrainedError,
    TrainingCancelled,
)
from gmsort.reservoir import TrainingReservoir, by_channel
from gmsort.types import SpikeWaveform, TrainingReport, UnitDictionary

logger = logging.getLogger("gmsort")


@dataclass(frozen=True)
class SortingModel:
    """Everything one training pass produced. Replaced whole, never mutated."""
    models: Mapping[int, ChannelModel]
    channels_to_sort: Tuple[int, ...]
    unit_dictionary: UnitDictionary
    total_units: int
    parameters: TrainingParameters


class SpikeSorter:
    """Unsupervised per-channel spike sorter.

    Spikes are collected with :meth:`hoard_spikes`, a Gaussian mixture is fitted
    for every channel with enough of them by :meth:`train`, and live spikes are
    labelled by :meth:`classify`. A training pass builds its models off to the
    side and swaps them in at the end, so classification can continue on the
    previous models while a new pass runs on another thread.
    """

    def __init__(self, config: Optional[SortingConfiguration] = None):
        """Initialize with a SortingConfiguration (uses defaults if None)."""
        self.config = config or SortingConfiguration()
        self.reservoir = TrainingReservoir(
            self.config.n_channels,
            per_channel_cap=self.config.max_training_spikes_per_channel,
            capacity=self.config.reservoir_capacity,
        )
        self.last_report: Optional[TrainingReport] = None
        self._model: Optional[SortingModel] = None
        self._init_runtime()

    def _init_runtime(self) -> None:
        self._model_lock = threading.Lock()
        self._train_lock = threading.Lock()
        self._executor_lock = threading.Lock()
        self._train_executor: Optional[ThreadPoolExecutor] = None
        self._classify_executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Queryable state
    # ------------------------------------------------------------------

    @property
    def model(self) -> Optional[SortingModel]:
        with self._model_lock:
            return self._model

    @property
    def trained(self) -> bool:
        return self.model is not None

    @property
    def channels_to_sort(self) -> List[int]:
        model = self.model
        return [] if model is None else list(model.channels_to_sort)

    @property
    def total_number_of_units(self) -> int:
        model = self.model
        return 0 if model is None else model.total_units

    @property
    def unit_dictionary(self) -> UnitDictionary:
        model = self.model
        return UnitDictionary() if model is None else model.unit_dictionary

    @property
    def channel_models(self) -> Mapping[int, ChannelModel]:
        model = self.model
        return MappingProxyType({} if model is None else model.models)

    @property
    def spikes_collected_per_channel(self) -> Dict[int, int]:
        return self.reservoir.counts()

    def channel_model(self, channel: int) -> ChannelModel:
        return self.channel_models[channel]

    def unit_to_channel(self, unit_id: int) -> int:
        """Channel that produced an absolute unit id."""
        return self.unit_dictionary.channel_of(unit_id)

    # ------------------------------------------------------------------
    # Training data
    # ------------------------------------------------------------------

    def hoard_spikes(self, spikes: Iterable[SpikeWaveform]) -> int:
        """Add spikes to the training reservoir. Spikes over a channel's cap are dropped silently."""
        return self.reservoir.hoard(spikes)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(
        self,
        parameters: Optional[TrainingParameters] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> TrainingReport:
        """Fit a channel model for every channel with at least ``min_spikes`` training spikes.

        Channels whose mixture cannot be fitted are left out of the sort; they
        never abort the pass.

        Raises:
            EmptyTrainingSetError: the reservoir holds no spikes.
            TrainingCancelled: ``cancel_event`` was set during the pass.
            NoSortableChannelsError: no channel was sortable and the
                configuration asks for this to be an error.
        """
        parameters = parameters or TrainingParameters()
        with self._train_lock:
            start = time.time()
            snapshot = self.reservoir.snapshot()
            if len(snapshot) == 0:
                raise EmptyTrainingSetError("The training data set was empty")

            grouped = by_channel(snapshot)
            logger.info(
                f"Training spike sorter on {len(snapshot)} spikes "
                f"({self.config.projection_mode.value} projection, max K={self.config.max_k})..."
            )

            report = TrainingReport()
            units = UnitDictionary()
            models: Dict[int, ChannelModel] = {}
            total_units = 0

            for channel in range(self.config.n_channels):
                if cancel_event is not None and cancel_event.is_set():
                    raise TrainingCancelled(f"training cancelled before channel {channel}")

                spikes = grouped.get(channel, [])
                if len(spikes) < self.config.min_spikes:
                    report.channels_insufficient.append(channel)
                    continue

                channel_model = ChannelModel.from_config(channel, self.config, parameters, total_units)
                try:
                    channel_model.fit_spikes(spikes, parameters.random_seed, cancel_event)
                except ConfigurationError:
                    raise
                except (ChannelFitError, ArithmeticFailure, ValueError) as e:
                    logger.warning(f"Channel {channel}: training failed: {e}")
                    report.channels_failed.append(channel)
                    report.errors[channel] = str(e)
                    continue

                if not channel_model.trained:
                    report.channels_failed.append(channel)
                    report.errors[channel] = "no mixture order could be fitted"
                    continue

                units.add_channel(channel, channel_model.K)
                models[channel] = channel_model
                report.channels_sorted.append(channel)
                report.units_per_channel[channel] = channel_model.K
                total_units += channel_model.K

            report.total_units = total_units
            report.execution_time = time.time() - start

            if not report.sortable:
                if self.config.require_sortable_channels:
                    raise NoSortableChannelsError(
                        f"No channel could be sorted ({len(report.channels_insufficient)} with too few "
                        f"spikes, {len(report.channels_failed)} failed to fit)"
                    )
                logger.warning("Spike sorter trained, but no channel is sortable; classification will label nothing")

            new_model = SortingModel(
                models=models,
                channels_to_sort=tuple(report.channels_sorted),
                unit_dictionary=units,
                total_units=total_units,
                parameters=parameters,
            )
            with self._model_lock:
                self._model = new_model
                self.last_report = report

        logger.info(
            f"Spike sorter training complete in {report.execution_time:.2f} seconds: "
            f"{len(report.channels_sorted)} channels sorted, {len(report.channels_insufficient)} with too "
            f"few spikes, {len(report.channels_failed)} failed, {total_units} units"
        )
        return report

    def train_async(
        self,
        parameters: Optional[TrainingParameters] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> "Future[TrainingReport]":
        """Run :meth:`train` on the sorter's dedicated training thread."""
        with self._executor_lock:
            if self._train_executor is None:
                self._train_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gmsort-train")
            return self._train_executor.submit(self.train, parameters, cancel_event)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, spikes: Sequence[SpikeWaveform]) -> np.ndarray:
        """Assign an absolute unit id to every spike on a sorted channel.

        Rejected spikes get 0; spikes on channels that are not sorted keep
        their current label. Returns the resulting labels aligned with
        ``spikes``.
        """
        model = self.model
        if model is None:
            raise NotTrainedError("The channel models were not yet trained so classification is not possible.")

        spikes = list(spikes)
        grouped = by_channel(spikes)
        tasks = [(model.models[ch], grouped[ch]) for ch in model.channels_to_sort if ch in grouped]

        # All channels are labelled before any spike is written.
        if self.config.n_jobs > 1 and len(tasks) > 1:
            pool = self._get_classify_executor()
            results = list(pool.map(lambda task: _label_channel(*task), tasks))
        else:
            results = [_label_channel(channel_model, channel_spikes) for channel_model, channel_spikes in tasks]

        for (_, channel_spikes), units in zip(tasks, results):
            for spike, unit in zip(channel_spikes, units):
                spike.unit = int(unit)

        return np.array([spike.unit for spike in spikes], dtype=np.int64)

    def project(self, spikes: Sequence[SpikeWaveform]) -> Dict[int, np.ndarray]:
        """Feature-space coordinates of ``spikes`` for every sorted channel present, e.g. for display."""
        model = self.model
        if model is None:
            raise NotTrainedError("The channel models were not yet trained so projection is not possible.")
        grouped = by_channel(spikes)
        return {
            ch: model.models[ch].project(grouped[ch])
            for ch in model.channels_to_sort if ch in grouped
        }

    def _get_classify_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._classify_executor is None:
                self._classify_executor = ThreadPoolExecutor(
                    max_workers=self.config.n_jobs, thread_name_prefix="gmsort-classify"
                )
            return self._classify_executor

    def shutdown(self, wait: bool = True) -> None:
        """Stop the sorter's worker threads."""
        with self._executor_lock:
            executors = (self._train_executor, self._classify_executor)
            self._train_executor = None
            self._classify_executor = None
        for executor in executors:
            if executor is not None:
                executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def __getstate__(self):
        state = self.__dict__.copy()
        for key in ('_model_lock', '_train_lock', '_executor_lock', '_train_executor', '_classify_executor'):
            state.pop(key, None)
        return state

    def __setstate__(self, state) -> None:
        self.__dict__.update(state)
        self._init_runtime()

    def save(self, filename: str) -> None:
        """Save the sorter (configuration, reservoir and trained models) to disk."""
        with open(filename, 'wb') as f:
            pickle.dump(self, f)
        logger.info(f"Spike sorter saved to {filename}")

    @classmethod
    def load(cls, filename: str) -> "SpikeSorter":
        """Load a sorter saved with :meth:`save`."""
        with open(filename, 'rb') as f:
            sorter = pickle.load(f)
        if not isinstance(sorter, cls):
            raise TypeError(f"{filename} does not contain a {cls.__name__}")
        return sorter

    def to_dataframe(self) -> pd.DataFrame:
        """Unit table: absolute id, channel, local unit and mixing weight."""
        model = self.model
        df = self.unit_dictionary.to_dataframe()
        if model is None or df.empty:
            return df.assign(weight=pd.Series(dtype=float))
        df['weight'] = [
            float(model.models[ch].weights[local - 1])
            for ch, local in zip(df['channel'], df['local_unit'])
        ]
        return df


def _label_channel(channel_model: ChannelModel, spikes: List[SpikeWaveform]) -> np.ndarray:
    """Absolute unit ids for one channel's spikes, 0 where rejected."""
    features = channel_model.project(spikes)
    classes = channel_model.classify_thresh(features)
    return np.where(classes == NOISE_CLASS, UnitDictionary.NOISE, classes + channel_model.unit_start_index + 1)
