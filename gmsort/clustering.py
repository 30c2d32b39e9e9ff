"""Per-channel Gaussian mixture models: EM fitting, model-order selection and thresholded classification."""

from __future__ import annotations

import logging
import threading
import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import chi2
from sklearn.exceptions import ConvergenceWarning
from sklearn.mixture import GaussianMixture

from gmsort.config import ModelSelection, SortingConfiguration, TrainingParameters
from gmsort.errors import ChannelFitError, NotTrainedError, TrainingCancelled
from gmsort.features import Projector, make_projector
from gmsort.types import SpikeWaveform

logger = logging.getLogger("gmsort")

NOISE_CLASS = -1


@dataclass(frozen=True)
class FitRecord:
    """One probed model order during selection."""
    n_components: int
    log_likelihood: float         # Total log-likelihood of the training features (nan if failed)
    score: float                  # BIC/AIC value, or the likelihood-ratio p-value
    status: str                   # 'accepted', 'rejected' or 'failed'
    message: str = ''


def n_free_parameters(n_components: int, n_features: int) -> int:
    """Free parameters of a full-covariance mixture: means, covariances and weights."""
    cov_params = n_features * (n_features + 1) // 2
    return n_components * (n_features + cov_params) + n_components - 1


class ChannelModel:
    """Gaussian mixture classifier for the spikes of one channel.

    ``train`` grows the number of components from 1 up to ``max_k`` while the
    configured criterion says the extra component is justified. Model orders
    whose EM fit fails are skipped; if none succeeds the model stays untrained
    with ``K == 0`` and the caller must not use it for sorting.
    """

    def __init__(
        self,
        channel: int,
        max_k: int,
        unit_start_index: int,
        p_value: float,
        projector: Optional[Projector] = None,
        *,
        model_selection: ModelSelection = ModelSelection.BIC,
        significance: float = 0.01,
        max_iter: int = 200,
        tol: float = 1e-3,
        n_init: int = 1,
        reg_covar: float = 1e-6,
    ):
        self.channel = channel
        self.max_k = max_k
        self.unit_start_index = unit_start_index
        self.p_value = p_value
        self.projector = projector
        self.model_selection = ModelSelection(model_selection)
        self.significance = significance
        self.max_iter = max_iter
        self.tol = tol
        self.n_init = n_init
        self.reg_covar = reg_covar

        self.K = 0
        self.trained = False
        self.mixture: Optional[GaussianMixture] = None
        self.selection_trace: List[FitRecord] = []

    @classmethod
    def from_config(
        cls,
        channel: int,
        config: SortingConfiguration,
        parameters: TrainingParameters,
        unit_start_index: int = 0,
    ) -> "ChannelModel":
        """Untrained model with a fresh projector for ``channel``."""
        return cls(
            channel,
            config.max_k,
            unit_start_index,
            config.p_value,
            make_projector(config, parameters),
            model_selection=config.model_selection,
            significance=config.significance,
            max_iter=config.em_max_iter,
            tol=config.em_tol,
            n_init=config.em_n_init,
            reg_covar=config.em_reg_covar,
        )

    # ------------------------------------------------------------------
    # Fitted parameters
    # ------------------------------------------------------------------

    @property
    def means(self) -> Optional[np.ndarray]:
        return None if self.mixture is None else self.mixture.means_

    @property
    def covariances(self) -> Optional[np.ndarray]:
        return None if self.mixture is None else self.mixture.covariances_

    @property
    def weights(self) -> Optional[np.ndarray]:
        return None if self.mixture is None else self.mixture.weights_

    @property
    def n_features(self) -> Optional[int]:
        return None if self.mixture is None else self.mixture.means_.shape[1]

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def fit_spikes(
        self,
        spikes: Sequence[SpikeWaveform],
        random_state: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> np.ndarray:
        """Fit the projector on ``spikes``, then train on the resulting features. Returns the features."""
        if self.projector is None:
            raise ChannelFitError(f"channel {self.channel} has no projector")
        features = self.projector.fit(spikes)
        self.train(features, random_state=random_state, cancel_event=cancel_event)
        return features

    def train(
        self,
        features: np.ndarray,
        random_state: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Select the model order and fit the mixture. Returns ``self.trained``."""
        X = _as_features(features)
        self.K = 0
        self.trained = False
        self.mixture = None
        self.selection_trace = []

        best: Optional[GaussianMixture] = None
        best_ll = float('nan')

        for k in range(1, self.max_k + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise TrainingCancelled(f"training cancelled on channel {self.channel} before K={k}")

            try:
                candidate = self._fit_mixture(X, k, random_state)
            except ChannelFitError as e:
                logger.debug(f"Channel {self.channel}: K={k} rejected: {e}")
                self.selection_trace.append(FitRecord(k, float('nan'), float('nan'), 'failed', str(e)))
                continue

            cand_ll = float(candidate.score(X) * X.shape[0])
            if best is None:
                best, best_ll = candidate, cand_ll
                self.selection_trace.append(FitRecord(k, cand_ll, self._score(candidate, X), 'accepted'))
                continue

            improved, score = self._improves(X, best, best_ll, candidate, cand_ll)
            logger.debug(f"Channel {self.channel}: K={k} logL={cand_ll:.1f} {self.model_selection.value}={score:.4g}")
            if not improved:
                self.selection_trace.append(FitRecord(k, cand_ll, score, 'rejected'))
                break
            best, best_ll = candidate, cand_ll
            self.selection_trace.append(FitRecord(k, cand_ll, score, 'accepted'))

        if best is None:
            logger.warning(f"Channel {self.channel}: no mixture order from 1 to {self.max_k} could be fitted")
            return False

        self.mixture = best
        self.K = best.n_components
        self.trained = True
        logger.debug(f"Channel {self.channel}: selected K={self.K}")
        return True

    def _fit_mixture(self, X: np.ndarray, k: int, random_state: Optional[int]) -> GaussianMixture:
        mixture = GaussianMixture(
            n_components=k,
            covariance_type='full',
            max_iter=self.max_iter,
            tol=self.tol,
            n_init=self.n_init,
            reg_covar=self.reg_covar,
            random_state=random_state,
        )
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', ConvergenceWarning)
            try:
                mixture.fit(X)
            except (ValueError, np.linalg.LinAlgError) as e:
                raise ChannelFitError(f"EM fit failed: {e}") from e
        if not mixture.converged_:
            raise ChannelFitError(f"EM did not converge in {self.max_iter} iterations")
        return mixture

    def _score(self, mixture: GaussianMixture, X: np.ndarray) -> float:
        if self.model_selection == ModelSelection.BIC:
            return float(mixture.bic(X))
        if self.model_selection == ModelSelection.AIC:
            return float(mixture.aic(X))
        return float('nan')

    def _improves(
        self,
        X: np.ndarray,
        best: GaussianMixture,
        best_ll: float,
        candidate: GaussianMixture,
        cand_ll: float,
    ) -> Tuple[bool, float]:
        """Whether ``candidate`` is a justified improvement over ``best``, and the score behind the decision."""
        if self.model_selection == ModelSelection.LIKELIHOOD_RATIO:
            n_features = X.shape[1]
            df = (n_free_parameters(candidate.n_components, n_features)
                  - n_free_parameters(best.n_components, n_features))
            statistic = max(2.0 * (cand_ll - best_ll), 0.0)
            p = float(chi2.sf(statistic, df))
            return p < self.significance, p
        score = self._score(candidate, X)
        return score < self._score(best, X), score

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def project(self, spikes: Sequence[SpikeWaveform]) -> np.ndarray:
        """Features of ``spikes`` in this model's frozen feature space."""
        if self.projector is None:
            raise NotTrainedError(f"channel {self.channel} has no projector")
        return self.projector.project(spikes)

    def posterior(self, features: np.ndarray) -> np.ndarray:
        """Responsibility of each component for each row, shape (n, K)."""
        self._require_trained()
        return self.mixture.predict_proba(self._check_features(features))

    def mahalanobis_sq(self, features: np.ndarray) -> np.ndarray:
        """Squared Mahalanobis distance of each row to each component, shape (n, K)."""
        self._require_trained()
        X = self._check_features(features)
        distances = np.empty((X.shape[0], self.K))
        for k in range(self.K):
            y = (X - self.mixture.means_[k]) @ self.mixture.precisions_cholesky_[k]
            distances[:, k] = np.sum(y ** 2, axis=1)
        return distances

    def membership_probability(self, features: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Most probable component per row and the probability of belonging to it.

        The probability is the chi-square tail mass beyond the row's squared
        Mahalanobis distance from that component: 1 at the component mean,
        tending to 0 far from it.
        """
        X = self._check_features(features)
        winners = np.argmax(self.posterior(X), axis=1)
        d2 = self.mahalanobis_sq(X)[np.arange(X.shape[0]), winners]
        return winners, chi2.sf(d2, X.shape[1])

    def classify_thresh(self, features: np.ndarray) -> np.ndarray:
        """Component index per row, or -1 where the membership probability is below ``p_value``."""
        X = self._check_features(features)
        if X.shape[0] == 0:
            return np.empty(0, dtype=np.int64)
        winners, probability = self.membership_probability(X)
        return np.where(probability >= self.p_value, winners, NOISE_CLASS).astype(np.int64)

    def _require_trained(self) -> None:
        if not self.trained or self.mixture is None:
            raise NotTrainedError(f"channel {self.channel} model is not trained")

    def _check_features(self, features: np.ndarray) -> np.ndarray:
        self._require_trained()
        X = _as_features(features, allow_empty=True)
        if X.shape[1] != self.n_features:
            raise ValueError(f"features have {X.shape[1]} columns, model expects {self.n_features}")
        return X


def _as_features(features, allow_empty: bool = False) -> np.ndarray:
    X = np.asarray(features, dtype=np.float64)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.ndim != 2:
        raise ValueError(f"features must be 2D, got {X.ndim}D")
    if X.shape[0] == 0 and not allow_empty:
        raise ValueError("features must not be empty")
    return X
