"""Dense matrix helpers and SVD-based principal component analysis.

Matrices are observation-by-variable: rows are samples, columns are variables.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from gmsort.config import AnalysisMethod
from gmsort.errors import ArithmeticFailure, PreconditionError

logger = logging.getLogger("gmsort")


# ---------------------------------------------------------------------------
# Column statistics
# ---------------------------------------------------------------------------

def as_matrix(data) -> np.ndarray:
    """Validate and return a 2-D float64 observation matrix."""
    X = np.asarray(data, dtype=np.float64)
    if X.ndim != 2:
        raise ValueError(f"expected a 2D matrix, got {X.ndim}D")
    if X.shape[0] == 0 or X.shape[1] == 0:
        raise ArithmeticFailure(f"empty matrix of shape {X.shape}")
    if not np.all(np.isfinite(X)):
        raise ArithmeticFailure("matrix contains NaN or infinite values")
    return X


def column_means(X: np.ndarray) -> np.ndarray:
    return np.mean(as_matrix(X), axis=0)


def column_std(X: np.ndarray, means: Optional[np.ndarray] = None) -> np.ndarray:
    """Sample standard deviation (n - 1 denominator) of each column."""
    X = as_matrix(X)
    if X.shape[0] < 2:
        return np.zeros(X.shape[1])
    if means is None:
        return np.std(X, axis=0, ddof=1)
    return np.sqrt(np.sum((X - means) ** 2, axis=0) / (X.shape[0] - 1))


def center(X: np.ndarray, means: Optional[np.ndarray] = None) -> np.ndarray:
    """Return a copy of ``X`` with ``means`` (default: its own column means) subtracted."""
    X = as_matrix(X)
    if means is None:
        means = np.mean(X, axis=0)
    if means.shape != (X.shape[1],):
        raise ValueError(f"means has shape {means.shape}, expected ({X.shape[1]},)")
    return X - means


def standardize(X: np.ndarray, stds: np.ndarray) -> np.ndarray:
    """Divide each column by its standard deviation.

    Raises:
        ArithmeticFailure: if any standard deviation is exactly zero, since a
            constant variable cannot be converted to z-scores.
    """
    X = as_matrix(X)
    stds = np.asarray(stds, dtype=np.float64)
    zero = np.flatnonzero(stds == 0)
    if zero.size:
        raise ArithmeticFailure(
            f"Standard deviation cannot be zero (cannot standardize the constant "
            f"variable at column index {int(zero[0])})"
        )
    return X / stds


# ---------------------------------------------------------------------------
# Singular value decomposition
# ---------------------------------------------------------------------------

def svd(X: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Thin SVD ``X = U @ diag(s) @ Vt``.

    Returns:
        (U, s, V) with singular values ``s`` non-negative and descending and
        the right singular vectors as the *columns* of ``V``.
    """
    X = as_matrix(X)
    try:
        U, s, Vt = np.linalg.svd(X, full_matrices=False)
    except np.linalg.LinAlgError as e:
        raise ArithmeticFailure(f"SVD did not converge: {e}") from e
    return U, s, Vt.T


# ---------------------------------------------------------------------------
# Principal component analysis
# ---------------------------------------------------------------------------

class PrincipalComponentAnalysis:
    """PCA computed from the SVD of the adjusted data matrix.

    The covariance matrix is never formed: the right singular vectors of the
    centered (optionally standardized) data are the principal axes, the
    squared singular values are the eigenvalues, and ``U * s`` are the
    component scores of the source data.
    """

    def __init__(self, data, method: AnalysisMethod = AnalysisMethod.CENTER):
        self.source = as_matrix(data)
        self.method = AnalysisMethod(method)
        self.means = np.mean(self.source, axis=0)
        self.standard_deviations = column_std(self.source, self.means)

        self.singular_values: Optional[np.ndarray] = None
        self.eigenvalues: Optional[np.ndarray] = None
        self.component_matrix: Optional[np.ndarray] = None
        self.result: Optional[np.ndarray] = None
        self.component_proportions: Optional[np.ndarray] = None
        self.cumulative_proportions: Optional[np.ndarray] = None

    @property
    def computed(self) -> bool:
        return self.component_matrix is not None

    @property
    def n_components(self) -> int:
        return 0 if self.singular_values is None else len(self.singular_values)

    def compute(self) -> "PrincipalComponentAnalysis":
        matrix = self._adjust(self.source)
        U, s, V = svd(matrix)
        if s[0] == 0:
            raise ArithmeticFailure("data has zero variance; principal axes are undefined")

        self.singular_values = s
        self.eigenvalues = s ** 2
        self.component_matrix = V
        self.result = U * s

        total = np.sum(np.abs(self.eigenvalues))
        self.component_proportions = np.abs(self.eigenvalues) / total
        self.cumulative_proportions = np.cumsum(self.component_proportions)
        return self

    def transform(self, data, dimensions: Optional[int] = None) -> np.ndarray:
        """Project ``data`` onto the first ``dimensions`` principal axes."""
        if not self.computed:
            raise PreconditionError("The analysis must have been computed first.")
        if dimensions is None:
            dimensions = self.n_components
        if not 0 <= dimensions <= self.n_components:
            raise ValueError(
                f"dimensions must be between 0 and {self.n_components}, got {dimensions}"
            )
        X = as_matrix(data)
        if X.shape[1] != self.source.shape[1]:
            raise ValueError(
                f"data has {X.shape[1]} columns, the analysis was computed on {self.source.shape[1]}"
            )
        return self._adjust(X) @ self.component_matrix[:, :dimensions]

    def revert(self, projected) -> np.ndarray:
        """Map component scores back to the source space.

        Exact only when every component is supplied.
        """
        if not self.computed:
            raise PreconditionError("The analysis must have been computed first.")
        Y = as_matrix(projected)
        k = Y.shape[1]
        if k > self.n_components:
            raise ValueError(f"got {k} components, only {self.n_components} exist")
        reverted = Y @ self.component_matrix[:, :k].T
        if self.method == AnalysisMethod.STANDARDIZE:
            reverted = reverted * self.standard_deviations
        return reverted + self.means

    def number_of_components(self, threshold: float) -> int:
        """Smallest number of components whose cumulative proportion reaches ``threshold``."""
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("Threshold should be a value between 0 and 1")
        if not self.computed:
            raise PreconditionError("The analysis must have been computed first.")
        hits = np.flatnonzero(self.cumulative_proportions >= threshold)
        if hits.size:
            return int(hits[0]) + 1
        return self.n_components

    def _adjust(self, X: np.ndarray) -> np.ndarray:
        result = center(X, self.means)
        if self.method == AnalysisMethod.STANDARDIZE:
            result = standardize(result, self.standard_deviations)
        return result
