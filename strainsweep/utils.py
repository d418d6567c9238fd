"""Numerical helpers for StrainSweep.

Digamma approximation and the log-space matrix primitives used by the
optimizer.
"""

from __future__ import annotations

import numpy as np
from scipy.special import logsumexp

# Recurrence shifts the argument up to this value before the asymptotic
# expansion is applied.
_DIGAMMA_SHIFT = 7.0


def digamma(x: float | np.ndarray) -> float | np.ndarray:
    """Logarithmic derivative of the Gamma function.

    Shifts the argument with psi(x) = psi(x + 1) - 1/x until x >= 7, then
    applies the asymptotic expansion in 1/(x - 1/2).

    Raises:
        ValueError: If any element of x is not strictly positive.
    """
    scalar = np.ndim(x) == 0
    x = np.array(x, dtype=np.float64, ndmin=1)
    if not np.all(x > 0):
        raise ValueError("digamma is only defined here for x > 0")

    result = np.zeros_like(x)
    small = x < _DIGAMMA_SHIFT
    while np.any(small):
        result[small] -= 1.0 / x[small]
        x[small] += 1.0
        small = x < _DIGAMMA_SHIFT

    x -= 0.5
    xx = 1.0 / x
    xx2 = xx * xx
    xx4 = xx2 * xx2
    result += (
        np.log(x)
        + (1.0 / 24.0) * xx2
        - (7.0 / 960.0) * xx4
        + (31.0 / 8064.0) * xx4 * xx2
        - (127.0 / 30720.0) * xx4 * xx4
    )
    if scalar:
        return float(result[0])
    return result


def log_sum_exp_cols(mat: np.ndarray) -> np.ndarray:
    """Stable log(sum(exp(mat))) of every column."""
    return logsumexp(mat, axis=0)


def normalize_log_columns(mat: np.ndarray) -> np.ndarray:
    """Normalize every column of a log-space matrix in place.

    Returns:
        The per-column constants that were subtracted.
    """
    m = log_sum_exp_cols(mat)
    mat -= m[np.newaxis, :]
    return m


def exp_right_multiply(mat: np.ndarray, log_weights: np.ndarray) -> np.ndarray:
    """Row sums of exp(mat) weighted by exp(log_weights) per column.

    out[i] = sum_j exp(mat[i, j] + log_weights[j])
    """
    return np.exp(mat + log_weights[np.newaxis, :]).sum(axis=1)
