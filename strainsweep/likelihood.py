"""Group likelihoods for pseudoaligned reads.

A read that originates from group i is compatible with some number k of the
group's n_i reference sequences. The hit count is modelled as beta-binomial
with mean fraction q and overdispersion e, and the likelihood of a specific
hit pattern is stored relative to a full hit:

    logl(i, k) = ln B(k + a, n_i - k + b) - ln B(n_i + a, b)

with a = q (1/e - 1) and b = (1 - q)(1/e - 1). A group the read does not hit
at all scores a fixed floor of ln 0.01. The resulting matrix has one
row per group and one column per possible hit count, and is looked up by the
optimizer through the per-EC group hit counts.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy.special import betaln

from strainsweep.types import Grouping, Pseudoalignment

logger = logging.getLogger(__name__)

# Log-likelihood of a group the read does not hit at all. Hit counts larger
# than the group size are never looked up and get the same value.
_NO_HIT_LOGL = float(np.log(0.01))


def bb_parameters(
    mean_fraction: float = 0.65, dispersion: float = 0.01
) -> tuple[float, float]:
    """Beta-binomial shape parameters (a, b) for a mean fraction and dispersion.

    Raises:
        ValueError: If either argument is outside (0, 1).
    """
    if not 0 < mean_fraction < 1:
        raise ValueError(f"mean_fraction must be in (0, 1), got {mean_fraction}")
    if not 0 < dispersion < 1:
        raise ValueError(f"dispersion must be in (0, 1), got {dispersion}")
    concentration = 1.0 / dispersion - 1.0
    return mean_fraction * concentration, (1.0 - mean_fraction) * concentration


def ldbb_scaled(
    k: int | np.ndarray, n: int, a: float, b: float
) -> float | np.ndarray:
    """Log beta-binomial pattern probability of k hits out of n, relative to n hits."""
    return betaln(k + a, n - k + b) - betaln(n + a, b)


def likelihood_matrix(
    grouping: Grouping,
    mean_fraction: float = 0.65,
    dispersion: float = 0.01,
) -> np.ndarray:
    """Per-group log-likelihood of every possible group hit count.

    Returns:
        Array of shape (n_groups, max_group_size + 1).
    """
    a, b = bb_parameters(mean_fraction, dispersion)
    sizes = grouping.sizes
    max_size = int(sizes.max())
    logl = np.full((grouping.n_groups, max_size + 1), _NO_HIT_LOGL)
    for i, n in enumerate(sizes):
        k = np.arange(1, n + 1)
        logl[i, 1 : n + 1] = ldbb_scaled(k, int(n), a, b)

    logger.debug(
        "Likelihood matrix: %d groups, max group size %d (a=%.3f, b=%.3f)",
        grouping.n_groups, max_size, a, b,
    )
    return logl


def group_hit_matrix(
    pseudoalignment: Pseudoalignment, grouping: Grouping
) -> np.ndarray:
    """Number of references of each group that each EC is compatible with.

    Returns:
        Integer array of shape (n_groups, n_ecs).

    Raises:
        ValueError: If the grouping and the pseudoalignment disagree on the
            number of reference sequences.
    """
    if pseudoalignment.n_refs != grouping.n_refs:
        raise ValueError(
            f"Pseudoalignment has {pseudoalignment.n_refs} reference sequences "
            f"but the grouping has {grouping.n_refs}"
        )
    membership = np.zeros((grouping.n_refs, grouping.n_groups), dtype=np.int64)
    membership[np.arange(grouping.n_refs), grouping.indicators] = 1
    hits = pseudoalignment.ec_configs.astype(np.int64) @ membership
    return np.ascontiguousarray(hits.T)
