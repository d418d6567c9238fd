"""Sample abundance model.

A ``Sample`` owns the EC counts of one pseudoaligned sample, the likelihood
inputs derived from a grouping, and the fitted responsibility matrix.
Relative group abundances are always derived from the responsibilities and
the current EC counts, never stored independently.
"""

from __future__ import annotations

import logging

import numpy as np

from strainsweep.likelihood import group_hit_matrix, likelihood_matrix
from strainsweep.rcg import RCGConfig, RCGOptimizer, RCGResult
from strainsweep.types import (
    AbundanceEstimate,
    ConvergenceDiagnostics,
    EstimationMode,
    Grouping,
    Pseudoalignment,
)

logger = logging.getLogger(__name__)


class Sample:
    """EC counts, likelihoods and responsibilities for one sample.

    Usage:
        sample = Sample(pseudoalignment)
        sample.calc_likelihood(grouping)
        sample.fit(alpha0)
        theta = sample.group_abundances()
    """

    def __init__(self, pseudoalignment: Pseudoalignment, name: str = "0"):
        self.pseudoalignment = pseudoalignment
        self.name = name
        self.log_ec_counts = np.zeros(pseudoalignment.n_ecs)
        self.counts_total = 0
        self.ll_mat: np.ndarray | None = None
        self.hit_counts: np.ndarray | None = None
        self.ec_probs: np.ndarray | None = None
        self.convergence = ConvergenceDiagnostics()
        self.process_alignment()

    @property
    def n_ecs(self) -> int:
        return self.pseudoalignment.n_ecs

    def process_alignment(self, ec_counts: np.ndarray | None = None) -> None:
        """Set log EC counts and the total read count.

        Args:
            ec_counts: Per-EC counts; defaults to the observed counts.

        Raises:
            ValueError: If the counts have the wrong length or any count is
                not positive (ECs without reads must be filtered upstream).
        """
        if ec_counts is None:
            ec_counts = self.pseudoalignment.ec_counts
        ec_counts = np.asarray(ec_counts)
        if ec_counts.shape != (self.n_ecs,):
            raise ValueError(
                f"Got {ec_counts.size} EC counts for {self.n_ecs} ECs"
            )
        if np.any(ec_counts <= 0):
            raise ValueError("EC counts must be positive; drop empty ECs first")
        self.log_ec_counts = np.log(ec_counts.astype(np.float64))
        self.counts_total = int(ec_counts.sum())

    def calc_likelihood(
        self,
        grouping: Grouping,
        mean_fraction: float = 0.65,
        dispersion: float = 0.01,
    ) -> None:
        """Compute the group hit counts and the likelihood matrix for a grouping."""
        self.hit_counts = group_hit_matrix(self.pseudoalignment, grouping)
        self.ll_mat = likelihood_matrix(grouping, mean_fraction, dispersion)

    def group_hit_counts(
        self, indicators: np.ndarray, ec_id: int, n_groups: int
    ) -> np.ndarray:
        """Sum one EC's per-reference hits into per-group totals."""
        config = self.pseudoalignment.ec_configs[ec_id]
        return np.bincount(
            np.asarray(indicators), weights=config.astype(np.float64),
            minlength=n_groups,
        ).astype(np.int64)

    def fit(
        self,
        alpha0: np.ndarray | None = None,
        config: RCGConfig | None = None,
    ) -> RCGResult:
        """Run the optimizer on the current EC counts and store the result."""
        if self.ll_mat is None or self.hit_counts is None:
            raise ValueError("Call calc_likelihood() before fitting")
        if self.counts_total == 0:
            raise ValueError(f"Sample {self.name} has no aligned reads")
        result = RCGOptimizer(config).fit(
            self.ll_mat, self.hit_counts, self.log_ec_counts,
            self.counts_total, alpha0,
        )
        self.ec_probs = result.ec_probs
        self.convergence = result.convergence
        return result

    def group_abundances(self) -> np.ndarray:
        """Relative abundance of every group from the fitted responsibilities.

        theta[i] = sum_j exp(ec_probs[i, j] + log_ec_counts[j]) / counts_total
        """
        if self.ec_probs is None:
            raise ValueError("Sample has not been fitted")
        weighted = np.exp(self.ec_probs + self.log_ec_counts[np.newaxis, :])
        return weighted.sum(axis=1) / self.counts_total


class PointEstimate:
    """Single fit on the observed EC counts."""

    mode = EstimationMode.POINT

    def __init__(
        self,
        sample: Sample,
        alpha0: np.ndarray | None = None,
        config: RCGConfig | None = None,
    ):
        self.sample = sample
        self.alpha0 = alpha0
        self.config = config or RCGConfig()
        self.grouping: Grouping | None = None

    def init(
        self,
        grouping: Grouping,
        mean_fraction: float = 0.65,
        dispersion: float = 0.01,
    ) -> None:
        self.grouping = grouping
        self.sample.calc_likelihood(grouping, mean_fraction, dispersion)

    def run_round(self) -> np.ndarray:
        """Fit the sample and return its group abundances."""
        self.sample.fit(self.alpha0, self.config)
        return self.sample.group_abundances()

    def run(self) -> AbundanceEstimate:
        if self.grouping is None:
            raise ValueError("Call init() with a grouping first")
        abundances = self.run_round()
        logger.info(
            "Estimated %d group abundances from %d reads",
            self.grouping.n_groups, self.sample.counts_total,
        )
        return AbundanceEstimate(
            group_names=list(self.grouping.names),
            abundances=abundances,
            ec_probs=self.sample.ec_probs,
            bootstrap_abundances=abundances[np.newaxis, :].copy(),
            counts_total=self.sample.counts_total,
            convergence=self.sample.convergence,
            sample_name=self.sample.name,
        )
