"""Bootstrap resampling of EC counts.

Quantifies estimation uncertainty by refitting the abundance model on EC
counts drawn from a categorical distribution over the observed ECs. Round 0
is always the fit on the unperturbed counts; every resampled round draws
from its own random stream spawned from one seed, so the output is the same
whether rounds run sequentially or in a process pool.
"""

from __future__ import annotations

import logging
from itertools import repeat
from multiprocessing import Pool

import numpy as np

from strainsweep.rcg import RCGConfig, RCGOptimizer
from strainsweep.sample import PointEstimate, Sample
from strainsweep.types import (
    AbundanceEstimate,
    EstimationMode,
    Grouping,
    Pseudoalignment,
)

logger = logging.getLogger(__name__)


def resample_counts(
    ec_weights: np.ndarray, draw_count: int, rng: np.random.Generator
) -> np.ndarray:
    """Draw reads i.i.d. from the EC distribution and count them per EC.

    Args:
        ec_weights: Categorical probability of each EC.
        draw_count: Number of reads to draw.
        rng: Random stream for this round.

    Returns:
        Fresh integer count vector (may contain zeros).
    """
    return rng.multinomial(draw_count, ec_weights)


def fit_counts(
    ll_mat: np.ndarray,
    hit_counts: np.ndarray,
    ec_counts: np.ndarray,
    alpha0: np.ndarray | None,
    config: RCGConfig,
) -> np.ndarray:
    """Fit private copies of the EC counts and return the group abundances.

    ECs that received no reads get a log count of -inf and drop out of
    every weighted sum.
    """
    with np.errstate(divide="ignore"):
        log_ec_counts = np.log(ec_counts.astype(np.float64))
    counts_total = int(ec_counts.sum())
    result = RCGOptimizer(config).fit(
        ll_mat, hit_counts, log_ec_counts, counts_total, alpha0
    )
    weighted = np.exp(result.ec_probs + log_ec_counts[np.newaxis, :])
    return weighted.sum(axis=1) / counts_total


def _bootstrap_round(
    ll_mat: np.ndarray,
    hit_counts: np.ndarray,
    ec_weights: np.ndarray,
    draw_count: int,
    seed: np.random.SeedSequence,
    alpha0: np.ndarray | None,
    config: RCGConfig,
) -> np.ndarray:
    """One resampled round; a free function so it can run in a worker process."""
    rng = np.random.default_rng(seed)
    ec_counts = resample_counts(ec_weights, draw_count, rng)
    return fit_counts(ll_mat, hit_counts, ec_counts, alpha0, config)


class BootstrapEstimate:
    """Point fit plus bootstrap replicates over resampled EC counts.

    Usage:
        est = BootstrapEstimate(Sample(pseudoalignment))
        est.init(grouping)
        result = est.run(iters=100, seed=42)
    """

    mode = EstimationMode.BOOTSTRAP

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
        self.ec_weights: np.ndarray | None = None

    def init(
        self,
        grouping: Grouping,
        mean_fraction: float = 0.65,
        dispersion: float = 0.01,
    ) -> None:
        """Build the EC distribution and the shared likelihood matrix."""
        counts = self.sample.pseudoalignment.ec_counts.astype(np.float64)
        self.ec_weights = counts / counts.sum()
        self.grouping = grouping
        self.sample.calc_likelihood(grouping, mean_fraction, dispersion)

    def resample(self, draw_count: int, rng: np.random.Generator) -> np.ndarray:
        """Fresh EC counts for one bootstrap round."""
        if self.ec_weights is None:
            raise ValueError("Call init() with a grouping first")
        return resample_counts(self.ec_weights, draw_count, rng)

    def run_round(self, ec_counts: np.ndarray | None = None) -> np.ndarray:
        """Fit one round and return its abundances.

        Without counts the sample's own (unperturbed) counts are fitted and
        the responsibilities are kept on the sample.
        """
        if ec_counts is None:
            self.sample.fit(self.alpha0, self.config)
            return self.sample.group_abundances()
        return fit_counts(
            self.sample.ll_mat, self.sample.hit_counts, ec_counts,
            self.alpha0, self.config,
        )

    def run(
        self,
        iters: int,
        seed: int | None = None,
        bootstrap_count: int = 0,
        n_workers: int = 1,
    ) -> AbundanceEstimate:
        """Fit the original counts, then `iters` resampled rounds.

        Args:
            iters: Number of resampled rounds.
            seed: Seed of the random streams; None draws fresh entropy.
            bootstrap_count: Reads drawn per round; 0 uses the sample's
                total read count.
            n_workers: Worker processes for the resampled rounds.

        Returns:
            AbundanceEstimate whose bootstrap_abundances has iters + 1 rows,
            row 0 being the unperturbed fit.
        """
        if self.grouping is None or self.ec_weights is None:
            raise ValueError("Call init() with a grouping first")
        if iters < 0:
            raise ValueError(f"iters must be >= 0, got {iters}")
        if bootstrap_count < 0:
            raise ValueError(f"bootstrap_count must be >= 0, got {bootstrap_count}")

        logger.info("Running estimation with %d bootstrap iterations", iters)
        logger.info("Estimating relative abundances from the observed counts")
        point = self.run_round()
        replicates = [point]

        draw_count = bootstrap_count or self.sample.counts_total
        seed_seq = np.random.SeedSequence(seed)
        logger.debug("Bootstrap seed entropy: %d", seed_seq.entropy)
        round_seeds = seed_seq.spawn(iters)

        if n_workers > 1 and iters > 1:
            args = zip(
                repeat(self.sample.ll_mat), repeat(self.sample.hit_counts),
                repeat(self.ec_weights), repeat(draw_count), round_seeds,
                repeat(self.alpha0), repeat(self.config),
            )
            logger.info("Bootstrapping with %d worker processes", n_workers)
            with Pool(n_workers) as p:
                replicates.extend(p.starmap(_bootstrap_round, args))
        else:
            for i, round_seed in enumerate(round_seeds, start=1):
                logger.info("Bootstrap iter %d/%d", i, iters)
                rng = np.random.default_rng(round_seed)
                replicates.append(self.run_round(self.resample(draw_count, rng)))

        return AbundanceEstimate(
            group_names=list(self.grouping.names),
            abundances=point,
            ec_probs=self.sample.ec_probs,
            bootstrap_abundances=np.vstack(replicates),
            counts_total=self.sample.counts_total,
            convergence=self.sample.convergence,
            sample_name=self.sample.name,
        )


def estimate_abundances(
    pseudoalignment: Pseudoalignment,
    grouping: Grouping,
    mode: EstimationMode = EstimationMode.POINT,
    alpha0: np.ndarray | None = None,
    config: RCGConfig | None = None,
    mean_fraction: float = 0.65,
    dispersion: float = 0.01,
    iters: int = 0,
    seed: int | None = None,
    bootstrap_count: int = 0,
    n_workers: int = 1,
    name: str = "0",
) -> AbundanceEstimate:
    """Convenience function: estimate group abundances for one sample."""
    sample = Sample(pseudoalignment, name=name)
    if mode is EstimationMode.POINT:
        estimator = PointEstimate(sample, alpha0, config)
        estimator.init(grouping, mean_fraction, dispersion)
        return estimator.run()
    estimator = BootstrapEstimate(sample, alpha0, config)
    estimator.init(grouping, mean_fraction, dispersion)
    return estimator.run(
        iters, seed=seed, bootstrap_count=bootstrap_count, n_workers=n_workers
    )
