"""Synthetic pseudoalignment simulator for StrainSweep benchmarking.

Generates reads with known group origins and their reference compatibility
sets:
- Each read is drawn from a group according to the true abundances and from
  one reference sequence of that group, which it always hits
- Other references of the same group are hit with a fixed probability,
  mimicking closely related sequences within a lineage
- References of other groups are hit with a small cross-group probability

All randomness flows through numpy's Generator API for full reproducibility.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from strainsweep.types import Grouping, SimulationGroundTruth


@dataclass
class SimulationConfig:
    """Configuration for synthetic pseudoalignment generation.

    Attributes:
        n_groups: Number of reference groups.
        refs_per_group: Reference sequences in each group.
        abundances: Explicit abundance vector (length n_groups). If None,
            abundances are drawn from a symmetric Dirichlet(1) distribution.
        n_reads: Number of reads to simulate.
        within_group_hit_rate: Probability that a read also hits each other
            reference of its source group.
        cross_group_hit_rate: Probability that a read hits each reference of
            another group.
        random_seed: Seed for the numpy random number generator.
    """

    n_groups: int = 3
    refs_per_group: int = 3
    abundances: np.ndarray | None = None
    n_reads: int = 5000
    within_group_hit_rate: float = 0.65
    cross_group_hit_rate: float = 0.02
    random_seed: int = 42


def simulate_pseudoalignment(
    config: SimulationConfig,
) -> tuple[Grouping, list[np.ndarray], SimulationGroundTruth]:
    """Simulate pseudoaligned reads with known group abundances.

    Returns:
        Tuple of (grouping, read_hits, truth) where read_hits[r] holds the
        reference indices read r is compatible with.

    Raises:
        ValueError: If the abundance vector does not match n_groups.
    """
    rng = np.random.default_rng(config.random_seed)
    n_refs = config.n_groups * config.refs_per_group

    group_names = [f"group_{g}" for g in range(config.n_groups)]
    indicators = np.repeat(np.arange(config.n_groups), config.refs_per_group)
    grouping = Grouping(indicators=indicators, names=group_names)

    if config.abundances is not None:
        abundances = np.array(config.abundances, dtype=np.float64)
        if len(abundances) != config.n_groups:
            raise ValueError(
                f"abundances length ({len(abundances)}) != n_groups "
                f"({config.n_groups})"
            )
        abundances = abundances / abundances.sum()
    else:
        abundances = rng.dirichlet(np.ones(config.n_groups))

    origins = rng.choice(config.n_groups, size=config.n_reads, p=abundances)
    read_hits: list[np.ndarray] = []
    for g in origins:
        source = g * config.refs_per_group + rng.integers(config.refs_per_group)
        same_group = indicators == g
        rates = np.where(
            same_group, config.within_group_hit_rate, config.cross_group_hit_rate
        )
        hit = rng.random(n_refs) < rates
        hit[source] = True
        read_hits.append(np.flatnonzero(hit))

    truth = SimulationGroundTruth(
        true_abundances=abundances,
        group_names=group_names,
        read_origins=origins,
    )
    return grouping, read_hits, truth
