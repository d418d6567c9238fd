"""Core data types for StrainSweep.

Dataclasses for the reference grouping, the equivalence-class (EC) table of a
pseudoaligned sample, optimizer diagnostics, and abundance estimates. All
estimates carry their bootstrap distribution when one was computed.
"""

from __future__ import annotations

import enum
import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np


class EstimationMode(enum.Enum):
    """Which estimation variant to run for a sample."""

    POINT = "point"
    BOOTSTRAP = "bootstrap"


@dataclass
class Grouping:
    """Assignment of reference sequences to groups.

    Attributes:
        indicators: Group index of each reference sequence (length n_refs).
        names: Group names, indexed by group index (length n_groups).
    """

    indicators: np.ndarray
    names: list[str]

    def __post_init__(self) -> None:
        self.indicators = np.asarray(self.indicators, dtype=np.intp)
        if self.indicators.ndim != 1:
            raise ValueError("Group indicators must be a 1-D array")
        n_groups = len(self.names)
        if n_groups == 0:
            raise ValueError("Grouping needs at least one group")
        if self.indicators.size and (
            self.indicators.min() < 0 or self.indicators.max() >= n_groups
        ):
            raise ValueError(
                f"Group indicators must lie in 0..{n_groups - 1}"
            )
        if np.any(self.sizes == 0):
            empty = [self.names[i] for i in np.flatnonzero(self.sizes == 0)]
            raise ValueError(f"Groups without reference sequences: {empty}")

    @classmethod
    def from_labels(cls, labels: Iterable[str]) -> Grouping:
        """Build a grouping from one group label per reference sequence.

        Group indices are assigned in order of first appearance.
        """
        label_to_idx: dict[str, int] = {}
        names: list[str] = []
        indicators: list[int] = []
        for label in labels:
            if label not in label_to_idx:
                label_to_idx[label] = len(names)
                names.append(label)
            indicators.append(label_to_idx[label])
        return cls(indicators=np.array(indicators, dtype=np.intp), names=names)

    @property
    def n_groups(self) -> int:
        return len(self.names)

    @property
    def n_refs(self) -> int:
        return int(self.indicators.size)

    @property
    def sizes(self) -> np.ndarray:
        """Number of reference sequences in each group."""
        return np.bincount(self.indicators, minlength=len(self.names))


@dataclass
class Pseudoalignment:
    """Equivalence-class table for one sample.

    Attributes:
        ec_configs: Boolean matrix (n_ecs, n_refs); row e marks the reference
            sequences a read in EC e is compatible with.
        ec_counts: Observed number of reads in each EC (length n_ecs).
        ec_ids: Identifier of each EC, used when exporting probabilities.
    """

    ec_configs: np.ndarray
    ec_counts: np.ndarray
    ec_ids: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.ec_configs = np.asarray(self.ec_configs, dtype=bool)
        self.ec_counts = np.asarray(self.ec_counts, dtype=np.int64)
        if self.ec_configs.ndim != 2:
            raise ValueError("EC configurations must be a 2-D matrix")
        if self.ec_counts.shape != (self.ec_configs.shape[0],):
            raise ValueError(
                f"Got {self.ec_counts.size} EC counts for "
                f"{self.ec_configs.shape[0]} EC configurations"
            )
        if not self.ec_ids:
            self.ec_ids = [str(i) for i in range(self.n_ecs)]
        elif len(self.ec_ids) != self.n_ecs:
            raise ValueError(
                f"Got {len(self.ec_ids)} EC ids for {self.n_ecs} ECs"
            )

    @classmethod
    def from_read_hits(
        cls, read_hits: Iterable[Sequence[int]], n_refs: int
    ) -> Pseudoalignment:
        """Aggregate per-read reference hits into equivalence classes.

        Reads compatible with no reference are dropped. ECs are ordered by
        first appearance.
        """
        config_to_ec: dict[tuple[int, ...], int] = {}
        configs: list[tuple[int, ...]] = []
        counts: list[int] = []
        for hits in read_hits:
            key = tuple(sorted(set(int(h) for h in hits)))
            if not key:
                continue
            if key[-1] >= n_refs or key[0] < 0:
                raise ValueError(
                    f"Reference index out of range 0..{n_refs - 1}: {key}"
                )
            ec = config_to_ec.get(key)
            if ec is None:
                ec = len(configs)
                config_to_ec[key] = ec
                configs.append(key)
                counts.append(0)
            counts[ec] += 1

        ec_configs = np.zeros((len(configs), n_refs), dtype=bool)
        for e, key in enumerate(configs):
            ec_configs[e, list(key)] = True
        return cls(ec_configs=ec_configs, ec_counts=np.array(counts, dtype=np.int64))

    @property
    def n_ecs(self) -> int:
        return int(self.ec_configs.shape[0])

    @property
    def n_refs(self) -> int:
        return int(self.ec_configs.shape[1])

    @property
    def counts_total(self) -> int:
        return int(self.ec_counts.sum())


@dataclass
class ConvergenceDiagnostics:
    """Diagnostics for one optimizer run.

    Attributes:
        bounds: ELBO after each completed iteration (after accept/revert).
        gradient_norms: Squared natural-gradient norm at each iteration.
        rejected_iterations: Iterations whose step lowered the bound and
            was reverted.
        converged: Whether the tolerance was met before the budget ran out.
        n_iterations: Number of iterations performed.
    """

    bounds: list[float] = field(default_factory=list)
    gradient_norms: list[float] = field(default_factory=list)
    rejected_iterations: list[int] = field(default_factory=list)
    converged: bool = False
    n_iterations: int = 0


@dataclass
class AbundanceEstimate:
    """Group abundance estimate for one sample.

    Attributes:
        group_names: Ordered group names (length K).
        abundances: Point estimate from the unperturbed counts (length K).
        ec_probs: Log-space responsibility matrix (K, n_ecs) of the point fit.
        bootstrap_abundances: Abundances per round, shape (iters + 1, K);
            row 0 is the point estimate.
        counts_total: Number of aligned reads in the sample.
        convergence: Optimizer diagnostics of the point fit.
        sample_name: Sample identifier.
    """

    group_names: list[str]
    abundances: np.ndarray  # (K,)
    ec_probs: np.ndarray  # (K, n_ecs)
    bootstrap_abundances: np.ndarray  # (iters + 1, K)
    counts_total: int
    convergence: ConvergenceDiagnostics = field(
        default_factory=ConvergenceDiagnostics
    )
    sample_name: str = "0"

    @property
    def n_bootstrap_iters(self) -> int:
        return int(self.bootstrap_abundances.shape[0]) - 1

    def bootstrap_interval(
        self, level: float = 0.95
    ) -> tuple[np.ndarray, np.ndarray]:
        """Per-group percentile interval over the resampled rounds.

        Falls back to the point estimate when no resampling was done.
        """
        if not 0 < level < 1:
            raise ValueError(f"level must be in (0, 1), got {level}")
        if self.n_bootstrap_iters == 0:
            return self.abundances.copy(), self.abundances.copy()
        replicates = self.bootstrap_abundances[1:]
        tail = (1.0 - level) / 2.0
        lower = np.quantile(replicates, tail, axis=0)
        upper = np.quantile(replicates, 1.0 - tail, axis=0)
        return lower, upper

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict (numpy arrays -> lists)."""
        lower, upper = self.bootstrap_interval()
        return {
            "sample_name": self.sample_name,
            "group_names": self.group_names,
            "abundances": self.abundances.tolist(),
            "ci_lower": lower.tolist(),
            "ci_upper": upper.tolist(),
            "bootstrap_abundances": self.bootstrap_abundances.tolist(),
            "counts_total": self.counts_total,
            "converged": self.convergence.converged,
            "n_iterations": self.convergence.n_iterations,
        }

    def save(self, path: Path) -> None:
        """Save estimate to JSON file."""
        path.write_text(json.dumps(self.to_dict(), indent=2))


@dataclass
class SimulationGroundTruth:
    """Ground truth from the simulator for benchmarking.

    Attributes:
        true_abundances: Group proportions the reads were drawn from.
        group_names: Group names, aligned with true_abundances.
        read_origins: Source group index of every simulated read.
    """

    true_abundances: np.ndarray
    group_names: list[str]
    read_origins: np.ndarray

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "true_abundances": self.true_abundances.tolist(),
            "group_names": self.group_names,
            "read_origins": self.read_origins.tolist(),
        }

    def save(self, path: Path) -> None:
        """Save ground truth to JSON file."""
        path.write_text(json.dumps(self.to_dict(), indent=2))
