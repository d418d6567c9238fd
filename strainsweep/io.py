"""Reading pseudoalignments and groupings, writing abundance estimates."""

from __future__ import annotations

import contextlib
import csv
import gzip
import json
import sys
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path
from typing import IO

import numpy as np

from strainsweep import __version__
from strainsweep.types import AbundanceEstimate, Grouping, Pseudoalignment

THEMISTO_MODES = ("union", "intersection")


def _open_text(path: str | Path, mode: str = "rt") -> IO[str]:
    opener = gzip.open if str(path).endswith(".gz") else open
    return opener(path, mode)


@contextlib.contextmanager
def _output(path: str | Path | None, compress: bool = False) -> Iterator[IO[str]]:
    """Open path for writing, or yield stdout when path is None."""
    if path is None:
        yield sys.stdout
        return
    opener = gzip.open if compress else open
    with opener(path, "wt") as fh:
        yield fh


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------


def read_grouping(path: str | Path) -> Grouping:
    """Read group labels, one per line in reference sequence order."""
    with _open_text(path) as fh:
        labels = [line.strip() for line in fh if line.strip()]
    if not labels:
        raise ValueError(f"No group labels in {path}")
    return Grouping.from_labels(labels)


def write_grouping(labels: Iterable[str], path: str | Path) -> None:
    """Write one group label per line."""
    with _open_text(path, "wt") as fh:
        for label in labels:
            fh.write(f"{label}\n")


def read_run_info_n_targets(path: str | Path) -> int:
    """Number of reference sequences recorded in a kallisto run_info.json."""
    with open(path) as fh:
        run_info = json.load(fh)
    if "n_targets" not in run_info:
        raise ValueError(f"No n_targets field in {path}")
    return int(run_info["n_targets"])


def verify_grouping(n_refs: int, n_targets: int) -> None:
    """Check that the grouping and the pseudoalignment index agree in size."""
    if n_targets > n_refs:
        raise ValueError(
            "pseudoalignment has more reference sequences than the grouping."
        )
    if n_targets < n_refs:
        raise ValueError(
            "grouping has more reference sequences than the pseudoalignment."
        )


# ---------------------------------------------------------------------------
# Pseudoalignments
# ---------------------------------------------------------------------------


def read_kallisto(
    ec_path: str | Path, tsv_path: str | Path, n_refs: int
) -> Pseudoalignment:
    """Read a kallisto pseudoalignment (matrix.ec + pseudoalignments.tsv).

    ECs observed zero times are dropped.
    """
    configs: dict[str, list[int]] = {}
    with _open_text(ec_path) as fh:
        for row in csv.reader(fh, delimiter="\t"):
            if not row:
                continue
            if len(row) != 2:
                raise ValueError(f"Malformed line in {ec_path}: {row}")
            configs[row[0]] = [int(r) for r in row[1].split(",") if r]

    ec_ids: list[str] = []
    counts: list[int] = []
    with _open_text(tsv_path) as fh:
        for row in csv.reader(fh, delimiter="\t"):
            if not row:
                continue
            ec_id, count = row[0], int(row[1])
            if ec_id not in configs:
                raise ValueError(f"EC {ec_id} in {tsv_path} is not in {ec_path}")
            if count > 0:
                ec_ids.append(ec_id)
                counts.append(count)

    ec_configs = np.zeros((len(ec_ids), n_refs), dtype=bool)
    for e, ec_id in enumerate(ec_ids):
        refs = configs[ec_id]
        if refs and (max(refs) >= n_refs or min(refs) < 0):
            raise ValueError(
                f"EC {ec_id} references a sequence outside 0..{n_refs - 1}"
            )
        ec_configs[e, refs] = True
    return Pseudoalignment(
        ec_configs=ec_configs,
        ec_counts=np.array(counts, dtype=np.int64),
        ec_ids=ec_ids,
    )


def read_batch(path: str | Path) -> list[tuple[str, list[Path]]]:
    """Read a batch list of samples.

    Each line holds a sample name followed by one or two themisto files;
    relative file paths are resolved against the batch file's directory.
    """
    base = Path(path).parent
    samples: list[tuple[str, list[Path]]] = []
    seen: set[str] = set()
    with _open_text(path) as fh:
        for lineno, line in enumerate(fh, start=1):
            fields = line.split()
            if not fields:
                continue
            if len(fields) not in (2, 3):
                raise ValueError(
                    f"{path}:{lineno}: expected a sample name and one or two "
                    f"themisto files, got {len(fields)} fields"
                )
            name = fields[0]
            if name in seen:
                raise ValueError(f"{path}:{lineno}: duplicate sample name {name!r}")
            seen.add(name)
            samples.append((name, [base / f for f in fields[1:]]))
    if not samples:
        raise ValueError(f"No samples in {path}")
    return samples


def _parse_themisto(path: str | Path) -> dict[str, set[int]]:
    hits: dict[str, set[int]] = {}
    with _open_text(path) as fh:
        for line in fh:
            fields = line.split()
            if not fields:
                continue
            hits[fields[0]] = {int(r) for r in fields[1:]}
    return hits


def read_themisto(
    paths: Sequence[str | Path], n_refs: int, mode: str = "union"
) -> Pseudoalignment:
    """Read themisto pseudoalignments (`read_id ref ref ...` per line).

    With paired files the strands of a read are matched by read id and merged
    by union or intersection. Reads with no hits are dropped.
    """
    if mode not in THEMISTO_MODES:
        raise ValueError(f"Unknown themisto mode {mode!r}; use one of {THEMISTO_MODES}")
    if not paths:
        raise ValueError("No themisto files given")

    strands = [_parse_themisto(p) for p in paths]
    read_ids: dict[str, None] = {}
    for strand in strands:
        read_ids.update(dict.fromkeys(strand))

    def merged(read_id: str) -> set[int]:
        sets = [strand.get(read_id, set()) for strand in strands]
        if mode == "union":
            return set().union(*sets)
        return set.intersection(*sets)

    return Pseudoalignment.from_read_hits(
        (merged(read_id) for read_id in read_ids), n_refs
    )


def write_themisto(read_hits: Iterable[Sequence[int]], path: str | Path) -> None:
    """Write per-read hits in themisto format, reads numbered from 0."""
    with _open_text(path, "wt") as fh:
        for i, hits in enumerate(read_hits):
            fields = [str(i)] + [str(int(h)) for h in sorted(hits)]
            fh.write(" ".join(fields) + "\n")


# ---------------------------------------------------------------------------
# Estimates
# ---------------------------------------------------------------------------


def write_abundances(
    estimate: AbundanceEstimate, path: str | Path | None = None
) -> None:
    """Write the point estimate; to stdout when path is None."""
    with _output(path) as fh:
        fh.write(f"#strainsweep_version:\t{__version__}\n")
        fh.write(f"#total_hits:\t{estimate.counts_total}\n")
        fh.write("#c_id\tmean_theta\n")
        for name, theta in zip(estimate.group_names, estimate.abundances):
            fh.write(f"{name}\t{theta:.10g}\n")


def write_bootstrap(
    estimate: AbundanceEstimate, path: str | Path | None = None
) -> None:
    """Write every round's abundances, point estimate first."""
    with _output(path) as fh:
        fh.write(f"#strainsweep_version:\t{__version__}\n")
        fh.write(f"#total_hits:\t{estimate.counts_total}\n")
        fh.write(f"#bootstrap_iters:\t{estimate.n_bootstrap_iters}\n")
        fh.write("#c_id\tmean_theta\tbootstrap_mean_thetas\n")
        for i, name in enumerate(estimate.group_names):
            values = estimate.bootstrap_abundances[:, i]
            fh.write(name + "\t" + "\t".join(f"{v:.10g}" for v in values) + "\n")


def write_probabilities(
    estimate: AbundanceEstimate,
    ec_ids: Sequence[str],
    path: str | Path | None = None,
    compress: bool = False,
) -> None:
    """Write the EC-by-group probability matrix as CSV."""
    probs = np.exp(estimate.ec_probs)
    if probs.shape[1] != len(ec_ids):
        raise ValueError(
            f"Got {len(ec_ids)} EC ids for {probs.shape[1]} ECs"
        )
    with _output(path, compress=compress) as fh:
        writer = csv.writer(fh, lineterminator="\n")
        writer.writerow(["ec_id", *estimate.group_names])
        for j, ec_id in enumerate(ec_ids):
            writer.writerow([ec_id, *(f"{p:.10g}" for p in probs[:, j])])
