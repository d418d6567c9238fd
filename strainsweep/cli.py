"""Command-line interface for StrainSweep.

Provides commands for:
- estimate: Estimate group abundances from a pseudoalignment
- simulate: Generate a synthetic pseudoalignment with known abundances
"""

from __future__ import annotations

import logging
from pathlib import Path

import click
import numpy as np

from strainsweep import __version__

logger = logging.getLogger("strainsweep")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """StrainSweep: Group abundance estimation from pseudoalignments."""
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# estimate
# ---------------------------------------------------------------------------


@cli.command()
@click.option("-i", "--groups-list", required=True, type=click.Path(exists=True),
              help="Group label of each reference sequence, one per line.")
@click.option("--themisto", multiple=True, type=click.Path(exists=True),
              help="Themisto pseudoalignment file; give twice for paired reads.")
@click.option("--themisto-mode", default="union",
              type=click.Choice(["union", "intersection"]),
              help="How to merge paired themisto strands.")
@click.option("--kallisto", type=click.Path(exists=True, file_okay=False),
              help="Kallisto output directory (matrix.ec, pseudoalignments.tsv, run_info.json).")
@click.option("--batch", type=click.Path(exists=True, dir_okay=False),
              help="Sample list: name and one or two themisto files per line.")
@click.option("-o", "--output", default=None, type=click.Path(),
              help="Output prefix (directory with --batch); abundances go to stdout when omitted.")
@click.option("--iters", default=0, help="Number of bootstrap iterations.")
@click.option("--bootstrap-count", default=0,
              help="Reads drawn per bootstrap iteration (0 = sample size).")
@click.option("--seed", default=None, type=int, help="Bootstrap random seed.")
@click.option("--alpha", default=1.0, help="Dirichlet prior concentration per group.")
@click.option("-q", "mean_fraction", default=0.65,
              help="Mean fraction of a group's sequences a read hits.")
@click.option("-e", "dispersion", default=0.01,
              help="Dispersion of the hit fraction.")
@click.option("--tol", default=1e-6, help="Convergence tolerance on the bound.")
@click.option("--max-iters", default=5000, help="Maximum optimizer iterations.")
@click.option("-t", "--threads", default=1, help="Worker processes for bootstrapping.")
@click.option("--write-probs", is_flag=True, help="Write the EC probability matrix.")
@click.option("--gzip-probs", is_flag=True, help="Compress the probability matrix.")
def estimate(
    groups_list: str,
    themisto: tuple[str, ...],
    themisto_mode: str,
    kallisto: str | None,
    batch: str | None,
    output: str | None,
    iters: int,
    bootstrap_count: int,
    seed: int | None,
    alpha: float,
    mean_fraction: float,
    dispersion: float,
    tol: float,
    max_iters: int,
    threads: int,
    write_probs: bool,
    gzip_probs: bool,
) -> None:
    """Estimate relative group abundances for one sample or a batch."""
    from strainsweep.bootstrap import estimate_abundances
    from strainsweep.io import (
        read_batch,
        read_grouping,
        read_kallisto,
        read_run_info_n_targets,
        read_themisto,
        verify_grouping,
        write_abundances,
        write_bootstrap,
        write_probabilities,
    )
    from strainsweep.rcg import RCGConfig
    from strainsweep.types import EstimationMode

    if sum(map(bool, (themisto, kallisto, batch))) != 1:
        raise click.UsageError("Give exactly one of --themisto, --kallisto or --batch.")
    if len(themisto) > 2:
        raise click.UsageError("--themisto takes at most two files.")
    if gzip_probs and not write_probs:
        raise click.UsageError("--gzip-probs requires --write-probs.")
    if batch and not output:
        raise click.UsageError("--batch requires -o/--output as the output directory.")

    mode = EstimationMode.BOOTSTRAP if iters > 0 else EstimationMode.POINT
    try:
        grouping = read_grouping(groups_list)
        logger.info("Read %d groups for %d reference sequences",
                    grouping.n_groups, grouping.n_refs)
        if kallisto:
            kdir = Path(kallisto)
            verify_grouping(grouping.n_refs, read_run_info_n_targets(kdir / "run_info.json"))
            alignments = [("0", read_kallisto(
                kdir / "matrix.ec", kdir / "pseudoalignments.tsv", grouping.n_refs
            ))]
        elif themisto:
            alignments = [
                ("0", read_themisto(list(themisto), grouping.n_refs, mode=themisto_mode))
            ]
        else:
            out_dir = Path(output)
            out_dir.mkdir(parents=True, exist_ok=True)
            alignments = [
                (name, read_themisto(paths, grouping.n_refs, mode=themisto_mode))
                for name, paths in read_batch(batch)
            ]
            logger.info("Read %d samples from %s", len(alignments), batch)

        results = []
        for name, aln in alignments:
            logger.info("Sample %s: %d equivalence classes with %d aligned reads",
                        name, aln.n_ecs, aln.counts_total)
            results.append(estimate_abundances(
                aln,
                grouping,
                mode=mode,
                alpha0=np.full(grouping.n_groups, alpha),
                config=RCGConfig(tolerance=tol, max_iterations=max_iters),
                mean_fraction=mean_fraction,
                dispersion=dispersion,
                iters=iters,
                seed=seed,
                bootstrap_count=bootstrap_count,
                n_workers=threads,
                name=name,
            ))
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    for (_, aln), result in zip(alignments, results):
        prefix = output
        if batch:
            prefix = str(Path(output) / result.sample_name)

        abundances_path = f"{prefix}_abundances.txt" if prefix else None
        if mode is EstimationMode.BOOTSTRAP:
            write_bootstrap(result, abundances_path)
        else:
            write_abundances(result, abundances_path)

        if write_probs:
            probs_path = None
            if prefix:
                probs_path = f"{prefix}_probs.csv" + (".gz" if gzip_probs else "")
            write_probabilities(result, aln.ec_ids, probs_path, compress=gzip_probs)

        if prefix:
            click.echo(f"Abundances written to {abundances_path}", err=True)


# ---------------------------------------------------------------------------
# simulate
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--n-groups", default=3, help="Number of reference groups.")
@click.option("--refs-per-group", default=3, help="Reference sequences per group.")
@click.option("--abundances", default=None,
              help="Comma-separated group abundances (default: Dirichlet draw).")
@click.option("--n-reads", default=5000, help="Number of reads to simulate.")
@click.option("--within-rate", default=0.65, help="Within-group hit probability.")
@click.option("--cross-rate", default=0.02, help="Cross-group hit probability.")
@click.option("--seed", default=42, help="Random seed.")
@click.option("-o", "--output-dir", required=True, type=click.Path(), help="Output directory.")
def simulate(
    n_groups: int,
    refs_per_group: int,
    abundances: str | None,
    n_reads: int,
    within_rate: float,
    cross_rate: float,
    seed: int,
    output_dir: str,
) -> None:
    """Generate a synthetic pseudoalignment with known ground truth."""
    from strainsweep.io import write_grouping, write_themisto
    from strainsweep.simulator import SimulationConfig, simulate_pseudoalignment

    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    abundance_vec = None
    if abundances:
        try:
            abundance_vec = np.array([float(a) for a in abundances.split(",")])
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--abundances") from exc

    config = SimulationConfig(
        n_groups=n_groups,
        refs_per_group=refs_per_group,
        abundances=abundance_vec,
        n_reads=n_reads,
        within_group_hit_rate=within_rate,
        cross_group_hit_rate=cross_rate,
        random_seed=seed,
    )

    logger.info("Simulating pseudoalignment: %d groups, %d reads", n_groups, n_reads)
    try:
        grouping, read_hits, truth = simulate_pseudoalignment(config)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    write_themisto(read_hits, out / "pseudoalignment.txt")
    write_grouping((grouping.names[g] for g in grouping.indicators), out / "groups.txt")
    truth.save(out / "ground_truth.json")

    click.echo(f"Simulated {len(read_hits)} reads from {n_groups} groups -> {out}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
