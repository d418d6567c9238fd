"""Tests for the Riemannian conjugate gradient optimizer.

The ELBO trace must never decrease, every returned column must be a
normalized log-space distribution, and the hand-checkable toy cases must
produce the expected abundances.
"""

import numpy as np
import pytest
from scipy.special import digamma as psi
from scipy.special import logsumexp

from strainsweep.likelihood import group_hit_matrix, likelihood_matrix
from strainsweep.rcg import (
    RCGConfig,
    RCGOptimizer,
    RCGResult,
    elbo,
    mixture_natural_gradient,
)
from strainsweep.simulator import SimulationConfig, simulate_pseudoalignment
from strainsweep.types import ConvergenceDiagnostics, Pseudoalignment


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _abundances(result, log_ec_counts, counts_total):
    return np.exp(result.ec_probs + log_ec_counts[np.newaxis, :]).sum(axis=1) / counts_total


def _exclusive_problem(counts, logl=None):
    """Each EC compatible with exactly one single-reference group."""
    n = len(counts)
    if logl is None:
        logl = np.array([[np.log(0.01), 0.0]] * n)
    hit_counts = np.eye(n, dtype=np.int64)
    log_counts = np.log(np.asarray(counts, dtype=float))
    return logl, hit_counts, log_counts, int(np.sum(counts))


@pytest.fixture(scope="module")
def simulated_problem():
    cfg = SimulationConfig(
        n_groups=4, refs_per_group=3, abundances=np.array([0.5, 0.25, 0.15, 0.1]),
        n_reads=2000, random_seed=7,
    )
    grouping, read_hits, truth = simulate_pseudoalignment(cfg)
    aln = Pseudoalignment.from_read_hits(read_hits, grouping.n_refs)
    logl = likelihood_matrix(grouping)
    hits = group_hit_matrix(aln, grouping)
    log_counts = np.log(aln.ec_counts.astype(float))
    return logl, hits, log_counts, aln.counts_total, truth


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


class TestRCGConfig:
    def test_defaults(self):
        cfg = RCGConfig()
        assert cfg.tolerance == 1e-6
        assert cfg.max_iterations == 5000


class TestNaturalGradient:
    def test_gradient_formula(self):
        rng = np.random.default_rng(1)
        gamma_Z = rng.normal(size=(3, 5))
        gamma_Z -= logsumexp(gamma_Z, axis=0)
        ll = rng.normal(size=(3, 5))
        N_k = np.array([2.0, 5.0, 10.0])
        grad, norm = mixture_natural_gradient(gamma_Z, N_k, ll)

        expected = ll + (psi(N_k) - 1.0)[:, None] - gamma_Z
        np.testing.assert_allclose(grad, expected, atol=1e-9)

        q = np.exp(gamma_Z)
        colsum = (expected * q).sum(axis=0)
        assert norm == pytest.approx(np.sum(q * (expected - colsum) * expected))

    def test_norm_non_negative(self):
        # sum_i q_i (g_i - E_q g) g_i is the variance of g under q
        rng = np.random.default_rng(2)
        gamma_Z = rng.normal(size=(4, 6))
        gamma_Z -= logsumexp(gamma_Z, axis=0)
        _, norm = mixture_natural_gradient(gamma_Z, np.full(4, 3.0), rng.normal(size=(4, 6)))
        assert norm >= 0

    def test_elbo_ignores_empty_ecs(self):
        ll = np.array([[0.0, -1.0], [-2.0, 0.0]])
        gamma_Z = np.log(np.full((2, 2), 0.5))
        alpha0 = np.ones(2)
        with_empty = elbo(ll, gamma_Z, np.array([np.log(3.0), -np.inf]), alpha0,
                          alpha0 + 1.5, 0.0)
        only_first = elbo(ll[:, :1], gamma_Z[:, :1], np.array([np.log(3.0)]), alpha0,
                          alpha0 + 1.5, 0.0)
        assert np.isfinite(with_empty)
        assert with_empty == pytest.approx(only_first)


# ---------------------------------------------------------------------------
# Optimizer invariants
# ---------------------------------------------------------------------------


class TestRCGOptimizer:
    def test_returns_result(self, simulated_problem):
        logl, hits, log_counts, total, _ = simulated_problem
        result = RCGOptimizer().fit(logl, hits, log_counts, total)
        assert isinstance(result, RCGResult)
        assert isinstance(result.convergence, ConvergenceDiagnostics)
        assert result.ec_probs.shape == hits.shape
        assert result.convergence.converged

    def test_columns_normalized(self, simulated_problem):
        logl, hits, log_counts, total, _ = simulated_problem
        result = RCGOptimizer().fit(logl, hits, log_counts, total)
        np.testing.assert_allclose(logsumexp(result.ec_probs, axis=0), 0.0, atol=1e-9)

    def test_bound_never_decreases(self, simulated_problem):
        logl, hits, log_counts, total, _ = simulated_problem
        result = RCGOptimizer().fit(logl, hits, log_counts, total)
        bounds = np.array(result.convergence.bounds)
        assert len(bounds) >= 2
        assert np.all(np.diff(bounds) >= 0)
        assert result.bound == bounds[-1]

    def test_converged_iteration_meets_tolerance(self, simulated_problem):
        logl, hits, log_counts, total, _ = simulated_problem
        cfg = RCGConfig(tolerance=1e-4)
        result = RCGOptimizer(cfg).fit(logl, hits, log_counts, total)
        bounds = result.convergence.bounds
        assert result.convergence.n_iterations == len(bounds)
        assert bounds[-1] - bounds[-2] < cfg.tolerance

    def test_recovers_abundances(self, simulated_problem):
        logl, hits, log_counts, total, truth = simulated_problem
        result = RCGOptimizer().fit(logl, hits, log_counts, total)
        theta = _abundances(result, log_counts, total)
        assert theta.sum() == pytest.approx(1.0)
        np.testing.assert_allclose(theta, truth.true_abundances, atol=0.05)

    def test_budget_exhausted(self, simulated_problem):
        logl, hits, log_counts, total, _ = simulated_problem
        result = RCGOptimizer(RCGConfig(max_iterations=1)).fit(
            logl, hits, log_counts, total
        )
        assert not result.convergence.converged
        assert result.convergence.n_iterations == 1
        np.testing.assert_allclose(logsumexp(result.ec_probs, axis=0), 0.0, atol=1e-9)

    def test_zero_iterations_returns_uniform(self, simulated_problem):
        logl, hits, log_counts, total, _ = simulated_problem
        result = RCGOptimizer(RCGConfig(max_iterations=0)).fit(
            logl, hits, log_counts, total
        )
        np.testing.assert_allclose(result.ec_probs, np.log(1.0 / logl.shape[0]))
        assert result.convergence.n_iterations == 0
        assert not result.convergence.converged

    def test_inputs_not_modified(self, simulated_problem):
        logl, hits, log_counts, total, _ = simulated_problem
        logl_before, hits_before = logl.copy(), hits.copy()
        RCGOptimizer().fit(logl, hits, log_counts, total)
        np.testing.assert_array_equal(logl, logl_before)
        np.testing.assert_array_equal(hits, hits_before)

    def test_empty_ec_gets_no_weight(self):
        logl, hits, _, _ = _exclusive_problem([4, 4, 4])
        log_counts = np.array([np.log(4.0), np.log(4.0), -np.inf])
        result = RCGOptimizer().fit(logl, hits, log_counts, 8)
        theta = _abundances(result, log_counts, 8)
        assert theta.sum() == pytest.approx(1.0)
        assert theta[2] < 0.01


# ---------------------------------------------------------------------------
# Rejected steps
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def rejecting_fit():
    """Heavily overlapping groups where momentum steps overshoot near the optimum."""
    cfg = SimulationConfig(
        n_groups=20, refs_per_group=4, n_reads=100_000,
        cross_group_hit_rate=0.2, random_seed=0,
    )
    grouping, read_hits, _ = simulate_pseudoalignment(cfg)
    aln = Pseudoalignment.from_read_hits(read_hits, grouping.n_refs)
    logl = likelihood_matrix(grouping)
    hits = group_hit_matrix(aln, grouping)
    log_counts = np.log(aln.ec_counts.astype(float))
    rcg_cfg = RCGConfig(tolerance=1e-10, max_iterations=2000)
    result = RCGOptimizer(rcg_cfg).fit(logl, hits, log_counts, aln.counts_total)
    return result, rcg_cfg


class TestRejectedSteps:
    def test_rejections_happen(self, rejecting_fit):
        result, _ = rejecting_fit
        assert len(result.convergence.rejected_iterations) > 0

    def test_rejected_iterations_keep_bound(self, rejecting_fit):
        result, _ = rejecting_fit
        bounds = result.convergence.bounds
        for k in result.convergence.rejected_iterations:
            assert k > 0
            assert bounds[k] == bounds[k - 1]

    def test_bound_never_decreases(self, rejecting_fit):
        result, _ = rejecting_fit
        assert np.all(np.diff(result.convergence.bounds) >= 0)

    def test_terminates_before_budget(self, rejecting_fit):
        result, cfg = rejecting_fit
        assert result.convergence.converged
        assert result.convergence.n_iterations < cfg.max_iterations

    def test_stops_on_rejected_plain_step(self, rejecting_fit):
        # the run ends on a rejection right after a rejection, i.e. on a step
        # taken without momentum
        result, _ = rejecting_fit
        rejected = result.convergence.rejected_iterations
        last = result.convergence.n_iterations - 1
        assert rejected[-1] == last
        assert len(rejected) >= 2 and rejected[-2] == last - 1

    def test_columns_normalized(self, rejecting_fit):
        result, _ = rejecting_fit
        np.testing.assert_allclose(logsumexp(result.ec_probs, axis=0), 0.0, atol=1e-9)


# ---------------------------------------------------------------------------
# Toy scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    @pytest.mark.parametrize("count", [1, 17, 1000])
    def test_single_group(self, count):
        logl = np.array([[np.log(0.01), 0.0]])
        hits = np.array([[1]])
        log_counts = np.log(np.array([float(count)]))
        result = RCGOptimizer().fit(logl, hits, log_counts, count)
        theta = _abundances(result, log_counts, count)
        np.testing.assert_allclose(theta, [1.0])
        assert result.convergence.converged
        # first iteration is measured against an initial bound of -inf
        assert result.convergence.n_iterations == 2

    def test_two_exclusive_groups_uniform_likelihood(self):
        logl = np.zeros((2, 2))
        problem = _exclusive_problem([50, 50], logl=logl)
        result = RCGOptimizer().fit(*problem)
        theta = _abundances(result, problem[2], problem[3])
        np.testing.assert_allclose(theta, [0.5, 0.5], atol=1e-6)

    def test_two_exclusive_groups(self):
        problem = _exclusive_problem([50, 50])
        result = RCGOptimizer().fit(*problem)
        theta = _abundances(result, problem[2], problem[3])
        np.testing.assert_allclose(theta, [0.5, 0.5], atol=1e-6)

    def test_skewed_prior(self):
        logl = np.array([[-10.0, 0.0], [-10.0, 0.0]])
        problem = _exclusive_problem([1000, 1], logl=logl)
        result = RCGOptimizer().fit(*problem, alpha0=np.array([1000.0, 1.0]))
        theta = _abundances(result, problem[2], problem[3])
        assert 0 <= theta[1] < 0.01
        assert theta[0] == pytest.approx(1.0 - theta[1])


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.fixture
    def problem(self):
        return _exclusive_problem([3, 5])

    def test_hit_rows_mismatch(self, problem):
        logl, hits, log_counts, total = problem
        with pytest.raises(ValueError):
            RCGOptimizer().fit(logl, hits[:1], log_counts, total)

    def test_log_counts_mismatch(self, problem):
        logl, hits, log_counts, total = problem
        with pytest.raises(ValueError):
            RCGOptimizer().fit(logl, hits, log_counts[:1], total)

    def test_alpha0_mismatch(self, problem):
        logl, hits, log_counts, total = problem
        with pytest.raises(ValueError):
            RCGOptimizer().fit(logl, hits, log_counts, total, alpha0=np.ones(3))

    def test_alpha0_not_positive(self, problem):
        logl, hits, log_counts, total = problem
        with pytest.raises(ValueError):
            RCGOptimizer().fit(logl, hits, log_counts, total, alpha0=np.array([1.0, 0.0]))

    def test_hit_count_out_of_range(self, problem):
        logl, hits, log_counts, total = problem
        with pytest.raises(ValueError):
            RCGOptimizer().fit(logl, hits + 2, log_counts, total)

    def test_negative_budget(self, problem):
        with pytest.raises(ValueError):
            RCGOptimizer(RCGConfig(max_iterations=-1)).fit(*problem)

    def test_not_a_matrix(self, problem):
        logl, hits, log_counts, total = problem
        with pytest.raises(ValueError):
            RCGOptimizer().fit(logl[0], hits, log_counts, total)

    def test_accepts_nested_lists(self, problem):
        logl, hits, log_counts, total = problem
        result = RCGOptimizer().fit(logl.tolist(), hits.tolist(), log_counts, total)
        expected = RCGOptimizer().fit(logl, hits, log_counts, total)
        np.testing.assert_array_equal(result.ec_probs, expected.ec_probs)
