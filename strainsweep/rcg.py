"""Riemannian conjugate gradient optimizer for group responsibilities.

THE CORE MODULE. Maximizes the evidence lower bound (ELBO) of a mixture of
reference groups with a Dirichlet prior over the group proportions. The
variational parameters are the per-EC group responsibilities gamma_Z, kept
in log-space with every column normalized to sum to one.

Each iteration takes a natural-gradient step with Fletcher-Reeves momentum.
A step that lowers the bound is reverted and the next iteration continues
without momentum. All per-cell work is vectorized over the whole
(n_groups, n_ecs) matrix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
from scipy.special import gammaln

from strainsweep.types import ConvergenceDiagnostics
from strainsweep.utils import digamma, exp_right_multiply, normalize_log_columns

logger = logging.getLogger(__name__)

# Progress is logged every this many iterations.
_LOG_EVERY = 5


@dataclass
class RCGConfig:
    """Configuration for the optimizer.

    Attributes:
        tolerance: Stop when an accepted step improves the bound by less.
        max_iterations: Iteration budget; the best-effort state is returned
            when it runs out.
    """

    tolerance: float = 1e-6
    max_iterations: int = 5000


@dataclass
class RCGResult:
    """Optimizer output.

    Attributes:
        ec_probs: Log-space responsibilities (n_groups, n_ecs); every column
            exponentiates to a distribution over groups.
        bound: ELBO of the returned state.
        convergence: Iteration trace and convergence flag.
    """

    ec_probs: np.ndarray
    bound: float
    convergence: ConvergenceDiagnostics = field(
        default_factory=ConvergenceDiagnostics
    )


class RCGOptimizer:
    """Natural-gradient ascent on the mixture ELBO.

    Usage:
        opt = RCGOptimizer(RCGConfig(tolerance=1e-6))
        result = opt.fit(logl, hit_counts, log_ec_counts, counts_total, alpha0)
        abundances = np.exp(result.ec_probs + log_ec_counts).sum(1) / counts_total
    """

    def __init__(self, config: RCGConfig | None = None):
        self.config = config or RCGConfig()

    def fit(
        self,
        logl: np.ndarray,
        hit_counts: np.ndarray,
        log_ec_counts: np.ndarray,
        counts_total: float,
        alpha0: np.ndarray | None = None,
    ) -> RCGResult:
        """Compute the posterior responsibility matrix for fixed EC counts.

        Args:
            logl: Log-likelihood of each hit count per group
                (n_groups, n_hit_counts).
            hit_counts: Group hit count of every EC (n_groups, n_ecs); the
                column index into logl for each cell.
            log_ec_counts: Log observation count of every EC (n_ecs,).
                Entries of -inf mark ECs without reads.
            counts_total: Total number of reads.
            alpha0: Dirichlet prior concentration per group. Defaults to ones.

        Returns:
            RCGResult with the normalized log-space responsibilities.

        Raises:
            ValueError: On dimension mismatches or invalid configuration.
        """
        cfg = self.config
        log_ec_counts = np.asarray(log_ec_counts, dtype=np.float64)
        hit_counts = np.asarray(hit_counts)
        logl = np.asarray(logl, dtype=np.float64)
        n_groups = logl.shape[0]
        if alpha0 is None:
            alpha0 = np.ones(n_groups)
        alpha0 = np.asarray(alpha0, dtype=np.float64)
        self._validate(logl, hit_counts, log_ec_counts, alpha0)

        # logl looked up at each cell's hit count; constant during the run.
        ll = np.take_along_axis(logl, hit_counts, axis=1)
        n_ecs = ll.shape[1]

        gamma_Z = np.full((n_groups, n_ecs), np.log(1.0 / n_groups))
        oldstep = np.zeros_like(gamma_Z)
        oldnorm = 1.0
        bound = -np.inf
        didreset = False
        bound_const = -gammaln(
            counts_total + alpha0.sum() + gammaln(alpha0).sum()
        )
        N_k = self._effective_counts(gamma_Z, log_ec_counts, alpha0)

        diagnostics = ConvergenceDiagnostics()
        logger.debug(
            "RCG: %d groups, %d ECs, %d reads, tol=%g, max_iters=%d",
            n_groups, n_ecs, counts_total, cfg.tolerance, cfg.max_iterations,
        )

        for k in range(cfg.max_iterations):
            step, newnorm = mixture_natural_gradient(gamma_Z, N_k, ll)
            beta_fr = newnorm / oldnorm if oldnorm > 0 else 0.0
            oldnorm = newnorm

            momentum = False
            stalled = False
            if didreset:
                oldstep[:] = 0.0
            elif beta_fr > 0:
                oldstep *= beta_fr
                step += oldstep
                momentum = True
            didreset = False

            prev_gamma_Z, prev_N_k = gamma_Z.copy(), N_k
            oldbound = bound

            gamma_Z += step
            normalize_log_columns(gamma_Z)
            N_k = self._effective_counts(gamma_Z, log_ec_counts, alpha0)
            bound = elbo(ll, gamma_Z, log_ec_counts, alpha0, N_k, bound_const)

            if bound < oldbound:
                # Revert to the pre-step state; next step goes without momentum.
                didreset = True
                gamma_Z, N_k, bound = prev_gamma_Z, prev_N_k, oldbound
                diagnostics.rejected_iterations.append(k)
                logger.debug(
                    "iter %d: step rejected (momentum=%s), bound stays %.6f",
                    k, momentum, bound,
                )
                # Without momentum this was a plain natural-gradient step; from
                # the restored state it would be recomputed and rejected again.
                stalled = not momentum
            else:
                oldstep = step

            diagnostics.bounds.append(float(bound))
            diagnostics.gradient_norms.append(float(newnorm))
            diagnostics.n_iterations = k + 1

            if k % _LOG_EVERY == 0:
                logger.debug("iter: %d, bound: %.6f, |g|: %.6g", k, bound, newnorm)

            if stalled or (bound - oldbound < cfg.tolerance and not didreset):
                normalize_log_columns(gamma_Z)
                diagnostics.converged = True
                logger.debug("Converged after %d iterations, bound %.6f", k + 1, bound)
                return RCGResult(ec_probs=gamma_Z, bound=float(bound), convergence=diagnostics)

        if cfg.max_iterations > 0:
            logger.warning(
                "RCG did not reach tolerance %g in %d iterations (bound %.6f)",
                cfg.tolerance, cfg.max_iterations, bound,
            )
        normalize_log_columns(gamma_Z)
        return RCGResult(ec_probs=gamma_Z, bound=float(bound), convergence=diagnostics)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _effective_counts(
        gamma_Z: np.ndarray, log_ec_counts: np.ndarray, alpha0: np.ndarray
    ) -> np.ndarray:
        """N_k[i] = alpha0[i] + sum_e exp(gamma_Z[i, e]) * ec_count[e]."""
        return alpha0 + exp_right_multiply(gamma_Z, log_ec_counts)

    def _validate(
        self,
        logl: np.ndarray,
        hit_counts: np.ndarray,
        log_ec_counts: np.ndarray,
        alpha0: np.ndarray,
    ) -> None:
        cfg = self.config
        if cfg.max_iterations < 0:
            raise ValueError(
                f"max_iterations must be >= 0, got {cfg.max_iterations}"
            )
        if logl.ndim != 2 or hit_counts.ndim != 2:
            raise ValueError("logl and hit_counts must be 2-D matrices")
        n_groups = logl.shape[0]
        if n_groups == 0:
            raise ValueError("logl has no groups")
        if hit_counts.shape[0] != n_groups:
            raise ValueError(
                f"hit_counts has {hit_counts.shape[0]} rows for {n_groups} groups"
            )
        if alpha0.shape != (n_groups,):
            raise ValueError(
                f"alpha0 has {alpha0.size} entries for {n_groups} groups"
            )
        if not np.all(alpha0 > 0):
            raise ValueError("Prior concentrations alpha0 must be positive")
        if log_ec_counts.shape != (hit_counts.shape[1],):
            raise ValueError(
                f"Got {log_ec_counts.size} EC counts for "
                f"{hit_counts.shape[1]} ECs in hit_counts"
            )
        if hit_counts.size and (
            hit_counts.min() < 0 or hit_counts.max() >= logl.shape[1]
        ):
            raise ValueError(
                f"Hit counts must lie in 0..{logl.shape[1] - 1} to index logl"
            )


def mixture_natural_gradient(
    gamma_Z: np.ndarray, N_k: np.ndarray, ll: np.ndarray
) -> tuple[np.ndarray, float]:
    """Gradient of the bound w.r.t. the log responsibilities.

    dL_dphi[i, j] = ll[i, j] + digamma(N_k[i]) - 1 - gamma_Z[i, j]

    Returns:
        (dL_dphi, newnorm) where newnorm is the squared natural-gradient norm
        sum_ij q[i, j] * (dL_dphi[i, j] - colsum[j]) * dL_dphi[i, j]
        with q = exp(gamma_Z) and colsum[j] = sum_i dL_dphi[i, j] * q[i, j].
    """
    q_Z = np.exp(gamma_Z)
    dL_dphi = ll + (digamma(N_k) - 1.0)[:, np.newaxis] - gamma_Z
    colsums = (dL_dphi * q_Z).sum(axis=0)
    newnorm = float(np.sum(q_Z * (dL_dphi - colsums[np.newaxis, :]) * dL_dphi))
    return dL_dphi, newnorm


def elbo(
    ll: np.ndarray,
    gamma_Z: np.ndarray,
    log_ec_counts: np.ndarray,
    alpha0: np.ndarray,
    N_k: np.ndarray,
    bound_const: float,
) -> float:
    """Evidence lower bound of a normalized responsibility matrix.

    bound_const + sum_ij exp(gamma_Z + log_count_j) * (ll - gamma_Z)
                - sum_i (lgamma(alpha0_i) - lgamma(N_k_i))
    """
    weights = np.exp(gamma_Z + log_ec_counts[np.newaxis, :])
    data_term = np.sum(weights * (ll - gamma_Z))
    prior_term = np.sum(gammaln(alpha0) - gammaln(N_k))
    return float(bound_const + data_term - prior_term)
