r"""ADMM solver for the multi-prior image estimation problem.

Minimizes

.. math::

    \frac{1}{2} \|A x - b\|_2^2
    + \sum_{w \in L1} \lambda_w \|G_w x\|_1
    + \sum_{w \in L2} \frac{\lambda_w}{2} \|G_w x\|_2^2
    \quad \text{s.t. } x \geq 0 \text{ (optional)}

using the scaled form of the Alternating Direction Method of Multipliers
(Boyd et al., *Distributed Optimization and Statistical Learning via the
Alternating Direction Method of Multipliers*, 2011). L2 terms are folded into
the constant system matrix; L1 terms and the non-negativity constraint each
get a splitting variable ``z`` and a scaled dual variable ``u``.

Algorithm 2 of Baek et al., *Compact Single-Shot Hyperspectral Imaging Using a
Prism*, ACM ToG 2017, extended with an anti-mosaicing prior.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg
from numpy.typing import NDArray

from ..config import N_PRIORS
from ..errors import ConfigurationError, NumericalError
from ..operators.forward import ReconstructionProblem, RegularizationTerm, TermKind
from .shrinkage import project_nonnegative, soft_threshold

LOGGER = logging.getLogger(__name__)

# Residual balancing constants (Boyd et al. 2011, Section 3.4.1)
_PENALTY_MU = 10.0
_PENALTY_TAU = 2.0


@dataclass
class ADMMResult:
    """Estimated image and convergence diagnostics.

    Attributes
    ----------
    image : ndarray, shape (H, W, B)
        Estimated latent image.
    iterations : int
        Number of ADMM iterations run. Zero when the problem reduced to a
        single direct solve.
    converged : bool
        Whether the residual tolerances were met (always True for a direct
        solve).
    primal_residuals, dual_residuals : ndarray
        Final ``||G x - z||`` and ``||rho G^T (z - z_prev)||``, one entry per
        splitting variable.
    rho : ndarray
        Final penalty parameter of each splitting variable.
    data_error : float
        ``||A x - b||^2``.
    regularization_errors : ndarray, shape (3,)
        ``||G x||_1`` for L1 terms, ``||G x||_2^2`` for L2 terms and zero for
        disabled terms.
    weights : ndarray, shape (3,)
        Normalized regularization weights used for the solve.
    """

    image: NDArray[np.float64]
    iterations: int
    converged: bool
    data_error: float
    regularization_errors: NDArray[np.float64]
    weights: NDArray[np.float64]
    primal_residuals: NDArray[np.float64] = field(default_factory=lambda: np.zeros(0))
    dual_residuals: NDArray[np.float64] = field(default_factory=lambda: np.zeros(0))
    rho: NDArray[np.float64] = field(default_factory=lambda: np.zeros(0))


# ------------------------------------------------------------------ #
#  Linear algebra helpers                                            #
# ------------------------------------------------------------------ #

def _factorize(matrix: sp.spmatrix) -> scipy.sparse.linalg.SuperLU:
    """Sparse LU factorization, raising :class:`NumericalError` if singular.

    Exactly singular matrices fail inside SuperLU. Numerically singular ones
    factorize, so the pivots of ``U`` are checked against
    ``n * eps * max|pivot|``.
    """
    message = (
        "The system matrix is singular; some latent values are not "
        "constrained by the data or by any regularization term."
    )
    try:
        lu = scipy.sparse.linalg.splu(sp.csc_matrix(matrix))
    except RuntimeError as exc:
        raise NumericalError(message) from exc

    pivots = np.abs(lu.U.diagonal())
    threshold = pivots.size * np.finfo(np.float64).eps * pivots.max()
    if not np.all(np.isfinite(pivots)) or pivots.min() <= threshold:
        raise NumericalError(f"{message} (smallest pivot {pivots.min():.3g})")
    return lu


def _check_finite(x: np.ndarray, iteration: int) -> None:
    if not np.all(np.isfinite(x)):
        raise NumericalError(f"Non-finite image estimate at iteration {iteration}.")


def _penalized_matrix(
    a_const: sp.csc_matrix, grams: list[sp.spmatrix], rho: np.ndarray
) -> sp.csc_matrix:
    matrix = a_const
    for gram, r in zip(grams, rho):
        matrix = matrix + r * gram
    return sp.csc_matrix(matrix)


def _direct_solve(a_const: sp.csc_matrix, rhs: np.ndarray) -> np.ndarray:
    x = _factorize(a_const).solve(rhs)
    _check_finite(x, 0)
    return x


def _regularization_errors(
    terms: list[RegularizationTerm], x: np.ndarray
) -> NDArray[np.float64]:
    errors = np.zeros(N_PRIORS)
    for term in terms:
        if term.kind is TermKind.NONNEG:
            continue
        gx = term.operator @ x
        if term.kind is TermKind.L1:
            errors[term.index] = float(np.sum(np.abs(gx)))
        else:
            errors[term.index] = float(np.dot(gx, gx))
    return errors


def _make_result(
    problem: ReconstructionProblem,
    x: np.ndarray,
    iterations: int,
    converged: bool,
    primal: np.ndarray | None = None,
    dual: np.ndarray | None = None,
    rho: np.ndarray | None = None,
) -> ADMMResult:
    residual = problem.forward @ x - problem.rhs
    return ADMMResult(
        image=problem.unvectorize(x),
        iterations=iterations,
        converged=converged,
        data_error=float(np.dot(residual, residual)),
        regularization_errors=_regularization_errors(problem.terms, x),
        weights=problem.weights.copy(),
        primal_residuals=np.zeros(0) if primal is None else primal.copy(),
        dual_residuals=np.zeros(0) if dual is None else dual.copy(),
        rho=np.zeros(0) if rho is None else rho.copy(),
    )


# ------------------------------------------------------------------ #
#  Public solvers                                                    #
# ------------------------------------------------------------------ #

def solve_least_squares(problem: ReconstructionProblem) -> ADMMResult:
    """Solve the quadratic part of *problem* directly.

    Solves ``(A^T A + sum_{L2} lambda_w G_w^T G_w) x = A^T b``. L1 terms and
    the non-negativity constraint are ignored, so with no L2 terms this is the
    unregularized least-squares solution of ``A x = b``.
    """
    x = _direct_solve(problem.system_matrix(), problem.forward_adjoint_rhs())
    return _make_result(problem, x, iterations=0, converged=True)


def admm_solve(
    problem: ReconstructionProblem,
    x0: NDArray[np.floating] | None = None,
) -> ADMMResult:
    """Estimate the latent image of *problem* by ADMM.

    Parameters
    ----------
    problem : ReconstructionProblem
        Output of :func:`aberration_correction.operators.build_problem`.
    x0 : ndarray, optional
        Initial vectorized estimate. Only used to seed the splitting
        variables; defaults to zeros.

    Returns
    -------
    ADMMResult

    Raises
    ------
    ConfigurationError
        If every regularization weight is zero and the non-negativity
        constraint is disabled. Use :func:`solve_least_squares` for an
        unregularized solve.
    NumericalError
        If the system matrix is singular or an iterate is not finite.
    """
    if not problem.terms:
        raise ConfigurationError(
            "At least one element of `weights` must be positive, "
            "or the non-negativity constraint must be enabled."
        )

    options = problem.options
    a_const = problem.system_matrix()
    atb = problem.forward_adjoint_rhs()
    split = problem.split_terms

    if not split:
        # Every active term is quadratic: no splitting variables to iterate.
        LOGGER.debug("No splitting variables; solving the folded system directly.")
        x = _direct_solve(a_const, atb)
        return _make_result(problem, x, iterations=0, converged=True)

    n_unknowns = problem.n_unknowns
    x = np.zeros(n_unknowns) if x0 is None else np.asarray(x0, dtype=np.float64).ravel()
    if x.size != n_unknowns:
        raise ConfigurationError(
            f"x0 must have {n_unknowns} elements, got {x.size}."
        )

    rho = np.array([term.rho for term in split], dtype=np.float64)
    transposes = [sp.csr_matrix(term.operator.T) for term in split]
    grams = [gt @ term.operator for gt, term in zip(transposes, split)]
    z = [term.operator @ x for term in split]
    u = [np.zeros_like(zk) for zk in z]

    primal = np.zeros(len(split))
    dual = np.zeros(len(split))
    eps_primal = np.zeros(len(split))
    eps_dual = np.zeros(len(split))

    lu = _factorize(_penalized_matrix(a_const, grams, rho))
    converged = False
    iteration = 0

    for iteration in range(1, options.max_iter + 1):
        # x-update
        rhs = atb.copy()
        for k in range(len(split)):
            rhs += rho[k] * (transposes[k] @ (z[k] - u[k]))
        x = lu.solve(rhs)
        _check_finite(x, iteration)

        # z- and u-updates
        for k, term in enumerate(split):
            gx = term.operator @ x
            z_prev = z[k]
            v = gx + u[k]
            if term.kind is TermKind.L1:
                z[k] = soft_threshold(v, term.weight / rho[k])
            else:
                z[k] = project_nonnegative(v)
            r = gx - z[k]
            u[k] = u[k] + r

            primal[k] = np.linalg.norm(r)
            dual[k] = rho[k] * np.linalg.norm(transposes[k] @ (z[k] - z_prev))
            if options.tol is not None:
                abs_tol, rel_tol = options.tol
                eps_primal[k] = np.sqrt(r.size) * abs_tol + rel_tol * max(
                    np.linalg.norm(gx), np.linalg.norm(z[k])
                )
                eps_dual[k] = np.sqrt(n_unknowns) * abs_tol + rel_tol * rho[k] * np.linalg.norm(
                    transposes[k] @ u[k]
                )

        LOGGER.debug(
            "ADMM iteration %d: primal %s, dual %s.",
            iteration,
            np.array2string(primal, precision=3),
            np.array2string(dual, precision=3),
        )

        if options.tol is not None and np.all(primal <= eps_primal) and np.all(dual <= eps_dual):
            converged = True
            break

        if options.varying_penalty:
            changed = False
            for k in range(len(split)):
                if primal[k] > _PENALTY_MU * dual[k]:
                    rho[k] *= _PENALTY_TAU
                    u[k] = u[k] / _PENALTY_TAU
                    changed = True
                elif dual[k] > _PENALTY_MU * primal[k]:
                    rho[k] /= _PENALTY_TAU
                    u[k] = u[k] * _PENALTY_TAU
                    changed = True
            if changed:
                lu = _factorize(_penalized_matrix(a_const, grams, rho))

    if options.tol is None:
        converged = True
    elif not converged:
        LOGGER.warning(
            "ADMM stopped after %d iterations without meeting the residual "
            "tolerances (primal %s, dual %s).",
            iteration,
            np.array2string(primal, precision=3),
            np.array2string(dual, precision=3),
        )

    return _make_result(
        problem, x, iterations=iteration, converged=converged,
        primal=primal, dual=dual, rho=rho,
    )
