"""ADMM optimization core.

Modules
-------
shrinkage
    Proximal operators: soft-thresholding and non-negative projection.
solver
    Multi-prior ADMM solver and the direct least-squares fallback.
"""

from aberration_correction.admm.shrinkage import project_nonnegative, soft_threshold
from aberration_correction.admm.solver import ADMMResult, admm_solve, solve_least_squares

__all__ = [
    "ADMMResult",
    "admm_solve",
    "project_nonnegative",
    "soft_threshold",
    "solve_least_squares",
]
