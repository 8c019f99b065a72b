import logging

import numpy as np
import pytest
import scipy.sparse as sp

from aberration_correction.admm.shrinkage import project_nonnegative, soft_threshold
from aberration_correction.admm.solver import admm_solve, solve_least_squares
from aberration_correction.config import ADMMOptions
from aberration_correction.errors import ConfigurationError, NumericalError
from aberration_correction.operators.forward import build_problem, vectorize_image
from aberration_correction.operators.gradients import spatial_gradient


def _objective(result):
    return 0.5 * result.data_error + float(np.dot(result.weights, result.regularization_errors))


class TestShrinkage:
    def test_soft_threshold(self):
        v = np.array([-3.0, -0.5, 0.0, 0.5, 3.0])
        assert np.allclose(soft_threshold(v, 1.0), [-2.0, 0.0, 0.0, 0.0, 2.0])

    def test_soft_threshold_zero_is_identity(self):
        v = np.random.default_rng(0).standard_normal(10)
        assert np.allclose(soft_threshold(v, 0.0), v)

    def test_soft_threshold_preserves_shape(self):
        v = np.ones((3, 4))
        assert soft_threshold(v, 0.5).shape == (3, 4)

    def test_project_nonnegative(self):
        v = np.array([-1.0, 0.0, 2.0])
        assert np.array_equal(project_nonnegative(v), [0.0, 0.0, 2.0])


class TestDirectSolve:
    def test_identity_round_trip(self):
        captured = np.random.default_rng(1).random((5, 6, 3))
        problem = build_problem((5, 6), captured, np.eye(3), [0.0, 0.0, 0.0])
        result = solve_least_squares(problem)
        assert result.image.shape == (5, 6, 3)
        assert np.allclose(result.image, captured)
        assert result.data_error == pytest.approx(0.0, abs=1e-12)

    def test_single_quadratic_term_matches_dense_solve(self):
        rng = np.random.default_rng(2)
        captured = rng.random((5, 6, 3))
        sensitivity = np.eye(3) + 0.1 * rng.random((3, 3))
        problem = build_problem((5, 6), captured, sensitivity, [0.1, 0.0, 0.0])
        result = admm_solve(problem)

        a = problem.forward.toarray()
        g = spatial_gradient((5, 6), 3).toarray()
        w = 0.1 * a.shape[0] / g.shape[0]
        expected = np.linalg.solve(a.T @ a + w * g.T @ g, a.T @ vectorize_image(captured))

        assert result.iterations == 0
        assert result.converged
        assert np.allclose(vectorize_image(result.image), expected)
        assert result.weights[0] == pytest.approx(w)

    def test_least_squares_ignores_l1_terms(self):
        captured = np.random.default_rng(3).random((4, 4))
        options = ADMMOptions(norms=(True, False, False), nonneg=True)
        problem = build_problem((4, 4), captured, [[1.0]], [1.0, 0.0, 0.0], options)
        result = solve_least_squares(problem)
        assert np.allclose(result.image[:, :, 0], captured)

    def test_singular_system_raises(self):
        problem = build_problem((4, 4), np.zeros((4, 4)), np.eye(3), [0.0, 0.0, 0.0], pattern="rggb")
        with pytest.raises(NumericalError, match="singular"):
            solve_least_squares(problem)

    def test_singular_system_raises_in_admm(self):
        captured = np.random.default_rng(4).random((4, 4))
        problem = build_problem((4, 4), captured, np.eye(3), [0.0, 0.0, 1.0], pattern="gbrg")
        with pytest.raises(NumericalError):
            admm_solve(problem)

    def test_rank_deficient_dispersion_raises(self):
        dispersion = sp.csr_matrix(np.array([[0.1, 0.3]]))
        problem = build_problem(
            (1, 2), np.array([[1.0]]), [[1.0]], [0.0, 0.0, 0.0], dispersion=dispersion
        )
        with pytest.raises(NumericalError, match="singular"):
            solve_least_squares(problem)

    def test_ill_conditioned_anti_mosaic_system_raises(self):
        rng = np.random.default_rng(12)
        dispersion = sp.csr_matrix(rng.random((48, 48)))
        sensitivity = rng.random((3, 3)) + 0.5
        captured = rng.random((4, 4))
        problem = build_problem(
            (4, 4), captured, sensitivity, [0.0, 0.0, 1.0], pattern="rggb", dispersion=dispersion
        )
        with pytest.raises(NumericalError, match="singular"):
            admm_solve(problem)

    @pytest.mark.parametrize(
        "bad_value, nonneg", [(np.nan, False), (np.inf, True)]
    )
    def test_non_finite_estimate_raises(self, bad_value, nonneg):
        captured = np.random.default_rng(13).random((3, 3))
        captured[1, 1] = bad_value
        options = ADMMOptions(nonneg=nonneg)
        problem = build_problem((3, 3), captured, [[1.0]], [0.1, 0.0, 0.0], options)
        with pytest.raises(NumericalError, match="Non-finite"):
            admm_solve(problem)


class TestADMMSolve:
    def test_all_zero_weights_raise(self):
        problem = build_problem((3, 3), np.zeros((3, 3)), [[1.0]], [0.0, 0.0, 0.0])
        with pytest.raises(ConfigurationError, match="weights"):
            admm_solve(problem)

    def test_nonnegativity_clips_negative_pixels(self):
        captured = np.random.default_rng(5).uniform(-1.0, 1.0, (4, 4))
        options = ADMMOptions(nonneg=True, tol=(1e-10, 1e-8), max_iter=2000)
        problem = build_problem((4, 4), captured, [[1.0]], [0.0, 0.0, 0.0], options)
        result = admm_solve(problem)
        assert result.converged
        assert result.iterations > 0
        np.testing.assert_allclose(result.image[:, :, 0], np.maximum(captured, 0.0), atol=1e-4)

    def test_inactive_constraint_reproduces_unconstrained_solution(self):
        captured = np.random.default_rng(6).uniform(0.5, 1.0, (6, 6, 2))
        unconstrained = solve_least_squares(
            build_problem((6, 6), captured, np.eye(2), [0.01, 0.0, 0.0])
        )
        options = ADMMOptions(nonneg=True, tol=(1e-10, 1e-8), max_iter=2000)
        constrained = admm_solve(
            build_problem((6, 6), captured, np.eye(2), [0.01, 0.0, 0.0], options)
        )
        assert constrained.converged
        np.testing.assert_allclose(constrained.image, unconstrained.image, atol=1e-4)

    def test_fixed_iteration_count_without_tolerance(self):
        captured = np.random.default_rng(7).random((6, 6))
        options = ADMMOptions(norms=(True, False, False), tol=None, max_iter=20)
        problem = build_problem((6, 6), captured, [[1.0]], [0.5, 0.0, 0.0], options)
        result = admm_solve(problem)
        assert result.iterations == 20
        assert result.converged
        assert result.primal_residuals.shape == (1,)
        assert result.dual_residuals.shape == (1,)

    def test_total_variation_lowers_objective(self):
        rng = np.random.default_rng(8)
        clean = np.zeros((8, 8))
        clean[:, 4:] = 1.0
        noisy = clean + 0.1 * rng.standard_normal((8, 8))
        options = ADMMOptions(norms=(True, False, False), tol=(1e-8, 1e-6), max_iter=1000)
        problem = build_problem((8, 8), noisy, [[1.0]], [0.5, 0.0, 0.0], options)
        result = admm_solve(problem)

        tv_noisy = np.abs(spatial_gradient((8, 8), 1) @ noisy.ravel()).sum()
        assert _objective(result) <= problem.weights[0] * tv_noisy + 1e-6
        assert result.regularization_errors[0] < tv_noisy

    def test_varying_penalty_reaches_same_minimizer(self):
        rng = np.random.default_rng(9)
        noisy = rng.random((8, 8))
        results = []
        for varying in (False, True):
            options = ADMMOptions(
                norms=(True, False, False),
                tol=(1e-9, 1e-7),
                max_iter=5000,
                varying_penalty=varying,
            )
            problem = build_problem((8, 8), noisy, [[1.0]], [0.2, 0.0, 0.0], options)
            results.append(admm_solve(problem))
        fixed, varying = results
        assert fixed.converged and varying.converged
        assert _objective(varying) == pytest.approx(_objective(fixed), rel=1e-4)

    def test_initial_estimate_size_checked(self):
        options = ADMMOptions(nonneg=True)
        problem = build_problem((3, 3), np.zeros((3, 3)), [[1.0]], [0.0, 0.0, 0.0], options)
        with pytest.raises(ConfigurationError, match="x0"):
            admm_solve(problem, x0=np.zeros(4))

    def test_not_converged_warns(self, caplog):
        captured = np.random.default_rng(10).uniform(-1.0, 1.0, (4, 4))
        options = ADMMOptions(nonneg=True, tol=(0.0, 0.0), max_iter=2)
        problem = build_problem((4, 4), captured, [[1.0]], [0.0, 0.0, 0.0], options)
        with caplog.at_level(logging.WARNING, logger="aberration_correction.admm.solver"):
            result = admm_solve(problem)
        assert not result.converged
        assert result.iterations == 2
        assert "without meeting" in caplog.text

    def test_result_reports_penalties(self):
        options = ADMMOptions(norms=(True, False, False), nonneg=True, rho=(2.0, 1.0, 1.0, 3.0))
        captured = np.random.default_rng(11).random((4, 4))
        problem = build_problem((4, 4), captured, [[1.0]], [0.1, 0.0, 0.0], options)
        result = admm_solve(problem)
        assert np.array_equal(result.rho, [2.0, 3.0])
