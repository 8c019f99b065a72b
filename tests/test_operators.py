import numpy as np
import pytest
import scipy.sparse as sp

from aberration_correction.config import ADMMOptions
from aberration_correction.errors import ConfigurationError
from aberration_correction.operators.channels import (
    channel_conversion_matrix,
    integration_weights,
)
from aberration_correction.operators.forward import (
    TermKind,
    build_problem,
    unvectorize_image,
    vectorize_image,
)
from aberration_correction.operators.gradients import spatial_gradient, spectral_gradient
from aberration_correction.operators.mosaic import (
    anti_mosaic_matrix,
    channel_map,
    mosaic_matrix,
    offset_bayer_pattern,
)


class TestVectorization:
    def test_band_major_order(self):
        image = np.arange(2 * 3 * 2, dtype=float).reshape(2, 3, 2)
        x = vectorize_image(image)
        assert x[0] == image[0, 0, 0]
        assert x[1] == image[0, 1, 0]
        assert x[6] == image[0, 0, 1]

    def test_unvectorize_inverts_vectorize(self):
        image = np.random.default_rng(0).random((4, 5, 3))
        x = vectorize_image(image)
        assert np.array_equal(unvectorize_image(x, (4, 5), 3), image)

    def test_two_dimensional_image(self):
        image = np.arange(6, dtype=float).reshape(2, 3)
        assert np.array_equal(vectorize_image(image), np.arange(6.0))


class TestMosaic:
    def test_channel_map_tiles_pattern(self):
        cmap = channel_map((3, 4), "gbrg")
        assert cmap.tolist() == [[1, 2, 1, 2], [0, 1, 0, 1], [1, 2, 1, 2]]

    def test_mosaic_matrix_selects_channels(self):
        image = np.random.default_rng(1).random((4, 6, 3))
        cmap = channel_map((4, 6), "rggb")
        expected = np.take_along_axis(image, cmap[:, :, np.newaxis], axis=2)[:, :, 0]

        matrix = mosaic_matrix((4, 6), "rggb")
        assert matrix.shape == (24, 72)
        assert np.allclose(matrix @ vectorize_image(image), expected.ravel())

    @pytest.mark.parametrize(
        "corner, expected",
        [((0, 0), "gbrg"), ((1, 0), "rggb"), ((0, 1), "bggr"), ((1, 1), "grbg"), ((4, 7), "bggr")],
    )
    def test_offset_bayer_pattern(self, corner, expected):
        assert offset_bayer_pattern(corner, "gbrg") == expected

    def test_offset_pattern_matches_sub_image(self):
        full = channel_map((8, 8), "bggr")
        for corner in [(0, 0), (1, 2), (3, 3), (2, 5)]:
            sub = channel_map((4, 3), offset_bayer_pattern(corner, "bggr"))
            r, c = corner
            assert np.array_equal(sub, full[r:r + 4, c:c + 3])

    @pytest.mark.parametrize("pattern", ["rgb", "rgxb", "rggbb", ""])
    def test_invalid_pattern_raises(self, pattern):
        with pytest.raises(ConfigurationError):
            mosaic_matrix((2, 2), pattern)

    def test_anti_mosaic_shape(self):
        assert anti_mosaic_matrix((6, 5), "rggb").shape == (60, 30)

    def test_anti_mosaic_vanishes_on_cfa_periodic_image(self):
        values = np.array([0.2, 0.7, 0.4])
        raw = values[channel_map((8, 8), "grbg")]
        assert np.allclose(anti_mosaic_matrix((8, 8), "grbg") @ raw.ravel(), 0.0)

    def test_anti_mosaic_detects_checkerboard_artifacts(self):
        raw = np.zeros((8, 8))
        raw[4, 4] = 1.0
        assert np.abs(anti_mosaic_matrix((8, 8), "rggb") @ raw.ravel()).sum() > 0


class TestIntegrationWeights:
    def test_none_gives_unit_weights(self):
        assert np.array_equal(integration_weights([400, 500, 700]), np.ones(3))

    def test_trapezoidal(self):
        weights = integration_weights([400.0, 450.0, 500.0, 600.0], "trap")
        assert np.allclose(weights, [25.0, 50.0, 75.0, 50.0])

    def test_rectangular(self):
        weights = integration_weights([400.0, 450.0, 500.0, 600.0], "rect")
        assert np.allclose(weights, [50.0, 50.0, 75.0, 100.0])

    def test_non_increasing_bands_raise(self):
        with pytest.raises(ConfigurationError):
            integration_weights([500.0, 450.0, 600.0], "trap")

    def test_unknown_method_raises(self):
        with pytest.raises(ConfigurationError):
            integration_weights([400.0, 500.0], "simpson")


class TestChannelConversion:
    def test_matches_per_pixel_product(self):
        rng = np.random.default_rng(2)
        sensitivity = rng.random((2, 4))
        image = rng.random((2, 3, 4))
        matrix = channel_conversion_matrix((2, 3), sensitivity)
        expected = np.einsum("cb,hwb->hwc", sensitivity, image)
        assert matrix.shape == (12, 24)
        assert np.allclose(matrix @ vectorize_image(image), vectorize_image(expected))

    def test_integration_scales_columns(self):
        sensitivity = np.ones((1, 3))
        bands = [400.0, 500.0, 600.0]
        matrix = channel_conversion_matrix((1, 1), sensitivity, bands, "trap")
        assert np.allclose(matrix.toarray(), [[50.0, 100.0, 50.0]])

    def test_integration_requires_bands(self):
        with pytest.raises(ConfigurationError):
            channel_conversion_matrix((2, 2), np.ones((1, 3)), int_method="rect")


class TestGradients:
    def test_spatial_gradient_shape(self):
        assert spatial_gradient((3, 4), 2).shape == (48, 24)

    def test_spatial_gradient_of_ramp(self):
        image = np.tile(np.arange(4.0), (3, 1))
        g = spatial_gradient((3, 4), 1) @ image.ravel()
        dx, dy = g[:12].reshape(3, 4), g[12:].reshape(3, 4)
        assert np.allclose(dx, [[1, 1, 1, 0]] * 3)
        assert np.allclose(dy, 0.0)

    def test_spatial_gradient_vanishes_on_constant(self):
        x = np.full(2 * 5 * 5, 3.0)
        assert np.allclose(spatial_gradient((5, 5), 2) @ x, 0.0)

    def test_spectral_gradient(self):
        image = np.stack([np.full((2, 2), b ** 2, dtype=float) for b in range(3)], axis=2)
        g = spectral_gradient((2, 2), 3) @ vectorize_image(image)
        assert g.shape == (8,)
        assert np.allclose(g.reshape(2, 4), [[1.0] * 4, [3.0] * 4])

    def test_full_spectral_gradient_repeats_last_difference(self):
        image = np.stack([np.full((2, 2), b ** 2, dtype=float) for b in range(3)], axis=2)
        matrix = spectral_gradient((2, 2), 3, full=True)
        assert matrix.shape == (12, 12)
        g = (matrix @ vectorize_image(image)).reshape(3, 4)
        assert np.allclose(g[2], g[1])

    def test_spectral_gradient_needs_two_bands(self):
        with pytest.raises(ConfigurationError):
            spectral_gradient((2, 2), 1)


class TestBuildProblem:
    def test_mosaiced_forward_shape(self):
        captured = np.zeros((4, 4))
        problem = build_problem((4, 4), captured, np.ones((3, 5)), [0.0, 0.0, 0.0], pattern="rggb")
        assert problem.forward.shape == (16, 80)
        assert problem.n_bands == 5
        assert problem.terms == []

    def test_weight_normalization(self):
        captured = np.zeros((4, 4))
        problem = build_problem((4, 4), captured, np.eye(3), [1.0, 2.0, 4.0], pattern="rggb")
        assert problem.weights[0] == pytest.approx(16 / 96)
        assert problem.weights[1] == pytest.approx(2.0 * 16 / 64)
        assert problem.weights[2] == pytest.approx(4.0 * 16 / 32)
        assert [term.operator.shape[0] for term in problem.terms] == [96, 64, 32]

    def test_full_spectral_gradient_rows(self):
        options = ADMMOptions(full_spectral_gradient=True)
        problem = build_problem((3, 3), np.zeros((3, 3, 3)), np.eye(3), [0.0, 1.0, 0.0], options)
        assert problem.terms[0].operator.shape == (2 * 3 * 9, 27)

    def test_norm_flags_select_term_kind(self):
        options = ADMMOptions(norms=(True, False, False), nonneg=True)
        problem = build_problem((3, 3), np.zeros((3, 3, 2)), np.eye(2), [1.0, 1.0, 0.0], options)
        kinds = [term.kind for term in problem.terms]
        assert kinds == [TermKind.L1, TermKind.L2, TermKind.NONNEG]
        assert [term.name for term in problem.split_terms] == ["spatial", "nonneg"]

    def test_nonneg_term_is_identity(self):
        options = ADMMOptions(nonneg=True)
        problem = build_problem((2, 2), np.zeros((2, 2)), [[1.0]], [0.0, 0.0, 0.0], options)
        (term,) = problem.terms
        assert term.kind is TermKind.NONNEG
        assert (term.operator != sp.identity(4)).nnz == 0

    def test_dispersion_composes_with_channels(self):
        captured = np.zeros((2, 3))
        dispersion = sp.csr_matrix(np.random.default_rng(3).random((6, 4)))
        problem = build_problem((2, 2), captured, [[2.0]], [0.0, 0.0, 0.0], dispersion=dispersion)
        assert np.allclose(problem.forward.toarray(), 2.0 * dispersion.toarray())

    def test_sensitivity_rows_must_match_channels(self):
        with pytest.raises(ConfigurationError, match="rows"):
            build_problem((4, 4), np.zeros((4, 4)), np.ones((2, 3)), [0.0, 0.0, 0.0], pattern="rggb")
        with pytest.raises(ConfigurationError, match="rows"):
            build_problem((4, 4), np.zeros((4, 4, 3)), np.ones((2, 3)), [0.0, 0.0, 0.0])

    def test_pattern_requires_two_dimensional_capture(self):
        with pytest.raises(ConfigurationError):
            build_problem((4, 4), np.zeros((4, 4, 3)), np.eye(3), [0.0, 0.0, 0.0], pattern="rggb")

    def test_size_mismatch_without_dispersion(self):
        with pytest.raises(ConfigurationError, match="same size"):
            build_problem((4, 4), np.zeros((4, 5)), [[1.0]], [0.0, 0.0, 0.0])

    def test_dispersion_shape_checked(self):
        dispersion = sp.identity(16, format="csr")
        with pytest.raises(ConfigurationError, match="rows"):
            build_problem((4, 4), np.zeros((4, 5)), [[1.0]], [0.0, 0.0, 0.0], dispersion=dispersion)
        with pytest.raises(ConfigurationError, match="columns"):
            build_problem((4, 5), np.zeros((4, 4)), [[1.0]], [0.0, 0.0, 0.0], dispersion=dispersion)

    def test_integer_dispersion_rejected(self):
        dispersion = sp.identity(4, dtype=np.int64, format="csr")
        with pytest.raises(ConfigurationError, match="floating"):
            build_problem((2, 2), np.zeros((2, 2)), [[1.0]], [0.0, 0.0, 0.0], dispersion=dispersion)

    def test_anti_mosaic_requires_pattern(self):
        with pytest.raises(ConfigurationError, match="mosaic"):
            build_problem((4, 4), np.zeros((4, 4, 3)), np.eye(3), [0.0, 0.0, 1.0])

    @pytest.mark.parametrize("weights", [[1.0, 0.0], [1.0, -1.0, 0.0], [np.nan, 0.0, 0.0]])
    def test_invalid_weights(self, weights):
        with pytest.raises(ConfigurationError, match="weights"):
            build_problem((2, 2), np.zeros((2, 2)), [[1.0]], weights)

    def test_invalid_options(self):
        options = ADMMOptions(rho=(1.0, 0.0, 1.0, 1.0))
        with pytest.raises(ConfigurationError, match="rho"):
            build_problem((2, 2), np.zeros((2, 2)), [[1.0]], [1.0, 0.0, 0.0], options)

    def test_nonneg_requires_fourth_penalty(self):
        options = ADMMOptions(rho=(1.0, 1.0, 1.0), nonneg=True)
        with pytest.raises(ConfigurationError, match="non-negativity"):
            build_problem((2, 2), np.zeros((2, 2)), [[1.0]], [0.0, 0.0, 0.0], options)

    def test_spectral_prior_with_one_band_raises(self):
        with pytest.raises(ConfigurationError, match="two bands"):
            build_problem((2, 2), np.zeros((2, 2)), [[1.0]], [0.0, 1.0, 0.0])
