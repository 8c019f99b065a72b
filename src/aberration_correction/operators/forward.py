"""Assembly of the forward model and the regularization terms.

The captured image ``J`` is modelled as ``J = M @ Omega @ D @ I`` where ``M``
is the mosaic selection matrix, ``Omega`` converts latent bands to sensor
channels and ``D`` warps the latent image by the dispersion model. Absent
factors are omitted.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

import numpy as np
import scipy.sparse as sp
from numpy.typing import ArrayLike, NDArray

from ..config import N_PRIORS, NONNEG_INDEX, ADMMOptions
from ..errors import ConfigurationError
from .channels import channel_conversion_matrix
from .gradients import spatial_gradient, spectral_gradient
from .mosaic import N_CFA_CHANNELS, anti_mosaic_matrix, mosaic_matrix

LOGGER = logging.getLogger(__name__)

SPATIAL, SPECTRAL, ANTI_MOSAIC = range(N_PRIORS)
PRIOR_NAMES = ("spatial", "spectral", "anti-mosaic")


class TermKind(enum.Enum):
    """How a regularization term enters the optimization."""

    L1 = "l1"  # ADMM splitting variable, soft-thresholded
    L2 = "l2"  # folded into the system matrix
    NONNEG = "nonneg"  # ADMM splitting variable, projected onto x >= 0


@dataclass
class RegularizationTerm:
    """One active term of the objective.

    ``weight`` is already normalized by the ratio of forward-operator rows to
    ``operator`` rows. For :attr:`TermKind.NONNEG`, ``operator`` is the
    identity and ``weight`` is unused.
    """

    index: int
    kind: TermKind
    operator: sp.csr_matrix
    weight: float
    rho: float

    @property
    def is_split(self) -> bool:
        return self.kind is not TermKind.L2

    @property
    def name(self) -> str:
        if self.kind is TermKind.NONNEG:
            return "nonneg"
        return PRIOR_NAMES[self.index]


@dataclass
class ReconstructionProblem:
    """A fully assembled regularized least-squares problem."""

    forward: sp.csr_matrix
    rhs: NDArray[np.float64]
    latent_shape: tuple[int, int]
    n_bands: int
    terms: list[RegularizationTerm]
    weights: NDArray[np.float64]
    options: ADMMOptions = field(default_factory=ADMMOptions)

    @property
    def n_unknowns(self) -> int:
        return self.forward.shape[1]

    @property
    def split_terms(self) -> list[RegularizationTerm]:
        return [term for term in self.terms if term.is_split]

    def system_matrix(self) -> sp.csc_matrix:
        """``A^T A`` plus the weighted L2 regularization terms."""
        a_const = (self.forward.T @ self.forward).tocsc()
        for term in self.terms:
            if term.kind is TermKind.L2:
                a_const = a_const + term.weight * (term.operator.T @ term.operator)
        return sp.csc_matrix(a_const)

    def forward_adjoint_rhs(self) -> NDArray[np.float64]:
        return self.forward.T @ self.rhs

    def unvectorize(self, x: NDArray[np.floating]) -> NDArray[np.float64]:
        return unvectorize_image(x, self.latent_shape, self.n_bands)


def vectorize_image(image: ArrayLike) -> NDArray[np.float64]:
    """Band-major vectorization: ``index = band * H * W + row * W + col``."""
    image = np.asarray(image, dtype=np.float64)
    if image.ndim == 2:
        return image.ravel()
    if image.ndim == 3:
        return np.moveaxis(image, 2, 0).ravel()
    raise ConfigurationError(f"Expected a 2-D or 3-D image, got shape {image.shape}.")


def unvectorize_image(
    x: NDArray[np.floating], shape: tuple[int, int], n_bands: int
) -> NDArray[np.float64]:
    """Inverse of :func:`vectorize_image`, always returning ``(H, W, B)``."""
    stacked = np.asarray(x, dtype=np.float64).reshape(n_bands, shape[0], shape[1])
    return np.moveaxis(stacked, 0, 2)


def _validate_weights(weights: ArrayLike) -> NDArray[np.float64]:
    weights = np.asarray(weights, dtype=np.float64).ravel()
    if weights.size != N_PRIORS:
        raise ConfigurationError(
            f"Expected `weights` to have length {N_PRIORS} for the {N_PRIORS} prior terms."
        )
    if not np.all(np.isfinite(weights)) or np.any(weights < 0):
        raise ConfigurationError("All elements of `weights` must be non-negative numbers.")
    return weights


def _as_dispersion_matrix(dispersion: object) -> sp.csr_matrix:
    if sp.issparse(dispersion):
        matrix = sp.csr_matrix(dispersion)
    elif isinstance(dispersion, np.ndarray) and dispersion.ndim == 2:
        matrix = sp.csr_matrix(dispersion)
    else:
        raise ConfigurationError("`dispersion` must be a 2-D sparse or dense matrix.")
    if not np.issubdtype(matrix.dtype, np.floating):
        raise ConfigurationError("`dispersion` must be a floating-point matrix.")
    return matrix


def build_problem(
    latent_shape: tuple[int, int],
    captured: ArrayLike,
    sensitivity: ArrayLike,
    weights: ArrayLike,
    options: ADMMOptions | None = None,
    bands: ArrayLike | None = None,
    pattern: str | None = None,
    dispersion: sp.spmatrix | NDArray[np.floating] | None = None,
) -> ReconstructionProblem:
    """Build the forward operator and the active regularization terms.

    Parameters
    ----------
    latent_shape : tuple[int, int]
        ``(height, width)`` of the latent image.
    captured : array_like
        Captured image, ``(H_J, W_J)`` or ``(H_J, W_J, C)``. A 2-D image with
        a *pattern* is mosaiced; a 2-D image without one has one channel.
    sensitivity : array_like, shape (C, B)
        Sensor response of each captured channel to each latent band.
    weights : array_like, shape (3,)
        Non-negative weights on the spatial, spectral and anti-mosaic priors.
        Zero disables a prior.
    options : ADMMOptions, optional
        Penalties, norm flags, non-negativity and integration settings.
    bands : array_like, optional
        Wavelengths of the latent bands (needed for numerical integration).
    pattern : str, optional
        CFA pattern of *captured*, or None for non-mosaiced input.
    dispersion : sparse matrix, optional
        ``(B * H_J * W_J, B * H * W)`` warp from the latent to the captured
        frame. Without it the two frames must have the same size.

    Returns
    -------
    ReconstructionProblem

    Raises
    ------
    ConfigurationError
        On inconsistent dimensions, weights or options.
    """
    options = options if options is not None else ADMMOptions()
    options.validate()
    weights = _validate_weights(weights)
    enabled = weights != 0

    captured = np.asarray(captured, dtype=np.float64)
    if captured.ndim not in (2, 3):
        raise ConfigurationError(
            f"The captured image must be 2-D or 3-D, got shape {captured.shape}."
        )
    captured_shape = (captured.shape[0], captured.shape[1])
    sensitivity = np.atleast_2d(np.asarray(sensitivity, dtype=np.float64))
    n_channels, n_bands = sensitivity.shape

    if bands is not None and np.asarray(bands).size != n_bands:
        raise ConfigurationError(
            f"sensitivity has {n_bands} columns but {np.asarray(bands).size} bands were given."
        )

    if pattern is not None:
        if captured.ndim != 2:
            raise ConfigurationError("A mosaic pattern requires a 2-D captured image.")
        expected_channels = N_CFA_CHANNELS
    else:
        expected_channels = 1 if captured.ndim == 2 else captured.shape[2]
    if n_channels != expected_channels:
        raise ConfigurationError(
            f"sensitivity must have {expected_channels} rows for this captured image, "
            f"got {n_channels}."
        )

    n_latent = latent_shape[0] * latent_shape[1] * n_bands
    n_captured = captured_shape[0] * captured_shape[1] * n_bands

    omega = channel_conversion_matrix(captured_shape, sensitivity, bands, options.int_method)
    if dispersion is not None:
        dispersion = _as_dispersion_matrix(dispersion)
        if dispersion.shape[0] != n_captured:
            raise ConfigurationError(
                "`dispersion` must have as many rows as there are pixels in the "
                f"captured image times bands ({n_captured}), got {dispersion.shape[0]}."
            )
        if dispersion.shape[1] != n_latent:
            raise ConfigurationError(
                "`dispersion` must have as many columns as there are values in the "
                f"latent image ({n_latent}), got {dispersion.shape[1]}."
            )
        forward = omega @ dispersion
    else:
        if captured_shape != tuple(latent_shape):
            raise ConfigurationError(
                f"Without a dispersion model the captured image {captured_shape} and "
                f"the latent image {tuple(latent_shape)} must have the same size."
            )
        forward = omega

    if pattern is not None:
        forward = mosaic_matrix(captured_shape, pattern) @ forward
    forward = sp.csr_matrix(forward)

    operators: list[sp.csr_matrix | None] = [None] * N_PRIORS
    if enabled[SPATIAL] or enabled[SPECTRAL]:
        operators[SPATIAL] = spatial_gradient(latent_shape, n_bands)
    if enabled[SPECTRAL]:
        g_lambda = spectral_gradient(
            latent_shape, n_bands, full=options.full_spectral_gradient
        )
        # Applied to the x- and y-gradient blocks of the spatial gradient.
        operators[SPECTRAL] = sp.csr_matrix(
            sp.block_diag([g_lambda, g_lambda]) @ operators[SPATIAL]
        )
    if enabled[ANTI_MOSAIC]:
        if pattern is None:
            raise ConfigurationError(
                "The anti-mosaic prior requires a mosaiced captured image."
            )
        operators[ANTI_MOSAIC] = sp.csr_matrix(
            anti_mosaic_matrix(captured_shape, pattern) @ forward
        )

    # Weights are comparable regardless of the number of rows each operator has.
    normalized = np.zeros(N_PRIORS)
    terms: list[RegularizationTerm] = []
    for w in range(N_PRIORS):
        if not enabled[w]:
            continue
        operator = operators[w]
        normalized[w] = weights[w] * forward.shape[0] / operator.shape[0]
        kind = TermKind.L1 if options.norms[w] else TermKind.L2
        terms.append(
            RegularizationTerm(
                index=w,
                kind=kind,
                operator=operator,
                weight=float(normalized[w]),
                rho=float(options.rho[w]),
            )
        )
    if options.nonneg:
        terms.append(
            RegularizationTerm(
                index=NONNEG_INDEX,
                kind=TermKind.NONNEG,
                operator=sp.identity(n_latent, format="csr"),
                weight=0.0,
                rho=float(options.rho[NONNEG_INDEX]),
            )
        )

    LOGGER.debug(
        "Built problem: forward %s, latent %s x %d bands, terms %s.",
        forward.shape,
        tuple(latent_shape),
        n_bands,
        [(term.name, term.kind.value) for term in terms],
    )

    return ReconstructionProblem(
        forward=forward,
        rhs=vectorize_image(captured),
        latent_shape=(int(latent_shape[0]), int(latent_shape[1])),
        n_bands=n_bands,
        terms=terms,
        weights=normalized,
        options=options,
    )
