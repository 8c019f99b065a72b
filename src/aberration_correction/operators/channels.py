"""Conversion from latent spectral bands (or colour channels) to sensor channels."""

from __future__ import annotations

import logging

import numpy as np
import scipy.sparse as sp
from numpy.typing import ArrayLike, NDArray

from ..config import INT_METHODS
from ..errors import ConfigurationError

LOGGER = logging.getLogger(__name__)


def integration_weights(bands: ArrayLike, int_method: str = "none") -> NDArray[np.float64]:
    """Quadrature weights over the wavelength samples *bands*.

    Parameters
    ----------
    bands : array_like
        Wavelengths (or channel indices) of the latent image bands.
    int_method : {"none", "rect", "trap"}
        ``"none"`` returns unit weights, for latent images whose bands are
        already colour channels. ``"rect"`` is the midpoint rule, where each
        sample covers half the interval to each neighbour and the end samples
        are extended symmetrically. ``"trap"`` is the trapezoidal rule.

    Returns
    -------
    ndarray
        One weight per band.
    """
    if int_method not in INT_METHODS:
        raise ConfigurationError(
            f"int_method must be one of {INT_METHODS}, got {int_method!r}."
        )
    bands = np.asarray(bands, dtype=np.float64).ravel()
    n_bands = bands.size
    if n_bands == 0:
        raise ConfigurationError("At least one band is required.")
    if int_method == "none" or n_bands == 1:
        return np.ones(n_bands)

    spacing = np.diff(bands)
    if np.any(spacing <= 0):
        raise ConfigurationError(
            "Bands must be strictly increasing for numerical integration."
        )

    weights = np.empty(n_bands)
    weights[1:-1] = 0.5 * (spacing[:-1] + spacing[1:])
    if int_method == "trap":
        weights[0] = 0.5 * spacing[0]
        weights[-1] = 0.5 * spacing[-1]
    else:
        weights[0] = spacing[0]
        weights[-1] = spacing[-1]
    return weights


def channel_conversion_matrix(
    shape: tuple[int, int],
    sensitivity: ArrayLike,
    bands: ArrayLike | None = None,
    int_method: str = "none",
) -> sp.csr_matrix:
    """Per-pixel spectral-to-channel conversion for a whole image.

    Parameters
    ----------
    shape : tuple[int, int]
        Image ``(height, width)``.
    sensitivity : array_like, shape (C, B)
        ``sensitivity[i, j]`` is the response of channel ``i`` to band ``j``.
    bands : array_like, optional
        Band wavelengths; required unless ``int_method`` is ``"none"``.
    int_method : str
        See :func:`integration_weights`.

    Returns
    -------
    scipy.sparse.csr_matrix
        Shape ``(C * H * W, B * H * W)`` acting on band-major vectorized
        images.
    """
    sensitivity = np.atleast_2d(np.asarray(sensitivity, dtype=np.float64))
    n_bands = sensitivity.shape[1]

    if int_method == "none":
        quadrature = np.ones(n_bands)
    else:
        if bands is None:
            raise ConfigurationError(
                f"Band wavelengths are required for int_method={int_method!r}."
            )
        quadrature = integration_weights(bands, int_method)
        if quadrature.size != n_bands:
            raise ConfigurationError(
                f"sensitivity has {n_bands} columns but {quadrature.size} bands were given."
            )

    n_px = shape[0] * shape[1]
    per_pixel = sensitivity * quadrature[np.newaxis, :]
    LOGGER.debug(
        "Channel conversion: %d channels x %d bands over %d pixels (int_method=%s).",
        per_pixel.shape[0],
        n_bands,
        n_px,
        int_method,
    )
    return sp.kron(sp.csr_matrix(per_pixel), sp.identity(n_px, format="csr"), format="csr")
