"""Sparse finite-difference operators on band-major vectorized images."""

from __future__ import annotations

import numpy as np
import scipy.sparse as sp

from ..errors import ConfigurationError


def _forward_difference_1d(length: int) -> sp.csr_matrix:
    """``x[i+1] - x[i]``, with an empty last row (Neumann boundary)."""
    if length < 2:
        return sp.csr_matrix((length, length))
    main = np.full(length, -1.0)
    main[-1] = 0.0
    upper = np.ones(length - 1)
    return sp.diags([main, upper], [0, 1], shape=(length, length), format="csr")


def spatial_gradient(shape: tuple[int, int], n_bands: int) -> sp.csr_matrix:
    """First-order spatial gradient of every band.

    Parameters
    ----------
    shape : tuple[int, int]
        Image ``(height, width)``.
    n_bands : int
        Number of bands.

    Returns
    -------
    scipy.sparse.csr_matrix
        Shape ``(2 * B * H * W, B * H * W)``. The x-gradients of all bands
        are stacked above the y-gradients of all bands, so that
        ``blockdiag(G_lambda, G_lambda)`` can be applied to the result.
    """
    height, width = shape
    # Row-major pixel order: x runs along the fast (column) axis.
    dx = sp.kron(sp.identity(height), _forward_difference_1d(width), format="csr")
    dy = sp.kron(_forward_difference_1d(height), sp.identity(width), format="csr")
    bands_eye = sp.identity(n_bands, format="csr")
    return sp.vstack(
        [sp.kron(bands_eye, dx), sp.kron(bands_eye, dy)], format="csr"
    )


def spectral_gradient(
    shape: tuple[int, int], n_bands: int, full: bool = False
) -> sp.csr_matrix:
    """Differences between adjacent bands at every pixel.

    Parameters
    ----------
    shape : tuple[int, int]
        Image ``(height, width)``.
    n_bands : int
        Number of bands, at least two.
    full : bool, optional
        If True, the output has one row per band (``B * H * W`` rows) and the
        last band repeats the difference between the last two bands.
        Otherwise there are ``(B - 1) * H * W`` rows.

    Returns
    -------
    scipy.sparse.csr_matrix
    """
    if n_bands < 2:
        raise ConfigurationError(
            f"A spectral gradient needs at least two bands, got {n_bands}."
        )
    diff = sp.diags(
        [-np.ones(n_bands - 1), np.ones(n_bands - 1)],
        [0, 1],
        shape=(n_bands - 1, n_bands),
        format="csr",
    )
    if full:
        diff = sp.vstack([diff, diff[-1]], format="csr")
    n_px = shape[0] * shape[1]
    return sp.kron(diff, sp.identity(n_px), format="csr")
