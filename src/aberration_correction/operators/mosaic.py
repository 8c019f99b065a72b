"""Colour-filter array (CFA) operators.

A mosaic pattern is a four-character string such as ``"gbrg"`` naming the
colour channel recorded at the ``(0, 0)``, ``(0, 1)``, ``(1, 0)`` and
``(1, 1)`` sites of the repeating 2x2 tile.
"""

from __future__ import annotations

import numpy as np
import scipy.sparse as sp

from ..errors import ConfigurationError

CHANNEL_INDEX = {"r": 0, "g": 1, "b": 2}
N_CFA_CHANNELS = 3


def _parse_pattern(pattern: str) -> np.ndarray:
    """Return the 2x2 tile of channel indices for *pattern*."""
    if not isinstance(pattern, str) or len(pattern) != 4:
        raise ConfigurationError(
            f"Mosaic pattern must be a four-character string, got {pattern!r}."
        )
    try:
        tile = [CHANNEL_INDEX[ch] for ch in pattern.lower()]
    except KeyError as exc:
        raise ConfigurationError(
            f"Mosaic pattern {pattern!r} contains an unknown channel {exc.args[0]!r}."
        ) from exc
    return np.array(tile, dtype=np.int64).reshape(2, 2)


def offset_bayer_pattern(corner: tuple[int, int], pattern: str) -> str:
    """Pattern seen by a sub-image whose top-left pixel is *corner*.

    An odd row offset swaps the rows of the tile, an odd column offset
    swaps its columns.
    """
    _parse_pattern(pattern)
    tile = np.array(list(pattern.lower())).reshape(2, 2)
    if corner[0] % 2:
        tile = tile[::-1, :]
    if corner[1] % 2:
        tile = tile[:, ::-1]
    return "".join(tile.ravel())


def channel_map(shape: tuple[int, int], pattern: str) -> np.ndarray:
    """Channel index recorded at every pixel of a ``shape`` raw image."""
    tile = _parse_pattern(pattern)
    rows, cols = np.indices(shape)
    return tile[rows % 2, cols % 2]


def mosaic_matrix(shape: tuple[int, int], pattern: str) -> sp.csr_matrix:
    """Selection matrix from a 3-channel image to a mosaiced raw image.

    Parameters
    ----------
    shape : tuple[int, int]
        Raw image ``(height, width)``.
    pattern : str
        CFA pattern descriptor.

    Returns
    -------
    scipy.sparse.csr_matrix
        Shape ``(H * W, 3 * H * W)``. Row ``k`` picks channel
        ``channel_map(shape, pattern).ravel()[k]`` of pixel ``k`` from a
        band-major vectorized colour image.
    """
    n_px = shape[0] * shape[1]
    channels = channel_map(shape, pattern).ravel()
    pixels = np.arange(n_px)
    return sp.csr_matrix(
        (np.ones(n_px), (pixels, channels * n_px + pixels)),
        shape=(n_px, N_CFA_CHANNELS * n_px),
    )


def second_difference_matrix(
    shape: tuple[int, int], axis: int, step: int = 1
) -> sp.csr_matrix:
    """Centred second differences ``x[i-s] - 2 x[i] + x[i+s]`` along *axis*.

    Pixels whose neighbourhood leaves the image get an empty row, so the
    matrix is always ``(H * W, H * W)``.
    """
    height, width = shape
    rows, cols = np.indices(shape)
    index = rows * width + cols
    if axis == 0:
        valid = (rows >= step) & (rows < height - step)
        offset = step * width
    else:
        valid = (cols >= step) & (cols < width - step)
        offset = step

    centre = index[valid]
    row_idx = np.concatenate([centre, centre, centre])
    col_idx = np.concatenate([centre - offset, centre, centre + offset])
    values = np.concatenate(
        [np.ones(centre.size), np.full(centre.size, -2.0), np.ones(centre.size)]
    )
    n_px = height * width
    return sp.csr_matrix((values, (row_idx, col_idx)), shape=(n_px, n_px))


def anti_mosaic_matrix(shape: tuple[int, int], pattern: str) -> sp.csr_matrix:
    """Second-order operator penalizing CFA artifacts in a raw image.

    Takes second differences between neighbouring sites of the same colour
    (two pixels apart), horizontally then vertically. Mosaicing artifacts in
    the latent estimate appear as high-frequency variation between these
    sites once the estimate is re-mosaiced.

    Returns
    -------
    scipy.sparse.csr_matrix
        Shape ``(2 * H * W, H * W)``.
    """
    _parse_pattern(pattern)
    return sp.vstack(
        [
            second_difference_matrix(shape, axis=1, step=2),
            second_difference_matrix(shape, axis=0, step=2),
        ],
        format="csr",
    )
