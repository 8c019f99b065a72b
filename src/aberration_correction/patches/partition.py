"""Partitioning of the latent and captured images into patch-local problems.

A patch is solved over its output region enlarged by a padding border. The
padded latent region determines, through the sparsity pattern of the
dispersion matrix, which captured pixels are involved. Their bounding box is
the captured sub-image loaded for the patch, and the global dispersion matrix
is re-indexed to patch-local coordinates rather than rebuilt.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

import numpy as np
import scipy.sparse as sp
from numpy.typing import ArrayLike, NDArray

from ..errors import ConfigurationError
from ..operators.forward import vectorize_image
from ..operators.mosaic import offset_bayer_pattern
from .index_map import IndexMap

LOGGER = logging.getLogger(__name__)


class Box(NamedTuple):
    """Rectangle ``[top, bottom) x [left, right)`` in pixel coordinates."""

    top: int
    left: int
    bottom: int
    right: int

    @property
    def shape(self) -> tuple[int, int]:
        return (self.bottom - self.top, self.right - self.left)

    @property
    def corner(self) -> tuple[int, int]:
        return (self.top, self.left)


class PatchLayout(NamedTuple):
    """Everything needed to solve one patch and write back its result.

    Attributes
    ----------
    corner, patch_size
        Unpadded output region in the full latent image.
    latent_box
        Padded latent region, clipped to the image.
    captured_box
        Bounding box of the captured pixels referenced by ``latent_box``.
    trim
        Slices into a ``latent_box``-shaped result selecting the unpadded
        output region.
    latent_map, captured_map
        Local pixel-band index maps of the two frames.
    captured
        Captured sub-image; pixels not referenced by the dispersion model are
        zero.
    pattern
        Mosaic pattern aligned to ``captured_box``, or None.
    dispersion
        Patch-local dispersion matrix, or None.
    n_bands
        Number of latent bands.
    """

    corner: tuple[int, int]
    patch_size: tuple[int, int]
    latent_box: Box
    captured_box: Box
    trim: tuple[slice, slice]
    latent_map: IndexMap
    captured_map: IndexMap
    captured: NDArray[np.float64]
    pattern: str | None
    dispersion: sp.csr_matrix | None
    n_bands: int

    @property
    def latent_shape(self) -> tuple[int, int]:
        return self.latent_box.shape

    def trim_mask(self) -> NDArray[np.bool_]:
        """Boolean mask over the local latent vector selecting the output region."""
        mask = np.zeros((*self.latent_shape, self.n_bands), dtype=bool)
        mask[self.trim] = True
        return vectorize_image(mask).astype(bool)

    def trimmed_dispersion(self) -> sp.csr_matrix | None:
        """Local dispersion matrix restricted to the unpadded output columns."""
        if self.dispersion is None:
            return None
        return sp.csr_matrix(self.dispersion[:, self.trim_mask()])


def patch_grid(
    shape: tuple[int, int], patch_size: tuple[int, int]
) -> list[tuple[tuple[int, int], tuple[int, int]]]:
    """Corners and sizes of non-overlapping patches covering an image.

    Patches in the last row and column are clipped to the image.
    """
    if patch_size[0] <= 0 or patch_size[1] <= 0:
        raise ConfigurationError(f"patch_size must be positive, got {patch_size}.")
    height, width = shape
    grid = []
    for row in range(0, height, patch_size[0]):
        for col in range(0, width, patch_size[1]):
            size = (min(patch_size[0], height - row), min(patch_size[1], width - col))
            grid.append(((row, col), size))
    return grid


def _padded_box(
    shape: tuple[int, int],
    corner: tuple[int, int],
    patch_size: tuple[int, int],
    padding: int,
) -> tuple[Box, tuple[slice, slice]]:
    height, width = shape
    row, col = corner
    # Padding is dropped at the image edges rather than mirrored.
    box = Box(
        top=max(row - padding, 0),
        left=max(col - padding, 0),
        bottom=min(row + patch_size[0] + padding, height),
        right=min(col + patch_size[1] + padding, width),
    )
    trim = (
        slice(row - box.top, row - box.top + patch_size[0]),
        slice(col - box.left, col - box.left + patch_size[1]),
    )
    return box, trim


def partition_patch(
    latent_shape: tuple[int, int],
    n_bands: int,
    captured: ArrayLike,
    corner: tuple[int, int],
    patch_size: tuple[int, int],
    padding: int,
    dispersion: sp.spmatrix | None = None,
    pattern: str | None = None,
) -> PatchLayout:
    """Compute the patch-local sub-problem for one output patch.

    Parameters
    ----------
    latent_shape : tuple[int, int]
        ``(height, width)`` of the full latent image.
    n_bands : int
        Number of latent bands.
    captured : array_like
        Full captured image, ``(H_J, W_J)`` or ``(H_J, W_J, C)``.
    corner : tuple[int, int]
        Top-left pixel ``(row, col)`` of the output patch.
    patch_size : tuple[int, int]
        Output patch ``(height, width)``; the patch must lie in the image.
    padding : int
        Border solved around the patch and discarded afterwards.
    dispersion : sparse matrix, optional
        Full ``(B * H_J * W_J, B * H * W)`` dispersion matrix. Column slicing
        is fastest on CSC input.
    pattern : str, optional
        Mosaic pattern of the full captured image.

    Returns
    -------
    PatchLayout

    Raises
    ------
    ConfigurationError
        If the patch is outside the image or the dispersion matrix has the
        wrong shape.
    """
    height, width = latent_shape
    row, col = corner
    if padding < 0:
        raise ConfigurationError(f"padding must be non-negative, got {padding}.")
    if patch_size[0] <= 0 or patch_size[1] <= 0:
        raise ConfigurationError(f"patch_size must be positive, got {patch_size}.")
    if row < 0 or col < 0 or row + patch_size[0] > height or col + patch_size[1] > width:
        raise ConfigurationError(
            f"Patch at {corner} of size {patch_size} is outside the "
            f"{latent_shape} image."
        )

    latent_box, trim = _padded_box(latent_shape, corner, patch_size, padding)
    latent_map = IndexMap.from_box(latent_shape, latent_box, n_bands)

    captured = np.asarray(captured, dtype=np.float64)
    captured_shape = (captured.shape[0], captured.shape[1])
    n_captured_px = captured_shape[0] * captured_shape[1]

    if dispersion is None:
        if captured_shape != tuple(latent_shape):
            raise ConfigurationError(
                f"Without a dispersion model the captured image {captured_shape} and "
                f"the latent image {tuple(latent_shape)} must have the same size."
            )
        captured_box = latent_box
        captured_map = IndexMap.from_box(captured_shape, captured_box, n_bands)
        local_captured = captured[
            captured_box.top:captured_box.bottom, captured_box.left:captured_box.right
        ].copy()
        local_dispersion = None
    else:
        expected = (n_bands * n_captured_px, n_bands * height * width)
        if dispersion.shape != expected:
            raise ConfigurationError(
                f"dispersion must have shape {expected}, got {dispersion.shape}."
            )
        columns = sp.csc_matrix(dispersion)[:, latent_map.local_to_global].tocoo()
        nonzero = columns.data != 0
        global_rows = columns.row[nonzero].astype(np.int64)
        local_cols = columns.col[nonzero]
        values = columns.data[nonzero]
        if global_rows.size == 0:
            raise ConfigurationError(
                f"The dispersion model maps no latent pixels of the patch at {corner} "
                "into the captured image."
            )

        spatial = global_rows % n_captured_px
        rows_j = spatial // captured_shape[1]
        cols_j = spatial % captured_shape[1]
        captured_box = Box(
            top=int(rows_j.min()),
            left=int(cols_j.min()),
            bottom=int(rows_j.max()) + 1,
            right=int(cols_j.max()) + 1,
        )
        captured_map = IndexMap.from_box(captured_shape, captured_box, n_bands)
        local_dispersion = sp.csr_matrix(
            (values, (captured_map.to_local(global_rows), local_cols)),
            shape=(len(captured_map), len(latent_map)),
        )

        # Only captured pixels that the patch can explain are kept.
        referenced = np.unique(spatial)
        ref_rows = referenced // captured_shape[1]
        ref_cols = referenced % captured_shape[1]
        local_captured = np.zeros(
            (*captured_box.shape, *captured.shape[2:]), dtype=np.float64
        )
        local_captured[ref_rows - captured_box.top, ref_cols - captured_box.left] = captured[
            ref_rows, ref_cols
        ]

    local_pattern = (
        offset_bayer_pattern(captured_box.corner, pattern) if pattern is not None else None
    )

    LOGGER.debug(
        "Patch %s: latent box %s, captured box %s, pattern %s.",
        corner,
        tuple(latent_box),
        tuple(captured_box),
        local_pattern,
    )

    return PatchLayout(
        corner=(int(row), int(col)),
        patch_size=(int(patch_size[0]), int(patch_size[1])),
        latent_box=latent_box,
        captured_box=captured_box,
        trim=trim,
        latent_map=latent_map,
        captured_map=captured_map,
        captured=local_captured,
        pattern=local_pattern,
        dispersion=local_dispersion,
        n_bands=n_bands,
    )
