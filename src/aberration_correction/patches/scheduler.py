"""Patch-wise reconstruction of a full image.

Patches are independent: each one reads the shared captured image and
dispersion matrix, solves its own padded sub-problem, and writes its trimmed
result into a disjoint region of the output image.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed

import numpy as np
import scipy.sparse as sp
from numpy.typing import ArrayLike, NDArray

from ..admm.solver import ADMMResult, admm_solve
from ..config import ADMMOptions
from ..errors import ConfigurationError
from ..operators.forward import ReconstructionProblem, build_problem
from .partition import Box, PatchLayout, partition_patch, patch_grid

LOGGER = logging.getLogger(__name__)

Solver = Callable[[ReconstructionProblem], ADMMResult]


@dataclasses.dataclass
class PatchSolution:
    """Diagnostics for one solved patch.

    ``result.image`` holds the trimmed (unpadded) patch. ``dispersion`` is the
    patch's block of the full dispersion matrix, in global coordinates.
    """

    corner: tuple[int, int]
    patch_size: tuple[int, int]
    captured_box: Box
    result: ADMMResult
    dispersion: sp.coo_matrix | None = None


@dataclasses.dataclass
class PatchResult:
    """Stitched output of :func:`solve_patches`."""

    image: NDArray[np.float64]
    patches: list[PatchSolution]
    dispersion: sp.csr_matrix | None = None


def _global_dispersion_block(
    layout: PatchLayout, shape: tuple[int, int]
) -> sp.coo_matrix | None:
    trimmed = layout.trimmed_dispersion()
    if trimmed is None:
        return None
    trimmed = trimmed.tocoo()
    output_columns = np.flatnonzero(layout.trim_mask())
    return sp.coo_matrix(
        (
            trimmed.data,
            (
                layout.captured_map.to_global(trimmed.row),
                layout.latent_map.to_global(output_columns[trimmed.col]),
            ),
        ),
        shape=shape,
    )


def assemble_dispersion(
    patches: Sequence[PatchSolution], shape: tuple[int, int]
) -> sp.csr_matrix:
    """Concatenate per-patch dispersion blocks into one sparse matrix.

    Every latent column belongs to exactly one patch, so the blocks never
    overlap. Columns of unsolved patches are empty.
    """
    blocks = [patch.dispersion for patch in patches if patch.dispersion is not None]
    if not blocks:
        return sp.csr_matrix(shape)
    rows = np.concatenate([block.row for block in blocks])
    cols = np.concatenate([block.col for block in blocks])
    data = np.concatenate([block.data for block in blocks])
    return sp.csr_matrix((data, (rows, cols)), shape=shape)


def _check_disjoint(
    jobs: Sequence[tuple[tuple[int, int], tuple[int, int]]], shape: tuple[int, int]
) -> None:
    """Reject explicit patches whose output regions overlap."""
    owner = np.full(shape, -1, dtype=np.int64)
    for k, ((row, col), (h, w)) in enumerate(jobs):
        region = owner[max(row, 0):max(row + h, 0), max(col, 0):max(col + w, 0)]
        taken = region[region >= 0]
        if taken.size:
            raise ConfigurationError(
                f"Patch at {(row, col)} overlaps the patch at {jobs[taken[0]][0]}; "
                "explicit corners must give disjoint patches."
            )
        region[...] = k


def _solve_one_patch(
    captured: NDArray[np.float64],
    latent_shape: tuple[int, int],
    sensitivity: NDArray[np.float64],
    weights: ArrayLike,
    options: ADMMOptions,
    bands: ArrayLike | None,
    pattern: str | None,
    dispersion: sp.csc_matrix | None,
    corner: tuple[int, int],
    patch_size: tuple[int, int],
    padding: int,
    solver: Solver,
    return_dispersion: bool,
) -> tuple[PatchSolution, NDArray[np.float64]]:
    n_bands = sensitivity.shape[1]
    layout = partition_patch(
        latent_shape,
        n_bands,
        captured,
        corner,
        patch_size,
        padding,
        dispersion=dispersion,
        pattern=pattern,
    )
    problem = build_problem(
        layout.latent_shape,
        layout.captured,
        sensitivity,
        weights,
        options,
        bands=bands,
        pattern=layout.pattern,
        dispersion=layout.dispersion,
    )
    result = solver(problem)
    trimmed = result.image[layout.trim]

    block = None
    if return_dispersion and dispersion is not None:
        block = _global_dispersion_block(layout, dispersion.shape)

    solution = PatchSolution(
        corner=layout.corner,
        patch_size=layout.patch_size,
        captured_box=layout.captured_box,
        result=dataclasses.replace(result, image=trimmed),
        dispersion=block,
    )
    return solution, trimmed


def solve_patches(
    captured: ArrayLike,
    latent_shape: tuple[int, int],
    sensitivity: ArrayLike,
    weights: ArrayLike,
    options: ADMMOptions | None = None,
    patch_size: tuple[int, int] = (64, 64),
    padding: int = 8,
    bands: ArrayLike | None = None,
    pattern: str | None = None,
    dispersion: sp.spmatrix | None = None,
    corners: Sequence[tuple[int, int]] | None = None,
    n_workers: int = 1,
    return_dispersion: bool = False,
    solver: Solver = admm_solve,
) -> PatchResult:
    """Reconstruct a latent image patch by patch.

    Parameters
    ----------
    captured : array_like
        Full captured image, ``(H_J, W_J)`` (mosaiced, or single-channel) or
        ``(H_J, W_J, C)``.
    latent_shape : tuple[int, int]
        ``(height, width)`` of the latent image.
    sensitivity : array_like, shape (C, B)
        Sensor response of each captured channel to each latent band.
    weights : array_like, shape (3,)
        Regularization weights (spatial, spectral, anti-mosaic).
    options : ADMMOptions, optional
        Solver options.
    patch_size : tuple[int, int], optional
        Output patch size; edge patches are clipped to the image.
    padding : int, optional
        Border solved around each patch and discarded.
    bands : array_like, optional
        Wavelengths of the latent bands.
    pattern : str, optional
        Mosaic pattern of the captured image.
    dispersion : sparse matrix, optional
        Full dispersion matrix.
    corners : sequence of tuple[int, int], optional
        Solve only the patches at these corners. Unsolved pixels of the
        output are NaN.
    n_workers : int, optional
        Number of threads solving patches concurrently.
    return_dispersion : bool, optional
        Also return the dispersion matrix restricted to the solved patches.
    solver : callable, optional
        Per-patch solver, :func:`~aberration_correction.admm.admm_solve` by
        default.

    Returns
    -------
    PatchResult

    Raises
    ------
    ConfigurationError, NumericalError
        Propagated from the first failing patch; no patch is skipped.
    """
    options = options if options is not None else ADMMOptions()
    captured = np.asarray(captured, dtype=np.float64)
    sensitivity = np.atleast_2d(np.asarray(sensitivity, dtype=np.float64))
    n_bands = sensitivity.shape[1]
    if n_workers < 1:
        raise ConfigurationError(f"n_workers must be positive, got {n_workers}.")

    if dispersion is not None:
        dispersion = sp.csc_matrix(dispersion)

    height, width = latent_shape
    if corners is None:
        jobs = patch_grid(latent_shape, patch_size)
        image = np.zeros((height, width, n_bands))
    else:
        jobs = [
            (
                (int(r), int(c)),
                (min(patch_size[0], height - r), min(patch_size[1], width - c)),
            )
            for r, c in corners
        ]
        _check_disjoint(jobs, latent_shape)
        image = np.full((height, width, n_bands), np.nan)

    def run(job: tuple[tuple[int, int], tuple[int, int]]) -> PatchSolution:
        corner, size = job
        start = time.perf_counter()
        solution, trimmed = _solve_one_patch(
            captured, latent_shape, sensitivity, weights, options, bands, pattern,
            dispersion, corner, size, padding, solver, return_dispersion,
        )
        # Each patch owns a disjoint output region.
        image[corner[0]:corner[0] + size[0], corner[1]:corner[1] + size[1], :] = trimmed
        LOGGER.info(
            "Patch %s solved in %.2f s (%d iterations, converged=%s).",
            corner,
            time.perf_counter() - start,
            solution.result.iterations,
            solution.result.converged,
        )
        return solution

    LOGGER.info(
        "Solving %d patches of size %s with padding %d on %d worker(s).",
        len(jobs),
        tuple(patch_size),
        padding,
        n_workers,
    )

    if n_workers == 1:
        solutions = [run(job) for job in jobs]
    else:
        solutions = []
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = [executor.submit(run, job) for job in jobs]
            try:
                for future in as_completed(futures):
                    solutions.append(future.result())
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
        solutions.sort(key=lambda s: s.corner)

    assembled = None
    if return_dispersion and dispersion is not None:
        assembled = assemble_dispersion(solutions, dispersion.shape)

    return PatchResult(image=image, patches=solutions, dispersion=assembled)


def reconstruct_image(
    captured: ArrayLike,
    sensitivity: ArrayLike,
    weights: ArrayLike,
    options: ADMMOptions | None = None,
    latent_shape: tuple[int, int] | None = None,
    bands: ArrayLike | None = None,
    pattern: str | None = None,
    dispersion: sp.spmatrix | None = None,
    solver: Solver = admm_solve,
) -> ADMMResult:
    """Reconstruct the whole latent image in a single solve."""
    captured = np.asarray(captured, dtype=np.float64)
    if latent_shape is None:
        latent_shape = (captured.shape[0], captured.shape[1])
    problem = build_problem(
        latent_shape,
        captured,
        sensitivity,
        weights,
        options,
        bands=bands,
        pattern=pattern,
        dispersion=dispersion,
    )
    return solver(problem)
