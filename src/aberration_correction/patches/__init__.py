"""Tiled reconstruction of large images.

Modules
-------
index_map
    Patch-local to global index maps.
partition
    Padded patch regions, captured bounding boxes and local operators.
scheduler
    Patch grid iteration, optional thread pool, and stitching.
"""

from aberration_correction.patches.index_map import IndexMap
from aberration_correction.patches.partition import (
    Box,
    PatchLayout,
    partition_patch,
    patch_grid,
)
from aberration_correction.patches.scheduler import (
    PatchResult,
    PatchSolution,
    assemble_dispersion,
    reconstruct_image,
    solve_patches,
)

__all__ = [
    "Box",
    "IndexMap",
    "PatchLayout",
    "PatchResult",
    "PatchSolution",
    "assemble_dispersion",
    "partition_patch",
    "patch_grid",
    "reconstruct_image",
    "solve_patches",
]
