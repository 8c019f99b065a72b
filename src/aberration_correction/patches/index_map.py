"""Local/global index maps for patch-local operators."""

from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike, NDArray


class IndexMap:
    """Bidirectional map between patch-local and global linear indices.

    Stored as two parallel arrays: the global index of every local index, and
    a sorted copy of the global indices with the local position of each, used
    for the reverse lookup. A map is built per patch and discarded with it.

    Parameters
    ----------
    global_indices : array_like
        Global index of each local index, in local order. Must be unique.
    """

    def __init__(self, global_indices: ArrayLike) -> None:
        self._local_to_global = np.asarray(global_indices, dtype=np.int64).ravel()
        order = np.argsort(self._local_to_global, kind="stable")
        self._sorted_global = self._local_to_global[order]
        self._sorted_local = order
        if np.any(np.diff(self._sorted_global) == 0):
            raise ValueError("Global indices of an IndexMap must be unique.")

    @classmethod
    def from_box(
        cls,
        image_shape: tuple[int, int],
        box: tuple[int, int, int, int],
        n_bands: int,
    ) -> IndexMap:
        """Map for the pixel-bands of a rectangular box of an image.

        Both the local and the global vectors are band-major and row-major
        within a band. *box* is ``(top, left, bottom, right)`` with exclusive
        bottom and right edges.
        """
        top, left, bottom, right = box
        height, width = image_shape
        rows, cols = np.meshgrid(
            np.arange(top, bottom), np.arange(left, right), indexing="ij"
        )
        spatial = (rows * width + cols).ravel()
        band_offsets = np.arange(n_bands, dtype=np.int64) * (height * width)
        return cls((band_offsets[:, np.newaxis] + spatial[np.newaxis, :]).ravel())

    def __len__(self) -> int:
        return self._local_to_global.size

    @property
    def local_to_global(self) -> NDArray[np.int64]:
        return self._local_to_global

    def to_global(self, local_indices: ArrayLike) -> NDArray[np.int64]:
        return self._local_to_global[np.asarray(local_indices, dtype=np.int64)]

    def contains(self, global_indices: ArrayLike) -> NDArray[np.bool_]:
        global_indices = np.asarray(global_indices, dtype=np.int64)
        if self._sorted_global.size == 0:
            return np.zeros(global_indices.shape, dtype=bool)
        pos = np.searchsorted(self._sorted_global, global_indices)
        pos = np.minimum(pos, self._sorted_global.size - 1)
        return self._sorted_global[pos] == global_indices

    def to_local(self, global_indices: ArrayLike) -> NDArray[np.int64]:
        """Local index of each global index.

        Raises
        ------
        KeyError
            If any global index is not part of the map.
        """
        global_indices = np.asarray(global_indices, dtype=np.int64)
        found = self.contains(global_indices)
        if not np.all(found):
            missing = global_indices[~found]
            raise KeyError(f"Global indices not in the patch: {missing[:5].tolist()}")
        pos = np.searchsorted(self._sorted_global, global_indices)
        return self._sorted_local[pos]
