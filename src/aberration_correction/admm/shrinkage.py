"""Proximal operators used by the ADMM splitting updates."""

from __future__ import annotations

import numpy as np


def soft_threshold(v: np.ndarray, threshold: float) -> np.ndarray:
    r"""Proximal operator of :math:`t \|w\|_1`.

    .. math::

        \text{shrink}(v, t) = \max(|v| - t, 0) \cdot \text{sign}(v)

    Parameters
    ----------
    v : np.ndarray
        Input array (any shape).
    threshold : float
        Non-negative threshold ``t``.

    Returns
    -------
    np.ndarray
        Shrunk array, same shape as *v*.
    """
    return np.maximum(np.abs(v) - threshold, 0.0) * np.sign(v)


def project_nonnegative(v: np.ndarray) -> np.ndarray:
    """Euclidean projection onto the non-negative orthant."""
    return np.maximum(v, 0.0)
