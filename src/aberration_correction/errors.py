"""Exceptions raised by the reconstruction core."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid inputs detected before any iteration starts.

    Covers mismatched operator dimensions, negative weights, non-positive
    penalty parameters, missing penalties and patches outside the image.
    """


class NumericalError(RuntimeError):
    """A solve produced a singular system or a non-finite iterate.

    Raised for the whole patch; the scheduler does not attempt recovery.
    """
