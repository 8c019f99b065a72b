"""Sparse linear operators for the image formation model.

Modules
-------
mosaic
    Colour-filter array selection and anti-mosaicing operators.
channels
    Spectral-to-channel conversion with optional numerical integration.
gradients
    Spatial and spectral finite-difference operators.
forward
    Composition of the forward model and the active regularization terms.
"""

from aberration_correction.operators.channels import (
    channel_conversion_matrix,
    integration_weights,
)
from aberration_correction.operators.forward import (
    ReconstructionProblem,
    RegularizationTerm,
    TermKind,
    build_problem,
    unvectorize_image,
    vectorize_image,
)
from aberration_correction.operators.gradients import spatial_gradient, spectral_gradient
from aberration_correction.operators.mosaic import (
    anti_mosaic_matrix,
    channel_map,
    mosaic_matrix,
    offset_bayer_pattern,
)

__all__ = [
    "ReconstructionProblem",
    "RegularizationTerm",
    "TermKind",
    "anti_mosaic_matrix",
    "build_problem",
    "channel_conversion_matrix",
    "channel_map",
    "integration_weights",
    "mosaic_matrix",
    "offset_bayer_pattern",
    "spatial_gradient",
    "spectral_gradient",
    "unvectorize_image",
    "vectorize_image",
]
