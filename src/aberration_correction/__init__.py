"""Dispersion-aware ADMM reconstruction of multi-band images."""

from importlib import import_module

from aberration_correction import admm, operators, patches
from aberration_correction.config import ADMMOptions, ReconstructionConfig
from aberration_correction.errors import ConfigurationError, NumericalError

__all__ = [
    "ADMMOptions",
    "ConfigurationError",
    "NumericalError",
    "ReconstructionConfig",
    "admm",
    "cli",
    "operators",
    "patches",
]


def __getattr__(name: str):  # noqa: N807
    # The command-line module pulls in Pillow; load it on first access only.
    if name == "cli":
        module = import_module(".cli", __name__)
        globals()[name] = module
        return module
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
