"""Solver options and reconstruction configuration.

Options are plain dataclasses so that they can be built in code, or loaded
from a JSON file for the command-line front end.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

#: Number of regularization priors (spatial, spectral, anti-mosaic).
N_PRIORS = 3

#: Position of the non-negativity penalty in ``ADMMOptions.rho``.
NONNEG_INDEX = 3

INT_METHODS = ("none", "rect", "trap")


@dataclass
class ADMMOptions:
    """Options for :func:`aberration_correction.admm.admm_solve`.

    Attributes
    ----------
    rho : tuple[float, ...]
        Penalty parameters. The first three correspond to the regularization
        terms; a fourth is required when ``nonneg`` is enabled.
    norms : tuple[bool, bool, bool]
        ``True`` selects an L1 penalty (handled by an ADMM splitting
        variable), ``False`` an L2 penalty folded into the system matrix.
    nonneg : bool
        Constrain the estimated image to be non-negative.
    max_iter : int
        Maximum number of ADMM iterations.
    tol : tuple[float, float] | None
        Absolute and relative tolerances on the primal and dual residuals.
        ``None`` runs exactly ``max_iter`` iterations.
    varying_penalty : bool
        Rebalance each ``rho`` from the ratio of primal to dual residuals.
    full_spectral_gradient : bool
        Give the spectral gradient one row per band instead of one per pair
        of adjacent bands.
    int_method : str
        Quadrature used for spectral-to-colour conversion: ``"none"``,
        ``"rect"`` or ``"trap"``.
    """

    rho: tuple[float, ...] = (1.0, 1.0, 1.0, 1.0)
    norms: tuple[bool, bool, bool] = (False, False, False)
    nonneg: bool = False
    max_iter: int = 500
    tol: tuple[float, float] | None = (1e-6, 1e-4)
    varying_penalty: bool = False
    full_spectral_gradient: bool = False
    int_method: str = "none"

    def validate(self) -> None:
        """Raise :class:`ConfigurationError` if the options are inconsistent."""
        if len(self.norms) != N_PRIORS:
            raise ConfigurationError(
                f"Expected `norms` to have length {N_PRIORS} for the {N_PRIORS} prior terms."
            )
        if len(self.rho) < N_PRIORS:
            raise ConfigurationError(
                f"Expected `rho` to have length at least {N_PRIORS} for the {N_PRIORS} prior terms."
            )
        if self.nonneg and len(self.rho) <= NONNEG_INDEX:
            raise ConfigurationError(
                "A penalty parameter for the non-negativity constraint must be "
                f"provided at position {NONNEG_INDEX} of `rho` when `nonneg` is enabled."
            )
        if not all(math.isfinite(r) and r > 0 for r in self.rho):
            raise ConfigurationError(
                "The penalty parameters, `rho`, must be positive finite numbers."
            )
        if self.max_iter < 1:
            raise ConfigurationError(f"max_iter must be positive, got {self.max_iter}.")
        if self.tol is not None:
            if len(self.tol) != 2 or not all(math.isfinite(t) and t >= 0 for t in self.tol):
                raise ConfigurationError(
                    "`tol` must be None or a pair of non-negative (absolute, relative) tolerances."
                )
        if self.int_method not in INT_METHODS:
            raise ConfigurationError(
                f"int_method must be one of {INT_METHODS}, got {self.int_method!r}."
            )


@dataclass
class ReconstructionConfig:
    """Everything needed to run a tiled reconstruction besides the data."""

    weights: tuple[float, float, float] = (0.0, 0.0, 0.0)
    options: ADMMOptions = field(default_factory=ADMMOptions)
    patch_size: tuple[int, int] = (64, 64)
    padding: int = 8
    n_workers: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReconstructionConfig:
        """Build a configuration from a JSON-compatible dictionary."""
        options_data = dict(data.get("options", {}))
        for key in ("rho", "norms", "tol"):
            if options_data.get(key) is not None:
                options_data[key] = tuple(options_data[key])
        try:
            options = ADMMOptions(**options_data)
        except TypeError as exc:
            raise ConfigurationError(f"Invalid solver options: {exc}") from exc
        options.validate()

        patch_size = data.get("patch_size", (64, 64))
        if isinstance(patch_size, int):
            patch_size = (patch_size, patch_size)

        return cls(
            weights=tuple(float(w) for w in data.get("weights", (0.0, 0.0, 0.0))),
            options=options,
            patch_size=(int(patch_size[0]), int(patch_size[1])),
            padding=int(data.get("padding", 8)),
            n_workers=int(data.get("n_workers", 1)),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def load_config(filepath: str | Path) -> ReconstructionConfig:
    """Load a :class:`ReconstructionConfig` from a JSON file."""
    with open(filepath, encoding="utf-8") as f:
        data = json.load(f)
    config = ReconstructionConfig.from_dict(data)
    LOGGER.debug("Loaded configuration from %s: %s", filepath, config)
    return config


def save_config(config: ReconstructionConfig, filepath: str | Path) -> None:
    """Write a :class:`ReconstructionConfig` as JSON."""
    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)
    LOGGER.info("Configuration saved to %s.", filepath)
