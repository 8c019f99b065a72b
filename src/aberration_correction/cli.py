"""Command-line entry point for patch-wise image reconstruction.

1. Load the captured image (``.npy``, or an image file read with Pillow and
   normalised to [0, 1]).
2. Load the sensor calibration (``.npz`` with ``sensitivity``, ``bands`` and an
   optional ``pattern``) and, optionally, a sparse dispersion matrix.
3. Run the tiled ADMM reconstruction with settings from a JSON config.
4. Save the latent image as ``.npy`` and, optionally, a PNG preview.

Usage::

    aberration-correct --captured raw.npy --calibration sensor.npz \\
        --config admm.json --output latent.npy --preview latent.png
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray
from PIL import Image

from .config import ReconstructionConfig, load_config
from .patches.scheduler import solve_patches

LOGGER = logging.getLogger(__name__)


def _load_captured(path: str | Path) -> NDArray[np.float64]:
    """Load a captured image as float64 in [0, 1] (``.npy`` is used as-is)."""
    path = Path(path)
    if path.suffix.lower() == ".npy":
        return np.load(path).astype(np.float64)

    pil_img = Image.open(path)
    img = np.asarray(pil_img)
    if np.issubdtype(img.dtype, np.integer):
        max_value = 65535.0 if img.max() > 255 else 255.0
        return img.astype(np.float64) / max_value
    return img.astype(np.float64)


def _load_calibration(
    path: str | Path,
) -> tuple[NDArray[np.float64], NDArray[np.float64] | None, str | None]:
    """Load ``(sensitivity, bands, pattern)`` from a calibration ``.npz`` file."""
    with np.load(path, allow_pickle=False) as data:
        sensitivity = np.atleast_2d(data["sensitivity"]).astype(np.float64)
        bands = data["bands"].astype(np.float64).ravel() if "bands" in data else None
        pattern = str(data["pattern"]) if "pattern" in data else None
    return sensitivity, bands, pattern


def _save_preview(image: NDArray[np.float64], path: Path) -> None:
    """Clip negatives, normalise, apply gamma correction (^0.5) and save as PNG."""
    if image.shape[2] not in (1, 3):
        image = np.mean(image, axis=2, keepdims=True)
    img_out = np.clip(np.nan_to_num(image), 0.0, None)
    peak = img_out.max()
    if peak > 0:
        img_out = img_out / peak
    img_out = img_out ** 0.5
    img_8 = (np.clip(img_out, 0.0, 1.0) * 255).astype(np.uint8)
    if img_8.shape[2] == 1:
        pil_img = Image.fromarray(img_8[:, :, 0])
    else:
        pil_img = Image.fromarray(img_8)
    pil_img.save(str(path))


def main(argv: list[str] | None = None) -> None:
    """Run the reconstruction pipeline from the command line."""
    parser = argparse.ArgumentParser(
        description="Demosaicing and dispersion correction by patch-wise ADMM",
    )
    parser.add_argument("--captured", required=True, help="Captured image (.npy, .png, .tif).")
    parser.add_argument(
        "--calibration",
        required=True,
        help="Calibration .npz with 'sensitivity', 'bands' and optional 'pattern'.",
    )
    parser.add_argument("--dispersion", help="Sparse dispersion matrix (.npz, scipy.sparse).")
    parser.add_argument("--config", help="JSON reconstruction config. Default: built-in.")
    parser.add_argument(
        "--latent-shape",
        type=int,
        nargs=2,
        metavar=("HEIGHT", "WIDTH"),
        help="Latent image size. Default: the captured image size.",
    )
    parser.add_argument("--workers", type=int, help="Override the number of worker threads.")
    parser.add_argument("--output", required=True, help="Output latent image (.npy).")
    parser.add_argument("--preview", help="Optional PNG preview of the latent image.")
    parser.add_argument(
        "--dispersion-out",
        help="Save the dispersion matrix restricted to the solved patches (.npz).",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)
    args = parser.parse_args(argv)

    level = logging.WARNING - 10 * min(args.verbose, 2)
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    config = load_config(args.config) if args.config else ReconstructionConfig()
    if args.workers is not None:
        config.n_workers = args.workers

    captured = _load_captured(args.captured)
    sensitivity, bands, pattern = _load_calibration(args.calibration)
    dispersion = sp.load_npz(args.dispersion) if args.dispersion else None
    latent_shape = (
        tuple(args.latent_shape) if args.latent_shape else (captured.shape[0], captured.shape[1])
    )

    print(
        f"Reconstructing {captured.shape} -> {latent_shape} x {sensitivity.shape[1]} bands "
        f"with weights {config.weights}"
    )

    result = solve_patches(
        captured,
        latent_shape,
        sensitivity,
        config.weights,
        config.options,
        patch_size=config.patch_size,
        padding=config.padding,
        bands=bands,
        pattern=pattern,
        dispersion=dispersion,
        n_workers=config.n_workers,
        return_dispersion=args.dispersion_out is not None,
    )

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    np.save(output, result.image)
    if args.preview:
        _save_preview(result.image, Path(args.preview))
    if args.dispersion_out:
        if result.dispersion is None:
            LOGGER.warning("No dispersion model was given; nothing to save.")
        else:
            sp.save_npz(args.dispersion_out, result.dispersion)

    n_converged = sum(patch.result.converged for patch in result.patches)
    print(f"Done: {n_converged}/{len(result.patches)} patches converged. Saved to {output}")


if __name__ == "__main__":
    main()
