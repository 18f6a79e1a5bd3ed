"""
Local Porosity
==============

Fraction of target-phase voxels in a (2r+1)^3 box around every voxel, plus
the global porosity of the whole volume.

Boundary handling: reads outside the volume replicate the nearest in-bounds
voxel (scipy.ndimage mode='nearest'), so every box holds (2r+1)^3 samples.
The box sum is separable and computed with three integer 1D passes, which
keeps the counts exact.
"""

import logging
from typing import Optional, Tuple

import numpy as np
from scipy.ndimage import correlate1d

from .config_loader import get_section
from .errors import ConfigurationError
from .grid import VALID_PHASES

logger = logging.getLogger(__name__)


def box_counts(indicator: np.ndarray, radius: int) -> np.ndarray:
    """Number of True voxels in the (2r+1)^3 box around every voxel (nearest-edge extension)."""
    counts = np.asarray(indicator, dtype=np.int64)
    weights = np.ones(2 * radius + 1, dtype=np.int64)
    for axis in range(counts.ndim):
        counts = correlate1d(counts, weights, axis=axis, mode='nearest')
    return counts


def compute_global_porosity(phase_map: np.ndarray, target_phase: int) -> float:
    """Fraction of all voxels labelled target_phase."""
    phase_map = np.asarray(phase_map)
    if phase_map.size == 0:
        return 0.0
    return float(np.count_nonzero(phase_map == target_phase)) / phase_map.size


def compute_local_porosity(
    phase_map: np.ndarray,
    target_phase: int,
    radius: Optional[int] = None
) -> Tuple[np.ndarray, float]:
    """
    Local and global porosity of one phase.

    Args:
        phase_map: Phase labels (Z, Y, X)
        target_phase: Label counted as pore space
        radius: Box half-width in voxels (Chebyshev neighborhood), >= 1
                (default from config porosity.neighborhood_radius)

    Returns:
        (local_porosity, global_porosity): float32 volume of per-voxel
        fractions in [0, 1], and the fraction over the whole volume

    Raises:
        ConfigurationError: If the phase map is not 3D or an argument is out of range

    Notes:
        Large radii are slow on large volumes; consider downsampling the
        phase model and using a correspondingly smaller radius.
    """
    phase_map = np.asarray(phase_map)
    if phase_map.ndim != 3:
        raise ConfigurationError(f"Expected 3D phase model, got shape {phase_map.shape}")
    if target_phase not in VALID_PHASES:
        raise ConfigurationError(f"Phase must be 0 or 1, got {target_phase!r}")
    if radius is None:
        radius = get_section("porosity").get("neighborhood_radius", 5)
    if isinstance(radius, bool) or int(radius) != radius or radius < 1:
        raise ConfigurationError(f"Neighborhood size must be greater than zero, got {radius!r}")
    radius = int(radius)

    logger.info("Computing porosity for phase label %d, neighborhood radius %d", target_phase, radius)

    indicator = phase_map == target_phase
    n_box = (2 * radius + 1) ** 3
    local = (box_counts(indicator, radius) / float(n_box)).astype(np.float32)

    global_porosity = compute_global_porosity(phase_map, target_phase)
    logger.info("Global porosity value is %.4f", global_porosity)

    return local, global_porosity
