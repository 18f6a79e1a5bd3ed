"""
Covering Radius Histogram
=========================

Bins the covering radii of the analysed phase into equal-width bins.

Binning rules:
    - Only non-sentinel voxels (value >= 0) are counted
    - Range is [0, max]; the minimum is assumed to be zero
    - Bins are half-open [a, b) except the last, which is closed at max
      (its upper edge is max + epsilon to absorb rounding)
    - max == 0: bin width is 0 and every value lands in bin 0
"""

import logging
import warnings
from typing import Any, Dict, Optional

import numpy as np

from .config_loader import get_section
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Closes the last bin so that the maximum value falls inside it
LAST_BIN_EPSILON = 1e-5


def collect_phase_values(covering_radius_map: np.ndarray) -> np.ndarray:
    """Covering radii of the analysed phase (sentinel voxels dropped), flattened."""
    values = np.asarray(covering_radius_map, dtype=np.float32).ravel()
    return values[values >= 0]


def compute_histogram(
    covering_radius_map: np.ndarray,
    n_bins: Optional[int] = None
) -> Dict[str, Any]:
    """
    Histogram of a covering radius transform.

    Args:
        covering_radius_map: CRT volume; negative values are the WRONG_PHASE sentinel
        n_bins: Number of bins (default from config)

    Returns:
        Dictionary with:
            - 'bin_index': 0..n_bins-1
            - 'bin_min', 'bin_max': bin edges (last bin_max = max + epsilon)
            - 'counts': voxels per bin
            - 'fractions': counts / total phase voxels
            - 'total_voxels': number of phase voxels binned
            - 'max_value': largest covering radius
            - 'bin_width': common bin width (0 when max == 0)

    Raises:
        ConfigurationError: If n_bins < 1

    Example:
        >>> hist = compute_histogram(crt, n_bins=20)
        >>> hist['fractions'].sum()
        1.0
    """
    hist_config = get_section("histogram")
    if n_bins is None:
        n_bins = hist_config.get("n_bins", 50)
    epsilon = float(hist_config.get("last_bin_epsilon", LAST_BIN_EPSILON))
    if isinstance(n_bins, bool) or int(n_bins) != n_bins or n_bins < 1:
        raise ConfigurationError(f"Number of bins must be a positive integer, got {n_bins!r}")
    n_bins = int(n_bins)

    values = collect_phase_values(covering_radius_map)
    total = int(values.size)
    max_value = float(values.max()) if total else 0.0

    bin_width = max_value / n_bins
    bin_index = np.arange(n_bins)
    bin_min = bin_index * bin_width
    bin_max = (bin_index + 1) * bin_width
    bin_max[-1] = max_value + epsilon

    if bin_width > 0:
        idx = np.floor(values.astype(np.float64) / bin_width).astype(np.int64)
        # max itself (and rounding just below it) closes into the last bin
        idx = np.clip(idx, 0, n_bins - 1)
    else:
        idx = np.zeros(total, dtype=np.int64)

    counts = np.bincount(idx, minlength=n_bins)[:n_bins]

    if total:
        fractions = counts / float(total)
    else:
        warnings.warn("No phase voxels found in covering radius map", UserWarning)
        fractions = np.zeros(n_bins, dtype=np.float64)

    logger.info(
        "Histogram: %d voxels, %d bins, max radius %.3f", total, n_bins, max_value
    )

    return {
        'bin_index': bin_index,
        'bin_min': bin_min,
        'bin_max': bin_max,
        'counts': counts,
        'fractions': fractions,
        'total_voxels': total,
        'max_value': max_value,
        'bin_width': bin_width
    }
