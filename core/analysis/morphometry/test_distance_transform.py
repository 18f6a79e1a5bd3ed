"""Phase distance transform helper."""

import numpy as np
import pytest

from core.analysis.morphometry.distance_transform import compute_phase_distance
from core.analysis.morphometry.errors import ConfigurationError


def generate_slab(size: int = 7, thickness: int = 3) -> np.ndarray:
    """Phase 0 slab of given thickness centred in z, phase 1 elsewhere."""
    phase = np.ones((size, size, size), dtype=np.uint8)
    start = (size - thickness) // 2
    phase[start:start + thickness] = 0
    return phase


def test_unsigned_distance_inside_phase():
    phase = generate_slab(size=7, thickness=3)

    dt = compute_phase_distance(phase, target_phase=0)

    assert dt.dtype == np.float32
    np.testing.assert_array_equal(dt[:, 3, 3], [0, 0, 1, 2, 1, 0, 0])


def test_signed_distance_outside_phase():
    phase = generate_slab(size=7, thickness=3)

    dt = compute_phase_distance(phase, target_phase=0, signed=True)

    np.testing.assert_array_equal(dt[:, 3, 3], [-2, -1, 1, 2, 1, -1, -2])


def test_distance_in_physical_units():
    phase = generate_slab(size=7, thickness=3)

    dt = compute_phase_distance(phase, target_phase=0, voxel_spacing=(0.5, 0.5, 0.5))

    assert dt.max() == pytest.approx(1.0)


def test_single_phase_has_no_boundary():
    with pytest.raises(ConfigurationError, match="no boundary"):
        compute_phase_distance(np.zeros((3, 3, 3), dtype=np.uint8), target_phase=0)
    with pytest.raises(ConfigurationError, match="no boundary"):
        compute_phase_distance(np.zeros((3, 3, 3), dtype=np.uint8), target_phase=1)


def test_rejects_non_3d():
    with pytest.raises(ConfigurationError):
        compute_phase_distance(np.zeros((3, 3), dtype=np.uint8), target_phase=0)
