"""
Grid Model and Geometry Validation
==================================

In-memory representation of the two input volumes (distance transform and
phase model) and the checks that must pass before any transform runs.

Conventions:
    - Arrays are indexed (Z, Y, X), like every other module in this package
    - Spacing and origin tuples follow the same order: (dz, dy, dx)
    - Input volumes are wrapped as read-only views; the transforms never
      write into them
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Relative tolerance for comparing per-axis spacings. TIFF stores resolution
# as a rational, so 1/x round trips are not always bit-exact.
SPACING_RTOL = 1e-6

# Labels of a two-phase model
VALID_PHASES = (0, 1)


@dataclass(frozen=True)
class VolumeGeometry:
    """Voxel-count dimensions, per-axis spacing and origin of a 3D volume."""

    shape: Tuple[int, int, int]
    spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)

    def __post_init__(self):
        if len(self.shape) != 3:
            raise ConfigurationError(f"Expected 3D geometry, got shape {tuple(self.shape)}")
        if len(self.spacing) != 3:
            raise ConfigurationError(
                f"voxel_spacing must have 3 elements, got {len(self.spacing)}"
            )
        if any(not (s > 0) for s in self.spacing):
            raise ConfigurationError(f"Voxel spacing must be positive, got {tuple(self.spacing)}")
        object.__setattr__(self, "shape", tuple(int(n) for n in self.shape))
        object.__setattr__(self, "spacing", tuple(float(s) for s in self.spacing))
        object.__setattr__(self, "origin", tuple(float(o) for o in self.origin))

    @property
    def n_voxels(self) -> int:
        return int(np.prod(self.shape))

    @property
    def is_isotropic(self) -> bool:
        s0 = self.spacing[0]
        return all(math.isclose(s, s0, rel_tol=SPACING_RTOL) for s in self.spacing[1:])

    @property
    def isotropic_spacing(self) -> float:
        """The single spacing value shared by all three axes.

        Raises:
            ConfigurationError: If the spacings differ between axes.
        """
        if not self.is_isotropic:
            raise ConfigurationError(
                "This transform requires isotropic voxels (spacing in each dimension "
                f"should be equal), got spacing {self.spacing}"
            )
        return self.spacing[0]

    def contains(self, index: Sequence[int]) -> bool:
        """True if the integer index lies inside the grid."""
        if len(index) != 3:
            return False
        return all(0 <= int(i) < n for i, n in zip(index, self.shape))


@dataclass
class Volume:
    """A 3D array together with its geometry. The array is held as a read-only view."""

    data: np.ndarray
    geometry: Optional[VolumeGeometry] = None

    def __post_init__(self):
        data = np.asarray(self.data)
        if data.ndim != 3:
            raise ConfigurationError(f"Expected 3D volume, got shape {data.shape}")
        if self.geometry is None:
            self.geometry = VolumeGeometry(shape=data.shape)
        elif tuple(self.geometry.shape) != data.shape:
            raise ConfigurationError(
                f"Geometry shape {self.geometry.shape} does not match data shape {data.shape}"
            )
        view = data.view()
        view.flags.writeable = False
        self.data = view

    @classmethod
    def from_array(
        cls,
        data: np.ndarray,
        voxel_spacing: Sequence[float] = (1.0, 1.0, 1.0),
        origin: Sequence[float] = (0.0, 0.0, 0.0),
    ) -> "Volume":
        data = np.asarray(data)
        return cls(data, VolumeGeometry(data.shape, tuple(voxel_spacing), tuple(origin)))

    @property
    def shape(self) -> Tuple[int, int, int]:
        return self.geometry.shape

    @property
    def spacing(self) -> Tuple[float, float, float]:
        return self.geometry.spacing

    def contains(self, index: Sequence[int]) -> bool:
        return self.geometry.contains(index)

    def __getitem__(self, index):
        return self.data[index]


def validate_inputs(distance: Volume, phase: Volume) -> float:
    """
    Check that a distance transform and a phase model can be processed together.

    Args:
        distance: Distance transform volume
        phase: Phase label volume

    Returns:
        The isotropic voxel spacing shared by all three axes.

    Raises:
        ConfigurationError: If the volumes differ in size along any axis or the
            distance transform spacing is not isotropic.
    """
    for axis in range(3):
        if distance.shape[axis] != phase.shape[axis]:
            raise ConfigurationError(
                f"Input images are not the same size: distance transform {distance.shape} "
                f"vs phase model {phase.shape}"
            )

    spacing = distance.geometry.isotropic_spacing

    if not all(
        math.isclose(a, b, rel_tol=SPACING_RTOL)
        for a, b in zip(distance.spacing, phase.spacing)
    ):
        logger.warning(
            "Phase model spacing %s differs from distance transform spacing %s; "
            "using the distance transform geometry",
            phase.spacing,
            distance.spacing,
        )

    logger.info(
        "Using voxel spacing %g x %g x %g", *distance.spacing
    )
    return spacing
