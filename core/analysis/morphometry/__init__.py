"""
Two-Phase Volume Morphometry Package
====================================

Covering radius transform (CRT) of one phase of a segmented 3D volume:
every voxel receives the radius of the largest inscribed sphere, centred on
a voxel of the same phase, that covers it (Hildebrand & Ruegsegger local
thickness, expressed as a radius).

Core Modules:
    - grid: Volume geometry and input validation (isotropy, dimensions)
    - covering_radius: CRT engine, grouped-by-radius or voxelwise scatter
    - block_processor: Chunked processing with halo overlap
    - checkpoint_manager: Resumable chunked runs
    - histogram / histogram_output: Equal-width CRT histograms and export
    - porosity: Local porosity in a cubic neighborhood
    - distance_transform: Phase EDT with GPU/CPU support
    - volume_io: TIFF / NumPy / PNG-stack volumes with voxel spacing

Quick Start:
    >>> from core.analysis.morphometry import compute_phase_distance, compute_covering_radius
    >>>
    >>> labels = read_phase_model('phase_model.tif').data   # 0 = pore, 1 = solid
    >>> edt = compute_phase_distance(labels, target_phase=0)
    >>> crt = compute_covering_radius(edt, labels, target_phase=0)
    >>>
    >>> df = histogram_to_dataframe(compute_histogram(crt, n_bins=50))
    >>> save_histogram_dataframe(df, 'results/crt_histogram.csv')

Conventions:
    - Arrays are (Z, Y, X); spacing tuples are (dz, dy, dx)
    - Voxels outside the analysed phase hold WRONG_PHASE (-1.0)
    - The CRT requires isotropic voxels
"""

__version__ = "1.0.0"

from .errors import MorphometryError, ConfigurationError, VolumeIOError
from .grid import Volume, VolumeGeometry, validate_inputs
from .covering_radius import (
    WRONG_PHASE,
    compute_covering_radius,
    covering_radius_volume
)
from .distance_transform import compute_phase_distance
from .histogram import compute_histogram
from .histogram_output import (
    histogram_to_dataframe,
    save_histogram_dataframe,
    load_histogram_dataframe,
    plot_histogram
)
from .porosity import compute_local_porosity, compute_global_porosity
from .volume_io import read_volume, read_phase_model, write_volume
from .block_processor import BlockProcessor
from .checkpoint_manager import CheckpointManager

__all__ = [
    # Main API
    'compute_covering_radius',
    'covering_radius_volume',
    'compute_histogram',
    'compute_local_porosity',
    'compute_global_porosity',
    'compute_phase_distance',

    # Output
    'histogram_to_dataframe',
    'save_histogram_dataframe',
    'load_histogram_dataframe',
    'plot_histogram',

    # Volumes
    'Volume',
    'VolumeGeometry',
    'validate_inputs',
    'read_volume',
    'read_phase_model',
    'write_volume',

    # Advanced
    'BlockProcessor',
    'CheckpointManager',

    # Errors and constants
    'MorphometryError',
    'ConfigurationError',
    'VolumeIOError',
    'WRONG_PHASE',
]
