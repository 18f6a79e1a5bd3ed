"""
Volume I/O
==========

Reads and writes 3D volumes together with their voxel geometry.

Supported formats:
    - .tif / .tiff: ImageJ hyperstack (tifffile). X/Y spacing from the
      resolution tags, Z spacing from the ImageJ 'spacing' entry.
    - .npz: arrays 'data', 'spacing' and 'origin'
    - .npy: bare array, spacing taken from the config
    - directory of PNG slices (Pillow): read-only, spacing from the config

Writes are atomic: the volume goes to a hidden partial file next to the
target, which replaces the target only once it is complete.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional, Sequence

import numpy as np
import tifffile
from PIL import Image

from .config_loader import get_section
from .errors import ConfigurationError, VolumeIOError
from .grid import Volume, VolumeGeometry

logger = logging.getLogger(__name__)

DEFAULT_PHASE_LABEL_MAP = {0: 0, 1: 1, 255: 1}

TIFF_SUFFIXES = (".tif", ".tiff")
WRITABLE_SUFFIXES = TIFF_SUFFIXES + (".npz", ".npy")
_IMAGEJ_DTYPES = (np.uint8, np.uint16, np.float32)


def partial_path(path: Path) -> Path:
    """Hidden sibling that a file is written to before being moved into place."""
    return path.with_name(f".{path.stem}.partial{path.suffix}")


def _imagej_compatible(data: np.ndarray) -> np.ndarray:
    """Cast to a dtype an ImageJ hyperstack can hold (uint8, uint16 or float32)."""
    if data.dtype in _IMAGEJ_DTYPES:
        return data
    if data.dtype.kind in "biu" and data.size:
        lo, hi = int(data.min()), int(data.max())
        if lo >= 0 and hi <= np.iinfo(np.uint8).max:
            return data.astype(np.uint8)
        if lo >= 0 and hi <= np.iinfo(np.uint16).max:
            return data.astype(np.uint16)
    return data.astype(np.float32)


def _resolution_to_spacing(tag) -> Optional[float]:
    if tag is None:
        return None
    value = tag.value
    if isinstance(value, tuple):
        numerator, denominator = value[0], value[1]
    else:
        numerator, denominator = value, 1
    if not numerator:
        return None
    return float(denominator) / float(numerator)


def _read_tiff(path: Path, default_spacing: Sequence[float]) -> Volume:
    with tifffile.TiffFile(str(path)) as tif:
        data = tif.asarray()
        tags = tif.pages[0].tags
        imagej = tif.imagej_metadata or {}
        dx = _resolution_to_spacing(tags.get("XResolution"))
        dy = _resolution_to_spacing(tags.get("YResolution"))

    if data.ndim == 2:
        data = data[np.newaxis]

    if dx is None or dy is None:
        dz_default, dy, dx = (float(s) for s in default_spacing)
        dz = float(imagej.get("spacing", dz_default))
    else:
        dz = float(imagej.get("spacing", dx))

    return Volume.from_array(data, voxel_spacing=(dz, dy, dx))


def _read_npz(path: Path, default_spacing: Sequence[float]) -> Volume:
    with np.load(str(path)) as archive:
        if "data" not in archive:
            raise VolumeIOError(f"{path} has no 'data' array")
        data = archive["data"]
        spacing = tuple(archive["spacing"]) if "spacing" in archive else tuple(default_spacing)
        origin = tuple(archive["origin"]) if "origin" in archive else (0.0, 0.0, 0.0)
    return Volume.from_array(data, voxel_spacing=spacing, origin=origin)


def _read_png_stack(folder: Path, default_spacing: Sequence[float]) -> Volume:
    image_files = sorted(folder.glob("*.png"))
    if not image_files:
        raise VolumeIOError(f"No PNG files found in {folder}")

    first_img = np.array(Image.open(image_files[0]))
    height, width = first_img.shape[:2]
    volume = np.zeros((len(image_files), height, width), dtype=first_img.dtype)
    for i, img_path in enumerate(image_files):
        img = np.array(Image.open(img_path))
        if img.ndim == 3:
            img = img[:, :, 0]
        if img.shape != (height, width):
            raise VolumeIOError(
                f"Slice {img_path.name} has shape {img.shape}, expected {(height, width)}"
            )
        volume[i] = img

    logger.info("Loaded %d slices from %s -> shape %s", len(image_files), folder, volume.shape)
    return Volume.from_array(volume, voxel_spacing=default_spacing)


def read_volume(path: str, default_spacing: Optional[Sequence[float]] = None) -> Volume:
    """
    Read a 3D volume and its geometry.

    Args:
        path: .tif/.tiff, .npz, .npy file or a directory of PNG slices
        default_spacing: (dz, dy, dx) for formats without stored spacing
                         (default from config image_params.voxel_spacing)

    Returns:
        Volume with a read-only data view

    Raises:
        VolumeIOError: Missing or unreadable file, unsupported format
        ConfigurationError: The file does not hold a 3D volume
    """
    if default_spacing is None:
        default_spacing = tuple(get_section("image_params").get("voxel_spacing", (1.0, 1.0, 1.0)))
    path = Path(path)

    if not path.exists():
        raise VolumeIOError(f"Couldn't read {path}: no such file or directory")

    suffix = path.suffix.lower()
    try:
        if path.is_dir():
            volume = _read_png_stack(path, default_spacing)
        elif suffix in TIFF_SUFFIXES:
            volume = _read_tiff(path, default_spacing)
        elif suffix == ".npz":
            volume = _read_npz(path, default_spacing)
        elif suffix == ".npy":
            volume = Volume.from_array(np.load(str(path)), voxel_spacing=default_spacing)
        else:
            raise VolumeIOError(f"Unsupported volume format '{path.suffix}' ({path})")
    except (VolumeIOError, ConfigurationError):
        raise
    except (OSError, ValueError, tifffile.TiffFileError) as e:
        raise VolumeIOError(f"Couldn't read {path}: {e}") from e

    logger.info("Read %s: shape %s, spacing %s", path.name, volume.shape, volume.spacing)
    return volume


def normalize_phase_labels(
    labels: np.ndarray,
    label_map: Optional[Dict[int, int]] = None
) -> np.ndarray:
    """
    Map raw mask values onto the phase labels 0 and 1.

    Raises:
        ConfigurationError: If the volume contains values missing from the map
    """
    if label_map is None:
        label_map = get_section("image_params").get("phase_label_map") or DEFAULT_PHASE_LABEL_MAP
    label_map = {int(raw): int(label) for raw, label in label_map.items()}

    unique = np.unique(labels)
    invalid = [v for v in unique.tolist() if v not in label_map]
    if invalid:
        raise ConfigurationError(
            f"Unexpected phase model values found: {sorted(invalid)[:10]} "
            f"(expected a subset of {sorted(label_map)})"
        )

    normalized = np.zeros(labels.shape, dtype=np.uint8)
    for raw_value, label in label_map.items():
        normalized[labels == raw_value] = label
    return normalized


def read_phase_model(
    path: str,
    default_spacing: Optional[Sequence[float]] = None,
    label_map: Optional[Dict[int, int]] = None
) -> Volume:
    """Read a phase model and normalise its labels to 0/1 (e.g. 0/255 masks)."""
    volume = read_volume(path, default_spacing)
    labels = normalize_phase_labels(volume.data, label_map)
    return Volume(labels, volume.geometry)


def write_volume(path: str, volume: Volume) -> Path:
    """
    Atomically write a volume and its geometry.

    Args:
        path: Target .tif/.tiff, .npz or .npy file
        volume: Volume to write

    Returns:
        Path of the written file

    Raises:
        VolumeIOError: Unsupported format or the file cannot be written
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix not in WRITABLE_SUFFIXES:
        raise VolumeIOError(
            f"Unsupported output format '{path.suffix}' ({path}). "
            f"Supported: {', '.join(WRITABLE_SUFFIXES)}"
        )

    geometry: VolumeGeometry = volume.geometry
    data = np.ascontiguousarray(volume.data)
    partial = partial_path(path)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if suffix in TIFF_SUFFIXES:
            dz, dy, dx = geometry.spacing
            tifffile.imwrite(
                str(partial),
                _imagej_compatible(data),
                imagej=True,
                resolution=(1.0 / dx, 1.0 / dy),
                metadata={"spacing": dz, "axes": "ZYX"}
            )
        elif suffix == ".npz":
            with open(partial, "wb") as f:
                np.savez_compressed(
                    f,
                    data=data,
                    spacing=np.asarray(geometry.spacing, dtype=np.float64),
                    origin=np.asarray(geometry.origin, dtype=np.float64)
                )
        else:
            with open(partial, "wb") as f:
                np.save(f, data)
        os.replace(partial, path)
    except (OSError, ValueError) as e:
        if partial.exists():
            partial.unlink()
        raise VolumeIOError(f"Couldn't write {path}: {e}") from e

    logger.info("Wrote %s: shape %s, spacing %s", path, geometry.shape, geometry.spacing)
    return path
