"""
Block Processor with Halo Overlap
==================================

Tiles the output volume into write-disjoint core blocks for the covering
radius transform.

Core Algorithm:
    1. Extract padded blocks of every input: vol[z0-H:z1+H, y0-H:y1+H, x0-H:x1+H]
    2. Run the transform on the padded blocks
    3. Crop halo: result[H:-H, H:-H, H:-H] (clamped at the volume edges)
    4. Insert the cropped result into the output volume

Critical: every ball that can reach a core voxel must have its center inside
the padded block, so H must be >= ceil(max |DT| / spacing). Core blocks never
overlap, so blocks can be processed in any order without write conflicts.
"""

import logging
import warnings
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

BlockCoords = Tuple[int, int, int, int, int, int]


class BlockProcessor:
    """
    Processes 3D volumes in halo-padded chunks.

    Attributes:
        volume_shape: Volume dimensions (Z, Y, X)
        chunk_size: Core block size before padding (Z, Y, X)
        halo_width: Padding on each side of a core block, in voxels
        blocks: Core block coordinates [(z0, z1, y0, y1, x0, x1), ...]
    """

    def __init__(
        self,
        volume_shape: Tuple[int, int, int],
        chunk_size: Tuple[int, int, int] = (128, 128, 128),
        halo_width: int = 0
    ):
        """
        Args:
            volume_shape: Full volume dimensions (Z, Y, X)
            chunk_size: Target core block size (before padding)
            halo_width: Padding width on each side, >= the largest ball reach

        Raises:
            ConfigurationError: If chunk_size or halo_width is invalid
        """
        self.volume_shape = tuple(int(n) for n in volume_shape)
        self.chunk_size = tuple(int(c) for c in chunk_size)
        self.halo_width = int(halo_width)

        if len(self.volume_shape) != 3 or len(self.chunk_size) != 3:
            raise ConfigurationError(
                f"Expected 3D shapes, got volume {self.volume_shape} and chunk {self.chunk_size}"
            )
        if any(cs < 1 for cs in self.chunk_size):
            raise ConfigurationError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.halo_width < 0:
            raise ConfigurationError(f"halo_width must be >= 0, got {self.halo_width}")

        if any(self.halo_width > cs for cs in self.chunk_size):
            warnings.warn(
                f"halo_width={self.halo_width} exceeds chunk_size {self.chunk_size}; "
                f"most of each padded block is recomputed halo",
                UserWarning
            )

        self.blocks = self._compute_block_grid()

    def _compute_block_grid(self) -> list:
        Z, Y, X = self.volume_shape
        cz, cy, cx = self.chunk_size

        blocks = []
        for z0 in range(0, Z, cz):
            z1 = min(z0 + cz, Z)
            for y0 in range(0, Y, cy):
                y1 = min(y0 + cy, Y)
                for x0 in range(0, X, cx):
                    x1 = min(x0 + cx, X)
                    blocks.append((z0, z1, y0, y1, x0, x1))

        return blocks

    def get_padded_slice(
        self,
        block_coords: BlockCoords
    ) -> Tuple[slice, slice, slice, BlockCoords]:
        """
        Slices of the padded block, clamped to the volume boundaries.

        Returns:
            (z_slice, y_slice, x_slice, actual_padded_coords)
        """
        z0, z1, y0, y1, x0, x1 = block_coords
        H = self.halo_width
        Z, Y, X = self.volume_shape

        z0_pad = max(0, z0 - H)
        z1_pad = min(Z, z1 + H)
        y0_pad = max(0, y0 - H)
        y1_pad = min(Y, y1 + H)
        x0_pad = max(0, x0 - H)
        x1_pad = min(X, x1 + H)

        return (
            slice(z0_pad, z1_pad),
            slice(y0_pad, y1_pad),
            slice(x0_pad, x1_pad),
            (z0_pad, z1_pad, y0_pad, y1_pad, x0_pad, x1_pad)
        )

    def crop_halo(
        self,
        padded_result: np.ndarray,
        block_coords: BlockCoords,
        actual_padded_coords: BlockCoords
    ) -> np.ndarray:
        """Crop the halo from a processed padded block, leaving the core region."""
        z0, z1, y0, y1, x0, x1 = block_coords
        z0_pad, _, y0_pad, _, x0_pad, _ = actual_padded_coords

        z_start = z0 - z0_pad
        y_start = y0 - y0_pad
        x_start = x0 - x0_pad

        return padded_result[
            z_start:z_start + (z1 - z0),
            y_start:y_start + (y1 - y0),
            x_start:x_start + (x1 - x0)
        ]

    def process_volume(
        self,
        volumes: Sequence[np.ndarray],
        process_func: Callable[..., np.ndarray],
        checkpoint_manager: Optional[object] = None,
        resume: bool = False,
        show_progress: bool = True,
        fingerprint: Optional[str] = None
    ) -> np.ndarray:
        """
        Run process_func on every padded block and assemble the cropped results.

        Args:
            volumes: Input volumes, all of shape volume_shape. The padded block
                     of each one is passed to process_func positionally.
            process_func: func(*padded_blocks) -> processed padded block
            checkpoint_manager: Optional CheckpointManager, saved after each block
            resume: If True, continue after the last checkpointed block
            show_progress: Display a tqdm progress bar over blocks
            fingerprint: Identifies the inputs and settings of this run. It is
                         stored with every checkpoint and must match on resume.

        Returns:
            float32 volume of shape volume_shape

        Raises:
            ConfigurationError: If the checkpoint to resume from was written
                for different inputs or settings

        Example:
            >>> processor = BlockProcessor(dt.shape, (64, 64, 64), halo_width=12)
            >>> crt = processor.process_volume((dt, in_phase), crt_func)
        """
        for volume in volumes:
            if volume.shape != self.volume_shape:
                raise ConfigurationError(
                    f"Volume shape {volume.shape} doesn't match "
                    f"processor shape {self.volume_shape}"
                )

        output = np.zeros(self.volume_shape, dtype=np.float32)

        start_idx = 0
        if resume and checkpoint_manager is not None:
            state = checkpoint_manager.load_state()
            if state is not None:
                if state.get('fingerprint') != fingerprint or state['output'].shape != self.volume_shape:
                    raise ConfigurationError(
                        f"Checkpoint of run '{checkpoint_manager.run_id}' was written for "
                        "different inputs or settings; clear it or use another run_id"
                    )
                output = state['output']
                start_idx = state['last_block_idx'] + 1
                logger.info("Resuming from block %d/%d", start_idx, len(self.blocks))

        total_blocks = len(self.blocks)
        logger.info(
            "Processing %d blocks (chunk %s, halo %d)", total_blocks, self.chunk_size, self.halo_width
        )
        remaining = list(enumerate(self.blocks))[start_idx:]
        for idx, block_coords in tqdm(
            remaining, desc="Blocks", unit="block", disable=not show_progress
        ):
            z_slice, y_slice, x_slice, actual_coords = self.get_padded_slice(block_coords)
            padded_blocks = [volume[z_slice, y_slice, x_slice] for volume in volumes]

            try:
                processed_padded = process_func(*padded_blocks)
            except ConfigurationError:
                raise
            except Exception as e:
                raise RuntimeError(
                    f"Processing failed for block {idx}: {e}"
                ) from e

            cropped_result = self.crop_halo(processed_padded, block_coords, actual_coords)

            z0, z1, y0, y1, x0, x1 = block_coords
            output[z0:z1, y0:y1, x0:x1] = cropped_result

            if checkpoint_manager is not None:
                checkpoint_manager.save_state({
                    'output': output,
                    'last_block_idx': idx,
                    'total_blocks': total_blocks,
                    'fingerprint': fingerprint
                }, metadata={'fingerprint': fingerprint})

        return output

    def get_memory_estimate(self, dtype=np.float32) -> Dict[str, float]:
        """
        Rough memory requirements in MB.

        Returns:
            input_block_mb (distance + phase mask), output_block_mb,
            total_per_block_mb, full_output_mb
        """
        H = self.halo_width
        cz, cy, cx = self.chunk_size

        padded_shape = (cz + 2 * H, cy + 2 * H, cx + 2 * H)
        bytes_per_voxel = np.dtype(dtype).itemsize
        n_padded = float(np.prod(padded_shape))

        input_block_mb = n_padded * (bytes_per_voxel + 1) / (1024 ** 2)
        output_block_mb = n_padded * bytes_per_voxel / (1024 ** 2)
        full_output_mb = float(np.prod(self.volume_shape)) * bytes_per_voxel / (1024 ** 2)

        return {
            'input_block_mb': input_block_mb,
            'output_block_mb': output_block_mb,
            'total_per_block_mb': input_block_mb + output_block_mb,
            'full_output_mb': full_output_mb
        }
