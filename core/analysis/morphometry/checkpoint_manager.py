"""
Checkpoint Manager for Chunked Covering Radius Runs
===================================================

Persists the partially assembled output after every block so that a long
chunked run can resume after an interruption.

Files per run (in checkpoint_dir):
    - <run_id>_state.pkl.gz         output volume + last completed block
    - <run_id>_state_backup.pkl.gz  previous state (auto_backup)
    - <run_id>_metadata.json        progress, timestamps, caller metadata
"""

import gzip
import json
import logging
import pickle
import warnings
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .config_loader import load_config
from .errors import VolumeIOError

logger = logging.getLogger(__name__)

_REQUIRED_KEYS = frozenset({'output', 'last_block_idx', 'total_blocks'})


class CheckpointManager:
    """
    Saves and restores block-processing state.

    Attributes:
        checkpoint_dir: Directory holding the checkpoint files
        run_id: Identifier of this run
        compress: gzip the pickled state
        auto_backup: Keep the previous state as a backup
    """

    def __init__(
        self,
        checkpoint_dir: Optional[str] = None,
        run_id: Optional[str] = None,
        compress: Optional[bool] = None,
        auto_backup: Optional[bool] = None
    ):
        if checkpoint_dir is None or compress is None or auto_backup is None:
            config = load_config()
            crt_config = config.get("covering_radius") or {}
            checkpoint_dir = checkpoint_dir or (config.get("paths") or {}).get("checkpoint_dir")
            if compress is None:
                compress = crt_config.get("checkpoint_compression", True)
            if auto_backup is None:
                auto_backup = crt_config.get("checkpoint_auto_backup", True)

        if checkpoint_dir is None:
            raise ValueError(
                "checkpoint_dir must be provided via config or constructor"
            )

        self.checkpoint_dir = Path(checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)

        if run_id is None:
            run_id = f"crt_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        self.run_id = run_id

        self.compress = bool(compress)
        self.auto_backup = bool(auto_backup)

        suffix = ".pkl.gz" if self.compress else ".pkl"
        self.state_file = self.checkpoint_dir / f"{run_id}_state{suffix}"
        self.backup_file = self.checkpoint_dir / f"{run_id}_state_backup{suffix}"
        self.metadata_file = self.checkpoint_dir / f"{run_id}_metadata.json"

        logger.info("Checkpoint manager initialized: %s (run %s)", self.checkpoint_dir, run_id)

    def _open(self, path: Path, mode: str):
        if self.compress:
            return gzip.open(path, mode)
        return open(path, mode)

    def _read_state(self, path: Path) -> Dict[str, Any]:
        with self._open(path, 'rb') as f:
            state = pickle.load(f)
        missing = _REQUIRED_KEYS - set(state)
        if missing:
            raise ValueError(f"Corrupted checkpoint: missing keys {sorted(missing)}")
        return state

    def save_state(
        self,
        state: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Save processing state.

        Args:
            state: Must contain 'output' (np.ndarray), 'last_block_idx' (int)
                   and 'total_blocks' (int)
            metadata: Optional extra metadata stored in the JSON sidecar

        Raises:
            ValueError: If required keys are missing
            VolumeIOError: If the state cannot be written
        """
        if not _REQUIRED_KEYS.issubset(state.keys()):
            raise ValueError(
                f"State must contain keys: {sorted(_REQUIRED_KEYS)}, got {sorted(state.keys())}"
            )

        if self.auto_backup and self.state_file.exists():
            try:
                self.state_file.replace(self.backup_file)
            except OSError as e:
                warnings.warn(f"Failed to create backup: {e}", UserWarning)

        try:
            with self._open(self.state_file, 'wb') as f:
                pickle.dump(state, f, protocol=pickle.HIGHEST_PROTOCOL)
        except OSError as e:
            raise VolumeIOError(f"Failed to save checkpoint: {e}") from e

        metadata = dict(metadata or {})
        metadata.update({
            'run_id': self.run_id,
            'last_updated': datetime.now().isoformat(),
            'last_block_idx': state['last_block_idx'],
            'total_blocks': state['total_blocks'],
            'progress_pct': 100 * (state['last_block_idx'] + 1) / state['total_blocks']
        })

        try:
            with open(self.metadata_file, 'w') as f:
                json.dump(metadata, f, indent=2)
        except OSError as e:
            warnings.warn(f"Failed to save metadata: {e}", UserWarning)

        logger.debug(
            "Checkpoint saved: block %d/%d (%.1f%%)",
            state['last_block_idx'] + 1, state['total_blocks'], metadata['progress_pct']
        )

    def load_state(self) -> Optional[Dict[str, Any]]:
        """
        Load the saved state, falling back to the backup if the primary is unreadable.

        Returns:
            State dictionary, or None if no checkpoint exists

        Raises:
            VolumeIOError: If a checkpoint exists but neither it nor its backup loads
        """
        if not self.state_file.exists():
            logger.info("No checkpoint found, starting from scratch.")
            return None

        try:
            state = self._read_state(self.state_file)
        except Exception as e:
            if not self.backup_file.exists():
                raise VolumeIOError(f"Failed to load checkpoint: {e}") from e
            warnings.warn(f"Primary checkpoint corrupted ({e}), trying backup", UserWarning)
            try:
                state = self._read_state(self.backup_file)
            except Exception as e2:
                raise VolumeIOError(
                    f"Both primary and backup checkpoints failed: {e}, {e2}"
                ) from e2

        logger.info("Checkpoint loaded: block %d/%d", state['last_block_idx'] + 1, state['total_blocks'])
        return state

    def load_metadata(self) -> Optional[Dict[str, Any]]:
        if not self.metadata_file.exists():
            return None
        try:
            with open(self.metadata_file, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            warnings.warn(f"Failed to load metadata: {e}", UserWarning)
            return None

    def clear_checkpoints(self) -> None:
        """Delete all checkpoint files of this run (after a successful run)."""
        for file in (self.state_file, self.metadata_file, self.backup_file):
            if file.exists():
                try:
                    file.unlink()
                except OSError as e:
                    warnings.warn(f"Failed to delete {file.name}: {e}", UserWarning)
