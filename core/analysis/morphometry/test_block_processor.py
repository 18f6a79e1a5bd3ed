"""Halo block tiling and checkpoint persistence."""

import gzip

import numpy as np
import pytest

from core.analysis.morphometry.block_processor import BlockProcessor
from core.analysis.morphometry.checkpoint_manager import CheckpointManager
from core.analysis.morphometry.errors import ConfigurationError, VolumeIOError


def test_block_grid_covers_volume_once():
    processor = BlockProcessor((10, 7, 5), chunk_size=(4, 4, 4), halo_width=0)

    coverage = np.zeros((10, 7, 5), dtype=np.int32)
    for z0, z1, y0, y1, x0, x1 in processor.blocks:
        coverage[z0:z1, y0:y1, x0:x1] += 1

    assert len(processor.blocks) == 3 * 2 * 2
    assert np.all(coverage == 1)


def test_padded_slice_is_clamped():
    processor = BlockProcessor((10, 10, 10), chunk_size=(5, 5, 5), halo_width=2)

    z, y, x, coords = processor.get_padded_slice((0, 5, 5, 10, 0, 5))

    assert coords == (0, 7, 3, 10, 0, 7)
    assert (z, y, x) == (slice(0, 7), slice(3, 10), slice(0, 7))


def test_process_volume_identity_round_trip():
    rng = np.random.default_rng(0)
    volume = rng.random((9, 8, 7)).astype(np.float32)
    processor = BlockProcessor(volume.shape, chunk_size=(4, 3, 5), halo_width=2)

    result = processor.process_volume([volume], lambda block: block * 2, show_progress=False)

    np.testing.assert_allclose(result, volume * 2)


def test_process_volume_passes_every_input():
    a = np.ones((4, 4, 4), dtype=np.float32)
    b = np.full((4, 4, 4), 3, dtype=np.float32)
    processor = BlockProcessor(a.shape, chunk_size=(2, 2, 2), halo_width=1)

    result = processor.process_volume([a, b], lambda x, y: x + y, show_progress=False)

    assert np.all(result == 4)


def test_process_volume_wraps_block_errors():
    processor = BlockProcessor((4, 4, 4), chunk_size=(2, 2, 2))

    def failing(block):
        raise KeyError("boom")

    with pytest.raises(RuntimeError, match="block 0"):
        processor.process_volume([np.zeros((4, 4, 4))], failing, show_progress=False)


def test_rejects_invalid_configuration():
    with pytest.raises(ConfigurationError):
        BlockProcessor((4, 4, 4), chunk_size=(0, 4, 4))
    with pytest.raises(ConfigurationError):
        BlockProcessor((4, 4, 4), halo_width=-1)
    with pytest.raises(ConfigurationError, match="doesn't match"):
        BlockProcessor((4, 4, 4)).process_volume([np.zeros((4, 4, 5))], lambda b: b)


def test_large_halo_warns():
    with pytest.warns(UserWarning, match="exceeds chunk_size"):
        BlockProcessor((8, 8, 8), chunk_size=(2, 2, 2), halo_width=3)


def test_memory_estimate_keys():
    estimate = BlockProcessor((64, 64, 64), chunk_size=(32, 32, 32), halo_width=4).get_memory_estimate()

    assert set(estimate) == {'input_block_mb', 'output_block_mb', 'total_per_block_mb', 'full_output_mb'}
    assert estimate['full_output_mb'] == pytest.approx(1.0)


def test_checkpoint_round_trip(tmp_path):
    manager = CheckpointManager(str(tmp_path), run_id="run", compress=True, auto_backup=True)
    output = np.arange(8, dtype=np.float32).reshape(2, 2, 2)

    assert manager.load_state() is None
    manager.save_state({'output': output, 'last_block_idx': 0, 'total_blocks': 2})
    manager.save_state({'output': output + 1, 'last_block_idx': 1, 'total_blocks': 2})

    state = manager.load_state()
    np.testing.assert_array_equal(state['output'], output + 1)
    assert manager.backup_file.exists()
    assert manager.load_metadata()['progress_pct'] == 100.0

    manager.clear_checkpoints()
    assert list(tmp_path.iterdir()) == []


def test_checkpoint_falls_back_to_backup(tmp_path):
    manager = CheckpointManager(str(tmp_path), run_id="run", compress=True, auto_backup=True)
    output = np.zeros((2, 2, 2), dtype=np.float32)
    manager.save_state({'output': output, 'last_block_idx': 0, 'total_blocks': 3})
    manager.save_state({'output': output, 'last_block_idx': 1, 'total_blocks': 3})

    with gzip.open(manager.state_file, 'wb') as f:
        f.write(b"garbage")

    with pytest.warns(UserWarning, match="trying backup"):
        state = manager.load_state()
    assert state['last_block_idx'] == 0


def test_corrupt_checkpoint_without_backup(tmp_path):
    manager = CheckpointManager(str(tmp_path), run_id="run", compress=False, auto_backup=False)
    manager.state_file.write_bytes(b"garbage")

    with pytest.raises(VolumeIOError):
        manager.load_state()


def test_save_state_requires_keys(tmp_path):
    manager = CheckpointManager(str(tmp_path), run_id="run")

    with pytest.raises(ValueError, match="State must contain"):
        manager.save_state({'output': np.zeros(1)})


def test_resume_requires_matching_fingerprint(tmp_path):
    volume = np.ones((4, 4, 4), dtype=np.float32)
    processor = BlockProcessor(volume.shape, chunk_size=(2, 2, 2), halo_width=1)
    manager = CheckpointManager(str(tmp_path), run_id="run", compress=True, auto_backup=False)

    processor.process_volume(
        [volume], lambda block: block, checkpoint_manager=manager, show_progress=False, fingerprint="abc"
    )
    assert manager.load_metadata()['fingerprint'] == "abc"

    resumed = processor.process_volume(
        [volume], lambda block: block, checkpoint_manager=manager, resume=True,
        show_progress=False, fingerprint="abc"
    )
    np.testing.assert_array_equal(resumed, volume)

    with pytest.raises(ConfigurationError, match="different inputs"):
        processor.process_volume(
            [volume], lambda block: block, checkpoint_manager=manager, resume=True,
            show_progress=False, fingerprint="xyz"
        )
