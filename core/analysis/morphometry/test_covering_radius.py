"""
Synthetic Volume Tests for the Covering Radius Transform
========================================================

Volumes with known covering radii:
    1. Single ball - one center with d > 0, every other distance 0
    2. Random two-phase volume - grouped, voxelwise and a brute-force
       reference must agree exactly
    3. Chunked vs monolithic - halo tiling must not change the result
    4. Edge cases - anisotropic spacing, size mismatch, NaN, bad phase
"""

import json
import logging

import numpy as np
import pytest
from scipy.ndimage import distance_transform_edt, uniform_filter

from core.analysis.morphometry.covering_radius import (
    WRONG_PHASE,
    ball_element,
    compute_covering_radius,
    covering_radius_volume,
    max_reach,
    run_fingerprint,
    search_half_width,
    seed_covering_radius,
)
from core.analysis.morphometry.errors import ConfigurationError
from core.analysis.morphometry.grid import Volume


def generate_single_ball(size: int = 9, d: float = 3.0, center=None) -> np.ndarray:
    """All-zero distance field with a single center of radius d."""
    if center is None:
        center = (size // 2,) * 3
    dt = np.zeros((size, size, size), dtype=np.float32)
    dt[center] = d
    return dt


def generate_random_phases(size: int = 12, seed: int = 0, fraction: float = 0.6):
    """Blobby two-phase volume and the EDT of phase 0."""
    rng = np.random.default_rng(seed)
    noise = rng.random((size, size, size))
    smooth = uniform_filter(noise, size=3)
    phase = np.where(smooth < np.quantile(smooth, fraction), 0, 1).astype(np.uint8)
    dt = distance_transform_edt(phase == 0).astype(np.float32)
    return dt, phase


def brute_force_crt(dt: np.ndarray, phase: np.ndarray, target: int, spacing: float = 1.0) -> np.ndarray:
    """Literal all-pairs scatter, used as the reference."""
    abs_dt = np.abs(dt).astype(np.float32)
    in_phase = phase == target
    out = np.where(in_phase, dt, WRONG_PHASE).astype(np.float32)

    idx = np.argwhere(in_phase)
    target_dt = abs_dt[tuple(idx.T)]
    for c in idx:
        d = abs_dt[tuple(c)]
        r2 = ((idx - c) ** 2).sum(axis=1).astype(np.float32)
        dist = np.sqrt(r2) * np.float32(spacing)
        hit = idx[(dist <= d) & (target_dt <= d)]
        sel = tuple(hit.T)
        out[sel] = np.maximum(out[sel], d)
    return out


def test_seed_copies_distance_and_marks_other_phase():
    dt, phase = generate_random_phases(size=8)
    in_phase = phase == 0
    seeded = seed_covering_radius(dt, in_phase)

    assert seeded.dtype == np.float32
    np.testing.assert_array_equal(seeded[in_phase], dt[in_phase])
    assert np.all(seeded[~in_phase] == WRONG_PHASE)
    assert seeded is not dt


def test_ball_coverage_single_center():
    dt = generate_single_ball(size=9, d=3.0)
    phase = np.zeros(dt.shape, dtype=np.uint8)

    crt = compute_covering_radius(dt, phase, target_phase=0, show_progress=False)

    z, y, x = np.indices(dt.shape)
    inside = (z - 4) ** 2 + (y - 4) ** 2 + (x - 4) ** 2 <= 9
    assert np.all(crt[inside] == 3.0)
    assert np.all(crt[~inside] == 0.0)


def test_ball_clipped_at_volume_edge():
    dt = generate_single_ball(size=5, d=2.0, center=(0, 0, 0))
    phase = np.zeros(dt.shape, dtype=np.uint8)

    crt = compute_covering_radius(dt, phase, target_phase=0, method="voxelwise", show_progress=False)

    z, y, x = np.indices(dt.shape)
    inside = z ** 2 + y ** 2 + x ** 2 <= 4
    assert np.all(crt[inside] == 2.0)
    assert np.all(crt[~inside] == 0.0)


def test_ball_with_physical_spacing():
    # d = 4 at spacing 2 reaches two voxels
    dt = generate_single_ball(size=9, d=4.0)
    phase = np.zeros(dt.shape, dtype=np.uint8)

    crt = compute_covering_radius(
        dt, phase, target_phase=0, voxel_spacing=(2.0, 2.0, 2.0), show_progress=False
    )

    z, y, x = np.indices(dt.shape)
    inside = (z - 4) ** 2 + (y - 4) ** 2 + (x - 4) ** 2 <= 4
    assert np.all(crt[inside] == 4.0)
    assert np.all(crt[~inside] == 0.0)


def test_ball_does_not_cross_into_other_phase():
    dt = generate_single_ball(size=9, d=3.0)
    phase = np.zeros(dt.shape, dtype=np.uint8)
    phase[4, 4, 6] = 1

    crt = compute_covering_radius(dt, phase, target_phase=0, show_progress=False)

    assert crt[4, 4, 6] == WRONG_PHASE
    assert crt[4, 4, 7] == 3.0


@pytest.mark.parametrize("method", ["grouped", "voxelwise"])
@pytest.mark.parametrize("seed", [0, 1, 2])
def test_matches_brute_force(method, seed):
    dt, phase = generate_random_phases(size=12, seed=seed)

    expected = brute_force_crt(dt, phase, target=0)
    crt = compute_covering_radius(dt, phase, target_phase=0, method=method, show_progress=False)

    np.testing.assert_array_equal(crt, expected)


def test_grouped_equals_voxelwise_for_solid_phase():
    _, phase = generate_random_phases(size=10, seed=5)
    dt_solid = distance_transform_edt(phase == 1).astype(np.float32)

    grouped = compute_covering_radius(dt_solid, phase, 1, method="grouped", show_progress=False)
    voxelwise = compute_covering_radius(dt_solid, phase, 1, method="voxelwise", show_progress=False)

    np.testing.assert_array_equal(grouped, voxelwise)


def test_phase_exclusion_and_monotonic_update():
    dt, phase = generate_random_phases(size=12, seed=3)
    crt = compute_covering_radius(dt, phase, target_phase=0, show_progress=False)

    in_phase = phase == 0
    assert np.all(crt[~in_phase] == WRONG_PHASE)
    assert np.all(crt[in_phase] >= dt[in_phase])
    assert np.all(crt[in_phase] >= 0)


def test_input_distance_is_not_modified():
    dt, phase = generate_random_phases(size=10, seed=4)
    original = dt.copy()

    compute_covering_radius(dt, phase, target_phase=0, show_progress=False)

    np.testing.assert_array_equal(dt, original)


def test_signed_distance_uses_magnitude():
    dt = generate_single_ball(size=7, d=-2.0)
    phase = np.zeros(dt.shape, dtype=np.uint8)

    crt = compute_covering_radius(dt, phase, target_phase=0, show_progress=False)

    assert crt[3, 3, 5] == 2.0
    assert crt[3, 3, 3] == 2.0


@pytest.mark.parametrize("chunk_size", [(4, 4, 4), (5, 7, 3), (12, 12, 1)])
def test_chunked_matches_monolithic(chunk_size):
    dt, phase = generate_random_phases(size=12, seed=6)

    monolithic = compute_covering_radius(dt, phase, target_phase=0, show_progress=False)
    chunked = compute_covering_radius(
        dt, phase, target_phase=0,
        use_chunking=True, chunk_size=chunk_size, halo_width=None,
        show_progress=False
    )

    np.testing.assert_array_equal(chunked, monolithic)


def test_chunked_rejects_small_halo():
    dt = generate_single_ball(size=9, d=3.0)
    phase = np.zeros(dt.shape, dtype=np.uint8)

    with pytest.raises(ConfigurationError, match="halo_width"):
        compute_covering_radius(
            dt, phase, target_phase=0,
            use_chunking=True, chunk_size=(4, 4, 4), halo_width=1,
            show_progress=False
        )


def test_chunked_checkpoint_resume(tmp_path):
    dt, phase = generate_random_phases(size=10, seed=7)
    kwargs = dict(
        use_chunking=True, chunk_size=(5, 5, 5), halo_width=None,
        checkpoint_dir=str(tmp_path), run_id="resume_test", show_progress=False
    )

    first = compute_covering_radius(dt, phase, 0, **kwargs)
    assert (tmp_path / "resume_test_metadata.json").exists()

    resumed = compute_covering_radius(dt, phase, 0, resume=True, **kwargs)
    np.testing.assert_array_equal(resumed, first)


def test_resume_rejects_checkpoint_from_other_inputs(tmp_path):
    dt, _ = generate_random_phases(size=10, seed=7)
    kwargs = dict(
        use_chunking=True, chunk_size=(5, 5, 5), halo_width=None,
        checkpoint_dir=str(tmp_path), run_id="shared_id", show_progress=False
    )
    compute_covering_radius(dt, np.zeros(dt.shape, dtype=np.uint8), 0, **kwargs)

    with pytest.raises(ConfigurationError, match="different inputs"):
        compute_covering_radius(dt, np.ones(dt.shape, dtype=np.uint8), 0, resume=True, **kwargs)


def test_resume_rejects_checkpoint_with_other_chunking(tmp_path):
    dt, phase = generate_random_phases(size=10, seed=7)
    kwargs = dict(checkpoint_dir=str(tmp_path), run_id="shared_id", show_progress=False)
    compute_covering_radius(dt, phase, 0, use_chunking=True, chunk_size=(5, 5, 5), **kwargs)

    with pytest.raises(ConfigurationError, match="different inputs"):
        compute_covering_radius(
            dt, phase, 0, use_chunking=True, chunk_size=(4, 4, 4), resume=True, **kwargs
        )


def test_checkpoint_metadata_records_fingerprint(tmp_path):
    dt, phase = generate_random_phases(size=8, seed=3)

    compute_covering_radius(
        dt, phase, 1, use_chunking=True, chunk_size=(4, 4, 4),
        checkpoint_dir=str(tmp_path), run_id="meta", show_progress=False
    )

    with open(tmp_path / "meta_metadata.json") as f:
        metadata = json.load(f)
    reach = max_reach(dt.astype(np.float32), phase == 1, 1.0)
    assert metadata['fingerprint'] == run_fingerprint(
        dt.astype(np.float32), phase == 1, 1, 1.0, (4, 4, 4), reach
    )


def test_chunked_run_logs_memory_estimate(caplog):
    dt, phase = generate_random_phases(size=8, seed=5)

    with caplog.at_level(logging.INFO, logger="core.analysis.morphometry.covering_radius"):
        compute_covering_radius(
            dt, phase, 0, use_chunking=True, chunk_size=(4, 4, 4), show_progress=False
        )

    assert "MB per block" in caplog.text


def test_rejects_anisotropic_spacing():
    dt = generate_single_ball(size=5, d=1.0)
    phase = np.zeros(dt.shape, dtype=np.uint8)

    with pytest.raises(ConfigurationError, match="isotropic"):
        compute_covering_radius(dt, phase, 0, voxel_spacing=(1.0, 1.0, 2.0))


def test_rejects_dimension_mismatch():
    dt = np.zeros((10, 10, 10), dtype=np.float32)
    phase = np.zeros((10, 10, 11), dtype=np.uint8)

    with pytest.raises(ConfigurationError, match="not the same size"):
        compute_covering_radius(dt, phase, 0)


@pytest.mark.parametrize("target_phase", [-1, 2, 255])
def test_rejects_invalid_phase(target_phase):
    dt = generate_single_ball(size=5, d=1.0)
    phase = np.zeros(dt.shape, dtype=np.uint8)

    with pytest.raises(ConfigurationError, match="Phase must be 0 or 1"):
        compute_covering_radius(dt, phase, target_phase)


def test_rejects_unknown_method():
    dt = generate_single_ball(size=5, d=1.0)
    phase = np.zeros(dt.shape, dtype=np.uint8)

    with pytest.raises(ConfigurationError, match="Unknown method"):
        compute_covering_radius(dt, phase, 0, method="fastest")


def test_rejects_nan_distance():
    dt = generate_single_ball(size=5, d=1.0)
    dt[0, 0, 0] = np.nan
    phase = np.zeros(dt.shape, dtype=np.uint8)

    with pytest.raises(ConfigurationError, match="NaN"):
        compute_covering_radius(dt, phase, 0)


def test_absent_phase_gives_all_sentinel():
    dt = np.zeros((4, 4, 4), dtype=np.float32)
    phase = np.ones(dt.shape, dtype=np.uint8)

    crt = compute_covering_radius(dt, phase, 0, show_progress=False)

    assert np.all(crt == WRONG_PHASE)


def test_gpu_request_without_cupy_matches_cpu():
    dt, phase = generate_random_phases(size=8, seed=8)

    cpu = compute_covering_radius(dt, phase, 0, use_gpu=False, show_progress=False)
    gpu = compute_covering_radius(dt, phase, 0, use_gpu=True, show_progress=False)

    np.testing.assert_array_equal(gpu, cpu)


def test_volume_wrapper_keeps_distance_geometry():
    dt, phase = generate_random_phases(size=8, seed=9)
    distance = Volume.from_array(dt, voxel_spacing=(1.0, 1.0, 1.0), origin=(5.0, 0.0, 0.0))
    phases = Volume.from_array(phase)

    crt = covering_radius_volume(distance, phases, 0, show_progress=False)

    assert crt.geometry == distance.geometry
    assert not crt.data.flags.writeable


def test_ball_element_and_reach():
    ball = ball_element(np.sqrt(np.float32(2.0)))
    assert ball.shape == (5, 5, 5)
    assert ball[2, 3, 3] and ball[2, 2, 3]
    assert not ball[3, 3, 3] and not ball[2, 2, 4]
    assert not ball.flags.writeable

    assert search_half_width(3.0, 1.0) == 3
    assert search_half_width(3.1, 1.0) == 4
    assert search_half_width(4.0, 2.0) == 2

    dt = generate_single_ball(size=9, d=3.5)
    assert max_reach(dt, np.ones(dt.shape, dtype=bool), 1.0) == 4
    assert max_reach(dt, np.zeros(dt.shape, dtype=bool), 1.0) == 0
