import argparse
import json
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.analysis.morphometry.config_loader import load_config

PROJECT_ROOT = Path(__file__).resolve().parents[1]

logger = logging.getLogger(__name__)
DRY_RUN = os.environ.get("PIPELINE_DRY_RUN", "0").lower() in {"1", "true", "yes"}
STAGE_ORDER = ("distance_transform", "covering_radius", "histogram", "porosity")
STAGE_VALIDATION_RULES: Dict[str, tuple] = {
    "distance_transform": (),
    "covering_radius": (),
    "histogram": ("n_bins",),
    "porosity": ("radius",),
}
ENTRYPOINT_MODULE = "core.analysis.morphometry.entrypoint"
CONFIG_ENV_KEY = "MORPHOMETRY_CONFIG_JSON"


class PipelineError(Exception):
    pass


def _load_config(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise PipelineError(f"Pipeline config not found: {config_path}")
    with config_path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _resolve_path(value) -> Path:
    path = Path(value)
    return path if path.is_absolute() else PROJECT_ROOT / path


def _get_stage_config(config: Dict[str, Any], stage_name: str) -> Dict[str, Any]:
    return config.get("stages", {}).get(stage_name, {}) or {}


def _stage_enabled(stage: Dict[str, Any]) -> bool:
    return bool(stage) and stage.get("enabled", True) is not False


def _assert_output_exists(path: Path, description: str) -> None:
    if DRY_RUN:
        return
    if not path.exists():
        raise PipelineError(f"{description} missing at {path}")


def _validate_stage_definition(stage_name: str, stage_def: Dict[str, Any]) -> None:
    if not isinstance(stage_def, dict):
        raise PipelineError(f"Stage configuration for {stage_name} must be a mapping")
    if stage_def.get("enabled", True) is False:
        return
    required_keys = STAGE_VALIDATION_RULES.get(stage_name, ())
    missing = [key for key in required_keys if key not in stage_def]
    if missing:
        raise PipelineError(
            f"Stage '{stage_name}' requires keys {', '.join(missing)} when enabled"
        )
    if stage_name == "histogram":
        n_bins = stage_def.get("n_bins")
        if not isinstance(n_bins, int) or isinstance(n_bins, bool) or n_bins < 1:
            raise PipelineError("histogram.n_bins must be a positive integer")
        if stage_def.get("format", "csv") not in ("csv", "json"):
            raise PipelineError("histogram.format must be csv or json")
    if stage_name == "porosity":
        radius = stage_def.get("radius")
        if not isinstance(radius, int) or isinstance(radius, bool) or radius < 1:
            raise PipelineError("porosity.radius must be a positive integer")
    if stage_name == "covering_radius":
        method = stage_def.get("method", "grouped")
        if method not in ("grouped", "voxelwise"):
            raise PipelineError("covering_radius.method must be grouped or voxelwise")


def _validate_config_schema(config: Dict[str, Any]) -> None:
    if not isinstance(config, dict):
        raise PipelineError("Pipeline configuration must be a mapping")
    if "phase_model" not in config:
        raise PipelineError("Pipeline configuration requires 'phase_model'")
    if config.get("target_phase", 0) not in (0, 1):
        raise PipelineError("Pipeline 'target_phase' must be 0 or 1")
    stages = config.get("stages")
    if not isinstance(stages, dict):
        raise PipelineError("Pipeline configuration requires a 'stages' block")
    unknown = [stage for stage in stages if stage not in STAGE_ORDER]
    if unknown:
        raise PipelineError(f"Unknown pipeline stages: {', '.join(unknown)}")
    for stage_name in STAGE_ORDER:
        _validate_stage_definition(stage_name, stages.get(stage_name, {}) or {})


def _log_stage_keys(stage_name: str, stage_def: Dict[str, Any]) -> None:
    keys = sorted(stage_def.keys())
    key_display = ", ".join(keys) if keys else "<none>"
    logger.info("Stage %s resolved config keys: %s", stage_name, key_display)


def _run_subprocess(command: List[str], env: Optional[Dict[str, str]] = None) -> None:
    logger.info("Running subprocess: %s", " ".join(str(p) for p in command))

    result = subprocess.run(
        command,
        env=env,
        capture_output=True,
        text=True,
    )

    print("STDOUT:\n", result.stdout)
    print("STDERR:\n", result.stderr)

    if result.returncode != 0:
        raise subprocess.CalledProcessError(
            result.returncode,
            command,
            output=result.stdout,
            stderr=result.stderr,
        )


def _entrypoint_command(subcommand: str, *args) -> List[str]:
    return [sys.executable, "-m", ENTRYPOINT_MODULE, subcommand] + [str(a) for a in args]


def build_tool_config(config: Dict[str, Any], output_root: Path, run_id: str) -> Dict[str, Any]:
    """Resolved morphometry config handed to every stage subprocess."""
    tool_config = load_config(overrides=config.get("morphometry") or {})
    tool_config.setdefault("paths", {})
    tool_config["paths"]["output_dir"] = str(output_root)
    tool_config["paths"]["checkpoint_dir"] = str(output_root / "checkpoints")
    tool_config["paths"]["default_run_id"] = run_id
    return tool_config


def build_stage_outputs(tool_config: Dict[str, Any], output_root: Path) -> Dict[str, Path]:
    output_settings = tool_config.get("output_settings") or {}
    return {
        "distance_transform": output_root / output_settings.get("distance_transform_filename", "distance_transform.tif"),
        "covering_radius": output_root / output_settings.get("covering_radius_filename", "covering_radius.tif"),
        "histogram": output_root / output_settings.get("histogram_filename", "crt_histogram"),
        "porosity": output_root / output_settings.get("porosity_filename", "local_porosity.tif"),
    }


def distance_transform_command(stage: Dict[str, Any], phase_model: Path, target_phase: int, output: Path) -> List[str]:
    command = _entrypoint_command("distance-transform", phase_model, target_phase, output)
    if stage.get("signed"):
        command.append("--signed")
    return command


def covering_radius_command(
    stage: Dict[str, Any], distance: Path, phase_model: Path, target_phase: int, output: Path
) -> List[str]:
    command = _entrypoint_command("covering-radius", distance, phase_model, target_phase, output)
    if stage.get("method"):
        command += ["--method", str(stage["method"])]
    if stage.get("use_chunking"):
        command.append("--chunked")
    if stage.get("chunk_size"):
        command += ["--chunk-size"] + [str(int(v)) for v in stage["chunk_size"]]
    if stage.get("halo_width") is not None:
        command += ["--halo-width", str(int(stage["halo_width"]))]
    if stage.get("use_gpu"):
        command.append("--gpu")
    command.append("--no-progress")
    return command


def histogram_command(stage: Dict[str, Any], crt: Path, output: Path) -> List[str]:
    command = _entrypoint_command("histogram", crt, output, int(stage["n_bins"]))
    command += ["--format", str(stage.get("format", "csv"))]
    if stage.get("plot"):
        command += ["--plot", str(output.with_suffix(".png"))]
    return command


def porosity_command(stage: Dict[str, Any], phase_model: Path, target_phase: int, output: Path) -> List[str]:
    return _entrypoint_command("porosity", phase_model, target_phase, output, int(stage["radius"]))


def run_distance_transform(config, outputs, phase_model, target_phase, env) -> None:
    """Compute the distance transform of the target phase from the phase model."""
    stage = _get_stage_config(config, "distance_transform")
    if not _stage_enabled(stage):
        logger.info("Distance transform stage skipped (disabled by config).")
        return

    _log_stage_keys("distance_transform", stage)
    command = distance_transform_command(stage, phase_model, target_phase, outputs["distance_transform"])
    if DRY_RUN:
        logger.info("DRY RUN: would run %s", " ".join(command))
        return
    _run_subprocess(command, env=env)
    _assert_output_exists(outputs["distance_transform"], "Distance transform output")


def run_covering_radius(config, outputs, phase_model, target_phase, env) -> None:
    """Run the covering radius transform on a precomputed or stage-produced distance transform."""
    stage = _get_stage_config(config, "covering_radius")
    if not _stage_enabled(stage):
        logger.info("Covering radius stage skipped (disabled by config).")
        return

    _log_stage_keys("covering_radius", stage)
    if stage.get("distance_transform"):
        distance = _resolve_path(stage["distance_transform"])
    elif _stage_enabled(_get_stage_config(config, "distance_transform")):
        distance = outputs["distance_transform"]
    else:
        raise PipelineError(
            "covering_radius needs a distance transform: set covering_radius.distance_transform "
            "or enable the distance_transform stage"
        )
    _assert_output_exists(distance, "Distance transform consumed by covering_radius")

    command = covering_radius_command(stage, distance, phase_model, target_phase, outputs["covering_radius"])
    if DRY_RUN:
        logger.info("DRY RUN: would run %s", " ".join(command))
        return
    _run_subprocess(command, env=env)
    _assert_output_exists(outputs["covering_radius"], "Covering radius output")


def run_histogram(config, outputs, env) -> None:
    """Bin the covering radius output and export the table."""
    stage = _get_stage_config(config, "histogram")
    if not _stage_enabled(stage):
        logger.info("Histogram stage skipped (disabled by config).")
        return

    _log_stage_keys("histogram", stage)
    _assert_output_exists(outputs["covering_radius"], "Covering radius output consumed by histogram")
    table = outputs["histogram"].with_suffix("." + str(stage.get("format", "csv")))
    command = histogram_command(stage, outputs["covering_radius"], table)
    if DRY_RUN:
        logger.info("DRY RUN: would run %s", " ".join(command))
        return
    _run_subprocess(command, env=env)
    _assert_output_exists(table, "Histogram table")


def run_porosity(config, outputs, phase_model, target_phase, env) -> None:
    """Compute local porosity of the target phase."""
    stage = _get_stage_config(config, "porosity")
    if not _stage_enabled(stage):
        logger.info("Porosity stage skipped (disabled by config).")
        return

    _log_stage_keys("porosity", stage)
    command = porosity_command(stage, phase_model, target_phase, outputs["porosity"])
    if DRY_RUN:
        logger.info("DRY RUN: would run %s", " ".join(command))
        return
    _run_subprocess(command, env=env)
    _assert_output_exists(outputs["porosity"], "Porosity output")


def main(config_path: Path, phase_model_arg: Optional[Path] = None, run_id_arg: Optional[str] = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    logger.info("Pipeline root: %s", PROJECT_ROOT)

    config = _load_config(config_path)
    _validate_config_schema(config)
    logger.info("Pipeline configuration validated")

    phase_model = _resolve_path(phase_model_arg or config["phase_model"])
    if not DRY_RUN and not phase_model.exists():
        raise PipelineError(f"Phase model not found: {phase_model}")
    run_id = str(run_id_arg or config.get("run_id") or phase_model.stem)
    target_phase = int(config.get("target_phase", 0))

    output_root = _resolve_path(config.get("output_dir") or "results") / run_id
    if not DRY_RUN:
        output_root.mkdir(parents=True, exist_ok=True)

    tool_config = build_tool_config(config, output_root, run_id)
    outputs = build_stage_outputs(tool_config, output_root)
    logger.info("Phase model: %s", phase_model)
    logger.info("Run identifier: %s", run_id)
    for stage_name, stage_path in outputs.items():
        logger.info("Stage '%s' output: %s", stage_name, stage_path)

    env = os.environ.copy()
    env[CONFIG_ENV_KEY] = json.dumps(tool_config)

    run_distance_transform(config, outputs, phase_model, target_phase, env)
    run_covering_radius(config, outputs, phase_model, target_phase, env)
    run_histogram(config, outputs, env)
    run_porosity(config, outputs, phase_model, target_phase, env)
    logger.info("Pipeline completed")


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the morphometry stages on one phase model.")
    parser.add_argument(
        "--config",
        type=Path,
        default=PROJECT_ROOT / "config" / "pipeline.yaml",
        help="Pipeline YAML config",
    )
    parser.add_argument("--phase-model", type=Path, default=None, help="Override phase_model from the config")
    parser.add_argument("--run-id", default=None, help="Override run_id from the config")
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = _parse_args()
    main(args.config, args.phase_model, args.run_id)
