"""Command-line entrypoint for the covering radius, histogram, porosity and distance tools."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config_loader import load_config
from .covering_radius import covering_radius_volume
from .distance_transform import compute_phase_distance
from .errors import (
    EXIT_CONFIGURATION_ERROR,
    EXIT_IO_ERROR,
    EXIT_OK,
    EXIT_UNEXPECTED_ERROR,
    ConfigurationError,
    VolumeIOError,
)
from .grid import Volume
from .histogram import compute_histogram
from .histogram_output import (
    format_histogram_table,
    histogram_to_dataframe,
    plot_histogram,
    save_histogram_dataframe,
)
from .porosity import compute_local_porosity
from .volume_io import read_phase_model, read_volume, write_volume

logger = logging.getLogger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with the configuration-error status."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(EXIT_CONFIGURATION_ERROR, f"{self.prog}: error: {message}\n")


def _build_covering_radius_kwargs(config: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    crt_config = config.get("covering_radius") or {}
    paths = config.get("paths") or {}
    kwargs: Dict[str, Any] = {}

    if args.method:
        kwargs["method"] = args.method
    if args.gpu:
        kwargs["use_gpu"] = True
    if args.chunked:
        kwargs["use_chunking"] = True
    if args.chunk_size:
        kwargs["chunk_size"] = tuple(args.chunk_size)
    if args.halo_width is not None:
        kwargs["halo_width"] = args.halo_width
    if args.no_progress:
        kwargs["show_progress"] = False

    if crt_config.get("use_checkpoints"):
        kwargs["checkpoint_dir"] = str(paths.get("checkpoint_dir"))
        if paths.get("default_run_id"):
            kwargs["run_id"] = str(paths["default_run_id"])

    return kwargs


def run_covering_radius(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    distance = read_volume(args.distance)
    phase = read_phase_model(args.phase_model, default_spacing=distance.spacing)

    kwargs = _build_covering_radius_kwargs(config, args)
    logger.info("Computing covering radius with configuration: %s", kwargs)
    crt = covering_radius_volume(distance, phase, args.phase, **kwargs)

    write_volume(args.output, crt)


def run_histogram(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    crt = read_volume(args.crt)
    hist = compute_histogram(crt.data, args.n_bins)
    df = histogram_to_dataframe(hist)

    print(format_histogram_table(df))

    output_settings = config.get("output_settings") or {}
    metadata = dict(output_settings.get("metadata") or {})
    metadata.setdefault("input_path", str(args.crt))
    metadata.setdefault("n_bins", int(args.n_bins))
    save_histogram_dataframe(df, args.output, format=args.format, metadata=metadata)

    if args.plot:
        plot_histogram(df, save_path=args.plot)


def run_porosity(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    phase = read_phase_model(args.phase_model)
    local, global_porosity = compute_local_porosity(phase.data, args.phase, args.radius)
    write_volume(args.output, Volume(local, phase.geometry))

    print(f"Global porosity value is {global_porosity:.4f}")


def run_distance_transform(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    crt_config = config.get("covering_radius") or {}
    dt_config = config.get("distance_transform") or {}

    phase = read_phase_model(args.phase_model)
    distance = compute_phase_distance(
        phase.data,
        args.phase,
        voxel_spacing=phase.spacing,
        signed=args.signed or bool(dt_config.get("signed", False)),
        use_gpu=bool(crt_config.get("use_gpu", False))
    )
    write_volume(args.output, Volume(distance, phase.geometry))


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="morphometry",
        description="Covering radius transform and related morphometry of two-phase 3D volumes."
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    crt = subparsers.add_parser(
        "covering-radius",
        help="Largest inscribed sphere covering each voxel of one phase"
    )
    crt.add_argument("distance", type=Path, help="Distance transform volume")
    crt.add_argument("phase_model", type=Path, help="Phase model volume (labels 0/1)")
    crt.add_argument("phase", type=int, help="Phase to analyse (0 or 1)")
    crt.add_argument("output", type=Path, help="Output covering radius volume")
    crt.add_argument("--method", choices=("grouped", "voxelwise"), default=None)
    crt.add_argument("--chunked", action="store_true", help="Process in halo-padded blocks")
    crt.add_argument("--chunk-size", type=int, nargs=3, metavar=("Z", "Y", "X"), default=None)
    crt.add_argument("--halo-width", type=int, default=None)
    crt.add_argument("--gpu", action="store_true", help="Use CuPy when available")
    crt.add_argument("--no-progress", action="store_true")
    crt.set_defaults(func=run_covering_radius)

    hist = subparsers.add_parser("histogram", help="Histogram of a covering radius volume")
    hist.add_argument("crt", type=Path, help="Covering radius volume")
    hist.add_argument("output", type=Path, help="Output table path (written as given, CSV metadata in <name>.meta.json)")
    hist.add_argument("n_bins", type=int, help="Number of bins")
    hist.add_argument("--format", choices=("csv", "json"), default="csv")
    hist.add_argument("--plot", type=Path, default=None, help="Save a bar chart to this PNG")
    hist.set_defaults(func=run_histogram)

    poro = subparsers.add_parser("porosity", help="Local porosity in a cubic neighborhood")
    poro.add_argument("phase_model", type=Path, help="Phase model volume (labels 0/1)")
    poro.add_argument("phase", type=int, help="Phase counted as pore space")
    poro.add_argument("output", type=Path, help="Output local porosity volume")
    poro.add_argument("radius", type=int, help="Neighborhood half-width in voxels")
    poro.set_defaults(func=run_porosity)

    dt = subparsers.add_parser("distance-transform", help="Euclidean distance transform of one phase")
    dt.add_argument("phase_model", type=Path, help="Phase model volume (labels 0/1)")
    dt.add_argument("phase", type=int, help="Phase whose interior distances are computed")
    dt.add_argument("output", type=Path, help="Output distance volume")
    dt.add_argument("--signed", action="store_true", help="Negative distances outside the phase")
    dt.set_defaults(func=run_distance_transform)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = build_parser().parse_args(argv)
    logger.info("Starting %s", args.command)

    try:
        config = load_config()
        args.func(args, config)
    except ConfigurationError as e:
        logger.error("%s", e)
        return EXIT_CONFIGURATION_ERROR
    except (VolumeIOError, OSError) as e:
        logger.error("%s", e)
        return EXIT_IO_ERROR
    except Exception:
        logger.exception("%s failed", args.command)
        return EXIT_UNEXPECTED_ERROR

    logger.info("%s completed", args.command)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
