"""
Histogram Output Formatter
==========================

Converts covering radius histograms to Pandas DataFrames and exports them.

Output Format:
    - Bin_Index: Bin number (0-based)
    - Bin_Min: Lower bin edge (inclusive)
    - Bin_Max: Upper bin edge (exclusive, inclusive for the last bin)
    - Bin_Range: Readable range, "[a, b)" or "[a, b]" for the last bin
    - Count: Number of phase voxels in the bin
    - Fraction: Count / total phase voxels
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from .errors import VolumeIOError
from .volume_io import partial_path

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ("csv", "json")
COLUMNS = ["Bin_Index", "Bin_Min", "Bin_Max", "Bin_Range", "Count", "Fraction"]


def _format_range(lower: float, upper: float, closed: bool) -> str:
    return f"[{lower:.3f}, {upper:.3f}{']' if closed else ')'}"


def histogram_to_dataframe(
    hist: Dict[str, Any],
    include_metadata: bool = True
) -> pd.DataFrame:
    """
    Convert a histogram dictionary (from compute_histogram) to a DataFrame.

    Metadata (total voxels, max radius, bin width) is kept in df.attrs.
    """
    n_bins = len(hist['bin_index'])
    ranges = [
        _format_range(lo, hi, closed=(i == n_bins - 1))
        for i, (lo, hi) in enumerate(zip(hist['bin_min'], hist['bin_max']))
    ]

    df = pd.DataFrame({
        'Bin_Index': hist['bin_index'],
        'Bin_Min': hist['bin_min'],
        'Bin_Max': hist['bin_max'],
        'Bin_Range': ranges,
        'Count': hist['counts'],
        'Fraction': hist['fractions']
    }, columns=COLUMNS)

    if include_metadata:
        df.attrs['total_voxels'] = int(hist['total_voxels'])
        df.attrs['max_value'] = float(hist['max_value'])
        df.attrs['bin_width'] = float(hist['bin_width'])

    return df


def format_histogram_table(df: pd.DataFrame) -> str:
    """Plain-text table, one line per bin: range, count and fraction."""
    lines = []
    for row in df.itertuples(index=False):
        lines.append(
            f"{row.Bin_Min:8.3f} - {row.Bin_Max:8.3f}:\t{row.Count}\t{row.Fraction:.3f}"
        )
    return "\n".join(lines)


def metadata_sidecar_path(output_path: str) -> Path:
    """JSON metadata file written next to a CSV histogram table."""
    output_path = Path(output_path)
    return output_path.with_name(output_path.name + '.meta.json')


def save_histogram_dataframe(
    df: pd.DataFrame,
    output_path: str,
    format: str = 'csv',
    metadata: Optional[Dict] = None
) -> Path:
    """
    Atomically save a histogram DataFrame to exactly output_path.

    Args:
        df: DataFrame from histogram_to_dataframe()
        output_path: Output file path, used as given whatever its extension
        format: 'csv' (data + '<name>.meta.json' sidecar) or 'json' (embedded metadata)
        metadata: Extra metadata merged with df.attrs

    Returns:
        Path of the written data file

    Raises:
        ValueError: For an unknown format
        VolumeIOError: If the file cannot be written
    """
    if format not in SUPPORTED_FORMATS:
        raise ValueError(
            f"Unknown format '{format}'. Supported: {', '.join(SUPPORTED_FORMATS)}"
        )

    output_path = Path(output_path)
    full_metadata = dict(df.attrs)
    if metadata is not None:
        full_metadata.update(metadata)

    sidecar = metadata_sidecar_path(output_path)
    partial = partial_path(output_path)
    sidecar_partial = partial_path(sidecar)
    write_sidecar = format == 'csv' and bool(full_metadata)

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)

        if format == 'csv':
            df.to_csv(partial, index=False, float_format='%.6f')
            if write_sidecar:
                with open(sidecar_partial, 'w') as f:
                    json.dump(full_metadata, f, indent=2)
        else:
            with open(partial, 'w') as f:
                json.dump(
                    {'metadata': full_metadata, 'data': df.to_dict(orient='records')},
                    f,
                    indent=2
                )

        os.replace(partial, output_path)
        if write_sidecar:
            os.replace(sidecar_partial, sidecar)
    except (OSError, ValueError) as e:
        for leftover in (partial, sidecar_partial):
            if leftover.exists():
                leftover.unlink()
        raise VolumeIOError(f"Couldn't write histogram to {output_path}: {e}") from e

    logger.info("Saved histogram (%s): %s", format, output_path)
    return output_path


def load_histogram_dataframe(
    input_path: str,
    format: Optional[str] = None
) -> pd.DataFrame:
    """Load a histogram written by save_histogram_dataframe.

    The format is taken from a .csv or .json extension when not given.
    """
    input_path = Path(input_path)
    if format is None:
        format = {'.csv': 'csv', '.json': 'json'}.get(input_path.suffix.lower())
        if format is None:
            raise ValueError(f"Cannot auto-detect format from extension '{input_path.suffix}'")

    try:
        if format == 'csv':
            df = pd.read_csv(input_path)
            metadata_path = metadata_sidecar_path(input_path)
            if metadata_path.exists():
                with open(metadata_path, 'r') as f:
                    df.attrs = json.load(f)
        elif format == 'json':
            with open(input_path, 'r') as f:
                data = json.load(f)
            df = pd.DataFrame(data['data'], columns=COLUMNS)
            df.attrs = data.get('metadata', {})
        else:
            raise ValueError(f"Unsupported format: {format}")
    except OSError as e:
        raise VolumeIOError(f"Couldn't read histogram from {input_path}: {e}") from e

    return df


def plot_histogram(
    df: pd.DataFrame,
    save_path: Optional[str] = None,
    title: str = 'Covering Radius Distribution'
) -> None:
    """
    Bar chart of bin fractions.

    Args:
        df: Histogram DataFrame
        save_path: Save to this path instead of showing the figure
        title: Plot title
    """
    import matplotlib
    if save_path is not None:
        matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(10, 5))
    widths = (df['Bin_Max'] - df['Bin_Min']).to_numpy()
    if not (widths > 0).any():
        widths = 1.0

    ax.bar(
        df['Bin_Min'],
        df['Fraction'],
        width=widths,
        align='edge',
        color='steelblue',
        edgecolor='black',
        linewidth=0.5
    )
    ax.set_xlabel('Covering radius', fontsize=12)
    ax.set_ylabel('Volume fraction', fontsize=12)
    ax.set_title(title, fontsize=14, fontweight='bold')
    ax.grid(True, alpha=0.3)
    plt.tight_layout()

    if save_path is not None:
        plt.savefig(save_path, dpi=300, bbox_inches='tight')
        plt.close(fig)
        logger.info("Plot saved: %s", save_path)
    else:
        plt.show()
