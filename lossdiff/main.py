#!/usr/bin/env python3
"""
Loss Diff - compare two training-loss traces step by step.

This module exposes the pure engine functions:
- compute_diffs()
- aggregate_statistics()
- build_dataset()
- clamp_window()

plus the presentation helpers consumed by the CLI and the Gradio UI:
- assemble_text_report()
- render_plots()
- build_run_identity() / build_manifest_dict()

Engine functions take explicit inputs and return explicit outputs, avoiding prints
and global state mutation. The only stateful component is WindowManager in
window_manager.py.
"""

import logging
import math
import operator
import os
from dataclasses import dataclass
from enum import IntFlag
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

# Select a non-interactive Matplotlib backend before importing pyplot so headless
# servers (Gradio workers, CI) never try to open a GUI backend.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.lines import Line2D

# Support both package and script execution modes
try:
    # When run as a package: python -m lossdiff.main
    from .csv_processor import (
        CSVProcessingError,
        LossCSVReader,
        ParseError,
        parse_loss_csv,
    )
    from .utils import (
        build_effective_parameters,
        canonical_json_hash,
        content_digest,
        ensure_run_dir,
        utc_timestamp_seconds,
        write_manifest,
        write_text_report,
    )
except ImportError:
    # When run directly: python lossdiff/main.py
    from csv_processor import (
        CSVProcessingError,
        LossCSVReader,
        ParseError,
        parse_loss_csv,
    )
    from utils import (
        build_effective_parameters,
        canonical_json_hash,
        content_digest,
        ensure_run_dir,
        utc_timestamp_seconds,
        write_manifest,
        write_text_report,
    )

# Configure logging for debugging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

DIFF_COLUMNS: List[str] = ["step", "absolute_diff", "relative_diff"]

# Added to value_b only when absolute_diff / value_b is 0/0.
DEFAULT_EPSILON: float = 1e-8

# Display marker for an extremum with no qualifying record in the window.
NO_DATA: str = "no data"


@dataclass
class DiffParams:
    """
    Parameters of the difference computation and its presentation.

    Attributes:
        epsilon: Added to value_b when absolute_diff / value_b is NaN (the 0/0 case).
            A non-zero numerator over a zero value_b is NOT guarded and yields ±inf.
        label_a: Display name of the first trace (value_a column).
        label_b: Display name of the second trace (value_b column).
    """

    epsilon: float = DEFAULT_EPSILON
    label_a: str = "XPU"
    label_b: str = "GPU"


@dataclass
class WindowParams:
    """
    Requested statistics window as a half-open row range [start, end).

    None means the dataset edge (0 for start, len(dataset) for end). Out-of-range
    values are clamped, never rejected; see clamp_window().
    """

    start: Optional[int] = None
    end: Optional[int] = None


class PlotLayer(IntFlag):
    # Loss curves
    LOSS_A = 1 << 0
    LOSS_B = 1 << 1

    # Diff curves
    DIFF_ABS = 1 << 2
    DIFF_REL = 1 << 3

    # Legend visibility
    LEGEND = 1 << 4

    # Presets
    NONE = 0
    LOSS_CURVE = LOSS_A | LOSS_B | LEGEND
    DIFF_CURVE = DIFF_ABS | DIFF_REL | LEGEND
    EVERYTHING = LOSS_A | LOSS_B | DIFF_ABS | DIFF_REL | LEGEND


@dataclass
class PlotParams:
    """
    Plotting controls including layer selection and optional axis bounds.

    x_min/x_max/y_min/y_max:
      - Optional float bounds applied via plt.xlim/plt.ylim if provided.
      - One-sided limits are allowed by passing only one side (the other remains automatic).
    """

    plot_layers: PlotLayer = PlotLayer.LOSS_CURVE
    x_min: Optional[float] = None
    x_max: Optional[float] = None
    y_min: Optional[float] = None
    y_max: Optional[float] = None


@dataclass(frozen=True)
class Extremum:
    """
    An extremal value and the truncated step of the record that produced it.

    found is False only for the min-positive / max-negative sentinels (and for
    extrema of a window whose diffs are all NaN); presentation renders those as
    NO_DATA instead of the ±inf placeholder value.
    """

    value: float
    step: int
    found: bool = True


@dataclass(frozen=True)
class DiffStatistics:
    max_diff: Extremum
    min_diff: Extremum
    mean_diff: float
    max_abs_diff: Extremum
    min_abs_diff: Extremum
    mean_abs_diff: float
    min_positive_diff: Extremum
    max_negative_diff: Extremum

    @classmethod
    def zeroed(cls) -> "DiffStatistics":
        """Statistics of an empty window: every field is zero, no sentinels."""
        zero = Extremum(0.0, 0)
        return cls(
            max_diff=zero,
            min_diff=zero,
            mean_diff=0.0,
            max_abs_diff=zero,
            min_abs_diff=zero,
            mean_abs_diff=0.0,
            min_positive_diff=zero,
            max_negative_diff=zero,
        )

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for name in STATISTIC_FIELDS:
            val = getattr(self, name)
            if isinstance(val, Extremum):
                out[name] = {"value": val.value, "step": val.step, "found": val.found}
            else:
                out[name] = val
        return out


# Display order of the statistics fields.
STATISTIC_FIELDS: List[str] = [
    "max_diff",
    "min_diff",
    "mean_diff",
    "max_abs_diff",
    "min_abs_diff",
    "mean_abs_diff",
    "min_positive_diff",
    "max_negative_diff",
]


@dataclass(frozen=True)
class Dataset:
    """
    The full ordered pair of loss and diff frames. Replaced, never mutated.
    """

    df_loss: pd.DataFrame
    df_diff: pd.DataFrame
    source_name: Optional[str] = None
    digest: Optional[str] = None

    def __len__(self) -> int:
        return len(self.df_loss)


@dataclass(frozen=True)
class WindowSnapshot:
    """
    Everything published to observers after a successful load or window change.

    visible_loss / visible_diff are independent copies of the window slice, so
    consumers may modify them without touching the Dataset.
    """

    generation: int
    window_start: int
    window_end: int
    dataset_length: int
    visible_loss: pd.DataFrame
    visible_diff: pd.DataFrame
    statistics: DiffStatistics
    source_name: Optional[str] = None
    digest: Optional[str] = None

    @property
    def window_length(self) -> int:
        return self.window_end - self.window_start


@dataclass(frozen=True)
class LoadFailure:
    """Published instead of a snapshot when the latest load fails to parse."""

    generation: int
    error: ParseError
    source_name: Optional[str] = None


def compute_diffs(
    df_loss: pd.DataFrame, params: Optional[DiffParams] = None
) -> pd.DataFrame:
    """
    Derive per-step absolute and relative differences.

    Pure, length-preserving and order-preserving:
      absolute_diff = value_a - value_b
      relative_diff = absolute_diff / value_b
    except where that division is NaN (0/0), which becomes
      absolute_diff / (value_b + epsilon)

    A non-zero absolute_diff over value_b == 0 is left as ±inf.
    """
    epsilon = DEFAULT_EPSILON if params is None else params.epsilon

    value_a = df_loss["value_a"].to_numpy(dtype=float)
    value_b = df_loss["value_b"].to_numpy(dtype=float)
    absolute = value_a - value_b
    with np.errstate(divide="ignore", invalid="ignore"):
        relative = absolute / value_b
        guarded = absolute / (value_b + epsilon)
    relative = np.where(np.isnan(relative), guarded, relative)

    return pd.DataFrame(
        {
            "step": df_loss["step"].to_numpy(dtype=float),
            "absolute_diff": absolute,
            "relative_diff": relative,
        },
        columns=DIFF_COLUMNS,
    )


def _truncate_step(step: float) -> int:
    # NaN / ±inf steps have no integer label
    return int(step) if math.isfinite(step) else 0


class _RunningExtremum:
    """Extremum tracker; a candidate replaces the current one only if strictly better."""

    __slots__ = ("_better", "value", "step", "found")

    def __init__(self, better: Callable[[float, float], bool], sentinel: float):
        self._better = better
        self.value = sentinel
        self.step = 0.0
        self.found = False

    def offer(self, value: float, step: float) -> None:
        if not self.found or self._better(value, self.value):
            self.value = value
            self.step = step
            self.found = True

    def result(self) -> Extremum:
        return Extremum(float(self.value), _truncate_step(self.step), self.found)


def aggregate_statistics(df_diff: pd.DataFrame) -> DiffStatistics:
    """
    Reduce a diff slice into DiffStatistics in a single linear pass.

    - Extrema use strict comparisons, so the earliest record wins a tie.
    - min_positive_diff considers absolute_diff >= 0, max_negative_diff considers
      absolute_diff < 0; with no qualifying record they keep the ±inf sentinel
      (found=False).
    - An empty slice returns DiffStatistics.zeroed().
    - NaN diffs never become an extremum but do propagate into the means.
    """
    n = len(df_diff)
    if n == 0:
        return DiffStatistics.zeroed()

    max_diff = _RunningExtremum(operator.gt, -math.inf)
    min_diff = _RunningExtremum(operator.lt, math.inf)
    max_abs = _RunningExtremum(operator.gt, -math.inf)
    min_abs = _RunningExtremum(operator.lt, math.inf)
    min_positive = _RunningExtremum(operator.lt, math.inf)
    max_negative = _RunningExtremum(operator.gt, -math.inf)
    total = 0.0
    total_abs = 0.0

    steps = df_diff["step"].to_numpy(dtype=float).tolist()
    diffs = df_diff["absolute_diff"].to_numpy(dtype=float).tolist()
    for step, diff in zip(steps, diffs):
        magnitude = abs(diff)
        total += diff
        total_abs += magnitude
        if math.isnan(diff):
            continue
        max_diff.offer(diff, step)
        min_diff.offer(diff, step)
        max_abs.offer(magnitude, step)
        min_abs.offer(magnitude, step)
        if diff >= 0:
            min_positive.offer(diff, step)
        else:
            max_negative.offer(diff, step)

    return DiffStatistics(
        max_diff=max_diff.result(),
        min_diff=min_diff.result(),
        mean_diff=total / n,
        max_abs_diff=max_abs.result(),
        min_abs_diff=min_abs.result(),
        mean_abs_diff=total_abs / n,
        min_positive_diff=min_positive.result(),
        max_negative_diff=max_negative.result(),
    )


def build_dataset(
    raw_text: str,
    params: Optional[DiffParams] = None,
    source_name: Optional[str] = None,
) -> Dataset:
    """
    Parse raw CSV text and derive its diffs.

    Raises:
        ParseError: If any row is malformed (nothing is built)
    """
    df_loss = parse_loss_csv(raw_text)
    df_diff = compute_diffs(df_loss, params)
    return Dataset(
        df_loss=df_loss,
        df_diff=df_diff,
        source_name=source_name,
        digest=content_digest(raw_text),
    )


def _coerce_bound(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if math.isinf(value):
            return 0 if value < 0 else np.iinfo(np.int64).max
    return int(value)


def clamp_window(
    requested_start: Any, requested_end: Any, length: int
) -> Tuple[int, int]:
    """
    Clamp a requested [start, end) into [0, length] without ever raising.

    Each bound is clamped independently; None (or NaN) selects the dataset edge.
    When end < start, end is raised up to start, producing an empty window. The
    bounds are never swapped.
    """
    start = _coerce_bound(requested_start)
    end = _coerce_bound(requested_end)
    start = 0 if start is None else min(max(start, 0), length)
    end = length if end is None else min(max(end, 0), length)
    if end < start:
        end = start
    return start, end


def slice_window(
    dataset: Dataset, start: int, end: int, generation: int = 0
) -> WindowSnapshot:
    """Slice the dataset to [start, end) and aggregate statistics over that slice."""
    visible_loss = dataset.df_loss.iloc[start:end].copy()
    visible_diff = dataset.df_diff.iloc[start:end].copy()
    return WindowSnapshot(
        generation=generation,
        window_start=start,
        window_end=end,
        dataset_length=len(dataset),
        visible_loss=visible_loss,
        visible_diff=visible_diff,
        statistics=aggregate_statistics(visible_diff),
        source_name=dataset.source_name,
        digest=dataset.digest,
    )


# -------------------------
# Formatting
# -------------------------
def format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "∞" if value > 0 else "-∞"
    return f"{value:.6g}"


def format_extremum(extremum: Extremum) -> str:
    if not extremum.found:
        return NO_DATA
    return f"{format_value(extremum.value)} (step {extremum.step})"


def format_statistics(stats: DiffStatistics) -> str:
    """One line per statistic, names left-aligned."""
    width = max(len(name) for name in STATISTIC_FIELDS)
    lines: list[str] = []
    for name in STATISTIC_FIELDS:
        val = getattr(stats, name)
        text = format_extremum(val) if isinstance(val, Extremum) else format_value(val)
        lines.append(f"  {name:<{width}}  {text}")
    return "\n".join(lines)


def _display_frame(df: pd.DataFrame, params: DiffParams) -> pd.DataFrame:
    """Header-renamed copy for display only."""
    return df.rename(
        columns={
            "value_a": params.label_a,
            "value_b": params.label_b,
            "absolute_diff": "abs",
            "relative_diff": "rel",
        }
    )


def assemble_text_report(
    snapshot: WindowSnapshot, params: Optional[DiffParams] = None, n: int = 5
) -> str:
    """
    Create a concise, readable report of the current window.

    Sections: source and window bounds, visible loss and diff head/tail, and the
    statistics table. Sentinel extrema print NO_DATA, infinities print ∞.
    """
    if params is None:
        params = DiffParams()

    def _fmt_head_tail(df: pd.DataFrame) -> str:
        """
        Render head and tail with display headers and no index.
        If rows <= 2n, show only head to avoid duplication.
        """
        if df.empty:
            return "(no rows)"
        shown = _display_frame(df, params)
        head_txt = shown.head(n).to_string(index=False)
        if len(df) <= 2 * n:
            return head_txt
        tail_txt = shown.tail(n).to_string(index=False, header=False)
        return f"{head_txt}\n...\n{tail_txt}"

    parts: list[str] = []
    if snapshot.source_name:
        parts.append(f"Source: {snapshot.source_name}")
    parts.append(
        f"Window: [{snapshot.window_start}, {snapshot.window_end}) "
        f"of {snapshot.dataset_length} rows"
    )
    parts.append("")
    parts.append(f"Loss (head/tail):\n{_fmt_head_tail(snapshot.visible_loss)}")
    parts.append("")
    parts.append(f"Diff (head/tail):\n{_fmt_head_tail(snapshot.visible_diff)}")
    parts.append("")
    if snapshot.window_length == 0:
        parts.append("Statistics (empty window, all fields zero):")
    else:
        parts.append(f"Statistics ({params.label_a} - {params.label_b}):")
    parts.append(format_statistics(snapshot.statistics))

    nonfinite_rel = int((~np.isfinite(snapshot.visible_diff["relative_diff"])).sum())
    if nonfinite_rel:
        parts.append("")
        parts.append(
            f"Note: {nonfinite_rel} relative diff value(s) are non-finite "
            f"({params.label_b} == 0)"
        )
    return "\n".join(parts)


# -------------------------
# Plotting
# -------------------------
def _plot_layers_suffix(flags: PlotLayer) -> str:
    """
    Build a stable, human-readable suffix for filenames describing selected plot layers.

    Rules:
    - If flags exactly match one of the named presets, return that preset name.
    - Otherwise, return a compact '+'-joined list of the set atomic flags in canonical order.
    """
    for name in ("LOSS_CURVE", "DIFF_CURVE", "EVERYTHING", "NONE"):
        if flags == getattr(PlotLayer, name):
            return name

    atomic_order = ["LOSS_A", "LOSS_B", "DIFF_ABS", "DIFF_REL", "LEGEND"]
    tokens = [name for name in atomic_order if flags & getattr(PlotLayer, name)]
    return "+".join(tokens) if tokens else "NONE"


def _parse_plot_layers(spec: str) -> PlotLayer:
    """
    Parse 'LOSS_CURVE' or 'LOSS_A+DIFF_ABS+LEGEND' into a PlotLayer.

    Raises:
        ValueError: On an unknown token
    """
    flags = PlotLayer.NONE
    for token in str(spec).split("+"):
        name = token.strip().upper()
        if not name:
            continue
        try:
            flags |= PlotLayer[name]
        except KeyError:
            raise ValueError(f"Unknown plot layer: {token!r}") from None
    return flags


def _plot_title(flags: PlotLayer) -> str:
    has_loss = bool(flags & (PlotLayer.LOSS_A | PlotLayer.LOSS_B))
    has_diff = bool(flags & (PlotLayer.DIFF_ABS | PlotLayer.DIFF_REL))
    if has_loss and not has_diff:
        return "Loss Curve"
    if has_diff and not has_loss:
        return "Loss Diff Curve"
    return "Loss and Diff Curves"


def add_legend_extra_line(text, color=None, **legend_kwargs):
    """
    Add an extra text line at the end of the current Matplotlib legend without a marker.

    Parameters:
        text (str): The string to display as an additional legend entry.
        color (str or tuple, optional): Color for the extra legend text.
        **legend_kwargs: Additional keyword arguments passed to ax.legend().

    Returns:
        matplotlib.legend.Legend: The updated legend instance.
    """
    ax = plt.gca()
    handles, labels = ax.get_legend_handles_labels()

    # Invisible handle (no line, no marker)
    invisible_handle = Line2D([], [], linestyle="None", marker=None, label=text)

    handles.append(invisible_handle)
    labels.append(text)

    legend = ax.legend(handles=handles, labels=labels, **legend_kwargs)

    if color:
        legend.get_texts()[-1].set_color(color)

    return legend


def render_outputs(
    snapshot: WindowSnapshot,
    params: DiffParams,
    output_svg: str = "plot.svg",
    plot_params: Optional[PlotParams] = None,
) -> str:
    """
    Pure renderer: draws the visible window and returns the output path.

    Loss layers plot value_a / value_b against step; diff layers plot the
    absolute and relative diffs. Non-finite relative values cannot be drawn;
    they are dropped from the line and counted in an extra legend line.
    """
    if plot_params is None:
        raise TypeError("render_outputs requires plot_params (PlotParams)")
    flags = plot_params.plot_layers
    df_loss = snapshot.visible_loss
    df_diff = snapshot.visible_diff

    plt.style.use("dark_background")
    plt.figure(figsize=(10, 6))

    if flags & PlotLayer.LOSS_A:
        plt.plot(
            df_loss["step"],
            df_loss["value_a"],
            color="#00FFFF",  # cyan
            linewidth=1.6,
            label=params.label_a,
        )
    if flags & PlotLayer.LOSS_B:
        plt.plot(
            df_loss["step"],
            df_loss["value_b"],
            color="#FFD60A",  # bright yellow
            linewidth=1.6,
            label=params.label_b,
        )
    if flags & PlotLayer.DIFF_ABS:
        plt.plot(
            df_diff["step"],
            df_diff["absolute_diff"],
            color="#FF2DFF",  # fuchsia
            linewidth=1.6,
            label="Abs",
        )

    skipped_rel = 0
    if flags & PlotLayer.DIFF_REL:
        rel = df_diff["relative_diff"]
        finite = np.isfinite(rel)
        skipped_rel = int((~finite).sum())
        plt.plot(
            df_diff["step"],
            rel.where(finite),
            color="#7FFFD4",  # aquamarine
            linewidth=1.6,
            label="Rel",
        )

    plt.xlabel("Step")
    plt.title(_plot_title(flags))
    plt.grid(alpha=0.2)

    if flags & PlotLayer.LEGEND:
        plt.legend()
        if skipped_rel:
            add_legend_extra_line(f"{skipped_rel} non-finite Rel not drawn", color="red")

    # Apply axis limits from PlotParams; support one-sided bounds
    plt.xlim(left=plot_params.x_min, right=plot_params.x_max)
    plt.ylim(bottom=plot_params.y_min, top=plot_params.y_max)

    plt.savefig(output_svg, format="svg")
    plt.close()
    return output_svg


def render_plots(
    list_plot_params: list[PlotParams],
    snapshot: WindowSnapshot,
    params: DiffParams,
    short_hash: str,
    output_dir: str | None = None,
) -> list[str]:
    """
    Render one plot per PlotParams. Returns artifact paths.

    Filenames: plot-{short_hash}-{ii}-{suffix}.svg where ii is the 0-based index,
    zero-padded to at least two digits.
    """
    n = len(list_plot_params)
    pad = max(2, len(str(max(0, n - 1)))) if n > 0 else 2

    artifact_paths: list[str] = []
    for idx, pp in enumerate(list_plot_params):
        suffix = _plot_layers_suffix(pp.plot_layers)
        filename = f"plot-{short_hash}-{idx:0{pad}}-{suffix}.svg"
        output_path = Path(output_dir) / filename if output_dir else Path(filename)
        render_outputs(snapshot, params, output_svg=str(output_path), plot_params=pp)
        artifact_paths.append(str(output_path))

    return artifact_paths


# -------------------------
# Defaults, identity and manifest
# -------------------------
def get_default_params() -> tuple[DiffParams, WindowParams, List[PlotParams]]:
    """
    Build default DiffParams, WindowParams, and the canonical list of PlotParams
    (loss curve, then diff curve).
    """
    diff = DiffParams(epsilon=DEFAULT_EPSILON, label_a="XPU", label_b="GPU")
    window = WindowParams(start=None, end=None)
    plot_defaults: List[PlotParams] = [
        PlotParams(plot_layers=PlotLayer.LOSS_CURVE),
        PlotParams(plot_layers=PlotLayer.DIFF_CURVE),
    ]
    return diff, window, plot_defaults


def build_run_identity(
    digest: Optional[str], diff: DiffParams, window: WindowParams
) -> tuple[str, str, dict]:
    """
    Returns (short_hash, full_hash, effective_params) for the input content
    digest plus the effective parameters.
    """
    effective_params = build_effective_parameters(diff, window)
    canonical_payload = {
        "input_digest": digest,
        "effective_parameters": effective_params,
    }
    short_hash, full_hash = canonical_json_hash(canonical_payload)
    return short_hash, full_hash, effective_params


def build_manifest_dict(
    snapshot: WindowSnapshot,
    effective_params: dict,
    hashes: tuple[str, str],
    artifact_paths: list[str],
) -> dict:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "source": snapshot.source_name,
        "input_digest": snapshot.digest,
        "dataset_length": int(snapshot.dataset_length),
        "window": {"start": snapshot.window_start, "end": snapshot.window_end},
        "statistics": snapshot.statistics.as_dict(),
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": {"plot_svgs": artifact_paths},
    }


# -------------------------
# CLI
# -------------------------
def _orchestrate(
    log_path: Path,
    diff: DiffParams,
    window: WindowParams,
    list_plot_params: List[PlotParams],
    output_base: Path = Path("output"),
    render: bool = True,
) -> str:
    """
    Load a file, apply the window, write artifacts and return the report text.
    Split from main() so the CLI can remain thin and tests can call this directly.

    Raises:
        ParseError: If the file is malformed
    """
    # window_manager imports this module; resolve it at call time
    try:
        from .window_manager import WindowManager
    except ImportError:
        from window_manager import WindowManager

    with LossCSVReader(log_path) as reader:
        reader.log_file_info()
        raw_bytes = reader.read_bytes()

    manager = WindowManager(diff)
    if not manager.load_dataset(raw_bytes, source_name=log_path.name):
        raise manager.last_failure.error
    snapshot = manager.set_window(window.start, window.end)

    short_hash, full_hash, effective_params = build_run_identity(
        snapshot.digest, diff, window
    )
    run_output_dir = ensure_run_dir(output_base.parent, output_base.name)

    artifact_paths: list[str] = []
    if render:
        artifact_paths = render_plots(
            list_plot_params, snapshot, diff, short_hash, output_dir=str(run_output_dir)
        )

    manifest = build_manifest_dict(
        snapshot, effective_params, (short_hash, full_hash), artifact_paths
    )
    write_manifest(run_output_dir / f"manifest-{short_hash}.json", manifest)

    report = assemble_text_report(snapshot, diff)
    write_text_report(report, run_output_dir, short_hash)
    return report


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="lossdiff",
        description="Compare two loss traces (step,value_a,value_b CSV) over a window.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also LOSSDIFF_DEBUG=1).",
    )

    g_in = parser.add_argument_group("Input")
    g_in.add_argument(
        "--log-path",
        type=str,
        required=True,
        help="Path to the headerless step,value_a,value_b CSV (required).",
    )

    g_diff = parser.add_argument_group("DiffParams")
    g_diff.add_argument(
        "--epsilon",
        type=float,
        help="Added to value_b when the relative diff is 0/0.",
    )
    g_diff.add_argument("--label-a", type=str, help="Display name of value_a.")
    g_diff.add_argument("--label-b", type=str, help="Display name of value_b.")

    g_win = parser.add_argument_group("WindowParams")
    g_win.add_argument("--start", type=int, help="0-based inclusive window start row.")
    g_win.add_argument("--end", type=int, help="0-based exclusive window end row.")

    g_out = parser.add_argument_group("Output")
    g_out.add_argument(
        "--plot-layers",
        action="append",
        metavar="LAYERS",
        help="Plot to render, e.g. LOSS_CURVE or LOSS_A+DIFF_ABS+LEGEND. Repeatable.",
    )
    g_out.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Directory receiving one timestamped sub-directory per run.",
    )
    g_out.add_argument(
        "--no-plots", action="store_true", help="Skip SVG rendering."
    )
    return parser


def _args_to_params(args) -> tuple[DiffParams, WindowParams, List[PlotParams]]:
    """
    Merge CLI args over defaults to build parameter objects.
    Only override values explicitly provided by user; otherwise keep defaults.
    """
    d_diff, d_window, d_plots = get_default_params()

    epsilon = d_diff.epsilon
    if getattr(args, "epsilon", None) is not None:
        epsilon = float(args.epsilon)
        if not math.isfinite(epsilon):
            raise ValueError(f"Invalid --epsilon: {args.epsilon}")
    diff = DiffParams(
        epsilon=epsilon,
        label_a=getattr(args, "label_a", None) or d_diff.label_a,
        label_b=getattr(args, "label_b", None) or d_diff.label_b,
    )
    window = WindowParams(
        start=getattr(args, "start", None)
        if getattr(args, "start", None) is not None
        else d_window.start,
        end=getattr(args, "end", None)
        if getattr(args, "end", None) is not None
        else d_window.end,
    )

    layer_specs = getattr(args, "plot_layers", None)
    if layer_specs:
        plots = [PlotParams(plot_layers=_parse_plot_layers(s)) for s in layer_specs]
    else:
        plots = d_plots
    return diff, window, plots


def main() -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    import json
    import sys

    argv = sys.argv[1:]

    if "--print-defaults" in argv:
        d_diff, d_window, d_plots = get_default_params()
        payload = {
            "DiffParams": {
                "epsilon": d_diff.epsilon,
                "label_a": d_diff.label_a,
                "label_b": d_diff.label_b,
            },
            "WindowParams": {"start": d_window.start, "end": d_window.end},
            "PlotParams": [
                {
                    "plot_layers": _plot_layers_suffix(pp.plot_layers),
                    "x_min": pp.x_min,
                    "x_max": pp.x_max,
                    "y_min": pp.y_min,
                    "y_max": pp.y_max,
                }
                for pp in d_plots
            ],
        }
        print(json.dumps(payload, indent=2))
        return

    parser = _build_cli_parser()
    args = parser.parse_args(argv)
    debug_mode = bool(
        getattr(args, "debug", False) or os.getenv("LOSSDIFF_DEBUG", "") == "1"
    )
    if debug_mode:
        logger.setLevel(logging.DEBUG)

    try:
        diff, window, plots = _args_to_params(args)
        report = _orchestrate(
            Path(args.log_path).resolve(),
            diff,
            window,
            plots,
            output_base=Path(args.output_dir),
            render=not args.no_plots,
        )
        print(report)
    except (CSVProcessingError, FileNotFoundError, ValueError) as e:
        # Concise, user-facing errors for user-correctable problems.
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        # Unexpected/internal errors: log full exception. Show traceback only when debugging.
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set LOSSDIFF_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
