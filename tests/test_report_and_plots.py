import types
from pathlib import Path

import pytest

from lossdiff.main import (
    NO_DATA,
    DiffParams,
    Extremum,
    PlotLayer,
    PlotParams,
    _parse_plot_layers,
    _plot_layers_suffix,
    _plot_title,
    assemble_text_report,
    build_dataset,
    format_extremum,
    format_value,
    render_outputs,
    render_plots,
    slice_window,
)

CSV_3 = "1,10,8\n2,9,9\n3,5,10\n"


class CallCounter:
    def __init__(self):
        self.calls = []

    def __call__(self, *args, **kwargs):
        self.calls.append({"args": args, "kwargs": kwargs, "label": kwargs.get("label")})
        return types.SimpleNamespace()


def _snapshot(csv_text: str = CSV_3, start: int = 0, end: int | None = None):
    dataset = build_dataset(csv_text, source_name="loss.csv")
    return slice_window(dataset, start, len(dataset) if end is None else end)


def test_format_value_and_extremum():
    assert format_value(0.25) == "0.25"
    assert format_value(float("inf")) == "∞"
    assert format_value(float("-inf")) == "-∞"
    assert format_value(float("nan")) == "NaN"
    assert format_extremum(Extremum(2.0, 1)) == "2 (step 1)"
    assert format_extremum(Extremum(float("-inf"), 0, found=False)) == NO_DATA


def test_report_sections_and_statistics():
    report = assemble_text_report(_snapshot())
    assert "Source: loss.csv" in report
    assert "Window: [0, 3) of 3 rows" in report
    assert "Statistics (XPU - GPU):" in report
    assert "max_diff" in report and "2 (step 1)" in report
    assert "min_diff" in report and "-5 (step 3)" in report
    # Loss table uses the display labels
    assert "XPU" in report.split("Diff (head/tail):")[0]


def test_report_marks_missing_sign_as_no_data():
    report = assemble_text_report(_snapshot(end=2))
    line = next(l for l in report.splitlines() if "max_negative_diff" in l)
    assert NO_DATA in line


def test_report_empty_window():
    report = assemble_text_report(_snapshot(start=2, end=2))
    assert "Window: [2, 2) of 3 rows" in report
    assert "(no rows)" in report
    assert "Statistics (empty window, all fields zero):" in report
    assert NO_DATA not in report


def test_report_custom_labels_and_nonfinite_note():
    snap = _snapshot("1,2,0\n2,1,1\n")
    report = assemble_text_report(snap, DiffParams(label_a="NPU", label_b="CUDA"))
    assert "Statistics (NPU - CUDA):" in report
    assert "Note: 1 relative diff value(s) are non-finite (CUDA == 0)" in report


def test_report_head_tail_truncates_long_windows():
    csv_text = "".join(f"{i},{i * 0.5},{i * 0.25}\n" for i in range(1, 21))
    report = assemble_text_report(_snapshot(csv_text), n=3)
    assert "..." in report


def test_plot_layers_suffix_and_parse():
    assert _plot_layers_suffix(PlotLayer.LOSS_CURVE) == "LOSS_CURVE"
    assert _plot_layers_suffix(PlotLayer.DIFF_CURVE) == "DIFF_CURVE"
    assert _plot_layers_suffix(PlotLayer.LOSS_A | PlotLayer.DIFF_ABS) == "LOSS_A+DIFF_ABS"
    assert _parse_plot_layers("loss_a+diff_abs") == PlotLayer.LOSS_A | PlotLayer.DIFF_ABS
    assert _parse_plot_layers("EVERYTHING") == PlotLayer.EVERYTHING
    with pytest.raises(ValueError):
        _parse_plot_layers("LOSS_C")


def test_plot_titles():
    assert _plot_title(PlotLayer.LOSS_CURVE) == "Loss Curve"
    assert _plot_title(PlotLayer.DIFF_CURVE) == "Loss Diff Curve"
    assert _plot_title(PlotLayer.EVERYTHING) == "Loss and Diff Curves"


def test_render_outputs_requires_plot_params(tmp_path: Path):
    with pytest.raises(TypeError):
        render_outputs(_snapshot(), DiffParams(), str(tmp_path / "x.svg"), None)


def test_render_outputs_layers_select_curves(monkeypatch, tmp_path: Path):
    import matplotlib.pyplot as plt

    plot_cc = CallCounter()
    legend_cc = CallCounter()
    monkeypatch.setattr(plt, "plot", plot_cc)
    monkeypatch.setattr(plt, "legend", legend_cc)

    render_outputs(
        _snapshot(),
        DiffParams(),
        str(tmp_path / "loss.svg"),
        PlotParams(plot_layers=PlotLayer.LOSS_CURVE),
    )
    assert [c["label"] for c in plot_cc.calls] == ["XPU", "GPU"]
    assert len(legend_cc.calls) == 1

    plot_cc.calls.clear()
    render_outputs(
        _snapshot(),
        DiffParams(),
        str(tmp_path / "diff.svg"),
        PlotParams(plot_layers=PlotLayer.DIFF_ABS | PlotLayer.DIFF_REL),
    )
    assert [c["label"] for c in plot_cc.calls] == ["Abs", "Rel"]


def test_render_plots_writes_svgs(tmp_path: Path):
    plots = [
        PlotParams(plot_layers=PlotLayer.LOSS_CURVE),
        PlotParams(plot_layers=PlotLayer.DIFF_CURVE, y_min=-10, y_max=10),
    ]
    # First row has a zero denominator, so the Rel curve has one undrawable point
    snap = _snapshot("1,2,0\n2,1,1\n3,0,0\n")
    paths = render_plots(plots, snap, DiffParams(), "testhash", str(tmp_path))
    assert [Path(p).name for p in paths] == [
        "plot-testhash-00-LOSS_CURVE.svg",
        "plot-testhash-01-DIFF_CURVE.svg",
    ]
    for p in paths:
        text = Path(p).read_text(encoding="utf-8")
        assert text.lstrip().startswith("<?xml") or "<svg" in text


def test_render_plots_empty_window(tmp_path: Path):
    paths = render_plots(
        [PlotParams(plot_layers=PlotLayer.EVERYTHING)],
        _snapshot(start=1, end=1),
        DiffParams(),
        "empty",
        str(tmp_path),
    )
    assert Path(paths[0]).exists()
