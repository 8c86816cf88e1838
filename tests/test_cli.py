import json
import sys
from pathlib import Path

import pytest

from lossdiff.main import (
    DiffParams,
    PlotLayer,
    _args_to_params,
    _build_cli_parser,
    _orchestrate,
    get_default_params,
    main,
)


def make_temp_csv(tmp_path: Path, text: str, name: str = "loss.csv") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


def run_main(monkeypatch, argv: list[str]):
    monkeypatch.setattr(sys, "argv", ["lossdiff", *argv])
    main()


def test_print_defaults(monkeypatch, capsys):
    run_main(monkeypatch, ["--print-defaults"])
    payload = json.loads(capsys.readouterr().out)
    assert payload["DiffParams"] == {"epsilon": 1e-8, "label_a": "XPU", "label_b": "GPU"}
    assert payload["WindowParams"] == {"start": None, "end": None}
    assert [p["plot_layers"] for p in payload["PlotParams"]] == [
        "LOSS_CURVE",
        "DIFF_CURVE",
    ]


def test_args_to_params_overrides_only_given_values():
    parser = _build_cli_parser()
    args = parser.parse_args(
        [
            "--log-path",
            "x.csv",
            "--start",
            "2",
            "--label-b",
            "CUDA",
            "--plot-layers",
            "LOSS_A+LEGEND",
        ]
    )
    diff, window, plots = _args_to_params(args)
    assert diff == DiffParams(label_b="CUDA")
    assert (window.start, window.end) == (2, None)
    assert [p.plot_layers for p in plots] == [PlotLayer.LOSS_A | PlotLayer.LEGEND]


def test_args_to_params_rejects_non_finite_epsilon():
    args = _build_cli_parser().parse_args(["--log-path", "x.csv", "--epsilon", "inf"])
    with pytest.raises(ValueError):
        _args_to_params(args)


def test_cli_run_prints_report_and_writes_artifacts(tmp_path, monkeypatch, capsys):
    csv_path = make_temp_csv(tmp_path, "1,10,8\n2,9,9\n3,5,10\n")
    out_dir = tmp_path / "out"
    run_main(
        monkeypatch,
        ["--log-path", str(csv_path), "--end", "2", "--output-dir", str(out_dir)],
    )
    report = capsys.readouterr().out
    assert "Window: [0, 2) of 3 rows" in report

    run_dirs = [p for p in out_dir.iterdir() if p.is_dir()]
    assert len(run_dirs) == 1
    names = sorted(p.name for p in run_dirs[0].iterdir())
    assert any(n.startswith("manifest-") for n in names)
    assert any(n.startswith("report-") for n in names)
    assert len([n for n in names if n.endswith(".svg")]) == 2


def test_cli_parse_error_exits_2(tmp_path, monkeypatch, capsys):
    csv_path = make_temp_csv(tmp_path, "1,10,8\n2,oops,9\n")
    with pytest.raises(SystemExit) as excinfo:
        run_main(
            monkeypatch,
            ["--log-path", str(csv_path), "--output-dir", str(tmp_path / "out")],
        )
    assert excinfo.value.code == 2
    err = capsys.readouterr().err
    assert "row 1" in err
    assert "value_a" in err


def test_cli_missing_file_exits_2(tmp_path, monkeypatch):
    with pytest.raises(SystemExit) as excinfo:
        run_main(monkeypatch, ["--log-path", str(tmp_path / "missing.csv")])
    assert excinfo.value.code == 2


def test_orchestrate_without_plots(tmp_path):
    csv_path = make_temp_csv(tmp_path, "1,1,2\n2,3,2\n")
    diff, window, plots = get_default_params()
    report = _orchestrate(
        csv_path, diff, window, plots, output_base=tmp_path / "out", render=False
    )
    assert "Statistics (XPU - GPU):" in report
    run_dir = next((tmp_path / "out").iterdir())
    assert not list(run_dir.glob("*.svg"))
