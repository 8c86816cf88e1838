"""Gradio UI wrapper for the loss-diff engine.

Upload a step,value_a,value_b CSV, then narrow the statistics window without
re-uploading. Each browser session owns its own WindowManager.
"""

import os
import shutil
import time
from pathlib import Path
from typing import Any, Optional

# Backend selection is enforced centrally in lossdiff.main at import-time.
# Do NOT set or override MPLBACKEND here.

try:
    from .csv_processor import CSVProcessingError, LossCSVReader
    from .main import (
        DiffParams,
        LoadFailure,
        WindowParams,
        WindowSnapshot,
        assemble_text_report,
        build_manifest_dict,
        build_run_identity,
        get_default_params,
        render_plots,
    )
    from .utils import create_zip_async, ensure_run_dir, write_manifest, write_text_report
    from .window_manager import WindowEvent, WindowManager
except ImportError:
    from csv_processor import CSVProcessingError, LossCSVReader  # type: ignore
    from main import (  # type: ignore
        DiffParams,
        LoadFailure,
        WindowParams,
        WindowSnapshot,
        assemble_text_report,
        build_manifest_dict,
        build_run_identity,
        get_default_params,
        render_plots,
    )
    from utils import (  # type: ignore
        create_zip_async,
        ensure_run_dir,
        write_manifest,
        write_text_report,
    )
    from window_manager import WindowEvent, WindowManager  # type: ignore

import logging
import traceback

import gradio as gr

logger = logging.getLogger(__name__)

RUN_ROOT = Path("output_gradio")


class DrawSession:
    """
    One browser session and its WindowManager.

    Handlers render the event the manager returns for their own call, so a
    concurrent upload or Replot in the same session never swaps results.
    """

    def __init__(self, params: Optional[DiffParams] = None) -> None:
        self.manager = WindowManager(params)


def _parse_optional_int(val: Optional[float]) -> Optional[int]:
    if val is None:
        return None
    try:
        # Accept 0 as a valid index. Treat empty strings or unparseable values as None.
        s = val
        if isinstance(val, str):
            s = val.strip()
            if s == "":
                return None
        # Convert via float to accept numeric inputs from Gradio (which may provide floats)
        return int(float(s))
    except (TypeError, ValueError, OverflowError):
        return None


def _resolve_upload_path(file_obj: Any) -> Optional[str]:
    # gr.File returns a path string, a dict with "name"/"path", or a tempfile wrapper depending on version
    if file_obj is None:
        return None
    if isinstance(file_obj, dict):
        return file_obj.get("path") or file_obj.get("name") or file_obj.get("tmp_path")
    if isinstance(file_obj, str):
        return file_obj
    return getattr(file_obj, "name", None)


def _prune_old_runs(run_root: Path, keep: Optional[int] = None) -> None:
    """
    Retention helper: keep only the newest `keep` subdirectories under `run_root`.

    - Timestamped run directories (YYYYmmddTHHMMSS) are ordered by name; anything
      else falls back to mtime ordering.
    - keep defaults to LOSSDIFF_GRADIO_RETENTION_KEEP (10); keep <= 0 disables pruning.
    - Symlinks and paths resolving outside run_root are never deleted.
    - Deletion failures are logged at WARNING and retried on a future run.
    """
    if keep is None:
        try:
            keep = int(os.getenv("LOSSDIFF_GRADIO_RETENTION_KEEP", "10"))
        except ValueError:
            keep = 10
    if keep <= 0:
        logger.debug(f"retention keep <=0 ({keep}) -> skipping prune")
        return

    if not run_root.is_dir():
        return

    subdirs = [p for p in run_root.iterdir() if p.is_dir()]
    if len(subdirs) <= keep:
        return

    def _looks_like_run_ts(name: str) -> bool:
        return (
            len(name) >= 15
            and name[0:8].isdigit()
            and name[8] == "T"
            and name[9:15].isdigit()
        )

    # Newest first
    if all(_looks_like_run_ts(p.name) for p in subdirs):
        subdirs_sorted = sorted(subdirs, key=lambda p: p.name, reverse=True)
    else:
        subdirs_sorted = sorted(subdirs, key=lambda p: p.stat().st_mtime, reverse=True)

    root_resolved = run_root.resolve()
    for d in subdirs_sorted[keep:]:
        if d.is_symlink():
            logger.warning(f"Skipping symlink during prune: {d}")
            continue
        try:
            inside = os.path.commonpath([str(root_resolved), str(d.resolve())]) == str(
                root_resolved
            )
        except ValueError:
            inside = False
        if not inside:
            logger.warning(f"Skipping prune of {d} - resolved outside run_root")
            continue
        try:
            shutil.rmtree(d)
            logger.info(f"Pruned old run dir: {d}")
        except OSError as e:
            logger.warning(f"Failed to prune {d}: {e}")


def _render_snapshot(
    snapshot: WindowSnapshot, params: DiffParams, run_root: Path = RUN_ROOT
) -> tuple[str, Optional[str], str]:
    """
    Write plots, report and manifest for a snapshot into a fresh run directory.

    Returns (html_embed, zip_path, report_text). The ZIP is written by a
    background thread and may appear shortly after this returns.
    """
    t0 = time.time()
    _, _, d_plots = get_default_params()
    window = WindowParams(start=snapshot.window_start, end=snapshot.window_end)
    short_hash, full_hash, effective_params = build_run_identity(
        snapshot.digest, params, window
    )

    run_dir = ensure_run_dir(run_root.parent, run_root.name)
    report_text = assemble_text_report(snapshot, params)
    report_path = write_text_report(report_text, run_dir, short_hash)

    svg_paths = [
        Path(p)
        for p in render_plots(d_plots, snapshot, params, short_hash, output_dir=str(run_dir))
    ]
    logger.debug(f"render_plots returned {svg_paths}")

    manifest_path = run_dir / f"manifest-{short_hash}.json"
    write_manifest(
        manifest_path,
        build_manifest_dict(
            snapshot,
            effective_params,
            (short_hash, full_hash),
            [str(p) for p in svg_paths],
        ),
    )

    _prune_old_runs(run_root)

    zip_path = str(run_dir / f"plots-{short_hash}.zip")
    create_zip_async(zip_path, [*svg_paths, report_path, manifest_path])

    parts = []
    for svg_path in svg_paths:
        try:
            txt = svg_path.read_text(encoding="utf-8")
        except OSError:
            txt = f"<!-- Failed to read {svg_path} -->"
        parts.append(f"<div>{txt}</div>")

    logger.info(f"_render_snapshot COMPLETE (duration_ms={(time.time() - t0) * 1000:.1f})")
    return "\n".join(parts), zip_path, report_text


def _status_for(event: Optional[WindowEvent]) -> str:
    if event is None:
        return "Upload a CSV file to begin."
    if isinstance(event, LoadFailure):
        name = event.source_name or "input"
        return f"Error: failed to load {name}: {event.error}. The previous dataset is still shown."
    return (
        f"{event.source_name or 'dataset'}: {event.dataset_length} rows, "
        f"window [{event.window_start}, {event.window_end})"
    )


def _load_file(file_obj: Any, session: Optional[DrawSession]):
    """
    Upload handler. Returns
    (status, report, html, zip, start_value, end_value, session).
    """
    session = session or DrawSession()
    path = _resolve_upload_path(file_obj)
    logger.info(f"_load_file START - uploaded_file_path={path!r}")
    if not path:
        msg = "Error: No CSV file uploaded. Please upload a CSV file."
        return msg, gr.update(), gr.update(), gr.update(), gr.update(), gr.update(), session

    try:
        with LossCSVReader(path) as reader:
            reader.log_file_info()
            raw_bytes = reader.read_bytes()
    except (CSVProcessingError, FileNotFoundError) as e:
        msg = f"Error: {e}"
        return msg, gr.update(), gr.update(), gr.update(), gr.update(), gr.update(), session

    event = session.manager.load_dataset_event(raw_bytes, source_name=Path(path).name)
    if event is None:
        msg = f"{Path(path).name} was superseded by a newer upload."
        return msg, gr.update(), gr.update(), gr.update(), gr.update(), gr.update(), session
    if not isinstance(event, WindowSnapshot):
        # Failed load: dataset, window and displayed charts stay as they were.
        return (
            _status_for(event),
            gr.update(),
            gr.update(),
            gr.update(),
            gr.update(),
            gr.update(),
            session,
        )

    try:
        html, zip_path, report = _render_snapshot(event, session.manager.params)
    except Exception as e:
        tb = traceback.format_exc()
        logger.warning(f"Rendering failed: {e}\n{tb}")
        msg = f"Error rendering results\n{e}"
        return msg, msg, gr.update(), None, event.window_start, event.window_end, session

    return (
        _status_for(event),
        report,
        html,
        zip_path,
        event.window_start,
        event.window_end,
        session,
    )


def _replot(start: Optional[float], end: Optional[float], session: Optional[DrawSession]):
    """
    Replot handler: stage the range controls, then apply them.
    Returns (status, report, html, zip, start_value, end_value, session).
    """
    session = session or DrawSession()
    manager = session.manager
    manager.set_window_start(_parse_optional_int(start))
    manager.set_window_end(_parse_optional_int(end))
    snapshot = manager.trigger_replot()
    if snapshot is None:
        msg = "Upload a CSV file before selecting a window."
        return msg, gr.update(), gr.update(), gr.update(), gr.update(), gr.update(), session

    try:
        html, zip_path, report = _render_snapshot(snapshot, manager.params)
    except Exception as e:
        tb = traceback.format_exc()
        logger.warning(f"Rendering failed: {e}\n{tb}")
        msg = f"Error rendering results\n{e}"
        return msg, msg, gr.update(), None, snapshot.window_start, snapshot.window_end, session

    # Echo the clamped bounds back into the controls
    return (
        _status_for(snapshot),
        report,
        html,
        zip_path,
        snapshot.window_start,
        snapshot.window_end,
        session,
    )


def _build_ui():
    with gr.Blocks() as demo:
        gr.Markdown("### Draw Loss Curve")
        gr.HTML("""
<style>
  /* Monospace report box with vertical resize */
  #report_box textarea {
    font-family: "SF Mono", "Menlo", "Monaco", "Consolas", "Liberation Mono", "Courier New", monospace;
    font-size: 13px;
    line-height: 1.3;
    resize: vertical;
    min-height: 200px;
    max-height: 800px;
  }
</style>
""")
        session = gr.State(None)
        with gr.Row():
            file_input = gr.File(
                label="Drag and Drop CSV Files (step,value_a,value_b; no header)",
                file_types=[".csv"],
                type="filepath",
            )
        with gr.Row():
            start_input = gr.Number(
                label="window start (row, inclusive)",
                value=None,
                precision=0,
                info="leave blank to start at the first row",
            )
            end_input = gr.Number(
                label="window end (row, exclusive)",
                value=None,
                precision=0,
                info="leave blank to end at the last row",
            )
            replot_button = gr.Button("Replot")
        status = gr.Markdown(_status_for(None))
        report_box = gr.Textbox(
            value="", lines=20, interactive=False, elem_id="report_box", label="Report"
        )
        output_html = gr.HTML(label="Charts")
        output_zip = gr.File(label="Download ZIP")

        outputs = [
            status,
            report_box,
            output_html,
            output_zip,
            start_input,
            end_input,
            session,
        ]
        file_input.upload(_load_file, inputs=[file_input, session], outputs=outputs)
        replot_button.click(
            _replot, inputs=[start_input, end_input, session], outputs=outputs
        )

    return demo


if __name__ == "__main__":
    demo = _build_ui()
    demo.launch()
