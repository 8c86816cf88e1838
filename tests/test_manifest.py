import json

from lossdiff.main import (
    DiffParams,
    WindowParams,
    build_dataset,
    build_manifest_dict,
    build_run_identity,
    slice_window,
    utc_timestamp_seconds,
)
from lossdiff.utils import write_manifest


def _build_test_snapshot():
    """Build a minimal snapshot for manifest testing."""
    dataset = build_dataset("1,10,8\n2,9,9\n3,5,10\n", source_name="log.csv")
    return slice_window(dataset, 0, 2)


def test_build_manifest_dict_single_plot():
    """Test manifest generation with single plot."""
    snapshot = _build_test_snapshot()
    effective_params = {
        "diff": {"epsilon": 1e-8, "label_a": "XPU", "label_b": "GPU"},
        "window": {"start": 0, "end": 2},
    }
    hashes = ("testhash", "fulltesthash")
    artifact_paths = ["plot-testhash-00-LOSS_CURVE.svg"]

    manifest = build_manifest_dict(snapshot, effective_params, hashes, artifact_paths)

    # Check manifest structure
    assert manifest["version"] == "1"
    assert "timestamp_utc" in manifest
    assert manifest["source"] == "log.csv"
    assert manifest["dataset_length"] == 3
    assert manifest["window"] == {"start": 0, "end": 2}
    assert manifest["statistics"]["max_diff"] == {"value": 2.0, "step": 1, "found": True}
    assert manifest["effective_parameters"] == effective_params
    assert manifest["canonical_hash"] == "fulltesthash"
    assert manifest["canonical_hash_short"] == "testhash"
    assert manifest["artifacts"]["plot_svgs"] == artifact_paths


def test_manifest_serializes_sentinels_as_strict_json(tmp_path):
    """Sentinel infinities must not leak into the JSON file as Infinity."""
    snapshot = _build_test_snapshot()
    manifest = build_manifest_dict(snapshot, {}, ("h", "hh"), [])
    path = tmp_path / "manifest.json"
    write_manifest(path, manifest)

    text = path.read_text(encoding="utf-8")
    assert "Infinity" not in text
    loaded = json.loads(text)
    negative = loaded["statistics"]["max_negative_diff"]
    assert negative == {"value": "-inf", "step": 0, "found": False}


def test_run_identity_depends_on_content_and_parameters():
    diff = DiffParams()
    window = WindowParams(start=0, end=2)
    short_a, full_a, params_a = build_run_identity("digest-a", diff, window)
    short_b, full_b, _ = build_run_identity("digest-a", diff, window)
    short_c, full_c, _ = build_run_identity("digest-b", diff, window)
    short_d, _, _ = build_run_identity("digest-a", DiffParams(epsilon=1e-6), window)

    assert (short_a, full_a) == (short_b, full_b)
    assert len(short_a) == 8 and full_a.startswith(short_a)
    assert full_c != full_a
    assert short_d != short_a
    assert params_a["window"] == {"start": 0, "end": 2}
    assert params_a["diff"]["label_a"] == "XPU"


def test_manifest_timestamp_format():
    """Test that manifest timestamp is in correct format."""
    timestamp = utc_timestamp_seconds()
    # Should be ISO-8601 UTC timestamp with seconds precision and Z suffix
    assert timestamp.endswith("Z")
    assert "T" in timestamp
    # Should be parseable
    import datetime

    datetime.datetime.fromisoformat(timestamp[:-1])  # Remove Z for parsing
