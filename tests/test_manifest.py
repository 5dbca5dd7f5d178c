import json
from pathlib import Path

from synmeta.main import (
    HierarchyParams,
    RenderParams,
    build_manifest_dict,
    build_run_identity,
)
from synmeta.utils import (
    build_effective_parameters,
    canonical_json_hash,
    utc_timestamp_seconds,
    write_manifest,
)


def test_build_manifest_dict_fields():
    manifest = build_manifest_dict(
        analysis="hierarchy",
        abs_inputs={"data_path": "/test/path/corpus.csv"},
        counts={"total_input_rows": 100, "missing_proportion_rows": 3},
        effective_params={"analysis": {"delimiter": ","}},
        hashes=("testhash", "fulltesthash"),
        artifact_paths=["/out/hierarchy_density.png"],
    )
    assert manifest["version"] == "1"
    assert manifest["analysis"] == "hierarchy"
    assert manifest["counts"] == {"total_input_rows": 100, "missing_proportion_rows": 3}
    assert manifest["canonical_hash"] == "fulltesthash"
    assert manifest["canonical_hash_short"] == "testhash"
    assert manifest["artifacts"] == {"charts": ["/out/hierarchy_density.png"]}
    assert manifest["timestamp_utc"].endswith("Z")


def test_run_identity_is_stable_and_parameter_sensitive(tmp_path: Path):
    data = tmp_path / "corpus.csv"
    data.write_text("a\n1\n", encoding="utf-8")
    params = HierarchyParams(data_path=data)

    _, short_a, full_a, effective = build_run_identity(params, RenderParams())
    _, short_b, full_b, _ = build_run_identity(params, RenderParams(output_dir=tmp_path / "elsewhere"))
    assert (short_a, full_a) == (short_b, full_b)
    assert len(short_a) == 8 and full_a.startswith(short_a)
    assert "output_dir" not in effective["render"]

    _, short_c, _, _ = build_run_identity(HierarchyParams(data_path=data, chance_level=0.4), RenderParams())
    assert short_c != short_a


def test_canonical_hash_ignores_key_order():
    assert canonical_json_hash({"a": 1, "b": [1, 2]}) == canonical_json_hash({"b": [1, 2], "a": 1})


def test_effective_parameters_are_json_ready(tmp_path: Path):
    params = HierarchyParams(data_path=tmp_path / "x.csv")
    effective = build_effective_parameters(analysis=params)
    text = json.dumps(effective)
    assert effective["analysis"]["data_path"].endswith("/x.csv")
    assert effective["analysis"]["model_path"] is None
    assert "coefficient_labels" in text


def test_write_manifest_round_trip(tmp_path: Path):
    path = tmp_path / "manifest.json"
    write_manifest(path, {"name": "ratings", "timestamp_utc": utc_timestamp_seconds()})
    loaded = json.loads(path.read_text(encoding="utf-8"))
    assert loaded["name"] == "ratings"
