import json
import math
from pathlib import Path

import numpy as np
import pytest

from synmeta.errors import FileAccessError, ParseError, UnmappedCoefficientError
from synmeta.model_summary import (
    OUTPUT_COLUMNS,
    CoefficientEstimate,
    ModelEstimate,
    extract_fixed_effects,
    inverse_logit,
    load_model_estimate,
    resolve_transform,
)


def _estimate() -> ModelEstimate:
    return ModelEstimate.from_mapping(
        {"Intercept": (0.2, 0.1, 0.3), "Cosine": (-1.5, -2.0, -1.0)}
    )


def test_extract_excludes_and_renames():
    df = extract_fixed_effects(
        _estimate(), exclude_patterns=["Intercept"], rename={"Cosine": "Cosine similarity"}
    )
    assert list(df.columns) == OUTPUT_COLUMNS
    assert df.values.tolist() == [["Cosine similarity", -1.5, -2.0, -1.0]]


def test_extract_exclusion_is_case_insensitive_regex():
    estimate = ModelEstimate.from_mapping(
        {"b_Intercept[1]": (0, 0, 0), "b_Intercept[2]": (1, 1, 1), "b_cosine": (2, 1, 3)}
    )
    df = extract_fixed_effects(estimate, exclude_patterns=[r"intercept\["], rename={"b_cosine": "Cosine"})
    assert df["display_name"].tolist() == ["Cosine"]


def test_extract_unmapped_coefficient():
    with pytest.raises(UnmappedCoefficientError) as excinfo:
        extract_fixed_effects(_estimate(), rename={"Cosine": "Cosine similarity"})
    assert excinfo.value.names == ["Intercept"]
    assert "Intercept" in str(excinfo.value)


def test_extract_applies_transform_to_all_bounds():
    df = extract_fixed_effects(
        ModelEstimate.from_mapping({"Intercept": (0.0, -1.0, 1.0)}),
        rename={"Intercept": "Overall"},
        transform=inverse_logit,
    )
    row = df.iloc[0]
    assert row["estimate"] == pytest.approx(0.5)
    assert row["lower"] == pytest.approx(1 / (1 + np.e))
    assert row["upper"] == pytest.approx(1 / (1 + np.exp(-1)))


def test_inverse_logit_and_transform_lookup():
    assert inverse_logit(0) == 0.5
    assert resolve_transform("identity") is None
    assert resolve_transform(None) is None
    assert resolve_transform("inverse_logit") is inverse_logit
    with pytest.raises(ValueError):
        resolve_transform("probit")


def test_from_mapping_rejects_wrong_arity():
    with pytest.raises(ParseError):
        ModelEstimate.from_mapping({"x": (1.0, 2.0)})


def test_load_json_estimate(tmp_path: Path):
    path = tmp_path / "model.json"
    path.write_text(
        json.dumps(
            {
                "coefficients": {
                    "Intercept": {"estimate": 0.2, "lower": 0.1, "upper": 0.3},
                    "Cosine": [-1.5, -2.0, -1.0],
                }
            }
        ),
        encoding="utf-8",
    )
    estimate = load_model_estimate(path)
    assert list(estimate) == ["Intercept", "Cosine"]
    assert estimate["Cosine"] == CoefficientEstimate(-1.5, -2.0, -1.0)


def test_load_brms_style_csv(tmp_path: Path):
    path = tmp_path / "fixef.csv"
    path.write_text(
        ",Estimate,Est.Error,Q2.5,Q97.5\nIntercept,0.2,0.05,0.1,0.3\nCosine,-1.5,0.25,-2.0,-1.0\n",
        encoding="utf-8",
    )
    estimate = load_model_estimate(path)
    assert estimate["Intercept"] == CoefficientEstimate(0.2, 0.1, 0.3)
    assert estimate["Cosine"].lower == -2.0


def test_load_errors(tmp_path: Path):
    with pytest.raises(FileAccessError):
        load_model_estimate(tmp_path / "absent.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(ParseError):
        load_model_estimate(bad)
    other = tmp_path / "model.rds"
    other.write_text("x", encoding="utf-8")
    with pytest.raises(ParseError):
        load_model_estimate(other)


def test_extract_accepts_scalar_only_transform():
    df = extract_fixed_effects(
        ModelEstimate.from_mapping({"Intercept": (0.0, -1.0, 1.0)}),
        rename={"Intercept": "Overall"},
        transform=lambda x: 1 / (1 + math.exp(-x)),
    )
    assert df["estimate"].iloc[0] == pytest.approx(0.5)
    assert df["lower"].iloc[0] == pytest.approx(1 / (1 + math.e))
    assert df["upper"].iloc[0] == pytest.approx(1 / (1 + math.exp(-1)))

    odds = extract_fixed_effects(
        ModelEstimate.from_mapping({"Intercept": (0.0, -1.0, 1.0)}),
        rename={"Intercept": "Overall"},
        transform=math.exp,
    )
    assert odds["estimate"].iloc[0] == pytest.approx(1.0)
    assert odds["upper"].iloc[0] == pytest.approx(math.e)
