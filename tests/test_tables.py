import numpy as np
import pandas as pd
import pytest

from synmeta.errors import AmbiguousReshapeError
from synmeta.tables import (
    Aggregation,
    DerivationRule,
    derive_column,
    group_summarize,
    left_join,
    long_to_wide,
    widen_to_long,
)


def test_derive_proportion():
    df = pd.DataFrame({"hierarchy_tokens_nots_novs": [4, 9], "total": [20, 10]})
    out = derive_column(df, DerivationRule("prop_red", "hierarchy_tokens_nots_novs", "total"))
    assert out["prop_red"].tolist() == pytest.approx([0.2, 0.9])
    # Input is not mutated
    assert "prop_red" not in df.columns


def test_derive_zero_or_missing_denominator_is_missing_row_only():
    df = pd.DataFrame({"n": [1, 2, 3, None], "d": [0, 4, None, 5]})
    out = derive_column(df, DerivationRule("r", "n", "d"))
    assert np.isnan(out.loc[0, "r"])
    assert out.loc[1, "r"] == pytest.approx(0.5)
    assert np.isnan(out.loc[2, "r"])
    assert np.isnan(out.loc[3, "r"])


def test_derive_non_numeric_operand_is_missing():
    df = pd.DataFrame({"n": ["4", "x"], "d": [2, 2]})
    out = derive_column(df, DerivationRule("r", "n", "d"))
    assert out.loc[0, "r"] == pytest.approx(2.0)
    assert np.isnan(out.loc[1, "r"])


def test_derive_other_operations_and_errors():
    df = pd.DataFrame({"a": [2, 3], "b": [5, 7]})
    assert derive_column(df, DerivationRule("s", "a", "b", "add"))["s"].tolist() == [7, 10]
    assert derive_column(df, DerivationRule("s", "a", "b", "subtract"))["s"].tolist() == [-3, -4]
    with pytest.raises(ValueError):
        derive_column(df, DerivationRule("s", "a", "b", "power"))
    with pytest.raises(KeyError):
        derive_column(df, DerivationRule("s", "a", "missing"))


def _wide():
    return pd.DataFrame({"participant": ["p1", "p2"], "a": [1, 2], "b": [3, 4]})


def test_widen_to_long_row_major():
    long_df = widen_to_long(_wide(), ["participant"], ["a", "b"], "item", "response")
    assert list(long_df.columns) == ["participant", "item", "response"]
    assert long_df["participant"].tolist() == ["p1", "p1", "p2", "p2"]
    assert long_df["item"].tolist() == ["a", "b", "a", "b"]
    assert long_df["response"].tolist() == [1, 3, 2, 4]


def test_reshape_round_trip():
    wide = _wide()
    long_df = widen_to_long(wide, ["participant"], ["a", "b"], "item", "response")
    back = long_to_wide(long_df, ["participant"], "item", "response")
    pd.testing.assert_frame_equal(back, wide, check_dtype=False)


def test_long_to_wide_fills_absent_pairs_with_missing():
    long_df = pd.DataFrame(
        {"id": ["x", "x", "y"], "name": ["a", "b", "a"], "value": [1.0, 2.0, 3.0]}
    )
    wide = long_to_wide(long_df, ["id"], "name", "value")
    assert wide["id"].tolist() == ["x", "y"]
    assert wide["a"].tolist() == [1.0, 3.0]
    assert np.isnan(wide.loc[1, "b"])


def test_long_to_wide_duplicate_key_is_ambiguous():
    long_df = pd.DataFrame({"id": ["x", "x"], "name": ["a", "a"], "value": [1, 2]})
    with pytest.raises(AmbiguousReshapeError):
        long_to_wide(long_df, ["id"], "name", "value")


def test_widen_to_long_rejects_clashing_names():
    with pytest.raises(ValueError):
        widen_to_long(_wide(), ["participant"], ["a"], "participant", "response")


def test_left_join_preserves_left_rows_and_order():
    left = pd.DataFrame({"item": ["c", "a", "b"], "rating": [1, 2, 3]})
    right = pd.DataFrame({"stimulus": ["a", "b"], "cosine": [0.1, 0.2]})
    out = left_join(left, right, ("item", "stimulus"))
    assert out["item"].tolist() == ["c", "a", "b"]
    assert "stimulus" not in out.columns
    assert np.isnan(out.loc[0, "cosine"])
    assert out["cosine"].tolist()[1:] == [0.1, 0.2]


def test_left_join_duplicate_right_keys_fan_out():
    left = pd.DataFrame({"item": ["a", "b"]})
    right = pd.DataFrame({"item": ["a", "a", "b"], "tag": ["x", "y", "z"]})
    out = left_join(left, right, "item")
    # |output| = sum over left rows of max(1, matches)
    assert len(out) == 3
    assert out["tag"].tolist() == ["x", "y", "z"]


def test_left_join_column_collision_gets_suffix():
    left = pd.DataFrame({"item": ["a"], "score": [1]})
    right = pd.DataFrame({"item": ["a"], "score": [9]})
    out = left_join(left, right, "item")
    assert out["score"].tolist() == [1]
    assert out["score_right"].tolist() == [9]


def test_left_join_missing_key_column():
    with pytest.raises(KeyError):
        left_join(pd.DataFrame({"a": [1]}), pd.DataFrame({"b": [1]}), "a")


def test_group_summarize_count_and_mean():
    df = pd.DataFrame({"item": ["x", "x", "y"], "rating": [1.0, np.nan, 3.0]})
    out = group_summarize(
        df,
        ["item"],
        [Aggregation("rating", "count", "n_ratings"), ("rating", "mean", "mean_rating")],
    )
    assert out["item"].tolist() == ["x", "y"]
    assert out["n_ratings"].sum() == len(df)
    assert out["mean_rating"].tolist() == pytest.approx([1.0, 3.0])


def test_group_summarize_all_missing_group_mean_is_missing():
    df = pd.DataFrame({"g": ["a", "b"], "v": [np.nan, 2.0]})
    out = group_summarize(df, ["g"], [("v", "mean", "m")])
    assert np.isnan(out.loc[0, "m"])
    assert out.loc[1, "m"] == pytest.approx(2.0)


def test_group_summarize_unknown_function():
    df = pd.DataFrame({"g": ["a"], "v": [1]})
    with pytest.raises(ValueError):
        group_summarize(df, ["g"], [("v", "median", "m")])
