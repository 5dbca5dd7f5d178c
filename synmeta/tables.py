"""
Table transformations: derived columns, wide/long reshaping, left joins and
group-wise summaries.

Every function takes a DataFrame and returns a new one; inputs are never
mutated so re-running a stage on the same input yields the same output.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .errors import AmbiguousReshapeError

logger = logging.getLogger(__name__)


# -------------------------
# Derived columns
# -------------------------
_OPERATIONS: Dict[str, Callable[[pd.Series, pd.Series], pd.Series]] = {
    "divide": lambda a, b: a / b.where(b != 0),
    "multiply": lambda a, b: a * b,
    "add": lambda a, b: a + b,
    "subtract": lambda a, b: a - b,
}


@dataclass(frozen=True)
class DerivationRule:
    """
    output = numerator <operation> denominator

    `operation` is one of: divide, multiply, add, subtract.
    """

    output: str
    numerator: str
    denominator: str
    operation: str = "divide"


def derive_column(df: pd.DataFrame, rule: DerivationRule) -> pd.DataFrame:
    """
    Add rule.output computed row-wise from two existing columns.

    A zero denominator, a missing operand, or an operand that is not numeric
    yields a missing value for that row only.
    """
    if rule.operation not in _OPERATIONS:
        raise ValueError(
            f"Unknown operation '{rule.operation}'; expected one of {sorted(_OPERATIONS)}"
        )
    for col in (rule.numerator, rule.denominator):
        if col not in df.columns:
            raise KeyError(f"Column '{col}' not found; available: {list(df.columns)}")

    a = pd.to_numeric(df[rule.numerator], errors="coerce").astype("float64")
    b = pd.to_numeric(df[rule.denominator], errors="coerce").astype("float64")
    result = _OPERATIONS[rule.operation](a, b)
    # inf can still arise from overflow; keep the column finite-or-missing
    result = result.where(np.isfinite(result), np.nan)

    n_missing = int(result.isna().sum())
    if n_missing:
        logger.info(
            "Derived column '%s': %d of %d rows missing (zero/missing operands)",
            rule.output,
            n_missing,
            len(result),
        )
    return df.assign(**{rule.output: result})


# -------------------------
# Reshaping
# -------------------------
def widen_to_long(
    df: pd.DataFrame,
    id_columns: Sequence[str],
    value_columns: Sequence[str],
    name_column: str = "name",
    value_column: str = "value",
) -> pd.DataFrame:
    """
    Wide -> long. For each input row and each value column (in the given order)
    emit one row carrying the id columns, the value column's name and its value.

    Output row count = len(df) * len(value_columns), row-major.
    """
    id_columns = list(id_columns)
    value_columns = list(value_columns)
    missing = [c for c in id_columns + value_columns if c not in df.columns]
    if missing:
        raise KeyError(f"Columns not found: {missing}")
    clashes = {name_column, value_column} & set(id_columns)
    if clashes or name_column == value_column:
        raise ValueError(
            f"name_column/value_column must be distinct from each other and from id columns: {sorted(clashes)}"
        )

    if not value_columns:
        raise ValueError("widen_to_long requires at least one value column")

    n_rows = len(df)
    n_values = len(value_columns)
    positions = np.repeat(np.arange(n_rows), n_values)

    long_df = df[id_columns].iloc[positions].reset_index(drop=True)
    long_df[name_column] = np.tile(np.array(value_columns, dtype=object), n_rows)
    # Column-major concat keeps a common dtype; reorder to row-major afterwards
    column_major = pd.concat([df[col] for col in value_columns], ignore_index=True)
    row_major = (np.arange(n_rows)[:, None] + np.arange(n_values)[None, :] * n_rows).reshape(-1)
    long_df[value_column] = column_major.iloc[row_major].reset_index(drop=True)
    return long_df


def long_to_wide(
    df: pd.DataFrame,
    id_columns: Sequence[str],
    name_column: str = "name",
    value_column: str = "value",
) -> pd.DataFrame:
    """
    Long -> wide, the inverse of widen_to_long.

    Rows follow first-appearance order of the id combinations and value columns
    follow first-appearance order of the names. Id/name pairs absent from the
    input become missing cells.

    Raises:
      AmbiguousReshapeError: if any (id columns, name) pair occurs more than once.
    """
    id_columns = list(id_columns)
    key_columns = id_columns + [name_column]
    missing = [c for c in key_columns + [value_column] if c not in df.columns]
    if missing:
        raise KeyError(f"Columns not found: {missing}")

    dup_mask = df.duplicated(subset=key_columns, keep=False)
    if dup_mask.any():
        first = df.loc[dup_mask, key_columns].iloc[0].to_dict()
        raise AmbiguousReshapeError(
            f"{int(dup_mask.sum())} rows share a reshape key; first duplicated key: {first}"
        )

    names = list(pd.unique(df[name_column]))
    row_keys = df[id_columns].drop_duplicates()

    wide = df.set_index(key_columns)[value_column].unstack(name_column)
    if len(id_columns) == 1:
        order = pd.Index(row_keys[id_columns[0]], name=id_columns[0])
    else:
        order = pd.MultiIndex.from_frame(row_keys)
    wide = wide.reindex(index=order, columns=names)
    wide.columns.name = None
    return wide.reset_index().infer_objects()


# -------------------------
# Joins
# -------------------------
JoinKeys = Union[str, Tuple[str, str], Sequence[Union[str, Tuple[str, str]]]]


def _normalize_keys(keys: JoinKeys) -> List[Tuple[str, str]]:
    if isinstance(keys, str):
        return [(keys, keys)]
    if isinstance(keys, tuple) and len(keys) == 2 and all(isinstance(k, str) for k in keys):
        return [keys]
    pairs: List[Tuple[str, str]] = []
    for key in keys:
        if isinstance(key, str):
            pairs.append((key, key))
        else:
            left_col, right_col = key
            pairs.append((left_col, right_col))
    if not pairs:
        raise ValueError("At least one join key is required")
    return pairs


def left_join(
    left: pd.DataFrame,
    right: pd.DataFrame,
    keys: JoinKeys,
    suffix: str = "_right",
) -> pd.DataFrame:
    """
    Left outer join preserving the left table's row order.

    keys: a column name shared by both tables, a (left_col, right_col) pair, or
    a list of either.

    Behavior:
    - Left rows without a match get missing values in the right-only columns.
    - Duplicate keys in `right` fan out: one output row per matching right row.
      This is logged as a warning but not collapsed.
    - Non-key column name collisions keep the left name and rename the right
      column with `suffix`.
    - When a key has different names on each side, the right key column is
      dropped since it equals the left key on matched rows.
    """
    pairs = _normalize_keys(keys)
    left_on = [lk for lk, _ in pairs]
    right_on = [rk for _, rk in pairs]
    missing_left = [c for c in left_on if c not in left.columns]
    missing_right = [c for c in right_on if c not in right.columns]
    if missing_left or missing_right:
        raise KeyError(
            f"Join key columns not found: left={missing_left} right={missing_right}"
        )

    dup_right = right.duplicated(subset=right_on, keep=False)
    if dup_right.any():
        logger.warning(
            "Right table has %d rows with duplicate join keys %s; matching left rows will fan out",
            int(dup_right.sum()),
            right_on,
        )

    collisions = {
        col: f"{col}{suffix}"
        for col in right.columns
        if col not in right_on and col in left.columns
    }
    right_work = right.rename(columns=collisions)

    indicator = "__join_source"
    merged = pd.merge(
        left,
        right_work,
        how="left",
        left_on=left_on,
        right_on=right_on,
        sort=False,
        suffixes=("", suffix),
        indicator=indicator,
    )
    unmatched = int((merged[indicator] == "left_only").sum())
    if unmatched:
        logger.info("left_join: %d of %d left rows had no match", unmatched, len(left))

    drop_cols = [indicator] + [
        rk for lk, rk in pairs if rk != lk and rk in merged.columns and rk not in left.columns
    ]
    return merged.drop(columns=drop_cols).reset_index(drop=True)


# -------------------------
# Aggregation
# -------------------------
@dataclass(frozen=True)
class Aggregation:
    """
    One summary column: output = function(source) per group.

    function:
      - "count": number of rows in the group, including rows whose source value
        is missing.
      - "mean": mean of the non-missing source values (missing if none).
    """

    source: str
    function: str
    output: str


_AGG_FUNCTIONS = ("count", "mean")


def group_summarize(
    df: pd.DataFrame,
    group_columns: Sequence[str],
    aggregations: Sequence[Union[Aggregation, Tuple[str, str, str]]],
) -> pd.DataFrame:
    """
    One row per distinct combination of group_columns, in order of first
    appearance, with one column per aggregation.
    """
    group_columns = list(group_columns)
    aggs = [a if isinstance(a, Aggregation) else Aggregation(*a) for a in aggregations]
    for agg in aggs:
        if agg.function not in _AGG_FUNCTIONS:
            raise ValueError(
                f"Unknown aggregation function '{agg.function}'; expected one of {list(_AGG_FUNCTIONS)}"
            )
    missing = [c for c in group_columns + [s.source for s in aggs] if c not in df.columns]
    if missing:
        raise KeyError(f"Columns not found: {sorted(set(missing))}")

    grouped = df.groupby(group_columns, sort=False, dropna=False, observed=True)
    columns: list[pd.Series] = []
    for agg in aggs:
        if agg.function == "count":
            series = grouped.size()
        else:
            values = pd.to_numeric(df[agg.source], errors="coerce").astype("float64")
            work = df[group_columns].assign(__value=values)
            series = work.groupby(group_columns, sort=False, dropna=False, observed=True)[
                "__value"
            ].mean()
        columns.append(series.rename(agg.output))

    if columns:
        out = pd.concat(columns, axis=1)
    else:
        out = grouped.size().to_frame("__rows").iloc[:, 0:0]
    return out.reset_index()
