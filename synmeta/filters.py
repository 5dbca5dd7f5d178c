"""
Row filters with standardized diagnostics.

Filters return (kept_rows, excluded_count) and never mutate their input. Each
run records a FilterResult that can be summarized into the log.
"""

import logging
import time
from typing import Any, Callable, List, Optional, Tuple

import numpy as np
import pandas as pd

from .tables import Aggregation, group_summarize

logger = logging.getLogger(__name__)

RowPredicate = Callable[[pd.Series], bool]


class FilterResult:
    """Container for filter operation results and diagnostics."""

    def __init__(self, label: Optional[str] = None) -> None:
        # Identification
        self.label: Optional[str] = label

        # Row counters
        self.original_rows: int = 0
        self.filtered_rows: int = 0
        self.excluded_rows: int = 0

        # Diagnostics
        self.events: list[str] = []
        self.metrics: dict[str, int | float | str] = {}
        self.skipped_reason: Optional[str] = None

        # Timing
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.elapsed_ms: Optional[float] = None

    # Timing helpers
    def start(self) -> None:
        self.started_at = time.perf_counter()

    def stop(self) -> None:
        self.finished_at = time.perf_counter()
        if self.started_at is not None:
            self.elapsed_ms = (self.finished_at - self.started_at) * 1000.0

    # Logging helpers
    def add_event(self, message: str) -> None:
        """Add an info-level event message."""
        self.events.append(message)
        logger.info(message)

    def add_metric(self, name: str, value: int | float | str) -> None:
        """Attach a named metric."""
        self.metrics[name] = value

    def set_skipped(self, reason: str, verbose: bool = False) -> None:
        """Mark the step as skipped with a reason."""
        self.skipped_reason = reason
        if verbose:
            self.add_event(f"Step skipped: {reason}")

    def summarize(self) -> str:
        """Produce a concise summary string for diagnostics."""
        lbl = f"{self.label} " if self.label else ""
        parts = [f"{lbl}result: {self.original_rows} → {self.filtered_rows}"]
        if self.excluded_rows:
            parts.append(f"excluded_rows={self.excluded_rows}")
        if self.skipped_reason:
            parts.append(f"skipped={self.skipped_reason}")
        if self.elapsed_ms is not None:
            parts.append(f"elapsed_ms={self.elapsed_ms:.1f}")
        if self.metrics:
            parts.append(f"metrics={self.metrics}")
        return " | ".join(parts)


def filter_rows(
    df: pd.DataFrame,
    predicate: RowPredicate,
    label: Optional[str] = None,
    verbose: bool = False,
    result: Optional[FilterResult] = None,
) -> Tuple[pd.DataFrame, int]:
    """
    Keep the rows for which predicate(row) is truthy.

    The predicate receives each row as a pandas Series indexed by column name.
    Returns an independent copy of the kept rows (original index labels are
    preserved) and the number of excluded rows. Pass `result` to collect the
    row counts and timing into a caller-owned FilterResult.
    """
    result = result if result is not None else FilterResult(label=label or "filter_rows")
    result.start()
    result.original_rows = len(df)

    if df.empty:
        result.set_skipped("empty dataframe - no filtering performed")
        result.stop()
        if verbose:
            logger.info(result.summarize())
        return df.copy(), 0

    keep = np.fromiter((bool(predicate(row)) for _, row in df.iterrows()), dtype=bool, count=len(df))
    df_kept = df.loc[keep].copy()

    result.filtered_rows = len(df_kept)
    result.excluded_rows = result.original_rows - result.filtered_rows
    result.stop()
    if verbose:
        logger.info(result.summarize())

    return df_kept, result.excluded_rows


def exclude_straightliners(
    df: pd.DataFrame,
    respondent_column: str,
    response_column: str,
    threshold: int,
    label: Optional[str] = "exclude_straightliners",
    verbose: bool = False,
    result: Optional[FilterResult] = None,
) -> Tuple[pd.DataFrame, int, List[Any]]:
    """
    Drop every row of respondents who gave the same response `threshold` or more times.

    Expects long-format data (one row per respondent x item). Counts rows per
    (respondent, response) with group_summarize, takes each respondent's most
    frequent response count, and filters out the respondents at or above the
    threshold. Missing responses are not counted as a repeated response.

    The threshold, respondent counts and the longest run of identical answers
    are recorded as metrics on `result` (a fresh FilterResult when omitted)
    and its summary is logged.

    Returns:
      (kept_rows, excluded_row_count, excluded_respondents) where the respondent
      ids are listed in first-appearance order.
    """
    if threshold < 1:
        raise ValueError(f"threshold must be a positive integer, got: {threshold}")
    for col in (respondent_column, response_column):
        if col not in df.columns:
            raise KeyError(f"Column '{col}' not found; available: {list(df.columns)}")

    result = result if result is not None else FilterResult(label=label)
    answered = df.loc[df[response_column].notna(), [respondent_column, response_column]]
    counts = group_summarize(
        answered,
        [respondent_column, response_column],
        [Aggregation(response_column, "count", "n_same")],
    )
    max_same = counts.groupby(respondent_column, sort=False)["n_same"].max()
    flagged = max_same.index[max_same >= threshold].tolist()
    flagged_set = set(flagged)

    result.add_metric("threshold", int(threshold))
    result.add_metric("respondents", int(df[respondent_column].nunique()))
    result.add_metric("flagged_respondents", len(flagged))
    result.add_metric("max_identical_responses", int(max_same.max()) if len(max_same) else 0)

    df_kept, excluded = filter_rows(
        df,
        lambda row: row[respondent_column] not in flagged_set,
        label=label,
        verbose=False,
        result=result,
    )
    if flagged:
        result.add_event(
            f"Excluded {len(flagged)} respondent(s) with >= {threshold} identical responses: {flagged}"
        )
    if verbose:
        logger.info(result.summarize())
    else:
        logger.debug(result.summarize())
    return df_kept, excluded, flagged
