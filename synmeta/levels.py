"""
Ordered category levels and recoding of categorical columns into ranks.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import numpy as np
import pandas as pd

from .errors import FileAccessError, ParseError, UnknownLevelError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderedLevels:
    """
    Explicit rank order for a categorical column.

    levels[0] has rank 1, levels[-1] has rank len(levels).
    """

    levels: tuple

    def __post_init__(self) -> None:
        levels = tuple(self.levels)
        if not levels:
            raise ValueError("OrderedLevels requires at least one level")
        duplicates = sorted({str(lvl) for lvl in levels if levels.count(lvl) > 1})
        if duplicates:
            raise ValueError(f"Duplicate levels: {duplicates}")
        object.__setattr__(self, "levels", levels)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "OrderedLevels":
        """Read one level per line (top to bottom = rank 1 to N); blank lines are ignored."""
        p = Path(path)
        if not p.is_file():
            raise FileAccessError(f"Level file not found: {p}")
        try:
            text = p.read_text(encoding="utf-8-sig")
        except UnicodeDecodeError as e:
            raise ParseError(f"not valid utf-8 text ({e})", path=str(p))
        levels = [line.strip() for line in text.splitlines() if line.strip()]
        if not levels:
            raise ParseError("no levels found", path=str(p))
        return cls(tuple(levels))

    def __len__(self) -> int:
        return len(self.levels)

    def __iter__(self):
        return iter(self.levels)

    def __contains__(self, value: Any) -> bool:
        return value in self.levels

    def rank(self, value: Any) -> int:
        """1-indexed position of value; ValueError if absent."""
        return self.levels.index(value) + 1


def read_levels(path: Union[str, Path]) -> OrderedLevels:
    return OrderedLevels.from_file(path)


def _as_level_text(value: Any) -> str:
    # CSV columns with gaps load as float; 3.0 must still match level "3"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _coerce_levels(levels: Union[OrderedLevels, Iterable[Any]]) -> OrderedLevels:
    if isinstance(levels, OrderedLevels):
        return levels
    return OrderedLevels(tuple(levels))


def recode(
    df: pd.DataFrame,
    column: str,
    levels: Union[OrderedLevels, Iterable[Any]],
    rank_column: Optional[str] = None,
) -> pd.DataFrame:
    """
    Bind a column to an explicit level ordering.

    The column is replaced by an ordered pandas Categorical over `levels` and a
    companion rank column (default '<column>_rank', nullable Int64) receives
    the 1-indexed position of each value. Missing values stay missing and get a
    missing rank.

    When the levels are strings, values are compared as stripped strings, so a
    numeric-looking CSV cell such as 3 matches the level "3".

    Raises:
      KeyError: if the column does not exist.
      UnknownLevelError: for the first value not present in `levels`, naming the
        value and its row label.
    """
    ordered = _coerce_levels(levels)
    if column not in df.columns:
        raise KeyError(f"Column '{column}' not found; available: {list(df.columns)}")
    rank_column = rank_column or f"{column}_rank"

    values = df[column]
    missing = values.isna()
    if all(isinstance(lvl, str) for lvl in ordered.levels):
        values = values.where(missing, values.map(_as_level_text))

    unknown = (~missing & ~values.isin(list(ordered.levels))).to_numpy()
    if unknown.any():
        pos = int(np.argmax(unknown))
        raise UnknownLevelError(df[column].iloc[pos], df.index[pos], column)

    categorical = pd.Categorical(values.where(~missing), categories=list(ordered.levels), ordered=True)
    codes = pd.Series(categorical.codes, index=df.index)
    ranks = (codes + 1).astype("Int64").mask(codes < 0)

    logger.debug("Recoded column '%s' against %d levels", column, len(ordered))
    return df.assign(**{column: categorical, rank_column: ranks})
