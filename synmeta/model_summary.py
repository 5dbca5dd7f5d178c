"""
Fixed-effect summaries from pre-fit regression models.

Models are never fitted here. An estimate artifact is loaded from disk
(JSON, CSV or a pickled statsmodels results object) into a ModelEstimate,
then filtered, relabelled and optionally transformed for plotting.
"""

import json
import logging
import re
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, NamedTuple, Optional, Union

import numpy as np
import pandas as pd
from scipy.special import expit
from statsmodels.iolib.smpickle import load_pickle

from .csv_processor import load_table
from .errors import FileAccessError, ParseError, UnmappedCoefficientError

logger = logging.getLogger(__name__)

OUTPUT_COLUMNS = ["display_name", "estimate", "lower", "upper"]

# Accepted CSV column spellings, keyed by canonical (normalized) name
_CSV_ALIASES: Dict[str, tuple[str, ...]] = {
    "name": ("name", "term", "coefficient", "parameter"),
    "estimate": ("estimate", "mean", "coef"),
    "lower": ("lower", "q2_5", "l_95%_ci", "ci_lower", "2_5%", "[0_025"),
    "upper": ("upper", "q97_5", "u_95%_ci", "ci_upper", "97_5%", "0_975]"),
}


class CoefficientEstimate(NamedTuple):
    estimate: float
    lower: float
    upper: float


class ModelEstimate(dict):
    """Ordered mapping coefficient name -> CoefficientEstimate on the model-native scale."""

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, object]) -> "ModelEstimate":
        out = cls()
        for name, value in mapping.items():
            if isinstance(value, Mapping):
                try:
                    triple = (value["estimate"], value["lower"], value["upper"])
                except KeyError as e:
                    raise ParseError(f"coefficient '{name}' lacks field {e}")
            else:
                triple = tuple(value)  # type: ignore[arg-type]
                if len(triple) != 3:
                    raise ParseError(
                        f"coefficient '{name}' must have 3 values (estimate, lower, upper), got {len(triple)}"
                    )
            out[str(name)] = CoefficientEstimate(*(float(v) for v in triple))
        return out


# -------------------------
# Scale transforms
# -------------------------
def inverse_logit(x):
    """Map log-odds to probability: 1 / (1 + exp(-x))."""
    return expit(x)


def identity(x):
    return x


TRANSFORMS: Dict[str, Callable] = {
    "identity": identity,
    "inverse_logit": inverse_logit,
    "exp": np.exp,
}


def resolve_transform(name: Optional[str]) -> Optional[Callable]:
    """Look up a named transform; None and 'identity' mean no transform."""
    if name is None or name == "identity":
        return None
    try:
        return TRANSFORMS[name]
    except KeyError:
        raise ValueError(f"Unknown transform '{name}'; expected one of {sorted(TRANSFORMS)}")


# -------------------------
# Loading
# -------------------------
def _estimate_from_json(path: Path) -> ModelEstimate:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON ({e})", path=str(path))
    if isinstance(payload, Mapping) and "coefficients" in payload:
        payload = payload["coefficients"]
    if not isinstance(payload, Mapping):
        raise ParseError("expected an object mapping coefficient names to estimates", path=str(path))
    try:
        return ModelEstimate.from_mapping(payload)
    except ParseError as e:
        raise ParseError(str(e), path=str(path))


def _estimate_from_csv(path: Path) -> ModelEstimate:
    df = load_table(path)
    resolved: Dict[str, str] = {}
    for canonical, aliases in _CSV_ALIASES.items():
        for alias in aliases:
            if alias in df.columns:
                resolved[canonical] = alias
                break
    if "name" not in resolved:
        # brms/R exports put row names in an unlabeled first column
        resolved["name"] = df.columns[0]
    missing = [c for c in ("estimate", "lower", "upper") if c not in resolved]
    if missing:
        raise ParseError(
            f"missing estimate column(s) {missing}; found {list(df.columns)}", path=str(path)
        )
    mapping = {
        str(row[resolved["name"]]): (row[resolved["estimate"]], row[resolved["lower"]], row[resolved["upper"]])
        for _, row in df.iterrows()
    }
    return ModelEstimate.from_mapping(mapping)


def _estimate_from_statsmodels(path: Path, alpha: float) -> ModelEstimate:
    results = load_pickle(str(path))
    if not hasattr(results, "params") or not hasattr(results, "conf_int"):
        raise ParseError("pickle does not hold a statsmodels results object", path=str(path))
    params = results.params
    if not isinstance(params, pd.Series):
        # Array-based (non-formula) models keep names on the model object
        names = getattr(getattr(results, "model", None), "exog_names", None) or range(len(params))
        params = pd.Series(np.asarray(params), index=[str(n) for n in names])
    conf = pd.DataFrame(results.conf_int(alpha=alpha))
    mapping = {
        str(name): (params.iloc[i], conf.iloc[i, 0], conf.iloc[i, 1])
        for i, name in enumerate(params.index)
    }
    return ModelEstimate.from_mapping(mapping)


def load_model_estimate(path: Union[str, Path], alpha: float = 0.05) -> ModelEstimate:
    """
    Load a pre-fit model's coefficient table.

    Supported artifacts (by suffix):
      - .json: {"name": {"estimate": e, "lower": l, "upper": u}, ...} or
               {"name": [e, l, u], ...}, optionally nested under "coefficients".
      - .csv:  one row per coefficient with name/estimate/lower/upper columns
               (brms-style Estimate, Q2.5, Q97.5 headers are accepted).
      - .pkl/.pickle: a pickled statsmodels results object; bounds come from
               conf_int(alpha).
    """
    p = Path(path)
    if not p.is_file():
        raise FileAccessError(f"Model estimate file not found: {p}")
    suffix = p.suffix.lower()
    if suffix == ".json":
        estimate = _estimate_from_json(p)
    elif suffix in (".csv", ".tsv"):
        estimate = _estimate_from_csv(p)
    elif suffix in (".pkl", ".pickle"):
        estimate = _estimate_from_statsmodels(p, alpha)
    else:
        raise ParseError(f"unsupported model artifact type '{suffix}'", path=str(p))
    logger.info("Loaded %d coefficients from %s", len(estimate), p)
    return estimate


# -------------------------
# Extraction
# -------------------------
def extract_fixed_effects(
    estimate: Mapping[str, CoefficientEstimate],
    exclude_patterns: Iterable[str] = (),
    rename: Optional[Mapping[str, str]] = None,
    transform: Optional[Callable] = None,
) -> pd.DataFrame:
    """
    Build the plotting table for a model's fixed effects.

    Steps:
    - Drop coefficients whose name matches any exclusion pattern (regular
      expression, case-insensitive, re.search semantics).
    - Relabel survivors through `rename`; a survivor without an entry raises
      UnmappedCoefficientError so internal names never reach a chart.
    - Apply `transform` elementwise to estimate, lower and upper.

    Returns a DataFrame with columns display_name, estimate, lower, upper in
    model order.
    """
    compiled = [re.compile(p, flags=re.IGNORECASE) for p in exclude_patterns]
    rename = rename or {}

    survivors = [name for name in estimate if not any(rx.search(name) for rx in compiled)]
    unmapped = [name for name in survivors if name not in rename]
    if unmapped:
        raise UnmappedCoefficientError(unmapped)

    rows = [
        [rename[name], *(float(v) for v in estimate[name])] for name in survivors
    ]
    df = pd.DataFrame(rows, columns=OUTPUT_COLUMNS)
    if transform is not None and not df.empty:
        for col in ("estimate", "lower", "upper"):
            df[col] = df[col].map(lambda v: float(transform(v)))

    logger.debug(
        "Extracted %d of %d coefficients (excluded %d)",
        len(df),
        len(estimate),
        len(estimate) - len(survivors),
    )
    return df
