#!/usr/bin/env python3
"""
Synesthetic metaphor analyses built from pure functional units.

This module exposes two analyses:
- run_hierarchy_analysis(): corpus proportions of hierarchy-consistent tokens
- run_ratings_analysis(): metaphoricity ratings from an online survey

Each takes explicit parameter objects and returns explicit outputs. Charts are
written under RenderParams.output_dir; everything else is returned to the
caller. _orchestrate() adds the per-run directory and the manifest.
"""

import dataclasses
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .charts import ChartSpec, ChartTheme, chart_paths, density_peak
from .csv_processor import load_table, normalize_column_name
from .errors import SynmetaError
from .filters import FilterResult, exclude_straightliners
from .levels import read_levels, recode
from .model_summary import extract_fixed_effects, load_model_estimate, resolve_transform
from .tables import Aggregation, DerivationRule, derive_column, group_summarize, left_join, widen_to_long
from .utils import (
    build_effective_parameters,
    canonical_json_hash,
    ensure_run_dir,
    normalize_abs_posix,
    utc_timestamp_seconds,
    write_manifest,
)

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# -------------------------
# Parameters
# -------------------------
# Per-chart (width, height) in inches
DEFAULT_CHART_SIZES: Dict[str, Tuple[float, float]] = {
    "hierarchy_density": (6.0, 4.0),
    "hierarchy_ridges": (6.0, 5.0),
    "ratings_ridges": (6.0, 6.0),
    "ratings_scatter": (7.0, 5.0),
    "ratings_coefficients": (6.0, 3.5),
}


@dataclass
class RenderParams:
    output_dir: Path = Path("output")
    formats: Tuple[str, ...] = ("png", "svg")
    dpi: int = 300
    sizes: Dict[str, Tuple[float, float]] = field(
        default_factory=lambda: dict(DEFAULT_CHART_SIZES)
    )
    theme: ChartTheme = field(default_factory=ChartTheme)

    def size_for(self, chart_name: str) -> Tuple[float, float]:
        try:
            return self.sizes[chart_name]
        except KeyError:
            return DEFAULT_CHART_SIZES.get(chart_name, (6.0, 4.0))


@dataclass
class HierarchyParams:
    data_path: Optional[Path] = None
    model_path: Optional[Path] = None
    delimiter: str = ","
    numerator_column: str = "hierarchy_tokens_nots_novs"
    denominator_column: str = "total"
    proportion_column: str = "prop_red"
    group_column: Optional[str] = None
    # Model coefficients shown on the density chart, by internal name
    coefficient_labels: Dict[str, str] = field(
        default_factory=lambda: {"Intercept": "Overall"}
    )
    exclude_patterns: Tuple[str, ...] = ()
    transform: str = "inverse_logit"
    alpha: float = 0.05
    chance_level: float = 0.5


@dataclass
class RatingsParams:
    responses_path: Optional[Path] = None
    stimuli_path: Optional[Path] = None
    levels_path: Optional[Path] = None
    model_path: Optional[Path] = None
    delimiter: str = ","
    respondent_column: str = "participant"
    # Extra per-respondent columns carried into long format (not items)
    id_columns: Tuple[str, ...] = ()
    # None: every column that is neither the respondent nor an id column
    item_columns: Optional[Tuple[str, ...]] = None
    item_column: str = "item"
    response_column: str = "response"
    rank_column: str = "rating"
    stimulus_key: str = "stimulus"
    modality_column: str = "modality_pair"
    similarity_column: str = "cosine"
    straightliner_threshold: int = 40
    label_subset: Optional[int] = 20
    label_seed: int = 42
    exclude_patterns: Tuple[str, ...] = (r"intercept", r"^cutpoint", r"\|")
    coefficient_labels: Dict[str, str] = field(
        default_factory=lambda: {"Cosine": "Cosine similarity"}
    )
    transform: str = "identity"
    alpha: float = 0.05


def get_default_params() -> tuple[HierarchyParams, RatingsParams, RenderParams]:
    """
    Build default HierarchyParams, RatingsParams and RenderParams.

    Input paths default to None; the CLI requires them per subcommand.
    """
    return HierarchyParams(), RatingsParams(), RenderParams()


# -------------------------
# Outputs
# -------------------------
@dataclass
class HierarchyOutputs:
    data: pd.DataFrame
    estimates: Optional[pd.DataFrame]
    artifacts: List[Path]
    counts: Dict[str, int]


@dataclass
class RatingsOutputs:
    responses: pd.DataFrame
    per_item: pd.DataFrame
    estimates: Optional[pd.DataFrame]
    excluded_respondents: List[Any]
    artifacts: List[Path]
    counts: Dict[str, int]


def _require_path(value: Optional[Path], name: str) -> Path:
    if value is None:
        raise ValueError(f"{name} is required")
    return Path(value)


def _render(chart: ChartSpec, name: str, render: RenderParams) -> List[Path]:
    width, height = render.size_for(name)
    return chart.render(
        chart_paths(render.output_dir, name, render.formats), width, height, dpi=render.dpi
    )


def _format_estimate(row: pd.Series) -> str:
    return f"{row['display_name']}: {row['estimate']:.2f} [{row['lower']:.2f}, {row['upper']:.2f}]"


# -------------------------
# Hierarchy analysis
# -------------------------
def build_hierarchy_density_chart(
    data: pd.DataFrame,
    proportion_column: str,
    estimates: Optional[pd.DataFrame],
    chance_level: float,
    theme: Optional[ChartTheme] = None,
) -> ChartSpec:
    """
    Density of the per-word proportion over [0, 1] with a chance line.

    Model estimates (already on the probability scale) are stacked above the
    density peak as point + interval, each with a boxed label.
    """
    peak = density_peak(data[proportion_column], support=(0.0, 1.0))
    chart = ChartSpec(theme=theme)
    chart.add_density(data, proportion_column, support=(0.0, 1.0), label="Words")
    chart.add_reference_line(chance_level, orientation="vertical", color="grey", label="Chance")

    top = peak * 1.1
    if estimates is not None and not estimates.empty:
        step = peak * 0.18
        placed = estimates.assign(y=top + step * np.arange(len(estimates)))
        chart.add_intervals(
            placed, "estimate", "lower", "upper", position="y", color="#C44E52", label="Model estimate"
        )
        for _, row in placed.iterrows():
            chart.add_label(_format_estimate(row), row["estimate"], row["y"] + step * 0.45, font_size=9)
        top = float(placed["y"].max()) + step

    chart.set_axis("x", limits=(0.0, 1.0), label="Proportion of hierarchy-consistent tokens")
    chart.set_axis("y", limits=(0.0, top * 1.05), label="Density")
    chart.add_legend("upper left")
    return chart


def run_hierarchy_analysis(
    params: HierarchyParams, render: Optional[RenderParams] = None
) -> HierarchyOutputs:
    """
    Corpus analysis: per-word proportion of hierarchy-consistent tokens.

    Steps:
      1) Load the corpus table and derive proportion = numerator / denominator.
      2) When a model artifact is configured, load it and keep the labelled
         coefficients on the probability scale.
      3) Render the density chart and, when a group column is configured,
         a ridge chart of the proportion per group.
    """
    render = render or RenderParams()
    data_path = _require_path(params.data_path, "data_path")

    df = load_table(data_path, delimiter=params.delimiter)
    df = derive_column(
        df,
        DerivationRule(params.proportion_column, params.numerator_column, params.denominator_column),
    )

    estimates = None
    if params.model_path is not None:
        estimates = extract_fixed_effects(
            load_model_estimate(params.model_path, alpha=params.alpha),
            exclude_patterns=params.exclude_patterns,
            rename=params.coefficient_labels,
            transform=resolve_transform(params.transform),
        )
        for _, row in estimates.iterrows():
            logger.info("Estimate %s", _format_estimate(row))

    artifacts: List[Path] = []
    chart = build_hierarchy_density_chart(
        df, params.proportion_column, estimates, params.chance_level, theme=render.theme
    )
    artifacts += _render(chart, "hierarchy_density", render)

    if params.group_column is not None:
        ridges = ChartSpec(theme=render.theme)
        ridges.add_ridges(df, params.proportion_column, params.group_column, support=(0.0, 1.0))
        ridges.add_reference_line(params.chance_level)
        ridges.set_axis("x", limits=(0.0, 1.0), label="Proportion of hierarchy-consistent tokens")
        artifacts += _render(ridges, "hierarchy_ridges", render)

    counts = {
        "total_input_rows": int(len(df)),
        "missing_proportion_rows": int(df[params.proportion_column].isna().sum()),
    }
    return HierarchyOutputs(data=df, estimates=estimates, artifacts=artifacts, counts=counts)


# -------------------------
# Ratings analysis
# -------------------------
# Axis label and no-effect value for each coefficient scale
COEFFICIENT_SCALES: Dict[str, Tuple[str, float]] = {
    "identity": ("Estimate (log-odds)", 0.0),
    "inverse_logit": ("Estimate (probability)", 0.5),
    "exp": ("Estimate (odds ratio)", 1.0),
}


def build_coefficient_chart(
    estimates: pd.DataFrame, transform: Optional[str], theme: Optional[ChartTheme] = None
) -> ChartSpec:
    """Forest plot of fixed effects with a reference line at the no-effect value of their scale."""
    axis_label, null_value = COEFFICIENT_SCALES.get(transform or "identity", ("Estimate", 0.0))
    chart = ChartSpec(theme=theme)
    chart.add_reference_line(null_value, orientation="vertical")
    chart.add_intervals(estimates, "estimate", "lower", "upper", label_column="display_name")
    chart.set_axis("x", label=axis_label)
    return chart


def prepare_ratings(params: RatingsParams) -> tuple[pd.DataFrame, pd.DataFrame, List[Any], Dict[str, int]]:
    """
    Survey responses -> recoded long table joined with stimulus metadata.

    Item identifiers are compared in canonical column-name form, since item
    columns in the survey header are normalized on load.

    Returns (responses_long, per_item_summary, excluded_respondents, counts).
    """
    wide = load_table(
        _require_path(params.responses_path, "responses_path"), delimiter=params.delimiter
    )
    levels = read_levels(_require_path(params.levels_path, "levels_path"))
    stimuli = load_table(
        _require_path(params.stimuli_path, "stimuli_path"), delimiter=params.delimiter
    )

    id_columns = [params.respondent_column, *params.id_columns]
    if params.item_columns is not None:
        item_columns = [normalize_column_name(c) for c in params.item_columns]
    else:
        item_columns = [c for c in wide.columns if c not in id_columns]

    long_df = widen_to_long(
        wide, id_columns, item_columns, name_column=params.item_column, value_column=params.response_column
    )
    long_df = recode(long_df, params.response_column, levels, rank_column=params.rank_column)
    straightliners = FilterResult(label="exclude_straightliners")
    long_df, excluded_rows, excluded_respondents = exclude_straightliners(
        long_df,
        params.respondent_column,
        params.response_column,
        params.straightliner_threshold,
        verbose=True,
        result=straightliners,
    )

    if params.stimulus_key not in stimuli.columns:
        raise KeyError(
            f"Stimulus key '{params.stimulus_key}' not found; available: {list(stimuli.columns)}"
        )
    stimuli = stimuli.assign(
        **{params.stimulus_key: stimuli[params.stimulus_key].astype(str).map(normalize_column_name)}
    )
    long_df = left_join(long_df, stimuli, (params.item_column, params.stimulus_key))

    per_item = group_summarize(
        long_df,
        [params.item_column],
        [
            Aggregation(params.rank_column, "count", "n_ratings"),
            Aggregation(params.rank_column, "mean", "mean_rating"),
        ],
    )
    per_item = left_join(per_item, stimuli, (params.item_column, params.stimulus_key))

    counts = {
        "respondents": int(wide[params.respondent_column].nunique()),
        "items": int(len(item_columns)),
        "total_input_rows": int(len(wide) * len(item_columns)),
        "processed_row_count": int(len(long_df)),
        "excluded_row_count": int(excluded_rows),
        "excluded_respondents": int(len(excluded_respondents)),
        "max_identical_responses": int(straightliners.metrics["max_identical_responses"]),
    }
    return long_df, per_item, excluded_respondents, counts


def run_ratings_analysis(
    params: RatingsParams, render: Optional[RenderParams] = None
) -> RatingsOutputs:
    render = render or RenderParams()
    long_df, per_item, excluded, counts = prepare_ratings(params)
    levels = [str(lvl) for lvl in long_df[params.response_column].cat.categories]
    ranks = list(range(1, len(levels) + 1))
    artifacts: List[Path] = []

    if params.modality_column in long_df.columns:
        ridges = ChartSpec(theme=render.theme)
        ridges.add_ridges(
            long_df, params.rank_column, params.modality_column, support=(ranks[0], ranks[-1])
        )
        ridges.set_axis("x", limits=(ranks[0], ranks[-1]), ticks=ranks, tick_labels=list(levels), label="Rating")
        artifacts += _render(ridges, "ratings_ridges", render)
    else:
        logger.warning(
            "Column '%s' not in stimulus metadata; skipping ratings ridge chart", params.modality_column
        )

    if params.similarity_column in per_item.columns:
        scatter = ChartSpec(theme=render.theme)
        scatter.add_points(per_item, params.similarity_column, "mean_rating")
        scatter.add_repel_labels(
            per_item,
            params.similarity_column,
            "mean_rating",
            params.item_column,
            subset=params.label_subset,
            seed=params.label_seed,
        )
        scatter.set_axis("x", label="Cosine similarity")
        scatter.set_axis("y", limits=(ranks[0], ranks[-1]), label="Mean rating")
        artifacts += _render(scatter, "ratings_scatter", render)
    else:
        logger.warning(
            "Column '%s' not in stimulus metadata; skipping ratings scatter chart", params.similarity_column
        )

    estimates = None
    if params.model_path is not None:
        estimates = extract_fixed_effects(
            load_model_estimate(params.model_path, alpha=params.alpha),
            exclude_patterns=params.exclude_patterns,
            rename=params.coefficient_labels,
            transform=resolve_transform(params.transform),
        )
        coef = build_coefficient_chart(estimates, params.transform, theme=render.theme)
        artifacts += _render(coef, "ratings_coefficients", render)

    return RatingsOutputs(
        responses=long_df,
        per_item=per_item,
        estimates=estimates,
        excluded_respondents=excluded,
        artifacts=artifacts,
        counts=counts,
    )


# -------------------------
# Run identity & manifest
# -------------------------
def _input_paths(params) -> Dict[str, str]:
    return {
        f.name: normalize_abs_posix(getattr(params, f.name))
        for f in dataclasses.fields(params)
        if f.name.endswith("_path") and getattr(params, f.name) is not None
    }


def build_run_identity(params, render: RenderParams) -> tuple[dict, str, str, dict]:
    """
    Returns (abs_input_paths, short_hash, full_hash, effective_params)
    """
    abs_inputs = _input_paths(params)
    effective_params = build_effective_parameters(analysis=params, render=render)
    # The output directory does not change what is computed
    effective_params["render"].pop("output_dir", None)
    canonical_payload = {
        "absolute_input_paths": abs_inputs,
        "effective_parameters": effective_params,
    }
    short_hash, full_hash = canonical_json_hash(canonical_payload)
    return abs_inputs, short_hash, full_hash, effective_params


def build_manifest_dict(
    analysis: str,
    abs_inputs: dict,
    counts: dict,
    effective_params: dict,
    hashes: tuple[str, str],
    artifact_paths: list[str],
) -> dict:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "analysis": analysis,
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_paths": abs_inputs,
        "counts": {k: int(v) for k, v in counts.items()},
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": {"charts": artifact_paths},
    }


def _orchestrate(analysis: str, params, render: RenderParams) -> Path:
    """
    Run one analysis into a fresh run directory and write its manifest.
    Split from main() so the CLI can remain thin and tests can call this directly.

    Returns the manifest path.
    """
    abs_inputs, short_hash, full_hash, effective_params = build_run_identity(params, render)
    run_dir = ensure_run_dir(render.output_dir, prefix=analysis)
    run_render = dataclasses.replace(render, output_dir=run_dir)

    if analysis == "hierarchy":
        outputs = run_hierarchy_analysis(params, run_render)
    elif analysis == "ratings":
        outputs = run_ratings_analysis(params, run_render)
    else:
        raise ValueError(f"Unknown analysis '{analysis}'; expected 'hierarchy' or 'ratings'")

    manifest = build_manifest_dict(
        analysis=analysis,
        abs_inputs=abs_inputs,
        counts=outputs.counts,
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        artifact_paths=[normalize_abs_posix(p) for p in outputs.artifacts],
    )
    manifest_path = run_dir / f"manifest-{short_hash}.json"
    write_manifest(manifest_path, manifest)
    logger.info("Wrote %d chart file(s) and manifest %s", len(outputs.artifacts), manifest_path)
    return manifest_path


# -------------------------
# CLI
# -------------------------
def _parse_label_map(items: Optional[List[str]]) -> Dict[str, str]:
    """Parse repeated NAME=LABEL arguments into a mapping."""
    out: Dict[str, str] = {}
    for item in items or []:
        name, sep, label = item.partition("=")
        if not sep or not name.strip() or not label.strip():
            raise ValueError(f"Invalid --label '{item}'; expected NAME=LABEL")
        out[name.strip()] = label.strip()
    return out


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="synmeta",
        description="Synesthetic metaphor analyses (load -> reshape -> summarize -> chart).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Verbose logging and full tracebacks (also SYNMETA_DEBUG=1).",
    )

    d_hier, d_rat, d_render = get_default_params()

    common = argparse.ArgumentParser(add_help=False)
    g_render = common.add_argument_group("RenderParams")
    g_render.add_argument("--output-dir", type=Path, default=d_render.output_dir, help="Base output directory.")
    g_render.add_argument("--dpi", type=int, default=d_render.dpi, help="Raster resolution.")
    g_render.add_argument(
        "--format",
        dest="formats",
        action="append",
        metavar="EXT",
        help=f"Image format; repeatable (default: {' '.join(d_render.formats)}).",
    )
    common.add_argument("--model", type=Path, help="Pre-fit model estimate (.json, .csv or .pkl).")
    common.add_argument("--delimiter", default=",", help="Input table delimiter.")
    common.add_argument(
        "--label",
        action="append",
        metavar="NAME=LABEL",
        help="Display label for a model coefficient; repeatable, replaces the defaults.",
    )
    common.add_argument(
        "--exclude-pattern",
        action="append",
        metavar="REGEX",
        help="Exclude matching model coefficients; repeatable, replaces the defaults.",
    )

    sub = parser.add_subparsers(dest="analysis", required=True)

    p_hier = sub.add_parser("hierarchy", parents=[common], help="Corpus hierarchy proportions.")
    p_hier.add_argument("--data", type=Path, required=True, help="Corpus CSV with per-word counts.")
    p_hier.add_argument("--numerator", default=d_hier.numerator_column)
    p_hier.add_argument("--denominator", default=d_hier.denominator_column)
    p_hier.add_argument("--group-column", default=None, help="Draw a ridge chart per group.")
    p_hier.add_argument("--chance-level", type=float, default=d_hier.chance_level)

    p_rat = sub.add_parser("ratings", parents=[common], help="Metaphoricity rating experiment.")
    p_rat.add_argument("--responses", type=Path, required=True, help="Wide survey CSV.")
    p_rat.add_argument("--stimuli", type=Path, required=True, help="Stimulus metadata CSV.")
    p_rat.add_argument("--levels", type=Path, required=True, help="Response levels file, one per line.")
    p_rat.add_argument("--respondent-column", default=d_rat.respondent_column)
    p_rat.add_argument("--stimulus-key", default=d_rat.stimulus_key)
    p_rat.add_argument("--straightliner-threshold", type=int, default=d_rat.straightliner_threshold)
    p_rat.add_argument("--label-subset", type=int, default=d_rat.label_subset)
    p_rat.add_argument("--label-seed", type=int, default=d_rat.label_seed)
    return parser


def _args_to_params(args) -> tuple[Any, RenderParams]:
    d_hier, d_rat, d_render = get_default_params()
    render = dataclasses.replace(
        d_render,
        output_dir=args.output_dir,
        dpi=args.dpi,
        formats=tuple(args.formats) if args.formats else d_render.formats,
    )
    model_overrides: Dict[str, Any] = {}
    if args.label:
        model_overrides["coefficient_labels"] = _parse_label_map(args.label)
    if args.exclude_pattern:
        model_overrides["exclude_patterns"] = tuple(args.exclude_pattern)

    if args.analysis == "hierarchy":
        params = dataclasses.replace(
            d_hier,
            data_path=args.data,
            model_path=args.model,
            delimiter=args.delimiter,
            numerator_column=args.numerator,
            denominator_column=args.denominator,
            group_column=args.group_column,
            chance_level=args.chance_level,
            **model_overrides,
        )
    else:
        params = dataclasses.replace(
            d_rat,
            responses_path=args.responses,
            stimuli_path=args.stimuli,
            levels_path=args.levels,
            model_path=args.model,
            delimiter=args.delimiter,
            respondent_column=args.respondent_column,
            stimulus_key=args.stimulus_key,
            straightliner_threshold=args.straightliner_threshold,
            label_subset=args.label_subset,
            label_seed=args.label_seed,
            **model_overrides,
        )
    return params, render


def main(argv: Optional[List[str]] = None) -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    argv = sys.argv[1:] if argv is None else list(argv)

    # Honor --print-defaults without requiring a subcommand
    if "--print-defaults" in argv:
        d_hier, d_rat, d_render = get_default_params()
        payload = build_effective_parameters(
            HierarchyParams=d_hier, RatingsParams=d_rat, RenderParams=d_render
        )
        # Paths that default to None stay null instead of resolving
        payload["RenderParams"]["output_dir"] = str(d_render.output_dir)
        print(json.dumps(payload, indent=2))
        return

    parser = _build_cli_parser()
    args = parser.parse_args(argv)
    debug_mode = bool(args.debug or os.getenv("SYNMETA_DEBUG", "") == "1")
    if debug_mode:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        params, render = _args_to_params(args)
        manifest_path = _orchestrate(args.analysis, params, render)
        print(manifest_path)
    except (SynmetaError, FileNotFoundError, KeyError, ValueError, TypeError) as e:
        # Concise, user-facing errors for common/user-correctable problems.
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set SYNMETA_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
