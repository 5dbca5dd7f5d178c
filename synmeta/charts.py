"""
Declarative chart builder.

A ChartSpec accumulates typed layer descriptors, axis scales and a theme, and
is rendered exactly once to one or more image files. Layers are drawn in
insertion order (insertion order is also z-order). After render() the chart is
frozen and any further modification raises ChartFinalizedError.

Typical use:

    chart = (
        ChartSpec(title="Hierarchy-consistent proportion")
        .add_density(df, "prop_red", support=(0, 1))
        .add_reference_line(0.5, linestyle="--")
        .add_label("chance", 0.5, 0.95, coords="axes")
        .set_axis("x", limits=(0, 1), ticks=[0, 0.25, 0.5, 0.75, 1])
    )
    chart.render(chart_paths("output", "density"), width=6, height=4)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

# Select a non-interactive backend before pyplot is imported so rendering
# never tries to open a GUI in headless runs.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
from matplotlib.backend_bases import FigureCanvasBase
import pandas as pd
from scipy.stats import gaussian_kde

from .errors import ChartFinalizedError, FileAccessError

logger = logging.getLogger(__name__)

KDE_GRID_POINTS = 512
DEFAULT_FORMATS = ("png", "svg")


class ChartState(Enum):
    BUILDING = auto()
    RENDERED = auto()


class LayerKind(Enum):
    DENSITY = auto()
    RIDGE = auto()
    INTERVAL = auto()
    POINTS = auto()
    REFERENCE_LINE = auto()
    TEXT = auto()
    LABEL = auto()
    REPEL_LABELS = auto()


# -------------------------
# Layer descriptors
# -------------------------
@dataclass
class DensityLayer:
    data: pd.DataFrame
    column: str
    support: Optional[Tuple[float, float]] = None
    color: str = "#4C72B0"
    alpha: float = 0.5
    bandwidth: Optional[Union[str, float]] = None
    label: Optional[str] = None
    clip: bool = True
    kind: LayerKind = LayerKind.DENSITY


@dataclass
class RidgeLayer:
    data: pd.DataFrame
    value_column: str
    category_column: str
    levels: Optional[Sequence[Any]] = None
    support: Optional[Tuple[float, float]] = None
    scale: float = 0.9
    color: str = "#4C72B0"
    alpha: float = 0.7
    bandwidth: Optional[Union[str, float]] = None
    clip: bool = True
    kind: LayerKind = LayerKind.RIDGE


@dataclass
class IntervalLayer:
    data: pd.DataFrame
    estimate: str
    lower: str
    upper: str
    position: Optional[Union[str, float]] = None
    orientation: str = "horizontal"
    label_column: Optional[str] = None
    color: str = "black"
    marker: str = "o"
    marker_size: float = 6.0
    line_width: float = 1.5
    cap_size: float = 0.0
    label: Optional[str] = None
    clip: bool = True
    kind: LayerKind = LayerKind.INTERVAL


@dataclass
class PointLayer:
    data: pd.DataFrame
    x: str
    y: str
    color: str = "#4C72B0"
    alpha: float = 0.8
    size: float = 20.0
    label: Optional[str] = None
    clip: bool = True
    kind: LayerKind = LayerKind.POINTS


@dataclass
class ReferenceLineLayer:
    value: float
    orientation: str = "vertical"
    color: str = "grey"
    linestyle: str = "--"
    line_width: float = 1.0
    label: Optional[str] = None
    kind: LayerKind = LayerKind.REFERENCE_LINE


@dataclass
class TextLayer:
    """Literal text; LABEL layers draw a background box behind the text, TEXT layers do not."""

    text: str
    x: float
    y: float
    coords: str = "data"
    color: str = "black"
    font_size: Optional[float] = None
    ha: str = "center"
    va: str = "center"
    box_color: str = "white"
    box_alpha: float = 0.85
    clip: bool = True
    kind: LayerKind = LayerKind.TEXT


@dataclass
class RepelLabelLayer:
    data: pd.DataFrame
    x: str
    y: str
    label: str
    subset: Optional[int] = None
    seed: int = 42
    iterations: int = 250
    padding: float = 0.005
    color: str = "black"
    font_size: Optional[float] = None
    clip: bool = True
    kind: LayerKind = LayerKind.REPEL_LABELS


@dataclass
class AxisScale:
    limits: Optional[Tuple[float, float]] = None
    ticks: Optional[Sequence[float]] = None
    tick_labels: Optional[Sequence[str]] = None
    label: Optional[str] = None


@dataclass
class ChartTheme:
    """
    Cosmetic settings applied only for the duration of a render.

    margins: optional subplots_adjust fractions (left/right/top/bottom); when
    omitted the layout is tightened automatically.
    """

    style: str = "default"
    font_family: str = "sans-serif"
    font_size: float = 11.0
    margins: Optional[Dict[str, float]] = None
    grid: bool = False
    rc: Dict[str, Any] = field(default_factory=dict)

    def rc_params(self) -> Dict[str, Any]:
        params = {
            "font.family": self.font_family,
            "font.size": self.font_size,
            "svg.fonttype": "none",
        }
        params.update(self.rc)
        return params


# -------------------------
# Helpers
# -------------------------
def chart_paths(
    output_dir: Union[str, Path], name: str, formats: Sequence[str] = DEFAULT_FORMATS
) -> List[Path]:
    """Output paths for one chart: <output_dir>/<name>.<format> for each format."""
    return [Path(output_dir) / f"{name}.{fmt.lstrip('.')}" for fmt in formats]


def _finite(values: Any) -> np.ndarray:
    arr = pd.to_numeric(pd.Series(values), errors="coerce").astype("float64").to_numpy()
    return arr[np.isfinite(arr)]


def _kde_on_grid(
    values: np.ndarray, grid: np.ndarray, bandwidth: Optional[Union[str, float]]
) -> Optional[np.ndarray]:
    """Gaussian KDE evaluated on grid; None when the sample is too small or constant."""
    if values.size < 2 or np.unique(values).size < 2:
        return None
    return gaussian_kde(values, bw_method=bandwidth)(grid)


def _support_for(values: np.ndarray, support: Optional[Tuple[float, float]]) -> Tuple[float, float]:
    if support is not None:
        return float(support[0]), float(support[1])
    lo, hi = float(values.min()), float(values.max())
    pad = (hi - lo) * 0.1 or 0.5
    return lo - pad, hi + pad


def density_peak(
    values: Any,
    support: Optional[Tuple[float, float]] = None,
    bandwidth: Optional[Union[str, float]] = None,
) -> float:
    """Height of the tallest point of the KDE a density layer would draw (1.0 if it would draw nothing)."""
    finite = _finite(values)
    if finite.size == 0:
        return 1.0
    lo, hi = _support_for(finite, support)
    density = _kde_on_grid(finite, np.linspace(lo, hi, KDE_GRID_POINTS), bandwidth)
    return float(density.max()) if density is not None else 1.0


def _set_clip(artists: Any, clip: bool) -> None:
    # Works for plain artists and for containers such as ErrorbarContainer
    targets = [artists]
    if hasattr(artists, "get_children"):
        targets.extend(artists.get_children())
    for artist in targets:
        if hasattr(artist, "set_clip_on"):
            artist.set_clip_on(clip)


def repel_positions(
    anchors: np.ndarray,
    sizes: np.ndarray,
    seed: int,
    iterations: int = 250,
    padding: float = 0.005,
    spring: float = 0.02,
) -> np.ndarray:
    """
    Place label boxes near their anchor points with as little overlap as possible.

    anchors: (n, 2) anchor points in axes-fraction coordinates.
    sizes:   (n, 2) label box width/height in the same coordinates.

    Labels start just above their anchor (with a seeded jitter) and are pushed
    apart along the axis of least overlap, from each other and from all anchor
    points, while a weak spring pulls each label back toward its start. Ties
    are broken with the seeded generator, so the same seed gives the same
    placement. Returns (n, 2) label centers clamped to the unit square.
    """
    anchors = np.asarray(anchors, dtype=float).reshape(-1, 2)
    sizes = np.asarray(sizes, dtype=float).reshape(-1, 2)
    n = len(anchors)
    if n == 0:
        return anchors.copy()

    rng = np.random.default_rng(seed)
    start = anchors + np.column_stack([np.zeros(n), sizes[:, 1] * 0.75])
    pos = start + rng.uniform(-padding, padding, size=(n, 2))
    half = sizes / 2.0
    # Antisymmetric tie-break signs for coincident boxes
    tie = np.triu(rng.choice([-1.0, 1.0], size=(n, n)), 1)
    tie = tie - tie.T

    for _ in range(iterations):
        moved = False

        # Label vs label
        dx = pos[:, None, 0] - pos[None, :, 0]
        dy = pos[:, None, 1] - pos[None, :, 1]
        ox = half[:, None, 0] + half[None, :, 0] + padding - np.abs(dx)
        oy = half[:, None, 1] + half[None, :, 1] + padding - np.abs(dy)
        overlap = (ox > 0) & (oy > 0)
        np.fill_diagonal(overlap, False)
        if overlap.any():
            moved = True
            sx = np.where(dx != 0, np.sign(dx), tie)
            sy = np.where(dy != 0, np.sign(dy), tie)
            along_x = ox < oy
            push_x = np.where(overlap & along_x, sx * ox / 2.0, 0.0).sum(axis=1)
            push_y = np.where(overlap & ~along_x, sy * oy / 2.0, 0.0).sum(axis=1)
            pos += np.column_stack([push_x, push_y])

        # Label vs anchor points (points treated as boxes of size `padding`)
        px = pos[:, None, 0] - anchors[None, :, 0]
        py = pos[:, None, 1] - anchors[None, :, 1]
        pox = half[:, None, 0] + padding - np.abs(px)
        poy = half[:, None, 1] + padding - np.abs(py)
        hit = (pox > 0) & (poy > 0)
        if hit.any():
            moved = True
            # Leave the label's own anchor alone horizontally; push it up or down
            sy = np.where(py != 0, np.sign(py), 1.0)
            pos[:, 1] += np.where(hit, sy * poy, 0.0).sum(axis=1)

        pos += spring * (start - pos)
        pos = np.clip(pos, half, 1.0 - half)
        if not moved:
            break

    return pos


# -------------------------
# Layer drawing
# -------------------------
def _draw_density(ax, layer: DensityLayer, zorder: float) -> None:
    values = _finite(layer.data[layer.column])
    lo, hi = _support_for(values, layer.support) if values.size else (0.0, 1.0)
    grid = np.linspace(lo, hi, KDE_GRID_POINTS)
    density = _kde_on_grid(values, grid, layer.bandwidth)
    if density is None:
        logger.warning(
            "Density layer for '%s' skipped: need at least 2 distinct finite values, got %d values",
            layer.column,
            values.size,
        )
        return
    fill = ax.fill_between(
        grid, density, color=layer.color, alpha=layer.alpha, label=layer.label, zorder=zorder
    )
    (edge,) = ax.plot(grid, density, color=layer.color, linewidth=1.0, zorder=zorder)
    _set_clip(fill, layer.clip)
    _set_clip(edge, layer.clip)


def _draw_ridges(ax, layer: RidgeLayer, zorder: float) -> None:
    data = layer.data
    if layer.levels is not None:
        categories = list(layer.levels)
    else:
        categories = list(pd.unique(data[layer.category_column].dropna()))
    all_values = _finite(data[layer.value_column])
    if not categories or all_values.size == 0:
        logger.warning("Ridge layer for '%s' skipped: no data", layer.value_column)
        return
    lo, hi = _support_for(all_values, layer.support)
    grid = np.linspace(lo, hi, KDE_GRID_POINTS)

    n = len(categories)
    for i, category in enumerate(categories):
        values = _finite(data.loc[data[layer.category_column] == category, layer.value_column])
        density = _kde_on_grid(values, grid, layer.bandwidth)
        if density is None:
            logger.warning(
                "Ridge for category %r skipped: need at least 2 distinct finite values", category
            )
            continue
        height = density / density.max() * layer.scale
        # Lower ridges overlap the ones above them
        z = zorder + (n - i) / (n + 1)
        fill = ax.fill_between(grid, i, i + height, color=layer.color, alpha=layer.alpha, zorder=z)
        (edge,) = ax.plot(grid, i + height, color="black", linewidth=0.8, zorder=z)
        _set_clip(fill, layer.clip)
        _set_clip(edge, layer.clip)

    ax.set_yticks(range(n))
    ax.set_yticklabels([str(c) for c in categories])


def _draw_intervals(ax, layer: IntervalLayer, zorder: float) -> None:
    data = layer.data
    n = len(data)
    if n == 0:
        return
    est = data[layer.estimate].astype("float64").to_numpy()
    lo = data[layer.lower].astype("float64").to_numpy()
    hi = data[layer.upper].astype("float64").to_numpy()
    bad = (lo > est) | (est > hi)
    if bad.any():
        row = int(np.argmax(bad))
        raise ValueError(
            f"Interval row {row} is not ordered lower <= estimate <= upper: ({lo[row]}, {est[row]}, {hi[row]})"
        )

    if layer.position is None:
        pos = np.arange(n, dtype=float)
    elif isinstance(layer.position, str):
        pos = data[layer.position].astype("float64").to_numpy()
    else:
        pos = np.full(n, float(layer.position))

    err = np.vstack([est - lo, hi - est])
    style = dict(
        fmt=layer.marker,
        color=layer.color,
        markersize=layer.marker_size,
        elinewidth=layer.line_width,
        capsize=layer.cap_size,
        label=layer.label,
        zorder=zorder,
    )
    if layer.orientation == "horizontal":
        container = ax.errorbar(est, pos, xerr=err, **style)
    elif layer.orientation == "vertical":
        container = ax.errorbar(pos, est, yerr=err, **style)
    else:
        raise ValueError(f"orientation must be 'horizontal' or 'vertical', got: {layer.orientation}")
    _set_clip(container, layer.clip)

    if layer.label_column is not None and layer.position is None:
        labels = data[layer.label_column].astype(str).tolist()
        if layer.orientation == "horizontal":
            ax.set_yticks(pos)
            ax.set_yticklabels(labels)
        else:
            ax.set_xticks(pos)
            ax.set_xticklabels(labels)


def _draw_points(ax, layer: PointLayer, zorder: float) -> None:
    points = ax.scatter(
        layer.data[layer.x],
        layer.data[layer.y],
        s=layer.size,
        color=layer.color,
        alpha=layer.alpha,
        label=layer.label,
        zorder=zorder,
    )
    points.set_clip_on(layer.clip)


def _draw_reference_line(ax, layer: ReferenceLineLayer, zorder: float) -> None:
    style = dict(
        color=layer.color,
        linestyle=layer.linestyle,
        linewidth=layer.line_width,
        label=layer.label,
        zorder=zorder,
    )
    if layer.orientation == "vertical":
        ax.axvline(x=layer.value, **style)
    elif layer.orientation == "horizontal":
        ax.axhline(y=layer.value, **style)
    else:
        raise ValueError(f"orientation must be 'vertical' or 'horizontal', got: {layer.orientation}")


def _draw_text(ax, layer: TextLayer, zorder: float) -> None:
    if layer.coords not in ("data", "axes"):
        raise ValueError(f"coords must be 'data' or 'axes', got: {layer.coords}")
    transform = ax.transData if layer.coords == "data" else ax.transAxes
    bbox = None
    if layer.kind is LayerKind.LABEL:
        bbox = dict(
            boxstyle="round,pad=0.3",
            facecolor=layer.box_color,
            edgecolor=layer.color,
            alpha=layer.box_alpha,
        )
    ax.text(
        layer.x,
        layer.y,
        layer.text,
        transform=transform,
        ha=layer.ha,
        va=layer.va,
        color=layer.color,
        fontsize=layer.font_size,
        bbox=bbox,
        clip_on=layer.clip,
        zorder=zorder,
    )


def _draw_repel_labels(ax, layer: RepelLabelLayer, zorder: float) -> None:
    data = layer.data.dropna(subset=[layer.x, layer.y])
    if data.empty:
        return
    if layer.subset is not None and layer.subset < len(data):
        rng = np.random.default_rng(layer.seed)
        picked = np.sort(rng.choice(len(data), size=layer.subset, replace=False))
        data = data.iloc[picked]

    x0, x1 = ax.get_xlim()
    y0, y1 = ax.get_ylim()
    xs = data[layer.x].astype("float64").to_numpy()
    ys = data[layer.y].astype("float64").to_numpy()
    anchors = np.column_stack([(xs - x0) / (x1 - x0), (ys - y0) / (y1 - y0)])

    # Approximate text extents from font metrics so placement needs no renderer
    font_size = layer.font_size or plt.rcParams["font.size"]
    fig_w, fig_h = ax.figure.get_size_inches()
    box = ax.get_position()
    labels = data[layer.label].astype(str).tolist()
    widths = np.array([len(s) * 0.6 * font_size / 72.0 / (fig_w * box.width) for s in labels])
    height = 1.3 * font_size / 72.0 / (fig_h * box.height)
    sizes = np.column_stack([widths, np.full(len(labels), height)])

    placed = repel_positions(anchors, sizes, seed=layer.seed, iterations=layer.iterations, padding=layer.padding)
    for text, x, y, (fx, fy) in zip(labels, xs, ys, placed):
        ax.annotate(
            text,
            xy=(x, y),
            xytext=(x0 + fx * (x1 - x0), y0 + fy * (y1 - y0)),
            textcoords="data",
            ha="center",
            va="center",
            fontsize=font_size,
            color=layer.color,
            arrowprops=dict(arrowstyle="-", color=layer.color, linewidth=0.5, shrinkA=0, shrinkB=2),
            annotation_clip=layer.clip,
            zorder=zorder,
        )


_DRAWERS = {
    LayerKind.DENSITY: _draw_density,
    LayerKind.RIDGE: _draw_ridges,
    LayerKind.INTERVAL: _draw_intervals,
    LayerKind.POINTS: _draw_points,
    LayerKind.REFERENCE_LINE: _draw_reference_line,
    LayerKind.TEXT: _draw_text,
    LayerKind.LABEL: _draw_text,
    LayerKind.REPEL_LABELS: _draw_repel_labels,
}


# -------------------------
# Builder
# -------------------------
class ChartSpec:
    """
    Incrementally built chart. Every add_*/set_* method returns self so calls
    can be chained; data frames are copied on the way in so later changes to
    the caller's frame never leak into the chart.
    """

    def __init__(self, title: Optional[str] = None, theme: Optional[ChartTheme] = None) -> None:
        self.title = title
        self.theme = theme or ChartTheme()
        self.layers: list = []
        self.axes: Dict[str, AxisScale] = {"x": AxisScale(), "y": AxisScale()}
        self.legend_loc: Optional[str] = None
        self.state = ChartState.BUILDING
        self.artifacts: List[Path] = []

    # State
    def _ensure_building(self) -> None:
        if self.state is ChartState.RENDERED:
            raise ChartFinalizedError(
                f"Chart {self.title or ''!r} was already rendered to {[str(p) for p in self.artifacts]}; "
                "build a new ChartSpec instead"
            )

    def _add(self, layer) -> "ChartSpec":
        self._ensure_building()
        self.layers.append(layer)
        return self

    @staticmethod
    def _require(data: pd.DataFrame, *columns: Optional[str]) -> pd.DataFrame:
        missing = [c for c in columns if c is not None and c not in data.columns]
        if missing:
            raise KeyError(f"Columns not found for chart layer: {missing}")
        return data.copy()

    # Layers
    def add_density(self, data: pd.DataFrame, column: str, **options) -> "ChartSpec":
        return self._add(DensityLayer(self._require(data, column), column, **options))

    def add_ridges(
        self, data: pd.DataFrame, value_column: str, category_column: str, **options
    ) -> "ChartSpec":
        data = self._require(data, value_column, category_column)
        return self._add(RidgeLayer(data, value_column, category_column, **options))

    def add_intervals(
        self, data: pd.DataFrame, estimate: str, lower: str, upper: str, **options
    ) -> "ChartSpec":
        position = options.get("position")
        data = self._require(
            data,
            estimate,
            lower,
            upper,
            position if isinstance(position, str) else None,
            options.get("label_column"),
        )
        return self._add(IntervalLayer(data, estimate, lower, upper, **options))

    def add_points(self, data: pd.DataFrame, x: str, y: str, **options) -> "ChartSpec":
        return self._add(PointLayer(self._require(data, x, y), x, y, **options))

    def add_reference_line(self, value: float, **options) -> "ChartSpec":
        return self._add(ReferenceLineLayer(float(value), **options))

    def add_text(self, text: str, x: float, y: float, **options) -> "ChartSpec":
        return self._add(TextLayer(text, x, y, kind=LayerKind.TEXT, **options))

    def add_label(self, text: str, x: float, y: float, **options) -> "ChartSpec":
        return self._add(TextLayer(text, x, y, kind=LayerKind.LABEL, **options))

    def add_repel_labels(
        self, data: pd.DataFrame, x: str, y: str, label: str, **options
    ) -> "ChartSpec":
        return self._add(RepelLabelLayer(self._require(data, x, y, label), x, y, label, **options))

    def add_legend(self, loc: str = "best") -> "ChartSpec":
        self._ensure_building()
        self.legend_loc = loc
        return self

    # Scales and theme
    def set_axis(
        self,
        axis: str,
        limits: Optional[Tuple[float, float]] = None,
        ticks: Optional[Sequence[float]] = None,
        label: Optional[str] = None,
        tick_labels: Optional[Sequence[str]] = None,
    ) -> "ChartSpec":
        self._ensure_building()
        if axis not in self.axes:
            raise ValueError(f"axis must be 'x' or 'y', got: {axis}")
        if tick_labels is not None and (ticks is None or len(ticks) != len(tick_labels)):
            raise ValueError("tick_labels requires ticks of the same length")
        self.axes[axis] = AxisScale(
            limits=tuple(limits) if limits is not None else None,
            ticks=list(ticks) if ticks is not None else None,
            tick_labels=list(tick_labels) if tick_labels is not None else None,
            label=label,
        )
        return self

    def set_theme(self, theme: ChartTheme) -> "ChartSpec":
        self._ensure_building()
        self.theme = theme
        return self

    # Rendering
    def _apply_axes(self, ax) -> None:
        x, y = self.axes["x"], self.axes["y"]
        if x.limits is not None:
            ax.set_xlim(*x.limits)
        if y.limits is not None:
            ax.set_ylim(*y.limits)
        if x.ticks is not None:
            ax.set_xticks(x.ticks)
            if x.tick_labels is not None:
                ax.set_xticklabels(x.tick_labels)
        if y.ticks is not None:
            ax.set_yticks(y.ticks)
            if y.tick_labels is not None:
                ax.set_yticklabels(y.tick_labels)
        if x.label is not None:
            ax.set_xlabel(x.label)
        if y.label is not None:
            ax.set_ylabel(y.label)

    def _draw(self, width: float, height: float):
        """Build and return the matplotlib figure for this chart; the figure is closed if drawing fails."""
        fig, ax = plt.subplots(figsize=(width, height))
        try:
            self._draw_on(fig, ax)
        except Exception:
            plt.close(fig)
            raise
        return fig

    def _draw_on(self, fig, ax) -> None:
        if self.title:
            ax.set_title(self.title)
        ax.grid(self.theme.grid)

        # Repelled labels need final axis limits, so they are placed last
        deferred = []
        for index, layer in enumerate(self.layers):
            zorder = 2.0 + index
            if layer.kind is LayerKind.REPEL_LABELS:
                deferred.append((layer, zorder))
                continue
            _DRAWERS[layer.kind](ax, layer, zorder)
        self._apply_axes(ax)
        for layer, zorder in deferred:
            _draw_repel_labels(ax, layer, zorder)

        if self.legend_loc is not None:
            ax.legend(loc=self.legend_loc)
        if self.theme.margins:
            fig.subplots_adjust(**self.theme.margins)
        else:
            fig.tight_layout()

    def render(
        self,
        paths: Sequence[Union[str, Path]],
        width: float,
        height: float,
        dpi: int = 300,
    ) -> List[Path]:
        """
        Draw the chart once and save the same figure to every path.

        width/height are in inches; dpi applies to raster formats. The format
        of each file is taken from its suffix. The chart is frozen once drawing
        succeeds; a layer that fails to draw leaves it editable. If a write
        fails after others succeeded, the written files are kept and
        reported in the raised FileAccessError.
        """
        self._ensure_building()
        targets = [Path(p) for p in paths]
        if not targets:
            raise ValueError("render requires at least one output path")
        supported = FigureCanvasBase.get_supported_filetypes()
        for target in targets:
            fmt = target.suffix.lstrip(".").lower()
            if fmt not in supported:
                raise ValueError(f"Unsupported image format '{fmt}' for {target}; supported: {sorted(supported)}")
        if width <= 0 or height <= 0:
            raise ValueError(f"width and height must be positive, got: {width}x{height}")

        written: List[Path] = []
        with plt.style.context(self.theme.style), plt.rc_context(self.theme.rc_params()):
            fig = self._draw(width, height)
            self.state = ChartState.RENDERED
            try:
                for target in targets:
                    try:
                        target.parent.mkdir(parents=True, exist_ok=True)
                        fig.savefig(target, format=target.suffix.lstrip(".").lower(), dpi=dpi)
                    except OSError as e:
                        logger.error(
                            "Failed to write %s; already written: %s", target, [str(p) for p in written]
                        )
                        raise FileAccessError(
                            f"Could not write chart to {target} ({e}); already written: {[str(p) for p in written]}"
                        )
                    written.append(target)
                    logger.info("Wrote chart %s", target)
            finally:
                plt.close(fig)
                self.artifacts = written
        return written
