from pathlib import Path

import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from synmeta.charts import ChartSpec, ChartState, chart_paths, density_peak, repel_positions
from synmeta.errors import ChartFinalizedError, FileAccessError


@pytest.fixture
def proportions() -> pd.DataFrame:
    rng = np.random.default_rng(0)
    return pd.DataFrame(
        {
            "prop_red": rng.beta(5, 3, size=60),
            "group": ["poetry", "prose", "news"] * 20,
        }
    )


def test_render_writes_every_format(tmp_path: Path, proportions):
    chart = ChartSpec(title="Proportions")
    chart.add_density(proportions, "prop_red", support=(0.0, 1.0)).add_reference_line(0.5)
    paths = chart_paths(tmp_path / "charts", "density", ("png", "svg"))
    written = chart.render(paths, width=4, height=3, dpi=72)
    assert written == paths
    for path in paths:
        assert path.exists() and path.stat().st_size > 0
    assert chart.state is ChartState.RENDERED
    assert chart.artifacts == paths


def test_modifying_after_render_raises(tmp_path: Path, proportions):
    chart = ChartSpec().add_density(proportions, "prop_red")
    chart.render([tmp_path / "c.png"], width=3, height=2, dpi=50)
    with pytest.raises(ChartFinalizedError):
        chart.add_reference_line(0.5)
    with pytest.raises(ChartFinalizedError):
        chart.set_axis("x", limits=(0, 1))
    with pytest.raises(ChartFinalizedError):
        chart.render([tmp_path / "again.png"], width=3, height=2)


def test_render_rejects_bad_format_and_size(tmp_path: Path, proportions):
    chart = ChartSpec().add_density(proportions, "prop_red")
    with pytest.raises(ValueError):
        chart.render([tmp_path / "c.notaformat"], width=3, height=2)
    with pytest.raises(ValueError):
        chart.render([tmp_path / "c.png"], width=0, height=2)
    # Failed validation leaves the chart editable
    assert chart.state is ChartState.BUILDING


def test_layer_data_is_copied(proportions):
    chart = ChartSpec().add_density(proportions, "prop_red")
    proportions.loc[0, "prop_red"] = 99.0
    assert chart.layers[0].data.loc[0, "prop_red"] != 99.0


def test_missing_layer_column_raises(proportions):
    with pytest.raises(KeyError):
        ChartSpec().add_points(proportions, "prop_red", "absent")


def test_label_draws_box_and_text_does_not():
    chart = ChartSpec()
    chart.add_text("plain", 0.2, 0.2).add_label("boxed", 0.8, 0.8)
    fig = chart._draw(3, 2)
    try:
        texts = {t.get_text(): t for t in fig.axes[0].texts}
        assert texts["plain"].get_bbox_patch() is None
        assert texts["boxed"].get_bbox_patch() is not None
    finally:
        plt.close(fig)


def test_ridges_one_row_per_category(proportions):
    chart = ChartSpec().add_ridges(proportions, "prop_red", "group", support=(0.0, 1.0))
    fig = chart._draw(4, 3)
    try:
        labels = [t.get_text() for t in fig.axes[0].get_yticklabels()]
        assert labels == ["poetry", "prose", "news"]
    finally:
        plt.close(fig)


def test_intervals_require_ordered_bounds():
    bad = pd.DataFrame({"estimate": [0.5], "lower": [0.6], "upper": [0.7]})
    chart = ChartSpec().add_intervals(bad, "estimate", "lower", "upper")
    with pytest.raises(ValueError):
        chart._draw(3, 2)
    plt.close("all")


def test_repel_positions_reproducible_with_seed():
    anchors = np.array([[0.5, 0.5], [0.51, 0.5], [0.5, 0.51], [0.2, 0.8]])
    sizes = np.full((4, 2), [0.1, 0.04])
    first = repel_positions(anchors, sizes, seed=42)
    second = repel_positions(anchors, sizes, seed=42)
    np.testing.assert_array_equal(first, second)
    assert first.shape == (4, 2)
    assert np.all((first >= 0) & (first <= 1))


def test_repel_positions_separate_overlapping_labels():
    anchors = np.array([[0.5, 0.5], [0.5, 0.5]])
    sizes = np.full((2, 2), [0.1, 0.04])
    placed = repel_positions(anchors, sizes, seed=1)
    dx = abs(placed[0, 0] - placed[1, 0])
    dy = abs(placed[0, 1] - placed[1, 1])
    # Spring pull-back leaves at most a small residual overlap
    assert dx >= 0.075 or dy >= 0.03


def test_repel_labels_subset_is_seeded(tmp_path: Path):
    data = pd.DataFrame(
        {"x": np.linspace(0, 1, 10), "y": np.linspace(1, 5, 10), "item": [f"w{i}" for i in range(10)]}
    )

    def drawn_labels(seed):
        chart = ChartSpec().add_points(data, "x", "y").add_repel_labels(data, "x", "y", "item", subset=4, seed=seed)
        fig = chart._draw(4, 3)
        try:
            return sorted(t.get_text() for t in fig.axes[0].texts)
        finally:
            plt.close(fig)

    assert len(drawn_labels(7)) == 4
    assert drawn_labels(7) == drawn_labels(7)


def test_density_peak_degenerate_input():
    assert density_peak([0.3, 0.3, 0.3]) == 1.0
    assert density_peak([0.1, 0.2, 0.4, 0.5]) > 0


def test_failed_draw_closes_figure_and_keeps_chart_editable(tmp_path: Path):
    plt.close("all")
    bad = pd.DataFrame({"estimate": [0.5], "lower": [0.6], "upper": [0.7]})
    chart = ChartSpec().add_intervals(bad, "estimate", "lower", "upper")
    with pytest.raises(ValueError):
        chart.render([tmp_path / "c.png"], width=3, height=2, dpi=50)
    assert plt.get_fignums() == []
    assert chart.state is ChartState.BUILDING
    assert chart.artifacts == []
    assert not (tmp_path / "c.png").exists()


def test_partial_write_keeps_and_reports_written_files(tmp_path: Path, proportions):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    first = tmp_path / "a.png"
    chart = ChartSpec().add_density(proportions, "prop_red")
    with pytest.raises(FileAccessError) as excinfo:
        chart.render([first, blocker / "b.svg"], width=3, height=2, dpi=50)
    assert "a.png" in str(excinfo.value)
    assert first.exists()
    assert chart.artifacts == [first]
    assert chart.state is ChartState.RENDERED


def test_unclipped_layers_draw_outside_axes(proportions):
    chart = (
        ChartSpec()
        .add_density(proportions, "prop_red", clip=False)
        .add_points(proportions, "prop_red", "prop_red", clip=False)
    )
    fig = chart._draw(3, 2)
    try:
        ax = fig.axes[0]
        assert len(ax.collections) == 2
        assert all(artist.get_clip_on() is False for artist in ax.collections)
        assert all(line.get_clip_on() is False for line in ax.lines)
    finally:
        plt.close(fig)


def test_layers_are_clipped_by_default(proportions):
    chart = ChartSpec().add_points(proportions, "prop_red", "prop_red")
    fig = chart._draw(3, 2)
    try:
        assert fig.axes[0].collections[0].get_clip_on() is True
    finally:
        plt.close(fig)


def test_legend_lists_labelled_layers(proportions):
    chart = (
        ChartSpec()
        .add_density(proportions, "prop_red", label="Words")
        .add_reference_line(0.5, label="Chance")
        .add_legend("upper left")
    )
    fig = chart._draw(3, 2)
    try:
        legend = fig.axes[0].get_legend()
        assert legend is not None
        assert {t.get_text() for t in legend.get_texts()} == {"Words", "Chance"}
    finally:
        plt.close(fig)


def test_no_legend_unless_requested(proportions):
    fig = ChartSpec().add_density(proportions, "prop_red", label="Words")._draw(3, 2)
    try:
        assert fig.axes[0].get_legend() is None
    finally:
        plt.close(fig)
