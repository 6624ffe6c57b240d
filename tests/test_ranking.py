from __future__ import annotations

import pytest

from depthwise.models.research import Source, SourceMetrics
from depthwise.services import ranking


def _metrics(value: float, depth: int = 1) -> SourceMetrics:
    return SourceMetrics(
        relevance_score=value,
        depth_level=depth,
        content_quality=value,
        time_relevance=value,
        source_authority=value,
    )


def test_weights_sum_to_one():
    assert sum(ranking.WEIGHTS.values()) == pytest.approx(1.0)


def test_perfect_source_at_max_depth_scores_one():
    result = ranking.rank(_metrics(1.0, depth=7), current_depth=7, max_depth=7)
    assert result.total == 1.0
    assert result.breakdown.depth == pytest.approx(0.10)


def test_zero_source_scores_zero():
    result = ranking.rank(_metrics(0.0, depth=0), current_depth=1, max_depth=7)
    assert result.total == 0.0


def test_total_is_rounded_and_bounded():
    result = ranking.rank(_metrics(0.37, depth=3), current_depth=3, max_depth=7)
    assert 0.0 <= result.total <= 1.0
    assert result.total == round(result.total, 2)


def test_depth_bonus_is_logarithmic():
    first = ranking.depth_bonus(1, 7)
    second = ranking.depth_bonus(2, 7)
    last = ranking.depth_bonus(7, 7)
    assert 0.0 < first < second < last == pytest.approx(1.0)
    assert second - first > last - ranking.depth_bonus(6, 7)


@pytest.mark.parametrize(
    "total, label",
    [(0.95, "excellent"), (0.8, "excellent"), (0.6, "good"), (0.45, "fair"), (0.39, "basic")],
)
def test_score_label(total, label):
    assert ranking.score_label(total) == label


def test_sort_is_best_first_and_stable():
    items = [("low", _metrics(0.2)), ("high", _metrics(0.9)), ("low-twin", _metrics(0.2))]
    ordered = ranking.sort_by_composite_score(items, current_depth=1, max_depth=7)
    assert [name for name, _ in ordered] == ["high", "low", "low-twin"]


def test_ranked_sources_puts_unscored_sources_last():
    scored = Source(url="https://a.org", title="A", relevance=0.5, metrics=_metrics(0.8))
    unscored = Source(url="https://b.com", title="B", relevance=0.9)
    ranked = ranking.ranked_sources([unscored, scored], current_depth=1, max_depth=7)

    assert [s["url"] for s in ranked] == ["https://a.org", "https://b.com"]
    assert ranked[0]["label"] in ("excellent", "good", "fair", "basic")
    assert set(ranked[0]["score"]["breakdown"]) == {"relevance", "quality", "time", "authority", "depth"}
    assert "score" not in ranked[1]
