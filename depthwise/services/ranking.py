from __future__ import annotations

import math
from typing import Iterable, TypeVar

from depthwise.models.research import CompositeBreakdown, CompositeScore, Source, SourceMetrics

WEIGHTS = {
    "relevance": 0.35,
    "quality": 0.25,
    "time": 0.15,
    "authority": 0.15,
    "depth": 0.10,
}

T = TypeVar("T")


def depth_bonus(depth_level: int, max_depth: int) -> float:
    """Logarithmic bonus so deeper sources gain a bounded, diminishing edge."""
    if max_depth < 1:
        return 0.0
    bonus = math.log10(max(depth_level, 0) + 1) / math.log10(max_depth + 1)
    return max(0.0, min(bonus, 1.0))


def rank(metrics: SourceMetrics, current_depth: int, max_depth: int) -> CompositeScore:
    breakdown = CompositeBreakdown(
        relevance=metrics.relevance_score * WEIGHTS["relevance"],
        quality=metrics.content_quality * WEIGHTS["quality"],
        time=metrics.time_relevance * WEIGHTS["time"],
        authority=metrics.source_authority * WEIGHTS["authority"],
        depth=depth_bonus(metrics.depth_level, max_depth) * WEIGHTS["depth"],
    )
    total = (
        breakdown.relevance
        + breakdown.quality
        + breakdown.time
        + breakdown.authority
        + breakdown.depth
    )
    return CompositeScore(total=round(total, 2), breakdown=breakdown)


def score_label(total: float) -> str:
    if total >= 0.8:
        return "excellent"
    if total >= 0.6:
        return "good"
    if total >= 0.4:
        return "fair"
    return "basic"


def sort_by_composite_score(
    items: Iterable[tuple[T, SourceMetrics]],
    current_depth: int,
    max_depth: int,
) -> list[tuple[T, CompositeScore]]:
    """Attach a composite score to each item and order best first (stable on ties)."""
    scored = [(item, rank(metrics, current_depth, max_depth)) for item, metrics in items]
    return sorted(scored, key=lambda pair: pair[1].total, reverse=True)


def ranked_sources(sources: Iterable[Source], current_depth: int, max_depth: int) -> list[dict]:
    """Sources with metrics, ranked for display, each carrying its score and label."""
    sources_list = list(sources)
    with_metrics = [(s, s.metrics) for s in sources_list if s.metrics is not None]
    ranked = []
    for source, composite in sort_by_composite_score(with_metrics, current_depth, max_depth):
        entry = source.to_dict()
        entry["score"] = composite.to_dict()
        entry["label"] = score_label(composite.total)
        ranked.append(entry)
    ranked.extend(s.to_dict() for s in sources_list if s.metrics is None)
    return ranked
