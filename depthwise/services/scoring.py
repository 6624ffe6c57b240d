from __future__ import annotations

import re
from datetime import datetime, timezone
from urllib.parse import urlparse

from depthwise.models.research import SourceMetrics

EXACT_MATCH_BONUS = 0.3
UNKNOWN_DATE_SCORE = 0.5
UNKNOWN_DOMAIN_SCORE = 0.5

HIGH_AUTHORITY_DOMAINS = (
    "wikipedia.org",
    "github.com",
    "stackoverflow.com",
    "medium.com",
    "arxiv.org",
)

# (max age in days, score), checked in order
RECENCY_STEPS = (
    (7, 1.0),
    (30, 0.9),
    (90, 0.8),
    (365, 0.6),
)
STALE_SCORE = 0.4


def score(
    content: str,
    query: str,
    url: str,
    published_date: str | None = None,
    *,
    now: datetime | None = None,
) -> SourceMetrics:
    """Compute the four per-source metrics; depth_level is assigned on ingestion."""
    return SourceMetrics(
        relevance_score=relevance_score(content, query),
        depth_level=1,
        content_quality=content_quality(content),
        time_relevance=time_relevance(published_date, now=now),
        source_authority=source_authority(url),
    )


def relevance_score(content: str, query: str) -> float:
    terms = query.lower().split()
    if not content or not terms:
        return 0.0

    content_lower = content.lower()
    length_norm = len(content) / 500
    term_scores = []
    for term in terms:
        count = len(re.findall(re.escape(term), content_lower))
        term_scores.append(min(count / length_norm, 1.0))
    average = sum(term_scores) / len(term_scores)

    bonus = EXACT_MATCH_BONUS if query.lower().strip() in content_lower else 0.0
    return min(average + bonus, 1.0)


def content_quality(content: str) -> float:
    words = content.split()
    if not words:
        return 0.0

    length_score = min(len(content) / 2000, 1.0)
    paragraphs = [p for p in re.split(r"\n\s*\n", content) if p.strip()]
    structure_score = min(len(paragraphs) / 5, 1.0)
    diversity_score = len({w.lower() for w in words}) / len(words)
    return (length_score + structure_score + diversity_score) / 3


def _parse_date(value: str) -> datetime | None:
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def time_relevance(published_date: str | None, *, now: datetime | None = None) -> float:
    if not published_date:
        return UNKNOWN_DATE_SCORE
    published = _parse_date(published_date)
    if published is None:
        return UNKNOWN_DATE_SCORE

    current = now or datetime.now(timezone.utc)
    age_days = (current - published).total_seconds() / 86400
    for max_age, step_score in RECENCY_STEPS:
        if age_days < max_age:
            return step_score
    return STALE_SCORE


def source_authority(url: str) -> float:
    try:
        domain = (urlparse(url).hostname or "").lower()
    except ValueError:
        return UNKNOWN_DOMAIN_SCORE
    if not domain:
        return UNKNOWN_DOMAIN_SCORE

    if domain.endswith(".edu") or domain.endswith(".gov"):
        return 0.9
    if domain.endswith(".org"):
        return 0.8
    if any(d in domain for d in HIGH_AUTHORITY_DOMAINS):
        return 0.8
    return UNKNOWN_DOMAIN_SCORE
