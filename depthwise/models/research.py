from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

MIN_DEPTH_LIMIT = 1
MAX_DEPTH_LIMIT = 10


class ActivityType(StrEnum):
    SEARCH = "search"
    EXTRACT = "extract"
    ANALYZE = "analyze"
    REASONING = "reasoning"
    SYNTHESIS = "synthesis"
    THOUGHT = "thought"


class ActivityStatus(StrEnum):
    PENDING = "pending"
    COMPLETE = "complete"
    ERROR = "error"


def now_ms() -> int:
    return int(time.time() * 1000)


def clamp_max_depth(value: int) -> int:
    return max(MIN_DEPTH_LIMIT, min(MAX_DEPTH_LIMIT, int(value)))


@dataclass(frozen=True, slots=True)
class SourceMetrics:
    relevance_score: float
    depth_level: int
    content_quality: float
    time_relevance: float
    source_authority: float

    def with_depth(self, depth_level: int) -> SourceMetrics:
        return SourceMetrics(
            relevance_score=self.relevance_score,
            depth_level=depth_level,
            content_quality=self.content_quality,
            time_relevance=self.time_relevance,
            source_authority=self.source_authority,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "relevanceScore": self.relevance_score,
            "depthLevel": self.depth_level,
            "contentQuality": self.content_quality,
            "timeRelevance": self.time_relevance,
            "sourceAuthority": self.source_authority,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SourceMetrics:
        return cls(
            relevance_score=float(data.get("relevanceScore", 0.0)),
            depth_level=int(data.get("depthLevel", 1)),
            content_quality=float(data.get("contentQuality", 0.0)),
            time_relevance=float(data.get("timeRelevance", 0.5)),
            source_authority=float(data.get("sourceAuthority", 0.5)),
        )


@dataclass(frozen=True, slots=True)
class Activity:
    """One research log entry; never mutated once appended."""

    type: ActivityType
    status: ActivityStatus
    message: str
    timestamp: int = field(default_factory=now_ms)
    depth: int | None = None

    def identity(self) -> tuple[int, str, int | None]:
        return (self.timestamp, self.message, self.depth)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "status": self.status.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.depth is not None:
            data["depth"] = self.depth
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Activity:
        depth = data.get("depth")
        return cls(
            type=ActivityType(data.get("type", "search")),
            status=ActivityStatus(data.get("status", "pending")),
            message=str(data.get("message", "")),
            timestamp=int(data.get("timestamp") or 0),
            depth=int(depth) if depth is not None else None,
        )


@dataclass(frozen=True, slots=True)
class Source:
    url: str
    title: str
    relevance: float
    content_snippet: str | None = None
    query_used: str | None = None
    published_date: str | None = None
    timestamp: int = field(default_factory=now_ms)
    metrics: SourceMetrics | None = None

    def identity(self) -> tuple[str, float]:
        return (self.url, self.relevance)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "url": self.url,
            "title": self.title,
            "relevance": self.relevance,
            "timestamp": self.timestamp,
        }
        if self.content_snippet is not None:
            data["contentSnippet"] = self.content_snippet
        if self.query_used is not None:
            data["queryUsed"] = self.query_used
        if self.published_date is not None:
            data["publishedDate"] = self.published_date
        if self.metrics is not None:
            data["metrics"] = self.metrics.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Source:
        raw_metrics = data.get("metrics")
        return cls(
            url=str(data.get("url", "")),
            title=str(data.get("title", "")),
            relevance=float(data.get("relevance", 0.0)),
            content_snippet=data.get("contentSnippet"),
            query_used=data.get("queryUsed"),
            published_date=data.get("publishedDate"),
            timestamp=int(data.get("timestamp") or 0),
            metrics=SourceMetrics.from_dict(raw_metrics) if isinstance(raw_metrics, dict) else None,
        )


@dataclass(frozen=True, slots=True)
class CompositeBreakdown:
    relevance: float
    quality: float
    time: float
    authority: float
    depth: float


@dataclass(frozen=True, slots=True)
class CompositeScore:
    total: float
    breakdown: CompositeBreakdown

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "breakdown": {
                "relevance": self.breakdown.relevance,
                "quality": self.breakdown.quality,
                "time": self.breakdown.time,
                "authority": self.breakdown.authority,
                "depth": self.breakdown.depth,
            },
        }


@dataclass(frozen=True, slots=True)
class DepthRules:
    min_relevance_for_next_depth: float = 0.7
    max_sources_per_depth: int = 5
    quality_threshold: float = 0.6


@dataclass(slots=True)
class ResearchSession:
    """Research state owned by a single chat.

    Transitions never mutate an instance in place; see
    ``depthwise.services.depth.transition``.
    """

    chat_id: str
    current_depth: int = 0
    max_depth: int = 7
    is_active: bool = False
    is_cleared: bool = False
    cleared_at: str | None = None
    completed_steps: int = 0
    total_expected_steps: int = 0
    depth_scores: dict[int, float] = field(default_factory=dict)
    adaptive_threshold: float = 0.7
    min_relevance_score: float = 0.6
    activity: list[Activity] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)
    source_metrics: list[SourceMetrics] = field(default_factory=list)

