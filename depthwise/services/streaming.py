from __future__ import annotations

from typing import Any

from depthwise.models.events import AnnotationType, DataAnnotation
from depthwise.models.research import Activity, ResearchSession, Source
from depthwise.services import depth


def _annotation(kind: AnnotationType, data: Any) -> DataAnnotation:
    return DataAnnotation(data={"type": kind.value, "data": data})


def chart(chart_data: dict[str, Any]) -> DataAnnotation:
    return _annotation(AnnotationType.CHART, chart_data)


def related_questions(items: list[dict[str, str]] | None = None) -> DataAnnotation:
    """Related questions; an empty list is the placeholder sent before generation."""
    return _annotation(AnnotationType.RELATED_QUESTIONS, {"items": items or []})


def activity_update(activity: Activity, session: ResearchSession) -> DataAnnotation:
    return _annotation(
        AnnotationType.RESEARCH_ACTIVITY,
        {
            "activity": activity.to_dict(),
            "currentDepth": session.current_depth,
            "maxDepth": session.max_depth,
            "completedSteps": session.completed_steps,
            "totalExpectedSteps": session.total_expected_steps,
        },
    )


def source_update(source: Source, session: ResearchSession) -> DataAnnotation:
    return _annotation(
        AnnotationType.RESEARCH_SOURCE,
        {"source": source.to_dict(), "currentDepth": session.current_depth},
    )


def research_state(session: ResearchSession) -> DataAnnotation:
    return _annotation(AnnotationType.RESEARCH_STATE, depth.snapshot(session))


def parse_annotation(data: Any) -> tuple[AnnotationType, Any] | None:
    """Validate an incoming annotation; None when it is not one of ours."""
    if not isinstance(data, dict) or "data" not in data:
        return None
    try:
        kind = AnnotationType(data.get("type"))
    except ValueError:
        return None
    return kind, data["data"]
