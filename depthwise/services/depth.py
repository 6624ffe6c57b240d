"""Adaptive research-depth controller.

State changes go through ``transition(state, event, rules)``, a pure function
that returns a new ``ResearchSession``. ``DepthController`` is the dispatcher
that owns one chat's session and applies events one at a time.

    idle (depth 0) -> active (depth 1) -> advancing ... -> exhausted
                         any state -> cleared -> (reactivate) -> previous flow
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable

from depthwise.config import settings
from depthwise.models.research import (
    Activity,
    ActivityStatus,
    DepthRules,
    ResearchSession,
    Source,
    SourceMetrics,
    clamp_max_depth,
)
from depthwise.services import logger as log_service
from depthwise.services.ranking import ranked_sources

DEFAULT_RULES = DepthRules()


def rules_from_settings() -> DepthRules:
    return DepthRules(
        min_relevance_for_next_depth=float(settings.research_min_relevance_for_next_depth),
        max_sources_per_depth=max(int(settings.research_max_sources_per_depth), 1),
        quality_threshold=float(settings.research_quality_threshold),
    )


# --- Events ---


@dataclass(frozen=True)
class Activate:
    pass


@dataclass(frozen=True)
class Deactivate:
    pass


@dataclass(frozen=True)
class AddActivity:
    activity: Activity
    completed_steps: int | None = None
    total_steps: int | None = None


@dataclass(frozen=True)
class AddSource:
    source: Source
    metrics: SourceMetrics


@dataclass(frozen=True)
class SetDepth:
    current: int
    max: int


@dataclass(frozen=True)
class UpdateProgress:
    completed: int
    total: int


@dataclass(frozen=True)
class InitProgress:
    total_steps: int


@dataclass(frozen=True)
class OptimizeDepth:
    pass


@dataclass(frozen=True)
class Clear:
    cleared_at: str | None = None


@dataclass(frozen=True)
class Reactivate:
    pass


DepthEvent = (
    Activate
    | Deactivate
    | AddActivity
    | AddSource
    | SetDepth
    | UpdateProgress
    | InitProgress
    | OptimizeDepth
    | Clear
    | Reactivate
)


# --- Pure operations ---


def _mean(values: list[float]) -> float:
    return sum(values) / len(values)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def effective_threshold(session: ResearchSession, rules: DepthRules = DEFAULT_RULES) -> float:
    depth_factor = 1 - (session.current_depth / session.max_depth) * 0.3
    return rules.min_relevance_for_next_depth * depth_factor


def should_advance(
    session: ResearchSession,
    all_metrics: Iterable[SourceMetrics],
    rules: DepthRules = DEFAULT_RULES,
) -> bool:
    if session.current_depth >= session.max_depth:
        return False

    current = [m for m in all_metrics if m.depth_level == session.current_depth]
    if len(current) < rules.max_sources_per_depth:
        return False

    avg_relevance = _mean([m.relevance_score for m in current])
    avg_quality = _mean([m.content_quality for m in current])
    return (
        avg_relevance >= effective_threshold(session, rules)
        and avg_quality >= rules.quality_threshold
    )


def advance(session: ResearchSession) -> ResearchSession:
    new_depth = session.current_depth + 1
    return replace(
        session,
        current_depth=new_depth,
        depth_scores={**session.depth_scores, new_depth: 0.0},
    )


def optimize_thresholds(
    session: ResearchSession, all_metrics: Iterable[SourceMetrics]
) -> ResearchSession:
    """Feed observed yield back into the thresholds."""
    by_depth: dict[int, list[float]] = {}
    for m in all_metrics:
        by_depth.setdefault(m.depth_level, []).append(m.relevance_score)

    depth_scores = dict(session.depth_scores)
    for depth, relevances in by_depth.items():
        depth_scores[depth] = _mean(relevances)
    if not depth_scores:
        return session

    adaptive = _clamp(_mean(list(depth_scores.values())), 0.5, 0.9)
    return replace(
        session,
        depth_scores=depth_scores,
        adaptive_threshold=adaptive,
        min_relevance_score=_clamp(adaptive - 0.1, 0.4, 0.8),
    )


def clear(session: ResearchSession, cleared_at: str | None = None) -> ResearchSession:
    return ResearchSession(
        chat_id=session.chat_id,
        max_depth=session.max_depth,
        is_cleared=True,
        cleared_at=cleared_at or datetime.now(timezone.utc).isoformat(),
    )


def _ensure_active(session: ResearchSession) -> ResearchSession:
    if session.is_active and session.current_depth >= 1:
        return session
    return replace(session, is_active=True, current_depth=max(session.current_depth, 1))


def transition(
    state: ResearchSession,
    event: DepthEvent,
    rules: DepthRules = DEFAULT_RULES,
) -> ResearchSession:
    if state.is_cleared and not isinstance(event, Reactivate):
        return state

    match event:
        case Activate():
            return _ensure_active(state)

        case Deactivate():
            activity = [
                replace(a, status=ActivityStatus.COMPLETE)
                if a.status == ActivityStatus.PENDING
                else a
                for a in state.activity
            ]
            return replace(state, is_active=False, activity=activity)

        case AddActivity(activity=activity, completed_steps=completed, total_steps=total):
            state = _ensure_active(state)
            if activity.depth is None:
                activity = replace(activity, depth=state.current_depth)
            return replace(
                state,
                activity=[*state.activity, activity],
                completed_steps=state.completed_steps if completed is None else completed,
                total_expected_steps=state.total_expected_steps if total is None else total,
            )

        case AddSource(source=source, metrics=metrics):
            state = _ensure_active(state)
            tagged = metrics.with_depth(state.current_depth)
            all_metrics = [*state.source_metrics, tagged]
            state = replace(
                state,
                sources=[*state.sources, replace(source, metrics=tagged)],
                source_metrics=all_metrics,
            )
            state = optimize_thresholds(state, all_metrics)
            if should_advance(state, all_metrics, rules):
                state = advance(state)
            return state

        case SetDepth(current=current, max=max_depth):
            bounded_max = max(clamp_max_depth(max_depth), state.current_depth)
            new_current = max(state.current_depth, min(current, bounded_max))
            return replace(state, current_depth=new_current, max_depth=bounded_max)

        case UpdateProgress(completed=completed, total=total):
            return replace(state, completed_steps=completed, total_expected_steps=total)

        case InitProgress(total_steps=total):
            return replace(state, completed_steps=0, total_expected_steps=total)

        case OptimizeDepth():
            if should_advance(state, state.source_metrics, rules):
                return advance(state)
            return state

        case Clear(cleared_at=cleared_at):
            return clear(state, cleared_at)

        case Reactivate():
            return replace(state, is_cleared=False, cleared_at=None)

    return state


# --- Dispatcher ---


class DepthController:
    """Owns one chat's ResearchSession and serializes transitions on it."""

    def __init__(self, session: ResearchSession, rules: DepthRules | None = None):
        self._session = session
        self.rules = rules or rules_from_settings()
        self._lock = asyncio.Lock()

    @property
    def session(self) -> ResearchSession:
        return self._session

    async def dispatch(self, event: DepthEvent) -> bool:
        """Apply an event; returns False when a cleared session rejects it."""
        async with self._lock:
            before = self._session
            if before.is_cleared and not isinstance(event, Reactivate):
                log_service.log_research_step(
                    before.chat_id,
                    type(event).__name__,
                    "rejected",
                    {"reason": "session cleared"},
                )
                return False

            after = transition(before, event, self.rules)
            self._session = after

        if after.current_depth > before.current_depth:
            log_service.log_research_step(
                after.chat_id,
                "depth",
                "advanced",
                {
                    "from": before.current_depth,
                    "to": after.current_depth,
                    "max_depth": after.max_depth,
                    "adaptive_threshold": after.adaptive_threshold,
                },
            )
        return True

    async def add_source(self, source: Source, metrics: SourceMetrics) -> bool:
        return await self.dispatch(AddSource(source=source, metrics=metrics))

    async def add_activity(
        self,
        activity: Activity,
        *,
        completed_steps: int | None = None,
        total_steps: int | None = None,
    ) -> bool:
        return await self.dispatch(
            AddActivity(activity=activity, completed_steps=completed_steps, total_steps=total_steps)
        )

    async def clear(self) -> bool:
        return await self.dispatch(Clear())

    async def reactivate(self) -> bool:
        return await self.dispatch(Reactivate())

    def should_advance(self) -> bool:
        return should_advance(self._session, self._session.source_metrics, self.rules)


# --- Views ---


def dedupe_activity(activity: Iterable[Activity]) -> list[Activity]:
    seen: set[tuple] = set()
    unique = []
    for item in activity:
        key = item.identity()
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def dedupe_sources(sources: Iterable[Source]) -> list[Source]:
    seen: set[tuple] = set()
    unique = []
    for item in sources:
        key = item.identity()
        if key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def snapshot(session: ResearchSession) -> dict:
    """Client view of a session: deduplicated activity, ranked sources."""
    return {
        "isActive": session.is_active,
        "isCleared": session.is_cleared,
        "clearedAt": session.cleared_at,
        "currentDepth": session.current_depth,
        "maxDepth": session.max_depth,
        "completedSteps": session.completed_steps,
        "totalExpectedSteps": session.total_expected_steps,
        "activity": [a.to_dict() for a in dedupe_activity(session.activity)],
        "sources": ranked_sources(
            dedupe_sources(session.sources), session.current_depth, session.max_depth
        ),
    }
