from __future__ import annotations

import math
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timezone
from typing import Iterable, Protocol, Sequence

from .config import settings
from .domain import EventSnapshot, ScoreBreakdown, ScoredEvent, UserProfile, normalize_dt
from .errors import UpstreamUnavailable
from .event_store import EventStore
from .logging_utils import log_event, log_warning

TAG_POINTS = 10.0
TAG_BONUS_THRESHOLD = 2
TAG_BONUS = 15.0
RECENCY_MAX = 10.0
POPULARITY_PER_ATTENDEE = 2.0
POPULARITY_MAX = 10.0

_SECONDS_PER_DAY = 86400


class Scorer(Protocol):
    name: str

    def score(self, profile: UserProfile, event: EventSnapshot, as_of: datetime) -> float:
        ...


class ArithmeticScorer:
    """Built-in scorer: tag overlap, closeness in time and popularity, each computed in isolation."""

    name = "arithmetic"

    def __init__(self, window_days: int | None = None):
        self.window_days = window_days if window_days is not None else settings.recommendations_window_days

    def breakdown(self, profile: UserProfile, event: EventSnapshot, as_of: datetime) -> ScoreBreakdown:
        interests = profile.normalized_interests
        matched: dict[str, str] = {}
        for name in event.tags:
            key = name.strip().lower()
            if key in interests:
                matched.setdefault(key, name)
        matches = len(matched)
        if not matches:
            # No shared interest means zero on every component.
            return ScoreBreakdown(tag_score=0.0, recency_score=0.0, popularity_score=0.0, matched_tags=())
        tag_score = TAG_POINTS * matches + (TAG_BONUS if matches > TAG_BONUS_THRESHOLD else 0.0)

        return ScoreBreakdown(
            tag_score=tag_score,
            recency_score=self.recency(event.start_time, as_of),
            popularity_score=min(POPULARITY_PER_ATTENDEE * event.attendee_count, POPULARITY_MAX),
            matched_tags=tuple(matched.values()),
        )

    def recency(self, start_time: datetime, as_of: datetime) -> float:
        start_time = normalize_dt(start_time)
        as_of = normalize_dt(as_of)
        if start_time < as_of:
            return 0.0
        days = math.ceil((start_time - as_of).total_seconds() / _SECONDS_PER_DAY)
        if days > self.window_days:
            return 0.0
        return max(0.0, RECENCY_MAX - days / 2)

    def score(self, profile: UserProfile, event: EventSnapshot, as_of: datetime) -> float:
        return self.breakdown(profile, event, as_of).total


def explain(breakdown: ScoreBreakdown, event: EventSnapshot) -> str:
    parts: list[str] = []
    if breakdown.matched_tags:
        parts.append(f"Matches your interests: {', '.join(breakdown.matched_tags)}")
    if breakdown.recency_score > 0:
        parts.append("Happening soon")
    if breakdown.popularity_score > 0:
        parts.append(f"{event.attendee_count} going")
    return " • ".join(parts)


def matches_search(event: EventSnapshot, search: str | None) -> bool:
    needle = (search or "").strip().lower()
    if not needle:
        return True
    if needle in event.title.lower() or needle in event.description.lower():
        return True
    return any(needle in tag.lower() for tag in event.tags)


class RankingEngine:
    """Orders approved events for one user.

    ``rank`` is a pure function of (profile, snapshot, as_of). ``recommend`` takes the
    snapshot from the store and defaults ``as_of`` to now. When a pluggable scorer is
    configured and it times out or fails, the whole call is scored by the built-in
    ``ArithmeticScorer`` instead so one response never mixes scorers.
    """

    def __init__(
        self,
        store: EventStore | None = None,
        scorer: Scorer | None = None,
        *,
        fallback: ArithmeticScorer | None = None,
        deadline_seconds: float | None = None,
    ):
        self.store = store
        self.fallback = fallback or ArithmeticScorer()
        self.scorer = scorer or self.fallback
        self.deadline_seconds = (
            deadline_seconds if deadline_seconds is not None else settings.external_scorer_deadline_seconds
        )

    def recommend(
        self,
        profile: UserProfile,
        *,
        as_of: datetime | None = None,
        search: str | None = None,
        limit: int | None = None,
    ) -> list[ScoredEvent]:
        if self.store is None:
            raise RuntimeError("RankingEngine.recommend needs an EventStore")
        as_of = normalize_dt(as_of) or datetime.now(timezone.utc)
        results = self.rank(profile, self.store.approved_snapshot(), as_of, search=search, limit=limit)
        log_event(
            "recommendations_served",
            user_id=profile.id,
            count=len(results),
            scorer=results[0].scorer if results else self.scorer.name,
        )
        return results

    def rank(
        self,
        profile: UserProfile,
        snapshot: Iterable[EventSnapshot],
        as_of: datetime,
        *,
        search: str | None = None,
        limit: int | None = None,
    ) -> list[ScoredEvent]:
        as_of = normalize_dt(as_of)
        candidates = [
            event
            for event in snapshot
            if normalize_dt(event.end_time) >= as_of and matches_search(event, search)
        ]
        scored = [item for item in self._score_all(profile, candidates, as_of) if item.score > 0]
        scored.sort(key=lambda item: (-item.score, normalize_dt(item.event.start_time), str(item.event.id)))
        if limit is not None and limit > 0:
            scored = scored[:limit]
        return scored

    def _score_all(
        self, profile: UserProfile, candidates: Sequence[EventSnapshot], as_of: datetime
    ) -> list[ScoredEvent]:
        if self.scorer is self.fallback or not candidates:
            return self._arithmetic(profile, candidates, as_of)
        try:
            scores = self._external_scores(profile, candidates, as_of)
        except UpstreamUnavailable as exc:
            log_warning(
                "scorer_unavailable",
                scorer=self.scorer.name,
                fallback=self.fallback.name,
                user_id=profile.id,
                error=exc.message,
            )
            return self._arithmetic(profile, candidates, as_of)
        return [
            ScoredEvent(event=event, score=score, scorer=self.scorer.name)
            for event, score in zip(candidates, scores)
        ]

    def _arithmetic(
        self, profile: UserProfile, candidates: Sequence[EventSnapshot], as_of: datetime
    ) -> list[ScoredEvent]:
        results = []
        for event in candidates:
            breakdown = self.fallback.breakdown(profile, event, as_of)
            results.append(
                ScoredEvent(
                    event=event,
                    score=breakdown.total,
                    scorer=self.fallback.name,
                    breakdown=breakdown,
                    reason=explain(breakdown, event),
                )
            )
        return results

    def _external_scores(
        self, profile: UserProfile, candidates: Sequence[EventSnapshot], as_of: datetime
    ) -> list[float]:
        cancelled = threading.Event()

        def run() -> list[float]:
            scores: list[float] = []
            for event in candidates:
                if cancelled.is_set():
                    break
                scores.append(float(self.scorer.score(profile, event, as_of)))
            return scores

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scorer")
        future = executor.submit(run)
        try:
            scores = future.result(timeout=self.deadline_seconds)
        except FutureTimeout as exc:
            cancelled.set()
            raise UpstreamUnavailable(
                f"{self.scorer.name} scorer missed the {self.deadline_seconds}s deadline."
            ) from exc
        except UpstreamUnavailable:
            raise
        except Exception as exc:  # noqa: BLE001
            raise UpstreamUnavailable(f"{self.scorer.name} scorer failed: {exc}") from exc
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if any(not math.isfinite(score) for score in scores):
            raise UpstreamUnavailable(f"{self.scorer.name} scorer returned a non-finite score.")
        return scores
