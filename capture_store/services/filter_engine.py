from __future__ import annotations

import time
from collections import Counter
from collections.abc import Iterable, Mapping

from pydantic import BaseModel, ConfigDict, computed_field

from capture_store.filters import Criteria, LogicalOperator, Predicate
from capture_store.models import Session


class FilteringStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    filtered: int
    processing_time: float

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ratio(self) -> float:
        return self.filtered / self.total if self.total else 0.0


class SummaryStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    ongoing: int = 0
    average_duration: float = 0.0
    method_counts: dict[str, int] = {}
    status_code_counts: dict[int, int] = {}
    host_counts: dict[str, int] = {}


class FilterEngine:
    """Applies predicates to session lists.

    With ``track_performance`` enabled, every ``filter``/``filter_all`` call
    records a :class:`FilteringStats` in ``last_stats``.
    """

    def __init__(self, track_performance: bool = False) -> None:
        self.track_performance = track_performance
        self.active_filter: Predicate | None = None
        self.last_stats: FilteringStats | None = None

    def filter(self, sessions: Iterable[Session], predicate: Predicate) -> list[Session]:
        sessions = list(sessions)
        started = time.perf_counter()
        self.active_filter = predicate
        matched = [s for s in sessions if predicate.matches(s)]
        self._record(len(sessions), len(matched), started)
        return matched

    def filter_all(
        self,
        sessions: Iterable[Session],
        predicates: list[Predicate],
        operator: LogicalOperator = LogicalOperator.AND,
    ) -> list[Session]:
        """Combine independent predicates with a single operator."""
        sessions = list(sessions)
        if not predicates:
            return sessions

        started = time.perf_counter()
        combine = any if LogicalOperator(operator) is LogicalOperator.OR else all
        matched = [s for s in sessions if combine(p.matches(s) for p in predicates)]
        self._record(len(sessions), len(matched), started)
        return matched

    def categorize(
        self, sessions: Iterable[Session], groups: Mapping[str, Predicate]
    ) -> dict[str, list[Session]]:
        sessions = list(sessions)
        return {name: self.filter(sessions, predicate) for name, predicate in groups.items()}

    def filter_and_sort(
        self, sessions: Iterable[Session], predicate: Predicate, ascending: bool = True
    ) -> list[Session]:
        matched = self.filter(sessions, predicate)
        return sorted(matched, key=lambda s: s.start_time, reverse=not ascending)

    def paginate(
        self, sessions: Iterable[Session], predicate: Predicate, page: int, page_size: int
    ) -> list[Session]:
        """Return the 0-based ``page`` of matches; empty past the last page."""
        if page < 0 or page_size <= 0:
            return []
        matched = self.filter(sessions, predicate)
        start = page * page_size
        return matched[start : start + page_size]

    def filtering_statistics(
        self, sessions: Iterable[Session], predicate: Predicate
    ) -> FilteringStats:
        sessions = list(sessions)
        started = time.perf_counter()
        matched = self.filter(sessions, predicate)
        return FilteringStats(
            total=len(sessions),
            filtered=len(matched),
            processing_time=time.perf_counter() - started,
        )

    def clear_active_filter(self) -> None:
        self.active_filter = None

    def reset_statistics(self) -> None:
        self.last_stats = None

    # Shortcuts for the common presets.

    def success_only(self, sessions: Iterable[Session]) -> list[Session]:
        return self.filter(sessions, Criteria.success_only())

    def errors_only(self, sessions: Iterable[Session]) -> list[Session]:
        return self.filter(sessions, Criteria.errors_only())

    def by_host(self, sessions: Iterable[Session], host: str) -> list[Session]:
        return self.filter(sessions, Criteria.for_host(host))

    def slow_requests(
        self, sessions: Iterable[Session], threshold: float = 2.0
    ) -> list[Session]:
        return self.filter(sessions, Criteria.slow_requests(threshold))

    @staticmethod
    def summary_statistics(sessions: Iterable[Session]) -> SummaryStatistics:
        sessions = list(sessions)
        if not sessions:
            return SummaryStatistics()

        finished = [
            (s.end_time - s.start_time).total_seconds()
            for s in sessions
            if s.end_time is not None
        ]
        return SummaryStatistics(
            total=len(sessions),
            completed=sum(1 for s in sessions if s.is_completed),
            failed=sum(1 for s in sessions if s.is_failed),
            cancelled=sum(1 for s in sessions if s.is_cancelled),
            ongoing=sum(1 for s in sessions if s.is_ongoing),
            average_duration=sum(finished) / len(finished) if finished else 0.0,
            method_counts=dict(Counter(s.http_method for s in sessions)),
            status_code_counts=dict(
                Counter(s.status_code for s in sessions if s.status_code is not None)
            ),
            host_counts=dict(Counter(s.host for s in sessions if s.host)),
        )

    def _record(self, total: int, filtered: int, started: float) -> None:
        if self.track_performance:
            self.last_stats = FilteringStats(
                total=total,
                filtered=filtered,
                processing_time=time.perf_counter() - started,
            )
