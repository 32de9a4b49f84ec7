"""Free-text search over captured sessions.

A session matches a :class:`SearchQuery` when the query text occurs in at
least one searchable field, every predicate of the query matches, and its
start time lies inside the query's date range. Empty text matches every
session.

Unlike the filter predicates, an invalid regular expression here is an
error: :class:`InvalidSearchPatternError` is raised and nothing is matched.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID

from loguru import logger
from pydantic import BaseModel

from capture_store.errors import InvalidSearchPatternError, SearchTimeoutError
from capture_store.filters import Criteria, Predicate
from capture_store.models import Session, as_utc, metadata_text
from capture_store.storage.base import Storage


class SearchField(str, Enum):
    URL = "url"
    METHOD = "method"
    STATUS_CODE = "statusCode"
    REQUEST_HEADERS = "requestHeaders"
    RESPONSE_HEADERS = "responseHeaders"
    REQUEST_BODY = "requestBody"
    RESPONSE_BODY = "responseBody"
    METADATA = "metadata"
    HOST = "host"
    PATH = "path"
    QUERY_PARAMETERS = "queryParameters"


class SortOption(str, Enum):
    RELEVANCE = "relevance"
    TIMESTAMP = "timestamp"
    DURATION = "duration"
    STATUS_CODE = "statusCode"


class SearchConfig(BaseModel):
    case_sensitive: bool = False
    use_regex: bool = False
    full_text_search: bool = True
    search_fields: frozenset[SearchField] = frozenset(SearchField)
    max_results: int = 1000
    enable_highlights: bool = True
    timeout: float = 10.0
    enforce_timeout: bool = False


@dataclass(frozen=True)
class DateRange:
    """Inclusive on both ends. Naive datetimes are taken as UTC."""

    start: datetime
    end: datetime

    def __contains__(self, moment: datetime) -> bool:
        return as_utc(self.start) <= as_utc(moment) <= as_utc(self.end)

    @classmethod
    def today(cls) -> DateRange:
        start = datetime.now().astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
        return cls(start, start + timedelta(days=1))

    @classmethod
    def yesterday(cls) -> DateRange:
        today = cls.today().start
        return cls(today - timedelta(days=1), today)

    @classmethod
    def last_week(cls) -> DateRange:
        end = datetime.now().astimezone()
        return cls(end - timedelta(days=7), end)

    @classmethod
    def last_month(cls) -> DateRange:
        end = datetime.now().astimezone()
        return cls(end - timedelta(days=30), end)


@dataclass(frozen=True)
class SearchQuery:
    text: str = ""
    predicates: tuple[Predicate, ...] = ()
    date_range: DateRange | None = None
    sort_by: SortOption = SortOption.RELEVANCE
    ascending: bool = False


@dataclass(frozen=True)
class SearchHighlight:
    field: SearchField
    start: int
    end: int
    matched_text: str


@dataclass(frozen=True)
class SearchResult:
    sessions: list[Session]
    total_count: int
    match_count: int
    query: SearchQuery
    search_time: float = 0.0
    highlights: dict[UUID, list[SearchHighlight]] = field(default_factory=dict)

    @property
    def match_ratio(self) -> float:
        return self.match_count / self.total_count if self.total_count else 0.0


def _pairs(items: Iterable[tuple[str, Any]]) -> str:
    return " ".join(f"{key}: {value}" for key, value in items)


_FIELD_TEXT: dict[SearchField, Callable[[Session], str]] = {
    SearchField.URL: lambda s: s.request.url,
    SearchField.METHOD: lambda s: s.request.method.value,
    SearchField.STATUS_CODE: lambda s: str(s.status_code) if s.response else "",
    SearchField.REQUEST_HEADERS: lambda s: _pairs(s.request.headers.items()),
    SearchField.RESPONSE_HEADERS: lambda s: _pairs(s.response.headers.items()) if s.response else "",
    SearchField.REQUEST_BODY: lambda s: s.request.body_text() or "",
    SearchField.RESPONSE_BODY: lambda s: (s.response.body_text() or "") if s.response else "",
    SearchField.METADATA: lambda s: _pairs((k, metadata_text(v)) for k, v in s.metadata.items()),
    SearchField.HOST: lambda s: s.host or "",
    SearchField.PATH: lambda s: s.path or "",
    SearchField.QUERY_PARAMETERS: lambda s: _pairs(s.request.query_parameters().items()),
}

# Field order is fixed so highlights come out in a stable order.
_FIELD_ORDER = tuple(SearchField)

# Left out of matching when full_text_search is off.
_BODY_FIELDS = frozenset({SearchField.REQUEST_BODY, SearchField.RESPONSE_BODY})

_SORT_KEYS: dict[SortOption, Callable[[Session], Any]] = {
    SortOption.TIMESTAMP: lambda s: s.start_time,
    SortOption.DURATION: lambda s: s.duration,
    SortOption.STATUS_CODE: lambda s: s.status_code or 0,
}


def field_text(session: Session, search_field: SearchField) -> str:
    return _FIELD_TEXT[SearchField(search_field)](session)


def _relevance(session: Session, matcher: re.Pattern) -> float:
    def hit(text: str | None) -> bool:
        return bool(text) and matcher.search(text) is not None

    score = 0.0
    if hit(session.url):
        score += 10.0
    if hit(session.host):
        score += 8.0
    if hit(session.path):
        score += 6.0
    for key, value in session.request.headers.items():
        if hit(key) or hit(value):
            score += 3.0
    if session.response is not None:
        for key, value in session.response.headers.items():
            if hit(key) or hit(value):
                score += 2.0
    if hit(session.request.body_text()):
        score += 1.0
    if session.response is not None and hit(session.response.body_text()):
        score += 1.0
    return score


class SearchService:
    """Runs searches on a single worker thread owned by the instance."""

    def __init__(self, config: SearchConfig | None = None) -> None:
        self.config = config or SearchConfig()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="search")

    async def search(self, query: SearchQuery, sessions: Iterable[Session]) -> SearchResult:
        return await self._submit(query, sessions, self.config)

    async def search_storage(self, query: SearchQuery, storage: Storage) -> SearchResult:
        sessions = await storage.load_all()
        return await self.search(query, sessions)

    async def simple_search(self, text: str, sessions: Iterable[Session]) -> list[Session]:
        result = await self.search(SearchQuery(text=text), sessions)
        return result.sessions

    async def search_by_host(self, host: str, sessions: Iterable[Session]) -> SearchResult:
        config = self.config.model_copy(
            update={"search_fields": frozenset({SearchField.HOST, SearchField.URL})}
        )
        return await self._submit(SearchQuery(text=host), sessions, config)

    async def search_by_status_code(
        self, status_code: int, sessions: Iterable[Session]
    ) -> SearchResult:
        query = SearchQuery(predicates=(Criteria().status_code(status_code),))
        return await self.search(query, sessions)

    async def regex_search(self, pattern: str, sessions: Iterable[Session]) -> SearchResult:
        config = self.config.model_copy(update={"use_regex": True})
        return await self._submit(SearchQuery(text=pattern), sessions, config)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    async def _submit(
        self, query: SearchQuery, sessions: Iterable[Session], config: SearchConfig
    ) -> SearchResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, _run_search, query, list(sessions), config
        )


def _compile(query: SearchQuery, config: SearchConfig) -> re.Pattern | None:
    if not query.text:
        return None
    flags = 0 if config.case_sensitive else re.IGNORECASE
    pattern = query.text if config.use_regex else re.escape(query.text)
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        raise InvalidSearchPatternError(query.text, str(exc)) from exc


def _run_search(
    query: SearchQuery, sessions: list[Session], config: SearchConfig
) -> SearchResult:
    started = time.perf_counter()
    matcher = _compile(query, config)
    fields = [
        f
        for f in _FIELD_ORDER
        if f in config.search_fields and (config.full_text_search or f not in _BODY_FIELDS)
    ]

    def text_matches(session: Session) -> bool:
        return any(matcher.search(field_text(session, f)) for f in fields)

    matched = []
    for session in sessions:
        if config.enforce_timeout and time.perf_counter() - started > config.timeout:
            raise SearchTimeoutError(config.timeout)
        if matcher is not None and not text_matches(session):
            continue
        if not all(p.matches(session) for p in query.predicates):
            continue
        if query.date_range is not None and session.start_time not in query.date_range:
            continue
        matched.append(session)

    matched = _sort(matched, query, matcher)

    highlights = {}
    if matcher is not None and config.enable_highlights:
        highlights = _highlights(matched, matcher, fields)

    elapsed = time.perf_counter() - started
    if elapsed > config.timeout:
        logger.warning("Search for {!r} took {:.2f}s (timeout {:.2f}s)", query.text, elapsed, config.timeout)
    else:
        logger.debug("Search for {!r} matched {}/{} in {:.3f}s", query.text, len(matched), len(sessions), elapsed)

    return SearchResult(
        sessions=matched[: config.max_results],
        total_count=len(sessions),
        match_count=len(matched),
        query=query,
        search_time=elapsed,
        highlights=highlights,
    )


def _sort(sessions: list[Session], query: SearchQuery, matcher: re.Pattern | None) -> list[Session]:
    sort_by = SortOption(query.sort_by)
    if sort_by is SortOption.RELEVANCE:
        if matcher is None:
            return sessions
        return sorted(
            sessions, key=lambda s: _relevance(s, matcher), reverse=not query.ascending
        )

    return sorted(sessions, key=_SORT_KEYS[sort_by], reverse=not query.ascending)


def _highlights(
    sessions: list[Session], matcher: re.Pattern, fields: list[SearchField]
) -> dict[UUID, list[SearchHighlight]]:
    highlights: dict[UUID, list[SearchHighlight]] = {}
    for session in sessions:
        found = [
            SearchHighlight(f, m.start(), m.end(), m.group())
            for f in fields
            for m in matcher.finditer(field_text(session, f))
            if m.end() > m.start()
        ]
        if found:
            highlights[session.id] = found
    return highlights
