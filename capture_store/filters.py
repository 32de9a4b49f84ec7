"""Composable predicates over captured sessions.

A :class:`Criteria` holds an ordered list of conditions. The first
condition's result seeds the evaluation; every later condition is combined
with the running result through its own operator, strictly left to right.
There is no precedence and no short-circuiting: ``a OR b AND c`` means
``(a OR b) AND c`` and all three conditions are evaluated.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from capture_store.models import (
    HTTPMethod,
    Session,
    StatusCategory,
    as_utc,
    header_value,
)


@runtime_checkable
class Predicate(Protocol):
    def matches(self, session: Session) -> bool: ...


class LogicalOperator(str, Enum):
    AND = "and"
    OR = "or"


def match_text(text: str, pattern: str, is_regex: bool = False) -> bool:
    """Case-sensitive containment, or a regex search.

    A pattern that does not compile is matched literally instead.
    """
    if is_regex:
        try:
            return re.search(pattern, text) is not None
        except re.error:
            return pattern in text
    return pattern in text


def _within(value: float, minimum: float | None, maximum: float | None) -> bool:
    if minimum is not None and value < minimum:
        return False
    if maximum is not None and value > maximum:
        return False
    return True


class Condition(ABC):
    @abstractmethod
    def evaluate(self, session: Session) -> bool: ...


@dataclass(frozen=True)
class UrlCondition(Condition):
    pattern: str
    is_regex: bool = False

    def evaluate(self, session: Session) -> bool:
        return match_text(session.url, self.pattern, self.is_regex)


@dataclass(frozen=True)
class HostCondition(Condition):
    pattern: str
    is_regex: bool = False

    def evaluate(self, session: Session) -> bool:
        host = session.host
        return host is not None and match_text(host, self.pattern, self.is_regex)


@dataclass(frozen=True)
class PathCondition(Condition):
    pattern: str
    is_regex: bool = False

    def evaluate(self, session: Session) -> bool:
        path = session.path
        return path is not None and match_text(path, self.pattern, self.is_regex)


@dataclass(frozen=True)
class MethodCondition(Condition):
    method: HTTPMethod

    def evaluate(self, session: Session) -> bool:
        return session.request.method is self.method


@dataclass(frozen=True)
class StatusCodeCondition(Condition):
    status_code: int

    def evaluate(self, session: Session) -> bool:
        return session.status_code == self.status_code


@dataclass(frozen=True)
class StatusCodeRangeCondition(Condition):
    codes: range

    def evaluate(self, session: Session) -> bool:
        status_code = session.status_code
        return status_code is not None and status_code in self.codes


@dataclass(frozen=True)
class StatusCategoryCondition(Condition):
    category: StatusCategory

    def evaluate(self, session: Session) -> bool:
        return session.response is not None and session.response.status_category is self.category


@dataclass(frozen=True)
class ContentTypeCondition(Condition):
    content_type: str

    def evaluate(self, session: Session) -> bool:
        if session.response is None:
            return False
        header = header_value(session.response.headers, "Content-Type")
        return header is not None and self.content_type in header


@dataclass(frozen=True)
class RequestBodyCondition(Condition):
    def evaluate(self, session: Session) -> bool:
        return bool(session.request.body)


@dataclass(frozen=True)
class ResponseBodyCondition(Condition):
    def evaluate(self, session: Session) -> bool:
        return session.response is not None and bool(session.response.body)


@dataclass(frozen=True)
class DurationCondition(Condition):
    minimum: float | None = None
    maximum: float | None = None

    def evaluate(self, session: Session) -> bool:
        return _within(session.duration, self.minimum, self.maximum)


@dataclass(frozen=True)
class TimestampCondition(Condition):
    start: datetime | None = None
    end: datetime | None = None

    def evaluate(self, session: Session) -> bool:
        if self.start is not None and session.start_time < as_utc(self.start):
            return False
        if self.end is not None and session.start_time > as_utc(self.end):
            return False
        return True


@dataclass(frozen=True)
class MetadataCondition(Condition):
    key: str
    value: Any = None

    def evaluate(self, session: Session) -> bool:
        if self.key not in session.metadata:
            return False
        if self.value is None:
            return True
        stored = session.metadata[self.key]
        # 1 and True (or 1 and 1.0) are different metadata values
        return type(stored) is type(self.value) and stored == self.value


@dataclass(frozen=True)
class ErrorCondition(Condition):
    def evaluate(self, session: Session) -> bool:
        return session.response is not None and session.response.is_error


@dataclass(frozen=True)
class CacheCondition(Condition):
    def evaluate(self, session: Session) -> bool:
        return session.response is not None and session.response.from_cache


@dataclass(frozen=True)
class SslDecryptionCondition(Condition):
    def evaluate(self, session: Session) -> bool:
        return session.used_ssl_decryption


@dataclass(frozen=True)
class RetryCountCondition(Condition):
    minimum: int | None = None
    maximum: int | None = None

    def evaluate(self, session: Session) -> bool:
        return _within(session.retry_count, self.minimum, self.maximum)


class Criteria:
    """Builder for left-to-right AND/OR chains of conditions.

    Every builder method appends one condition and returns ``self`` so calls
    can be chained. The ``operator`` of the first condition is ignored. An
    empty ``Criteria`` matches everything.
    """

    def __init__(self) -> None:
        self._conditions: list[tuple[Condition, LogicalOperator | None]] = []

    def add(
        self, condition: Condition, operator: LogicalOperator = LogicalOperator.AND
    ) -> Criteria:
        self._conditions.append(
            (condition, LogicalOperator(operator) if self._conditions else None)
        )
        return self

    def url(self, pattern: str, regex: bool = False, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(UrlCondition(pattern, regex), operator)

    def host(self, pattern: str, regex: bool = False, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(HostCondition(pattern, regex), operator)

    def path(self, pattern: str, regex: bool = False, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(PathCondition(pattern, regex), operator)

    def method(self, method: HTTPMethod | str, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(MethodCondition(HTTPMethod(method)), operator)

    def status_code(self, status_code: int, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(StatusCodeCondition(status_code), operator)

    def status_code_range(self, codes: range, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(StatusCodeRangeCondition(codes), operator)

    def status_category(
        self, category: StatusCategory | str, operator: LogicalOperator = LogicalOperator.AND
    ) -> Criteria:
        return self.add(StatusCategoryCondition(StatusCategory(category)), operator)

    def content_type(self, content_type: str, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(ContentTypeCondition(content_type), operator)

    def has_request_body(self, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(RequestBodyCondition(), operator)

    def has_response_body(self, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(ResponseBodyCondition(), operator)

    def duration(
        self,
        minimum: float | None = None,
        maximum: float | None = None,
        operator: LogicalOperator = LogicalOperator.AND,
    ) -> Criteria:
        return self.add(DurationCondition(minimum, maximum), operator)

    def timestamp(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        operator: LogicalOperator = LogicalOperator.AND,
    ) -> Criteria:
        return self.add(TimestampCondition(start, end), operator)

    def metadata(self, key: str, value: Any = None, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        """Require ``key`` to be present, and equal to ``value`` when one is given."""
        return self.add(MetadataCondition(key, value), operator)

    def has_error(self, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(ErrorCondition(), operator)

    def from_cache(self, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(CacheCondition(), operator)

    def used_ssl_decryption(self, operator: LogicalOperator = LogicalOperator.AND) -> Criteria:
        return self.add(SslDecryptionCondition(), operator)

    def retry_count(
        self,
        minimum: int | None = None,
        maximum: int | None = None,
        operator: LogicalOperator = LogicalOperator.AND,
    ) -> Criteria:
        return self.add(RetryCountCondition(minimum, maximum), operator)

    def clear(self) -> Criteria:
        self._conditions.clear()
        return self

    @property
    def conditions(self) -> tuple[tuple[Condition, LogicalOperator | None], ...]:
        return tuple(self._conditions)

    @property
    def has_conditions(self) -> bool:
        return bool(self._conditions)

    @property
    def condition_count(self) -> int:
        return len(self._conditions)

    def matches(self, session: Session) -> bool:
        if not self._conditions:
            return True

        first, _ = self._conditions[0]
        result = first.evaluate(session)
        for condition, operator in self._conditions[1:]:
            outcome = condition.evaluate(session)
            if operator is LogicalOperator.OR:
                result = result or outcome
            else:
                result = result and outcome
        return result

    def __repr__(self) -> str:
        return f"Criteria({self._conditions!r})"

    # -- presets ------------------------------------------------------------

    @classmethod
    def success_only(cls) -> Criteria:
        return cls().status_category(StatusCategory.SUCCESS)

    @classmethod
    def errors_only(cls) -> Criteria:
        return (
            cls()
            .status_category(StatusCategory.CLIENT_ERROR)
            .status_category(StatusCategory.SERVER_ERROR, LogicalOperator.OR)
        )

    @classmethod
    def for_host(cls, host: str) -> Criteria:
        return cls().host(host)

    @classmethod
    def slow_requests(cls, threshold: float = 2.0) -> Criteria:
        return cls().duration(minimum=threshold)

    @classmethod
    def json_only(cls) -> Criteria:
        return cls().content_type("application/json")

    @classmethod
    def images_only(cls) -> Criteria:
        return cls().content_type("image/")
