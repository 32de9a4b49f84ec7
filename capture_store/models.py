from __future__ import annotations

import codecs
import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import SplitResult, parse_qsl, urlsplit
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializationInfo,
    computed_field,
    field_serializer,
    field_validator,
)

from capture_store.errors import SessionStateError

# Bodies travel as base64 inside JSON documents.
_FROZEN = ConfigDict(frozen=True, ser_json_bytes="base64", val_json_bytes="base64")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC so durations can always be computed."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def header_value(headers: dict[str, str], name: str) -> str | None:
    """Exact key first, then a case-insensitive scan."""
    if name in headers:
        return headers[name]
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _decode(data: bytes, encoding: str) -> str | None:
    try:
        return data.decode(encoding)
    except UnicodeDecodeError:
        return None


def _is_known_encoding(name: str | None) -> bool:
    if not name:
        return False
    try:
        codecs.lookup(name)
    except LookupError:
        return False
    return True


def _charset_from_content_type(content_type: str | None) -> str | None:
    if not content_type or "charset=" not in content_type:
        return None
    charset = content_type.split("charset=", 1)[1].split(";", 1)[0]
    return charset.strip().strip('"') or None


class HTTPMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"
    TRACE = "TRACE"
    CONNECT = "CONNECT"
    PATCH = "PATCH"


class StatusCategory(str, Enum):
    INFORMATIONAL = "informational"
    SUCCESS = "success"
    REDIRECTION = "redirection"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    UNKNOWN = "unknown"

    @classmethod
    def from_status_code(cls, status_code: int) -> StatusCategory:
        return _CATEGORY_BY_CLASS.get(status_code // 100, cls.UNKNOWN)


_CATEGORY_BY_CLASS = {
    1: StatusCategory.INFORMATIONAL,
    2: StatusCategory.SUCCESS,
    3: StatusCategory.REDIRECTION,
    4: StatusCategory.CLIENT_ERROR,
    5: StatusCategory.SERVER_ERROR,
}


class SessionState(str, Enum):
    INITIALIZED = "initialized"
    SENDING = "sending"
    WAITING = "waiting"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}
)


class Request(BaseModel):
    model_config = _FROZEN

    url: str
    method: HTTPMethod = HTTPMethod.GET
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes | None = None
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def url_parts(self) -> SplitResult | None:
        try:
            return urlsplit(self.url)
        except ValueError:
            return None

    @property
    def host(self) -> str | None:
        parts = self.url_parts
        return parts.hostname if parts else None

    @property
    def path(self) -> str | None:
        parts = self.url_parts
        return parts.path if parts else None

    @property
    def request_hash(self) -> str:
        """Identity derived from url, method and timestamp, for de-duplication."""
        seed = f"{self.url}|{self.method.value}|{self.timestamp.timestamp()}"
        return hashlib.sha256(seed.encode()).hexdigest()

    def query_parameters(self) -> dict[str, str]:
        parts = self.url_parts
        if parts is None or not parts.query:
            return {}
        return dict(parse_qsl(parts.query, keep_blank_values=True))

    def body_text(self, encoding: str = "utf-8") -> str | None:
        if self.body is None:
            return None
        return _decode(self.body, encoding)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Request):
            return NotImplemented
        return (self.url, self.method, self.headers, self.body) == (
            other.url,
            other.method,
            other.headers,
            other.body,
        )

    def __hash__(self) -> int:
        return hash((self.url, self.method, self.body))


class Response(BaseModel):
    model_config = _FROZEN

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    body: bytes | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    duration: float = 0.0
    mime_type: str | None = None
    charset: str | None = None
    from_cache: bool = False
    error: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("error", mode="before")
    @classmethod
    def _error_message(cls, value: Any) -> Any:
        if isinstance(value, BaseException):
            return str(value) or type(value).__name__
        return value

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status_category(self) -> StatusCategory:
        return StatusCategory.from_status_code(self.status_code)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def content_length(self) -> int:
        declared = header_value(self.headers, "Content-Length")
        if declared is not None:
            try:
                return int(declared.strip())
            except ValueError:
                pass
        return len(self.body) if self.body else 0

    @property
    def is_success(self) -> bool:
        return self.status_category is StatusCategory.SUCCESS

    @property
    def is_client_error(self) -> bool:
        return self.status_category is StatusCategory.CLIENT_ERROR

    @property
    def is_server_error(self) -> bool:
        return self.status_category is StatusCategory.SERVER_ERROR

    @property
    def is_error(self) -> bool:
        return self.is_client_error or self.is_server_error or self.error is not None

    def body_text(self, encoding: str | None = None) -> str | None:
        """Decode the body.

        The charset is resolved from, in order: the ``encoding`` argument, the
        ``charset`` field, the ``charset=`` parameter of ``Content-Type``, and
        finally UTF-8. Returns None when there is no body or it does not decode.
        """
        if self.body is None:
            return None
        candidates = (
            encoding,
            self.charset,
            _charset_from_content_type(header_value(self.headers, "Content-Type")),
        )
        for candidate in candidates:
            if _is_known_encoding(candidate):
                return _decode(self.body, candidate)
        return _decode(self.body, "utf-8")

    def _comparable(self) -> tuple:
        return (
            self.status_code,
            self.headers,
            self.body,
            self.mime_type,
            self.charset,
            self.content_length,
            self.from_cache,
        )

    def __eq__(self, other: object) -> bool:
        # error messages are not part of a response's value
        if not isinstance(other, Response):
            return NotImplemented
        return self._comparable() == other._comparable()

    def __hash__(self) -> int:
        return hash((self.status_code, self.body, self.from_cache))


# Metadata values keep their type through JSON as {"type": ..., "value": ...}.
_METADATA_TAGS: tuple[tuple[str, type], ...] = (
    ("bool", bool),  # before int: bool is an int subclass
    ("int", int),
    ("double", float),
    ("date", datetime),
    ("string", str),
)


def _tag_for(value: Any) -> str:
    for tag, kind in _METADATA_TAGS:
        if isinstance(value, kind):
            return tag
    raise ValueError(f"unsupported metadata value type: {type(value).__name__}")


def _untag(entry: dict[str, Any]) -> Any:
    tag, value = entry.get("type"), entry.get("value")
    if tag == "string":
        return str(value)
    if tag == "int":
        return int(value)
    if tag == "double":
        return float(value)
    if tag == "bool":
        return bool(value)
    if tag == "date":
        return as_utc(
            value if isinstance(value, datetime) else datetime.fromisoformat(value)
        )
    raise ValueError(f"unknown metadata type tag: {tag!r}")


def _normalize_metadata(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    metadata = {}
    for key, entry in dict(value).items():
        if isinstance(entry, dict):
            entry = _untag(entry)
        elif isinstance(entry, datetime):
            entry = as_utc(entry)
        else:
            _tag_for(entry)
        metadata[str(key)] = entry
    return metadata


def metadata_text(value: Any) -> str:
    """Render a metadata value the way searches and summaries see it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class Session(BaseModel):
    """A request, its optional response, and where it is in its lifecycle.

    Sessions are values: every transition returns a new ``Session`` and
    leaves the original untouched. Two sessions are equal when their ids are.
    """

    model_config = _FROZEN

    id: UUID = Field(default_factory=uuid4)
    request: Request
    response: Response | None = None
    state: SessionState = SessionState.INITIALIZED
    start_time: datetime = Field(default_factory=_utcnow)
    response_start_time: datetime | None = None
    end_time: datetime | None = None
    request_duration: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    queued_time: datetime | None = None
    retry_count: int = 0
    used_ssl_decryption: bool = False
    related_session_ids: list[UUID] = Field(default_factory=list)
    parent_session_id: UUID | None = None

    @field_validator("start_time", "response_start_time", "end_time", "queued_time")
    @classmethod
    def _times_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _load_metadata(cls, value: Any) -> dict[str, Any]:
        return _normalize_metadata(value)

    @field_serializer("metadata")
    def _dump_metadata(self, metadata: dict[str, Any], info: SerializationInfo):
        if not info.mode_is_json():
            return dict(metadata)
        return {
            key: {
                "type": _tag_for(value),
                "value": value.isoformat() if isinstance(value, datetime) else value,
            }
            for key, value in metadata.items()
        }

    # -- derived values ---------------------------------------------------

    @property
    def duration(self) -> float:
        """Seconds elapsed; frozen once the session has an end time."""
        if self.end_time is not None:
            return (self.end_time - self.start_time).total_seconds()
        if self.response_start_time is not None:
            receiving = (_utcnow() - self.response_start_time).total_seconds()
            return receiving + (self.response.duration if self.response else 0.0)
        return (_utcnow() - self.start_time).total_seconds()

    @property
    def http_method(self) -> str:
        return self.request.method.value

    @property
    def url(self) -> str:
        return self.request.url

    @property
    def host(self) -> str | None:
        return self.request.host

    @property
    def path(self) -> str | None:
        return self.request.path

    @property
    def status_code(self) -> int | None:
        return self.response.status_code if self.response else None

    @property
    def is_completed(self) -> bool:
        return self.state is SessionState.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.state is SessionState.FAILED

    @property
    def is_cancelled(self) -> bool:
        return self.state is SessionState.CANCELLED

    @property
    def is_finished(self) -> bool:
        return self.state.is_terminal

    @property
    def is_ongoing(self) -> bool:
        return not self.is_finished

    @property
    def has_children(self) -> bool:
        return bool(self.related_session_ids)

    @property
    def has_parent(self) -> bool:
        return self.parent_session_id is not None

    # -- copy-on-write updates --------------------------------------------

    def _evolve(self, **changes: Any) -> Session:
        changes.setdefault("metadata", dict(self.metadata))
        changes.setdefault("related_session_ids", list(self.related_session_ids))
        return self.model_copy(update=changes)

    def _transition(self, state: SessionState, **changes: Any) -> Session:
        if self.is_finished:
            raise SessionStateError(
                f"session {self.id} is already {self.state.value}; cannot move to {state.value}"
            )
        return self._evolve(state=state, **changes)

    def sending(self) -> Session:
        return self._transition(SessionState.SENDING)

    def waiting(self, request_duration: float) -> Session:
        return self._transition(SessionState.WAITING, request_duration=request_duration)

    def receiving(self, response_start_time: datetime | None = None) -> Session:
        return self._transition(
            SessionState.RECEIVING,
            response_start_time=as_utc(response_start_time) or _utcnow(),
        )

    def completed(self, response: Response, end_time: datetime | None = None) -> Session:
        return self._transition(
            SessionState.COMPLETED,
            response=response,
            end_time=as_utc(end_time) or _utcnow(),
        )

    def failed(self, error: BaseException | str, end_time: datetime | None = None) -> Session:
        end = as_utc(end_time) or _utcnow()
        placeholder = Response(
            status_code=0,
            timestamp=end,
            duration=(end - self.start_time).total_seconds(),
            error=error,
        )
        return self._transition(SessionState.FAILED, response=placeholder, end_time=end)

    def cancelled(self, end_time: datetime | None = None) -> Session:
        return self._transition(
            SessionState.CANCELLED, end_time=as_utc(end_time) or _utcnow()
        )

    def increment_retry(self) -> Session:
        return self._evolve(retry_count=self.retry_count + 1)

    def with_metadata(self, key: str, value: Any) -> Session:
        return self.merge_metadata({key: value})

    def merge_metadata(self, values: dict[str, Any]) -> Session:
        merged = {**self.metadata, **_normalize_metadata(values)}
        return self._evolve(metadata=merged)

    def without_metadata(self, key: str) -> Session:
        metadata = dict(self.metadata)
        metadata.pop(key, None)
        return self._evolve(metadata=metadata)

    def add_related_session(self, session_id: UUID) -> Session:
        if session_id in self.related_session_ids:
            return self._evolve()
        return self._evolve(related_session_ids=[*self.related_session_ids, session_id])

    def remove_related_session(self, session_id: UUID) -> Session:
        return self._evolve(
            related_session_ids=[i for i in self.related_session_ids if i != session_id]
        )

    def create_child_session(self, request: Request) -> Session:
        return Session(request=request, parent_session_id=self.id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Session):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)
