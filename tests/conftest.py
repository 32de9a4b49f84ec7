from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from capture_store.models import HTTPMethod, Request, Response, Session

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_session(
    url: str = "https://api.example.com/users",
    method: HTTPMethod = HTTPMethod.GET,
    status_code: int | None = 200,
    request_headers: dict[str, str] | None = None,
    response_headers: dict[str, str] | None = None,
    request_body: bytes | None = None,
    response_body: bytes | None = None,
    started: datetime = BASE_TIME,
    duration: float = 0.25,
    **fields,
) -> Session:
    """A session that completed ``duration`` seconds after ``started``."""
    session = Session(
        request=Request(
            url=url,
            method=method,
            headers=request_headers or {},
            body=request_body,
            timestamp=started,
        ),
        start_time=started,
        **fields,
    )
    if status_code is None:
        return session
    response = Response(
        status_code=status_code,
        headers=response_headers or {},
        body=response_body,
        timestamp=started + timedelta(seconds=duration),
        duration=duration,
    )
    return session.completed(response, end_time=started + timedelta(seconds=duration))


@pytest.fixture
def sample_sessions() -> list[Session]:
    return [
        make_session("https://api.x.com/v1/items", status_code=200),
        make_session("https://api.x.com/v1/missing", status_code=404),
        make_session("https://cdn.y.com/logo.png", status_code=200),
    ]
