from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ValidationError

from capture_store.errors import NotFoundError
from capture_store.filters import Criteria
from capture_store.models import HTTPMethod, Session, StatusCategory, metadata_text
from capture_store.services.filter_engine import FilterEngine
from capture_store.services.search_service import DateRange, SearchQuery, SortOption
from capture_store.storage.memory_storage import MemoryStorage

router = APIRouter()


def _decode_body(text: str | None, raw: bytes | None) -> str:
    if raw is None:
        return ""
    if text is None:
        return f"[Binary data, {len(raw)} bytes]"
    return text


def _format_duration(value: float | None) -> str:
    if value is None:
        return "-"
    if value >= 1:
        return f"{value:.2f} s"
    return f"{value * 1000:.1f} ms"


def _summary(session: Session) -> dict[str, Any]:
    return {
        "id": str(session.id),
        "state": session.state.value,
        "started_at": session.start_time.isoformat(),
        "method": session.http_method,
        "url": session.url,
        "host": session.host,
        "path": session.path,
        "status_code": session.status_code,
        "duration": _format_duration(session.duration if session.is_finished else None),
        "has_error": session.response.is_error if session.response else False,
        "metadata": {k: metadata_text(v) for k, v in session.metadata.items()},
    }


def _detail(session: Session) -> dict[str, Any]:
    detail = _summary(session)
    detail["request"] = {
        "headers": session.request.headers,
        "body": _decode_body(session.request.body_text(), session.request.body),
    }
    response = session.response
    detail["response"] = None
    if response is not None:
        detail["response"] = {
            "status_code": response.status_code,
            "status_category": response.status_category.value,
            "headers": response.headers,
            "body": _decode_body(response.body_text(), response.body),
            "content_length": response.content_length,
            "from_cache": response.from_cache,
            "error": response.error,
        }
    detail["parent_session_id"] = str(session.parent_session_id) if session.parent_session_id else None
    detail["related_session_ids"] = [str(i) for i in session.related_session_ids]
    return detail


class SessionFilter(BaseModel):
    url: str | None = None
    host: str | None = None
    method: HTTPMethod | None = None
    status_code: int | None = None
    status_category: StatusCategory | None = None
    content_type: str | None = None
    has_error: bool | None = None
    min_duration: float | None = None
    max_duration: float | None = None

    def to_criteria(self) -> Criteria:
        criteria = Criteria()
        if self.url:
            criteria.url(self.url)
        if self.host:
            criteria.host(self.host)
        if self.method:
            criteria.method(self.method)
        if self.status_code is not None:
            criteria.status_code(self.status_code)
        if self.status_category:
            criteria.status_category(self.status_category)
        if self.content_type:
            criteria.content_type(self.content_type)
        if self.has_error:
            criteria.has_error()
        if self.min_duration is not None or self.max_duration is not None:
            criteria.duration(self.min_duration, self.max_duration)
        return criteria


def _session_filter(
    url: str | None = None,
    host: str | None = None,
    method: HTTPMethod | None = None,
    status_code: int | None = None,
    status_category: StatusCategory | None = None,
    content_type: str | None = None,
    has_error: bool | None = None,
    min_duration: float | None = None,
    max_duration: float | None = None,
) -> SessionFilter:
    return SessionFilter(
        url=url,
        host=host,
        method=method,
        status_code=status_code,
        status_category=status_category,
        content_type=content_type,
        has_error=has_error,
        min_duration=min_duration,
        max_duration=max_duration,
    )


class SearchRequest(SessionFilter):
    text: str = ""
    start: datetime | None = None
    end: datetime | None = None
    sort_by: SortOption = SortOption.RELEVANCE
    ascending: bool = False

    def to_query(self) -> SearchQuery:
        criteria = self.to_criteria()
        date_range = None
        if self.start is not None or self.end is not None:
            date_range = DateRange(self.start or datetime.min, self.end or datetime.max)
        return SearchQuery(
            text=self.text,
            predicates=(criteria,) if criteria.has_conditions else (),
            date_range=date_range,
            sort_by=self.sort_by,
            ascending=self.ascending,
        )


@router.get("/sessions")
async def list_sessions(
    request: Request,
    filters: SessionFilter = Depends(_session_filter),
    page: int = Query(0, ge=0),
    page_size: int = Query(50, ge=1, le=1000),
):
    storage = request.app.state.storage
    matched = await storage.load_matching(filters.to_criteria())
    start = page * page_size
    return {
        "sessions": [_summary(s) for s in matched[start : start + page_size]],
        "total": len(matched),
        "page": page,
        "page_size": page_size,
    }


@router.post("/sessions", status_code=201)
async def create_session(request: Request):
    storage = request.app.state.storage
    try:
        session = Session.model_validate_json(await request.body())
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        raise HTTPException(status_code=422, detail=errors) from exc
    await storage.save(session)
    return {"id": str(session.id)}


@router.get("/sessions/{session_id}")
async def get_session(request: Request, session_id: UUID):
    storage = request.app.state.storage
    session = await storage.load(session_id)
    if session is None:
        raise NotFoundError(f"session {session_id}")
    return _detail(session)


@router.delete("/sessions/{session_id}")
async def delete_session(request: Request, session_id: UUID):
    storage = request.app.state.storage
    if await storage.load(session_id) is None:
        raise NotFoundError(f"session {session_id}")
    await storage.delete(session_id)
    return {"deleted": 1}


@router.delete("/sessions")
async def clear_sessions(request: Request):
    storage = request.app.state.storage
    deleted = await storage.count()
    await storage.delete_all()
    return {"deleted": deleted}


@router.post("/search")
async def search_sessions(request: Request, body: SearchRequest):
    storage = request.app.state.storage
    search_service = request.app.state.search_service
    result = await search_service.search_storage(body.to_query(), storage)
    return {
        "sessions": [_summary(s) for s in result.sessions],
        "total_count": result.total_count,
        "match_count": result.match_count,
        "match_ratio": result.match_ratio,
        "search_time": result.search_time,
        "highlights": {
            str(session_id): [
                {
                    "field": h.field.value,
                    "start": h.start,
                    "end": h.end,
                    "matched_text": h.matched_text,
                }
                for h in found
            ]
            for session_id, found in result.highlights.items()
        },
    }


@router.get("/stats")
async def stats(request: Request):
    storage = request.app.state.storage
    sessions = await storage.load_all()
    payload = {
        "count": len(sessions),
        "storage_size": await storage.storage_size(),
        "summary": FilterEngine.summary_statistics(sessions).model_dump(),
    }
    if isinstance(storage, MemoryStorage):
        payload["memory"] = (await storage.statistics()).model_dump()
    return payload
