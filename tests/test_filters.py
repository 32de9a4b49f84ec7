from __future__ import annotations

from datetime import timedelta

import pytest

from capture_store.filters import (
    Condition,
    Criteria,
    LogicalOperator,
    Predicate,
    match_text,
)
from capture_store.models import HTTPMethod, Session, StatusCategory
from conftest import BASE_TIME, make_session


class _Recording(Condition):
    """Condition with a fixed outcome that remembers it was asked."""

    def __init__(self, outcome: bool) -> None:
        self.outcome = outcome
        self.calls = 0

    def evaluate(self, session: Session) -> bool:
        self.calls += 1
        return self.outcome


class TestMatchText:
    def test_plain_is_case_sensitive_substring(self):
        assert match_text("api.example.com", "example")
        assert not match_text("api.example.com", "EXAMPLE")

    def test_regex(self):
        assert match_text("/v1/users/42", r"/users/\d+$", is_regex=True)
        assert not match_text("/v1/users/me", r"/users/\d+$", is_regex=True)

    def test_invalid_regex_matches_literally(self):
        assert match_text("price[0", "[0", is_regex=True)
        assert not match_text("price", "[0", is_regex=True)


class TestCriteriaEvaluation:
    def test_empty_criteria_matches_everything(self, sample_sessions):
        criteria = Criteria()
        assert not criteria.has_conditions
        assert all(criteria.matches(s) for s in sample_sessions)

    def test_is_a_predicate(self):
        assert isinstance(Criteria(), Predicate)

    def test_and_combination(self, sample_sessions):
        criteria = Criteria().host("api.x.com").status_category(StatusCategory.SUCCESS)
        matched = [s for s in sample_sessions if criteria.matches(s)]
        assert [s.url for s in matched] == ["https://api.x.com/v1/items"]

    def test_or_combination(self, sample_sessions):
        criteria = Criteria().status_code(404).status_code(500, LogicalOperator.OR)
        matched = [s for s in sample_sessions if criteria.matches(s)]
        assert [s.url for s in matched] == ["https://api.x.com/v1/missing"]

    def test_left_to_right_without_precedence(self):
        session = make_session()
        # (True OR True) AND False, not True OR (True AND False)
        criteria = (
            Criteria()
            .add(_Recording(True))
            .add(_Recording(True), LogicalOperator.OR)
            .add(_Recording(False), LogicalOperator.AND)
        )
        assert not criteria.matches(session)

    def test_every_condition_is_evaluated(self):
        conditions = [_Recording(False), _Recording(True), _Recording(True)]
        criteria = Criteria()
        for condition in conditions:
            criteria.add(condition)
        assert not criteria.matches(make_session())
        assert [c.calls for c in conditions] == [1, 1, 1]

    def test_first_operator_is_ignored(self):
        criteria = Criteria().add(_Recording(True), LogicalOperator.OR)
        assert criteria.conditions[0][1] is None
        assert criteria.matches(make_session())

    def test_clear(self):
        criteria = Criteria().host("a").status_code(200)
        assert criteria.condition_count == 2
        assert criteria.clear().condition_count == 0


class TestConditions:
    def test_base_condition_is_abstract(self):
        with pytest.raises(TypeError):
            Condition()

    def test_url_host_path(self):
        session = make_session("https://api.github.com/users/x")
        assert Criteria().url("github.com/users").matches(session)
        assert Criteria().host(r"^api\.", regex=True).matches(session)
        assert Criteria().path("/users").matches(session)
        assert not Criteria().path("/repos").matches(session)

    def test_method(self):
        session = make_session(method=HTTPMethod.POST)
        assert Criteria().method("POST").matches(session)
        assert not Criteria().method(HTTPMethod.GET).matches(session)

    def test_status_code_range_is_half_open(self):
        assert Criteria().status_code_range(range(200, 300)).matches(make_session(status_code=299))
        assert not Criteria().status_code_range(range(200, 300)).matches(make_session(status_code=300))

    def test_status_conditions_need_a_response(self):
        pending = make_session(status_code=None)
        assert not Criteria().status_code_range(range(0, 1000)).matches(pending)
        assert not Criteria().status_category("success").matches(pending)
        assert not Criteria().has_error().matches(pending)

    def test_content_type_header_lookup_is_case_insensitive(self):
        session = make_session(response_headers={"content-type": "application/json; charset=utf-8"})
        assert Criteria.json_only().matches(session)
        assert not Criteria.images_only().matches(session)

    def test_bodies(self):
        session = make_session(request_body=b"{}", response_body=None)
        assert Criteria().has_request_body().matches(session)
        assert not Criteria().has_response_body().matches(session)

    def test_duration_bounds_are_inclusive(self):
        session = make_session(duration=2.0)
        assert Criteria().duration(minimum=2.0, maximum=2.0).matches(session)
        assert not Criteria().duration(maximum=1.0).matches(session)

    def test_timestamp_bounds_are_inclusive(self):
        session = make_session(started=BASE_TIME)
        assert Criteria().timestamp(start=BASE_TIME, end=BASE_TIME).matches(session)
        assert not Criteria().timestamp(start=BASE_TIME + timedelta(seconds=1)).matches(session)

    def test_naive_timestamp_bounds_are_utc(self):
        session = make_session(started=BASE_TIME)
        naive = BASE_TIME.replace(tzinfo=None)
        assert Criteria().timestamp(start=naive).matches(session)

    def test_metadata_presence_and_value(self):
        session = make_session().merge_metadata({"env": "prod", "count": 1})
        assert Criteria().metadata("env").matches(session)
        assert Criteria().metadata("env", "prod").matches(session)
        assert not Criteria().metadata("env", "dev").matches(session)
        assert not Criteria().metadata("missing").matches(session)

    def test_metadata_value_type_matters(self):
        session = make_session().with_metadata("count", 1)
        assert not Criteria().metadata("count", True).matches(session)
        assert not Criteria().metadata("count", 1.0).matches(session)

    def test_error_cache_ssl_retry(self):
        session = make_session(status_code=503, used_ssl_decryption=True, retry_count=2)
        assert Criteria().has_error().matches(session)
        assert not Criteria().from_cache().matches(session)
        assert Criteria().used_ssl_decryption().matches(session)
        assert Criteria().retry_count(minimum=1, maximum=2).matches(session)
        assert not Criteria().retry_count(minimum=3).matches(session)


class TestPresets:
    @pytest.mark.parametrize(
        ("status_code", "expected"), [(200, False), (404, True), (502, True), (302, False)]
    )
    def test_errors_only(self, status_code, expected):
        assert Criteria.errors_only().matches(make_session(status_code=status_code)) is expected

    def test_success_only(self):
        assert Criteria.success_only().matches(make_session(status_code=201))
        assert not Criteria.success_only().matches(make_session(status_code=500))

    def test_for_host(self):
        assert Criteria.for_host("example.com").matches(make_session())

    def test_slow_requests(self):
        assert Criteria.slow_requests().matches(make_session(duration=2.5))
        assert not Criteria.slow_requests(threshold=3.0).matches(make_session(duration=2.5))
