from __future__ import annotations

from datetime import date, datetime

from leave_reconciliation.domain.constraints import build_reconciliation_config
from leave_reconciliation.domain.models import (
    IssueCategory,
    LeaveType,
    MatchStatus,
    Member,
    RequestStatus,
)
from leave_reconciliation.services.normalizer_service import (
    assign_member,
    identity_issues,
    normalize_existing_rows,
    normalize_import_rows,
    skip_candidate,
)
from leave_reconciliation.utils.config import get_settings


NOW = datetime(2025, 1, 15, 12, 0, 0)
ROSTER = (
    Member(member_id="m-1", first_name="Ada", last_name="Lovelace", pin_number=1001, seniority=2),
    Member(member_id="m-2", first_name="Grace", last_name="Hopper", pin_number=1002, seniority=1),
)


def _normalize(rows, **kwargs):
    return normalize_import_rows(
        rows,
        calendar_id="cal-1",
        roster=ROSTER,
        config=build_reconciliation_config(get_settings()),
        now=NOW,
        **kwargs,
    )


def test_valid_rows_become_matched_candidates():
    result = _normalize(
        [
            {"firstName": "Ada", "lastName": "Lovelace", "requestDate": "06/01/2025", "leaveType": "pld"},
            {"pin": "1002", "date": "2025-06-02", "type": "SDV", "requested_at": "2025-01-02T08:00:00"},
        ]
    )
    assert result.issues == ()
    first, second = result.candidates
    assert first.candidate_id == "row-0"
    assert first.member_id == "m-1"
    assert first.seniority == 2
    assert first.request_date == date(2025, 6, 1)
    assert first.leave_type == LeaveType.PLD
    assert first.status_intent == RequestStatus.APPROVED
    assert first.requested_at == NOW
    assert second.member_id == "m-2"
    assert second.match_status == MatchStatus.MATCHED
    assert second.requested_at == datetime(2025, 1, 2, 8, 0, 0)


def test_denied_marker_becomes_waitlisted_with_original_request_time():
    result = _normalize(
        [
            {
                "pin": 1001,
                "date": "2025-06-01",
                "type": "PLD",
                "status": "Denied Req",
                "createdAt": "2025-01-10T09:00:00",
                "originalRequestDate": "2024-12-01T07:30:00",
            }
        ]
    )
    (candidate,) = result.candidates
    assert candidate.status_intent == RequestStatus.WAITLISTED
    assert candidate.requested_at == datetime(2024, 12, 1, 7, 30, 0)


def test_invalid_rows_are_reported_per_row():
    result = _normalize(
        [
            {"pin": 1001, "date": "2025-06-01", "type": "XYZ"},
            {"date": "2025-06-01", "type": "PLD"},
            {"pin": 1002, "date": "not a date", "type": "PLD"},
            {"pin": 1002, "date": "2025-06-03", "type": "PLD"},
        ]
    )
    assert [candidate.candidate_id for candidate in result.candidates] == ["row-3"]
    assert {issue.row_index for issue in result.issues} == {0, 1, 2}
    assert all(issue.category == IssueCategory.PARSE for issue in result.issues)


def test_rows_outside_target_year_are_rejected():
    result = _normalize(
        [{"pin": 1001, "date": "2026-01-05", "type": "PLD"}],
        target_year=2025,
    )
    assert result.candidates == ()
    (issue,) = result.issues
    assert issue.field == "request_date"


def test_unmatched_candidate_raises_identity_issue_until_resolved():
    result = _normalize([{"firstName": "Bob", "lastName": "Wyzz", "date": "2025-06-01", "type": "PLD"}])
    (candidate,) = result.candidates
    assert candidate.match_status == MatchStatus.UNMATCHED
    (issue,) = identity_issues(result.candidates)
    assert issue.category == IssueCategory.IDENTITY
    assert issue.candidate_id == "row-0"

    resolved = assign_member(candidate, ROSTER[1])
    assert resolved.is_matched
    assert resolved.member_id == "m-2"
    assert identity_issues([resolved]) == []
    assert identity_issues([skip_candidate(candidate)]) == []


def test_existing_rows_normalized_with_errors_reported():
    requests, issues = normalize_existing_rows(
        [
            {
                "id": 7,
                "member_id": "m-1",
                "calendar_id": "cal-1",
                "request_date": "2025-06-01",
                "leave_type": "sdv",
                "status": "approved",
                "waitlist_position": 3,
                "requested_at": "2025-01-01T00:00:00",
            },
            {"id": 8, "member_id": "m-2", "calendar_id": "cal-1"},
        ]
    )
    (request,) = requests
    assert request.request_id == 7
    assert request.leave_type == LeaveType.SDV
    assert request.waitlist_position is None
    assert issues
    assert all(issue.row_index == 1 for issue in issues)


def test_offset_timestamps_are_stored_as_naive_utc():
    result = _normalize(
        [
            {"pin": 1001, "date": "2025-06-01", "type": "PLD", "requested_at": "2025-01-01T08:00:00Z"},
            {"pin": 1002, "date": "2025-06-01", "type": "PLD"},
            {"pin": 1001, "date": "2025-06-02", "type": "PLD", "requested_at": "2025-01-01T09:00:00+02:00"},
        ]
    )
    utc_row, fallback_row, offset_row = result.candidates
    assert utc_row.requested_at == datetime(2025, 1, 1, 8, 0, 0)
    assert fallback_row.requested_at == NOW
    assert offset_row.requested_at == datetime(2025, 1, 1, 7, 0, 0)
    assert all(candidate.requested_at.tzinfo is None for candidate in result.candidates)

    requests, _ = normalize_existing_rows(
        [
            {
                "id": 9,
                "member_id": "m-1",
                "calendar_id": "cal-1",
                "request_date": "2025-06-01",
                "leave_type": "PLD",
                "status": "approved",
                "requested_at": "2025-01-01T10:00:00-05:00",
            }
        ]
    )
    assert requests[0].requested_at == datetime(2025, 1, 1, 15, 0, 0)
