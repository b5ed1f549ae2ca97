from __future__ import annotations

from datetime import date, datetime

import pytest

from leave_reconciliation.domain.models import (
    CandidateRequest,
    DuplicateResolution,
    DuplicateStatus,
    IssueCategory,
    LeaveRequest,
    LeaveType,
    MatchStatus,
    RequestStatus,
)
from leave_reconciliation.services.duplicate_service import (
    DuplicateResolutionError,
    detect_duplicates,
    resolve_duplicate,
)


DAY = date(2025, 6, 1)


def _candidate(candidate_id: str, member_id: str | None, *, status=RequestStatus.APPROVED, hour=9):
    return CandidateRequest(
        candidate_id=candidate_id,
        row_index=int(candidate_id.split("-")[1]),
        first_name="First",
        last_name="Last",
        calendar_id="cal-1",
        request_date=DAY,
        leave_type=LeaveType.PLD,
        status_intent=status,
        requested_at=datetime(2025, 1, 1, hour),
        member_id=member_id,
        match_status=MatchStatus.MATCHED if member_id else MatchStatus.UNMATCHED,
    )


def _stored(request_id: int, member_id: str, status: RequestStatus, *, hour=8, position=None):
    return LeaveRequest(
        request_id=request_id,
        member_id=member_id,
        calendar_id="cal-1",
        request_date=DAY,
        leave_type=LeaveType.PLD,
        status=status,
        waitlist_position=position,
        requested_at=datetime(2025, 1, 1, hour),
    )


def test_unique_candidate_participates():
    report = detect_duplicates([_candidate("row-0", "m-1")], [_stored(1, "m-2", RequestStatus.APPROVED)])
    (candidate,) = report.candidates
    assert candidate.duplicate_status == DuplicateStatus.UNIQUE
    assert candidate.participates
    assert report.skip_duplicates == frozenset()


def test_exact_duplicate_is_skipped():
    report = detect_duplicates([_candidate("row-0", "m-1")], [_stored(1, "m-1", RequestStatus.APPROVED)])
    (candidate,) = report.candidates
    assert candidate.duplicate_status == DuplicateStatus.EXACT_DUPLICATE
    assert candidate.duplicate_of == 1
    assert not candidate.participates
    assert report.skip_duplicates == {"row-0"}
    assert report.issues == ()


def test_inactive_stored_rows_are_not_duplicates():
    report = detect_duplicates([_candidate("row-0", "m-1")], [_stored(1, "m-1", RequestStatus.CANCELLED)])
    assert report.candidates[0].duplicate_status == DuplicateStatus.UNIQUE


def test_repeat_inside_batch_keeps_first_occurrence():
    report = detect_duplicates(
        [_candidate("row-0", "m-1"), _candidate("row-1", "m-1", status=RequestStatus.WAITLISTED)],
        [],
    )
    first, second = report.candidates
    assert first.duplicate_status == DuplicateStatus.UNIQUE
    assert second.duplicate_status == DuplicateStatus.EXACT_DUPLICATE
    assert second.duplicate_of_candidate == "row-0"
    assert report.skip_duplicates == {"row-1"}


def test_conflict_blocks_until_resolved():
    stored = _stored(5, "m-1", RequestStatus.WAITLISTED, position=1)
    report = detect_duplicates([_candidate("row-0", "m-1")], [stored])
    (candidate,) = report.candidates
    assert candidate.duplicate_status == DuplicateStatus.CONFLICTING_DUPLICATE
    assert candidate.needs_duplicate_resolution
    assert not candidate.participates
    (issue,) = report.issues
    assert issue.category == IssueCategory.DUPLICATE_CONFLICT
    assert issue.request_id == 5


def test_keep_database_skips_candidate():
    stored = _stored(5, "m-1", RequestStatus.WAITLISTED, position=1)
    conflict = detect_duplicates([_candidate("row-0", "m-1")], [stored]).candidates[0]
    report = detect_duplicates([resolve_duplicate(conflict, DuplicateResolution.KEEP_DATABASE)], [stored])
    assert report.issues == ()
    assert report.skip_duplicates == {"row-0"}
    assert report.superseded_request_ids == frozenset()


def test_keep_candidate_supersedes_stored_row():
    stored = _stored(5, "m-1", RequestStatus.WAITLISTED, position=1)
    conflict = detect_duplicates([_candidate("row-0", "m-1")], [stored]).candidates[0]
    report = detect_duplicates([resolve_duplicate(conflict, DuplicateResolution.KEEP_CANDIDATE)], [stored])
    (candidate,) = report.candidates
    assert candidate.participates
    assert candidate.target_request_id == 5
    assert candidate.requested_at == datetime(2025, 1, 1, 9)
    assert report.superseded_request_ids == {5}


def test_merge_keeps_earliest_request_time():
    stored = _stored(5, "m-1", RequestStatus.WAITLISTED, hour=7, position=1)
    conflict = detect_duplicates([_candidate("row-0", "m-1")], [stored]).candidates[0]
    report = detect_duplicates([resolve_duplicate(conflict, DuplicateResolution.MERGE)], [stored])
    (candidate,) = report.candidates
    assert candidate.target_request_id == 5
    assert candidate.requested_at == datetime(2025, 1, 1, 7)


def test_resolution_only_applies_to_conflicts():
    with pytest.raises(DuplicateResolutionError):
        resolve_duplicate(_candidate("row-0", "m-1"), DuplicateResolution.MERGE)


def test_unmatched_candidates_are_not_checked():
    report = detect_duplicates([_candidate("row-0", None)], [_stored(1, "m-1", RequestStatus.APPROVED)])
    (candidate,) = report.candidates
    assert candidate.duplicate_status == DuplicateStatus.UNIQUE
    assert not candidate.participates
