from __future__ import annotations

from datetime import date, datetime

import pytest

from leave_reconciliation.domain.models import (
    AdjustmentMode,
    AllotmentAdjustment,
    AllotmentSource,
    CandidateRequest,
    DateAllotmentState,
    DateResolution,
    Decision,
    DuplicateStatus,
    LeaveRequest,
    LeaveType,
    MatchStatus,
    RequestStatus,
)
from leave_reconciliation.services.waitlist_service import (
    WaitlistError,
    plan_cancellation,
    plan_date,
    positions_are_contiguous,
    rebalance_date,
    skipped_candidates,
)


DAY = date(2025, 6, 1)
NOW = datetime(2025, 2, 1, 12, 0)


def _candidate(candidate_id: str, hour: int, **overrides) -> CandidateRequest:
    values = dict(
        candidate_id=candidate_id,
        row_index=0,
        first_name="",
        last_name="",
        calendar_id="cal-1",
        request_date=DAY,
        leave_type=LeaveType.PLD,
        status_intent=RequestStatus.APPROVED,
        requested_at=datetime(2025, 1, 1, hour),
        member_id=f"m-{candidate_id}",
        match_status=MatchStatus.MATCHED,
    )
    values.update(overrides)
    return CandidateRequest(**values)


def _stored(request_id: int, status: RequestStatus, position=None, hour=6) -> LeaveRequest:
    return LeaveRequest(
        request_id=request_id,
        member_id=f"s-{request_id}",
        calendar_id="cal-1",
        request_date=DAY,
        leave_type=LeaveType.PLD,
        status=status,
        waitlist_position=position,
        requested_at=datetime(2024, 12, 1, hour),
    )


CANDIDATES = {item.candidate_id: item for item in (_candidate("A", 8), _candidate("B", 9), _candidate("C", 10))}


def _state(existing, capacity=2, ids=("A", "B", "C")) -> DateAllotmentState:
    active = [item for item in existing if item.is_active]
    return DateAllotmentState(
        calendar_id="cal-1",
        request_date=DAY,
        capacity=capacity,
        capacity_source=AllotmentSource.YEARLY_DEFAULT,
        existing_approved=sum(1 for item in active if item.holds_capacity),
        existing_waitlisted=sum(1 for item in active if item.status == RequestStatus.WAITLISTED),
        incoming=len(ids),
        candidate_ids=ids,
    )


def _by_member(date_decisions):
    return {
        item.request.member_id: (item.decision, item.position) for item in date_decisions.decisions
    }


def test_contiguity_check():
    assert positions_are_contiguous([])
    assert positions_are_contiguous([2, 1, 3])
    assert not positions_are_contiguous([1, 3])
    assert not positions_are_contiguous([1, 1])
    assert not positions_are_contiguous([1, None])


def test_new_entries_fill_capacity_then_waitlist():
    existing = [_stored(1, RequestStatus.APPROVED)]
    resolution = DateResolution(
        request_date=DAY,
        capacity=2,
        adjustment=AllotmentAdjustment(),
        accepted=("A",),
        waitlisted=("B", "C"),
    )
    decisions, state = plan_date(_state(existing), resolution, CANDIDATES, existing, import_source="ical", now=NOW)

    assert _by_member(decisions) == {
        "m-A": (Decision.ACCEPTED, None),
        "m-B": (Decision.WAITLISTED, 1),
        "m-C": (Decision.WAITLISTED, 2),
    }
    assert decisions.adjusted_capacity is None
    assert decisions.expected_waitlist_ids == ()
    assert all(item.request.request_id is None for item in decisions.decisions)
    assert all(item.request.import_source == "ical" for item in decisions.decisions)
    assert [entry.entry_id for entry in state.entries] == ["request-1", "A", "B", "C"]


def test_new_entries_append_after_stored_waitlist():
    existing = [
        _stored(1, RequestStatus.APPROVED),
        _stored(2, RequestStatus.APPROVED),
        _stored(3, RequestStatus.WAITLISTED, position=1),
    ]
    resolution = DateResolution(
        request_date=DAY,
        capacity=2,
        adjustment=AllotmentAdjustment(),
        waitlisted=("A", "B"),
    )
    decisions, state = plan_date(_state(existing, ids=("A", "B")), resolution, CANDIDATES, existing, import_source="ical", now=NOW)

    assert _by_member(decisions) == {
        "m-A": (Decision.WAITLISTED, 2),
        "m-B": (Decision.WAITLISTED, 3),
    }
    assert decisions.expected_waitlist_ids == (3,)
    positions = [entry.position for entry in state.entries if entry.decision == Decision.WAITLISTED]
    assert positions == [1, 2, 3]


def test_stored_waitlist_gaps_are_closed():
    existing = [
        _stored(1, RequestStatus.APPROVED),
        _stored(2, RequestStatus.APPROVED),
        _stored(3, RequestStatus.WAITLISTED, position=2),
        _stored(4, RequestStatus.WAITLISTED, position=5),
    ]
    resolution = DateResolution(request_date=DAY, capacity=2, adjustment=AllotmentAdjustment(), waitlisted=("A",))
    decisions, _ = plan_date(_state(existing, ids=("A",)), resolution, CANDIDATES, existing, import_source="ical", now=NOW)
    assert _by_member(decisions) == {
        "s-3": (Decision.WAITLISTED, 1),
        "s-4": (Decision.WAITLISTED, 2),
        "m-A": (Decision.WAITLISTED, 3),
    }


def test_capacity_increase_promotes_stored_waitlist_first():
    existing = [
        _stored(1, RequestStatus.APPROVED),
        _stored(2, RequestStatus.WAITLISTED, position=1),
        _stored(3, RequestStatus.WAITLISTED, position=2),
    ]
    resolution = DateResolution(
        request_date=DAY,
        capacity=3,
        adjustment=AllotmentAdjustment(mode=AdjustmentMode.CUSTOM, custom_capacity=3),
        accepted=("A",),
    )
    decisions, _ = plan_date(_state(existing, ids=("A",)), resolution, CANDIDATES, existing, import_source="ical", now=NOW)
    assert _by_member(decisions) == {
        "m-A": (Decision.ACCEPTED, None),
        "s-2": (Decision.ACCEPTED, None),
        "s-3": (Decision.WAITLISTED, 1),
    }
    assert decisions.adjusted_capacity == 3
    promoted = next(item for item in decisions.decisions if item.request.member_id == "s-2")
    assert promoted.previous_status == RequestStatus.WAITLISTED
    assert promoted.previous_position == 1
    assert promoted.request.responded_at == NOW


def test_rejected_candidates_are_denied():
    existing: list[LeaveRequest] = []
    resolution = DateResolution(
        request_date=DAY,
        capacity=2,
        adjustment=AllotmentAdjustment(),
        accepted=("B", "C"),
        rejected=("A",),
    )
    decisions, _ = plan_date(_state(existing), resolution, CANDIDATES, existing, import_source="ical", now=NOW)
    assert _by_member(decisions)["m-A"] == (Decision.REJECTED, None)
    rejected = next(item for item in decisions.decisions if item.decision == Decision.REJECTED)
    assert rejected.target_status == RequestStatus.DENIED


def test_superseded_row_is_updated_in_place():
    existing = [_stored(7, RequestStatus.WAITLISTED, position=1)]
    candidate = _candidate("A", 8, member_id="s-7", target_request_id=7)
    resolution = DateResolution(request_date=DAY, capacity=1, adjustment=AllotmentAdjustment(), accepted=("A",))
    decisions, _ = plan_date(
        _state([], capacity=1, ids=("A",)),
        resolution,
        {"A": candidate},
        existing,
        superseded_request_ids=frozenset({7}),
        import_source="ical",
        now=NOW,
    )
    (item,) = decisions.decisions
    assert item.request.request_id == 7
    assert item.decision == Decision.ACCEPTED
    assert item.previous_status == RequestStatus.WAITLISTED


def test_cancelling_approved_request_promotes_first_waitlisted():
    existing = [
        _stored(1, RequestStatus.APPROVED),
        _stored(2, RequestStatus.APPROVED),
        _stored(3, RequestStatus.WAITLISTED, position=1),
        _stored(4, RequestStatus.WAITLISTED, position=2),
    ]
    decisions = plan_cancellation(1, 2, existing, now=NOW)
    assert _by_member(decisions) == {
        "s-1": (Decision.CANCELLED, None),
        "s-3": (Decision.ACCEPTED, None),
        "s-4": (Decision.WAITLISTED, 1),
    }
    assert decisions.decisions[0].decision == Decision.CANCELLED


def test_cancelling_waitlisted_request_closes_gap():
    existing = [
        _stored(1, RequestStatus.APPROVED),
        _stored(3, RequestStatus.WAITLISTED, position=1),
        _stored(4, RequestStatus.WAITLISTED, position=2),
        _stored(5, RequestStatus.WAITLISTED, position=3),
    ]
    decisions = plan_cancellation(3, 1, existing, now=NOW)
    assert _by_member(decisions) == {
        "s-3": (Decision.CANCELLED, None),
        "s-4": (Decision.WAITLISTED, 1),
        "s-5": (Decision.WAITLISTED, 2),
    }


def test_cancelling_inactive_or_unknown_request_raises():
    existing = [_stored(1, RequestStatus.DENIED)]
    with pytest.raises(WaitlistError):
        plan_cancellation(1, 1, existing, now=NOW)
    with pytest.raises(WaitlistError):
        plan_cancellation(99, 1, existing, now=NOW)


def test_rebalance_after_capacity_increase():
    existing = [
        _stored(1, RequestStatus.APPROVED),
        _stored(2, RequestStatus.WAITLISTED, position=1),
        _stored(3, RequestStatus.WAITLISTED, position=2),
    ]
    decisions = rebalance_date("cal-1", DAY, 2, existing, now=NOW)
    assert _by_member(decisions) == {
        "s-2": (Decision.ACCEPTED, None),
        "s-3": (Decision.WAITLISTED, 1),
    }
    assert rebalance_date("cal-1", DAY, 1, existing, now=NOW).decisions == ()


def test_skipped_candidates_carry_a_reason():
    skipped = skipped_candidates(
        [
            _candidate("A", 8, match_status=MatchStatus.SKIPPED),
            _candidate("B", 9, duplicate_status=DuplicateStatus.EXACT_DUPLICATE),
            _candidate("C", 10),
        ],
        excluded_dates=[DAY],
    )
    assert [(item.candidate_id, item.reason) for item in skipped] == [
        ("A", "member skipped"),
        ("B", "exact_duplicate"),
        ("C", "date excluded"),
    ]
