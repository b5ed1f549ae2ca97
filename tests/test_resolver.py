from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime

import pytest

from leave_reconciliation.domain.models import (
    AdjustmentMode,
    AllotmentAdjustment,
    AllotmentSource,
    CandidateRequest,
    DateAllotmentState,
    IssueCategory,
    LeaveType,
    MatchStatus,
    PriorityPolicy,
    RequestStatus,
)
from leave_reconciliation.services.resolver_service import (
    ResolverValidationError,
    effective_capacity,
    order_candidates,
    resolve_date,
    resolve_over_allotments,
)


DAY = date(2025, 6, 1)


def _candidate(candidate_id: str, member_id: str, hour: int, seniority=None) -> CandidateRequest:
    return CandidateRequest(
        candidate_id=candidate_id,
        row_index=0,
        first_name="",
        last_name="",
        calendar_id="cal-1",
        request_date=DAY,
        leave_type=LeaveType.PLD,
        status_intent=RequestStatus.APPROVED,
        requested_at=datetime(2025, 1, 1, hour),
        member_id=member_id,
        seniority=seniority,
        match_status=MatchStatus.MATCHED,
    )


A = _candidate("A", "m-a", 8, seniority=3)
B = _candidate("B", "m-b", 9, seniority=1)
C = _candidate("C", "m-c", 10, seniority=2)
CANDIDATES = {item.candidate_id: item for item in (A, B, C)}


def _state(capacity=2, approved=1, waitlisted=0, ids=("C", "A", "B")) -> DateAllotmentState:
    return DateAllotmentState(
        calendar_id="cal-1",
        request_date=DAY,
        capacity=capacity,
        capacity_source=AllotmentSource.YEARLY_DEFAULT,
        existing_approved=approved,
        existing_waitlisted=waitlisted,
        incoming=len(ids),
        candidate_ids=ids,
    )


def test_default_order_accepts_earliest_and_waitlists_rest():
    resolution = resolve_date(_state(), CANDIDATES, policy=PriorityPolicy.REQUESTED_AT)
    assert resolution.is_valid
    assert resolution.accepted == ("A",)
    assert resolution.waitlisted == ("B", "C")


def test_member_id_breaks_request_time_ties():
    first = _candidate("X", "m-2", 8)
    second = _candidate("Y", "m-1", 8)
    ordered = order_candidates([first, second], PriorityPolicy.REQUESTED_AT)
    assert [item.candidate_id for item in ordered] == ["Y", "X"]


def test_seniority_policy_orders_by_roster_rank():
    resolution = resolve_date(_state(), CANDIDATES, policy=PriorityPolicy.SENIORITY)
    assert resolution.accepted == ("B",)
    assert resolution.waitlisted == ("C", "A")


def test_unknown_policy_raises():
    with pytest.raises(ResolverValidationError):
        order_candidates([A, B], "coin-flip")


def test_manual_order_replaces_default_order():
    resolution = resolve_date(
        _state(),
        CANDIDATES,
        policy=PriorityPolicy.REQUESTED_AT,
        manual_order=["C", "A", "B"],
    )
    assert resolution.accepted == ("C",)
    assert resolution.waitlisted == ("A", "B")


@pytest.mark.parametrize(
    "manual_order",
    [["C", "A"], ["C", "A", "B", "B"], ["C", "A", "B", "Z"]],
)
def test_invalid_manual_order_excludes_date(manual_order):
    resolution = resolve_date(
        _state(),
        CANDIDATES,
        policy=PriorityPolicy.REQUESTED_AT,
        manual_order=manual_order,
    )
    assert not resolution.is_valid
    assert resolution.accepted == ()
    assert resolution.waitlisted == ()
    assert all(issue.category == IssueCategory.CAPACITY_VALIDATION for issue in resolution.issues)


def test_increase_to_fit_accepts_everyone():
    resolution = resolve_date(
        _state(),
        CANDIDATES,
        policy=PriorityPolicy.REQUESTED_AT,
        adjustment=AllotmentAdjustment(mode=AdjustmentMode.INCREASE_TO_FIT),
    )
    assert resolution.capacity == 4
    assert resolution.accepted == ("A", "B", "C")
    assert resolution.waitlisted == ()


def test_increase_to_fit_never_lowers_capacity():
    capacity, issues = effective_capacity(
        _state(capacity=10),
        AllotmentAdjustment(mode=AdjustmentMode.INCREASE_TO_FIT),
        incoming=3,
    )
    assert capacity == 10
    assert issues == []


def test_custom_capacity_applies():
    resolution = resolve_date(
        _state(),
        CANDIDATES,
        policy=PriorityPolicy.REQUESTED_AT,
        adjustment=AllotmentAdjustment(mode=AdjustmentMode.CUSTOM, custom_capacity=3),
    )
    assert resolution.capacity == 3
    assert resolution.accepted == ("A", "B")
    assert resolution.waitlisted == ("C",)


@pytest.mark.parametrize("custom", [-1, 0, None, "3", True])
def test_invalid_custom_capacity_excludes_date(custom):
    resolution = resolve_date(
        _state(),
        CANDIDATES,
        policy=PriorityPolicy.REQUESTED_AT,
        adjustment=AllotmentAdjustment(mode=AdjustmentMode.CUSTOM, custom_capacity=custom),
    )
    assert not resolution.is_valid


def test_rejected_candidates_take_no_capacity():
    resolution = resolve_date(
        _state(),
        CANDIDATES,
        policy=PriorityPolicy.REQUESTED_AT,
        rejected_ids=["A"],
    )
    assert resolution.rejected == ("A",)
    assert resolution.accepted == ("B",)
    assert resolution.waitlisted == ("C",)


def test_existing_waitlist_consumes_available_capacity():
    resolution = resolve_date(
        _state(capacity=3, approved=1, waitlisted=1),
        CANDIDATES,
        policy=PriorityPolicy.REQUESTED_AT,
    )
    assert resolution.accepted == ("A",)
    assert resolution.waitlisted == ("B", "C")


def test_overrides_for_one_date_leave_others_alone():
    other_day = date(2025, 6, 2)
    other = replace(_candidate("D", "m-d", 7), request_date=other_day)
    other_state = DateAllotmentState(
        calendar_id="cal-1",
        request_date=other_day,
        capacity=0,
        capacity_source=AllotmentSource.MISSING,
        existing_approved=0,
        existing_waitlisted=0,
        incoming=1,
        candidate_ids=("D",),
    )
    resolutions = resolve_over_allotments(
        [_state(), other_state],
        [A, B, C, other],
        policy=PriorityPolicy.REQUESTED_AT,
        manual_orders={DAY: ["A", "B"]},
    )
    first, second = resolutions
    assert not first.is_valid
    assert second.is_valid
    assert second.waitlisted == ("D",)
