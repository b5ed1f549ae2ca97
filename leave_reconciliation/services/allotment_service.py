"""Per-date capacity and demand calculation."""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Iterable, Sequence

import pandas as pd

from leave_reconciliation.domain.models import (
    AllotmentRule,
    AllotmentSource,
    CandidateRequest,
    DateAllotmentState,
    LeaveRequest,
    RequestStatus,
)
from leave_reconciliation.utils.logger import get_logger


logger = get_logger(__name__)

REVIEW_COLUMNS = [
    "request_date",
    "capacity",
    "capacity_source",
    "existing_approved",
    "existing_waitlisted",
    "incoming",
    "total_demand",
    "available",
    "over_allotted",
]


def resolve_capacity(
    calendar_id: str,
    target_date: date,
    rules: Iterable[AllotmentRule],
) -> tuple[int, AllotmentSource]:
    """Daily override replaces the yearly default; no rule means no capacity."""
    yearly: AllotmentRule | None = None
    for rule in rules:
        if rule.calendar_id != calendar_id:
            continue
        if rule.source == AllotmentSource.DAILY_OVERRIDE and rule.date == target_date:
            return rule.max_allotment, AllotmentSource.DAILY_OVERRIDE
        if rule.source == AllotmentSource.YEARLY_DEFAULT and rule.year == target_date.year:
            yearly = rule
    if yearly is not None:
        return yearly.max_allotment, AllotmentSource.YEARLY_DEFAULT
    return 0, AllotmentSource.MISSING


def existing_requests_by_date(
    calendar_id: str,
    existing: Iterable[LeaveRequest],
    superseded_request_ids: frozenset[int] = frozenset(),
) -> dict[date, list[LeaveRequest]]:
    """Active stored rows per date, minus rows an import candidate replaces."""
    grouped: dict[date, list[LeaveRequest]] = defaultdict(list)
    for request in existing:
        if request.calendar_id != calendar_id or not request.is_active:
            continue
        if request.request_id is not None and request.request_id in superseded_request_ids:
            continue
        grouped[request.request_date].append(request)
    return grouped


def compute_allotment_states(
    *,
    calendar_id: str,
    candidates: Sequence[CandidateRequest],
    existing: Iterable[LeaveRequest],
    rules: Sequence[AllotmentRule],
    superseded_request_ids: frozenset[int] = frozenset(),
    extra_dates: Iterable[date] = (),
) -> list[DateAllotmentState]:
    """Build one state per touched date; only participating candidates count."""
    incoming_by_date: dict[date, list[str]] = defaultdict(list)
    for candidate in candidates:
        if candidate.calendar_id == calendar_id and candidate.participates:
            incoming_by_date[candidate.request_date].append(candidate.candidate_id)

    stored_by_date = existing_requests_by_date(calendar_id, existing, superseded_request_ids)
    dates = sorted(set(incoming_by_date) | set(extra_dates))

    states: list[DateAllotmentState] = []
    for target_date in dates:
        capacity, source = resolve_capacity(calendar_id, target_date, rules)
        stored = stored_by_date.get(target_date, [])
        state = DateAllotmentState(
            calendar_id=calendar_id,
            request_date=target_date,
            capacity=capacity,
            capacity_source=source,
            existing_approved=sum(1 for request in stored if request.holds_capacity),
            existing_waitlisted=sum(
                1 for request in stored if request.status == RequestStatus.WAITLISTED
            ),
            incoming=len(incoming_by_date.get(target_date, [])),
            candidate_ids=tuple(incoming_by_date.get(target_date, [])),
        )
        if state.over_allotted:
            logger.info(
                "Over-allotment detected | date=%s | capacity=%s | existing=%s | incoming=%s",
                target_date.isoformat(),
                state.capacity,
                state.existing_demand,
                state.incoming,
            )
        states.append(state)
    return states


def allotment_review_frame(states: Sequence[DateAllotmentState]) -> pd.DataFrame:
    """Tabular view of the per-date states for the over-allotment review screen."""
    if not states:
        return pd.DataFrame(columns=REVIEW_COLUMNS)
    frame = pd.DataFrame(
        [
            {
                "request_date": state.request_date.isoformat(),
                "capacity": state.capacity,
                "capacity_source": state.capacity_source.value,
                "existing_approved": state.existing_approved,
                "existing_waitlisted": state.existing_waitlisted,
                "incoming": state.incoming,
                "total_demand": state.total_demand,
                "available": state.available,
                "over_allotted": state.over_allotted,
            }
            for state in states
        ],
        columns=REVIEW_COLUMNS,
    )
    return frame.sort_values(
        by=["over_allotted", "request_date"],
        ascending=[False, True],
        kind="mergesort",
    ).reset_index(drop=True)
