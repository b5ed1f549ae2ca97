"""Waitlist ordering, promotion and renumbering per date."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Iterable, Mapping, Optional, Sequence

from leave_reconciliation.domain.models import (
    CandidateRequest,
    DateAllotmentState,
    DateDecisions,
    DateEntry,
    DateResolution,
    Decision,
    FinalDecision,
    LeaveRequest,
    RequestSource,
    RequestStatus,
    SkippedCandidate,
)
from leave_reconciliation.utils.logger import get_logger


logger = get_logger(__name__)

_UNPOSITIONED = 10**9


class WaitlistError(Exception):
    """Raised when a waitlist operation targets a request that cannot take it."""


@dataclass(frozen=True)
class _Slot:
    """A request competing for a place on one date."""

    request: LeaveRequest
    candidate_id: Optional[str] = None
    previous_status: Optional[RequestStatus] = None
    previous_position: Optional[int] = None

    @property
    def always_write(self) -> bool:
        return self.candidate_id is not None

    @property
    def entry_id(self) -> str:
        if self.candidate_id is not None:
            return self.candidate_id
        return f"request-{self.request.request_id}"


def positions_are_contiguous(positions: Iterable[Optional[int]]) -> bool:
    """True when the positions are exactly 1..N."""
    values = list(positions)
    if any(value is None for value in values):
        return False
    return sorted(values) == list(range(1, len(values) + 1))


def waitlist_order_key(request: LeaveRequest) -> tuple:
    position = request.waitlist_position if request.waitlist_position is not None else _UNPOSITIONED
    return (position, request.requested_at, request.request_id or 0)


def candidate_to_request(
    candidate: CandidateRequest,
    *,
    status: RequestStatus,
    position: Optional[int],
    import_source: str,
    responded_at: Optional[datetime],
) -> LeaveRequest:
    if candidate.member_id is None:
        raise WaitlistError(f"candidate {candidate.candidate_id} has no resolved member")
    return LeaveRequest(
        request_id=candidate.target_request_id,
        member_id=candidate.member_id,
        calendar_id=candidate.calendar_id,
        request_date=candidate.request_date,
        leave_type=candidate.leave_type,
        status=status,
        waitlist_position=position,
        requested_at=candidate.requested_at,
        responded_at=responded_at,
        source=RequestSource.IMPORT_CANDIDATE,
        import_source=import_source,
    )


def _active_rows(
    calendar_id: str,
    target_date: date,
    existing: Iterable[LeaveRequest],
    excluded_ids: frozenset[int] = frozenset(),
) -> list[LeaveRequest]:
    return [
        request
        for request in existing
        if request.calendar_id == calendar_id
        and request.request_date == target_date
        and request.is_active
        and request.request_id not in excluded_ids
    ]


def _candidate_slot(
    candidate: CandidateRequest,
    stored_by_id: Mapping[int, LeaveRequest],
    import_source: str,
    now: datetime,
) -> _Slot:
    previous = stored_by_id.get(candidate.target_request_id) if candidate.target_request_id else None
    return _Slot(
        request=candidate_to_request(
            candidate,
            status=RequestStatus.PENDING,
            position=None,
            import_source=import_source,
            responded_at=now,
        ),
        candidate_id=candidate.candidate_id,
        previous_status=previous.status if previous else None,
        previous_position=previous.waitlist_position if previous else None,
    )


def _stored_slot(request: LeaveRequest) -> _Slot:
    return _Slot(
        request=request,
        previous_status=request.status,
        previous_position=request.waitlist_position,
    )


def _decide(
    slot: _Slot,
    decision: Decision,
    position: Optional[int],
    now: datetime,
) -> Optional[FinalDecision]:
    """Final decision for a slot, or None when a stored row keeps its state."""
    status = {
        Decision.ACCEPTED: RequestStatus.APPROVED,
        Decision.WAITLISTED: RequestStatus.WAITLISTED,
        Decision.REJECTED: RequestStatus.DENIED,
        Decision.CANCELLED: RequestStatus.CANCELLED,
    }[decision]
    if (
        not slot.always_write
        and slot.previous_status == status
        and slot.previous_position == position
    ):
        return None
    responded_at = slot.request.responded_at
    if slot.previous_status != status:
        responded_at = now
    return FinalDecision(
        request=replace(
            slot.request,
            status=status,
            waitlist_position=position,
            responded_at=responded_at,
        ),
        decision=decision,
        position=position,
        candidate_id=slot.candidate_id,
        previous_status=slot.previous_status,
        previous_position=slot.previous_position,
    )


def _rebalance(
    *,
    capacity: int,
    approved: int,
    accepted: Sequence[_Slot],
    waitlist: Sequence[_Slot],
    now: datetime,
) -> tuple[list[FinalDecision], list[DateEntry]]:
    """Promote into free slots, then renumber the rest of the waitlist from 1."""
    decisions: list[FinalDecision] = []
    entries: list[DateEntry] = []
    free = max(0, capacity - approved - len(accepted))
    promoted = list(waitlist[:free])
    remaining = list(waitlist[free:])

    for slot in [*accepted, *promoted]:
        decision = _decide(slot, Decision.ACCEPTED, None, now)
        if decision is not None:
            decisions.append(decision)
        entries.append(
            DateEntry(
                entry_id=slot.entry_id,
                member_id=slot.request.member_id,
                decision=Decision.ACCEPTED,
                request_id=slot.request.request_id,
                candidate_id=slot.candidate_id,
            )
        )
    for position, slot in enumerate(remaining, start=1):
        decision = _decide(slot, Decision.WAITLISTED, position, now)
        if decision is not None:
            decisions.append(decision)
        entries.append(
            DateEntry(
                entry_id=slot.entry_id,
                member_id=slot.request.member_id,
                decision=Decision.WAITLISTED,
                position=position,
                request_id=slot.request.request_id,
                candidate_id=slot.candidate_id,
            )
        )
    return decisions, entries


def plan_date(
    state: DateAllotmentState,
    resolution: DateResolution,
    candidates_by_id: Mapping[str, CandidateRequest],
    existing: Sequence[LeaveRequest],
    *,
    superseded_request_ids: frozenset[int] = frozenset(),
    import_source: str,
    now: datetime,
) -> tuple[DateDecisions, DateAllotmentState]:
    """Merge the stored waitlist with new entries and emit the writes for one date.

    Stored waitlisted rows keep their relative order and stay ahead of new
    entries, which are appended in resolver order. Stored rows whose state
    does not change produce no decision.
    """
    stored_by_id = {request.request_id: request for request in existing if request.request_id}
    active = _active_rows(state.calendar_id, state.request_date, existing, superseded_request_ids)
    approved_rows = [request for request in active if request.holds_capacity]
    stored_waitlist = sorted(
        (request for request in active if request.status == RequestStatus.WAITLISTED),
        key=waitlist_order_key,
    )

    def slots(ids: Sequence[str]) -> list[_Slot]:
        return [
            _candidate_slot(candidates_by_id[item], stored_by_id, import_source, now)
            for item in ids
        ]

    decisions, entries = _rebalance(
        capacity=resolution.capacity,
        approved=len(approved_rows),
        accepted=slots(resolution.accepted),
        waitlist=[*(_stored_slot(request) for request in stored_waitlist), *slots(resolution.waitlisted)],
        now=now,
    )
    for slot in slots(resolution.rejected):
        decisions.append(_decide(slot, Decision.REJECTED, None, now))
        entries.append(
            DateEntry(
                entry_id=slot.entry_id,
                member_id=slot.request.member_id,
                decision=Decision.REJECTED,
                request_id=slot.request.request_id,
                candidate_id=slot.candidate_id,
            )
        )

    approved_entries = [
        DateEntry(
            entry_id=f"request-{request.request_id}",
            member_id=request.member_id,
            decision=Decision.ACCEPTED,
            request_id=request.request_id,
        )
        for request in approved_rows
    ]
    date_decisions = DateDecisions(
        calendar_id=state.calendar_id,
        request_date=state.request_date,
        capacity=resolution.capacity,
        decisions=tuple(decisions),
        expected_waitlist_ids=tuple(request.request_id for request in stored_waitlist),
        adjusted_capacity=resolution.capacity if resolution.capacity != state.capacity else None,
    )
    logger.info(
        "Date planned | date=%s | capacity=%s | writes=%s | waitlist=%s",
        state.request_date.isoformat(),
        resolution.capacity,
        len(decisions),
        sum(1 for entry in entries if entry.decision == Decision.WAITLISTED),
    )
    return date_decisions, replace(state, entries=tuple(approved_entries + entries))


def assign_positions(
    states: Sequence[DateAllotmentState],
    resolutions: Sequence[DateResolution],
    candidates: Sequence[CandidateRequest],
    existing: Sequence[LeaveRequest],
    *,
    superseded_request_ids: frozenset[int] = frozenset(),
    import_source: str,
    now: datetime,
) -> tuple[list[DateDecisions], list[DateAllotmentState]]:
    """Plan every valid date; dates whose resolution carries issues are left out."""
    candidates_by_id = {candidate.candidate_id: candidate for candidate in candidates}
    resolution_by_date = {resolution.request_date: resolution for resolution in resolutions}
    planned: list[DateDecisions] = []
    annotated: list[DateAllotmentState] = []
    for state in states:
        resolution = resolution_by_date.get(state.request_date)
        if resolution is None or not resolution.is_valid:
            annotated.append(state)
            continue
        date_decisions, state = plan_date(
            state,
            resolution,
            candidates_by_id,
            existing,
            superseded_request_ids=superseded_request_ids,
            import_source=import_source,
            now=now,
        )
        planned.append(date_decisions)
        annotated.append(state)
    return planned, annotated


def skipped_candidates(
    candidates: Iterable[CandidateRequest],
    excluded_dates: Iterable[date] = (),
) -> list[SkippedCandidate]:
    """Candidates that produce no write, with the reason they were left out."""
    excluded = frozenset(excluded_dates)
    skipped: list[SkippedCandidate] = []
    for candidate in candidates:
        if not candidate.is_matched:
            reason = f"member {candidate.match_status.value}"
        elif not candidate.participates:
            reason = candidate.duplicate_status.value
            if candidate.duplicate_resolution is not None:
                reason = f"{reason}:{candidate.duplicate_resolution.value}"
        elif candidate.request_date in excluded:
            reason = "date excluded"
        else:
            continue
        skipped.append(
            SkippedCandidate(
                candidate_id=candidate.candidate_id,
                reason=reason,
                member_id=candidate.member_id,
                request_date=candidate.request_date,
            )
        )
    return skipped


def rebalance_date(
    calendar_id: str,
    target_date: date,
    capacity: int,
    existing: Sequence[LeaveRequest],
    *,
    now: datetime,
    removed_request_id: Optional[int] = None,
) -> DateDecisions:
    """Recompute a stored date after a removal or a capacity increase.

    Approved rows are never demoted; free slots go to the front of the
    waitlist and the remainder is renumbered from 1.
    """
    excluded = frozenset({removed_request_id}) if removed_request_id is not None else frozenset()
    active = _active_rows(calendar_id, target_date, existing, excluded)
    stored_waitlist = sorted(
        (request for request in active if request.status == RequestStatus.WAITLISTED),
        key=waitlist_order_key,
    )
    decisions, _ = _rebalance(
        capacity=capacity,
        approved=sum(1 for request in active if request.holds_capacity),
        accepted=(),
        waitlist=[_stored_slot(request) for request in stored_waitlist],
        now=now,
    )
    return DateDecisions(
        calendar_id=calendar_id,
        request_date=target_date,
        capacity=capacity,
        decisions=tuple(decisions),
        expected_waitlist_ids=tuple(
            request.request_id
            for request in _active_rows(calendar_id, target_date, existing)
            if request.status == RequestStatus.WAITLISTED
        ),
    )


def plan_cancellation(
    request_id: int,
    capacity: int,
    existing: Sequence[LeaveRequest],
    *,
    now: datetime,
) -> DateDecisions:
    """Cancel one active request and close the gap it leaves."""
    target = next((request for request in existing if request.request_id == request_id), None)
    if target is None:
        raise WaitlistError(f"request_id={request_id} is not part of the snapshot")
    if not target.is_active:
        raise WaitlistError(f"request_id={request_id} is already {target.status.value}")

    cancellation = _decide(_stored_slot(target), Decision.CANCELLED, None, now)
    rebalanced = rebalance_date(
        target.calendar_id,
        target.request_date,
        capacity,
        existing,
        now=now,
        removed_request_id=request_id,
    )
    logger.info(
        "Cancellation planned | request_id=%s | date=%s | previous_status=%s | writes=%s",
        request_id,
        target.request_date.isoformat(),
        target.status.value,
        len(rebalanced.decisions) + 1,
    )
    return replace(rebalanced, decisions=(cancellation, *rebalanced.decisions))
