"""Domain models for leave-allotment reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional


class LeaveType(str, Enum):
    PLD = "PLD"
    SDV = "SDV"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    WAITLISTED = "waitlisted"
    DENIED = "denied"
    CANCELLED = "cancelled"
    CANCELLATION_PENDING = "cancellation_pending"


INACTIVE_STATUSES = frozenset({RequestStatus.DENIED, RequestStatus.CANCELLED})
# Statuses that hold a slot of the date's allotment.
CAPACITY_STATUSES = frozenset(
    {RequestStatus.APPROVED, RequestStatus.CANCELLATION_PENDING}
)


class RequestSource(str, Enum):
    DATABASE = "database"
    IMPORT_CANDIDATE = "import-candidate"


class MatchStatus(str, Enum):
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    SKIPPED = "skipped"


class DuplicateStatus(str, Enum):
    UNIQUE = "unique"
    EXACT_DUPLICATE = "exact_duplicate"
    CONFLICTING_DUPLICATE = "conflicting_duplicate"


class DuplicateResolution(str, Enum):
    KEEP_DATABASE = "keep_database"
    KEEP_CANDIDATE = "keep_candidate"
    MERGE = "merge"


class AllotmentSource(str, Enum):
    DAILY_OVERRIDE = "daily_override"
    YEARLY_DEFAULT = "yearly_default"
    MISSING = "missing"


class AdjustmentMode(str, Enum):
    KEEP = "keep"
    INCREASE_TO_FIT = "increase-to-fit"
    CUSTOM = "custom"


class PriorityPolicy(str, Enum):
    REQUESTED_AT = "requested_at"
    SENIORITY = "seniority"


class Decision(str, Enum):
    ACCEPTED = "accepted"
    WAITLISTED = "waitlisted"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


DECISION_STATUS = {
    Decision.ACCEPTED: RequestStatus.APPROVED,
    Decision.WAITLISTED: RequestStatus.WAITLISTED,
    Decision.REJECTED: RequestStatus.DENIED,
    Decision.CANCELLED: RequestStatus.CANCELLED,
}


class IssueCategory(str, Enum):
    IDENTITY = "identity"
    PARSE = "parse"
    DUPLICATE_CONFLICT = "duplicate_conflict"
    CAPACITY_VALIDATION = "capacity_validation"
    CONCURRENCY = "concurrency"
    STORAGE = "storage"


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are compared as naive UTC; aware values are converted first."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class Member:
    member_id: str
    first_name: str
    last_name: str
    pin_number: Optional[int] = None
    division_id: Optional[int] = None
    zone_id: Optional[int] = None
    seniority: Optional[int] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(frozen=True)
class Calendar:
    calendar_id: str
    name: str
    is_active: bool = True
    division_id: Optional[int] = None
    zone_id: Optional[int] = None


@dataclass(frozen=True)
class AllotmentRule:
    calendar_id: str
    max_allotment: int
    source: AllotmentSource
    date: Optional[date] = None
    year: Optional[int] = None


@dataclass(frozen=True)
class RequestKey:
    """Identity of an active request: one per member, calendar, date and type."""

    member_id: str
    calendar_id: str
    request_date: date
    leave_type: LeaveType


@dataclass(frozen=True)
class LeaveRequest:
    member_id: str
    calendar_id: str
    request_date: date
    leave_type: LeaveType
    status: RequestStatus
    requested_at: datetime
    request_id: Optional[int] = None
    waitlist_position: Optional[int] = None
    responded_at: Optional[datetime] = None
    source: RequestSource = RequestSource.DATABASE
    import_source: Optional[str] = None

    @property
    def key(self) -> RequestKey:
        return RequestKey(
            member_id=self.member_id,
            calendar_id=self.calendar_id,
            request_date=self.request_date,
            leave_type=self.leave_type,
        )

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_STATUSES

    @property
    def holds_capacity(self) -> bool:
        return self.status in CAPACITY_STATUSES


@dataclass(frozen=True)
class CandidateRequest:
    candidate_id: str
    row_index: int
    first_name: str
    last_name: str
    calendar_id: str
    request_date: date
    leave_type: LeaveType
    status_intent: RequestStatus
    requested_at: datetime
    pin_number: Optional[int] = None
    member_id: Optional[str] = None
    seniority: Optional[int] = None
    match_status: MatchStatus = MatchStatus.UNMATCHED
    match_confidence: int = 0
    possible_member_ids: tuple[str, ...] = ()
    duplicate_status: DuplicateStatus = DuplicateStatus.UNIQUE
    duplicate_of: Optional[int] = None
    duplicate_of_candidate: Optional[str] = None
    duplicate_resolution: Optional[DuplicateResolution] = None
    target_request_id: Optional[int] = None
    source: RequestSource = RequestSource.IMPORT_CANDIDATE

    @property
    def key(self) -> Optional[RequestKey]:
        if self.member_id is None:
            return None
        return RequestKey(
            member_id=self.member_id,
            calendar_id=self.calendar_id,
            request_date=self.request_date,
            leave_type=self.leave_type,
        )

    @property
    def is_matched(self) -> bool:
        return self.match_status == MatchStatus.MATCHED and self.member_id is not None

    @property
    def needs_duplicate_resolution(self) -> bool:
        return (
            self.duplicate_status == DuplicateStatus.CONFLICTING_DUPLICATE
            and self.duplicate_resolution is None
        )

    @property
    def participates(self) -> bool:
        """True when the candidate counts towards demand on its date."""
        if not self.is_matched:
            return False
        if self.duplicate_status == DuplicateStatus.UNIQUE:
            return True
        if self.duplicate_status == DuplicateStatus.CONFLICTING_DUPLICATE:
            return self.duplicate_resolution in (
                DuplicateResolution.KEEP_CANDIDATE,
                DuplicateResolution.MERGE,
            )
        return False


@dataclass(frozen=True)
class ReconciliationIssue:
    category: IssueCategory
    message: str
    row_index: Optional[int] = None
    candidate_id: Optional[str] = None
    request_date: Optional[date] = None
    field: Optional[str] = None
    request_id: Optional[int] = None

    @property
    def is_blocking(self) -> bool:
        return self.category in (IssueCategory.IDENTITY, IssueCategory.DUPLICATE_CONFLICT)


@dataclass(frozen=True)
class DateEntry:
    """One request's place in a date's final ordering."""

    entry_id: str
    member_id: str
    decision: Decision
    position: Optional[int] = None
    request_id: Optional[int] = None
    candidate_id: Optional[str] = None


@dataclass(frozen=True)
class DateAllotmentState:
    calendar_id: str
    request_date: date
    capacity: int
    capacity_source: AllotmentSource
    existing_approved: int
    existing_waitlisted: int
    incoming: int
    candidate_ids: tuple[str, ...] = ()
    entries: tuple[DateEntry, ...] = ()

    @property
    def existing_demand(self) -> int:
        return self.existing_approved + self.existing_waitlisted

    @property
    def total_demand(self) -> int:
        return self.existing_demand + self.incoming

    @property
    def over_allotted(self) -> bool:
        return self.total_demand > self.capacity

    @property
    def available(self) -> int:
        return max(0, self.capacity - self.existing_demand)


@dataclass(frozen=True)
class AllotmentAdjustment:
    mode: AdjustmentMode = AdjustmentMode.KEEP
    custom_capacity: Optional[int] = None


@dataclass(frozen=True)
class DateResolution:
    request_date: date
    capacity: int
    adjustment: AllotmentAdjustment
    accepted: tuple[str, ...] = ()
    waitlisted: tuple[str, ...] = ()
    rejected: tuple[str, ...] = ()
    issues: tuple[ReconciliationIssue, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.issues


@dataclass(frozen=True)
class FinalDecision:
    """A proposed write: the request as it should be stored after commit."""

    request: LeaveRequest
    decision: Decision
    position: Optional[int] = None
    candidate_id: Optional[str] = None
    previous_status: Optional[RequestStatus] = None
    previous_position: Optional[int] = None

    @property
    def request_key(self) -> RequestKey:
        return self.request.key

    @property
    def target_status(self) -> Optional[RequestStatus]:
        return DECISION_STATUS.get(self.decision)

    @property
    def is_write(self) -> bool:
        return self.decision != Decision.SKIPPED


@dataclass(frozen=True)
class SkippedCandidate:
    candidate_id: str
    reason: str
    member_id: Optional[str] = None
    request_date: Optional[date] = None


@dataclass(frozen=True)
class DateDecisions:
    calendar_id: str
    request_date: date
    capacity: int
    decisions: tuple[FinalDecision, ...] = ()
    # Daily override to store when the reviewer changed the allotment.
    adjusted_capacity: Optional[int] = None
    # Waitlisted request ids the plan was computed against.
    expected_waitlist_ids: tuple[int, ...] = ()

    @property
    def accepted_count(self) -> int:
        return sum(1 for item in self.decisions if item.decision == Decision.ACCEPTED)


@dataclass(frozen=True)
class DecisionSet:
    calendar_id: str
    dates: tuple[DateDecisions, ...] = ()
    skipped: tuple[SkippedCandidate, ...] = ()
    issues: tuple[ReconciliationIssue, ...] = ()
    run_id: Optional[str] = None

    @property
    def write_count(self) -> int:
        return sum(len(item.decisions) for item in self.dates)


@dataclass(frozen=True)
class ReconciliationSnapshot:
    """Everything a run reads from storage, captured once."""

    calendar: Calendar
    members: tuple[Member, ...]
    existing_requests: tuple[LeaveRequest, ...]
    allotment_rules: tuple[AllotmentRule, ...]
    captured_at: datetime
    division_id: Optional[int] = None
    extra_dates: tuple[date, ...] = field(default_factory=tuple)
