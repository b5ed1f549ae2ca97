"""Normalization of loosely typed import and storage rows into canonical records."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from leave_reconciliation.domain.constraints import ReconciliationConfig
from leave_reconciliation.domain.models import (
    CandidateRequest,
    IssueCategory,
    LeaveRequest,
    LeaveType,
    MatchStatus,
    Member,
    ReconciliationIssue,
    RequestSource,
    RequestStatus,
    naive_utc,
)
from leave_reconciliation.services.member_matching import resolve_member
from leave_reconciliation.utils.logger import get_logger


logger = get_logger(__name__)

_DEFAULT_DATE_FORMATS = ("%Y-%m-%d",)

# Status words an import source may use for a request that did not get a slot.
_WAITLIST_MARKERS = frozenset({"waitlisted", "waitlist", "denied req", "denied request"})
_APPROVED_MARKERS = frozenset({"", "approved", "granted"})


def _parse_date_value(value: Any, formats: Sequence[str]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError("date is required")
    text = value.strip()
    for fmt in formats:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"unrecognised date {text!r}")


def _date_formats(info: ValidationInfo) -> Sequence[str]:
    context = info.context or {}
    return context.get("date_formats") or _DEFAULT_DATE_FORMATS


class RawImportRow(BaseModel):
    """One externally sourced request row before identity resolution."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    first_name: str = Field(default="", validation_alias=AliasChoices("first_name", "firstName"))
    last_name: str = Field(default="", validation_alias=AliasChoices("last_name", "lastName"))
    pin_number: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("pin_number", "pinNumber", "pin"),
    )
    request_date: date = Field(validation_alias=AliasChoices("request_date", "requestDate", "date"))
    leave_type: LeaveType = Field(validation_alias=AliasChoices("leave_type", "leaveType", "type"))
    status: RequestStatus = Field(
        default=RequestStatus.APPROVED,
        validation_alias=AliasChoices("status", "status_intent"),
    )
    requested_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("requested_at", "requestedAt"),
    )
    created_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("created_at", "createdAt"),
    )
    original_request_date: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("original_request_date", "originalRequestDate"),
    )

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def coerce_blank_name(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("pin_number", mode="before")
    @classmethod
    def coerce_blank_pin(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("request_date", mode="before")
    @classmethod
    def parse_request_date(cls, value: Any, info: ValidationInfo) -> date:
        return _parse_date_value(value, _date_formats(info))

    @field_validator("leave_type", mode="before")
    @classmethod
    def normalize_leave_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status_intent(cls, value: Any) -> Any:
        if value is None:
            return RequestStatus.APPROVED
        if isinstance(value, RequestStatus):
            return value
        if isinstance(value, bool):
            return RequestStatus.WAITLISTED if value else RequestStatus.APPROVED
        text = str(value).strip().lower()
        if text in _WAITLIST_MARKERS:
            return RequestStatus.WAITLISTED
        if text in _APPROVED_MARKERS:
            return RequestStatus.APPROVED
        if text == RequestStatus.PENDING.value:
            return RequestStatus.PENDING
        raise ValueError(f"unsupported status intent {value!r}")

    @field_validator("requested_at", "created_at", "original_request_date", mode="after")
    @classmethod
    def drop_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)

    @model_validator(mode="after")
    def require_identity(self) -> "RawImportRow":
        if not self.first_name and not self.last_name and self.pin_number is None:
            raise ValueError("row has neither a member name nor a pin")
        return self

    def resolved_requested_at(self, fallback: datetime) -> datetime:
        """Waitlisted rows keep their original request time so they rank correctly."""
        if self.requested_at is not None:
            return self.requested_at
        if self.status == RequestStatus.WAITLISTED and self.original_request_date is not None:
            return self.original_request_date
        if self.created_at is not None:
            return self.created_at
        return naive_utc(fallback)


class StoredRequestRow(BaseModel):
    """A raw storage row handed over by a collaborator that is not our repository."""

    model_config = ConfigDict(extra="ignore")

    request_id: Optional[int] = Field(default=None, validation_alias=AliasChoices("request_id", "id"))
    member_id: str
    calendar_id: str
    request_date: date
    leave_type: LeaveType
    status: RequestStatus
    waitlist_position: Optional[int] = Field(default=None, ge=1)
    requested_at: datetime
    responded_at: Optional[datetime] = None
    import_source: Optional[str] = None

    @field_validator("leave_type", mode="before")
    @classmethod
    def normalize_leave_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("requested_at", "responded_at", mode="after")
    @classmethod
    def drop_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)

    @model_validator(mode="after")
    def position_only_when_waitlisted(self) -> "StoredRequestRow":
        if self.status != RequestStatus.WAITLISTED:
            self.waitlist_position = None
        return self

    def to_request(self) -> LeaveRequest:
        return LeaveRequest(
            request_id=self.request_id,
            member_id=self.member_id,
            calendar_id=self.calendar_id,
            request_date=self.request_date,
            leave_type=self.leave_type,
            status=self.status,
            waitlist_position=self.waitlist_position,
            requested_at=self.requested_at,
            responded_at=self.responded_at,
            source=RequestSource.DATABASE,
            import_source=self.import_source,
        )


@dataclass(frozen=True)
class NormalizationResult:
    candidates: tuple[CandidateRequest, ...]
    issues: tuple[ReconciliationIssue, ...]


def _validation_issues(exc: ValidationError, row_index: int) -> list[ReconciliationIssue]:
    issues: list[ReconciliationIssue] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or None
        issues.append(
            ReconciliationIssue(
                category=IssueCategory.PARSE,
                message=str(error.get("msg", "invalid value")),
                row_index=row_index,
                field=location,
            )
        )
    return issues


def identity_issues(candidates: Iterable[CandidateRequest]) -> list[ReconciliationIssue]:
    """One blocking issue per candidate whose member is still unresolved."""
    issues: list[ReconciliationIssue] = []
    for candidate in candidates:
        if candidate.match_status != MatchStatus.UNMATCHED:
            continue
        if candidate.possible_member_ids:
            message = (
                f"'{candidate.first_name} {candidate.last_name}' matches "
                f"{len(candidate.possible_member_ids)} members; choose one or skip"
            )
        else:
            message = (
                f"'{candidate.first_name} {candidate.last_name}' matches no eligible member"
            )
        issues.append(
            ReconciliationIssue(
                category=IssueCategory.IDENTITY,
                message=message,
                row_index=candidate.row_index,
                candidate_id=candidate.candidate_id,
                request_date=candidate.request_date,
            )
        )
    return issues


def normalize_import_rows(
    rows: Iterable[Mapping[str, Any]],
    *,
    calendar_id: str,
    roster: Sequence[Member],
    config: ReconciliationConfig,
    now: datetime,
    target_year: Optional[int] = None,
) -> NormalizationResult:
    """Validate rows, resolve identities and emit candidates plus row-scoped issues."""
    candidates: list[CandidateRequest] = []
    issues: list[ReconciliationIssue] = []
    context = {"date_formats": config.import_date_formats}

    for row_index, raw in enumerate(rows):
        try:
            row = RawImportRow.model_validate(raw, context=context)
        except ValidationError as exc:
            issues.extend(_validation_issues(exc, row_index))
            continue

        if target_year is not None and row.request_date.year != target_year:
            issues.append(
                ReconciliationIssue(
                    category=IssueCategory.PARSE,
                    message=f"request_date {row.request_date.isoformat()} is outside {target_year}",
                    row_index=row_index,
                    field="request_date",
                )
            )
            continue

        outcome = resolve_member(
            first_name=row.first_name,
            last_name=row.last_name,
            pin_number=row.pin_number,
            roster=roster,
            config=config.member_match,
        )
        member = outcome.member
        candidates.append(
            CandidateRequest(
                candidate_id=f"row-{row_index}",
                row_index=row_index,
                first_name=row.first_name,
                last_name=row.last_name,
                pin_number=row.pin_number,
                calendar_id=calendar_id,
                request_date=row.request_date,
                leave_type=row.leave_type,
                status_intent=row.status,
                requested_at=row.resolved_requested_at(now),
                member_id=member.member_id if member else None,
                seniority=member.seniority if member else None,
                match_status=outcome.status,
                match_confidence=outcome.confidence,
                possible_member_ids=tuple(item.member_id for item in outcome.possible_matches),
            )
        )

    logger.info(
        "Import rows normalized | calendar_id=%s | candidates=%s | parse_issues=%s | unmatched=%s",
        calendar_id,
        len(candidates),
        len(issues),
        sum(1 for item in candidates if item.match_status == MatchStatus.UNMATCHED),
    )
    return NormalizationResult(candidates=tuple(candidates), issues=tuple(issues))


def normalize_existing_rows(
    rows: Iterable[Mapping[str, Any]],
) -> tuple[list[LeaveRequest], list[ReconciliationIssue]]:
    """Convert raw storage rows; a malformed row is reported and left out."""
    requests: list[LeaveRequest] = []
    issues: list[ReconciliationIssue] = []
    for row_index, raw in enumerate(rows):
        try:
            requests.append(StoredRequestRow.model_validate(raw).to_request())
        except ValidationError as exc:
            issues.extend(_validation_issues(exc, row_index))
    return requests, issues


def assign_member(candidate: CandidateRequest, member: Member) -> CandidateRequest:
    """Human resolution of an unmatched candidate."""
    return replace(
        candidate,
        member_id=member.member_id,
        seniority=member.seniority,
        match_status=MatchStatus.MATCHED,
        match_confidence=100,
        possible_member_ids=(),
    )


def skip_candidate(candidate: CandidateRequest) -> CandidateRequest:
    return replace(candidate, match_status=MatchStatus.SKIPPED)
