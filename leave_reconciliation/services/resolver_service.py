"""Over-allotment resolution: priority ordering, capacity adjustment and acceptance."""

from __future__ import annotations

from collections import Counter
from datetime import date
from typing import Iterable, Mapping, Optional, Sequence

from leave_reconciliation.domain.models import (
    AdjustmentMode,
    AllotmentAdjustment,
    CandidateRequest,
    DateAllotmentState,
    DateResolution,
    IssueCategory,
    PriorityPolicy,
    ReconciliationIssue,
)
from leave_reconciliation.utils.logger import get_logger


logger = get_logger(__name__)

KEEP = AllotmentAdjustment()


class ResolverValidationError(Exception):
    """Raised when resolver arguments are malformed."""


def priority_sort_key(candidate: CandidateRequest, policy: PriorityPolicy) -> tuple:
    if policy == PriorityPolicy.SENIORITY:
        return (
            candidate.seniority is None,
            candidate.seniority if candidate.seniority is not None else 0,
            candidate.requested_at,
            candidate.member_id or "",
            candidate.candidate_id,
        )
    if policy == PriorityPolicy.REQUESTED_AT:
        return (candidate.requested_at, candidate.member_id or "", candidate.candidate_id)
    raise ResolverValidationError(f"unsupported priority policy {policy!r}")


def order_candidates(
    candidates: Iterable[CandidateRequest],
    policy: PriorityPolicy,
) -> list[CandidateRequest]:
    """Default ordering: earliest request first, member id breaks ties."""
    return sorted(candidates, key=lambda candidate: priority_sort_key(candidate, policy))


def _date_issue(target_date: date, message: str) -> ReconciliationIssue:
    return ReconciliationIssue(
        category=IssueCategory.CAPACITY_VALIDATION,
        message=message,
        request_date=target_date,
    )


def validate_manual_order(
    target_date: date,
    expected_ids: Sequence[str],
    manual_order: Sequence[str],
) -> list[ReconciliationIssue]:
    """A manual ordering must be a permutation of the date's candidates."""
    issues: list[ReconciliationIssue] = []
    counts = Counter(manual_order)
    seen = set(counts)
    repeated = sorted(item for item, count in counts.items() if count > 1)
    if repeated:
        issues.append(_date_issue(target_date, f"manual order repeats {repeated}"))
    unknown = sorted(set(manual_order) - set(expected_ids))
    if unknown:
        issues.append(_date_issue(target_date, f"manual order names unknown candidates {unknown}"))
    missing = [item for item in expected_ids if item not in seen]
    if missing:
        issues.append(_date_issue(target_date, f"manual order omits candidates {missing}"))
    return issues


def effective_capacity(
    state: DateAllotmentState,
    adjustment: AllotmentAdjustment,
    incoming: int,
) -> tuple[int, list[ReconciliationIssue]]:
    """Apply the reviewer's allotment choice for one date."""
    if adjustment.mode == AdjustmentMode.KEEP:
        return state.capacity, []
    if adjustment.mode == AdjustmentMode.INCREASE_TO_FIT:
        return max(state.capacity, state.existing_demand + incoming), []
    if adjustment.mode == AdjustmentMode.CUSTOM:
        custom = adjustment.custom_capacity
        if custom is None or isinstance(custom, bool) or not isinstance(custom, int):
            return state.capacity, [_date_issue(state.request_date, "custom allotment must be an integer")]
        if custom < 0:
            return state.capacity, [_date_issue(state.request_date, "custom allotment must be >= 0")]
        if custom < state.existing_approved:
            return state.capacity, [
                _date_issue(
                    state.request_date,
                    f"custom allotment {custom} is below the {state.existing_approved} "
                    "requests already approved",
                )
            ]
        return custom, []
    raise ResolverValidationError(f"unsupported adjustment mode {adjustment.mode!r}")


def resolve_date(
    state: DateAllotmentState,
    candidates_by_id: Mapping[str, CandidateRequest],
    *,
    policy: PriorityPolicy,
    adjustment: AllotmentAdjustment = KEEP,
    manual_order: Optional[Sequence[str]] = None,
    rejected_ids: Iterable[str] = (),
) -> DateResolution:
    """Split one date's candidates into accepted and waitlisted, in priority order."""
    date_ids = list(state.candidate_ids)
    rejected_set = frozenset(rejected_ids)
    rejected = tuple(item for item in date_ids if item in rejected_set)
    remaining = [item for item in date_ids if item not in rejected]

    issues: list[ReconciliationIssue] = []
    if manual_order is not None:
        requested = [item for item in manual_order if item not in rejected]
        issues.extend(validate_manual_order(state.request_date, remaining, requested))
        ordered_ids = requested
    else:
        ordered_ids = [
            candidate.candidate_id
            for candidate in order_candidates(
                (candidates_by_id[item] for item in remaining),
                policy,
            )
        ]

    capacity, capacity_issues = effective_capacity(state, adjustment, len(remaining))
    issues.extend(capacity_issues)
    if issues:
        logger.warning(
            "Date excluded from batch | date=%s | issues=%s",
            state.request_date.isoformat(),
            [issue.message for issue in issues],
        )
        return DateResolution(
            request_date=state.request_date,
            capacity=capacity,
            adjustment=adjustment,
            rejected=rejected,
            issues=tuple(issues),
        )

    available = max(0, capacity - state.existing_demand)
    return DateResolution(
        request_date=state.request_date,
        capacity=capacity,
        adjustment=adjustment,
        accepted=tuple(ordered_ids[:available]),
        waitlisted=tuple(ordered_ids[available:]),
        rejected=rejected,
    )


def resolve_over_allotments(
    states: Sequence[DateAllotmentState],
    candidates: Sequence[CandidateRequest],
    *,
    policy: PriorityPolicy,
    adjustments: Mapping[date, AllotmentAdjustment] | None = None,
    manual_orders: Mapping[date, Sequence[str]] | None = None,
    rejected_ids: Iterable[str] = (),
) -> list[DateResolution]:
    """Resolve every date; overrides for one date never touch another."""
    adjustments = adjustments or {}
    manual_orders = manual_orders or {}
    rejected = frozenset(rejected_ids)
    known_dates = {state.request_date for state in states}
    stray = sorted((set(adjustments) | set(manual_orders)) - known_dates)
    if stray:
        logger.warning(
            "Overrides ignored for dates without candidates | dates=%s",
            [item.isoformat() for item in stray],
        )

    candidates_by_id = {candidate.candidate_id: candidate for candidate in candidates}
    resolutions = [
        resolve_date(
            state,
            candidates_by_id,
            policy=policy,
            adjustment=adjustments.get(state.request_date, KEEP),
            manual_order=manual_orders.get(state.request_date),
            rejected_ids=rejected,
        )
        for state in states
    ]
    logger.info(
        "Resolution completed | dates=%s | invalid_dates=%s | accepted=%s | waitlisted=%s",
        len(resolutions),
        sum(1 for item in resolutions if not item.is_valid),
        sum(len(item.accepted) for item in resolutions),
        sum(len(item.waitlisted) for item in resolutions),
    )
    return resolutions
