"""Duplicate detection between import candidates and stored requests."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, Sequence

from leave_reconciliation.domain.models import (
    CandidateRequest,
    DuplicateResolution,
    DuplicateStatus,
    IssueCategory,
    LeaveRequest,
    ReconciliationIssue,
    RequestKey,
)
from leave_reconciliation.utils.logger import get_logger


logger = get_logger(__name__)


class DuplicateResolutionError(Exception):
    """Raised when a resolution is applied to a candidate that is not a conflict."""


@dataclass(frozen=True)
class DuplicateReport:
    candidates: tuple[CandidateRequest, ...]
    skip_duplicates: frozenset[str]
    issues: tuple[ReconciliationIssue, ...]

    @property
    def superseded_request_ids(self) -> frozenset[int]:
        """Stored rows a candidate will overwrite; they leave existing demand."""
        return frozenset(
            candidate.target_request_id
            for candidate in self.candidates
            if candidate.participates and candidate.target_request_id is not None
        )


def index_active_requests(existing: Iterable[LeaveRequest]) -> dict[RequestKey, LeaveRequest]:
    index: dict[RequestKey, LeaveRequest] = {}
    for request in existing:
        if not request.is_active:
            continue
        current = index.get(request.key)
        # Storage should never hold two; keep the oldest so results stay stable.
        if current is None or (request.request_id or 0) < (current.request_id or 0):
            index[request.key] = request
    return index


def _apply_resolution(candidate: CandidateRequest, existing: LeaveRequest) -> CandidateRequest:
    resolution = candidate.duplicate_resolution
    if resolution == DuplicateResolution.KEEP_CANDIDATE:
        return replace(candidate, target_request_id=existing.request_id)
    if resolution == DuplicateResolution.MERGE:
        return replace(
            candidate,
            target_request_id=existing.request_id,
            requested_at=min(candidate.requested_at, existing.requested_at),
        )
    return replace(candidate, target_request_id=None)


def detect_duplicates(
    candidates: Sequence[CandidateRequest],
    existing: Iterable[LeaveRequest],
) -> DuplicateReport:
    """Classify each matched candidate as unique, exact or conflicting duplicate.

    Resolutions already recorded on a conflicting candidate are re-applied, so
    re-running detection after an upstream edit keeps the reviewer's choices
    wherever the conflict still exists.
    """
    active_by_key = index_active_requests(existing)
    first_candidate_by_key: dict[RequestKey, CandidateRequest] = {}
    annotated: list[CandidateRequest] = []
    skip: set[str] = set()
    issues: list[ReconciliationIssue] = []

    for candidate in candidates:
        key = candidate.key
        if not candidate.is_matched or key is None:
            annotated.append(
                replace(
                    candidate,
                    duplicate_status=DuplicateStatus.UNIQUE,
                    duplicate_of=None,
                    duplicate_of_candidate=None,
                    target_request_id=None,
                )
            )
            continue

        stored = active_by_key.get(key)
        if key in first_candidate_by_key:
            # Repeat inside the same batch: the first occurrence wins.
            result = replace(
                candidate,
                duplicate_status=DuplicateStatus.EXACT_DUPLICATE,
                duplicate_of=None,
                duplicate_of_candidate=first_candidate_by_key[key].candidate_id,
                duplicate_resolution=None,
                target_request_id=None,
            )
            skip.add(candidate.candidate_id)
        elif stored is not None:
            if stored.status == candidate.status_intent:
                result = replace(
                    candidate,
                    duplicate_status=DuplicateStatus.EXACT_DUPLICATE,
                    duplicate_of=stored.request_id,
                    duplicate_of_candidate=None,
                    duplicate_resolution=None,
                    target_request_id=None,
                )
                skip.add(candidate.candidate_id)
            else:
                result = _apply_resolution(
                    replace(
                        candidate,
                        duplicate_status=DuplicateStatus.CONFLICTING_DUPLICATE,
                        duplicate_of=stored.request_id,
                        duplicate_of_candidate=None,
                    ),
                    stored,
                )
                if result.needs_duplicate_resolution:
                    issues.append(
                        ReconciliationIssue(
                            category=IssueCategory.DUPLICATE_CONFLICT,
                            message=(
                                f"stored request {stored.request_id} is {stored.status.value}, "
                                f"import says {candidate.status_intent.value}"
                            ),
                            row_index=candidate.row_index,
                            candidate_id=candidate.candidate_id,
                            request_date=candidate.request_date,
                            request_id=stored.request_id,
                        )
                    )
                if not result.participates:
                    skip.add(candidate.candidate_id)
        else:
            result = replace(
                candidate,
                duplicate_status=DuplicateStatus.UNIQUE,
                duplicate_of=None,
                duplicate_of_candidate=None,
                duplicate_resolution=None,
                target_request_id=None,
            )

        first_candidate_by_key.setdefault(key, result)
        annotated.append(result)

    logger.info(
        "Duplicate detection completed | candidates=%s | skipped=%s | unresolved_conflicts=%s",
        len(annotated),
        len(skip),
        len(issues),
    )
    return DuplicateReport(
        candidates=tuple(annotated),
        skip_duplicates=frozenset(skip),
        issues=tuple(issues),
    )


def resolve_duplicate(
    candidate: CandidateRequest,
    resolution: DuplicateResolution,
) -> CandidateRequest:
    """Record a reviewer's choice; detection applies it on the next pass."""
    if candidate.duplicate_status != DuplicateStatus.CONFLICTING_DUPLICATE:
        raise DuplicateResolutionError(
            f"candidate {candidate.candidate_id} is {candidate.duplicate_status.value}, "
            "only conflicting duplicates take a resolution"
        )
    return replace(candidate, duplicate_resolution=DuplicateResolution(resolution))
