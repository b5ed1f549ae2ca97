"""Applies a final decision set to storage as an idempotent, per-date batch."""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Optional, Sequence

from leave_reconciliation.domain.models import (
    CAPACITY_STATUSES,
    INACTIVE_STATUSES,
    DateDecisions,
    Decision,
    DecisionSet,
    FinalDecision,
    IssueCategory,
    LeaveRequest,
    ReconciliationIssue,
    RequestStatus,
)
from leave_reconciliation.repository.data_repository import DataRepository, StorageError
from leave_reconciliation.services.waitlist_service import positions_are_contiguous
from leave_reconciliation.utils.config import Settings, get_settings
from leave_reconciliation.utils.logger import get_logger, get_run_logger


logger = get_logger(__name__)


class ItemStatus(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    NOT_APPLIED = "not_applied"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ItemOutcome:
    status: ItemStatus
    request_date: Optional[date] = None
    decision: Optional[Decision] = None
    member_id: Optional[str] = None
    request_id: Optional[int] = None
    candidate_id: Optional[str] = None
    previous_status: Optional[RequestStatus] = None
    issue: Optional[ReconciliationIssue] = None


@dataclass(frozen=True)
class NotificationEvent:
    """A status change the external notifier should tell the member about."""

    member_id: str
    request_id: Optional[int]
    request_date: date
    status: RequestStatus


_NOTIFY_STATUSES = {
    Decision.ACCEPTED: RequestStatus.APPROVED,
    Decision.WAITLISTED: RequestStatus.WAITLISTED,
    Decision.REJECTED: RequestStatus.DENIED,
}


@dataclass(frozen=True)
class ExecutionResult:
    outcomes: tuple[ItemOutcome, ...]
    cancelled: bool = False
    run_id: Optional[str] = None

    def count(self, status: ItemStatus) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def issues(self) -> tuple[ReconciliationIssue, ...]:
        return tuple(outcome.issue for outcome in self.outcomes if outcome.issue is not None)

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and self.count(ItemStatus.FAILED) == 0

    def notifications(self) -> list[NotificationEvent]:
        events: list[NotificationEvent] = []
        for outcome in self.outcomes:
            if outcome.status != ItemStatus.APPLIED or outcome.member_id is None:
                continue
            status = _NOTIFY_STATUSES.get(outcome.decision)
            if status is None or status == outcome.previous_status:
                continue
            events.append(
                NotificationEvent(
                    member_id=outcome.member_id,
                    request_id=outcome.request_id,
                    request_date=outcome.request_date,
                    status=status,
                )
            )
        return events


class _BatchAborted(Exception):
    """Internal signal that rolls back the open transaction for a date or a whole batch."""

    def __init__(self, outcome: ItemOutcome) -> None:
        super().__init__(outcome.issue.message if outcome.issue else "batch aborted")
        self.outcome = outcome


def _outcome(
    item: FinalDecision,
    status: ItemStatus,
    *,
    request_id: Optional[int] = None,
    issue: Optional[ReconciliationIssue] = None,
) -> ItemOutcome:
    return ItemOutcome(
        status=status,
        request_date=item.request.request_date,
        decision=item.decision,
        member_id=item.request.member_id,
        request_id=request_id if request_id is not None else item.request.request_id,
        candidate_id=item.candidate_id,
        previous_status=item.previous_status,
        issue=issue,
    )


def verify_projection(
    date_decisions: DateDecisions,
    stored: Sequence[LeaveRequest],
) -> Optional[str]:
    """Project the decisions onto the stored rows; return why they no longer fit."""
    active = [request for request in stored if request.is_active]
    projected: dict[int, tuple[RequestStatus, Optional[int]]] = {
        request.request_id: (request.status, request.waitlist_position) for request in active
    }
    id_by_key = {request.key: request.request_id for request in active}
    touched: set[int] = set()
    inserted: list[tuple[RequestStatus, Optional[int]]] = []

    for item in date_decisions.decisions:
        status = item.target_status
        request_id = item.request.request_id or id_by_key.get(item.request.key)
        if request_id is not None:
            touched.add(request_id)
            projected[request_id] = (status, item.position)
        elif status not in INACTIVE_STATUSES:
            inserted.append((status, item.position))

    rows = [*projected.values(), *inserted]
    approved = sum(1 for status, _ in rows if status in CAPACITY_STATUSES)
    stored_approved = sum(1 for request in active if request.holds_capacity)
    if approved > date_decisions.capacity and approved > stored_approved:
        return f"{approved} approved exceeds capacity {date_decisions.capacity}"

    positions = [position for status, position in rows if status == RequestStatus.WAITLISTED]
    if not positions_are_contiguous(positions):
        return f"waitlist positions {sorted(p or 0 for p in positions)} are not contiguous"

    expected = set(date_decisions.expected_waitlist_ids)
    unexpected = sorted(
        request.request_id
        for request in active
        if request.status == RequestStatus.WAITLISTED
        and request.request_id not in expected
        and request.request_id not in touched
    )
    if unexpected:
        return f"waitlist changed since review: new entries {unexpected}"
    return None


class BatchReconciliationExecutor:
    """Writes decision sets date by date with an optimistic re-check per date."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repository = repository or DataRepository(settings=self.settings)

    def execute(
        self,
        decision_set: DecisionSet,
        *,
        all_or_nothing: Optional[bool] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        run_logger = get_run_logger(__name__, decision_set.run_id or "-")
        if all_or_nothing is None:
            all_or_nothing = self.settings.commit_all_or_nothing
        outcomes: list[ItemOutcome] = [
            ItemOutcome(
                status=ItemStatus.SKIPPED,
                request_date=item.request_date,
                decision=Decision.SKIPPED,
                member_id=item.member_id,
                candidate_id=item.candidate_id,
            )
            for item in decision_set.skipped
        ]

        if all_or_nothing and cancel_event is not None and cancel_event.is_set():
            outcomes.extend(
                _outcome(item, ItemStatus.NOT_APPLIED)
                for date_decisions in decision_set.dates
                for item in date_decisions.decisions
            )
            cancelled = True
        elif all_or_nothing:
            outcomes.extend(self._execute_atomic(decision_set, run_logger))
            cancelled = False
        else:
            date_outcomes, cancelled = self._execute_per_date(decision_set, cancel_event, run_logger)
            outcomes.extend(date_outcomes)

        result = ExecutionResult(
            outcomes=tuple(outcomes),
            cancelled=cancelled,
            run_id=decision_set.run_id,
        )
        run_logger.info(
            "Batch executed | dates=%s | applied=%s | unchanged=%s | failed=%s | not_applied=%s | skipped=%s",
            len(decision_set.dates),
            result.count(ItemStatus.APPLIED),
            result.count(ItemStatus.UNCHANGED),
            result.count(ItemStatus.FAILED),
            result.count(ItemStatus.NOT_APPLIED),
            result.count(ItemStatus.SKIPPED),
        )
        return result

    def _execute_per_date(
        self,
        decision_set: DecisionSet,
        cancel_event: Optional[threading.Event],
        run_logger,
    ) -> tuple[list[ItemOutcome], bool]:
        outcomes: list[ItemOutcome] = []
        for index, date_decisions in enumerate(decision_set.dates):
            if cancel_event is not None and cancel_event.is_set():
                run_logger.warning(
                    "Batch cancelled | remaining_dates=%s",
                    len(decision_set.dates) - index,
                )
                for pending in decision_set.dates[index:]:
                    outcomes.extend(_outcome(item, ItemStatus.NOT_APPLIED) for item in pending.decisions)
                return outcomes, True
            try:
                with self.repository.transaction() as conn:
                    outcomes.extend(self._apply_date(conn, date_decisions, strict=False))
            except _BatchAborted as aborted:
                run_logger.error(
                    "Date rolled back | date=%s | reason=%s",
                    date_decisions.request_date.isoformat(),
                    aborted,
                )
                outcomes.extend(_rolled_back([date_decisions], aborted.outcome))
            except (sqlite3.Error, StorageError) as exc:
                run_logger.error(
                    "Date commit failed | date=%s | error=%s",
                    date_decisions.request_date.isoformat(),
                    exc,
                )
                outcomes.extend(
                    _outcome(
                        item,
                        ItemStatus.FAILED,
                        issue=ReconciliationIssue(
                            category=IssueCategory.STORAGE,
                            message=str(exc),
                            request_date=date_decisions.request_date,
                            candidate_id=item.candidate_id,
                            request_id=item.request.request_id,
                        ),
                    )
                    for item in date_decisions.decisions
                )
        return outcomes, False

    def _execute_atomic(self, decision_set: DecisionSet, run_logger) -> list[ItemOutcome]:
        outcomes: list[ItemOutcome] = []
        try:
            with self.repository.transaction() as conn:
                for date_decisions in decision_set.dates:
                    outcomes.extend(self._apply_date(conn, date_decisions, strict=True))
        except _BatchAborted as aborted:
            run_logger.warning("Batch rolled back | reason=%s", aborted)
            return _rolled_back(decision_set.dates, aborted.outcome)
        return outcomes

    def _apply_date(
        self,
        conn: sqlite3.Connection,
        date_decisions: DateDecisions,
        *,
        strict: bool,
    ) -> list[ItemOutcome]:
        stored = self.repository.list_requests(
            date_decisions.calendar_id,
            [date_decisions.request_date],
            connection=conn,
        )
        reason = verify_projection(date_decisions, stored)
        if reason is not None:
            logger.warning(
                "Stale date rejected | date=%s | reason=%s",
                date_decisions.request_date.isoformat(),
                reason,
            )
            failures = [
                _outcome(
                    item,
                    ItemStatus.FAILED,
                    issue=ReconciliationIssue(
                        category=IssueCategory.CONCURRENCY,
                        message=reason,
                        request_date=date_decisions.request_date,
                        candidate_id=item.candidate_id,
                        request_id=item.request.request_id,
                    ),
                )
                for item in date_decisions.decisions
            ]
            if strict and failures:
                raise _BatchAborted(failures[0])
            return failures

        if date_decisions.adjusted_capacity is not None:
            self.repository.set_daily_allotment(
                date_decisions.calendar_id,
                date_decisions.request_date,
                date_decisions.adjusted_capacity,
                connection=conn,
            )

        # Renumbering writes depend on each other; one failed item undoes its date.
        outcomes: list[ItemOutcome] = []
        for item in date_decisions.decisions:
            try:
                outcomes.append(self._apply_item(conn, item))
            except (sqlite3.Error, StorageError) as exc:
                logger.error(
                    "Item write failed | date=%s | member_id=%s | error=%s",
                    item.request.request_date.isoformat(),
                    item.request.member_id,
                    exc,
                )
                outcome = _outcome(
                    item,
                    ItemStatus.FAILED,
                    issue=ReconciliationIssue(
                        category=IssueCategory.STORAGE,
                        message=str(exc),
                        request_date=item.request.request_date,
                        candidate_id=item.candidate_id,
                        request_id=item.request.request_id,
                    ),
                )
                raise _BatchAborted(outcome) from exc
        return outcomes

    def _apply_item(self, conn: sqlite3.Connection, item: FinalDecision) -> ItemOutcome:
        target = item.request
        status = item.target_status
        current = self._current_row(conn, item)

        if current is None:
            request_id = self.repository.insert_request(target, connection=conn)
            return _outcome(item, ItemStatus.APPLIED, request_id=request_id)

        if current.status == status and current.waitlist_position == item.position:
            if item.candidate_id is None or current.requested_at == target.requested_at:
                return _outcome(item, ItemStatus.UNCHANGED, request_id=current.request_id)

        self.repository.update_request(
            current.request_id,
            status=status,
            waitlist_position=item.position,
            requested_at=target.requested_at if item.candidate_id is not None else None,
            responded_at=target.responded_at,
            connection=conn,
        )
        return _outcome(item, ItemStatus.APPLIED, request_id=current.request_id)

    def _current_row(self, conn: sqlite3.Connection, item: FinalDecision) -> Optional[LeaveRequest]:
        target = item.request
        if target.request_id is not None:
            current = self.repository.get_request(target.request_id, connection=conn)
            if current is None:
                raise StorageError(f"request_id={target.request_id} no longer exists")
            return current
        current = self.repository.find_active_request(target.key, connection=conn)
        if current is None and item.target_status == RequestStatus.DENIED and target.import_source:
            current = self.repository.find_imported_request(
                target.key,
                RequestStatus.DENIED,
                target.import_source,
                connection=conn,
            )
        return current


def outcome_matches(outcome: ItemOutcome, item: FinalDecision) -> bool:
    return (
        outcome.request_date == item.request.request_date
        and outcome.member_id == item.request.member_id
        and outcome.candidate_id == item.candidate_id
        and outcome.decision == item.decision
    )


def _rolled_back(dates: Sequence[DateDecisions], failed: ItemOutcome) -> list[ItemOutcome]:
    """Outcomes for dates whose writes were undone by `failed`."""
    return [
        failed if outcome_matches(failed, item) else _outcome(item, ItemStatus.NOT_APPLIED)
        for date_decisions in dates
        for item in date_decisions.decisions
    ]
