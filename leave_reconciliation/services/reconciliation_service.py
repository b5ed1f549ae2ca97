"""Reconciliation run state machine and the service that drives it against storage."""

from __future__ import annotations

import sqlite3
import threading
import uuid
from dataclasses import replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence

import pandas as pd

from leave_reconciliation.domain.constraints import ReconciliationConfig, build_reconciliation_config
from leave_reconciliation.domain.models import (
    AllotmentAdjustment,
    CandidateRequest,
    DateAllotmentState,
    DateResolution,
    DecisionSet,
    DuplicateResolution,
    Member,
    ReconciliationIssue,
    ReconciliationSnapshot,
    naive_utc,
)
from leave_reconciliation.repository.data_repository import DataRepository, StorageError
from leave_reconciliation.services.allotment_service import (
    allotment_review_frame,
    compute_allotment_states,
    resolve_capacity,
)
from leave_reconciliation.services.duplicate_service import (
    DuplicateReport,
    DuplicateResolutionError,
    detect_duplicates,
    resolve_duplicate,
)
from leave_reconciliation.services.executor_service import (
    BatchReconciliationExecutor,
    ExecutionResult,
)
from leave_reconciliation.services.normalizer_service import (
    NormalizationResult,
    assign_member,
    identity_issues,
    normalize_import_rows,
    skip_candidate,
)
from leave_reconciliation.services.resolver_service import resolve_over_allotments
from leave_reconciliation.services.waitlist_service import (
    WaitlistError,
    assign_positions,
    plan_cancellation,
    skipped_candidates,
)
from leave_reconciliation.utils.config import Settings, get_settings
from leave_reconciliation.utils.logger import get_logger, get_run_logger


logger = get_logger(__name__)


class ReconciliationValidationError(ValueError):
    """Raised when run configuration or reviewer input is malformed."""


class RunStateError(Exception):
    """Raised when an operation is not allowed in the run's current stage."""


class StageBlockedError(Exception):
    """Raised when a stage cannot be left while blocking issues remain."""

    def __init__(self, stage: "RunStage", issues: Sequence[ReconciliationIssue]) -> None:
        super().__init__(f"{stage.value} has {len(issues)} unresolved issue(s)")
        self.stage = stage
        self.issues = tuple(issues)


class RunStage(str, Enum):
    NORMALIZING = "normalizing"
    DUPLICATE_REVIEW = "duplicate_review"
    ALLOTMENT_REVIEW = "allotment_review"
    FINAL_REVIEW = "final_review"
    COMMITTING = "committing"
    DONE = "done"


_STAGE_ORDER = list(RunStage)
_EDITABLE_STAGES = frozenset(
    {
        RunStage.NORMALIZING,
        RunStage.DUPLICATE_REVIEW,
        RunStage.ALLOTMENT_REVIEW,
        RunStage.FINAL_REVIEW,
    }
)


class ReconciliationRun:
    """One import reconciled against one snapshot.

    Stages run in order. Every reviewer edit is recorded and sends the run
    back to the stage that owns it, discarding the output of later stages,
    so downstream results are always derived from the current edits.
    """

    def __init__(
        self,
        snapshot: ReconciliationSnapshot,
        normalization: NormalizationResult,
        config: ReconciliationConfig,
        *,
        run_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.snapshot = snapshot
        self.config = config
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.now = now or snapshot.captured_at
        self._log = get_run_logger(__name__, self.run_id)
        self._normalization = normalization
        self._members = {member.member_id: member for member in snapshot.members}

        self._member_assignments: dict[str, str] = {}
        self._skipped: set[str] = set()
        self._duplicate_resolutions: dict[str, DuplicateResolution] = {}
        self._adjustments: dict[date, AllotmentAdjustment] = {}
        self._manual_orders: dict[date, tuple[str, ...]] = {}
        self._rejected: set[str] = set()

        self._stage = RunStage.NORMALIZING
        self._candidates: tuple[CandidateRequest, ...] = ()
        self._duplicate_report: Optional[DuplicateReport] = None
        self._states: list[DateAllotmentState] = []
        self._resolutions: list[DateResolution] = []
        self._decision_set: Optional[DecisionSet] = None
        self.result: Optional[ExecutionResult] = None
        self._apply_identity_edits()
        self._log.info(
            "Run started | calendar_id=%s | candidates=%s | parse_issues=%s",
            snapshot.calendar.calendar_id,
            len(normalization.candidates),
            len(normalization.issues),
        )

    @classmethod
    def from_rows(
        cls,
        snapshot: ReconciliationSnapshot,
        rows: Iterable[Mapping[str, Any]],
        config: ReconciliationConfig,
        *,
        run_id: Optional[str] = None,
        now: Optional[datetime] = None,
        target_year: Optional[int] = None,
    ) -> "ReconciliationRun":
        now = now or snapshot.captured_at
        normalization = normalize_import_rows(
            rows,
            calendar_id=snapshot.calendar.calendar_id,
            roster=snapshot.members,
            config=config,
            now=now,
            target_year=target_year,
        )
        return cls(snapshot, normalization, config, run_id=run_id, now=now)

    # Read side

    @property
    def stage(self) -> RunStage:
        return self._stage

    @property
    def candidates(self) -> tuple[CandidateRequest, ...]:
        if self._duplicate_report is not None:
            return self._duplicate_report.candidates
        return self._candidates

    @property
    def parse_issues(self) -> tuple[ReconciliationIssue, ...]:
        return self._normalization.issues

    @property
    def blocking_issues(self) -> list[ReconciliationIssue]:
        if self._stage == RunStage.NORMALIZING:
            return identity_issues(self._candidates)
        if self._stage == RunStage.DUPLICATE_REVIEW and self._duplicate_report is not None:
            return list(self._duplicate_report.issues)
        return []

    @property
    def issues(self) -> list[ReconciliationIssue]:
        collected = [*self._normalization.issues, *identity_issues(self._candidates)]
        if self._duplicate_report is not None:
            collected.extend(self._duplicate_report.issues)
        for resolution in self._resolutions:
            collected.extend(resolution.issues)
        return collected

    @property
    def allotment_states(self) -> list[DateAllotmentState]:
        return list(self._states)

    @property
    def resolutions(self) -> list[DateResolution]:
        return list(self._resolutions)

    @property
    def decision_set(self) -> Optional[DecisionSet]:
        return self._decision_set

    def review_frame(self) -> pd.DataFrame:
        return allotment_review_frame(self._states)

    # Stage transitions

    def advance(self, exclude_unresolved: bool = False) -> RunStage:
        """Move to the next review stage.

        With `exclude_unresolved`, unmatched candidates are skipped and
        unresolved conflicts keep the stored row instead of blocking.
        """
        if self._stage == RunStage.NORMALIZING:
            blocking = identity_issues(self._candidates)
            if blocking and not exclude_unresolved:
                raise StageBlockedError(self._stage, blocking)
            for issue in blocking:
                self._skipped.add(issue.candidate_id)
            if blocking:
                self._log.info("Unmatched candidates skipped | count=%s", len(blocking))
                self._apply_identity_edits()
            self._detect_duplicates()
            self._set_stage(RunStage.DUPLICATE_REVIEW)
        elif self._stage == RunStage.DUPLICATE_REVIEW:
            self._detect_duplicates()
            blocking = list(self._duplicate_report.issues)
            if blocking and not exclude_unresolved:
                raise StageBlockedError(self._stage, blocking)
            for issue in blocking:
                self._duplicate_resolutions[issue.candidate_id] = DuplicateResolution.KEEP_DATABASE
            if blocking:
                self._log.info("Unresolved conflicts kept as stored | count=%s", len(blocking))
                self._detect_duplicates()
            self._compute_states()
            self._set_stage(RunStage.ALLOTMENT_REVIEW)
        elif self._stage == RunStage.ALLOTMENT_REVIEW:
            self._build_decisions()
            self._set_stage(RunStage.FINAL_REVIEW)
        elif self._stage == RunStage.FINAL_REVIEW:
            raise RunStateError("final review is left by committing the run")
        else:
            raise RunStateError(f"run is {self._stage.value}")
        return self._stage

    def advance_to_final_review(self, exclude_unresolved: bool = False) -> DecisionSet:
        while self._stage != RunStage.FINAL_REVIEW:
            self.advance(exclude_unresolved=exclude_unresolved)
        return self._decision_set

    def begin_commit(self) -> DecisionSet:
        self._require_stage(RunStage.FINAL_REVIEW)
        self._set_stage(RunStage.COMMITTING)
        return self._decision_set

    def abort_commit(self) -> None:
        self._require_stage(RunStage.COMMITTING)
        self._set_stage(RunStage.FINAL_REVIEW)

    def finish(self, result: ExecutionResult) -> None:
        self._require_stage(RunStage.COMMITTING)
        self.result = result
        self._set_stage(RunStage.DONE)

    # Reviewer edits

    def resolve_member(self, candidate_id: str, member_id: str) -> None:
        self._require_editable(RunStage.NORMALIZING)
        self._base_candidate(candidate_id)
        if member_id not in self._members:
            raise ReconciliationValidationError(f"member {member_id} is not on the roster")
        self._member_assignments[candidate_id] = member_id
        self._skipped.discard(candidate_id)
        self._rewind(RunStage.NORMALIZING)

    def skip_candidate(self, candidate_id: str) -> None:
        self._require_editable(RunStage.NORMALIZING)
        self._base_candidate(candidate_id)
        self._member_assignments.pop(candidate_id, None)
        self._skipped.add(candidate_id)
        self._rewind(RunStage.NORMALIZING)

    def resolve_duplicate(self, candidate_id: str, resolution: DuplicateResolution) -> None:
        self._require_editable(RunStage.DUPLICATE_REVIEW)
        candidate = self._current_candidate(candidate_id)
        try:
            resolve_duplicate(candidate, resolution)
        except (DuplicateResolutionError, ValueError) as exc:
            raise ReconciliationValidationError(str(exc)) from exc
        self._duplicate_resolutions[candidate_id] = DuplicateResolution(resolution)
        self._rewind(RunStage.DUPLICATE_REVIEW)
        self._detect_duplicates()

    def set_adjustment(self, target_date: date, adjustment: AllotmentAdjustment) -> None:
        self._require_editable(RunStage.ALLOTMENT_REVIEW)
        self._adjustments[target_date] = adjustment
        self._rewind(RunStage.ALLOTMENT_REVIEW)

    def set_manual_order(self, target_date: date, candidate_ids: Optional[Sequence[str]]) -> None:
        """Replace the default ordering for one date; None restores it."""
        self._require_editable(RunStage.ALLOTMENT_REVIEW)
        if candidate_ids is None:
            self._manual_orders.pop(target_date, None)
        else:
            self._manual_orders[target_date] = tuple(candidate_ids)
        self._rewind(RunStage.ALLOTMENT_REVIEW)

    def reject_candidate(self, candidate_id: str, rejected: bool = True) -> None:
        self._require_editable(RunStage.ALLOTMENT_REVIEW)
        self._current_candidate(candidate_id)
        if rejected:
            self._rejected.add(candidate_id)
        else:
            self._rejected.discard(candidate_id)
        self._rewind(RunStage.ALLOTMENT_REVIEW)

    def rebase(self, snapshot: ReconciliationSnapshot) -> "ReconciliationRun":
        """A fresh run over a newer snapshot carrying every recorded edit."""
        run = ReconciliationRun(
            snapshot,
            self._normalization,
            self.config,
            now=self.now,
        )
        run._member_assignments = {
            candidate_id: member_id
            for candidate_id, member_id in self._member_assignments.items()
            if member_id in run._members
        }
        run._skipped = set(self._skipped)
        run._duplicate_resolutions = dict(self._duplicate_resolutions)
        run._adjustments = dict(self._adjustments)
        run._manual_orders = dict(self._manual_orders)
        run._rejected = set(self._rejected)
        run._apply_identity_edits()
        return run

    # Internals

    def _set_stage(self, stage: RunStage) -> None:
        if stage != self._stage:
            self._log.info("Stage changed | from=%s | to=%s", self._stage.value, stage.value)
        self._stage = stage

    def _require_stage(self, stage: RunStage) -> None:
        if self._stage != stage:
            raise RunStateError(f"run is {self._stage.value}, expected {stage.value}")

    def _require_editable(self, owner: RunStage) -> None:
        if self._stage not in _EDITABLE_STAGES:
            raise RunStateError(f"run is {self._stage.value} and can no longer be edited")
        if _STAGE_ORDER.index(self._stage) < _STAGE_ORDER.index(owner):
            raise RunStateError(f"{owner.value} edits are not available during {self._stage.value}")

    def _rewind(self, stage: RunStage) -> None:
        """Discard everything computed after `stage`."""
        if _STAGE_ORDER.index(stage) <= _STAGE_ORDER.index(RunStage.NORMALIZING):
            self._apply_identity_edits()
            self._duplicate_report = None
        if _STAGE_ORDER.index(stage) <= _STAGE_ORDER.index(RunStage.DUPLICATE_REVIEW):
            self._states = []
        self._resolutions = []
        self._decision_set = None
        if _STAGE_ORDER.index(stage) < _STAGE_ORDER.index(self._stage):
            self._set_stage(stage)

    def _base_candidate(self, candidate_id: str) -> CandidateRequest:
        for candidate in self._normalization.candidates:
            if candidate.candidate_id == candidate_id:
                return candidate
        raise ReconciliationValidationError(f"unknown candidate {candidate_id}")

    def _current_candidate(self, candidate_id: str) -> CandidateRequest:
        for candidate in self.candidates:
            if candidate.candidate_id == candidate_id:
                return candidate
        raise ReconciliationValidationError(f"unknown candidate {candidate_id}")

    def _apply_identity_edits(self) -> None:
        candidates: list[CandidateRequest] = []
        for candidate in self._normalization.candidates:
            member_id = self._member_assignments.get(candidate.candidate_id)
            if member_id is not None:
                candidate = assign_member(candidate, self._members[member_id])
            elif candidate.candidate_id in self._skipped:
                candidate = skip_candidate(candidate)
            candidates.append(candidate)
        self._candidates = tuple(candidates)

    def _detect_duplicates(self) -> None:
        prepared = [
            replace(
                candidate,
                duplicate_resolution=self._duplicate_resolutions.get(candidate.candidate_id),
            )
            for candidate in self._candidates
        ]
        self._duplicate_report = detect_duplicates(prepared, self.snapshot.existing_requests)

    def _compute_states(self) -> None:
        self._states = compute_allotment_states(
            calendar_id=self.snapshot.calendar.calendar_id,
            candidates=self._duplicate_report.candidates,
            existing=self.snapshot.existing_requests,
            rules=self.snapshot.allotment_rules,
            superseded_request_ids=self._duplicate_report.superseded_request_ids,
            extra_dates=self.snapshot.extra_dates,
        )

    def _build_decisions(self) -> None:
        candidates = self._duplicate_report.candidates
        self._resolutions = resolve_over_allotments(
            self._states,
            [candidate for candidate in candidates if candidate.participates],
            policy=self.config.priority_policy,
            adjustments=self._adjustments,
            manual_orders=self._manual_orders,
            rejected_ids=self._rejected,
        )
        planned, self._states = assign_positions(
            self._states,
            self._resolutions,
            candidates,
            self.snapshot.existing_requests,
            superseded_request_ids=self._duplicate_report.superseded_request_ids,
            import_source=self.config.import_source_tag,
            now=self.now,
        )
        excluded_dates = [
            resolution.request_date for resolution in self._resolutions if not resolution.is_valid
        ]
        self._decision_set = DecisionSet(
            calendar_id=self.snapshot.calendar.calendar_id,
            dates=tuple(planned),
            skipped=tuple(skipped_candidates(candidates, excluded_dates)),
            issues=tuple(self.issues),
            run_id=self.run_id,
        )
        self._log.info(
            "Decisions built | dates=%s | writes=%s | skipped=%s | excluded_dates=%s",
            len(planned),
            self._decision_set.write_count,
            len(self._decision_set.skipped),
            len(excluded_dates),
        )


class ReconciliationService:
    """Loads snapshots, drives runs and hands final decisions to the executor."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        executor: Optional[BatchReconciliationExecutor] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repository = repository or DataRepository(settings=self.settings)
        self.executor = executor or BatchReconciliationExecutor(
            repository=self.repository,
            settings=self.settings,
        )

    def build_config(self, **overrides) -> ReconciliationConfig:
        try:
            return build_reconciliation_config(self.settings, **overrides)
        except ValueError as exc:
            raise ReconciliationValidationError(str(exc)) from exc

    def _load_roster(self, calendar_id: str, division_id: Optional[int]):
        try:
            calendar = self.repository.get_calendar(calendar_id)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read calendar {calendar_id}: {exc}") from exc
        if calendar is None:
            raise ReconciliationValidationError(f"calendar {calendar_id} does not exist")
        if not calendar.is_active:
            raise ReconciliationValidationError(f"calendar {calendar_id} is inactive")
        scope = division_id if division_id is not None else calendar.division_id
        try:
            members = self.repository.list_members(division_id=scope)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read member roster: {exc}") from exc
        return calendar, members, scope

    def load_snapshot(
        self,
        calendar_id: str,
        dates: Iterable[date],
        *,
        division_id: Optional[int] = None,
        extra_dates: Iterable[date] = (),
        now: Optional[datetime] = None,
        members: Optional[Sequence[Member]] = None,
    ) -> ReconciliationSnapshot:
        """Read everything a run needs for the given dates in one pass."""
        calendar, roster, scope = self._load_roster(calendar_id, division_id)
        extra = tuple(sorted(set(extra_dates)))
        all_dates = sorted(set(dates) | set(extra))
        try:
            existing = self.repository.list_requests(calendar_id, all_dates)
            rules = self.repository.list_allotment_rules(calendar_id, all_dates)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot load snapshot for {calendar_id}: {exc}") from exc
        logger.info(
            "Snapshot loaded | calendar_id=%s | dates=%s | existing=%s | rules=%s | members=%s",
            calendar_id,
            len(all_dates),
            len(existing),
            len(rules),
            len(roster),
        )
        return ReconciliationSnapshot(
            calendar=calendar,
            members=tuple(members if members is not None else roster),
            existing_requests=tuple(existing),
            allotment_rules=tuple(rules),
            captured_at=now or datetime.now(),
            division_id=scope,
            extra_dates=extra,
        )

    def start_run(
        self,
        calendar_id: str,
        rows: Iterable[Mapping[str, Any]],
        *,
        division_id: Optional[int] = None,
        target_year: Optional[int] = None,
        extra_dates: Iterable[date] = (),
        now: Optional[datetime] = None,
        **config_overrides,
    ) -> ReconciliationRun:
        config = self.build_config(**config_overrides)
        now = naive_utc(now or datetime.now())
        _, roster, scope = self._load_roster(calendar_id, division_id)
        normalization = normalize_import_rows(
            rows,
            calendar_id=calendar_id,
            roster=roster,
            config=config,
            now=now,
            target_year=target_year,
        )
        snapshot = self.load_snapshot(
            calendar_id,
            [candidate.request_date for candidate in normalization.candidates],
            division_id=scope,
            extra_dates=extra_dates,
            now=now,
            members=roster,
        )
        return ReconciliationRun(snapshot, normalization, config, now=now)

    def refresh(self, run: ReconciliationRun) -> ReconciliationRun:
        """Re-read storage and rebuild the run on the fresh snapshot."""
        if run.stage in (RunStage.COMMITTING, RunStage.DONE):
            raise RunStateError(f"run is {run.stage.value}")
        snapshot = self.load_snapshot(
            run.snapshot.calendar.calendar_id,
            [candidate.request_date for candidate in run.candidates],
            division_id=run.snapshot.division_id,
            extra_dates=run.snapshot.extra_dates,
        )
        return run.rebase(snapshot)

    def commit(
        self,
        run: ReconciliationRun,
        *,
        all_or_nothing: Optional[bool] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        decision_set = run.begin_commit()
        if all_or_nothing is None:
            all_or_nothing = run.config.all_or_nothing
        try:
            result = self.executor.execute(
                decision_set,
                all_or_nothing=all_or_nothing,
                cancel_event=cancel_event,
            )
        except StorageError:
            run.abort_commit()
            raise
        run.finish(result)
        return result

    def cancel_request(self, request_id: int, *, now: Optional[datetime] = None) -> ExecutionResult:
        """Cancel a stored request and promote from the waitlist into the freed slot."""
        now = naive_utc(now or datetime.now())
        try:
            target = self.repository.get_request(request_id)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot read request {request_id}: {exc}") from exc
        if target is None:
            raise ReconciliationValidationError(f"request_id={request_id} does not exist")
        try:
            existing = self.repository.list_requests(target.calendar_id, [target.request_date])
            rules = self.repository.list_allotment_rules(target.calendar_id, [target.request_date])
        except sqlite3.Error as exc:
            raise StorageError(
                f"Cannot load {target.request_date.isoformat()} for request {request_id}: {exc}"
            ) from exc
        capacity, _ = resolve_capacity(target.calendar_id, target.request_date, rules)
        try:
            planned = plan_cancellation(request_id, capacity, existing, now=now)
        except WaitlistError as exc:
            raise ReconciliationValidationError(str(exc)) from exc
        return self.executor.execute(
            DecisionSet(calendar_id=target.calendar_id, dates=(planned,)),
            all_or_nothing=True,
        )

