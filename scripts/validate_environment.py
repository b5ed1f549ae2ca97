#!/usr/bin/env python3
"""Validate local leave-reconciliation environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import date, datetime
from importlib.metadata import version
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from leave_reconciliation.domain.models import Calendar, LeaveType, Member, RequestStatus
from leave_reconciliation.repository.data_repository import DataRepository
from leave_reconciliation.services.reconciliation_service import ReconciliationService
from leave_reconciliation.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def _seed(repository: DataRepository, target_date: date) -> None:
    repository.create_calendar(Calendar(calendar_id="check-cal", name="Check", division_id=1))
    for index, (first, last) in enumerate(
        [("Ada", "Lovelace"), ("Grace", "Hopper"), ("Alan", "Turing")],
        start=1,
    ):
        repository.create_member(
            Member(
                member_id=f"m-{index}",
                first_name=first,
                last_name=last,
                pin_number=1000 + index,
                division_id=1,
                seniority=index,
            )
        )
    repository.set_yearly_allotment("check-cal", target_date.year, 1)


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="leave-recon-env-")

    # CHECK 1: Python version >= 3.11
    if sys.version_info >= (3, 11):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.11",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable with versions
    package_specs = [
        ("pydantic", "pydantic"),
        ("pandas", "pandas"),
        ("pytest", "pytest"),
    ]
    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except Exception as exc:  # pragma: no cover - runtime guard
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        settings = replace(get_settings(), database_path=Path(temp_dir) / "validation.db")
        repository = DataRepository(settings)
        target_date = date(datetime.now().year, 6, 1)

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            _seed(repository, target_date)
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Smoke reconciliation, capacity 1 and two incoming requests
        try:
            service = ReconciliationService(repository=repository, settings=settings)
            run = service.start_run(
                "check-cal",
                [
                    {"pin": 1001, "date": target_date.isoformat(), "type": "PLD",
                     "requested_at": "2024-01-01T08:00:00"},
                    {"first_name": "Grace", "last_name": "Hopper", "date": target_date.isoformat(),
                     "type": LeaveType.SDV.value, "requested_at": "2024-01-01T09:00:00"},
                ],
            )
            run.advance_to_final_review()
            result = service.commit(run)
            approved = repository.count_requests([RequestStatus.APPROVED])
            waitlisted = repository.count_requests([RequestStatus.WAITLISTED])
            if not result.succeeded or (approved, waitlisted) != (1, 1):
                raise RuntimeError(f"expected 1 approved and 1 waitlisted, got {approved} and {waitlisted}")
            ok, line = _print_result(
                "Smoke reconciliation",
                True,
                f": approved={approved} waitlisted={waitlisted}",
            )
        except Exception as exc:
            ok, line = _print_result("Smoke reconciliation", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Leave Reconciliation Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
