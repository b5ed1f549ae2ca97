"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
from contextlib import closing, contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from leave_reconciliation.domain.models import (
    INACTIVE_STATUSES,
    AllotmentRule,
    AllotmentSource,
    Calendar,
    LeaveRequest,
    LeaveType,
    Member,
    RequestKey,
    RequestSource,
    RequestStatus,
    naive_utc,
)
from leave_reconciliation.utils.config import Settings, get_settings
from leave_reconciliation.utils.logger import get_logger


logger = get_logger(__name__)

_INACTIVE_SQL = ", ".join(f"'{status.value}'" for status in sorted(INACTIVE_STATUSES))


class StorageError(Exception):
    """Raised when the backing store cannot be read or written."""


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return naive_utc(datetime.fromisoformat(str(value)))


def _row_to_request(row: sqlite3.Row) -> LeaveRequest:
    position = row["waitlist_position"]
    return LeaveRequest(
        request_id=int(row["id"]),
        member_id=str(row["member_id"]),
        calendar_id=str(row["calendar_id"]),
        request_date=date.fromisoformat(str(row["request_date"])),
        leave_type=LeaveType(str(row["leave_type"])),
        status=RequestStatus(str(row["status"])),
        waitlist_position=int(position) if position is not None else None,
        requested_at=_parse_datetime(row["requested_at"]),
        responded_at=_parse_datetime(row["responded_at"]),
        source=RequestSource.DATABASE,
        import_source=row["import_source"],
    )


class DataRepository:
    """Encapsulates SQLite access so the reconciliation engine stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(self._db_path, isolation_level=None)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open database {self._db_path}: {exc}") from exc
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _reader(self, connection: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        if connection is not None:
            yield connection
            return
        with closing(self._connect()) as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction; commits on success, rolls back on error.

        `BEGIN IMMEDIATE` takes the write lock up front so two runs committing
        the same dates serialise, and each sees the other's committed rows.
        """
        with closing(self._connect()) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot begin transaction: {exc}") from exc
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            else:
                conn.execute("COMMIT;")

    def initialize_database(self) -> None:
        """Create all persistence artifacts before the first run."""
        try:
            with closing(self._connect()) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Members (
                        id TEXT PRIMARY KEY,
                        pin_number INTEGER UNIQUE,
                        first_name TEXT NOT NULL,
                        last_name TEXT NOT NULL,
                        division_id INTEGER,
                        zone_id INTEGER,
                        seniority INTEGER
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Calendars (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0,1)),
                        division_id INTEGER,
                        zone_id INTEGER
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Allotments (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        calendar_id TEXT NOT NULL,
                        date TEXT,
                        year INTEGER,
                        max_allotment INTEGER NOT NULL CHECK (max_allotment >= 0),
                        CHECK ((date IS NULL) <> (year IS NULL)),
                        FOREIGN KEY (calendar_id) REFERENCES Calendars(id)
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS LeaveRequests (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        member_id TEXT NOT NULL,
                        calendar_id TEXT NOT NULL,
                        request_date TEXT NOT NULL,
                        leave_type TEXT NOT NULL CHECK (leave_type IN ('PLD','SDV')),
                        status TEXT NOT NULL DEFAULT 'pending',
                        waitlist_position INTEGER CHECK (waitlist_position IS NULL OR waitlist_position >= 1),
                        requested_at TEXT NOT NULL,
                        responded_at TEXT,
                        import_source TEXT,
                        imported_at TEXT,
                        FOREIGN KEY (member_id) REFERENCES Members(id),
                        FOREIGN KEY (calendar_id) REFERENCES Calendars(id)
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_allotments_daily
                    ON Allotments(calendar_id, date) WHERE date IS NOT NULL;
                    """
                )
                cursor.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_allotments_yearly
                    ON Allotments(calendar_id, year) WHERE year IS NOT NULL;
                    """
                )
                cursor.execute(
                    f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_requests_one_active
                    ON LeaveRequests(member_id, calendar_id, request_date, leave_type)
                    WHERE status NOT IN ({_INACTIVE_SQL});
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_requests_calendar_date_status
                    ON LeaveRequests(calendar_id, request_date, status);
                    """
                )
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"Database initialization failed: {exc}") from exc

    def create_member(self, member: Member) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                """
                INSERT INTO Members (id, pin_number, first_name, last_name, division_id, zone_id, seniority)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    member.member_id,
                    member.pin_number,
                    member.first_name,
                    member.last_name,
                    member.division_id,
                    member.zone_id,
                    member.seniority,
                ),
            )

    def create_calendar(self, calendar: Calendar) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                """
                INSERT INTO Calendars (id, name, is_active, division_id, zone_id)
                VALUES (?, ?, ?, ?, ?);
                """,
                (
                    calendar.calendar_id,
                    calendar.name,
                    1 if calendar.is_active else 0,
                    calendar.division_id,
                    calendar.zone_id,
                ),
            )

    def set_daily_allotment(
        self,
        calendar_id: str,
        target_date: date,
        max_allotment: int,
        connection: Optional[sqlite3.Connection] = None,
    ) -> None:
        """Store or replace a daily override."""
        with self._reader(connection) as conn:
            conn.execute(
                """
                INSERT INTO Allotments (calendar_id, date, max_allotment)
                VALUES (?, ?, ?)
                ON CONFLICT (calendar_id, date) WHERE date IS NOT NULL
                DO UPDATE SET max_allotment = excluded.max_allotment;
                """,
                (calendar_id, target_date.isoformat(), max_allotment),
            )

    def set_yearly_allotment(self, calendar_id: str, year: int, max_allotment: int) -> None:
        """Administrator action: store or replace the yearly default."""
        with closing(self._connect()) as conn:
            conn.execute(
                """
                INSERT INTO Allotments (calendar_id, year, max_allotment)
                VALUES (?, ?, ?)
                ON CONFLICT (calendar_id, year) WHERE year IS NOT NULL
                DO UPDATE SET max_allotment = excluded.max_allotment;
                """,
                (calendar_id, year, max_allotment),
            )

    def get_calendar(self, calendar_id: str) -> Optional[Calendar]:
        with self._reader() as conn:
            row = conn.execute(
                "SELECT id, name, is_active, division_id, zone_id FROM Calendars WHERE id = ?;",
                (calendar_id,),
            ).fetchone()
        if row is None:
            return None
        return Calendar(
            calendar_id=str(row["id"]),
            name=str(row["name"]),
            is_active=bool(row["is_active"]),
            division_id=row["division_id"],
            zone_id=row["zone_id"],
        )

    def list_members(self, division_id: Optional[int] = None) -> list[Member]:
        """Return the eligible roster, optionally scoped to one division."""
        query = """
            SELECT id, pin_number, first_name, last_name, division_id, zone_id, seniority
            FROM Members
        """
        params: tuple = ()
        if division_id is not None:
            query += " WHERE division_id = ?"
            params = (division_id,)
        query += " ORDER BY id ASC;"
        with self._reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            Member(
                member_id=str(row["id"]),
                pin_number=row["pin_number"],
                first_name=str(row["first_name"]),
                last_name=str(row["last_name"]),
                division_id=row["division_id"],
                zone_id=row["zone_id"],
                seniority=row["seniority"],
            )
            for row in rows
        ]

    def list_requests(
        self,
        calendar_id: str,
        dates: Sequence[date],
        connection: Optional[sqlite3.Connection] = None,
    ) -> list[LeaveRequest]:
        """Return every stored request (any status) for the calendar on the given dates."""
        if not dates:
            return []
        iso_dates = sorted({item.isoformat() for item in dates})
        placeholders = ",".join("?" for _ in iso_dates)
        with self._reader(connection) as conn:
            rows = conn.execute(
                f"""
                SELECT id, member_id, calendar_id, request_date, leave_type, status,
                       waitlist_position, requested_at, responded_at, import_source
                FROM LeaveRequests
                WHERE calendar_id = ?
                  AND request_date IN ({placeholders})
                ORDER BY request_date ASC, id ASC;
                """,
                (calendar_id, *iso_dates),
            ).fetchall()
        return [_row_to_request(row) for row in rows]

    def list_allotment_rules(self, calendar_id: str, dates: Sequence[date]) -> list[AllotmentRule]:
        """Return daily overrides for the dates and yearly defaults for their years."""
        if not dates:
            return []
        iso_dates = sorted({item.isoformat() for item in dates})
        years = sorted({item.year for item in dates})
        date_placeholders = ",".join("?" for _ in iso_dates)
        year_placeholders = ",".join("?" for _ in years)
        with self._reader() as conn:
            rows = conn.execute(
                f"""
                SELECT calendar_id, date, year, max_allotment
                FROM Allotments
                WHERE calendar_id = ?
                  AND (date IN ({date_placeholders}) OR year IN ({year_placeholders}))
                ORDER BY date ASC, year ASC;
                """,
                (calendar_id, *iso_dates, *years),
            ).fetchall()
        rules: list[AllotmentRule] = []
        for row in rows:
            if row["date"] is not None:
                rules.append(
                    AllotmentRule(
                        calendar_id=str(row["calendar_id"]),
                        max_allotment=int(row["max_allotment"]),
                        source=AllotmentSource.DAILY_OVERRIDE,
                        date=date.fromisoformat(str(row["date"])),
                    )
                )
            else:
                rules.append(
                    AllotmentRule(
                        calendar_id=str(row["calendar_id"]),
                        max_allotment=int(row["max_allotment"]),
                        source=AllotmentSource.YEARLY_DEFAULT,
                        year=int(row["year"]),
                    )
                )
        return rules

    def get_request(
        self,
        request_id: int,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[LeaveRequest]:
        with self._reader(connection) as conn:
            row = conn.execute(
                """
                SELECT id, member_id, calendar_id, request_date, leave_type, status,
                       waitlist_position, requested_at, responded_at, import_source
                FROM LeaveRequests WHERE id = ?;
                """,
                (request_id,),
            ).fetchone()
        return _row_to_request(row) if row is not None else None

    def find_active_request(
        self,
        key: RequestKey,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[LeaveRequest]:
        with self._reader(connection) as conn:
            row = conn.execute(
                f"""
                SELECT id, member_id, calendar_id, request_date, leave_type, status,
                       waitlist_position, requested_at, responded_at, import_source
                FROM LeaveRequests
                WHERE member_id = ? AND calendar_id = ? AND request_date = ? AND leave_type = ?
                  AND status NOT IN ({_INACTIVE_SQL});
                """,
                (
                    key.member_id,
                    key.calendar_id,
                    key.request_date.isoformat(),
                    key.leave_type.value,
                ),
            ).fetchone()
        return _row_to_request(row) if row is not None else None

    def find_imported_request(
        self,
        key: RequestKey,
        status: RequestStatus,
        import_source: str,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[LeaveRequest]:
        """Latest row written by an import with this identity and status."""
        with self._reader(connection) as conn:
            row = conn.execute(
                """
                SELECT id, member_id, calendar_id, request_date, leave_type, status,
                       waitlist_position, requested_at, responded_at, import_source
                FROM LeaveRequests
                WHERE member_id = ? AND calendar_id = ? AND request_date = ? AND leave_type = ?
                  AND status = ? AND import_source = ?
                ORDER BY id DESC
                LIMIT 1;
                """,
                (
                    key.member_id,
                    key.calendar_id,
                    key.request_date.isoformat(),
                    key.leave_type.value,
                    status.value,
                    import_source,
                ),
            ).fetchone()
        return _row_to_request(row) if row is not None else None

    def insert_request(
        self,
        request: LeaveRequest,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Insert a request row and return the created id."""
        with self._reader(connection) as conn:
            cursor = conn.execute(
                """
                INSERT INTO LeaveRequests (
                    member_id, calendar_id, request_date, leave_type, status,
                    waitlist_position, requested_at, responded_at, import_source, imported_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    request.member_id,
                    request.calendar_id,
                    request.request_date.isoformat(),
                    request.leave_type.value,
                    request.status.value,
                    request.waitlist_position,
                    request.requested_at.isoformat(),
                    request.responded_at.isoformat() if request.responded_at else None,
                    request.import_source,
                    datetime.now().isoformat() if request.import_source else None,
                ),
            )
            return int(cursor.lastrowid)

    def update_request(
        self,
        request_id: int,
        *,
        status: RequestStatus,
        waitlist_position: Optional[int],
        requested_at: Optional[datetime] = None,
        responded_at: Optional[datetime] = None,
        connection: Optional[sqlite3.Connection] = None,
    ) -> None:
        with self._reader(connection) as conn:
            cursor = conn.execute(
                """
                UPDATE LeaveRequests
                SET status = ?,
                    waitlist_position = ?,
                    requested_at = COALESCE(?, requested_at),
                    responded_at = COALESCE(?, responded_at)
                WHERE id = ?;
                """,
                (
                    status.value,
                    waitlist_position,
                    requested_at.isoformat() if requested_at else None,
                    responded_at.isoformat() if responded_at else None,
                    request_id,
                ),
            )
            if cursor.rowcount != 1:
                raise StorageError(f"request_id={request_id} no longer exists")

    def create_request(self, request: LeaveRequest) -> int:
        """Seed helper: insert a request outside any reconciliation run."""
        try:
            return self.insert_request(request)
        except sqlite3.Error as exc:
            raise StorageError(f"Request insert failed: {exc}") from exc

    def count_requests(self, statuses: Optional[Iterable[RequestStatus]] = None) -> int:
        """Return persisted request count for diagnostics and tests."""
        query = "SELECT COUNT(*) AS count FROM LeaveRequests"
        params: tuple = ()
        if statuses is not None:
            values = tuple(status.value for status in statuses)
            query += f" WHERE status IN ({','.join('?' for _ in values)})"
            params = values
        with self._reader() as conn:
            return int(conn.execute(query + ";", params).fetchone()["count"])

    def dump_requests(self) -> list[LeaveRequest]:
        """Return every stored request in id order, for diagnostics and tests."""
        with self._reader() as conn:
            rows = conn.execute(
                """
                SELECT id, member_id, calendar_id, request_date, leave_type, status,
                       waitlist_position, requested_at, responded_at, import_source
                FROM LeaveRequests ORDER BY id ASC;
                """
            ).fetchall()
        return [_row_to_request(row) for row in rows]
