"""Transactional SQLite store for projects, studies, decisions and conflicts.

The store owns every uniqueness rule the engine depends on:

* one decision per (study, reviewer, phase),
* at most one open conflict per (study, phase) via a partial unique index,
* one resolution per conflict,
* one ingestion signal per (study, phase),
* one calibration decision per (round, study, reviewer).

Callers pass the connection of an open transaction to the write helpers
so a whole decision (insert, re-read, status write, audit entry) commits
or rolls back as one unit.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, TypeVar

from ..config.settings import settings
from ..core.errors import (
    ConflictAlreadyOpenError,
    ConflictAlreadyResolvedError,
    DuplicateDecisionError,
    EngineError,
    NotFoundError,
)
from ..core.ids import generate_id
from ..core.models import (
    AuditEntry,
    CalibrationDecision,
    CalibrationRound,
    CalibrationStatus,
    Conflict,
    ConflictResolution,
    ConflictStatus,
    Decision,
    DecisionInput,
    DecisionSnapshot,
    IngestionSignal,
    Phase,
    Project,
    ProjectMember,
    ProjectRole,
    ScreeningDecision,
    Study,
    StudyStatus,
)
from ..utils.logging import get_logger
from .errors import is_unique_violation, lock_retrying, translate

logger = get_logger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    project_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    reviewers_required INTEGER NOT NULL CHECK (reviewers_required >= 1),
    blind_screening BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project_members (
    project_id TEXT NOT NULL REFERENCES projects(project_id),
    user_id TEXT NOT NULL,
    role TEXT NOT NULL,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    joined_at TEXT NOT NULL,
    PRIMARY KEY (project_id, user_id)
);

CREATE TABLE IF NOT EXISTS studies (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    study_id TEXT NOT NULL UNIQUE,
    project_id TEXT NOT NULL REFERENCES projects(project_id),
    work_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    abstract TEXT,
    year INTEGER,
    journal TEXT,
    keywords TEXT NOT NULL DEFAULT '[]',
    phase TEXT NOT NULL,
    status TEXT NOT NULL,
    final_decision TEXT,
    priority_score INTEGER NOT NULL DEFAULT 50 CHECK (priority_score BETWEEN 0 AND 100),
    ai_suggestion TEXT,
    ai_confidence REAL CHECK (ai_confidence IS NULL OR ai_confidence BETWEEN 0 AND 1),
    ai_reasoning TEXT,
    is_calibration_sample BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    UNIQUE (project_id, work_id),
    CHECK ((final_decision IS NULL) = (status NOT IN ('included', 'excluded', 'maybe')))
);

CREATE INDEX IF NOT EXISTS idx_studies_queue ON studies(project_id, phase, status);

CREATE TABLE IF NOT EXISTS decisions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    decision_id TEXT NOT NULL UNIQUE,
    study_id TEXT NOT NULL REFERENCES studies(study_id),
    project_id TEXT NOT NULL,
    reviewer_id TEXT NOT NULL,
    phase TEXT NOT NULL,
    decision TEXT NOT NULL,
    reasoning TEXT,
    exclusion_reason TEXT,
    confidence INTEGER CHECK (confidence IS NULL OR confidence BETWEEN 0 AND 100),
    time_spent_ms INTEGER,
    created_at TEXT NOT NULL,
    UNIQUE (study_id, reviewer_id, phase),
    CHECK (decision != 'exclude' OR exclusion_reason IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_decisions_project ON decisions(project_id, phase);

CREATE TABLE IF NOT EXISTS phase_counters (
    project_id TEXT NOT NULL,
    phase TEXT NOT NULL,
    decision TEXT NOT NULL,
    count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (project_id, phase, decision)
);

CREATE TABLE IF NOT EXISTS conflicts (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    conflict_id TEXT NOT NULL UNIQUE,
    project_id TEXT NOT NULL,
    study_id TEXT NOT NULL REFERENCES studies(study_id),
    phase TEXT NOT NULL,
    status TEXT NOT NULL,
    decisions TEXT NOT NULL,
    escalated_at TEXT,
    escalated_by TEXT,
    escalation_reason TEXT,
    created_at TEXT NOT NULL,
    resolved_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_conflicts_open
    ON conflicts(study_id, phase) WHERE status != 'resolved';

CREATE TABLE IF NOT EXISTS conflict_resolutions (
    conflict_id TEXT PRIMARY KEY REFERENCES conflicts(conflict_id),
    resolver_id TEXT NOT NULL,
    final_decision TEXT NOT NULL,
    reasoning TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ingestion_signals (
    study_id TEXT PRIMARY KEY,
    phase TEXT NOT NULL,
    project_id TEXT NOT NULL,
    work_id TEXT NOT NULL,
    source TEXT NOT NULL,
    created_at TEXT NOT NULL,
    dispatched_at TEXT
);

CREATE TABLE IF NOT EXISTS audit_log (
    entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    study_id TEXT,
    actor_id TEXT,
    action TEXT NOT NULL,
    payload TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_project ON audit_log(project_id, action);

CREATE TABLE IF NOT EXISTS calibration_rounds (
    round_id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(project_id),
    phase TEXT NOT NULL,
    sample_size INTEGER NOT NULL,
    target_agreement REAL NOT NULL,
    status TEXT NOT NULL,
    kappa_score REAL,
    percent_agreement REAL,
    created_by TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS calibration_samples (
    round_id TEXT NOT NULL REFERENCES calibration_rounds(round_id),
    study_id TEXT NOT NULL REFERENCES studies(study_id),
    position INTEGER NOT NULL,
    PRIMARY KEY (round_id, study_id)
);

CREATE TABLE IF NOT EXISTS calibration_participants (
    round_id TEXT NOT NULL REFERENCES calibration_rounds(round_id),
    user_id TEXT NOT NULL,
    PRIMARY KEY (round_id, user_id)
);

CREATE TABLE IF NOT EXISTS calibration_decisions (
    round_id TEXT NOT NULL REFERENCES calibration_rounds(round_id),
    study_id TEXT NOT NULL,
    reviewer_id TEXT NOT NULL,
    decision TEXT NOT NULL,
    reasoning TEXT,
    time_spent_ms INTEGER,
    created_at TEXT NOT NULL,
    PRIMARY KEY (round_id, study_id, reviewer_id)
);
"""


def _now() -> str:
    return datetime.utcnow().isoformat()


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _enum(enum_cls, value: Optional[str]):
    return enum_cls(value) if value is not None else None


class ScreeningStore:
    """
    SQLite-backed store enforcing the engine's uniqueness invariants.

    Connections are per thread; every write runs in a ``BEGIN IMMEDIATE``
    transaction so concurrent reviewers are serialized by the database
    writer lock rather than by application code.
    """

    def __init__(self, db_path: Optional[Path] = None, busy_timeout: Optional[float] = None) -> None:
        self.db_path = Path(db_path or settings.database_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout or settings.sqlite_busy_timeout
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_schema()

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    def connection(self) -> sqlite3.Connection:
        """Return this thread's connection, opening it on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    def _init_schema(self) -> None:
        self.connection().executescript(SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one serializable write transaction."""
        conn = self.connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    @contextmanager
    def savepoint(self, conn: sqlite3.Connection, name: str) -> Iterator[sqlite3.Connection]:
        """Nested rollback scope inside an open transaction."""
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield conn
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            conn.execute(f"RELEASE SAVEPOINT {name}")

    def run(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """Execute ``work`` in a transaction, retrying on lock contention.

        Domain errors raised by ``work`` pass through untouched; raw
        sqlite errors that nobody translated become ``StorageError``.
        """
        try:
            for attempt in lock_retrying():
                with attempt:
                    with self.transaction() as conn:
                        result = work(conn)
        except EngineError:
            raise
        except sqlite3.Error as exc:
            raise translate(exc) from exc
        return result

    def _read(self, conn: Optional[sqlite3.Connection]) -> sqlite3.Connection:
        return conn if conn is not None else self.connection()

    def close(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Projects and membership
    # ------------------------------------------------------------------

    def create_project(
        self,
        name: str,
        reviewers_required: Optional[int] = None,
        blind_screening: bool = True,
        project_id: Optional[str] = None,
    ) -> Project:
        project = Project(
            project_id=project_id or generate_id("prj"),
            name=name,
            reviewers_required=reviewers_required or settings.default_reviewers_required,
            blind_screening=blind_screening,
        )

        def work(conn: sqlite3.Connection) -> None:
            conn.execute(
                """INSERT INTO projects (project_id, name, reviewers_required, blind_screening, created_at)
                VALUES (?, ?, ?, ?, ?)""",
                (
                    project.project_id,
                    project.name,
                    project.reviewers_required,
                    project.blind_screening,
                    project.created_at.isoformat(),
                ),
            )

        self.run(work)
        logger.info(f"Created project {project.project_id} (k={project.reviewers_required})")
        return project

    def get_project(self, project_id: str, conn: Optional[sqlite3.Connection] = None) -> Project:
        row = self._read(conn).execute(
            "SELECT * FROM projects WHERE project_id = ?", (project_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError("Project", project_id)
        return Project(
            project_id=row["project_id"],
            name=row["name"],
            reviewers_required=row["reviewers_required"],
            blind_screening=bool(row["blind_screening"]),
            created_at=_dt(row["created_at"]),
        )

    def add_member(
        self,
        project_id: str,
        user_id: str,
        role: ProjectRole,
        active: bool = True,
    ) -> ProjectMember:
        member = ProjectMember(project_id=project_id, user_id=user_id, role=role, active=active)

        def work(conn: sqlite3.Connection) -> None:
            self.get_project(project_id, conn)
            conn.execute(
                """INSERT INTO project_members (project_id, user_id, role, active, joined_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (project_id, user_id) DO UPDATE SET role = excluded.role, active = excluded.active""",
                (project_id, user_id, role.value, active, member.joined_at.isoformat()),
            )

        self.run(work)
        return member

    def set_member_active(self, project_id: str, user_id: str, active: bool) -> None:
        def work(conn: sqlite3.Connection) -> None:
            cur = conn.execute(
                "UPDATE project_members SET active = ? WHERE project_id = ? AND user_id = ?",
                (active, project_id, user_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError("Project member", f"{project_id}/{user_id}")

        self.run(work)

    @staticmethod
    def _member_from_row(row: sqlite3.Row) -> ProjectMember:
        return ProjectMember(
            project_id=row["project_id"],
            user_id=row["user_id"],
            role=ProjectRole(row["role"]),
            active=bool(row["active"]),
            joined_at=_dt(row["joined_at"]),
        )

    def get_member(
        self, project_id: str, user_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[ProjectMember]:
        row = self._read(conn).execute(
            "SELECT * FROM project_members WHERE project_id = ? AND user_id = ?",
            (project_id, user_id),
        ).fetchone()
        return self._member_from_row(row) if row else None

    def list_members(
        self,
        project_id: str,
        roles: Optional[Iterable[ProjectRole]] = None,
        active_only: bool = False,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[ProjectMember]:
        rows = self._read(conn).execute(
            "SELECT * FROM project_members WHERE project_id = ? ORDER BY joined_at, user_id",
            (project_id,),
        ).fetchall()
        members = [self._member_from_row(r) for r in rows]
        if roles is not None:
            wanted = set(roles)
            members = [m for m in members if m.role in wanted]
        if active_only:
            members = [m for m in members if m.active]
        return members

    # ------------------------------------------------------------------
    # Studies
    # ------------------------------------------------------------------

    @staticmethod
    def _study_from_row(row: sqlite3.Row) -> Study:
        return Study(
            study_id=row["study_id"],
            project_id=row["project_id"],
            work_id=row["work_id"],
            title=row["title"],
            abstract=row["abstract"],
            year=row["year"],
            journal=row["journal"],
            keywords=json.loads(row["keywords"] or "[]"),
            phase=Phase(row["phase"]),
            status=StudyStatus(row["status"]),
            final_decision=_enum(ScreeningDecision, row["final_decision"]),
            priority_score=row["priority_score"],
            ai_suggestion=_enum(ScreeningDecision, row["ai_suggestion"]),
            ai_confidence=row["ai_confidence"],
            ai_reasoning=row["ai_reasoning"],
            is_calibration_sample=bool(row["is_calibration_sample"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    def add_study(self, project_id: str, work_id: str, **fields: Any) -> Study:
        return self.add_studies(project_id, [dict(fields, work_id=work_id)])[0]

    def add_studies(self, project_id: str, works: Sequence[Dict[str, Any]]) -> List[Study]:
        """Add studies to a project as PENDING in TITLE_ABSTRACT."""
        studies = [
            Study(
                study_id=w.get("study_id") or generate_id("std"),
                project_id=project_id,
                **{k: v for k, v in w.items() if k != "study_id"},
            )
            for w in works
        ]

        def work(conn: sqlite3.Connection) -> None:
            self.get_project(project_id, conn)
            conn.executemany(
                """INSERT INTO studies
                (study_id, project_id, work_id, title, abstract, year, journal, keywords,
                 phase, status, final_decision, priority_score,
                 ai_suggestion, ai_confidence, ai_reasoning, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?, ?, ?, ?)""",
                [
                    (
                        s.study_id,
                        s.project_id,
                        s.work_id,
                        s.title,
                        s.abstract,
                        s.year,
                        s.journal,
                        json.dumps(s.keywords),
                        Phase.TITLE_ABSTRACT.value,
                        StudyStatus.PENDING.value,
                        s.priority_score,
                        s.ai_suggestion.value if s.ai_suggestion else None,
                        s.ai_confidence,
                        s.ai_reasoning,
                        s.created_at.isoformat(),
                    )
                    for s in studies
                ],
            )

        self.run(work)
        logger.info(f"Added {len(studies)} studies to project {project_id}")
        return [self.get_study(s.study_id) for s in studies]

    def get_study(self, study_id: str, conn: Optional[sqlite3.Connection] = None) -> Study:
        row = self._read(conn).execute(
            "SELECT * FROM studies WHERE study_id = ?", (study_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError("Study", study_id)
        return self._study_from_row(row)

    def list_studies(
        self,
        project_id: str,
        phase: Optional[Phase] = None,
        statuses: Optional[Iterable[StudyStatus]] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Study]:
        """List studies in creation order."""
        query = "SELECT * FROM studies WHERE project_id = ?"
        params: List[Any] = [project_id]
        if phase is not None:
            query += " AND phase = ?"
            params.append(phase.value)
        if statuses is not None:
            values = [s.value for s in statuses]
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY seq"
        rows = self._read(conn).execute(query, params).fetchall()
        return [self._study_from_row(r) for r in rows]

    def studies_awaiting(
        self,
        project_id: str,
        reviewer_id: str,
        phase: Phase,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Study]:
        """Open studies in ``phase`` the reviewer has not decided yet."""
        rows = self._read(conn).execute(
            """SELECT s.* FROM studies s
               WHERE s.project_id = ? AND s.phase = ? AND s.status IN (?, ?)
                 AND NOT EXISTS (
                     SELECT 1 FROM decisions d
                     WHERE d.study_id = s.study_id AND d.reviewer_id = ? AND d.phase = ?
                 )
               ORDER BY s.seq""",
            (
                project_id,
                phase.value,
                StudyStatus.PENDING.value,
                StudyStatus.SCREENING.value,
                reviewer_id,
                phase.value,
            ),
        ).fetchall()
        return [self._study_from_row(r) for r in rows]

    def studies_needing_reconciliation(
        self, project_id: str, phase: Optional[Phase] = None
    ) -> List[str]:
        """IDs of open studies that already hold decisions for their phase."""
        query = """SELECT s.study_id FROM studies s
                   WHERE s.project_id = ? AND s.status IN (?, ?)
                     AND EXISTS (
                         SELECT 1 FROM decisions d
                         WHERE d.study_id = s.study_id AND d.phase = s.phase
                     )"""
        params: List[Any] = [project_id, StudyStatus.PENDING.value, StudyStatus.SCREENING.value]
        if phase is not None:
            query += " AND s.phase = ?"
            params.append(phase.value)
        query += " ORDER BY s.seq"
        return [r["study_id"] for r in self.connection().execute(query, params).fetchall()]

    def update_study_state(
        self,
        conn: sqlite3.Connection,
        study_id: str,
        status: StudyStatus,
        phase: Phase,
        final_decision: Optional[ScreeningDecision],
    ) -> Study:
        conn.execute(
            """UPDATE studies SET status = ?, phase = ?, final_decision = ?, updated_at = ?
               WHERE study_id = ?""",
            (
                status.value,
                phase.value,
                final_decision.value if final_decision else None,
                _now(),
                study_id,
            ),
        )
        return self.get_study(study_id, conn)

    def set_priority_score(self, conn: sqlite3.Connection, study_id: str, score: int) -> None:
        conn.execute(
            "UPDATE studies SET priority_score = ?, updated_at = ? WHERE study_id = ?",
            (score, _now(), study_id),
        )

    def set_ai_suggestion(
        self,
        study_id: str,
        suggestion: Optional[ScreeningDecision],
        confidence: Optional[float],
        reasoning: Optional[str] = None,
    ) -> Study:
        def work(conn: sqlite3.Connection) -> Study:
            self.get_study(study_id, conn)
            conn.execute(
                """UPDATE studies SET ai_suggestion = ?, ai_confidence = ?, ai_reasoning = ?, updated_at = ?
                   WHERE study_id = ?""",
                (suggestion.value if suggestion else None, confidence, reasoning, _now(), study_id),
            )
            return self.get_study(study_id, conn)

        return self.run(work)

    def mark_calibration_sample(self, conn: sqlite3.Connection, study_ids: Sequence[str]) -> None:
        conn.executemany(
            "UPDATE studies SET is_calibration_sample = TRUE WHERE study_id = ?",
            [(sid,) for sid in study_ids],
        )

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    @staticmethod
    def _decision_from_row(row: sqlite3.Row) -> Decision:
        return Decision(
            decision_id=row["decision_id"],
            study_id=row["study_id"],
            project_id=row["project_id"],
            reviewer_id=row["reviewer_id"],
            phase=Phase(row["phase"]),
            decision=ScreeningDecision(row["decision"]),
            reasoning=row["reasoning"],
            exclusion_reason=row["exclusion_reason"],
            confidence=row["confidence"],
            time_spent_ms=row["time_spent_ms"],
            created_at=_dt(row["created_at"]),
        )

    def insert_decision(
        self,
        conn: sqlite3.Connection,
        study: Study,
        reviewer_id: str,
        phase: Phase,
        payload: DecisionInput,
    ) -> Decision:
        """Insert a decision and bump the per-(project, phase) counter.

        Raises:
            DuplicateDecisionError: The reviewer already decided this study
                in this phase (enforced by the UNIQUE constraint).
        """
        decision = Decision(
            decision_id=generate_id("dec"),
            study_id=study.study_id,
            project_id=study.project_id,
            reviewer_id=reviewer_id,
            phase=phase,
            **payload.model_dump(),
        )
        try:
            conn.execute(
                """INSERT INTO decisions
                (decision_id, study_id, project_id, reviewer_id, phase, decision,
                 reasoning, exclusion_reason, confidence, time_spent_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    decision.decision_id,
                    decision.study_id,
                    decision.project_id,
                    reviewer_id,
                    phase.value,
                    decision.decision.value,
                    decision.reasoning,
                    decision.exclusion_reason,
                    decision.confidence,
                    decision.time_spent_ms,
                    decision.created_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if is_unique_violation(exc, "decisions"):
                existing = self.get_decision(study.study_id, reviewer_id, phase, conn)
                raise DuplicateDecisionError(study.study_id, reviewer_id, phase, existing) from exc
            raise
        conn.execute(
            """INSERT INTO phase_counters (project_id, phase, decision, count) VALUES (?, ?, ?, 1)
               ON CONFLICT (project_id, phase, decision) DO UPDATE SET count = count + 1""",
            (study.project_id, phase.value, decision.decision.value),
        )
        return decision

    def get_decision(
        self,
        study_id: str,
        reviewer_id: str,
        phase: Phase,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[Decision]:
        row = self._read(conn).execute(
            "SELECT * FROM decisions WHERE study_id = ? AND reviewer_id = ? AND phase = ?",
            (study_id, reviewer_id, phase.value),
        ).fetchone()
        return self._decision_from_row(row) if row else None

    def get_decisions(
        self, study_id: str, phase: Phase, conn: Optional[sqlite3.Connection] = None
    ) -> List[Decision]:
        rows = self._read(conn).execute(
            "SELECT * FROM decisions WHERE study_id = ? AND phase = ? ORDER BY seq",
            (study_id, phase.value),
        ).fetchall()
        return [self._decision_from_row(r) for r in rows]

    def list_project_decisions(
        self,
        project_id: str,
        phase: Optional[Phase] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Decision]:
        query = "SELECT * FROM decisions WHERE project_id = ?"
        params: List[Any] = [project_id]
        if phase is not None:
            query += " AND phase = ?"
            params.append(phase.value)
        query += " ORDER BY seq"
        rows = self._read(conn).execute(query, params).fetchall()
        return [self._decision_from_row(r) for r in rows]

    def get_phase_counters(
        self, project_id: str, phase: Phase, conn: Optional[sqlite3.Connection] = None
    ) -> Dict[ScreeningDecision, int]:
        """Materialized decision counts for a project phase."""
        rows = self._read(conn).execute(
            "SELECT decision, count FROM phase_counters WHERE project_id = ? AND phase = ?",
            (project_id, phase.value),
        ).fetchall()
        counts = {d: 0 for d in ScreeningDecision}
        for row in rows:
            counts[ScreeningDecision(row["decision"])] = row["count"]
        return counts

    def count_studies_by_status(
        self, project_id: str, phase: Phase, conn: Optional[sqlite3.Connection] = None
    ) -> Dict[StudyStatus, int]:
        rows = self._read(conn).execute(
            """SELECT status, COUNT(*) AS n FROM studies
               WHERE project_id = ? AND phase = ? GROUP BY status""",
            (project_id, phase.value),
        ).fetchall()
        counts = {s: 0 for s in StudyStatus}
        for row in rows:
            counts[StudyStatus(row["status"])] = row["n"]
        return counts

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def _conflict_from_row(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Conflict:
        snapshots = [DecisionSnapshot.model_validate(d) for d in json.loads(row["decisions"])]
        res_row = conn.execute(
            "SELECT * FROM conflict_resolutions WHERE conflict_id = ?", (row["conflict_id"],)
        ).fetchone()
        resolution = None
        if res_row is not None:
            resolution = ConflictResolution(
                conflict_id=res_row["conflict_id"],
                resolver_id=res_row["resolver_id"],
                final_decision=ScreeningDecision(res_row["final_decision"]),
                reasoning=res_row["reasoning"],
                created_at=_dt(res_row["created_at"]),
            )
        return Conflict(
            conflict_id=row["conflict_id"],
            project_id=row["project_id"],
            study_id=row["study_id"],
            phase=Phase(row["phase"]),
            status=ConflictStatus(row["status"]),
            decisions=snapshots,
            escalated_at=_dt(row["escalated_at"]),
            escalated_by=row["escalated_by"],
            escalation_reason=row["escalation_reason"],
            created_at=_dt(row["created_at"]),
            resolved_at=_dt(row["resolved_at"]),
            resolution=resolution,
        )

    def insert_conflict(
        self,
        conn: sqlite3.Connection,
        study: Study,
        phase: Phase,
        snapshots: Sequence[DecisionSnapshot],
    ) -> Conflict:
        """Open a conflict for (study, phase).

        Raises:
            ConflictAlreadyOpenError: An unresolved conflict already exists;
                the error carries it.
        """
        conflict = Conflict(
            conflict_id=generate_id("cfl"),
            project_id=study.project_id,
            study_id=study.study_id,
            phase=phase,
            decisions=list(snapshots),
        )
        try:
            conn.execute(
                """INSERT INTO conflicts
                (conflict_id, project_id, study_id, phase, status, decisions, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    conflict.conflict_id,
                    conflict.project_id,
                    conflict.study_id,
                    phase.value,
                    conflict.status.value,
                    json.dumps([s.model_dump(mode="json") for s in snapshots]),
                    conflict.created_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if is_unique_violation(exc, "conflicts"):
                existing = self.get_open_conflict(study.study_id, phase, conn)
                raise ConflictAlreadyOpenError(
                    f"An open conflict already exists for study {study.study_id} in phase {phase.value}",
                    existing,
                ) from exc
            raise
        return conflict

    def get_conflict(self, conflict_id: str, conn: Optional[sqlite3.Connection] = None) -> Conflict:
        conn = self._read(conn)
        row = conn.execute("SELECT * FROM conflicts WHERE conflict_id = ?", (conflict_id,)).fetchone()
        if row is None:
            raise NotFoundError("Conflict", conflict_id)
        return self._conflict_from_row(conn, row)

    def get_open_conflict(
        self, study_id: str, phase: Phase, conn: Optional[sqlite3.Connection] = None
    ) -> Optional[Conflict]:
        conn = self._read(conn)
        row = conn.execute(
            "SELECT * FROM conflicts WHERE study_id = ? AND phase = ? AND status != ?",
            (study_id, phase.value, ConflictStatus.RESOLVED.value),
        ).fetchone()
        return self._conflict_from_row(conn, row) if row else None

    def list_conflicts(
        self,
        project_id: str,
        phase: Optional[Phase] = None,
        status: Optional[ConflictStatus] = None,
        study_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Conflict]:
        conn = self._read(conn)
        query = "SELECT * FROM conflicts WHERE project_id = ?"
        params: List[Any] = [project_id]
        if phase is not None:
            query += " AND phase = ?"
            params.append(phase.value)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if study_id is not None:
            query += " AND study_id = ?"
            params.append(study_id)
        query += " ORDER BY seq"
        return [self._conflict_from_row(conn, r) for r in conn.execute(query, params).fetchall()]

    def update_conflict_status(
        self, conn: sqlite3.Connection, conflict_id: str, status: ConflictStatus
    ) -> None:
        resolved_at = _now() if status == ConflictStatus.RESOLVED else None
        conn.execute(
            "UPDATE conflicts SET status = ?, resolved_at = COALESCE(?, resolved_at) WHERE conflict_id = ?",
            (status.value, resolved_at, conflict_id),
        )

    def record_escalation(
        self, conn: sqlite3.Connection, conflict_id: str, by_user_id: str, reason: str
    ) -> None:
        conn.execute(
            """UPDATE conflicts SET escalated_at = ?, escalated_by = ?, escalation_reason = ?
               WHERE conflict_id = ?""",
            (_now(), by_user_id, reason, conflict_id),
        )

    def insert_resolution(
        self,
        conn: sqlite3.Connection,
        conflict: Conflict,
        resolver_id: str,
        final_decision: ScreeningDecision,
        reasoning: Optional[str],
    ) -> ConflictResolution:
        """Create the one-and-only resolution of a conflict.

        Raises:
            ConflictAlreadyResolvedError: A resolution row already exists.
        """
        resolution = ConflictResolution(
            conflict_id=conflict.conflict_id,
            resolver_id=resolver_id,
            final_decision=final_decision,
            reasoning=reasoning,
        )
        try:
            conn.execute(
                """INSERT INTO conflict_resolutions
                (conflict_id, resolver_id, final_decision, reasoning, created_at)
                VALUES (?, ?, ?, ?, ?)""",
                (
                    conflict.conflict_id,
                    resolver_id,
                    final_decision.value,
                    reasoning,
                    resolution.created_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if is_unique_violation(exc, "conflict_resolutions"):
                raise ConflictAlreadyResolvedError(
                    self.get_conflict(conflict.conflict_id, conn)
                ) from exc
            raise
        return resolution

    # ------------------------------------------------------------------
    # Ingestion signals
    # ------------------------------------------------------------------

    @staticmethod
    def _signal_from_row(row: sqlite3.Row) -> IngestionSignal:
        return IngestionSignal(
            study_id=row["study_id"],
            phase=Phase(row["phase"]),
            project_id=row["project_id"],
            work_id=row["work_id"],
            source=row["source"],
            created_at=_dt(row["created_at"]),
            dispatched_at=_dt(row["dispatched_at"]),
        )

    def insert_ingestion_signal(
        self, conn: sqlite3.Connection, study: Study, phase: Phase, source: str
    ) -> bool:
        """Record the ready-for-ingestion signal; False if the study already has one.

        The outbox holds one row per study, so an INCLUDE in a later phase
        after a manual advancement never produces a second job.
        """
        cur = conn.execute(
            """INSERT OR IGNORE INTO ingestion_signals
            (study_id, phase, project_id, work_id, source, created_at)
            VALUES (?, ?, ?, ?, ?, ?)""",
            (study.study_id, phase.value, study.project_id, study.work_id, source, _now()),
        )
        return cur.rowcount == 1

    def list_ingestion_signals(
        self, project_id: Optional[str] = None, pending_only: bool = False
    ) -> List[IngestionSignal]:
        query = "SELECT * FROM ingestion_signals WHERE 1 = 1"
        params: List[Any] = []
        if project_id is not None:
            query += " AND project_id = ?"
            params.append(project_id)
        if pending_only:
            query += " AND dispatched_at IS NULL"
        query += " ORDER BY created_at, study_id"
        return [self._signal_from_row(r) for r in self.connection().execute(query, params).fetchall()]

    def claim_ingestion_signal(self, conn: sqlite3.Connection, study_id: str) -> bool:
        cur = conn.execute(
            """UPDATE ingestion_signals SET dispatched_at = ?
               WHERE study_id = ? AND dispatched_at IS NULL""",
            (_now(), study_id),
        )
        return cur.rowcount == 1

    def release_ingestion_signal(self, conn: sqlite3.Connection, study_id: str) -> None:
        conn.execute(
            "UPDATE ingestion_signals SET dispatched_at = NULL WHERE study_id = ?",
            (study_id,),
        )

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def append_audit(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        action: str,
        study_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        conn.execute(
            """INSERT INTO audit_log (project_id, study_id, actor_id, action, payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?)""",
            (project_id, study_id, actor_id, action, json.dumps(payload or {}, default=str), _now()),
        )

    def list_audit(
        self,
        project_id: str,
        action: Optional[str] = None,
        study_id: Optional[str] = None,
    ) -> List[AuditEntry]:
        query = "SELECT * FROM audit_log WHERE project_id = ?"
        params: List[Any] = [project_id]
        if action is not None:
            query += " AND action = ?"
            params.append(action)
        if study_id is not None:
            query += " AND study_id = ?"
            params.append(study_id)
        query += " ORDER BY entry_id"
        return [
            AuditEntry(
                entry_id=r["entry_id"],
                project_id=r["project_id"],
                study_id=r["study_id"],
                actor_id=r["actor_id"],
                action=r["action"],
                payload=json.loads(r["payload"]),
                created_at=_dt(r["created_at"]),
            )
            for r in self.connection().execute(query, params).fetchall()
        ]

    # ------------------------------------------------------------------
    # Calibration
    # ------------------------------------------------------------------

    def insert_calibration_round(self, conn: sqlite3.Connection, round_: CalibrationRound) -> None:
        conn.execute(
            """INSERT INTO calibration_rounds
            (round_id, project_id, phase, sample_size, target_agreement, status, created_by, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                round_.round_id,
                round_.project_id,
                round_.phase.value,
                round_.sample_size,
                round_.target_agreement,
                round_.status.value,
                round_.created_by,
                round_.created_at.isoformat(),
            ),
        )
        conn.executemany(
            "INSERT INTO calibration_samples (round_id, study_id, position) VALUES (?, ?, ?)",
            [(round_.round_id, sid, i) for i, sid in enumerate(round_.study_ids)],
        )
        conn.executemany(
            "INSERT INTO calibration_participants (round_id, user_id) VALUES (?, ?)",
            [(round_.round_id, uid) for uid in round_.participant_ids],
        )

    def get_calibration_round(
        self, round_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> CalibrationRound:
        conn = self._read(conn)
        row = conn.execute("SELECT * FROM calibration_rounds WHERE round_id = ?", (round_id,)).fetchone()
        if row is None:
            raise NotFoundError("Calibration round", round_id)
        study_ids = [
            r["study_id"]
            for r in conn.execute(
                "SELECT study_id FROM calibration_samples WHERE round_id = ? ORDER BY position",
                (round_id,),
            ).fetchall()
        ]
        participant_ids = [
            r["user_id"]
            for r in conn.execute(
                "SELECT user_id FROM calibration_participants WHERE round_id = ? ORDER BY user_id",
                (round_id,),
            ).fetchall()
        ]
        participated = conn.execute(
            "SELECT COUNT(DISTINCT reviewer_id) AS n FROM calibration_decisions WHERE round_id = ?",
            (round_id,),
        ).fetchone()["n"]
        return CalibrationRound(
            round_id=row["round_id"],
            project_id=row["project_id"],
            phase=Phase(row["phase"]),
            sample_size=row["sample_size"],
            target_agreement=row["target_agreement"],
            status=CalibrationStatus(row["status"]),
            kappa_score=row["kappa_score"],
            percent_agreement=row["percent_agreement"],
            study_ids=study_ids,
            participant_ids=participant_ids,
            reviewers_participated=participated,
            created_by=row["created_by"],
            created_at=_dt(row["created_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    def list_calibration_rounds(self, project_id: str) -> List[CalibrationRound]:
        rows = self.connection().execute(
            "SELECT round_id FROM calibration_rounds WHERE project_id = ? ORDER BY created_at DESC",
            (project_id,),
        ).fetchall()
        return [self.get_calibration_round(r["round_id"]) for r in rows]

    def insert_calibration_decision(
        self, conn: sqlite3.Connection, decision: CalibrationDecision
    ) -> None:
        try:
            conn.execute(
                """INSERT INTO calibration_decisions
                (round_id, study_id, reviewer_id, decision, reasoning, time_spent_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    decision.round_id,
                    decision.study_id,
                    decision.reviewer_id,
                    decision.decision.value,
                    decision.reasoning,
                    decision.time_spent_ms,
                    decision.created_at.isoformat(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            if is_unique_violation(exc, "calibration_decisions"):
                raise DuplicateDecisionError(
                    decision.study_id, decision.reviewer_id, f"calibration:{decision.round_id}"
                ) from exc
            raise

    def list_calibration_decisions(
        self, round_id: str, conn: Optional[sqlite3.Connection] = None
    ) -> List[CalibrationDecision]:
        rows = self._read(conn).execute(
            "SELECT * FROM calibration_decisions WHERE round_id = ? ORDER BY created_at, reviewer_id",
            (round_id,),
        ).fetchall()
        return [
            CalibrationDecision(
                round_id=r["round_id"],
                study_id=r["study_id"],
                reviewer_id=r["reviewer_id"],
                decision=ScreeningDecision(r["decision"]),
                reasoning=r["reasoning"],
                time_spent_ms=r["time_spent_ms"],
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]

    def update_calibration_round(
        self,
        conn: sqlite3.Connection,
        round_id: str,
        status: CalibrationStatus,
        kappa_score: Optional[float] = None,
        percent_agreement: Optional[float] = None,
    ) -> None:
        now = _now()
        conn.execute(
            """UPDATE calibration_rounds SET
                   status = ?,
                   kappa_score = COALESCE(?, kappa_score),
                   percent_agreement = COALESCE(?, percent_agreement),
                   started_at = CASE WHEN ? != 'pending' THEN COALESCE(started_at, ?) ELSE started_at END,
                   completed_at = CASE WHEN ? = 'completed' THEN ? ELSE completed_at END
               WHERE round_id = ?""",
            (
                status.value,
                kappa_score,
                percent_agreement,
                status.value,
                now,
                status.value,
                now,
                round_id,
            ),
        )
