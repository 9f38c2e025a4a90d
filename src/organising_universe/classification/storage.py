"""Organising universe classification store and append-only change log."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import hashlib
from pathlib import Path
import sqlite3
from typing import Any, Iterator

import psycopg

from .contracts import AutomationFlags, ClassificationChangeRecord, Project, SnapshotRow
from .errors import ProjectNotFoundError
from .taxonomy import (
    SUPPORTED_CLASSIFICATIONS,
    SUPPORTED_RULES_APPLIED,
    Classification,
    RuleApplied,
    Tier,
    ensure_classification,
)


CHANGE_ID_RECIPE_V1 = "ou.classification.change_id.v1"
SNAPSHOT_ID_RECIPE_V1 = "ou.classification.snapshot_id.v1"

_PROJECT_COLUMNS = """
    project_id, tier, classification, classification_is_manual, classification_is_auto,
    last_auto_update_utc, change_reason, created_at_utc, updated_at_utc
"""
_CHANGE_COLUMNS = """
    change_id, project_id, change_seq, old_value, new_value, reason, rule_applied,
    applied_by, applied_at_utc, was_manual_override
"""


class ClassificationStorageError(RuntimeError):
    """Raised when classification storage operations fail unexpectedly."""


def is_postgres_dsn(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith("postgres://") or value.startswith("postgresql://")


TRANSIENT_STORE_ERRORS: tuple[type[BaseException], ...] = (
    sqlite3.OperationalError,
    psycopg.OperationalError,
)


class ClassificationUnit:
    """One store transaction. Every write inside a unit commits or rolls back together."""

    def __init__(self, conn: Any, backend: str, *, writable: bool) -> None:
        self.conn = conn
        self.backend = backend
        self.writable = writable

    def load_project(self, project_id: str, *, lock: bool = False) -> Project | None:
        suffix = " FOR UPDATE" if lock and self.backend == "postgres" else ""
        row = _query_one(
            self.conn,
            self.backend,
            f"SELECT {_PROJECT_COLUMNS} FROM ou_projects WHERE project_id = {{p1}}{suffix}",
            (project_id,),
        )
        return Project.from_row(row) if row is not None else None

    def list_projects(self) -> list[Project]:
        rows = _query_all(
            self.conn,
            self.backend,
            f"SELECT {_PROJECT_COLUMNS} FROM ou_projects ORDER BY project_id",
            (),
        )
        return [Project.from_row(row) for row in rows]

    def list_project_ids(self) -> list[str]:
        rows = _query_all(self.conn, self.backend, "SELECT project_id FROM ou_projects ORDER BY project_id", ())
        return [str(row[0]) for row in rows]

    def insert_project(
        self,
        *,
        project_id: str,
        tier: Tier | None,
        classification: Classification,
        flags: AutomationFlags,
        now_utc: str,
    ) -> bool:
        """Insert a new project row; returns False when the id already exists."""
        self._require_writable()
        rowcount = _execute(
            self.conn,
            self.backend,
            f"""
            INSERT INTO ou_projects ({_PROJECT_COLUMNS})
            VALUES ({{p1}}, {{p2}}, {{p3}}, {{p4}}, {{p5}}, {{p6}}, {{p7}}, {{p8}}, {{p9}})
            ON CONFLICT (project_id) DO NOTHING
            """,
            (
                project_id,
                tier.value if tier is not None else None,
                classification.value,
                int(flags.is_manual),
                int(flags.is_auto),
                flags.last_auto_update,
                flags.change_reason,
                now_utc,
                now_utc,
            ),
        )
        return rowcount == 1

    def save_project_state(
        self,
        *,
        project_id: str,
        classification: Classification,
        flags: AutomationFlags,
        now_utc: str,
    ) -> None:
        self._require_writable()
        rowcount = _execute(
            self.conn,
            self.backend,
            """
            UPDATE ou_projects
            SET classification = {p1}, classification_is_manual = {p2}, classification_is_auto = {p3},
                last_auto_update_utc = {p4}, change_reason = {p5}, updated_at_utc = {p6}
            WHERE project_id = {p7}
            """,
            (
                classification.value,
                int(flags.is_manual),
                int(flags.is_auto),
                flags.last_auto_update,
                flags.change_reason,
                now_utc,
                project_id,
            ),
        )
        if rowcount != 1:
            raise ClassificationStorageError(f"project row missing during update: {project_id}")

    def set_tier(self, *, project_id: str, tier: Tier | None, now_utc: str) -> None:
        self._require_writable()
        _execute(
            self.conn,
            self.backend,
            "UPDATE ou_projects SET tier = {p1}, updated_at_utc = {p2} WHERE project_id = {p3}",
            (tier.value if tier is not None else None, now_utc, project_id),
        )

    def append_change(
        self,
        *,
        project_id: str,
        old_value: Classification | None,
        new_value: Classification,
        reason: str,
        rule_applied: RuleApplied,
        applied_by: str | None,
        was_manual_override: bool,
        applied_at_utc: str,
    ) -> ClassificationChangeRecord:
        self._require_writable()
        row = _query_one(
            self.conn,
            self.backend,
            "SELECT COALESCE(MAX(change_seq), 0) FROM ou_change_log WHERE project_id = {p1}",
            (project_id,),
        )
        change_seq = int((row[0] if row is not None else 0) or 0) + 1
        record = ClassificationChangeRecord(
            change_id=deterministic_change_id(project_id=project_id, change_seq=change_seq),
            project_id=project_id,
            change_seq=change_seq,
            old_value=old_value,
            new_value=new_value,
            reason=reason,
            rule_applied=rule_applied,
            applied_by=applied_by,
            applied_at_utc=applied_at_utc,
            was_manual_override=was_manual_override,
        )
        _execute(
            self.conn,
            self.backend,
            f"""
            INSERT INTO ou_change_log ({_CHANGE_COLUMNS})
            VALUES ({{p1}}, {{p2}}, {{p3}}, {{p4}}, {{p5}}, {{p6}}, {{p7}}, {{p8}}, {{p9}}, {{p10}})
            """,
            (
                record.change_id,
                record.project_id,
                record.change_seq,
                old_value.value if old_value is not None else None,
                new_value.value,
                reason,
                rule_applied.value,
                applied_by,
                applied_at_utc,
                int(was_manual_override),
            ),
        )
        return record

    def list_changes(
        self,
        *,
        project_id: str | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[ClassificationChangeRecord]:
        direction = "DESC" if newest_first else "ASC"
        where = "WHERE project_id = {p1}" if project_id is not None else ""
        params: tuple[Any, ...] = (project_id,) if project_id is not None else ()
        if project_id is not None:
            order = f"change_seq {direction}"
        else:
            order = f"applied_at_utc {direction}, project_id {direction}, change_seq {direction}"
        sql = f"SELECT {_CHANGE_COLUMNS} FROM ou_change_log {where} ORDER BY {order}"
        if limit is not None:
            sql += f" LIMIT {max(1, int(limit))}"
        rows = _query_all(self.conn, self.backend, sql, params)
        return [ClassificationChangeRecord.from_row(row) for row in rows]

    def count_changes(self) -> int:
        row = _query_one(self.conn, self.backend, "SELECT COUNT(1) FROM ou_change_log", ())
        return int((row[0] if row is not None else 0) or 0)

    def replace_snapshot(self, *, snapshot_id: str, captured_at_utc: str) -> int:
        self._require_writable()
        _execute(self.conn, self.backend, "DELETE FROM ou_classification_backup", ())
        return _execute(
            self.conn,
            self.backend,
            """
            INSERT INTO ou_classification_backup (project_id, classification, snapshot_id, captured_at_utc)
            SELECT project_id, classification, {p1}, {p2} FROM ou_projects
            """,
            (snapshot_id, captured_at_utc),
        )

    def load_snapshot(self) -> list[SnapshotRow]:
        rows = _query_all(
            self.conn,
            self.backend,
            """
            SELECT project_id, classification, snapshot_id, captured_at_utc
            FROM ou_classification_backup
            ORDER BY project_id
            """,
            (),
        )
        return [
            SnapshotRow(
                project_id=str(row[0]),
                classification=ensure_classification(row[1]),
                snapshot_id=str(row[2]),
                captured_at_utc=str(row[3]),
            )
            for row in rows
        ]

    def current_snapshot_id(self) -> str | None:
        row = _query_one(
            self.conn,
            self.backend,
            "SELECT snapshot_id FROM ou_classification_backup LIMIT 1",
            (),
        )
        return str(row[0]) if row is not None else None

    def clear_automation(self, *, now_utc: str) -> tuple[int, int]:
        """Reset every ownership flag and purge the change log; returns (projects, records)."""
        self._require_writable()
        projects_reset = _execute(
            self.conn,
            self.backend,
            """
            UPDATE ou_projects
            SET classification_is_manual = 0, classification_is_auto = 0,
                last_auto_update_utc = NULL, change_reason = NULL, updated_at_utc = {p1}
            """,
            (now_utc,),
        )
        records_purged = _execute(self.conn, self.backend, "DELETE FROM ou_change_log", ())
        return projects_reset, records_purged

    def load_signal_facts(self, project_id: str) -> dict[str, Any] | None:
        row = _query_one(
            self.conn,
            self.backend,
            """
            SELECT has_eba_primary_contractor, has_patch_assignment, updated_at_utc
            FROM ou_project_signals
            WHERE project_id = {p1}
            """,
            (project_id,),
        )
        if row is None:
            return None
        return {
            "has_eba_primary_contractor": bool(row[0]),
            "has_patch_assignment": bool(row[1]),
            "updated_at_utc": str(row[2]),
        }

    def upsert_signal_facts(
        self,
        *,
        project_id: str,
        has_eba_primary_contractor: bool,
        has_patch_assignment: bool,
        now_utc: str,
    ) -> None:
        self._require_writable()
        _execute(
            self.conn,
            self.backend,
            """
            INSERT INTO ou_project_signals (
                project_id, has_eba_primary_contractor, has_patch_assignment, updated_at_utc
            ) VALUES ({p1}, {p2}, {p3}, {p4})
            ON CONFLICT (project_id) DO UPDATE SET
                has_eba_primary_contractor = excluded.has_eba_primary_contractor,
                has_patch_assignment = excluded.has_patch_assignment,
                updated_at_utc = excluded.updated_at_utc
            """,
            (project_id, int(has_eba_primary_contractor), int(has_patch_assignment), now_utc),
        )

    def _require_writable(self) -> None:
        if not self.writable:
            raise ClassificationStorageError("write attempted inside a read-only unit")


class ClassificationStore:
    """Project classification rows, the append-only change log and the single-generation backup."""

    def __init__(self, locator: str | Path) -> None:
        self.locator = str(locator)
        self.backend = "postgres" if is_postgres_dsn(self.locator) else "sqlite"
        if self.backend == "sqlite":
            db_path = Path(_sqlite_path(self.locator))
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @contextmanager
    def write_unit(self) -> Iterator[ClassificationUnit]:
        with self._connection() as conn:
            if self.backend == "sqlite":
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield ClassificationUnit(conn, self.backend, writable=True)
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
                return
            with conn.transaction():
                yield ClassificationUnit(conn, self.backend, writable=True)

    @contextmanager
    def read_unit(self) -> Iterator[ClassificationUnit]:
        with self._connection() as conn:
            if self.backend == "sqlite":
                conn.execute("BEGIN")
                try:
                    yield ClassificationUnit(conn, self.backend, writable=False)
                finally:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                return
            with conn.transaction():
                conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY")
                yield ClassificationUnit(conn, self.backend, writable=False)

    def get_project(self, project_id: str) -> Project | None:
        with self.read_unit() as unit:
            return unit.load_project(project_id)

    def list_projects(self) -> list[Project]:
        with self.read_unit() as unit:
            return unit.list_projects()

    def list_changes(
        self,
        *,
        project_id: str | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[ClassificationChangeRecord]:
        with self.read_unit() as unit:
            return unit.list_changes(project_id=project_id, limit=limit, newest_first=newest_first)

    def load_snapshot(self) -> list[SnapshotRow]:
        with self.read_unit() as unit:
            return unit.load_snapshot()

    def get_signal_facts(self, project_id: str) -> dict[str, Any] | None:
        with self.read_unit() as unit:
            return unit.load_signal_facts(project_id)

    def record_signal_facts(
        self,
        project_id: str,
        *,
        has_eba_primary_contractor: bool | None = None,
        has_patch_assignment: bool | None = None,
    ) -> dict[str, Any]:
        """Publish collaborator-resolved facts; ``None`` keeps the stored value."""
        with self.write_unit() as unit:
            current = unit.load_signal_facts(project_id) or {}
            eba = (
                bool(current.get("has_eba_primary_contractor"))
                if has_eba_primary_contractor is None
                else bool(has_eba_primary_contractor)
            )
            patch = (
                bool(current.get("has_patch_assignment"))
                if has_patch_assignment is None
                else bool(has_patch_assignment)
            )
            unit.upsert_signal_facts(
                project_id=project_id,
                has_eba_primary_contractor=eba,
                has_patch_assignment=patch,
                now_utc=utc_now(),
            )
        return {"has_eba_primary_contractor": eba, "has_patch_assignment": patch}

    def set_project_tier(self, project_id: str, tier: Tier | None) -> Tier | None:
        """Tier is owned upstream; this is the collaborator's write path. Returns the previous tier."""
        with self.write_unit() as unit:
            project = unit.load_project(project_id, lock=True)
            if project is None:
                raise ProjectNotFoundError(project_id)
            unit.set_tier(project_id=project_id, tier=tier, now_utc=utc_now())
            return project.tier

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _connect(self) -> Any:
        if self.backend == "sqlite":
            conn = sqlite3.connect(_sqlite_path(self.locator), timeout=30.0, isolation_level=None)
            conn.row_factory = sqlite3.Row
            return conn
        return psycopg.connect(self.locator, autocommit=True)

    def _init_schema(self) -> None:
        classifications = ", ".join(f"'{item}'" for item in SUPPORTED_CLASSIFICATIONS)
        rules = ", ".join(f"'{item}'" for item in SUPPORTED_RULES_APPLIED)
        with self._connection() as conn:
            _execute_script(
                conn,
                self.backend,
                f"""
                CREATE TABLE IF NOT EXISTS ou_projects (
                    project_id TEXT PRIMARY KEY,
                    tier TEXT,
                    classification TEXT NOT NULL CHECK (classification IN ({classifications})),
                    classification_is_manual INTEGER NOT NULL DEFAULT 0,
                    classification_is_auto INTEGER NOT NULL DEFAULT 0,
                    last_auto_update_utc TEXT,
                    change_reason TEXT,
                    created_at_utc TEXT NOT NULL,
                    updated_at_utc TEXT NOT NULL,
                    CHECK (NOT (classification_is_manual = 1 AND classification_is_auto = 1))
                );
                CREATE TABLE IF NOT EXISTS ou_change_log (
                    change_id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    change_seq INTEGER NOT NULL,
                    old_value TEXT CHECK (old_value IS NULL OR old_value IN ({classifications})),
                    new_value TEXT NOT NULL CHECK (new_value IN ({classifications})),
                    reason TEXT NOT NULL,
                    rule_applied TEXT NOT NULL CHECK (rule_applied IN ({rules})),
                    applied_by TEXT,
                    applied_at_utc TEXT NOT NULL,
                    was_manual_override INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (project_id, change_seq)
                );
                CREATE INDEX IF NOT EXISTS ix_ou_change_log_applied
                    ON ou_change_log (applied_at_utc, project_id, change_seq);
                CREATE TABLE IF NOT EXISTS ou_classification_backup (
                    project_id TEXT PRIMARY KEY,
                    classification TEXT NOT NULL,
                    snapshot_id TEXT NOT NULL,
                    captured_at_utc TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS ou_project_signals (
                    project_id TEXT PRIMARY KEY,
                    has_eba_primary_contractor INTEGER NOT NULL DEFAULT 0,
                    has_patch_assignment INTEGER NOT NULL DEFAULT 0,
                    updated_at_utc TEXT NOT NULL
                );
                """,
            )


def deterministic_change_id(*, project_id: str, change_seq: int) -> str:
    material = f"{CHANGE_ID_RECIPE_V1}|{project_id}|{int(change_seq)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def deterministic_snapshot_id(*, captured_at_utc: str, project_count: int) -> str:
    material = f"{SNAPSHOT_ID_RECIPE_V1}|{captured_at_utc}|{int(project_count)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]


def utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _sqlite_path(locator: str) -> str:
    if locator.startswith("sqlite:///"):
        return locator[len("sqlite:///") :]
    if locator.startswith("sqlite://"):
        return locator[len("sqlite://") :]
    return locator


def _render_sql(sql: str, backend: str) -> str:
    rendered = sql
    placeholder = "%s" if backend == "postgres" else "?"
    for idx in range(1, 31):
        rendered = rendered.replace(f"{{p{idx}}}", placeholder)
    return rendered


def _query_one(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> Any:
    rendered = _render_sql(sql, backend)
    cur = conn.execute(rendered, params) if backend == "sqlite" else conn.cursor().execute(rendered, params)
    return cur.fetchone()


def _query_all(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> list[Any]:
    rendered = _render_sql(sql, backend)
    cur = conn.execute(rendered, params) if backend == "sqlite" else conn.cursor().execute(rendered, params)
    return list(cur.fetchall())


def _execute(conn: Any, backend: str, sql: str, params: tuple[Any, ...]) -> int:
    rendered = _render_sql(sql, backend)
    if backend == "sqlite":
        cur = conn.execute(rendered, params)
    else:
        cur = conn.cursor()
        cur.execute(rendered, params)
    return int(cur.rowcount or 0)


def _execute_script(conn: Any, backend: str, sql: str) -> None:
    if backend == "sqlite":
        conn.executescript(sql)
        return
    statements = [item.strip() for item in sql.split(";") if item.strip()]
    cur = conn.cursor()
    for statement in statements:
        cur.execute(statement)
