import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional
from uuid import uuid4

from .exceptions import DatabaseError
from .models import Encounter, KnownPerson, Task, TaskStatus

_PERSON_FIELDS = ("name", "relationship", "face_encoding", "photo")
_TASK_FIELDS = ("name", "description", "scheduled_time", "location", "status")


def _now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def parse_scheduled_time(value: str | datetime) -> datetime:
    """Parse a stored timestamp, treating naive values as local time."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


class CompanionDatabase:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize(self) -> None:
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS known_people (
                        id TEXT PRIMARY KEY,
                        owner_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        relationship TEXT,
                        face_encoding TEXT,
                        photo TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS tasks (
                        id TEXT PRIMARY KEY,
                        owner_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        description TEXT,
                        scheduled_time TEXT NOT NULL,
                        location TEXT,
                        status TEXT NOT NULL DEFAULT 'pending',
                        completed_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    -- Append-only log of unknown-face encounters.
                    CREATE TABLE IF NOT EXISTS encounters (
                        id TEXT PRIMARY KEY,
                        owner_id TEXT NOT NULL,
                        encounter_time TEXT NOT NULL,
                        action TEXT NOT NULL,
                        snapshot TEXT,
                        saved_as_known INTEGER NOT NULL DEFAULT 0,
                        notes TEXT
                    );
                    """
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to initialize database: {exc}") from exc

    # Known people

    def create_known_person(
        self,
        owner_id: str,
        name: str,
        relationship: Optional[str] = None,
        face_encoding: Optional[str] = None,
        photo: Optional[str] = None,
    ) -> KnownPerson:
        if not name.strip():
            raise DatabaseError("Person name cannot be empty.")

        person_id = uuid4().hex
        now = _now()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO known_people (
                        id, owner_id, name, relationship, face_encoding, photo, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (person_id, owner_id, name.strip(), relationship, face_encoding, photo, now, now),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save person {name}: {exc}") from exc

        return KnownPerson(
            id=person_id,
            owner_id=owner_id,
            name=name.strip(),
            relationship=relationship,
            face_encoding=face_encoding,
            photo=photo,
            created_at=now,
            updated_at=now,
        )

    def get_known_person(self, person_id: str) -> Optional[KnownPerson]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM known_people WHERE id = ?", (person_id,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load person {person_id}: {exc}") from exc
        return self._row_to_person(row) if row is not None else None

    def update_known_person(self, person_id: str, **updates: Any) -> Optional[KnownPerson]:
        self._apply_updates("known_people", person_id, _PERSON_FIELDS, updates)
        return self.get_known_person(person_id)

    def delete_known_person(self, person_id: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM known_people WHERE id = ?", (person_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete person {person_id}: {exc}") from exc

    def list_known_people(self, owner_id: str) -> List[KnownPerson]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM known_people
                    WHERE owner_id = ?
                    ORDER BY created_at DESC, rowid DESC
                    """,
                    (owner_id,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load known people: {exc}") from exc
        return [self._row_to_person(row) for row in rows]

    # Tasks

    def create_task(
        self,
        owner_id: str,
        name: str,
        scheduled_time: datetime,
        location: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Task:
        if not name.strip():
            raise DatabaseError("Task name cannot be empty.")

        task_id = uuid4().hex
        now = _now()
        scheduled = parse_scheduled_time(scheduled_time)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tasks (
                        id, owner_id, name, description, scheduled_time, location, status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_id,
                        owner_id,
                        name.strip(),
                        description,
                        scheduled.isoformat(timespec="seconds"),
                        location,
                        TaskStatus.PENDING.value,
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to save task {name}: {exc}") from exc

        task = self.get_task(task_id)
        if task is None:
            raise DatabaseError(f"Task {task_id} vanished right after insert.")
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load task {task_id}: {exc}") from exc
        return self._row_to_task(row) if row is not None else None

    def update_task(self, task_id: str, **updates: Any) -> Optional[Task]:
        if "scheduled_time" in updates:
            updates["scheduled_time"] = parse_scheduled_time(updates["scheduled_time"]).isoformat(timespec="seconds")
        if "status" in updates:
            updates["status"] = TaskStatus(updates["status"]).value
        self._apply_updates("tasks", task_id, _TASK_FIELDS, updates)
        return self.get_task(task_id)

    def set_task_status(self, task_id: str, status: TaskStatus | str) -> Optional[Task]:
        status = TaskStatus(status)
        completed_at = None if status == TaskStatus.PENDING else _now()
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE tasks SET status = ?, completed_at = ?, updated_at = ? WHERE id = ?",
                    (status.value, completed_at, _now(), task_id),
                )
                if cursor.rowcount == 0:
                    return None
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to update task {task_id}: {exc}") from exc
        return self.get_task(task_id)

    def delete_task(self, task_id: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to delete task {task_id}: {exc}") from exc

    def list_tasks(self, owner_id: str, status: Optional[TaskStatus | str] = None) -> List[Task]:
        sql = "SELECT * FROM tasks WHERE owner_id = ?"
        params: List[Any] = [owner_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(TaskStatus(status).value)
        sql += " ORDER BY scheduled_time ASC"

        try:
            with self._connect() as conn:
                rows = conn.execute(sql, tuple(params)).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load tasks: {exc}") from exc
        return [self._row_to_task(row) for row in rows]

    # Encounters

    def create_encounter(
        self,
        owner_id: str,
        action: str = "detected",
        snapshot: Optional[str] = None,
        notes: Optional[str] = None,
        encounter_time: Optional[datetime] = None,
    ) -> Encounter:
        encounter = Encounter(
            id=uuid4().hex,
            owner_id=owner_id,
            encounter_time=(encounter_time or datetime.now().astimezone()).isoformat(timespec="seconds"),
            action=action,
            snapshot=snapshot,
            notes=notes,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO encounters (id, owner_id, encounter_time, action, snapshot, saved_as_known, notes)
                    VALUES (?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        encounter.id,
                        encounter.owner_id,
                        encounter.encounter_time,
                        encounter.action,
                        encounter.snapshot,
                        encounter.notes,
                    ),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to log encounter: {exc}") from exc
        return encounter

    def list_encounters(self, owner_id: str, limit: int = 50) -> List[Encounter]:
        safe_limit = max(1, min(10_000, int(limit)))
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM encounters
                    WHERE owner_id = ?
                    ORDER BY encounter_time DESC, rowid DESC
                    LIMIT ?
                    """,
                    (owner_id, safe_limit),
                ).fetchall()
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to load encounters: {exc}") from exc

        return [
            Encounter(
                id=row["id"],
                owner_id=row["owner_id"],
                encounter_time=row["encounter_time"],
                action=row["action"],
                snapshot=row["snapshot"],
                saved_as_known=bool(row["saved_as_known"]),
                notes=row["notes"],
            )
            for row in rows
        ]

    def _apply_updates(self, table: str, row_id: str, allowed: tuple[str, ...], updates: dict[str, Any]) -> None:
        unknown = set(updates) - set(allowed)
        if unknown:
            raise DatabaseError(f"Unsupported fields for {table}: {', '.join(sorted(unknown))}")
        if not updates:
            return

        columns = sorted(updates)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params = [updates[column] for column in columns]
        params.extend([_now(), row_id])
        try:
            with self._connect() as conn:
                conn.execute(f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?", tuple(params))
        except sqlite3.Error as exc:
            raise DatabaseError(f"Failed to update {table} row {row_id}: {exc}") from exc

    @staticmethod
    def _row_to_person(row: sqlite3.Row) -> KnownPerson:
        return KnownPerson(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            relationship=row["relationship"],
            face_encoding=row["face_encoding"],
            photo=row["photo"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row["description"],
            scheduled_time=parse_scheduled_time(row["scheduled_time"]),
            location=row["location"],
            status=TaskStatus(row["status"]),
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
