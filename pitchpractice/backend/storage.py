import json
import logging
import threading
import uuid
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

import psycopg
from psycopg.types.json import Jsonb

from .constants import UNSET
from .models import ChunkRecord, EntitlementRecord, RubricRecord, RunRecord, utc_now
from .templates import DEFAULT_TEMPLATES, template_rubric_json


logger = logging.getLogger("uvicorn.error")

RUBRIC_COLUMNS = tuple(f.name for f in fields(RubricRecord))
RUN_COLUMNS = tuple(f.name for f in fields(RunRecord))
CHUNK_COLUMNS = tuple(f.name for f in fields(ChunkRecord))
ENTITLEMENT_COLUMNS = tuple(f.name for f in fields(EntitlementRecord))
JSON_COLUMNS = {"rubric_json", "criteria", "rubric_snapshot_json", "analysis_json", "delivery_metrics"}

RUBRIC_UPDATABLE = {
    "name",
    "title",
    "description",
    "rubric_json",
    "criteria",
    "target_duration_seconds",
    "max_duration_seconds",
}
RUN_UPDATABLE = set(RUN_COLUMNS) - {"id", "created_at"}
ENTITLEMENT_UPDATABLE = {"user_id", "session_id", "plan", "stripe_price_id", "stripe_customer_id", "expires_at"}


def new_id() -> str:
    return str(uuid.uuid4())


def normalize_database_url(database_url: str) -> str:
    if database_url.startswith("postgres://"):
        return "postgresql://" + database_url[len("postgres://") :]
    return database_url


def build_template_record(template: dict) -> RubricRecord:
    now = utc_now()
    rubric_json = template_rubric_json(template)
    return RubricRecord(
        id=new_id(),
        name=template["name"],
        title=template["name"],
        description=template.get("description"),
        is_template=True,
        rubric_json=rubric_json,
        criteria=rubric_json["criteria"],
        target_duration_seconds=template.get("target_duration_seconds"),
        max_duration_seconds=template.get("max_duration_seconds"),
        created_at=now,
        updated_at=now,
    )


def _check_changes(changes: Dict[str, Any], allowed: set, kind: str) -> Dict[str, Any]:
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise ValueError(f"Unknown {kind} fields: {', '.join(unknown)}")
    return {key: value for key, value in changes.items() if value is not UNSET}


class Store(Protocol):
    storage_name: str

    def insert_rubric(self, record: RubricRecord) -> RubricRecord:
        pass

    def get_rubric(self, rubric_id: str) -> Optional[RubricRecord]:
        pass

    def list_rubrics(self, *, templates: bool, user_id: Optional[str] = None) -> List[RubricRecord]:
        pass

    def get_default_template(self) -> Optional[RubricRecord]:
        pass

    def update_rubric(self, rubric_id: str, **changes: Any) -> RubricRecord:
        pass

    def delete_rubric(self, rubric_id: str) -> None:
        pass

    def insert_run(self, record: RunRecord) -> RunRecord:
        pass

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        pass

    def update_run(self, run_id: str, **changes: Any) -> RunRecord:
        pass

    def delete_run(self, run_id: str) -> None:
        pass

    def list_runs(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        rubric_id: Optional[str] = None,
        exclude_run_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[RunRecord]:
        pass

    def assign_run_owner(self, run_id: str, user_id: str) -> bool:
        pass

    def claim_session_runs(self, session_id: str, user_id: str) -> int:
        pass

    def upsert_chunk(
        self,
        run_id: str,
        *,
        chunk_index: int,
        start_ms: int,
        end_ms: int,
        audio_path: str,
    ) -> ChunkRecord:
        pass

    def get_chunk(self, chunk_id: str) -> Optional[ChunkRecord]:
        pass

    def list_chunks(self, run_id: str) -> List[ChunkRecord]:
        pass

    def update_chunk(
        self,
        chunk_id: str,
        *,
        status: Optional[str] = None,
        transcript: object = UNSET,
        error_message: object = UNSET,
    ) -> None:
        pass

    def get_entitlement(self, checkout_session_id: str) -> Optional[EntitlementRecord]:
        pass

    def insert_entitlement(self, record: EntitlementRecord) -> bool:
        pass

    def update_entitlement(self, checkout_session_id: str, **changes: Any) -> EntitlementRecord:
        pass

    def list_active_entitlements(
        self,
        *,
        user_id: Optional[str],
        session_id: Optional[str],
        now: datetime,
    ) -> List[EntitlementRecord]:
        pass

    def latest_customer_id(self, user_id: str) -> Optional[str]:
        pass


class InMemoryStore:
    storage_name = "memory"

    def __init__(self, seed_templates: bool = True) -> None:
        self._rubrics: Dict[str, RubricRecord] = {}
        self._runs: Dict[str, RunRecord] = {}
        self._chunks: Dict[str, ChunkRecord] = {}
        self._entitlements: Dict[str, EntitlementRecord] = {}
        self._lock = threading.Lock()
        if seed_templates:
            for template in DEFAULT_TEMPLATES:
                self.insert_rubric(build_template_record(template))

    @staticmethod
    def _newest_first(records: List[Any]) -> List[Any]:
        # Stable sort, then reverse so ties keep the most recent insertion first.
        return list(reversed(sorted(records, key=lambda record: record.created_at)))

    def insert_rubric(self, record: RubricRecord) -> RubricRecord:
        with self._lock:
            self._rubrics[record.id] = record
            return replace(record)

    def get_rubric(self, rubric_id: str) -> Optional[RubricRecord]:
        with self._lock:
            record = self._rubrics.get(rubric_id)
            return replace(record) if record else None

    def list_rubrics(self, *, templates: bool, user_id: Optional[str] = None) -> List[RubricRecord]:
        with self._lock:
            if templates:
                rows = [r for r in self._rubrics.values() if r.is_template]
                return [replace(r) for r in sorted(rows, key=lambda r: r.created_at)]
            rows = [r for r in self._rubrics.values() if not r.is_template and r.user_id == user_id]
            return [replace(r) for r in self._newest_first(rows)]

    def get_default_template(self) -> Optional[RubricRecord]:
        templates = self.list_rubrics(templates=True)
        return templates[0] if templates else None

    def update_rubric(self, rubric_id: str, **changes: Any) -> RubricRecord:
        values = _check_changes(changes, RUBRIC_UPDATABLE, "rubric")
        with self._lock:
            record = self._rubrics[rubric_id]
            for key, value in values.items():
                setattr(record, key, value)
            record.updated_at = utc_now()
            return replace(record)

    def delete_rubric(self, rubric_id: str) -> None:
        with self._lock:
            self._rubrics.pop(rubric_id, None)

    def insert_run(self, record: RunRecord) -> RunRecord:
        with self._lock:
            self._runs[record.id] = record
            return replace(record)

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            record = self._runs.get(run_id)
            return replace(record) if record else None

    def update_run(self, run_id: str, **changes: Any) -> RunRecord:
        values = _check_changes(changes, RUN_UPDATABLE, "run")
        with self._lock:
            record = self._runs[run_id]
            for key, value in values.items():
                setattr(record, key, value)
            return replace(record)

    def delete_run(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)
            for chunk_id in [c.id for c in self._chunks.values() if c.run_id == run_id]:
                self._chunks.pop(chunk_id, None)

    def list_runs(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        rubric_id: Optional[str] = None,
        exclude_run_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[RunRecord]:
        with self._lock:
            rows = [
                run
                for run in self._runs.values()
                if (user_id is None or run.user_id == user_id)
                and (session_id is None or run.session_id == session_id)
                and (rubric_id is None or run.rubric_id == rubric_id)
                and (exclude_run_id is None or run.id != exclude_run_id)
            ]
            rows = self._newest_first(rows)
            if limit is not None:
                rows = rows[:limit]
            return [replace(run) for run in rows]

    def assign_run_owner(self, run_id: str, user_id: str) -> bool:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.user_id is not None:
                return False
            run.user_id = user_id
            return True

    def claim_session_runs(self, session_id: str, user_id: str) -> int:
        claimed = 0
        with self._lock:
            for run in self._runs.values():
                if run.session_id == session_id and run.user_id is None:
                    run.user_id = user_id
                    claimed += 1
        return claimed

    def upsert_chunk(
        self,
        run_id: str,
        *,
        chunk_index: int,
        start_ms: int,
        end_ms: int,
        audio_path: str,
    ) -> ChunkRecord:
        with self._lock:
            for chunk in self._chunks.values():
                if chunk.run_id == run_id and chunk.chunk_index == chunk_index:
                    chunk.start_ms = start_ms
                    chunk.end_ms = end_ms
                    chunk.audio_path = audio_path
                    chunk.status = "uploaded"
                    chunk.transcript = None
                    chunk.error_message = None
                    return replace(chunk)
            chunk = ChunkRecord(
                id=new_id(),
                run_id=run_id,
                chunk_index=chunk_index,
                start_ms=start_ms,
                end_ms=end_ms,
                audio_path=audio_path,
                created_at=utc_now(),
            )
            self._chunks[chunk.id] = chunk
            return replace(chunk)

    def get_chunk(self, chunk_id: str) -> Optional[ChunkRecord]:
        with self._lock:
            chunk = self._chunks.get(chunk_id)
            return replace(chunk) if chunk else None

    def list_chunks(self, run_id: str) -> List[ChunkRecord]:
        with self._lock:
            rows = [c for c in self._chunks.values() if c.run_id == run_id]
            return [replace(c) for c in sorted(rows, key=lambda c: c.chunk_index)]

    def update_chunk(
        self,
        chunk_id: str,
        *,
        status: Optional[str] = None,
        transcript: object = UNSET,
        error_message: object = UNSET,
    ) -> None:
        with self._lock:
            chunk = self._chunks[chunk_id]
            if status is not None:
                chunk.status = status
            if transcript is not UNSET:
                chunk.transcript = transcript
            if error_message is not UNSET:
                chunk.error_message = error_message

    def get_entitlement(self, checkout_session_id: str) -> Optional[EntitlementRecord]:
        with self._lock:
            record = self._entitlements.get(checkout_session_id)
            return replace(record) if record else None

    def insert_entitlement(self, record: EntitlementRecord) -> bool:
        with self._lock:
            if record.stripe_checkout_session_id in self._entitlements:
                return False
            self._entitlements[record.stripe_checkout_session_id] = record
            return True

    def update_entitlement(self, checkout_session_id: str, **changes: Any) -> EntitlementRecord:
        values = _check_changes(changes, ENTITLEMENT_UPDATABLE, "entitlement")
        with self._lock:
            record = self._entitlements[checkout_session_id]
            for key, value in values.items():
                setattr(record, key, value)
            record.updated_at = utc_now()
            return replace(record)

    def list_active_entitlements(
        self,
        *,
        user_id: Optional[str],
        session_id: Optional[str],
        now: datetime,
    ) -> List[EntitlementRecord]:
        if not user_id and not session_id:
            return []
        with self._lock:
            return [
                replace(record)
                for record in self._entitlements.values()
                if ((user_id and record.user_id == user_id) or (session_id and record.session_id == session_id))
                and (record.expires_at is None or record.expires_at > now)
            ]

    def latest_customer_id(self, user_id: str) -> Optional[str]:
        with self._lock:
            rows = [
                record
                for record in self._entitlements.values()
                if record.user_id == user_id and record.stripe_customer_id
            ]
        rows = self._newest_first(rows)
        return rows[0].stripe_customer_id if rows else None


class PostgresStore:
    storage_name = "postgres"

    def __init__(self, database_url: str, seed_templates: bool = True) -> None:
        self._database_url = normalize_database_url(database_url)
        self._ensure_schema()
        if seed_templates:
            self._seed_templates()

    def _connect(self):
        return psycopg.connect(self._database_url, autocommit=True)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS rubrics (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NULL,
                        name TEXT NOT NULL,
                        title TEXT NULL,
                        description TEXT NULL,
                        is_template BOOLEAN NOT NULL DEFAULT FALSE,
                        rubric_json JSONB NULL,
                        criteria JSONB NOT NULL DEFAULT '[]'::jsonb,
                        target_duration_seconds INTEGER NULL,
                        max_duration_seconds INTEGER NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_rubrics_user_id
                    ON rubrics (user_id, created_at DESC)
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS pitch_runs (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL,
                        user_id TEXT NULL,
                        title TEXT NULL,
                        audio_path TEXT NULL,
                        audio_seconds DOUBLE PRECISION NULL,
                        duration_ms INTEGER NULL,
                        transcript TEXT NULL,
                        word_count INTEGER NULL,
                        words_per_minute INTEGER NULL,
                        delivery_metrics JSONB NULL,
                        rubric_id TEXT NULL REFERENCES rubrics(id) ON DELETE SET NULL,
                        rubric_snapshot_json JSONB NULL,
                        pitch_context TEXT NULL,
                        analysis_json JSONB NULL,
                        plan_at_time TEXT NULL,
                        status TEXT NOT NULL,
                        error_message TEXT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_pitch_runs_user_id
                    ON pitch_runs (user_id, created_at DESC)
                    """
                )
                cur.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_pitch_runs_session_id
                    ON pitch_runs (session_id, created_at DESC)
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS run_chunks (
                        id TEXT PRIMARY KEY,
                        run_id TEXT NOT NULL REFERENCES pitch_runs(id) ON DELETE CASCADE,
                        chunk_index INTEGER NOT NULL,
                        start_ms INTEGER NOT NULL,
                        end_ms INTEGER NOT NULL,
                        audio_path TEXT NOT NULL,
                        transcript TEXT NULL,
                        status TEXT NOT NULL DEFAULT 'uploaded',
                        error_message TEXT NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        UNIQUE (run_id, chunk_index)
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS user_entitlements (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NULL,
                        session_id TEXT NULL,
                        plan TEXT NOT NULL CHECK (plan IN ('starter', 'coach', 'daypass')),
                        stripe_checkout_session_id TEXT NOT NULL UNIQUE,
                        stripe_price_id TEXT NULL,
                        stripe_customer_id TEXT NULL,
                        expires_at TIMESTAMPTZ NULL,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_user_entitlements_user_id
                    ON user_entitlements (user_id)
                    """
                )

    def _seed_templates(self) -> None:
        if self.get_default_template() is not None:
            return
        for template in DEFAULT_TEMPLATES:
            self.insert_rubric(build_template_record(template))
        logger.info("storage=postgres seeded_templates count=%s", len(DEFAULT_TEMPLATES))

    @staticmethod
    def _adapt(column: str, value: Any) -> Any:
        if column in JSON_COLUMNS and value is not None:
            return Jsonb(value)
        return value

    @staticmethod
    def _load(column: str, value: Any) -> Any:
        if column in JSON_COLUMNS and isinstance(value, str):
            return json.loads(value)
        return value

    def _insert(self, table: str, columns: Tuple[str, ...], record: Any, conflict: str = "") -> int:
        placeholders = ", ".join(["%s"] * len(columns))
        query = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) {conflict}"
        values = [self._adapt(column, getattr(record, column)) for column in columns]
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(query, values)
                return cur.rowcount

    def _select(self, table: str, columns: Tuple[str, ...], where: str, params: List[Any]) -> List[dict]:
        query = f"SELECT {', '.join(columns)} FROM {table} {where}"
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [
            {column: self._load(column, value) for column, value in zip(columns, row)}
            for row in rows
        ]

    def _update(
        self,
        table: str,
        key_column: str,
        key: str,
        values: Dict[str, Any],
        touch_updated_at: bool = False,
    ) -> None:
        assignments: List[str] = []
        params: List[Any] = []
        for column, value in values.items():
            assignments.append(f"{column} = %s")
            params.append(self._adapt(column, value))
        if touch_updated_at:
            assignments.append("updated_at = NOW()")
        if not assignments:
            return
        params.append(key)
        query = f"UPDATE {table} SET {', '.join(assignments)} WHERE {key_column} = %s"
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                if cur.rowcount == 0:
                    raise KeyError(f"{table} row {key} not found.")

    def insert_rubric(self, record: RubricRecord) -> RubricRecord:
        self._insert("rubrics", RUBRIC_COLUMNS, record)
        return record

    def get_rubric(self, rubric_id: str) -> Optional[RubricRecord]:
        rows = self._select("rubrics", RUBRIC_COLUMNS, "WHERE id = %s", [rubric_id])
        return RubricRecord(**rows[0]) if rows else None

    def list_rubrics(self, *, templates: bool, user_id: Optional[str] = None) -> List[RubricRecord]:
        if templates:
            rows = self._select(
                "rubrics", RUBRIC_COLUMNS, "WHERE is_template ORDER BY created_at ASC", []
            )
        else:
            rows = self._select(
                "rubrics",
                RUBRIC_COLUMNS,
                "WHERE NOT is_template AND user_id = %s ORDER BY created_at DESC",
                [user_id],
            )
        return [RubricRecord(**row) for row in rows]

    def get_default_template(self) -> Optional[RubricRecord]:
        rows = self._select(
            "rubrics", RUBRIC_COLUMNS, "WHERE is_template ORDER BY created_at ASC LIMIT 1", []
        )
        return RubricRecord(**rows[0]) if rows else None

    def update_rubric(self, rubric_id: str, **changes: Any) -> RubricRecord:
        values = _check_changes(changes, RUBRIC_UPDATABLE, "rubric")
        self._update("rubrics", "id", rubric_id, values, touch_updated_at=True)
        record = self.get_rubric(rubric_id)
        if record is None:
            raise KeyError(f"rubrics row {rubric_id} not found.")
        return record

    def delete_rubric(self, rubric_id: str) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM rubrics WHERE id = %s", (rubric_id,))

    def insert_run(self, record: RunRecord) -> RunRecord:
        self._insert("pitch_runs", RUN_COLUMNS, record)
        return record

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        rows = self._select("pitch_runs", RUN_COLUMNS, "WHERE id = %s", [run_id])
        return RunRecord(**rows[0]) if rows else None

    def update_run(self, run_id: str, **changes: Any) -> RunRecord:
        values = _check_changes(changes, RUN_UPDATABLE, "run")
        self._update("pitch_runs", "id", run_id, values)
        record = self.get_run(run_id)
        if record is None:
            raise KeyError(f"pitch_runs row {run_id} not found.")
        return record

    def delete_run(self, run_id: str) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM pitch_runs WHERE id = %s", (run_id,))

    def list_runs(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        rubric_id: Optional[str] = None,
        exclude_run_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[RunRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (("user_id", user_id), ("session_id", session_id), ("rubric_id", rubric_id)):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        if exclude_run_id is not None:
            clauses.append("id <> %s")
            params.append(exclude_run_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        where += " ORDER BY created_at DESC"
        if limit is not None:
            where += " LIMIT %s"
            params.append(int(limit))
        rows = self._select("pitch_runs", RUN_COLUMNS, where, params)
        return [RunRecord(**row) for row in rows]

    def assign_run_owner(self, run_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE pitch_runs SET user_id = %s WHERE id = %s AND user_id IS NULL",
                    (user_id, run_id),
                )
                return cur.rowcount > 0

    def claim_session_runs(self, session_id: str, user_id: str) -> int:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE pitch_runs SET user_id = %s WHERE session_id = %s AND user_id IS NULL",
                    (user_id, session_id),
                )
                return cur.rowcount

    def upsert_chunk(
        self,
        run_id: str,
        *,
        chunk_index: int,
        start_ms: int,
        end_ms: int,
        audio_path: str,
    ) -> ChunkRecord:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO run_chunks (id, run_id, chunk_index, start_ms, end_ms, audio_path, status)
                    VALUES (%s, %s, %s, %s, %s, %s, 'uploaded')
                    ON CONFLICT (run_id, chunk_index) DO UPDATE SET
                        start_ms = EXCLUDED.start_ms,
                        end_ms = EXCLUDED.end_ms,
                        audio_path = EXCLUDED.audio_path,
                        status = 'uploaded',
                        transcript = NULL,
                        error_message = NULL
                    RETURNING {', '.join(CHUNK_COLUMNS)}
                    """,
                    (new_id(), run_id, chunk_index, start_ms, end_ms, audio_path),
                )
                row = cur.fetchone()
        return ChunkRecord(**dict(zip(CHUNK_COLUMNS, row)))

    def get_chunk(self, chunk_id: str) -> Optional[ChunkRecord]:
        rows = self._select("run_chunks", CHUNK_COLUMNS, "WHERE id = %s", [chunk_id])
        return ChunkRecord(**rows[0]) if rows else None

    def list_chunks(self, run_id: str) -> List[ChunkRecord]:
        rows = self._select(
            "run_chunks", CHUNK_COLUMNS, "WHERE run_id = %s ORDER BY chunk_index ASC", [run_id]
        )
        return [ChunkRecord(**row) for row in rows]

    def update_chunk(
        self,
        chunk_id: str,
        *,
        status: Optional[str] = None,
        transcript: object = UNSET,
        error_message: object = UNSET,
    ) -> None:
        values: Dict[str, Any] = {}
        if status is not None:
            values["status"] = status
        if transcript is not UNSET:
            values["transcript"] = transcript
        if error_message is not UNSET:
            values["error_message"] = error_message
        self._update("run_chunks", "id", chunk_id, values)

    def get_entitlement(self, checkout_session_id: str) -> Optional[EntitlementRecord]:
        rows = self._select(
            "user_entitlements",
            ENTITLEMENT_COLUMNS,
            "WHERE stripe_checkout_session_id = %s",
            [checkout_session_id],
        )
        return EntitlementRecord(**rows[0]) if rows else None

    def insert_entitlement(self, record: EntitlementRecord) -> bool:
        inserted = self._insert(
            "user_entitlements",
            ENTITLEMENT_COLUMNS,
            record,
            conflict="ON CONFLICT (stripe_checkout_session_id) DO NOTHING",
        )
        return inserted > 0

    def update_entitlement(self, checkout_session_id: str, **changes: Any) -> EntitlementRecord:
        values = _check_changes(changes, ENTITLEMENT_UPDATABLE, "entitlement")
        self._update(
            "user_entitlements",
            "stripe_checkout_session_id",
            checkout_session_id,
            values,
            touch_updated_at=True,
        )
        record = self.get_entitlement(checkout_session_id)
        if record is None:
            raise KeyError(f"user_entitlements row {checkout_session_id} not found.")
        return record

    def list_active_entitlements(
        self,
        *,
        user_id: Optional[str],
        session_id: Optional[str],
        now: datetime,
    ) -> List[EntitlementRecord]:
        owners: List[str] = []
        params: List[Any] = []
        if user_id:
            owners.append("user_id = %s")
            params.append(user_id)
        if session_id:
            owners.append("session_id = %s")
            params.append(session_id)
        if not owners:
            return []
        params.append(now)
        rows = self._select(
            "user_entitlements",
            ENTITLEMENT_COLUMNS,
            f"WHERE ({' OR '.join(owners)}) AND (expires_at IS NULL OR expires_at > %s)",
            params,
        )
        return [EntitlementRecord(**row) for row in rows]

    def latest_customer_id(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT stripe_customer_id FROM user_entitlements
                    WHERE user_id = %s AND stripe_customer_id IS NOT NULL
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    (user_id,),
                )
                row = cur.fetchone()
                return row[0] if row else None


def build_store(database_url: Optional[str]) -> Store:
    if database_url:
        return PostgresStore(database_url=database_url)
    return InMemoryStore()
