from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import ArtifactNotFound, DelegationNotFound, IntegrityError
from .schema import (
    Artifact,
    DelegationEvent,
    DelegationRecord,
    DelegationStatus,
    PrimitiveKind,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dumps(value: Any) -> str:
    # Canonical JSON so that repeated reads are byte-identical.
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


@dataclass
class ManyResult:
    """Partial lookup result: found artifacts plus the ids that were missing."""

    artifacts: List[Artifact] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


class ArtifactStore:
    """Append-only SQLite store for artifacts, fetch cache and delegations.

    One connection is shared across threads; all writes are serialized by a
    lock and committed in a single transaction before returning.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA synchronous = FULL")
        self._lock = threading.RLock()
        self._ensure_schema()

    @property
    def path(self) -> str:
        return self._path

    def __enter__(self) -> "ArtifactStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()

            # Artifact log; seq gives the global commit order
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS artifacts (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    context_id TEXT NOT NULL,
                    primitive TEXT NOT NULL,
                    input_json TEXT NOT NULL,
                    output_json TEXT NOT NULL,
                    source_ids_json TEXT NOT NULL,
                    metadata_json TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_artifacts_context
                ON artifacts(context_id, seq)
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_artifacts_primitive
                ON artifacts(primitive)
                """
            )

            # Reverse index for descendant queries, written with each artifact
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS artifact_sources (
                    artifact_id TEXT NOT NULL REFERENCES artifacts(id),
                    source_id TEXT NOT NULL REFERENCES artifacts(id),
                    position INTEGER NOT NULL,
                    PRIMARY KEY (artifact_id, source_id)
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_artifact_sources_source
                ON artifact_sources(source_id)
                """
            )

            # Connector fetch cache for observe's staleness policy
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS fetch_cache (
                    connector TEXT NOT NULL,
                    query_key TEXT NOT NULL,
                    origin TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    retrieved_at TEXT NOT NULL,
                    PRIMARY KEY (connector, query_key)
                )
                """
            )

            # Delegation work orders and their transition history
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS delegations (
                    task_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    data_json TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_delegations_status
                ON delegations(status)
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS delegation_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    from_status TEXT,
                    to_status TEXT NOT NULL,
                    forced INTEGER NOT NULL DEFAULT 0,
                    payload_json TEXT NOT NULL,
                    at TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_delegation_events_task
                ON delegation_events(task_id)
                """
            )

    # =========================================================================
    # Artifacts
    # =========================================================================

    def put(self, artifact: Artifact) -> Artifact:
        """
        Commit a new artifact and return it with created_at and seq stamped.

        Raises IntegrityError if the id already exists, if a source id is
        repeated, or if any source id is not already in the store. Nothing is
        written when the call fails.
        """
        if len(set(artifact.source_ids)) != len(artifact.source_ids):
            raise IntegrityError(
                "source_ids must not repeat",
                primitive=artifact.primitive.value,
                context_id=artifact.context_id,
            )

        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                if self._exists(cur, artifact.id):
                    raise IntegrityError(
                        f"Artifact {artifact.id} already exists",
                        primitive=artifact.primitive.value,
                        context_id=artifact.context_id,
                        source_id=artifact.id,
                    )
                for source_id in artifact.source_ids:
                    if not self._exists(cur, source_id):
                        raise IntegrityError(
                            f"Source {source_id} does not exist",
                            primitive=artifact.primitive.value,
                            context_id=artifact.context_id,
                            source_id=source_id,
                        )

                created_at = utc_now()
                cur.execute(
                    "SELECT MAX(created_at) AS latest FROM artifacts WHERE context_id = ?",
                    (artifact.context_id,),
                )
                latest = cur.fetchone()["latest"]
                if latest is not None:
                    created_at = max(created_at, datetime.fromisoformat(latest))

                try:
                    cur.execute(
                        """
                        INSERT INTO artifacts (
                            id,
                            context_id,
                            primitive,
                            input_json,
                            output_json,
                            source_ids_json,
                            metadata_json,
                            created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            artifact.id,
                            artifact.context_id,
                            artifact.primitive.value,
                            _dumps(artifact.input),
                            _dumps(artifact.output),
                            json.dumps(artifact.source_ids),
                            _dumps(artifact.metadata),
                            created_at.isoformat(),
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise IntegrityError(
                        f"Artifact {artifact.id} rejected: {exc}",
                        primitive=artifact.primitive.value,
                        context_id=artifact.context_id,
                        source_id=artifact.id,
                    ) from exc
                seq = cur.lastrowid
                cur.executemany(
                    """
                    INSERT INTO artifact_sources (artifact_id, source_id, position)
                    VALUES (?, ?, ?)
                    """,
                    [(artifact.id, sid, pos) for pos, sid in enumerate(artifact.source_ids)],
                )
                cur.execute("COMMIT")
            except BaseException:
                cur.execute("ROLLBACK")
                logger.debug("Rolled back commit of %s in context %s", artifact.id, artifact.context_id)
                raise

        logger.debug("Committed %s in context %s (seq=%s)", artifact.id, artifact.context_id, seq)
        return artifact.model_copy(update={"created_at": created_at, "seq": seq})

    def _exists(self, cur: sqlite3.Cursor, artifact_id: str) -> bool:
        cur.execute("SELECT 1 FROM artifacts WHERE id = ? LIMIT 1", (artifact_id,))
        return cur.fetchone() is not None

    def exists(self, artifact_id: str) -> bool:
        with self._lock:
            return self._exists(self._conn.cursor(), artifact_id)

    def _row_to_artifact(self, row: sqlite3.Row) -> Artifact:
        return Artifact(
            id=row["id"],
            context_id=row["context_id"],
            primitive=row["primitive"],
            input=json.loads(row["input_json"]),
            source_ids=json.loads(row["source_ids_json"]),
            output=json.loads(row["output_json"]),
            metadata=json.loads(row["metadata_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            seq=row["seq"],
        )

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(sql, tuple(params))
            return cur.fetchall()

    def get(self, artifact_id: str) -> Artifact:
        rows = self._query("SELECT * FROM artifacts WHERE id = ?", (artifact_id,))
        if not rows:
            raise ArtifactNotFound(f"Artifact {artifact_id} not found", source_id=artifact_id)
        return self._row_to_artifact(rows[0])

    def get_many(self, artifact_ids: List[str]) -> ManyResult:
        """Look up several ids at once; missing ids are reported, not raised."""
        if not artifact_ids:
            return ManyResult()
        placeholders = ",".join("?" for _ in artifact_ids)
        rows = self._query(f"SELECT * FROM artifacts WHERE id IN ({placeholders})", artifact_ids)
        found = {row["id"]: self._row_to_artifact(row) for row in rows}
        result = ManyResult()
        for artifact_id in artifact_ids:
            if artifact_id in found:
                result.artifacts.append(found[artifact_id])
            else:
                result.missing.append(artifact_id)
        return result

    def list_by_context(
        self,
        context_id: str,
        limit: Optional[int] = None,
        order: str = "recency",
    ) -> List[Artifact]:
        """
        List artifacts of one context.

        order="recency" returns newest first; order="commit" returns oldest first.
        """
        if order not in ("recency", "commit"):
            raise ValueError(f"Unknown order: {order}")
        direction = "DESC" if order == "recency" else "ASC"
        query = f"SELECT * FROM artifacts WHERE context_id = ? ORDER BY seq {direction}"
        params: List[Any] = [context_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return [self._row_to_artifact(row) for row in self._query(query, params)]

    def list_by_primitive(
        self,
        primitive: Union[PrimitiveKind, str],
        context_id: Optional[str] = None,
    ) -> List[Artifact]:
        kind = PrimitiveKind(primitive)
        query = "SELECT * FROM artifacts WHERE primitive = ?"
        params: List[Any] = [kind.value]
        if context_id:
            query += " AND context_id = ?"
            params.append(context_id)
        query += " ORDER BY seq"
        return [self._row_to_artifact(row) for row in self._query(query, params)]

    def list_contexts(self) -> List[Dict[str, Any]]:
        """Summaries of every context that has at least one artifact."""
        rows = self._query(
            """
            SELECT context_id,
                   COUNT(*) AS artifact_count,
                   MIN(created_at) AS first_at,
                   MAX(created_at) AS last_at
            FROM artifacts
            GROUP BY context_id
            ORDER BY MAX(seq) DESC
            """
        )
        return [dict(row) for row in rows]

    def source_ids_of(self, artifact_id: str) -> List[str]:
        rows = self._query(
            "SELECT source_id FROM artifact_sources WHERE artifact_id = ? ORDER BY position",
            (artifact_id,),
        )
        return [row["source_id"] for row in rows]

    def descendant_ids(self, artifact_id: str) -> List[str]:
        """Direct consumers of an artifact, in commit order."""
        rows = self._query(
            """
            SELECT s.artifact_id
            FROM artifact_sources s
            JOIN artifacts a ON a.id = s.artifact_id
            WHERE s.source_id = ?
            ORDER BY a.seq
            """,
            (artifact_id,),
        )
        return [row["artifact_id"] for row in rows]

    # =========================================================================
    # Fetch cache: observe's external retrieval
    # =========================================================================

    def cache_fetch(
        self,
        connector: str,
        query_key: str,
        origin: str,
        payload: Any,
        retrieved_at: datetime,
    ) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO fetch_cache (connector, query_key, origin, payload_json, retrieved_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(connector, query_key) DO UPDATE SET
                    origin=excluded.origin,
                    payload_json=excluded.payload_json,
                    retrieved_at=excluded.retrieved_at
                """,
                (connector, query_key, origin, json.dumps(payload), retrieved_at.isoformat()),
            )

    def load_fetch(self, connector: str, query_key: str) -> Optional[Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM fetch_cache WHERE connector = ? AND query_key = ?",
            (connector, query_key),
        )
        if not rows:
            return None
        row = rows[0]
        return {
            "origin": row["origin"],
            "payload": json.loads(row["payload_json"]),
            "retrieved_at": datetime.fromisoformat(row["retrieved_at"]),
        }

    # =========================================================================
    # Delegations
    # =========================================================================

    def save_delegation(
        self,
        record: DelegationRecord,
        event: DelegationEvent,
        expected_status: Optional[DelegationStatus] = None,
    ) -> bool:
        """
        Write a delegation record and its transition event in one transaction.

        With expected_status=None the record must be new; otherwise the row is
        only updated while it still holds expected_status. Returns False, with
        nothing written, when that condition does not hold.
        """
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                if expected_status is None:
                    cur.execute(
                        """
                        INSERT INTO delegations (task_id, status, data_json)
                        VALUES (?, ?, ?)
                        ON CONFLICT(task_id) DO NOTHING
                        """,
                        (record.task_id, record.status.value, record.model_dump_json()),
                    )
                else:
                    cur.execute(
                        """
                        UPDATE delegations SET status = ?, data_json = ?
                        WHERE task_id = ? AND status = ?
                        """,
                        (
                            record.status.value,
                            record.model_dump_json(),
                            record.task_id,
                            expected_status.value,
                        ),
                    )
                if cur.rowcount != 1:
                    cur.execute("ROLLBACK")
                    logger.debug("Delegation %s not written: status moved", record.task_id)
                    return False
                cur.execute(
                    """
                    INSERT INTO delegation_events (task_id, from_status, to_status, forced, payload_json, at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.task_id,
                        event.from_status.value if event.from_status else None,
                        event.to_status.value,
                        int(event.forced),
                        _dumps(event.payload),
                        event.at.isoformat(),
                    ),
                )
                cur.execute("COMMIT")
            except BaseException:
                cur.execute("ROLLBACK")
                raise
        return True

    def load_delegation(self, task_id: str) -> DelegationRecord:
        rows = self._query("SELECT data_json FROM delegations WHERE task_id = ?", (task_id,))
        if not rows:
            raise DelegationNotFound(f"Delegation {task_id} not found", details={"task_id": task_id})
        return DelegationRecord.model_validate_json(rows[0]["data_json"])

    def list_delegations(self, status: Optional[DelegationStatus] = None) -> List[DelegationRecord]:
        if status is None:
            rows = self._query("SELECT data_json FROM delegations ORDER BY rowid")
        else:
            rows = self._query(
                "SELECT data_json FROM delegations WHERE status = ? ORDER BY rowid",
                (DelegationStatus(status).value,),
            )
        return [DelegationRecord.model_validate_json(row["data_json"]) for row in rows]

    def delegation_events(self, task_id: str) -> List[DelegationEvent]:
        rows = self._query(
            "SELECT * FROM delegation_events WHERE task_id = ? ORDER BY seq",
            (task_id,),
        )
        return [
            DelegationEvent(
                task_id=row["task_id"],
                from_status=row["from_status"],
                to_status=row["to_status"],
                forced=bool(row["forced"]),
                payload=json.loads(row["payload_json"]),
                at=datetime.fromisoformat(row["at"]),
            )
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
