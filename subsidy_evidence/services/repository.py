"""Evidence persistence: an in-memory store and a SQLite-backed one.

Both satisfy ``EvidenceRepository``.  The SQLite store keeps ``content``,
``metadata`` and ``security_scan`` as JSON text columns and ``status`` as a
constrained TEXT column.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Protocol

from subsidy_evidence.config import settings
from subsidy_evidence.ingestion.schemas import (
    Evidence,
    EvidenceMetadata,
    EvidenceSource,
    EvidenceStatus,
    EvidenceType,
    ExtractedContent,
    SecurityScanResult,
)

logger = logging.getLogger(__name__)

TABLE_NAME = "evidence"


class EvidenceRepository(Protocol):
    def create(self, evidence: Evidence) -> Evidence: ...

    def find(self, evidence_id: str) -> Evidence | None: ...

    def update(self, evidence: Evidence) -> Evidence: ...

    def delete(self, evidence_id: str) -> bool: ...

    def list(
        self,
        *,
        type: EvidenceType | None = None,
        source: EvidenceSource | None = None,
        status: EvidenceStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Evidence]: ...


# ── In-memory ────────────────────────────────────────────────────────────

class InMemoryEvidenceRepository:
    def __init__(self) -> None:
        self._items: dict[str, Evidence] = {}

    def create(self, evidence: Evidence) -> Evidence:
        if evidence.id in self._items:
            raise ValueError(f"Evidence {evidence.id} already exists")
        self._items[evidence.id] = evidence.model_copy(deep=True)
        return evidence

    def find(self, evidence_id: str) -> Evidence | None:
        item = self._items.get(evidence_id)
        return item.model_copy(deep=True) if item is not None else None

    def update(self, evidence: Evidence) -> Evidence:
        if evidence.id not in self._items:
            raise KeyError(evidence.id)
        self._items[evidence.id] = evidence.model_copy(deep=True)
        return evidence

    def delete(self, evidence_id: str) -> bool:
        return self._items.pop(evidence_id, None) is not None

    def list(
        self,
        *,
        type: EvidenceType | None = None,
        source: EvidenceSource | None = None,
        status: EvidenceStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Evidence]:
        items = [
            e for e in self._items.values()
            if (type is None or e.type is type)
            and (source is None or e.source is source)
            and (status is None or e.status is status)
        ]
        items.sort(key=lambda e: e.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return [e.model_copy(deep=True) for e in items[offset:end]]


# ── SQLite ───────────────────────────────────────────────────────────────

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    id                  TEXT PRIMARY KEY,
    type                TEXT NOT NULL,
    source              TEXT NOT NULL,
    filename            TEXT NOT NULL DEFAULT '',
    mime_type           TEXT NOT NULL DEFAULT '',
    size                INTEGER NOT NULL DEFAULT 0,
    content             TEXT NOT NULL,
    metadata            TEXT NOT NULL,
    status              TEXT NOT NULL CHECK (status IN ('PENDING', 'COMPLETED', 'FAILED')),
    security_scan       TEXT,
    error               TEXT NOT NULL DEFAULT '',
    previous_attempt_id TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
)
"""

_COLUMNS = (
    "id", "type", "source", "filename", "mime_type", "size", "content", "metadata",
    "status", "security_scan", "error", "previous_attempt_id", "created_at", "updated_at",
)


class SqliteEvidenceRepository:
    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path or settings.sqlite_path)
        with self._get_connection() as conn:
            conn.execute(_SCHEMA)
        logger.info("Evidence repository ready at %s.", self.path)

    def _get_connection(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path))
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _to_row(e: Evidence) -> tuple:
        return (
            e.id,
            e.type.value,
            e.source.value,
            e.filename,
            e.mime_type,
            e.size,
            e.content.model_dump_json(),
            e.metadata.model_dump_json(),
            e.status.value,
            e.security_scan.model_dump_json() if e.security_scan else None,
            e.error,
            e.previous_attempt_id,
            e.created_at.isoformat(),
            e.updated_at.isoformat(),
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Evidence:
        return Evidence(
            id=row["id"],
            type=EvidenceType(row["type"]),
            source=EvidenceSource(row["source"]),
            filename=row["filename"],
            mime_type=row["mime_type"],
            size=row["size"],
            content=ExtractedContent.model_validate_json(row["content"]),
            metadata=EvidenceMetadata.model_validate_json(row["metadata"]),
            status=EvidenceStatus(row["status"]),
            security_scan=(
                SecurityScanResult.model_validate_json(row["security_scan"])
                if row["security_scan"] else None
            ),
            error=row["error"],
            previous_attempt_id=row["previous_attempt_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create(self, evidence: Evidence) -> Evidence:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        conn = self._get_connection()
        try:
            with conn:
                conn.execute(
                    f"INSERT INTO {TABLE_NAME} ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                    self._to_row(evidence),
                )
        finally:
            conn.close()
        return evidence

    def find(self, evidence_id: str) -> Evidence | None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                f"SELECT * FROM {TABLE_NAME} WHERE id = ?", (evidence_id,)
            ).fetchone()
        finally:
            conn.close()
        return self._from_row(row) if row else None

    def update(self, evidence: Evidence) -> Evidence:
        assignments = ", ".join(f"{c} = ?" for c in _COLUMNS[1:])
        row = self._to_row(evidence)
        conn = self._get_connection()
        try:
            with conn:
                cursor = conn.execute(
                    f"UPDATE {TABLE_NAME} SET {assignments} WHERE id = ?",
                    row[1:] + (evidence.id,),
                )
        finally:
            conn.close()
        if cursor.rowcount == 0:
            raise KeyError(evidence.id)
        return evidence

    def delete(self, evidence_id: str) -> bool:
        conn = self._get_connection()
        try:
            with conn:
                cursor = conn.execute(f"DELETE FROM {TABLE_NAME} WHERE id = ?", (evidence_id,))
        finally:
            conn.close()
        return cursor.rowcount > 0

    def list(
        self,
        *,
        type: EvidenceType | None = None,
        source: EvidenceSource | None = None,
        status: EvidenceStatus | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Evidence]:
        clauses: list[str] = []
        params: list = []
        for column, value in (("type", type), ("source", source), ("status", status)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT * FROM {TABLE_NAME} {where} ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else limit, offset])

        conn = self._get_connection()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [self._from_row(r) for r in rows]
