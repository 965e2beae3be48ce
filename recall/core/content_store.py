"""
Content store: the producer-owned record of content items.

The engine only reads content and writes the embedding-related fields
(embedding, status, model version, failure reason). SQLite backs the default
implementation; the maintenance run log and flagged duplicate candidates
live in the same database as append-only tables.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Iterable, List, Optional, Set

from util.logging import logger

from .config import ensure_db_directory
from .models import (
    ContentItem,
    ContentType,
    DuplicateCandidate,
    EmbeddingStatus,
    MaintenanceRun,
    details_from_dict,
    details_to_dict,
)

TITLED_TYPES = (ContentType.FILE.value, ContentType.TRANSCRIPT.value, ContentType.KNOWLEDGE.value)


class IContentStore(ABC):
    """Abstract interface for content item persistence."""

    @abstractmethod
    def add(self, item: ContentItem) -> None:
        pass

    @abstractmethod
    def get(self, item_id: str) -> Optional[ContentItem]:
        pass

    @abstractmethod
    def get_many(self, item_ids: Iterable[str]) -> Dict[str, ContentItem]:
        pass

    @abstractmethod
    def exists_many(self, item_ids: Iterable[str]) -> Set[str]:
        """Subset of the given ids that still exist."""
        pass

    @abstractmethod
    def delete(self, item_id: str) -> bool:
        pass

    @abstractmethod
    def list_unembedded(self, content_type: Optional[ContentType] = None, scope: Optional[str] = None,
                        limit: Optional[int] = None) -> List[ContentItem]:
        """Items whose status is not ready, oldest first."""
        pass

    @abstractmethod
    def list_ready(self, content_type: Optional[ContentType] = None, scope: Optional[str] = None) -> List[ContentItem]:
        pass

    @abstractmethod
    def mark_ready(self, item_id: str, embedding: List[float], model_version: str, chunk_count: int = 1) -> bool:
        """Write the embedding and flip status to ready in one step. False if the item is gone."""
        pass

    @abstractmethod
    def mark_failed(self, item_id: str, reason: str) -> bool:
        pass

    @abstractmethod
    def mark_pending(self, item_id: str, reason: Optional[str] = None) -> bool:
        pass

    @abstractmethod
    def recent_titles(self, scope: Optional[str] = None, limit: int = 50) -> List[str]:
        pass

    @abstractmethod
    def search_text(self, phrase: str, content_types: Optional[Iterable[ContentType]] = None,
                    scope: Optional[str] = None) -> List[ContentItem]:
        pass

    @abstractmethod
    def record_run(self, run: MaintenanceRun) -> None:
        pass

    @abstractmethod
    def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        pass


class SQLiteContentStore(IContentStore):
    """SQLite-backed content store. One connection per operation."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        # Serializes writers; SQLite allows one writer at a time anyway
        self._write_lock = threading.Lock()
        ensure_db_directory(db_path)
        self.init_db()

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a SQLite database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self):
        """Initialize the database with required tables."""
        with self.get_db() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS content_items (
                    id TEXT PRIMARY KEY,
                    scope_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    text TEXT NOT NULL,
                    details TEXT,           -- JSON, shape fixed per type
                    embedding TEXT,         -- JSON vector, only with status 'ready'
                    embedding_status TEXT NOT NULL DEFAULT 'pending',
                    model_version TEXT,
                    failure_reason TEXT,
                    chunk_count INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS maintenance_runs (
                    run_id TEXT PRIMARY KEY,
                    operation TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    summary TEXT NOT NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS duplicate_candidates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    item_id TEXT NOT NULL,
                    duplicate_of TEXT NOT NULL,
                    score REAL NOT NULL,
                    scope_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    flagged_at TEXT NOT NULL
                )
            ''')

            cursor.execute('CREATE INDEX IF NOT EXISTS idx_content_status_created ON content_items(embedding_status, created_at)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_content_scope_type ON content_items(scope_id, type)')

            conn.commit()

    def add(self, item: ContentItem) -> None:
        """Insert or replace a content item."""
        with self._write_lock, self.get_db() as conn:
            conn.execute(
                '''
                INSERT OR REPLACE INTO content_items
                    (id, scope_id, type, text, details, embedding, embedding_status, model_version,
                     failure_reason, chunk_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (
                    item.id,
                    item.scope_id,
                    item.type.value,
                    item.text,
                    json.dumps(details_to_dict(item.details)),
                    json.dumps(item.embedding) if item.embedding is not None else None,
                    item.embedding_status.value,
                    item.model_version,
                    item.failure_reason,
                    item.chunk_count,
                    item.created_at.isoformat(),
                    item.updated_at.isoformat(),
                ),
            )
            conn.commit()

    def get(self, item_id: str) -> Optional[ContentItem]:
        return self.get_many([item_id]).get(item_id)

    def get_many(self, item_ids: Iterable[str]) -> Dict[str, ContentItem]:
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return {}
        rows = []
        with self.get_db() as conn:
            for batch in _batches(ids, 500):
                placeholders = ",".join("?" for _ in batch)
                rows.extend(conn.execute(
                    f"SELECT {_COLUMNS} FROM content_items WHERE id IN ({placeholders})", batch
                ).fetchall())
        items = [_row_to_item(row) for row in rows]
        return {item.id: item for item in items}

    def exists_many(self, item_ids: Iterable[str]) -> Set[str]:
        ids = list(dict.fromkeys(item_ids))
        found = set()
        with self.get_db() as conn:
            for batch in _batches(ids, 500):
                placeholders = ",".join("?" for _ in batch)
                found.update(row[0] for row in conn.execute(
                    f"SELECT id FROM content_items WHERE id IN ({placeholders})", batch
                ))
        return found

    def delete(self, item_id: str) -> bool:
        with self._write_lock, self.get_db() as conn:
            cursor = conn.execute("DELETE FROM content_items WHERE id = ?", (item_id,))
            conn.commit()
            return cursor.rowcount > 0

    def list_unembedded(self, content_type: Optional[ContentType] = None, scope: Optional[str] = None,
                        limit: Optional[int] = None) -> List[ContentItem]:
        query = f"SELECT {_COLUMNS} FROM content_items WHERE embedding_status != ?"
        params: List[Any] = [EmbeddingStatus.READY.value]
        query, params = _scoped(query, params, content_type, scope)
        query += " ORDER BY created_at ASC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self.get_db() as conn:
            return [_row_to_item(row) for row in conn.execute(query, params).fetchall()]

    def list_ready(self, content_type: Optional[ContentType] = None, scope: Optional[str] = None) -> List[ContentItem]:
        query = f"SELECT {_COLUMNS} FROM content_items WHERE embedding_status = ?"
        params: List[Any] = [EmbeddingStatus.READY.value]
        query, params = _scoped(query, params, content_type, scope)
        query += " ORDER BY created_at ASC, id ASC"

        with self.get_db() as conn:
            return [_row_to_item(row) for row in conn.execute(query, params).fetchall()]

    def mark_ready(self, item_id: str, embedding: List[float], model_version: str, chunk_count: int = 1) -> bool:
        # Single UPDATE: vector and status become visible together
        return self._update(
            item_id,
            embedding=json.dumps([float(v) for v in embedding]),
            embedding_status=EmbeddingStatus.READY.value,
            model_version=model_version,
            failure_reason=None,
            chunk_count=chunk_count,
        )

    def mark_failed(self, item_id: str, reason: str) -> bool:
        return self._update(
            item_id,
            embedding=None,
            embedding_status=EmbeddingStatus.FAILED.value,
            failure_reason=reason,
            chunk_count=0,
        )

    def mark_pending(self, item_id: str, reason: Optional[str] = None) -> bool:
        return self._update(
            item_id,
            embedding=None,
            embedding_status=EmbeddingStatus.PENDING.value,
            failure_reason=reason,
            chunk_count=0,
        )

    def _update(self, item_id: str, **fields) -> bool:
        fields["updated_at"] = datetime.now(timezone.utc).isoformat()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._write_lock, self.get_db() as conn:
            cursor = conn.execute(
                f"UPDATE content_items SET {assignments} WHERE id = ?",
                list(fields.values()) + [item_id],
            )
            conn.commit()
            return cursor.rowcount > 0

    def search_text(self, phrase: str, content_types: Optional[Iterable[ContentType]] = None,
                    scope: Optional[str] = None) -> List[ContentItem]:
        """Ready items whose text, filename or title contains ``phrase`` (case-insensitive), newest first."""
        needle = phrase.strip().casefold()
        if not needle:
            return []

        query = f"SELECT {_COLUMNS} FROM content_items WHERE embedding_status = ?"
        params: List[Any] = [EmbeddingStatus.READY.value]
        types = [ContentType.parse(t).value for t in content_types or []]
        if types:
            query += f" AND type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        query, params = _scoped(query, params, None, scope)
        query += " ORDER BY created_at DESC, id DESC"

        with self.get_db() as conn:
            items = [_row_to_item(row) for row in conn.execute(query, params).fetchall()]

        # Message titles are the author role, not content
        return [
            item for item in items
            if needle in item.text.casefold()
            or (item.type != ContentType.MESSAGE and needle in item.title.casefold())
        ]

    def recent_titles(self, scope: Optional[str] = None, limit: int = 50) -> List[str]:
        """Distinct filenames and knowledge titles, most recent first."""
        placeholders = ",".join("?" for _ in TITLED_TYPES)
        query = f"SELECT {_COLUMNS} FROM content_items WHERE type IN ({placeholders})"
        params: List[Any] = list(TITLED_TYPES)
        if scope is not None:
            query += " AND scope_id = ?"
            params.append(scope)
        query += " ORDER BY created_at DESC, id DESC"

        titles: List[str] = []
        with self.get_db() as conn:
            for row in conn.execute(query, params):
                title = _row_to_item(row).title
                if title and title not in titles:
                    titles.append(title)
                    if len(titles) >= limit:
                        break
        return titles

    def record_run(self, run: MaintenanceRun) -> None:
        """Append a maintenance run and its flagged duplicates to the audit tables."""
        summary = run.to_dict()
        with self._write_lock, self.get_db() as conn:
            conn.execute(
                "INSERT INTO maintenance_runs (run_id, operation, started_at, completed_at, summary) VALUES (?, ?, ?, ?, ?)",
                (
                    run.run_id,
                    run.operation,
                    run.started_at.isoformat(),
                    run.completed_at.isoformat() if run.completed_at else None,
                    json.dumps(summary),
                ),
            )
            flagged_at = datetime.now().isoformat()
            conn.executemany(
                '''
                INSERT INTO duplicate_candidates (run_id, item_id, duplicate_of, score, scope_id, type, flagged_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ''',
                [
                    (run.run_id, d.item_id, d.duplicate_of, d.score, d.scope, d.type.value, flagged_at)
                    for d in run.duplicates
                ],
            )
            conn.commit()
        logger.log_operation("content_store.record_run", "success", {"run_id": run.run_id, "operation": run.operation})

    def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent maintenance run summaries first."""
        with self.get_db() as conn:
            rows = conn.execute(
                "SELECT summary FROM maintenance_runs ORDER BY started_at DESC, rowid DESC LIMIT ?", (limit,)
            ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def list_duplicate_candidates(self, run_id: Optional[str] = None) -> List[DuplicateCandidate]:
        query = "SELECT item_id, duplicate_of, score, scope_id, type FROM duplicate_candidates"
        params: List[Any] = []
        if run_id is not None:
            query += " WHERE run_id = ?"
            params.append(run_id)
        query += " ORDER BY id ASC"

        with self.get_db() as conn:
            return [
                DuplicateCandidate(item_id=row[0], duplicate_of=row[1], score=row[2], scope=row[3],
                                   type=ContentType(row[4]))
                for row in conn.execute(query, params)
            ]

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in EmbeddingStatus}
        with self.get_db() as conn:
            for status, count in conn.execute(
                "SELECT embedding_status, COUNT(*) FROM content_items GROUP BY embedding_status"
            ):
                counts[status] = count
        return counts


_COLUMNS = (
    "id, scope_id, type, text, details, embedding, embedding_status, model_version, "
    "failure_reason, chunk_count, created_at, updated_at"
)


def _row_to_item(row) -> ContentItem:
    (item_id, scope_id, type_value, text, details, embedding, status, model_version,
     failure_reason, chunk_count, created_at, updated_at) = row
    content_type = ContentType(type_value)
    return ContentItem(
        id=item_id,
        scope_id=scope_id,
        type=content_type,
        text=text,
        details=details_from_dict(content_type, json.loads(details) if details else {}),
        embedding=json.loads(embedding) if embedding else None,
        embedding_status=EmbeddingStatus(status),
        model_version=model_version,
        failure_reason=failure_reason,
        chunk_count=chunk_count or 0,
        created_at=datetime.fromisoformat(created_at),
        updated_at=datetime.fromisoformat(updated_at),
    )


def _scoped(query: str, params: List[Any], content_type: Optional[ContentType], scope: Optional[str]):
    if content_type is not None:
        query += " AND type = ?"
        params.append(ContentType.parse(content_type).value)
    if scope is not None:
        query += " AND scope_id = ?"
        params.append(scope)
    return query, params


def _batches(values: List[str], size: int):
    for start in range(0, len(values), size):
        yield values[start:start + size]
