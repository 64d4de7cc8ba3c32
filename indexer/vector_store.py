"""SQLite vector store for the Guimera index.

Vectors are stored as float32 BLOBs next to a JSON metadata document and
searched by cosine similarity with numpy. Records are grouped in
namespaces and upserted by id, so re-indexing a page is idempotent.
"""

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Dict, Any, Optional

import numpy as np

from observability.logging import log_duration
from pipelines.errors import StoreError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS vectors (
    namespace TEXT NOT NULL,
    id TEXT NOT NULL,
    url TEXT,
    dimensions INTEGER NOT NULL,
    vector BLOB NOT NULL,
    metadata TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (namespace, id)
);
CREATE INDEX IF NOT EXISTS idx_vectors_url ON vectors(namespace, url);
"""


@dataclass
class VectorRecord:
    """One stored chunk: id, vector and metadata."""
    id: str
    vector: Optional[List[float]]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryMatch:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class SQLiteVectorStore:
    """Vector store backed by a single SQLite file (or ``:memory:``)."""

    def __init__(self, db_path: str, preview_chars: int = 1000):
        self.db_path = db_path
        self.preview_chars = preview_chars
        self.conn: Optional[sqlite3.Connection] = None

    async def initialize(self):
        """Open the connection and ensure the schema exists."""
        if self.conn is not None:
            return
        try:
            if self.db_path != ':memory:':
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(SCHEMA)
            self.conn.commit()
            logger.info(f"Vector store initialized: {self.db_path}")
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize vector store {self.db_path}: {e}")

    async def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("Vector store connection closed")

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StoreError("Vector store is not initialized")
        return self.conn

    def _prepare_metadata(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        """Keep only a truncated preview of the chunk text."""
        prepared = dict(metadata)
        content = prepared.get('content')
        if isinstance(content, str) and len(content) > self.preview_chars:
            prepared['content'] = content[:self.preview_chars]
        return prepared

    def _rows(self, namespace: str, records: List[VectorRecord]) -> List[tuple]:
        now = datetime.utcnow().isoformat()
        rows = []
        for record in records:
            if record.vector is None:
                raise StoreError(f"Record {record.id} has no vector")
            vector = np.asarray(record.vector, dtype=np.float32)
            metadata = self._prepare_metadata(record.metadata)
            rows.append((
                namespace, record.id, metadata.get('url'), int(vector.shape[0]),
                vector.tobytes(), json.dumps(metadata, ensure_ascii=False, default=str), now
            ))
        return rows

    def _write(self, conn: sqlite3.Connection, rows: List[tuple]):
        conn.executemany(
            """
            INSERT OR REPLACE INTO vectors (namespace, id, url, dimensions, vector, metadata, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            rows
        )

    async def upsert(self, namespace: str, records: List[VectorRecord]) -> int:
        """Insert or replace records by id. Returns the number written."""
        if not records:
            return 0
        conn = self._connection()
        rows = self._rows(namespace, records)

        try:
            self._write(conn, rows)
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Upsert into namespace '{namespace}' failed: {e}")

        logger.debug(f"Upserted {len(rows)} vectors into namespace '{namespace}'")
        return len(rows)

    async def replace_url(self, namespace: str, url: str, records: List[VectorRecord]) -> int:
        """Swap the chunks stored for ``url`` for ``records`` in one transaction.

        Stale ids are deleted only once the new rows are written, so a
        failed write leaves the previous chunks untouched.
        """
        conn = self._connection()
        rows = self._rows(namespace, records)
        keep = [row[1] for row in rows]

        try:
            self._write(conn, rows)
            stale_sql = "DELETE FROM vectors WHERE namespace = ? AND url = ?"
            params: List[Any] = [namespace, url]
            if keep:
                stale_sql += f" AND id NOT IN ({', '.join('?' for _ in keep)})"
                params.extend(keep)
            removed = conn.execute(stale_sql, params).rowcount
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Replacing chunks of {url} failed: {e}")

        logger.debug(f"Replaced chunks of {url}: {len(rows)} written, {removed} stale removed")
        return len(rows)

    async def query(self, namespace: str, vector: List[float], top_k: int = 10,
                    filters: Optional[Dict[str, Any]] = None) -> List[QueryMatch]:
        """Top ``top_k`` records by cosine similarity, with metadata equality filters."""
        conn = self._connection()
        sql = "SELECT id, vector, metadata FROM vectors WHERE namespace = ?"
        params: List[Any] = [namespace]
        if filters and 'url' in filters:
            sql += " AND url = ?"
            params.append(filters['url'])

        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Query on namespace '{namespace}' failed: {e}")

        candidates = []
        for row in rows:
            metadata = json.loads(row['metadata'])
            if filters and any(metadata.get(k) != v for k, v in filters.items()):
                continue
            candidates.append((row['id'], np.frombuffer(row['vector'], dtype=np.float32), metadata))

        if not candidates:
            return []

        query_vec = np.asarray(vector, dtype=np.float32)
        matrix = np.vstack([c[1] for c in candidates])
        if matrix.shape[1] != query_vec.shape[0]:
            raise StoreError(
                f"Query dimension {query_vec.shape[0]} does not match stored dimension {matrix.shape[1]}"
            )

        with log_duration(logger, f"cosine scan of {len(candidates)} vectors", threshold_ms=500.0):
            norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query_vec)
            dots = matrix @ query_vec
            scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)

        order = np.argsort(-scores)[:top_k]
        return [
            QueryMatch(id=candidates[i][0], score=float(scores[i]), metadata=candidates[i][2])
            for i in order
        ]

    async def sample(self, namespace: str, n: int) -> List[VectorRecord]:
        """Up to ``n`` random records (metadata only) for quality checks."""
        conn = self._connection()
        try:
            rows = conn.execute(
                "SELECT id, metadata FROM vectors WHERE namespace = ? ORDER BY RANDOM() LIMIT ?",
                (namespace, n)
            ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Sampling namespace '{namespace}' failed: {e}")
        return [VectorRecord(id=row['id'], vector=None, metadata=json.loads(row['metadata'])) for row in rows]

    async def count(self, namespace: Optional[str] = None) -> int:
        conn = self._connection()
        if namespace is None:
            row = conn.execute("SELECT COUNT(*) AS n FROM vectors").fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) AS n FROM vectors WHERE namespace = ?", (namespace,)).fetchone()
        return row['n']

    async def delete_url(self, namespace: str, url: str) -> int:
        """Remove every chunk stored for ``url``. Returns the number removed."""
        conn = self._connection()
        try:
            cursor = conn.execute("DELETE FROM vectors WHERE namespace = ? AND url = ?", (namespace, url))
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Delete of {url} failed: {e}")
        return cursor.rowcount

    async def has_url(self, namespace: str, url: str) -> bool:
        conn = self._connection()
        row = conn.execute(
            "SELECT 1 FROM vectors WHERE namespace = ? AND url = ? LIMIT 1", (namespace, url)
        ).fetchone()
        return row is not None

    async def namespaces(self) -> Dict[str, int]:
        """Record count per namespace."""
        conn = self._connection()
        rows = conn.execute("SELECT namespace, COUNT(*) AS n FROM vectors GROUP BY namespace").fetchall()
        return {row['namespace']: row['n'] for row in rows}
