"""SQLite-backed store of corpus document metadata."""
from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

from domain.entities import DocumentMetadata
from domain.interfaces import CorpusStore


class SqliteCorpusStore(CorpusStore):
    """Keeps title, author, publication date and file facts per document."""

    def __init__(self, db_path: str | Path = "contextfusion.db") -> None:
        self._db_path = Path(db_path)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    title TEXT,
                    author TEXT,
                    published_at TEXT,
                    file_size INTEGER,
                    file_type TEXT
                )
                """
            )

    def add(self, metadata: DocumentMetadata) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                REPLACE INTO documents (id, title, author, published_at, file_size, file_type)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    metadata.document_id,
                    metadata.title,
                    metadata.author,
                    metadata.published_at.isoformat() if metadata.published_at else None,
                    metadata.file_size,
                    metadata.file_type,
                ),
            )

    def delete(self, document_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        return cursor.rowcount > 0

    def list(self) -> list[DocumentMetadata]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, title, author, published_at, file_size, file_type FROM documents ORDER BY id"
            ).fetchall()
        return [self._row_to_metadata(row) for row in rows]

    def get_metadata(self, document_id: str) -> DocumentMetadata | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, title, author, published_at, file_size, file_type
                FROM documents WHERE id = ?
                """,
                (document_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_metadata(row)

    @staticmethod
    def _row_to_metadata(row: tuple) -> DocumentMetadata:
        return DocumentMetadata(
            document_id=row[0],
            title=row[1],
            author=row[2],
            published_at=datetime.fromisoformat(row[3]) if row[3] else None,
            file_size=row[4],
            file_type=row[5],
        )


__all__ = ["SqliteCorpusStore"]
