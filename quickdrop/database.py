import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterable, List, Optional

from .models import Batch, FileRecord

logger = logging.getLogger("quickdrop.database")

# Columns added after the first release. Every migration is additive and nullable.
_FILE_COLUMN_MIGRATIONS = {
    "batch_id": "ALTER TABLE files ADD COLUMN batch_id TEXT",
    "password_hash": "ALTER TABLE files ADD COLUMN password_hash TEXT",
}


class MetadataStore:
    """sqlite-backed store of :class:`FileRecord` rows and their batches."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def get_db(self) -> Generator[sqlite3.Connection, None, None]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            if conn.in_transaction:
                conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        with self.get_db() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS files (
                    id TEXT PRIMARY KEY,
                    original_filename TEXT NOT NULL,
                    storage_path TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    expires_at REAL NOT NULL,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS batches (
                    id TEXT PRIMARY KEY,
                    expires_at REAL NOT NULL,
                    password_hash TEXT,
                    created_at REAL NOT NULL
                )
                """
            )
            conn.commit()
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(files)")}
            for column, statement in _FILE_COLUMN_MIGRATIONS.items():
                if column not in columns:
                    conn.execute(statement)
                    logger.info("schema_migrated table=files column=%s", column)
            conn.commit()
            conn.execute("CREATE INDEX IF NOT EXISTS idx_files_batch_id ON files(batch_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_files_expires_at ON files(expires_at)")
            conn.commit()
            # Rows written before batches had their own table.
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO batches (id, expires_at, password_hash, created_at)
                SELECT batch_id, MIN(expires_at), MAX(password_hash), MIN(created_at)
                FROM files
                WHERE batch_id IS NOT NULL
                GROUP BY batch_id
                """
            )
            if cursor.rowcount and cursor.rowcount > 0:
                logger.info("schema_backfilled table=batches rows=%d", cursor.rowcount)
            conn.commit()

    def insert_files(self, records: Iterable[FileRecord], batch: Optional[Batch] = None) -> None:
        """Insert all records (and their batch) in a single transaction."""

        records = list(records)
        with self.get_db() as conn:
            conn.execute("BEGIN IMMEDIATE")
            if batch is not None:
                conn.execute(
                    "INSERT INTO batches (id, expires_at, password_hash, created_at) VALUES (?, ?, ?, ?)",
                    (batch.id, batch.expires_at, batch.password_hash, batch.created_at),
                )
            conn.executemany(
                """
                INSERT INTO files (
                    id,
                    batch_id,
                    original_filename,
                    storage_path,
                    size,
                    expires_at,
                    password_hash,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        record.id,
                        record.batch_id,
                        record.original_filename,
                        record.storage_path,
                        record.size,
                        record.expires_at,
                        record.password_hash,
                        record.created_at,
                    )
                    for record in records
                ],
            )

    def get_file_by_id(self, file_id: str) -> Optional[FileRecord]:
        with self.get_db() as conn:
            row = conn.execute("SELECT * FROM files WHERE id = ?", (file_id,)).fetchone()
        return FileRecord.from_row(row) if row else None

    def get_files_by_batch_id(self, batch_id: str) -> List[FileRecord]:
        with self.get_db() as conn:
            rows = conn.execute(
                "SELECT * FROM files WHERE batch_id = ? ORDER BY created_at ASC, rowid ASC",
                (batch_id,),
            ).fetchall()
        return [FileRecord.from_row(row) for row in rows]

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        """Return the batch with its member files, or ``None`` if it has none."""

        with self.get_db() as conn:
            row = conn.execute("SELECT * FROM batches WHERE id = ?", (batch_id,)).fetchone()
        if row is None:
            return None
        files = self.get_files_by_batch_id(batch_id)
        if not files:
            return None
        return Batch.from_row(row, files)

    def get_expired_before(self, timestamp: float) -> List[FileRecord]:
        with self.get_db() as conn:
            rows = conn.execute(
                "SELECT * FROM files WHERE expires_at <= ?", (timestamp,)
            ).fetchall()
        return [FileRecord.from_row(row) for row in rows]

    def delete_file_by_id(self, file_id: str) -> bool:
        with self.get_db() as conn:
            cursor = conn.execute("DELETE FROM files WHERE id = ?", (file_id,))
            return cursor.rowcount > 0

    def delete_empty_batches(self) -> int:
        with self.get_db() as conn:
            cursor = conn.execute(
                """
                DELETE FROM batches
                WHERE NOT EXISTS (SELECT 1 FROM files WHERE files.batch_id = batches.id)
                """
            )
            return max(cursor.rowcount, 0)

    def count_files(self) -> int:
        with self.get_db() as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM files").fetchone()
        return int(row["count"] if row and row["count"] is not None else 0)
