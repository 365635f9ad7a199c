import sqlite3
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class FileRecord:
    """One stored file. Immutable once committed."""

    id: str
    original_filename: str
    storage_path: str
    size: int
    expires_at: float
    created_at: float
    batch_id: Optional[str] = None
    password_hash: Optional[str] = None

    @property
    def is_protected(self) -> bool:
        return self.password_hash is not None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FileRecord":
        return cls(
            id=row["id"],
            original_filename=row["original_filename"],
            storage_path=row["storage_path"],
            size=int(row["size"]),
            expires_at=float(row["expires_at"]),
            created_at=float(row["created_at"]),
            batch_id=row["batch_id"],
            password_hash=row["password_hash"],
        )


@dataclass(frozen=True)
class Batch:
    """Files uploaded together; expiry and password live here, not on a member."""

    id: str
    expires_at: float
    created_at: float
    password_hash: Optional[str] = None
    files: List[FileRecord] = field(default_factory=list)

    @property
    def is_protected(self) -> bool:
        return self.password_hash is not None

    @property
    def total_size(self) -> int:
        return sum(record.size for record in self.files)

    @classmethod
    def from_row(cls, row: sqlite3.Row, files: Optional[List[FileRecord]] = None) -> "Batch":
        return cls(
            id=row["id"],
            expires_at=float(row["expires_at"]),
            created_at=float(row["created_at"]),
            password_hash=row["password_hash"],
            files=list(files or []),
        )
