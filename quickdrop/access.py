import re
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, List, Optional

from .database import MetadataStore
from .errors import ForbiddenError, NotFoundError, ValidationError
from .logs import get_logger, sanitize_log_value
from .models import Batch, FileRecord
from .passwords import check_password
from .storage import ContentStorage

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

PASSWORD_REQUIRED_MESSAGE = "Password required. Please use POST method."
PASSWORD_REJECTED_MESSAGE = "Password required or invalid"
INVALID_PASSWORD_MESSAGE = "Invalid password"

access_logger = get_logger("quickdrop.access")


def validate_identifier(value: Optional[str]) -> str:
    if not value or not _UUID_PATTERN.match(value):
        raise ValidationError("Invalid file ID")
    return value.lower()


def size_in_mb(size: int) -> str:
    return f"{size / 1024 / 1024:.2f}"


@dataclass
class Resolution:
    """Files an identifier resolves to, with the attributes that gate them."""

    id: str
    files: List[FileRecord]
    expires_at: float
    password_hash: Optional[str] = None
    batch: Optional[Batch] = None

    @property
    def is_batch(self) -> bool:
        return self.batch is not None

    @property
    def is_protected(self) -> bool:
        return self.password_hash is not None

    @property
    def total_size(self) -> int:
        return sum(record.size for record in self.files)

    def to_payload(self) -> dict:
        if not self.is_batch:
            record = self.files[0]
            return {
                "id": record.id,
                "isBatch": False,
                "filename": record.original_filename,
                "size": record.size,
                "sizeMB": size_in_mb(record.size),
                "isProtected": self.is_protected,
                "expiresAt": self.expires_at,
            }
        return {
            "id": self.id,
            "isBatch": True,
            "isProtected": self.is_protected,
            "fileCount": len(self.files),
            "totalSize": self.total_size,
            "totalSizeMB": size_in_mb(self.total_size),
            "files": [
                {
                    "id": record.id,
                    "filename": record.original_filename,
                    "size": record.size,
                    "sizeMB": size_in_mb(record.size),
                }
                for record in self.files
            ],
            "expiresAt": self.expires_at,
        }


@dataclass
class FileDownload:
    record: FileRecord
    stream: BinaryIO
    size: int


class AccessService:
    """Resolves identifiers and enforces expiry and password gating."""

    def __init__(
        self,
        store: MetadataStore,
        storage: ContentStorage,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.storage = storage
        self.clock = clock

    def resolve(self, identifier: str, member_id: Optional[str] = None) -> Resolution:
        """Map *identifier* to a batch or a single file, without gating."""

        identifier = validate_identifier(identifier)
        if member_id is not None:
            member_id = validate_identifier(member_id)

        batch = self.store.get_batch(identifier)
        if batch is not None:
            files = batch.files
            if member_id is not None:
                files = [record for record in files if record.id == member_id]
                if not files:
                    access_logger.info(
                        "access_member_mismatch batch_id=%s file_id=%s", identifier, member_id
                    )
                    raise NotFoundError()
            return Resolution(
                id=batch.id,
                files=files,
                expires_at=batch.expires_at,
                password_hash=batch.password_hash,
                batch=batch,
            )

        if member_id is not None:
            raise NotFoundError()

        record = self.store.get_file_by_id(identifier)
        if record is None:
            raise NotFoundError()

        expires_at, password_hash = record.expires_at, record.password_hash
        if record.batch_id is not None:
            # A member addressed by its own id still obeys its batch.
            owner = self.store.get_batch(record.batch_id)
            if owner is not None:
                expires_at, password_hash = owner.expires_at, owner.password_hash
        return Resolution(
            id=record.id,
            files=[record],
            expires_at=expires_at,
            password_hash=password_hash,
        )

    def resolve_live(self, identifier: str, member_id: Optional[str] = None) -> Resolution:
        """Resolve and drop anything expired or missing from content storage."""

        resolution = self.resolve(identifier, member_id)
        if resolution.expires_at <= self.clock():
            access_logger.info("access_blocked_expired id=%s", resolution.id)
            raise NotFoundError()

        present = []
        for record in resolution.files:
            if self.storage.exists(record.storage_path):
                present.append(record)
            else:
                access_logger.warning(
                    "access_content_missing file_id=%s path=%s",
                    record.id,
                    sanitize_log_value(record.storage_path),
                )
        if not present:
            raise NotFoundError()
        resolution.files = present
        return resolution

    def describe(self, identifier: str, member_id: Optional[str] = None) -> Resolution:
        """Non-sensitive metadata; protection is reported, not enforced."""

        return self.resolve_live(identifier, member_id)

    def verify(
        self,
        identifier: str,
        password: Optional[object],
        member_id: Optional[str] = None,
    ) -> Resolution:
        resolution = self.resolve_live(identifier, member_id)
        if resolution.is_protected and not check_password(resolution.password_hash, password):
            access_logger.warning("access_password_rejected id=%s", resolution.id)
            raise ForbiddenError(INVALID_PASSWORD_MESSAGE)
        return resolution

    def fetch(
        self,
        identifier: str,
        member_id: Optional[str] = None,
        *,
        password: Optional[object] = None,
        credentials_allowed: bool = True,
    ) -> FileDownload:
        """Open the resolved file for streaming.

        ``credentials_allowed`` is false for retrieval methods that cannot carry
        a password; protected files are then refused outright.
        """

        resolution = self.resolve_live(identifier, member_id)

        if resolution.is_protected:
            if not credentials_allowed:
                access_logger.info("access_password_required id=%s", resolution.id)
                raise ForbiddenError(PASSWORD_REQUIRED_MESSAGE)
            if not check_password(resolution.password_hash, password):
                access_logger.warning("access_password_rejected id=%s", resolution.id)
                raise ForbiddenError(PASSWORD_REJECTED_MESSAGE)

        if len(resolution.files) > 1:
            raise ValidationError(
                "This link contains multiple files; choose one to download",
                detail={"files": [record.id for record in resolution.files]},
            )

        record = resolution.files[0]
        try:
            stream, size = self.storage.open_reader(record.storage_path)
        except FileNotFoundError:
            access_logger.warning("access_content_missing_race file_id=%s", record.id)
            raise NotFoundError() from None
        if size != record.size:
            access_logger.warning(
                "access_size_mismatch file_id=%s recorded=%d actual=%d",
                record.id,
                record.size,
                size,
            )
        access_logger.info("file_fetched file_id=%s size=%d", record.id, size)
        return FileDownload(record=record, stream=stream, size=size)
