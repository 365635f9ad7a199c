"""Streaming upload ingestion.

A request body is pushed through werkzeug's sans-IO multipart decoder one
chunk at a time. Every file part gets a :class:`FilePart` whose state moves
``CREATED -> WRITING -> FINALIZED`` or ends in ``ABORTED``. Nothing is
committed to the metadata store until every part has been finalized, and any
failure aborts every part of the request, removing its bytes from storage.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Union

from werkzeug.datastructures import Headers
from werkzeug.exceptions import ClientDisconnected, RequestEntityTooLarge
from werkzeug.sansio.multipart import (
    HEADER_CONTINUATION_RE,
    Data,
    Epilogue,
    Field,
    File,
    MultipartDecoder,
    NeedData,
)

from .config import Settings
from .database import MetadataStore
from .errors import FileTooLargeError, PayloadTooLargeError, QuickDropError, ValidationError
from .filenames import decode_filename, get_extension, sanitize_filename
from .logs import get_logger, sanitize_log_value
from .models import Batch, FileRecord
from .passwords import generate_password, hash_password
from .storage import CHUNK_SIZE_BYTES, ContentStorage, StorageWriter

FILE_FIELD_NAMES = {"file", "files"}
EXPIRATION_FIELD = "expirationHours"
PASSWORD_FIELD = "passwordProtected"
FORM_FIELD_NAMES = {EXPIRATION_FIELD, PASSWORD_FIELD}
MAX_FIELD_BYTES = 64 * 1024
MIN_EXPIRATION_HOURS = 1
_TRUE_VALUES = {"1", "true", "yes", "on"}

ingest_logger = get_logger("quickdrop.ingest")


class HeaderTolerantDecoder(MultipartDecoder):
    """Multipart decoder that reads part headers as Latin-1.

    Werkzeug decodes part headers strictly as UTF-8 and fails the whole body
    on anything else. Latin-1 maps every byte to one code point, so the raw
    bytes of a filename can be recovered with :func:`_raw_header_value` and
    handed to :func:`decode_filename` instead.
    """

    def _parse_headers(self, data) -> Headers:
        headers = []
        data = HEADER_CONTINUATION_RE.sub(b" ", data)
        for line in data.splitlines():
            line = line.strip(b" \t")
            if line:
                name, _, value = line.decode("latin-1").partition(":")
                headers.append((name.strip(" \t"), value.strip(" \t")))
        return Headers(headers)


def _raw_header_value(value: str) -> Union[str, bytes]:
    # RFC 2231 values (filename*=) arrive already decoded and may not map
    # back onto single bytes.
    try:
        return value.encode("latin-1")
    except UnicodeEncodeError:
        return value


class PartState(Enum):
    CREATED = "created"
    WRITING = "writing"
    FINALIZED = "finalized"
    ABORTED = "aborted"


def format_size_limit(max_bytes: int) -> str:
    max_gb = max_bytes / 1024 / 1024 / 1024
    if max_gb >= 1:
        return f"{max_gb:.2f}GB"
    return f"{max_bytes / 1024 / 1024:.2f}MB"


def expiration_range_message(max_hours: int) -> str:
    if max_hours >= 24:
        friendly = f"{max_hours / 24:.1f} days"
        return (
            f"Expiration must be between {MIN_EXPIRATION_HOURS} hour and "
            f"{max_hours} hours ({friendly})"
        )
    return f"Expiration must be between {MIN_EXPIRATION_HOURS} hour and {max_hours} hours"


def parse_expiration_hours(value: Optional[str], settings: Settings) -> int:
    """Validate the ``expirationHours`` form value against the configured range."""

    if value is None or value.strip() == "":
        return settings.default_expiration_hours

    max_hours = settings.max_expiration_hours
    try:
        hours = int(value.strip())
    except ValueError:
        hours = None
    if hours is None or not (MIN_EXPIRATION_HOURS <= hours <= max_hours):
        raise ValidationError(
            expiration_range_message(max_hours),
            detail={"allowed_range": [MIN_EXPIRATION_HOURS, max_hours]},
        )
    return hours


def parse_bool_field(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in _TRUE_VALUES


class FilePart:
    """Per-part state for one uploaded file."""

    def __init__(self, part_id: str, filename: str, path: Path) -> None:
        self.id = part_id
        self.filename = filename
        self.path = path
        self.size = 0
        self.state = PartState.CREATED
        self._writer: Optional[StorageWriter] = None

    def open(self, storage: ContentStorage) -> None:
        if self.state is not PartState.CREATED:
            raise ValueError(f"Cannot open part in state {self.state.value}")
        self._writer = storage.open_writer(self.path)
        self.state = PartState.WRITING

    def write(self, data: bytes, max_bytes: int) -> None:
        if self.state is not PartState.WRITING or self._writer is None:
            raise ValueError(f"Cannot write part in state {self.state.value}")
        if self.size + len(data) > max_bytes:
            raise FileTooLargeError(
                max_bytes,
                f"File size exceeds maximum allowed size of {format_size_limit(max_bytes)}",
            )
        self._writer.write(data)
        self.size += len(data)

    def finalize(self) -> None:
        if self.state is not PartState.WRITING or self._writer is None:
            raise ValueError(f"Cannot finalize part in state {self.state.value}")
        self.size = self._writer.finalize()
        self.state = PartState.FINALIZED

    def abort(self, storage: ContentStorage) -> None:
        """Discard this part's bytes, whether still streaming or already finalized."""

        if self.state is PartState.WRITING and self._writer is not None:
            self._writer.abort()
        elif self.state is PartState.FINALIZED:
            storage.delete(self.path)
        self.state = PartState.ABORTED


@dataclass
class UploadResult:
    id: str
    records: List[FileRecord]
    expires_at: float
    batch: Optional[Batch] = None
    password: Optional[str] = field(default=None, repr=False)

    @property
    def is_batch(self) -> bool:
        return self.batch is not None


class UploadSession:
    """Drives multipart events for a single upload request."""

    def __init__(
        self,
        settings: Settings,
        storage: ContentStorage,
        store: MetadataStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.store = store
        self.clock = clock
        self.parts: Dict[str, FilePart] = {}
        self.fields: Dict[str, str] = {}
        self.expiration_hours: Optional[int] = None
        self._current_part_id: Optional[str] = None
        self._current_field: Optional[str] = None
        self._field_buffer = bytearray()
        self._skipping = False

    # Events -----------------------------------------------------------------

    def handle_event(self, event) -> None:
        if isinstance(event, File):
            self.on_file(event)
        elif isinstance(event, Field):
            self.on_field(event)
        elif isinstance(event, Data):
            self.on_data(event)

    def on_file(self, event: File) -> None:
        if event.name not in FILE_FIELD_NAMES:
            self._skipping = True
            ingest_logger.info("upload_part_ignored field=%s", sanitize_log_value(event.name))
            return

        filename = decode_filename(_raw_header_value(event.filename))
        if not filename.strip():
            raise ValidationError("No filename provided")

        extension = get_extension(filename)
        if not extension or extension not in self.settings.allowed_extensions:
            ingest_logger.warning(
                "upload_rejected reason=extension filename=%s",
                sanitize_log_value(filename),
            )
            raise ValidationError("File type not allowed", detail={"extension": extension})

        part_id = str(uuid.uuid4())
        path = self.storage.resolve_path(part_id)
        part = FilePart(part_id, filename, path)
        self.parts[part_id] = part
        part.open(self.storage)
        self._current_part_id = part_id

    def on_field(self, event: Field) -> None:
        if event.name not in FORM_FIELD_NAMES:
            self._skipping = True
            ingest_logger.debug("upload_field_ignored field=%s", sanitize_log_value(event.name))
            return
        self._current_field = event.name
        self._field_buffer = bytearray()

    def on_data(self, event: Data) -> None:
        if self._skipping:
            if not event.more_data:
                self._skipping = False
            return

        if self._current_part_id is not None:
            part = self.parts[self._current_part_id]
            if event.data:
                part.write(event.data, self.settings.max_file_size)
            if not event.more_data:
                part.finalize()
                self._current_part_id = None
                ingest_logger.debug("upload_part_finalized part_id=%s size=%d", part.id, part.size)
            return

        if self._current_field is not None:
            self._field_buffer.extend(event.data)
            if len(self._field_buffer) > MAX_FIELD_BYTES:
                raise ValidationError(f"Form field '{self._current_field}' is too large")
            if not event.more_data:
                self._complete_field(self._current_field, bytes(self._field_buffer))
                self._current_field = None
                self._field_buffer = bytearray()

    def _complete_field(self, name: str, raw_value: bytes) -> None:
        value = raw_value.decode("utf-8", "replace")
        self.fields[name] = value
        if name == EXPIRATION_FIELD:
            # Validate as soon as the field arrives so a bad value stops the
            # request before any later file part is written.
            self.expiration_hours = parse_expiration_hours(value, self.settings)

    # Completion -------------------------------------------------------------

    def finalized_parts(self) -> List[FilePart]:
        return [part for part in self.parts.values() if part.state is PartState.FINALIZED]

    def commit(self) -> UploadResult:
        if any(part.state is PartState.WRITING for part in self.parts.values()):
            raise ValidationError("Failed to parse form data")

        parts = self.finalized_parts()
        if not parts:
            raise ValidationError("No file provided")

        hours = self.expiration_hours
        if hours is None:
            hours = parse_expiration_hours(self.fields.get(EXPIRATION_FIELD), self.settings)

        password: Optional[str] = None
        password_hash: Optional[str] = None
        if parse_bool_field(self.fields.get(PASSWORD_FIELD)):
            password = generate_password()
            password_hash = hash_password(password)

        now = self.clock()
        expires_at = now + hours * 3600

        batch: Optional[Batch] = None
        batch_id: Optional[str] = None
        if len(parts) > 1:
            batch_id = str(uuid.uuid4())

        records = [
            FileRecord(
                id=part.id,
                batch_id=batch_id,
                original_filename=sanitize_filename(part.filename),
                storage_path=str(part.path),
                size=part.size,
                expires_at=expires_at,
                created_at=now,
                password_hash=password_hash,
            )
            for part in parts
        ]
        if batch_id is not None:
            batch = Batch(
                id=batch_id,
                expires_at=expires_at,
                created_at=now,
                password_hash=password_hash,
                files=records,
            )

        self.store.insert_files(records, batch)
        result_id = batch_id or records[0].id
        ingest_logger.info(
            "upload_committed id=%s file_count=%d total_size=%d expiration_hours=%d protected=%s",
            result_id,
            len(records),
            sum(record.size for record in records),
            hours,
            password_hash is not None,
        )
        return UploadResult(
            id=result_id,
            records=records,
            expires_at=expires_at,
            batch=batch,
            password=password,
        )

    def abort_all(self) -> None:
        for part in self.parts.values():
            if part.state in (PartState.WRITING, PartState.FINALIZED):
                try:
                    part.abort(self.storage)
                except OSError as error:
                    ingest_logger.error(
                        "upload_part_cleanup_failed part_id=%s path=%s error=%s",
                        part.id,
                        part.path,
                        error,
                    )
        self._current_part_id = None


def ingest_upload(
    stream: BinaryIO,
    boundary: bytes,
    settings: Settings,
    storage: ContentStorage,
    store: MetadataStore,
    *,
    chunk_size: int = CHUNK_SIZE_BYTES,
    clock: Callable[[], float] = time.time,
) -> UploadResult:
    """Consume a multipart body from *stream* and commit its files.

    The stream is read only after the previous chunk has been written, so a
    slow disk slows the client down instead of growing a buffer.
    """

    session = UploadSession(settings, storage, store, clock=clock)
    decoder = HeaderTolerantDecoder(boundary, max_parts=settings.max_form_parts)
    committed = False
    try:
        finished = False
        while not finished:
            try:
                chunk = stream.read(chunk_size)
            except ClientDisconnected:
                ingest_logger.warning("upload_aborted reason=client_disconnected parts=%d", len(session.parts))
                raise
            decoder.receive_data(chunk or None)
            finished = _drain_events(decoder, session)
            if not chunk and not finished:
                raise ValidationError("Failed to parse form data")

        result = session.commit()
        committed = True
        return result
    except QuickDropError as error:
        ingest_logger.warning(
            "upload_failed status=%d reason=%s",
            error.status_code,
            sanitize_log_value(error.message),
        )
        raise
    finally:
        if not committed:
            session.abort_all()


def _drain_events(decoder: MultipartDecoder, session: UploadSession) -> bool:
    """Dispatch every event the decoder can produce; ``True`` once complete."""

    while True:
        try:
            event = decoder.next_event()
        except RequestEntityTooLarge as error:
            raise PayloadTooLargeError(
                "Too many form parts", detail={"max_parts": decoder.max_parts}
            ) from error
        except ValueError as error:
            # Truncated or otherwise malformed bodies.
            raise ValidationError("Failed to parse form data") from error
        if isinstance(event, NeedData):
            return False
        if isinstance(event, Epilogue):
            return True
        session.handle_event(event)
