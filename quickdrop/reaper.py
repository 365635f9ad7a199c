import logging
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .database import MetadataStore
from .storage import ContentStorage

logger = logging.getLogger("quickdrop.reaper")

SWEEP_JOB_ID = "sweep_expired_files"


def sweep_expired_files(
    store: MetadataStore,
    storage: ContentStorage,
    clock: Callable[[], float] = time.time,
) -> int:
    """Reclaim every record whose expiry has passed.

    Content is removed before the record so a crash in between leaves a record
    whose bytes are already gone; the next sweep treats the missing file as
    deleted and finishes the job. Failures are logged per record and never
    propagate.
    """

    now = clock()
    try:
        expired = store.get_expired_before(now)
    except sqlite3.Error:
        logger.exception("cleanup_query_failed")
        return 0

    removed = 0
    for record in expired:
        try:
            storage.delete(record.storage_path)
        except OSError as error:
            logger.warning(
                "cleanup_file_delete_failed file_id=%s path=%s error=%s",
                record.id,
                record.storage_path,
                error,
            )
            continue

        try:
            deleted = store.delete_file_by_id(record.id)
        except sqlite3.Error as error:
            logger.warning(
                "cleanup_record_delete_failed file_id=%s error=%s", record.id, error
            )
            continue
        if not deleted:
            # Another sweep got there first.
            logger.debug("cleanup_record_already_gone file_id=%s", record.id)
            continue
        removed += 1

    try:
        store.delete_empty_batches()
    except sqlite3.Error as error:
        logger.warning("cleanup_batch_delete_failed error=%s", error)

    if removed:
        logger.info("cleanup_completed removed=%d expired=%d", removed, len(expired))
    return removed


class ExpirationReaper:
    """Owns the background schedule for expiry sweeps.

    ``start`` and ``stop`` are idempotent; the scheduler handle itself is the
    only record of whether the reaper is running.
    """

    def __init__(
        self,
        store: MetadataStore,
        storage: ContentStorage,
        *,
        interval_minutes: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.storage = storage
        self.interval_minutes = max(1, int(interval_minutes))
        self.clock = clock
        self._scheduler: Optional[BackgroundScheduler] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        scheduler = self._scheduler
        return scheduler is not None and bool(scheduler.running)

    def run_once(self) -> int:
        return sweep_expired_files(self.store, self.storage, clock=self.clock)

    def start(self) -> bool:
        with self._lock:
            if self._scheduler is not None:
                return False
            scheduler = BackgroundScheduler(daemon=True)
            scheduler.add_job(
                func=self.run_once,
                trigger="interval",
                minutes=self.interval_minutes,
                id=SWEEP_JOB_ID,
                name="Sweep expired files",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                next_run_time=datetime.now(timezone.utc),
            )
            scheduler.start()
            self._scheduler = scheduler
        logger.info("cleanup_scheduler_started interval_minutes=%d", self.interval_minutes)
        return True

    def stop(self, wait: bool = False) -> bool:
        with self._lock:
            scheduler, self._scheduler = self._scheduler, None
        if scheduler is None:
            return False
        if scheduler.running:
            scheduler.shutdown(wait=wait)
        logger.info("cleanup_scheduler_stopped")
        return True

    def next_run_time(self) -> Optional[datetime]:
        scheduler = self._scheduler
        if scheduler is None:
            return None
        job = scheduler.get_job(SWEEP_JOB_ID)
        return job.next_run_time if job else None
