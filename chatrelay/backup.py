"""
Dual-store synchronization between the local SQLite store and the remote
backup store (a Supabase table reached through its PostgREST API).

Two procedures:

- Push: every tick, rows newer than the backup watermark are upserted to
  the remote table keyed by message_id, with duplicates ignored. The
  watermark only moves after the remote store confirms a chunk, so a
  failed tick leaves the same rows as candidates for the next one.
- Restore: once at startup, before the push loop, every remote row is
  inserted locally unless a row with the same id already exists. A bad
  row is logged and skipped; it never aborts the restore.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import httpx
from sqlalchemy.orm import Session

from chatrelay.errors import BackupPushError, BackupRestoreError, StoreError
from chatrelay.metrics import record_backup_push, record_restore_row
from chatrelay.schemas import BackupRecord
from chatrelay.storage import (
    SessionLocal,
    get_messages_since,
    insert_message_if_absent,
    load_watermark,
    save_watermark,
)
from chatrelay.utils import EPOCH_TIMESTAMP

logger = logging.getLogger(__name__)


# =============================================================================
# Remote Backup Store Client
# =============================================================================

class RemoteBackupStore:
    """
    Thin async client for the remote backup table.

    Args:
        base_url: Supabase project URL (https://<ref>.supabase.co)
        api_key: Supabase API key, sent as apikey and bearer token
        table: Backup table name
        timeout: Per-request timeout in seconds
        page_size: Rows per page when reading the whole table
        transport: Optional httpx transport (tests)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "chat_messages_backup",
        timeout: float = 30.0,
        page_size: int = 1000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.table = table
        self.page_size = page_size
        self._client = httpx.AsyncClient(
            base_url=f"{base_url.rstrip('/')}/rest/v1",
            timeout=timeout,
            headers={
                "apikey": api_key,
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _error_detail(resp: httpx.Response) -> str:
        try:
            return str(resp.json().get("message", resp.text))
        except Exception:
            return resp.text

    async def upsert(self, records: List[BackupRecord]) -> None:
        """
        Upsert records keyed by message_id, ignoring rows that already exist.

        Raises:
            BackupPushError: If the store is unreachable or rejects the batch
        """
        if not records:
            return
        try:
            resp = await self._client.post(
                f"/{self.table}",
                params={"on_conflict": "message_id"},
                headers={"Prefer": "resolution=ignore-duplicates,return=minimal"},
                json=[record.model_dump() for record in records],
            )
        except httpx.HTTPError as e:
            raise BackupPushError(f"Backup store unreachable: {e}") from e
        if resp.status_code >= 400:
            raise BackupPushError(
                f"Backup store rejected upsert: {self._error_detail(resp)}",
                status_code=resp.status_code,
            )

    async def fetch_all(self) -> List[dict]:
        """
        Read every backup row ordered by timestamp ascending.

        Rows are returned raw so a single malformed row can be skipped by
        the caller instead of failing the whole read.

        Raises:
            BackupRestoreError: If any page cannot be read
        """
        rows: List[dict] = []
        offset = 0
        while True:
            try:
                resp = await self._client.get(
                    f"/{self.table}",
                    params={
                        "select": "*",
                        "order": "timestamp.asc,message_id.asc",
                        "limit": str(self.page_size),
                        "offset": str(offset),
                    },
                )
            except httpx.HTTPError as e:
                raise BackupRestoreError(f"Backup store unreachable: {e}") from e
            if resp.status_code >= 400:
                raise BackupRestoreError(
                    f"Backup store rejected read: {self._error_detail(resp)}",
                    status_code=resp.status_code,
                )

            page = resp.json()
            if not isinstance(page, list):
                raise BackupRestoreError("Backup store returned a non-list page")
            rows.extend(page)
            logger.debug(f"Fetched backup page offset={offset}, rows={len(page)}")
            if len(page) < self.page_size:
                return rows
            offset += len(page)


# =============================================================================
# Synchronizer
# =============================================================================

class SyncState(str, Enum):
    IDLE = "idle"
    PUSHING = "pushing"
    RESTORING = "restoring"


@dataclass
class RestoreReport:
    fetched: int = 0
    restored: int = 0
    skipped: int = 0
    failed: int = 0


class BackupSynchronizer:
    """
    Pushes new local rows to the remote store and restores gaps from it.

    Args:
        remote: Remote backup store client
        session_factory: Callable returning a new SQLAlchemy session
        interval_seconds: Delay between push ticks
        batch_size: Maximum rows per upsert request
        persist_watermark: Keep the watermark in the backup_state table
            across restarts instead of starting from the epoch
    """

    def __init__(
        self,
        remote: RemoteBackupStore,
        session_factory: Callable[[], Session] = SessionLocal,
        interval_seconds: float = 240.0,
        batch_size: int = 500,
        persist_watermark: bool = True,
    ):
        self.remote = remote
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.persist_watermark = persist_watermark
        self.state = SyncState.IDLE
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

        self.watermark = EPOCH_TIMESTAMP
        if persist_watermark:
            with self.session_factory() as db:
                self.watermark = load_watermark(db)

    # -------------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------------

    async def push_once(self) -> int:
        """
        Run one push tick.

        Returns:
            Number of rows the remote store confirmed during this tick
        """
        async with self._lock:
            self.state = SyncState.PUSHING
            try:
                return await self._push()
            finally:
                self.state = SyncState.IDLE

    async def _push(self) -> int:
        try:
            with self.session_factory() as db:
                rows = get_messages_since(db, self.watermark)
                records = [BackupRecord.from_message(row) for row in rows]
        except StoreError as e:
            logger.error(f"Backup skipped, could not read local store: {e}")
            record_backup_push("failed")
            return 0

        if not records:
            logger.info("No new messages to backup")
            record_backup_push("empty")
            return 0

        logger.info(f"Backing up {len(records)} messages newer than {self.watermark}")
        pushed = 0
        for start in range(0, len(records), self.batch_size):
            chunk = records[start:start + self.batch_size]
            try:
                await self.remote.upsert(chunk)
            except BackupPushError as e:
                logger.error(
                    f"Error backing up messages, watermark stays at {self.watermark}: {e}",
                    extra={"status_code": e.status_code, "pending": len(records) - pushed},
                )
                record_backup_push("failed", pushed)
                return pushed
            pushed += len(chunk)
            self._advance_watermark(max(record.timestamp for record in chunk))

        logger.info(f"Successfully backed up {pushed} messages, watermark now {self.watermark}")
        record_backup_push("success", pushed)
        return pushed

    def _advance_watermark(self, timestamp: str) -> None:
        if timestamp <= self.watermark:
            return
        self.watermark = timestamp
        if not self.persist_watermark:
            return
        try:
            with self.session_factory() as db:
                save_watermark(db, timestamp)
        except StoreError:
            # In-memory watermark still advanced; the next confirmed push persists again
            logger.warning(f"Backup watermark {timestamp} not persisted")

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    async def restore(self) -> RestoreReport:
        """
        Copy every remote row missing locally into the local store.

        Never raises: a failed remote read is logged and yields an empty
        report, failed rows are counted and skipped.
        """
        report = RestoreReport()
        async with self._lock:
            self.state = SyncState.RESTORING
            try:
                try:
                    rows = await self.remote.fetch_all()
                except BackupRestoreError as e:
                    logger.error(f"Error fetching backup, restore skipped: {e}")
                    return report

                report.fetched = len(rows)
                if not rows:
                    logger.info("No messages to restore from backup")
                    return report

                for row in rows:
                    self._restore_row(row, report)
            finally:
                self.state = SyncState.IDLE

        logger.info(
            f"Restore finished: fetched={report.fetched}, restored={report.restored}, "
            f"skipped={report.skipped}, failed={report.failed}"
        )
        return report

    def _restore_row(self, row: dict, report: RestoreReport) -> None:
        try:
            fields = BackupRecord.model_validate(row).to_message_fields()
        except ValueError as e:
            # pydantic ValidationError is a ValueError too
            message_id = row.get("message_id") if isinstance(row, dict) else row
            logger.error(f"Error restoring message {message_id}: {e}")
            report.failed += 1
            record_restore_row("failed")
            return

        try:
            with self.session_factory() as db:
                inserted = insert_message_if_absent(db, fields)
        except StoreError:
            report.failed += 1
            record_restore_row("failed")
            return

        if inserted:
            report.restored += 1
            record_restore_row("restored")
        else:
            report.skipped += 1
            record_restore_row("skipped")

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Push immediately, then once per interval, until cancelled."""
        while True:
            logger.info("Starting scheduled backup...")
            try:
                await self.push_once()
            except Exception:
                logger.exception("Unexpected error in backup loop")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self.run(), name="backup-push-loop")
        logger.info(f"Backup service started, interval {self.interval_seconds}s")

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight push finish first."""
        if self._task is None:
            return
        async with self._lock:
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Backup service stopped")
