"""Async JSONL audit log of token requests."""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """One token request. Token values are never recorded."""

    timestamp: datetime
    endpoint: str
    scope: str | None = None
    client_id: str | None = None
    tenant_id: str | None = None
    federation_scope: str | None = None

    # Outcome
    status_code: int = 200
    error: str | None = None
    stage: str | None = None
    error_code: str | None = None
    correlation_id: str | None = None
    expires_at: datetime | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "endpoint": self.endpoint,
            "client_id": self.client_id,
            "tenant_id": self.tenant_id,
            "federation_scope": self.federation_scope,
            "scope": self.scope,
            "status_code": self.status_code,
            "error": self.error,
            "stage": self.stage,
            "error_code": self.error_code,
            "correlation_id": self.correlation_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "duration_ms": self.duration_ms,
        }


class AuditWriter:
    """Async JSONL audit writer with best-effort semantics.

    Entries are queued by request handlers and written in batches by a
    background task to: {directory}/audit_YYYYMMDD.jsonl
    """

    def __init__(
        self,
        directory: str | Path,
        batch_size: int = 10,
        batch_timeout: float = 1.0,
    ) -> None:
        """Initialize the audit writer.

        Args:
            directory: Base directory for audit files
            batch_size: Maximum number of entries per batch write
            batch_timeout: Maximum time (seconds) to wait before flushing partial batch
        """
        self._directory = Path(directory)
        self._write_lock = asyncio.Lock()

        self._queue: asyncio.Queue[AuditEntry | None] = asyncio.Queue()
        self._batch_size = batch_size
        self._batch_timeout = batch_timeout
        self._background_task: asyncio.Task | None = None
        self._shutdown = False

    def _get_log_path(self, dt: datetime) -> Path:
        """Get the audit file path for a given datetime."""
        date_str = dt.strftime("%Y%m%d")
        return self._directory / f"audit_{date_str}.jsonl"

    async def write(self, entry: AuditEntry) -> bool:
        """Enqueue an entry and return immediately.

        Returns:
            True if the entry was queued
        """
        try:
            self._queue.put_nowait(entry)
            return True
        except asyncio.QueueFull as e:
            logger.warning(f"Failed to enqueue audit entry: {e}")
            return False

    async def start(self) -> None:
        """Start the background writer task.

        Should be called during application startup.
        """
        if self._background_task is None:
            self._shutdown = False
            self._background_task = asyncio.create_task(self._background_writer())
            logger.info(f"Audit writer started (batch_size={self._batch_size}, timeout={self._batch_timeout}s)")

    async def stop(self) -> None:
        """Stop the background writer task and flush pending entries.

        Should be called during application shutdown.
        """
        if self._background_task:
            self._shutdown = True
            # Sentinel wakes up the worker
            await self._queue.put(None)
            await self._background_task
            self._background_task = None
            logger.info("Audit writer stopped")

    async def _background_writer(self) -> None:
        """Consume the queue and write in batches until shutdown."""
        while not self._shutdown:
            try:
                batch = await self._collect_batch()
                if batch:
                    await self._write_batch(batch)
            except Exception as e:
                logger.error(f"Error in audit writer: {e}", exc_info=True)

        await self._flush_remaining()

    async def _collect_batch(self) -> list[AuditEntry]:
        """Collect up to batch_size entries from the queue."""
        batch: list[AuditEntry] = []

        try:
            entry = await asyncio.wait_for(self._queue.get(), timeout=self._batch_timeout)

            if entry is None:
                return batch

            batch.append(entry)

            while len(batch) < self._batch_size:
                try:
                    entry = self._queue.get_nowait()
                    if entry is None:
                        return batch
                    batch.append(entry)
                except asyncio.QueueEmpty:
                    break

        except asyncio.TimeoutError:
            pass

        return batch

    async def _write_batch(self, batch: list[AuditEntry]) -> None:
        """Write a batch, grouped by the file each entry belongs to."""
        if not batch:
            return

        lines_by_path: dict[Path, list[str]] = {}
        for entry in batch:
            log_path = self._get_log_path(entry.timestamp)
            line = json.dumps(entry.to_dict(), separators=(",", ":")) + "\n"
            lines_by_path.setdefault(log_path, []).append(line)

        for log_path, lines in lines_by_path.items():
            try:
                log_path.parent.mkdir(parents=True, exist_ok=True)

                async with self._write_lock:
                    await asyncio.to_thread(self._write_lines, log_path, lines)

                logger.debug(f"Wrote {len(lines)} audit entries to {log_path}")

            except OSError as e:
                logger.warning(f"Failed to write audit batch to {log_path}: {e}")

    def _write_lines(self, path: Path, lines: list[str]) -> None:
        """Append lines to a file (blocking, run in thread pool)."""
        with open(path, "a", encoding="utf-8") as f:
            f.writelines(lines)

    async def _flush_remaining(self) -> None:
        """Flush entries still queued at shutdown."""
        remaining: list[AuditEntry] = []

        while not self._queue.empty():
            try:
                entry = self._queue.get_nowait()
                if entry is not None:
                    remaining.append(entry)
            except asyncio.QueueEmpty:
                break

        if remaining:
            logger.info(f"Flushing {len(remaining)} remaining audit entries")
            await self._write_batch(remaining)
