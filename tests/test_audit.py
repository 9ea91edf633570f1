"""Test the batched JSONL audit writer."""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from managed_federation.audit.writer import AuditEntry, AuditWriter


@pytest.fixture
async def audit_writer(tmp_path):
    """Create and start a test audit writer."""
    writer = AuditWriter(directory=tmp_path, batch_size=5, batch_timeout=0.5)
    await writer.start()
    yield writer
    await writer.stop()


def read_lines(path) -> list[dict]:
    with open(path, "r", encoding="utf-8") as f:
        return [json.loads(line) for line in f]


@pytest.mark.asyncio
async def test_batch_write_multiple_entries(audit_writer):
    """Test that multiple entries are batched together."""
    entries = []
    for i in range(10):
        entry = AuditEntry(
            timestamp=datetime.now(timezone.utc),
            endpoint="/api/GetAppTokenUsingManagedIdentity",
            client_id=f"app{i}",
            tenant_id="tenantA",
            federation_scope="api://AzureADTokenExchange/.default",
            scope="api://target/.default",
        )
        entries.append(entry)
        await audit_writer.write(entry)

    await asyncio.sleep(1.5)

    log_path = audit_writer._get_log_path(entries[0].timestamp)
    assert log_path.exists(), "Audit file should exist"

    lines = read_lines(log_path)
    assert len(lines) == 10, f"Expected 10 audit entries, got {len(lines)}"
    assert [line["client_id"] for line in lines] == [f"app{i}" for i in range(10)]


@pytest.mark.asyncio
async def test_batch_timeout_flush(audit_writer):
    """Test that partial batches are flushed after timeout."""
    entry = AuditEntry(timestamp=datetime.now(timezone.utc), endpoint="/api/GetManagedIdentityToken", scope="s")

    await audit_writer.write(entry)
    await asyncio.sleep(1.0)

    log_path = audit_writer._get_log_path(entry.timestamp)
    assert log_path.exists(), "Audit file should exist after timeout"
    assert len(read_lines(log_path)) == 1


@pytest.mark.asyncio
async def test_concurrent_writes(audit_writer):
    """Test concurrent writes from multiple coroutines."""
    now = datetime.now(timezone.utc)

    async def write_entries(prefix: str, count: int):
        for i in range(count):
            await audit_writer.write(AuditEntry(timestamp=now, endpoint=f"/{prefix}-{i}"))

    await asyncio.gather(
        write_entries("task1", 10),
        write_entries("task2", 10),
        write_entries("task3", 10),
    )
    await asyncio.sleep(1.5)

    lines = read_lines(audit_writer._get_log_path(now))
    assert len(lines) == 30
    assert len({line["endpoint"] for line in lines}) == 30, "All entries should be unique"


@pytest.mark.asyncio
async def test_shutdown_flushes_queue(tmp_path):
    """Test that shutdown flushes remaining entries in queue."""
    writer = AuditWriter(directory=tmp_path, batch_size=100, batch_timeout=10.0)
    await writer.start()

    now = datetime.now(timezone.utc)
    for i in range(5):
        await writer.write(AuditEntry(timestamp=now, endpoint=f"/test-{i}"))

    await writer.stop()

    log_path = writer._get_log_path(now)
    assert log_path.exists(), "Audit file should exist after shutdown"
    assert len(read_lines(log_path)) == 5


@pytest.mark.asyncio
async def test_batch_grouping_by_date(tmp_path):
    """Test that entries are split into one file per day."""
    writer = AuditWriter(directory=tmp_path, batch_size=10, batch_timeout=0.5)
    await writer.start()

    today = datetime.now(timezone.utc)
    yesterday = today - timedelta(days=1)

    for i in range(3):
        await writer.write(AuditEntry(timestamp=yesterday, endpoint=f"/yesterday-{i}"))
    for i in range(3):
        await writer.write(AuditEntry(timestamp=today, endpoint=f"/today-{i}"))

    await writer.stop()

    yesterday_path = writer._get_log_path(yesterday)
    today_path = writer._get_log_path(today)
    assert yesterday_path != today_path
    assert [line["endpoint"] for line in read_lines(yesterday_path)] == [f"/yesterday-{i}" for i in range(3)]
    assert [line["endpoint"] for line in read_lines(today_path)] == [f"/today-{i}" for i in range(3)]


def test_log_path_layout(tmp_path):
    writer = AuditWriter(directory=tmp_path)
    path = writer._get_log_path(datetime(2025, 12, 14, 10, 30, tzinfo=timezone.utc))

    assert path == tmp_path / "audit_20251214.jsonl"


class TestAuditEntry:

    def test_to_dict_success(self, fixed_datetime):
        entry = AuditEntry(
            timestamp=fixed_datetime,
            endpoint="/api/GetAppTokenUsingManagedIdentity",
            client_id="app1",
            tenant_id="tenantA",
            federation_scope="fed-scope",
            scope="api://target/.default",
            expires_at=fixed_datetime + timedelta(hours=1),
            duration_ms=42,
        )

        data = entry.to_dict()

        assert data["timestamp"] == "2025-12-14T10:30:00+00:00"
        assert data["expires_at"] == "2025-12-14T11:30:00+00:00"
        assert data["status_code"] == 200
        assert data["error"] is None
        assert data["duration_ms"] == 42

    def test_to_dict_failure(self, fixed_datetime):
        entry = AuditEntry(
            timestamp=fixed_datetime,
            endpoint="/api/GetAppTokenUsingManagedIdentity",
            status_code=401,
            error="grant_rejected",
            stage="grant",
            error_code="invalid_client",
            correlation_id="corr-123",
        )

        data = entry.to_dict()

        assert data["expires_at"] is None
        assert data["stage"] == "grant"
        assert data["error_code"] == "invalid_client"
        assert data["correlation_id"] == "corr-123"

    def test_has_no_token_field(self, fixed_datetime):
        data = AuditEntry(timestamp=fixed_datetime, endpoint="/x").to_dict()

        assert not any("token" in key for key in data)
