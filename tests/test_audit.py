"""
Tests for the audit store.

This test module validates:
- Last-write-wins on key collisions
- Bounded retention with oldest-first eviction
- Snapshot and summary shapes
- Masking of sensitive fields
- Concurrent writers
"""

from __future__ import annotations

import threading

import pytest

from mcp_pentest.audit import MASK, AuditRecord, AuditStore, mask_sensitive_fields

# =============================================================================
# Tests for AuditStore
# =============================================================================


class TestAuditStore:
    """Tests for AuditStore."""

    def test_record_and_get(self) -> None:
        store = AuditStore()
        record = store.record("/etc/hostname", "file_read", {"content": "pi", "size": 2})

        assert isinstance(record, AuditRecord)
        assert store.get("/etc/hostname") is record
        assert "/etc/hostname" in store
        assert len(store) == 1

    def test_last_write_wins(self) -> None:
        store = AuditStore()
        store.record("k", "file_read", {"content": "old"})
        store.record("other", "file_read", {"content": "x"})
        store.record("k", "file_read", {"content": "new"})

        assert len(store) == 2
        assert store.get("k").payload["content"] == "new"
        # Overwritten key becomes the newest
        assert list(store.snapshot()) == ["other", "k"]

    def test_evicts_oldest_when_full(self) -> None:
        store = AuditStore(max_items=2)
        store.record("a", "x")
        store.record("b", "x")
        store.record("c", "x")

        assert list(store.snapshot()) == ["b", "c"]
        assert store.evicted == 1

    def test_invalid_max_items(self) -> None:
        with pytest.raises(ValueError):
            AuditStore(max_items=0)

    def test_payload_is_copied(self) -> None:
        store = AuditStore()
        payload = {"command": "id"}
        store.record("command_1", "command_execution", payload)
        payload["command"] = "changed"

        assert store.get("command_1").payload["command"] == "id"

    def test_snapshot_shape(self) -> None:
        store = AuditStore()
        store.record("system_info", "system_info", {"platform": "linux"})

        snapshot = store.snapshot()

        assert snapshot["system_info"]["platform"] == "linux"
        assert snapshot["system_info"]["type"] == "system_info"
        assert "timestamp" in snapshot["system_info"]

    def test_summary(self) -> None:
        store = AuditStore()
        store.record("/tmp/a", "file_read", {"content": "hello"})
        store.record("command_1", "command_execution", {"command": "id"})

        summary = store.summary()

        assert summary["totalItems"] == 2
        items = {item["key"]: item for item in summary["items"]}
        assert items["/tmp/a"]["size"] == 5
        assert items["/tmp/a"]["type"] == "file_read"
        assert items["command_1"]["size"] == "unknown"

    def test_concurrent_writers(self) -> None:
        store = AuditStore(max_items=10_000)

        def writer(prefix: str) -> None:
            for i in range(200):
                store.record(f"{prefix}-{i}", "x", {"i": i})

        threads = [threading.Thread(target=writer, args=(f"t{n}",)) for n in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(store) == 1000


# =============================================================================
# Tests for mask_sensitive_fields
# =============================================================================


class TestMaskSensitiveFields:
    """Tests for mask_sensitive_fields."""

    def test_masks_matching_keys(self) -> None:
        masked = mask_sensitive_fields({"password": "p", "API_KEY": "k", "user": "bob"})

        assert masked == {"password": MASK, "API_KEY": MASK, "user": "bob"}

    def test_masks_nested(self) -> None:
        masked = mask_sensitive_fields({"environment": {"GITHUB_TOKEN": "t", "HOME": "/root"}})

        assert masked["environment"] == {"GITHUB_TOKEN": MASK, "HOME": "/root"}

    def test_does_not_modify_input(self) -> None:
        data = {"secret": "s"}
        mask_sensitive_fields(data)

        assert data == {"secret": "s"}
