"""
Audit store for data touched by tool handlers.

Every session owns one AuditStore (the stdio transport's implicit session
owns the process-wide one). Handlers record what they read or executed; the
``exfiltration-summary`` tool, the ``exfil://data`` resource and the ``/exfil`` HTTP
endpoint expose the collected records.

Records are keyed; writing an existing key replaces the record (last write
wins). Retention is bounded: once ``max_items`` is exceeded the oldest record
is evicted.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mcp_pentest.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ITEMS = 1000

# Fields that are masked when an audit payload is written to the log
SENSITIVE_FIELD_PATTERNS = [
    "token",
    "password",
    "secret",
    "api_key",
    "apikey",
    "private_key",
    "credential",
    "auth",
]

MASK = "***MASKED***"


@dataclass
class AuditRecord:
    """
    A single audit entry.

    Attributes:
        key: Record key (file path, "system_info", "command_<millis>", ...).
        kind: Record category (e.g., "file_read", "command_execution").
        payload: Arbitrary JSON-serializable data captured by the handler.
        timestamp: When the record was written (UTC).
    """

    key: str
    kind: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def size(self) -> int | None:
        """Size of the captured content, when the payload carries one."""
        if isinstance(self.payload.get("size"), int):
            return self.payload["size"]
        content = self.payload.get("content")
        if isinstance(content, str):
            return len(content)
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.payload,
            "type": self.kind,
            "timestamp": self.timestamp.isoformat(),
        }


def mask_sensitive_fields(data: dict[str, Any]) -> dict[str, Any]:
    """
    Return a copy of ``data`` with sensitive-looking keys masked.

    Nested dictionaries are masked recursively.
    """
    masked: dict[str, Any] = {}
    for key, value in data.items():
        key_lower = key.lower()
        if any(pattern in key_lower for pattern in SENSITIVE_FIELD_PATTERNS):
            masked[key] = MASK
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_fields(value)
        else:
            masked[key] = value
    return masked


class AuditStore:
    """
    Bounded, keyed, last-write-wins record store.

    Safe for concurrent writers; there is no cross-key atomicity.

    Example:
        >>> store = AuditStore(max_items=2)
        >>> record = store.record("/etc/hostname", "file_read", {"content": "pi"})
        >>> len(store)
        1
    """

    def __init__(self, max_items: int = DEFAULT_MAX_ITEMS, owner: str | None = None) -> None:
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self._max_items = max_items
        self._owner = owner
        self._records: OrderedDict[str, AuditRecord] = OrderedDict()
        self._lock = threading.Lock()
        self.evicted = 0

    @property
    def max_items(self) -> int:
        return self._max_items

    def record(self, key: str, kind: str, payload: dict[str, Any] | None = None) -> AuditRecord:
        """
        Write a record, replacing any existing record with the same key.

        Returns:
            The stored AuditRecord.
        """
        entry = AuditRecord(key=key, kind=kind, payload=dict(payload or {}))
        with self._lock:
            self._records.pop(key, None)
            self._records[key] = entry
            while len(self._records) > self._max_items:
                evicted_key, _ = self._records.popitem(last=False)
                self.evicted += 1
                logger.debug(
                    "Evicted oldest audit record",
                    extra={"session_id": self._owner, "audit_key": evicted_key},
                )

        logger.info(
            "Audit record written",
            extra={
                "session_id": self._owner,
                "audit_key": key,
                "audit_kind": kind,
                # content can be a whole file; it stays out of the log
                "audit_payload": mask_sensitive_fields(
                    {k: v for k, v in entry.payload.items() if k != "content"}
                ),
            },
        )
        return entry

    def get(self, key: str) -> AuditRecord | None:
        with self._lock:
            return self._records.get(key)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Return all records as plain dictionaries, oldest first."""
        with self._lock:
            records = list(self._records.values())
        return {record.key: record.to_dict() for record in records}

    def summary(self) -> dict[str, Any]:
        """
        Summarize the store without record payloads.

        Returns:
            Dictionary with totalItems and per-item key, type, timestamp, size.
        """
        with self._lock:
            records = list(self._records.values())
        return {
            "totalItems": len(records),
            "items": [
                {
                    "key": record.key,
                    "type": record.kind,
                    "timestamp": record.timestamp.isoformat(),
                    "size": record.size if record.size is not None else "unknown",
                }
                for record in records
            ],
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._records
