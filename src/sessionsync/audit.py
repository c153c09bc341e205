"""
Audit log -- every sync, save and resume leaves a line behind.

Format is JSONL (one JSON object per line) so the log is append-only
and machine-parseable. Each entry has a timestamp, event type, detail,
and the host that wrote it.
"""

from __future__ import annotations

import json
import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("sessionsync.audit")

AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    metadata: Optional[dict[str, Any]] = None


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    metadata: Optional[dict[str, Any]] = None,
) -> AuditEntry:
    """Append an event to ``<home>/audit.log``.

    Args:
        home: Sync home directory.
        event_type: SYNC_UPLOAD, SYNC_DOWNLOAD, SESSION_SAVE, SESSION_RESUME, ...
        detail: Human-readable description.
        metadata: Extra structured data.
    """
    entry = AuditEntry(event_type=event_type, detail=detail, metadata=metadata)
    audit_log = home.expanduser() / AUDIT_LOG_NAME
    try:
        audit_log.parent.mkdir(parents=True, exist_ok=True)
        with open(audit_log, "a", encoding="utf-8") as fh:
            fh.write(entry.model_dump_json() + "\n")
    except OSError as exc:
        logger.warning("Could not write audit entry: %s", exc)
    return entry


def read_audit_log(home: Path, limit: Optional[int] = None) -> list[AuditEntry]:
    """Most recent audit entries, oldest first."""
    audit_log = home.expanduser() / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []
    entries = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValueError):
            continue
    if limit is not None:
        entries = entries[-limit:]
    return entries
