from __future__ import annotations

import logging
import threading
from typing import List, Protocol

from .models import AuditEntry

logger = logging.getLogger(__name__)


# --- Audit sinks ---
class AuditSink(Protocol):
    def append(self, entry: AuditEntry) -> None:
        ...


class LoggingAuditLog:
    """Default sink: one log record per decision on the `agent_guard.audit` logger."""

    def append(self, entry: AuditEntry) -> None:
        level = logging.DEBUG if entry.allowed else logging.WARNING
        logger.log(
            level,
            "%s %s at level %d: %s (%s)",
            entry.action_type,
            "allowed" if entry.allowed else "refused",
            entry.security_level,
            entry.detail,
            entry.reason,
        )


def safe_append(sink: AuditSink, entry: AuditEntry) -> None:
    """Append to `sink`; a failing sink is logged and never reaches the caller."""
    try:
        sink.append(entry)
    except Exception:
        logger.exception("Audit append failed for %s", entry.action_type)


class MemoryAuditLog:
    """In-process sink, mostly for tests and embedding hosts that flush entries themselves."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: List[AuditEntry] = []

    def append(self, entry: AuditEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    @property
    def entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
