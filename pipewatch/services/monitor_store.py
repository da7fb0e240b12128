"""
Monitor Store
=============
Process-wide registry of pipeline monitors, persisted as one JSON array.

Persistence:
    - The whole collection is rewritten after EVERY mutation (not append-only)
    - Written to a temp file then os.replace()d so a crash never leaves a
      half-written array behind
    - Parent directory is created on first write
    - A mutation reaches memory only after its write succeeded; a failed
      write (disk full, permissions) raises and leaves the store unchanged

Invariants enforced here (not by callers):
    - status only moves forward: "polling" → terminal, never terminal → anything
    - timestamps.completed_at is set exactly when status becomes terminal
    - at most `max_active` monitors are "polling" (checked atomically in create)

load() only deserialises. Re-arming timers for monitors that were polling
before a restart is PipelineMonitorService.resume()'s job.
"""
import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from pipewatch.core.constants import (
    SESSION_VISIBLE_STATUSES,
    STATUS_POLLING,
    TERMINAL_STATUSES,
)
from pipewatch.models.pipeline_monitor import PipelineMonitor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class MonitorNotFoundError(KeyError):
    """No monitor with the given id."""


class MonitorCapacityError(Exception):
    """Too many monitors are already polling."""


class InvalidTransitionError(Exception):
    """Attempted to move a monitor out of a terminal status."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MonitorStore:
    """
    Keyed, lock-protected collection of PipelineMonitor records.

    Usage:
        store = MonitorStore("config/pipeline-monitors.json")
        store.load()
        store.create(monitor, max_active=10)
        store.update(monitor.id, status="success")
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._monitors: Dict[str, PipelineMonitor] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self) -> int:
        """Replace in-memory state with the file's contents. Returns record count."""
        with self._lock:
            self._monitors.clear()
            if not os.path.exists(self.path):
                return 0

            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                for record in data:
                    monitor = PipelineMonitor.model_validate(record)
                    self._monitors[monitor.id] = monitor
            except (OSError, ValueError, TypeError, ValidationError) as e:
                logger.warning("Failed to load monitors from %s: %s", self.path, e)
                self._monitors.clear()
                return 0

            logger.info(
                "Loaded %d monitors (%d polling) from %s",
                len(self._monitors), self.count_active(), self.path,
            )
            return len(self._monitors)

    def _save(self, monitors: Dict[str, PipelineMonitor]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        if not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        data = [m.model_dump(mode="json") for m in monitors.values()]
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    def _commit(self, monitors: Dict[str, PipelineMonitor]) -> None:
        # Disk first: if the write raises, memory still matches the file
        self._save(monitors)
        self._monitors = monitors

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, monitor_id: str) -> Optional[PipelineMonitor]:
        with self._lock:
            monitor = self._monitors.get(monitor_id)
            return monitor.model_copy(deep=True) if monitor else None

    def get_by_session(self, session_id: str) -> Optional[PipelineMonitor]:
        """Most recently started monitor of the session that the UI still shows."""
        with self._lock:
            candidates = [
                m for m in self._monitors.values()
                if m.session_id == session_id and m.status in SESSION_VISIBLE_STATUSES
            ]
            if not candidates:
                return None
            latest = max(candidates, key=lambda m: m.timestamps.started_at)
            return latest.model_copy(deep=True)

    def list_all(self) -> List[PipelineMonitor]:
        with self._lock:
            return [m.model_copy(deep=True) for m in self._monitors.values()]

    def list_active(self) -> List[PipelineMonitor]:
        with self._lock:
            return [m.model_copy(deep=True) for m in self._monitors.values() if m.status == STATUS_POLLING]

    def count_active(self) -> int:
        with self._lock:
            return sum(1 for m in self._monitors.values() if m.status == STATUS_POLLING)

    def __len__(self) -> int:
        return len(self._monitors)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def create(self, monitor: PipelineMonitor, max_active: Optional[int] = None) -> PipelineMonitor:
        """Insert a new monitor. Raises MonitorCapacityError without inserting when full."""
        with self._lock:
            if max_active is not None and monitor.status == STATUS_POLLING:
                if self.count_active() >= max_active:
                    raise MonitorCapacityError(f"Maximum concurrent monitors ({max_active}) reached")
            self._commit({**self._monitors, monitor.id: monitor.model_copy(deep=True)})
            return monitor.model_copy(deep=True)

    def update(self, monitor_id: str, **changes: Any) -> PipelineMonitor:
        """
        Apply field changes to a monitor and persist.

        Parameters
        ----------
        monitor_id : str
            Monitor to change.
        **changes
            PipelineMonitor field values. A terminal `status` also stamps
            timestamps.completed_at (`completed_at` overrides the stamp time);
            `last_poll_at` is accepted as a shortcut for timestamps.last_poll_at.

        Raises
        ------
        MonitorNotFoundError
            Unknown id.
        InvalidTransitionError
            The monitor is already terminal.
        """
        with self._lock:
            current = self._monitors.get(monitor_id)
            if current is None:
                raise MonitorNotFoundError(monitor_id)
            if current.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    f"Monitor {monitor_id} is {current.status}; no further updates allowed"
                )

            last_poll_at = changes.pop("last_poll_at", None)
            completed_at = changes.pop("completed_at", None)
            timestamps = current.timestamps.model_copy()
            if last_poll_at is not None:
                timestamps.last_poll_at = last_poll_at

            new_status = changes.get("status", current.status)
            if new_status in TERMINAL_STATUSES:
                timestamps.completed_at = completed_at or _utcnow()

            updated = current.model_copy(update={**changes, "timestamps": timestamps}, deep=True)
            # model_copy skips validation; re-validate so a bad status never hits disk
            updated = PipelineMonitor.model_validate(updated.model_dump())
            self._commit({**self._monitors, monitor_id: updated})
            return updated.model_copy(deep=True)

    def delete(self, monitor_id: str) -> bool:
        with self._lock:
            if monitor_id not in self._monitors:
                return False
            self._commit({k: m for k, m in self._monitors.items() if k != monitor_id})
            return True

    def prune_terminal(self, older_than: datetime) -> int:
        """Drop terminal monitors that completed before `older_than`. Returns count removed."""
        with self._lock:
            stale = [
                m.id for m in self._monitors.values()
                if m.status in TERMINAL_STATUSES
                and m.timestamps.completed_at is not None
                and m.timestamps.completed_at < older_than
            ]
            if stale:
                self._commit({k: m for k, m in self._monitors.items() if k not in stale})
                logger.info("Pruned %d finished monitors", len(stale))
            return len(stale)
