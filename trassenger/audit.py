"""
Audit logging for Trassenger.
Keeps a local, append-only record of sync activity for the owner.
"""

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    """A single audit log event."""
    timestamp: datetime
    event_type: str
    data: Dict[str, Any]

    def to_jsonl(self) -> str:
        return json.dumps({
            'ts': self.timestamp.isoformat(),
            'event': self.event_type,
            **self.data,
        })


class AuditLog:
    """
    Audit logger for sync activity.
    Writes to append-only JSONL files, one per UTC day.
    """

    def __init__(self, logs_dir: Path, role: str = "session"):
        self.logs_dir = logs_dir
        self.role = role
        self.logs_dir.mkdir(parents=True, exist_ok=True)

        self._current_date: Optional[str] = None
        self._log_file = None

    def _get_log_file(self):
        """Get the current log file, rotating if needed."""
        today = datetime.now(timezone.utc).strftime('%Y-%m-%d')

        if self._current_date != today:
            if self._log_file:
                self._log_file.close()

            log_path = self.logs_dir / f"audit-{today}.jsonl"
            self._log_file = open(log_path, 'a')
            self._current_date = today

        return self._log_file

    def log_event(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log an audit event. Never raises."""
        event = AuditEvent(
            timestamp=datetime.now(timezone.utc),
            event_type=event_type,
            data={'role': self.role, **(data or {})},
        )

        try:
            log_file = self._get_log_file()
            log_file.write(event.to_jsonl() + '\n')
            log_file.flush()
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit log: {e}")

    def log_message_received(self, queue_id: str, message_id: str, sender: str) -> None:
        self.log_event("message_received", {
            'queue_id': queue_id,
            'message_id': message_id,
            'from': sender,
        })

    def log_message_sent(self, queue_id: str, message_id: str, delivered: bool) -> None:
        self.log_event("message_sent", {
            'queue_id': queue_id,
            'message_id': message_id,
            'delivered': delivered,
        })

    def log_decode_failed(self, queue_id: str, message_id: str, reason: str) -> None:
        self.log_event("decode_failed", {
            'queue_id': queue_id,
            'message_id': message_id,
            'reason': reason,
        })

    def log_transport_unavailable(self, queue_id: str, operation: str, reason: str) -> None:
        self.log_event("transport_unavailable", {
            'queue_id': queue_id,
            'operation': operation,
            'reason': reason,
        })

    def log_contact_imported(self, name: str, queue_id: str) -> None:
        self.log_event("contact_imported", {
            'name': name,
            'queue_id': queue_id,
        })

    def log_marker_reclaimed(self, marker: str, stale_pid: int) -> None:
        self.log_event("marker_reclaimed", {
            'marker': marker,
            'stale_pid': stale_pid,
        })

    def get_recent_events(
        self,
        limit: int = 100,
        event_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Read recent events back, newest first."""
        events: List[Dict[str, Any]] = []

        for log_path in sorted(self.logs_dir.glob("audit-*.jsonl"), reverse=True):
            with open(log_path, 'r') as f:
                lines = f.readlines()

            for line in reversed(lines):
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get('event') != event_type:
                    continue
                events.append(event)
                if len(events) >= limit:
                    return events

        return events

    def close(self) -> None:
        if self._log_file:
            self._log_file.close()
            self._log_file = None
            self._current_date = None
