"""
Append-only audit log for webhook traffic and remediation actions.

Every record is written as one JSON line to the audit file. Records at
error, critical or deploy level are also appended to the deployment audit
file, whose modification time doubles as the last-deployment timestamp.
"""

import json
import threading
import structlog
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .config import Settings

logger = structlog.get_logger()

DEPLOYMENT_LEVELS = ("error", "critical", "deploy")
USER_AGENT_MAX_LENGTH = 50


class AuditLog:
    """JSON-lines audit sink, safe for concurrent appends."""

    def __init__(self, path: Union[str, Path], deployment_path: Union[str, Path]):
        self.path = Path(path)
        self.deployment_path = Path(deployment_path)
        self._lock = threading.Lock()
        self.logger = logger.bind(component="audit")

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuditLog":
        return cls(settings.audit_log_path, settings.deployment_audit_log_path)

    def record(
        self,
        event: str,
        level: str = "info",
        remote_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        **fields: Any
    ) -> Dict[str, Any]:
        """
        Append one audit record.

        Args:
            event: Event name
            level: info, warning, error, critical or deploy
            remote_ip: Caller address, if known
            user_agent: Caller user agent, truncated
            **fields: Extra structured fields

        Returns:
            The record as written
        """
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.upper(),
            "event": event,
        }
        if remote_ip is not None:
            entry["ip"] = remote_ip
        if user_agent is not None:
            entry["user_agent"] = user_agent[:USER_AGENT_MAX_LENGTH]
        entry.update(fields)

        line = json.dumps(entry, default=str) + "\n"
        with self._lock:
            self._append(self.path, line)
            if level.lower() in DEPLOYMENT_LEVELS:
                self._append(self.deployment_path, line)

        log_method = {
            "warning": self.logger.warning,
            "error": self.logger.error,
            "critical": self.logger.critical,
        }.get(level.lower(), self.logger.info)
        log_method(event, audit_level=level, **fields)

        return entry

    def _append(self, path: Path, line: str):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError as e:
            # Losing an audit line must not fail the request it describes
            self.logger.error("audit_write_failed", path=str(path), error=str(e))

    def last_deployment_at(self) -> Optional[datetime]:
        """Modification time of the deployment audit file, if it exists."""
        try:
            mtime = self.deployment_path.stat().st_mtime
        except OSError:
            return None
        return datetime.fromtimestamp(mtime, tz=timezone.utc)

    def read_entries(self, deployment: bool = False) -> List[Dict[str, Any]]:
        """Read back audit records, oldest first."""
        path = self.deployment_path if deployment else self.path
        if not path.exists():
            return []
        with self._lock:
            lines = path.read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines if line.strip()]
