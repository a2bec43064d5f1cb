"""
Vault Engine Core: Audit Logger

Structured JSONL audit trail of engine events and cycle summaries.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from core.events import EngineEvent

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Records:
    - Every engine event (subscribe the logger to an EventEmitter)
    - One summary per scheduler cycle: vault outcomes and stage latencies

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        self.audit_file = Path(audit_file) if audit_file else Path("logs/audit.jsonl")
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def __call__(self, event: EngineEvent) -> None:
        self.log_event(event)

    def log_event(self, event: EngineEvent) -> None:
        entry = {"type": "event"}
        entry.update(event.to_dict())
        self._write(entry)

    def log_cycle(self,
                  ts: datetime,
                  mode: str,
                  status: str,
                  outcomes: Dict[str, str],
                  stage_latencies: Optional[Dict[str, float]] = None,
                  config_hash: Optional[str] = None,
                  errors: Optional[Dict[str, str]] = None) -> None:
        """
        Log a complete scheduler cycle.

        Args:
            ts: Cycle start timestamp
            mode: DRY_RUN or LIVE
            status: Overall cycle status
            outcomes: vault_id -> outcome status for this cycle
            stage_latencies: Optional per-stage timing snapshot
            errors: vault_id -> failure reason, for vaults that failed
        """
        counts: Dict[str, int] = {}
        for outcome in outcomes.values():
            counts[outcome] = counts.get(outcome, 0) + 1

        entry: Dict[str, Any] = {
            "type": "cycle",
            "timestamp": ts.isoformat(),
            "mode": mode,
            "status": status,
            "config_hash": config_hash,
            "vaults": len(outcomes),
            "outcome_counts": counts,
            "outcomes": outcomes,
        }
        if stage_latencies:
            entry["stage_latencies"] = stage_latencies
        if errors:
            entry["errors"] = errors
        self._write(entry)
        logger.debug(f"Audited cycle: status={status}")

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            line = json.dumps(entry, default=str)
            with self._lock:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit log: {e}")

    def get_recent(self, n: int = 10, entry_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent audit entries, most recent first.

        Args:
            n: Number of entries to retrieve
            entry_type: Restrict to "event" or "cycle" entries
        """
        if not self.audit_file.exists():
            return []

        with self._lock:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()

        entries = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if entry_type and entry.get("type") != entry_type:
                continue
            entries.append(entry)
            if len(entries) >= n:
                break
        return entries
