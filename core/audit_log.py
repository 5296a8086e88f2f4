"""
agent-mirror Core: Event Log

Append-only JSONL trail of follow events (entries, exits, replaces,
profit exits, manual closes, rejections) and per-tick summaries.
Lines are only ever appended; nothing here rewrites history.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.models import FollowEvent

logger = logging.getLogger(__name__)


class EventLog:
    """
    Structured event trail.

    Output format: JSONL (one JSON object per line)
    """

    def __init__(self, events_file: Optional[str] = None):
        """
        Initialize event log.

        Args:
            events_file: Path to the JSONL file (default: logs/follow_events.jsonl)
        """
        self.events_file = Path(events_file) if events_file else Path("logs/follow_events.jsonl")
        self.events_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized EventLog at {self.events_file}")

    def append(self, event: FollowEvent) -> None:
        self._write({"type": "event", **event.to_dict()})

    def log_tick(self, ts: datetime, mode: str, agent_id: str, status: str,
                 actions: Dict[str, int], error: Optional[str] = None) -> None:
        self._write({
            "type": "tick",
            "timestamp": ts.isoformat(),
            "mode": mode,
            "agent": agent_id,
            "status": status,
            "actions": actions,
            "error": error,
        })

    def _write(self, entry: Dict[str, Any]) -> None:
        try:
            with open(self.events_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.error(f"Failed to write event log: {e}")

    def read_events(self) -> List[Dict[str, Any]]:
        """Return all logged follow events (tick summaries excluded)."""
        if not self.events_file.exists():
            return []
        events = []
        with open(self.events_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    logger.warning("Skipping malformed event log line")
                    continue
                if entry.get("type") == "event":
                    events.append(entry)
        return events
