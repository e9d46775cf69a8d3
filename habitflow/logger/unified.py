"""
Unified event logger for routine activity.
Writes schema-validated structured events (session started, habit completed,
question answered, template selected, ...) to an append-only JSONL file.
"""
from __future__ import annotations
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema
from jsonschema import FormatChecker

from habitflow.engine.errors import ValidationError
from habitflow.engine.habits.habit_types import ensure_timezone_aware

_log = logging.getLogger(__name__)
_log.addHandler(logging.NullHandler())

EVENT_CATEGORIES = ["routine", "routine_step", "conditional", "selection", "context", "sync"]

# Define the log entry schema for validation
LOG_ENTRY_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["id", "category", "timestamp"],
    "properties": {
        "id": {"type": "string"},
        "category": {"type": "string", "enum": EVENT_CATEGORIES},
        "timestamp": {"type": "string", "format": "date-time"},
        "value": {
            "oneOf": [
                {"type": "number"},
                {"type": "string"},
                {"type": "boolean"},
                {"type": "object"}
            ]
        },
        "source": {"type": "string", "enum": ["engine", "service", "cli", "device"]},
        "metadata": {"type": "object"}
    }
}


class UnifiedLogger:
    """
    Structured event log backed by a JSONL file.
    Each call to ``log`` validates the entry and appends one line.
    """

    EVENTS_FILENAME = "events.jsonl"

    def __init__(self, data_dir: Optional[Path | str] = None, events_file: Optional[Path | str] = None):
        """
        Initialize the UnifiedLogger.

        Args:
            data_dir: Directory that will hold events.jsonl
            events_file: Explicit events file path (takes precedence)
        """
        if events_file is not None:
            self.events_file = Path(events_file)
        elif data_dir is not None:
            self.events_file = Path(data_dir) / self.EVENTS_FILENAME
        else:
            raise ValueError("Either data_dir or events_file must be provided")
        self.events_file.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.RLock()

    def info(self, message: str, *args) -> None:
        _log.info(message, *args)

    def debug(self, message: str, *args) -> None:
        _log.debug(message, *args)

    def warning(self, message: str, *args) -> None:
        _log.warning(message, *args)

    def error(self, message: str, *args) -> None:
        _log.error(message, *args)

    def log(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and append an event.

        Args:
            entry: Event dict with category, timestamp, value, metadata

        Returns:
            The stored entry (with generated id and defaults)

        Raises:
            jsonschema.exceptions.ValidationError: If entry is invalid
        """
        if not isinstance(entry, dict):
            raise ValidationError("Entry must be a dictionary")

        entry_with_defaults = dict(entry)
        if not entry_with_defaults.get("id"):
            entry_with_defaults["id"] = str(uuid.uuid4())
        if not entry_with_defaults.get("timestamp"):
            entry_with_defaults["timestamp"] = datetime.now(timezone.utc).isoformat()
        elif isinstance(entry_with_defaults["timestamp"], datetime):
            entry_with_defaults["timestamp"] = ensure_timezone_aware(entry_with_defaults["timestamp"]).isoformat()
        if not entry_with_defaults.get("source"):
            entry_with_defaults["source"] = "engine"
        entry_with_defaults.setdefault("metadata", {})

        jsonschema.validate(instance=entry_with_defaults, schema=LOG_ENTRY_SCHEMA, format_checker=FormatChecker())

        with self.lock:
            with self.events_file.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry_with_defaults, ensure_ascii=False, separators=(",", ":")) + "\n")
        return entry_with_defaults

    def read_events(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        """All stored events, optionally filtered by category. Corrupted lines are skipped."""
        if not self.events_file.exists():
            return []
        events = []
        with self.lock:
            with self.events_file.open("r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        obj = json.loads(line)
                    except json.JSONDecodeError:
                        self.warning("Skipping corrupted line in %s", self.events_file)
                        continue
                    if category is None or obj.get("category") == category:
                        events.append(obj)
        return events

    def get_daily_summary(self, date_str: str) -> Dict[str, Any]:
        """
        Get event counts per category for a specific day (UTC).

        Args:
            date_str: Date in YYYY-MM-DD format

        Returns:
            Dict with categories as keys, each holding a count and the values seen
        """
        try:
            target_date = datetime.fromisoformat(date_str).date()
        except ValueError:
            raise ValueError(f"Invalid date format: {date_str}")

        summary: Dict[str, Any] = {}
        for event in self.read_events():
            timestamp_str = event.get("timestamp", "")
            if timestamp_str.endswith("Z"):
                timestamp_str = timestamp_str[:-1] + "+00:00"
            try:
                dt = ensure_timezone_aware(datetime.fromisoformat(timestamp_str)).astimezone(timezone.utc)
            except ValueError:
                continue
            if dt.date() != target_date:
                continue
            data = summary.setdefault(event["category"], {"count": 0, "values": {}})
            data["count"] += 1
            value = event.get("value")
            if isinstance(value, str):
                data["values"][value] = data["values"].get(value, 0) + 1
        return summary
