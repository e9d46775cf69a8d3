"""
JSON export and import of a device's routines, session history and mood
ratings.

Imports merge into an existing service: templates whose id or name is
already present are skipped, as are sessions and mood ratings that are
already stored. Template ids are kept so imported history still points at
its routine.
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema
from jsonschema import FormatChecker

from habitflow import __version__
from habitflow.engine.core.routine_service import RoutineService
from habitflow.engine.errors import ValidationError
from habitflow.engine.routines.models import SESSION_SCHEMA, MoodRating, RoutineSession, RoutineTemplate

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

EXPORT_FORMAT_VERSION = 1

EXPORT_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["format_version", "exported_at", "routines", "sessions"],
    "properties": {
        "format_version": {"type": "integer", "const": EXPORT_FORMAT_VERSION},
        "app_version": {"type": "string"},
        "exported_at": {"type": "string", "format": "date-time"},
        "routines": {
            "type": "array",
            "items": {"type": "object", "required": ["id", "name", "habits"]},
        },
        "sessions": {
            "type": "array",
            "items": {k: v for k, v in SESSION_SCHEMA.items() if k != "$schema"},
        },
        "mood_ratings": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["session_id", "mood"],
                "properties": {
                    "session_id": {"type": "string"},
                    "mood": {"type": "string"},
                    "recorded_at": {"type": "string", "format": "date-time"},
                    "notes": {"type": ["string", "null"]},
                },
            },
        },
    },
}


@dataclass
class ImportResult:
    routines_imported: int = 0
    routines_skipped: int = 0
    sessions_imported: int = 0
    sessions_skipped: int = 0
    mood_ratings_imported: int = 0
    issues: List[str] = field(default_factory=list)

    @property
    def total_imported(self) -> int:
        return self.routines_imported + self.sessions_imported + self.mood_ratings_imported

    def to_dict(self) -> Dict[str, Any]:
        return {
            "routines_imported": self.routines_imported,
            "routines_skipped": self.routines_skipped,
            "sessions_imported": self.sessions_imported,
            "sessions_skipped": self.sessions_skipped,
            "mood_ratings_imported": self.mood_ratings_imported,
            "issues": list(self.issues),
        }


def export_filename(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"HabitFlow_Export_{now.strftime('%Y-%m-%d_%H-%M-%S')}.json"


def export_data(service: RoutineService, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Everything needed to rebuild this device's routines and history."""
    now = now or service.clock()
    return {
        "format_version": EXPORT_FORMAT_VERSION,
        "app_version": __version__,
        "exported_at": now.isoformat(),
        "routines": [t.to_dict() for t in service.templates],
        "sessions": [s.to_dict() for s in service.history()],
        "mood_ratings": [m.to_dict() for m in service.mood_ratings],
    }


def export_to_json(service: RoutineService, now: Optional[datetime] = None) -> str:
    return json.dumps(export_data(service, now), indent=2, sort_keys=True, ensure_ascii=False)


def export_to_file(service: RoutineService, path: Path | str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(export_to_json(service), encoding="utf-8")
    logger.info("Exported %d routines to %s", len(service.templates), path)
    return path


def _parse(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Import file is not valid JSON: {e}") from e
    try:
        jsonschema.validate(instance=data, schema=EXPORT_SCHEMA, format_checker=FormatChecker())
    except jsonschema.exceptions.ValidationError as e:
        raise ValidationError(f"Import file is malformed: {e.message}") from e
    return data


def import_from_json(service: RoutineService, text: str) -> ImportResult:
    """Merge an export into ``service``. Raises ValidationError on a bad document."""
    data = _parse(text)
    try:
        routines = [RoutineTemplate.from_dict(t) for t in data["routines"]]
        sessions = [RoutineSession.from_dict(s) for s in data["sessions"]]
        ratings = [MoodRating.from_dict(m) for m in data.get("mood_ratings", [])]
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Import file is malformed: {e}") from e

    result = ImportResult()
    known_ids = {t.id for t in service.templates}
    known_names = {t.name for t in service.templates}
    for template in routines:
        if template.id in known_ids or template.name in known_names:
            result.routines_skipped += 1
            continue
        if template.is_default and service.default_template is not None:
            template.is_default = False
        added = service.add_template(template)
        if not added.ok:
            result.routines_skipped += 1
            result.issues.append(f"{template.name}: {added.message}")
            continue
        known_ids.add(template.id)
        known_names.add(template.name)
        result.routines_imported += 1

    for session in sessions:
        if service.store.get(session.id) is not None:
            result.sessions_skipped += 1
            continue
        service.store.save(session)
        result.sessions_imported += 1

    for rating in ratings:
        if service.store.mood_rating_for(rating.session_id) is not None:
            continue
        service.store.save_mood_rating(rating)
        result.mood_ratings_imported += 1

    logger.info("Imported %d routines, %d sessions, %d mood ratings",
                result.routines_imported, result.sessions_imported, result.mood_ratings_imported)
    return result


def import_from_file(service: RoutineService, path: Path | str) -> ImportResult:
    return import_from_json(service, Path(path).read_text(encoding="utf-8"))
