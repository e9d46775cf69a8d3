from __future__ import annotations
import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from habitflow.engine.errors import ValidationError
from habitflow.engine.habits.habit_types import ensure_timezone_aware
from habitflow.engine.routines.models import MoodRating, RoutineSession, RoutineTemplate

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class SessionStore:
    """
    JSONL-backed session history plus a JSON template file.

    - Persists sessions.jsonl, templates.json and mood_ratings.jsonl under data_dir
    - Loads the whole history into memory on init
    - Thread-safe via RLock
    - Saving the same session twice replaces the earlier record
    - One mood rating per session; a newer rating replaces the older one
    """

    SESSIONS_FILENAME = "sessions.jsonl"
    TEMPLATES_FILENAME = "templates.json"
    MOODS_FILENAME = "mood_ratings.jsonl"
    TEMP_SUFFIX = ".tmp"
    BAK_SUFFIX = ".bak"

    def __init__(self, data_dir: Path | str) -> None:
        self.data_dir = Path(data_dir)
        # Use RLock for reentrant locking
        self.lock = threading.RLock()
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self._moods: Dict[str, Dict[str, Any]] = {}

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.load()

    # ----------------------
    # Internal helper methods
    # ----------------------
    def _sessions_path(self) -> Path:
        return self.data_dir / self.SESSIONS_FILENAME

    def _templates_path(self) -> Path:
        return self.data_dir / self.TEMPLATES_FILENAME

    def _moods_path(self) -> Path:
        return self.data_dir / self.MOODS_FILENAME

    def _temp_path(self, target: Path) -> Path:
        return target.with_suffix(target.suffix + self.TEMP_SUFFIX)

    def _backup_path(self, target: Path) -> Path:
        return target.with_suffix(target.suffix + self.BAK_SUFFIX)

    def _atomic_replace(self, temp_path: Path, target_path: Path) -> None:
        """
        Replace target_path with temp_path, keeping a backup of the previous
        file until the swap has succeeded.
        """
        backup = self._backup_path(target_path)
        try:
            if target_path.exists():
                os.replace(str(target_path), str(backup))
            os.replace(str(temp_path), str(target_path))
        except OSError:
            if backup.exists() and not target_path.exists():
                os.replace(str(backup), str(target_path))
            raise
        if backup.exists():
            try:
                os.remove(str(backup))
            except OSError:
                logger.debug("Failed to remove backup file %s", backup)

    def _write_atomically(self, target: Path, lines: List[str]) -> None:
        temp = self._temp_path(target)
        try:
            with temp.open("w", encoding="utf-8") as f:
                for line in lines:
                    f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._atomic_replace(temp, target)
        except OSError:
            logger.error("Failed to write %s", target)
            if temp.exists():
                temp.unlink()
            raise

    # ----------------------
    # Sessions
    # ----------------------
    def _read_jsonl(self, path: Path, key: str) -> Dict[str, Dict[str, Any]]:
        """
        Read records keyed by ``key``; later lines win.
        A corrupted trailing line (interrupted write) is ignored.
        """
        records: Dict[str, Dict[str, Any]] = {}
        if not path.exists():
            return records
        with path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupted line in %s", path.name)
                    break
                value = obj.get(key)
                if value:
                    records[value] = obj
        return records

    def load(self) -> None:
        """Load sessions and mood ratings into memory."""
        with self.lock:
            self._sessions = self._read_jsonl(self._sessions_path(), "id")
            self._moods = self._read_jsonl(self._moods_path(), "session_id")

    def persist(self) -> None:
        with self.lock:
            lines = [json.dumps(s, separators=(",", ":")) for s in self._sessions.values()]
            self._write_atomically(self._sessions_path(), lines)

    def save(self, session: RoutineSession) -> None:
        """Store (or replace) a session record and persist."""
        data = session.to_dict()
        with self.lock:
            self._sessions[session.id] = data
            self.persist()

    # Completion sink interface
    def deliver(self, session: RoutineSession) -> None:
        self.save(session)

    def get(self, session_id: str) -> Optional[RoutineSession]:
        with self.lock:
            data = self._sessions.get(session_id)
        return RoutineSession.from_dict(data) if data else None

    def all(self, routine_id: Optional[str] = None) -> List[RoutineSession]:
        """Stored sessions, oldest first."""
        with self.lock:
            records = list(self._sessions.values())
        sessions = [RoutineSession.from_dict(r) for r in records
                    if routine_id is None or r.get("routine_id") == routine_id]
        return sorted(sessions, key=lambda s: s.started_at)

    def __len__(self) -> int:
        with self.lock:
            return len(self._sessions)

    # ----------------------
    # Templates
    # ----------------------
    def load_templates(self) -> List[RoutineTemplate]:
        path = self._templates_path()
        with self.lock:
            if not path.exists():
                return []
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise ValidationError(f"Templates file {path} is not valid JSON: {e}") from e
        if not isinstance(raw, list):
            raise ValidationError(f"Templates file {path} must contain a list")
        return [RoutineTemplate.from_dict(t) for t in raw]

    def save_templates(self, templates: List[RoutineTemplate]) -> None:
        payload = json.dumps([t.to_dict() for t in templates], indent=2)
        with self.lock:
            self._write_atomically(self._templates_path(), [payload])

    def touch_template(self, template_id: str, when: datetime) -> Optional[RoutineTemplate]:
        """Record that a template was started at ``when``."""
        with self.lock:
            templates = self.load_templates()
            touched = None
            for template in templates:
                if template.id == template_id:
                    template.last_used_at = ensure_timezone_aware(when)
                    touched = template
            if touched is not None:
                self.save_templates(templates)
            return touched

    # ----------------------
    # Mood ratings
    # ----------------------
    def save_mood_rating(self, rating: MoodRating) -> None:
        """Store the rating for its session, replacing any earlier one."""
        with self.lock:
            self._moods[rating.session_id] = rating.to_dict()
            lines = [json.dumps(m, separators=(",", ":"), ensure_ascii=False) for m in self._moods.values()]
            self._write_atomically(self._moods_path(), lines)

    def mood_rating_for(self, session_id: str) -> Optional[MoodRating]:
        with self.lock:
            data = self._moods.get(session_id)
        return MoodRating.from_dict(data) if data else None

    def mood_ratings(self) -> List[MoodRating]:
        """All ratings, oldest first."""
        with self.lock:
            records = list(self._moods.values())
        return sorted((MoodRating.from_dict(r) for r in records), key=lambda m: m.recorded_at)
