"""
Routine data model: templates, sessions and completions.

The session dictionary produced by ``RoutineSession.to_dict`` is the shape
persisted by the session store and handed to completion sinks, so
``from_dict`` validates it against ``SESSION_SCHEMA`` before rebuilding.
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

import jsonschema
from jsonschema import FormatChecker

from habitflow.engine.errors import ValidationError
from habitflow.engine.habits.habit_types import Habit, ensure_timezone_aware

DEFAULT_PRIORITY = 1
CANCELLED_HABIT_ID = "cancelled"


def _new_id() -> str:
    return str(uuid.uuid4())


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_timezone_aware(datetime.fromisoformat(value))


class SessionState(Enum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.CANCELLED)


@dataclass(frozen=True)
class ContextRule:
    """Which contexts a template applies to. Empty dimensions match anything."""
    time_slots: FrozenSet[str] = frozenset()
    day_categories: FrozenSet[str] = frozenset()
    location_categories: FrozenSet[str] = frozenset()
    priority: int = DEFAULT_PRIORITY
    enabled: bool = True

    def __post_init__(self):
        # Accept any iterable of ids
        object.__setattr__(self, "time_slots", frozenset(self.time_slots))
        object.__setattr__(self, "day_categories", frozenset(self.day_categories))
        object.__setattr__(self, "location_categories", frozenset(self.location_categories))

    def to_dict(self) -> Dict:
        return {
            "time_slots": sorted(self.time_slots),
            "day_categories": sorted(self.day_categories),
            "location_categories": sorted(self.location_categories),
            "priority": self.priority,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ContextRule":
        priority = data.get("priority")
        return cls(
            time_slots=data.get("time_slots", []),
            day_categories=data.get("day_categories", []),
            location_categories=data.get("location_categories", []),
            priority=DEFAULT_PRIORITY if priority is None else int(priority),
            enabled=data.get("enabled", True),
        )


@dataclass
class RoutineTemplate:
    """A reusable, ordered list of habits."""

    name: str
    habits: List[Habit] = field(default_factory=list)
    description: Optional[str] = None
    color: str = "#007AFF"
    is_default: bool = False
    context_rule: Optional[ContextRule] = None
    last_used_at: Optional[datetime] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        self.habits = sorted(self.habits, key=lambda h: h.order)
        self.created_at = ensure_timezone_aware(self.created_at)
        if self.last_used_at is not None:
            self.last_used_at = ensure_timezone_aware(self.last_used_at)

    def active_habits(self) -> List[Habit]:
        return [h for h in self.habits if h.is_active]

    @property
    def estimated_duration(self) -> float:
        return sum(h.estimated_duration for h in self.active_habits())

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "is_default": self.is_default,
            "habits": [h.to_dict() for h in self.habits],
            "context_rule": self.context_rule.to_dict() if self.context_rule else None,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RoutineTemplate":
        rule = data.get("context_rule")
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            color=data.get("color") or "#007AFF",
            is_default=data.get("is_default", False),
            habits=[Habit.from_dict(h) for h in data.get("habits", [])],
            context_rule=ContextRule.from_dict(rule) if rule else None,
            created_at=_parse_dt(data.get("created_at")) or datetime.now(timezone.utc),
            last_used_at=_parse_dt(data.get("last_used_at")),
        )


@dataclass(frozen=True)
class HabitCompletion:
    """One recorded outcome for a habit within a session."""

    habit_id: str
    habit_name: str
    completed_at: datetime
    time_taken: Optional[float] = None
    notes: Optional[str] = None
    was_skipped: bool = False
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "habit_id": self.habit_id,
            "habit_name": self.habit_name,
            "completed_at": self.completed_at.isoformat(),
            "time_taken": self.time_taken,
            "notes": self.notes,
            "was_skipped": self.was_skipped,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "HabitCompletion":
        time_taken = data.get("time_taken")
        return cls(
            id=data["id"],
            habit_id=data["habit_id"],
            habit_name=data["habit_name"],
            completed_at=_parse_dt(data["completed_at"]),
            time_taken=float(time_taken) if time_taken is not None else None,
            notes=data.get("notes"),
            was_skipped=data.get("was_skipped", False),
        )


class ModificationKind(Enum):
    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class SessionModification:
    """An ad-hoc change to a running session's habit list."""

    kind: ModificationKind
    habit_id: str
    habit_name: str
    timestamp: datetime
    position: Optional[int] = None
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "habit_id": self.habit_id,
            "habit_name": self.habit_name,
            "timestamp": self.timestamp.isoformat(),
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SessionModification":
        return cls(
            id=data["id"],
            kind=ModificationKind(data["kind"]),
            habit_id=data["habit_id"],
            habit_name=data["habit_name"],
            timestamp=_parse_dt(data["timestamp"]),
            position=data.get("position"),
        )


_MODIFICATION_SCHEMA = {
    "type": "object",
    "required": ["id", "kind", "habit_id", "habit_name", "timestamp"],
    "properties": {
        "id": {"type": "string"},
        "kind": {"type": "string", "enum": [k.value for k in ModificationKind]},
        "habit_id": {"type": "string"},
        "habit_name": {"type": "string"},
        "timestamp": {"type": "string", "format": "date-time"},
        "position": {"type": ["integer", "null"], "minimum": 0},
    },
}

_COMPLETION_SCHEMA = {
    "type": "object",
    "required": ["id", "habit_id", "habit_name", "completed_at", "was_skipped"],
    "properties": {
        "id": {"type": "string"},
        "habit_id": {"type": "string"},
        "habit_name": {"type": "string"},
        "completed_at": {"type": "string", "format": "date-time"},
        "time_taken": {"type": ["number", "null"], "minimum": 0},
        "notes": {"type": ["string", "null"]},
        "was_skipped": {"type": "boolean"},
    },
}

SESSION_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": [
        "id", "routine_id", "routine_name", "started_at",
        "current_habit_index", "habit_completions", "is_completed", "state",
    ],
    "properties": {
        "id": {"type": "string"},
        "routine_id": {"type": "string"},
        "routine_name": {"type": "string"},
        "started_at": {"type": "string", "format": "date-time"},
        "completed_at": {"type": ["string", "null"], "format": "date-time"},
        "current_habit_index": {"type": "integer", "minimum": 0},
        "habit_completions": {"type": "array", "items": _COMPLETION_SCHEMA},
        "superseded_completions": {"type": "array", "items": _COMPLETION_SCHEMA},
        "modifications": {"type": "array", "items": _MODIFICATION_SCHEMA},
        "is_completed": {"type": "boolean"},
        "state": {"type": "string", "enum": [s.value for s in SessionState]},
    },
}


def validate_session_dict(data: Dict[str, Any]) -> None:
    """Raise ``jsonschema.exceptions.ValidationError`` on a malformed session."""
    jsonschema.validate(instance=data, schema=SESSION_SCHEMA, format_checker=FormatChecker())


@dataclass
class RoutineSession:
    """A single run of a routine template."""

    routine_id: str
    routine_name: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    current_habit_index: int = 0
    habit_completions: List[HabitCompletion] = field(default_factory=list)
    superseded_completions: List[HabitCompletion] = field(default_factory=list)
    modifications: List[SessionModification] = field(default_factory=list)
    state: SessionState = SessionState.ACTIVE
    id: str = field(default_factory=_new_id)

    @property
    def is_completed(self) -> bool:
        return self.state is SessionState.COMPLETED

    @property
    def is_cancelled(self) -> bool:
        return self.state is SessionState.CANCELLED

    def completion_for(self, habit_id: str) -> Optional[HabitCompletion]:
        for completion in self.habit_completions:
            if completion.habit_id == habit_id:
                return completion
        return None

    def recorded_ids(self) -> set:
        return {c.habit_id for c in self.habit_completions}

    def supersede(self, habit_ids: Iterable[str]) -> List[HabitCompletion]:
        """Move completions for the given habits to the audit list."""
        ids = set(habit_ids)
        moved = [c for c in self.habit_completions if c.habit_id in ids]
        if moved:
            self.habit_completions = [c for c in self.habit_completions if c.habit_id not in ids]
            self.superseded_completions.extend(moved)
        return moved

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "routine_id": self.routine_id,
            "routine_name": self.routine_name,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "current_habit_index": self.current_habit_index,
            "habit_completions": [c.to_dict() for c in self.habit_completions],
            "superseded_completions": [c.to_dict() for c in self.superseded_completions],
            "modifications": [m.to_dict() for m in self.modifications],
            "is_completed": self.is_completed,
            "state": self.state.value,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RoutineSession":
        validate_session_dict(data)
        state = SessionState(data["state"])
        if data["is_completed"] != (state is SessionState.COMPLETED):
            raise ValidationError(
                f"Session {data['id']}: is_completed={data['is_completed']} contradicts state {state.value}"
            )
        return cls(
            id=data["id"],
            routine_id=data["routine_id"],
            routine_name=data["routine_name"],
            started_at=_parse_dt(data["started_at"]),
            completed_at=_parse_dt(data.get("completed_at")),
            current_habit_index=data["current_habit_index"],
            habit_completions=[HabitCompletion.from_dict(c) for c in data["habit_completions"]],
            superseded_completions=[
                HabitCompletion.from_dict(c) for c in data.get("superseded_completions", [])
            ],
            modifications=[
                SessionModification.from_dict(m) for m in data.get("modifications", [])
            ],
            state=state,
        )


class Mood(Enum):
    """Five-point post-routine mood scale."""
    TERRIBLE = "terrible"
    BAD = "bad"
    NEUTRAL = "neutral"
    GOOD = "good"
    EXCELLENT = "excellent"

    @property
    def score(self) -> int:
        return list(Mood).index(self) + 1

    @property
    def label(self) -> str:
        return _MOOD_LABELS[self]

    @property
    def emoji(self) -> str:
        return _MOOD_EMOJI[self]


_MOOD_LABELS = {
    Mood.TERRIBLE: "Terrible",
    Mood.BAD: "Tired",
    Mood.NEUTRAL: "Okay",
    Mood.GOOD: "Good",
    Mood.EXCELLENT: "Excellent",
}

_MOOD_EMOJI = {
    Mood.TERRIBLE: "\U0001F635",
    Mood.BAD: "\U0001F634",
    Mood.NEUTRAL: "\U0001F610",
    Mood.GOOD: "\U0001F60A",
    Mood.EXCELLENT: "\U0001F604",
}


@dataclass(frozen=True)
class MoodRating:
    """How the user felt after a session."""

    session_id: str
    mood: Mood
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    notes: Optional[str] = None
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "mood": self.mood.value,
            "recorded_at": ensure_timezone_aware(self.recorded_at).isoformat(),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "MoodRating":
        try:
            mood = Mood(data["mood"])
        except (KeyError, ValueError) as e:
            raise ValidationError(f"Invalid mood rating: {data!r}") from e
        return cls(
            id=data.get("id") or _new_id(),
            session_id=data["session_id"],
            mood=mood,
            recorded_at=_parse_dt(data.get("recorded_at")) or datetime.now(timezone.utc),
            notes=data.get("notes"),
        )
