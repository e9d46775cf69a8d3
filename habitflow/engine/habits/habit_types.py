"""
Habit Type Model
================

Closed set of habit interaction kinds. Each kind is a small payload
dataclass; every per-kind rule (estimated duration, default name, icon,
colour, serialization) dispatches exhaustively over the union and raises
``TypeError`` for anything else, so adding a kind means adding a payload
class and extending each dispatch below.
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# Authoring limits (enforced by the template store, not at runtime)
MAX_CONDITIONAL_DEPTH = 3
MAX_CONDITIONAL_OPTIONS = 4
MAX_QUESTION_LENGTH = 200
MAX_OPTION_TEXT_LENGTH = 50

MIN_DURATION_SECONDS = 1.0


def ensure_timezone_aware(dt: Optional[datetime] = None) -> datetime:
    """Ensure datetime is timezone-aware. Use UTC if no timezone specified.

    Args:
        dt: A datetime object (naive or aware) or None

    Returns:
        A timezone-aware datetime object (in UTC)
    """
    if dt is None:
        return datetime.now(timezone.utc)
    if not hasattr(dt, 'tzinfo') or dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _new_id() -> str:
    return str(uuid.uuid4())


def clamp_duration(seconds: Optional[float]) -> float:
    """Clamp a duration to the 1 second floor used by progress math."""
    if seconds is None:
        return MIN_DURATION_SECONDS
    try:
        value = float(seconds)
    except (TypeError, ValueError):
        return MIN_DURATION_SECONDS
    if value != value or value < MIN_DURATION_SECONDS:  # NaN or too small
        return MIN_DURATION_SECONDS
    return value


class HabitKind(Enum):
    """The seven habit interaction kinds."""
    TASK = "task"
    TIMER = "timer"
    ACTION = "action"
    COUNTER = "counter"
    MEASUREMENT = "measurement"
    GUIDED_SEQUENCE = "guided_sequence"
    CONDITIONAL = "conditional"


class TimerStyle(Enum):
    COUNTDOWN = "countdown"
    COUNTUP = "countup"
    MULTI_SEGMENT = "multi_segment"


class ActionKind(Enum):
    APP = "app"
    WEBSITE = "website"
    SHORTCUT = "shortcut"


# ----------------------
# Payload building blocks
# ----------------------

@dataclass
class Subtask:
    name: str
    is_optional: bool = False
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict:
        return {"id": self.id, "name": self.name, "is_optional": self.is_optional}

    @classmethod
    def from_dict(cls, data: Dict) -> "Subtask":
        return cls(name=data["name"], is_optional=data.get("is_optional", False),
                   id=data.get("id") or _new_id())


@dataclass
class TimerSegment:
    """One phase of a multi-segment timer (e.g. work / rest)."""
    name: str
    duration: float
    id: str = field(default_factory=_new_id)

    def __post_init__(self):
        self.duration = clamp_duration(self.duration)

    def to_dict(self) -> Dict:
        return {"id": self.id, "name": self.name, "duration": self.duration}

    @classmethod
    def from_dict(cls, data: Dict) -> "TimerSegment":
        return cls(name=data["name"], duration=data.get("duration", 0),
                   id=data.get("id") or _new_id())


@dataclass
class SequenceStep:
    """A timed step of a guided sequence."""
    name: str
    duration: float
    instructions: Optional[str] = None
    id: str = field(default_factory=_new_id)

    def __post_init__(self):
        self.duration = clamp_duration(self.duration)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "duration": self.duration,
            "instructions": self.instructions,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SequenceStep":
        return cls(
            name=data["name"],
            duration=data.get("duration", 0),
            instructions=data.get("instructions"),
            id=data.get("id") or _new_id(),
        )


@dataclass
class ConditionalOption:
    """An answer to a conditional question; owns its follow-up habits."""
    text: str
    follow_up_habits: List["Habit"] = field(default_factory=list)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "text": self.text,
            "follow_up_habits": [h.to_dict() for h in self.follow_up_habits],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ConditionalOption":
        return cls(
            text=data["text"],
            follow_up_habits=[Habit.from_dict(h) for h in data.get("follow_up_habits", [])],
            id=data.get("id") or _new_id(),
        )


# ----------------------
# Variant payloads
# ----------------------

@dataclass
class TaskType:
    subtasks: List[Subtask] = field(default_factory=list)


@dataclass
class TimerType:
    style: TimerStyle = TimerStyle.COUNTDOWN
    duration: float = 300.0
    target: Optional[float] = None
    segments: List[TimerSegment] = field(default_factory=list)

    def __post_init__(self):
        self.duration = clamp_duration(self.duration)
        if self.target is not None:
            self.target = clamp_duration(self.target)


@dataclass
class ActionType:
    kind: ActionKind
    identifier: str
    display_name: str


@dataclass
class CounterType:
    items: List[str] = field(default_factory=list)


@dataclass
class MeasurementType:
    unit: str
    target: Optional[float] = None


@dataclass
class GuidedSequenceType:
    steps: List[SequenceStep] = field(default_factory=list)


@dataclass
class ConditionalType:
    question: str
    options: List[ConditionalOption] = field(default_factory=list)

    def option(self, option_id: str) -> Optional[ConditionalOption]:
        for opt in self.options:
            if opt.id == option_id:
                return opt
        return None


HabitType = Union[
    TaskType,
    TimerType,
    ActionType,
    CounterType,
    MeasurementType,
    GuidedSequenceType,
    ConditionalType,
]


def habit_kind(habit_type: HabitType) -> HabitKind:
    if isinstance(habit_type, TaskType):
        return HabitKind.TASK
    if isinstance(habit_type, TimerType):
        return HabitKind.TIMER
    if isinstance(habit_type, ActionType):
        return HabitKind.ACTION
    if isinstance(habit_type, CounterType):
        return HabitKind.COUNTER
    if isinstance(habit_type, MeasurementType):
        return HabitKind.MEASUREMENT
    if isinstance(habit_type, GuidedSequenceType):
        return HabitKind.GUIDED_SEQUENCE
    if isinstance(habit_type, ConditionalType):
        return HabitKind.CONDITIONAL
    raise TypeError(f"Unknown habit type: {type(habit_type).__name__}")


def estimated_duration(habit_type: HabitType) -> float:
    """Estimated seconds a habit takes, derived only from its payload."""
    if isinstance(habit_type, TaskType):
        return 60.0 + 45.0 * len(habit_type.subtasks)
    if isinstance(habit_type, TimerType):
        if habit_type.style is TimerStyle.MULTI_SEGMENT:
            if habit_type.segments:
                return sum(s.duration for s in habit_type.segments)
            return habit_type.duration
        return habit_type.target if habit_type.target is not None else habit_type.duration
    if isinstance(habit_type, ActionType):
        return {
            ActionKind.APP: 300.0,
            ActionKind.WEBSITE: 180.0,
            ActionKind.SHORTCUT: 60.0,
        }[habit_type.kind]
    if isinstance(habit_type, CounterType):
        return 30.0 * len(habit_type.items)
    if isinstance(habit_type, MeasurementType):
        return 60.0
    if isinstance(habit_type, GuidedSequenceType):
        return float(sum(step.duration for step in habit_type.steps))
    if isinstance(habit_type, ConditionalType):
        # Branch habits are estimated separately once spliced in
        return 30.0
    raise TypeError(f"Unknown habit type: {type(habit_type).__name__}")


def default_name(habit_type: HabitType) -> str:
    """Name given to a freshly created habit of this kind."""
    if isinstance(habit_type, TaskType):
        return "Task with Steps" if habit_type.subtasks else "New Task"
    if isinstance(habit_type, TimerType):
        return {
            TimerStyle.COUNTDOWN: "Timed Activity",
            TimerStyle.COUNTUP: "Rest Period",
            TimerStyle.MULTI_SEGMENT: "Interval Timer",
        }[habit_type.style]
    if isinstance(habit_type, ActionType):
        return {
            ActionKind.APP: "Run App",
            ActionKind.WEBSITE: "Visit Website",
            ActionKind.SHORTCUT: "Run Shortcut",
        }[habit_type.kind]
    if isinstance(habit_type, CounterType):
        return "Track Items"
    if isinstance(habit_type, MeasurementType):
        return "Record Measurement"
    if isinstance(habit_type, GuidedSequenceType):
        return "Guided Activity"
    if isinstance(habit_type, ConditionalType):
        return "Question"
    raise TypeError(f"Unknown habit type: {type(habit_type).__name__}")


_ICONS = {
    HabitKind.TASK: "checkmark.square",
    HabitKind.TIMER: "timer",
    HabitKind.ACTION: "app.badge",
    HabitKind.COUNTER: "list.bullet",
    HabitKind.MEASUREMENT: "chart.line.uptrend.xyaxis",
    HabitKind.GUIDED_SEQUENCE: "list.number",
    HabitKind.CONDITIONAL: "questionmark.circle",
}

_COLORS = {
    HabitKind.TASK: "#34C759",
    HabitKind.TIMER: "#007AFF",
    HabitKind.ACTION: "#FF3B30",
    HabitKind.COUNTER: "#FFD60A",
    HabitKind.MEASUREMENT: "#BF5AF2",
    HabitKind.GUIDED_SEQUENCE: "#64D2FF",
    HabitKind.CONDITIONAL: "#5856D6",
}


def icon_name(habit_type: HabitType) -> str:
    kind = habit_kind(habit_type)
    if kind is HabitKind.TASK and habit_type.subtasks:
        return "checklist"
    if kind is HabitKind.ACTION and habit_type.kind is ActionKind.WEBSITE:
        return "safari"
    return _ICONS[kind]


def default_color(habit_type: HabitType) -> str:
    return _COLORS[habit_kind(habit_type)]


# ----------------------
# Serialization
# ----------------------

def habit_type_to_dict(habit_type: HabitType) -> Dict[str, Any]:
    kind = habit_kind(habit_type)
    if isinstance(habit_type, TaskType):
        payload = {"subtasks": [s.to_dict() for s in habit_type.subtasks]}
    elif isinstance(habit_type, TimerType):
        payload = {
            "style": habit_type.style.value,
            "duration": habit_type.duration,
            "target": habit_type.target,
            "segments": [s.to_dict() for s in habit_type.segments],
        }
    elif isinstance(habit_type, ActionType):
        payload = {
            "kind": habit_type.kind.value,
            "identifier": habit_type.identifier,
            "display_name": habit_type.display_name,
        }
    elif isinstance(habit_type, CounterType):
        payload = {"items": list(habit_type.items)}
    elif isinstance(habit_type, MeasurementType):
        payload = {"unit": habit_type.unit, "target": habit_type.target}
    elif isinstance(habit_type, GuidedSequenceType):
        payload = {"steps": [s.to_dict() for s in habit_type.steps]}
    else:
        payload = {
            "question": habit_type.question,
            "options": [o.to_dict() for o in habit_type.options],
        }
    return {"type": kind.value, **payload}


def habit_type_from_dict(data: Dict[str, Any]) -> HabitType:
    try:
        kind = HabitKind(data["type"])
    except (KeyError, ValueError) as e:
        raise ValueError(f"Unknown habit type payload: {data!r}") from e

    if kind is HabitKind.TASK:
        return TaskType(subtasks=[Subtask.from_dict(s) for s in data.get("subtasks", [])])
    if kind is HabitKind.TIMER:
        return TimerType(
            style=TimerStyle(data.get("style", TimerStyle.COUNTDOWN.value)),
            duration=data.get("duration", 300.0),
            target=data.get("target"),
            segments=[TimerSegment.from_dict(s) for s in data.get("segments", [])],
        )
    if kind is HabitKind.ACTION:
        return ActionType(
            kind=ActionKind(data["kind"]),
            identifier=data["identifier"],
            display_name=data.get("display_name", ""),
        )
    if kind is HabitKind.COUNTER:
        return CounterType(items=list(data.get("items", [])))
    if kind is HabitKind.MEASUREMENT:
        return MeasurementType(unit=data["unit"], target=data.get("target"))
    if kind is HabitKind.GUIDED_SEQUENCE:
        return GuidedSequenceType(steps=[SequenceStep.from_dict(s) for s in data.get("steps", [])])
    return ConditionalType(
        question=data.get("question", ""),
        options=[ConditionalOption.from_dict(o) for o in data.get("options", [])],
    )


# ----------------------
# Habit
# ----------------------

@dataclass
class Habit:
    """A single actionable item within a routine."""

    name: str
    habit_type: HabitType
    is_optional: bool = False
    notes: Optional[str] = None
    color: Optional[str] = None
    order: int = 0
    is_active: bool = True
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not self.name:
            self.name = default_name(self.habit_type)
        if not self.color:
            self.color = default_color(self.habit_type)
        self.created_at = ensure_timezone_aware(self.created_at)

    @classmethod
    def create(cls, habit_type: HabitType, **kwargs) -> "Habit":
        """New habit with the kind's default name and colour."""
        return cls(name=kwargs.pop("name", "") or default_name(habit_type),
                   habit_type=habit_type, **kwargs)

    @property
    def kind(self) -> HabitKind:
        return habit_kind(self.habit_type)

    @property
    def estimated_duration(self) -> float:
        return estimated_duration(self.habit_type)

    @property
    def icon(self) -> str:
        return icon_name(self.habit_type)

    @property
    def is_conditional(self) -> bool:
        return isinstance(self.habit_type, ConditionalType)

    def with_order(self, order: int) -> "Habit":
        return replace(self, order=order)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "habit_type": habit_type_to_dict(self.habit_type),
            "is_optional": self.is_optional,
            "notes": self.notes,
            "color": self.color,
            "order": self.order,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Habit":
        created = data.get("created_at")
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            habit_type=habit_type_from_dict(data["habit_type"]),
            is_optional=data.get("is_optional", False),
            notes=data.get("notes"),
            color=data.get("color"),
            order=data.get("order", 0),
            is_active=data.get("is_active", True),
            created_at=ensure_timezone_aware(datetime.fromisoformat(created)) if created else datetime.now(timezone.utc),
        )


# ----------------------
# Conditional authoring checks
# ----------------------

@dataclass
class ConditionalValidation:
    is_valid: bool
    issues: List[str]
    option_count: int
    total_habits_in_paths: int

    @property
    def warning_count(self) -> int:
        warnings = 0
        if self.option_count > 3:
            warnings += 1
        if self.total_habits_in_paths > 10:
            warnings += 1
        return warnings


def validate_conditional(info: ConditionalType) -> ConditionalValidation:
    """Check a conditional question the way the routine editor does."""
    issues: List[str] = []

    question = (info.question or "").strip()
    if not question:
        issues.append("Question cannot be empty")
    elif len(info.question) > MAX_QUESTION_LENGTH:
        issues.append(f"Question should be under {MAX_QUESTION_LENGTH} characters")

    if not info.options:
        issues.append("At least one option is required")
    elif len(info.options) > MAX_CONDITIONAL_OPTIONS:
        issues.append(f"Maximum {MAX_CONDITIONAL_OPTIONS} options allowed")

    for index, option in enumerate(info.options, start=1):
        text = (option.text or "").strip()
        if not text:
            issues.append(f"Option {index} text cannot be empty")
        elif len(option.text) > MAX_OPTION_TEXT_LENGTH:
            issues.append(f"Option {index} text should be under {MAX_OPTION_TEXT_LENGTH} characters")

    normalized = [(o.text or "").strip().lower() for o in info.options]
    if len(normalized) != len(set(normalized)):
        issues.append("Option texts must be unique")

    return ConditionalValidation(
        is_valid=not issues,
        issues=issues,
        option_count=len(info.options),
        total_habits_in_paths=sum(len(o.follow_up_habits) for o in info.options),
    )


def conditional_depth(habit: Habit) -> int:
    """Nesting depth of conditional questions rooted at ``habit`` (0 if none)."""
    if not isinstance(habit.habit_type, ConditionalType):
        return 0
    deepest = 0
    for option in habit.habit_type.options:
        for follow_up in option.follow_up_habits:
            deepest = max(deepest, conditional_depth(follow_up))
    return 1 + deepest
