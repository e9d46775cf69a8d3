"""
Routine Service
===============

Ties the engine together for one device: keeps the template list, resolves
the current context, picks a template, and owns at most one running
session at a time. Finished sessions go to the local store and any extra
completion sinks (e.g. the offline queue for a paired device).
"""

from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from habitflow.engine.context.context_resolver import (
    HOME,
    OFFICE,
    WEEKDAY,
    WEEKEND,
    Coordinate,
    RoutineContext,
    SystemContextProvider,
)
from habitflow.engine.errors import OperationResult, RoutineErrorKind
from habitflow.engine.habits.habit_types import (
    MAX_CONDITIONAL_DEPTH,
    ActionKind,
    ActionType,
    ConditionalOption,
    ConditionalType,
    CounterType,
    GuidedSequenceType,
    Habit,
    MeasurementType,
    SequenceStep,
    Subtask,
    TaskType,
    TimerSegment,
    TimerStyle,
    TimerType,
    conditional_depth,
    validate_conditional,
)
from habitflow.engine.routines.conditional_resolver import ConditionalResponseLog
from habitflow.engine.routines.models import ContextRule, Mood, MoodRating, RoutineTemplate
from habitflow.engine.routines.session_machine import CompletionSink, RoutineSessionMachine
from habitflow.engine.schedulers.template_selector import TemplateSelection, explain_selection
from habitflow.store.session_store import SessionStore

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def _walk_conditionals(habits: List[Habit]):
    for habit in habits:
        if isinstance(habit.habit_type, ConditionalType):
            yield habit
            for option in habit.habit_type.options:
                yield from _walk_conditionals(option.follow_up_habits)


def validate_template(template: RoutineTemplate) -> List[str]:
    """Authoring checks applied before a template is stored."""
    issues = []
    if not template.name.strip():
        issues.append("Routine name cannot be empty")
    for habit in _walk_conditionals(template.habits):
        result = validate_conditional(habit.habit_type)
        issues.extend(f"{habit.name}: {issue}" for issue in result.issues)
    for habit in template.habits:
        depth = conditional_depth(habit)
        if depth > MAX_CONDITIONAL_DEPTH:
            issues.append(f"{habit.name}: questions nested {depth} deep (max {MAX_CONDITIONAL_DEPTH})")
    return issues


def default_templates() -> List[RoutineTemplate]:
    """Sample routines offered on first launch."""
    def h(order: int, habit_type, name: str = "", optional: bool = False) -> Habit:
        return Habit.create(habit_type, name=name, order=order, is_optional=optional)

    office_day = RoutineTemplate(
        name="Office Day",
        description="Weekday morning before heading into work",
        color="#007AFF",
        is_default=True,
        habits=[
            h(0, MeasurementType(unit="glasses"), "Drink water"),
            h(1, TaskType(subtasks=[Subtask("Check calendar"), Subtask("Pack laptop")]), "Prepare for work"),
            h(2, ActionType(ActionKind.APP, "com.apple.mobilecal", "Calendar"), "Review today's meetings", optional=True),
        ],
        context_rule=ContextRule(time_slots={"morning"}, day_categories={WEEKDAY},
                                 location_categories={OFFICE}, priority=2),
    )

    workout = [
        h(0, TimerType(style=TimerStyle.COUNTDOWN, duration=600), "Quick workout"),
        h(1, TaskType(), "Stretch", optional=True),
    ]
    home_office = RoutineTemplate(
        name="Home Office",
        description="Weekday morning when working from home",
        color="#34C759",
        habits=[
            h(0, TaskType(), "Make coffee"),
            h(1, ConditionalType(
                question="Do you have time to exercise?",
                options=[ConditionalOption("Yes", workout), ConditionalOption("No")],
            ), "Exercise check"),
            h(2, ActionType(ActionKind.WEBSITE, "https://mail.example.com", "Mail"), "Clear inbox"),
        ],
        context_rule=ContextRule(time_slots={"morning"}, day_categories={WEEKDAY},
                                 location_categories={HOME}, priority=2),
    )

    weekend = RoutineTemplate(
        name="Weekend",
        description="Relaxed weekend routine",
        color="#FF9500",
        habits=[
            h(0, GuidedSequenceType(steps=[
                SequenceStep("Breathe in", 4), SequenceStep("Hold", 7), SequenceStep("Breathe out", 8),
            ]), "Breathing"),
            h(1, CounterType(items=["Fruit", "Vegetables", "Water"]), "Healthy choices"),
            h(2, TimerType(style=TimerStyle.COUNTUP, duration=1800, target=1800), "Read", optional=True),
        ],
        context_rule=ContextRule(day_categories={WEEKEND}, priority=1),
    )

    afternoon_focus = RoutineTemplate(
        name="Afternoon Focus",
        description="Reset for a focused afternoon block",
        color="#BF5AF2",
        habits=[
            h(0, TimerType(style=TimerStyle.MULTI_SEGMENT, segments=[
                TimerSegment("Focus", 1500), TimerSegment("Break", 300),
            ]), "Focus block"),
            h(1, ActionType(ActionKind.SHORTCUT, "focus-on", "Focus mode"), "Silence notifications"),
        ],
        context_rule=ContextRule(time_slots={"afternoon", "evening"},
                                 day_categories={WEEKDAY, WEEKEND}, priority=3),
    )
    return [office_day, home_office, weekend, afternoon_focus]


class RoutineService:
    """
    Template management, smart selection and the active session for one device.
    """

    def __init__(
        self,
        store: SessionStore,
        context_provider: SystemContextProvider,
        sinks: Optional[List[CompletionSink]] = None,
        event_logger: Optional[Any] = None,
        response_log: Optional[ConditionalResponseLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
        seed_defaults: bool = True,
    ):
        self.store = store
        self.context_provider = context_provider
        self.extra_sinks = list(sinks or [])
        self.event_logger = event_logger
        self.response_log = response_log or ConditionalResponseLog()
        self.clock = clock or context_provider.now

        self.templates: List[RoutineTemplate] = store.load_templates()
        if not self.templates and seed_defaults:
            self.templates = default_templates()
            self.store.save_templates(self.templates)

        self.machine: Optional[RoutineSessionMachine] = None

    # ----------------------
    # Context & selection
    # ----------------------
    def current_context(self, now: Optional[datetime] = None,
                        location: Optional[Coordinate] = None) -> RoutineContext:
        return self.context_provider.current_context(now=now, location=location)

    def smart_template(self, now: Optional[datetime] = None,
                       location: Optional[Coordinate] = None) -> TemplateSelection:
        context = self.current_context(now, location)
        selection = explain_selection(self.templates, context)
        if self.event_logger is not None:
            self.event_logger.log({
                "category": "selection",
                "value": selection.reason,
                "source": "service",
                "metadata": {
                    "context": context.to_dict(),
                    "template_id": selection.template.id if selection.template else None,
                    "score": selection.score,
                },
            })
        return selection

    # ----------------------
    # Sessions
    # ----------------------
    def get_template(self, template_id: str) -> Optional[RoutineTemplate]:
        for template in self.templates:
            if template.id == template_id:
                return template
        return None

    @property
    def has_active_session(self) -> bool:
        return self.machine is not None and not self.machine.state.is_terminal

    def start_session(self, template_id: str) -> OperationResult:
        if self.has_active_session:
            return OperationResult.failure(RoutineErrorKind.SESSION_ALREADY_ACTIVE,
                                           "Finish or cancel the current routine first")
        template = self.get_template(template_id)
        if template is None:
            return OperationResult.failure(RoutineErrorKind.TEMPLATE_NOT_FOUND,
                                           f"No routine with id {template_id}")
        issues = validate_template(template)
        if issues:
            return OperationResult.failure(RoutineErrorKind.TEMPLATE_INVALID, "; ".join(issues))

        machine = RoutineSessionMachine(
            sinks=[self.store, *self.extra_sinks],
            history_store=self.store,
            event_logger=self.event_logger,
            response_log=self.response_log,
            clock=self.clock,
        )
        result = machine.start(template)
        if not result.ok:
            return result

        self.machine = machine
        template.last_used_at = machine.session.started_at
        self.store.touch_template(template.id, template.last_used_at)
        return result

    def end_session(self) -> OperationResult:
        """Forget a completed or cancelled session so a new one can start."""
        if self.machine is None:
            return OperationResult.failure(RoutineErrorKind.NO_ACTIVE_SESSION, "No routine in progress")
        if not self.machine.state.is_terminal:
            return OperationResult.failure(RoutineErrorKind.INVALID_STATE,
                                           "Routine is still running; finish or cancel it first")
        snapshot = self.machine.snapshot()
        self.machine = None
        return OperationResult.success(snapshot)

    def history(self, routine_id: Optional[str] = None):
        return self.store.all(routine_id)

    def option_statistics(self, habit_id: str) -> Dict[str, Any]:
        return self.response_log.option_statistics(habit_id)

    # ----------------------
    # Mood ratings
    # ----------------------
    def add_mood_rating(self, session_id: str, mood: Union[Mood, str],
                        notes: Optional[str] = None) -> OperationResult:
        """Rate how a finished or cancelled session felt; re-rating replaces."""
        try:
            mood = Mood(mood)
        except ValueError:
            return OperationResult.failure(RoutineErrorKind.INVALID_OPERATION, f"Unknown mood {mood!r}")
        session = self.store.get(session_id)
        if session is None:
            return OperationResult.failure(RoutineErrorKind.SESSION_NOT_FOUND,
                                           f"No stored session with id {session_id}")
        rating = MoodRating(session_id=session_id, mood=mood, recorded_at=self.clock(), notes=notes)
        self.store.save_mood_rating(rating)
        logger.info("Rated session %s as %s", session_id, mood.value)
        return OperationResult.success(rating)

    def mood_rating_for(self, session_id: str) -> Optional[MoodRating]:
        return self.store.mood_rating_for(session_id)

    @property
    def mood_ratings(self) -> List[MoodRating]:
        return self.store.mood_ratings()

    # ----------------------
    # Quick start
    # ----------------------
    @property
    def last_used_template(self) -> Optional[RoutineTemplate]:
        """Most recently started template, or None if none has been used."""
        used = [t for t in self.templates if t.last_used_at is not None]
        if not used:
            return None
        return max(used, key=lambda t: t.last_used_at)

    @property
    def default_template(self) -> Optional[RoutineTemplate]:
        for template in self.templates:
            if template.is_default:
                return template
        return None

    # ----------------------
    # Template management
    # ----------------------
    def _persist_templates(self) -> None:
        self.store.save_templates(self.templates)

    def _claim_default(self, template: RoutineTemplate) -> None:
        if template.is_default:
            for other in self.templates:
                if other.id != template.id:
                    other.is_default = False

    def add_template(self, template: RoutineTemplate) -> OperationResult:
        issues = validate_template(template)
        if issues:
            return OperationResult.failure(RoutineErrorKind.TEMPLATE_INVALID, "; ".join(issues))
        self._claim_default(template)
        self.templates.append(template)
        self._persist_templates()
        logger.info("Added routine '%s'", template.name)
        return OperationResult.success(template)

    def update_template(self, template: RoutineTemplate) -> OperationResult:
        for index, existing in enumerate(self.templates):
            if existing.id == template.id:
                break
        else:
            return OperationResult.failure(RoutineErrorKind.TEMPLATE_NOT_FOUND,
                                           f"No routine with id {template.id}")
        issues = validate_template(template)
        if issues:
            return OperationResult.failure(RoutineErrorKind.TEMPLATE_INVALID, "; ".join(issues))
        self._claim_default(template)
        self.templates[index] = template
        self._persist_templates()
        return OperationResult.success(template)

    def delete_template(self, template_id: str) -> OperationResult:
        template = self.get_template(template_id)
        if template is None:
            return OperationResult.failure(RoutineErrorKind.TEMPLATE_NOT_FOUND,
                                           f"No routine with id {template_id}")
        self.templates = [t for t in self.templates if t.id != template_id]
        self._persist_templates()
        return OperationResult.success(template)
