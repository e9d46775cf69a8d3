"""
Routine Session State Machine
=============================

Runs one routine session over a template's active habits:

    not_started -> active -> completed
                        \\-> cancelled

Every operation returns an ``OperationResult``; expected user errors are
values, not exceptions. Repeating a completion or skip for a habit that
already has an entry succeeds without changing anything. Completed and
cancelled sessions refuse all further mutation.

All mutations are serialised by a per-machine ``RLock``.
"""

from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

from habitflow.engine.errors import OperationResult, RoutineErrorKind
from habitflow.engine.habits.habit_types import ConditionalType, Habit
from habitflow.engine.routines.conditional_resolver import (
    ConditionalExpansion,
    ConditionalResponse,
    ConditionalResponseLog,
    apply_selection,
    collapse,
    renumber,
    skip_question,
)
from habitflow.engine.routines.models import (
    CANCELLED_HABIT_ID,
    HabitCompletion,
    ModificationKind,
    RoutineSession,
    RoutineTemplate,
    SessionModification,
    SessionState,
)

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class CompletionSink(Protocol):
    """Receives a session once it has been finished. Raises on failure."""

    def deliver(self, session: RoutineSession) -> None: ...


class HistoryStore(Protocol):
    def save(self, session: RoutineSession) -> None: ...


@dataclass
class SessionSnapshot:
    """Read-only view of a session at one moment."""

    state: SessionState
    session_id: Optional[str]
    routine_id: Optional[str]
    routine_name: Optional[str]
    current_index: int
    current_habit: Optional[Habit]
    sequence: List[Habit]
    completions: List[HabitCompletion]
    superseded: List[HabitCompletion]
    expanded_options: Dict[str, str]
    recorded_count: int
    completed_count: int
    skipped_count: int
    total_count: int
    progress: float
    elapsed_seconds: float
    can_finish: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "session_id": self.session_id,
            "routine_id": self.routine_id,
            "routine_name": self.routine_name,
            "current_index": self.current_index,
            "current_habit": self.current_habit.to_dict() if self.current_habit else None,
            "sequence": [{"id": h.id, "name": h.name, "order": h.order} for h in self.sequence],
            "completions": [c.to_dict() for c in self.completions],
            "superseded": [c.to_dict() for c in self.superseded],
            "expanded_options": dict(self.expanded_options),
            "recorded_count": self.recorded_count,
            "completed_count": self.completed_count,
            "skipped_count": self.skipped_count,
            "total_count": self.total_count,
            "progress": self.progress,
            "elapsed_seconds": self.elapsed_seconds,
            "can_finish": self.can_finish,
        }


def cancellation_note(completed: int, total: int) -> str:
    return f"Cancelled: {completed} of {total} habits completed"


class RoutineSessionMachine:
    """Drives a single routine session from start to completion or cancellation."""

    def __init__(
        self,
        sinks: Optional[List[CompletionSink]] = None,
        history_store: Optional[HistoryStore] = None,
        event_logger: Optional[Any] = None,
        response_log: Optional[ConditionalResponseLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.sinks: List[CompletionSink] = list(sinks or [])
        self.history_store = history_store
        self.event_logger = event_logger
        self.response_log = response_log
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.lock = threading.RLock()
        self.session: Optional[RoutineSession] = None
        self.template: Optional[RoutineTemplate] = None
        self._sequence: List[Habit] = []
        self._expansions: Dict[str, ConditionalExpansion] = {}

    # ----------------------
    # Introspection
    # ----------------------
    @property
    def state(self) -> SessionState:
        if self.session is None:
            return SessionState.NOT_STARTED
        return self.session.state

    @property
    def sequence(self) -> List[Habit]:
        with self.lock:
            return list(self._sequence)

    def _find(self, habit_id: str) -> Optional[int]:
        for index, habit in enumerate(self._sequence):
            if habit.id == habit_id:
                return index
        return None

    def _required_missing(self) -> List[Habit]:
        recorded = self.session.recorded_ids() if self.session else set()
        return [h for h in self._sequence if not h.is_optional and h.id not in recorded]

    def progress(self) -> float:
        """Fraction of the current sequence with a recorded entry."""
        with self.lock:
            total = len(self._sequence)
            if total == 0 or self.session is None:
                return 1.0 if total == 0 else 0.0
            recorded = self.session.recorded_ids()
            return sum(1 for h in self._sequence if h.id in recorded) / total

    def snapshot(self) -> SessionSnapshot:
        with self.lock:
            session = self.session
            sequence = list(self._sequence)
            recorded = session.recorded_ids() if session else set()
            in_sequence = [c for c in (session.habit_completions if session else [])
                           if c.habit_id != CANCELLED_HABIT_ID]
            index = session.current_habit_index if session else 0
            if session is None:
                elapsed = 0.0
            else:
                end = session.completed_at or self.clock()
                elapsed = max(0.0, (end - session.started_at).total_seconds())
            return SessionSnapshot(
                state=self.state,
                session_id=session.id if session else None,
                routine_id=session.routine_id if session else None,
                routine_name=session.routine_name if session else None,
                current_index=index,
                current_habit=sequence[index] if 0 <= index < len(sequence) else None,
                sequence=sequence,
                completions=list(session.habit_completions) if session else [],
                superseded=list(session.superseded_completions) if session else [],
                expanded_options={cid: e.option_id for cid, e in self._expansions.items()},
                recorded_count=sum(1 for h in sequence if h.id in recorded),
                completed_count=sum(1 for c in in_sequence if not c.was_skipped),
                skipped_count=sum(1 for c in in_sequence if c.was_skipped),
                total_count=len(sequence),
                progress=self.progress(),
                elapsed_seconds=elapsed,
                can_finish=self.state is SessionState.ACTIVE and not self._required_missing(),
            )

    # ----------------------
    # Internal helpers
    # ----------------------
    def _fail(self, error: RoutineErrorKind, message: str) -> OperationResult:
        return OperationResult.failure(error, message, snapshot=self.snapshot())

    def _ok(self, changed: bool = True, message: str = "", warnings: Optional[List[str]] = None) -> OperationResult:
        return OperationResult.success(self.snapshot(), changed=changed, message=message, warnings=warnings)

    def _require_active(self) -> Optional[OperationResult]:
        if self.state is not SessionState.ACTIVE:
            return self._fail(RoutineErrorKind.INVALID_STATE,
                              f"Session is {self.state.value}, expected active")
        return None

    def _advance_past(self, index: int) -> None:
        session = self.session
        if session.current_habit_index == index and index < len(self._sequence) - 1:
            session.current_habit_index = index + 1

    def _emit(self, category: str, value: Any, **metadata) -> List[str]:
        """Log a structured event; a failed write comes back as a warning list."""
        if self.event_logger is None:
            return []
        if self.session is not None:
            metadata.setdefault("session_id", self.session.id)
            metadata.setdefault("routine_id", self.session.routine_id)
        try:
            self.event_logger.log({
                "category": category,
                "value": value,
                "timestamp": self.clock().isoformat(),
                "metadata": metadata,
            })
        except Exception as e:
            logger.warning("Could not log %s/%s event: %s", category, value, e)
            return [f"event log: {e}"]
        return []

    # ----------------------
    # Transitions
    # ----------------------
    def start(self, template: RoutineTemplate) -> OperationResult:
        with self.lock:
            if self.state is not SessionState.NOT_STARTED:
                return self._fail(RoutineErrorKind.INVALID_STATE, "Session already started")
            sequence = sorted(template.active_habits(), key=lambda h: h.order)
            if not sequence:
                return self._fail(RoutineErrorKind.EMPTY_ROUTINE,
                                  f"Routine '{template.name}' has no active habits")
            self.template = template
            self._sequence = sequence
            self._expansions = {}
            self.session = RoutineSession(
                routine_id=template.id,
                routine_name=template.name,
                started_at=self.clock(),
                state=SessionState.ACTIVE,
            )
            logger.info("Started routine '%s' (%d habits)", template.name, len(sequence))
            warnings = self._emit("routine", "started", routine_name=template.name, habit_count=len(sequence))
            return self._ok(warnings=warnings)

    def complete(self, habit_id: str, time_taken: Optional[float] = None,
                 notes: Optional[str] = None) -> OperationResult:
        with self.lock:
            blocked = self._require_active()
            if blocked is not None:
                return blocked
            index = self._find(habit_id)
            if index is None:
                return self._fail(RoutineErrorKind.UNKNOWN_HABIT, f"Habit {habit_id} is not in this session")
            habit = self._sequence[index]
            if isinstance(habit.habit_type, ConditionalType):
                return self._fail(RoutineErrorKind.INVALID_OPERATION,
                                  f"'{habit.name}' is a question; answer it by selecting an option")
            if self.session.completion_for(habit_id) is not None:
                return self._ok(changed=False, message="Already recorded")

            if time_taken is not None:
                time_taken = max(0.0, float(time_taken))
            self.session.habit_completions.append(HabitCompletion(
                habit_id=habit.id,
                habit_name=habit.name,
                completed_at=self.clock(),
                time_taken=time_taken,
                notes=notes,
                was_skipped=False,
            ))
            self._advance_past(index)
            warnings = self._emit("routine_step", "completed", habit_id=habit.id, habit_name=habit.name,
                                  time_taken=time_taken)
            return self._ok(warnings=warnings)

    def skip(self, habit_id: str, notes: Optional[str] = None) -> OperationResult:
        with self.lock:
            blocked = self._require_active()
            if blocked is not None:
                return blocked
            index = self._find(habit_id)
            if index is None:
                return self._fail(RoutineErrorKind.UNKNOWN_HABIT, f"Habit {habit_id} is not in this session")
            habit = self._sequence[index]
            if self.session.completion_for(habit_id) is not None:
                return self._ok(changed=False, message="Already recorded")

            now = self.clock()
            if isinstance(habit.habit_type, ConditionalType):
                skip_question(self.session, habit, now)
                if self.response_log is not None:
                    self.response_log.record(ConditionalResponse.skipped(habit, self.session.id, now))
                self._advance_past(index)
                warnings = self._emit("conditional", "skipped", habit_id=habit.id,
                                      question=habit.habit_type.question)
                return self._ok(warnings=warnings)

            if not habit.is_optional:
                return self._fail(RoutineErrorKind.REQUIRED_HABIT, f"'{habit.name}' is required and cannot be skipped")
            self.session.habit_completions.append(HabitCompletion(
                habit_id=habit.id,
                habit_name=habit.name,
                completed_at=now,
                notes=notes,
                was_skipped=True,
            ))
            self._advance_past(index)
            warnings = self._emit("routine_step", "skipped", habit_id=habit.id, habit_name=habit.name)
            return self._ok(warnings=warnings)

    def select_option(self, conditional_habit_id: str, option_id: str) -> OperationResult:
        """Answer a conditional question, replacing any earlier answer."""
        with self.lock:
            blocked = self._require_active()
            if blocked is not None:
                return blocked
            index = self._find(conditional_habit_id)
            if index is None:
                return self._fail(RoutineErrorKind.UNKNOWN_HABIT,
                                  f"Habit {conditional_habit_id} is not in this session")
            habit = self._sequence[index]
            if not isinstance(habit.habit_type, ConditionalType):
                return self._fail(RoutineErrorKind.INVALID_OPERATION, f"'{habit.name}' is not a question")
            option = habit.habit_type.option(option_id)
            if option is None:
                return self._fail(RoutineErrorKind.UNKNOWN_OPTION,
                                  f"Option {option_id} does not belong to '{habit.name}'")
            current = self._expansions.get(habit.id)
            if current is not None and current.option_id == option.id:
                return self._ok(changed=False, message="Option already selected")

            session = self.session
            was_current = session.current_habit_index == index
            previous_current = (self._sequence[session.current_habit_index].id
                                if session.current_habit_index < len(self._sequence) else None)

            now = self.clock()
            removed = apply_selection(session, self._sequence, self._expansions, habit, option, now)

            position = self._find(habit.id)
            if was_current:
                session.current_habit_index = min(position + 1, len(self._sequence) - 1)
            else:
                kept = self._find(previous_current) if previous_current else None
                if kept is not None:
                    session.current_habit_index = kept
                else:
                    session.current_habit_index = min(position + 1, len(self._sequence) - 1)

            if self.response_log is not None:
                self.response_log.record(ConditionalResponse.for_option(habit, option, session.id, now))
            warnings = self._emit("conditional", "selected", habit_id=habit.id, option_id=option.id,
                                  option_text=option.text, removed=len(removed))
            return self._ok(warnings=warnings)

    def finish(self) -> OperationResult:
        with self.lock:
            blocked = self._require_active()
            if blocked is not None:
                return blocked
            missing = self._required_missing()
            if missing:
                names = ", ".join(h.name for h in missing)
                return self._fail(RoutineErrorKind.INCOMPLETE_ROUTINE, f"Required habits not done: {names}")

            session = self.session
            session.completed_at = self.clock()
            session.state = SessionState.COMPLETED

            warnings = []
            for sink in self.sinks:
                try:
                    sink.deliver(session)
                except Exception as e:
                    sink_name = type(sink).__name__
                    logger.warning("Completion sink %s failed for session %s: %s", sink_name, session.id, e)
                    warnings.append(f"{sink_name}: {e}")

            logger.info("Finished routine '%s'", session.routine_name)
            warnings += self._emit("routine", "completed", completions=len(session.habit_completions),
                                   duration_seconds=(session.completed_at - session.started_at).total_seconds())
            return self._ok(warnings=warnings)

    def cancel(self) -> OperationResult:
        with self.lock:
            blocked = self._require_active()
            if blocked is not None:
                return blocked
            session = self.session
            done = sum(1 for c in session.habit_completions if not c.was_skipped)
            total = len(self._sequence)
            now = self.clock()
            session.habit_completions.append(HabitCompletion(
                habit_id=CANCELLED_HABIT_ID,
                habit_name=session.routine_name,
                completed_at=now,
                notes=cancellation_note(done, total),
                was_skipped=True,
            ))
            session.completed_at = now
            session.state = SessionState.CANCELLED

            warnings = []
            if self.history_store is not None:
                try:
                    self.history_store.save(session)
                except Exception as e:
                    logger.warning("Could not save cancelled session %s: %s", session.id, e)
                    warnings.append(f"history: {e}")

            logger.info("Cancelled routine '%s' (%d of %d done)", session.routine_name, done, total)
            warnings += self._emit("routine", "cancelled", completed=done, total=total)
            return self._ok(warnings=warnings)

    # ----------------------
    # Ad-hoc edits
    # ----------------------
    def _branch_ids(self, habit_id: str) -> List[str]:
        expansion = self._expansions.get(habit_id)
        if expansion is None:
            return []
        ids: List[str] = []
        for inserted in expansion.inserted_ids:
            ids.extend(self._branch_ids(inserted))
            ids.append(inserted)
        return ids

    def _current_id(self) -> Optional[str]:
        index = self.session.current_habit_index
        return self._sequence[index].id if 0 <= index < len(self._sequence) else None

    def add_habit(self, habit: Habit, position: Optional[int] = None) -> OperationResult:
        """Insert a habit into the running session only; the template is untouched."""
        with self.lock:
            blocked = self._require_active()
            if blocked is not None:
                return blocked
            if not habit.is_active:
                return self._fail(RoutineErrorKind.INVALID_OPERATION, f"'{habit.name}' is inactive")
            if self._find(habit.id) is not None:
                return self._fail(RoutineErrorKind.INVALID_OPERATION,
                                  f"'{habit.name}' is already in this session")

            session = self.session
            current_id = self._current_id()
            if position is None:
                position = len(self._sequence)
            position = max(0, min(int(position), len(self._sequence)))
            self._sequence.insert(position, habit)
            renumber(self._sequence)
            if current_id is not None:
                session.current_habit_index = self._find(current_id)

            session.modifications.append(SessionModification(
                kind=ModificationKind.ADDED,
                habit_id=habit.id,
                habit_name=habit.name,
                timestamp=self.clock(),
                position=position,
            ))
            logger.info("Added '%s' to routine '%s'", habit.name, session.routine_name)
            warnings = self._emit("routine_step", "added", habit_id=habit.id, habit_name=habit.name,
                                  position=position)
            return self._ok(warnings=warnings)

    def remove_habit(self, habit_id: str) -> OperationResult:
        """Drop a habit (and any branch it expanded) from the running session."""
        with self.lock:
            blocked = self._require_active()
            if blocked is not None:
                return blocked
            index = self._find(habit_id)
            if index is None:
                return self._fail(RoutineErrorKind.UNKNOWN_HABIT, f"Habit {habit_id} is not in this session")
            habit = self._sequence[index]
            doomed = set(self._branch_ids(habit_id)) | {habit_id}
            if len(doomed) >= len(self._sequence):
                return self._fail(RoutineErrorKind.EMPTY_ROUTINE,
                                  f"Removing '{habit.name}' would leave the session empty")

            session = self.session
            current_id = self._current_id()
            collapse(self._sequence, self._expansions, habit_id)
            self._sequence[:] = [h for h in self._sequence if h.id != habit_id]
            for expansion in self._expansions.values():
                if habit_id in expansion.inserted_ids:
                    expansion.inserted_ids.remove(habit_id)
            renumber(self._sequence)
            moved = session.supersede(doomed)

            kept = self._find(current_id) if current_id is not None else None
            if kept is not None:
                session.current_habit_index = kept
            else:
                session.current_habit_index = min(index, len(self._sequence) - 1)

            session.modifications.append(SessionModification(
                kind=ModificationKind.REMOVED,
                habit_id=habit.id,
                habit_name=habit.name,
                timestamp=self.clock(),
                position=index,
            ))
            logger.info("Removed '%s' from routine '%s'", habit.name, session.routine_name)
            warnings = self._emit("routine_step", "removed", habit_id=habit.id, habit_name=habit.name,
                                  removed=len(doomed), superseded=len(moved))
            return self._ok(warnings=warnings)

    # ----------------------
    # Navigation
    # ----------------------
    def go_to(self, index: int) -> OperationResult:
        with self.lock:
            blocked = self._require_active()
            if blocked is not None:
                return blocked
            clamped = max(0, min(int(index), len(self._sequence) - 1))
            changed = clamped != self.session.current_habit_index
            self.session.current_habit_index = clamped
            return self._ok(changed=changed)

    def advance(self) -> OperationResult:
        with self.lock:
            if self.session is None:
                return self._require_active()
            return self.go_to(self.session.current_habit_index + 1)

    def retreat(self) -> OperationResult:
        with self.lock:
            if self.session is None:
                return self._require_active()
            return self.go_to(self.session.current_habit_index - 1)
