"""
Conditional Branch Resolver
===========================

Answering a conditional question splices the chosen option's follow-up
habits into the live sequence right after the question. Changing the answer
first removes what the previous answer inserted, including anything that
nested conditionals among those habits expanded in turn. Completions that
belonged to removed habits are moved to the session's superseded list so
the audit trail survives.

Every answer is also recorded as a ``ConditionalResponse`` so option
popularity can be reported per question.
"""

from __future__ import annotations
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from habitflow.engine.habits.habit_types import (
    ConditionalOption,
    ConditionalType,
    Habit,
    ensure_timezone_aware,
)
from habitflow.engine.routines.models import HabitCompletion, RoutineSession

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

SKIPPED_OPTION_TEXT = "Skipped"


@dataclass
class ConditionalExpansion:
    """Which option a conditional currently has expanded and what it inserted."""
    conditional_id: str
    option_id: str
    inserted_ids: List[str] = field(default_factory=list)


def selection_note(option: ConditionalOption) -> str:
    return f"Selected: {option.text}"


def renumber(sequence: List[Habit]) -> None:
    for index, habit in enumerate(sequence):
        if habit.order != index:
            sequence[index] = habit.with_order(index)


def _index_of(sequence: List[Habit], habit_id: str) -> Optional[int]:
    for index, habit in enumerate(sequence):
        if habit.id == habit_id:
            return index
    return None


def collapse(
    sequence: List[Habit],
    expansions: Dict[str, ConditionalExpansion],
    conditional_id: str,
) -> List[str]:
    """Remove the habits inserted for ``conditional_id``; returns removed ids."""
    expansion = expansions.pop(conditional_id, None)
    if expansion is None:
        return []
    removed: List[str] = []
    for habit_id in expansion.inserted_ids:
        # Nested conditionals take their own branches with them
        removed.extend(collapse(sequence, expansions, habit_id))
        removed.append(habit_id)
    sequence[:] = [h for h in sequence if h.id not in set(removed)]
    renumber(sequence)
    return removed


def expand(
    sequence: List[Habit],
    expansions: Dict[str, ConditionalExpansion],
    conditional: Habit,
    option: ConditionalOption,
) -> List[str]:
    """Insert the option's follow-ups right after the conditional."""
    position = _index_of(sequence, conditional.id)
    if position is None:
        raise KeyError(conditional.id)
    follow_ups = [h for h in option.follow_up_habits if h.is_active]
    sequence[position + 1:position + 1] = follow_ups
    renumber(sequence)
    inserted = [h.id for h in follow_ups]
    expansions[conditional.id] = ConditionalExpansion(conditional.id, option.id, inserted)
    return inserted


def apply_selection(
    session: RoutineSession,
    sequence: List[Habit],
    expansions: Dict[str, ConditionalExpansion],
    conditional: Habit,
    option: ConditionalOption,
    now: datetime,
) -> List[str]:
    """Answer a conditional: collapse the old branch, splice the new one, record.

    Returns the ids of habits removed from the sequence.
    """
    removed = collapse(sequence, expansions, conditional.id)
    if removed:
        moved = session.supersede(removed)
        logger.debug("Superseded %d completions from removed branch", len(moved))
    # The previous answer's own completion is superseded too
    session.supersede([conditional.id])
    expand(sequence, expansions, conditional, option)
    session.habit_completions.append(HabitCompletion(
        habit_id=conditional.id,
        habit_name=conditional.name,
        completed_at=now,
        notes=selection_note(option),
        was_skipped=False,
    ))
    return removed


def skip_question(session: RoutineSession, conditional: Habit, now: datetime) -> HabitCompletion:
    completion = HabitCompletion(
        habit_id=conditional.id,
        habit_name=conditional.name,
        completed_at=now,
        notes=SKIPPED_OPTION_TEXT,
        was_skipped=True,
    )
    session.habit_completions.append(completion)
    return completion


# ----------------------
# Response history
# ----------------------

@dataclass
class ConditionalResponse:
    habit_id: str
    question: str
    option_id: Optional[str]
    option_text: str
    routine_session_id: str
    was_skipped: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def for_option(cls, conditional: Habit, option: ConditionalOption, session_id: str,
                   when: Optional[datetime] = None) -> "ConditionalResponse":
        return cls(
            habit_id=conditional.id,
            question=conditional.habit_type.question,
            option_id=option.id,
            option_text=option.text,
            routine_session_id=session_id,
            timestamp=ensure_timezone_aware(when),
        )

    @classmethod
    def skipped(cls, conditional: Habit, session_id: str,
                when: Optional[datetime] = None) -> "ConditionalResponse":
        info: ConditionalType = conditional.habit_type
        return cls(
            habit_id=conditional.id,
            question=info.question,
            option_id=None,
            option_text=SKIPPED_OPTION_TEXT,
            routine_session_id=session_id,
            was_skipped=True,
            timestamp=ensure_timezone_aware(when),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "habit_id": self.habit_id,
            "question": self.question,
            "option_id": self.option_id,
            "option_text": self.option_text,
            "routine_session_id": self.routine_session_id,
            "was_skipped": self.was_skipped,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConditionalResponse":
        return cls(
            id=data["id"],
            habit_id=data["habit_id"],
            question=data.get("question", ""),
            option_id=data.get("option_id"),
            option_text=data.get("option_text", ""),
            routine_session_id=data["routine_session_id"],
            was_skipped=data.get("was_skipped", False),
            timestamp=ensure_timezone_aware(datetime.fromisoformat(data["timestamp"])),
        )


class ConditionalResponseLog:
    """Answers to conditional questions, newest answer per session kept.

    With a ``path`` the log is also appended to a JSONL file and reloaded
    from it on construction.
    """

    def __init__(self, path: Optional[Path | str] = None):
        self.path = Path(path) if path else None
        self.lock = threading.RLock()
        self._responses: Dict[tuple, ConditionalResponse] = {}
        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    response = ConditionalResponse.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError):
                    logger.warning("Skipping corrupted line in %s", self.path)
                    continue
                self._responses[(response.habit_id, response.routine_session_id)] = response

    def record(self, response: ConditionalResponse) -> None:
        with self.lock:
            self._responses[(response.habit_id, response.routine_session_id)] = response
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(response.to_dict(), ensure_ascii=False) + "\n")

    def responses_for(self, habit_id: str) -> List[ConditionalResponse]:
        with self.lock:
            found = [r for (hid, _), r in self._responses.items() if hid == habit_id]
        return sorted(found, key=lambda r: r.timestamp)

    def option_statistics(self, habit_id: str) -> Dict[str, Any]:
        """Selection counts and percentages per option text."""
        responses = self.responses_for(habit_id)
        total = len(responses)
        counts: Dict[str, int] = {}
        for response in responses:
            counts[response.option_text] = counts.get(response.option_text, 0) + 1
        return {
            "habit_id": habit_id,
            "total_responses": total,
            "options": {
                text: {"count": count, "percentage": round(100.0 * count / total, 1)}
                for text, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
            },
        }
