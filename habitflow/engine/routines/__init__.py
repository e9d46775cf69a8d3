from .models import (
    ContextRule,
    HabitCompletion,
    Mood,
    MoodRating,
    RoutineSession,
    RoutineTemplate,
    SessionModification,
    SessionState,
)
from .session_machine import RoutineSessionMachine, SessionSnapshot

__all__ = [
    "ContextRule",
    "HabitCompletion",
    "Mood",
    "MoodRating",
    "RoutineSession",
    "RoutineTemplate",
    "SessionModification",
    "SessionState",
    "RoutineSessionMachine",
    "SessionSnapshot",
]
