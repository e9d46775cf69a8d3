from datetime import datetime, timedelta, timezone

import pytest

from habitflow.engine.habits.habit_types import ConditionalOption, ConditionalType, Habit, TaskType
from habitflow.engine.routines.models import RoutineTemplate


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def tick(self, seconds=60):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingSink:
    def __init__(self):
        self.delivered = []

    def deliver(self, session):
        self.delivered.append(session.id)


class BrokenSink:
    def deliver(self, session):
        raise RuntimeError("disk full")


@pytest.fixture
def clock():
    return FakeClock()


def task(name, order, optional=False, active=True):
    return Habit(name=name, habit_type=TaskType(), order=order, is_optional=optional, is_active=active)


def question(name, order, options, optional=False):
    return Habit(
        name=name,
        habit_type=ConditionalType(question=f"{name}?", options=options),
        order=order,
        is_optional=optional,
    )


@pytest.fixture
def three_task_template():
    return RoutineTemplate(
        name="Morning",
        habits=[task("Water", 0), task("Stretch", 1, optional=True), task("Journal", 2)],
    )


@pytest.fixture
def branching_template():
    yes = ConditionalOption("Yes", [task("Warm up", 0), task("Run", 1)])
    no = ConditionalOption("No", [task("Walk", 0)])
    return RoutineTemplate(
        name="Exercise",
        habits=[task("Water", 0), question("Exercise today", 1, [yes, no]), task("Shower", 2)],
    )
