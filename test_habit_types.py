import pytest

from habitflow.engine.habits.habit_types import (
    ActionKind,
    ActionType,
    ConditionalOption,
    ConditionalType,
    CounterType,
    GuidedSequenceType,
    Habit,
    HabitKind,
    MeasurementType,
    SequenceStep,
    Subtask,
    TaskType,
    TimerSegment,
    TimerStyle,
    TimerType,
    conditional_depth,
    default_name,
    estimated_duration,
    habit_type_from_dict,
    habit_type_to_dict,
    icon_name,
    validate_conditional,
)


@pytest.mark.parametrize("duration", [0, -5, None, float("nan")])
def test_sequence_step_duration_clamped_to_one(duration):
    step = SequenceStep("Breathe", duration)
    assert step.duration == 1.0
    assert estimated_duration(GuidedSequenceType(steps=[step])) == 1.0


def test_timer_and_segment_durations_clamped():
    timer = TimerType(duration=0, target=-3)
    assert timer.duration == 1.0
    assert timer.target == 1.0
    assert TimerSegment("Rest", 0).duration == 1.0


def test_estimated_durations_per_kind():
    assert estimated_duration(TaskType()) == 60
    assert estimated_duration(TaskType(subtasks=[Subtask("a"), Subtask("b")])) == 150
    assert estimated_duration(TimerType(duration=600)) == 600
    assert estimated_duration(TimerType(style=TimerStyle.COUNTUP, duration=600, target=900)) == 900
    assert estimated_duration(TimerType(style=TimerStyle.MULTI_SEGMENT, segments=[
        TimerSegment("Work", 1500), TimerSegment("Rest", 300)])) == 1800
    assert estimated_duration(ActionType(ActionKind.APP, "x", "X")) == 300
    assert estimated_duration(ActionType(ActionKind.WEBSITE, "x", "X")) == 180
    assert estimated_duration(ActionType(ActionKind.SHORTCUT, "x", "X")) == 60
    assert estimated_duration(CounterType(items=["a", "b", "c"])) == 90
    assert estimated_duration(MeasurementType(unit="kg")) == 60
    assert estimated_duration(GuidedSequenceType(steps=[SequenceStep("a", 30), SequenceStep("b", 45)])) == 75


def test_conditional_duration_ignores_branches():
    branch = Habit(name="Long", habit_type=TimerType(duration=3600))
    info = ConditionalType(question="Go?", options=[ConditionalOption("Yes", [branch])])
    assert estimated_duration(info) == 30


def test_unknown_payload_is_rejected():
    with pytest.raises(TypeError):
        estimated_duration(object())


def test_default_names_and_icons():
    assert default_name(TaskType()) == "New Task"
    assert default_name(TaskType(subtasks=[Subtask("a")])) == "Task with Steps"
    assert default_name(TimerType(style=TimerStyle.COUNTUP)) == "Rest Period"
    assert default_name(ConditionalType(question="?")) == "Question"
    assert icon_name(TaskType(subtasks=[Subtask("a")])) == "checklist"
    assert icon_name(ActionType(ActionKind.WEBSITE, "u", "U")) == "safari"

    habit = Habit.create(CounterType(items=["water"]))
    assert habit.name == "Track Items"
    assert habit.color == "#FFD60A"
    assert habit.kind is HabitKind.COUNTER


def test_habit_dict_round_trip_keeps_nested_branches():
    follow_up = Habit(name="Run", habit_type=TimerType(duration=900), order=0)
    habit = Habit(
        name="Exercise?",
        habit_type=ConditionalType(question="Exercise?", options=[
            ConditionalOption("Yes", [follow_up]), ConditionalOption("No"),
        ]),
    )
    restored = Habit.from_dict(habit.to_dict())
    assert restored == habit
    assert restored.habit_type.options[0].follow_up_habits[0].name == "Run"


def test_unknown_type_discriminator_raises():
    with pytest.raises(ValueError):
        habit_type_from_dict({"type": "juggling"})
    assert habit_type_to_dict(MeasurementType(unit="kg", target=70))["type"] == "measurement"


def test_validate_conditional_rules():
    ok = validate_conditional(ConditionalType(question="Gym?", options=[ConditionalOption("Yes")]))
    assert ok.is_valid

    bad = validate_conditional(ConditionalType(
        question=" ",
        options=[ConditionalOption("Yes"), ConditionalOption("yes"), ConditionalOption(""),
                 ConditionalOption("x" * 51), ConditionalOption("Maybe")],
    ))
    assert not bad.is_valid
    assert "Question cannot be empty" in bad.issues
    assert "Maximum 4 options allowed" in bad.issues
    assert "Option texts must be unique" in bad.issues
    assert "Option 3 text cannot be empty" in bad.issues
    assert "Option 4 text should be under 50 characters" in bad.issues

    empty = validate_conditional(ConditionalType(question="Q", options=[]))
    assert "At least one option is required" in empty.issues


def test_conditional_depth_counts_nested_questions():
    inner = Habit(name="Inner", habit_type=ConditionalType("In?", [ConditionalOption("A")]))
    outer = Habit(name="Outer", habit_type=ConditionalType("Out?", [ConditionalOption("B", [inner])]))
    assert conditional_depth(outer) == 2
    assert conditional_depth(Habit(name="Plain", habit_type=TaskType())) == 0
