from datetime import datetime, timedelta, timezone

from habitflow.engine.context.context_resolver import RoutineContext
from habitflow.engine.routines.models import ContextRule, RoutineTemplate
from habitflow.engine.schedulers.template_selector import (
    explain_selection,
    score_template,
    select_best_template,
)

MORNING_WEEKDAY_HOME = RoutineContext("morning", "weekday", "home")


def _template(name, rule=None, tid=None, last_used=None, is_default=False):
    kwargs = {"name": name, "context_rule": rule, "last_used_at": last_used, "is_default": is_default}
    if tid:
        kwargs["id"] = tid
    return RoutineTemplate(**kwargs)


def test_morning_rule_beats_higher_priority_wildcard():
    morning = _template("Morning", ContextRule(time_slots={"morning"}, priority=1))
    quick = _template("Quick", ContextRule(priority=5))
    context = RoutineContext("morning", "weekday", "unknown")

    assert score_template(morning, context) == 11
    assert score_template(quick, context) == 5
    assert select_best_template([quick, morning], context) is morning


def test_templates_without_rule_or_with_disabled_rule_are_ineligible():
    bare = _template("Bare")
    disabled = _template("Disabled", ContextRule(priority=50, enabled=False))
    assert score_template(bare, MORNING_WEEKDAY_HOME) is None
    assert score_template(disabled, MORNING_WEEKDAY_HOME) is None
    assert select_best_template([bare, disabled], MORNING_WEEKDAY_HOME) is None


def test_failing_any_dimension_excludes_template():
    office = _template("Office", ContextRule(time_slots={"morning"}, location_categories={"office"}))
    assert score_template(office, MORNING_WEEKDAY_HOME) is None


def test_each_matching_dimension_adds_boost():
    rule = ContextRule(time_slots={"morning"}, day_categories={"weekday"},
                       location_categories={"home"}, priority=2)
    assert score_template(_template("All", rule), MORNING_WEEKDAY_HOME) == 32


def test_ties_prefer_most_recently_used_then_id():
    now = datetime(2025, 3, 10, tzinfo=timezone.utc)
    rule = ContextRule(time_slots={"morning"})
    older = _template("Older", rule, tid="b", last_used=now - timedelta(days=2))
    newer = _template("Newer", rule, tid="c", last_used=now - timedelta(days=1))
    never = _template("Never", rule, tid="a")
    assert select_best_template([older, never, newer], MORNING_WEEKDAY_HOME) is newer

    twin_a = _template("Twin A", rule, tid="a")
    twin_b = _template("Twin B", rule, tid="b")
    assert select_best_template([twin_b, twin_a], MORNING_WEEKDAY_HOME) is twin_a


def test_default_template_used_when_nothing_eligible():
    evening = _template("Evening", ContextRule(time_slots={"evening"}))
    fallback = _template("Fallback", is_default=True)
    selection = explain_selection([evening, fallback], MORNING_WEEKDAY_HOME)
    assert selection.template is fallback
    assert selection.is_fallback
    assert select_best_template([evening, fallback], MORNING_WEEKDAY_HOME) is fallback


def test_selection_is_deterministic_and_pure():
    templates = [
        _template("A", ContextRule(time_slots={"morning"}), tid="a"),
        _template("B", ContextRule(day_categories={"weekday"}), tid="b"),
    ]
    picks = {select_best_template(templates, MORNING_WEEKDAY_HOME).id for _ in range(5)}
    assert picks == {"a"}
    assert all(t.last_used_at is None for t in templates)


def test_reason_names_matching_dimensions():
    office = _template("Office Day", ContextRule(time_slots={"morning"}, day_categories={"weekday"},
                                                 location_categories={"office"}, priority=2))
    selection = explain_selection([office], RoutineContext("morning", "weekday", "office"))
    assert selection.score == 32
    assert selection.reason == "Selected 'Office Day' because it's morning and it's a weekday and you're at office"
    assert [t.name for t, _ in selection.candidates] == ["Office Day"]
