import json
from datetime import datetime, timezone

import pytest

from conftest import FakeClock, question, task
from habitflow.engine.context.context_resolver import ContextSettings, Coordinate, SavedLocation, SystemContextProvider
from habitflow.engine.core.routine_service import RoutineService, default_templates, validate_template
from habitflow.engine.errors import RoutineErrorKind, ValidationError
from habitflow.engine.habits.habit_types import ConditionalOption
from habitflow.engine.routines.models import Mood, RoutineTemplate, SessionState
from habitflow.logger.unified import UnifiedLogger
from habitflow.store.data_export import export_to_json, import_from_json
from habitflow.store.session_store import SessionStore

OFFICE = Coordinate(37.3349, -122.0090)


@pytest.fixture
def service(tmp_path):
    # Monday 08:00 UTC
    clock = FakeClock(datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc))
    settings = ContextSettings(
        built_in_locations={"office": SavedLocation("office", "Office", OFFICE.latitude, OFFICE.longitude)},
    )
    return RoutineService(
        store=SessionStore(tmp_path / "sessions"),
        context_provider=SystemContextProvider(settings, clock=clock),
        event_logger=UnifiedLogger(data_dir=tmp_path / "events"),
    )


def _by_name(service, name):
    return next(t for t in service.templates if t.name == name)


def test_defaults_are_seeded_and_persisted(service, tmp_path):
    assert [t.name for t in service.templates] == ["Office Day", "Home Office", "Weekend", "Afternoon Focus"]
    assert sum(t.is_default for t in service.templates) == 1
    assert all(not validate_template(t) for t in default_templates())
    assert len(SessionStore(tmp_path / "sessions").load_templates()) == 4


def test_smart_template_uses_location(service, tmp_path):
    selection = service.smart_template(location=OFFICE)
    assert selection.template.name == "Office Day"
    assert selection.score == 32
    assert "you're at office" in selection.reason

    events = UnifiedLogger(data_dir=tmp_path / "events").read_events("selection")
    assert events[-1]["metadata"]["context"]["location_category"] == "office"


def test_smart_template_falls_back_to_default(service):
    # Monday morning with no location: only location-bound rules admit mornings
    selection = service.smart_template()
    assert selection.is_fallback
    assert selection.template.name == "Office Day"


def test_start_session_updates_last_used(service, tmp_path):
    template = _by_name(service, "Weekend")
    result = service.start_session(template.id)
    assert result.ok
    assert service.machine.state is SessionState.ACTIVE
    [stored] = [t for t in SessionStore(tmp_path / "sessions").load_templates() if t.id == template.id]
    assert stored.last_used_at == datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


def test_only_one_active_session(service):
    first, second = service.templates[:2]
    assert service.start_session(first.id).ok
    again = service.start_session(second.id)
    assert again.error is RoutineErrorKind.SESSION_ALREADY_ACTIVE
    assert service.end_session().error is RoutineErrorKind.INVALID_STATE

    service.machine.cancel()
    assert service.end_session().ok
    assert service.start_session(second.id).ok


def test_unknown_template(service):
    assert service.start_session("nope").error is RoutineErrorKind.TEMPLATE_NOT_FOUND
    assert service.end_session().error is RoutineErrorKind.NO_ACTIVE_SESSION


def test_finished_session_lands_in_history(service):
    template = _by_name(service, "Afternoon Focus")
    service.start_session(template.id)
    for habit in service.machine.sequence:
        service.machine.complete(habit.id)
    assert service.machine.finish().ok
    [session] = service.history(template.id)
    assert session.is_completed


def test_cancelled_session_lands_in_history(service):
    template = _by_name(service, "Weekend")
    service.start_session(template.id)
    service.machine.cancel()
    [session] = service.history()
    assert session.state is SessionState.CANCELLED
    assert session.habit_completions[-1].notes == "Cancelled: 0 of 3 habits completed"


def test_single_default_flag(service):
    extra = RoutineTemplate(name="Fallback", habits=[task("Breathe", 0)], is_default=True)
    assert service.add_template(extra).ok
    assert [t.name for t in service.templates if t.is_default] == ["Fallback"]


def test_too_deep_conditionals_are_rejected(service):
    level4 = question("L4", 0, [ConditionalOption("a", [task("x", 0)])])
    level3 = question("L3", 0, [ConditionalOption("a", [level4])])
    level2 = question("L2", 0, [ConditionalOption("a", [level3])])
    level1 = question("L1", 0, [ConditionalOption("a", [level2])])
    template = RoutineTemplate(name="Deep", habits=[level1])
    result = service.add_template(template)
    assert result.error is RoutineErrorKind.TEMPLATE_INVALID
    assert "nested 4 deep" in result.message


def test_update_and_delete_template(service, tmp_path):
    template = _by_name(service, "Weekend")
    template.name = "Lazy Weekend"
    assert service.update_template(template).ok
    assert service.delete_template(_by_name(service, "Home Office").id).ok
    names = [t.name for t in SessionStore(tmp_path / "sessions").load_templates()]
    assert names == ["Office Day", "Lazy Weekend", "Afternoon Focus"]
    assert service.delete_template("nope").error is RoutineErrorKind.TEMPLATE_NOT_FOUND


def test_conditional_statistics_through_service(service):
    template = _by_name(service, "Home Office")
    q = next(h for h in template.habits if h.is_conditional)
    service.start_session(template.id)
    service.machine.select_option(q.id, q.habit_type.options[1].id)
    stats = service.option_statistics(q.id)
    assert stats["options"] == {"No": {"count": 1, "percentage": 100.0}}


def test_mood_rating_for_stored_session(service):
    service.start_session(_by_name(service, "Weekend").id)
    service.machine.cancel()
    session_id = service.machine.session.id

    result = service.add_mood_rating(session_id, "good", notes="slow start")
    assert result.ok
    assert result.snapshot.mood is Mood.GOOD
    assert service.add_mood_rating(session_id, Mood.EXCELLENT).ok
    assert service.mood_rating_for(session_id).mood is Mood.EXCELLENT
    assert len(service.mood_ratings) == 1

    assert service.add_mood_rating("nope", "good").error is RoutineErrorKind.SESSION_NOT_FOUND
    assert service.add_mood_rating(session_id, "ecstatic").error is RoutineErrorKind.INVALID_OPERATION


def test_quick_start_accessors(service):
    assert service.last_used_template is None
    assert service.default_template.name == "Office Day"

    for name in ("Weekend", "Home Office"):
        service.start_session(_by_name(service, name).id)
        service.machine.cancel()
        service.end_session()
        service.context_provider.clock.tick(600)
    assert service.last_used_template.name == "Home Office"

    service.delete_template(_by_name(service, "Office Day").id)
    assert service.default_template is None


def _finish_with_rating(service, name):
    template = _by_name(service, name)
    service.start_session(template.id)
    for habit in service.machine.sequence:
        service.machine.complete(habit.id)
    service.machine.finish()
    session_id = service.machine.session.id
    service.end_session()
    service.add_mood_rating(session_id, Mood.GOOD)
    return session_id


def test_export_import_round_trip(service, tmp_path):
    session_id = _finish_with_rating(service, "Weekend")
    text = export_to_json(service)

    fresh = RoutineService(
        store=SessionStore(tmp_path / "copy"),
        context_provider=service.context_provider,
        seed_defaults=False,
    )
    result = import_from_json(fresh, text)
    assert (result.routines_imported, result.sessions_imported, result.mood_ratings_imported) == (4, 1, 1)
    assert [t.to_dict() for t in fresh.templates] == [t.to_dict() for t in service.templates]
    assert fresh.history() == service.history()
    assert fresh.mood_rating_for(session_id).mood is Mood.GOOD
    assert fresh.default_template.name == "Office Day"

    again = import_from_json(fresh, text)
    assert again.total_imported == 0
    assert (again.routines_skipped, again.sessions_skipped) == (4, 1)


def test_import_rejects_malformed_documents(service):
    with pytest.raises(ValidationError):
        import_from_json(service, "{not json")
    missing_fields = {
        "format_version": 1,
        "exported_at": "2025-03-10T08:00:00+00:00",
        "routines": [{"name": "No id"}],
        "sessions": [],
    }
    with pytest.raises(ValidationError):
        import_from_json(service, json.dumps(missing_fields))
    assert len(service.templates) == 4


def test_cli_prints_json(tmp_path, capsys):
    from habitflow.home.routine_cli import main

    code = main(["--data-dir", str(tmp_path), "context", "--at", "2025-03-15T10:00:00+00:00"])
    out = json.loads(capsys.readouterr().out)
    assert code == 0
    assert out["status"] == "ok"
    assert out["context"] == {"time_slot": "morning", "day_category": "weekend", "location_category": "unknown"}

    main(["--data-dir", str(tmp_path), "select", "--at", "2025-03-15T10:00:00+00:00"])
    out = json.loads(capsys.readouterr().out)
    assert out["selection"]["template_name"] == "Weekend"
    assert out["selection"]["score"] == 11

    main(["--data-dir", str(tmp_path), "templates"])
    assert len(json.loads(capsys.readouterr().out)["templates"]) == 4

    main(["--data-dir", str(tmp_path), "history"])
    assert json.loads(capsys.readouterr().out) == {"status": "ok", "sessions": []}


def test_cli_reports_bad_input(tmp_path, capsys):
    from habitflow.home.routine_cli import main

    code = main(["--data-dir", str(tmp_path), "context", "--at", "not-a-date"])
    out = json.loads(capsys.readouterr().out)
    assert code == 1
    assert out["status"] == "error"


def test_cli_reports_malformed_stored_session(tmp_path, capsys):
    from habitflow.home.routine_cli import main

    sessions = tmp_path / "sessions"
    sessions.mkdir()
    (sessions / "sessions.jsonl").write_text('{"id": "s1", "routine_id": "r1"}\n', encoding="utf-8")

    code = main(["--data-dir", str(tmp_path), "history"])
    out = json.loads(capsys.readouterr().out)
    assert code == 1
    assert out["status"] == "error"
    assert "malformed" in out["message"]


def test_cli_export_import_and_rate(tmp_path, capsys):
    from habitflow.home.routine_cli import main

    export_path = tmp_path / "export.json"
    assert main(["--data-dir", str(tmp_path / "a"), "export", "--output", str(export_path)]) == 0
    assert json.loads(capsys.readouterr().out)["path"] == str(export_path)

    assert main(["--data-dir", str(tmp_path / "b"), "import", str(export_path)]) == 0
    imported = json.loads(capsys.readouterr().out)["imported"]
    # Both data roots were seeded with the same sample routine names
    assert imported["routines_imported"] == 0
    assert imported["routines_skipped"] == 4

    assert main(["--data-dir", str(tmp_path / "a"), "rate", "missing", "good"]) == 1
    assert "No stored session" in json.loads(capsys.readouterr().out)["message"]
