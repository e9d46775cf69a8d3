import json
from datetime import datetime, timezone

import pytest

jsonschema = pytest.importorskip("jsonschema")

from conftest import RecordingSink
from habitflow.engine.errors import ValidationError
from habitflow.engine.routines.models import Mood, MoodRating, RoutineSession, SessionState
from habitflow.engine.routines.session_machine import RoutineSessionMachine
from habitflow.engine.sinks.completion_sinks import OfflineQueueSink
from habitflow.logger.unified import UnifiedLogger
from habitflow.store.session_store import SessionStore


class FakeTransport:
    def __init__(self, connected=False, fail=False):
        self.connected = connected
        self.fail = fail
        self.sent = []

    def is_connected(self):
        return self.connected

    def send(self, payload):
        if self.fail:
            raise ConnectionError("peer unreachable")
        self.sent.append(payload["id"])


def _finished_session(clock, template):
    machine = RoutineSessionMachine(clock=clock)
    machine.start(template)
    for habit in template.habits:
        if habit.is_optional:
            machine.skip(habit.id)
        else:
            machine.complete(habit.id)
    machine.finish()
    return machine.session


def test_store_saves_and_reloads_sessions(tmp_path, clock, three_task_template):
    session = _finished_session(clock, three_task_template)
    store = SessionStore(tmp_path)
    store.deliver(session)
    store.deliver(session)  # duplicate delivery is harmless

    reopened = SessionStore(tmp_path)
    assert len(reopened) == 1
    assert reopened.get(session.id) == session
    assert reopened.all(routine_id=three_task_template.id) == [session]
    assert not (tmp_path / "sessions.jsonl.bak").exists()


def test_store_ignores_truncated_trailing_line(tmp_path, clock, three_task_template):
    session = _finished_session(clock, three_task_template)
    SessionStore(tmp_path).save(session)
    with (tmp_path / "sessions.jsonl").open("a", encoding="utf-8") as f:
        f.write('{"id": "partial", "routine')
    assert len(SessionStore(tmp_path)) == 1


def test_templates_persist_and_touch(tmp_path, three_task_template):
    store = SessionStore(tmp_path)
    store.save_templates([three_task_template])
    when = datetime(2025, 3, 10, 7, 30, tzinfo=timezone.utc)
    touched = store.touch_template(three_task_template.id, when)
    assert touched.last_used_at == when

    [loaded] = store.load_templates()
    assert loaded.last_used_at == when
    assert [h.name for h in loaded.habits] == ["Water", "Stretch", "Journal"]
    assert store.touch_template("missing", when) is None


def test_corrupt_templates_file_raises(tmp_path):
    (tmp_path / "templates.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(ValidationError):
        SessionStore(tmp_path).load_templates()


def test_mood_ratings_are_kept_per_session(tmp_path, clock):
    store = SessionStore(tmp_path)
    store.save_mood_rating(MoodRating("s1", Mood.BAD, recorded_at=clock()))
    store.save_mood_rating(MoodRating("s1", Mood.GOOD, recorded_at=clock.tick(60), notes="better"))
    store.save_mood_rating(MoodRating("s2", Mood.EXCELLENT, recorded_at=clock.tick(60)))

    reopened = SessionStore(tmp_path)
    rating = reopened.mood_rating_for("s1")
    assert rating.mood is Mood.GOOD
    assert rating.notes == "better"
    assert [m.session_id for m in reopened.mood_ratings()] == ["s1", "s2"]
    assert reopened.mood_rating_for("missing") is None
    assert len((tmp_path / "mood_ratings.jsonl").read_text(encoding="utf-8").splitlines()) == 2


def test_mood_scale():
    assert [m.score for m in Mood] == [1, 2, 3, 4, 5]
    assert Mood.BAD.label == "Tired"
    with pytest.raises(ValidationError):
        MoodRating.from_dict({"session_id": "s1", "mood": "ecstatic"})


def test_session_dict_is_schema_checked(clock, three_task_template):
    data = _finished_session(clock, three_task_template).to_dict()
    data["state"] = "paused"
    with pytest.raises(jsonschema.exceptions.ValidationError):
        RoutineSession.from_dict(data)

    data["state"] = SessionState.CANCELLED.value
    data["is_completed"] = True
    with pytest.raises(ValidationError):
        RoutineSession.from_dict(data)


def test_offline_queue_holds_until_connected(tmp_path, clock, three_task_template):
    transport = FakeTransport(connected=False)
    sink = OfflineQueueSink(transport, tmp_path / "outbox.jsonl")
    session = _finished_session(clock, three_task_template)

    sink.deliver(session)
    sink.deliver(session)
    assert sink.pending_count == 1
    assert transport.sent == []

    transport.connected = True
    assert sink.on_connectivity_changed(True) == 1
    assert transport.sent == [session.id]
    assert sink.pending_count == 0


def test_offline_queue_keeps_items_when_send_fails(tmp_path, clock, three_task_template):
    transport = FakeTransport(connected=True, fail=True)
    sink = OfflineQueueSink(transport, tmp_path / "outbox.jsonl")
    sink.deliver(_finished_session(clock, three_task_template))
    [item] = sink.pending()
    assert item["attempts"] == 1
    assert "peer unreachable" in item["last_error"]

    transport.fail = False
    assert sink.flush() == 1
    assert sink.pending_count == 0


def test_sync_events_logged(tmp_path, clock, three_task_template):
    events = UnifiedLogger(data_dir=tmp_path)
    sink = OfflineQueueSink(FakeTransport(connected=True), tmp_path / "outbox.jsonl", event_logger=events)
    sink.deliver(_finished_session(clock, three_task_template))
    [event] = events.read_events("sync")
    assert event["value"] == 1


def test_machine_delivers_to_store_and_queue(tmp_path, clock, three_task_template):
    store = SessionStore(tmp_path / "sessions")
    queue = OfflineQueueSink(FakeTransport(), tmp_path / "outbox.jsonl")
    recorder = RecordingSink()
    machine = RoutineSessionMachine(sinks=[store, queue, recorder], clock=clock)
    machine.start(three_task_template)
    for habit in three_task_template.habits:
        machine.complete(habit.id)
    assert machine.finish().ok
    assert store.get(machine.session.id).is_completed
    queued = json.loads((tmp_path / "outbox.jsonl").read_text(encoding="utf-8").splitlines()[0])
    assert queued["session"]["id"] == machine.session.id
    assert recorder.delivered == [machine.session.id]


def test_unified_logger_rejects_unknown_category(tmp_path):
    events = UnifiedLogger(data_dir=tmp_path)
    with pytest.raises(jsonschema.exceptions.ValidationError):
        events.log({"category": "nutrition", "value": 1})
    stored = events.log({"category": "context", "value": "morning", "timestamp": "2025-03-10T08:00:00+00:00"})
    assert stored["source"] == "engine"
    summary = events.get_daily_summary("2025-03-10")
    assert summary == {"context": {"count": 1, "values": {"morning": 1}}}
