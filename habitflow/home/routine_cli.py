from __future__ import annotations
import argparse, json, logging, sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import jsonschema

import data_config
from habitflow.engine.context.context_resolver import ContextSettings, Coordinate, SystemContextProvider
from habitflow.engine.core.routine_service import RoutineService
from habitflow.engine.routines.conditional_resolver import ConditionalResponseLog
from habitflow.engine.routines.models import Mood
from habitflow.logger.unified import UnifiedLogger
from habitflow.store.data_export import export_filename, export_to_file, import_from_file
from habitflow.store.session_store import SessionStore


def _build_service(data_dir: Optional[str]) -> RoutineService:
    root = Path(data_dir) if data_dir else data_config.DATA_ROOT
    settings_file = root / data_config.CONTEXT_SETTINGS_FILE.name
    settings = ContextSettings.load(settings_file)
    if not settings_file.exists():
        settings.timezone = data_config.TIMEZONE
    return RoutineService(
        store=SessionStore(root / data_config.SESSIONS_DIR.name),
        context_provider=SystemContextProvider(settings),
        event_logger=UnifiedLogger(data_dir=root / data_config.EVENTS_DIR.name),
        response_log=ConditionalResponseLog(root / data_config.RESPONSES_FILE.name),
    )


def _moment(args) -> Optional[datetime]:
    return datetime.fromisoformat(args.at) if args.at else None


def _location(args) -> Optional[Coordinate]:
    if args.lat is None or args.lon is None:
        return None
    return Coordinate(args.lat, args.lon)


def _parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="habitflow", description="Context-aware routine engine.")
    ap.add_argument("--data-dir", default=None, help="Override data root (defaults to HABITFLOW_HOME or ./data)")
    ap.add_argument("-v", "--verbose", action="store_true")
    sub = ap.add_subparsers(dest="command", required=True)
    for name, help_text in (("context", "Resolve the current context"), ("select", "Pick the best routine now")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--at", default=None, help="ISO timestamp to resolve instead of now")
        p.add_argument("--lat", type=float, default=None)
        p.add_argument("--lon", type=float, default=None)
    sub.add_parser("templates", help="List routine templates")
    h = sub.add_parser("history", help="List stored sessions")
    h.add_argument("--routine-id", default=None)
    r = sub.add_parser("rate", help="Record a mood rating for a stored session")
    r.add_argument("session_id")
    r.add_argument("mood", choices=[m.value for m in Mood])
    r.add_argument("--notes", default=None)
    e = sub.add_parser("export", help="Write routines and history to a JSON file")
    e.add_argument("--output", default=None, help="Destination file (defaults to a timestamped name)")
    i = sub.add_parser("import", help="Merge routines and history from an export file")
    i.add_argument("path")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    try:
        service = _build_service(args.data_dir)

        if args.command == "context":
            context = service.current_context(_moment(args), _location(args))
            return _ok({"context": context.to_dict()})

        if args.command == "select":
            selection = service.smart_template(_moment(args), _location(args))
            return _ok({"selection": selection.to_dict()})

        if args.command == "templates":
            return _ok({"templates": [
                {"id": t.id, "name": t.name, "is_default": t.is_default,
                 "estimated_minutes": round(t.estimated_duration / 60, 1),
                 "habits": len(t.active_habits()),
                 "context_rule": t.context_rule.to_dict() if t.context_rule else None}
                for t in service.templates
            ]})

        if args.command == "history":
            return _ok({"sessions": [s.to_dict() for s in service.history(args.routine_id)]})

        if args.command == "rate":
            result = service.add_mood_rating(args.session_id, args.mood, notes=args.notes)
            if not result.ok:
                return _err(result.message)
            return _ok({"rating": result.snapshot.to_dict()})

        if args.command == "export":
            path = export_to_file(service, args.output or export_filename(service.clock()))
            return _ok({"path": str(path)})

        if args.command == "import":
            return _ok({"imported": import_from_file(service, args.path).to_dict()})
    except jsonschema.exceptions.ValidationError as e:
        return _err(f"Stored data is malformed: {e.message}")
    except (ValueError, OSError) as e:
        return _err(str(e))
    return _err(f"Unknown command: {args.command}")


def _ok(payload) -> int:
    print(json.dumps({"status": "ok", **payload}, indent=2)); return 0

def _err(msg) -> int:
    print(json.dumps({"status": "error", "message": msg}, indent=2)); return 1


if __name__ == "__main__":
    sys.exit(main())
