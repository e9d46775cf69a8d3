"""
HabitFlow Data Directory Configuration
======================================

Centralizes data paths and environment settings so the engine, the CLI and
the tests agree on where sessions, templates and event logs live.
Values come from the environment (optionally a .env file):

    HABITFLOW_HOME   data root (default ./data)
    HABITFLOW_TZ     timezone used for time-slot resolution (default UTC)
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Base directories
DATA_ROOT = Path(os.getenv("HABITFLOW_HOME", "data"))
TIMEZONE = os.getenv("HABITFLOW_TZ", "UTC")

SESSIONS_DIR = DATA_ROOT / "sessions"               # sessions.jsonl + templates.json
EVENTS_DIR = DATA_ROOT / "events"                   # events.jsonl
SYNC_DIR = DATA_ROOT / "sync"                       # offline delivery queue

CONTEXT_SETTINGS_FILE = DATA_ROOT / "context_settings.json"
RESPONSES_FILE = DATA_ROOT / "conditional_responses.jsonl"
OFFLINE_QUEUE_FILE = SYNC_DIR / "outbox.jsonl"


def get_config_dict():
    """
    Returns a dictionary of all configured paths.
    Useful for passing to classes that need multiple directories.
    """
    return {
        'data_root': str(DATA_ROOT),
        'timezone': TIMEZONE,
        'sessions_dir': str(SESSIONS_DIR),
        'events_dir': str(EVENTS_DIR),
        'sync_dir': str(SYNC_DIR),
        'context_settings': str(CONTEXT_SETTINGS_FILE),
        'responses_file': str(RESPONSES_FILE),
        'offline_queue': str(OFFLINE_QUEUE_FILE),
    }


def create_missing_directories():
    """
    Creates only the directories that don't exist yet.
    Returns (created, already_existed) lists of paths.
    """
    created = []
    already_existed = []
    for directory in (DATA_ROOT, SESSIONS_DIR, EVENTS_DIR, SYNC_DIR):
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            created.append(str(directory))
        else:
            already_existed.append(str(directory))
    return created, already_existed


if __name__ == "__main__":
    print("HabitFlow Data Configuration")
    print("=" * 60)
    created, existed = create_missing_directories()
    for path in created:
        print(f"  created {path}")
    print(f"  Data root: {DATA_ROOT}")
    print(f"  Timezone: {TIMEZONE}")
