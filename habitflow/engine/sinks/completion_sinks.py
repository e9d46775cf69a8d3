from __future__ import annotations
import json, logging, os, threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from habitflow.engine.routines.models import RoutineSession

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class Transport(Protocol):
    """Link to a paired device."""
    def is_connected(self) -> bool: ...
    def send(self, payload: Dict[str, Any]) -> None: ...


class OfflineQueueSink:
    """
    Finished session -> JSONL outbox -> paired device when reachable.
    Items stay queued until the transport accepts them; session id de-duplicates.
    """
    def __init__(self, transport: Transport, queue_file: Path | str, event_logger: Optional[Any] = None):
        self.transport = transport; self.queue_file = Path(queue_file); self.event_logger = event_logger
        self.queue_file.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.RLock()

    # ---- queue file ----
    def _read(self) -> List[Dict[str, Any]]:
        if not self.queue_file.exists(): return []
        items = []
        for line in self.queue_file.read_text(encoding="utf-8").splitlines():
            if not line.strip(): continue
            try: items.append(json.loads(line))
            except json.JSONDecodeError: logger.warning("Dropping corrupted queue line in %s", self.queue_file)
        return items

    def _write(self, items: List[Dict[str, Any]]):
        tmp = self.queue_file.with_suffix(self.queue_file.suffix + ".tmp")
        tmp.write_text("".join(json.dumps(it, ensure_ascii=False) + "\n" for it in items), encoding="utf-8")
        os.replace(str(tmp), str(self.queue_file))

    def pending(self) -> List[Dict[str, Any]]:
        with self.lock: return self._read()

    @property
    def pending_count(self) -> int:
        return len(self.pending())

    # ---- sink ----
    def deliver(self, session: RoutineSession) -> None:
        payload = session.to_dict()
        with self.lock:
            items = [it for it in self._read() if it.get("session", {}).get("id") != session.id]
            items.append({"session": payload, "queued_at_utc": datetime.now(timezone.utc).isoformat(), "attempts": 0})
            self._write(items)
        self.flush()

    def on_connectivity_changed(self, connected: bool) -> int:
        return self.flush() if connected else 0

    def flush(self) -> int:
        """Send queued sessions while the transport is connected. Returns how many were sent."""
        with self.lock:
            items = self._read()
            if not items or not self.transport.is_connected(): return 0
            sent = 0; remaining = []
            for it in items:
                if remaining:  # keep order once one send has failed
                    remaining.append(it); continue
                try:
                    self.transport.send(it["session"]); sent += 1
                except Exception as e:
                    logger.warning("Offline queue send failed for session %s: %s", it["session"].get("id"), e)
                    it["attempts"] = int(it.get("attempts", 0)) + 1; it["last_error"] = str(e)
                    remaining.append(it)
            self._write(remaining)
        if sent and self.event_logger is not None:
            self.event_logger.log({"category": "sync", "value": sent, "metadata": {"pending": len(remaining)}})
        return sent
