# portbuild/modules/events.py
"""
Build event log and status compaction.

The log is a JSON-lines file; every state transition of a port is appended
as one record and never rewritten:

{"node": "devel/libfoo", "status": "running", "timestamp": "2025-09-19T12:34:56.123456Z", "attempt": 1}

Statuses: queued, running, built, failed, simulated.

The compacted status file is a projection of the log:

{
  "events": 12,
  "nodes": {
    "devel/libfoo": {
      "last": {"status": "built", "timestamp": "..."},
      "history": [{"status": "queued", "timestamp": "..."}, ...]
    }
  }
}

It is rewritten through a temporary file and os.replace(), so readers only
ever see a complete document. The log stays the source of truth.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from portbuild.modules import logger as _logger
from portbuild.modules.utils import now_iso

LOG = _logger.Logger("events")

QUEUED = "queued"
RUNNING = "running"
BUILT = "built"
FAILED = "failed"
SIMULATED = "simulated"

STATUSES = (QUEUED, RUNNING, BUILT, FAILED, SIMULATED)
TERMINAL = (BUILT, FAILED, SIMULATED)


@contextmanager
def _flocked(fh, mode):
    fcntl.flock(fh.fileno(), mode)
    try:
        yield fh
    finally:
        fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


class EventLog:
    def __init__(self, path: str):
        self.path = os.path.abspath(path)
        self._lock = threading.Lock()
        # events appended through this instance, in append order
        self.session: List[Dict[str, Any]] = []
        os.makedirs(os.path.dirname(self.path), exist_ok=True)

    def append(self, node: str, status: str, attempt: Optional[int] = None,
               detail: Optional[str] = None) -> Dict[str, Any]:
        if status not in STATUSES:
            raise ValueError(f"Unknown event status: {status!r}")
        event: Dict[str, Any] = {"node": node, "status": status, "timestamp": now_iso()}
        if attempt is not None:
            event["attempt"] = attempt
        if detail:
            event["detail"] = detail
        line = (json.dumps(event, ensure_ascii=False) + "\n").encode("utf-8")
        with self._lock:
            with open(self.path, "ab") as fh, _flocked(fh, fcntl.LOCK_EX):
                fh.write(line)
                fh.flush()
            self.session.append(event)
        LOG.debug(f"event {node} -> {status}")
        return event

    def read(self) -> List[Dict[str, Any]]:
        return list(self._iter_events())

    def events_for(self, node: str) -> List[Dict[str, Any]]:
        return [e for e in self._iter_events() if e.get("node") == node]

    def _iter_events(self) -> Iterator[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as fh, _flocked(fh, fcntl.LOCK_SH):
            lines = fh.readlines()
        for lineno, line in enumerate(lines, 1):
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                LOG.warning(f"{self.path}:{lineno}: skipping unreadable event")
                continue
            if not isinstance(event, dict) or "node" not in event or event.get("status") not in STATUSES:
                LOG.warning(f"{self.path}:{lineno}: skipping malformed event")
                continue
            yield event


class Compactor:
    """Derives per-port last status and history from an EventLog."""

    def __init__(self, log: EventLog, status_path: str):
        self.log = log
        self.status_path = os.path.abspath(status_path)
        self.lock_path = self.status_path + ".lock"

    @staticmethod
    def project(events: List[Dict[str, Any]]) -> Dict[str, Any]:
        nodes: Dict[str, Dict[str, Any]] = {}
        for e in events:
            entry = {k: v for k, v in e.items() if k != "node"}
            rec = nodes.setdefault(e["node"], {"last": None, "history": []})
            rec["history"].append(entry)
            rec["last"] = {"status": e["status"], "timestamp": e["timestamp"]}
        return {"events": len(events), "nodes": nodes}

    def compact(self) -> Dict[str, Any]:
        directory = os.path.dirname(self.status_path)
        os.makedirs(directory, exist_ok=True)
        with open(self.lock_path, "a") as lock_fh, _flocked(lock_fh, fcntl.LOCK_EX):
            status = self.project(self.log.read())
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=".status-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(status, fh, indent=2, sort_keys=True, ensure_ascii=False)
                    fh.write("\n")
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, self.status_path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        LOG.info(f"Compacted {status['events']} events for {len(status['nodes'])} ports into {self.status_path}")
        return status

    def load(self) -> Dict[str, Any]:
        if not os.path.exists(self.status_path):
            return {"events": 0, "nodes": {}}
        with open(self.status_path, "r", encoding="utf-8") as fh:
            return json.load(fh)
