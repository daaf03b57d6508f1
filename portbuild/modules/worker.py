# portbuild/modules/worker.py
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from portbuild.modules import logger as _logger
from portbuild.modules.events import BUILT, FAILED, RUNNING, SIMULATED, EventLog

LOG = _logger.Logger("worker")

BuildCallback = Callable[[str], object]
ArtifactProbe = Callable[[str], bool]


@dataclass
class Task:
    """One port's build attempts: attempt counter, retry budget and backoff."""
    node: str
    max_retries: int
    backoff_base: float
    attempt: int = 0

    def backoff(self) -> float:
        """Delay before the next attempt: base * 2^(attempt-1)."""
        return self.backoff_base * (2 ** (self.attempt - 1))


@dataclass
class WorkerResult:
    node: str
    ok: bool
    attempts: int = 0
    error: Optional[str] = None
    cached: bool = False
    simulated: bool = False


class Worker:
    """
    Runs the build callback for a single port.

    The callback receives the port id and reports success with a truthy
    return value; a falsy return or an exception is a failed attempt. Failed
    attempts are retried `max_retries` times with exponential backoff. A port
    whose artifact is already present is reported built without calling the
    callback. In dry-run mode the outcome is recorded as `simulated`.
    """

    def __init__(self, build: BuildCallback, events: EventLog,
                 max_retries: int = 2, backoff_base: float = 2.0,
                 artifact_probe: Optional[ArtifactProbe] = None,
                 dry_run: bool = False, sleep: Callable[[float], None] = time.sleep):
        self.build = build
        self.events = events
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.artifact_probe = artifact_probe
        self.dry_run = dry_run
        self.sleep = sleep

    def _attempt(self, task: Task) -> Optional[str]:
        """Run one attempt; returns None on success or the failure reason."""
        try:
            ok = self.build(task.node)
        except Exception as e:
            return f"{type(e).__name__}: {e}"
        return None if ok else "build callback reported failure"

    def run(self, node: str) -> WorkerResult:
        if self.dry_run:
            LOG.info(f"[DRY-RUN] would build {node}")
            self.events.append(node, SIMULATED)
            return WorkerResult(node, True, simulated=True)

        if self.artifact_probe and self.artifact_probe(node):
            LOG.info(f"{node}: artifact present, skipping build")
            self.events.append(node, BUILT, detail="artifact present")
            return WorkerResult(node, True, cached=True)

        task = Task(node, self.max_retries, self.backoff_base)
        error = None
        while True:
            task.attempt += 1
            self.events.append(node, RUNNING, attempt=task.attempt)
            error = self._attempt(task)
            if error is None:
                self.events.append(node, BUILT, attempt=task.attempt)
                LOG.success(f"Built {node} (attempt {task.attempt})")
                return WorkerResult(node, True, attempts=task.attempt)
            LOG.warning(f"{node}: attempt {task.attempt}/{self.max_retries + 1} failed: {error}")
            if task.attempt > self.max_retries:
                break
            delay = task.backoff()
            LOG.info(f"Retrying {node} in {delay:.1f}s")
            self.sleep(delay)

        self.events.append(node, FAILED, attempt=task.attempt, detail=error)
        LOG.error(f"Giving up on {node} after {task.attempt} attempts")
        return WorkerResult(node, False, attempts=task.attempt, error=error)

    __call__ = run
