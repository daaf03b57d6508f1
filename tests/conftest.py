"""Shared fixtures: in-memory ports tree, installed state and fast settings."""

from __future__ import annotations

import threading

import pytest

from portbuild.modules.config import BuildSettings
from portbuild.modules.events import EventLog
from portbuild.modules.metadata import DependencySet


class FakePorts:
    """Metadata source backed by a dict: port -> list of run-dependency tokens."""

    def __init__(self, deps=None, build=None, test=None, versions=None):
        self.run = dict(deps or {})
        self.build = dict(build or {})
        self.test = dict(test or {})
        self.versions = dict(versions or {})
        self.calls = []

    def __call__(self, port):
        self.calls.append(port)
        return DependencySet(
            list(self.build.get(port, [])),
            list(self.run.get(port, [])),
            list(self.test.get(port, [])),
        )

    def version(self, port):
        return self.versions.get(port)


class FakeInstalled:
    def __init__(self, versions=None):
        self.versions = dict(versions or {})

    def __call__(self, port):
        if port in self.versions:
            return True, self.versions[port]
        return False, None


class RecordingBuild:
    """Build callback that records start/finish order and tracks concurrency."""

    def __init__(self, fail=(), flaky=None, hold=None):
        self.fail = set(fail)
        self.flaky = dict(flaky or {})
        self.hold = hold or {}
        self.lock = threading.Lock()
        self.started = []
        self.finished = []
        self.running = 0
        self.max_running = 0

    def __call__(self, port):
        with self.lock:
            self.started.append(port)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            event = self.hold.get(port)
            if event is not None:
                event.wait(5)
            if port in self.fail:
                return False
            if self.flaky.get(port, 0) > 0:
                self.flaky[port] -= 1
                raise RuntimeError(f"transient failure in {port}")
            return True
        finally:
            with self.lock:
                self.running -= 1
                self.finished.append(port)


def plenty():
    return (64_000.0, 0.0, 8)


@pytest.fixture
def settings(tmp_path):
    return BuildSettings(
        ports_dir=str(tmp_path / "ports"),
        installed_dir=str(tmp_path / "db" / "installed"),
        packages_dir=str(tmp_path / "packages"),
        event_log=str(tmp_path / "db" / "events.jsonl"),
        status_file=str(tmp_path / "db" / "status.json"),
        report_dir=str(tmp_path / "reports"),
        max_concurrency=2,
        memory_floor_mb=256,
        poll_interval=0.01,
        max_retries=2,
        backoff_base=0.0,
    )


@pytest.fixture
def event_log(tmp_path):
    return EventLog(str(tmp_path / "events.jsonl"))


@pytest.fixture
def no_sleep():
    delays = []
    return delays.append, delays


def write_port(ports_dir, port, makefile=None, recipe=None):
    d = ports_dir / port
    d.mkdir(parents=True, exist_ok=True)
    if makefile is not None:
        (d / "Makefile").write_text(makefile)
    if recipe is not None:
        (d / "recipe.yaml").write_text(recipe)
    return d
