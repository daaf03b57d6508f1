# portbuild/modules/build.py
"""
Build orchestrator.

Pipeline for one root port:
 - resolve the transitive dependency graph (metadata reader)
 - reject circular dependencies before anything is scheduled
 - compute the build order (dependencies first)
 - compare installed versions with captured constraints and decide which
   ports need a build; with automatic upgrades disabled an outdated port
   is fatal
 - run the scheduler (bounded concurrency, resource gate, retries)
 - compact the event log into the status file
 - return a BuildReport (optionally written as JSON)
"""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from portbuild.modules import logger as _logger
from portbuild.modules.config import BuildSettings
from portbuild.modules.errors import (BuildFailedError, CycleError, SchedulerError,
                                      UnsatisfiableConstraintError)
from portbuild.modules.events import Compactor, EventLog
from portbuild.modules.graph import DependencyGraph
from portbuild.modules.metadata import MetadataReader
from portbuild.modules.registry import InstalledRegistry
from portbuild.modules.resolver import DependencyResolver
from portbuild.modules.resources import ResourceGate, probe_resources
from portbuild.modules.scheduler import Scheduler
from portbuild.modules.worker import Worker

LOG = _logger.Logger("build")

InstalledQuery = Callable[[str], Tuple[bool, Optional[str]]]

OK = "ok"
FAILED = "failed"
CYCLE = "cycle"
UNSATISFIABLE = "unsatisfiable"


# ---------------------------
# Default build callback
# ---------------------------
class CommandBuilder:
    """
    Runs `command` for a port, with {node} and {portdir} substituted.
    Success is exit status 0; output is kept under `log_dir` when given.
    """

    def __init__(self, command: str, ports_dir: str, log_dir: Optional[str] = None):
        self.command = command
        self.ports_dir = ports_dir
        self.log_dir = log_dir

    def argv(self, node: str) -> List[str]:
        portdir = os.path.join(self.ports_dir, node)
        return [part.format(node=node, portdir=portdir) for part in shlex.split(self.command)]

    def __call__(self, node: str) -> bool:
        argv = self.argv(node)
        LOG.info(f"[{node}] $ {' '.join(argv)}")
        proc = subprocess.run(argv, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
        if self.log_dir:
            os.makedirs(self.log_dir, exist_ok=True)
            with open(os.path.join(self.log_dir, node.replace("/", "_") + ".log"), "a", encoding="utf-8") as fh:
                fh.write(proc.stdout or "")
        if proc.returncode != 0:
            tail = "\n".join((proc.stdout or "").splitlines()[-10:])
            LOG.debug(f"[{node}] exit {proc.returncode}, last output:\n{tail}")
        return proc.returncode == 0


# ---------------------------
# Planning
# ---------------------------
@dataclass
class BuildPlan:
    order: List[str]
    to_build: List[str] = field(default_factory=list)
    satisfied: List[str] = field(default_factory=list)
    constraints: Dict[str, str] = field(default_factory=dict)
    unsatisfiable: List[UnsatisfiableConstraintError] = field(default_factory=list)


def plan_builds(graph: DependencyGraph, order: List[str], installed: InstalledQuery,
                no_upgrade: bool = False) -> BuildPlan:
    plan = BuildPlan(order=list(order))
    for node in order:
        constraint = graph.constraint_of(node)
        if constraint is not None:
            plan.constraints[node] = constraint.describe()
        is_installed, version = installed(node)
        if not is_installed:
            plan.to_build.append(node)
            continue
        if constraint is None or constraint.is_satisfied_by(version):
            plan.satisfied.append(node)
            continue
        if no_upgrade:
            plan.unsatisfiable.append(UnsatisfiableConstraintError(node, version, constraint.describe()))
            continue
        LOG.info(f"{node} {version} does not satisfy {constraint.describe()}; scheduling rebuild")
        plan.to_build.append(node)
    return plan


# ---------------------------
# Report
# ---------------------------
@dataclass
class BuildReport:
    root: str
    status: str
    dry_run: bool = False
    order: List[str] = field(default_factory=list)
    to_build: List[str] = field(default_factory=list)
    satisfied: List[str] = field(default_factory=list)
    built: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    not_started: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    cycle: List[str] = field(default_factory=list)
    unsatisfied: List[Dict[str, Any]] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)
    started_at: str = ""
    finished_at: str = ""

    @property
    def ok(self) -> bool:
        return self.status == OK

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------
# Manager
# ---------------------------
class BuildManager:
    def __init__(self,
                 settings: Optional[BuildSettings] = None,
                 metadata: Optional[Callable] = None,
                 installed: Optional[InstalledQuery] = None,
                 build: Optional[Callable[[str], object]] = None,
                 probe: Optional[Callable] = None,
                 artifact_probe: Optional[Callable[[str], bool]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings or BuildSettings()
        s = self.settings
        self.metadata = metadata or MetadataReader(s.ports_dir)
        self.registry = None
        if installed is None:
            self.registry = InstalledRegistry(s.installed_dir, s.packages_dir)
            installed = self.registry.query
            if artifact_probe is None:
                artifact_probe = self._artifact_present
        self.installed = installed
        self.build = build or CommandBuilder(s.build_command, s.ports_dir)
        self.probe = probe or probe_resources
        self.artifact_probe = artifact_probe
        self.sleep = sleep

    # ---------------------------
    # Graph helpers
    # ---------------------------
    def resolve(self, root: str) -> DependencyGraph:
        resolver = DependencyResolver(self.metadata, include_test=self.settings.include_test)
        return resolver.build_graph(root)

    def build_order(self, root: str) -> Tuple[DependencyGraph, List[str]]:
        """Graph and build order for `root`; raises CycleError on circular dependencies."""
        graph = self.resolve(root)
        cycle = graph.detect_cycles()
        if cycle:
            raise CycleError(cycle)
        return graph, graph.topo_sort()

    def plan(self, root: str) -> Tuple[DependencyGraph, BuildPlan]:
        graph, order = self.build_order(root)
        return graph, plan_builds(graph, order, self.installed, no_upgrade=self.settings.no_upgrade)

    # ---------------------------
    # Execution
    # ---------------------------
    def _descriptor_version(self, node: str) -> Optional[str]:
        version_of = getattr(self.metadata, "version", None)
        return version_of(node) if version_of else None

    def _artifact_present(self, node: str) -> bool:
        """A package counts only when it matches the version the descriptor declares."""
        return self.registry.has_artifact(node, self._descriptor_version(node))

    def _register_built(self, built: List[str]):
        if self.registry is None or self.settings.dry_run:
            return
        for node in built:
            self.registry.register(node, self._descriptor_version(node) or "unknown")

    def run(self, root: str, raise_on_error: bool = False) -> BuildReport:
        s = self.settings
        report = BuildReport(root=root, status=OK, dry_run=s.dry_run, started_at=_now())
        events = EventLog(s.event_log)
        try:
            graph, plan = self.plan(root)
            report.order = plan.order
            report.to_build = plan.to_build
            report.satisfied = plan.satisfied
            if plan.unsatisfiable:
                report.status = UNSATISFIABLE
                report.unsatisfied = [
                    {"node": e.node, "installed": e.installed, "constraint": e.constraint}
                    for e in plan.unsatisfiable
                ]
                for e in plan.unsatisfiable:
                    LOG.error(str(e))
                if raise_on_error:
                    raise plan.unsatisfiable[0]
                return report

            LOG.info(f"Build order for {root}: {' '.join(plan.order)}")
            worker = Worker(self.build, events,
                            max_retries=s.max_retries, backoff_base=s.backoff_base,
                            artifact_probe=self.artifact_probe, dry_run=s.dry_run, sleep=self.sleep)
            gate = ResourceGate(self.probe, s.memory_floor_mb, s.load_ceiling_per_cpu)
            scheduler = Scheduler(graph, worker, events,
                                  max_concurrency=s.max_concurrency, gate=gate,
                                  poll_interval=s.poll_interval, satisfied=plan.satisfied,
                                  sleep=self.sleep)
            result = scheduler.run()
            report.built = result.built
            report.failed = result.failed
            report.errors = result.errors
            report.not_started = result.not_started
            if not result.ok:
                report.status = FAILED
                if raise_on_error:
                    raise BuildFailedError(result.failed)
            else:
                self._register_built(result.built)
        except CycleError as e:
            LOG.error(str(e))
            report.status = CYCLE
            report.cycle = e.path
            if raise_on_error:
                raise
        except SchedulerError as e:
            LOG.error(f"Internal scheduler error: {e}")
            report.status = FAILED
            report.errors["<scheduler>"] = str(e)
            if raise_on_error:
                raise
        finally:
            report.events = list(events.session)
            report.finished_at = _now()
            if events.session:
                Compactor(events, s.status_file).compact()
        if report.ok:
            LOG.success(f"{root}: {len(report.built)} built, {len(report.satisfied)} already satisfied")
        return report

    def report_json(self, report: BuildReport, out: Optional[str] = None) -> str:
        out = out or os.path.join(
            self.settings.report_dir or ".",
            f"build-report-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}.json",
        )
        os.makedirs(os.path.dirname(os.path.abspath(out)), exist_ok=True)
        with open(out, "w", encoding="utf-8") as fh:
            json.dump(report.to_dict(), fh, indent=2, ensure_ascii=False)
        LOG.info(f"Report written to {out}")
        return out
