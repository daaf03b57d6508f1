# portbuild/modules/scheduler.py
"""
Resource-aware parallel build scheduler.

A single control loop owns the ready queue and the per-port counters of
unbuilt dependencies; workers run in a thread pool and report back only
through their futures.

    ready queue --(gate ok)--> pool.submit(worker, port) --> in flight
         ^                                                       |
         |            wait(FIRST_COMPLETED)                      |
         +--- dependents whose counter drops to 0 <--- built ----+
                                                 <--- failed: stop admitting,
                                                      drain in-flight workers

Before each dispatch the ResourceGate is asked whether one more worker fits
(memory floor per worker, load average per CPU). When it says no, the loop
stops admitting and waits for a completion with the poll interval as
timeout, or sleeps one interval when nothing is running.
"""

from __future__ import annotations

import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional

from portbuild.modules import logger as _logger
from portbuild.modules.errors import SchedulerError
from portbuild.modules.events import FAILED, QUEUED, EventLog
from portbuild.modules.graph import DependencyGraph
from portbuild.modules.resources import ResourceGate
from portbuild.modules.worker import WorkerResult

LOG = _logger.Logger("scheduler")


@dataclass
class SchedulerResult:
    ok: bool
    built: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    dispatched: List[str] = field(default_factory=list)
    not_started: List[str] = field(default_factory=list)


class Scheduler:
    def __init__(self,
                 graph: DependencyGraph,
                 worker: Callable[[str], WorkerResult],
                 events: EventLog,
                 max_concurrency: int = 1,
                 gate: Optional[ResourceGate] = None,
                 poll_interval: float = 2.0,
                 satisfied: Iterable[str] = (),
                 sleep: Callable[[float], None] = time.sleep):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.graph = graph
        self.worker = worker
        self.events = events
        self.max_concurrency = max_concurrency
        self.gate = gate
        self.poll_interval = poll_interval
        self.satisfied = set(satisfied)
        self.sleep = sleep

        unknown = self.satisfied - set(graph.nodes)
        if unknown:
            raise SchedulerError(f"Pre-satisfied ports not in graph: {sorted(unknown)}")

        self.order = graph.topo_sort()
        self._rank = {n: i for i, n in enumerate(self.order)}
        self._dependents: Dict[str, List[str]] = {n: [] for n in self.order}
        for ident, node in graph.nodes.items():
            for dep in node.adjacency:
                self._dependents[dep].append(ident)
        for deps in self._dependents.values():
            deps.sort(key=self._rank.__getitem__)

        # working copy, consumed as dependencies complete
        self.pending = graph.dependency_counts()
        self.ready: Deque[str] = deque()
        self.in_flight: Dict[Future, str] = {}

    # ---------------------------
    # Bookkeeping (control loop only)
    # ---------------------------
    def _enqueue(self, node: str):
        self.ready.append(node)
        self.events.append(node, QUEUED)

    def _release_dependents(self, node: str):
        """
        Count `node` as done for its dependents. A pre-satisfied dependent
        whose own dependencies are all done is done too, and releases its
        dependents in turn.
        """
        work = [node]
        while work:
            done = work.pop(0)
            for dependent in self._dependents[done]:
                self.pending[dependent] -= 1
                if self.pending[dependent] < 0:
                    raise SchedulerError(f"Negative dependency counter for {dependent}")
                if self.pending[dependent] == 0:
                    if dependent in self.satisfied:
                        work.append(dependent)
                    else:
                        self._enqueue(dependent)

    def _seed(self):
        for node in [n for n in self.order if self.pending[n] == 0]:
            if node in self.satisfied:
                self._release_dependents(node)
            else:
                self._enqueue(node)

    def _admit(self, pool: ThreadPoolExecutor, result: SchedulerResult) -> bool:
        """Dispatch as many ready ports as allowed. Returns False when the gate closed."""
        while self.ready and len(self.in_flight) < self.max_concurrency:
            if self.gate is not None and not self.gate.admit(len(self.in_flight) + 1):
                return False
            node = self.ready.popleft()
            result.dispatched.append(node)
            LOG.info(f"Dispatching {node} ({len(self.in_flight) + 1}/{self.max_concurrency} in flight)")
            self.in_flight[pool.submit(self.worker, node)] = node
        return True

    def _complete(self, fut: Future, result: SchedulerResult):
        node = self.in_flight.pop(fut)
        try:
            outcome = fut.result()
        except Exception as e:
            LOG.error(f"Worker for {node} crashed: {e}")
            self.events.append(node, FAILED, detail=f"worker crashed: {e}")
            outcome = WorkerResult(node, False, error=str(e))
        if outcome.ok:
            result.built.append(node)
            self._release_dependents(node)
        else:
            result.failed.append(node)
            result.errors[node] = outcome.error or "unknown error"
            LOG.error(f"{node} failed; no further ports will be dispatched")

    # ---------------------------
    # Main loop
    # ---------------------------
    def run(self) -> SchedulerResult:
        result = SchedulerResult(ok=False)
        to_build = [n for n in self.order if n not in self.satisfied]
        LOG.info(f"Scheduling {len(to_build)} ports ({len(self.satisfied)} already satisfied), "
                 f"max concurrency {self.max_concurrency}")
        self._seed()

        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="portbuild") as pool:
            while True:
                gate_open = True
                if not result.failed:
                    gate_open = self._admit(pool, result)
                if not self.in_flight:
                    if result.failed or not self.ready:
                        break
                    LOG.debug(f"Gate closed with nothing running; retrying in {self.poll_interval}s")
                    self.sleep(self.poll_interval)
                    continue
                timeout = None if gate_open or result.failed else self.poll_interval
                done, _ = wait(list(self.in_flight), timeout=timeout, return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: self._rank[self.in_flight[f]]):
                    self._complete(fut, result)

        finished = set(result.built) | set(result.failed)
        result.not_started = [n for n in to_build if n not in finished]
        if result.failed:
            return result
        if result.not_started:
            raise SchedulerError(
                f"Scheduler stalled with unbuilt ports and nothing runnable: {result.not_started}"
            )
        result.ok = True
        LOG.success(f"Built {len(result.built)} ports")
        return result
