# portbuild/modules/resources.py
from __future__ import annotations

from typing import Callable, NamedTuple

import psutil

from portbuild.modules import logger as _logger
from portbuild.modules.errors import ProbeError

LOG = _logger.Logger("resources")

MB = 1024 * 1024


class ResourceSnapshot(NamedTuple):
    free_memory_mb: float
    load_avg_1min: float
    cpu_count: int


def probe_resources() -> ResourceSnapshot:
    """Sample available memory, 1-minute load average and CPU count."""
    try:
        mem = psutil.virtual_memory()
        load1, _, _ = psutil.getloadavg()
        cpus = psutil.cpu_count(logical=True) or 1
    except (OSError, AttributeError, RuntimeError) as e:
        raise ProbeError(f"Resource probe failed: {e}") from e
    return ResourceSnapshot(mem.available / MB, float(load1), int(cpus))


class ResourceGate:
    """
    Admission check run before dispatching one more worker.

    Admitting `count` concurrent workers requires
      free memory >= memory_floor_mb * count
      load_avg_1min / cpu_count <= load_ceiling_per_cpu
    A probe that raises keeps the gate closed until it succeeds again.
    """

    def __init__(self, probe: Callable[[], ResourceSnapshot] = probe_resources,
                 memory_floor_mb: float = 512, load_ceiling_per_cpu: float = 1.5):
        self.probe = probe
        self.memory_floor_mb = memory_floor_mb
        self.load_ceiling_per_cpu = load_ceiling_per_cpu
        self._probe_down = False
        self.last_snapshot = None

    def admit(self, count: int) -> bool:
        try:
            snap = ResourceSnapshot(*self.probe())
        except Exception as e:
            if not self._probe_down:
                LOG.warning(f"Resource probe unavailable, holding admissions: {e}")
            self._probe_down = True
            return False
        if self._probe_down:
            LOG.info("Resource probe available again")
            self._probe_down = False
        self.last_snapshot = snap

        needed = self.memory_floor_mb * count
        if snap.free_memory_mb < needed:
            LOG.debug(f"Gate closed: {snap.free_memory_mb:.0f} MB free, {needed:.0f} MB needed for {count} workers")
            return False
        per_cpu = snap.load_avg_1min / max(snap.cpu_count, 1)
        if per_cpu > self.load_ceiling_per_cpu:
            LOG.debug(f"Gate closed: load {per_cpu:.2f}/cpu above ceiling {self.load_ceiling_per_cpu}")
            return False
        return True
