# portbuild/modules/errors.py
from __future__ import annotations

from typing import List, Optional


class PortbuildError(Exception):
    pass


class ConfigError(PortbuildError):
    pass


class MalformedTokenError(PortbuildError):
    """Dependency token that cannot be parsed as target[op version]."""

    def __init__(self, token: str, reason: str = ""):
        self.token = token
        self.reason = reason
        msg = f"Malformed dependency token: {token!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class GraphError(PortbuildError):
    pass


class CycleError(GraphError):
    def __init__(self, path: List[str]):
        self.path = list(path)
        super().__init__("Circular dependency: " + " -> ".join(self.path))


class UnsatisfiableConstraintError(PortbuildError):
    def __init__(self, node: str, installed: Optional[str], constraint: str):
        self.node = node
        self.installed = installed
        self.constraint = constraint
        super().__init__(
            f"{node} {installed or '?'} does not satisfy {node}{constraint} "
            f"and automatic upgrades are disabled"
        )


class SchedulerError(PortbuildError):
    pass


class BuildFailedError(PortbuildError):
    def __init__(self, nodes: List[str]):
        self.nodes = list(nodes)
        super().__init__("Build failed for: " + ", ".join(self.nodes))


class ProbeError(PortbuildError):
    pass
