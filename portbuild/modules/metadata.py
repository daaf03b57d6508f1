# portbuild/modules/metadata.py
"""
Port descriptor reader.

Looks up `<ports_dir>/<port>/recipe.yaml` (or recipe.yml) first and falls back
to a ports-style Makefile. Dependency variables:

  recipe.yaml            Makefile
  -----------            --------
  build_depends          BUILD_DEPENDS
  run_depends            RUN_DEPENDS
  test_depends           TEST_DEPENDS
  version                PORTVERSION / VERSION

Each dependency token has the form `target[operator version]`, for example
`devel/libfoo>=1.2` or `editors/vim`.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional

import yaml

from portbuild.modules import logger as _logger
from portbuild.modules.errors import MalformedTokenError
from portbuild.modules.versions import Constraint

LOG = _logger.Logger("metadata")

_TOKEN_RE = re.compile(r"^([^<>=]+)(>=|<=|=|>|<)(.+)$")
_IDENT_RE = re.compile(r"^[A-Za-z0-9._+@/-]+$")
_VERSION_RE = re.compile(r"^[A-Za-z0-9._+~-]+$")

RECIPE_NAMES = ("recipe.yaml", "recipe.yml")
MAKEFILE_VARS = {
    "build": "BUILD_DEPENDS",
    "run": "RUN_DEPENDS",
    "test": "TEST_DEPENDS",
}


class DependencySet(NamedTuple):
    build: List[str]
    run: List[str]
    test: List[str]

    @classmethod
    def empty(cls) -> "DependencySet":
        return cls([], [], [])


@dataclass(frozen=True)
class DependencyRef:
    target: str
    operator: Optional[str] = None
    version: Optional[str] = None

    @property
    def constraint(self) -> Optional[Constraint]:
        if self.operator is None:
            return None
        return Constraint(self.operator, self.version)

    def __str__(self):
        if self.operator is None:
            return self.target
        return f"{self.target}{self.operator}{self.version}"


def parse_token(token: str) -> DependencyRef:
    tok = token.strip()
    if not tok:
        raise MalformedTokenError(token, "empty token")
    m = _TOKEN_RE.match(tok)
    if m:
        target, op, version = m.group(1), m.group(2), m.group(3)
        if not _IDENT_RE.match(target):
            raise MalformedTokenError(token, f"invalid target {target!r}")
        if not _VERSION_RE.match(version):
            raise MalformedTokenError(token, f"invalid version {version!r}")
        return DependencyRef(target, op, version)
    if any(ch in tok for ch in "<>="):
        raise MalformedTokenError(token, "operator without target or version")
    if not _IDENT_RE.match(tok):
        raise MalformedTokenError(token, "invalid target")
    return DependencyRef(tok)


def _split_tokens(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return value.split()
    if isinstance(value, (list, tuple)):
        out = []
        for item in value:
            out.extend(str(item).split())
        return out
    return str(value).split()


def read_makefile_var(path: str, var: str) -> Optional[str]:
    """Value of `VAR=` in a Makefile, joining backslash continuations."""
    with open(path, "r", encoding="utf-8") as fh:
        lines = fh.read().splitlines()
    pattern = re.compile(r"^\s*" + re.escape(var) + r"\s*[?:+]?=(.*)$")
    i = 0
    while i < len(lines):
        m = pattern.match(lines[i])
        if not m:
            i += 1
            continue
        value = m.group(1)
        while value.endswith("\\") and i + 1 < len(lines):
            i += 1
            value = value[:-1] + " " + lines[i]
        if value.endswith("\\"):
            value = value[:-1]
        value = value.split("#", 1)[0]
        return value.strip()
    return None


class MetadataReader:
    def __init__(self, ports_dir: str):
        self.ports_dir = os.path.abspath(ports_dir)

    def port_dir(self, port: str) -> str:
        return os.path.join(self.ports_dir, port)

    def _recipe_path(self, port: str) -> Optional[str]:
        for fn in RECIPE_NAMES:
            p = os.path.join(self.port_dir(port), fn)
            if os.path.isfile(p):
                return p
        return None

    def _makefile_path(self, port: str) -> Optional[str]:
        p = os.path.join(self.port_dir(port), "Makefile")
        return p if os.path.isfile(p) else None

    def _load_recipe(self, path: str) -> Dict[str, Any]:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            LOG.warning(f"Ignoring recipe {path}: top level is not a mapping")
            return {}
        return data

    def read(self, port: str) -> DependencySet:
        recipe = self._recipe_path(port)
        if recipe:
            data = self._load_recipe(recipe)
            return DependencySet(
                _split_tokens(data.get("build_depends")),
                _split_tokens(data.get("run_depends")),
                _split_tokens(data.get("test_depends")),
            )
        makefile = self._makefile_path(port)
        if makefile:
            return DependencySet(*[
                _split_tokens(read_makefile_var(makefile, MAKEFILE_VARS[cat]))
                for cat in ("build", "run", "test")
            ])
        LOG.debug(f"No descriptor for {port}; treating as leaf")
        return DependencySet.empty()

    __call__ = read

    def version(self, port: str) -> Optional[str]:
        recipe = self._recipe_path(port)
        if recipe:
            v = self._load_recipe(recipe).get("version")
            return str(v) if v is not None else None
        makefile = self._makefile_path(port)
        if makefile:
            return read_makefile_var(makefile, "PORTVERSION") or read_makefile_var(makefile, "VERSION")
        return None
