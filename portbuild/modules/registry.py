# portbuild/modules/registry.py
"""
Installed-package registry.

One JSON document per installed port under `db_dir`, named after the port
key (`category/name` -> `category_name.json`):

{
  "port": "devel/libfoo",
  "version": "1.2.0",
  "installed_at": "2025-09-19T12:34:56Z",
  "files": ["/usr/local/lib/libfoo.so", ...]
}

Built artifacts are looked up in `packages_dir` as `<key>-<version>.tar.gz`.
"""

from __future__ import annotations

import json
import os
import tempfile
from typing import Any, Dict, List, Optional, Tuple

from portbuild.modules import logger as _logger
from portbuild.modules.utils import now_iso, port_key

LOG = _logger.Logger("registry")


class InstalledRegistry:
    def __init__(self, db_dir: str, packages_dir: Optional[str] = None):
        self.db_dir = os.path.abspath(db_dir)
        self.packages_dir = os.path.abspath(packages_dir) if packages_dir else None

    def _meta_path(self, port: str) -> str:
        return os.path.join(self.db_dir, port_key(port) + ".json")

    def _load(self, port: str) -> Optional[Dict[str, Any]]:
        path = self._meta_path(port)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except json.JSONDecodeError as e:
            LOG.warning(f"Corrupt registry entry {path}: {e}; treating {port} as not installed")
            return None

    def query(self, port: str) -> Tuple[bool, Optional[str]]:
        meta = self._load(port)
        if meta is None:
            return False, None
        version = meta.get("version")
        return True, (str(version) if version is not None else None)

    __call__ = query

    def register(self, port: str, version: str, files: Optional[List[str]] = None) -> str:
        os.makedirs(self.db_dir, exist_ok=True)
        meta = {
            "port": port,
            "version": version,
            "installed_at": now_iso(),
            "files": list(files or []),
        }
        path = self._meta_path(port)
        fd, tmp = tempfile.mkstemp(dir=self.db_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(meta, fh, indent=2)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        LOG.info(f"Registered {port} {version}")
        return path

    def unregister(self, port: str) -> bool:
        path = self._meta_path(port)
        if not os.path.exists(path):
            LOG.warning(f"No registry entry for {port}")
            return False
        os.remove(path)
        LOG.info(f"Unregistered {port}")
        return True

    def list_installed(self) -> Dict[str, Optional[str]]:
        out: Dict[str, Optional[str]] = {}
        if not os.path.isdir(self.db_dir):
            return out
        for fn in sorted(os.listdir(self.db_dir)):
            if not fn.endswith(".json") or fn.startswith("."):
                continue
            with open(os.path.join(self.db_dir, fn), "r", encoding="utf-8") as fh:
                try:
                    meta = json.load(fh)
                except json.JSONDecodeError:
                    LOG.warning(f"Skipping corrupt registry entry {fn}")
                    continue
            out[meta.get("port", fn[:-5])] = meta.get("version")
        return out

    def artifact_path(self, port: str, version: str) -> Optional[str]:
        if not self.packages_dir:
            return None
        return os.path.join(self.packages_dir, f"{port_key(port)}-{version}.tar.gz")

    def has_artifact(self, port: str, version: Optional[str]) -> bool:
        """True when the package of exactly `version` is in the packages dir."""
        if not version:
            return False
        path = self.artifact_path(port, version)
        return path is not None and os.path.isfile(path)
