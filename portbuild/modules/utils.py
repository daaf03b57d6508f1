# portbuild/modules/utils.py
from __future__ import annotations

from datetime import datetime, timezone


def now_iso() -> str:
    """UTC timestamp with microseconds, e.g. 2025-09-19T12:34:56.123456Z."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def port_key(port: str) -> str:
    """File-name safe form of a port id: `category/name` -> `category_name`."""
    return port.replace("/", "_")
