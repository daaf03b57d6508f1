# portbuild/modules/config.py
from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, fields, replace
from typing import List, Optional

from portbuild.modules.errors import ConfigError

DEFAULT_LOCATIONS = [
    "/etc/portbuild/portbuild.conf",
    os.path.expanduser("~/.config/portbuild/portbuild.conf"),
    os.path.join(os.getcwd(), "portbuild.conf"),
]


class PortbuildConfig:
    """
    INI configuration, loaded from the first file found in `locations`.
    `PORTBUILD_CONF` in the environment takes precedence over the defaults.
    With no file at all every getter returns its fallback.
    """

    def __init__(self, locations: Optional[List[str]] = None):
        env_path = os.environ.get("PORTBUILD_CONF")
        if locations is None:
            locations = [env_path] if env_path else DEFAULT_LOCATIONS
        self.locations = locations
        self.config = configparser.ConfigParser()
        self.loaded_from: Optional[str] = None
        self.reload()

    def reload(self):
        """(Re)load from the first available file."""
        self.config = configparser.ConfigParser()
        self.loaded_from = None
        for path in self.locations:
            if path and os.path.isfile(path):
                try:
                    self.config.read(path, encoding="utf-8")
                except configparser.Error as e:
                    raise ConfigError(f"Invalid configuration file {path}: {e}") from e
                self.loaded_from = path
                return

    def get(self, section, option, fallback=None):
        return self.config.get(section, option, fallback=fallback)

    def getboolean(self, section, option, fallback=False):
        try:
            return self.config.getboolean(section, option, fallback=fallback)
        except ValueError as e:
            raise ConfigError(f"[{section}] {option}: expected a boolean ({e})") from e

    def getint(self, section, option, fallback=0):
        try:
            return self.config.getint(section, option, fallback=fallback)
        except ValueError as e:
            raise ConfigError(f"[{section}] {option}: expected an integer ({e})") from e

    def getfloat(self, section, option, fallback=0.0):
        try:
            return self.config.getfloat(section, option, fallback=fallback)
        except ValueError as e:
            raise ConfigError(f"[{section}] {option}: expected a number ({e})") from e

    def getlist(self, section, option, fallback=None, delimiter=","):
        raw = self.get(section, option, fallback="")
        if raw:
            return [item.strip() for item in raw.split(delimiter) if item.strip()]
        return fallback or []

    def __getitem__(self, section):
        if section in self.config:
            return dict(self.config[section])
        raise KeyError(f"Section '{section}' not found.")

    def __contains__(self, section):
        return section in self.config


@dataclass(frozen=True)
class BuildSettings:
    ports_dir: str = "/usr/ports"
    installed_dir: str = "/var/lib/portbuild/installed"
    packages_dir: str = "/var/cache/portbuild/packages"
    event_log: str = "/var/lib/portbuild/events.jsonl"
    status_file: str = "/var/lib/portbuild/status.json"
    report_dir: str = ""

    max_concurrency: int = 1
    memory_floor_mb: int = 512
    load_ceiling_per_cpu: float = 1.5
    poll_interval: float = 2.0

    max_retries: int = 2
    backoff_base: float = 2.0
    build_command: str = "make -C {portdir} install"

    dry_run: bool = False
    no_upgrade: bool = False
    include_test: bool = False

    @classmethod
    def from_config(cls, cfg: PortbuildConfig, **overrides) -> "BuildSettings":
        d = cls()
        settings = cls(
            ports_dir=cfg.get("paths", "ports_dir", fallback=d.ports_dir),
            installed_dir=cfg.get("paths", "installed_dir", fallback=d.installed_dir),
            packages_dir=cfg.get("paths", "packages_dir", fallback=d.packages_dir),
            event_log=cfg.get("paths", "event_log", fallback=d.event_log),
            status_file=cfg.get("paths", "status_file", fallback=d.status_file),
            report_dir=cfg.get("paths", "report_dir", fallback=d.report_dir),
            max_concurrency=cfg.getint("scheduler", "max_concurrency", fallback=d.max_concurrency),
            memory_floor_mb=cfg.getint("scheduler", "memory_floor_mb", fallback=d.memory_floor_mb),
            load_ceiling_per_cpu=cfg.getfloat("scheduler", "load_ceiling_per_cpu", fallback=d.load_ceiling_per_cpu),
            poll_interval=cfg.getfloat("scheduler", "poll_interval", fallback=d.poll_interval),
            max_retries=cfg.getint("worker", "max_retries", fallback=d.max_retries),
            backoff_base=cfg.getfloat("worker", "backoff_base", fallback=d.backoff_base),
            build_command=cfg.get("worker", "build_command", fallback=d.build_command),
            dry_run=cfg.getboolean("policy", "dry_run", fallback=d.dry_run),
            no_upgrade=cfg.getboolean("policy", "no_upgrade", fallback=d.no_upgrade),
            include_test=cfg.getboolean("policy", "include_test_deps", fallback=d.include_test),
        )
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown settings: {sorted(unknown)}")
        overrides = {k: v for k, v in overrides.items() if v is not None}
        settings = replace(settings, **overrides)
        settings.validate()
        return settings

    def validate(self):
        if self.max_concurrency < 1:
            raise ConfigError("max_concurrency must be >= 1")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.memory_floor_mb < 0:
            raise ConfigError("memory_floor_mb must be >= 0")
        if self.load_ceiling_per_cpu <= 0:
            raise ConfigError("load_ceiling_per_cpu must be > 0")
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be > 0")
        if self.backoff_base < 0:
            raise ConfigError("backoff_base must be >= 0")


# Default instance shared by the modules
config = PortbuildConfig()
