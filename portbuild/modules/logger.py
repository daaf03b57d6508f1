# portbuild/modules/logger.py
from __future__ import annotations

import datetime
import json
import os
import threading

from rich.console import Console

from portbuild.modules.config import config

_console = Console(stderr=True, highlight=False)


class Logger:
    LEVELS = {
        "debug": 10,
        "info": 20,
        "success": 25,
        "warning": 30,
        "error": 40,
    }

    LEVEL_STYLES = {
        "DEBUG": "dim",
        "INFO": "blue",
        "SUCCESS": "green",
        "WARNING": "yellow",
        "ERROR": "bold red",
    }

    def __init__(self, name="portbuild"):
        self.name = name
        self.log_file = config.get("logging", "log_file", fallback="")
        self.color_output = config.getboolean("logging", "color_output", fallback=True)
        self.log_to_console = config.getboolean("logging", "log_to_console", fallback=True)
        self.use_utc = config.getboolean("logging", "timestamp_utc", fallback=False)
        self.log_format = config.get("logging", "log_format", fallback="text").lower()
        self.max_log_size_kb = config.getint("logging", "max_log_size_kb", fallback=0)

        level_str = config.get("logging", "level", fallback="info").lower()
        self.min_level = self.LEVELS.get(level_str, 20)

        if self.log_file:
            os.makedirs(os.path.dirname(os.path.abspath(self.log_file)), exist_ok=True)

        self._lock = threading.Lock()

    def _get_timestamp(self):
        now = datetime.datetime.now(datetime.timezone.utc) if self.use_utc else datetime.datetime.now()
        return now.strftime("%Y-%m-%d %H:%M:%S")

    def _rotate_if_needed(self):
        if self.max_log_size_kb <= 0:
            return
        if os.path.exists(self.log_file) and os.path.getsize(self.log_file) > self.max_log_size_kb * 1024:
            os.replace(self.log_file, self.log_file + ".1")

    def _write_file(self, message):
        if not self.log_file:
            return
        self._rotate_if_needed()
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(message + "\n")

    def _format_message(self, level, message):
        if self.log_format == "json":
            return json.dumps({
                "timestamp": self._get_timestamp(),
                "logger": self.name,
                "level": level,
                "message": message,
            })
        return f"[{self._get_timestamp()}] [{self.name}] [{level}] {message}"

    def _emit_console(self, formatted, level):
        if not self.log_to_console:
            return
        style = self.LEVEL_STYLES.get(level) if (self.color_output and self.log_format == "text") else None
        _console.print(formatted, style=style, markup=False)

    def log(self, level, message):
        level = level.upper()
        if self.LEVELS.get(level.lower(), 0) < self.min_level:
            return
        formatted = self._format_message(level, message)
        with self._lock:
            self._emit_console(formatted, level)
            self._write_file(formatted)

    def debug(self, message):
        self.log("DEBUG", message)

    def info(self, message):
        self.log("INFO", message)

    def success(self, message):
        self.log("SUCCESS", message)

    def warning(self, message):
        self.log("WARNING", message)

    def error(self, message):
        self.log("ERROR", message)
