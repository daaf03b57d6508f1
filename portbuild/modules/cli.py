# portbuild/modules/cli.py
"""
Command line front end for portbuild.

Usage examples:
  portbuild deps devel/libfoo --format tree
  portbuild deps devel/libfoo --format dot > deps.dot
  portbuild build editors/vim --jobs 4 --dry-run
  portbuild status
  portbuild log devel/libfoo
  portbuild compact

Exit codes: 0 ok, 1 build failure, 2 usage/config error, 3 circular
dependency, 4 unsatisfiable version constraint.
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from portbuild.modules import logger as _logger
from portbuild.modules.build import CYCLE, OK, UNSATISFIABLE, BuildManager
from portbuild.modules.config import BuildSettings, PortbuildConfig
from portbuild.modules.errors import ConfigError, CycleError
from portbuild.modules.events import Compactor, EventLog

LOG = _logger.Logger("cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CYCLE = 3
EXIT_UNSATISFIABLE = 4

STATUS_STYLES = {
    "queued": "cyan",
    "running": "yellow",
    "built": "green",
    "failed": "bold red",
    "simulated": "magenta",
}


def make_console(no_color: bool) -> Console:
    if no_color:
        return Console(color_system=None, highlight=False)
    return Console()


def load_settings(args) -> BuildSettings:
    cfg = PortbuildConfig([args.config]) if args.config else PortbuildConfig()
    overrides = {
        "ports_dir": args.ports_dir,
        "max_concurrency": getattr(args, "jobs", None),
        "max_retries": getattr(args, "retries", None),
    }
    if getattr(args, "dry_run", False):
        overrides["dry_run"] = True
    if getattr(args, "no_upgrade", False):
        overrides["no_upgrade"] = True
    if getattr(args, "with_test_deps", False):
        overrides["include_test"] = True
    return BuildSettings.from_config(cfg, **overrides)


# ---------------------------
# Commands
# ---------------------------
def cmd_deps(args, console: Console, settings: BuildSettings) -> int:
    manager = BuildManager(settings)
    try:
        graph, order = manager.build_order(args.port)
    except CycleError as e:
        console.print(Panel(" -> ".join(e.path), title="circular dependency", style="red"))
        return EXIT_CYCLE

    if args.format == "tree":
        console.print(graph.tree(args.port))
    elif args.format == "dot":
        print(graph.to_dot())
    elif args.format == "json":
        data = graph.to_dict()
        data["order"] = order
        print(json.dumps(data, indent=2))
    else:
        table = Table(title=f"Build order for {args.port}")
        table.add_column("#", justify="right")
        table.add_column("port")
        table.add_column("constraint")
        table.add_column("installed")
        for idx, node in enumerate(order, 1):
            installed, version = manager.installed(node)
            c = graph.constraint_of(node)
            table.add_row(str(idx), node, c.describe() if c else "",
                          (version or "yes") if installed else "")
        console.print(table)
    return EXIT_OK


def cmd_build(args, console: Console, settings: BuildSettings) -> int:
    manager = BuildManager(settings)
    report = manager.run(args.port)
    if args.report:
        manager.report_json(report, args.report)

    if report.status == CYCLE:
        console.print(Panel(" -> ".join(report.cycle), title="circular dependency", style="red"))
        return EXIT_CYCLE
    if report.status == UNSATISFIABLE:
        table = Table(title="Unsatisfiable constraints (automatic upgrades disabled)")
        table.add_column("port")
        table.add_column("installed")
        table.add_column("required")
        for u in report.unsatisfied:
            table.add_row(u["node"], u["installed"] or "?", u["constraint"])
        console.print(table)
        return EXIT_UNSATISFIABLE

    table = Table(title=f"{'Dry run' if report.dry_run else 'Build'}: {args.port}")
    table.add_column("port")
    table.add_column("result")
    for node in report.order:
        if node in report.satisfied:
            table.add_row(node, "[dim]already satisfied[/dim]")
        elif node in report.failed:
            table.add_row(node, f"[bold red]failed[/bold red] {report.errors.get(node, '')}")
        elif node in report.built:
            table.add_row(node, "[magenta]simulated[/magenta]" if report.dry_run else "[green]built[/green]")
        else:
            table.add_row(node, "[dim]not started[/dim]")
    console.print(table)
    if report.status != OK:
        for key, err in report.errors.items():
            if key not in report.failed:
                console.print(f"[red]{key}: {err}[/red]")
        return EXIT_FAILED
    return EXIT_OK


def cmd_status(args, console: Console, settings: BuildSettings) -> int:
    status = Compactor(EventLog(settings.event_log), settings.status_file).load()
    nodes = status.get("nodes", {})
    if args.port:
        rec = nodes.get(args.port)
        if rec is None:
            console.print(f"No recorded events for {args.port}")
            return EXIT_FAILED
        nodes = {args.port: rec}
    table = Table(title="Port status")
    table.add_column("port")
    table.add_column("status")
    table.add_column("since")
    table.add_column("events", justify="right")
    for node in sorted(nodes):
        last = nodes[node]["last"]
        style = STATUS_STYLES.get(last["status"], "")
        table.add_row(node, f"[{style}]{last['status']}[/{style}]" if style else last["status"],
                      last["timestamp"], str(len(nodes[node]["history"])))
    console.print(table)
    return EXIT_OK


def cmd_log(args, console: Console, settings: BuildSettings) -> int:
    log = EventLog(settings.event_log)
    events = log.events_for(args.port) if args.port else log.read()
    if args.limit:
        events = events[-args.limit:]
    for e in events:
        style = STATUS_STYLES.get(e["status"], "")
        extra = ""
        if "attempt" in e:
            extra += f" attempt={e['attempt']}"
        if e.get("detail"):
            extra += f" ({e['detail']})"
        console.print(f"{e['timestamp']}  {e['node']}  [{style}]{e['status']}[/{style}]{extra}")
    return EXIT_OK


def cmd_compact(args, console: Console, settings: BuildSettings) -> int:
    status = Compactor(EventLog(settings.event_log), settings.status_file).compact()
    console.print(f"Compacted {status['events']} events for {len(status['nodes'])} ports "
                  f"into {settings.status_file}")
    return EXIT_OK


COMMANDS = {
    "deps": cmd_deps,
    "build": cmd_build,
    "status": cmd_status,
    "log": cmd_log,
    "compact": cmd_compact,
}


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="portbuild", description="Ports dependency resolver and parallel builder")
    ap.add_argument("--config", help="Configuration file (INI)")
    ap.add_argument("--ports-dir", help="Ports tree root")
    ap.add_argument("--no-color", action="store_true", help="Disable colored output")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_deps = sub.add_parser("deps", help="Show the dependency graph / build order of a port")
    p_deps.add_argument("port")
    p_deps.add_argument("--format", choices=("topo", "tree", "dot", "json"), default="topo")
    p_deps.add_argument("--with-test-deps", action="store_true", help="Follow TEST_DEPENDS too")

    p_build = sub.add_parser("build", help="Build a port and its missing dependencies")
    p_build.add_argument("port")
    p_build.add_argument("-j", "--jobs", type=int, help="Maximum concurrent builds")
    p_build.add_argument("--retries", type=int, help="Retries per port")
    p_build.add_argument("--dry-run", action="store_true", help="Record simulated builds only")
    p_build.add_argument("--no-upgrade", action="store_true", help="Fail instead of upgrading outdated ports")
    p_build.add_argument("--with-test-deps", action="store_true", help="Follow TEST_DEPENDS too")
    p_build.add_argument("--report", help="Write a JSON report to this path")

    p_status = sub.add_parser("status", help="Show compacted per-port status")
    p_status.add_argument("port", nargs="?")

    p_log = sub.add_parser("log", help="Show raw build events")
    p_log.add_argument("port", nargs="?")
    p_log.add_argument("--limit", type=int, default=0)

    sub.add_parser("compact", help="Rebuild the status file from the event log")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    console = make_console(args.no_color)
    try:
        settings = load_settings(args)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return EXIT_USAGE
    return COMMANDS[args.cmd](args, console, settings)


if __name__ == "__main__":
    sys.exit(main())
