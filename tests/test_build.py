import dataclasses
import json

import pytest

from conftest import FakeInstalled, FakePorts, RecordingBuild, plenty, write_port
from portbuild.modules.build import (CYCLE, FAILED, OK, UNSATISFIABLE, BuildManager, CommandBuilder,
                                     plan_builds)
from portbuild.modules.errors import BuildFailedError, CycleError, UnsatisfiableConstraintError
from portbuild.modules.events import Compactor, EventLog
from portbuild.modules.metadata import MetadataReader
from portbuild.modules.registry import InstalledRegistry


def _manager(settings, ports, installed=None, build=None, no_sleep=None, **kw):
    return BuildManager(
        settings,
        metadata=ports,
        installed=installed or FakeInstalled(),
        build=build or RecordingBuild(),
        probe=plenty,
        sleep=no_sleep[0] if no_sleep else (lambda s: None),
        **kw,
    )


class TestPlan:
    def test_outdated_port_scheduled_for_rebuild(self, settings):
        ports = FakePorts({"X": ["libfoo>=1.2"]})
        graph, plan = _manager(settings, ports, FakeInstalled({"libfoo": "1.1.5"})).plan("X")
        assert plan.order == ["libfoo", "X"]
        assert plan.to_build == ["libfoo", "X"]
        assert plan.constraints == {"libfoo": ">=1.2"}

    def test_satisfied_port_skipped(self, settings):
        ports = FakePorts({"X": ["libfoo>=1.2"]})
        _, plan = _manager(settings, ports, FakeInstalled({"libfoo": "1.10"})).plan("X")
        assert plan.satisfied == ["libfoo"]
        assert plan.to_build == ["X"]

    def test_no_upgrade_marks_unsatisfiable(self, settings):
        ports = FakePorts({"X": ["libfoo>=1.2"]})
        graph, order = _manager(settings, ports).build_order("X")
        plan = plan_builds(graph, order, FakeInstalled({"libfoo": "1.1.5"}), no_upgrade=True)
        assert [(e.node, e.installed, e.constraint) for e in plan.unsatisfiable] == [
            ("libfoo", "1.1.5", ">=1.2"),
        ]

    def test_bare_installed_reference_satisfied(self, settings):
        ports = FakePorts({"X": ["libfoo"]})
        _, plan = _manager(settings, ports, FakeInstalled({"libfoo": None})).plan("X")
        assert plan.satisfied == ["libfoo"]


class TestBuildManager:
    def test_upgrade_built_before_dependent(self, settings, no_sleep):
        build = RecordingBuild()
        ports = FakePorts({"X": ["libfoo>=1.2"]})
        report = _manager(settings, ports, FakeInstalled({"libfoo": "1.1.5"}), build,
                          no_sleep).run("X")
        assert report.status == OK and report.ok
        assert build.started == ["libfoo", "X"]
        assert report.built == ["libfoo", "X"]

    def test_no_upgrade_aborts_before_scheduling(self, settings):
        s = dataclasses.replace(settings, no_upgrade=True)
        build = RecordingBuild()
        ports = FakePorts({"X": ["libfoo>=1.2"]})
        manager = _manager(s, ports, FakeInstalled({"libfoo": "1.1.5"}), build)
        report = manager.run("X")
        assert report.status == UNSATISFIABLE
        assert report.unsatisfied == [{"node": "libfoo", "installed": "1.1.5", "constraint": ">=1.2"}]
        assert build.started == []
        assert report.events == []
        with pytest.raises(UnsatisfiableConstraintError):
            manager.run("X", raise_on_error=True)

    def test_cycle_reported(self, settings):
        build = RecordingBuild()
        ports = FakePorts({"A": ["B"], "B": ["C"], "C": ["A"]})
        manager = _manager(settings, ports, build=build)
        report = manager.run("A")
        assert report.status == CYCLE
        assert report.cycle == ["A", "B", "C", "A"]
        assert build.started == []
        with pytest.raises(CycleError):
            manager.run("A", raise_on_error=True)

    def test_failure_reported(self, settings, no_sleep):
        build = RecordingBuild(fail={"C"})
        ports = FakePorts({"A": ["B"], "B": ["C"]})
        manager = _manager(settings, ports, build=build, no_sleep=no_sleep)
        report = manager.run("A")
        assert report.status == FAILED
        assert report.failed == ["C"]
        assert report.not_started == ["B", "A"]
        assert len(build.started) == settings.max_retries + 1
        with pytest.raises(BuildFailedError):
            manager.run("A", raise_on_error=True)

    def test_dry_run_records_simulated_events(self, settings):
        s = dataclasses.replace(settings, dry_run=True)
        build = RecordingBuild()
        report = _manager(s, FakePorts({"A": ["B"]}), build=build).run("A")
        assert report.ok and report.dry_run
        assert build.started == []
        assert report.built == ["B", "A"]
        assert [e["status"] for e in report.events if e["node"] == "B"] == ["queued", "simulated"]

    def test_events_compacted_after_run(self, settings):
        _manager(settings, FakePorts({"A": ["B"]})).run("A")
        status = Compactor(EventLog(settings.event_log), settings.status_file).load()
        assert status["nodes"]["A"]["last"]["status"] == "built"
        assert status["nodes"]["B"]["last"]["status"] == "built"

    def test_report_json(self, settings, tmp_path):
        manager = _manager(settings, FakePorts({"A": []}))
        report = manager.run("A")
        out = manager.report_json(report, str(tmp_path / "out" / "report.json"))
        data = json.loads(open(out, encoding="utf-8").read())
        assert data["root"] == "A"
        assert data["status"] == "ok"
        assert data["built"] == ["A"]

    def test_report_json_default_location(self, settings):
        manager = _manager(settings, FakePorts({"A": []}))
        out = manager.report_json(manager.run("A"))
        assert out.startswith(settings.report_dir)
        assert out.endswith(".json")


class TestRegistryIntegration:
    def test_built_ports_registered_with_descriptor_version(self, settings, tmp_path):
        ports_dir = tmp_path / "ports"
        write_port(ports_dir, "editors/vim", makefile="PORTVERSION=9.0\nRUN_DEPENDS=devel/libfoo>=1.2\n")
        write_port(ports_dir, "devel/libfoo", recipe="version: 1.4.1\n")
        build = RecordingBuild()
        manager = BuildManager(settings, build=build, probe=plenty, sleep=lambda s: None)
        assert isinstance(manager.metadata, MetadataReader)

        report = manager.run("editors/vim")
        assert report.ok
        assert build.started == ["devel/libfoo", "editors/vim"]

        registry = InstalledRegistry(settings.installed_dir)
        assert registry.query("devel/libfoo") == (True, "1.4.1")
        assert registry.query("editors/vim") == (True, "9.0")

        again = BuildManager(settings, build=build, probe=plenty, sleep=lambda s: None).run("editors/vim")
        assert again.ok
        assert again.satisfied == ["devel/libfoo", "editors/vim"]
        assert again.built == []
        assert len(build.started) == 2

    def test_present_artifact_short_circuits(self, settings, tmp_path):
        ports_dir = tmp_path / "ports"
        write_port(ports_dir, "devel/libfoo", recipe="version: 1.0\n")
        pkgs = tmp_path / "packages"
        pkgs.mkdir()
        (pkgs / "devel_libfoo-1.0.tar.gz").write_bytes(b"")
        build = RecordingBuild()
        report = BuildManager(settings, build=build, probe=plenty).run("devel/libfoo")
        assert report.ok
        assert build.started == []
        assert report.events[-1]["detail"] == "artifact present"

    def test_stale_artifact_does_not_replace_upgrade(self, settings, tmp_path):
        registry = InstalledRegistry(settings.installed_dir, settings.packages_dir)
        registry.register("devel/libfoo", "1.1.5")
        pkgs = tmp_path / "packages"
        pkgs.mkdir()
        (pkgs / "devel_libfoo-1.1.5.tar.gz").write_bytes(b"")
        ports = FakePorts({"editors/x": ["devel/libfoo>=1.2"]}, versions={"devel/libfoo": "1.2"})
        build = RecordingBuild()
        report = BuildManager(settings, metadata=ports, build=build, probe=plenty,
                              sleep=lambda s: None).run("editors/x")
        assert report.ok
        assert build.started == ["devel/libfoo", "editors/x"]
        assert not [e for e in report.events if e.get("detail") == "artifact present"]
        assert registry.query("devel/libfoo") == (True, "1.2")

    def test_matching_artifact_satisfies_upgrade(self, settings, tmp_path):
        InstalledRegistry(settings.installed_dir).register("devel/libfoo", "1.1.5")
        pkgs = tmp_path / "packages"
        pkgs.mkdir()
        (pkgs / "devel_libfoo-1.2.tar.gz").write_bytes(b"")
        ports = FakePorts({"editors/x": ["devel/libfoo>=1.2"]}, versions={"devel/libfoo": "1.2"})
        build = RecordingBuild()
        report = BuildManager(settings, metadata=ports, build=build, probe=plenty,
                              sleep=lambda s: None).run("editors/x")
        assert report.ok
        assert build.started == ["editors/x"]

    def test_dry_run_does_not_register(self, settings, tmp_path):
        write_port(tmp_path / "ports", "devel/libfoo", recipe="version: 1.0\n")
        s = dataclasses.replace(settings, dry_run=True)
        BuildManager(s, build=RecordingBuild(), probe=plenty).run("devel/libfoo")
        assert InstalledRegistry(s.installed_dir).query("devel/libfoo") == (False, None)


class TestRegistry:
    def test_register_query_unregister(self, tmp_path):
        reg = InstalledRegistry(str(tmp_path / "db"), str(tmp_path / "pkgs"))
        assert reg("devel/libfoo") == (False, None)
        reg.register("devel/libfoo", "1.2", ["/usr/local/lib/libfoo.so"])
        assert reg("devel/libfoo") == (True, "1.2")
        assert reg.list_installed() == {"devel/libfoo": "1.2"}
        assert reg.unregister("devel/libfoo")
        assert not reg.unregister("devel/libfoo")
        assert reg.list_installed() == {}

    def test_artifact_must_match_version(self, tmp_path):
        pkgs = tmp_path / "pkgs"
        pkgs.mkdir()
        (pkgs / "devel_libfoo-1.1.5.tar.gz").write_bytes(b"")
        reg = InstalledRegistry(str(tmp_path / "db"), str(pkgs))
        assert reg.has_artifact("devel/libfoo", "1.1.5")
        assert not reg.has_artifact("devel/libfoo", "1.2")
        assert not reg.has_artifact("devel/libfoo", None)
        assert not InstalledRegistry(str(tmp_path / "db")).has_artifact("devel/libfoo", "1.1.5")

    def test_corrupt_entry_treated_as_missing(self, tmp_path):
        db = tmp_path / "db"
        db.mkdir()
        (db / "devel_libfoo.json").write_text("{oops")
        assert InstalledRegistry(str(db)).query("devel/libfoo") == (False, None)


class TestCommandBuilder:
    def test_placeholders(self, tmp_path):
        cb = CommandBuilder("make -C {portdir} NAME={node} install", str(tmp_path))
        assert cb.argv("devel/libfoo") == [
            "make", "-C", str(tmp_path / "devel" / "libfoo"), "NAME=devel/libfoo", "install",
        ]

    def test_exit_status(self, tmp_path):
        assert CommandBuilder("true", str(tmp_path))("A")
        assert not CommandBuilder("false", str(tmp_path), log_dir=str(tmp_path / "logs"))("A")
        assert (tmp_path / "logs" / "A.log").exists()
