import concurrent.futures
import os
from pathlib import Path
from typing import List

import pytest

from tracecollector import collect_trace
from tracecollector.collect_trace import (
    CollectorConfig,
    ConsoleTraceHost,
    build_orchestrator,
    load_collector_environment,
    parse_args,
    supervise,
)
from tracecollector.device import DeviceCommands
from tracecollector.orchestrator import StorageIssue, TraceState


def test_load_collector_environment_sets_defaults(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    env_file = tmp_path / "collector.env"
    env_file.write_text(
        "# collector defaults\n"
        "TRACECOLLECTOR_TRACE_ROOT=/mnt/sdcard/ARO\n"
        "TRACECOLLECTOR_VIDEO=yes\n"
        "not-an-assignment\n",
        encoding="utf-8",
    )
    monkeypatch.delenv("TRACECOLLECTOR_TRACE_ROOT", raising=False)
    monkeypatch.setenv("TRACECOLLECTOR_VIDEO", "no")

    load_collector_environment(env_file)

    assert os.environ["TRACECOLLECTOR_TRACE_ROOT"] == "/mnt/sdcard/ARO"
    assert os.environ["TRACECOLLECTOR_VIDEO"] == "no"
    assert "Ignoring invalid collector environment entry on line 4" in capsys.readouterr().err


def test_load_collector_environment_missing_file(tmp_path: Path) -> None:
    load_collector_environment(tmp_path / "absent.env")


def test_parse_args_builds_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TRACECOLLECTOR_TRACE_ROOT", raising=False)
    monkeypatch.delenv("TRACECOLLECTOR_VIDEO", raising=False)
    monkeypatch.delenv("TRACECOLLECTOR_SHELL", raising=False)
    args = parse_args(["--trace-name", "mail-app", "--video", "--duration", "30"])

    config = CollectorConfig.from_args(args)

    assert config.trace_folder == Path("/sdcard/ARO/mail-app")
    assert config.video is True
    assert config.duration == 30.0
    assert config.shell == ["su"]
    assert config.adb is None


def test_video_defaults_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TRACECOLLECTOR_VIDEO", "on")
    assert parse_args(["--trace-name", "t"]).video is True
    assert parse_args(["--trace-name", "t", "--no-video"]).video is False


def test_console_host_reports_terminal_events(capsys: pytest.CaptureFixture[str]) -> None:
    host = ConsoleTraceHost()

    host.on_storage_issue(StorageIssue.LOW)
    assert host.exit_code == collect_trace.EXIT_INTERRUPTED
    host.on_trace_completed()
    assert host.exit_code == collect_trace.EXIT_OK
    host.on_trace_error(RuntimeError("su: not found"))
    assert host.exit_code == collect_trace.EXIT_ERROR

    output = capsys.readouterr().out
    assert "storage space is low" in output
    assert "Trace completed" in output
    assert "Trace failed: su: not found" in output
    assert host.confirm_storage_event()


def test_build_orchestrator_forwards_control_port_over_adb(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    forwarded: List[int] = []
    monkeypatch.setattr(
        DeviceCommands, "forward_control_port", lambda self, port: forwarded.append(port)
    )
    config = CollectorConfig(
        trace_root=Path("/sdcard/ARO"),
        trace_name="t",
        data_dir="/data/local/aro",
        video=True,
        shell=["su"],
        adb="adb",
        serial="emulator-5554",
    )

    orchestrator = build_orchestrator(config, ConsoleTraceHost())

    assert forwarded == [50999]
    assert orchestrator.state is TraceState.IDLE
    assert orchestrator.video is not None
    assert orchestrator.packet._shell.command == [
        "adb",
        "-s",
        "emulator-5554",
        "shell",
        "su",
    ]


class FakePacket:
    def __init__(self, owner: "FakeOrchestrator") -> None:
        self._owner = owner
        self.running = True
        self.handle = object()

    def wait(self, timeout=None):
        if self._owner.stop_requests:
            self.running = False
            self._owner.state = TraceState.TERMINATED
            return None
        raise concurrent.futures.TimeoutError()


class FakeOrchestrator:
    def __init__(self) -> None:
        self.state = TraceState.CAPTURING
        self.stop_requests = 0
        self.closed = False
        self.packet = FakePacket(self)

    def request_stop(self) -> None:
        self.stop_requests += 1

    def close(self) -> None:
        self.closed = True

    def wait(self, timeout=None) -> bool:
        return True


def test_supervise_stops_after_duration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(collect_trace, "POLL_INTERVAL_SECONDS", 0.01)
    orchestrator = FakeOrchestrator()

    supervise(orchestrator, duration=0.0)  # type: ignore[arg-type]

    assert orchestrator.stop_requests == 1
    assert orchestrator.state is TraceState.TERMINATED
    assert not orchestrator.closed
