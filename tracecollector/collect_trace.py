#!/usr/bin/env python3
"""Record a packet trace (and optionally a screen video) on a rooted device.

The collector launches the packet tracer and the frame-buffer recorder in
elevated shells, waits for the tracer to exit, classifies why it stopped
and annotates the trace's ``appname`` log with package versions. Press
Ctrl-C (or pass ``--duration``) to stop the trace.
"""
from __future__ import annotations

import argparse
import concurrent.futures
import os
import shlex
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from tracecollector.device import DeviceCommandError, DeviceCommands
from tracecollector.orchestrator import (
    DEFAULT_DATA_DIR,
    StorageIssue,
    TraceHost,
    TraceOrchestrator,
    TraceState,
)
from tracecollector.packet_capture import CONTROL_PORT
from tracecollector.privileged_shell import (
    DEFAULT_SHELL_COMMAND,
    PrivilegedShell,
    build_shell_command,
)
from tracecollector.session import TraceSession
from tracecollector.stop_classifier import StopKind
from tracecollector.video_capture import VIDEO_DIAGNOSTIC_LOG

COLLECTOR_ENV_PATH = Path(__file__).resolve().parents[1] / "config" / "collector.env"
DEFAULT_TRACE_ROOT = "/sdcard/ARO"
POLL_INTERVAL_SECONDS = 0.5

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 2


@dataclass
class CollectorConfig:
    trace_root: Path
    trace_name: str
    data_dir: str
    video: bool
    shell: List[str]
    adb: Optional[str] = None
    serial: Optional[str] = None
    device_model: Optional[str] = None
    duration: Optional[float] = None

    @property
    def trace_folder(self) -> Path:
        return self.trace_root / self.trace_name

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "CollectorConfig":
        return cls(
            trace_root=Path(args.trace_root),
            trace_name=args.trace_name,
            data_dir=args.data_dir,
            video=args.video,
            shell=shlex.split(args.shell),
            adb=args.adb,
            serial=args.serial,
            device_model=args.device_model,
            duration=args.duration,
        )


def load_collector_environment(path: Path = COLLECTOR_ENV_PATH) -> None:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return
    except OSError as error:
        print(f"Failed to read collector environment from {path}: {error}", file=sys.stderr)
        return

    for index, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            print(
                f"Ignoring invalid collector environment entry on line {index}: {stripped}",
                file=sys.stderr,
            )
            continue
        key, value = stripped.split("=", 1)
        key = key.strip()
        if not key:
            continue
        os.environ.setdefault(key, value.strip())


def _parse_optional_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "f", "no", "n", "off"}:
        return False
    return None


def default_trace_name() -> str:
    return time.strftime("trace-%Y%m%d-%H%M%S")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--trace-name",
        default=os.environ.get("TRACECOLLECTOR_TRACE_NAME") or default_trace_name(),
        help="Name of the trace folder to create under --trace-root",
    )
    parser.add_argument(
        "--trace-root",
        default=os.environ.get("TRACECOLLECTOR_TRACE_ROOT", DEFAULT_TRACE_ROOT),
        help="Directory holding trace folders (default: %(default)s)",
    )
    parser.add_argument(
        "--data-dir",
        default=os.environ.get("TRACECOLLECTOR_DATA_DIR", DEFAULT_DATA_DIR),
        help="Directory containing the tcpdump and ffmpeg executables (default: %(default)s)",
    )
    parser.add_argument(
        "--video",
        action=argparse.BooleanOptionalAction,
        default=_parse_optional_bool(os.environ.get("TRACECOLLECTOR_VIDEO")) or False,
        help="Record the frame buffer alongside the packet trace",
    )
    parser.add_argument(
        "--duration",
        type=float,
        help="Stop the trace automatically after this many seconds",
    )
    parser.add_argument(
        "--shell",
        default=os.environ.get("TRACECOLLECTOR_SHELL", " ".join(DEFAULT_SHELL_COMMAND)),
        help="Elevated interpreter command (default: %(default)s)",
    )
    parser.add_argument(
        "--adb",
        default=os.environ.get("TRACECOLLECTOR_ADB"),
        help="Drive the device through this adb executable instead of running on it",
    )
    parser.add_argument(
        "--serial",
        help="ADB device serial to target",
    )
    parser.add_argument(
        "--device-model",
        help="Override the device model used for storage settle quirks",
    )
    return parser.parse_args(argv)


class ConsoleTraceHost(TraceHost):
    """Reports the terminal event on stdout and remembers the exit status."""

    def __init__(self) -> None:
        self.exit_code: Optional[int] = None

    def on_bearer_change(self, wifi_lost: bool) -> None:
        if wifi_lost:
            print("Trace stopped: Wi-Fi connection lost")
        else:
            print("Trace stopped: network bearer changed")
        self.exit_code = EXIT_INTERRUPTED

    def on_storage_issue(self, kind: StorageIssue) -> None:
        if kind is StorageIssue.UNMOUNTED:
            print("Trace stopped: storage was unmounted during the trace")
        else:
            print("Trace stopped: storage space is low")
        self.exit_code = EXIT_INTERRUPTED

    def on_normal_stop(self) -> None:
        print("Trace stopped: packet tracer exited")
        self.exit_code = EXIT_OK

    def on_trace_completed(self) -> None:
        print("Trace completed")
        self.exit_code = EXIT_OK

    def on_trace_error(self, error: BaseException) -> None:
        print(f"Trace failed: {error}")
        self.exit_code = EXIT_ERROR

    def confirm_storage_event(self) -> bool:
        # No storage broadcasts reach the console, so an unrequested tracer
        # exit is judged from the free-space reading.
        return True


def build_orchestrator(config: CollectorConfig, host: TraceHost) -> TraceOrchestrator:
    device = DeviceCommands(adb=config.adb, serial=config.serial)
    shell = PrivilegedShell(
        build_shell_command(config.shell, adb=config.adb, serial=config.serial)
    )
    if config.adb:
        try:
            device.forward_control_port(CONTROL_PORT)
        except DeviceCommandError as error:
            print(f"::warning::{error}", file=sys.stderr)
    session = TraceSession(config.trace_folder, video_enabled=config.video)
    return TraceOrchestrator(
        session,
        host,
        device,
        shell=shell,
        data_dir=config.data_dir,
        device_model=config.device_model,
    )


def supervise(orchestrator: TraceOrchestrator, duration: Optional[float] = None) -> None:
    deadline = time.monotonic() + duration if duration is not None else None
    while orchestrator.state is TraceState.CAPTURING:
        try:
            orchestrator.packet.wait(timeout=POLL_INTERVAL_SECONDS)
        except concurrent.futures.TimeoutError:
            pass
        except KeyboardInterrupt:
            print("Stopping trace...", file=sys.stderr)
            orchestrator.request_stop()
            continue
        except Exception:
            break
        if deadline is not None and time.monotonic() >= deadline:
            print(f"Trace duration of {duration:g}s reached; stopping", file=sys.stderr)
            orchestrator.request_stop()
            deadline = None
    _await_packet_exit(orchestrator)
    if orchestrator.state is TraceState.STOPPING:
        orchestrator.close()
    orchestrator.wait()


def _await_packet_exit(orchestrator: TraceOrchestrator) -> None:
    if orchestrator.packet.handle is None:
        return
    try:
        orchestrator.packet.wait()
    except Exception as error:
        print(f"Packet capture exit handling failed: {error}", file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    load_collector_environment()
    args = parse_args(argv)
    config = CollectorConfig.from_args(args)

    host = ConsoleTraceHost()
    orchestrator = build_orchestrator(config, host)
    print(f"Recording trace to {config.trace_folder}", file=sys.stderr)
    orchestrator.start()
    supervise(orchestrator, config.duration)

    outcome = orchestrator.outcome
    if outcome is not None and outcome.flags.video_capture_failed:
        print("::warning::Video capture ended before the packet trace", file=sys.stderr)
    if host.exit_code is not None:
        return host.exit_code
    if outcome is not None and outcome.reason is not None:
        return EXIT_OK if outcome.reason.kind is StopKind.NORMAL else EXIT_INTERRUPTED
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
