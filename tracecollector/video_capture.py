"""Frame-buffer video recording alongside the packet trace."""
from __future__ import annotations

import re
import shlex
import sys
from pathlib import Path, PurePosixPath
from typing import Callable, IO, List, Optional

from tracecollector.capture_process import (
    CaptureProcess,
    CaptureProcessHandle,
    CaptureResult,
    StopMechanism,
)
from tracecollector.privileged_shell import PrivilegedShell
from tracecollector.session import TraceSession

VIDEO_EXECUTABLE = "ffmpeg"
FRAME_BUFFER_DEVICE = "/dev/graphics/fb0"
VIDEO_FILE_NAME = "video.mp4"
VIDEO_DIAGNOSTIC_LOG = "/data/ffmpegout.txt"
VIDEO_TIME_FILE_NAME = "video_time"
FRAME_RATE = 3
TERMINATE_SIGNAL = 15
START_TIME_PATTERN = re.compile(r"\bstart:\s*(-?\d+(?:\.\d+)?)")

PidResolver = Callable[[str], int]


def parse_start_time(text: str) -> Optional[float]:
    match = START_TIME_PATTERN.search(text)
    if not match:
        return None
    return float(match.group(1))


def read_start_time(path: Path) -> Optional[float]:
    """Recover the capture start timestamp from the video tool's diagnostic log."""

    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as error:
        print(f"Unable to read video diagnostic log {path}: {error}", file=sys.stderr)
        return None
    start = parse_start_time(text)
    if start is None:
        print(f"No start timestamp found in video diagnostic log {path}", file=sys.stderr)
    return start


class VideoTimeRecord:
    """The ``video_time`` file in the trace folder, held open for the capture."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._stream: Optional[IO[str]] = None

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._stream = self.path.open("w", encoding="utf-8")

    def write(self, start_time: float) -> None:
        if self._stream is None:
            raise OSError(f"Video time record {self.path} is not open")
        self._stream.write(f"{start_time!r}")
        self._stream.flush()

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None


class VideoCapture(CaptureProcess):
    name = "video"
    stop_mechanism = StopMechanism.SIGNAL

    def __init__(
        self,
        shell: PrivilegedShell,
        session: TraceSession,
        data_dir: str,
        resolve_pid: PidResolver,
        *,
        diagnostic_log: str = VIDEO_DIAGNOSTIC_LOG,
        local_diagnostic_log: Optional[Path] = None,
    ) -> None:
        super().__init__(shell)
        self.session = session
        self.data_dir = PurePosixPath(data_dir)
        self.resolve_pid = resolve_pid
        self.diagnostic_log = diagnostic_log
        # Where this process can read the diagnostic log; differs from the
        # device path when driving the device over adb.
        self.local_diagnostic_log = local_diagnostic_log or Path(diagnostic_log)
        self.time_record = VideoTimeRecord(session.trace_folder / VIDEO_TIME_FILE_NAME)

    def build_script(self) -> List[str]:
        output = PurePosixPath(str(self.session.trace_folder)) / VIDEO_FILE_NAME
        return [
            f"cd {shlex.quote(str(self.data_dir))}",
            f"chmod 777 {VIDEO_EXECUTABLE}",
            (
                f"./{VIDEO_EXECUTABLE} -f fbdev -vsync 2 -r {FRAME_RATE} "
                f"-i {FRAME_BUFFER_DEVICE} {shlex.quote(str(output))} "
                f"2> {shlex.quote(self.diagnostic_log)}"
            ),
            "exit",
        ]

    def before_launch(self) -> None:
        self.session.set_video_running(True)
        try:
            self.time_record.open()
        except OSError as error:
            print(f"Unable to open video time record: {error}", file=sys.stderr)

    def handle_exit(self, result: CaptureResult) -> None:
        try:
            start_time = read_start_time(self.local_diagnostic_log)
            if start_time is not None:
                self.session.video_start_time = start_time
            try:
                self.time_record.write(start_time if start_time is not None else 0.0)
            except OSError as error:
                print(f"Unable to write video start time: {error}", file=sys.stderr)
            finally:
                self.time_record.close()
        finally:
            if self.session.mark_video_exited():
                print(
                    "::warning::Video capture ended while the packet trace was still running",
                    file=sys.stderr,
                )

    def send_stop(self, handle: CaptureProcessHandle) -> None:
        self.terminate_by_name()

    def terminate_by_name(self) -> bool:
        """Send SIGTERM to the running video tool; a missing process is not an error."""

        try:
            pid = self.resolve_pid(VIDEO_EXECUTABLE)
        except RuntimeError as error:
            print(f"Unable to resolve {VIDEO_EXECUTABLE} pid: {error}", file=sys.stderr)
            return False
        if not pid:
            return False
        try:
            self._shell.run([f"kill -{TERMINATE_SIGNAL} {pid}", "exit"])
        except (OSError, RuntimeError) as error:
            print(f"Unable to stop video capture (pid {pid}): {error}", file=sys.stderr)
            return False
        print(f"Sent signal {TERMINATE_SIGNAL} to video capture (pid {pid})", file=sys.stderr)
        return True
