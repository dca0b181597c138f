"""Shared state for one trace recording.

Every flag read or write goes through a single lock so that stop
classification always sees a consistent snapshot.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class SessionFlags:
    """Point-in-time copy of the mutable session flags."""

    in_progress: bool
    tcpdump_running: bool
    video_running: bool
    stop_requested: bool
    bearer_changed: bool
    wifi_lost: bool
    video_capture_failed: bool


class TraceSession:
    def __init__(self, trace_folder: Path, *, video_enabled: bool = False) -> None:
        self.trace_folder = Path(trace_folder)
        self.video_enabled = video_enabled
        self.screen_timeout: Optional[int] = None
        self._lock = threading.Lock()
        self._in_progress = False
        self._tcpdump_running = False
        self._video_running = False
        self._stop_requested = False
        self._bearer_changed = False
        self._wifi_lost = False
        self._video_capture_failed = False
        self._video_start_time: Optional[float] = None

    def snapshot(self) -> SessionFlags:
        with self._lock:
            return SessionFlags(
                in_progress=self._in_progress,
                tcpdump_running=self._tcpdump_running,
                video_running=self._video_running,
                stop_requested=self._stop_requested,
                bearer_changed=self._bearer_changed,
                wifi_lost=self._wifi_lost,
                video_capture_failed=self._video_capture_failed,
            )

    def mark_started(self) -> None:
        with self._lock:
            self._in_progress = True
            self._tcpdump_running = True

    def set_tcpdump_running(self, value: bool) -> None:
        with self._lock:
            self._tcpdump_running = value

    def set_video_running(self, value: bool) -> None:
        with self._lock:
            self._video_running = value

    def mark_stop_requested(self) -> None:
        with self._lock:
            self._stop_requested = True
            self._in_progress = False

    def mark_bearer_changed(self, wifi_lost: bool) -> None:
        with self._lock:
            self._bearer_changed = True
            self._wifi_lost = wifi_lost

    def mark_storage_problem(self) -> None:
        with self._lock:
            self._in_progress = False

    def consume_bearer_change(self) -> None:
        """Clear the bearer-change and explicit-stop causes once they have been acted on."""

        with self._lock:
            self._bearer_changed = False
            self._stop_requested = False
            self._tcpdump_running = False

    def mark_video_exited(self) -> bool:
        """Clear the video-running flag and return whether video ended prematurely.

        Video is considered to have failed when the packet tracer is still
        running and nobody asked the session to stop.
        """

        with self._lock:
            failed = self._tcpdump_running and not self._stop_requested
            if failed:
                self._video_capture_failed = True
            self._video_running = False
            return failed

    def mark_video_failed(self) -> None:
        with self._lock:
            self._video_capture_failed = True
            self._video_running = False

    @property
    def video_start_time(self) -> Optional[float]:
        with self._lock:
            return self._video_start_time

    @video_start_time.setter
    def video_start_time(self, value: Optional[float]) -> None:
        with self._lock:
            self._video_start_time = value

    def reset(self) -> None:
        with self._lock:
            self._in_progress = False
            self._tcpdump_running = False
            self._video_running = False
            self._stop_requested = False
            self._bearer_changed = False
            self._wifi_lost = False
            self._video_capture_failed = False
            self._video_start_time = None
