"""Coordinate packet and video capture for one trace session.

Lifecycle::

    Idle -> Initializing -> Capturing -> Stopping -> Terminated

The packet tracer drives the session: when its shell exits, the video
recorder is stopped if it is still running, the stop is classified, the
``appname`` log is annotated with package versions, the host receives one
terminal event and the screen timeout is restored.
"""
from __future__ import annotations

import concurrent.futures
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Mapping, Optional

from tracecollector.app_versions import write_app_versions
from tracecollector.capture_process import CaptureResult
from tracecollector.packet_capture import PacketCapture
from tracecollector.privileged_shell import CaptureLaunchError, PrivilegedShell
from tracecollector.session import SessionFlags, TraceSession
from tracecollector.stop_classifier import (
    DEVICE_SETTLE_DELAYS,
    LOW_STORAGE_THRESHOLD_KB,
    StopKind,
    StopReason,
    classify_stop,
    settle_delay,
)
from tracecollector.video_capture import VideoCapture

DEFAULT_DATA_DIR = "/data/data/com.att.android.arodatacollector"
SCREEN_TIMEOUT_NEVER = -1
VIDEO_EXIT_GRACE_SECONDS = 10.0


class TraceState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    CAPTURING = "capturing"
    STOPPING = "stopping"
    TERMINATED = "terminated"


class StorageIssue(str, Enum):
    UNMOUNTED = "unmounted"
    LOW = "low"


class InvalidTransition(RuntimeError):
    """Raised when an operation is not allowed in the current session state."""


class TraceHost:
    """Receives the terminal event of a session.

    Subclasses decide what each event means for the surrounding
    application; the defaults do nothing.
    """

    def on_bearer_change(self, wifi_lost: bool) -> None:
        pass

    def on_storage_issue(self, kind: StorageIssue) -> None:
        pass

    def on_normal_stop(self) -> None:
        pass

    def on_trace_completed(self) -> None:
        pass

    def on_trace_error(self, error: BaseException) -> None:
        pass

    def cancel_notification(self) -> None:
        pass

    def stop_trace_services(self) -> None:
        pass

    def confirm_storage_event(self) -> bool:
        """Called when the tracer exits while the trace is still in progress.

        Return True to treat the exit as a storage event and classify it from
        a free-space reading. The default leaves the session in ``Stopping``
        until :meth:`TraceOrchestrator.close` is called.
        """

        return False


@dataclass
class TraceOutcome:
    reason: Optional[StopReason]
    flags: SessionFlags
    error: Optional[BaseException] = None
    app_entries: Optional[int] = None


class TraceOrchestrator:
    def __init__(
        self,
        session: TraceSession,
        host: TraceHost,
        device,
        *,
        shell: Optional[PrivilegedShell] = None,
        data_dir: str = DEFAULT_DATA_DIR,
        device_model: Optional[str] = None,
        quirks: Mapping[str, float] = DEVICE_SETTLE_DELAYS,
        low_storage_threshold_kb: float = LOW_STORAGE_THRESHOLD_KB,
        packet_capture: Optional[PacketCapture] = None,
        video_capture: Optional[VideoCapture] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.host = host
        self.device = device
        self.device_model = device_model
        self.quirks = quirks
        self.low_storage_threshold_kb = low_storage_threshold_kb
        self._sleep = sleep
        shell = shell or PrivilegedShell()
        self.packet = packet_capture or PacketCapture(shell, session, data_dir)
        self.video: Optional[VideoCapture] = None
        if session.video_enabled:
            self.video = video_capture or VideoCapture(
                shell, session, data_dir, device.resolve_pid
            )
        self.packet.on_exited(self._on_packet_exited)

        self._lock = threading.Lock()
        self._state = TraceState.IDLE
        self.history: List[TraceState] = [TraceState.IDLE]
        self._terminal_delivered = False
        self._terminated = threading.Event()
        self.outcome: Optional[TraceOutcome] = None

    @property
    def state(self) -> TraceState:
        with self._lock:
            return self._state

    def _transition(self, expected: TraceState, target: TraceState) -> None:
        with self._lock:
            if self._state is not expected:
                raise InvalidTransition(
                    f"Cannot move from {self._state.value} to {target.value}"
                )
            self._state = target
            self.history.append(target)

    def start(self) -> None:
        self._transition(TraceState.IDLE, TraceState.INITIALIZING)
        self._override_screen_timeout()
        self._transition(TraceState.INITIALIZING, TraceState.CAPTURING)
        if self.video is not None:
            self._start_video()
        try:
            self.packet.start()
        except CaptureLaunchError as error:
            print(f"::error::Unable to start packet capture: {error}", file=sys.stderr)
            self._fail(error)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._terminated.wait(timeout)

    def request_stop(self) -> None:
        if self.state is not TraceState.CAPTURING:
            return
        self.session.mark_stop_requested()
        self.packet.request_stop()

    def report_bearer_change(self, wifi_lost: bool) -> None:
        if self.state is not TraceState.CAPTURING:
            return
        self.session.mark_bearer_changed(wifi_lost)
        self.packet.request_stop()

    def report_storage_event(self) -> None:
        if self.state is not TraceState.CAPTURING:
            return
        self.session.mark_storage_problem()
        self.packet.request_stop()

    def close(self) -> None:
        """Release a session whose tracer exited while the trace was still in progress."""

        state = self.state
        if state is TraceState.TERMINATED:
            return
        if state is not TraceState.STOPPING:
            raise InvalidTransition(f"Cannot close a session that is {state.value}")
        if not self._claim_terminal_event():
            return
        self._finish(None)

    def _start_video(self) -> None:
        video = self.video
        if video is None:
            return
        try:
            video.start()
        except CaptureLaunchError as error:
            print(f"Unable to start video capture: {error}", file=sys.stderr)
            video.time_record.close()
            self.session.mark_video_failed()

    def _video_needs_stop(self) -> bool:
        return self.video is not None and self.session.snapshot().video_running

    def _stop_video_if_running(self) -> None:
        video = self.video
        if video is not None and self._video_needs_stop():
            video.request_stop()

    def _await_video_exit(self) -> None:
        if self.video is None or not self.video.running:
            return
        try:
            self.video.wait(timeout=VIDEO_EXIT_GRACE_SECONDS)
        except concurrent.futures.TimeoutError:
            print(
                f"::warning::Video capture still running {VIDEO_EXIT_GRACE_SECONDS:g}s after the trace stopped",
                file=sys.stderr,
            )
        except Exception as error:
            print(f"Video capture exit handling failed: {error!r}", file=sys.stderr)

    def _on_packet_exited(self, result: CaptureResult) -> None:
        self._transition(TraceState.CAPTURING, TraceState.STOPPING)
        video = self.video
        if video is not None and self._video_needs_stop():
            threading.Thread(
                target=video.request_stop, name="video-stop", daemon=True
            ).start()

        try:
            reason = self._classify()
        except Exception as error:
            self._abort(error)
            raise
        app_entries = self._annotate_app_versions()
        if reason is None:
            print(
                "Packet tracer exited while the trace is still in progress; waiting for the host",
                file=sys.stderr,
            )
            return
        self._finish_with_event(reason, app_entries=app_entries)

    def _lookup_version(self, package: str) -> Optional[str]:
        return self.device.lookup_version(package)

    def _annotate_app_versions(self) -> Optional[int]:
        try:
            return write_app_versions(self.session.trace_folder, self._lookup_version)
        except Exception as error:
            print(f"::warning::Unable to annotate app versions: {error!r}", file=sys.stderr)
            return None

    def _classify(self) -> Optional[StopReason]:
        flags = self.session.snapshot()
        print(
            "Classifying trace stop: bearer_changed={} in_progress={} stop_requested={}".format(
                flags.bearer_changed, flags.in_progress, flags.stop_requested
            ),
            file=sys.stderr,
        )
        if flags.bearer_changed:
            self.session.consume_bearer_change()
            self.host.cancel_notification()
            return classify_stop(flags)
        if flags.in_progress:
            if not self.host.confirm_storage_event():
                return None
            print("Treating tracer exit during the trace as a storage event", file=sys.stderr)
            self.session.mark_storage_problem()
            flags = self.session.snapshot()

        self.host.cancel_notification()
        if flags.stop_requested:
            return classify_stop(flags)

        self.host.stop_trace_services()
        delay = settle_delay(self._resolve_device_model(), self.quirks)
        if delay:
            print(f"Waiting {delay:g}s for storage to settle", file=sys.stderr)
            self._sleep(delay)
        free_kb = self._read_free_storage()
        print(f"Storage space left = {free_kb:g} KB", file=sys.stderr)
        return classify_stop(
            flags, free_kb, low_storage_threshold_kb=self.low_storage_threshold_kb
        )

    def _resolve_device_model(self) -> Optional[str]:
        if self.device_model is None:
            try:
                self.device_model = self.device.device_model()
            except (OSError, RuntimeError) as error:
                print(f"Unable to read device model: {error}", file=sys.stderr)
                self.device_model = ""
        return self.device_model

    def _read_free_storage(self) -> float:
        try:
            return float(self.device.free_storage_kb(self.session.trace_folder))
        except (OSError, RuntimeError) as error:
            print(f"Unable to measure free storage, assuming unmounted: {error}", file=sys.stderr)
            return 0.0

    def _claim_terminal_event(self) -> bool:
        with self._lock:
            if self._terminal_delivered:
                return False
            self._terminal_delivered = True
            return True

    def _finish_with_event(
        self, reason: StopReason, *, app_entries: Optional[int] = None
    ) -> None:
        if not self._claim_terminal_event():
            return
        self.outcome = TraceOutcome(
            reason=reason, flags=self.session.snapshot(), app_entries=app_entries
        )
        print(f"Trace stopped: {reason.describe()}", file=sys.stderr)
        try:
            self._notify(reason)
        finally:
            self._finish(reason)

    def _notify(self, reason: StopReason) -> None:
        if reason.kind is StopKind.BEARER_CHANGED:
            self.host.on_bearer_change(reason.wifi_lost)
            self.host.stop_trace_services()
        elif reason.kind is StopKind.USER_STOPPED:
            self.host.on_trace_completed()
            self.host.stop_trace_services()
        elif reason.kind is StopKind.STORAGE_UNMOUNTED:
            self.host.on_storage_issue(StorageIssue.UNMOUNTED)
        elif reason.kind is StopKind.STORAGE_LOW:
            self.host.on_storage_issue(StorageIssue.LOW)
        else:
            self.host.on_normal_stop()

    def _fail(self, error: BaseException) -> None:
        self._transition(TraceState.CAPTURING, TraceState.STOPPING)
        self._stop_video_if_running()
        self._abort(error)

    def _abort(self, error: BaseException) -> None:
        if not self._claim_terminal_event():
            return
        self.outcome = TraceOutcome(reason=None, flags=self.session.snapshot(), error=error)
        try:
            self.host.on_trace_error(error)
        finally:
            self._finish(None)

    def _finish(self, reason: Optional[StopReason]) -> None:
        try:
            self._await_video_exit()
            self._restore_screen_timeout()
        finally:
            if self.outcome is None:
                self.outcome = TraceOutcome(reason=reason, flags=self.session.snapshot())
            self.session.reset()
            self._transition(TraceState.STOPPING, TraceState.TERMINATED)
            self._terminated.set()

    def _override_screen_timeout(self) -> None:
        try:
            self.session.screen_timeout = self.device.get_screen_timeout()
            self.device.set_screen_timeout(SCREEN_TIMEOUT_NEVER)
        except (OSError, RuntimeError) as error:
            print(
                f"Failed to get screen timeout from device settings: {error}",
                file=sys.stderr,
            )

    def _restore_screen_timeout(self) -> None:
        saved = self.session.screen_timeout
        if saved is None:
            print("No saved screen timeout to restore", file=sys.stderr)
            return
        try:
            self.device.set_screen_timeout(saved)
        except (OSError, RuntimeError) as error:
            print(f"Failed to restore screen timeout: {error}", file=sys.stderr)
