"""Supervise one external capture program running in an elevated shell."""
from __future__ import annotations

import sys
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from tracecollector.privileged_shell import PrivilegedShell, ShellSession


class StopMechanism(str, Enum):
    SOCKET_COMMAND = "socket_command"
    SIGNAL = "signal"


@dataclass
class CaptureProcessHandle:
    """Ownership record for one spawned capture shell."""

    pid: int
    session: ShellSession
    stop_mechanism: StopMechanism
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.session.close()


@dataclass
class CaptureResult:
    name: str
    exit_code: Optional[int]
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


ExitCallback = Callable[[CaptureResult], None]


@dataclass
class _Completion:
    future: "Future[CaptureResult]" = field(default_factory=Future)
    callbacks: List[ExitCallback] = field(default_factory=list)


class CaptureProcess:
    """Base class for a capture program driven through :class:`PrivilegedShell`.

    ``start`` launches the shell and hands the blocking wait to a dedicated
    worker thread. The worker runs :meth:`handle_exit`, then every exit
    callback, then releases the shell, in that order, exactly once per start.
    """

    name = "capture"
    stop_mechanism = StopMechanism.SIGNAL

    def __init__(self, shell: PrivilegedShell) -> None:
        self._shell = shell
        self._lock = threading.Lock()
        self._handle: Optional[CaptureProcessHandle] = None
        self._completion: Optional[_Completion] = None
        self._pending_callbacks: List[ExitCallback] = []
        self._worker: Optional[threading.Thread] = None

    def build_script(self) -> List[str]:
        raise NotImplementedError

    def before_launch(self) -> None:
        """Hook run on the caller's thread before the shell is opened."""

    def handle_exit(self, result: CaptureResult) -> None:
        """Hook run on the worker thread once the shell has exited."""

    def send_stop(self, handle: CaptureProcessHandle) -> None:
        raise NotImplementedError

    def on_exited(self, callback: ExitCallback) -> None:
        with self._lock:
            self._pending_callbacks.append(callback)

    @property
    def handle(self) -> Optional[CaptureProcessHandle]:
        with self._lock:
            return self._handle

    @property
    def running(self) -> bool:
        with self._lock:
            return self._completion is not None and not self._completion.future.done()

    def start(self) -> CaptureProcessHandle:
        with self._lock:
            if self._completion is not None and not self._completion.future.done():
                raise RuntimeError(f"{self.name} capture is already running")
        self.before_launch()
        session = self._shell.open()
        handle = CaptureProcessHandle(
            pid=session.pid, session=session, stop_mechanism=self.stop_mechanism
        )
        completion = _Completion()
        with self._lock:
            self._handle = handle
            self._completion = completion
            completion.callbacks = list(self._pending_callbacks)
        self._worker = threading.Thread(
            target=self._supervise,
            args=(handle, completion),
            name=f"{self.name}-capture",
            daemon=True,
        )
        self._worker.start()
        return handle

    def run(self) -> CaptureResult:
        """Start the capture and block until its exit has been fully handled."""

        self.start()
        return self.wait()

    def wait(self, timeout: Optional[float] = None) -> CaptureResult:
        with self._lock:
            completion = self._completion
        if completion is None:
            raise RuntimeError(f"{self.name} capture was never started")
        return completion.future.result(timeout=timeout)

    def request_stop(self) -> None:
        with self._lock:
            handle = self._handle
            completion = self._completion
        if handle is None or completion is None or completion.future.done():
            return
        if handle.released:
            return
        self.send_stop(handle)

    def _supervise(self, handle: CaptureProcessHandle, completion: _Completion) -> None:
        exit_code: Optional[int] = None
        error: Optional[BaseException] = None
        try:
            handle.session.write_script(self.build_script())
            exit_code = handle.session.wait()
        except OSError as failure:
            print(f"{self.name} capture shell failed: {failure}", file=sys.stderr)
            error = failure

        result = CaptureResult(name=self.name, exit_code=exit_code, error=error)
        callback_error: Optional[BaseException] = None
        try:
            try:
                self.handle_exit(result)
            except Exception as failure:
                print(
                    f"{self.name} capture exit handling failed: {failure!r}",
                    file=sys.stderr,
                )
                callback_error = failure
            for callback in completion.callbacks:
                try:
                    callback(result)
                except Exception as failure:
                    print(
                        f"{self.name} capture exit callback failed: {failure!r}",
                        file=sys.stderr,
                    )
                    if callback_error is None:
                        callback_error = failure
        finally:
            handle.release()

        if callback_error is not None:
            completion.future.set_exception(callback_error)
        else:
            completion.future.set_result(result)
