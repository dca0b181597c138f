"""Run command scripts inside an elevated (``su``) command interpreter."""
from __future__ import annotations

import subprocess
import sys
from typing import List, Optional, Sequence

DEFAULT_SHELL_COMMAND = ("su",)
EXIT_COMMAND = "exit"


class CaptureLaunchError(RuntimeError):
    """Raised when the elevated interpreter cannot be started."""


def build_shell_command(
    shell: Sequence[str] = DEFAULT_SHELL_COMMAND,
    *,
    adb: Optional[str] = None,
    serial: Optional[str] = None,
) -> List[str]:
    command: List[str] = []
    if adb:
        command.append(adb)
        if serial:
            command.extend(["-s", serial])
        command.append("shell")
    command.extend(shell)
    return command


def with_exit(commands: Sequence[str]) -> List[str]:
    script = [command.rstrip("\n") for command in commands]
    if not script or script[-1].strip() != EXIT_COMMAND:
        script.append(EXIT_COMMAND)
    return script


class ShellSession:
    """One live elevated interpreter.

    The session owns the interpreter's stdin and process handle until
    :meth:`close` is called; ``close`` is idempotent.
    """

    def __init__(self, process: subprocess.Popen) -> None:
        self._process = process
        self._closed = False

    @property
    def pid(self) -> int:
        return self._process.pid

    def write_script(self, commands: Sequence[str]) -> None:
        stdin = self._process.stdin
        if stdin is None:
            raise CaptureLaunchError("Elevated shell has no input stream")
        for command in with_exit(commands):
            stdin.write(f"{command}\n")
        stdin.flush()

    def wait(self) -> int:
        return self._process.wait()

    def poll(self) -> Optional[int]:
        return self._process.poll()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        stdin = self._process.stdin
        try:
            if stdin is not None and not stdin.closed:
                stdin.close()
        except OSError as error:
            print(f"Failed to close elevated shell input: {error}", file=sys.stderr)
        finally:
            if self._process.poll() is None:
                self._process.kill()
                try:
                    self._process.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    print(
                        f"Elevated shell (pid {self._process.pid}) did not exit after kill",
                        file=sys.stderr,
                    )

    def __enter__(self) -> "ShellSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class PrivilegedShell:
    def __init__(self, command: Sequence[str] = DEFAULT_SHELL_COMMAND) -> None:
        self.command = list(command)

    def open(self) -> ShellSession:
        try:
            process = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                text=True,
            )
        except OSError as error:
            raise CaptureLaunchError(
                f"Unable to launch elevated shell {' '.join(self.command)}: {error}"
            ) from error
        return ShellSession(process)

    def run(self, commands: Sequence[str]) -> int:
        """Write ``commands`` to a fresh interpreter and wait for it to exit.

        The returned status is the interpreter's own exit code, which is not
        necessarily the status of the tool it launched.
        """

        with self.open() as session:
            session.write_script(commands)
            return session.wait()
