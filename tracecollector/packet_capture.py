"""Packet tracer supervision.

The tracer has no control channel besides a loopback socket: writing
``STOP`` to port 50999 asks it to flush its capture file and exit.
"""
from __future__ import annotations

import shlex
import socket
import sys
from pathlib import PurePosixPath
from typing import List

from tracecollector.capture_process import (
    CaptureProcess,
    CaptureProcessHandle,
    CaptureResult,
    StopMechanism,
)
from tracecollector.privileged_shell import PrivilegedShell
from tracecollector.session import TraceSession

CONTROL_HOST = "127.0.0.1"
CONTROL_PORT = 50999
STOP_COMMAND = "STOP"
CONTROL_TIMEOUT_SECONDS = 5.0
TCPDUMP_EXECUTABLE = "tcpdump"
KEY_DATABASE = "key.db"


def send_control_command(
    command: str = STOP_COMMAND,
    *,
    host: str = CONTROL_HOST,
    port: int = CONTROL_PORT,
    timeout: float = CONTROL_TIMEOUT_SECONDS,
) -> bool:
    """Send ``command`` to the tracer control socket.

    Returns ``False`` when the socket could not be reached; the tracer may
    already be stopping for another reason, so this is never fatal.
    """

    try:
        with socket.create_connection((host, port), timeout=timeout) as connection:
            connection.sendall(command.encode("ascii"))
            connection.shutdown(socket.SHUT_WR)
    except OSError as error:
        print(
            f"Unable to send {command} to packet tracer on {host}:{port}: {error}",
            file=sys.stderr,
        )
        return False
    return True


class PacketCapture(CaptureProcess):
    name = "tcpdump"
    stop_mechanism = StopMechanism.SOCKET_COMMAND

    def __init__(
        self,
        shell: PrivilegedShell,
        session: TraceSession,
        data_dir: str,
        *,
        control_host: str = CONTROL_HOST,
        control_port: int = CONTROL_PORT,
    ) -> None:
        super().__init__(shell)
        self.session = session
        self.data_dir = PurePosixPath(data_dir)
        self.control_host = control_host
        self.control_port = control_port

    def build_script(self) -> List[str]:
        executable = self.data_dir / TCPDUMP_EXECUTABLE
        key_database = self.data_dir / KEY_DATABASE
        return [
            f"chmod 777 {shlex.quote(str(executable))}",
            f"chmod 777 {shlex.quote(str(key_database))}",
            f"{shlex.quote(str(executable))} -w {shlex.quote(str(self.session.trace_folder))}",
            "exit",
        ]

    def before_launch(self) -> None:
        self.session.mark_started()

    def handle_exit(self, result: CaptureResult) -> None:
        self.session.set_tcpdump_running(False)
        print(
            f"Packet tracer shell exited with code {result.exit_code}",
            file=sys.stderr,
        )

    def send_stop(self, handle: CaptureProcessHandle) -> None:
        send_control_command(
            STOP_COMMAND, host=self.control_host, port=self.control_port
        )
