"""Device-side queries used by the trace orchestrator.

Commands run directly when the collector is hosted on the rooted device,
or through ``adb shell`` when an adb executable is configured.
"""
from __future__ import annotations

import os
import re
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from tracecollector.app_versions import PackageNotFoundError

SCREEN_TIMEOUT_SETTING = "screen_off_timeout"
VERSION_NAME_PATTERN = re.compile(r"versionName=(\S+)")


class DeviceCommandError(RuntimeError):
    """Raised when a device query fails."""


def parse_process_listing(output: str) -> List[Tuple[int, str]]:
    processes: List[Tuple[int, str]] = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        upper = stripped.upper()
        if upper.startswith("PID") or upper.startswith("USER"):
            continue
        parts = stripped.split()
        if len(parts) < 2:
            continue
        try:
            pid = int(parts[1])
        except ValueError:
            continue
        processes.append((pid, parts[-1]))
    return processes


def find_pid(output: str, name: str) -> int:
    for pid, process_name in parse_process_listing(output):
        if process_name == name or process_name.endswith(f"/{name}"):
            return pid
    return 0


def parse_version_name(dumpsys_output: str, package: str) -> str:
    if "Unable to find package" in dumpsys_output:
        raise PackageNotFoundError(package)
    match = VERSION_NAME_PATTERN.search(dumpsys_output)
    if not match:
        raise PackageNotFoundError(package)
    return match.group(1)


def parse_stat_free_kb(output: str) -> float:
    tokens = output.split()
    if len(tokens) < 2:
        raise DeviceCommandError(f"Unexpected stat output: {output.strip()!r}")
    try:
        available_blocks = int(tokens[0])
        block_size = int(tokens[1])
    except ValueError as error:
        raise DeviceCommandError(f"Unexpected stat output: {output.strip()!r}") from error
    return available_blocks * block_size / 1024.0


class DeviceCommands:
    def __init__(self, *, adb: Optional[str] = None, serial: Optional[str] = None) -> None:
        self.adb = adb
        self.serial = serial

    def build_command(self, *extra: str) -> List[str]:
        command: List[str] = []
        if self.adb:
            command.append(self.adb)
            if self.serial:
                command.extend(["-s", self.serial])
            command.append("shell")
        command.extend(extra)
        return command

    def run(self, *extra: str) -> str:
        command = self.build_command(*extra)
        try:
            completed = subprocess.run(command, capture_output=True, text=True)
        except OSError as error:
            raise DeviceCommandError(f"Unable to run {' '.join(command)}: {error}") from error
        if completed.returncode != 0:
            raise DeviceCommandError(
                f"Command {' '.join(command)} failed with code {completed.returncode}: "
                f"{completed.stderr.strip()}"
            )
        return completed.stdout

    def resolve_pid(self, name: str) -> int:
        return find_pid(self.run("ps"), name)

    def lookup_version(self, package: str) -> str:
        try:
            output = self.run("dumpsys", "package", package)
        except DeviceCommandError as error:
            raise PackageNotFoundError(package) from error
        return parse_version_name(output, package)

    def free_storage_kb(self, path: Path) -> float:
        if not self.adb:
            try:
                stats = os.statvfs(path)
            except FileNotFoundError:
                return 0.0
            return stats.f_bavail * stats.f_frsize / 1024.0
        return parse_stat_free_kb(self.run("stat", "-f", "-c", "%a %S", str(path)))

    def get_screen_timeout(self) -> int:
        raw = self.run("settings", "get", "system", SCREEN_TIMEOUT_SETTING).strip()
        try:
            return int(raw)
        except ValueError as error:
            raise DeviceCommandError(f"Screen timeout is not set (got {raw!r})") from error

    def set_screen_timeout(self, value: int) -> None:
        self.run("settings", "put", "system", SCREEN_TIMEOUT_SETTING, str(value))

    def device_model(self) -> str:
        return self.run("getprop", "ro.product.model").strip()

    def forward_control_port(self, port: int) -> None:
        if not self.adb:
            return
        command = [self.adb]
        if self.serial:
            command.extend(["-s", self.serial])
        command.extend(["forward", f"tcp:{port}", f"tcp:{port}"])
        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
        except (OSError, subprocess.CalledProcessError) as error:
            raise DeviceCommandError(f"Unable to forward control port {port}: {error}") from error
