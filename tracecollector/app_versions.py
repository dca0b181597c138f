"""Annotate the tracer's ``appname`` log with installed package versions."""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple

APP_NAME_FILE = "appname"

VersionLookup = Callable[[str], Optional[str]]


class PackageNotFoundError(LookupError):
    """Raised by a version lookup when the package is not installed."""


def resolve_version(name: str, lookup: VersionLookup) -> Optional[str]:
    try:
        version = lookup(name)
    except PackageNotFoundError:
        print(
            f"Package {name!r} can not be found; unable to get version number.",
            file=sys.stderr,
        )
        return None
    except Exception as error:
        print(f"Unable to get version number for {name!r}: {error}", file=sys.stderr)
        return None
    if version is None:
        return None
    version = version.strip()
    return version or None


def format_entry(name: str, version: Optional[str]) -> str:
    if version:
        return f"{name} {version}"
    return name


def annotate_lines(lines: List[str], lookup: VersionLookup) -> List[Tuple[str, Optional[str]]]:
    entries: List[Tuple[str, Optional[str]]] = []
    for name in lines:
        entries.append((name, resolve_version(name, lookup)))
    return entries


def annotate_app_versions(
    path: Path, lookup: VersionLookup, *, line_terminator: str = os.linesep
) -> int:
    """Rewrite ``path`` in place with ``"<name> <version>"`` per line.

    The file is read completely before it is reopened for writing. Bytes that
    are not valid UTF-8 are written back unchanged. Returns the number of
    lines written.
    """

    with path.open("r", encoding="utf-8", errors="surrogateescape") as handle:
        names = handle.read().splitlines()

    entries = annotate_lines(names, lookup)

    with path.open("w", encoding="utf-8", errors="surrogateescape", newline="") as handle:
        for name, version in entries:
            handle.write(format_entry(name, version) + line_terminator)
    return len(entries)


def write_app_versions(trace_folder: Path, lookup: VersionLookup) -> Optional[int]:
    path = trace_folder / APP_NAME_FILE
    print(f"Trace folder name is: {trace_folder}", file=sys.stderr)
    try:
        return annotate_app_versions(path, lookup)
    except (OSError, ValueError) as error:
        print(
            f"Error occurred while writing the version number for the applications: {error}",
            file=sys.stderr,
        )
        return None
