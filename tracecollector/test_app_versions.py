from pathlib import Path
from typing import Dict, Optional

import pytest

from tracecollector.app_versions import (
    APP_NAME_FILE,
    PackageNotFoundError,
    annotate_app_versions,
    write_app_versions,
)


def _lookup(versions: Dict[str, str]):
    def lookup(name: str) -> Optional[str]:
        if name not in versions:
            raise PackageNotFoundError(name)
        return versions[name]

    return lookup


def test_annotate_appends_versions_in_order(tmp_path: Path) -> None:
    path = tmp_path / APP_NAME_FILE
    path.write_text("com.example.mail\ncom.example.maps\ncom.example.news\n", encoding="utf-8")

    written = annotate_app_versions(
        path,
        _lookup({"com.example.mail": "4.1", "com.example.news": "2.0.3"}),
        line_terminator="\n",
    )

    assert written == 3
    assert path.read_text(encoding="utf-8") == (
        "com.example.mail 4.1\ncom.example.maps\ncom.example.news 2.0.3\n"
    )


def test_unexpected_lookup_errors_keep_bare_name(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / APP_NAME_FILE
    path.write_text("com.example.mail\nsystem_server\ncom.example.maps\n", encoding="utf-8")

    def lookup(name: str) -> Optional[str]:
        if name == "system_server":
            raise RuntimeError("package manager unavailable")
        return "1.0"

    annotate_app_versions(path, lookup, line_terminator="\n")

    assert path.read_text(encoding="utf-8").splitlines() == [
        "com.example.mail 1.0",
        "system_server",
        "com.example.maps 1.0",
    ]
    assert "package manager unavailable" in capsys.readouterr().err


def test_annotation_is_idempotent_without_resolvable_packages(tmp_path: Path) -> None:
    path = tmp_path / APP_NAME_FILE
    path.write_text("com.example.a\ncom.example.b\n", encoding="utf-8")
    lookup = _lookup({})

    annotate_app_versions(path, lookup)
    first = path.read_bytes()
    annotate_app_versions(path, lookup)

    assert path.read_bytes() == first
    assert first.decode("utf-8").splitlines() == ["com.example.a", "com.example.b"]


def test_line_count_preserved_with_blank_and_missing_versions(tmp_path: Path) -> None:
    path = tmp_path / APP_NAME_FILE
    path.write_text("com.example.a\n\ncom.example.b", encoding="utf-8")

    annotate_app_versions(path, lambda name: None, line_terminator="\r\n")

    assert path.read_bytes() == b"com.example.a\r\n\r\ncom.example.b\r\n"


def test_write_app_versions_tolerates_missing_file(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert write_app_versions(tmp_path, _lookup({})) is None
    assert "Error occurred while writing the version number" in capsys.readouterr().err


def test_undecodable_lines_survive_rewrite(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / APP_NAME_FILE
    path.write_bytes(b"com.example.mail\n\xff\xfebad\n")

    written = write_app_versions(tmp_path, _lookup({"com.example.mail": "4.1"}))

    assert written == 2
    assert path.read_bytes().splitlines() == [b"com.example.mail 4.1", b"\xff\xfebad"]
    assert "can not be found" in capsys.readouterr().err
