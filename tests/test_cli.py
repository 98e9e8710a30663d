import json

import pytest

import main as cli

from conftest import build_flac


@pytest.fixture
def argv_base(tmp_path):
    return [
        "--config", str(tmp_path / "config.toml"),
        "--snapshot", str(tmp_path / "snapshot.json"),
        "--log-level", "ERROR",
    ]


@pytest.fixture
def music(tmp_path):
    root = tmp_path / "music"
    root.mkdir()
    (root / "one.flac").write_bytes(build_flac({"TITLE": "One", "ARTIST": "Band", "ALBUM": "Record"}))
    return root


def test_scan_then_show_and_export(argv_base, music, tmp_path, capsys):
    assert cli.main(argv_base + ["scan", str(music), "--workers", "2"]) == cli.EXIT_OK
    assert (tmp_path / "snapshot.json").exists()
    capsys.readouterr()

    assert cli.main(argv_base + ["show", str(music / "one.flac")]) == cli.EXIT_OK
    shown = json.loads(capsys.readouterr().out)
    assert shown["title"] == "One"
    assert shown["cover"] is None

    assert cli.main(argv_base + ["export"]) == cli.EXIT_OK
    exported = json.loads(capsys.readouterr().out)
    assert [v["title"] for v in exported.values()] == ["One"]


def test_show_unknown_path(argv_base, music):
    assert cli.main(argv_base + ["show", str(music / "nope.flac")]) == cli.EXIT_NOTHING_FOUND


def test_scan_empty_directory(argv_base, tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    assert cli.main(argv_base + ["scan", str(empty)]) == cli.EXIT_NOTHING_FOUND


def test_scan_without_roots(argv_base):
    assert cli.main(argv_base + ["scan"]) == cli.EXIT_USAGE


def test_no_command_prints_help(argv_base, capsys):
    assert cli.main(argv_base) == cli.EXIT_USAGE
    assert "usage" in capsys.readouterr().out


def test_write_config(argv_base, tmp_path, capsys):
    assert cli.main(argv_base + ["--write-config"]) == cli.EXIT_OK
    assert (tmp_path / "config.toml").exists()
    assert "Config written to" in capsys.readouterr().out
