"""Command line entry point."""

from __future__ import annotations

import json

import pytest

from route_engine.engine import RouteEngine
from route_engine.main import main

from conftest import add_tracks, crossing_tracks


@pytest.fixture
def store_path(tmp_path):
    return str(tmp_path / "cli.db")


def _seed(path: str) -> None:
    engine = RouteEngine()
    engine.initialize(path)
    try:
        add_tracks(engine, crossing_tracks())
    finally:
        engine.close()


def test_stats_on_empty_store(store_path, capsys) -> None:
    assert main(["--store", store_path, "stats"]) == 0
    out = capsys.readouterr().out
    assert "activityCount: 0" in out
    assert "sectionCount: 0" in out


def test_detect_then_list_sections(store_path, capsys) -> None:
    _seed(store_path)
    assert main(["--store", store_path, "detect"]) == 0
    capsys.readouterr()

    assert main(["--store", store_path, "sections", "--json"]) == 0
    listed = json.loads(capsys.readouterr().out)
    assert len(listed) == 1
    assert listed[0]["activityCount"] == 2
    assert listed[0]["name"] == "Run section 1"

    assert main(["--store", store_path, "sections"]) == 0
    line = capsys.readouterr().out.strip()
    assert line.startswith(listed[0]["id"])
    assert "2 activities" in line


def test_groups_and_cleanup(store_path, capsys) -> None:
    _seed(store_path)
    assert main(["--store", store_path, "groups", "--json"]) == 0
    assert json.loads(capsys.readouterr().out) == []
    assert main(["--store", store_path, "cleanup", "--days", "0"]) == 0
    assert main(["--store", store_path, "stats"]) == 0
    assert "activityCount: 2" in capsys.readouterr().out


def test_unknown_command_exits() -> None:
    with pytest.raises(SystemExit):
        main(["frobnicate"])
