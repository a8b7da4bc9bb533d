"""Smoke tests for the command line entry point."""

from __future__ import annotations

from datetime import timedelta
import json
from pathlib import Path

import pytest

from conftest import WINDOW_END, WINDOW_START, make_gpx, make_line
from stage_challenge.db import ChallengeStore
from stage_challenge.main import main
from stage_challenge.polyline_codec import encode


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    assert main(["--database-url", url, "init-db"]) == 0
    return url


@pytest.fixture
def cli_store(database_url: str):
    store = ChallengeStore.from_url(database_url)
    yield store
    store.dispose()


def _last_json(capsys) -> dict:
    return json.loads(capsys.readouterr().out)


def test_full_cycle(database_url, cli_store, tmp_path: Path, capsys) -> None:
    challenge = cli_store.add_challenge("CLI", WINDOW_START, WINDOW_END, is_active=True)
    cli_store.add_participant("runner-1", challenge.id)
    routes_dir = tmp_path / "routes"
    routes_dir.mkdir()
    (routes_dir / "stage-1.gpx").write_text(make_gpx(make_line(50)), encoding="utf-8")

    assert main([
        "--database-url", database_url,
        "sync-routes", "--challenge-id", str(challenge.id), "--routes-dir", str(routes_dir),
    ]) == 0
    assert _last_json(capsys)["stages"] == [1]

    route = cli_store.list_routes(challenge.id)[0]
    encoded = encode(make_line(50))
    assert main([
        "--database-url", database_url,
        "match", "--route-id", str(route.id), "--polyline", encoded,
    ]) == 0
    assert _last_json(capsys)["matched"] is True

    cli_store.add_activity("runner-1", encoded, WINDOW_START + timedelta(days=1), 1234)
    assert main(["--database-url", database_url, "process"]) == 0
    summary = _last_json(capsys)
    assert summary["status"] == "ok"
    assert summary["improved"] == 1

    output = tmp_path / "winners.xlsx"
    assert main([
        "--database-url", database_url,
        "export", "--challenge-id", str(challenge.id), "--output", str(output),
    ]) == 0
    assert output.is_file()


def test_process_without_active_challenge(database_url, capsys) -> None:
    assert main(["--database-url", database_url, "process"]) == 0
    assert _last_json(capsys)["status"] == "no_active_challenge"


def test_match_unknown_route_fails(database_url) -> None:
    assert main([
        "--database-url", database_url,
        "match", "--route-id", "99", "--polyline", encode(make_line(3)),
    ]) == 1


def test_sync_without_slug_or_directory_fails(database_url, cli_store) -> None:
    challenge = cli_store.add_challenge("No slug", WINDOW_START, WINDOW_END)
    assert main([
        "--database-url", database_url,
        "sync-routes", "--challenge-id", str(challenge.id),
    ]) == 1


def test_sync_missing_directory_fails(database_url, cli_store, tmp_path: Path) -> None:
    challenge = cli_store.add_challenge("Missing", WINDOW_START, WINDOW_END)
    assert main([
        "--database-url", database_url,
        "sync-routes", "--challenge-id", str(challenge.id),
        "--routes-dir", str(tmp_path / "absent"),
    ]) == 1
