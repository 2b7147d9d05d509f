from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest

from main import main, parse_args
from review_consensus.db.database import Database
from review_consensus.db.repositories import ProjectRepository
from review_consensus.models import ConsensusPolicy, ProjectRole
from review_consensus.utils.logging_config import ROOT_LOGGER_NAME


@pytest.fixture(autouse=True)
def _detach_console_handlers():
    yield
    logging.getLogger(ROOT_LOGGER_NAME).handlers.clear()


@pytest.fixture
def config_file(tmp_path) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(
        f"database_path: {tmp_path / 'cli.db'}\nlogging:\n  level: minimal\n  structured_log_dir: null\n",
        encoding="utf-8",
    )
    return str(path)


@pytest.fixture
def seeded_project(tmp_path) -> str:
    """A project with one lead and one study in the CLI database."""

    async def _seed() -> None:
        database = Database(str(tmp_path / "cli.db"))
        async with database.connect() as db:
            repo = ProjectRepository(db)
            await repo.create_project("proj-1", ConsensusPolicy(), name="CLI review")
            await repo.add_member("proj-1", "lee", ProjectRole.LEAD)
            await repo.attach_work("proj-1", "work-1", "pw-1")

    asyncio.run(_seed())
    return "proj-1"


def test_parser_commands() -> None:
    assert parse_args(["counts", "proj-1", "--user", "lee"]).command == "counts"
    parsed = parse_args(["progress", "proj-1", "FULL_TEXT", "--user", "lee"])
    assert parsed.phase == "FULL_TEXT"
    assert parsed.user == "lee"
    with pytest.raises(SystemExit):
        parse_args(["progress", "proj-1", "ABSTRACT", "--user", "lee"])
    with pytest.raises(SystemExit):
        parse_args(["audit", "pw-1"])
    with pytest.raises(SystemExit):
        parse_args([])


def test_init_db_creates_database(config_file, tmp_path, capsys) -> None:
    main(["--config", config_file, "init-db"])
    assert Path(tmp_path / "cli.db").exists()
    assert "Database ready" in capsys.readouterr().out


def test_counts_for_new_project(config_file, seeded_project, capsys) -> None:
    main(["--config", config_file, "counts", seeded_project, "--user", "lee"])
    out = capsys.readouterr().out
    assert "Phase counts" in out
    assert "Pending" in out


def test_counts_for_unknown_project_exit_nonzero(config_file, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", config_file, "counts", "no-such-project", "--user", "lee"])
    assert excinfo.value.code == 1
    assert "NOT_FOUND" in capsys.readouterr().out


def test_progress_for_undecided_phase(config_file, seeded_project, capsys) -> None:
    main(["--config", config_file, "progress", seeded_project, "TITLE_ABSTRACT", "--user", "lee"])
    assert "0/1 decided" in capsys.readouterr().out


def test_audit_requires_membership(config_file, seeded_project, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", config_file, "audit", "pw-1", "--user", "mallory"])
    assert excinfo.value.code == 1
    assert "FORBIDDEN" in capsys.readouterr().out


def test_conflict_stats_for_new_project(config_file, seeded_project, capsys) -> None:
    main(["--config", config_file, "conflict-stats", seeded_project, "--user", "lee"])
    out = capsys.readouterr().out
    assert "Conflict statistics" in out
    assert "Escalated" in out


def test_invalid_log_level_exits(tmp_path, capsys) -> None:
    path = tmp_path / "loud.yaml"
    path.write_text("logging:\n  level: loud\n", encoding="utf-8")
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(path), "init-db"])
    assert excinfo.value.code == 2
    assert "Configuration error" in capsys.readouterr().out


def test_engine_errors_exit_nonzero(config_file, capsys) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", config_file, "conflicts", "proj-1", "--user", "mallory"])
    assert excinfo.value.code == 1
    assert "FORBIDDEN" in capsys.readouterr().out


def test_missing_config_exits(tmp_path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(tmp_path / "absent.yaml"), "init-db"])
    assert excinfo.value.code == 2
