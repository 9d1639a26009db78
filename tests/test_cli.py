"""
tests/test_cli.py -- Command-line administration (main.py).
"""

from __future__ import annotations

import pytest

from main import main


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cli.db'}"


def test_no_command_prints_help(capsys) -> None:
    assert main([]) == 1
    assert "COMMAND" in capsys.readouterr().out


def test_seed_then_list(db_url, capsys) -> None:
    assert main(["--database-url", db_url, "seed"]) == 0
    assert "Roles created: ADMIN, USER" in capsys.readouterr().out

    assert main(["--database-url", db_url, "seed"]) == 0
    out = capsys.readouterr().out
    assert "Roles created: none" in out
    assert "Users created: none" in out

    main(["--database-url", db_url, "list-users"])
    out = capsys.readouterr().out
    assert "admin@example.com" in out
    assert "ADMIN, USER" in out


def test_create_role(db_url, capsys) -> None:
    assert main(["--database-url", db_url, "create-role", "auditor", "--description", "Read-only"]) == 0
    assert "Created role AUDITOR" in capsys.readouterr().out
    main(["--database-url", db_url, "list-roles"])
    assert "Read-only" in capsys.readouterr().out


def test_duplicate_role_reports_error(db_url, capsys) -> None:
    main(["--database-url", db_url, "create-role", "AUDITOR"])
    assert main(["--database-url", db_url, "create-role", "AUDITOR"]) == 1
    assert "already exists" in capsys.readouterr().err
