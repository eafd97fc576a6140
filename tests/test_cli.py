"""Tests for the maintenance CLI."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from factories import make_user
from tripcomposer import __version__
from tripcomposer.cli.commands import app
from tripcomposer.config import Settings
from tripcomposer.database import close_db, get_session, init_db
from tripcomposer.security.tokens import decode_access_token

runner = CliRunner()


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    """Point every command at a throwaway SQLite file."""
    import tripcomposer.database as db

    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setattr(db, "get_settings", lambda: Settings(database_url=url, _env_file=None))
    monkeypatch.setattr(db, "_engine", None)
    monkeypatch.setattr(db, "_session_factory", None)


def _seed_user() -> str:
    async def _seed():
        await init_db()
        try:
            async with get_session() as session:
                user = await make_user(session)
            return user.id
        finally:
            await close_db()

    return asyncio.run(_seed())


class TestGeneralCommands:
    def test_version(self) -> None:
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_status_lists_jobs(self) -> None:
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "TripComposer Status" in result.output
        assert "Scheduled Jobs" in result.output

    def test_peak_season_disabled_by_default(self) -> None:
        result = runner.invoke(app, ["peak-season", "--date", "2026-12-24"])
        assert result.exit_code == 0
        assert "No peak periods active." in result.output

    def test_peak_season_rejects_bad_date(self) -> None:
        result = runner.invoke(app, ["peak-season", "--date", "24/12/2026"])
        assert result.exit_code == 1
        assert "Invalid date" in result.output


class TestTokenCommand:
    """Tests for development token minting."""

    def test_mints_token_for_existing_user(self) -> None:
        user_id = _seed_user()
        result = runner.invoke(app, ["token", user_id, "--minutes", "5"])
        assert result.exit_code == 0

        identity = decode_access_token(result.output.strip().replace("\n", ""))
        assert identity.sub == user_id
        assert identity.role == "USER"

    def test_unknown_user(self) -> None:
        result = runner.invoke(app, ["token", "nobody"])
        assert result.exit_code == 1

    def test_refuses_in_production(self, monkeypatch) -> None:
        import tripcomposer.config as config

        monkeypatch.setattr(config, "get_settings", lambda: MagicMock(is_production=True))
        result = runner.invoke(app, ["token", "anyone"])
        assert result.exit_code == 1
        assert "Refusing" in result.output


class TestMaintenanceCommands:
    """Workload and trust maintenance on an empty marketplace."""

    def test_workload_stats(self) -> None:
        result = runner.invoke(app, ["workload", "stats"])
        assert result.exit_code == 0
        assert "Advisor Workload" in result.output

    def test_workload_reset_weekly(self) -> None:
        result = runner.invoke(app, ["workload", "reset", "--weekly"])
        assert result.exit_code == 0
        assert "Daily counters reset for 0 advisors" in result.output
        assert "Weekly counters reset for 0 advisors" in result.output

    def test_end_vacations(self) -> None:
        result = runner.invoke(app, ["workload", "end-vacations"])
        assert result.exit_code == 0
        assert "Ended 0 expired vacations" in result.output

    def test_trust_decay_and_refresh(self) -> None:
        assert "Decay applied to 0 agent scores" in runner.invoke(app, ["trust", "decay"]).output
        result = runner.invoke(app, ["trust", "refresh-response-times"])
        assert "Response metrics refreshed for 0 agents" in result.output

    def test_missing_score(self) -> None:
        result = runner.invoke(app, ["trust", "score", "agent-404"])
        assert result.exit_code == 1
        assert "No score found" in result.output
