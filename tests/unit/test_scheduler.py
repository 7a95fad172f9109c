"""Unit tests for wiring, the sweep loop and the CLI.

Tests cover:
- ``sweep_loop`` heartbeat writes and survival of a failing sweep.
- ``build_adapters`` / ``close_adapters`` from settings.
- ``open_service`` / ``run_sweep_once`` against a temporary database.
- CLI parsing and exit codes.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from smssync.__main__ import _build_parser, main
from smssync.core.models import Provider
from smssync.core.settings import Settings
from smssync.orchestrator.backoff import SyncStateRegistry
from smssync.orchestrator.runner import open_service, run_sweep_once
from smssync.orchestrator.scheduler import sweep_loop
from smssync.orchestrator.sync import SweepStats
from smssync.providers.api.gogetsms import GoGetSmsAdapter
from smssync.providers.api.smspva import SmspvaAdapter
from smssync.providers.registry import build_adapters, close_adapters
from smssync.providers.scraping.receive_sms_online import ReceiveSmsOnlineAdapter


class _FlakyEngine:
    """Engine stand-in whose first sweep raises."""

    def __init__(self) -> None:
        self.sweeps = 0
        self.states = SyncStateRegistry()

    async def sweep(self) -> SweepStats:
        self.sweeps += 1
        if self.sweeps == 1:
            raise RuntimeError("database is locked")
        return SweepStats()


# ---------------------------------------------------------------------------
# Sweep loop
# ---------------------------------------------------------------------------


class TestSweepLoop:
    async def test_runs_max_sweeps_and_writes_heartbeat(self, tmp_path) -> None:
        engine = _FlakyEngine()
        slept: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            slept.append(seconds)

        heartbeat = tmp_path / "heartbeat"
        count = await sweep_loop(engine, 120, heartbeat_path=str(heartbeat), max_sweeps=3, sleep=fake_sleep)

        assert count == 3
        assert engine.sweeps == 3
        assert slept == [120, 120]
        assert float(heartbeat.read_text(encoding="utf-8")) > 0

    async def test_failed_sweep_is_logged_and_loop_continues(self, caplog) -> None:
        engine = _FlakyEngine()

        async def fake_sleep(seconds: float) -> None:
            return None

        with caplog.at_level("ERROR", logger="smssync.orchestrator.scheduler"):
            count = await sweep_loop(engine, 1, heartbeat_path=None, max_sweeps=2, sleep=fake_sleep)

        assert count == 2
        assert "Sweep failed" in caplog.text

    async def test_unwritable_heartbeat_is_not_fatal(self, tmp_path) -> None:
        engine = _FlakyEngine()
        engine.sweeps = 1
        path = tmp_path / "missing-dir" / "heartbeat"
        assert await sweep_loop(engine, 1, heartbeat_path=str(path), max_sweeps=1) == 1
        assert not path.exists()


# ---------------------------------------------------------------------------
# Adapter factory
# ---------------------------------------------------------------------------


class TestBuildAdapters:
    async def test_only_scraper_without_keys(self, clean_env) -> None:
        adapters = build_adapters(Settings())
        try:
            assert list(adapters) == [Provider.RECEIVE_SMS_ONLINE]
            assert isinstance(adapters[Provider.RECEIVE_SMS_ONLINE], ReceiveSmsOnlineAdapter)
        finally:
            await close_adapters(adapters.values())

    async def test_keys_enable_adapters(self, clean_env) -> None:
        adapters = build_adapters(Settings(smspva_api_key="k1", gogetsms_api_key="k2"))
        try:
            assert set(adapters) == {Provider.SMSPVA, Provider.GOGETSMS, Provider.RECEIVE_SMS_ONLINE}
            assert isinstance(adapters[Provider.SMSPVA], SmspvaAdapter)
            assert isinstance(adapters[Provider.GOGETSMS], GoGetSmsAdapter)
        finally:
            await close_adapters(adapters.values())

    async def test_close_failures_are_logged(self, caplog) -> None:
        broken = MagicMock(provider=Provider.ANOSIM)
        broken.close = AsyncMock(side_effect=RuntimeError("already closed"))
        healthy = MagicMock(provider=Provider.SMSPVA)
        healthy.close = AsyncMock()

        await close_adapters([broken, healthy])

        healthy.close.assert_awaited_once()
        assert "Closing anosim adapter failed" in caplog.text


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


class TestOpenService:
    async def test_service_over_temporary_database(self, clean_env, tmp_path) -> None:
        settings = Settings(database_path=str(tmp_path / "smssync.db"))
        async with open_service(settings) as service:
            assert Provider.RECEIVE_SMS_ONLINE in service.adapters
            assert await service.list_rentals() == []
            stats = await service.engine.sweep()
            assert stats.active == 0
        assert (tmp_path / "smssync.db").exists()

    async def test_run_sweep_once(self, clean_env, tmp_path) -> None:
        stats = await run_sweep_once(Settings(database_path=str(tmp_path / "once.db")))
        assert stats.due == 0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


class TestCli:
    def test_parse_rent(self) -> None:
        args = _build_parser().parse_args(["rent", "smspva", "wa", "--hours", "24", "--country", "DE"])
        assert args.command == "rent"
        assert args.provider == "smspva"
        assert args.hours == 24
        assert args.country == "DE"
        assert args.assignee is None

    def test_parse_defaults(self) -> None:
        args = _build_parser().parse_args([])
        assert args.command is None
        assert _build_parser().parse_args(["rent", "anosim", "wa"]).hours == 168

    def test_parse_export_output(self) -> None:
        args = _build_parser().parse_args(["export", "abc", "-o", "out.csv"])
        assert (args.rental_id, args.output) == ("abc", "out.csv")

    def test_unknown_provider_rejected(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["catalog", "nope"])

    def test_bad_log_level_exits_1(self) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(["--log-level", "LOUD", "list"])
        assert excinfo.value.code == 1

    def test_list_exits_0(self, clean_env, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))
        with pytest.raises(SystemExit) as excinfo:
            main(["--log-level", "WARNING", "list"])
        assert excinfo.value.code == 0

    def test_unknown_rental_exits_2(self, clean_env, tmp_path, monkeypatch, capsys) -> None:
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))
        with pytest.raises(SystemExit) as excinfo:
            main(["--log-level", "WARNING", "sync", "missing"])
        assert excinfo.value.code == 2
        assert "missing" in capsys.readouterr().err
