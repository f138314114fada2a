import argparse
import asyncio
import io
import json
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest

from hns_sync import cli
from hns_sync import config as config_module
from hns_sync.common.json_logger import JsonLogger
from hns_sync.config import ConfigError
from hns_sync.hughesnet.errors import SessionExpiredError, SyncFailedError, SyncLockError
from hns_sync.hughesnet.models import ImportResult, PayRates, SyncResult, TripSettings
from hns_sync.hughesnet.service import SyncStores

FAKE_CONFIG = SimpleNamespace(database_url="sqlite+aiosqlite:///:memory:", alembic_config="alembic.ini")


class FakeService:
    def __init__(self, *, error: Exception | None = None, connected: bool = True) -> None:
        self.stores = SyncStores.in_memory()
        self.error = error
        self.connected = connected
        self.calls: list[tuple] = []

    async def sync(self, user_id, pay_rates, **kwargs):
        self.calls.append(("sync", user_id, pay_rates, kwargs))
        if self.error is not None:
            raise self.error
        return SyncResult(orders=[], incomplete=False, trips_written=["2026-10-16"])

    async def connect(self, user_id, username, password):
        self.calls.append(("connect", user_id, username, password))
        return self.connected

    async def import_archived(self, user_id, order_ids):
        self.calls.append(("import", user_id, order_ids))
        return ImportResult(imported=["555"], imported_dates=["2026-10-16"])


def _patch(monkeypatch, service, *, config_error: bool = False):
    def fake_load_config():
        if config_error:
            raise ConfigError("Missing required environment variable: SECRET_KEY")
        return FAKE_CONFIG

    @asynccontextmanager
    async def fake_open_service(app_config, logger):
        assert app_config is FAKE_CONFIG
        yield service

    monkeypatch.setattr(config_module, "load_config", fake_load_config)
    monkeypatch.setattr(cli, "open_service", fake_open_service)
    monkeypatch.setattr(
        cli,
        "get_logger",
        lambda run_id: JsonLogger(run_id=run_id, stream=io.StringIO(), log_file_path=None),
    )


def _sync_args(**overrides):
    values = dict(
        command="sync",
        user="u1",
        run_id="run-test",
        skip_scan=False,
        recent_only=True,
        force_dates=["2026-10-16"],
        pay_rates='{"install_pay": 100}',
    )
    values.update(overrides)
    return argparse.Namespace(**values)


def test_sync_command_prints_result(monkeypatch, capsys):
    service = FakeService()
    _patch(monkeypatch, service)

    result = asyncio.run(cli._run_async(_sync_args()))

    assert result == cli.EXIT_OK
    assert json.loads(capsys.readouterr().out)["trips_written"] == ["2026-10-16"]
    _, user_id, pay_rates, kwargs = service.calls[0]
    assert user_id == "u1"
    assert pay_rates == {"install_pay": 100}
    assert kwargs == {"skip_scan": False, "recent_only": True, "force_dates": ["2026-10-16"]}


def test_sync_uses_stored_pay_rates_when_not_given(monkeypatch):
    service = FakeService()
    _patch(monkeypatch, service)
    stored = TripSettings(pay_rates=PayRates(repair_pay=55))
    asyncio.run(service.stores.settings.put("settings:u1", stored.model_dump_json()))

    result = asyncio.run(cli._run_async(_sync_args(pay_rates=None, force_dates=None)))

    assert result == cli.EXIT_OK
    _, _, pay_rates, kwargs = service.calls[0]
    assert pay_rates.repair_pay == 55
    assert kwargs["force_dates"] == ()


@pytest.mark.parametrize(
    "error, expected",
    [
        (SyncLockError("u1"), cli.EXIT_LOCK_OR_SESSION),
        (SessionExpiredError(), cli.EXIT_LOCK_OR_SESSION),
        (SyncFailedError("Sync failed: boom", rolled_back=True), cli.EXIT_FAILED),
        (RuntimeError("unexpected"), cli.EXIT_FAILED),
    ],
)
def test_sync_errors_map_to_exit_codes(monkeypatch, error, expected):
    _patch(monkeypatch, FakeService(error=error))

    assert asyncio.run(cli._run_async(_sync_args())) == expected


def test_invalid_pay_rates_json_fails(monkeypatch):
    service = FakeService()
    _patch(monkeypatch, service)

    assert asyncio.run(cli._run_async(_sync_args(pay_rates="{not json"))) == cli.EXIT_FAILED
    assert service.calls == []


def test_config_error_fails_before_opening_service(monkeypatch):
    service = FakeService()
    _patch(monkeypatch, service, config_error=True)

    assert asyncio.run(cli._run_async(_sync_args())) == cli.EXIT_FAILED
    assert service.calls == []


def test_connect_reads_password_and_reports_failure(monkeypatch):
    service = FakeService(connected=False)
    _patch(monkeypatch, service)
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt: "hunter2")
    args = argparse.Namespace(command="connect", user="u1", run_id=None, username="tech")

    assert asyncio.run(cli._run_async(args)) == cli.EXIT_LOCK_OR_SESSION
    assert service.calls == [("connect", "u1", "tech", "hunter2")]


def test_import_archived_passes_ids(monkeypatch, capsys):
    service = FakeService()
    _patch(monkeypatch, service)
    args = cli.build_parser().parse_args(["import-archived", "--user", "u1", "555", "556"])

    assert asyncio.run(cli._run_async(args)) == cli.EXIT_OK
    assert service.calls == [("import", "u1", ["555", "556"])]
    assert json.loads(capsys.readouterr().out)["imported"] == ["555"]


def test_parser_reads_sync_flags():
    args = cli.build_parser().parse_args(
        ["sync", "--user", "u1", "--skip-scan", "--force-date", "2026-10-15", "--force-date", "2026-10-16"]
    )

    assert args.skip_scan is True
    assert args.recent_only is False
    assert args.force_dates == ["2026-10-15", "2026-10-16"]
    assert args.pay_rates is None


def test_main_rejects_bad_arguments():
    with pytest.raises(SystemExit):
        cli.main(["sync"])

    with pytest.raises(SystemExit):
        cli.main(["crawl", "--user", "u1"])


def test_db_upgrade_runs_alembic(monkeypatch):
    observed = {}
    monkeypatch.setattr(config_module, "load_config", lambda: FAKE_CONFIG)
    monkeypatch.setattr(cli, "run_alembic_upgrade", lambda **kwargs: observed.update(kwargs))

    assert cli.main(["db", "upgrade"]) == cli.EXIT_OK
    assert observed == {
        "revision": "head",
        "database_url": FAKE_CONFIG.database_url,
        "alembic_config_path": "alembic.ini",
    }
