from __future__ import annotations

import argparse
import asyncio
import getpass
import json
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, List, Optional

from pydantic import ValidationError

from hns_sync.common.db import dispose_engines, run_alembic_upgrade
from hns_sync.common.json_logger import JsonLogger, get_logger, log_event, new_run_id

if TYPE_CHECKING:  # pragma: no cover
    from hns_sync.config import Config
    from hns_sync.hughesnet.service import HughesNetService

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_LOCK_OR_SESSION = 2


@asynccontextmanager
async def open_service(app_config: Config, logger: JsonLogger) -> AsyncIterator[HughesNetService]:
    from hns_sync.hughesnet.fetcher import RequestBudget, open_portal_fetcher
    from hns_sync.hughesnet.service import HughesNetService, SyncStores

    budget = RequestBudget(soft_limit=app_config.soft_request_limit, hard_limit=app_config.hard_request_limit)
    try:
        async with open_portal_fetcher(budget=budget, logger=logger) as fetcher:
            yield HughesNetService(
                SyncStores.from_database(app_config.database_url),
                fetcher,
                logger=logger,
                secret_key=app_config.secret_key,
                portal_base_url=app_config.portal_base_url,
                portal_timezone=app_config.portal_timezone,
                google_api_key=app_config.google_maps_api_key,
                delays_enabled=app_config.crawl_delays_enabled,
            )
    finally:
        await dispose_engines()


def _emit(payload: object) -> None:
    print(json.dumps(payload, default=str, indent=2))


async def _run_sync(service: HughesNetService, args: argparse.Namespace, logger: JsonLogger) -> int:
    from hns_sync.hughesnet.trip_builder import SettingsStore

    if args.pay_rates:
        pay_rates = json.loads(args.pay_rates)
    else:
        settings = await SettingsStore(service.stores.settings, logger=logger).load(args.user)
        pay_rates = settings.pay_rates
    result = await service.sync(
        args.user,
        pay_rates,
        skip_scan=args.skip_scan,
        recent_only=args.recent_only,
        force_dates=args.force_dates or (),
    )
    _emit(
        {
            "incomplete": result.incomplete,
            "orders": len(result.orders),
            "trips_written": result.trips_written,
            "conflicts": [conflict.to_dict() for conflict in result.conflicts],
        }
    )
    return EXIT_OK


async def _dispatch(service: HughesNetService, args: argparse.Namespace, logger: JsonLogger) -> int:
    if args.command == "sync":
        return await _run_sync(service, args, logger)

    if args.command == "connect":
        password = getpass.getpass(f"Portal password for {args.username}: ")
        connected = await service.connect(args.user, args.username, password)
        _emit({"connected": connected})
        return EXIT_OK if connected else EXIT_LOCK_OR_SESSION

    if args.command == "disconnect":
        await service.disconnect(args.user)
        _emit({"disconnected": True})
        return EXIT_OK

    if args.command == "orders":
        orders = await service.get_orders(args.user)
        _emit({order_id: order.to_dict() for order_id, order in sorted(orders.items())})
        return EXIT_OK

    if args.command == "clear-trips":
        removed = await service.clear_all_trips(args.user)
        _emit({"removed": removed})
        return EXIT_OK

    if args.command == "import-archived":
        result = await service.import_archived(args.user, args.order_ids or None)
        _emit(
            {
                "imported": result.imported,
                "skipped": result.skipped,
                "imported_dates": result.imported_dates,
                "truncated": result.truncated,
            }
        )
        return EXIT_OK

    raise ValueError(f"unknown command {args.command}")


async def _run_async(args: argparse.Namespace) -> int:
    from hns_sync.config import ConfigError, load_config
    from hns_sync.hughesnet.errors import SessionExpiredError, SyncFailedError, SyncLockError

    run_id = args.run_id or new_run_id()
    logger = get_logger(run_id=run_id)
    try:
        try:
            app_config = load_config()
        except ConfigError as exc:
            log_event(logger=logger, phase="prereq", status="error", message=str(exc))
            return EXIT_FAILED
        async with open_service(app_config, logger) as service:
            return await _dispatch(service, args, logger)
    except (SyncLockError, SessionExpiredError) as exc:
        log_event(logger=logger, phase="sync", status="error", message=str(exc), exc_type=type(exc).__name__)
        return EXIT_LOCK_OR_SESSION
    except SyncFailedError as exc:
        log_event(
            logger=logger,
            phase="sync",
            status="error",
            message=str(exc),
            rolled_back=exc.rolled_back,
            exc_type=type(exc).__name__,
        )
        return EXIT_FAILED
    except (ValidationError, ValueError) as exc:
        log_event(logger=logger, phase="prereq", status="error", message=f"Invalid input: {exc}")
        return EXIT_FAILED
    except Exception as exc:
        log_event(
            logger=logger,
            phase="sync",
            status="error",
            message="command failed with unexpected error",
            error=str(exc),
            exc_type=type(exc).__name__,
        )
        return EXIT_FAILED
    finally:
        logger.close()


def _add_user(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--user", required=True, help="Account id the data belongs to")
    parser.add_argument("--run-id", dest="run_id", type=str, default=None, help="Override generated run id")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hns_sync", description="HughesNet work-order sync")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Run one sync batch for a user")
    _add_user(sync_parser)
    sync_parser.add_argument("--skip-scan", action="store_true", help="Skip scan and discovery stages")
    sync_parser.add_argument("--recent-only", action="store_true", help="Only resync and rebuild the last 7 days")
    sync_parser.add_argument(
        "--force-date",
        dest="force_dates",
        action="append",
        metavar="YYYY-MM-DD",
        help="Overwrite the trip for this date even if it was edited (repeatable)",
    )
    sync_parser.add_argument(
        "--pay-rates",
        dest="pay_rates",
        default=None,
        help="JSON object of pay rates; defaults to the user's stored settings",
    )

    connect_parser = subparsers.add_parser("connect", help="Store portal credentials and log in")
    _add_user(connect_parser)
    connect_parser.add_argument("--username", required=True, help="Portal username")

    for name, help_text in (
        ("disconnect", "Forget credentials, session and order snapshot"),
        ("orders", "Print the stored order snapshot"),
        ("clear-trips", "Delete engine-created trips and the order snapshot"),
    ):
        _add_user(subparsers.add_parser(name, help=help_text))

    import_parser = subparsers.add_parser("import-archived", help="Restore archived orders into the snapshot")
    _add_user(import_parser)
    import_parser.add_argument("order_ids", nargs="*", help="Order ids; all owned orders when omitted")

    db_parser = subparsers.add_parser("db", help="Database operations")
    db_sub = db_parser.add_subparsers(dest="db_command", required=True)
    upgrade_parser = db_sub.add_parser("upgrade", help="Run Alembic upgrade head")
    upgrade_parser.add_argument("--revision", default="head")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "db" and args.db_command == "upgrade":
        from hns_sync.config import config as runtime_config

        run_alembic_upgrade(
            revision=args.revision,
            database_url=runtime_config.database_url,
            alembic_config_path=runtime_config.alembic_config,
        )
        return EXIT_OK

    return asyncio.run(_run_async(args))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
