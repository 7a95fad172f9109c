"""SMS Sync process entry-point.

Usage:
    python -m smssync [--log-level LEVEL] [--log-format FORMAT] COMMAND ...

Commands:
    run                          sweep continuously (default)
    sweep                        run one sweep and exit
    rent PROVIDER SERVICE        lease a number
    extend RENTAL_ID HOURS       extend a rental
    cancel RENTAL_ID             cancel a rental (messages are kept)
    sync RENTAL_ID               fetch a rental's messages now
    export RENTAL_ID             print a rental's messages as CSV
    list                         list rentals
    messages RENTAL_ID           print a rental's messages, newest first
    catalog PROVIDER             print a provider's services and countries

This module stays thin: it configures logging first, then hands off to
``smssync.orchestrator``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from smssync.core import configure_logging
from smssync.core.exceptions import BackingOff, ConfigError, SmsSyncError
from smssync.core.models import Provider
from smssync.core.settings import Settings

logger = logging.getLogger("smssync")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smssync",
        description="Rent virtual numbers from several SMS providers and keep their inboxes in sync.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Sweep all active rentals continuously.")
    sub.add_parser("sweep", help="Run a single sweep and exit.")

    providers = [p.value for p in Provider]
    rent = sub.add_parser("rent", help="Lease a number.")
    rent.add_argument("provider", choices=providers)
    rent.add_argument(
        "service",
        help="Service code (e.g. wa); for receive_sms_online the private inbox URL.",
    )
    rent.add_argument("--hours", type=int, default=168, help="Lease length in hours (default: 168).")
    rent.add_argument("--country", default=None, help="Country code; provider default when omitted.")
    rent.add_argument("--assignee", default=None, help="Owner to assign the number to.")

    extend = sub.add_parser("extend", help="Extend a rental.")
    extend.add_argument("rental_id")
    extend.add_argument("hours", type=int)

    for name, text in (
        ("cancel", "Cancel a rental; its messages are kept."),
        ("sync", "Fetch a rental's messages now."),
        ("messages", "Print a rental's messages, newest first."),
    ):
        cmd = sub.add_parser(name, help=text)
        cmd.add_argument("rental_id")

    export = sub.add_parser("export", help="Print a rental's messages as CSV.")
    export.add_argument("rental_id")
    export.add_argument("-o", "--output", default=None, help="Write to this file instead of stdout.")

    list_cmd = sub.add_parser("list", help="List rentals, newest first.")
    list_cmd.add_argument("--assignee", default=None)

    catalog = sub.add_parser("catalog", help="Print a provider's services and countries.")
    catalog.add_argument("provider", choices=providers)
    return parser


async def _run_command(args: argparse.Namespace, settings: Settings) -> int:
    from smssync.orchestrator.runner import open_service  # noqa: PLC0415

    async with open_service(settings) as service:
        if args.command == "sweep":
            stats = await service.engine.sweep()
            print(stats.format_report())  # noqa: T201
        elif args.command == "rent":
            rental = await service.rent(args.provider, args.service, args.hours, args.country, args.assignee)
            print(f"{rental.id}\t{rental.phone_number}\tends {rental.end_date.isoformat()}")  # noqa: T201
        elif args.command == "extend":
            rental = await service.extend(args.rental_id, args.hours)
            print(f"{rental.id}\tends {rental.end_date.isoformat()}")  # noqa: T201
        elif args.command == "cancel":
            await service.cancel(args.rental_id)
            print(f"{args.rental_id}\tcanceled")  # noqa: T201
        elif args.command == "sync":
            count = await service.sync(args.rental_id)
            print(f"{count} new message(s)")  # noqa: T201
        elif args.command == "export":
            text = await service.export(args.rental_id)
            if args.output:
                with open(args.output, "w", encoding="utf-8", newline="") as fh:
                    fh.write(text)
            else:
                sys.stdout.write(text)
        elif args.command == "list":
            for rental in await service.list_rentals(args.assignee):
                print(  # noqa: T201
                    f"{rental.id}\t{rental.provider}\t{rental.phone_number}\t"
                    f"{rental.status}\t{rental.end_date.isoformat()}\t{rental.assignee or '-'}"
                )
        elif args.command == "messages":
            for message in await service.messages(args.rental_id):
                code = f" [{message.verification_code}]" if message.verification_code else ""
                print(f"{message.received_at.isoformat()}\t{message.sender}\t{message.body}{code}")  # noqa: T201
        elif args.command == "catalog":
            result = await service.catalog(args.provider)
            if result.is_fallback:
                print("# provider unreachable; built-in table shown", file=sys.stderr)  # noqa: T201
            for entry in result.entries:
                price = f"{entry.price:.2f}" if entry.price is not None else "-"
                print(f"{entry.service}\t{entry.country}\t{price}\t{entry.service_name}")  # noqa: T201
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = _build_parser().parse_args(argv)

    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"smssync: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    try:
        settings = Settings()
    except ValueError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)

    command = args.command or "run"
    try:
        if command == "run":
            from smssync.orchestrator.scheduler import run_continuous  # noqa: PLC0415

            logger.info("Running continuous sweeps (Ctrl+C to stop).")
            asyncio.run(run_continuous(settings))
        else:
            args.command = command
            sys.exit(asyncio.run(_run_command(args, settings)))
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    except BackingOff as exc:
        print(f"smssync: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(3)
    except SmsSyncError as exc:
        print(f"smssync: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")
        sys.exit(0)
    except asyncio.CancelledError:
        logger.info("Shutdown complete; exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
