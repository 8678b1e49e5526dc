import argparse

from zstack_billing.config import Config

COMMANDS = ("daily", "date", "month", "previous-month", "check-auth", "schema")


def parse_args(argv: "list[str] | None" = None) -> "tuple[Config, argparse.Namespace]":
    parser = argparse.ArgumentParser(
        prog="zstack-billing",
        description="Load ZStack account spending into BigQuery",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("daily", help="Collect yesterday in the configured time zone")

    date_cmd = sub.add_parser("date", help="Collect a single billing date")
    date_cmd.add_argument("date", metavar="YYYY-MM-DD")

    month_cmd = sub.add_parser("month", help="Collect every day of a month")
    month_cmd.add_argument(
        "year_month",
        metavar="YYYY-MM",
        nargs="?",
        default=None,
        help="Month to collect (default: COLLECT_MONTH)",
    )

    sub.add_parser("previous-month", help="Collect every day of the previous month")
    sub.add_parser("check-auth", help="Resolve credentials without loading anything")
    sub.add_parser("schema", help="Print the destination table schema")

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.log_level = args.log_level
    if args.command == "month" and not args.year_month:
        args.year_month = config.collect_month
    return config, args
