import json
import sys
from dataclasses import asdict
from typing import Any

import structlog
from google.api_core.exceptions import GoogleAPIError
from google.cloud import bigquery
from prometheus_client import CollectorRegistry

from zstack_billing.auth import CredentialResolver
from zstack_billing.cli import parse_args
from zstack_billing.collector import Collector
from zstack_billing.config import Config
from zstack_billing.errors import BillingError, ConfigError
from zstack_billing.logging import setup_logging
from zstack_billing.metrics import MetricsUpdater
from zstack_billing.provider.zstack import ZStackClient
from zstack_billing.token_cache import TokenCache
from zstack_billing.warehouse import WarehouseLoader

logger = structlog.get_logger()


def _build_client(config: "Config") -> "ZStackClient":
    return ZStackClient(
        base_url=config.api_url,
        billing_path=config.billing_path,
        login_path=config.login_path,
        extra_query=config.extra_query,
        timeout=config.http_timeout,
    )


def _build_loader(config: "Config") -> "WarehouseLoader":
    return WarehouseLoader(
        bigquery.Client(project=config.bq_project),
        config.table_ref,
        strict_delete=config.strict_delete,
    )


def _run(
    command: "str",
    args: "Any",
    config: "Config",
    metrics: "MetricsUpdater",
) -> "tuple[Any, bool]":
    """
    executes one command and returns (printable result, success).
    """
    if command == "schema":
        config.validate_table_ids()
        return _build_loader(config).table_schema(), True

    if command == "check-auth":
        config.validate_api()
        api = _build_client(config)
        try:
            resolver = CredentialResolver(config, api, TokenCache(config.token_cache_path))
            auth = resolver.resolve()
        finally:
            api.close()
        return {"account_uuid": auth.account_uuid, "mode": auth.mode.value}, True

    config.validate()
    api = _build_client(config)
    try:
        collector = Collector(
            config,
            api,
            CredentialResolver(config, api, TokenCache(config.token_cache_path)),
            _build_loader(config),
            metrics,
        )
        if command == "daily":
            return asdict(collector.collect_daily()), True
        if command == "date":
            return asdict(collector.collect_for_date(args.date)), True

        if command == "month":
            if not args.year_month:
                raise ConfigError("Pass YYYY-MM or set COLLECT_MONTH")
            outcomes = collector.collect_for_month(args.year_month)
        else:
            outcomes = collector.collect_for_previous_month()
        return [asdict(o) for o in outcomes], all(o.ok for o in outcomes)
    finally:
        api.close()


def main(argv: "list[str] | None" = None) -> "int":
    try:
        config, args = parse_args(argv)
    except ConfigError as exc:
        raise SystemExit(str(exc)) from exc
    setup_logging(config.log_level, args.log_format)
    metrics = MetricsUpdater(registry=CollectorRegistry())

    try:
        result, ok = _run(args.command, args, config, metrics)
    except (BillingError, GoogleAPIError) as exc:
        logger.error("run_failed", command=args.command, error=str(exc))
        return 1
    finally:
        if config.pushgateway_url:
            try:
                metrics.push(config.pushgateway_url)
            except OSError:
                logger.warning("metrics_push_failed", gateway=config.pushgateway_url, exc_info=True)

    json.dump(result, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
