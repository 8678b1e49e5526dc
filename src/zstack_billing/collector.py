import calendar
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

import structlog

from zstack_billing.auth import CredentialResolver
from zstack_billing.config import Config
from zstack_billing.context import RunContext
from zstack_billing.errors import InvalidDateError
from zstack_billing.metrics import MetricsUpdater
from zstack_billing.models import BillingWindow, CollectResult, DayOutcome
from zstack_billing.normalizer import normalize, parse_spending
from zstack_billing.provider.base import ZStackApi
from zstack_billing.reference import ReferenceDataFetcher
from zstack_billing.warehouse import WarehouseLoader

logger = structlog.get_logger()

_YEAR_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


class Collector:
    """
    Collector is responsible for orchestrating billing collection:
    it resolves credentials once per run, fetches the spending for a
    billing date, normalizes it against the reference data and
    replaces that date's rows in the warehouse.

    Dates are processed strictly one after another. A month backfill
    records a per-day outcome instead of stopping at the first
    failing day, pausing between days to stay under upstream rate
    limits.
    """

    def __init__(
        self,
        config: "Config",
        api: "ZStackApi",
        resolver: "CredentialResolver",
        loader: "WarehouseLoader",
        metrics: "MetricsUpdater",
        sleep: "Callable[[float], None]" = time.sleep,
        now: "Callable[[], datetime]" = _utcnow,
    ) -> "None":
        self._config = config
        self._api = api
        self._resolver = resolver
        self._loader = loader
        self._metrics = metrics
        self._fetcher = ReferenceDataFetcher(api)
        self._sleep = sleep
        self._now = now
        self._tz = ZoneInfo(config.timezone)

    def start_run(self) -> "RunContext":
        """
        resolves credentials and opens a fresh run context.
        """
        auth = self._resolver.resolve()
        logger.info("run_started", account_uuid=auth.account_uuid, auth_mode=auth.mode.value)
        return RunContext(auth=auth)

    def collect_for_date(
        self,
        date_str: "str",
        ctx: "RunContext | None" = None,
    ) -> "CollectResult":
        """
        collects one billing date. Re-running a date supersedes the
        rows a previous run loaded for it.
        """
        window = BillingWindow.for_date(date_str, self._config.timezone)
        if ctx is None:
            ctx = self.start_run()

        cycle_start = time.monotonic()
        with structlog.contextvars.bound_contextvars(billing_date=window.billing_date):
            try:
                result = self._collect(window, ctx)
            except Exception:
                self._metrics.record_date("error", time.monotonic() - cycle_start)
                raise

        self._metrics.record_date("ok", time.monotonic() - cycle_start)
        self._metrics.set_last_success(time.time())
        return result

    def _collect(self, window: "BillingWindow", ctx: "RunContext") -> "CollectResult":
        logger.info(
            "collection_start",
            date_start=window.start_ms,
            date_end=window.end_ms,
        )
        self._loader.ensure_table()

        spending = parse_spending(self._api.calculate_spending(ctx.auth, window))
        reference = self._fetcher.load(ctx)
        records = normalize(
            spending,
            window,
            ctx.account_uuid,
            reference,
            collected_at=self._now().isoformat(),
        )

        if not records:
            logger.info("collection_empty", spending_entries=len(spending))
            return CollectResult(date=window.billing_date, rows=0)

        rows = self._loader.replace_for_date(window.billing_date, records)
        self._metrics.record_loaded(records)
        logger.info("collection_end", rows=rows)
        return CollectResult(date=window.billing_date, rows=rows)

    def collect_daily(self) -> "CollectResult":
        """
        collects yesterday, as seen in the configured time zone.
        """
        today = self._now().astimezone(self._tz).date()
        return self.collect_for_date((today - timedelta(days=1)).isoformat())

    def collect_for_month(self, year_month: "str") -> "list[DayOutcome]":
        match = _YEAR_MONTH_RE.match(year_month or "")
        if not match:
            raise InvalidDateError(f"yearMonth must be provided as YYYY-MM, got {year_month!r}")
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            raise InvalidDateError(f"invalid month in {year_month!r}")

        last_day = calendar.monthrange(year, month)[1]
        ctx = self.start_run()
        outcomes: "list[DayOutcome]" = []

        for day in range(1, last_day + 1):
            date_str = f"{year:04d}-{month:02d}-{day:02d}"
            logger.info("month_day_start", date=date_str)
            try:
                result = self.collect_for_date(date_str, ctx)
                outcomes.append(DayOutcome(date=date_str, ok=True, result=result))
            except Exception as exc:
                logger.exception("month_day_failed", date=date_str)
                outcomes.append(DayOutcome(date=date_str, ok=False, error=str(exc)))

            if day < last_day:
                self._sleep(self._config.pacing_seconds)

        failed = sum(1 for o in outcomes if not o.ok)
        logger.info("month_done", year_month=year_month, days=len(outcomes), failed=failed)
        return outcomes

    def collect_for_previous_month(self) -> "list[DayOutcome]":
        first_of_month = self._now().astimezone(self._tz).date().replace(day=1)
        previous = first_of_month - timedelta(days=1)
        return self.collect_for_month(f"{previous.year:04d}-{previous.month:02d}")
