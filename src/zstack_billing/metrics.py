from typing import Sequence

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    push_to_gateway,
)

from zstack_billing.models import BillingRecord

PUSH_JOB_NAME = "zstack_billing"


class MetricsUpdater:
    """
    records what each run loaded into Prometheus metrics. Runs are
    short-lived batch jobs, so the registry is pushed to a push
    gateway at the end of a run instead of being scraped.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._records: "Counter" = Counter(
            "zstack_billing_records_total",
            "Billing records loaded into the warehouse",
            ["spending_type"],
            registry=registry,
        )
        self._cost: "Counter" = Counter(
            "zstack_billing_cost_total",
            "Sum of the cost of loaded billing records",
            ["spending_type"],
            registry=registry,
        )
        self._unpriced: "Counter" = Counter(
            "zstack_billing_unpriced_records_total",
            "Inventory records loaded without a matching price entry",
            ["spending_type"],
            registry=registry,
        )
        self._dates: "Counter" = Counter(
            "zstack_billing_dates_total",
            "Billing dates processed by outcome",
            ["status"],
            registry=registry,
        )
        self._duration: "Histogram" = Histogram(
            "zstack_billing_collect_duration_seconds",
            "Duration of a single billing date collection",
            registry=registry,
        )
        self._last_success: "Gauge" = Gauge(
            "zstack_billing_last_success_timestamp_seconds",
            "Unix timestamp of the last successfully collected date",
            registry=registry,
        )

    @property
    def registry(self) -> "CollectorRegistry":
        return self._registry

    def record_loaded(self, records: "Sequence[BillingRecord]") -> "None":
        for record in records:
            self._records.labels(spending_type=record.spending_type).inc()
            self._cost.labels(spending_type=record.spending_type).inc(max(record.cost, 0.0))
            if record.inventory_type and record.resource_unit is None:
                self._unpriced.labels(spending_type=record.spending_type).inc()

    def record_date(self, status: "str", duration_seconds: "float") -> "None":
        self._dates.labels(status=status).inc()
        self._duration.observe(duration_seconds)

    def set_last_success(self, timestamp: "float") -> "None":
        self._last_success.set(timestamp)

    def push(self, gateway: "str", job: "str" = PUSH_JOB_NAME) -> "None":
        push_to_gateway(gateway, job=job, registry=self._registry)
