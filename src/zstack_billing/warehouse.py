import json
import time
from typing import Any, Callable, Sequence

import structlog
import tenacity
from google.api_core import exceptions as gexc
from google.cloud import bigquery

from zstack_billing.errors import WarehouseError
from zstack_billing.models import BillingRecord

logger = structlog.get_logger()

MAX_INSERT_ATTEMPTS = 3
INSERT_RETRY_DELAY_SECONDS = 3.0

TABLE_FRIENDLY_NAME = "ZStack billing daily"
TABLE_DESCRIPTION = "Daily billing rows imported from ZStack"

BILLING_SCHEMA: "list[bigquery.SchemaField]" = [
    bigquery.SchemaField("billing_date", "DATE"),
    bigquery.SchemaField("account_id", "STRING"),
    bigquery.SchemaField("resource_id", "STRING"),
    bigquery.SchemaField("resource_name", "STRING"),
    bigquery.SchemaField("spending_type", "STRING"),
    bigquery.SchemaField("resource_type", "STRING"),
    bigquery.SchemaField("cpu_core", "INTEGER"),
    bigquery.SchemaField("memory", "INTEGER"),
    bigquery.SchemaField("inventory_type", "STRING"),
    bigquery.SchemaField("resource_used", "FLOAT"),
    bigquery.SchemaField("resource_unit", "STRING"),
    bigquery.SchemaField("cost", "FLOAT"),
    bigquery.SchemaField("date_start_ms", "INTEGER"),
    bigquery.SchemaField("date_end_ms", "INTEGER"),
    bigquery.SchemaField("raw_json", "STRING"),
    bigquery.SchemaField("collected_at", "TIMESTAMP"),
]

# fragments BigQuery uses while a freshly created table is not yet
# visible to the streaming API
_NOT_YET_VISIBLE = ("no schema", "not found")


def classify_error(exc: "Exception") -> "WarehouseError":
    """
    maps a BigQuery client exception to a WarehouseError, flagging
    the eventual-consistency cases right after table creation as
    transient.
    """
    if isinstance(exc, gexc.NotFound):
        return WarehouseError(str(exc), transient=True)
    if isinstance(exc, gexc.BadRequest):
        message = str(exc).lower()
        if any(fragment in message for fragment in _NOT_YET_VISIBLE):
            return WarehouseError(str(exc), transient=True)
    return WarehouseError(str(exc), transient=False)


def _is_transient(exc: "BaseException") -> "bool":
    return isinstance(exc, WarehouseError) and exc.transient


class WarehouseLoader:
    """
    WarehouseLoader owns the destination table. A billing date is
    replaced as a whole: existing rows for the date are deleted, then
    the new batch is streamed in with bounded retries.
    """

    def __init__(
        self,
        client: "bigquery.Client",
        table_ref: "str",
        strict_delete: "bool" = False,
        sleep: "Callable[[float], None]" = time.sleep,
        retry_delay: "float" = INSERT_RETRY_DELAY_SECONDS,
    ) -> "None":
        self._client = client
        self._table_ref = table_ref
        self._strict_delete = strict_delete
        self._sleep = sleep
        self._retry_delay = retry_delay

    @property
    def table_ref(self) -> "str":
        return self._table_ref

    def ensure_table(self) -> "None":
        """
        creates the day-partitioned destination table when missing.
        Creation failures are fatal.
        """
        try:
            self._client.get_table(self._table_ref)
            return
        except gexc.NotFound:
            logger.info("bq_table_missing", table=self._table_ref)

        table = bigquery.Table(self._table_ref, schema=BILLING_SCHEMA)
        table.friendly_name = TABLE_FRIENDLY_NAME
        table.description = TABLE_DESCRIPTION
        table.time_partitioning = bigquery.TimePartitioning(
            type_=bigquery.TimePartitioningType.DAY,
            field="billing_date",
        )
        try:
            self._client.create_table(table)
        except gexc.GoogleAPIError as exc:
            logger.error("bq_table_create_failed", table=self._table_ref, error=str(exc))
            raise WarehouseError(
                f"failed to create table {self._table_ref}: {exc}", transient=False
            ) from exc
        logger.info("bq_table_created", table=self._table_ref)

    def table_schema(self) -> "list[dict[str, Any]]":
        table = self._client.get_table(self._table_ref)
        return [field.to_api_repr() for field in table.schema or []]

    def delete_for_date(self, billing_date: "str") -> "int | None":
        """
        deletes every row of the billing date and returns the number
        of affected rows when BigQuery reports it.
        """
        sql = f"DELETE FROM `{self._table_ref}` WHERE billing_date = @billing_date"
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter("billing_date", "DATE", billing_date)
            ]
        )
        logger.info("bq_delete", table=self._table_ref, billing_date=billing_date)
        job = self._client.query(sql, job_config=job_config)
        job.result()
        deleted = getattr(job, "num_dml_affected_rows", None)
        logger.info("bq_delete_done", billing_date=billing_date, deleted=deleted)
        return deleted

    def replace_for_date(
        self,
        billing_date: "str",
        records: "Sequence[BillingRecord]",
    ) -> "int":
        try:
            self.delete_for_date(billing_date)
        except Exception as exc:
            if self._strict_delete:
                raise WarehouseError(
                    f"delete for {billing_date} failed: {exc}", transient=False
                ) from exc
            # rows may duplicate until the next successful replace
            logger.warning(
                "bq_delete_failed",
                billing_date=billing_date,
                error=str(exc),
                exc_info=True,
            )

        return self.insert(records)

    def insert(self, records: "Sequence[BillingRecord]") -> "int":
        """
        streams the records, retrying row-level rejections and
        not-yet-visible table errors up to MAX_INSERT_ATTEMPTS times.
        Returns the number of inserted rows.
        """
        rows = [record.to_row() for record in records]
        if not rows:
            return 0

        retrying = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(MAX_INSERT_ATTEMPTS),
            wait=tenacity.wait_fixed(self._retry_delay),
            retry=tenacity.retry_if_exception(_is_transient),
            before_sleep=self._before_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._insert_once, rows)

    def _insert_once(self, rows: "list[dict[str, Any]]") -> "int":
        try:
            errors = self._client.insert_rows_json(self._table_ref, rows)
        except gexc.GoogleAPIError as exc:
            error = classify_error(exc)
            logger.warning(
                "bq_insert_attempt_failed",
                transient=error.transient,
                error=str(exc),
            )
            raise error from exc
        except Exception as exc:
            logger.error("bq_insert_failed", error=str(exc))
            raise WarehouseError(f"BigQuery insert failed: {exc}", transient=False) from exc

        if errors:
            logger.warning(
                "bq_insert_row_errors",
                error_count=len(errors),
                errors=json.dumps(errors, default=str),
            )
            raise WarehouseError(
                f"BigQuery insert returned errors for {len(errors)} row(s): "
                f"{json.dumps(errors[:5], default=str)}",
                transient=True,
            )

        logger.info("bq_insert_done", rows=len(rows))
        return len(rows)

    def _before_retry(self, retry_state: "tenacity.RetryCallState") -> "None":
        logger.info(
            "bq_insert_retry",
            attempt=retry_state.attempt_number,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        )
        self._log_schema()

    def _log_schema(self) -> "None":
        try:
            schema = self.table_schema()
        except gexc.GoogleAPIError as exc:
            logger.warning("bq_schema_fetch_failed", error=str(exc))
            return
        logger.info("bq_table_schema", table=self._table_ref, schema=json.dumps(schema))
