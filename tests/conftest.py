import pathlib
from typing import Any

import pytest
from google.api_core import exceptions as gexc
from google.cloud import bigquery
from prometheus_client import CollectorRegistry

from zstack_billing.config import Config
from zstack_billing.models import AuthContext, AuthMode


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def config(tmp_path: "pathlib.Path") -> "Config":
    return Config(
        api_url="https://zstack.example.com",
        api_key="key-123",
        account_uuid="acc-1",
        token_cache_path=str(tmp_path / "session.json"),
        bq_project="proj",
        bq_dataset="billing",
        bq_table="zstack_daily",
        pacing_seconds=1.0,
    )


@pytest.fixture()
def auth() -> "AuthContext":
    return AuthContext(mode=AuthMode.API_KEY, account_uuid="acc-1", bearer_token="key-123")


class FakeQueryJob:
    def __init__(self, affected: "int") -> "None":
        self.num_dml_affected_rows = affected

    def result(self) -> "None":
        return None


class FakeBigQueryClient:
    """
    An in-memory stand-in for google.cloud.bigquery.Client covering
    the calls the warehouse loader makes. Scripted insert outcomes
    (an exception or a list of row errors) are consumed in order
    before inserts start succeeding.
    """

    def __init__(self) -> "None":
        self.tables: "dict[str, bigquery.Table]" = {}
        self.rows: "list[dict[str, Any]]" = []
        self.queries: "list[str]" = []
        self.insert_outcomes: "list[Any]" = []
        self.insert_calls = 0
        self.create_error: "Exception | None" = None
        self.delete_error: "Exception | None" = None

    def get_table(self, ref: "str") -> "bigquery.Table":
        if ref not in self.tables:
            raise gexc.NotFound(f"Table {ref} not found")
        return self.tables[ref]

    def create_table(self, table: "bigquery.Table") -> "bigquery.Table":
        if self.create_error:
            raise self.create_error
        self.tables[f"{table.project}.{table.dataset_id}.{table.table_id}"] = table
        return table

    def query(self, sql: "str", job_config: "Any" = None) -> "FakeQueryJob":
        self.queries.append(sql)
        if self.delete_error:
            raise self.delete_error
        # DATE parameters come back as datetime.date
        billing_date = str(job_config.query_parameters[0].value)
        before = len(self.rows)
        self.rows = [r for r in self.rows if r["billing_date"] != billing_date]
        return FakeQueryJob(before - len(self.rows))

    def insert_rows_json(self, ref: "str", rows: "list[dict[str, Any]]") -> "list[Any]":
        self.insert_calls += 1
        if self.insert_outcomes:
            outcome = self.insert_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            if outcome:
                return outcome
        self.rows.extend(rows)
        return []


@pytest.fixture()
def bq_client() -> "FakeBigQueryClient":
    return FakeBigQueryClient()
