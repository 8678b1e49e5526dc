import os
import re
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from zstack_billing.errors import ConfigError
from zstack_billing.models import AuthMode

DEFAULT_BILLING_PATH = "/zstack/v1/billings/accounts"
DEFAULT_LOGIN_PATH = "/zstack/v1/accounts/login"
DEFAULT_TOKEN_CACHE_PATH = os.path.join("~", ".cache", "zstack-billing", "session.json")

# destination identifiers are interpolated into SQL, so only
# alphanumerics, hyphens and underscores are accepted
_SAFE_ID = re.compile(r"^[A-Za-z0-9_\-]+$")


def _env_int(name: "str", default: "int") -> "int":
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: "str", default: "float") -> "float":
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def _env_bool(name: "str", default: "bool" = False) -> "bool":
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


@dataclass
class Config:
    api_url: "str" = ""
    api_key: "str" = ""
    access_key: "str" = ""
    access_secret: "str" = ""
    username: "str" = ""
    password: "str" = ""
    # optional when session login reports the account
    account_uuid: "str" = ""
    billing_path: "str" = DEFAULT_BILLING_PATH
    login_path: "str" = DEFAULT_LOGIN_PATH
    # raw query string appended to the billing URL, e.g. "zone=a&x=1"
    extra_query: "str" = ""
    token_ttl_seconds: "int" = 86400
    token_cache_path: "str" = DEFAULT_TOKEN_CACHE_PATH
    allow_basic_auth: "bool" = False
    http_timeout: "float" = 30.0
    timezone: "str" = "Asia/Jakarta"
    # delay between days of a month backfill
    pacing_seconds: "float" = 1.0

    bq_project: "str" = ""
    bq_dataset: "str" = ""
    bq_table: "str" = ""
    strict_delete: "bool" = False

    collect_month: "str" = ""
    pushgateway_url: "str" = ""
    log_level: "str" = "info"

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            api_url=os.environ.get("ZSTACK_API_URL", "").rstrip("/"),
            api_key=os.environ.get("ZSTACK_API_KEY", ""),
            access_key=os.environ.get("ZSTACK_ACCESS_KEY", ""),
            access_secret=os.environ.get("ZSTACK_ACCESS_SECRET", ""),
            username=os.environ.get("ZSTACK_USERNAME", ""),
            password=os.environ.get("ZSTACK_PASSWORD", ""),
            account_uuid=os.environ.get("ZSTACK_ACCOUNT_UUID", ""),
            billing_path=os.environ.get("ZSTACK_BILLING_PATH") or DEFAULT_BILLING_PATH,
            login_path=os.environ.get("ZSTACK_LOGIN_PATH") or DEFAULT_LOGIN_PATH,
            extra_query=os.environ.get("ZSTACK_EXTRA_QUERY", ""),
            token_ttl_seconds=_env_int("ZSTACK_TOKEN_TTL_SEC", 86400),
            token_cache_path=os.environ.get("ZSTACK_TOKEN_CACHE_PATH")
            or DEFAULT_TOKEN_CACHE_PATH,
            allow_basic_auth=_env_bool("ZSTACK_ALLOW_BASIC_AUTH"),
            http_timeout=_env_float("ZSTACK_HTTP_TIMEOUT", 30.0),
            timezone=os.environ.get("ZSTACK_TIMEZONE") or "Asia/Jakarta",
            pacing_seconds=_env_float("ZSTACK_PACING_SEC", 1.0),
            bq_project=os.environ.get("BQ_PROJECT", ""),
            bq_dataset=os.environ.get("BQ_DATASET", ""),
            bq_table=os.environ.get("BQ_TABLE", ""),
            strict_delete=_env_bool("BQ_STRICT_DELETE"),
            collect_month=os.environ.get("COLLECT_MONTH", ""),
            pushgateway_url=os.environ.get("PUSHGATEWAY_URL", ""),
        )

    @property
    def credential_mode(self) -> "AuthMode | None":
        """
        picks the credential set by fixed precedence:
        api key > access key pair > session login.
        """
        if self.api_key:
            return AuthMode.API_KEY
        if self.access_key and self.access_secret:
            return AuthMode.ACCESS_KEY_PAIR
        if self.username and self.password:
            return AuthMode.SESSION_LOGIN
        return None

    @property
    def table_ref(self) -> "str":
        return f"{self.bq_project}.{self.bq_dataset}.{self.bq_table}"

    def validate(self) -> "None":
        """
        checks everything a collection run needs. Reports all missing
        settings at once.
        """
        missing = self._missing_api_settings() + self._missing_table_ids()
        if missing:
            raise ConfigError("Missing configuration: " + ", ".join(missing))
        self.validate_api()
        self.validate_table_ids()

    def _missing_api_settings(self) -> "list[str]":
        missing = []
        if not self.api_url:
            missing.append("ZSTACK_API_URL")
        if self.credential_mode is None:
            missing.append(
                "ZSTACK_API_KEY or ZSTACK_ACCESS_KEY+ZSTACK_ACCESS_SECRET"
                " or ZSTACK_USERNAME+ZSTACK_PASSWORD"
            )
        return missing

    def validate_api(self) -> "None":
        missing = self._missing_api_settings()
        if missing:
            raise ConfigError("Missing configuration: " + ", ".join(missing))
        if self.token_ttl_seconds <= 0:
            raise ConfigError("ZSTACK_TOKEN_TTL_SEC must be positive")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown ZSTACK_TIMEZONE {self.timezone!r}") from exc

    def _missing_table_ids(self) -> "list[str]":
        return [
            name
            for name, value in (
                ("BQ_PROJECT", self.bq_project),
                ("BQ_DATASET", self.bq_dataset),
                ("BQ_TABLE", self.bq_table),
            )
            if not value
        ]

    def validate_table_ids(self) -> "None":
        missing = self._missing_table_ids()
        if missing:
            raise ConfigError("Missing configuration: " + ", ".join(missing))
        for name, value in (
            ("BQ_PROJECT", self.bq_project),
            ("BQ_DATASET", self.bq_dataset),
            ("BQ_TABLE", self.bq_table),
        ):
            if not _SAFE_ID.match(value):
                raise ConfigError(f"Unsafe BigQuery identifier {name}={value!r}")
