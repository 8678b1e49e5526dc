from typing import Any

import pytest

from zstack_billing.auth import (
    CredentialResolver,
    LoginResponse,
    find_hex_token,
    sha512_hex,
)
from zstack_billing.config import Config
from zstack_billing.errors import AuthError, ConfigError, UpstreamError
from zstack_billing.models import AuthMode
from zstack_billing.token_cache import CachedSession, TokenCache

TOKEN = "0123456789abcdef0123456789abcdef"
ACCOUNT = "fedcba9876543210fedcba9876543210"


class LoginApi:
    """
    A fake upstream that only answers login calls.
    """

    def __init__(self, payload: "Any" = None, error: "Exception | None" = None) -> "None":
        self._payload = payload
        self._error = error
        self.login_calls: "list[tuple[str, str]]" = []

    def login(self, account_name: "str", password_sha512: "str") -> "Any":
        self.login_calls.append((account_name, password_sha512))
        if self._error:
            raise self._error
        return self._payload


class FakeClock:
    def __init__(self, now: "float") -> "None":
        self.now = now

    def __call__(self) -> "float":
        return self.now


def _session_config(tmp_path: "Any", **overrides: "Any") -> "Config":
    values = dict(
        api_url="https://zstack.example.com",
        username="admin",
        password="secret",
        token_ttl_seconds=3600,
        token_cache_path=str(tmp_path / "session.json"),
    )
    values.update(overrides)
    return Config(**values)


class TestSha512Hex:
    def test_known_digest(self) -> "None":
        assert sha512_hex("secret") == (
            "bd2b1aaf7ef4f09be9f52ce2d8d599674d81aa9d6a4421696dc4d93dd0619d68"
            "2ce56b4d64a9ef097761ced99e0f67265b5f76085e5b0ee7ca4696b2ad6fe2b2"
        )


class TestLoginResponse:
    def test_inventory_shape(self) -> "None":
        parsed = LoginResponse.from_payload(
            {"inventory": {"uuid": TOKEN, "accountUuid": ACCOUNT, "userUuid": "u"}}
        )
        assert parsed.token == TOKEN
        assert parsed.account_uuid == ACCOUNT

    def test_user_uuid_when_no_account(self) -> "None":
        parsed = LoginResponse.from_payload({"inventory": {"uuid": TOKEN, "userUuid": "user-1"}})
        assert parsed.account_uuid == "user-1"

    def test_session_object(self) -> "None":
        parsed = LoginResponse.from_payload({"session": {"uuid": "tok"}, "accountUuid": "acc"})
        assert parsed.token == "tok"
        assert parsed.account_uuid == "acc"

    def test_session_string_and_value(self) -> "None":
        assert LoginResponse.from_payload({"session": "tok"}).token == "tok"
        assert LoginResponse.from_payload({"value": {"uuid": "tok"}}).token == "tok"

    def test_bare_string(self) -> "None":
        assert LoginResponse.from_payload("tok").token == "tok"

    def test_scan_fallback_keeps_token_and_account_distinct(self) -> "None":
        parsed = LoginResponse.from_payload(
            {"result": {"data": [{"id": TOKEN}, {"owner": ACCOUNT}]}}
        )
        assert parsed.token == TOKEN
        assert parsed.account_uuid == ACCOUNT

    def test_nothing_found(self) -> "None":
        parsed = LoginResponse.from_payload({"message": "ok"})
        assert parsed.token is None
        assert parsed.account_uuid is None


class TestFindHexToken:
    def test_finds_nested(self) -> "None":
        assert find_hex_token({"a": [{"b": {"c": TOKEN}}]}) == TOKEN

    def test_ignores_non_hex(self) -> "None":
        assert find_hex_token({"a": "not-a-token", "b": "z" * 32}) is None

    def test_depth_is_bounded(self) -> "None":
        deep: "Any" = TOKEN
        for _ in range(10):
            deep = {"next": deep}
        assert find_hex_token(deep, max_depth=3) is None
        assert find_hex_token(deep, max_depth=10) == TOKEN


class TestCredentialResolverStaticModes:
    def test_api_key(self, config: "Config", tmp_path: "Any") -> "None":
        api = LoginApi()
        resolver = CredentialResolver(config, api, TokenCache(str(tmp_path / "c.json")))
        auth = resolver.resolve()
        assert auth.mode is AuthMode.API_KEY
        assert auth.bearer_token == "key-123"
        assert auth.account_uuid == "acc-1"
        assert api.login_calls == []

    def test_access_key_pair(self, tmp_path: "Any") -> "None":
        config = Config(access_key="ak", access_secret="as", account_uuid="acc-1")
        resolver = CredentialResolver(config, LoginApi(), TokenCache(str(tmp_path / "c.json")))
        auth = resolver.resolve()
        assert auth.mode is AuthMode.ACCESS_KEY_PAIR
        assert auth.headers() == {"X-Access-Key": "ak", "X-Access-Secret": "as"}

    def test_missing_account_is_config_error(self, tmp_path: "Any") -> "None":
        config = Config(api_key="k")
        resolver = CredentialResolver(config, LoginApi(), TokenCache(str(tmp_path / "c.json")))
        with pytest.raises(ConfigError):
            resolver.resolve()

    def test_no_credentials(self, tmp_path: "Any") -> "None":
        resolver = CredentialResolver(Config(), LoginApi(), TokenCache(str(tmp_path / "c.json")))
        with pytest.raises(AuthError):
            resolver.resolve()


class TestCredentialResolverSession:
    def test_login_sends_hashed_password(self, tmp_path: "Any") -> "None":
        api = LoginApi({"inventory": {"uuid": TOKEN, "accountUuid": ACCOUNT}})
        config = _session_config(tmp_path)
        resolver = CredentialResolver(config, api, TokenCache(config.token_cache_path))

        auth = resolver.resolve()

        assert api.login_calls == [("admin", sha512_hex("secret"))]
        assert auth.session_token == TOKEN
        assert auth.account_uuid == ACCOUNT
        assert auth.headers() == {"Authorization": f"OAuth {TOKEN}"}

    def test_configured_account_wins(self, tmp_path: "Any") -> "None":
        api = LoginApi({"inventory": {"uuid": TOKEN, "accountUuid": ACCOUNT}})
        config = _session_config(tmp_path, account_uuid="configured")
        resolver = CredentialResolver(config, api, TokenCache(config.token_cache_path))
        assert resolver.resolve().account_uuid == "configured"

    def test_fresh_durable_cache_skips_login(self, tmp_path: "Any") -> "None":
        config = _session_config(tmp_path)
        cache = TokenCache(config.token_cache_path)
        cache.put("admin", CachedSession(token=TOKEN, account_uuid=ACCOUNT, fetched_at=1000))
        api = LoginApi({"inventory": {"uuid": "other"}})

        resolver = CredentialResolver(config, api, cache, clock=FakeClock(1000 + 3599))
        auth = resolver.resolve()

        assert api.login_calls == []
        assert auth.session_token == TOKEN

    def test_expired_cache_logs_in_once_and_refreshes(self, tmp_path: "Any") -> "None":
        config = _session_config(tmp_path)
        cache = TokenCache(config.token_cache_path)
        cache.put("admin", CachedSession(token="old", account_uuid=ACCOUNT, fetched_at=1000))
        api = LoginApi({"inventory": {"uuid": TOKEN, "accountUuid": ACCOUNT}})

        resolver = CredentialResolver(config, api, cache, clock=FakeClock(1000 + 3600))
        resolver.resolve()
        # second resolve within the same run is served from memory
        resolver.resolve()

        assert len(api.login_calls) == 1
        refreshed = cache.get("admin")
        assert refreshed is not None
        assert refreshed.token == TOKEN
        assert refreshed.fetched_at == 4600

    def test_memory_cache_expires(self, tmp_path: "Any") -> "None":
        config = _session_config(tmp_path)
        clock = FakeClock(1000)
        api = LoginApi({"inventory": {"uuid": TOKEN, "accountUuid": ACCOUNT}})
        resolver = CredentialResolver(config, api, TokenCache(config.token_cache_path), clock=clock)

        resolver.resolve()
        clock.now += 3600
        resolver.resolve()

        assert len(api.login_calls) == 2

    def test_login_error_status(self, tmp_path: "Any") -> "None":
        config = _session_config(tmp_path)
        api = LoginApi(error=UpstreamError("denied", 401, "bad password", "url"))
        resolver = CredentialResolver(config, api, TokenCache(config.token_cache_path))
        with pytest.raises(AuthError):
            resolver.resolve()

    def test_login_without_token(self, tmp_path: "Any") -> "None":
        config = _session_config(tmp_path)
        resolver = CredentialResolver(
            config, LoginApi({"message": "ok"}), TokenCache(config.token_cache_path)
        )
        with pytest.raises(AuthError):
            resolver.resolve()

    def test_basic_fallback_when_allowed(self, tmp_path: "Any") -> "None":
        config = _session_config(tmp_path, allow_basic_auth=True, account_uuid="acc-1")
        api = LoginApi(error=UpstreamError("denied", 500, "boom", "url"))
        resolver = CredentialResolver(config, api, TokenCache(config.token_cache_path))

        auth = resolver.resolve()

        assert auth.session_token is None
        assert auth.headers()["Authorization"].startswith("Basic ")

    def test_cache_write_failure_is_not_fatal(self, tmp_path: "Any") -> "None":
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        config = _session_config(tmp_path, token_cache_path=str(blocker / "session.json"))
        api = LoginApi({"inventory": {"uuid": TOKEN, "accountUuid": ACCOUNT}})
        resolver = CredentialResolver(config, api, TokenCache(config.token_cache_path))

        assert resolver.resolve().session_token == TOKEN
