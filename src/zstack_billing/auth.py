import hashlib
import re
import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog

from zstack_billing.config import Config
from zstack_billing.errors import AuthError, ConfigError, UpstreamError
from zstack_billing.models import AuthContext, AuthMode
from zstack_billing.provider.base import ZStackApi
from zstack_billing.token_cache import CachedSession, TokenCache

logger = structlog.get_logger()

_HEX_TOKEN_RE = re.compile(r"^[0-9a-fA-F]{32}$")

# how deep the last-resort scan descends into a login response
MAX_SCAN_DEPTH = 6


def sha512_hex(plaintext: "str") -> "str":
    """
    ZStack expects the account password as a SHA-512 hex digest.
    """
    return hashlib.sha512(plaintext.encode("utf-8")).hexdigest()


def find_hex_token(
    value: "Any",
    max_depth: "int" = MAX_SCAN_DEPTH,
    exclude: "frozenset[str]" = frozenset(),
) -> "str | None":
    """
    walks a decoded JSON value depth-first and returns the first
    string shaped like a 32-hex-character uuid, ignoring any in
    exclude. Containers deeper than max_depth are not entered.
    """
    if isinstance(value, str):
        if _HEX_TOKEN_RE.match(value) and value not in exclude:
            return value
        return None

    if max_depth <= 0:
        return None

    if isinstance(value, dict):
        children = list(value.values())
    elif isinstance(value, list):
        children = value
    else:
        return None

    for child in children:
        found = find_hex_token(child, max_depth - 1, exclude)
        if found:
            return found
    return None


@dataclass(frozen=True, slots=True)
class LoginResponse:
    """
    LoginResponse is the part of a login reply the pipeline needs:
    the session token and, when reported, the account uuid.
    """

    token: "str | None"
    account_uuid: "str | None"

    @classmethod
    def from_payload(cls, payload: "Any") -> "LoginResponse":
        if isinstance(payload, str):
            return cls(token=payload or None, account_uuid=None)
        if not isinstance(payload, dict):
            return cls(token=None, account_uuid=None)

        token: "str | None" = None
        account: "str | None" = None

        inventory = payload.get("inventory")
        if isinstance(inventory, dict):
            token = _str_or_none(inventory.get("uuid"))
            account = _str_or_none(inventory.get("accountUuid")) or _str_or_none(
                inventory.get("userUuid")
            )

        if not token:
            token = _str_or_none(payload.get("uuid"))
        if not token:
            session = payload.get("session")
            if isinstance(session, dict):
                token = _str_or_none(session.get("uuid"))
            else:
                token = _str_or_none(session)
        if not token and isinstance(payload.get("value"), dict):
            token = _str_or_none(payload["value"].get("uuid"))
        if not account:
            account = _str_or_none(payload.get("accountUuid"))

        if not token:
            token = find_hex_token(payload)
        if not account:
            account = find_hex_token(payload, exclude=frozenset({token} if token else ()))

        return cls(token=token, account_uuid=account)


def _str_or_none(value: "Any") -> "str | None":
    if isinstance(value, str) and value:
        return value
    return None


class CredentialResolver:
    """
    CredentialResolver turns the configured credential set into an
    AuthContext. Session logins are cached twice: in memory for the
    lifetime of the resolver, and in the durable TokenCache so later
    runs within the TTL skip the login exchange.
    """

    def __init__(
        self,
        config: "Config",
        api: "ZStackApi",
        token_cache: "TokenCache",
        clock: "Callable[[], float]" = time.time,
    ) -> "None":
        self._config = config
        self._api = api
        self._token_cache = token_cache
        self._clock = clock
        self._session: "CachedSession | None" = None

    def resolve(self) -> "AuthContext":
        config = self._config
        mode = config.credential_mode

        if mode is AuthMode.API_KEY:
            return AuthContext(
                mode=mode,
                account_uuid=self._require_account(config.account_uuid),
                bearer_token=config.api_key,
            )

        if mode is AuthMode.ACCESS_KEY_PAIR:
            return AuthContext(
                mode=mode,
                account_uuid=self._require_account(config.account_uuid),
                access_key=config.access_key,
                access_secret=config.access_secret,
            )

        if mode is AuthMode.SESSION_LOGIN:
            try:
                session = self.session()
            except AuthError:
                if not config.allow_basic_auth:
                    raise
                logger.warning("zstack_login_fallback_basic", account_name=config.username)
                return AuthContext(
                    mode=mode,
                    account_uuid=self._require_account(config.account_uuid),
                    basic_credentials=(config.username, config.password),
                )

            return AuthContext(
                mode=mode,
                # a configured account wins over the one reported by login
                account_uuid=self._require_account(
                    config.account_uuid or session.account_uuid or ""
                ),
                session_token=session.token,
            )

        raise AuthError(
            "No ZStack credentials configured. Set ZSTACK_API_KEY, "
            "ZSTACK_ACCESS_KEY+ZSTACK_ACCESS_SECRET or ZSTACK_USERNAME+ZSTACK_PASSWORD"
        )

    def session(self) -> "CachedSession":
        """
        returns a session token younger than the configured TTL,
        logging in only when neither cache holds one.
        """
        now = int(self._clock())
        ttl = self._config.token_ttl_seconds
        key = self._config.username

        if self._session and self._session.is_fresh(now, ttl):
            return self._session

        cached = self._token_cache.get(key)
        if cached and cached.is_fresh(now, ttl):
            logger.info("zstack_login_cached", age_seconds=cached.age(now))
            self._session = cached
            return cached

        session = self._login(now)
        self._session = session
        try:
            self._token_cache.put(key, session)
        except OSError:
            logger.warning(
                "token_cache_persist_failed",
                path=self._token_cache.path,
                exc_info=True,
            )
        return session

    def _login(self, now: "int") -> "CachedSession":
        try:
            payload = self._api.login(
                self._config.username,
                sha512_hex(self._config.password),
            )
        except UpstreamError as exc:
            raise AuthError(f"ZStack login failed: {exc.body}") from exc

        parsed = LoginResponse.from_payload(payload)
        if not parsed.token:
            raise AuthError("ZStack login response contained no session token")

        logger.info("zstack_login_ok", account_uuid=parsed.account_uuid)
        return CachedSession(
            token=parsed.token,
            account_uuid=parsed.account_uuid,
            fetched_at=now,
        )

    @staticmethod
    def _require_account(account_uuid: "str") -> "str":
        if not account_uuid:
            raise ConfigError("Missing ZSTACK_ACCOUNT_UUID")
        return account_uuid
