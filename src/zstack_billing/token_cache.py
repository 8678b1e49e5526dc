import json
import os
import threading
from dataclasses import asdict, dataclass

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class CachedSession:
    """
    CachedSession is a session token obtained from a login exchange,
    stamped with the unix time it was issued.
    """

    token: "str"
    account_uuid: "str | None"
    fetched_at: "int"

    def age(self, now: "int") -> "int":
        return now - self.fetched_at

    def is_fresh(self, now: "int", ttl_seconds: "int") -> "bool":
        return self.age(now) < ttl_seconds


class TokenCache:
    """
    TokenCache: Is a durable key-value store for session tokens,
    persisted as a single JSON file so later runs within the TTL can
    skip the login call.

    Entries are keyed by account name. Reads of a missing or corrupt
    file behave as an empty cache. Concurrent runs are not coordinated
    across processes; the last writer wins.
    """

    def __init__(self, path: "str") -> "None":
        self._path = os.path.expanduser(path)
        self._lock: "threading.Lock" = threading.Lock()

    @property
    def path(self) -> "str":
        return self._path

    def get(self, key: "str") -> "CachedSession | None":
        with self._lock:
            entry = self._load().get(key)
        if not isinstance(entry, dict):
            return None
        try:
            return CachedSession(
                token=str(entry["token"]),
                account_uuid=entry.get("account_uuid") or None,
                fetched_at=int(entry["fetched_at"]),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("token_cache_entry_invalid", path=self._path, key=key)
            return None

    def put(self, key: "str", session: "CachedSession") -> "None":
        """
        writes the entry and replaces the file atomically. Raises
        OSError when the file cannot be written.
        """
        with self._lock:
            data = self._load()
            data[key] = asdict(session)
            directory = os.path.dirname(self._path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            tmp_path = self._path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self._path)

    def _load(self) -> "dict[str, object]":
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning("token_cache_unreadable", path=self._path)
            return {}
        return data if isinstance(data, dict) else {}
