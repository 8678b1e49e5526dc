import base64
import enum
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from zstack_billing.errors import InvalidDateError

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def _as_int(value: "Any") -> "int | None":
    """
    coerces an upstream numeric field (int, float or numeric string)
    into an int. Missing, zero and unparseable values map to None so
    callers can fall back with `or`.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        result = int(float(value)) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        return None
    return result or None


def _as_float(value: "Any") -> "float | None":
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def epoch_ms(moment: "datetime") -> "int":
    """
    whole milliseconds since the epoch, computed without going
    through a float timestamp.
    """
    return (moment - _EPOCH) // _ONE_MS


class AuthMode(enum.Enum):
    API_KEY = "api_key"
    ACCESS_KEY_PAIR = "access_key_pair"
    SESSION_LOGIN = "session_login"


@dataclass(frozen=True, slots=True)
class AuthContext:
    """
    AuthContext is the resolved credential set for one run. Exactly
    one mode is populated; the headers it produces are attached to
    every ZStack request.
    """

    mode: "AuthMode"
    account_uuid: "str"
    bearer_token: "str | None" = None
    access_key: "str | None" = None
    access_secret: "str | None" = None
    session_token: "str | None" = None
    # only set when session login is allowed to degrade to HTTP Basic
    basic_credentials: "tuple[str, str] | None" = None

    def headers(self) -> "dict[str, str]":
        if self.mode is AuthMode.API_KEY:
            return {"Authorization": f"Bearer {self.bearer_token}"}

        if self.mode is AuthMode.ACCESS_KEY_PAIR:
            return {
                "X-Access-Key": self.access_key or "",
                "X-Access-Secret": self.access_secret or "",
            }

        if self.session_token:
            return {"Authorization": f"OAuth {self.session_token}"}

        if self.basic_credentials:
            raw = ":".join(self.basic_credentials).encode("utf-8")
            return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}

        return {}


@dataclass(frozen=True, slots=True)
class BillingWindow:
    """
    BillingWindow is one calendar day in a fixed time zone, expressed
    as integer epoch milliseconds from 00:00:00.000 to 23:59:59.999.
    """

    day: "date"
    start_ms: "int"
    end_ms: "int"

    @classmethod
    def for_date(cls, date_str: "str", tz_name: "str") -> "BillingWindow":
        if not isinstance(date_str, str) or not _DATE_RE.match(date_str):
            raise InvalidDateError(f"date must be provided as YYYY-MM-DD, got {date_str!r}")
        try:
            day = date.fromisoformat(date_str)
        except ValueError as exc:
            raise InvalidDateError(f"invalid calendar date {date_str!r}") from exc

        tz = ZoneInfo(tz_name)
        start = datetime.combine(day, time.min, tzinfo=tz)
        end = datetime.combine(day, time(23, 59, 59, 999000), tzinfo=tz)
        return cls(day=day, start_ms=epoch_ms(start), end_ms=epoch_ms(end))

    @property
    def billing_date(self) -> "str":
        return self.day.isoformat()


class InventoryKind(enum.Enum):
    """
    known kinds of time-sliced inventory arrays inside a spending
    detail. Arrays with any other "*Inventory" key are kept as OTHER.
    """

    CPU = "cpuInventory"
    MEMORY = "memoryInventory"
    SIZE = "sizeInventory"
    OTHER = "other"

    @classmethod
    def from_key(cls, key: "str") -> "InventoryKind":
        for kind in cls:
            if kind.value == key:
                return kind
        return cls.OTHER

    @property
    def price_resource_name(self) -> "str | None":
        """
        canonical price-table resource name for this kind.
        """
        return _KIND_RESOURCE_NAMES.get(self)


_KIND_RESOURCE_NAMES: "dict[InventoryKind, str]" = {
    InventoryKind.SIZE: "dataVolume",
    InventoryKind.CPU: "cpu",
    InventoryKind.MEMORY: "memory",
}


@dataclass(frozen=True, slots=True)
class InventoryUsage:
    """
    one time slice of a spending detail.
    """

    key: "str"
    kind: "InventoryKind"
    start_time: "int | None"
    end_time: "int | None"
    spending: "float"
    # size in bytes, only present on volume slices
    volume_size: "int | None" = None

    @classmethod
    def from_dict(cls, key: "str", raw: "dict[str, Any]") -> "InventoryUsage":
        return cls(
            key=key,
            kind=InventoryKind.from_key(key),
            start_time=_as_int(raw.get("startTime")),
            end_time=_as_int(raw.get("endTime")),
            spending=_as_float(raw.get("spending")) or 0.0,
            volume_size=_as_int(raw.get("volumeSize"))
            or _as_int(raw.get("volumeSizeInBytes")),
        )


@dataclass(frozen=True, slots=True)
class Detail:
    """
    Detail is the per-resource breakdown of a spending entry.
    """

    resource_uuid: "str"
    resource_name: "str"
    type: "str"
    spending: "float | None"
    # inventory key -> slices, in the order the upstream listed them
    inventories: "dict[str, list[InventoryUsage]]" = field(default_factory=dict)
    raw: "dict[str, Any]" = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: "dict[str, Any]") -> "Detail":
        inventories: "dict[str, list[InventoryUsage]]" = {}
        for key, value in raw.items():
            if not isinstance(value, list) or not key.lower().endswith("inventory"):
                continue
            inventories[key] = [
                InventoryUsage.from_dict(key, item)
                for item in value
                if isinstance(item, dict)
            ]

        return cls(
            resource_uuid=raw.get("resourceUuid") or "",
            resource_name=raw.get("resourceName") or "",
            type=raw.get("type") or "",
            spending=_as_float(raw.get("spending")),
            inventories=inventories,
            raw=raw,
        )


@dataclass(frozen=True, slots=True)
class SpendingEntry:
    spending_type: "str"
    date_start: "int | None"
    date_end: "int | None"
    spending: "float | None"
    details: "list[Detail]"

    @classmethod
    def from_dict(cls, raw: "dict[str, Any]") -> "SpendingEntry":
        return cls(
            spending_type=raw.get("spendingType") or "",
            date_start=_as_int(raw.get("dateStart")),
            date_end=_as_int(raw.get("dateEnd")),
            spending=_as_float(raw.get("spending")),
            details=[
                Detail.from_dict(d) for d in raw.get("details") or [] if isinstance(d, dict)
            ],
        )


@dataclass(frozen=True, slots=True)
class PriceEntry:
    """
    PriceEntry is one row of an account's price table. The effective
    interval is [effective_from, effective_until); an open end means
    the price is still current.
    """

    resource_name: "str"
    table_uuid: "str"
    price: "float | None"
    time_unit: "str | None"
    resource_unit: "str | None"
    effective_from: "int"
    effective_until: "int | None" = None

    @classmethod
    def from_dict(cls, raw: "dict[str, Any]") -> "PriceEntry":
        return cls(
            resource_name=raw.get("resourceName") or "",
            table_uuid=raw.get("tableUuid") or "",
            price=_as_float(raw.get("price")),
            time_unit=raw.get("timeUnit") or None,
            resource_unit=raw.get("resourceUnit") or None,
            effective_from=_as_int(raw.get("dateInLong")) or 0,
            effective_until=_as_int(raw.get("endDateInLong")),
        )

    def covers(self, timestamp_ms: "int") -> "bool":
        if self.effective_from > timestamp_ms:
            return False
        return self.effective_until is None or timestamp_ms < self.effective_until


@dataclass(frozen=True, slots=True)
class Volume:
    uuid: "str"
    size: "int | None"


@dataclass(frozen=True, slots=True)
class VmRecord:
    uuid: "str"
    cpu_num: "int | None"
    memory_size: "int | None"
    volumes: "dict[str, Volume]" = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class VmTopology:
    """
    VmTopology holds the VM inventory and the reverse index from
    volume uuid to the owning VM uuid.
    """

    vms: "dict[str, VmRecord]" = field(default_factory=dict)
    volume_to_vm: "dict[str, str]" = field(default_factory=dict)

    @classmethod
    def from_inventories(cls, inventories: "list[dict[str, Any]]") -> "VmTopology":
        vms: "dict[str, VmRecord]" = {}
        volume_to_vm: "dict[str, str]" = {}
        for inv in inventories:
            vm_uuid = inv.get("uuid") or ""
            volumes: "dict[str, Volume]" = {}
            for vol in inv.get("allVolumes") or []:
                if not isinstance(vol, dict) or not vol.get("uuid"):
                    continue
                volumes[vol["uuid"]] = Volume(uuid=vol["uuid"], size=_as_int(vol.get("size")))
                volume_to_vm[vol["uuid"]] = vm_uuid

            vms[vm_uuid] = VmRecord(
                uuid=vm_uuid,
                cpu_num=_as_int(inv.get("cpuNum")),
                memory_size=_as_int(inv.get("memorySize")),
                volumes=volumes,
            )
        return cls(vms=vms, volume_to_vm=volume_to_vm)

    def vm_for_resource(self, resource_id: "str", resource_type: "str") -> "VmRecord | None":
        """
        VMs are looked up directly; anything else (volumes) goes
        through the reverse index to its owning VM.
        """
        if resource_type.lower() == "vm":
            return self.vms.get(resource_id)
        vm_uuid = self.volume_to_vm.get(resource_id)
        return self.vms.get(vm_uuid) if vm_uuid else None


@dataclass(frozen=True, slots=True)
class BillingRecord:
    """
    BillingRecord is one normalized row of the destination table.
    """

    billing_date: "str"
    account_id: "str"
    resource_id: "str"
    resource_name: "str"
    spending_type: "str"
    resource_type: "str"
    cost: "float"
    date_start_ms: "int"
    date_end_ms: "int"
    collected_at: "str"
    cpu_core: "int | None" = None
    # bytes
    memory: "int | None" = None
    inventory_type: "str | None" = None
    resource_used: "float | None" = None
    resource_unit: "str | None" = None
    raw_json: "str | None" = None

    def to_row(self) -> "dict[str, Any]":
        return {
            "billing_date": self.billing_date,
            "account_id": self.account_id,
            "resource_id": self.resource_id,
            "resource_name": self.resource_name,
            "spending_type": self.spending_type,
            "resource_type": self.resource_type,
            "cpu_core": self.cpu_core,
            "memory": self.memory,
            "inventory_type": self.inventory_type,
            "resource_used": self.resource_used,
            "resource_unit": self.resource_unit,
            "cost": self.cost,
            "date_start_ms": self.date_start_ms,
            "date_end_ms": self.date_end_ms,
            "raw_json": self.raw_json,
            "collected_at": self.collected_at,
        }


@dataclass(frozen=True, slots=True)
class CollectResult:
    date: "str"
    rows: "int"
    status: "str" = "ok"


@dataclass(frozen=True, slots=True)
class DayOutcome:
    """
    per-day entry of a month backfill. Exactly one of result and
    error is set.
    """

    date: "str"
    ok: "bool"
    result: "CollectResult | None" = None
    error: "str | None" = None
