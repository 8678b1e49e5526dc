import json
from typing import Any, Iterable, Sequence

import structlog

from zstack_billing.models import (
    BillingRecord,
    BillingWindow,
    Detail,
    InventoryKind,
    InventoryUsage,
    PriceEntry,
    SpendingEntry,
    VmRecord,
    VmTopology,
)
from zstack_billing.reference import ReferenceData

logger = structlog.get_logger()

MS_PER_HOUR = 3_600_000.0
BYTES_PER_GB = 1024 * 1024 * 1024

HOURLY_TIME_UNIT = "HOURS"
GIGABYTE_RESOURCE_UNIT = "GIGABYTE"
CPU_RESOURCE_NAME = "cpu"

VCPU_HOUR_UNIT = "vCPU-hour"
GB_HOUR_UNIT = "GB-hour"


def parse_spending(raw: "Iterable[Any]") -> "list[SpendingEntry]":
    """
    turns the raw `spending` array into typed entries, dropping
    anything that is not an object.
    """
    return [SpendingEntry.from_dict(item) for item in raw if isinstance(item, dict)]


def price_candidates(
    resource_type: "str",
    spending_type: "str",
    kind: "InventoryKind | None" = None,
) -> "list[str]":
    """
    price-table resource names to try, most specific first.
    """
    candidates = [c for c in (resource_type, spending_type) if c]
    if kind is not None and kind.price_resource_name:
        candidates.append(kind.price_resource_name)
    return candidates


def find_applicable_price(
    prices: "Sequence[PriceEntry]",
    candidates: "Sequence[str]",
    timestamp_ms: "int",
) -> "PriceEntry | None":
    """
    returns the price in effect at timestamp_ms for the first
    candidate that has one. Among overlapping entries of the same
    resource the one that started last wins; ties keep the first
    listed.
    """
    if not prices:
        return None

    for candidate in candidates:
        best: "PriceEntry | None" = None
        for price in prices:
            if price.resource_name != candidate or not price.covers(timestamp_ms):
                continue
            if best is None or price.effective_from > best.effective_from:
                best = price
        if best is not None:
            return best
    return None


def _cost_over_price(cost: "float", price: "PriceEntry") -> "tuple[float | None, str | None]":
    # mixes currency-derived and physical units when the price unit
    # is not per-hour; kept as is
    if not price.price:
        return None, None
    return cost / price.price, price.resource_unit


def compute_usage(
    price: "PriceEntry",
    usage: "InventoryUsage",
    start_ms: "int",
    end_ms: "int",
    resource_id: "str",
    vm: "VmRecord | None",
    topology: "VmTopology",
) -> "tuple[float | None, str | None]":
    """
    derives the physical usage quantity and its unit for one slice
    from the matched price entry. Cost is never touched here.
    """
    if price.time_unit != HOURLY_TIME_UNIT:
        return _cost_over_price(usage.spending, price)

    hours = (end_ms - start_ms) / MS_PER_HOUR

    if price.resource_name == CPU_RESOURCE_NAME:
        cpu_count = vm.cpu_num if vm and vm.cpu_num else 1
        return hours * cpu_count, VCPU_HOUR_UNIT

    if price.resource_unit == GIGABYTE_RESOURCE_UNIT:
        size_bytes = usage.volume_size or _volume_size(resource_id, topology)
        if size_bytes:
            return hours * (size_bytes / BYTES_PER_GB), GB_HOUR_UNIT

    return _cost_over_price(usage.spending, price)


def _volume_size(volume_uuid: "str", topology: "VmTopology") -> "int | None":
    vm_uuid = topology.volume_to_vm.get(volume_uuid)
    vm = topology.vms.get(vm_uuid) if vm_uuid else None
    if vm is None:
        return None
    volume = vm.volumes.get(volume_uuid)
    return volume.size if volume else None


def normalize(
    spending: "Sequence[SpendingEntry]",
    window: "BillingWindow",
    account_uuid: "str",
    reference: "ReferenceData",
    collected_at: "str",
) -> "list[BillingRecord]":
    """
    flattens the spending entries into billing records: one per
    inventory slice, or one per detail when the detail carries no
    inventory arrays.
    """
    records: "list[BillingRecord]" = []
    for entry in spending:
        entry_start = entry.date_start or window.start_ms
        entry_end = entry.date_end or window.end_ms

        for detail in entry.details:
            resource_type = detail.type or entry.spending_type
            vm = reference.topology.vm_for_resource(detail.resource_uuid, resource_type)
            base = dict(
                billing_date=window.billing_date,
                account_id=account_uuid,
                resource_id=detail.resource_uuid,
                resource_name=detail.resource_name,
                spending_type=entry.spending_type,
                resource_type=resource_type,
                cpu_core=vm.cpu_num if vm else None,
                memory=vm.memory_size if vm else None,
                collected_at=collected_at,
            )

            if not detail.inventories:
                records.append(
                    BillingRecord(
                        **base,
                        cost=_detail_cost(detail, entry),
                        date_start_ms=entry_start,
                        date_end_ms=entry_end,
                        raw_json=json.dumps(detail.raw, default=str),
                    )
                )
                continue

            for key, slices in detail.inventories.items():
                for usage in slices:
                    start_ms = usage.start_time or entry_start
                    end_ms = usage.end_time or entry_end
                    used, unit = _priced_usage(
                        reference,
                        entry,
                        detail,
                        resource_type,
                        usage,
                        start_ms,
                        end_ms,
                        vm,
                    )
                    records.append(
                        BillingRecord(
                            **base,
                            cost=usage.spending,
                            date_start_ms=start_ms,
                            date_end_ms=end_ms,
                            inventory_type=key,
                            resource_used=used,
                            resource_unit=unit,
                        )
                    )
    return records


def _detail_cost(detail: "Detail", entry: "SpendingEntry") -> "float":
    return detail.spending or entry.spending or 0.0


def _priced_usage(
    reference: "ReferenceData",
    entry: "SpendingEntry",
    detail: "Detail",
    resource_type: "str",
    usage: "InventoryUsage",
    start_ms: "int",
    end_ms: "int",
    vm: "VmRecord | None",
) -> "tuple[float | None, str | None]":
    candidates = price_candidates(resource_type, entry.spending_type, usage.kind)
    price = find_applicable_price(reference.prices, candidates, start_ms)
    if price is None:
        # unknown price: usage stays null rather than guessed
        return None, None

    try:
        used, unit = compute_usage(
            price,
            usage,
            start_ms,
            end_ms,
            detail.resource_uuid,
            vm,
            reference.topology,
        )
    except (ArithmeticError, TypeError, ValueError):
        logger.warning(
            "usage_compute_failed",
            resource_id=detail.resource_uuid,
            inventory_type=usage.key,
            exc_info=True,
        )
        return None, None

    if used is None:
        return None, None
    return used, unit
