from dataclasses import dataclass, field

import structlog

from zstack_billing.context import RunContext
from zstack_billing.models import PriceEntry, VmTopology
from zstack_billing.provider.base import ZStackApi

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class ReferenceData:
    """
    the reference data available to the normalizer for one date.
    Empty collections mean the data could not be fetched.
    """

    prices: "list[PriceEntry]" = field(default_factory=list)
    topology: "VmTopology" = field(default_factory=VmTopology)


class ReferenceDataFetcher:
    """
    ReferenceDataFetcher looks up price tables, prices and the VM
    inventory, memoizing each successful answer in the RunContext.

    All lookups are best-effort: failures are logged and reported as
    "no data", which only degrades the usage computation.
    """

    def __init__(self, api: "ZStackApi") -> "None":
        self._api = api

    def price_table_for(self, ctx: "RunContext", account_uuid: "str") -> "str | None":
        if not account_uuid:
            return None
        if account_uuid in ctx.price_tables:
            return ctx.price_tables[account_uuid]

        try:
            refs = self._api.list_price_table_refs(ctx.auth)
        except Exception:
            logger.warning("price_table_fetch_failed", account_uuid=account_uuid, exc_info=True)
            return None

        table_uuid = next(
            (
                ref.get("tableUuid") or None
                for ref in refs
                if isinstance(ref, dict) and ref.get("accountUuid") == account_uuid
            ),
            None,
        )
        ctx.price_tables[account_uuid] = table_uuid
        logger.debug("price_table_resolved", account_uuid=account_uuid, table_uuid=table_uuid)
        return table_uuid

    def prices_for(self, ctx: "RunContext", table_uuid: "str | None") -> "list[PriceEntry]":
        if not table_uuid:
            return []
        if table_uuid in ctx.prices:
            return ctx.prices[table_uuid]

        try:
            inventories = self._api.list_prices(ctx.auth)
        except Exception:
            logger.warning("prices_fetch_failed", table_uuid=table_uuid, exc_info=True)
            return []

        prices = [
            PriceEntry.from_dict(inv)
            for inv in inventories
            if isinstance(inv, dict) and inv.get("tableUuid") == table_uuid
        ]
        ctx.prices[table_uuid] = prices
        logger.debug("prices_loaded", table_uuid=table_uuid, count=len(prices))
        return prices

    def vm_topology(self, ctx: "RunContext") -> "VmTopology":
        if ctx.vm_topology is not None:
            return ctx.vm_topology

        try:
            inventories = self._api.list_vm_instances(ctx.auth)
        except Exception:
            logger.warning("vm_instances_fetch_failed", exc_info=True)
            return VmTopology()

        topology = VmTopology.from_inventories(
            [inv for inv in inventories if isinstance(inv, dict)]
        )
        ctx.vm_topology = topology
        logger.debug(
            "vm_topology_loaded",
            vm_count=len(topology.vms),
            volume_count=len(topology.volume_to_vm),
        )
        return topology

    def load(self, ctx: "RunContext") -> "ReferenceData":
        """
        gathers everything the normalizer consults for the context's
        account.
        """
        table_uuid = self.price_table_for(ctx, ctx.account_uuid)
        return ReferenceData(
            prices=self.prices_for(ctx, table_uuid),
            topology=self.vm_topology(ctx),
        )
