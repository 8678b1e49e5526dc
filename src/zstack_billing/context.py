from dataclasses import dataclass, field

from zstack_billing.models import AuthContext, PriceEntry, VmTopology


@dataclass
class RunContext:
    """
    RunContext carries the state of one run: the resolved credentials
    and the reference data fetched so far. It is created when a run
    starts and passed to every stage; nothing outlives it except the
    durable session cache.
    """

    auth: "AuthContext"
    # account uuid -> price table uuid (None when the account has none)
    price_tables: "dict[str, str | None]" = field(default_factory=dict)
    # price table uuid -> prices of that table
    prices: "dict[str, list[PriceEntry]]" = field(default_factory=dict)
    vm_topology: "VmTopology | None" = None

    @property
    def account_uuid(self) -> "str":
        return self.auth.account_uuid
