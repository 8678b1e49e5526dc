from typing import Any, Protocol

from zstack_billing.models import AuthContext, BillingWindow


class ZStackApi(Protocol):
    """
    ZStackApi is the slice of the ZStack REST API the billing
    pipeline consumes. Every call except login takes the resolved
    AuthContext; every call raises UpstreamError on HTTP >= 400.
    """

    def login(self, account_name: "str", password_sha512: "str") -> "Any": ...

    def calculate_spending(
        self,
        auth: "AuthContext",
        window: "BillingWindow",
    ) -> "list[dict[str, Any]]": ...

    def list_price_table_refs(self, auth: "AuthContext") -> "list[dict[str, Any]]": ...

    def list_prices(self, auth: "AuthContext") -> "list[dict[str, Any]]": ...

    def list_vm_instances(self, auth: "AuthContext") -> "list[dict[str, Any]]": ...
