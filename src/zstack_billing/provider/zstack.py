from typing import Any

import httpx
import structlog

from zstack_billing.errors import UpstreamError
from zstack_billing.models import AuthContext, BillingWindow

logger = structlog.get_logger()

API_PREFIX = "/zstack/v1"

PRICE_TABLE_REFS_PATH = "/accounts/price-tables/refs"
PRICES_PATH = "/billings/prices"
VM_INSTANCES_PATH = "/vm-instances"

# keep error bodies in exception messages short, the full body is on
# the exception itself
_MAX_MESSAGE_BODY = 500


class ZStackClient:
    """
    ZStackClient implements the ZStackApi protocol over a blocking
    httpx client. Calls are issued one at a time; there is no retry
    at this layer, a status >= 400 raises UpstreamError carrying the
    response body.
    """

    def __init__(
        self,
        base_url: "str",
        billing_path: "str",
        login_path: "str",
        extra_query: "str" = "",
        timeout: "float" = 30.0,
        client: "httpx.Client | None" = None,
    ) -> "None":
        self._base = base_url.rstrip("/")
        self._billing_path = billing_path
        self._login_path = login_path
        self._extra_query = extra_query.lstrip("?&")
        self._client: "httpx.Client" = client or httpx.Client(timeout=timeout)

    def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        self._client.close()

    def api_url(self, subpath: "str") -> "str":
        """
        builds a URL under the versioned API prefix unless the subpath
        already carries it.
        """
        if not subpath:
            return self._base
        if not subpath.startswith("/"):
            subpath = "/" + subpath
        if subpath.startswith(API_PREFIX):
            return self._base + subpath
        return self._base + API_PREFIX + subpath

    def billing_url(self, account_uuid: "str") -> "str":
        url = f"{self._base}{self._billing_path}/{account_uuid}/actions"
        if self._extra_query:
            url += ("&" if "?" in url else "?") + self._extra_query
        return url

    def login(self, account_name: "str", password_sha512: "str") -> "Any":
        url = self._base + self._login_path
        body = {
            "logInByAccount": {
                "accountName": account_name,
                "password": password_sha512,
            }
        }
        logger.info("zstack_login_request", url=url, account_name=account_name)
        return self._request("PUT", url, json=body)

    def calculate_spending(
        self,
        auth: "AuthContext",
        window: "BillingWindow",
    ) -> "list[dict[str, Any]]":
        """
        asks the upstream to aggregate the account's spending for the
        window and returns the raw `spending` array.
        """
        url = self.billing_url(auth.account_uuid)
        body = {
            "calculateAccountSpending": {
                "dateStart": window.start_ms,
                "dateEnd": window.end_ms,
            },
            "systemTags": [],
            "userTags": [],
        }
        logger.info(
            "zstack_billing_request",
            url=url,
            billing_date=window.billing_date,
            date_start=window.start_ms,
            date_end=window.end_ms,
        )
        payload = self._request("PUT", url, headers=auth.headers(), json=body)
        if not isinstance(payload, dict):
            return []
        return list(payload.get("spending") or [])

    def list_price_table_refs(self, auth: "AuthContext") -> "list[dict[str, Any]]":
        return self._list(self.api_url(PRICE_TABLE_REFS_PATH), auth)

    def list_prices(self, auth: "AuthContext") -> "list[dict[str, Any]]":
        return self._list(self.api_url(PRICES_PATH), auth)

    def list_vm_instances(self, auth: "AuthContext") -> "list[dict[str, Any]]":
        return self._list(self.api_url(VM_INSTANCES_PATH), auth)

    def _list(self, url: "str", auth: "AuthContext") -> "list[dict[str, Any]]":
        logger.debug("zstack_list_request", url=url)
        payload = self._request("GET", url, headers=auth.headers())
        if not isinstance(payload, dict):
            return []
        return list(payload.get("inventories") or [])

    def _request(
        self,
        method: "str",
        url: "str",
        headers: "dict[str, str] | None" = None,
        json: "Any" = None,
    ) -> "Any":
        resp = self._client.request(method, url, headers=headers, json=json)
        if resp.status_code >= 400:
            body = resp.text
            logger.error(
                "zstack_api_error",
                url=url,
                status_code=resp.status_code,
                body=body,
            )
            raise UpstreamError(
                f"ZStack API error {resp.status_code} for {method} {url}: "
                f"{body[:_MAX_MESSAGE_BODY]}",
                status_code=resp.status_code,
                body=body,
                url=url,
            )
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(
                f"ZStack API returned a non-JSON body for {method} {url}",
                status_code=resp.status_code,
                body=resp.text,
                url=url,
            ) from exc
