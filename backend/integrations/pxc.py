"""PXC (TalkTalk Wholesale) provider: partner auth and product orders."""

from collections import defaultdict
from datetime import date, timezone
from typing import Any, Dict, List, Optional

import structlog

from core.exceptions import ConfigurationError
from core.utils import parse_iso_datetime, utc_now
from integrations.base import IntegrationProvider

logger = structlog.get_logger(__name__)

ORDER_STATES = "held,inProgress,failed,rejected"


def order_bucket(state: Optional[str]) -> str:
    state = (state or "").lower()
    if state in ("inprogress", "in_progress"):
        return "in_progress"
    if state in ("held", "failed", "rejected"):
        return state
    return "other"


def filter_orders_on(orders: List[Dict[str, Any]], day: date) -> List[Dict[str, Any]]:
    """Orders whose lastUpdate falls on ``day`` (UTC)."""
    matched = []
    for order in orders:
        updated = parse_iso_datetime(str(order.get("lastUpdate") or ""))
        if updated is None:
            continue
        if updated.tzinfo is not None:
            updated = updated.astimezone(timezone.utc)
        if updated.date() == day:
            matched.append(order)
    return matched


class PXCProvider(IntegrationProvider):
    """
    Actions against the PXC partner API.

    Credentials: ``client_id``, ``client_secret``, ``billing_account_id``.
    ``fetch_orders`` and ``get_order_details`` need the partner JWT, taken
    from the ``token`` parameter or the ``partner_jwt`` context variable.
    """

    platform = "pxc"
    actions = ("authenticate_pxc", "fetch_orders", "get_order_details")
    timeout_setting = "PXC_TIMEOUT"

    def _token(self, parameters: Dict[str, Any], action: str) -> str:
        token = parameters.get("token")
        if not token and self.context is not None:
            token = self.context.get("partner_jwt") or self.context.get("partnerJWT")
        if not token:
            raise ConfigurationError(f"JWT token required for {action} action")
        return token

    async def authenticate_pxc(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        client_id, client_secret, _ = self.require_credentials(
            "client_id", "client_secret", "billing_account_id"
        )
        data = await self.request(
            "POST",
            f"{self.settings.PXC_AUTH_URL}/token",
            headers={"client_id": client_id, "client_secret": client_secret},
        )
        logger.info("PXC authentication successful")
        return {"partner_jwt": (data or {}).get("partnerJWT")}

    async def fetch_orders(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Fetch open orders, keep those updated today and bucket them by state."""
        _, _, billing_account_id = self.require_credentials(
            "client_id", "client_secret", "billing_account_id"
        )
        token = self._token(parameters, "fetch_orders")

        params: Dict[str, Any] = {
            "limit": parameters.get("limit") or 1000,
            "fields": parameters.get("fields") or "id,state,lastUpdate",
            "offset": parameters.get("offset") or 0,
            "billingAccount.id": billing_account_id,
            "state": parameters.get("state") or ORDER_STATES,
        }
        since = self.since
        if since is not None:
            params["lastUpdateSince"] = since.isoformat()
            logger.info("Fetching PXC orders incrementally", since=params["lastUpdateSince"])

        data = await self.request(
            "GET",
            f"{self.settings.PXC_ORDER_URL}/productOrder",
            headers={"Authorization": f"Bearer {token}"},
            params=params,
        )
        orders = data if isinstance(data, list) else []
        today_orders = filter_orders_on(orders, utc_now().date())

        buckets: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for order in today_orders:
            buckets[order_bucket(order.get("state"))].append(order)

        counts = {
            name: len(buckets[name])
            for name in ("held", "in_progress", "failed", "rejected", "other")
        }
        logger.info("PXC orders fetched", total=len(orders), today=len(today_orders), **counts)
        return {
            "total_orders": len(orders),
            "today_orders": len(today_orders),
            "orders": today_orders,
            "order_ids": [order.get("id") for order in today_orders],
            "categorized": counts,
            "held_orders": buckets["held"],
            "in_progress_orders": buckets["in_progress"],
            "failed_orders": buckets["failed"],
            "rejected_orders": buckets["rejected"],
        }

    async def get_order_details(self, parameters: Dict[str, Any]) -> Any:
        self.require_credentials("client_id", "client_secret", "billing_account_id")
        token = self._token(parameters, "get_order_details")
        order_id = parameters.get("order_id") or parameters.get("orderId")
        if not order_id:
            raise ConfigurationError("order_id parameter required for get_order_details action")

        return await self.request(
            "GET",
            f"{self.settings.PXC_ORDER_URL}/productOrder/{order_id}",
            headers={"Authorization": f"Bearer {token}"},
        )
