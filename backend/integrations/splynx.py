"""Splynx ISP billing provider: customers, services and email campaigns."""

import json
from typing import Any, Dict, List, Optional

import structlog

from core.exceptions import ConfigurationError, IntegrationRequestError, NotFoundError
from db.models.email_template import EmailTemplate
from integrations.base import IntegrationProvider
from services.base import BaseService
from workflow.templating import render_template

logger = structlog.get_logger(__name__)

_SERVICE_STATUS = {
    "active": "active",
    "online": "active",
    "inactive": "inactive",
    "disabled": "inactive",
    "offline": "inactive",
    "suspended": "suspended",
    "blocked": "suspended",
}


def parse_customer_ids(value: Any) -> List[str]:
    """Accept a list or a comma separated string of customer ids."""
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        return []
    ids = []
    for item in items:
        if isinstance(item, dict):
            item = item.get("id")
        text = str(item).strip() if item is not None else ""
        if text:
            ids.append(text)
    return ids


class SplynxProvider(IntegrationProvider):
    """
    Actions against the Splynx admin API.

    Credentials: ``base_url`` (or ``baseUrl``) and ``auth_header`` (or
    ``authHeader``), sent verbatim as the Authorization header.
    """

    platform = "splynx"
    actions = (
        "send_email_campaign",
        "get_customer_by_id",
        "get_customer_services",
        "count_customers",
    )
    timeout_setting = "SPLYNX_TIMEOUT"

    def _url(self, endpoint: str) -> str:
        base_url = self.credentials.get("base_url") or self.credentials.get("baseUrl")
        if not base_url:
            raise ConfigurationError("Splynx credentials not configured (missing base_url)")
        return f"{base_url.rstrip('/')}/{endpoint}"

    def _headers(self) -> Dict[str, str]:
        auth_header = self.credentials.get("auth_header") or self.credentials.get("authHeader")
        if not auth_header:
            raise ConfigurationError("Splynx credentials not configured (missing auth_header)")
        return {"Authorization": auth_header, "Content-Type": "application/json"}

    async def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", self._url(endpoint), headers=self._headers(), params=params)

    # ─── Customers ─────────────────────────────────────────

    async def fetch_customer(self, customer_id: Any) -> Optional[Dict[str, Any]]:
        """Normalized customer record, or None when Splynx has no such id."""
        try:
            customer = await self._get(f"admin/customers/customer/{customer_id}")
        except IntegrationRequestError as e:
            if e.status_code == 404:
                return None
            raise
        if not isinstance(customer, dict) or not customer.get("id"):
            return None

        name = customer.get("name") or " ".join(
            part for part in (customer.get("first_name"), customer.get("last_name")) if part
        )
        return {
            "id": customer["id"],
            "name": name or "Unknown",
            "email": customer.get("email") or "",
            "phone": customer.get("phone") or customer.get("phone_mobile") or "",
            "status": customer.get("status") or "unknown",
            "plan": customer.get("tariff_name") or customer.get("tariff") or "Unknown Plan",
            "address": customer.get("street") or customer.get("full_address") or "",
            "created_at": customer.get("date_add") or customer.get("created_at") or "",
        }

    async def get_customer_by_id(self, parameters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        customer_id = parameters.get("customer_id") or parameters.get("customerId")
        if not customer_id:
            raise ConfigurationError("customer_id is required for get_customer_by_id")
        return await self.fetch_customer(customer_id)

    async def get_customer_services(self, parameters: Dict[str, Any]) -> List[Dict[str, Any]]:
        customer_id = parameters.get("customer_id") or parameters.get("customerId")
        if not customer_id:
            raise ConfigurationError("customer_id is required for get_customer_services")

        data = await self._get(f"admin/customers/customer/{customer_id}/internet-services")
        services = data if isinstance(data, list) else (data or {}).get("items", [])

        normalized = []
        for service in services:
            speed = service.get("speed") or (
                f"{service.get('download_speed') or '?'}/{service.get('upload_speed') or '?'} Mbps"
            )
            normalized.append({
                "id": service.get("id"),
                "service_name": (
                    service.get("tariff_name")
                    or service.get("tariff")
                    or service.get("description")
                    or "Internet Service"
                ),
                "status": _SERVICE_STATUS.get(str(service.get("status") or "").lower(), "unknown"),
                "speed": speed,
                "ip_address": service.get("ip") or service.get("ipv4"),
                "start_date": service.get("start_date") or service.get("date_add"),
            })
        return normalized

    async def count_customers(self, parameters: Dict[str, Any]) -> int:
        """Count customers by status; incremental from the last successful run."""
        params: Dict[str, Any] = {
            "main_attributes[status]": parameters.get("status") or parameters.get("statusFilter") or "active",
            "limit": 10000,
        }
        since = self.since
        if since is not None:
            params["main_attributes[date_add][0]"] = ">="
            params["main_attributes[date_add][1]"] = since.date().isoformat()
            logger.info("Counting customers incrementally", since=since.date().isoformat())

        data = await self._get("admin/customers/customer", params=params)
        if isinstance(data, list):
            return len(data)
        if isinstance(data, dict):
            for key in ("total", "count"):
                if data.get(key) is not None:
                    return int(data[key])
        logger.warning("Unexpected customer count response", response=str(data)[:200])
        return 0

    # ─── Email campaign ────────────────────────────────────

    async def _load_template(self, template_id: str) -> EmailTemplate:
        if self.session_factory is None or self.context is None:
            raise ConfigurationError("send_email_campaign requires a database session")
        async with self.session_factory() as session:
            template = await BaseService(EmailTemplate, session).get_by_id_and_org(
                template_id, self.context.organization_id
            )
        if template is None or not template.is_active:
            raise NotFoundError(f"Email template {template_id} not found")
        return template

    async def send_email(self, customer_id: str, email: str, subject: str, message: str) -> Any:
        return await self.request(
            "POST",
            self._url("admin/config/mail"),
            headers=self._headers(),
            json={
                "type": "message",
                "customer_id": customer_id,
                "recipient": email,
                "subject": subject,
                "message": message,
            },
        )

    async def send_email_campaign(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send a stored email template to a list of customers.

        Parameters:
            template_id: EmailTemplate id (required)
            customer_ids: List or comma separated string. Falls back to the
                ``query_result`` context variable (a list of rows with ``id``).
            custom_variables: Dict (or JSON string) available to the template

        A failure for one recipient is recorded in ``results`` and does not
        stop the campaign. The counts are also returned under their camelCase
        names (``totalCustomers``, ``successCount``, ``failureCount``) so
        existing step templates keep resolving.
        """
        template_id = parameters.get("template_id") or parameters.get("templateId")
        if not template_id:
            raise ConfigurationError("template_id is required for send_email_campaign")

        customer_ids = parse_customer_ids(
            parameters.get("customer_ids") or parameters.get("customerIds")
        )
        if not customer_ids and self.context is not None:
            customer_ids = parse_customer_ids(self.context.get("query_result"))
        if not customer_ids:
            raise ConfigurationError(
                "No customer IDs provided. Set customer_ids or run a query step first."
            )

        custom_variables = parameters.get("custom_variables") or parameters.get("customVariables") or {}
        if isinstance(custom_variables, str):
            try:
                custom_variables = json.loads(custom_variables)
            except json.JSONDecodeError:
                logger.warning("Ignoring unparseable custom_variables")
                custom_variables = {}

        template = await self._load_template(str(template_id))
        base_lookup = self.context.lookup() if self.context is not None else {}
        base_lookup.update(custom_variables)

        results = []
        for customer_id in customer_ids:
            try:
                customer = await self.fetch_customer(customer_id)
                email = (customer or {}).get("email")
                if not email:
                    results.append({
                        "customer_id": customer_id,
                        "success": False,
                        "error": "No email address found",
                    })
                    continue

                lookup = dict(base_lookup, customer=customer)
                response = await self.send_email(
                    customer_id,
                    email,
                    str(render_template(template.subject, lookup)),
                    str(render_template(template.body, lookup)),
                )
                results.append({
                    "customer_id": customer_id,
                    "email": email,
                    "success": True,
                    "message_id": response.get("id") if isinstance(response, dict) else None,
                })
            except Exception as e:
                logger.error("Campaign email failed", customer_id=customer_id, error=str(e))
                results.append({"customer_id": customer_id, "success": False, "error": str(e)})

        success_count = sum(1 for r in results if r["success"])
        logger.info(
            "Email campaign complete",
            template_id=template_id,
            sent=success_count,
            total=len(customer_ids),
        )
        counts = {
            "total_customers": len(customer_ids),
            "success_count": success_count,
            "failure_count": len(customer_ids) - success_count,
        }
        return {
            **counts,
            "totalCustomers": counts["total_customers"],
            "successCount": counts["success_count"],
            "failureCount": counts["failure_count"],
            "results": results,
        }
