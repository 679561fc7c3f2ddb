"""Tests for integration providers, the action dispatcher and integration_action steps."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import respx

from core.exceptions import (
    ConfigurationError,
    IntegrationRequestError,
    NotFoundError,
    UnsupportedIntegrationError,
)
from core.security import encrypt_credentials
from core.utils import utc_now
from db.models.email_template import EmailTemplate
from db.models.integration import Integration
from integrations.dispatcher import ActionDispatcher
from integrations.openai_provider import OpenAIProvider, build_analysis_prompt, extract_json
from integrations.pxc import PXCProvider, filter_orders_on, order_bucket
from integrations.splynx import SplynxProvider, parse_customer_ids
from tasks.implementations.integration_task import IntegrationActionHandler

SPLYNX_BASE = "https://splynx.example.com/api/2.0"
SPLYNX_CREDS = {"base_url": SPLYNX_BASE, "auth_header": "Basic abc"}
PXC_CREDS = {"client_id": "cid", "client_secret": "secret", "billing_account_id": "BA-1"}


# ─── Dispatcher ───

@pytest.mark.unit
class TestDispatcher:
    def test_registered_types(self):
        assert ActionDispatcher().integration_types == ["openai", "pxc", "splynx"]

    async def test_unknown_type(self):
        with pytest.raises(UnsupportedIntegrationError, match="Unsupported integration type: xero"):
            await ActionDispatcher().execute_integration_action("xero", "sync", {}, {})

    async def test_unknown_action(self):
        with pytest.raises(UnsupportedIntegrationError, match="Unsupported pxc action: cancel"):
            await ActionDispatcher().execute_integration_action("pxc", "cancel", {}, PXC_CREDS)


# ─── Splynx ───

@pytest.mark.unit
class TestSplynx:
    def test_parse_customer_ids(self):
        assert parse_customer_ids("1, 2,,3") == ["1", "2", "3"]
        assert parse_customer_ids([{"id": 4}, 5, None]) == ["4", "5"]
        assert parse_customer_ids(None) == []

    async def test_customer_normalized(self):
        with respx.mock:
            route = respx.get(f"{SPLYNX_BASE}/admin/customers/customer/7").mock(
                return_value=httpx.Response(200, json={
                    "id": 7, "first_name": "Ann", "last_name": "Lee",
                    "email": "ann@example.com", "tariff_name": "Fibre 500",
                })
            )
            customer = await SplynxProvider(SPLYNX_CREDS).execute("get_customer_by_id", {"customer_id": 7})
        assert route.calls.last.request.headers["Authorization"] == "Basic abc"
        assert customer["name"] == "Ann Lee"
        assert customer["plan"] == "Fibre 500"
        assert customer["status"] == "unknown"

    async def test_missing_customer_is_none(self):
        with respx.mock:
            respx.get(f"{SPLYNX_BASE}/admin/customers/customer/8").mock(return_value=httpx.Response(404))
            assert await SplynxProvider(SPLYNX_CREDS).execute("get_customer_by_id", {"customer_id": 8}) is None

    async def test_server_error_raises(self):
        with respx.mock:
            respx.get(f"{SPLYNX_BASE}/admin/customers/customer/8").mock(
                return_value=httpx.Response(500, json={"error": "x"})
            )
            with pytest.raises(IntegrationRequestError) as exc_info:
                await SplynxProvider(SPLYNX_CREDS).execute("get_customer_by_id", {"customer_id": 8})
        assert exc_info.value.status_code == 500

    async def test_services_status_normalized(self):
        with respx.mock:
            respx.get(f"{SPLYNX_BASE}/admin/customers/customer/7/internet-services").mock(
                return_value=httpx.Response(200, json=[
                    {"id": 1, "status": "online", "download_speed": 100, "upload_speed": 20},
                    {"id": 2, "status": "blocked", "tariff": "Basic"},
                ])
            )
            services = await SplynxProvider(SPLYNX_CREDS).execute("get_customer_services", {"customer_id": 7})
        assert [s["status"] for s in services] == ["active", "suspended"]
        assert services[0]["speed"] == "100/20 Mbps"
        assert services[1]["service_name"] == "Basic"

    async def test_count_customers_since_last_success(self, context):
        context.last_successful_run_at = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)
        with respx.mock:
            route = respx.get(f"{SPLYNX_BASE}/admin/customers/customer").mock(
                return_value=httpx.Response(200, json=[{"id": 1}, {"id": 2}])
            )
            count = await SplynxProvider(SPLYNX_CREDS, context=context).execute("count_customers", {})
        params = route.calls.last.request.url.params
        assert count == 2
        assert params["main_attributes[status]"] == "active"
        assert params["main_attributes[date_add][1]"] == "2024-05-01"

    async def test_missing_credentials(self):
        with pytest.raises(ConfigurationError, match="base_url"):
            await SplynxProvider({}).execute("get_customer_by_id", {"customer_id": 1})


@pytest.mark.integration
class TestSplynxCampaign:
    async def test_campaign_partial_failure(self, context, session_factory, add_rows, test_org):
        template = EmailTemplate(
            organization_id=test_org.id,
            name="Promo",
            subject="Hello {{customer.name}}",
            body="Plan {{customer.plan}}, code {{promo}}",
        )
        await add_rows(template)
        provider = SplynxProvider(SPLYNX_CREDS, context=context, session_factory=session_factory)

        with respx.mock:
            for cid, email in (("1", "a@example.com"), ("2", "b@example.com"), ("3", "")):
                respx.get(f"{SPLYNX_BASE}/admin/customers/customer/{cid}").mock(
                    return_value=httpx.Response(200, json={"id": cid, "name": f"C{cid}", "email": email})
                )
            mail = respx.post(f"{SPLYNX_BASE}/admin/config/mail").mock(
                return_value=httpx.Response(200, json={"id": "m-1"})
            )
            result = await provider.execute("send_email_campaign", {
                "template_id": template.id,
                "customer_ids": "1,2,3",
                "custom_variables": json.dumps({"promo": "SPRING"}),
            })

        assert result["total_customers"] == 3
        assert result["success_count"] == 2
        assert result["failure_count"] == 1
        assert (result["totalCustomers"], result["successCount"], result["failureCount"]) == (3, 2, 1)
        assert result["results"][2] == {"customer_id": "3", "success": False, "error": "No email address found"}
        assert mail.call_count == 2
        sent = json.loads(mail.calls[0].request.content)
        assert sent["subject"] == "Hello C1"
        assert sent["message"] == "Plan Unknown Plan, code SPRING"
        assert sent["recipient"] == "a@example.com"

    async def test_campaign_falls_back_to_query_result(self, context, session_factory):
        provider = SplynxProvider(SPLYNX_CREDS, context=context, session_factory=session_factory)
        context.set("query_result", [])
        with pytest.raises(ConfigurationError, match="No customer IDs"):
            await provider.execute("send_email_campaign", {"template_id": "t-1"})

    async def test_campaign_unknown_template(self, context, session_factory):
        provider = SplynxProvider(SPLYNX_CREDS, context=context, session_factory=session_factory)
        with pytest.raises(NotFoundError):
            await provider.execute("send_email_campaign", {"template_id": "t-1", "customer_ids": [1]})


# ─── PXC ───

@pytest.mark.unit
class TestPXC:
    def test_order_bucket(self):
        assert order_bucket("inProgress") == "in_progress"
        assert order_bucket("Held") == "held"
        assert order_bucket("completed") == "other"
        assert order_bucket(None) == "other"

    def test_filter_orders_on_uses_utc(self):
        orders = [
            {"id": "a", "lastUpdate": "2024-05-01T23:30:00-02:00"},
            {"id": "b", "lastUpdate": "2024-05-01T10:00:00Z"},
            {"id": "c"},
        ]
        assert [o["id"] for o in filter_orders_on(orders, datetime(2024, 5, 2).date())] == ["a"]

    async def test_authenticate(self, context):
        with respx.mock:
            route = respx.post("https://api.wholesale.talktalk.co.uk/partners/security/v1/api/token").mock(
                return_value=httpx.Response(200, json={"partnerJWT": "jwt-1"})
            )
            result = await PXCProvider(PXC_CREDS, context=context).execute("authenticate_pxc", {})
        assert result == {"partner_jwt": "jwt-1"}
        assert route.calls.last.request.headers["client_id"] == "cid"

    async def test_fetch_orders_buckets_today(self, context):
        now = utc_now()
        context.set("partner_jwt", "jwt-1")
        orders = [
            {"id": "o1", "state": "held", "lastUpdate": now.isoformat()},
            {"id": "o2", "state": "inProgress", "lastUpdate": now.isoformat()},
            {"id": "o3", "state": "failed", "lastUpdate": (now - timedelta(days=3)).isoformat()},
        ]
        with respx.mock:
            route = respx.get("https://api.wholesale.pxc.co.uk/partners/product-order/v3/api/productOrder").mock(
                return_value=httpx.Response(200, json=orders)
            )
            result = await PXCProvider(PXC_CREDS, context=context).execute("fetch_orders", {})

        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer jwt-1"
        assert request.url.params["billingAccount.id"] == "BA-1"
        assert result["total_orders"] == 3
        assert result["today_orders"] == 2
        assert result["order_ids"] == ["o1", "o2"]
        assert result["categorized"] == {"held": 1, "in_progress": 1, "failed": 0, "rejected": 0, "other": 0}

    async def test_fetch_orders_requires_token(self, context):
        with pytest.raises(ConfigurationError, match="JWT token required"):
            await PXCProvider(PXC_CREDS, context=context).execute("fetch_orders", {})

    async def test_requires_credentials(self, context):
        with pytest.raises(ConfigurationError, match="billing_account_id"):
            await PXCProvider({"client_id": "a", "client_secret": "b"}, context=context).execute(
                "fetch_orders", {"token": "t"}
            )


# ─── OpenAI ───

@pytest.mark.unit
class TestOpenAI:
    def test_extract_json_variants(self):
        assert extract_json('{"a": 1}') == {"a": 1}
        assert extract_json('Here:\n```json\n{"a": 2}\n```') == {"a": 2}
        assert extract_json('Result is [1, 2] ok') == [1, 2]
        with pytest.raises(ValueError):
            extract_json("no json here")

    def test_analysis_prompt(self):
        prompt = build_analysis_prompt({"mrr": 10}, "trend")
        assert prompt.startswith("Analyze the following data for trends")
        assert '"mrr": 10' in prompt

    async def test_generate_text(self):
        with respx.mock:
            route = respx.post("https://api.openai.com/v1/chat/completions").mock(
                return_value=httpx.Response(200, json={
                    "choices": [{"message": {"content": '```json\n{"score": 4}\n```'}}],
                    "usage": {"total_tokens": 12},
                })
            )
            result = await OpenAIProvider({"api_key": "sk-test"}).execute(
                "generate_text", {"prompt": "Rate it", "response_format": "json"}
            )
        body = json.loads(route.calls.last.request.content)
        assert body["temperature"] == 0.7
        assert body["max_tokens"] == 500
        assert body["messages"] == [{"role": "user", "content": "Rate it"}]
        assert result == {"success": True, "response": {"score": 4}, "usage": {"total_tokens": 12}}

    async def test_missing_key(self):
        with pytest.raises(ConfigurationError):
            await OpenAIProvider({}).execute("generate_summary", {"content": "x"})


# ─── integration_action step ───

@pytest.mark.integration
class TestIntegrationActionStep:
    async def test_runs_action_with_decrypted_credentials(self, step_services, context, add_rows, test_org):
        integration = Integration(
            organization_id=test_org.id,
            name="Splynx",
            platform_type="splynx",
            credentials_encrypted=encrypt_credentials(SPLYNX_CREDS),
        )
        await add_rows(integration)
        context.set("customer", {"id": 7})

        with respx.mock:
            respx.get(f"{SPLYNX_BASE}/admin/customers/customer/7").mock(
                return_value=httpx.Response(200, json={"id": 7, "name": "Ann", "email": "a@example.com"})
            )
            result = await IntegrationActionHandler(step_services).run(
                {
                    "integration_id": integration.id,
                    "action": "get_customer_by_id",
                    "parameters": {"customer_id": "{{customer.id}}"},
                    "result_variable": "splynx_customer",
                },
                context,
            )

        assert result.success, result.error
        assert result.output["email"] == "a@example.com"
        assert context.get("splynx_customer")["name"] == "Ann"

    async def test_foreign_integration_not_found(self, step_services, context, add_rows, other_org):
        integration = Integration(organization_id=other_org.id, name="PXC", platform_type="pxc")
        await add_rows(integration)
        result = await IntegrationActionHandler(step_services).run(
            {"integration_id": integration.id, "action": "fetch_orders"}, context
        )
        assert not result.success
        assert not result.retryable

    async def test_disabled_integration(self, step_services, context, add_rows, test_org):
        integration = Integration(organization_id=test_org.id, name="AI", platform_type="openai", is_active=False)
        await add_rows(integration)
        result = await IntegrationActionHandler(step_services).run(
            {"integration_id": integration.id, "action": "generate_text"}, context
        )
        assert not result.success
        assert "disabled" in result.error
