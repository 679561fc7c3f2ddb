"""api_call step: templated HTTP requests to external services."""

import base64
import ipaddress
import json
from typing import Any, Dict
from urllib.parse import urlparse

import httpx
import structlog

from core.exceptions import ConfigurationError, IntegrationRequestError, SafetyBoundaryError
from tasks.base_task import BaseStepHandler, StepResult, config_value
from workflow.context import ExecutionContext
from workflow.templating import resolve_parameters

logger = structlog.get_logger(__name__)


def _is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is private, loopback or reserved."""
    try:
        ip = ipaddress.ip_address(ip_str)
        return ip.is_private or ip.is_loopback or ip.is_reserved
    except ValueError:
        return False


def validate_url_safety(url: str) -> None:
    """Reject non-HTTP(S) schemes, localhost and private IP literals.

    Raises:
        SafetyBoundaryError: If URL is unsafe
    """
    parsed = urlparse(url)

    if parsed.scheme.lower() not in ("http", "https"):
        raise SafetyBoundaryError(f"Unsupported scheme: {parsed.scheme!r}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise SafetyBoundaryError("URL must have a valid hostname")

    if hostname.lower() in ("localhost", "127.0.0.1", "::1"):
        raise SafetyBoundaryError("Connections to localhost are not allowed")

    # Only IP literals are checked; domain names are not resolved
    if _is_private_ip(hostname):
        raise SafetyBoundaryError(f"Connections to private IP {hostname} are not allowed")


def parse_response_body(response: httpx.Response) -> Any:
    """JSON body when possible, text otherwise."""
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


class ApiCallHandler(BaseStepHandler):
    """Execute an HTTP request.

    Config:
        url: Target URL (required, ``{{...}}`` templates allowed)
        method: HTTP method (default: GET)
        headers: Dict of HTTP headers
        params: URL query parameters
        body: JSON request body (templated recursively)
        auth: ``{"type": "bearer|basic|api_key", ...}``
        timeout: Request timeout in seconds (default: HTTP_TIMEOUT_SECONDS)
        result_variable: Context key to store the response data under

    Any non-2xx response fails the step with the parsed body attached.
    """

    step_type = "api_call"
    display_name = "API Call"
    description = "Make an HTTP request to an external API"

    async def execute(self, config: Dict[str, Any], context: ExecutionContext) -> StepResult:
        resolved = resolve_parameters(config, context.lookup())
        url = resolved.get("url")
        if not url or not isinstance(url, str):
            raise ConfigurationError("Missing required config: url")
        validate_url_safety(url)

        method = str(resolved.get("method", "GET")).upper()
        headers = {"Content-Type": "application/json", **(resolved.get("headers") or {})}
        timeout = float(resolved.get("timeout") or self.settings.HTTP_TIMEOUT_SECONDS)

        auth_config = resolved.get("auth") or {}
        auth_type = auth_config.get("type", "")
        if auth_type == "bearer":
            headers["Authorization"] = f"Bearer {auth_config['token']}"
        elif auth_type == "basic":
            creds = base64.b64encode(
                f"{auth_config['username']}:{auth_config['password']}".encode()
            ).decode()
            headers["Authorization"] = f"Basic {creds}"
        elif auth_type == "api_key":
            headers[auth_config.get("header", "X-API-Key")] = auth_config["key"]

        kwargs: Dict[str, Any] = {
            "method": method,
            "url": url,
            "headers": headers,
            "params": resolved.get("params") or None,
        }
        body = resolved.get("body")
        if body is not None and method in ("POST", "PUT", "PATCH", "DELETE"):
            kwargs["json"] = body

        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.request(**kwargs)
        except httpx.TimeoutException:
            raise IntegrationRequestError(f"Request timed out after {timeout}s")
        except httpx.HTTPError as e:
            raise IntegrationRequestError(f"HTTP request failed: {e}")

        data = parse_response_body(response)
        if not response.is_success:
            raise IntegrationRequestError(
                f"API call failed: {response.status_code} - {json.dumps(data, default=str)}",
                status_code=response.status_code,
                body=data,
            )

        result_variable = config_value(config, "result_variable", "resultVariable")
        if result_variable:
            context.set(result_variable, data)

        logger.info("API call succeeded", method=method, status_code=response.status_code)
        return StepResult.ok({"status_code": response.status_code, "data": data})


HTTP_STEP_TYPES = {
    "api_call": ApiCallHandler,
}
