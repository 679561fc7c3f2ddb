"""
Shared plumbing for integration action providers.

A provider wraps one external platform. It is constructed per action call
with the decrypted credentials and the execution context, exposes a closed
set of action names, and performs HTTP through httpx with a bounded
per-platform timeout.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

import httpx
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from core.exceptions import ConfigurationError, IntegrationRequestError, UnsupportedIntegrationError
from core.utils import ensure_aware
from tasks.implementations.http_task import parse_response_body

if TYPE_CHECKING:
    from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)


class IntegrationProvider:
    """
    Base class for platform providers.

    Subclasses set:
    - platform: integration type name
    - actions: tuple of supported action names (each maps to a coroutine
      method of the same name taking the parameters dict)
    - timeout_setting: Settings attribute holding the HTTP timeout
    """

    platform: str = "base"
    actions: Tuple[str, ...] = ()
    timeout_setting: str = "HTTP_TIMEOUT_SECONDS"

    def __init__(
        self,
        credentials: Dict[str, Any],
        context: Optional["ExecutionContext"] = None,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker] = None,
    ):
        self.credentials = credentials or {}
        self.context = context
        self.settings = settings or get_settings()
        self.session_factory = session_factory

    @property
    def timeout(self) -> float:
        return float(getattr(self.settings, self.timeout_setting))

    def require_credentials(self, *names: str) -> Tuple[Any, ...]:
        """Return the named credential values, or raise if any is missing."""
        missing = [name for name in names if not self.credentials.get(name)]
        if missing:
            raise ConfigurationError(
                f"{self.platform} credentials not configured (missing {', '.join(missing)})"
            )
        return tuple(self.credentials[name] for name in names)

    @property
    def since(self) -> Optional[datetime]:
        """Lower bound for incremental fetches: the last successful run."""
        if self.context is None:
            return None
        return ensure_aware(self.context.last_successful_run_at)

    async def execute(self, action: str, parameters: Dict[str, Any]) -> Any:
        if action not in self.actions:
            raise UnsupportedIntegrationError(f"Unsupported {self.platform} action: {action}")
        logger.info("Integration action", platform=self.platform, action=action)
        return await getattr(self, action)(parameters or {})

    async def request(self, method: str, url: str, **kwargs) -> Any:
        """Perform one HTTP call; non-2xx responses raise IntegrationRequestError."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.request(method, url, **kwargs)

        body = parse_response_body(response)
        if not response.is_success:
            logger.error(
                "Integration request failed",
                platform=self.platform,
                status=response.status_code,
                url=url,
            )
            raise IntegrationRequestError(
                f"{self.platform} API error {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        return body
