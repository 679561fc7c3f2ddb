"""Routes integration actions to the provider for the integration type."""

from typing import TYPE_CHECKING, Any, Dict, Optional, Type

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from core.exceptions import UnsupportedIntegrationError
from integrations.base import IntegrationProvider
from integrations.openai_provider import OpenAIProvider
from integrations.pxc import PXCProvider
from integrations.splynx import SplynxProvider

if TYPE_CHECKING:
    from workflow.context import ExecutionContext

logger = structlog.get_logger(__name__)

DEFAULT_PROVIDERS: Dict[str, Type[IntegrationProvider]] = {
    "splynx": SplynxProvider,
    "pxc": PXCProvider,
    "openai": OpenAIProvider,
}


class ActionDispatcher:
    """
    Maps an integration type to its provider class.

    Usage:
        dispatcher = ActionDispatcher(session_factory)
        result = await dispatcher.execute_integration_action(
            "pxc", "fetch_orders", {}, credentials, context
        )
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._providers: Dict[str, Type[IntegrationProvider]] = dict(DEFAULT_PROVIDERS)

    def register(self, integration_type: str, provider: Type[IntegrationProvider]) -> None:
        self._providers[integration_type] = provider

    @property
    def integration_types(self) -> list:
        return sorted(self._providers)

    async def execute_integration_action(
        self,
        integration_type: str,
        action: str,
        parameters: Dict[str, Any],
        credentials: Dict[str, Any],
        context: Optional["ExecutionContext"] = None,
    ) -> Any:
        """
        Run one action.

        Raises:
            UnsupportedIntegrationError: Unknown integration type or action
        """
        provider_cls = self._providers.get(integration_type)
        if provider_cls is None:
            raise UnsupportedIntegrationError(f"Unsupported integration type: {integration_type}")

        provider = provider_cls(
            credentials,
            context=context,
            settings=self.settings,
            session_factory=self.session_factory,
        )
        return await provider.execute(action, parameters)
