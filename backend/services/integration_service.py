"""Integration lookups and credential decryption."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import ConfigurationError, NotFoundError
from core.security import decrypt_credentials
from db.models.integration import Integration
from services.base import BaseService


class IntegrationService(BaseService[Integration]):
    """Organization-scoped access to integrations."""

    def __init__(self, db: AsyncSession):
        super().__init__(Integration, db)

    async def get_for_org(self, integration_id: str, organization_id: str) -> Integration:
        """Load an active integration, refusing ids from other organizations.

        Raises:
            NotFoundError: If no such integration exists in the organization
            ConfigurationError: If the integration is disabled
        """
        integration = await self.get_by_id_and_org(integration_id, organization_id)
        if integration is None:
            raise NotFoundError(f"Integration {integration_id} not found")
        if not integration.is_active:
            raise ConfigurationError(f"Integration {integration_id} is disabled")
        return integration

    @staticmethod
    def credentials_for(integration: Integration) -> dict[str, Any]:
        """Decrypt an integration's credential blob (empty blob → empty dict)."""
        if not integration.credentials_encrypted:
            return {}
        return decrypt_credentials(integration.credentials_encrypted)
