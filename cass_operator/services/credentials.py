"""
Credential helper.

Reads the superuser secret and the management API client certificates of a
datacenter. Secrets are created by the user or an external tool; this
service only reads them.
"""
from typing import Optional

from pydantic import BaseModel, SecretStr

from cass_operator.config.logging import get_logger
from cass_operator.models.datacenter import Datacenter, ManualAuth
from cass_operator.services.kubernetes_service import KubernetesService
from cass_operator.services.management_api import TransportCredentials, transport_credentials

logger = get_logger(__name__)


class SuperuserCredentials(BaseModel):
    """Superuser name and password from the datacenter's secret."""

    username: str
    password: SecretStr


class CredentialService:
    """Reads datacenter secrets through the Kubernetes service."""

    def __init__(self, kubernetes: KubernetesService):
        self.kubernetes = kubernetes

    async def get_superuser(self, dc: Datacenter) -> Optional[SuperuserCredentials]:
        """
        Superuser credentials, or None if the secret does not exist yet.

        A secret without both ``username`` and ``password`` keys counts as
        missing.
        """
        secret_name = dc.get_superuser_secret_name()
        data = await self.kubernetes.read_secret(dc.namespace, secret_name)
        if not data:
            return None

        if "username" not in data or "password" not in data:
            logger.warning(
                "superuser_secret_incomplete",
                datacenter=dc.key,
                secret_name=secret_name,
                keys=sorted(data),
            )
            return None

        return SuperuserCredentials(username=data["username"], password=data["password"])

    async def get_transport_credentials(self, dc: Datacenter) -> TransportCredentials:
        """
        Transport credentials for the datacenter's management API auth.

        Raises:
            ValueError: manual auth with a missing or incomplete client secret
        """
        auth = dc.spec.management_api_auth
        client_secret = None
        if isinstance(auth, ManualAuth):
            client_secret = await self.kubernetes.read_secret(dc.namespace, auth.client_secret_name)
            if client_secret is None:
                raise ValueError(f"secret '{auth.client_secret_name}' not found")
        return transport_credentials(auth, client_secret)
