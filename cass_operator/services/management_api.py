"""
Management API client.

Every Cassandra pod runs a management sidecar reachable over HTTP(S). The
operator never talks CQL or JMX; all node lifecycle actions go through these
endpoints:

- GET  /api/v0/metadata/localnode     -> {"state", "hostId", "ip"}
- POST /api/v0/lifecycle/start
- POST /api/v0/ops/node/decommission
- POST /api/v0/ops/node/drain
- POST /api/v0/ops/auth/role

Transport failures become ManagementApiUnreachableError (transient). Answers
meaning "already in the target state" are success, except for start where the
caller needs to know and gets AlreadyRunningError.
"""
import os
import ssl
import tempfile
from typing import Any, Dict, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

from cass_operator.config.logging import get_logger
from cass_operator.config.settings import settings
from cass_operator.exceptions import (
    AlreadyRunningError,
    ManagementApiError,
    ManagementApiUnreachableError,
)
from cass_operator.models.datacenter import InsecureAuth, ManagementApiAuth, ManualAuth

logger = get_logger(__name__)

STATUS_PATH = "/api/v0/metadata/localnode"
START_PATH = "/api/v0/lifecycle/start"
DECOMMISSION_PATH = "/api/v0/ops/node/decommission"
DRAIN_PATH = "/api/v0/ops/node/drain"
ROLE_PATH = "/api/v0/ops/auth/role"

# Reported by the sidecar while the database process is not running
NOT_STARTED = "NOT_STARTED"


class RemoteNodeStatus(BaseModel):
    """Node status as reported by the management API."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    state: str = NOT_STARTED
    host_id: Optional[str] = Field(default=None, alias="hostId")
    ip: Optional[str] = None


class TransportCredentials(BaseModel):
    """How to reach the management API of a datacenter's nodes."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    scheme: str = "http"
    verify: Union[bool, ssl.SSLContext] = True


def transport_credentials(
    auth: ManagementApiAuth,
    client_secret: Optional[Dict[str, str]] = None,
) -> TransportCredentials:
    """
    Produce transport credentials for an auth variant.

    Args:
        auth: The datacenter's management API auth variant
        client_secret: Decoded client secret data (``ca.crt``, ``tls.crt``,
            ``tls.key``), required for manual auth

    Raises:
        ValueError: if manual auth is selected and the secret is incomplete
    """
    if isinstance(auth, InsecureAuth):
        return TransportCredentials(scheme="http", verify=False)

    if isinstance(auth, ManualAuth):
        data = client_secret or {}
        missing = [key for key in ("ca.crt", "tls.crt", "tls.key") if key not in data]
        if missing:
            raise ValueError(
                f"secret '{auth.client_secret_name}' is missing {', '.join(missing)}"
            )
        context = ssl.create_default_context(cadata=data["ca.crt"])
        # Pod IPs are not in the server certificate SANs
        context.check_hostname = False
        _load_client_certificate(context, data["tls.crt"], data["tls.key"])
        return TransportCredentials(scheme="https", verify=context)

    raise ValueError(f"unsupported management API auth: {auth!r}")


def _load_client_certificate(context: ssl.SSLContext, cert_pem: str, key_pem: str) -> None:
    """Load an in-memory certificate chain; ssl only accepts file paths."""
    with tempfile.TemporaryDirectory() as tmp:
        cert_path = os.path.join(tmp, "tls.crt")
        key_path = os.path.join(tmp, "tls.key")
        with open(cert_path, "w") as f:
            f.write(cert_pem)
        with open(key_path, "w") as f:
            f.write(key_pem)
        context.load_cert_chain(cert_path, key_path)


class ManagementApiClient:
    """
    HTTP client for the per-node management API.

    One client serves all nodes of a datacenter; every call names the pod and
    its IP.
    """

    def __init__(
        self,
        credentials: Optional[TransportCredentials] = None,
        port: Optional[int] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize management API client.

        Args:
            credentials: Transport credentials (defaults to plain HTTP)
            port: Management API port (defaults to settings)
            timeout: Per-call timeout in seconds (defaults to settings)
            transport: Optional httpx transport, used by tests
        """
        self.credentials = credentials or TransportCredentials(scheme="http", verify=False)
        self.port = port or settings.management_api_port
        self.timeout = timeout or settings.management_api_timeout_seconds
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            verify=self.credentials.verify,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    def _url(self, ip: str, path: str) -> str:
        return f"{self.credentials.scheme}://{ip}:{self.port}{path}"

    async def _request(
        self,
        method: str,
        pod_name: str,
        ip: Optional[str],
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        if not ip:
            raise ManagementApiUnreachableError(pod_name, "pod has no IP yet")
        try:
            response = await self.client.request(method, self._url(ip, path), params=params)
        except httpx.TransportError as e:
            logger.debug(
                "management_api_transport_error",
                pod_name=pod_name,
                path=path,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ManagementApiUnreachableError(pod_name, f"{type(e).__name__}: {e}") from e

        if response.status_code >= 500 and path != STATUS_PATH:
            raise ManagementApiUnreachableError(pod_name, f"HTTP {response.status_code}")
        return response

    async def get_status(self, pod_name: str, ip: Optional[str]) -> RemoteNodeStatus:
        """
        Fetch node status.

        A sidecar answering with a server error means the database process is
        not running yet.
        """
        response = await self._request("GET", pod_name, ip, STATUS_PATH)
        if response.status_code >= 500:
            return RemoteNodeStatus(state=NOT_STARTED, ip=ip)
        if response.status_code != 200:
            raise ManagementApiError(pod_name, response.status_code, response.text)
        return RemoteNodeStatus.model_validate(response.json())

    async def start(self, pod_name: str, ip: Optional[str]) -> None:
        """
        Start the database process.

        Raises:
            AlreadyRunningError: the node is not start-eligible
            ManagementApiUnreachableError: the sidecar cannot be dialed
        """
        response = await self._request("POST", pod_name, ip, START_PATH)
        if response.status_code in (202, 409):
            raise AlreadyRunningError(pod_name)
        if response.status_code not in (200, 201):
            raise ManagementApiError(pod_name, response.status_code, response.text)
        logger.info("management_api_node_started", pod_name=pod_name, ip=ip)

    async def decommission(self, pod_name: str, ip: Optional[str]) -> None:
        """Begin decommission; a decommission already in progress is success."""
        response = await self._request("POST", pod_name, ip, DECOMMISSION_PATH)
        if response.status_code not in (200, 202, 409):
            raise ManagementApiError(pod_name, response.status_code, response.text)
        logger.info("management_api_decommission_requested", pod_name=pod_name, ip=ip)

    async def drain(self, pod_name: str, ip: Optional[str]) -> None:
        """Flush memtables and stop accepting writes."""
        response = await self._request("POST", pod_name, ip, DRAIN_PATH)
        if response.status_code not in (200, 202, 409):
            raise ManagementApiError(pod_name, response.status_code, response.text)
        logger.info("management_api_node_drained", pod_name=pod_name, ip=ip)

    async def create_role(
        self,
        pod_name: str,
        ip: Optional[str],
        username: str,
        password: str,
    ) -> None:
        """Create or update a superuser role."""
        params = {
            "username": username,
            "password": password,
            "can_login": "true",
            "is_superuser": "true",
        }
        response = await self._request("POST", pod_name, ip, ROLE_PATH, params=params)
        if response.status_code not in (200, 201):
            raise ManagementApiError(pod_name, response.status_code, response.text)
        logger.info("management_api_superuser_upserted", pod_name=pod_name, username=username)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> "ManagementApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
