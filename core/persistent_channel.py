"""
Persistent Channel for the Collaborative Sync Core

Stateless request/response transport over HTTP. Always attemptable: every
call opens a fresh exchange and relies on the HTTP client's own timeout.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from core.error_handler import ChannelTimeout, ChannelUnavailable, OperationRejected
from models.operations import OperationBatch, SyncResult


logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0


class PersistentChannel:
    """
    REST implementation of the transport channel contract.

    Endpoints:
    - POST {base_url}/projects/{project_id}/ops
    - GET  {base_url}/projects/{project_id}/operations?since={version}
    """

    name = "persistent"

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        headers: Optional[Dict[str, str]] = None
    ):
        """
        Initialize PersistentChannel.

        Args:
            base_url: API root, e.g. "https://api.example.com/api"
            client: Optional pre-built client; it is not closed by this channel
            timeout: Transport-level timeout in seconds for owned clients
            headers: Extra headers (e.g. Authorization) for owned clients
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers
        )
        self._online = True

    def is_online(self) -> bool:
        """Last sampled reachability of the server."""
        return self._online

    def set_online(self, online: bool) -> None:
        """Record connectivity reported by an external monitor."""
        if online != self._online:
            logger.info(f"Persistent channel marked {'online' if online else 'offline'}")
        self._online = online

    async def send_operations(self, batch: OperationBatch) -> SyncResult:
        """
        Submit a batch of operations.

        Args:
            batch: Batch to submit; sent as-is in its original order

        Returns:
            SyncResult parsed from the server response

        Raises:
            ChannelUnavailable: If the server cannot be reached or fails (5xx)
            ChannelTimeout: If the request times out
            OperationRejected: If the server refuses the batch (4xx)
        """
        path = f"/projects/{batch.project_id}/ops"
        logger.debug(f"POST {path} with {len(batch)} operations (base_version={batch.base_version})")

        body = await self._request(
            "POST",
            path,
            json=batch.to_dict(),
            operation_ids=batch.operation_ids
        )
        result = self._parse_result(body, batch.base_version, path, batch.operation_ids)

        logger.info(
            f"Persistent send completed for project {batch.project_id}: "
            f"success={result.success}, sync_version={result.sync_version}, "
            f"processed={len(result.processed_operations)}"
        )
        return result

    async def get_operations(self, project_id: str, since_version: int) -> SyncResult:
        """
        Pull operations recorded after a version.

        Args:
            project_id: Project identifier
            since_version: Last version known to the caller

        Returns:
            SyncResult carrying the server operations
        """
        path = f"/projects/{project_id}/operations"
        body = await self._request("GET", path, params={"since": since_version})
        result = self._parse_result(body, since_version, path)

        logger.debug(
            f"Pulled {len(result.server_operations)} operations for project "
            f"{project_id} since version {since_version}"
        )
        return result

    async def _request(
        self,
        method: str,
        path: str,
        operation_ids=(),
        **kwargs: Any
    ) -> Dict[str, Any]:
        """
        Perform one HTTP exchange and map failures onto the channel taxonomy.

        Returns:
            Decoded JSON body
        """
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            self._online = False
            logger.warning(f"{method} {path} timed out: {e}")
            raise ChannelTimeout(f"Request timed out: {method} {path}") from e
        except httpx.TransportError as e:
            self._online = False
            logger.warning(f"{method} {path} failed: {e}")
            raise ChannelUnavailable(f"Server unreachable: {e}") from e

        self._online = True

        if response.status_code >= 500:
            logger.error(f"{method} {path} failed with status {response.status_code}")
            raise ChannelUnavailable(f"Server error {response.status_code}")

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.error(f"{method} {path} rejected with status {response.status_code}: {message}")
            raise OperationRejected(
                message,
                status_code=response.status_code,
                operation_ids=operation_ids
            )

        try:
            body = response.json()
        except ValueError as e:
            raise OperationRejected(
                f"Malformed response from {path}",
                status_code=response.status_code,
                operation_ids=operation_ids
            ) from e

        if not isinstance(body, dict):
            raise OperationRejected(
                f"Unexpected response shape from {path}",
                status_code=response.status_code,
                operation_ids=operation_ids
            )
        return body

    @staticmethod
    def _parse_result(
        body: Dict[str, Any],
        default_version: int,
        path: str,
        operation_ids=()
    ) -> SyncResult:
        """
        Build a SyncResult from a decoded body.

        Raises:
            OperationRejected: If the body has the wrong field types or malformed operations
        """
        try:
            return SyncResult.from_dict(body, default_version=default_version)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Malformed sync result from {path}: {e!r}")
            raise OperationRejected(
                f"Malformed response from {path}: {e!r}",
                operation_ids=operation_ids
            ) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Extract the server's error message, falling back to the status line."""
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return f"Request failed with status {response.status_code}"

    async def aclose(self) -> None:
        """Close the HTTP client if this channel created it."""
        if self._owns_client:
            await self._client.aclose()
