"""
HTTP resolver for resource access URLs.

Mints time-bounded URLs for a batch of resources of one container with a
single POST to the media API.
"""

import logging
from typing import Dict, List, Optional

import httpx

from core.error_handler import ResolutionFailure
from models.resources import ResolutionRequest, ResolvedItem


logger = logging.getLogger(__name__)

ACCESS_TOKENS_PATH = "/images/access-tokens"


class HttpResourceResolver:
    """
    Resolver backed by ``POST {base_url}/images/access-tokens``.

    Request:  {ownerId, containerId, items: [{resourceId, slotId, variant}]}
    Response: {items: [{resourceId, slotId, variant, url, expiresAt}]}
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers
        )

    async def __call__(self, request: ResolutionRequest) -> List[ResolvedItem]:
        """
        Resolve a batch of resources.

        Args:
            request: Resources of one container to resolve

        Returns:
            Resolved items; resources the server could not sign are absent

        Raises:
            ResolutionFailure: On transport errors, error statuses or malformed bodies
        """
        logger.debug(
            f"Requesting {len(request.items)} access URLs for "
            f"{request.owner_id}/{request.container_id}"
        )
        try:
            response = await self._client.post(ACCESS_TOKENS_PATH, json=request.to_dict())
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            raise ResolutionFailure(
                f"Access token request failed with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ResolutionFailure(f"Access token request failed: {e}") from e
        except ValueError as e:
            raise ResolutionFailure("Malformed access token response") from e

        if not isinstance(body, dict):
            raise ResolutionFailure("Malformed access token response")
        if body.get("success") is False:
            raise ResolutionFailure(str(body.get("error") or "Access token request refused"))

        try:
            return [ResolvedItem.from_dict(item) for item in body.get("items") or []]
        except (KeyError, TypeError, ValueError) as e:
            raise ResolutionFailure(f"Malformed access token item: {e}") from e

    async def aclose(self) -> None:
        """Close the HTTP client if this resolver created it."""
        if self._owns_client:
            await self._client.aclose()
