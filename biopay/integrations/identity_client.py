"""Biometric identity service client."""
from typing import Any, Dict, Optional

import httpx
import structlog

from biopay.config import Settings, get_settings
from biopay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class IdentityGatewayError(Exception):
    """Raised when the biometric service cannot answer a search."""

    pass


class IdentityClient:
    """
    Async client for biometric search, face linking and face deletion.

    A search that completes without a match returns None. A search that
    cannot complete raises IdentityGatewayError, so callers can tell
    "nobody matched" apart from "nobody answered".
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.biometric_service_url,
            timeout=self.settings.biometric_timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def search_face(self, sample: str) -> Optional[str]:
        """
        Resolve a base64 face sample to the best matching user account.

        Args:
            sample: Base64-encoded face image

        Returns:
            Optional[str]: Account id of the top match, or None

        Raises:
            IdentityGatewayError: If the service is unreachable or answers badly
        """
        payload = {"image_base64": sample, "top_k": 1, "search_type": "user"}

        try:
            response = await self._client.post("/biometric/search", json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("biometric_search_failed", error=str(e))
            metrics.record_identity_request("search", "error")
            raise IdentityGatewayError(f"Biometric search failed: {e}") from e

        matches = body.get("matches") if isinstance(body, dict) else None
        if not matches:
            logger.info("biometric_search_no_match")
            metrics.record_identity_request("search", "no_match")
            return None

        user_id = matches[0].get("user_id")
        if user_id is None:
            metrics.record_identity_request("search", "error")
            raise IdentityGatewayError("Biometric match carries no user_id")

        logger.info("biometric_search_matched", account_id=str(user_id))
        metrics.record_identity_request("search", "match")
        return str(user_id)

    async def link_face(self, account_id: str, face_id: str) -> bool:
        """Attach an enrolled face to an account."""
        return await self._call(
            "link_face",
            "PUT",
            "/biometric/update-face-user",
            {"user_id": account_id, "face_id": face_id},
        )

    async def delete_face(self, account_id: str) -> bool:
        """Remove an account's face profile."""
        return await self._call(
            "delete_face", "DELETE", "/biometric/delete", {"user_id": account_id}
        )

    async def _call(
        self, operation: str, method: str, path: str, payload: Dict[str, Any]
    ) -> bool:
        try:
            response = await self._client.request(method, path, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "biometric_request_failed",
                operation=operation,
                account_id=payload.get("user_id"),
                error=str(e),
            )
            metrics.record_identity_request(operation, "error")
            return False

        success = isinstance(body, dict) and body.get("success") is True
        logger.info(
            "biometric_request_completed",
            operation=operation,
            account_id=payload.get("user_id"),
            success=success,
        )
        metrics.record_identity_request(operation, "success" if success else "failure")
        return success
