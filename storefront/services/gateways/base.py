"""
Provider-agnostic PIX charge interface.

Every provider adapter:
- creates and fetches charges over HTTP (httpx)
- maps its own status vocabulary to PaymentStatus in normalize_status(),
  the only place a raw provider status string is interpreted
- raises GatewayUnavailable for failures worth retrying (network, timeouts,
  5xx, 429) and GatewayRejected for terminal ones (401/403/422 and other 4xx)
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Dict, List, Optional, Tuple
import uuid

import httpx
from pydantic import BaseModel, Field

from storefront.config import settings
from storefront.core.exceptions import GatewayRejected, GatewayUnavailable
from storefront.models.order import PaymentStatus
from storefront.services.gateways.split import SplitShare

logger = logging.getLogger(__name__)


class ChargeRequest(BaseModel):
    """Request to create a PIX charge."""
    order_id: uuid.UUID
    amount: Decimal  # In BRL
    description: str
    payer_email: Optional[str] = None
    payer_name: Optional[str] = None
    webhook_url: Optional[str] = None
    splits: List[SplitShare] = Field(default_factory=list)


class ChargeResult(BaseModel):
    """Provider charge, already normalized."""
    external_id: str
    status: PaymentStatus
    raw_status: Optional[str] = None
    amount: Optional[Decimal] = None
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None
    expires_at: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaymentGateway(ABC):
    """Base class for PIX provider adapters."""

    provider: ClassVar[str] = ""
    status_map: ClassVar[Dict[str, PaymentStatus]] = {}

    def __init__(
        self,
        token: str,
        base_url: str,
        sandbox: bool = False,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.sandbox = sandbox
        self._client = client
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS

    # ==================== STATUS NORMALIZATION ====================

    @classmethod
    def normalize_status(cls, raw_status: Optional[str]) -> PaymentStatus:
        """Map a provider status to PaymentStatus. Unknown values stay pending."""
        if raw_status is None:
            return PaymentStatus.PENDING
        status = cls.status_map.get(str(raw_status).strip().lower())
        if status is None:
            logger.warning(f"Unknown {cls.provider} status '{raw_status}', treating as pending")
            return PaymentStatus.PENDING
        return status

    @classmethod
    def parse_webhook(cls, payload: Dict[str, Any]) -> Optional[Tuple[str, Optional[str]]]:
        """Extract (external_id, raw_status) from a webhook body, None if malformed."""
        external_id = payload.get("id")
        if not external_id:
            return None
        return str(external_id), payload.get("status")

    @classmethod
    @abstractmethod
    def from_settings(
        cls,
        token: Optional[str] = None,
        sandbox: Optional[bool] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "PaymentGateway":
        """Build an adapter, falling back to the platform credentials."""

    # ==================== HTTP ====================

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            if self._client is not None:
                response = await self._client.request(method, url, headers=headers, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"{self.provider} request timed out: {method} {path}")
            raise GatewayUnavailable(f"{self.provider} timed out", provider=self.provider) from e
        except httpx.TransportError as e:
            logger.error(f"{self.provider} unreachable: {method} {path}: {e}")
            raise GatewayUnavailable(f"{self.provider} unreachable", provider=self.provider) from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.error(f"{self.provider} returned {response.status_code} for {method} {path}")
            raise GatewayUnavailable(
                f"{self.provider} returned {response.status_code}",
                provider=self.provider,
            )
        return response

    def _raise_for_rejection(self, response: httpx.Response) -> None:
        """Terminal 4xx responses."""
        if response.status_code < 400:
            return

        try:
            body = response.json()
        except ValueError:
            body = {}
        detail = body.get("message") if isinstance(body, dict) else None

        if response.status_code in (401, 403):
            logger.error(f"{self.provider} rejected credentials")
            raise GatewayRejected("Invalid provider credentials", provider=self.provider)

        logger.error(f"{self.provider} rejected request ({response.status_code}): {body}")
        raise GatewayRejected(
            detail or f"{self.provider} rejected the request ({response.status_code})",
            provider=self.provider,
        )

    # ==================== OPERATIONS ====================

    @abstractmethod
    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        """Create a PIX charge."""

    @abstractmethod
    async def get_charge(self, external_id: str) -> Optional[ChargeResult]:
        """Fetch a charge; None when the provider does not know it."""
