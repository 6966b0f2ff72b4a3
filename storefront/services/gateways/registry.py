"""Provider lookup and per-store gateway selection."""
import logging
import uuid
from typing import Dict, Iterable, Optional, Type

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.core.exceptions import PaymentProviderNotConfigured
from storefront.models.order import PaymentStatus
from storefront.models.payment_method import PaymentMethod
from storefront.services.gateways.base import PaymentGateway
from storefront.services.gateways.mercado_pago import MercadoPagoGateway
from storefront.services.gateways.pushin_pay import PushinPayGateway

logger = logging.getLogger(__name__)

DEFAULT_GATEWAYS = (PushinPayGateway, MercadoPagoGateway)

_PLATFORM_TOKENS = {
    PushinPayGateway.provider: lambda: settings.PUSHIN_PAY_TOKEN,
    MercadoPagoGateway.provider: lambda: settings.MERCADO_PAGO_ACCESS_TOKEN,
}


class GatewayRegistry:
    """
    Maps provider names to adapters.

    Adding a provider means registering its PaymentGateway subclass here;
    nothing in order handling or reconciliation changes.
    """

    def __init__(
        self,
        gateways: Iterable[Type[PaymentGateway]] = DEFAULT_GATEWAYS,
        client: Optional[httpx.AsyncClient] = None,
        default_provider: Optional[str] = None,
    ):
        self._gateways: Dict[str, Type[PaymentGateway]] = {}
        for gateway_class in gateways:
            self.register(gateway_class)
        self._client = client
        self.default_provider = default_provider or settings.DEFAULT_PAYMENT_PROVIDER

    def register(self, gateway_class: Type[PaymentGateway]) -> None:
        self._gateways[gateway_class.provider] = gateway_class

    @property
    def providers(self) -> list[str]:
        return sorted(self._gateways)

    def gateway_class(self, provider: str) -> Type[PaymentGateway]:
        try:
            return self._gateways[provider]
        except KeyError:
            raise PaymentProviderNotConfigured(f"Unknown payment provider '{provider}'")

    def normalize_status(self, provider: str, raw_status: Optional[str]) -> PaymentStatus:
        return self.gateway_class(provider).normalize_status(raw_status)

    def build(
        self,
        provider: str,
        token: Optional[str] = None,
        sandbox: Optional[bool] = None,
    ) -> PaymentGateway:
        gateway_class = self.gateway_class(provider)
        return gateway_class.from_settings(token=token, sandbox=sandbox, client=self._client)

    def _platform_gateway(self, provider: str) -> Optional[PaymentGateway]:
        if provider not in self._gateways:
            return None
        token_getter = _PLATFORM_TOKENS.get(provider)
        if token_getter is None or not token_getter():
            return None
        return self.build(provider)

    async def select_for_store(self, db: AsyncSession, store_id: uuid.UUID) -> PaymentGateway:
        """
        Gateway for a new charge.

        The store's enabled methods win, ties broken by provider name; without
        any, the platform default provider with platform credentials.
        """
        result = await db.execute(
            select(PaymentMethod)
            .where(
                PaymentMethod.store_id == store_id,
                PaymentMethod.enabled == True,  # noqa: E712
            )
            .order_by(PaymentMethod.provider)
        )
        for method in result.scalars().all():
            if method.provider not in self._gateways:
                logger.warning(f"Store {store_id} has unsupported provider '{method.provider}' enabled")
                continue
            if not method.token and not _PLATFORM_TOKENS.get(method.provider, lambda: "")():
                logger.warning(f"Store {store_id} provider '{method.provider}' has no token")
                continue
            return self.build(method.provider, token=method.token, sandbox=method.sandbox)

        gateway = self._platform_gateway(self.default_provider)
        if gateway is None:
            raise PaymentProviderNotConfigured(
                f"No payment provider configured for store {store_id}"
            )
        logger.info(f"Store {store_id} has no payment method, using platform {self.default_provider}")
        return gateway

    async def for_payment(self, db: AsyncSession, store_id: uuid.UUID, provider: str) -> PaymentGateway:
        """Gateway that can query a charge created earlier with `provider`."""
        result = await db.execute(
            select(PaymentMethod).where(
                PaymentMethod.store_id == store_id,
                PaymentMethod.provider == provider,
            )
        )
        method = result.scalar_one_or_none()
        if method is not None and method.token:
            return self.build(provider, token=method.token, sandbox=method.sandbox)
        return self.build(provider)
