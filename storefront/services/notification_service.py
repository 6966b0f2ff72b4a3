"""
Merchant Notification Service

Domain events raised by the order and payment core are pushed to the
merchant's registered webhook URLs. Delivery is best effort: failures are
logged and never reach the caller, so order and payment state cannot be
affected by a merchant endpoint being down.
"""
import hashlib
import hmac
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.database import custom_json_dumps
from storefront.models.notification import MerchantWebhook

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Events merchants can subscribe to."""
    ORDER_CREATED = "order.created"
    ORDER_APPROVED = "order.approved"
    PRODUCT_OUT_OF_STOCK = "product.out_of_stock"
    ORDER_FULFILLMENT_DELAYED = "order.fulfillment_delayed"


@dataclass
class DomainEvent:
    type: EventType
    store_id: uuid.UUID
    data: Dict[str, Any] = field(default_factory=dict)
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "event": self.type.value,
            "store_id": str(self.store_id),
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.data,
        }


class EventDispatcher(Protocol):
    async def emit(self, event: DomainEvent) -> None:
        ...


class NullDispatcher:
    """Drops events. Used where no notification channel is wired."""

    async def emit(self, event: DomainEvent) -> None:
        logger.debug(f"Event {event.type.value} for store {event.store_id} not dispatched")


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class WebhookNotifier:
    """Posts events to every enabled MerchantWebhook of the store."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self._client = client
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS

    async def _subscriptions(self, event: DomainEvent) -> list[MerchantWebhook]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(MerchantWebhook).where(
                    MerchantWebhook.store_id == event.store_id,
                    MerchantWebhook.event == event.type.value,
                    MerchantWebhook.enabled == True,  # noqa: E712
                )
            )
            return list(result.scalars().all())

    async def _post(self, client: httpx.AsyncClient, hook: MerchantWebhook, event: DomainEvent) -> None:
        body = custom_json_dumps(event.to_payload()).encode()
        headers = {
            "Content-Type": "application/json",
            "X-Event": event.type.value,
            "X-Event-Id": str(event.id),
        }
        if hook.secret:
            headers["X-Signature"] = sign_payload(hook.secret, body)

        try:
            response = await client.post(hook.url, content=body, headers=headers)
            if response.status_code >= 400:
                logger.warning(
                    f"Webhook {hook.id} for {event.type.value} answered {response.status_code}"
                )
            else:
                logger.info(f"Webhook {hook.id} notified of {event.type.value}")
        except httpx.HTTPError as e:
            logger.warning(f"Webhook {hook.id} for {event.type.value} failed: {e}")

    async def emit(self, event: DomainEvent) -> None:
        try:
            hooks = await self._subscriptions(event)
            if not hooks:
                return
            if self._client is not None:
                for hook in hooks:
                    await self._post(self._client, hook, event)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    for hook in hooks:
                        await self._post(client, hook, event)
        except Exception as e:
            logger.error(f"Failed to dispatch {event.type.value} for store {event.store_id}: {e}")


async def emit_safely(dispatcher: EventDispatcher, event: DomainEvent) -> None:
    """Emit through any dispatcher without letting its errors escape."""
    try:
        await dispatcher.emit(event)
    except Exception as e:
        logger.error(f"Event dispatch error ({event.type.value}): {e}")
