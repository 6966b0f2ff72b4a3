"""Mercado Pago PIX adapter. Amounts travel in reais."""
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from storefront.config import settings
from storefront.core.exceptions import ChargeAmountInvalid
from storefront.core.money import ZERO, to_money
from storefront.models.order import PaymentStatus
from storefront.services.gateways.base import ChargeRequest, ChargeResult, PaymentGateway

logger = logging.getLogger(__name__)


class MercadoPagoGateway(PaymentGateway):
    provider = "mercado_pago"
    status_map = {
        "pending": PaymentStatus.PENDING,
        "in_process": PaymentStatus.PENDING,
        "authorized": PaymentStatus.PENDING,
        "approved": PaymentStatus.APPROVED,
        "rejected": PaymentStatus.REJECTED,
        "cancelled": PaymentStatus.CANCELLED,
        "refunded": PaymentStatus.REFUNDED,
        "charged_back": PaymentStatus.REFUNDED,
    }

    @classmethod
    def from_settings(
        cls,
        token: Optional[str] = None,
        sandbox: Optional[bool] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "MercadoPagoGateway":
        # Sandbox is selected by the access token itself (TEST-...)
        return cls(
            token=token or settings.MERCADO_PAGO_ACCESS_TOKEN,
            base_url=settings.MERCADO_PAGO_API_URL,
            sandbox=bool(sandbox),
            client=client,
        )

    @classmethod
    def parse_webhook(cls, payload: Dict[str, Any]) -> Optional[Tuple[str, Optional[str]]]:
        """
        Accepts both notification shapes:
            {"type": "payment", "action": "payment.updated", "data": {"id": "123"}}
            {"id": "123", "status": "approved"}
        The first carries no status, so it must be fetched.
        """
        data = payload.get("data")
        if isinstance(data, dict) and data.get("id"):
            return str(data["id"]), None
        return super().parse_webhook(payload)

    def _to_result(self, data: Dict[str, Any]) -> ChargeResult:
        transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
        amount = data.get("transaction_amount")
        return ChargeResult(
            external_id=str(data["id"]),
            status=self.normalize_status(data.get("status")),
            raw_status=data.get("status"),
            amount=to_money(amount) if amount is not None else None,
            qr_code=transaction.get("qr_code"),
            qr_code_base64=transaction.get("qr_code_base64"),
            expires_at=data.get("date_of_expiration"),
            raw=data,
        )

    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        amount = to_money(request.amount)
        if amount <= ZERO:
            raise ChargeAmountInvalid(f"Charge amount must be positive, got {amount}")

        name_parts = (request.payer_name or "").split()
        body: Dict[str, Any] = {
            "transaction_amount": float(amount),
            "description": request.description,
            "payment_method_id": "pix",
            "payer": {
                "email": request.payer_email,
                "first_name": name_parts[0] if name_parts else "",
                "last_name": " ".join(name_parts[1:]),
            },
            "external_reference": str(request.order_id),
            "metadata": {"order_id": str(request.order_id)},
        }
        if request.webhook_url:
            body["notification_url"] = request.webhook_url
        if request.splits:
            body["split"] = [
                {"amount": float(share.amount), "user_id": share.account_id}
                for share in request.splits
            ]

        # A retried create for the same order returns the original payment
        response = await self._send(
            "POST",
            "/v1/payments",
            json=body,
            headers={"X-Idempotency-Key": str(request.order_id)},
        )
        self._raise_for_rejection(response)

        result = self._to_result(response.json())
        logger.info(
            f"Mercado Pago payment {result.external_id} created for order {request.order_id} "
            f"(R$ {amount}, {len(request.splits)} splits)"
        )
        return result

    async def get_charge(self, external_id: str) -> Optional[ChargeResult]:
        response = await self._send("GET", f"/v1/payments/{external_id}")
        if response.status_code == 404:
            return None
        self._raise_for_rejection(response)
        return self._to_result(response.json())
