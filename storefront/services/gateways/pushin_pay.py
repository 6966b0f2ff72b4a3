"""Pushin Pay PIX adapter. Amounts travel in cents."""
import logging
from typing import Any, Dict, Optional

import httpx

from storefront.config import settings
from storefront.core.exceptions import ChargeAmountInvalid
from storefront.core.money import from_cents, to_cents
from storefront.models.order import PaymentStatus
from storefront.services.gateways.base import ChargeRequest, ChargeResult, PaymentGateway

logger = logging.getLogger(__name__)

MIN_CHARGE_CENTS = 50


class PushinPayGateway(PaymentGateway):
    provider = "pushin_pay"
    status_map = {
        "created": PaymentStatus.PENDING,
        "paid": PaymentStatus.APPROVED,
        "canceled": PaymentStatus.CANCELLED,
        "cancelled": PaymentStatus.CANCELLED,
    }

    @classmethod
    def from_settings(
        cls,
        token: Optional[str] = None,
        sandbox: Optional[bool] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "PushinPayGateway":
        if sandbox is None:
            sandbox = settings.PUSHIN_PAY_SANDBOX
        base_url = settings.PUSHIN_PAY_SANDBOX_API_URL if sandbox else settings.PUSHIN_PAY_API_URL
        return cls(
            token=token or settings.PUSHIN_PAY_TOKEN,
            base_url=base_url,
            sandbox=sandbox,
            client=client,
        )

    def _to_result(self, data: Dict[str, Any]) -> ChargeResult:
        value = data.get("value")
        amount = None
        if value is not None:
            # Transactions endpoint returns the value as a string of cents
            amount = from_cents(int(str(value)))
        pix_details = data.get("pix_details") or {}
        return ChargeResult(
            external_id=str(data["id"]),
            status=self.normalize_status(data.get("status")),
            raw_status=data.get("status"),
            amount=amount,
            qr_code=data.get("qr_code") or pix_details.get("emv"),
            qr_code_base64=data.get("qr_code_base64"),
            expires_at=pix_details.get("expiration_date"),
            raw=data,
        )

    async def create_charge(self, request: ChargeRequest) -> ChargeResult:
        value = to_cents(request.amount)
        if value < MIN_CHARGE_CENTS:
            raise ChargeAmountInvalid(
                f"Pushin Pay requires at least {MIN_CHARGE_CENTS} cents, got {value}"
            )

        body: Dict[str, Any] = {
            "value": value,
            "split_rules": [
                {"value": to_cents(share.amount), "account_id": share.account_id}
                for share in request.splits
            ],
        }
        if request.webhook_url:
            body["webhook_url"] = request.webhook_url

        response = await self._send("POST", "/pix/cashIn", json=body)
        self._raise_for_rejection(response)

        result = self._to_result(response.json())
        logger.info(
            f"Pushin Pay charge {result.external_id} created for order {request.order_id} "
            f"({value} cents, {len(request.splits)} splits)"
        )
        return result

    async def get_charge(self, external_id: str) -> Optional[ChargeResult]:
        response = await self._send("GET", f"/transactions/{external_id}")
        if response.status_code == 404:
            return None
        self._raise_for_rejection(response)
        return self._to_result(response.json())
