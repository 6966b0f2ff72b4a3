from storefront.services.gateways.split import SplitCalculator, SplitRule, SplitShare
from storefront.services.gateways.base import ChargeRequest, ChargeResult, PaymentGateway
from storefront.services.gateways.pushin_pay import PushinPayGateway
from storefront.services.gateways.mercado_pago import MercadoPagoGateway
from storefront.services.gateways.registry import GatewayRegistry

__all__ = [
    "SplitCalculator", "SplitRule", "SplitShare",
    "ChargeRequest", "ChargeResult", "PaymentGateway",
    "PushinPayGateway", "MercadoPagoGateway",
    "GatewayRegistry",
]
