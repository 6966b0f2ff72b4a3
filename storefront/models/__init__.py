# Importing every model registers it with Base.metadata
from storefront.models.store import Store
from storefront.models.product import Product, ProductKey, DeliveryType, InventoryType
from storefront.models.customer import Customer
from storefront.models.coupon import Coupon, DiscountType
from storefront.models.order import (
    Order, OrderItem, Payment,
    OrderStatus, OrderPaymentStatus, PaymentStatus,
)
from storefront.models.payment_method import PaymentMethod, SplitConfig
from storefront.models.wallet import (
    Wallet, Withdrawal, WalletTransaction,
    WithdrawalStatus, WalletTransactionType,
)
from storefront.models.notification import MerchantWebhook

__all__ = [
    "Store",
    "Product", "ProductKey", "DeliveryType", "InventoryType",
    "Customer",
    "Coupon", "DiscountType",
    "Order", "OrderItem", "Payment", "OrderStatus", "OrderPaymentStatus", "PaymentStatus",
    "PaymentMethod", "SplitConfig",
    "Wallet", "Withdrawal", "WalletTransaction", "WithdrawalStatus", "WalletTransactionType",
    "MerchantWebhook",
]
