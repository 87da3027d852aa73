"""
Marketplace — 例外定義

注文ワークフローが外に出す失敗はすべて MarketplaceError のサブクラス。
HTTP ステータスへの変換は main.py の一か所で行う。
"""


class MarketplaceError(Exception):
    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(MarketplaceError):
    error_code = "CONFIGURATION_ERROR"


class ValidationError(MarketplaceError):
    """入力不正、または合計金額が 0 以下"""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthorizationError(MarketplaceError):
    """必要なロールがない、または他人のリソース"""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(MarketplaceError):
    status_code = 404
    error_code = "NOT_FOUND"


class InsufficientInventory(MarketplaceError):
    status_code = 409
    error_code = "INSUFFICIENT_INVENTORY"

    def __init__(self, product_id: str, requested: float, available: float):
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ConflictError(MarketplaceError):
    """条件付きステータス遷移が競合に負けた"""
    status_code = 409
    error_code = "CONFLICT"

    def __init__(self, order_id: str, expected: str, current: str):
        super().__init__(
            f"Order {order_id} is {current}, expected {expected}"
        )
        self.order_id = order_id
        self.expected = expected
        self.current = current


class SignatureError(MarketplaceError):
    status_code = 400
    error_code = "INVALID_SIGNATURE"


class GatewayError(MarketplaceError):
    """決済ゲートウェイの接続失敗・タイムアウト・エラー応答"""
    status_code = 502
    error_code = "GATEWAY_ERROR"


class PaymentIntentCreationFailed(GatewayError):
    error_code = "PAYMENT_INTENT_FAILED"
