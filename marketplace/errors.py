"""
Marketplace Service — エラー定義

すべてのドメイン例外は MarketplaceError を継承し、HTTP ステータスを持つ。
main.py の例外ハンドラが JSON レスポンスに変換する。
"""


class MarketplaceError(Exception):
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None, **extra) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "error": type(self).__name__, **self.extra}


class ValidationError(MarketplaceError):
    """入力不正。外部呼び出しの前に拒否する。"""
    status_code = 400
    default_message = "Invalid request"


class NotFoundError(MarketplaceError):
    status_code = 404
    default_message = "Not found"


class ItemNotFound(NotFoundError):
    default_message = "Item not found"


class OrderNotFound(NotFoundError):
    default_message = "Order not found"


class PaymentSessionNotFound(NotFoundError):
    default_message = "Payment session not found"


class PaymentNotComplete(MarketplaceError):
    """セッションが未完了。同じセッションでのリトライは無意味。"""
    status_code = 400
    default_message = "Payment not complete"


class CheckoutRejected(MarketplaceError):
    """プロバイダがセッション作成を拒否した（メッセージはそのまま返す）"""
    status_code = 400
    default_message = "Checkout session rejected by payment provider"


class AuthenticationError(MarketplaceError):
    status_code = 401
    default_message = "Unauthorized Access!"


class AuthorizationError(MarketplaceError):
    """ロール不一致。クライアント側 UX のため実際のロールを返す。"""
    status_code = 403
    default_message = "Forbidden Access!"

    def __init__(self, message: str | None = None, *, role: str) -> None:
        super().__init__(message, role=role)
        self.role = role


class StorageConflict(MarketplaceError):
    """transaction_ref の一意制約違反。Reconciliation Engine 内で解決される。"""
    status_code = 409
    default_message = "Conflicting write"


class UpstreamUnavailable(MarketplaceError):
    """決済プロバイダに到達できない。同じ session_id でリトライ可能。"""
    status_code = 503
    default_message = "Payment provider unavailable"
