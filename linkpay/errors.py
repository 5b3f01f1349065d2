"""Error taxonomy for link operations.

Every failure a caller can observe is a ``LinkError`` subclass tagged with an
``ErrorKind``. The HTTP layer maps kinds to status codes; nothing downstream
inspects message text.
"""
import enum


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    AMOUNT_TOO_LOW = "amount_too_low"
    GATEWAY = "gateway"
    RECONCILIATION_REQUIRED = "reconciliation_required"
    STORE = "store"


class GatewayFailure(str, enum.Enum):
    INSUFFICIENT_POOL_BALANCE = "insufficient_pool_balance"
    INVALID_RECIPIENT = "invalid_recipient"
    TIMEOUT = "timeout"
    NETWORK = "network"
    REJECTED = "rejected"
    # 2xx with an unreadable body; the payout may have happened
    UNCONFIRMED = "unconfirmed"


class LinkError(Exception):
    """Base class for link domain errors."""

    kind = ErrorKind.VALIDATION
    retryable = False

    def __init__(self, message: str, link_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.link_id = link_id


class ValidationError(LinkError):
    """Bad input. Raised before any state is touched."""

    kind = ErrorKind.VALIDATION


class LinkNotDeposited(ValidationError):
    """The link has no recorded deposit and cannot be claimed yet."""


class LinkNotFound(LinkError):
    kind = ErrorKind.NOT_FOUND


class Conflict(LinkError):
    """The link was already claimed, or a deposit reference does not match."""

    kind = ErrorKind.CONFLICT


class AmountTooLow(LinkError):
    """The amount cannot cover its own withdrawal fee."""

    kind = ErrorKind.AMOUNT_TOO_LOW

    def __init__(self, gross_amount: int, fee: int, link_id: str | None = None):
        super().__init__(
            f"Amount {gross_amount} does not cover the withdrawal fee of {fee}",
            link_id=link_id,
        )
        self.gross_amount = gross_amount
        self.fee = fee


class GatewayError(LinkError):
    """The withdrawal call failed.

    The claim is rolled back for every reason except ``UNCONFIRMED``, which
    freezes the link instead.
    """

    kind = ErrorKind.GATEWAY
    retryable = True

    def __init__(self, message: str, reason: GatewayFailure = GatewayFailure.REJECTED, link_id: str | None = None):
        super().__init__(message, link_id=link_id)
        self.reason = reason


class ReconciliationRequired(LinkError):
    """The link is frozen and needs an operator to settle it."""

    kind = ErrorKind.RECONCILIATION_REQUIRED


class StoreError(LinkError):
    """The link store could not complete an operation."""

    kind = ErrorKind.STORE
    retryable = True
