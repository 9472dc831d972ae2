"""Error taxonomy shared by the order, coupon and lifecycle services."""


class MarketplaceError(Exception):
    """Base exception for all marketplace business errors."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(MarketplaceError):
    """Raised for malformed or incomplete input. Nothing was written."""

    kind = "validation_error"
    status_code = 400


class NotFoundError(MarketplaceError):
    """Raised when a referenced entity does not exist."""

    kind = "not_found"
    status_code = 404

    def __init__(self, entity: str, ref=None, message=None):
        self.entity = entity
        self.ref = ref
        if message is None:
            message = f"{entity} not found" if ref is None else f"{entity} not found: {ref}"
        super().__init__(message)


class ConflictError(MarketplaceError):
    """Raised when valid input breaks a business rule (stock, coupon limits, state)."""

    kind = "conflict"
    status_code = 409


class TransactionAbortError(MarketplaceError):
    """Raised when the database aborted the transaction. Safe to resubmit."""

    kind = "transaction_aborted"
    status_code = 503
